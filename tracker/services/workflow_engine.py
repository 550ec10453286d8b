"""
Workflow state machine — the only path by which a status changes.

One ``WorkflowStateMachine`` instance drives a set of ``StateGraph``s (one per
entity type).  The tracked-entity machine below covers components,
milestones, deliverables, timesheets and expenses; the variation processor
builds its own machine over the variation graph.

Transition algorithm, in order:
    a. optimistic version check            → StaleVersionConflict
    b. legal successor under the settings  → InvalidTransition
    c. actor's effective role (none)       → AuthorizationDenied
    d. edge requirement: ungated or not-required edges need write
       capability; required gates need the approval authority
    e. ``both`` authority: record the caller's party decision; the status
       advances only once the other party's decision is on record
    f. append ApprovalDecision + AuditEntry, commit with the new status

On failure the unit of work is rolled back, then the failed attempt's
AuditEntry is committed on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Mapping

from sqlalchemy.orm.exc import StaleDataError

from tracker.core.exceptions import (
    AuthorizationDenied,
    InvalidTransition,
    StaleVersionConflict,
    ValidationError,
    WorkflowError,
)
from tracker.models import db
from tracker.models.audit import OUTCOME_ADVANCED, OUTCOME_PENDING, write_audit
from tracker.models.tenancy import Project
from tracker.models.tracking import (
    APPROVAL_RECORD_TRANSITIONS,
    ATTESTATION_EDGES,
    COMPONENT_TRANSITIONS,
    DELIVERABLE_TRANSITIONS,
    DONE_STATUSES,
    MILESTONE_TRANSITIONS,
    OPTIONAL_EDGES,
    PLAN_ENTITY_TYPES,
    RECORD_ENTITY_TYPES,
    REJECTION_EDGES,
    TRANSITION_GATES,
    TrackedEntity,
)
from tracker.models.workflow_settings import WorkflowAction, WorkflowSettings
from tracker.services import approvals, baseline_tracker, policy_engine, tenancy_resolver
from tracker.services import workflow_settings_service
from tracker.services.notification import NotificationService

logger = logging.getLogger(__name__)


# ── Graphs ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Edge:
    from_state: str
    to_state: str
    gate: WorkflowAction | None = None
    is_rejection: bool = False
    optional: bool = False
    attests: WorkflowAction | None = None


class StateGraph:
    """Transition dict plus per-edge gate metadata for one entity type."""

    def __init__(
        self,
        entity_type: str,
        transitions: Mapping[str, list],
        *,
        gates: Mapping | None = None,
        rejections=frozenset(),
        optional=frozenset(),
        attestations: Mapping | None = None,
    ):
        gates = gates or {}
        attestations = attestations or {}
        self.entity_type = entity_type
        self.states = frozenset(transitions)
        self._edges = {}
        for src, targets in transitions.items():
            for dst in targets:
                key = (entity_type, src, dst)
                self._edges[(src, dst)] = Edge(
                    src,
                    dst,
                    gate=gates.get(key),
                    is_rejection=key in rejections,
                    optional=key in optional,
                    attests=attestations.get(key),
                )

    def edge(self, from_state: str, to_state: str) -> Edge | None:
        return self._edges.get((from_state, to_state))

    def successors(self, from_state: str, settings: WorkflowSettings) -> list[str]:
        """Legal next states.  Optional edges exist only while their gate is required."""
        result = []
        for (src, dst), edge in self._edges.items():
            if src != from_state:
                continue
            if edge.optional and edge.gate and not settings.get(edge.gate).required:
                continue
            result.append(dst)
        return result

    def is_terminal(self, state: str, settings: WorkflowSettings) -> bool:
        return not self.successors(state, settings)


def _entity_graph(entity_type, transitions):
    return StateGraph(
        entity_type,
        transitions,
        gates=TRANSITION_GATES,
        rejections=REJECTION_EDGES,
        optional=OPTIONAL_EDGES,
        attestations=ATTESTATION_EDGES,
    )


ENTITY_GRAPHS = {
    "component": _entity_graph("component", COMPONENT_TRANSITIONS),
    "milestone": _entity_graph("milestone", MILESTONE_TRANSITIONS),
    "deliverable": _entity_graph("deliverable", DELIVERABLE_TRANSITIONS),
    "timesheet": _entity_graph("timesheet", APPROVAL_RECORD_TRANSITIONS),
    "expense": _entity_graph("expense", APPROVAL_RECORD_TRANSITIONS),
}


# ── Result ───────────────────────────────────────────────────────────────────


@dataclass
class TransitionResult:
    advanced: bool
    subject: object
    from_state: str
    to_state: str
    pending_parties: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "advanced": self.advanced,
            "status": self.subject.status,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "pending_parties": list(self.pending_parties),
            "warnings": list(self.warnings),
            "subject": self.subject.to_dict(),
        }


# ── Machine ──────────────────────────────────────────────────────────────────


class WorkflowStateMachine:
    """Applies gated, audited transitions over a set of state graphs."""

    def __init__(self, graphs: Mapping[str, StateGraph] | None = None):
        self.graphs = dict(graphs if graphs is not None else ENTITY_GRAPHS)

    def graph_for(self, subject) -> StateGraph:
        graph = self.graphs.get(subject.entity_type)
        if graph is None:
            raise ValidationError(f"No workflow defined for {subject.entity_type}")
        return graph

    # ── Queries ──────────────────────────────────────────────────────────

    def available_transitions(self, subject, actor_id, context: Mapping | None = None) -> list[dict]:
        """Next states with whether *actor_id* may take each one right now."""
        graph = self.graph_for(subject)
        settings = workflow_settings_service.load(subject.project_id)
        access = tenancy_resolver.resolve(actor_id, subject.project_id)
        ctx = self._context(subject, context)

        options = []
        for to_state in graph.successors(subject.status, settings):
            edge = graph.edge(subject.status, to_state)
            req = (
                policy_engine.requirement(subject.entity_type, edge.gate, settings)
                if edge.gate else None
            )
            try:
                approvals.ensure_access(access)
                approvals.authorize(access, subject.entity_type, req, ctx)
                permitted = True
            except AuthorizationDenied:
                permitted = False
            options.append({
                "to_state": to_state,
                "permitted": permitted,
                "requirement": req.to_dict() if req else None,
                "is_rejection": edge.is_rejection,
            })
        return options

    # ── Mutation ─────────────────────────────────────────────────────────

    def transition(
        self,
        subject,
        to_state: str,
        actor_id,
        *,
        expected_version: int | None = None,
        context: Mapping | None = None,
        comment: str | None = None,
        on_advance: Callable | None = None,
    ) -> TransitionResult:
        """Move *subject* to *to_state* on behalf of *actor_id*.

        ``on_advance(subject)`` runs inside the same unit of work once the
        status has been set; anything it raises rolls the transition back.
        """
        graph = self.graph_for(subject)
        entity_type = subject.entity_type
        subject_id = subject.id
        project_id = subject.project_id
        from_state = subject.status
        project = db.session.get(Project, project_id)
        organisation_id = project.organisation_id if project else None
        access = tenancy_resolver.resolve(actor_id, project_id)

        log_extra = {
            "organisation_id": organisation_id,
            "project_id": project_id,
            "entity_id": subject_id,
            "actor_id": actor_id,
        }

        try:
            result = self._attempt(
                graph, subject, to_state, access,
                organisation_id=organisation_id,
                expected_version=expected_version,
                context=context,
                comment=comment,
                on_advance=on_advance,
            )
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            exc = StaleVersionConflict(entity_type, subject_id, expected=expected_version)
            self._record_failure(exc, subject_id, entity_type, access, actor_id,
                                 organisation_id, project_id, from_state, to_state)
            raise exc from None
        except WorkflowError as exc:
            db.session.rollback()
            self._record_failure(exc, subject_id, entity_type, access, actor_id,
                                 organisation_id, project_id, from_state, to_state)
            raise
        except Exception:
            db.session.rollback()
            raise

        if result.advanced:
            logger.info(
                "%s %s → %s", entity_type, from_state, to_state,
                extra={**log_extra, "outcome": OUTCOME_ADVANCED},
            )
            NotificationService.notify_transition(subject, from_state, to_state, access.user_id)
        else:
            logger.info(
                "%s %s → %s pending %s", entity_type, from_state, to_state, result.pending_parties,
                extra={**log_extra, "outcome": OUTCOME_PENDING},
            )
            NotificationService.notify_awaiting(
                subject, f"{from_state}->{to_state}", result.pending_parties, access.user_id
            )
        return result

    def _attempt(self, graph, subject, to_state, access, *, organisation_id,
                 expected_version, context, comment, on_advance) -> TransitionResult:
        entity_type = subject.entity_type
        from_state = subject.status

        if expected_version is not None and int(expected_version) != subject.version:
            raise StaleVersionConflict(
                entity_type, subject.id, expected=int(expected_version), actual=subject.version
            )

        if getattr(subject, "is_closed", False) or getattr(subject, "is_deleted", False):
            raise InvalidTransition(entity_type, to_state, from_state, [])

        settings = workflow_settings_service.load(subject.project_id)
        allowed = graph.successors(from_state, settings)
        if to_state not in allowed:
            raise InvalidTransition(entity_type, to_state, from_state, allowed)

        approvals.ensure_access(access)

        edge = graph.edge(from_state, to_state)
        ctx = self._context(subject, context)
        req = policy_engine.requirement(entity_type, edge.gate, settings) if edge.gate else None
        approvals.authorize(access, entity_type, req, ctx)

        advanced = True
        pending = []
        recorded = False
        if req is not None and req.required:
            if req.is_dual and not edge.is_rejection:
                party = policy_engine.party_for(access.role)
                have = approvals.approved_parties(entity_type, subject.id, req.action, subject.workflow_round)
                if party not in have:
                    self._decide(subject, req.action, access, "approved", comment)
                    recorded = True
                    have = have | {party}
                pending = sorted(policy_engine.BOTH_PARTIES - have)
                advanced = not pending
            else:
                self._decide(subject, req.action, access,
                             "rejected" if edge.is_rejection else "approved", comment)
                recorded = True

        if advanced:
            subject.status = to_state
            subject.workflow_round = (subject.workflow_round or 0) + 1
            if edge.attests:
                self._attest(subject, edge.attests, settings, access, ctx)
            if on_advance is not None:
                on_advance(subject)
        elif recorded:
            # Touch the row so a concurrent decision on the same round conflicts.
            subject.last_decision_at = datetime.now(timezone.utc)

        write_audit(
            entity_type=entity_type,
            entity_id=subject.id,
            outcome=OUTCOME_ADVANCED if advanced else OUTCOME_PENDING,
            organisation_id=organisation_id,
            project_id=subject.project_id,
            actor_id=access.user_id,
            actor_role=access.role,
            from_state=from_state,
            to_state=to_state,
            detail={
                "requirement": req.to_dict() if req else None,
                "pending_parties": pending,
                "duplicate": bool(req and req.is_dual and not recorded and not advanced),
                "comment": comment,
            },
        )

        warnings = []
        if advanced and isinstance(subject, TrackedEntity):
            warnings = self._child_warnings(subject, to_state)
            if entity_type in PLAN_ENTITY_TYPES:
                baseline_tracker.refresh(subject)

        return TransitionResult(advanced, subject, from_state, to_state, pending, warnings)

    def reverse_approval(self, entity: TrackedEntity, actor_id, reason: str, *,
                         expected_version: int | None = None) -> TransitionResult:
        """Administrative reversal of an approved timesheet or expense back to draft."""
        entity_type = entity.entity_type
        entity_id = entity.id
        project_id = entity.project_id
        from_state = entity.status
        project = db.session.get(Project, project_id)
        organisation_id = project.organisation_id if project else None
        access = tenancy_resolver.resolve(actor_id, project_id)

        try:
            if not reason or not str(reason).strip():
                raise ValidationError(
                    "A reason is required to reverse an approval", details={"field": "reason"}
                )
            if expected_version is not None and int(expected_version) != entity.version:
                raise StaleVersionConflict(
                    entity_type, entity_id, expected=int(expected_version), actual=entity.version
                )
            if entity_type not in RECORD_ENTITY_TYPES or from_state != "approved":
                raise InvalidTransition(entity_type, "draft", from_state, [])
            approvals.ensure_access(access)
            if not access.is_admin:
                raise AuthorizationDenied(
                    "Only an admin can reverse an approval",
                    details={"actor_role": access.role, "allowed_roles": ["admin"]},
                )

            entity.status = "draft"
            entity.workflow_round = (entity.workflow_round or 0) + 1
            approvals.record_decision(
                project_id=project_id,
                subject_type=entity_type,
                subject_id=entity_id,
                action=f"{entity_type}.approval",
                workflow_round=entity.workflow_round,
                access=access,
                decision="reversed",
                comment=reason,
            )
            write_audit(
                entity_type=entity_type,
                entity_id=entity_id,
                action="approval.reverse",
                outcome=OUTCOME_ADVANCED,
                organisation_id=organisation_id,
                project_id=project_id,
                actor_id=access.user_id,
                actor_role=access.role,
                from_state=from_state,
                to_state="draft",
                detail={"reason": reason},
            )
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            exc = StaleVersionConflict(entity_type, entity_id, expected=expected_version)
            self._record_failure(exc, entity_id, entity_type, access, actor_id, organisation_id,
                                 project_id, from_state, "draft", action="approval.reverse")
            raise exc from None
        except (WorkflowError, ValidationError) as exc:
            db.session.rollback()
            self._record_failure(exc, entity_id, entity_type, access, actor_id, organisation_id,
                                 project_id, from_state, "draft", action="approval.reverse")
            raise

        logger.warning(
            "Approval reversed on %s %s", entity_type, entity_id,
            extra={"organisation_id": organisation_id, "project_id": project_id,
                   "entity_id": entity_id, "actor_id": access.user_id},
        )
        NotificationService.notify_transition(entity, from_state, "draft", access.user_id)
        return TransitionResult(True, entity, from_state, "draft")

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _context(subject, context) -> dict:
        ctx = dict(context or {})
        # Stored attributes win over caller-supplied hints.
        if getattr(subject, "entity_type", None) == "expense":
            ctx["chargeable_to_customer"] = bool(subject.chargeable_to_customer)
        return ctx

    @staticmethod
    def _decide(subject, action, access, decision, comment):
        return approvals.record_decision(
            project_id=subject.project_id,
            subject_type=subject.entity_type,
            subject_id=subject.id,
            action=action,
            workflow_round=subject.workflow_round,
            access=access,
            decision=decision,
            comment=comment,
        )

    @staticmethod
    def _attest(subject, action, settings, access, ctx):
        """Record the completer's half of the next dual sign-off."""
        req = policy_engine.requirement(subject.entity_type, action, settings)
        if not req.required or not policy_engine.can_act(req, access.role, ctx):
            return None
        return approvals.record_decision(
            project_id=subject.project_id,
            subject_type=subject.entity_type,
            subject_id=subject.id,
            action=action,
            workflow_round=subject.workflow_round,
            access=access,
            decision="approved",
            comment="attested on completion",
        )

    @staticmethod
    def _child_warnings(entity: TrackedEntity, to_state: str) -> list[dict]:
        if to_state not in DONE_STATUSES:
            return []
        incomplete = [c for c in entity.open_children() if c.status not in DONE_STATUSES]
        if not incomplete:
            return []
        return [{
            "code": "INCOMPLETE_CHILDREN",
            "message": f"{len(incomplete)} child item(s) are not complete",
            "children": [{"id": c.id, "ref": c.ref, "status": c.status} for c in incomplete],
        }]

    @staticmethod
    def _record_failure(exc, subject_id, entity_type, access, actor_id, organisation_id,
                        project_id, from_state, to_state, action="transition"):
        approvals.record_failed_attempt(
            exc,
            subject_type=entity_type,
            subject_id=subject_id,
            access=access,
            actor_id=actor_id,
            organisation_id=organisation_id,
            project_id=project_id,
            from_state=from_state,
            to_state=to_state,
            action=action,
        )


machine = WorkflowStateMachine()
