"""
Baseline tracker — commit, variance and breach detection for plan entities.

A project's plan (components, milestones, deliverables) is baselined exactly
once by a direct commit.  From then on:

    - adding or removing plan entities raises BaselineLocked and must go
      through an implemented Variation, which re-baselines only the entities
      it touches (``commit_entities``);
    - value edits (dates, effort, value) stay allowed and show up as variance.

Breach rule: a milestone breaches when any open child deliverable's current
due date is strictly later than the milestone's *baseline* end date.  An
equal date is not a breach.  Breaches cascade upward through ``is_at_risk``:
deliverable → milestone → component.

Timesheets and expenses are never baselined.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select

from tracker.core.exceptions import AlreadyBaselined, BaselineLocked, NotFoundError, WorkflowError
from tracker.models import db
from tracker.models.audit import OUTCOME_ADVANCED, OUTCOME_PENDING, write_audit
from tracker.models.tenancy import Project
from tracker.models.tracking import (
    PLAN_ENTITY_TYPES,
    Baseline,
    BaselineVersion,
    TrackedEntity,
)
from tracker.models.workflow_settings import WorkflowAction
from tracker.services import approvals, policy_engine, tenancy_resolver, workflow_settings_service
from tracker.services.notification import NotificationService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BreachInfo:
    entity_id: int
    entity_type: str
    baseline_end_date: object
    offending: tuple = ()

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "baseline_end_date": self.baseline_end_date.isoformat() if self.baseline_end_date else None,
            "offending": list(self.offending),
        }


@dataclass
class BaselineCommitResult:
    committed: bool
    project: Project
    baseline: Baseline | None = None
    pending_parties: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "committed": self.committed,
            "project": self.project.to_dict(),
            "baseline": self.baseline.to_dict() if self.baseline else None,
            "pending_parties": list(self.pending_parties),
        }


# ── Structural lock ─────────────────────────────────────────────────────────


def ensure_structure_unlocked(project: Project, operation: str) -> None:
    if project.is_baselined:
        raise BaselineLocked(
            f"Plan is baselined; {operation} must go through a variation",
            details={"project_id": project.id, "baseline_version": project.baseline_version},
        )


# ── Variance & breach ───────────────────────────────────────────────────────


def _delta(current, baseline):
    if current is None or baseline is None:
        return None
    return float(current - baseline)


def variance(entity: TrackedEntity) -> dict | None:
    """Current minus baseline, per dimension.  None before the entity is baselined."""
    if not entity.is_baselined:
        return None
    finish, baseline_finish = entity.planned_finish, entity.baseline_finish
    return {
        "schedule_delta_days": (finish - baseline_finish).days if finish and baseline_finish else None,
        "effort_delta_hours": _delta(entity.effort_hours, entity.baseline_effort_hours),
        "cost_delta": _delta(entity.value, entity.baseline_value),
    }


def _open_children(entity, entity_type):
    return entity.children.filter(
        TrackedEntity.closed_at.is_(None),
        TrackedEntity.entity_type == entity_type,
    ).order_by(TrackedEntity.id).all()


def _late_item(deliverable, baseline_end):
    return {
        "entity_id": deliverable.id,
        "ref": deliverable.ref,
        "due_date": deliverable.due_date.isoformat(),
        "days_over": (deliverable.due_date - baseline_end).days,
    }


def _milestone_breach(milestone):
    baseline_end = milestone.baseline_end_date
    if baseline_end is None or milestone.is_closed:
        return None
    late = [
        _late_item(d, baseline_end)
        for d in _open_children(milestone, "deliverable")
        if d.due_date is not None and d.due_date > baseline_end
    ]
    if not late:
        return None
    return BreachInfo(milestone.id, "milestone", baseline_end, tuple(late))


def detect_breach(entity: TrackedEntity) -> BreachInfo | None:
    if entity.entity_type == "milestone":
        return _milestone_breach(entity)

    if entity.entity_type == "deliverable":
        parent = entity.parent
        if (
            entity.is_closed
            or parent is None
            or parent.entity_type != "milestone"
            or parent.baseline_end_date is None
            or entity.due_date is None
        ):
            return None
        if entity.due_date > parent.baseline_end_date:
            return BreachInfo(
                entity.id, "deliverable", parent.baseline_end_date,
                (_late_item(entity, parent.baseline_end_date),),
            )
        return None

    if entity.entity_type == "component":
        late = []
        for milestone in _open_children(entity, "milestone"):
            breach = _milestone_breach(milestone)
            if breach:
                late.extend({"milestone_id": milestone.id, **item} for item in breach.offending)
        return BreachInfo(entity.id, "component", None, tuple(late)) if late else None

    return None


def refresh(entity: TrackedEntity) -> list[TrackedEntity]:
    """Recompute ``is_at_risk`` on *entity* and its ancestors.

    Returns the entities whose flag changed.
    """
    if entity.entity_type not in PLAN_ENTITY_TYPES:
        return []

    if entity.entity_type == "component":
        chain = _open_children(entity, "milestone") + [entity]
    else:
        chain = []
        node = entity
        while node is not None and node.entity_type in PLAN_ENTITY_TYPES:
            chain.append(node)
            node = node.parent

    changed = []
    for node in chain:
        at_risk = detect_breach(node) is not None
        if bool(node.is_at_risk) != at_risk:
            node.is_at_risk = at_risk
            changed.append(node)

    if changed:
        logger.info(
            "At-risk flags changed",
            extra={
                "project_id": entity.project_id,
                "entity_id": entity.id,
                "changed": [(n.id, n.is_at_risk) for n in changed],
            },
        )
    return changed


# ── Commit ───────────────────────────────────────────────────────────────────


def commit_entities(entities, baseline: Baseline) -> list[BaselineVersion]:
    """Snapshot current values of exactly *entities* into *baseline*."""
    db.session.flush()
    now = datetime.now(timezone.utc)
    versions = []
    for entity in entities:
        entity.baseline_start_date = entity.start_date
        entity.baseline_end_date = entity.end_date
        entity.baseline_due_date = entity.due_date
        entity.baseline_effort_hours = entity.effort_hours
        entity.baseline_value = entity.value
        entity.baseline_version = (entity.baseline_version or 0) + 1
        entity.baselined_at = now

        snapshot = BaselineVersion(
            entity_id=entity.id,
            baseline_id=baseline.id,
            version=entity.baseline_version,
            start_date=entity.start_date,
            end_date=entity.end_date,
            due_date=entity.due_date,
            effort_hours=entity.effort_hours,
            value=entity.value,
        )
        db.session.add(snapshot)
        versions.append(snapshot)

    baseline.entity_ids = sorted(e.id for e in entities)
    db.session.flush()

    for entity in entities:
        refresh(entity)
    return versions


def _lock_project(project_id) -> Project:
    project = db.session.execute(
        select(Project).where(Project.id == project_id).with_for_update()
    ).scalar_one_or_none()
    if project is None:
        raise NotFoundError("Project", project_id)
    return project


def _commit(project: Project, access) -> BaselineCommitResult:
    approvals.ensure_access(access)
    if project.is_baselined:
        raise AlreadyBaselined(
            "Project already has a baseline; changes go through a variation",
            details={
                "project_id": project.id,
                "baseline_version": project.baseline_version,
                "baseline_committed_at": project.baseline_committed_at.isoformat(),
            },
        )

    settings = workflow_settings_service.load(project.id)
    req = policy_engine.requirement("milestone", WorkflowAction.MILESTONE_BASELINE, settings)
    approvals.authorize(access, "milestone", req)

    pending = []
    if req.required:
        decision_round = project.baseline_version
        have = approvals.approved_parties("project", project.id, req.action, decision_round)
        party = policy_engine.party_for(access.role)
        if not (req.is_dual and party in have):
            approvals.record_decision(
                project_id=project.id,
                subject_type="project",
                subject_id=project.id,
                action=req.action,
                workflow_round=decision_round,
                access=access,
                decision="approved",
            )
            have = have | {party}
        if req.is_dual:
            pending = sorted(policy_engine.BOTH_PARTIES - have)

    audit_common = dict(
        entity_type="project",
        entity_id=project.id,
        action="baseline.commit",
        organisation_id=project.organisation_id,
        project_id=project.id,
        actor_id=access.user_id,
        actor_role=access.role,
    )

    if pending:
        write_audit(outcome=OUTCOME_PENDING, detail={"pending_parties": pending}, **audit_common)
        return BaselineCommitResult(False, project, None, pending)

    entities = list(
        db.session.execute(
            select(TrackedEntity)
            .where(
                TrackedEntity.project_id == project.id,
                TrackedEntity.entity_type.in_(PLAN_ENTITY_TYPES),
                TrackedEntity.closed_at.is_(None),
            )
            .order_by(TrackedEntity.id)
            .with_for_update()
        ).scalars()
    )

    baseline = Baseline(
        project_id=project.id,
        version=project.baseline_version + 1,
        source="commit",
        committed_by=access.user_id,
    )
    db.session.add(baseline)
    db.session.flush()
    commit_entities(entities, baseline)

    project.baseline_version = baseline.version
    project.baseline_committed_at = datetime.now(timezone.utc)

    write_audit(
        outcome=OUTCOME_ADVANCED,
        detail={"baseline_version": baseline.version, "entity_ids": baseline.entity_ids},
        **audit_common,
    )
    return BaselineCommitResult(True, project, baseline, [])


def commit(project_id: int, actor_id) -> BaselineCommitResult:
    """Commit the project's initial baseline (or record a pending party decision)."""
    project = _lock_project(project_id)
    organisation_id = project.organisation_id
    access = tenancy_resolver.resolve(actor_id, project_id)

    try:
        result = _commit(project, access)
        db.session.commit()
    except WorkflowError as exc:
        db.session.rollback()
        approvals.record_failed_attempt(
            exc,
            subject_type="project",
            subject_id=project_id,
            access=access,
            actor_id=actor_id,
            organisation_id=organisation_id,
            project_id=project_id,
            action="baseline.commit",
        )
        raise
    except Exception:
        db.session.rollback()
        raise

    log_extra = {"organisation_id": organisation_id, "project_id": project_id, "actor_id": access.user_id}
    if result.committed:
        logger.info("Baseline committed v%s", result.baseline.version, extra=log_extra)
        NotificationService.notify_baseline_committed(result.project, result.baseline, access.user_id)
    else:
        logger.info("Baseline commit pending %s", result.pending_parties, extra=log_extra)
        NotificationService.emit(
            "baseline.awaiting_approval",
            project_id=project_id,
            pending_parties=result.pending_parties,
            actor_id=access.user_id,
        )
    return result


# ── Reporting ────────────────────────────────────────────────────────────────


def variance_report(project_id: int) -> dict:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)

    entities = db.session.execute(
        select(TrackedEntity)
        .where(
            TrackedEntity.project_id == project_id,
            TrackedEntity.entity_type.in_(PLAN_ENTITY_TYPES),
            TrackedEntity.closed_at.is_(None),
        )
        .order_by(TrackedEntity.id)
    ).scalars()

    rows = []
    totals = {"cost_delta": 0.0, "effort_delta_hours": 0.0, "at_risk": 0}
    for entity in entities:
        v = variance(entity)
        breach = detect_breach(entity)
        rows.append({
            "id": entity.id,
            "ref": entity.ref,
            "name": entity.name,
            "entity_type": entity.entity_type,
            "parent_id": entity.parent_id,
            "status": entity.status,
            "is_at_risk": entity.is_at_risk,
            "variance": v,
            "breach": breach.to_dict() if breach else None,
        })
        if entity.entity_type == "milestone" and v:
            totals["cost_delta"] += v["cost_delta"] or 0.0
            totals["effort_delta_hours"] += v["effort_delta_hours"] or 0.0
        if entity.is_at_risk:
            totals["at_risk"] += 1

    return {
        "project_id": project.id,
        "is_baselined": project.is_baselined,
        "baseline_version": project.baseline_version,
        "entities": rows,
        "totals": totals,
    }


def baseline_history(entity_id: int) -> list[dict]:
    rows = db.session.execute(
        select(BaselineVersion, Baseline)
        .join(Baseline, Baseline.id == BaselineVersion.baseline_id)
        .where(BaselineVersion.entity_id == entity_id)
        .order_by(BaselineVersion.version)
    ).all()
    return [
        {**snapshot.to_dict(), "source": baseline.source, "variation_id": baseline.variation_id}
        for snapshot, baseline in rows
    ]
