"""
Variation processor — formal change control over a committed baseline.

Lifecycle (own state machine over the variation graph):

    draft ──submit──▶ submitted ──approve (variation.approval)──▶ approved ──implement──▶ implemented
                          └────reject──▶ rejected

Submitting captures the current baseline of every targeted entity and
computes the variation's total cost and schedule impact.  Implementing first
re-checks that capture against the live baseline, then, in one unit of work:

    1. applies every add / remove / modify operation,
    2. re-baselines exactly the entities those operations touched,
    3. marks the variation implemented.

Any failure in 1–2 rolls all of it back, leaves the variation ``approved``,
logs a system fault and raises PartialApplyFailure.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from tracker.core.exceptions import (
    NotFoundError,
    PartialApplyFailure,
    ValidationError,
    VariationNotApproved,
    WorkflowError,
)
from tracker.models import db
from tracker.models.audit import OUTCOME_RECORDED, write_audit
from tracker.models.tenancy import Project
from tracker.models.tracking import (
    INITIAL_STATUS,
    PLAN_ENTITY_TYPES,
    Baseline,
    TrackedEntity,
)
from tracker.models.variation import (
    CHANGE_FIELDS,
    CHANGE_OPS,
    DELETABLE_STATUSES,
    PENDING_STATUSES,
    VARIATION_GATES,
    VARIATION_REJECTION_EDGES,
    VARIATION_TRANSITIONS,
    VARIATION_TYPES,
    Variation,
    VariationChange,
)
from tracker.services import approvals, baseline_tracker, planning_service, tenancy_resolver
from tracker.services.notification import NotificationService
from tracker.services.workflow_engine import StateGraph, WorkflowStateMachine
from tracker.utils.helpers import parse_amount, parse_date

logger = logging.getLogger(__name__)

VARIATION_GRAPH = StateGraph(
    "variation",
    VARIATION_TRANSITIONS,
    gates=VARIATION_GATES,
    rejections=VARIATION_REJECTION_EDGES,
)

_DATE_FIELDS = ("start_date", "end_date", "due_date")
_AMOUNT_FIELDS = ("effort_hours", "value")


def _iso(value):
    return value.isoformat() if value else None


def _num(value):
    return float(value) if value is not None else None


def baseline_snapshot(entity: TrackedEntity) -> dict:
    """The baseline values a variation was drafted against."""
    return {
        "baseline_version": entity.baseline_version,
        "start_date": _iso(entity.baseline_start_date),
        "end_date": _iso(entity.baseline_end_date),
        "due_date": _iso(entity.baseline_due_date),
        "effort_hours": _num(entity.baseline_effort_hours),
        "value": _num(entity.baseline_value),
    }


def _clean_payload(raw: dict) -> dict:
    """Validate a change payload and normalise it to JSON-safe values."""
    if not isinstance(raw, dict):
        raise ValidationError("Change payload must be an object")
    unknown = set(raw) - set(CHANGE_FIELDS) - {"parent_id", "description"}
    if unknown:
        raise ValidationError(
            f"Unsupported change fields: {', '.join(sorted(unknown))}",
            details={"allowed": list(CHANGE_FIELDS) + ["parent_id", "description"]},
        )
    payload = {}
    for key, value in raw.items():
        if key in _DATE_FIELDS:
            parsed = parse_date(value)
            if value and parsed is None:
                raise ValidationError(f"Invalid date for {key}", details={"field": key})
            payload[key] = _iso(parsed)
        elif key in _AMOUNT_FIELDS:
            try:
                amount = parse_amount(value)
            except ValueError:
                raise ValidationError(f"Invalid amount for {key}", details={"field": key}) from None
            payload[key] = _num(amount)
        elif key == "parent_id":
            payload[key] = int(value) if value is not None else None
        else:
            payload[key] = value
    return payload


class VariationProcessor:
    """Change-control workflow wrapping its own state machine."""

    def __init__(self):
        self.machine = WorkflowStateMachine({"variation": VARIATION_GRAPH})

    # ── Queries ──────────────────────────────────────────────────────────

    @staticmethod
    def get(variation_id) -> Variation:
        variation = db.session.get(Variation, variation_id)
        if variation is None or variation.is_deleted:
            raise NotFoundError("Variation", variation_id)
        return variation

    @staticmethod
    def list_for_project(project_id, status=None) -> list[Variation]:
        stmt = select(Variation).where(
            Variation.project_id == project_id,
            Variation.deleted_at.is_(None),
        )
        if status:
            stmt = stmt.where(Variation.status == status)
        return list(db.session.execute(stmt.order_by(Variation.id)).scalars())

    @staticmethod
    def summary(project_id) -> dict:
        summary = {
            "total": 0, "draft": 0, "pending": 0, "approved": 0,
            "implemented": 0, "rejected": 0,
            "total_cost_impact": 0.0, "total_days_impact": 0,
        }
        for v in VariationProcessor.list_for_project(project_id):
            summary["total"] += 1
            if v.status == "submitted":
                summary["pending"] += 1
            else:
                summary[v.status] += 1
            if v.status == "implemented":
                summary["total_cost_impact"] += float(v.total_cost_impact or 0)
                summary["total_days_impact"] += v.total_days_impact or 0
        return summary

    @staticmethod
    def has_pending_variation(entity_id) -> bool:
        """True when an open variation (draft/submitted/approved) targets the entity."""
        hit = db.session.execute(
            select(VariationChange.id)
            .join(Variation, Variation.id == VariationChange.variation_id)
            .where(
                VariationChange.target_id == entity_id,
                Variation.status.in_(PENDING_STATUSES),
                Variation.deleted_at.is_(None),
            )
            .limit(1)
        ).first()
        return hit is not None

    # ── Drafting ─────────────────────────────────────────────────────────

    def create(self, project_id, data: dict, actor_id) -> Variation:
        project = db.session.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        access = approvals.require_access(actor_id, project_id)
        approvals.authorize(access, "variation", None)

        if not project.is_baselined:
            raise ValidationError("Project has no baseline yet; edit the plan directly")

        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required", details={"field": "title"})
        variation_type = data.get("variation_type", "combined")
        if variation_type not in VARIATION_TYPES:
            raise ValidationError(
                f"Invalid variation_type: {variation_type}",
                details={"allowed": sorted(VARIATION_TYPES)},
            )

        changes = [self._build_change(project, raw) for raw in data.get("changes") or []]

        count = db.session.execute(
            select(func.count(Variation.id)).where(Variation.project_id == project_id)
        ).scalar_one()
        variation = Variation(
            project_id=project_id,
            ref=f"VAR-{count + 1:03d}",
            title=title,
            description=data.get("description"),
            reason=data.get("reason"),
            variation_type=variation_type,
            status="draft",
            created_by=access.user_id,
        )
        variation.changes.extend(changes)
        db.session.add(variation)
        db.session.flush()

        write_audit(
            entity_type="variation",
            entity_id=variation.id,
            action="variation.create",
            outcome=OUTCOME_RECORDED,
            organisation_id=project.organisation_id,
            project_id=project_id,
            actor_id=access.user_id,
            actor_role=access.role,
            to_state="draft",
            detail={"ref": variation.ref, "changes": len(changes)},
        )
        db.session.commit()
        logger.info(
            "Variation %s created", variation.ref,
            extra={"project_id": project_id, "entity_id": variation.id, "actor_id": access.user_id},
        )
        return variation

    def add_change(self, variation: Variation, data: dict, actor_id) -> VariationChange:
        if variation.status != "draft":
            raise ValidationError("Changes can only be added while the variation is a draft")
        access = approvals.require_access(actor_id, variation.project_id)
        approvals.authorize(access, "variation", None)

        project = db.session.get(Project, variation.project_id)
        change = self._build_change(project, data)
        variation.changes.append(change)
        db.session.commit()
        return change

    @staticmethod
    def _build_change(project: Project, raw: dict) -> VariationChange:
        op = raw.get("op")
        if op not in CHANGE_OPS:
            raise ValidationError(f"Invalid change op: {op}", details={"allowed": sorted(CHANGE_OPS)})

        payload = _clean_payload(raw.get("payload") or {})

        if op == "add":
            entity_type = raw.get("entity_type")
            if entity_type not in PLAN_ENTITY_TYPES:
                raise ValidationError(
                    "add requires a plan entity_type",
                    details={"allowed": sorted(PLAN_ENTITY_TYPES)},
                )
            if not payload.get("name"):
                raise ValidationError("add requires payload.name", details={"field": "name"})
            planning_service.check_parent(project.id, entity_type, payload.get("parent_id"))
            return VariationChange(op=op, entity_type=entity_type, payload=payload,
                                   rationale=raw.get("rationale"))

        target = db.session.get(TrackedEntity, raw.get("target_id"))
        if (
            target is None
            or target.project_id != project.id
            or target.entity_type not in PLAN_ENTITY_TYPES
            or target.is_closed
        ):
            raise ValidationError(
                f"{op} requires an open plan entity of this project",
                details={"target_id": raw.get("target_id")},
            )
        if op == "modify" and not payload:
            raise ValidationError("modify requires at least one field in payload")
        if "parent_id" in payload:
            raise ValidationError("Re-parenting is not supported by a variation")
        return VariationChange(op=op, target_id=target.id, entity_type=target.entity_type,
                               payload=payload, rationale=raw.get("rationale"))

    def delete(self, variation: Variation, actor_id) -> Variation:
        """Soft-delete a draft, submitted or rejected variation."""
        if variation.status not in DELETABLE_STATUSES:
            raise ValidationError(
                "Only draft, submitted or rejected variations can be deleted",
                details={"status": variation.status},
            )
        access = approvals.require_access(actor_id, variation.project_id)
        approvals.authorize(access, "variation", None)

        project = db.session.get(Project, variation.project_id)
        variation.deleted_at = datetime.now(timezone.utc)
        variation.deleted_by = access.user_id
        write_audit(
            entity_type="variation",
            entity_id=variation.id,
            action="variation.delete",
            outcome=OUTCOME_RECORDED,
            organisation_id=project.organisation_id,
            project_id=variation.project_id,
            actor_id=access.user_id,
            actor_role=access.role,
            from_state=variation.status,
        )
        db.session.commit()
        return variation

    # ── Workflow ─────────────────────────────────────────────────────────

    def submit(self, variation: Variation, actor_id, *, expected_version=None):
        if variation.status == "draft" and not variation.changes:
            exc = ValidationError("A variation needs at least one change before submission")
            project = db.session.get(Project, variation.project_id)
            self._audit_failure(exc, variation, actor_id, project.organisation_id, to_state="submitted")
            raise exc
        return self.machine.transition(
            variation, "submitted", actor_id,
            expected_version=expected_version,
            on_advance=self._capture_and_price,
        )

    def approve(self, variation: Variation, actor_id, *, expected_version=None, comment=None):
        def _stamp(v):
            v.approved_at = datetime.now(timezone.utc)

        return self.machine.transition(
            variation, "approved", actor_id,
            expected_version=expected_version, comment=comment, on_advance=_stamp,
        )

    def reject(self, variation: Variation, actor_id, *, reason=None, expected_version=None):
        def _stamp(v):
            v.rejected_at = datetime.now(timezone.utc)
            v.rejection_reason = reason

        return self.machine.transition(
            variation, "rejected", actor_id,
            expected_version=expected_version, comment=reason, on_advance=_stamp,
        )

    def implement(self, variation: Variation, actor_id, *, expected_version=None):
        variation_id = variation.id
        project_id = variation.project_id
        organisation_id = db.session.get(Project, project_id).organisation_id

        if variation.status != "approved":
            exc = VariationNotApproved(
                f"Variation {variation.ref} is {variation.status}; only approved variations can be implemented",
                details={"status": variation.status},
            )
            self._audit_failure(exc, variation, actor_id, organisation_id)
            raise exc

        problems = self.stale_changes(variation)
        if problems:
            exc = ValidationError(
                "Variation no longer matches the current baseline",
                details={"problems": problems},
            )
            self._audit_failure(exc, variation, actor_id, organisation_id)
            raise exc

        try:
            return self.machine.transition(
                variation, "implemented", actor_id,
                expected_version=expected_version,
                on_advance=lambda v: self._apply(v, actor_id),
            )
        except PartialApplyFailure as exc:
            NotificationService.notify_system_fault(project_id, "variation", variation_id, exc)
            raise

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _capture_and_price(variation: Variation):
        total_cost = 0.0
        total_days = 0
        for change in variation.changes:
            payload = change.payload or {}
            if change.op == "add":
                change.original_baseline = None
                total_cost += payload.get("value") or 0.0
                continue

            target = db.session.get(TrackedEntity, change.target_id)
            original = baseline_snapshot(target)
            change.original_baseline = original

            if change.op == "remove":
                total_cost -= original["value"] or 0.0
                continue

            if "value" in payload and payload["value"] is not None:
                total_cost += payload["value"] - (original["value"] or 0.0)
            finish_key = "due_date" if target.entity_type == "deliverable" else "end_date"
            if payload.get(finish_key) and original[finish_key]:
                delta = parse_date(payload[finish_key]) - parse_date(original[finish_key])
                total_days += delta.days

        variation.total_cost_impact = round(total_cost, 2)
        variation.total_days_impact = total_days
        variation.submitted_at = datetime.now(timezone.utc)

    @staticmethod
    def stale_changes(variation: Variation) -> list[dict]:
        """Changes whose target vanished or whose baseline moved since submission."""
        problems = []
        for change in variation.changes:
            if change.op == "add":
                continue
            target = db.session.get(TrackedEntity, change.target_id) if change.target_id else None
            if target is None or target.is_closed:
                problems.append({"change_id": change.id, "problem": "target missing or closed"})
            elif change.original_baseline != baseline_snapshot(target):
                problems.append({"change_id": change.id, "problem": "baseline changed since submission"})
        return problems

    def _apply(self, variation: Variation, actor_id):
        try:
            project = db.session.execute(
                select(Project).where(Project.id == variation.project_id).with_for_update()
            ).scalar_one()
            rebaseline, parents = [], []
            for change in variation.changes:
                entity = self._apply_change(project, change)
                if change.op == "remove":
                    parents.append(entity.parent)
                else:
                    rebaseline.append(entity)

            baseline = Baseline(
                project_id=project.id,
                version=project.baseline_version + 1,
                source="variation",
                variation_id=variation.id,
                committed_by=actor_id,
            )
            db.session.add(baseline)
            db.session.flush()
            baseline_tracker.commit_entities(rebaseline, baseline)
            for parent in parents:
                if parent is not None:
                    baseline_tracker.refresh(parent)

            project.baseline_version = baseline.version
            variation.baseline_version_after = baseline.version
            variation.implemented_at = datetime.now(timezone.utc)
        except WorkflowError:
            raise
        except Exception as exc:
            logger.exception(
                "Variation %s failed to apply; all changes rolled back", variation.ref,
                extra={"project_id": variation.project_id, "entity_id": variation.id},
            )
            raise PartialApplyFailure(
                f"Variation {variation.ref} could not be applied; no changes were made",
                details={"variation_id": variation.id, "cause": type(exc).__name__},
            ) from exc

    @staticmethod
    def _apply_change(project: Project, change: VariationChange) -> TrackedEntity:
        payload = dict(change.payload or {})

        if change.op == "add":
            entity = TrackedEntity(
                project_id=project.id,
                entity_type=change.entity_type,
                status=INITIAL_STATUS[change.entity_type],
                ref=planning_service.next_ref(project.id, change.entity_type),
            )
            planning_service.assign_values(entity, payload)
            db.session.add(entity)
            db.session.flush()
            change.applied_entity_id = entity.id
            return entity

        entity = db.session.execute(
            select(TrackedEntity).where(TrackedEntity.id == change.target_id).with_for_update()
        ).scalar_one()
        if change.op == "remove":
            planning_service.close_subtree(entity)
        else:
            planning_service.assign_values(entity, payload)
        change.applied_entity_id = entity.id
        return entity

    @staticmethod
    def _audit_failure(exc, variation, actor_id, organisation_id, to_state="implemented"):
        approvals.record_failed_attempt(
            exc,
            subject_type="variation",
            subject_id=variation.id,
            access=tenancy_resolver.resolve(actor_id, variation.project_id),
            actor_id=actor_id,
            organisation_id=organisation_id,
            project_id=variation.project_id,
            from_state=variation.status,
            to_state=to_state,
        )


processor = VariationProcessor()
