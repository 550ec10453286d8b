"""
Planning service — create, edit and close tracked entities.

Status never changes here (that is the workflow engine's job).  Structural
rules:

    - before the project baseline: plan entities may be added, re-parented
      and closed freely;
    - after the baseline: adding, closing or re-parenting a plan entity
      raises BaselineLocked (use a Variation); value edits stay allowed and
      refresh the breach flags along the ancestor chain.

Timesheets and expenses are never baselined, but their values freeze once
submitted and stay frozen until a rejected record is returned to draft.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from tracker.core.exceptions import NotFoundError, StaleVersionConflict, ValidationError
from tracker.models import db
from tracker.models.audit import OUTCOME_RECORDED, write_audit
from tracker.models.tenancy import Project
from tracker.models.tracking import (
    ENTITY_TYPES,
    INITIAL_STATUS,
    PARENT_TYPES,
    PLAN_ENTITY_TYPES,
    RECORD_ENTITY_TYPES,
    TrackedEntity,
)
from tracker.services import approvals, baseline_tracker
from tracker.utils.helpers import parse_amount, parse_date

logger = logging.getLogger(__name__)

REF_PREFIX = {
    "component": "CMP",
    "milestone": "MS",
    "deliverable": "DEL",
    "timesheet": "TS",
    "expense": "EXP",
}

_DATE_FIELDS = ("start_date", "end_date", "due_date")
_AMOUNT_FIELDS = ("effort_hours", "value")
_TEXT_FIELDS = ("name", "description")
EDITABLE_FIELDS = _TEXT_FIELDS + _DATE_FIELDS + _AMOUNT_FIELDS + ("chargeable_to_customer", "parent_id")

# Records become editable again only after ``rejected -> draft``.
FROZEN_RECORD_STATUSES = frozenset({"submitted", "approved", "rejected"})


# ── Helpers ──────────────────────────────────────────────────────────────────


def next_ref(project_id: int, entity_type: str) -> str:
    count = db.session.execute(
        select(func.count(TrackedEntity.id)).where(
            TrackedEntity.project_id == project_id,
            TrackedEntity.entity_type == entity_type,
        )
    ).scalar_one()
    return f"{REF_PREFIX[entity_type]}-{count + 1:03d}"


def check_parent(project_id: int, entity_type: str, parent_id) -> TrackedEntity | None:
    """Validate *parent_id* for an entity of *entity_type*; returns the parent."""
    expected = PARENT_TYPES.get(entity_type)
    if parent_id is None:
        return None
    if expected is None:
        raise ValidationError(f"{entity_type} cannot have a parent", details={"field": "parent_id"})
    parent = db.session.get(TrackedEntity, parent_id)
    if (
        parent is None
        or parent.project_id != project_id
        or parent.entity_type != expected
        or parent.is_closed
    ):
        raise ValidationError(
            f"parent of a {entity_type} must be an open {expected} in the same project",
            details={"field": "parent_id", "parent_id": parent_id},
        )
    return parent


def assign_values(entity: TrackedEntity, data: dict) -> dict:
    """Copy editable fields from *data* onto *entity*.  Returns {field: (old, new)}."""
    changes = {}
    for key in EDITABLE_FIELDS:
        if key not in data:
            continue
        raw = data[key]
        if key in _DATE_FIELDS:
            value = parse_date(raw)
            if raw and value is None:
                raise ValidationError(f"Invalid date for {key}", details={"field": key})
        elif key in _AMOUNT_FIELDS:
            try:
                value = parse_amount(raw)
            except ValueError:
                raise ValidationError(f"Invalid amount for {key}", details={"field": key}) from None
            if value is not None and value < 0:
                raise ValidationError(f"{key} cannot be negative", details={"field": key})
        elif key == "chargeable_to_customer":
            value = bool(raw)
        elif key == "name":
            value = (raw or "").strip()
            if not value:
                raise ValidationError("name is required", details={"field": "name"})
        else:
            value = raw
        old = getattr(entity, key)
        if old != value:
            changes[key] = (old, value)
            setattr(entity, key, value)

    start = entity.start_date
    end = entity.end_date
    if start and end and end < start:
        raise ValidationError("end_date cannot be before start_date", details={"field": "end_date"})
    return changes


def close_subtree(entity: TrackedEntity) -> list[TrackedEntity]:
    """Soft-close *entity* and every open descendant."""
    closed = []
    for child in entity.open_children():
        closed.extend(close_subtree(child))
    entity.soft_close()
    closed.append(entity)
    return closed


def _project(project_id) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    return project


def _write_access(entity_type, project_id, actor_id):
    access = approvals.require_access(actor_id, project_id)
    approvals.authorize(access, entity_type, None)
    return access


def _commit(entity):
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise StaleVersionConflict(entity.entity_type, entity.id) from None


# ── Queries ──────────────────────────────────────────────────────────────────


def get_entity(entity_id) -> TrackedEntity:
    entity = db.session.get(TrackedEntity, entity_id)
    if entity is None:
        raise NotFoundError("TrackedEntity", entity_id)
    return entity


def list_entities(project_id, entity_type=None, include_closed=False) -> list[TrackedEntity]:
    stmt = select(TrackedEntity).where(TrackedEntity.project_id == project_id)
    if entity_type:
        stmt = stmt.where(TrackedEntity.entity_type == entity_type)
    if not include_closed:
        stmt = stmt.where(TrackedEntity.closed_at.is_(None))
    return list(db.session.execute(stmt.order_by(TrackedEntity.id)).scalars())


# ── Mutations ────────────────────────────────────────────────────────────────


def create_entity(project_id, data: dict, actor_id) -> TrackedEntity:
    project = _project(project_id)
    entity_type = data.get("entity_type")
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(
            f"Invalid entity_type: {entity_type}",
            details={"allowed": sorted(ENTITY_TYPES)},
        )
    access = _write_access(entity_type, project_id, actor_id)

    if entity_type in PLAN_ENTITY_TYPES:
        baseline_tracker.ensure_structure_unlocked(project, f"adding a {entity_type}")
    check_parent(project_id, entity_type, data.get("parent_id"))

    entity = TrackedEntity(
        project_id=project_id,
        entity_type=entity_type,
        status=INITIAL_STATUS[entity_type],
        ref=data.get("ref") or next_ref(project_id, entity_type),
        owner_id=access.user_id if entity_type in RECORD_ENTITY_TYPES else None,
    )
    if "name" not in data:
        raise ValidationError("name is required", details={"field": "name"})
    assign_values(entity, data)
    db.session.add(entity)
    db.session.flush()

    write_audit(
        entity_type=entity_type,
        entity_id=entity.id,
        action="entity.create",
        outcome=OUTCOME_RECORDED,
        organisation_id=project.organisation_id,
        project_id=project_id,
        actor_id=access.user_id,
        actor_role=access.role,
        to_state=entity.status,
    )
    db.session.commit()
    logger.info(
        "%s %s created", entity_type, entity.ref,
        extra={"project_id": project_id, "entity_id": entity.id, "actor_id": access.user_id},
    )
    return entity


def update_entity(entity: TrackedEntity, data: dict, actor_id, *, expected_version=None) -> TrackedEntity:
    project = _project(entity.project_id)
    access = _write_access(entity.entity_type, entity.project_id, actor_id)

    if expected_version is not None and int(expected_version) != entity.version:
        raise StaleVersionConflict(
            entity.entity_type, entity.id, expected=int(expected_version), actual=entity.version
        )
    if entity.is_closed:
        raise ValidationError("Closed entities cannot be edited")
    if entity.entity_type in RECORD_ENTITY_TYPES and entity.status in FROZEN_RECORD_STATUSES:
        raise ValidationError(
            f"{entity.entity_type} is {entity.status}; values are frozen",
            details={"status": entity.status},
        )

    unknown = set(data) - set(EDITABLE_FIELDS) - {"expected_version", "actor_id"}
    if unknown:
        raise ValidationError(
            f"Fields cannot be edited: {', '.join(sorted(unknown))}",
            details={"allowed": list(EDITABLE_FIELDS)},
        )

    if "parent_id" in data and data["parent_id"] != entity.parent_id:
        if entity.entity_type in PLAN_ENTITY_TYPES:
            baseline_tracker.ensure_structure_unlocked(project, "re-parenting")
        check_parent(entity.project_id, entity.entity_type, data["parent_id"])

    changes = assign_values(entity, data)
    if not changes:
        return entity

    previous_parent = None
    if "parent_id" in changes and changes["parent_id"][0] is not None:
        previous_parent = db.session.get(TrackedEntity, changes["parent_id"][0])

    if entity.entity_type in PLAN_ENTITY_TYPES:
        db.session.flush()
        baseline_tracker.refresh(entity)
        if previous_parent is not None:
            baseline_tracker.refresh(previous_parent)

    write_audit(
        entity_type=entity.entity_type,
        entity_id=entity.id,
        action="entity.update",
        outcome=OUTCOME_RECORDED,
        organisation_id=project.organisation_id,
        project_id=entity.project_id,
        actor_id=access.user_id,
        actor_role=access.role,
        detail={k: {"old": old, "new": new} for k, (old, new) in changes.items()},
    )
    _commit(entity)
    return entity


def close_entity(entity: TrackedEntity, actor_id, *, expected_version=None) -> TrackedEntity:
    project = _project(entity.project_id)
    access = _write_access(entity.entity_type, entity.project_id, actor_id)

    if expected_version is not None and int(expected_version) != entity.version:
        raise StaleVersionConflict(
            entity.entity_type, entity.id, expected=int(expected_version), actual=entity.version
        )
    if entity.is_closed:
        return entity

    if entity.entity_type in PLAN_ENTITY_TYPES:
        baseline_tracker.ensure_structure_unlocked(project, f"removing a {entity.entity_type}")
        if entity.open_children():
            raise ValidationError(
                "Close or move the child items first",
                details={"children": [c.id for c in entity.open_children()]},
            )
    elif entity.status not in ("draft", "rejected"):
        raise ValidationError(
            f"Only draft or rejected {entity.entity_type}s can be removed",
            details={"status": entity.status},
        )

    parent = entity.parent
    entity.soft_close()
    if parent is not None:
        db.session.flush()
        baseline_tracker.refresh(parent)

    write_audit(
        entity_type=entity.entity_type,
        entity_id=entity.id,
        action="entity.close",
        outcome=OUTCOME_RECORDED,
        organisation_id=project.organisation_id,
        project_id=entity.project_id,
        actor_id=access.user_id,
        actor_role=access.role,
        from_state=entity.status,
    )
    _commit(entity)
    return entity
