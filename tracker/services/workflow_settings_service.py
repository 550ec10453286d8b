"""
Workflow settings store.

Reads always return a complete ``WorkflowSettings`` (defaults merged in), so
the policy engine never sees a missing key.  Writes validate the whole payload
before touching a row: either every key in the request is applied or none is.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from tracker.core.exceptions import AuthorizationDenied, NotFoundError, ValidationError
from tracker.models import db
from tracker.models.audit import OUTCOME_RECORDED, write_audit
from tracker.models.tenancy import Project
from tracker.models.workflow_settings import (
    ActionSetting,
    AuthorityMode,
    WorkflowAction,
    WorkflowSetting,
    WorkflowSettings,
)
from tracker.services import tenancy_resolver

logger = logging.getLogger(__name__)

SETTINGS_MANAGER_ROLES = frozenset({"admin", "supplier_pm"})


def load(project_id: int) -> WorkflowSettings:
    rows = db.session.execute(
        select(WorkflowSetting).where(WorkflowSetting.project_id == project_id)
    ).scalars()
    return WorkflowSettings({WorkflowAction(r.action_key): r.as_setting() for r in rows})


def _parse_entry(key, raw) -> tuple[WorkflowAction, ActionSetting]:
    try:
        action = WorkflowAction(key)
    except ValueError:
        raise ValidationError(f"Unknown workflow action: {key}", details={"key": key}) from None
    if not isinstance(raw, dict):
        raise ValidationError(f"{key} must be an object", details={"key": key})

    required = raw.get("required", True)
    if not isinstance(required, bool):
        raise ValidationError(f"{key}.required must be a boolean", details={"key": key})
    try:
        authority = AuthorityMode(raw.get("authority", ""))
    except ValueError:
        raise ValidationError(
            f"{key}.authority is invalid",
            details={"key": key, "allowed": [m.value for m in AuthorityMode]},
        ) from None
    return action, ActionSetting(required=required, authority=authority)


def update(project_id: int, payload: dict, actor_id) -> WorkflowSettings:
    """Replace the given keys' settings.  Keys not in *payload* are untouched."""
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)

    access = tenancy_resolver.resolve(actor_id, project_id)
    if access.role not in SETTINGS_MANAGER_ROLES:
        raise AuthorizationDenied(
            "Only an admin or the supplier PM can change workflow settings",
            details={"actor_role": access.role, "allowed_roles": sorted(SETTINGS_MANAGER_ROLES)},
        )

    if not isinstance(payload, dict) or not payload:
        raise ValidationError("At least one workflow setting is required")

    parsed = dict(_parse_entry(k, v) for k, v in payload.items())

    existing = {
        r.action_key: r
        for r in db.session.execute(
            select(WorkflowSetting).where(WorkflowSetting.project_id == project_id)
        ).scalars()
    }
    for action, setting in parsed.items():
        row = existing.get(action.value)
        if row is None:
            row = WorkflowSetting(project_id=project_id, action_key=action.value)
            db.session.add(row)
        row.required = setting.required
        row.authority = setting.authority.value
        row.updated_by = access.user_id

    write_audit(
        entity_type="project",
        entity_id=project_id,
        action="settings.update",
        outcome=OUTCOME_RECORDED,
        organisation_id=project.organisation_id,
        project_id=project_id,
        actor_id=access.user_id,
        actor_role=access.role,
        detail={a.value: s.to_dict() for a, s in parsed.items()},
    )
    db.session.commit()
    logger.info(
        "Workflow settings updated",
        extra={"project_id": project_id, "actor_id": access.user_id, "keys": sorted(a.value for a in parsed)},
    )
    return load(project_id)
