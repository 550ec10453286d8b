"""
Project membership administration.

Granting a role upserts the single (user, project) row; revoking deletes it.
Neither operation touches ApprovalDecision or AuditEntry rows, so a revoked
member's past decisions stay on record.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from tracker.core.exceptions import AuthorizationDenied, NotFoundError, ValidationError
from tracker.models import db
from tracker.models.audit import OUTCOME_RECORDED, write_audit
from tracker.models.tenancy import PROJECT_ROLES, Project, ProjectMembership, User
from tracker.services import approvals

logger = logging.getLogger(__name__)

MEMBER_MANAGER_ROLES = frozenset({"admin", "supplier_pm"})


def _manager_access(project_id, actor_id):
    access = approvals.require_access(actor_id, project_id)
    if access.role not in MEMBER_MANAGER_ROLES:
        raise AuthorizationDenied(
            "Only an admin or the supplier PM can manage project members",
            details={"actor_role": access.role, "allowed_roles": sorted(MEMBER_MANAGER_ROLES)},
        )
    return access


def list_members(project_id) -> list[ProjectMembership]:
    return list(
        db.session.execute(
            select(ProjectMembership)
            .where(ProjectMembership.project_id == project_id)
            .order_by(ProjectMembership.id)
        ).scalars()
    )


def grant(project_id, user_id, role, actor_id) -> ProjectMembership:
    """Add *user_id* to the project, or change their role if already a member."""
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    if role not in PROJECT_ROLES:
        raise ValidationError(f"Invalid project role: {role}", details={"allowed": list(PROJECT_ROLES)})
    if db.session.get(User, user_id) is None:
        raise NotFoundError("User", user_id)

    access = _manager_access(project_id, actor_id)

    membership = db.session.execute(
        select(ProjectMembership).where(
            ProjectMembership.project_id == project_id,
            ProjectMembership.user_id == user_id,
        )
    ).scalar_one_or_none()
    previous = membership.project_role if membership else None
    if membership is None:
        membership = ProjectMembership(project_id=project_id, user_id=user_id, project_role=role)
        db.session.add(membership)
    else:
        membership.project_role = role
    db.session.flush()

    write_audit(
        entity_type="project_membership",
        entity_id=membership.id,
        action="membership.grant",
        outcome=OUTCOME_RECORDED,
        organisation_id=project.organisation_id,
        project_id=project_id,
        actor_id=access.user_id,
        actor_role=access.role,
        from_state=previous,
        to_state=role,
        detail={"user_id": user_id},
    )
    db.session.commit()
    logger.info(
        "Member role set %s → %s", previous, role,
        extra={"project_id": project_id, "actor_id": access.user_id, "member_id": user_id},
    )
    return membership


def revoke(project_id, user_id, actor_id) -> None:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    access = _manager_access(project_id, actor_id)

    membership = db.session.execute(
        select(ProjectMembership).where(
            ProjectMembership.project_id == project_id,
            ProjectMembership.user_id == user_id,
        )
    ).scalar_one_or_none()
    if membership is None:
        raise NotFoundError("ProjectMembership", f"{project_id}/{user_id}")

    write_audit(
        entity_type="project_membership",
        entity_id=membership.id,
        action="membership.revoke",
        outcome=OUTCOME_RECORDED,
        organisation_id=project.organisation_id,
        project_id=project_id,
        actor_id=access.user_id,
        actor_role=access.role,
        from_state=membership.project_role,
        detail={"user_id": user_id},
    )
    db.session.delete(membership)
    db.session.commit()
    logger.info(
        "Member revoked",
        extra={"project_id": project_id, "actor_id": access.user_id, "member_id": user_id},
    )
