"""
Tenancy resolver — "which role does this user hold on this project, right now".

Resolution order (first match wins):
    1. User.is_system_admin                      → admin   (system_override)
    2. OrgMembership owner/admin in the owning org → admin (org_override)
    3. ProjectMembership                          → its role (explicit_membership)
    4. nothing                                    → none    (denied)

Unknown users and unknown projects resolve to ``none``; the resolver never
raises for a missing row.  There is no role cache: every call reads the store,
so a revoked membership takes effect on the very next request.

Membership visibility
---------------------
Whether a requester may see a membership row depends on exactly one thing:
``row.user_id == requester``.  The predicate is a SQLAlchemy clause and is
checked by ``guard_row_predicate`` when this module is imported.  A predicate
that reaches into another table or embeds a sub-select (the construction that
recursed in the row-security policies this replaces) fails at import time, not
in production.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import bindparam, select
from sqlalchemy.sql import visitors
from sqlalchemy.sql.util import find_tables

from tracker.models import db
from tracker.models.tenancy import (
    ORG_ADMIN_ROLES,
    OrgMembership,
    Project,
    ProjectMembership,
    User,
)

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_NONE = "none"

SOURCE_SYSTEM = "system_override"
SOURCE_ORG = "org_override"
SOURCE_EXPLICIT = "explicit_membership"
SOURCE_DENIED = "denied"


@dataclass(frozen=True)
class EffectiveAccess:
    """Resolved role of one user on one project."""

    role: str
    source: str
    user_id: int | None = None
    project_id: int | None = None
    organisation_id: int | None = None

    @property
    def has_access(self) -> bool:
        return self.role != ROLE_NONE

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "source": self.source,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "organisation_id": self.organisation_id,
        }


# ── Row predicate guard ──────────────────────────────────────────────────────

_NESTED_QUERY_NODES = frozenset({
    "select",
    "scalar_select",
    "subquery",
    "compound_select",
    "lateral",
    "cte",
    "exists",
})


class UnsafeRowPredicate(Exception):
    """Row predicate is not a plain comparison on the protected table."""


def guard_row_predicate(clause, table):
    """Return *clause* unchanged if it only touches *table*'s own columns.

    Raises UnsafeRowPredicate when the clause contains any nested query or
    references a column of another table.
    """
    for element in visitors.iterate(clause):
        visit_name = getattr(element, "__visit_name__", None)
        if visit_name in _NESTED_QUERY_NODES:
            raise UnsafeRowPredicate(
                f"Row predicate for {table.name} contains a nested query ({visit_name})"
            )

    referenced = {t.name for t in find_tables(clause, check_columns=True)}
    foreign = referenced - {table.name}
    if foreign:
        raise UnsafeRowPredicate(
            f"Row predicate for {table.name} references other tables: {sorted(foreign)}"
        )
    if table.name not in referenced:
        raise UnsafeRowPredicate(f"Row predicate does not reference {table.name}")
    return clause


MEMBERSHIP_VISIBILITY = guard_row_predicate(
    ProjectMembership.user_id == bindparam("requester_id"),
    ProjectMembership.__table__,
)


# ── Resolution ───────────────────────────────────────────────────────────────


def _denied(user_id, project_id, organisation_id=None) -> EffectiveAccess:
    return EffectiveAccess(ROLE_NONE, SOURCE_DENIED, user_id, project_id, organisation_id)


def resolve(user_id, project_id) -> EffectiveAccess:
    """Resolve the effective role of *user_id* on *project_id*."""
    project = db.session.get(Project, project_id) if project_id is not None else None
    if project is None:
        return _denied(user_id, project_id)

    user = db.session.get(User, user_id) if user_id is not None else None
    if user is None:
        return _denied(user_id, project.id, project.organisation_id)

    if user.is_system_admin:
        return EffectiveAccess(ROLE_ADMIN, SOURCE_SYSTEM, user.id, project.id, project.organisation_id)

    org_role = db.session.execute(
        select(OrgMembership.org_role).where(
            OrgMembership.user_id == user.id,
            OrgMembership.organisation_id == project.organisation_id,
        )
    ).scalar_one_or_none()
    if org_role in ORG_ADMIN_ROLES:
        return EffectiveAccess(ROLE_ADMIN, SOURCE_ORG, user.id, project.id, project.organisation_id)

    project_role = db.session.execute(
        select(ProjectMembership.project_role).where(
            MEMBERSHIP_VISIBILITY,
            ProjectMembership.project_id == project.id,
        ),
        {"requester_id": user.id},
    ).scalar_one_or_none()
    if project_role:
        return EffectiveAccess(
            project_role, SOURCE_EXPLICIT, user.id, project.id, project.organisation_id
        )

    return _denied(user.id, project.id, project.organisation_id)


def visible_memberships(requester_id) -> list[ProjectMembership]:
    """Membership rows the requester may see: their own, nothing else."""
    if requester_id is None:
        return []
    return list(
        db.session.execute(
            select(ProjectMembership)
            .where(MEMBERSHIP_VISIBILITY)
            .order_by(ProjectMembership.project_id),
            {"requester_id": requester_id},
        ).scalars()
    )


def accessible_project_ids(user_id) -> list[int]:
    """Projects reachable through any override or an explicit membership."""
    user = db.session.get(User, user_id) if user_id is not None else None
    if user is None:
        return []

    if user.is_system_admin:
        return list(db.session.execute(select(Project.id).order_by(Project.id)).scalars())

    admin_orgs = select(OrgMembership.organisation_id).where(
        OrgMembership.user_id == user.id,
        OrgMembership.org_role.in_(ORG_ADMIN_ROLES),
    )
    ids = set(
        db.session.execute(
            select(Project.id).where(Project.organisation_id.in_(admin_orgs))
        ).scalars()
    )
    ids.update(m.project_id for m in visible_memberships(user.id))
    return sorted(ids)
