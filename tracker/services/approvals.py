"""
Approval decisions and attempt auditing shared by every workflow surface.

The state machine, the baseline commit and the variation processor all follow
the same steps for a gated action:

    access = require_access(actor_id, project_id)
    authorize(access, entity_type, requirement, context)
    record_decision(...)          # the caller's party decision
    approved_parties(...)         # who has already decided in this round

and all of them, when an attempt fails, roll back and then persist one
AuditEntry for the failed attempt via ``record_failed_attempt``.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from tracker.core.exceptions import AuthorizationDenied, ValidationError, WorkflowError
from tracker.models import db
from tracker.models.audit import AuditEntry, write_audit
from tracker.models.tenancy import User
from tracker.models.tracking import ApprovalDecision
from tracker.services import policy_engine, tenancy_resolver
from tracker.services.tenancy_resolver import EffectiveAccess

logger = logging.getLogger(__name__)


def require_access(actor_id, project_id) -> EffectiveAccess:
    access = tenancy_resolver.resolve(actor_id, project_id)
    if not access.has_access:
        raise AuthorizationDenied(
            "No access to this project",
            details={"actor_id": actor_id, "project_id": project_id, "actor_role": access.role},
        )
    return access


def ensure_access(access: EffectiveAccess) -> EffectiveAccess:
    if not access.has_access:
        raise AuthorizationDenied(
            "No access to this project",
            details={"actor_id": access.user_id, "project_id": access.project_id, "actor_role": access.role},
        )
    return access


def authorize(access: EffectiveAccess, entity_type: str, req, context=None) -> None:
    """Raise AuthorizationDenied unless *access* may perform the edge.

    Ungated edges and gated-but-not-required edges need write capability on
    the entity type.  Required gates need the policy's approval authority.
    """
    if req is None or not req.required:
        if not policy_engine.has_write_capability(entity_type, access.role):
            raise AuthorizationDenied(
                f"Role {access.role} cannot modify {entity_type} records",
                details=policy_engine.explain_write(entity_type, access.role),
            )
        return

    if not policy_engine.can_act(req, access.role, context):
        details = policy_engine.explain(req, access.role, context)
        raise AuthorizationDenied(
            f"{req.action.value} requires one of: {', '.join(details['allowed_roles'])}",
            details=details,
        )


def approved_parties(subject_type: str, subject_id, action, workflow_round: int) -> set[str]:
    """Parties with an ``approved`` decision for *action* in the given round."""
    rows = db.session.execute(
        select(ApprovalDecision.party).where(
            ApprovalDecision.subject_type == subject_type,
            ApprovalDecision.subject_id == str(subject_id),
            ApprovalDecision.action == _key(action),
            ApprovalDecision.workflow_round == workflow_round,
            ApprovalDecision.decision == "approved",
        )
    ).scalars()
    return {p for p in rows if p}


def record_decision(
    *,
    project_id: int,
    subject_type: str,
    subject_id,
    action,
    workflow_round: int,
    access: EffectiveAccess,
    decision: str,
    comment: str | None = None,
) -> ApprovalDecision:
    row = ApprovalDecision(
        project_id=project_id,
        subject_type=subject_type,
        subject_id=str(subject_id),
        action=_key(action),
        workflow_round=workflow_round,
        role=access.role,
        party=policy_engine.party_for(access.role),
        actor_id=access.user_id,
        decision=decision,
        comment=comment,
    )
    db.session.add(row)
    return row


def record_failed_attempt(
    exc: WorkflowError | ValidationError,
    *,
    subject_type: str,
    subject_id,
    access: EffectiveAccess | None,
    actor_id=None,
    organisation_id: int | None = None,
    project_id: int | None = None,
    from_state: str | None = None,
    to_state: str | None = None,
    action: str = "transition",
) -> None:
    """Persist the audit row for a failed attempt in its own transaction.

    Must be called after the failed unit of work was rolled back.
    """
    try:
        write_audit(
            entity_type=subject_type,
            entity_id=subject_id,
            action=action,
            outcome=exc.code,
            organisation_id=organisation_id,
            project_id=project_id,
            actor_id=_known_user_id(access.user_id if access is not None else actor_id),
            actor_role=access.role if access is not None else None,
            from_state=from_state,
            to_state=to_state,
            authorized=not isinstance(exc, AuthorizationDenied),
            detail={"error": getattr(exc, "message", str(exc)), "actor_ref": actor_id, **exc.details},
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception(
            "Could not audit failed %s on %s/%s", action, subject_type, subject_id,
            extra={"project_id": project_id, "outcome": exc.code},
        )

    logger.info(
        "Workflow attempt rejected: %s", exc.code,
        extra={
            "organisation_id": organisation_id,
            "project_id": project_id,
            "entity_id": str(subject_id),
            "actor_id": actor_id,
            "outcome": exc.code,
        },
    )


def history(subject_type: str, subject_id) -> dict:
    """Decisions and audit trail for one subject, oldest first."""
    decisions = db.session.execute(
        select(ApprovalDecision)
        .where(
            ApprovalDecision.subject_type == subject_type,
            ApprovalDecision.subject_id == str(subject_id),
        )
        .order_by(ApprovalDecision.id)
    ).scalars()
    audit = db.session.execute(
        select(AuditEntry)
        .where(
            AuditEntry.entity_type == subject_type,
            AuditEntry.entity_id == str(subject_id),
        )
        .order_by(AuditEntry.id)
    ).scalars()
    return {
        "decisions": [d.to_dict() for d in decisions],
        "audit": [a.to_dict() for a in audit],
    }


def _key(action) -> str:
    return getattr(action, "value", action)


def _known_user_id(value):
    """Audit rows keep a user FK only for users that exist."""
    try:
        user_id = int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
    if user_id is None or db.session.get(User, user_id) is None:
        return None
    return user_id
