"""
Notification Service — outbound event seam.

Delivery (email, in-app feed) belongs to an external dispatcher.  The
workflow services only announce events; a dispatcher failure is logged and
never reaches the caller, so a broken mail relay cannot roll back an approval.

Workflow payloads name the entity, its new status and ``affected_actor_ids``:
the acting user, the subject's owner and, for a pending AND-join, the
project members holding the PM role of each outstanding party.

A dispatcher is any object with ``dispatch(event: str, payload: dict)``.  The
application stores it in ``app.extensions["notification_dispatcher"]``; when
nothing is registered, events are written to the log.
"""

import logging

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from tracker.models import db
from tracker.models.tenancy import ProjectMembership
from tracker.services import policy_engine

logger = logging.getLogger(__name__)

EXTENSION_KEY = "notification_dispatcher"


class LoggingDispatcher:
    """Default dispatcher: one INFO line per event."""

    def dispatch(self, event, payload):
        logger.info("Notification %s", event, extra={"event": event, **_log_fields(payload)})


def _log_fields(payload):
    return {
        k: payload[k]
        for k in ("organisation_id", "project_id", "entity_id", "actor_id")
        if k in payload
    }


def _owner_of(subject):
    return getattr(subject, "owner_id", None) or getattr(subject, "created_by", None)


def _party_members(project_id, parties):
    roles = [policy_engine.role_for(p) for p in parties]
    roles = [r for r in roles if r]
    if not roles:
        return []
    try:
        return list(db.session.execute(
            select(ProjectMembership.user_id).where(
                ProjectMembership.project_id == project_id,
                ProjectMembership.project_role.in_(roles),
            )
        ).scalars())
    except SQLAlchemyError:
        logger.exception("Could not resolve party members", extra={"project_id": project_id})
        return []


def _affected(*ids):
    return sorted({i for i in ids if i is not None})


class NotificationService:
    """Stateless service class for announcing workflow events."""

    @staticmethod
    def dispatcher():
        if has_app_context():
            registered = current_app.extensions.get(EXTENSION_KEY)
            if registered is not None:
                return registered
        return LoggingDispatcher()

    @staticmethod
    def emit(event, **payload):
        """Fire-and-forget.  Returns True when the dispatcher accepted the event."""
        try:
            NotificationService.dispatcher().dispatch(event, payload)
            return True
        except Exception:
            logger.exception("Notification dispatch failed event=%s", event)
            return False

    # ── Workflow events ───────────────────────────────────────────────────

    @staticmethod
    def notify_transition(subject, from_state, to_state, actor_id):
        return NotificationService.emit(
            "workflow.transitioned",
            project_id=subject.project_id,
            entity_type=subject.entity_type,
            entity_id=subject.id,
            from_state=from_state,
            to_state=to_state,
            status=subject.status,
            actor_id=actor_id,
            affected_actor_ids=_affected(actor_id, _owner_of(subject)),
        )

    @staticmethod
    def notify_awaiting(subject, action, pending_parties, actor_id):
        """Ask the remaining parties of an AND-join for their decision."""
        return NotificationService.emit(
            "workflow.awaiting_approval",
            project_id=subject.project_id,
            entity_type=subject.entity_type,
            entity_id=subject.id,
            action=action,
            status=subject.status,
            pending_parties=sorted(pending_parties),
            actor_id=actor_id,
            affected_actor_ids=_affected(
                actor_id, _owner_of(subject), *_party_members(subject.project_id, pending_parties)
            ),
        )

    @staticmethod
    def notify_baseline_committed(project, baseline, actor_id):
        return NotificationService.emit(
            "baseline.committed",
            organisation_id=project.organisation_id,
            project_id=project.id,
            version=baseline.version,
            entity_count=len(baseline.entity_ids or []),
            actor_id=actor_id,
            affected_actor_ids=_affected(
                actor_id, *_party_members(project.id, policy_engine.BOTH_PARTIES)
            ),
        )

    @staticmethod
    def notify_system_fault(project_id, subject_type, subject_id, error):
        return NotificationService.emit(
            "system.fault",
            project_id=project_id,
            entity_type=subject_type,
            entity_id=subject_id,
            error=str(error),
        )
