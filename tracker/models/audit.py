"""
Audit domain model.

Models:
    - AuditEntry: immutable, append-only record of every workflow attempt.

Rows are written once and never updated or deleted.  The ORM refuses both:
mapper-level ``before_update`` / ``before_delete`` listeners raise, so a stray
``session.delete(entry)`` fails at flush time instead of silently erasing
history.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import event

from tracker.models import db

OUTCOME_ADVANCED = "advanced"
OUTCOME_PENDING = "pending"
OUTCOME_RECORDED = "recorded"


class AuditEntry(db.Model):
    """
    Immutable audit trail for every attempted workflow mutation.

    ``authorized`` is False for denied attempts; ``outcome`` is either one of
    the success outcomes above or the error code the attempt failed with.
    """

    __tablename__ = "audit_entries"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_project", "project_id"),
        db.Index("idx_audit_actor", "actor_id"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organisation_id = db.Column(db.Integer, db.ForeignKey("organisations.id", ondelete="SET NULL"))
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"))

    # Subjects include plan entities, variations, projects and memberships.
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)

    action = db.Column(db.String(40), nullable=False, default="transition")
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_role = db.Column(db.String(30), nullable=True)
    from_state = db.Column(db.String(30), nullable=True)
    to_state = db.Column(db.String(30), nullable=True)
    authorized = db.Column(db.Boolean, nullable=False, default=True)
    outcome = db.Column(
        db.String(40), nullable=False,
        comment="advanced | pending | recorded | ERR_* code of the failure",
    )
    detail = db.Column(db.JSON, nullable=False, default=dict)

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organisation_id": self.organisation_id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "authorized": self.authorized,
            "outcome": self.outcome,
            "detail": self.detail or {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditEntry {self.id}: {self.action} {self.entity_type}/{self.entity_id} {self.outcome}>"


class AuditImmutableError(RuntimeError):
    """Raised when code tries to update or delete an AuditEntry."""


@event.listens_for(AuditEntry, "before_update")
def _refuse_update(mapper, connection, target):
    raise AuditImmutableError(f"AuditEntry {target.id} is append-only")


@event.listens_for(AuditEntry, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise AuditImmutableError(f"AuditEntry {target.id} is append-only")


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    outcome: str,
    action: str = "transition",
    organisation_id: int | None = None,
    project_id: int | None = None,
    actor_id: int | None = None,
    actor_role: str | None = None,
    from_state: str | None = None,
    to_state: str | None = None,
    authorized: bool = True,
    detail: dict | None = None,
) -> AuditEntry:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.
    """
    entry = AuditEntry(
        organisation_id=organisation_id,
        project_id=project_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        from_state=from_state,
        to_state=to_state,
        authorized=authorized,
        outcome=outcome,
        # Decimals and dates are stored as their string form.
        detail=json.loads(json.dumps(detail or {}, default=str)),
    )
    db.session.add(entry)
    db.session.flush()
    return entry
