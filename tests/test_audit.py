"""Audit trail is append-only at the ORM level."""

import pytest
from sqlalchemy import select

from tracker.core.exceptions import AuthorizationDenied
from tracker.models import db
from tracker.models.audit import AuditEntry, AuditImmutableError, write_audit
from tracker.services.workflow_engine import machine


def _entry(project):
    entry = write_audit(entity_type="milestone", entity_id=1, outcome="advanced",
                        project_id=project.id, from_state="complete", to_state="signed_off",
                        detail={"note": "first"})
    db.session.commit()
    return entry


def test_update_is_refused(project):
    entry = _entry(project)
    entry.outcome = "tampered"
    with pytest.raises(AuditImmutableError):
        db.session.flush()
    db.session.rollback()
    assert db.session.get(AuditEntry, entry.id).outcome == "advanced"


def test_delete_is_refused(project):
    entry = _entry(project)
    db.session.delete(entry)
    with pytest.raises(AuditImmutableError):
        db.session.flush()
    db.session.rollback()
    assert db.session.get(AuditEntry, entry.id) is not None


def test_detail_round_trips_as_dict(project):
    entry = _entry(project)
    assert entry.to_dict()["detail"] == {"note": "first"}


def test_every_attempt_is_recorded(make_entity, users):
    ts = make_entity("timesheet", status="submitted")
    with pytest.raises(AuthorizationDenied):
        machine.transition(ts, "approved", users["viewer"])
    machine.transition(ts, "approved", users["customer_pm"])

    rows = db.session.execute(
        select(AuditEntry).where(AuditEntry.entity_id == str(ts.id)).order_by(AuditEntry.id)
    ).scalars().all()
    assert [(r.actor_role, r.authorized) for r in rows] == [("viewer", False), ("customer_pm", True)]
