"""
BaselineTracker tests — single direct commit, dual commit, breach boundary,
at-risk cascade, variance and the structural lock.
"""

from datetime import date

import pytest
from sqlalchemy import select

from tracker.core.exceptions import AlreadyBaselined, AuthorizationDenied, BaselineLocked
from tracker.models import db
from tracker.models.audit import AuditEntry
from tracker.models.tenancy import Project
from tracker.models.tracking import Baseline, TrackedEntity
from tracker.models.workflow_settings import WorkflowSetting
from tracker.services import baseline_tracker, planning_service


def _single_party_baseline(project):
    db.session.add(WorkflowSetting(project_id=project.id, action_key="milestone.baseline",
                                   required=True, authority="supplier_only"))
    db.session.commit()


def _commit(project, users):
    _single_party_baseline(project)
    result = baseline_tracker.commit(project.id, users["supplier_pm"])
    assert result.committed
    return result


class TestCommit:
    def test_dual_commit_needs_both_parties(self, project, users, plan, notifications):
        first = baseline_tracker.commit(project.id, users["supplier_pm"])
        assert not first.committed
        assert first.pending_parties == ["customer"]
        assert not db.session.get(Project, project.id).is_baselined

        # Repeating the same party changes nothing.
        again = baseline_tracker.commit(project.id, users["supplier_pm"])
        assert not again.committed

        second = baseline_tracker.commit(project.id, users["customer_pm"])
        assert second.committed
        assert second.baseline.version == 1
        assert sorted(second.baseline.entity_ids) == sorted(e.id for e in plan.values())
        assert "baseline.committed" in notifications.names()
        committed = dict(notifications.events)["baseline.committed"]
        assert committed["affected_actor_ids"] == sorted([users["supplier_pm"], users["customer_pm"]])

    def test_snapshot_captures_current_values(self, project, users, plan):
        _commit(project, users)
        ms = db.session.get(TrackedEntity, plan["milestone"].id)
        assert ms.is_baselined
        assert ms.baseline_end_date == date(2026, 3, 31)
        assert float(ms.baseline_value) == 20000
        assert ms.baseline_version == 1

    def test_records_are_not_baselined(self, project, users, plan, make_entity):
        ts = make_entity("timesheet", effort_hours=8)
        result = _commit(project, users)
        assert ts.id not in result.baseline.entity_ids
        assert not db.session.get(TrackedEntity, ts.id).is_baselined

    def test_second_direct_commit_fails(self, project, users, plan):
        _commit(project, users)
        with pytest.raises(AlreadyBaselined):
            baseline_tracker.commit(project.id, users["supplier_pm"])

        baselines = db.session.execute(select(Baseline)).scalars().all()
        assert len(baselines) == 1
        failed = db.session.execute(
            select(AuditEntry).where(AuditEntry.outcome == "ERR_ALREADY_BASELINED")
        ).scalars().all()
        assert len(failed) == 1

    def test_outsider_does_not_learn_the_baseline_state(self, project, users, plan):
        _commit(project, users)
        with pytest.raises(AuthorizationDenied) as exc:
            baseline_tracker.commit(project.id, users["outsider"])
        assert "baseline_version" not in exc.value.details
        assert "baseline_committed_at" not in exc.value.details

    def test_contributor_cannot_commit(self, project, users, plan):
        with pytest.raises(AuthorizationDenied):
            baseline_tracker.commit(project.id, users["contributor"])
        assert not db.session.get(Project, project.id).is_baselined


class TestBreach:
    @pytest.mark.parametrize("due,breached", [
        (date(2026, 3, 30), False),
        (date(2026, 3, 31), False),   # equal to baseline end: on time
        (date(2026, 4, 1), True),     # one day over
    ])
    def test_boundary(self, project, users, plan, due, breached):
        _commit(project, users)
        deliverable = db.session.get(TrackedEntity, plan["deliverable"].id)
        planning_service.update_entity(deliverable, {"due_date": due.isoformat()}, users["supplier_pm"])

        ms = db.session.get(TrackedEntity, plan["milestone"].id)
        assert (baseline_tracker.detect_breach(ms) is not None) is breached
        assert ms.is_at_risk is breached

    def test_breach_cascades_and_clears(self, project, users, plan):
        _commit(project, users)
        deliverable = db.session.get(TrackedEntity, plan["deliverable"].id)
        planning_service.update_entity(deliverable, {"due_date": "2026-04-10"}, users["supplier_pm"])

        for key in ("deliverable", "milestone", "component"):
            assert db.session.get(TrackedEntity, plan[key].id).is_at_risk, key

        breach = baseline_tracker.detect_breach(db.session.get(TrackedEntity, plan["milestone"].id))
        assert breach.offending[0]["days_over"] == 10

        deliverable = db.session.get(TrackedEntity, plan["deliverable"].id)
        planning_service.update_entity(deliverable, {"due_date": "2026-03-20"}, users["supplier_pm"])
        for key in ("deliverable", "milestone", "component"):
            assert not db.session.get(TrackedEntity, plan[key].id).is_at_risk, key

    def test_moving_milestone_end_does_not_move_baseline(self, project, users, plan):
        _commit(project, users)
        ms = db.session.get(TrackedEntity, plan["milestone"].id)
        planning_service.update_entity(ms, {"end_date": "2026-05-31"}, users["supplier_pm"])
        deliverable = db.session.get(TrackedEntity, plan["deliverable"].id)
        planning_service.update_entity(deliverable, {"due_date": "2026-04-15"}, users["supplier_pm"])
        assert db.session.get(TrackedEntity, plan["milestone"].id).is_at_risk

    def test_no_breach_before_baseline(self, plan):
        assert baseline_tracker.detect_breach(plan["milestone"]) is None


class TestVariance:
    def test_variance_and_report(self, project, users, plan):
        _commit(project, users)
        ms = db.session.get(TrackedEntity, plan["milestone"].id)
        planning_service.update_entity(ms, {"value": 25000, "effort_hours": 180, "end_date": "2026-04-07"},
                                       users["supplier_pm"])

        v = baseline_tracker.variance(db.session.get(TrackedEntity, plan["milestone"].id))
        assert v == {"schedule_delta_days": 7, "effort_delta_hours": -20.0, "cost_delta": 5000.0}

        report = baseline_tracker.variance_report(project.id)
        assert report["is_baselined"]
        assert report["totals"]["cost_delta"] == 5000.0
        assert report["totals"]["effort_delta_hours"] == -20.0
        assert len(report["entities"]) == 3

    def test_variance_is_none_before_baseline(self, plan):
        assert baseline_tracker.variance(plan["component"]) is None

    def test_history(self, project, users, plan):
        _commit(project, users)
        rows = baseline_tracker.baseline_history(plan["deliverable"].id)
        assert [(r["version"], r["source"]) for r in rows] == [(1, "commit")]


class TestStructuralLock:
    def test_adding_plan_entity_after_baseline(self, project, users, plan):
        _commit(project, users)
        with pytest.raises(BaselineLocked):
            planning_service.create_entity(project.id, {"entity_type": "component", "name": "New"},
                                           users["supplier_pm"])

    def test_closing_plan_entity_after_baseline(self, project, users, plan):
        _commit(project, users)
        deliverable = db.session.get(TrackedEntity, plan["deliverable"].id)
        with pytest.raises(BaselineLocked):
            planning_service.close_entity(deliverable, users["supplier_pm"])

    def test_reparenting_after_baseline(self, project, users, plan, make_entity):
        other = make_entity("milestone", "Other", parent=plan["component"])
        _commit(project, users)
        deliverable = db.session.get(TrackedEntity, plan["deliverable"].id)
        with pytest.raises(BaselineLocked):
            planning_service.update_entity(deliverable, {"parent_id": other.id}, users["supplier_pm"])

    def test_records_stay_editable(self, project, users, plan):
        _commit(project, users)
        ts = planning_service.create_entity(project.id, {"entity_type": "timesheet", "name": "Week 1",
                                                         "effort_hours": 40}, users["contributor"])
        assert ts.status == "draft"
        assert ts.owner_id == users["contributor"]
