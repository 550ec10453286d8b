"""
VariationProcessor tests — change control over a committed baseline.

The all-or-nothing test injects a failure between applying the changes and
re-baselining them (``baseline_tracker.commit_entities``) and checks that
nothing moved: entity values, project baseline version and variation status.
"""

from datetime import date

import pytest
from sqlalchemy import select

from tracker.core.exceptions import (
    AuthorizationDenied,
    InvalidTransition,
    PartialApplyFailure,
    ValidationError,
    VariationNotApproved,
)
from tracker.models import db
from tracker.models.audit import AuditEntry
from tracker.models.tenancy import Project
from tracker.models.tracking import Baseline, TrackedEntity
from tracker.models.variation import Variation
from tracker.models.workflow_settings import WorkflowSetting
from tracker.services import baseline_tracker
from tracker.services.variation_processor import processor


@pytest.fixture()
def baselined(project, users, plan):
    db.session.add(WorkflowSetting(project_id=project.id, action_key="milestone.baseline",
                                   required=True, authority="supplier_only"))
    db.session.commit()
    assert baseline_tracker.commit(project.id, users["supplier_pm"]).committed
    return plan


def _draft(project, users, plan, **extra):
    data = {
        "title": "Extend design phase",
        "variation_type": "time_extension",
        "reason": "Customer requested additional workshops",
        "changes": [
            {"op": "modify", "target_id": plan["milestone"].id,
             "payload": {"end_date": "2026-04-30", "value": 26000}},
            {"op": "add", "entity_type": "deliverable",
             "payload": {"name": "Workshop minutes", "parent_id": plan["milestone"].id,
                         "due_date": "2026-04-20", "value": 1500}},
        ],
    }
    data.update(extra)
    return processor.create(project.id, data, users["supplier_pm"])


def _approved(project, users, plan, **extra):
    variation = _draft(project, users, plan, **extra)
    processor.submit(variation, users["supplier_pm"])
    first = processor.approve(variation, users["supplier_pm"])
    assert not first.advanced
    second = processor.approve(variation, users["customer_pm"])
    assert second.advanced
    return variation


class TestDrafting:
    def test_requires_a_baseline(self, project, users, plan):
        with pytest.raises(ValidationError):
            _draft(project, users, plan)

    def test_create_assigns_sequential_refs(self, project, users, baselined):
        a = _draft(project, users, baselined)
        b = _draft(project, users, baselined, title="Second")
        assert (a.ref, b.ref) == ("VAR-001", "VAR-002")
        assert a.status == "draft"
        assert len(a.changes) == 2

    def test_rejects_reparenting(self, project, users, baselined):
        with pytest.raises(ValidationError):
            processor.create(project.id, {
                "title": "Move it",
                "changes": [{"op": "modify", "target_id": baselined["deliverable"].id,
                             "payload": {"parent_id": baselined["component"].id}}],
            }, users["supplier_pm"])

    def test_rejects_unknown_fields(self, project, users, baselined):
        with pytest.raises(ValidationError):
            processor.create(project.id, {
                "title": "Bad",
                "changes": [{"op": "modify", "target_id": baselined["milestone"].id,
                             "payload": {"status": "signed_off"}}],
            }, users["supplier_pm"])

    def test_rejects_non_finite_amounts(self, project, users, baselined):
        with pytest.raises(ValidationError):
            processor.create(project.id, {
                "title": "Bad number",
                "changes": [{"op": "modify", "target_id": baselined["milestone"].id,
                             "payload": {"value": "NaN"}}],
            }, users["supplier_pm"])

    def test_contributor_cannot_draft(self, project, users, baselined):
        with pytest.raises(AuthorizationDenied):
            processor.create(project.id, {"title": "Not mine to raise"}, users["contributor"])

    def test_submit_prices_the_change(self, project, users, baselined):
        variation = _draft(project, users, baselined)
        result = processor.submit(variation, users["supplier_pm"])
        assert result.advanced
        assert float(variation.total_cost_impact) == 6000 + 1500
        assert variation.total_days_impact == 30
        modify = variation.changes[0]
        assert modify.original_baseline["end_date"] == "2026-03-31"

    def test_empty_variation_cannot_be_submitted(self, project, users, baselined):
        variation = processor.create(project.id, {"title": "Empty"}, users["supplier_pm"])
        with pytest.raises(ValidationError):
            processor.submit(variation, users["supplier_pm"])

        rows = db.session.execute(
            select(AuditEntry)
            .where(AuditEntry.entity_type == "variation", AuditEntry.entity_id == str(variation.id))
            .order_by(AuditEntry.id)
        ).scalars().all()
        assert rows[-1].outcome == "ERR_VALIDATION_INVALID"
        assert (rows[-1].from_state, rows[-1].to_state) == ("draft", "submitted")
        assert db.session.get(Variation, variation.id).status == "draft"


class TestApproval:
    def test_dual_approval(self, project, users, baselined):
        variation = _approved(project, users, baselined)
        assert variation.status == "approved"
        assert variation.approved_at is not None

    def test_reject_is_terminal(self, project, users, baselined):
        variation = _draft(project, users, baselined)
        processor.submit(variation, users["supplier_pm"])
        processor.reject(variation, users["customer_pm"], reason="Out of budget")
        assert variation.status == "rejected"
        assert variation.rejection_reason == "Out of budget"
        with pytest.raises(InvalidTransition):
            processor.submit(variation, users["supplier_pm"])

    def test_delete_only_before_approval(self, project, users, baselined):
        variation = _approved(project, users, baselined)
        with pytest.raises(ValidationError):
            processor.delete(variation, users["supplier_pm"])

        draft = _draft(project, users, baselined, title="Scratch")
        processor.delete(draft, users["supplier_pm"])
        assert [v.id for v in processor.list_for_project(project.id)] == [variation.id]


class TestImplement:
    def test_apply_and_rebaseline(self, project, users, baselined, notifications):
        variation = _approved(project, users, baselined)
        result = processor.implement(variation, users["supplier_pm"])
        assert result.advanced

        variation = db.session.get(Variation, variation.id)
        assert variation.status == "implemented"
        assert variation.baseline_version_after == 2
        assert db.session.get(Project, project.id).baseline_version == 2

        ms = db.session.get(TrackedEntity, baselined["milestone"].id)
        assert ms.end_date == date(2026, 4, 30)
        assert ms.baseline_end_date == date(2026, 4, 30)
        assert ms.baseline_version == 2

        added = db.session.get(TrackedEntity, variation.changes[1].applied_entity_id)
        assert added.parent_id == ms.id
        assert added.is_baselined and added.baseline_version == 1

        # Untouched entities keep their original baseline.
        comp = db.session.get(TrackedEntity, baselined["component"].id)
        assert comp.baseline_version == 1

        latest = db.session.execute(select(Baseline).order_by(Baseline.version.desc())).scalars().first()
        assert latest.source == "variation"
        assert latest.committed_by == users["supplier_pm"]
        assert sorted(latest.entity_ids) == sorted([ms.id, added.id])

    def test_remove_closes_subtree(self, project, users, baselined):
        variation = processor.create(project.id, {
            "title": "Descope design",
            "variation_type": "scope_reduction",
            "changes": [{"op": "remove", "target_id": baselined["milestone"].id}],
        }, users["supplier_pm"])
        processor.submit(variation, users["supplier_pm"])
        processor.approve(variation, users["supplier_pm"])
        processor.approve(variation, users["customer_pm"])
        processor.implement(variation, users["customer_pm"])

        assert db.session.get(TrackedEntity, baselined["milestone"].id).is_closed
        assert db.session.get(TrackedEntity, baselined["deliverable"].id).is_closed
        assert not db.session.get(TrackedEntity, baselined["component"].id).is_closed

    def test_not_approved(self, project, users, baselined):
        variation = _draft(project, users, baselined)
        with pytest.raises(VariationNotApproved):
            processor.implement(variation, users["supplier_pm"])
        failed = db.session.execute(
            select(AuditEntry).where(AuditEntry.outcome == "ERR_VARIATION_NOT_APPROVED")
        ).scalars().all()
        assert len(failed) == 1

    def test_failure_between_apply_and_rebaseline_rolls_back(
        self, project, users, baselined, monkeypatch, notifications
    ):
        variation = _approved(project, users, baselined)
        variation_id = variation.id
        entity_count = db.session.query(TrackedEntity).count()

        def _boom(entities, baseline):
            raise RuntimeError("storage went away")

        monkeypatch.setattr(baseline_tracker, "commit_entities", _boom)

        with pytest.raises(PartialApplyFailure):
            processor.implement(variation, users["supplier_pm"])

        variation = db.session.get(Variation, variation_id)
        assert variation.status == "approved"
        assert variation.implemented_at is None
        ms = db.session.get(TrackedEntity, baselined["milestone"].id)
        assert ms.end_date == date(2026, 3, 31)
        assert float(ms.value) == 20000
        assert ms.baseline_version == 1
        assert db.session.query(TrackedEntity).count() == entity_count
        assert db.session.get(Project, project.id).baseline_version == 1
        assert "system.fault" in notifications.names()

        monkeypatch.undo()
        assert processor.implement(variation, users["supplier_pm"]).advanced

    def test_baseline_moved_since_submission(self, project, users, baselined):
        first = _approved(project, users, baselined)
        second = _approved(project, users, baselined, title="Competing change")
        processor.implement(first, users["supplier_pm"])

        with pytest.raises(ValidationError) as exc:
            processor.implement(second, users["supplier_pm"])
        assert exc.value.details["problems"][0]["problem"] == "baseline changed since submission"
        assert db.session.get(Variation, second.id).status == "approved"


def test_summary(project, users, baselined):
    implemented = _approved(project, users, baselined)
    processor.implement(implemented, users["supplier_pm"])
    _draft(project, users, baselined, title="Pending")

    summary = processor.summary(project.id)
    assert summary["total"] == 2
    assert summary["implemented"] == 1
    assert summary["draft"] == 1
    assert summary["total_cost_impact"] == 7500.0
    assert summary["total_days_impact"] == 30


def test_pending_variation_tracks_open_change_requests(project, users, baselined):
    ms, deliverable = baselined["milestone"], baselined["deliverable"]
    assert not processor.has_pending_variation(ms.id)

    variation = _approved(project, users, baselined)
    assert processor.has_pending_variation(ms.id)
    assert not processor.has_pending_variation(deliverable.id)

    processor.implement(variation, users["supplier_pm"])
    assert not processor.has_pending_variation(ms.id)

    discarded = _draft(project, users, baselined, title="Discarded")
    processor.delete(discarded, users["supplier_pm"])
    assert not processor.has_pending_variation(ms.id)
