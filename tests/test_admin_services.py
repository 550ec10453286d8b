"""
Membership, workflow-settings and planning service tests.
"""

from datetime import date

import pytest
from sqlalchemy import select

from tracker.core.exceptions import AuthorizationDenied, NotFoundError, StaleVersionConflict, ValidationError
from tracker.models import db
from tracker.models.tenancy import ProjectMembership
from tracker.models.tracking import ApprovalDecision, TrackedEntity
from tracker.models.workflow_settings import AuthorityMode, WorkflowAction
from tracker.services import membership_service, planning_service, tenancy_resolver, workflow_settings_service
from tracker.services.workflow_engine import machine


# ═════════════════════════════════════════════════════════════════════════════
# Membership
# ═════════════════════════════════════════════════════════════════════════════


class TestMembership:
    def test_grant_then_change_role(self, project, users):
        m = membership_service.grant(project.id, users["outsider"], "viewer", users["supplier_pm"])
        assert m.project_role == "viewer"
        membership_service.grant(project.id, users["outsider"], "contributor", users["org_admin"])
        rows = db.session.execute(
            select(ProjectMembership).where(ProjectMembership.user_id == users["outsider"])
        ).scalars().all()
        assert [r.project_role for r in rows] == ["contributor"]

    def test_customer_pm_cannot_manage_members(self, project, users):
        with pytest.raises(AuthorizationDenied):
            membership_service.grant(project.id, users["outsider"], "viewer", users["customer_pm"])

    def test_unknown_role(self, project, users):
        with pytest.raises(ValidationError):
            membership_service.grant(project.id, users["outsider"], "owner", users["supplier_pm"])

    def test_revoke_keeps_past_decisions(self, project, users, make_entity):
        ms = make_entity("milestone", status="complete")
        machine.transition(ms, "signed_off", users["customer_pm"])
        membership_service.revoke(project.id, users["customer_pm"], users["supplier_pm"])

        assert tenancy_resolver.resolve(users["customer_pm"], project.id).role == "none"
        decisions = db.session.execute(select(ApprovalDecision)).scalars().all()
        assert [d.role for d in decisions] == ["customer_pm"]

    def test_revoke_unknown_member(self, project, users):
        with pytest.raises(NotFoundError):
            membership_service.revoke(project.id, users["outsider"], users["supplier_pm"])


# ═════════════════════════════════════════════════════════════════════════════
# Workflow settings
# ═════════════════════════════════════════════════════════════════════════════


class TestWorkflowSettings:
    def test_load_returns_every_action(self, project):
        settings = workflow_settings_service.load(project.id)
        assert set(settings.to_dict()) == {a.value for a in WorkflowAction}

    def test_update_only_touches_given_keys(self, project, users):
        settings = workflow_settings_service.update(
            project.id,
            {"deliverable.review": {"required": False, "authority": "none"}},
            users["supplier_pm"],
        )
        assert settings.get("deliverable.review").authority == AuthorityMode.NONE
        assert settings.get("milestone.signoff").authority == AuthorityMode.BOTH

    @pytest.mark.parametrize("payload", [
        {},
        {"no.such.action": {"required": True, "authority": "both"}},
        {"milestone.signoff": {"required": "yes", "authority": "both"}},
        {"milestone.signoff": "both"},
    ])
    def test_invalid_payloads(self, project, users, payload):
        with pytest.raises(ValidationError):
            workflow_settings_service.update(project.id, payload, users["supplier_pm"])

    def test_contributor_is_denied(self, project, users):
        with pytest.raises(AuthorizationDenied):
            workflow_settings_service.update(
                project.id, {"milestone.signoff": {"required": False, "authority": "none"}},
                users["contributor"],
            )


# ═════════════════════════════════════════════════════════════════════════════
# Planning
# ═════════════════════════════════════════════════════════════════════════════


class TestPlanning:
    def test_refs_are_sequential_per_type(self, project, users):
        a = planning_service.create_entity(project.id, {"entity_type": "component", "name": "A"},
                                           users["supplier_pm"])
        b = planning_service.create_entity(project.id, {"entity_type": "component", "name": "B"},
                                           users["supplier_pm"])
        assert (a.ref, b.ref) == ("CMP-001", "CMP-002")

    def test_parent_type_is_enforced(self, project, users, plan):
        with pytest.raises(ValidationError):
            planning_service.create_entity(
                project.id,
                {"entity_type": "deliverable", "name": "X", "parent_id": plan["component"].id},
                users["supplier_pm"],
            )

    def test_end_before_start(self, project, users):
        with pytest.raises(ValidationError):
            planning_service.create_entity(
                project.id,
                {"entity_type": "component", "name": "X", "start_date": "2026-05-01", "end_date": "2026-04-01"},
                users["supplier_pm"],
            )

    def test_status_is_not_editable(self, users, plan):
        with pytest.raises(ValidationError):
            planning_service.update_entity(plan["milestone"], {"status": "signed_off"}, users["supplier_pm"])

    def test_pinned_version_mismatch(self, users, plan):
        ms = plan["milestone"]
        with pytest.raises(StaleVersionConflict):
            planning_service.update_entity(ms, {"name": "Renamed"}, users["supplier_pm"],
                                           expected_version=ms.version + 1)

    def test_update_bumps_version(self, users, plan):
        ms = plan["milestone"]
        before = ms.version
        planning_service.update_entity(ms, {"end_date": "2026-04-15"}, users["supplier_pm"],
                                       expected_version=before)
        ms = db.session.get(TrackedEntity, ms.id)
        assert ms.end_date == date(2026, 4, 15)
        assert ms.version > before

    def test_submitted_timesheet_is_frozen(self, users, make_entity):
        ts = make_entity("timesheet", status="submitted", owner_id=users["contributor"])
        with pytest.raises(ValidationError):
            planning_service.update_entity(ts, {"effort_hours": 10}, users["contributor"])

    def test_rejected_timesheet_is_frozen_until_back_in_draft(self, users, make_entity):
        ts = make_entity("timesheet", status="rejected", owner_id=users["contributor"])
        with pytest.raises(ValidationError):
            planning_service.update_entity(ts, {"effort_hours": 10}, users["contributor"])

        machine.transition(ts, "draft", users["contributor"])
        planning_service.update_entity(ts, {"effort_hours": 10}, users["contributor"])
        assert db.session.get(TrackedEntity, ts.id).effort_hours == 10

    @pytest.mark.parametrize("amount", ["NaN", "Infinity", "-inf"])
    def test_non_finite_amounts_are_rejected(self, users, plan, amount):
        with pytest.raises(ValidationError) as exc:
            planning_service.update_entity(plan["milestone"], {"value": amount}, users["supplier_pm"])
        assert exc.value.details == {"field": "value"}

    def test_close_with_open_children(self, users, plan):
        with pytest.raises(ValidationError):
            planning_service.close_entity(plan["milestone"], users["supplier_pm"])

    def test_close_leaf_before_baseline(self, users, plan):
        closed = planning_service.close_entity(plan["deliverable"], users["supplier_pm"])
        assert closed.is_closed
        assert [e.id for e in planning_service.list_entities(closed.project_id, entity_type="deliverable")] == []
