"""
Tests for effective-role resolution and the membership row predicate.

Precedence: system admin → org owner/admin → explicit membership → none.
"""

import pytest
from sqlalchemy import bindparam, select

from tracker.models import db
from tracker.models.tenancy import Organisation, OrgMembership, Project, ProjectMembership, User
from tracker.services import tenancy_resolver
from tracker.services.tenancy_resolver import UnsafeRowPredicate, guard_row_predicate


def _second_project(org, code="PRJ-2"):
    p = Project(organisation_id=org.id, code=code, name="Second")
    db.session.add(p)
    db.session.commit()
    return p


class TestResolve:
    def test_explicit_membership(self, project, users):
        access = tenancy_resolver.resolve(users["customer_pm"], project.id)
        assert access.role == "customer_pm"
        assert access.source == tenancy_resolver.SOURCE_EXPLICIT
        assert access.has_access

    def test_outsider_resolves_to_none(self, project, users):
        access = tenancy_resolver.resolve(users["outsider"], project.id)
        assert access.role == "none"
        assert not access.has_access

    def test_system_admin_is_admin_everywhere(self, org, project, users):
        other = _second_project(org)
        for pid in (project.id, other.id):
            access = tenancy_resolver.resolve(users["system_admin"], pid)
            assert access.role == "admin"
            assert access.source == tenancy_resolver.SOURCE_SYSTEM

    def test_org_admin_without_membership_is_admin_on_every_org_project(self, org, project, users):
        other = _second_project(org)
        assert db.session.execute(
            select(ProjectMembership).where(ProjectMembership.user_id == users["org_admin"])
        ).first() is None
        for pid in (project.id, other.id):
            access = tenancy_resolver.resolve(users["org_admin"], pid)
            assert access.role == "admin"
            assert access.source == tenancy_resolver.SOURCE_ORG

    def test_org_admin_override_beats_explicit_membership(self, project, users):
        db.session.add(ProjectMembership(project_id=project.id, user_id=users["org_admin"], project_role="viewer"))
        db.session.commit()
        assert tenancy_resolver.resolve(users["org_admin"], project.id).role == "admin"

    def test_org_admin_has_no_reach_into_other_organisations(self, users):
        foreign = Organisation(name="Other Co", slug="other-co")
        db.session.add(foreign)
        db.session.flush()
        foreign_project = Project(organisation_id=foreign.id, code="X-1", name="Elsewhere")
        db.session.add(foreign_project)
        db.session.commit()
        assert tenancy_resolver.resolve(users["org_admin"], foreign_project.id).role == "none"

    def test_org_member_role_is_not_an_override(self, org, project):
        user = User(email="plain.member@example.com", full_name="plain.member")
        db.session.add(user)
        db.session.flush()
        db.session.add(OrgMembership(user_id=user.id, organisation_id=org.id, org_role="member"))
        db.session.commit()
        assert tenancy_resolver.resolve(user.id, project.id).role == "none"

    def test_unknown_project_and_user(self, project, users):
        assert tenancy_resolver.resolve(users["supplier_pm"], 9999).role == "none"
        assert tenancy_resolver.resolve(9999, project.id).role == "none"
        assert tenancy_resolver.resolve(None, project.id).role == "none"


class TestVisibility:
    def test_requester_sees_only_own_rows(self, project, users):
        rows = tenancy_resolver.visible_memberships(users["supplier_pm"])
        assert [r.user_id for r in rows] == [users["supplier_pm"]]

    def test_anonymous_sees_nothing(self, users):
        assert tenancy_resolver.visible_memberships(None) == []

    def test_accessible_projects(self, org, project, users):
        other = _second_project(org)
        assert tenancy_resolver.accessible_project_ids(users["contributor"]) == [project.id]
        assert tenancy_resolver.accessible_project_ids(users["org_admin"]) == [project.id, other.id]
        assert tenancy_resolver.accessible_project_ids(users["outsider"]) == []


class TestRowPredicateGuard:
    table = ProjectMembership.__table__

    def test_plain_column_comparison_is_accepted(self):
        clause = ProjectMembership.user_id == bindparam("requester_id")
        assert guard_row_predicate(clause, self.table) is clause

    def test_subquery_over_same_table_is_rejected(self):
        sub = select(ProjectMembership.project_id).where(
            ProjectMembership.user_id == bindparam("requester_id")
        )
        clause = ProjectMembership.project_id.in_(sub)
        with pytest.raises(UnsafeRowPredicate):
            guard_row_predicate(clause, self.table)

    def test_foreign_table_reference_is_rejected(self):
        clause = ProjectMembership.project_id == Project.id
        with pytest.raises(UnsafeRowPredicate):
            guard_row_predicate(clause, self.table)
