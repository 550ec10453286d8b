"""
Shared pytest fixtures for the Project Delivery Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - notifications: Recording dispatcher installed on the app
    - org / project / users: a supplier-customer project with one user per role
    - make_entity: ORM factory for tracked entities (bypasses services)
"""

from datetime import date

import pytest

from tracker import create_app
from tracker.models import db as _db
from tracker.models.tenancy import Organisation, OrgMembership, Project, ProjectMembership, User
from tracker.models.tracking import INITIAL_STATUS, TrackedEntity
from tracker.services.notification import EXTENSION_KEY, LoggingDispatcher


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


class RecordingDispatcher:
    def __init__(self):
        self.events = []

    def dispatch(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [name for name, _ in self.events]


@pytest.fixture()
def notifications(app):
    """Capture outbound notification events for the duration of one test."""
    recorder = RecordingDispatcher()
    app.extensions[EXTENSION_KEY] = recorder
    yield recorder
    app.extensions[EXTENSION_KEY] = LoggingDispatcher()


# ── Tenancy fixtures ─────────────────────────────────────────────────────


def make_user(email, *, system_admin=False) -> User:
    user = User(email=email, full_name=email.split("@")[0], is_system_admin=system_admin)
    _db.session.add(user)
    _db.session.flush()
    return user


def add_member(project, user, role) -> ProjectMembership:
    m = ProjectMembership(project_id=project.id, user_id=user.id, project_role=role)
    _db.session.add(m)
    _db.session.flush()
    return m


@pytest.fixture()
def org():
    o = Organisation(name="Acme Delivery", slug="acme-delivery")
    _db.session.add(o)
    _db.session.commit()
    return o


@pytest.fixture()
def project(org):
    p = Project(organisation_id=org.id, code="PRJ-1", name="ERP Rollout")
    _db.session.add(p)
    _db.session.commit()
    return p


@pytest.fixture()
def users(org, project):
    """One user per project role plus org admin, system admin and an outsider.

    Returned as ``{key: user_id}`` so tests never hold detached instances.
    """
    created = {}
    for role in ("supplier_pm", "customer_pm", "supplier_finance",
                 "customer_finance", "contributor", "viewer"):
        user = make_user(f"{role}@example.com")
        add_member(project, user, role)
        created[role] = user.id

    org_admin = make_user("org.admin@example.com")
    _db.session.add(OrgMembership(user_id=org_admin.id, organisation_id=org.id, org_role="admin"))
    created["org_admin"] = org_admin.id

    created["system_admin"] = make_user("root@example.com", system_admin=True).id
    created["outsider"] = make_user("outsider@example.com").id
    _db.session.commit()
    return created


@pytest.fixture()
def make_entity(project):
    """Create a TrackedEntity directly (any status, no workflow checks)."""

    def _make(entity_type, name=None, *, status=None, parent=None, project_id=None, **values):
        entity = TrackedEntity(
            project_id=project_id or project.id,
            entity_type=entity_type,
            name=name or f"Test {entity_type}",
            status=status or INITIAL_STATUS[entity_type],
            parent_id=parent.id if parent is not None else None,
            **values,
        )
        _db.session.add(entity)
        _db.session.commit()
        return entity

    return _make


@pytest.fixture()
def plan(make_entity):
    """Component → milestone → deliverable with dates for breach checks."""
    component = make_entity("component", "Finance", status="in_progress",
                            start_date=date(2026, 1, 1), end_date=date(2026, 6, 30),
                            effort_hours=400, value=40000)
    milestone = make_entity("milestone", "Design sign-off", status="in_progress", parent=component,
                            start_date=date(2026, 1, 1), end_date=date(2026, 3, 31),
                            effort_hours=200, value=20000)
    deliverable = make_entity("deliverable", "Solution design", status="in_progress", parent=milestone,
                              due_date=date(2026, 3, 15), effort_hours=80, value=8000)
    return {"component": component, "milestone": milestone, "deliverable": deliverable}
