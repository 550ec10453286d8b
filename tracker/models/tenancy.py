"""
Tenancy Models — organisations, users, org memberships, projects, project members.

Three-tier tenancy:
    Organisation (root tenant) → Project → tracked entity

Uniqueness invariants are enforced by the schema, not by callers:
    - one OrgMembership row per (user, organisation)
    - one ProjectMembership row per (user, project)
"""

from datetime import datetime, timezone

from tracker.models import db

# ── Constants ─────────────────────────────────────────────────────────────────

ORG_ROLES = ("owner", "admin", "member")
ORG_ADMIN_ROLES = frozenset({"owner", "admin"})

PROJECT_ROLES = (
    "supplier_pm",
    "customer_pm",
    "supplier_finance",
    "customer_finance",
    "contributor",
    "viewer",
)

PROJECT_LIFECYCLE = ("active", "on_hold", "completed", "archived")


# ═══════════════════════════════════════════════════════════════
# 1. ORGANISATIONS
# ═══════════════════════════════════════════════════════════════
class Organisation(db.Model):
    __tablename__ = "organisations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    projects = db.relationship("Project", back_populates="organisation", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Organisation {self.id}: {self.slug}>"


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    """Identity mirror.  Credentials live with the identity provider."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    full_name = db.Column(db.String(200))
    is_system_admin = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Set by the identity provider; grants admin on every project",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "is_system_admin": self.is_system_admin,
        }

    def __repr__(self) -> str:
        return f"<User {self.id}: {self.email}>"


# ═══════════════════════════════════════════════════════════════
# 3. ORG MEMBERSHIPS
# ═══════════════════════════════════════════════════════════════
class OrgMembership(db.Model):
    __tablename__ = "org_memberships"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    organisation_id = db.Column(
        db.Integer, db.ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    org_role = db.Column(db.String(20), nullable=False, default="member")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("user_id", "organisation_id", name="uq_org_membership_user_org"),
        db.CheckConstraint(
            "org_role IN ('owner', 'admin', 'member')", name="ck_org_membership_role"
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "organisation_id": self.organisation_id,
            "org_role": self.org_role,
        }


# ═══════════════════════════════════════════════════════════════
# 4. PROJECTS
# ═══════════════════════════════════════════════════════════════
class Project(db.Model):
    """Delivery project owned by an Organisation."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    organisation_id = db.Column(
        db.Integer,
        db.ForeignKey("organisations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code = db.Column(db.String(50), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    lifecycle = db.Column(db.String(20), nullable=False, default="active")

    # Baseline state: NULL until the first commit.
    baseline_committed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    baseline_version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    organisation = db.relationship("Organisation", back_populates="projects")

    __table_args__ = (
        db.UniqueConstraint("organisation_id", "code", name="uq_projects_org_code"),
        db.CheckConstraint(
            "lifecycle IN ('active', 'on_hold', 'completed', 'archived')",
            name="ck_projects_lifecycle",
        ),
    )

    @property
    def is_baselined(self) -> bool:
        return self.baseline_committed_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organisation_id": self.organisation_id,
            "code": self.code,
            "name": self.name,
            "lifecycle": self.lifecycle,
            "is_baselined": self.is_baselined,
            "baseline_version": self.baseline_version,
            "baseline_committed_at": (
                self.baseline_committed_at.isoformat() if self.baseline_committed_at else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Project {self.id}: {self.code}>"


# ═══════════════════════════════════════════════════════════════
# 5. PROJECT MEMBERSHIPS
# ═══════════════════════════════════════════════════════════════
class ProjectMembership(db.Model):
    __tablename__ = "project_memberships"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    project_role = db.Column(db.String(30), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("user_id", "project_id", name="uq_project_membership_user_project"),
        db.CheckConstraint(
            "project_role IN ('supplier_pm', 'customer_pm', 'supplier_finance', "
            "'customer_finance', 'contributor', 'viewer')",
            name="ck_project_membership_role",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "project_role": self.project_role,
        }

    def __repr__(self) -> str:
        return f"<ProjectMembership user={self.user_id} project={self.project_id} {self.project_role}>"
