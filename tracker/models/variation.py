"""
Variation domain models — formal change control against a committed baseline.

Models:
    - Variation:        one change request (VAR-001, VAR-002, …) per project
    - VariationChange:  one proposed operation (add | remove | modify) on a plan entity

Lifecycle:
    Variation: draft → submitted → approved → implemented
               submitted → rejected

Approval of a submitted variation is gated by ``variation.approval`` and is
AND-joined when the project requires both parties.  Implementation re-baselines
exactly the entities its changes touch.
"""

from datetime import datetime, timezone

from tracker.models import db
from tracker.models.workflow_settings import WorkflowAction

# ── Constants ────────────────────────────────────────────────────────────────

VARIATION_TYPES = {
    "scope_extension",
    "scope_reduction",
    "time_extension",
    "cost_adjustment",
    "combined",
}

CHANGE_OPS = {"add", "remove", "modify"}

# Fields a change payload may set on a plan entity.
CHANGE_FIELDS = ("name", "start_date", "end_date", "due_date", "effort_hours", "value")

VARIATION_TRANSITIONS = {
    "draft":       ["submitted"],
    "submitted":   ["approved", "rejected"],
    "approved":    ["implemented"],
    "rejected":    [],
    "implemented": [],
}

VARIATION_GATES = {
    ("variation", "submitted", "approved"): WorkflowAction.VARIATION_APPROVAL,
    ("variation", "submitted", "rejected"): WorkflowAction.VARIATION_APPROVAL,
}

VARIATION_REJECTION_EDGES = frozenset({("variation", "submitted", "rejected")})

DELETABLE_STATUSES = frozenset({"draft", "submitted", "rejected"})

# Statuses that still have an effect pending on the baseline.
PENDING_STATUSES = frozenset({"draft", "submitted", "approved"})


class Variation(db.Model):
    """
    Change request against a project's baseline.

    ``version`` is the optimistic-concurrency counter (SQLAlchemy
    ``version_id_col``).  ``workflow_round`` scopes approval decisions to the
    status they were cast in, exactly like tracked entities.
    """

    __tablename__ = "variations"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    ref = db.Column(db.String(20), nullable=False, comment="Sequential: VAR-001, VAR-002")
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    variation_type = db.Column(db.String(30), nullable=False, default="combined")
    status = db.Column(db.String(20), nullable=False, default="draft")

    version = db.Column(db.Integer, nullable=False)
    workflow_round = db.Column(db.Integer, nullable=False, default=0)
    last_decision_at = db.Column(db.DateTime(timezone=True), nullable=True)

    total_cost_impact = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_days_impact = db.Column(db.Integer, nullable=False, default=0)

    rejection_reason = db.Column(db.Text, nullable=True)
    baseline_version_after = db.Column(db.Integer, nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    implemented_at = db.Column(db.DateTime(timezone=True), nullable=True)

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    deleted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

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

    changes = db.relationship(
        "VariationChange",
        back_populates="variation",
        cascade="all, delete-orphan",
        order_by="VariationChange.id",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.UniqueConstraint("project_id", "ref", name="uq_variations_project_ref"),
        db.CheckConstraint(
            "status IN ('draft', 'submitted', 'approved', 'rejected', 'implemented')",
            name="ck_variations_status",
        ),
        db.CheckConstraint(
            "variation_type IN ('scope_extension', 'scope_reduction', 'time_extension', "
            "'cost_adjustment', 'combined')",
            name="ck_variations_type",
        ),
    )

    # The workflow engine treats variations like any other subject.
    entity_type = "variation"

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self, include_changes: bool = False) -> dict:
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "ref": self.ref,
            "title": self.title,
            "description": self.description,
            "reason": self.reason,
            "variation_type": self.variation_type,
            "status": self.status,
            "version": self.version,
            "total_cost_impact": float(self.total_cost_impact or 0),
            "total_days_impact": self.total_days_impact or 0,
            "rejection_reason": self.rejection_reason,
            "baseline_version_after": self.baseline_version_after,
            "created_by": self.created_by,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
            "implemented_at": self.implemented_at.isoformat() if self.implemented_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_changes:
            d["changes"] = [c.to_dict() for c in self.changes]
        return d

    def __repr__(self) -> str:
        return f"<Variation {self.id}: {self.ref} {self.status}>"


class VariationChange(db.Model):
    """
    One proposed operation on a plan entity.

    ``original_baseline`` is captured when the variation is submitted and
    re-checked at implementation time; a mismatch means the baseline moved
    underneath the variation and the change can no longer be applied.
    """

    __tablename__ = "variation_changes"

    id = db.Column(db.Integer, primary_key=True)
    variation_id = db.Column(
        db.Integer,
        db.ForeignKey("variations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    op = db.Column(db.String(10), nullable=False)
    target_id = db.Column(
        db.Integer,
        db.ForeignKey("tracked_entities.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="NULL for add",
    )
    entity_type = db.Column(db.String(20), nullable=True, comment="Required for add")
    payload = db.Column(db.JSON, nullable=False, default=dict)
    original_baseline = db.Column(db.JSON, nullable=True)
    rationale = db.Column(db.Text, nullable=True)
    applied_entity_id = db.Column(
        db.Integer,
        db.ForeignKey("tracked_entities.id", ondelete="SET NULL"),
        nullable=True,
    )

    variation = db.relationship("Variation", back_populates="changes")

    __table_args__ = (
        db.CheckConstraint("op IN ('add', 'remove', 'modify')", name="ck_variation_changes_op"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variation_id": self.variation_id,
            "op": self.op,
            "target_id": self.target_id,
            "entity_type": self.entity_type,
            "payload": dict(self.payload or {}),
            "original_baseline": self.original_baseline,
            "rationale": self.rationale,
            "applied_entity_id": self.applied_entity_id,
        }
