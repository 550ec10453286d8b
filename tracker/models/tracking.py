"""
Tracked Entities — plan items, time & expense records, approval decisions, baselines.

Models:
    - TrackedEntity:     component | milestone | deliverable | timesheet | expense
    - ApprovalDecision:  append-only party decision against any approvable subject
    - Baseline:          one row per baseline commit unit (project commit or variation)
    - BaselineVersion:   immutable per-entity snapshot history

State graphs are declared here as plain transition dicts; the workflow engine
turns them into gated graphs.  Every key is a status, every value lists its
legal successors.  Terminal states map to an empty list.
"""

from datetime import datetime, timezone

from tracker.models import db
from tracker.models.soft_close import SoftCloseMixin
from tracker.models.workflow_settings import WorkflowAction

# ── Entity types ─────────────────────────────────────────────────────────────

PLAN_ENTITY_TYPES = frozenset({"component", "milestone", "deliverable"})
RECORD_ENTITY_TYPES = frozenset({"timesheet", "expense"})
ENTITY_TYPES = PLAN_ENTITY_TYPES | RECORD_ENTITY_TYPES

# Allowed parent type per plan entity type (None = top level).
PARENT_TYPES = {
    "component": None,
    "milestone": "component",
    "deliverable": "milestone",
    "timesheet": None,
    "expense": None,
}

# ── State graphs ─────────────────────────────────────────────────────────────

COMPONENT_TRANSITIONS = {
    "not_started": ["in_progress"],
    "in_progress": ["complete"],
    "complete":    [],
}

MILESTONE_TRANSITIONS = {
    "not_started": ["in_progress"],
    "in_progress": ["complete"],
    "complete":    ["signed_off"],     # only when milestone.signoff is required
    "signed_off":  [],
}

DELIVERABLE_TRANSITIONS = {
    "draft":            ["in_progress"],
    "in_progress":      ["ready_for_review"],
    "ready_for_review": ["delivered", "in_progress"],   # review rejected → rework
    "delivered":        ["accepted", "in_progress"],    # acceptance rejected → rework
    "accepted":         [],
}

APPROVAL_RECORD_TRANSITIONS = {
    "draft":     ["submitted"],
    "submitted": ["approved", "rejected"],
    "rejected":  ["draft"],
    "approved":  [],      # reversal is an administrative action, not an edge
}

INITIAL_STATUS = {
    "component": "not_started",
    "milestone": "not_started",
    "deliverable": "draft",
    "timesheet": "draft",
    "expense": "draft",
}

# Gated edges: (entity_type, from, to) → workflow action.
TRANSITION_GATES = {
    ("milestone", "complete", "signed_off"): WorkflowAction.MILESTONE_SIGNOFF,
    ("deliverable", "ready_for_review", "delivered"): WorkflowAction.DELIVERABLE_REVIEW,
    ("deliverable", "ready_for_review", "in_progress"): WorkflowAction.DELIVERABLE_REVIEW,
    ("deliverable", "delivered", "accepted"): WorkflowAction.DELIVERABLE_SIGNOFF,
    ("deliverable", "delivered", "in_progress"): WorkflowAction.DELIVERABLE_SIGNOFF,
    ("timesheet", "submitted", "approved"): WorkflowAction.TIMESHEET_APPROVAL,
    ("timesheet", "submitted", "rejected"): WorkflowAction.TIMESHEET_APPROVAL,
    ("expense", "submitted", "approved"): WorkflowAction.EXPENSE_APPROVAL,
    ("expense", "submitted", "rejected"): WorkflowAction.EXPENSE_APPROVAL,
}

# Rejections are decided by a single eligible party, never AND-joined.
REJECTION_EDGES = frozenset({
    ("deliverable", "ready_for_review", "in_progress"),
    ("deliverable", "delivered", "in_progress"),
    ("timesheet", "submitted", "rejected"),
    ("expense", "submitted", "rejected"),
})

# Edges that only exist when their gate is configured as required.
OPTIONAL_EDGES = frozenset({("milestone", "complete", "signed_off")})

# Completing a milestone signs that party's half of the completion certificate.
ATTESTATION_EDGES = {
    ("milestone", "in_progress", "complete"): WorkflowAction.MILESTONE_SIGNOFF,
}

# Statuses that count as "done" when warning about incomplete children.
DONE_STATUSES = frozenset({"complete", "signed_off", "accepted", "approved"})

DECISIONS = ("approved", "rejected", "reversed")


def _num(value):
    return float(value) if value is not None else None


def _iso(value):
    return value.isoformat() if value else None


class TrackedEntity(SoftCloseMixin, db.Model):
    """
    Any project item whose status is governed by the workflow engine.

    Business rules:
    - ``status`` changes only through the workflow engine.
    - ``version`` is the optimistic-concurrency counter; SQLAlchemy bumps it on
      every UPDATE and refuses a flush whose WHERE version no longer matches.
    - ``workflow_round`` increments on every status change; approval decisions
      count toward an AND-join only within the round they were cast in.
    - baseline_* columns are written only by the baseline tracker.
    """

    __tablename__ = "tracked_entities"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    parent_id = db.Column(
        db.Integer,
        db.ForeignKey("tracked_entities.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    entity_type = db.Column(db.String(20), nullable=False)
    ref = db.Column(db.String(30), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(30), nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    version = db.Column(db.Integer, nullable=False)
    workflow_round = db.Column(db.Integer, nullable=False, default=0)
    last_decision_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Current values
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    effort_hours = db.Column(db.Numeric(10, 2), nullable=True)
    value = db.Column(db.Numeric(12, 2), nullable=True)
    chargeable_to_customer = db.Column(db.Boolean, nullable=False, default=False)

    # Baseline snapshot (NULL until committed)
    baseline_start_date = db.Column(db.Date, nullable=True)
    baseline_end_date = db.Column(db.Date, nullable=True)
    baseline_due_date = db.Column(db.Date, nullable=True)
    baseline_effort_hours = db.Column(db.Numeric(10, 2), nullable=True)
    baseline_value = db.Column(db.Numeric(12, 2), nullable=True)
    baseline_version = db.Column(db.Integer, nullable=False, default=0)
    baselined_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_at_risk = db.Column(db.Boolean, nullable=False, default=False)

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

    parent = db.relationship("TrackedEntity", remote_side=[id], backref=db.backref("children", lazy="dynamic"))

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.Index("ix_tracked_project_type", "project_id", "entity_type"),
        db.CheckConstraint(
            "entity_type IN ('component', 'milestone', 'deliverable', 'timesheet', 'expense')",
            name="ck_tracked_entity_type",
        ),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def is_baselined(self) -> bool:
        return self.baselined_at is not None

    @property
    def planned_finish(self):
        """Current finish date: due date for deliverables, end date otherwise."""
        return self.due_date if self.entity_type == "deliverable" else self.end_date

    @property
    def baseline_finish(self):
        return self.baseline_due_date if self.entity_type == "deliverable" else self.baseline_end_date

    def open_children(self):
        return self.children.filter(TrackedEntity.closed_at.is_(None)).all()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "parent_id": self.parent_id,
            "entity_type": self.entity_type,
            "ref": self.ref,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "owner_id": self.owner_id,
            "version": self.version,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "due_date": _iso(self.due_date),
            "effort_hours": _num(self.effort_hours),
            "value": _num(self.value),
            "chargeable_to_customer": self.chargeable_to_customer,
            "baseline": {
                "start_date": _iso(self.baseline_start_date),
                "end_date": _iso(self.baseline_end_date),
                "due_date": _iso(self.baseline_due_date),
                "effort_hours": _num(self.baseline_effort_hours),
                "value": _num(self.baseline_value),
                "version": self.baseline_version,
                "baselined_at": _iso(self.baselined_at),
            } if self.is_baselined else None,
            "is_at_risk": self.is_at_risk,
            "closed_at": _iso(self.closed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<TrackedEntity {self.id}: {self.entity_type} {self.status}>"


class ApprovalDecision(db.Model):
    """
    Immutable approval decision for any approvable subject.

    Polymorphic subject: subject_type + subject_id identify the artefact
    (tracked entity, variation, or project for baseline approval).  Rows are
    never updated or deleted; membership removal does not touch them.
    """

    __tablename__ = "approval_decisions"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    subject_type = db.Column(db.String(20), nullable=False)
    subject_id = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(40), nullable=False, comment="workflow action key, e.g. milestone.signoff")
    workflow_round = db.Column(db.Integer, nullable=False, default=0)
    role = db.Column(db.String(30), nullable=False)
    party = db.Column(db.String(20), nullable=True, comment="supplier | customer | NULL")
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    decision = db.Column(db.String(20), nullable=False)
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_approval_subject", "subject_type", "subject_id"),
        db.Index("ix_approval_subject_round", "subject_type", "subject_id", "action", "workflow_round"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "action": self.action,
            "workflow_round": self.workflow_round,
            "role": self.role,
            "party": self.party,
            "actor_id": self.actor_id,
            "decision": self.decision,
            "comment": self.comment,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<ApprovalDecision {self.subject_type}/{self.subject_id} {self.action} {self.party} {self.decision}>"


class Baseline(db.Model):
    """One atomic baseline commit unit."""

    __tablename__ = "baselines"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version = db.Column(db.Integer, nullable=False)
    source = db.Column(db.String(20), nullable=False, comment="commit | variation")
    variation_id = db.Column(db.Integer, db.ForeignKey("variations.id", ondelete="SET NULL"), nullable=True)
    entity_ids = db.Column(db.JSON, nullable=False, default=list)
    committed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    committed_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("project_id", "version", name="uq_baselines_project_version"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "version": self.version,
            "source": self.source,
            "variation_id": self.variation_id,
            "entity_ids": list(self.entity_ids or []),
            "committed_by": self.committed_by,
            "committed_at": _iso(self.committed_at),
        }


class BaselineVersion(db.Model):
    """Per-entity snapshot written every time an entity is (re)baselined."""

    __tablename__ = "baseline_versions"

    id = db.Column(db.Integer, primary_key=True)
    entity_id = db.Column(
        db.Integer,
        db.ForeignKey("tracked_entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    baseline_id = db.Column(
        db.Integer,
        db.ForeignKey("baselines.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version = db.Column(db.Integer, nullable=False)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    effort_hours = db.Column(db.Numeric(10, 2), nullable=True)
    value = db.Column(db.Numeric(12, 2), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("entity_id", "version", name="uq_baseline_versions_entity_version"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "baseline_id": self.baseline_id,
            "version": self.version,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "due_date": _iso(self.due_date),
            "effort_hours": _num(self.effort_hours),
            "value": _num(self.value),
            "created_at": _iso(self.created_at),
        }
