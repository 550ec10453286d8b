"""
Workflow Settings — per-project approval configuration.

Storage is one ``workflow_settings`` row per (project, action key).  The key
and authority columns are closed sets (CHECK constraints + enums below), so
an invalid configuration is rejected at validation time rather than
discovered when a transition is evaluated.

The typed, immutable view used by the policy engine is ``WorkflowSettings``:
a complete mapping of every ``WorkflowAction`` to an ``ActionSetting`` with
defaults filled in for keys the project has never configured.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from tracker.models import db


class AuthorityMode(str, Enum):
    BOTH = "both"
    EITHER = "either"
    SUPPLIER_ONLY = "supplier_only"
    CUSTOMER_ONLY = "customer_only"
    SUPPLIER_ROLE = "supplier_role"
    CUSTOMER_ROLE = "customer_role"
    NONE = "none"
    CONDITIONAL = "conditional"


class WorkflowAction(str, Enum):
    MILESTONE_BASELINE = "milestone.baseline"
    MILESTONE_SIGNOFF = "milestone.signoff"
    DELIVERABLE_REVIEW = "deliverable.review"
    DELIVERABLE_SIGNOFF = "deliverable.signoff"
    TIMESHEET_APPROVAL = "timesheet.approval"
    EXPENSE_APPROVAL = "expense.approval"
    VARIATION_APPROVAL = "variation.approval"

    @property
    def entity_type(self) -> str:
        return self.value.split(".", 1)[0]


@dataclass(frozen=True)
class ActionSetting:
    required: bool
    authority: AuthorityMode

    def to_dict(self) -> dict:
        return {"required": self.required, "authority": self.authority.value}


# Production defaults of the original product: full dual-signature governance
# on plan artefacts, customer PM approves time, conditional expense approval.
DEFAULT_ACTION_SETTINGS: Mapping[WorkflowAction, ActionSetting] = MappingProxyType({
    WorkflowAction.MILESTONE_BASELINE: ActionSetting(True, AuthorityMode.BOTH),
    WorkflowAction.MILESTONE_SIGNOFF: ActionSetting(True, AuthorityMode.BOTH),
    WorkflowAction.DELIVERABLE_REVIEW: ActionSetting(True, AuthorityMode.CUSTOMER_ONLY),
    WorkflowAction.DELIVERABLE_SIGNOFF: ActionSetting(True, AuthorityMode.BOTH),
    WorkflowAction.TIMESHEET_APPROVAL: ActionSetting(True, AuthorityMode.CUSTOMER_ONLY),
    WorkflowAction.EXPENSE_APPROVAL: ActionSetting(True, AuthorityMode.CONDITIONAL),
    WorkflowAction.VARIATION_APPROVAL: ActionSetting(True, AuthorityMode.BOTH),
})


@dataclass(frozen=True)
class WorkflowSettings:
    """Complete, typed workflow configuration for one project."""

    actions: Mapping[WorkflowAction, ActionSetting] = field(
        default_factory=lambda: dict(DEFAULT_ACTION_SETTINGS)
    )

    def __post_init__(self):
        merged = dict(DEFAULT_ACTION_SETTINGS)
        merged.update(self.actions)
        object.__setattr__(self, "actions", MappingProxyType(merged))

    def get(self, action: WorkflowAction | str) -> ActionSetting:
        return self.actions[WorkflowAction(action)]

    def to_dict(self) -> dict:
        return {action.value: setting.to_dict() for action, setting in self.actions.items()}


class WorkflowSetting(db.Model):
    """One configured (project, action) pair."""

    __tablename__ = "workflow_settings"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action_key = db.Column(db.String(40), nullable=False)
    required = db.Column(db.Boolean, nullable=False, default=True)
    authority = db.Column(db.String(20), nullable=False)
    updated_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("project_id", "action_key", name="uq_workflow_settings_project_action"),
        db.CheckConstraint(
            "action_key IN ({})".format(", ".join(f"'{a.value}'" for a in WorkflowAction)),
            name="ck_workflow_settings_action",
        ),
        db.CheckConstraint(
            "authority IN ({})".format(", ".join(f"'{m.value}'" for m in AuthorityMode)),
            name="ck_workflow_settings_authority",
        ),
    )

    def as_setting(self) -> ActionSetting:
        return ActionSetting(required=bool(self.required), authority=AuthorityMode(self.authority))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "action_key": self.action_key,
            "required": self.required,
            "authority": self.authority,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
