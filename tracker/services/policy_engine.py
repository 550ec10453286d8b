"""
Policy engine — pure functions over (requirement, role, context).

No database access happens here.  Callers resolve the role and load the
project's WorkflowSettings first, which keeps every decision in this module
unit-testable and exhaustively enumerable.

    requirement(entity_type, action, settings) → Requirement
    can_act(requirement, actor_role, context)  → bool
    has_write_capability(entity_type, role)    → bool
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping

from tracker.models.workflow_settings import AuthorityMode, WorkflowAction, WorkflowSettings

SUPPLIER_PM = "supplier_pm"
CUSTOMER_PM = "customer_pm"

PARTY_SUPPLIER = "supplier"
PARTY_CUSTOMER = "customer"
BOTH_PARTIES = frozenset({PARTY_SUPPLIER, PARTY_CUSTOMER})

_PARTY_BY_ROLE = {SUPPLIER_PM: PARTY_SUPPLIER, CUSTOMER_PM: PARTY_CUSTOMER}
_ROLE_BY_PARTY = {v: k for k, v in _PARTY_BY_ROLE.items()}

PM_ROLES = frozenset({SUPPLIER_PM, CUSTOMER_PM})

# Fixed role sets per authority mode.  ``none`` and ``conditional`` are
# resolved in allowed_roles().
AUTHORITY_ROLES: Mapping[AuthorityMode, frozenset] = {
    AuthorityMode.BOTH: PM_ROLES,
    AuthorityMode.EITHER: PM_ROLES,
    AuthorityMode.SUPPLIER_ONLY: frozenset({SUPPLIER_PM}),
    AuthorityMode.SUPPLIER_ROLE: frozenset({SUPPLIER_PM}),
    AuthorityMode.CUSTOMER_ONLY: frozenset({CUSTOMER_PM}),
    AuthorityMode.CUSTOMER_ROLE: frozenset({CUSTOMER_PM}),
}

WRITE_CAPABILITY: Mapping[str, frozenset] = {
    "component": frozenset({"admin", "supplier_pm", "supplier_finance"}),
    "milestone": frozenset({"admin", "supplier_pm", "supplier_finance"}),
    "deliverable": frozenset({"admin", "supplier_pm", "contributor"}),
    "timesheet": frozenset({"admin", "supplier_pm", "supplier_finance", "customer_finance", "contributor"}),
    "expense": frozenset({"admin", "supplier_pm", "supplier_finance", "customer_finance", "contributor"}),
    "variation": frozenset({"admin", "supplier_pm", "customer_pm"}),
}


def _expense_approvers(context: Mapping) -> frozenset:
    if context.get("chargeable_to_customer"):
        return PM_ROLES
    return frozenset({SUPPLIER_PM})


CONDITIONAL_PREDICATES: Mapping[str, Callable[[Mapping], frozenset]] = {
    "expense": _expense_approvers,
}


@dataclass(frozen=True)
class Requirement:
    entity_type: str
    action: WorkflowAction
    required: bool
    authority: AuthorityMode

    @property
    def is_dual(self) -> bool:
        """True when the edge needs both parties (AND-join)."""
        return self.required and self.authority == AuthorityMode.BOTH

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "action": self.action.value,
            "required": self.required,
            "authority": self.authority.value,
        }


def resolve_action(entity_type: str, action) -> WorkflowAction:
    """Accept ``WorkflowAction``, ``"milestone.signoff"`` or ``"signoff"``."""
    if isinstance(action, WorkflowAction):
        key = action
    else:
        key = WorkflowAction(action if "." in action else f"{entity_type}.{action}")
    if key.entity_type != entity_type:
        raise ValueError(f"Action {key.value} does not apply to {entity_type}")
    return key


def requirement(entity_type: str, action, settings: WorkflowSettings) -> Requirement:
    key = resolve_action(entity_type, action)
    setting = settings.get(key)
    return Requirement(
        entity_type=entity_type,
        action=key,
        required=setting.required,
        authority=setting.authority,
    )


def allowed_roles(req: Requirement, context: Mapping | None = None) -> frozenset | None:
    """Role set for *req*; ``None`` means "anyone"."""
    context = context or {}
    if req.authority == AuthorityMode.NONE:
        return None
    if req.authority == AuthorityMode.CONDITIONAL:
        predicate = CONDITIONAL_PREDICATES.get(req.entity_type)
        return predicate(context) if predicate else PM_ROLES
    return AUTHORITY_ROLES[req.authority]


def can_act(req: Requirement, actor_role: str, context: Mapping | None = None) -> bool:
    roles = allowed_roles(req, context)
    if roles is None:
        return True
    return actor_role in roles


def has_write_capability(entity_type: str, role: str) -> bool:
    return role in WRITE_CAPABILITY.get(entity_type, frozenset())


def party_for(role: str) -> str | None:
    return _PARTY_BY_ROLE.get(role)


def role_for(party: str) -> str | None:
    return _ROLE_BY_PARTY.get(party)


def explain(req: Requirement, actor_role: str, context: Mapping | None = None) -> dict:
    """Details for a denial message: what was needed and who could give it."""
    roles = allowed_roles(req, context)
    return {
        "action": req.action.value,
        "authority": req.authority.value,
        "required": req.required,
        "actor_role": actor_role,
        "allowed_roles": sorted(roles) if roles is not None else ["*"],
    }


def explain_write(entity_type: str, actor_role: str) -> dict:
    return {
        "entity_type": entity_type,
        "actor_role": actor_role,
        "allowed_roles": sorted(WRITE_CAPABILITY.get(entity_type, frozenset())),
    }
