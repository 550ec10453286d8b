"""
PolicyEngine tests — pure functions, no database.

The property test walks the full (action × authority × role × context)
cross-product and checks can_act against the authority table:

    both / either            → supplier_pm, customer_pm
    supplier_only / _role    → supplier_pm
    customer_only / _role    → customer_pm
    none                     → anyone
    conditional (expense)    → both PMs if chargeable, else supplier_pm
"""

import pytest
from hypothesis import HealthCheck, given, settings as hyp_settings
from hypothesis import strategies as st

from tracker.models.workflow_settings import (
    DEFAULT_ACTION_SETTINGS,
    ActionSetting,
    AuthorityMode,
    WorkflowAction,
    WorkflowSettings,
)
from tracker.services import policy_engine

ROLES = ("admin", "supplier_pm", "customer_pm", "supplier_finance",
         "customer_finance", "contributor", "viewer", "none")

EXPECTED = {
    AuthorityMode.BOTH: {"supplier_pm", "customer_pm"},
    AuthorityMode.EITHER: {"supplier_pm", "customer_pm"},
    AuthorityMode.SUPPLIER_ONLY: {"supplier_pm"},
    AuthorityMode.SUPPLIER_ROLE: {"supplier_pm"},
    AuthorityMode.CUSTOMER_ONLY: {"customer_pm"},
    AuthorityMode.CUSTOMER_ROLE: {"customer_pm"},
}


def _expected(action, authority, role, chargeable):
    if authority == AuthorityMode.NONE:
        return True
    if authority == AuthorityMode.CONDITIONAL:
        if action.entity_type == "expense" and not chargeable:
            return role == "supplier_pm"
        return role in {"supplier_pm", "customer_pm"}
    return role in EXPECTED[authority]


@hyp_settings(max_examples=500, deadline=None,
              suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(
    action=st.sampled_from(list(WorkflowAction)),
    authority=st.sampled_from(list(AuthorityMode)),
    required=st.booleans(),
    role=st.sampled_from(ROLES),
    chargeable=st.booleans(),
)
def test_can_act_matches_authority_table(action, authority, required, role, chargeable):
    settings = WorkflowSettings({action: ActionSetting(required, authority)})
    req = policy_engine.requirement(action.entity_type, action, settings)
    ctx = {"chargeable_to_customer": chargeable}
    assert policy_engine.can_act(req, role, ctx) is _expected(action, authority, role, chargeable)


@pytest.mark.parametrize("action", list(WorkflowAction))
@pytest.mark.parametrize("authority", list(AuthorityMode))
def test_cross_product_exhaustive(action, authority):
    settings = WorkflowSettings({action: ActionSetting(True, authority)})
    req = policy_engine.requirement(action.entity_type, action, settings)
    for role in ROLES:
        for chargeable in (True, False):
            ctx = {"chargeable_to_customer": chargeable}
            assert policy_engine.can_act(req, role, ctx) is _expected(action, authority, role, chargeable)


class TestRequirement:
    def test_defaults_apply_when_nothing_is_configured(self):
        req = policy_engine.requirement("milestone", "signoff", WorkflowSettings())
        assert req.action == WorkflowAction.MILESTONE_SIGNOFF
        assert req.authority == DEFAULT_ACTION_SETTINGS[WorkflowAction.MILESTONE_SIGNOFF].authority
        assert req.is_dual

    def test_override_merges_over_defaults(self):
        settings = WorkflowSettings({
            WorkflowAction.TIMESHEET_APPROVAL: ActionSetting(False, AuthorityMode.NONE),
        })
        req = policy_engine.requirement("timesheet", "timesheet.approval", settings)
        assert not req.required
        assert not req.is_dual
        assert settings.get("expense.approval").authority == AuthorityMode.CONDITIONAL

    def test_action_for_another_entity_type_is_rejected(self):
        with pytest.raises(ValueError):
            policy_engine.resolve_action("expense", WorkflowAction.TIMESHEET_APPROVAL)

    def test_either_is_not_dual(self):
        settings = WorkflowSettings({
            WorkflowAction.VARIATION_APPROVAL: ActionSetting(True, AuthorityMode.EITHER),
        })
        assert not policy_engine.requirement("variation", "approval", settings).is_dual


class TestWriteCapability:
    @pytest.mark.parametrize("role,allowed", [
        ("supplier_pm", True),
        ("admin", True),
        ("contributor", False),
        ("customer_pm", False),
        ("viewer", False),
    ])
    def test_milestone(self, role, allowed):
        assert policy_engine.has_write_capability("milestone", role) is allowed

    def test_contributor_may_log_time(self):
        assert policy_engine.has_write_capability("timesheet", "contributor")

    def test_viewer_writes_nothing(self):
        for entity_type in policy_engine.WRITE_CAPABILITY:
            assert not policy_engine.has_write_capability(entity_type, "viewer")


def test_explain_names_allowed_roles():
    settings = WorkflowSettings()
    req = policy_engine.requirement("expense", "approval", settings)
    details = policy_engine.explain(req, "customer_pm", {"chargeable_to_customer": False})
    assert details["allowed_roles"] == ["supplier_pm"]
    assert details["authority"] == "conditional"
    assert details["actor_role"] == "customer_pm"


def test_party_mapping():
    assert policy_engine.party_for("supplier_pm") == "supplier"
    assert policy_engine.party_for("customer_pm") == "customer"
    assert policy_engine.party_for("admin") is None
    assert policy_engine.role_for("customer") == "customer_pm"
