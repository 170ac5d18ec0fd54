"""Unit tests for the DealStateMachine."""

import pytest

from referral_desk.domain.enums import DealStatus, TerminatedReason, ViewerRole
from referral_desk.services.deal_errors import InvalidTransitionError, PricingRequiredError
from referral_desk.services.deal_normalizer import Deal
from referral_desk.services.deal_state_machine import (
    ROLE_RESTRICTED_TARGETS,
    TRANSITION_MAP,
    UNGUARDED_TARGETS,
    ContractTerms,
    DealStateMachine,
    PricingContext,
)

S = DealStatus
R = ViewerRole

PRICED_TERMS = ContractTerms(
    contract_price_cents=30_000_000,
    commission_basis_points=300,
    referral_fee_basis_points=2500,
)


@pytest.fixture
def sm():
    return DealStateMachine()


def _make_deal(**kwargs):
    defaults = {"id": "d1", "referral_id": "r1", "status": S.UNDER_CONTRACT}
    defaults.update(kwargs)
    return Deal(**defaults)


def _priced_deal(**kwargs):
    return _make_deal(
        contract_price_cents=30_000_000,
        commission_basis_points=300,
        referral_fee_basis_points=2500,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Test every transition in the transition map
# ---------------------------------------------------------------------------


class TestValidTransitions:
    """Every transition in TRANSITION_MAP should validate for an unrestricted role."""

    @pytest.mark.parametrize(
        "from_status,to_status",
        [(from_s, to_s) for from_s, targets in TRANSITION_MAP.items() for to_s in targets],
    )
    def test_all_valid_transitions(self, sm, from_status, to_status):
        assert sm.validate_transition(from_status, to_status, R.ADMIN) is True

    def test_graph_is_complete(self):
        for status, targets in TRANSITION_MAP.items():
            assert status not in targets
            assert len(targets) == len(DealStatus) - 1

    def test_resaving_current_status_is_allowed(self, sm):
        assert sm.validate_transition(S.CLOSED, S.CLOSED) is True

    def test_regression_allowed(self, sm):
        assert sm.validate_transition(S.CLEAR_TO_CLOSE, S.UNDER_CONTRACT) is True


class TestRoleRestrictions:
    def test_agent_cannot_mark_paid(self, sm):
        with pytest.raises(InvalidTransitionError) as exc_info:
            sm.validate_transition(S.PAYMENT_SENT, S.PAID, R.AGENT)
        assert exc_info.value.target_status == S.PAID
        assert "agent" in exc_info.value.reason

    def test_manager_can_mark_paid(self, sm):
        assert sm.validate_transition(S.PAYMENT_SENT, S.PAID, R.MANAGER) is True

    def test_agent_options_exclude_paid(self, sm):
        assert S.PAID not in sm.status_options(R.AGENT)
        assert S.PAID not in sm.get_allowed_transitions(S.CLOSED, R.AGENT)

    def test_unrestricted_options_in_pipeline_order(self, sm):
        assert sm.status_options() == list(DealStatus)
        assert sm.status_options(R.ADMIN) == list(DealStatus)

    def test_allowed_transitions_exclude_current(self, sm):
        allowed = sm.get_allowed_transitions(S.CLOSED)
        assert S.CLOSED not in allowed
        assert allowed[0] == S.UNDER_CONTRACT

    def test_only_agent_is_restricted(self):
        assert set(ROLE_RESTRICTED_TARGETS) == {R.AGENT}


# ---------------------------------------------------------------------------
# Expected amount
# ---------------------------------------------------------------------------


class TestExpectedAmount:
    def test_derived_from_deal_terms(self, sm):
        assert sm.expected_amount(_priced_deal(), PricingContext()) == 225_000

    def test_terms_filled_from_referral(self, sm):
        deal = _make_deal(contract_price_cents=30_000_000)
        pricing = PricingContext(
            referral_terms=ContractTerms(commission_basis_points=300, referral_fee_basis_points=2500)
        )
        assert sm.expected_amount(deal, pricing) == 225_000

    def test_deal_terms_take_precedence(self, sm):
        deal = _make_deal(contract_price_cents=40_000_000)
        pricing = PricingContext(referral_terms=PRICED_TERMS)
        assert sm.expected_amount(deal, pricing) == 300_000

    def test_override_terms_only_for_primary(self, sm):
        pricing = PricingContext(override_terms=PRICED_TERMS)
        assert sm.expected_amount(_make_deal(), pricing, is_primary=True) == 225_000
        assert sm.expected_amount(_make_deal(), pricing, is_primary=False) == 0

    def test_fallback_order(self, sm):
        deal = _make_deal(expected_amount_cents=100)
        pricing = PricingContext(override_fee_due_cents=500, referral_fee_due_cents=900)
        assert sm.expected_amount(deal, pricing) == 500
        assert sm.expected_amount(deal, pricing, is_primary=False) == 100
        assert sm.expected_amount(_make_deal(), pricing, is_primary=False) == 900

    def test_terminated_owes_nothing(self, sm):
        assert sm.expected_amount(_priced_deal(), PricingContext(), status=S.TERMINATED) == 0

    def test_unpriced_is_zero(self, sm):
        assert sm.expected_amount(_make_deal(), PricingContext()) == 0


# ---------------------------------------------------------------------------
# Transition planning
# ---------------------------------------------------------------------------


class TestPricingGuard:
    @pytest.mark.parametrize(
        "target",
        [s for s in DealStatus if s not in UNGUARDED_TARGETS],
    )
    def test_unpriced_deal_cannot_advance(self, sm, target):
        with pytest.raises(PricingRequiredError) as exc_info:
            sm.plan_transition(_make_deal(), target, PricingContext())
        assert exc_info.value.deal_id == "d1"
        assert exc_info.value.target_status == target

    def test_unpriced_deal_can_stay_under_contract(self, sm):
        deal = _make_deal(status=S.PAST_INSPECTION)
        plan = sm.plan_transition(deal, S.UNDER_CONTRACT, PricingContext())
        assert plan.changes == {"status": S.UNDER_CONTRACT}
        assert plan.expected_amount_cents == 0

    def test_unpriced_deal_can_terminate(self, sm):
        plan = sm.plan_transition(_make_deal(), S.TERMINATED, PricingContext())
        assert plan.target_status == S.TERMINATED

    def test_priced_advance_carries_amount(self, sm):
        plan = sm.plan_transition(_priced_deal(), S.CLOSED, PricingContext())
        assert plan.changes == {"status": S.CLOSED, "expected_amount_cents": 225_000}
        assert plan.previous_status == S.UNDER_CONTRACT

    def test_role_checked_before_pricing(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.plan_transition(_make_deal(), S.PAID, PricingContext(), role=R.AGENT)

    def test_current_status_override_used_as_previous(self, sm):
        plan = sm.plan_transition(
            _priced_deal(), S.CLOSED, PricingContext(), current_status=S.CLEAR_TO_CLOSE
        )
        assert plan.previous_status == S.CLEAR_TO_CLOSE


class TestTermination:
    def test_terminate_zeroes_amounts_with_default_reason(self, sm):
        deal = _priced_deal(expected_amount_cents=225_000, received_amount_cents=1_000)
        plan = sm.plan_transition(deal, S.TERMINATED, PricingContext())
        assert plan.changes == {
            "status": S.TERMINATED,
            "expected_amount_cents": 0,
            "received_amount_cents": 0,
            "terminated_reason": TerminatedReason.INSPECTION,
        }
        assert plan.expected_amount_cents == 0

    def test_explicit_reason(self, sm):
        plan = sm.plan_transition(
            _make_deal(), S.TERMINATED, PricingContext(), terminated_reason=TerminatedReason.FINANCING
        )
        assert plan.terminated_reason == TerminatedReason.FINANCING

    def test_existing_reason_kept(self, sm):
        deal = _make_deal(terminated_reason=TerminatedReason.APPRAISAL)
        plan = sm.plan_transition(deal, S.TERMINATED, PricingContext())
        assert plan.terminated_reason == TerminatedReason.APPRAISAL

    def test_configured_default_reason(self):
        sm = DealStateMachine(default_terminated_reason=TerminatedReason.CHANGED_MIND)
        plan = sm.plan_transition(_make_deal(), S.TERMINATED, PricingContext())
        assert plan.terminated_reason == TerminatedReason.CHANGED_MIND

    def test_leaving_terminated_clears_reason_and_reprices(self, sm):
        deal = _priced_deal(status=S.TERMINATED, terminated_reason=TerminatedReason.INSPECTION)
        plan = sm.plan_transition(deal, S.PAST_INSPECTION, PricingContext())
        assert plan.changes == {
            "status": S.PAST_INSPECTION,
            "expected_amount_cents": 225_000,
            "terminated_reason": None,
        }

    def test_leaving_terminated_unpriced_is_guarded(self, sm):
        deal = _make_deal(status=S.TERMINATED, terminated_reason=TerminatedReason.INSPECTION)
        with pytest.raises(PricingRequiredError):
            sm.plan_transition(deal, S.CLOSED, PricingContext())

    def test_reviving_to_under_contract_unpriced(self, sm):
        deal = _make_deal(status=S.TERMINATED, terminated_reason=TerminatedReason.INSPECTION)
        plan = sm.plan_transition(deal, S.UNDER_CONTRACT, PricingContext())
        assert plan.changes == {"status": S.UNDER_CONTRACT, "terminated_reason": None}
