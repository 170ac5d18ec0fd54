"""Deal state machine: validates transitions and prices every move.

Deal statuses form a guarded free graph: real deals regress (financing falls
through and the file is reopened), so any status may move to any other. What
is enforced:

1. Role limits on the offered targets (agents cannot mark a deal paid).
2. The pricing guard: a deal cannot advance past ``under_contract`` unless a
   positive referral fee can be determined.
3. Termination bookkeeping: terminated deals carry zero amounts and a reason;
   leaving ``terminated`` clears the reason and re-prices the deal.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from referral_desk.domain.enums import DealStatus, TerminatedReason, ViewerRole
from referral_desk.services.deal_errors import InvalidTransitionError, PricingRequiredError
from referral_desk.services.deal_normalizer import Deal
from referral_desk.services.fee_calculator import derive_referral_fee

logger = logging.getLogger(__name__)

S = DealStatus

# ---------------------------------------------------------------------------
# Transition map: from_status -> allowed target statuses (every other status)
# ---------------------------------------------------------------------------

TRANSITION_MAP: dict[DealStatus, frozenset[DealStatus]] = {
    current: frozenset(target for target in DealStatus if target != current)
    for current in DealStatus
}

# Targets a role may not set directly
ROLE_RESTRICTED_TARGETS: dict[ViewerRole, frozenset[DealStatus]] = {
    ViewerRole.AGENT: frozenset({S.PAID}),
}

# Targets exempt from the pricing guard
UNGUARDED_TARGETS: frozenset[DealStatus] = frozenset({S.UNDER_CONTRACT, S.TERMINATED})

DEFAULT_TERMINATED_REASON = TerminatedReason.INSPECTION


@dataclass(frozen=True)
class ContractTerms:
    """Contract price and rates, any of which may be unknown."""

    contract_price_cents: Optional[int] = None
    commission_basis_points: Optional[int] = None
    referral_fee_basis_points: Optional[int] = None


@dataclass(frozen=True)
class PricingContext:
    """Everything outside the deal itself that can price it.

    ``referral_terms`` are the contract terms saved on the referral.
    ``override_terms`` and ``override_fee_due_cents`` are unsaved edits from
    the caller; they only apply to the primary deal.
    ``referral_fee_due_cents`` is the referral's flat fee hint.
    """

    referral_terms: ContractTerms = field(default_factory=ContractTerms)
    override_terms: ContractTerms = field(default_factory=ContractTerms)
    override_fee_due_cents: Optional[int] = None
    referral_fee_due_cents: Optional[int] = None


@dataclass(frozen=True)
class TransitionPlan:
    """Outcome of a successful guard: the new values and the fields to persist."""

    deal_id: Optional[str]
    previous_status: DealStatus
    target_status: DealStatus
    expected_amount_cents: int
    terminated_reason: Optional[TerminatedReason]
    changes: dict


def _first_positive(*values: Optional[int]) -> Optional[int]:
    for value in values:
        if value is not None and not isinstance(value, bool) and value > 0:
            return value
    return None


class DealStateMachine:
    """Validates deal status transitions and enforces the pricing guard."""

    def __init__(self, default_terminated_reason: TerminatedReason = DEFAULT_TERMINATED_REASON):
        self.default_terminated_reason = default_terminated_reason

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def get_allowed_transitions(
        self,
        current_status: DealStatus,
        role: Optional[ViewerRole] = None,
    ) -> list[DealStatus]:
        """Return the statuses offered to *role* from *current_status*, in pipeline order."""
        restricted = ROLE_RESTRICTED_TARGETS.get(role, frozenset())
        allowed = TRANSITION_MAP[current_status]
        return [s for s in DealStatus if s in allowed and s not in restricted]

    def status_options(self, role: Optional[ViewerRole] = None) -> list[DealStatus]:
        """Every status a status selector should list for *role*."""
        restricted = ROLE_RESTRICTED_TARGETS.get(role, frozenset())
        return [s for s in DealStatus if s not in restricted]

    def validate_transition(
        self,
        current_status: DealStatus,
        target_status: DealStatus,
        role: Optional[ViewerRole] = None,
    ) -> bool:
        """Return True if *role* may move a deal to *target_status*.

        Re-saving the current status is allowed (it re-prices the deal).
        Raises InvalidTransitionError otherwise.
        """
        if target_status in ROLE_RESTRICTED_TARGETS.get(role, frozenset()):
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Role {role.value} cannot set deals to {target_status.label}",
            )
        if target_status != current_status and target_status not in TRANSITION_MAP[current_status]:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )
        return True

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def expected_amount(
        self,
        deal: Deal,
        pricing: PricingContext,
        status: Optional[DealStatus] = None,
        is_primary: bool = True,
    ) -> int:
        """Referral fee owed on *deal* if it were in *status* (defaults to its own).

        Lookup order: fee derived from contract terms (each term from the deal,
        else the referral, else the caller's override), then the caller's flat
        fee override, then the deal's persisted amount, then the referral hint.
        Terminated deals always owe 0.
        """
        status = status or deal.status
        if status == S.TERMINATED:
            return 0

        referral = pricing.referral_terms
        override = pricing.override_terms if is_primary else ContractTerms()

        derived = derive_referral_fee(
            _first_positive(
                deal.contract_price_cents,
                referral.contract_price_cents,
                override.contract_price_cents,
            ),
            _first_positive(
                deal.commission_basis_points,
                referral.commission_basis_points,
                override.commission_basis_points,
            ),
            _first_positive(
                deal.referral_fee_basis_points,
                referral.referral_fee_basis_points,
                override.referral_fee_basis_points,
            ),
        )
        if derived is not None:
            return derived

        fallback = _first_positive(
            pricing.override_fee_due_cents if is_primary else None,
            deal.expected_amount_cents,
            pricing.referral_fee_due_cents,
        )
        return fallback or 0

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def plan_transition(
        self,
        deal: Deal,
        target_status: DealStatus,
        pricing: PricingContext,
        role: Optional[ViewerRole] = None,
        current_status: Optional[DealStatus] = None,
        terminated_reason: Optional[TerminatedReason] = None,
        is_primary: bool = True,
    ) -> TransitionPlan:
        """Run every guard for moving *deal* to *target_status*.

        *current_status* is the status the caller currently shows (an
        optimistic override may differ from ``deal.status``).

        Raises InvalidTransitionError or PricingRequiredError; never touches
        storage.
        """
        current = current_status or deal.status
        self.validate_transition(current, target_status, role)

        if target_status == S.TERMINATED:
            reason = terminated_reason or deal.terminated_reason or self.default_terminated_reason
            return TransitionPlan(
                deal_id=deal.id,
                previous_status=current,
                target_status=target_status,
                expected_amount_cents=0,
                terminated_reason=reason,
                changes={
                    "status": target_status,
                    "expected_amount_cents": 0,
                    "received_amount_cents": 0,
                    "terminated_reason": reason,
                },
            )

        amount = self.expected_amount(deal, pricing, status=target_status, is_primary=is_primary)
        if amount <= 0 and target_status not in UNGUARDED_TARGETS:
            logger.info(
                "Pricing guard rejected %s -> %s for deal %s",
                current.value, target_status.value, deal.id,
            )
            raise PricingRequiredError(deal.id, target_status)

        changes: dict = {"status": target_status}
        if amount > 0:
            changes["expected_amount_cents"] = amount
        if current == S.TERMINATED or deal.terminated_reason is not None:
            changes["terminated_reason"] = None

        return TransitionPlan(
            deal_id=deal.id,
            previous_status=current,
            target_status=target_status,
            expected_amount_cents=amount,
            terminated_reason=None,
            changes=changes,
        )
