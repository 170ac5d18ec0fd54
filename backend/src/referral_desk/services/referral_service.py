"""Referral pipeline operations: registration, status changes, pre-approval.

Referral status and deal status are separate pipelines. Moving a referral to
``Under Contract`` records the contract terms and prices the live deals
(creating one when none is live); earlier pipeline stages re-estimate the fee
from the pre-approval amount. Terminated deals are never re-priced.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from referral_desk.app.config import get_settings
from referral_desk.domain.enums import DealStatus, ReferralStatus
from referral_desk.domain.models import Deal, Referral
from referral_desk.domain.schemas import (
    ContractDetails,
    ContractDetailsResponse,
    ReferralCreate,
    ReferralResponse,
    ReferralStatusResponse,
    ReferralStatusUpdate,
)
from referral_desk.services.deal_errors import DealValidationError
from referral_desk.services.deal_normalizer import normalize_deal
from referral_desk.services.deal_service import DealNotFoundError, list_deals, serialize_deal
from referral_desk.services.deal_state_machine import ContractTerms, PricingContext
from referral_desk.services.fee_calculator import (
    calculate_referral_fee_due,
    derive_referral_fee,
    parse_amount_input,
    parse_percent_input,
)

logger = logging.getLogger(__name__)

# Stages where the fee is fixed by the contract, not the pre-approval
_CONTRACT_PRICED = frozenset({ReferralStatus.UNDER_CONTRACT, ReferralStatus.CLOSED})


def property_label(referral: Referral) -> str:
    """Address shown for a referral; the target ZIP until a property is known."""
    if referral.property_address:
        return referral.property_address
    if referral.looking_in_zip:
        return f"Looking in {referral.looking_in_zip}"
    return "Pending address"


def pricing_context(referral: Referral) -> PricingContext:
    """Contract terms and fee hint saved on *referral*, for pricing its deals."""
    return PricingContext(
        referral_terms=ContractTerms(
            contract_price_cents=referral.contract_price_cents,
            commission_basis_points=referral.commission_basis_points,
            referral_fee_basis_points=referral.referral_fee_basis_points,
        ),
        referral_fee_due_cents=referral.referral_fee_due_cents,
    )


def serialize_referral(referral: Referral) -> ReferralResponse:
    response = ReferralResponse.model_validate(referral)
    return response.model_copy(update={"property_label": property_label(referral)})


async def _live_deals(db: AsyncSession, referral: Referral) -> list[Deal]:
    deals = await list_deals(db, referral.id)
    return [d for d in deals if normalize_deal(d).status != DealStatus.TERMINATED]


def _estimate_fee(referral: Referral, base_cents: int) -> int:
    settings = get_settings()
    return calculate_referral_fee_due(
        base_cents,
        referral.commission_basis_points or settings.default_commission_bps,
        referral.referral_fee_basis_points or settings.default_referral_fee_bps,
    )


async def _reprice_live_deals(db: AsyncSession, referral: Referral) -> None:
    """Push the referral's fee onto live deals that cannot price themselves."""
    for deal in await _live_deals(db, referral):
        own = derive_referral_fee(
            deal.contract_price_cents,
            deal.commission_basis_points,
            deal.referral_fee_basis_points,
        )
        if own is None:
            deal.expected_amount_cents = referral.referral_fee_due_cents


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_referral(db: AsyncSession, referral_id: str) -> Referral:
    referral = await db.get(Referral, referral_id)
    if referral is None:
        raise DealNotFoundError(f"Referral {referral_id} not found")
    return referral


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


async def create_referral(db: AsyncSession, body: ReferralCreate) -> Referral:
    """Register a referral with a fee estimate from its pre-approval amount.

    New referrals carry no fee rate yet, so the estimate uses the tiered
    legacy rate.
    """
    referral = Referral(
        borrower_name=body.borrower_name.strip(),
        borrower_email=body.borrower_email,
        property_address=body.property_address.strip(),
        looking_in_zip=body.looking_in_zip,
        aha_bucket=body.aha_bucket.value if body.aha_bucket else None,
        deal_side=body.deal_side.value if body.deal_side else None,
        pre_approval_amount_cents=body.pre_approval_amount_cents,
        referral_fee_due_cents=calculate_referral_fee_due(
            body.pre_approval_amount_cents,
            get_settings().default_commission_bps,
        ),
        audit=[],
    )
    db.add(referral)
    await db.flush()
    logger.info("Registered referral %s for %s", referral.id, referral.borrower_name)
    return referral


async def _apply_contract_details(
    db: AsyncSession,
    referral: Referral,
    details: ContractDetails,
) -> Optional[Deal]:
    """Record contract terms on the referral and its live deals.

    Returns the deal created when no live deal existed.
    """
    price = parse_amount_input(details.contract_price, field="contract_price")
    commission_bps = parse_percent_input(str(details.agent_commission_percentage))
    fee_bps = parse_percent_input(str(details.referral_fee_percentage))
    fee = derive_referral_fee(price, commission_bps, fee_bps)
    if fee is None:
        raise DealValidationError("contract_details", "Enter valid contract details")

    referral.property_address = details.property_address
    referral.contract_price_cents = price
    referral.commission_basis_points = commission_bps
    referral.referral_fee_basis_points = fee_bps
    referral.referral_fee_due_cents = fee
    referral.deal_side = details.deal_side.value

    live = await _live_deals(db, referral)
    for deal in live:
        deal.contract_price_cents = price
        deal.commission_basis_points = commission_bps
        deal.referral_fee_basis_points = fee_bps
        deal.expected_amount_cents = fee
        deal.side = details.deal_side.value
    if live:
        return None

    deal = Deal(
        referral_id=referral.id,
        status=DealStatus.UNDER_CONTRACT.value,
        expected_amount_cents=fee,
        received_amount_cents=0,
        contract_price_cents=price,
        commission_basis_points=commission_bps,
        referral_fee_basis_points=fee_bps,
        agent_attribution="",
        used_afc=False,
        side=details.deal_side.value,
    )
    db.add(deal)
    return deal


async def update_referral_status(
    db: AsyncSession,
    referral_id: str,
    body: ReferralStatusUpdate,
) -> ReferralStatusResponse:
    """Move a referral through its pipeline and re-price its deals.

    Raises:
        DealNotFoundError: unknown referral.
        DealValidationError: ``Under Contract`` without contract details.
    """
    referral = await get_referral(db, referral_id)
    if body.status == ReferralStatus.UNDER_CONTRACT and body.contract_details is None:
        raise DealValidationError(
            "contract_details", "Contract details are required for Under Contract status."
        )

    previous = referral.status
    now = datetime.now(timezone.utc)
    referral.status = body.status.value
    referral.status_last_updated = now
    # JSON columns only persist on reassignment
    referral.audit = [
        *(referral.audit or []),
        {
            "field": "status",
            "previous_value": previous,
            "new_value": body.status.value,
            "actor_role": body.actor_role,
            "timestamp": now.isoformat(),
        },
    ]

    created: Optional[Deal] = None
    if body.status == ReferralStatus.UNDER_CONTRACT:
        created = await _apply_contract_details(db, referral, body.contract_details)
    elif body.status != ReferralStatus.CLOSED:
        referral.referral_fee_due_cents = _estimate_fee(referral, referral.pre_approval_amount_cents)
        await _reprice_live_deals(db, referral)

    await db.flush()
    logger.info("Referral %s status %s -> %s", referral.id, previous, referral.status)

    contract = None
    if body.status == ReferralStatus.UNDER_CONTRACT:
        contract = ContractDetailsResponse(
            property_address=referral.property_address,
            contract_price_cents=referral.contract_price_cents,
            agent_commission_basis_points=referral.commission_basis_points,
            referral_fee_basis_points=referral.referral_fee_basis_points,
            referral_fee_due_cents=referral.referral_fee_due_cents,
            deal_side=referral.deal_side,
        )
    return ReferralStatusResponse(
        id=referral.id,
        status=referral.status,
        contract_details=contract,
        pre_approval_amount_cents=referral.pre_approval_amount_cents,
        referral_fee_due_cents=referral.referral_fee_due_cents,
        deal=serialize_deal(created) if created is not None else None,
    )


async def record_pre_approval(db: AsyncSession, referral_id: str, amount) -> Referral:
    """Store the pre-approval amount; re-estimate the fee before contract."""
    referral = await get_referral(db, referral_id)
    cents = parse_amount_input(amount, field="amount")
    referral.pre_approval_amount_cents = cents
    if ReferralStatus(referral.status) not in _CONTRACT_PRICED:
        referral.referral_fee_due_cents = _estimate_fee(referral, cents)
        await _reprice_live_deals(db, referral)
    await db.flush()
    return referral
