"""Server-side deal persistence behind ``/api/payments``.

Every write re-applies the termination bookkeeping so records stay consistent
whatever the client sends: terminated deals carry zero amounts and a reason,
live deals carry no reason. The caller commits the session.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_desk.app.config import get_settings
from referral_desk.domain.enums import AgentAttribution, DealStatus, TerminatedReason
from referral_desk.domain.models import Deal, Referral
from referral_desk.domain.schemas import DealCreate, DealResponse, DealUpdate
from referral_desk.services.deal_normalizer import normalize_deal
from referral_desk.services.fee_calculator import derive_referral_fee

logger = logging.getLogger(__name__)

_NON_NULLABLE = frozenset({
    "status",
    "expected_amount_cents",
    "received_amount_cents",
    "used_afc",
})

_TERM_FIELDS = ("contract_price_cents", "commission_basis_points", "referral_fee_basis_points")


class DealNotFoundError(LookupError):
    """No deal (or referral) exists with the given id."""


def serialize_deal(row: Deal) -> DealResponse:
    """Canonical wire form of a stored deal (legacy statuses mapped)."""
    return DealResponse.model_validate(normalize_deal(row), from_attributes=True)


def _default_reason() -> TerminatedReason:
    return TerminatedReason(get_settings().default_terminated_reason)


def _apply_invariants(deal: Deal, changed: set[str]) -> None:
    status = DealStatus(deal.status)
    if status == DealStatus.TERMINATED:
        deal.expected_amount_cents = 0
        deal.received_amount_cents = 0
        if not deal.terminated_reason:
            deal.terminated_reason = _default_reason().value
        return

    deal.terminated_reason = None
    if changed.intersection(_TERM_FIELDS) and "expected_amount_cents" not in changed:
        derived = derive_referral_fee(
            deal.contract_price_cents,
            deal.commission_basis_points,
            deal.referral_fee_basis_points,
        )
        if derived is not None:
            deal.expected_amount_cents = derived
    if status == DealStatus.PAID and "status" in changed and deal.paid_date is None:
        deal.paid_date = datetime.now(timezone.utc)


def _column_value(value):
    if value is AgentAttribution.NONE:
        return ""
    if hasattr(value, "value"):
        return value.value
    return value


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def list_deals(db: AsyncSession, referral_id: Optional[str] = None) -> list[Deal]:
    query = select(Deal)
    if referral_id:
        query = query.where(Deal.referral_id == referral_id)
    result = await db.execute(query.order_by(Deal.created_at.desc()))
    return list(result.scalars().all())


async def get_deal(db: AsyncSession, deal_id: str) -> Deal:
    result = await db.execute(select(Deal).where(Deal.id == deal_id))
    deal = result.scalar_one_or_none()
    if deal is None:
        raise DealNotFoundError(f"Deal {deal_id} not found")
    return deal


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


async def create_deal(db: AsyncSession, body: DealCreate) -> Deal:
    """Insert a deal for an existing referral."""
    referral = await db.get(Referral, body.referral_id)
    if referral is None:
        raise DealNotFoundError(f"Referral {body.referral_id} not found")

    fields = body.model_dump()
    if fields.get("agent_attribution") is None:
        fields["agent_attribution"] = AgentAttribution.NONE
    deal = Deal(**{key: _column_value(value) for key, value in fields.items()})
    _apply_invariants(deal, set(body.model_fields_set) | {"status"})
    db.add(deal)
    await db.flush()
    logger.info("Created deal %s on referral %s (%s)", deal.id, referral.id, deal.status)
    return deal


async def update_deal(db: AsyncSession, body: DealUpdate) -> Deal:
    """Apply only the fields the client sent."""
    deal = await get_deal(db, body.id)
    changes = body.changed_fields()
    for key, value in changes.items():
        if value is None and key in _NON_NULLABLE:
            continue
        if key == "agent_attribution" and value is None:
            value = AgentAttribution.NONE
        setattr(deal, key, _column_value(value))

    # Rows written before the status set was consolidated
    deal.status = normalize_deal(deal).status.value

    _apply_invariants(deal, set(changes))
    await db.flush()
    logger.info("Updated deal %s fields=%s", deal.id, sorted(changes))
    return deal


async def delete_deal(db: AsyncSession, deal_id: str) -> None:
    deal = await get_deal(db, deal_id)
    await db.delete(deal)
    await db.flush()
    logger.info("Deleted deal %s", deal_id)
