"""Primary-deal selection.

A referral can accumulate several deal attempts. The active (primary) deal is
the most recently created one that is not terminated; it drives the summary
and the amount due. Nothing here is cached, so the answer always reflects the
latest optimistic status overrides.
"""

from collections.abc import Mapping, Sequence
from typing import Optional

from referral_desk.domain.enums import AgentAttribution, DealStatus, ReferralBucket
from referral_desk.services.deal_normalizer import Deal, recency_key


def effective_status(deal: Deal, status_overrides: Optional[Mapping[str, DealStatus]] = None) -> DealStatus:
    """Override status if one is pending for the deal, else the persisted one."""
    if status_overrides and deal.id is not None and deal.id in status_overrides:
        return status_overrides[deal.id]
    return deal.status


def select_active_deal(
    deals: Sequence[Deal],
    status_overrides: Optional[Mapping[str, DealStatus]] = None,
) -> Optional[str]:
    """Return the id of the active deal, or None when every deal is terminated.

    *deals* must already be in recency order (see ``normalize_deals``).
    """
    for deal in deals:
        if effective_status(deal, status_overrides) != DealStatus.TERMINATED:
            return deal.id
    return None


def display_deal_id(
    deals: Sequence[Deal],
    status_overrides: Optional[Mapping[str, DealStatus]] = None,
) -> Optional[str]:
    """Deal to feature in the summary card.

    Falls back to the newest deal when none is active. Display only: never use
    the fallback for money.
    """
    active = select_active_deal(deals, status_overrides)
    if active is not None:
        return active
    return deals[0].id if deals else None


def order_for_display(
    deals: Sequence[Deal],
    status_overrides: Optional[Mapping[str, DealStatus]] = None,
) -> list[Deal]:
    """Live deals first, then terminated ones, each group newest first."""
    return sorted(
        deals,
        key=lambda d: (
            effective_status(d, status_overrides) == DealStatus.TERMINATED,
            -recency_key(d).timestamp(),
        ),
    )


def attribution_matches_bucket(
    attribution: AgentAttribution,
    bucket: Optional[ReferralBucket],
) -> bool:
    """False when the recorded closer differs from the referral's assigned bucket."""
    return bucket is None or attribution == AgentAttribution.NONE or attribution.value == bucket.value
