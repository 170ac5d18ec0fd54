"""Deal aggregation for the dashboards.

Pure functions over canonical deals; the route layer loads and normalizes
rows first. Realized revenue is money actually received; the pipeline is what
live, unpaid deals are still expected to bring in.
"""

from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Optional

from referral_desk.domain.enums import AgentAttribution, DealStatus
from referral_desk.domain.schemas import (
    DashboardSummary,
    LeaderboardEntry,
    StatusCount,
    TrendPoint,
)
from referral_desk.services.deal_normalizer import Deal

CLOSED_STATUSES = frozenset({DealStatus.CLOSED, DealStatus.PAID})

# Live deals whose expected amount still counts toward the pipeline
PIPELINE_STATUSES = frozenset(
    s for s in DealStatus if s not in (DealStatus.PAID, DealStatus.TERMINATED)
)

ATTRIBUTION_LABELS = {
    AgentAttribution.NONE: "Unattributed",
    AgentAttribution.AHA: "AHA",
    AgentAttribution.AHA_OOS: "AHA Out of State",
    AgentAttribution.OUTSIDE_AGENT: "Outside Agent",
}


def summarize_deals(deals: Sequence[Deal]) -> DashboardSummary:
    """Counts and money totals over *deals*."""
    counts = {status: 0 for status in DealStatus}
    pipeline = realized = shortfall = closed_revenue = 0

    for deal in deals:
        counts[deal.status] += 1
        realized += deal.received_amount_cents
        if deal.status in PIPELINE_STATUSES:
            pipeline += deal.expected_amount_cents
        if deal.status == DealStatus.PAID:
            shortfall += max(deal.expected_amount_cents - deal.received_amount_cents, 0)
        if deal.status in CLOSED_STATUSES:
            closed_revenue += deal.received_amount_cents or deal.expected_amount_cents

    closed = sum(counts[s] for s in CLOSED_STATUSES)
    terminated = counts[DealStatus.TERMINATED]
    return DashboardSummary(
        total_deals=len(deals),
        active_deals=len(deals) - terminated,
        closed_deals=closed,
        terminated_deals=terminated,
        expected_pipeline_cents=pipeline,
        realized_revenue_cents=realized,
        paid_shortfall_cents=shortfall,
        average_revenue_per_closed_deal_cents=(closed_revenue // closed) if closed else 0,
        by_status=[
            StatusCount(status=s, label=s.label, count=counts[s]) for s in DealStatus
        ],
    )


def metric_date(deal: Deal) -> Optional[datetime]:
    """Date a deal's money is reported under: paid date once paid, else last update."""
    if deal.status == DealStatus.PAID and deal.paid_date is not None:
        return deal.paid_date
    return deal.updated_at or deal.created_at


def revenue_trend(deals: Iterable[Deal]) -> list[TrendPoint]:
    """Monthly buckets of received and expected money, oldest first."""
    buckets: dict[str, TrendPoint] = {}
    for deal in deals:
        if deal.status == DealStatus.TERMINATED:
            continue
        when = metric_date(deal)
        if when is None:
            continue
        period = when.strftime("%Y-%m")
        point = buckets.setdefault(period, TrendPoint(period=period))
        if deal.status == DealStatus.PAID:
            point.paid_cents += deal.received_amount_cents
        else:
            point.expected_cents += deal.expected_amount_cents
    return [buckets[key] for key in sorted(buckets)]


def attribution_leaderboard(deals: Iterable[Deal], limit: int = 10) -> list[LeaderboardEntry]:
    """Closed revenue per closing channel, highest first."""
    revenue: dict[AgentAttribution, int] = defaultdict(int)
    counts: dict[AgentAttribution, int] = defaultdict(int)
    for deal in deals:
        if deal.status not in CLOSED_STATUSES:
            continue
        revenue[deal.agent_attribution] += deal.received_amount_cents or deal.expected_amount_cents
        counts[deal.agent_attribution] += 1

    entries = [
        LeaderboardEntry(
            key=attribution.value or "unattributed",
            label=ATTRIBUTION_LABELS[attribution],
            revenue_cents=revenue[attribution],
            deals=counts[attribution],
        )
        for attribution in revenue
    ]
    entries.sort(key=lambda e: (-e.revenue_cents, e.label))
    return entries[:limit]
