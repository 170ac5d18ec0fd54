"""Dashboard aggregation endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from referral_desk.domain.schemas import DashboardResponse, DashboardSummary
from referral_desk.infra.database import get_db
from referral_desk.services import dashboard_service, deal_service
from referral_desk.services.deal_normalizer import normalize_deals

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("", response_model=DashboardResponse)
async def get_dashboard(
    referral_id: Optional[str] = Query(None),
    limit: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Summary, monthly trend and attribution leaderboard in one payload."""
    deals = normalize_deals(await deal_service.list_deals(db, referral_id))
    return DashboardResponse(
        summary=dashboard_service.summarize_deals(deals),
        trend=dashboard_service.revenue_trend(deals),
        leaderboard=dashboard_service.attribution_leaderboard(deals, limit=limit),
    )


@router.get("/summary", response_model=DashboardSummary)
async def get_summary(
    referral_id: Optional[str] = Query(None, description="Limit to one referral's deals"),
    db: AsyncSession = Depends(get_db),
):
    deals = normalize_deals(await deal_service.list_deals(db, referral_id))
    return dashboard_service.summarize_deals(deals)
