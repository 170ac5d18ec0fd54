"""Deal persistence endpoints (``/api/payments``).

The deal board's optimistic controller writes through these. PATCH applies
only the fields present in the body.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from referral_desk.domain.schemas import DealCreate, DealDelete, DealResponse, DealUpdate
from referral_desk.infra.database import get_db
from referral_desk.services import deal_service
from referral_desk.services.deal_service import DealNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["deals"])


@router.get("", response_model=list[DealResponse])
async def list_deals(
    referral_id: Optional[str] = Query(None, description="Only deals on this referral"),
    db: AsyncSession = Depends(get_db),
):
    """Canonical deals, newest first."""
    deals = await deal_service.list_deals(db, referral_id)
    return [deal_service.serialize_deal(d) for d in deals]


@router.post("", response_model=DealResponse, status_code=201)
async def create_deal(body: DealCreate, db: AsyncSession = Depends(get_db)):
    try:
        deal = await deal_service.create_deal(db, body)
        await db.commit()
    except DealNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return deal_service.serialize_deal(deal)


@router.patch("", response_model=DealResponse)
async def update_deal(body: DealUpdate, db: AsyncSession = Depends(get_db)):
    try:
        deal = await deal_service.update_deal(db, body)
        await db.commit()
    except DealNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return deal_service.serialize_deal(deal)


@router.delete("", status_code=204)
async def delete_deal(body: DealDelete, db: AsyncSession = Depends(get_db)):
    try:
        await deal_service.delete_deal(db, body.id)
        await db.commit()
    except DealNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
