"""Referral endpoints: registration, pipeline status, pre-approval, deal board."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from referral_desk.domain.enums import ReferralBucket, ViewerRole
from referral_desk.domain.schemas import (
    DealBoardEntry,
    DealBoardResponse,
    PreApprovalRequest,
    PreApprovalResponse,
    ReferralCreate,
    ReferralResponse,
    ReferralStatusResponse,
    ReferralStatusUpdate,
)
from referral_desk.infra.database import get_db
from referral_desk.services import deal_service, referral_service
from referral_desk.services.deal_errors import DealValidationError
from referral_desk.services.deal_normalizer import normalize_deals
from referral_desk.services.deal_selector import (
    attribution_matches_bucket,
    display_deal_id,
    order_for_display,
    select_active_deal,
)
from referral_desk.services.deal_service import DealNotFoundError
from referral_desk.services.deal_state_machine import DealStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/referrals", tags=["referrals"])
state_machine = DealStateMachine()


@router.post("", response_model=ReferralResponse, status_code=201)
async def create_referral(body: ReferralCreate, db: AsyncSession = Depends(get_db)):
    referral = await referral_service.create_referral(db, body)
    await db.commit()
    return referral_service.serialize_referral(referral)


@router.get("/{referral_id}", response_model=ReferralResponse)
async def get_referral(referral_id: str, db: AsyncSession = Depends(get_db)):
    try:
        referral = await referral_service.get_referral(db, referral_id)
    except DealNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return referral_service.serialize_referral(referral)


@router.get("/{referral_id}/deals", response_model=DealBoardResponse)
async def get_deal_board(
    referral_id: str,
    role: Optional[ViewerRole] = Query(None, description="Viewer role; limits status options"),
    db: AsyncSession = Depends(get_db),
):
    """A referral's deals with the primary deal resolved and each deal priced."""
    try:
        referral = await referral_service.get_referral(db, referral_id)
    except DealNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    deals = normalize_deals(await deal_service.list_deals(db, referral_id))
    pricing = referral_service.pricing_context(referral)
    active_id = select_active_deal(deals)
    bucket = ReferralBucket(referral.aha_bucket) if referral.aha_bucket else None

    entries = [
        DealBoardEntry(
            deal=deal.to_dict(),
            status_label=deal.status.label,
            expected_amount_cents=state_machine.expected_amount(
                deal, pricing, is_primary=deal.id == active_id
            ),
            is_active=deal.id == active_id,
            matches_assigned_bucket=attribution_matches_bucket(deal.agent_attribution, bucket),
        )
        for deal in order_for_display(deals)
    ]
    return DealBoardResponse(
        referral_id=referral.id,
        active_deal_id=active_id,
        display_deal_id=display_deal_id(deals),
        status_options=state_machine.status_options(role),
        deals=entries,
    )


@router.post("/{referral_id}/status", response_model=ReferralStatusResponse)
async def update_referral_status(
    referral_id: str,
    body: ReferralStatusUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Move a referral through its pipeline; Under Contract records contract terms."""
    try:
        response = await referral_service.update_referral_status(db, referral_id, body)
        await db.commit()
    except DealNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DealValidationError as e:
        raise HTTPException(status_code=422, detail=e.user_message)
    return response


@router.post("/{referral_id}/pre-approval", response_model=PreApprovalResponse)
async def record_pre_approval(
    referral_id: str,
    body: PreApprovalRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        referral = await referral_service.record_pre_approval(db, referral_id, body.amount)
        await db.commit()
    except DealNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DealValidationError as e:
        raise HTTPException(status_code=422, detail=e.user_message)
    return PreApprovalResponse(
        pre_approval_amount_cents=referral.pre_approval_amount_cents,
        referral_fee_due_cents=referral.referral_fee_due_cents,
    )
