"""Pydantic v2 schemas for API request/response validation."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from referral_desk.domain.enums import (
    AgentAttribution,
    DealSide,
    DealStatus,
    ReferralBucket,
    ReferralStatus,
    TerminatedReason,
)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str


# ---------------------------------------------------------------------------
# Deals
# ---------------------------------------------------------------------------


class DealCreate(BaseModel):
    """Schema for creating a deal on a referral."""

    referral_id: str = Field(min_length=1)
    status: DealStatus = DealStatus.UNDER_CONTRACT
    expected_amount_cents: int = Field(default=0, ge=0)
    received_amount_cents: int = Field(default=0, ge=0)
    contract_price_cents: Optional[int] = Field(default=None, ge=0)
    commission_basis_points: Optional[int] = Field(default=None, ge=0)
    referral_fee_basis_points: Optional[int] = Field(default=None, ge=0)
    terminated_reason: Optional[TerminatedReason] = None
    agent_attribution: Optional[AgentAttribution] = None
    used_afc: bool = False
    side: Optional[DealSide] = None


class DealUpdate(BaseModel):
    """Partial deal update. Only fields present in the request are applied."""

    id: str = Field(min_length=1)
    status: Optional[DealStatus] = None
    expected_amount_cents: Optional[int] = Field(default=None, ge=0)
    received_amount_cents: Optional[int] = Field(default=None, ge=0)
    contract_price_cents: Optional[int] = Field(default=None, ge=0)
    commission_basis_points: Optional[int] = Field(default=None, ge=0)
    referral_fee_basis_points: Optional[int] = Field(default=None, ge=0)
    terminated_reason: Optional[TerminatedReason] = None
    agent_attribution: Optional[AgentAttribution] = None
    used_afc: Optional[bool] = None
    side: Optional[DealSide] = None
    paid_date: Optional[datetime] = None

    def changed_fields(self) -> dict:
        """Fields the client actually sent, excluding the id."""
        return self.model_dump(exclude_unset=True, exclude={"id"})


class DealDelete(BaseModel):
    id: str = Field(min_length=1)


class DealResponse(BaseModel):
    """Canonical deal as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    referral_id: Optional[str] = None
    status: DealStatus
    expected_amount_cents: int
    received_amount_cents: int
    contract_price_cents: Optional[int] = None
    commission_basis_points: Optional[int] = None
    referral_fee_basis_points: Optional[int] = None
    terminated_reason: Optional[TerminatedReason] = None
    agent_attribution: AgentAttribution = AgentAttribution.NONE
    used_afc: bool = False
    side: Optional[DealSide] = None
    paid_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DealBoardEntry(BaseModel):
    """One deal as a board renders it."""

    deal: DealResponse
    status_label: str
    expected_amount_cents: int
    is_active: bool
    matches_assigned_bucket: bool


class DealBoardResponse(BaseModel):
    """A referral's deals with the active deal resolved."""

    referral_id: str
    active_deal_id: Optional[str] = None
    display_deal_id: Optional[str] = None
    status_options: list[DealStatus]
    deals: list[DealBoardEntry]


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------


class ReferralCreate(BaseModel):
    """Schema for registering a referral."""

    borrower_name: str = Field(min_length=1)
    borrower_email: Optional[str] = None
    property_address: str = ""
    looking_in_zip: Optional[str] = None
    aha_bucket: Optional[ReferralBucket] = None
    deal_side: Optional[DealSide] = None
    pre_approval_amount_cents: int = Field(default=0, ge=0)


class ReferralResponse(BaseModel):
    """Schema for referral API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    borrower_name: str
    borrower_email: Optional[str] = None
    property_address: str = ""
    looking_in_zip: Optional[str] = None
    status: ReferralStatus
    aha_bucket: Optional[ReferralBucket] = None
    deal_side: Optional[DealSide] = None
    pre_approval_amount_cents: int = 0
    contract_price_cents: Optional[int] = None
    commission_basis_points: Optional[int] = None
    referral_fee_basis_points: Optional[int] = None
    referral_fee_due_cents: int = 0
    property_label: str = ""


class ContractDetails(BaseModel):
    """Contract terms entered when a referral goes under contract.

    Money is in dollars and rates in percent, as typed; the server converts to
    cents and basis points.
    """

    property_address: str = Field(min_length=1)
    contract_price: float = Field(gt=0)
    agent_commission_percentage: float = Field(gt=0, le=100)
    referral_fee_percentage: float = Field(gt=0, le=100)
    deal_side: DealSide = DealSide.BUY

    @field_validator("property_address")
    @classmethod
    def _strip_address(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Property address is required")
        return value


class ReferralStatusUpdate(BaseModel):
    status: ReferralStatus
    contract_details: Optional[ContractDetails] = None
    actor_role: Optional[str] = None


class ContractDetailsResponse(BaseModel):
    property_address: str
    contract_price_cents: int
    agent_commission_basis_points: int
    referral_fee_basis_points: int
    referral_fee_due_cents: int
    deal_side: DealSide


class ReferralStatusResponse(BaseModel):
    id: str
    status: ReferralStatus
    contract_details: Optional[ContractDetailsResponse] = None
    pre_approval_amount_cents: int
    referral_fee_due_cents: int
    deal: Optional[DealResponse] = None


class PreApprovalRequest(BaseModel):
    amount: float = Field(ge=0)


class PreApprovalResponse(BaseModel):
    pre_approval_amount_cents: int
    referral_fee_due_cents: int


# ---------------------------------------------------------------------------
# Dashboard aggregation contract
# ---------------------------------------------------------------------------


class StatusCount(BaseModel):
    status: DealStatus
    label: str
    count: int


class DashboardSummary(BaseModel):
    """Pre-aggregated deal figures the dashboards render."""

    total_deals: int
    active_deals: int
    closed_deals: int
    terminated_deals: int
    expected_pipeline_cents: int
    realized_revenue_cents: int
    paid_shortfall_cents: int
    average_revenue_per_closed_deal_cents: int
    by_status: list[StatusCount]


class TrendPoint(BaseModel):
    """One bucket of a revenue trend line."""

    period: str
    paid_cents: int = 0
    expected_cents: int = 0


class LeaderboardEntry(BaseModel):
    """One row of a revenue leaderboard (by source, endorser, state, agent)."""

    key: str
    label: str
    revenue_cents: int
    deals: int = 0


class DashboardResponse(BaseModel):
    summary: DashboardSummary
    trend: list[TrendPoint]
    leaderboard: list[LeaderboardEntry]
