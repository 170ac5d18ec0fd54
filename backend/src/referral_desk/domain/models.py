"""SQLAlchemy ORM models for the referral desk.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- Integer cents and basis points for money (no floats)
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
)
from sqlalchemy.orm import relationship

from referral_desk.infra.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Referral
# ---------------------------------------------------------------------------


class Referral(Base):
    """A brokered lead that may produce one or more deals."""

    __tablename__ = "referrals"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    borrower_name = Column(String(255), nullable=False)
    borrower_email = Column(String(255), nullable=True, index=True)

    # Location
    property_address = Column(String(500), nullable=False, default="")
    looking_in_zip = Column(String(10), nullable=True, index=True)

    # Pipeline
    status = Column(String(30), nullable=False, default="New Lead", index=True)
    status_last_updated = Column(DateTime, default=_utcnow)
    aha_bucket = Column(String(10), nullable=True)  # ReferralBucket
    deal_side = Column(String(4), nullable=True)  # DealSide

    # Pricing
    pre_approval_amount_cents = Column(Integer, nullable=False, default=0)
    contract_price_cents = Column(Integer, nullable=True)
    commission_basis_points = Column(Integer, nullable=True)
    referral_fee_basis_points = Column(Integer, nullable=True)
    referral_fee_due_cents = Column(Integer, nullable=False, default=0)

    # [{field, previous_value, new_value, actor_role, timestamp}]
    audit = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    deals = relationship("Deal", back_populates="referral")


# ---------------------------------------------------------------------------
# Deal
# ---------------------------------------------------------------------------


class Deal(Base):
    """One attempt to close a contract for a referral."""

    __tablename__ = "deals"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    referral_id = Column(String(36), ForeignKey("referrals.id"), nullable=False, index=True)

    status = Column(String(30), nullable=False, default="under_contract", index=True)
    expected_amount_cents = Column(Integer, nullable=False, default=0)
    received_amount_cents = Column(Integer, nullable=False, default=0)

    contract_price_cents = Column(Integer, nullable=True)
    commission_basis_points = Column(Integer, nullable=True)
    referral_fee_basis_points = Column(Integer, nullable=True)

    terminated_reason = Column(String(20), nullable=True)  # TerminatedReason
    agent_attribution = Column(String(20), nullable=False, default="")  # AgentAttribution
    used_afc = Column(Boolean, nullable=False, default=False)
    side = Column(String(4), nullable=True)  # DealSide
    paid_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    referral = relationship("Referral", back_populates="deals")
