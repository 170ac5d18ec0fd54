"""Domain enumerations for the referral desk.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class DealStatus(str, Enum):
    """Status of a single deal attempt through contract, closing and payout."""

    UNDER_CONTRACT = "under_contract"
    PAST_INSPECTION = "past_inspection"
    PAST_APPRAISAL = "past_appraisal"
    CLEAR_TO_CLOSE = "clear_to_close"
    CLOSED = "closed"
    PAYMENT_SENT = "payment_sent"
    PAID = "paid"
    TERMINATED = "terminated"

    @property
    def label(self) -> str:
        return DEAL_STATUS_LABELS[self]


DEAL_STATUS_LABELS: dict[DealStatus, str] = {
    DealStatus.UNDER_CONTRACT: "Under Contract",
    DealStatus.PAST_INSPECTION: "Past Inspection",
    DealStatus.PAST_APPRAISAL: "Past Appraisal",
    DealStatus.CLEAR_TO_CLOSE: "Clear to Close",
    DealStatus.CLOSED: "Closed",
    DealStatus.PAYMENT_SENT: "Payment Sent",
    DealStatus.PAID: "Payment Received",
    DealStatus.TERMINATED: "Terminated",
}

# Statuses written by the older payment-tracking schema.
LEGACY_DEAL_STATUSES: dict[str, DealStatus] = {
    "expected": DealStatus.UNDER_CONTRACT,
    "invoiced": DealStatus.PAYMENT_SENT,
    "writtenOff": DealStatus.TERMINATED,
    "written_off": DealStatus.TERMINATED,
}


class TerminatedReason(str, Enum):
    """Why a deal fell through."""

    INSPECTION = "inspection"
    APPRAISAL = "appraisal"
    FINANCING = "financing"
    CHANGED_MIND = "changed_mind"


class AgentAttribution(str, Enum):
    """Which channel actually closed the deal. NONE means not recorded."""

    NONE = ""
    AHA = "AHA"
    AHA_OOS = "AHA_OOS"
    OUTSIDE_AGENT = "OUTSIDE_AGENT"


class ReferralBucket(str, Enum):
    """Partner channel a referral is assigned to."""

    AHA = "AHA"
    AHA_OOS = "AHA_OOS"


class DealSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class ViewerRole(str, Enum):
    """Role of the person looking at a deal board."""

    ADMIN = "admin"
    MANAGER = "manager"
    MC = "mc"
    AGENT = "agent"
    VIEWER = "viewer"


class ReferralStatus(str, Enum):
    """Pipeline status of the referral itself (distinct from deal status)."""

    NEW_LEAD = "New Lead"
    IN_COMMUNICATION = "In Communication"
    SHOWING_HOMES = "Showing Homes"
    UNDER_CONTRACT = "Under Contract"
    CLOSED = "Closed"
