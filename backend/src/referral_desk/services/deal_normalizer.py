"""Deal normalizer.

Raw deal records reach us in several shapes: browser JSON (camelCase, Mongo
style ``_id``), API payloads (snake_case), ORM rows, or records that are
already canonical. ``normalize_deals`` turns any of them into one canonical,
fully-defaulted ``Deal`` and orders the list most-recent first, so nothing
downstream has to guess at missing fields.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional

from referral_desk.domain.enums import (
    LEGACY_DEAL_STATUSES,
    AgentAttribution,
    DealSide,
    DealStatus,
    TerminatedReason,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# canonical field -> accepted raw keys, in lookup order
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("id", "_id"),
    "referral_id": ("referral_id", "referralId"),
    "status": ("status",),
    "expected_amount_cents": ("expected_amount_cents", "expectedAmountCents"),
    "received_amount_cents": ("received_amount_cents", "receivedAmountCents"),
    "contract_price_cents": ("contract_price_cents", "contractPriceCents"),
    "commission_basis_points": ("commission_basis_points", "commissionBasisPoints"),
    "referral_fee_basis_points": ("referral_fee_basis_points", "referralFeeBasisPoints"),
    "terminated_reason": ("terminated_reason", "terminatedReason"),
    "agent_attribution": ("agent_attribution", "agentAttribution"),
    "used_afc": ("used_afc", "usedAfc"),
    "side": ("side",),
    "paid_date": ("paid_date", "paidDate"),
    "created_at": ("created_at", "createdAt"),
    "updated_at": ("updated_at", "updatedAt"),
}


@dataclass(frozen=True)
class Deal:
    """Canonical in-memory deal. Every field has a concrete value or None."""

    id: Optional[str]
    referral_id: Optional[str] = None
    status: DealStatus = DealStatus.UNDER_CONTRACT
    expected_amount_cents: int = 0
    received_amount_cents: int = 0
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

    def with_changes(self, **changes) -> "Deal":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """JSON-friendly snake_case dict (enum values, ISO timestamps)."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif hasattr(value, "value"):
                data[key] = value.value
        return data


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------


def _lookup(raw: Any, field: str) -> Any:
    for key in _FIELD_ALIASES[field]:
        if isinstance(raw, Mapping):
            if key in raw:
                return raw[key]
        elif hasattr(raw, key):
            return getattr(raw, key)
    return None


def _coerce_status(value: Any) -> DealStatus:
    if isinstance(value, DealStatus):
        return value
    if isinstance(value, str):
        try:
            return DealStatus(value)
        except ValueError:
            legacy = LEGACY_DEAL_STATUSES.get(value)
            if legacy is not None:
                return legacy
            logger.warning("Unknown deal status %r, defaulting to under_contract", value)
    return DealStatus.UNDER_CONTRACT


def _coerce_enum(enum_cls, value: Any, default=None):
    if isinstance(value, enum_cls):
        return value
    if value is None:
        return default
    try:
        return enum_cls(value)
    except ValueError:
        return default


def _coerce_amount(value: Any) -> int:
    """Non-negative integer cents; anything unusable becomes 0."""
    number = _coerce_optional_int(value)
    if number is None or number < 0:
        return 0
    return number


def _coerce_optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return round(value)
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return round(parsed) if math.isfinite(parsed) else None
    return None


_TRUE_STRINGS = frozenset({"true", "1", "yes", "y", "on"})


def _coerce_bool(value: Any) -> bool:
    """Booleans stored as strings or 0/1 by older imports."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def _coerce_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    # Ensure tz-aware so recency comparisons never mix naive and aware values
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_deal(raw: Any) -> Deal:
    """Normalize one raw record into a canonical Deal."""
    if isinstance(raw, Deal):
        return raw

    raw_id = _lookup(raw, "id")
    raw_referral_id = _lookup(raw, "referral_id")
    return Deal(
        id=str(raw_id) if raw_id not in (None, "") else None,
        referral_id=str(raw_referral_id) if raw_referral_id not in (None, "") else None,
        status=_coerce_status(_lookup(raw, "status")),
        expected_amount_cents=_coerce_amount(_lookup(raw, "expected_amount_cents")),
        received_amount_cents=_coerce_amount(_lookup(raw, "received_amount_cents")),
        contract_price_cents=_coerce_optional_int(_lookup(raw, "contract_price_cents")),
        commission_basis_points=_coerce_optional_int(_lookup(raw, "commission_basis_points")),
        referral_fee_basis_points=_coerce_optional_int(_lookup(raw, "referral_fee_basis_points")),
        terminated_reason=_coerce_enum(TerminatedReason, _lookup(raw, "terminated_reason")),
        agent_attribution=_coerce_enum(
            AgentAttribution, _lookup(raw, "agent_attribution"), AgentAttribution.NONE
        ),
        used_afc=_coerce_bool(_lookup(raw, "used_afc")),
        side=_coerce_enum(DealSide, _lookup(raw, "side")),
        paid_date=_coerce_datetime(_lookup(raw, "paid_date")),
        created_at=_coerce_datetime(_lookup(raw, "created_at")),
        updated_at=_coerce_datetime(_lookup(raw, "updated_at")),
    )


def recency_key(deal: Deal) -> datetime:
    return deal.created_at or _EPOCH


def normalize_deals(raw_deals: Any) -> list[Deal]:
    """Return canonical deals, most recently created first.

    A missing or non-list input yields an empty list. Records without a
    creation time sort as the oldest. Already-normalized input comes back
    unchanged.
    """
    if not isinstance(raw_deals, (list, tuple)):
        return []

    deals: list[Deal] = []
    for raw in raw_deals:
        if raw is None:
            continue
        deals.append(normalize_deal(raw))

    return sorted(deals, key=recency_key, reverse=True)
