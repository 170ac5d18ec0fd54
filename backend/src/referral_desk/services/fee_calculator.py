"""Referral fee calculator.

Pure math, no I/O. Shared by the deal state machine, the API routes and the
deal controller so every surface prices a deal the same way.

All money is integer cents and all rates are integer basis points
(100 bp = 1%). Rounding is half-up on exact integers, matching the
``Math.round`` behaviour of the browser client, so a fee computed here and a
fee computed in the browser agree to the cent.
"""

import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from referral_desk.services.deal_errors import DealValidationError


BASIS_POINTS_PER_WHOLE = 10_000
# Two basis-point legs (commission, then referral fee) stacked on one price.
FEE_DENOMINATOR = BASIS_POINTS_PER_WHOLE * BASIS_POINTS_PER_WHOLE

# Fee tier used by the legacy formula when a referral has no fee rate.
TIER_THRESHOLD_CENTS = 400_000_00
LOW_TIER_FEE_BPS = 2500
HIGH_TIER_FEE_BPS = 3500


def _round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounded half-up, for non-negative numerators."""
    return (2 * numerator + denominator) // (2 * denominator)


def _positive_int(value) -> Optional[int]:
    """Coerce *value* to a positive int, or None if it is not usable.

    Booleans, non-finite floats, fractional floats and non-positive numbers
    are all rejected. Integral floats (JSON often yields ``30000000.0``) are
    accepted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer() or value <= 0:
            return None
        return int(value)
    return None


def derive_referral_fee(
    contract_price_cents,
    commission_bps,
    referral_fee_bps,
) -> Optional[int]:
    """Return the referral fee in cents, or None when it cannot be derived.

    ``round(price * commission_bps * referral_fee_bps / 100_000_000)``.
    A missing or zero input yields None rather than 0 so an unpriced deal is
    never mistaken for a deal priced at zero.
    """
    price = _positive_int(contract_price_cents)
    commission = _positive_int(commission_bps)
    fee_rate = _positive_int(referral_fee_bps)
    if price is None or commission is None or fee_rate is None:
        return None

    amount = _round_half_up_div(price * commission * fee_rate, FEE_DENOMINATOR)
    if amount <= 0:
        return None
    return amount


def commission_cents(contract_price_cents, commission_bps) -> Optional[int]:
    """Gross agent commission on a contract price."""
    price = _positive_int(contract_price_cents)
    commission = _positive_int(commission_bps)
    if price is None or commission is None:
        return None
    return _round_half_up_div(price * commission, BASIS_POINTS_PER_WHOLE)


def net_commission_cents(
    contract_price_cents,
    commission_bps,
    referral_fee_cents: Optional[int],
) -> Optional[int]:
    """Agent commission left after paying the referral fee."""
    gross = commission_cents(contract_price_cents, commission_bps)
    if gross is None:
        return None
    return gross - (referral_fee_cents or 0)


def calculate_referral_fee_due(
    price_cents: int,
    commission_bps: int,
    referral_fee_bps: Optional[int] = None,
) -> int:
    """Legacy two-step fee used for pre-approval estimates.

    The commission is rounded to the cent first, then the fee is taken from
    the rounded commission. Without a fee rate the tier is 25% up to
    $400,000 and 35% above.
    """
    price = max(int(price_cents or 0), 0)
    commission = _round_half_up_div(price * max(int(commission_bps or 0), 0), BASIS_POINTS_PER_WHOLE)
    if referral_fee_bps is not None and referral_fee_bps > 0:
        return _round_half_up_div(commission * referral_fee_bps, BASIS_POINTS_PER_WHOLE)
    tier = LOW_TIER_FEE_BPS if price <= TIER_THRESHOLD_CENTS else HIGH_TIER_FEE_BPS
    return _round_half_up_div(commission * tier, BASIS_POINTS_PER_WHOLE)


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------


def _parse_decimal(value: str) -> Optional[Decimal]:
    if value is None:
        return None
    normalized = str(value).replace(",", "").replace("$", "").replace("%", "").strip()
    if not normalized:
        return None
    try:
        parsed = Decimal(normalized)
    except InvalidOperation:
        return None
    if not parsed.is_finite():
        return None
    return parsed


def _hundredths(value: Decimal) -> int:
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_currency_input(value: str) -> Optional[int]:
    """Parse a dollar string like ``"350,000"`` into positive cents, or None."""
    parsed = _parse_decimal(value)
    if parsed is None or parsed <= 0:
        return None
    return _hundredths(parsed)


def parse_percent_input(value: str) -> Optional[int]:
    """Parse a percent string like ``"2.5"`` into positive basis points, or None."""
    parsed = _parse_decimal(value)
    if parsed is None or parsed <= 0:
        return None
    return _hundredths(parsed)


def parse_amount_input(value, field: str = "amount") -> int:
    """Parse a non-negative dollar amount into cents.

    Raises DealValidationError for anything that is not a number >= 0.
    """
    if isinstance(value, bool):
        raise DealValidationError(field, "Enter a valid amount")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise DealValidationError(field, "Enter a valid amount")
        parsed = Decimal(str(value))
    else:
        parsed = _parse_decimal(value)
    if parsed is None or parsed < 0:
        raise DealValidationError(field, "Enter a valid amount")
    return _hundredths(parsed)


def format_percent(bps: Optional[int]) -> str:
    """Basis points as a short percent string (``250`` -> ``"2.5"``)."""
    if not bps or bps <= 0:
        return ""
    formatted = f"{bps / 100:.2f}"
    return formatted[:-3] if formatted.endswith(".00") else formatted.rstrip("0")


def format_dollars(cents: Optional[int]) -> str:
    """Cents as a short dollar string for form fields (``35000000`` -> ``"350000"``)."""
    if not cents or cents <= 0:
        return ""
    if cents % 100 == 0:
        return str(cents // 100)
    return f"{cents / 100:.2f}"
