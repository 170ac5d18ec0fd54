"""Deal lifecycle errors.

Every error here is recoverable: callers turn it into a user-visible message
and leave the deal editable.
"""

from typing import Optional

from referral_desk.domain.enums import DealStatus


class DealError(Exception):
    """Base class for recoverable deal errors."""

    user_message = "Unable to update deal"


class InvalidTransitionError(DealError):
    """Raised when a status is not offered to the caller's role."""

    def __init__(
        self,
        current_status: DealStatus,
        target_status: DealStatus,
        reason: str,
    ):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        self.user_message = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}"
        )


class PricingRequiredError(DealError):
    """Raised when a deal would advance without a positive referral fee."""

    user_message = "Add contract details before updating deal status."

    def __init__(self, deal_id: Optional[str], target_status: DealStatus):
        self.deal_id = deal_id
        self.target_status = target_status
        super().__init__(
            f"Deal {deal_id or '<draft>'} cannot move to {target_status.value} "
            "without a positive expected amount"
        )


class DealValidationError(DealError):
    """Malformed user input, caught before any network call."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.user_message = message
        super().__init__(f"{field}: {message}")


class DealPersistenceError(DealError):
    """The remote write did not succeed (transport error, non-2xx or unreadable body)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        self.user_message = message
        super().__init__(message if status_code is None else f"{message} (HTTP {status_code})")
