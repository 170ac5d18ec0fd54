"""Optimistic deal update controller.

Drives one referral's deal board. Every change follows the same sequence:

1. Run the guard (state machine or input validation). A rejection is
   reported and nothing else happens.
2. Write the new value into the per-deal override store immediately, before
   any network call, so the board reflects it at once.
3. Send only the changed fields to the persistence collaborator.
4. On failure, restore the value captured when the change was issued and
   report the error.
5. On success, keep the optimistic value (now authoritative) and fire the
   optional refresh hook.

Writes on the same deal are not queued; the last write wins.
"""

import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol, Union

from referral_desk.domain.enums import (
    AgentAttribution,
    DealSide,
    DealStatus,
    ReferralBucket,
    TerminatedReason,
    ViewerRole,
)
from referral_desk.services.deal_errors import (
    DealError,
    DealPersistenceError,
    DealValidationError,
)
from referral_desk.services.deal_normalizer import Deal, normalize_deal, normalize_deals
from referral_desk.services.deal_selector import (
    attribution_matches_bucket,
    display_deal_id,
    order_for_display,
    select_active_deal,
)
from referral_desk.services.deal_state_machine import (
    ContractTerms,
    DealStateMachine,
    PricingContext,
)
from referral_desk.services.fee_calculator import (
    derive_referral_fee,
    parse_amount_input,
    parse_currency_input,
    parse_percent_input,
)

logger = logging.getLogger(__name__)

# Prefix of the override keys that hold in-flight creates, one per call
DRAFT_KEY = "__draft__"
DELETE_CONFIRMATION = "Delete this deal? This action cannot be undone."

ConfirmCallback = Callable[[str], Union[bool, Awaitable[bool]]]


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class DealStore(Protocol):
    """Remote deal storage. Every method raises DealPersistenceError on failure."""

    async def list_deals(self, referral_id: str) -> list[dict]: ...

    async def create_deal(self, referral_id: str, fields: dict) -> dict: ...

    async def update_deal(self, deal_id: str, fields: dict) -> dict: ...

    async def delete_deal(self, deal_id: str) -> None: ...


class Notifier(Protocol):
    """Transient user-visible messages (toasts)."""

    def success(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class LoggingNotifier:
    """Notifier that writes messages to the log."""

    def success(self, message: str) -> None:
        logger.info("Deal board: %s", message)

    def error(self, message: str) -> None:
        logger.warning("Deal board: %s", message)


# ---------------------------------------------------------------------------
# View state
# ---------------------------------------------------------------------------


@dataclass
class ReferralContext:
    """The referral a deal board belongs to, as seen by one viewer."""

    referral_id: str
    pricing: PricingContext = field(default_factory=PricingContext)
    role: Optional[ViewerRole] = None
    bucket: Optional[ReferralBucket] = None


@dataclass
class OverrideStore:
    """Local per-deal values, keyed by deal id.

    Seeded from the authoritative deals on load and mutated optimistically.
    ``purge`` drops a deal from every map at once.
    """

    status: dict[str, DealStatus] = field(default_factory=dict)
    terminated_reason: dict[str, TerminatedReason] = field(default_factory=dict)
    agent_attribution: dict[str, AgentAttribution] = field(default_factory=dict)
    used_afc: dict[str, bool] = field(default_factory=dict)
    received_amount: dict[str, int] = field(default_factory=dict)
    expanded: dict[str, bool] = field(default_factory=dict)
    saving: dict[str, int] = field(default_factory=dict)

    def _maps(self) -> tuple[dict, ...]:
        return (
            self.status,
            self.terminated_reason,
            self.agent_attribution,
            self.used_afc,
            self.received_amount,
            self.expanded,
            self.saving,
        )

    def adopt(self, deal: Deal) -> None:
        """Seed the maps from one authoritative deal."""
        self.status[deal.id] = deal.status
        if deal.terminated_reason is not None:
            self.terminated_reason[deal.id] = deal.terminated_reason
        else:
            self.terminated_reason.pop(deal.id, None)
        self.agent_attribution[deal.id] = deal.agent_attribution
        self.used_afc[deal.id] = deal.used_afc
        self.received_amount[deal.id] = deal.received_amount_cents
        self.expanded.setdefault(deal.id, False)

    def reset(self, deals: list[Deal]) -> None:
        """Re-seed from authoritative deals.

        Survivors keep their expand state; in-flight creates keep their draft.
        """
        expanded = {d.id: self.expanded.get(d.id, False) for d in deals}
        drafts = {k: v for k, v in self.status.items() if k.startswith(DRAFT_KEY)}
        saving = {
            k: v for k, v in self.saving.items() if k in expanded or k.startswith(DRAFT_KEY)
        }
        for mapping in self._maps():
            mapping.clear()
        for deal in deals:
            self.adopt(deal)
        self.expanded.update(expanded)
        self.saving.update(saving)
        self.status.update(drafts)

    def purge(self, deal_id: str) -> None:
        for mapping in self._maps():
            mapping.pop(deal_id, None)

    def keys(self) -> set[str]:
        found: set[str] = set()
        for mapping in self._maps():
            found.update(mapping)
        return found


@dataclass(frozen=True)
class ActionResult:
    """What happened to one user action.

    ``status`` is the status the caller's selector should show afterwards
    (the previous one when the change was rejected or rolled back).
    """

    ok: bool
    message: str = ""
    deal_id: Optional[str] = None
    status: Optional[DealStatus] = None
    error: Optional[DealError] = None


def _to_wire(fields: dict) -> dict:
    """Enum members to plain values; the empty attribution goes over as null."""
    wire = {}
    for key, value in fields.items():
        if value is AgentAttribution.NONE:
            wire[key] = None
        elif isinstance(value, Enum):
            wire[key] = value.value
        else:
            wire[key] = value
    return wire


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class DealController:
    """Owns the deal list and override store for one referral's board."""

    def __init__(
        self,
        referral: ReferralContext,
        store: DealStore,
        notifier: Optional[Notifier] = None,
        state_machine: Optional[DealStateMachine] = None,
        on_refresh: Optional[Callable[[], Awaitable[None]]] = None,
        deals=None,
    ):
        self.referral = referral
        self.store = store
        self.notifier = notifier or LoggingNotifier()
        self.state_machine = state_machine or DealStateMachine()
        self.on_refresh = on_refresh
        self.overrides = OverrideStore()
        self.deals: list[Deal] = []
        self.load(deals)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, raw_deals) -> None:
        """Replace the board with authoritative deals and re-seed overrides."""
        self.deals = [d for d in normalize_deals(raw_deals) if d.id is not None]
        self.overrides.reset(self.deals)

    async def refresh(self) -> None:
        """Reload the board from the persistence collaborator."""
        records = await self.store.list_deals(self.referral.referral_id)
        self.load(records)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_deal(self, deal_id: str) -> Optional[Deal]:
        for deal in self.deals:
            if deal.id == deal_id:
                return deal
        return None

    def status_for(self, deal: Deal) -> DealStatus:
        return self.overrides.status.get(deal.id, deal.status)

    def reason_for(self, deal: Deal) -> TerminatedReason:
        return (
            self.overrides.terminated_reason.get(deal.id)
            or deal.terminated_reason
            or self.state_machine.default_terminated_reason
        )

    def attribution_for(self, deal: Deal) -> AgentAttribution:
        return self.overrides.agent_attribution.get(deal.id, deal.agent_attribution)

    def used_afc_for(self, deal: Deal) -> bool:
        return self.overrides.used_afc.get(deal.id, deal.used_afc)

    def received_for(self, deal: Deal) -> int:
        return self.overrides.received_amount.get(deal.id, deal.received_amount_cents)

    def is_saving(self, deal_id: str) -> bool:
        return self.overrides.saving.get(deal_id, 0) > 0

    def is_expanded(self, deal_id: str) -> bool:
        return self.overrides.expanded.get(deal_id, False)

    @property
    def draft_status(self) -> Optional[DealStatus]:
        """Status of the most recent deal still being created, if any."""
        drafts = [
            status for key, status in self.overrides.status.items() if key.startswith(DRAFT_KEY)
        ]
        return drafts[-1] if drafts else None

    def active_deal_id(self) -> Optional[str]:
        return select_active_deal(self.deals, self.overrides.status)

    def display_deal_id(self) -> Optional[str]:
        return display_deal_id(self.deals, self.overrides.status)

    def ordered_deals(self) -> list[Deal]:
        return order_for_display(self.deals, self.overrides.status)

    def is_primary(self, deal: Deal) -> bool:
        return deal.id == self.display_deal_id()

    def expected_amount_for(self, deal: Deal) -> int:
        """Amount the board shows as owed on *deal*."""
        return self.state_machine.expected_amount(
            deal,
            self.referral.pricing,
            status=self.status_for(deal),
            is_primary=self.is_primary(deal),
        )

    def status_options(self) -> list[DealStatus]:
        return self.state_machine.status_options(self.referral.role)

    def matches_assigned_bucket(self, deal: Deal) -> bool:
        """False when the recorded closer differs from the referral's bucket."""
        return attribution_matches_bucket(self.attribution_for(deal), self.referral.bucket)

    def toggle_expanded(self, deal_id: str) -> bool:
        expanded = not self.overrides.expanded.get(deal_id, False)
        self.overrides.expanded[deal_id] = expanded
        return expanded

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _reject(self, error: DealError, deal_id: Optional[str], status: Optional[DealStatus] = None) -> ActionResult:
        self.notifier.error(error.user_message)
        return ActionResult(ok=False, message=error.user_message, deal_id=deal_id, status=status, error=error)

    def _missing(self, deal_id: str) -> ActionResult:
        return self._reject(DealValidationError("deal_id", "Deal not found"), deal_id)

    def _begin_saving(self, key: str) -> None:
        self.overrides.saving[key] = self.overrides.saving.get(key, 0) + 1

    def _end_saving(self, key: str) -> None:
        remaining = self.overrides.saving.get(key, 0) - 1
        if remaining > 0:
            self.overrides.saving[key] = remaining
        else:
            self.overrides.saving.pop(key, None)

    def _absorb(self, deal_id: str, changes: dict, record) -> None:
        """Fold a successful write back into the deal list."""
        updated = None
        if isinstance(record, dict) and record:
            candidate = normalize_deal(record)
            if candidate.id == deal_id:
                updated = candidate
        for index, deal in enumerate(self.deals):
            if deal.id == deal_id:
                self.deals[index] = updated or deal.with_changes(**changes)
                return

    async def _after_success(self, message: str) -> None:
        self.notifier.success(message)
        if self.on_refresh is not None:
            await self.on_refresh()

    async def _write(
        self,
        deal_id: str,
        changes: dict,
        rollback: Callable[[], None],
        success_message: str,
        status: Optional[Callable[[], DealStatus]] = None,
    ) -> ActionResult:
        self._begin_saving(deal_id)
        try:
            record = await self.store.update_deal(deal_id, _to_wire(changes))
        except DealPersistenceError as exc:
            logger.error("Deal %s update failed: %s", deal_id, exc)
            rollback()
            return self._reject(exc, deal_id, status() if status else None)
        finally:
            self._end_saving(deal_id)

        self._absorb(deal_id, changes, record)
        await self._after_success(success_message)
        return ActionResult(
            ok=True,
            message=success_message,
            deal_id=deal_id,
            status=status() if status else None,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def change_status(self, deal_id: str, next_status: DealStatus) -> ActionResult:
        """Move a deal to *next_status* optimistically."""
        deal = self.get_deal(deal_id)
        if deal is None:
            return self._missing(deal_id)

        previous_status = self.status_for(deal)
        if next_status == previous_status:
            return ActionResult(ok=True, deal_id=deal_id, status=previous_status)

        try:
            plan = self.state_machine.plan_transition(
                deal,
                next_status,
                self.referral.pricing,
                role=self.referral.role,
                current_status=previous_status,
                terminated_reason=self.overrides.terminated_reason.get(deal_id),
                is_primary=self.is_primary(deal),
            )
        except DealError as exc:
            return self._reject(exc, deal_id, previous_status)

        had_reason = deal_id in self.overrides.terminated_reason
        previous_reason = self.overrides.terminated_reason.get(deal_id)
        previous_received = self.received_for(deal)

        self.overrides.status[deal_id] = next_status
        if plan.terminated_reason is not None:
            self.overrides.terminated_reason[deal_id] = plan.terminated_reason
            self.overrides.received_amount[deal_id] = 0
        else:
            self.overrides.terminated_reason.pop(deal_id, None)

        def rollback() -> None:
            self.overrides.status[deal_id] = previous_status
            self.overrides.received_amount[deal_id] = previous_received
            if had_reason:
                self.overrides.terminated_reason[deal_id] = previous_reason
            else:
                self.overrides.terminated_reason.pop(deal_id, None)

        return await self._write(
            deal_id,
            plan.changes,
            rollback,
            "Deal status saved",
            status=lambda: self.overrides.status.get(deal_id, deal.status),
        )

    # ------------------------------------------------------------------
    # Creation / deletion
    # ------------------------------------------------------------------

    async def create_deal(
        self,
        status: DealStatus = DealStatus.UNDER_CONTRACT,
        terms: Optional[ContractTerms] = None,
        side: Optional[DealSide] = None,
    ) -> ActionResult:
        """Create the referral's first (or next) deal directly in *status*."""
        terms = terms or ContractTerms()
        draft = Deal(
            id=None,
            referral_id=self.referral.referral_id,
            contract_price_cents=terms.contract_price_cents,
            commission_basis_points=terms.commission_basis_points,
            referral_fee_basis_points=terms.referral_fee_basis_points,
            side=side,
        )
        try:
            plan = self.state_machine.plan_transition(
                draft,
                status,
                self.referral.pricing,
                role=self.referral.role,
                current_status=DealStatus.UNDER_CONTRACT,
                is_primary=True,
            )
        except DealError as exc:
            return self._reject(exc, None, None)

        fields = dict(plan.changes)
        for name in ("contract_price_cents", "commission_basis_points", "referral_fee_basis_points"):
            value = getattr(terms, name)
            if value is not None:
                fields[name] = value
        if side is not None:
            fields["side"] = side

        draft_key = f"{DRAFT_KEY}:{uuid.uuid4().hex}"
        self.overrides.status[draft_key] = status
        self._begin_saving(draft_key)
        try:
            record = await self.store.create_deal(self.referral.referral_id, _to_wire(fields))
        except DealPersistenceError as exc:
            logger.error("Deal creation for referral %s failed: %s", self.referral.referral_id, exc)
            return self._reject(exc, None, None)
        finally:
            self.overrides.status.pop(draft_key, None)
            self._end_saving(draft_key)

        created = normalize_deal(record)
        if created.id is None:
            error = DealPersistenceError("Deal was created without an id")
            return self._reject(error, None, None)

        self.deals = normalize_deals([created, *self.deals])
        self.overrides.adopt(created)
        await self._after_success("Deal created")
        return ActionResult(ok=True, message="Deal created", deal_id=created.id, status=created.status)

    async def delete_deal(self, deal_id: str, confirm: ConfirmCallback) -> ActionResult:
        """Delete a deal after the user confirms; purge it from every map."""
        deal = self.get_deal(deal_id)
        if deal is None:
            return self._missing(deal_id)

        confirmed = confirm(DELETE_CONFIRMATION)
        if inspect.isawaitable(confirmed):
            confirmed = await confirmed
        if not confirmed:
            return ActionResult(ok=False, message="Deletion cancelled", deal_id=deal_id)

        self._begin_saving(deal_id)
        try:
            await self.store.delete_deal(deal_id)
        except DealPersistenceError as exc:
            logger.error("Deal %s delete failed: %s", deal_id, exc)
            return self._reject(exc, deal_id, self.status_for(deal))
        finally:
            self._end_saving(deal_id)

        self.deals = [d for d in self.deals if d.id != deal_id]
        self.overrides.purge(deal_id)
        await self._after_success("Deal deleted")
        return ActionResult(ok=True, message="Deal deleted", deal_id=deal_id)

    # ------------------------------------------------------------------
    # Side-channel fields
    # ------------------------------------------------------------------

    async def change_terminated_reason(self, deal_id: str, reason: TerminatedReason) -> ActionResult:
        """Record why a deal fell through.

        On a live deal the reason is kept locally and used if the deal is
        terminated later; only terminated deals are written.
        """
        deal = self.get_deal(deal_id)
        if deal is None:
            return self._missing(deal_id)

        had_reason = deal_id in self.overrides.terminated_reason
        previous = self.overrides.terminated_reason.get(deal_id)
        self.overrides.terminated_reason[deal_id] = reason

        if self.status_for(deal) != DealStatus.TERMINATED:
            return ActionResult(ok=True, deal_id=deal_id, status=self.status_for(deal))

        def rollback() -> None:
            if had_reason:
                self.overrides.terminated_reason[deal_id] = previous
            else:
                self.overrides.terminated_reason.pop(deal_id, None)

        return await self._write(
            deal_id,
            {"terminated_reason": reason},
            rollback,
            "Termination reason saved",
        )

    async def change_agent_attribution(self, deal_id: str, value: AgentAttribution) -> ActionResult:
        """Record which channel closed the deal. Unchanged values are not sent."""
        deal = self.get_deal(deal_id)
        if deal is None:
            return self._missing(deal_id)

        previous = self.attribution_for(deal)
        if value == previous:
            return ActionResult(ok=True, deal_id=deal_id)

        self.overrides.agent_attribution[deal_id] = value

        def rollback() -> None:
            self.overrides.agent_attribution[deal_id] = previous

        return await self._write(deal_id, {"agent_attribution": value}, rollback, "Agent outcome saved")

    async def toggle_used_afc(self, deal_id: str, checked: bool) -> ActionResult:
        """Flag whether the financing partner was used. Unchanged values are not sent."""
        deal = self.get_deal(deal_id)
        if deal is None:
            return self._missing(deal_id)

        previous = self.used_afc_for(deal)
        if checked == previous:
            return ActionResult(ok=True, deal_id=deal_id)

        self.overrides.used_afc[deal_id] = checked

        def rollback() -> None:
            self.overrides.used_afc[deal_id] = previous

        return await self._write(deal_id, {"used_afc": checked}, rollback, "AFC usage saved")

    async def record_received_amount(self, deal_id: str, raw_amount) -> ActionResult:
        """Record the amount actually received, entered as dollars."""
        deal = self.get_deal(deal_id)
        if deal is None:
            return self._missing(deal_id)

        try:
            cents = parse_amount_input(raw_amount, "received_amount")
        except DealValidationError as exc:
            return self._reject(exc, deal_id)

        previous = self.received_for(deal)
        if cents == previous:
            return ActionResult(ok=True, deal_id=deal_id)
        if cents > 0 and self.status_for(deal) == DealStatus.TERMINATED:
            return self._reject(
                DealValidationError("received_amount", "Terminated deals cannot record a payment"),
                deal_id,
            )

        self.overrides.received_amount[deal_id] = cents

        def rollback() -> None:
            self.overrides.received_amount[deal_id] = previous

        return await self._write(
            deal_id, {"received_amount_cents": cents}, rollback, "Received amount updated"
        )

    # ------------------------------------------------------------------
    # Contract terms
    # ------------------------------------------------------------------

    async def save_deal_terms(
        self,
        deal_id: str,
        contract_price: str,
        commission_percent: str,
        referral_fee_percent: str,
        side: Optional[DealSide] = None,
    ) -> ActionResult:
        """Save contract price and rates typed into the deal form.

        Not optimistic: the terms are applied once the write succeeds.
        """
        deal = self.get_deal(deal_id)
        if deal is None:
            return self._missing(deal_id)

        contract_price_cents = parse_currency_input(contract_price)
        commission_bps = parse_percent_input(commission_percent)
        referral_fee_bps = parse_percent_input(referral_fee_percent)
        if contract_price_cents is None or commission_bps is None or referral_fee_bps is None:
            return self._reject(
                DealValidationError(
                    "contract_terms",
                    "Enter the contract price, commission %, and referral fee % before saving.",
                ),
                deal_id,
            )

        fee = derive_referral_fee(contract_price_cents, commission_bps, referral_fee_bps)
        if fee is None:
            return self._reject(
                DealValidationError(
                    "contract_terms", "Enter valid deal details to calculate the referral fee."
                ),
                deal_id,
            )

        changes: dict = {
            "contract_price_cents": contract_price_cents,
            "commission_basis_points": commission_bps,
            "referral_fee_basis_points": referral_fee_bps,
        }
        if side is not None:
            changes["side"] = side
        if self.status_for(deal) != DealStatus.TERMINATED:
            changes["expected_amount_cents"] = fee

        return await self._write(
            deal_id,
            changes,
            lambda: None,
            "Deal details saved",
            status=lambda: self.status_for(self.get_deal(deal_id) or deal),
        )
