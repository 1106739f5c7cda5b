"""Perk status aggregation and optimistic status updates.

calculate_savings() rebuilds everything from the catalog and the ledger.
PerkStatusTracker keeps the last result per user and nudges it in place
when the user toggles a perk, so the UI does not wait for the ledger.
A later refresh() replaces the nudged state wholesale.
"""
import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime

from app.schemas.perk import (
    CardPerks,
    OwnedCard,
    PerkState,
    PerkStatus,
    PerkStatusSnapshot,
    PeriodAggregate,
    RedemptionEvent,
)
from app.services.benefit_periods import as_utc, is_redemption_valid_for_period, utcnow
from app.services.perk_ledger import LedgerFetchError, reduce_to_latest_per_benefit

logger = logging.getLogger(__name__)

# Float noise below this is not reported as drift when clamping.
CLAMP_TOLERANCE = 1e-9

OwnedBenefitsFn = Callable[[str], Awaitable[list[OwnedCard]]]
FirstRedemptionHook = Callable[[], Awaitable[None]]
NewCycleHook = Callable[["PerkStatusTracker", datetime], Awaitable[None]]


class DataQualityError(ValueError):
    """Perk lacks the catalog data needed to track it per cycle."""


class UnknownBenefitError(LookupError):
    """No such perk on that card."""


def credited_value(value: float, status: PerkStatus, remaining_value: float) -> float:
    """Part of a perk's value that counts as saved in the given state."""
    if status is PerkStatus.AVAILABLE:
        return 0.0
    if status is PerkStatus.REDEEMED:
        return value
    if status is PerkStatus.PARTIALLY_REDEEMED:
        return value - remaining_value
    raise ValueError(f"Unhandled perk status: {status!r}")


def _state_from_event(perk: PerkState, event: RedemptionEvent) -> tuple[PerkStatus, float]:
    """Status and remaining value of a valid ledger row, forced into range."""
    if event.status is PerkStatus.REDEEMED:
        return PerkStatus.REDEEMED, 0.0

    remaining = event.remaining_value
    if remaining <= 0:
        logger.warning(f"Partial redemption of {perk.benefit_id} has nothing left; counting as redeemed")
        return PerkStatus.REDEEMED, 0.0
    if remaining >= perk.value:
        logger.warning(
            f"Partial redemption of {perk.benefit_id} leaves ${remaining:.2f} of ${perk.value:.2f}; "
            "counting as available"
        )
        return PerkStatus.AVAILABLE, 0.0
    return PerkStatus.PARTIALLY_REDEEMED, remaining


def calculate_savings(
    cards: Iterable[OwnedCard],
    events: Iterable[RedemptionEvent],
    now: datetime | None = None,
    horizon_days: int | None = None,
) -> PerkStatusSnapshot:
    """Derive every perk's status plus period and per-card totals.

    Statuses for a card are settled before its possible-value pass runs, and
    both passes read the same latest-event map.
    """
    now = as_utc(now or utcnow())
    cards = list(cards)
    latest = reduce_to_latest_per_benefit(events)

    period_aggregates: dict[int, PeriodAggregate] = {}
    cumulative: dict[str, float] = {card.card_id: 0.0 for card in cards}
    redeemed_in_cycle: dict[str, bool] = {}
    card_states = []

    for card in cards:
        perk_states = []
        for benefit in card.benefits:
            perk = PerkState(
                benefit_id=benefit.benefit_id,
                name=benefit.name,
                value=benefit.value,
                period_months=benefit.period_months,
                reset_type=benefit.reset_type,
            )
            perk_states.append(perk)
            redeemed_in_cycle[perk.benefit_id] = False

            if not benefit.period_months:
                logger.warning(
                    f"Perk {benefit.name} ({benefit.benefit_id}) has no period_months defined. "
                    "Skipping for period aggregation."
                )
                continue

            aggregate = period_aggregates.setdefault(benefit.period_months, PeriodAggregate())
            event = latest.get(benefit.benefit_id)
            if event is None or not is_redemption_valid_for_period(
                event.redemption_date,
                event.reset_date,
                benefit.period_months,
                now=now,
                horizon_days=horizon_days,
            ):
                continue

            perk.status, perk.remaining_value = _state_from_event(perk, event)
            if perk.status is PerkStatus.AVAILABLE:
                continue

            redeemed_in_cycle[perk.benefit_id] = True
            credit = credited_value(perk.value, perk.status, perk.remaining_value)
            cumulative[card.card_id] += credit
            aggregate.redeemed_value += credit
            if perk.status is PerkStatus.REDEEMED:
                aggregate.redeemed_count += 1
            else:
                aggregate.partially_redeemed_count += 1
            logger.debug(f"{perk.name} on {card.card_id}: {perk.status.value}, credited ${credit:.2f}")

        # Possible value counts every perk with a period, whatever its status.
        for benefit in card.benefits:
            if benefit.period_months:
                aggregate = period_aggregates[benefit.period_months]
                aggregate.possible_value += benefit.value
                aggregate.total_count += 1

        card_states.append(CardPerks(
            card_id=card.card_id,
            card_slug=card.card_slug,
            name=card.name,
            annual_fee=card.annual_fee,
            card_anniversary=card.card_anniversary,
            perks=perk_states,
        ))

    return PerkStatusSnapshot(
        cards=card_states,
        period_aggregates=period_aggregates,
        cumulative_value_saved_per_card=cumulative,
        redeemed_in_current_cycle=redeemed_in_cycle,
        calculated_at=now,
    )


def cycle_identifier(moment: datetime) -> str:
    moment = as_utc(moment)
    return f"{moment.year}-{moment.month}"


def _clamp(value: float, label: str) -> float:
    if value >= 0:
        return value
    if value < -CLAMP_TOLERANCE:
        logger.warning(f"Optimistic update drove {label} to {value:.2f}; clamping to 0")
    return 0.0


def _clamp_count(value: int, label: str) -> int:
    if value < 0:
        logger.warning(f"Optimistic update drove {label} to {value}; clamping to 0")
        return 0
    return value


def _shift_count(aggregate: PeriodAggregate, status: PerkStatus, step: int, label: str) -> None:
    if status is PerkStatus.AVAILABLE:
        return
    if status is PerkStatus.REDEEMED:
        aggregate.redeemed_count = _clamp_count(aggregate.redeemed_count + step, f"{label} redeemed_count")
    elif status is PerkStatus.PARTIALLY_REDEEMED:
        aggregate.partially_redeemed_count = _clamp_count(
            aggregate.partially_redeemed_count + step, f"{label} partially_redeemed_count"
        )
    else:
        raise ValueError(f"Unhandled perk status: {status!r}")


class PerkStatusTracker:
    """Owns one user's perk state between full recalculations."""

    def __init__(
        self,
        user_id: str,
        list_owned_benefits: OwnedBenefitsFn,
        ledger,
        on_first_redemption: FirstRedemptionHook | None = None,
        has_redeemed_before: bool = False,
        clock: Callable[[], datetime] = utcnow,
        horizon_days: int | None = None,
        on_new_cycle: NewCycleHook | None = None,
    ):
        self.user_id = user_id
        self._list_owned_benefits = list_owned_benefits
        self._ledger = ledger
        self._on_first_redemption = on_first_redemption
        self._has_redeemed = has_redeemed_before
        self._first_redemption_pending = False
        self._on_new_cycle = on_new_cycle
        self._clock = clock
        self._horizon_days = horizon_days
        self._state: PerkStatusSnapshot | None = None
        self.is_calculating = False
        self.current_cycle_identifier = cycle_identifier(clock())

    @property
    def is_loaded(self) -> bool:
        return self._state is not None

    def snapshot(self) -> PerkStatusSnapshot:
        """Copy of the current state; consumers never see the live objects."""
        if self._state is None:
            return PerkStatusSnapshot()
        return self._state.model_copy(deep=True)

    def get_perk(self, card_id: str, benefit_id: str) -> tuple[CardPerks, PerkState]:
        card, perk = self._find_perk(card_id, benefit_id)
        return card.model_copy(deep=True), perk.model_copy()

    async def refresh(self, now: datetime | None = None) -> PerkStatusSnapshot:
        """Recalculate from the catalog and the ledger.

        On failure the previous state is kept and the error is raised.
        An optimistic update made while this runs is overwritten by the
        result; the ledger write behind it is picked up by the next refresh.
        """
        self.is_calculating = True
        try:
            cards, events = await asyncio.gather(
                self._list_owned_benefits(self.user_id),
                self._ledger.list_redemptions(self.user_id),
                return_exceptions=True,
            )
        finally:
            self.is_calculating = False

        if isinstance(events, Exception):
            logger.error(f"Could not refresh savings for user {self.user_id}: {events}")
            if isinstance(events, LedgerFetchError):
                raise events
            raise LedgerFetchError(f"Could not load redemptions for user {self.user_id}") from events
        if isinstance(cards, Exception):
            logger.error(f"Could not load cards for user {self.user_id}: {cards}")
            raise cards

        now = as_utc(now or self._clock())
        self._state = calculate_savings(cards, events, now=now, horizon_days=self._horizon_days)
        if events:
            self._has_redeemed = True
        self.current_cycle_identifier = cycle_identifier(now)
        logger.info(
            f"Savings recalculated for user {self.user_id}: {len(cards)} cards, {len(events)} redemptions"
        )
        return self.snapshot()

    async def process_new_month(self, now: datetime | None = None) -> bool:
        """Recalculate when the calendar month has changed since the last look."""
        now = now or self._clock()
        identifier = cycle_identifier(now)
        if identifier == self.current_cycle_identifier:
            return False
        logger.info(f"New month {identifier} for user {self.user_id}; resetting cycle statuses")
        await self._start_cycle(now)
        return True

    async def ensure_loaded(self, now: datetime | None = None) -> bool:
        """Load on first use and after a month change.

        Returns True when state was (re)calculated. Errors from the reload
        propagate; the previous state, if any, is left in place.
        """
        if await self.process_new_month(now):
            return True
        if self.is_loaded:
            return False
        await self._start_cycle(now or self._clock())
        return True

    async def _start_cycle(self, now: datetime) -> None:
        await self.refresh(now=now)
        if self._on_new_cycle is None:
            return
        try:
            await self._on_new_cycle(self, now)
        except Exception:
            logger.exception(f"New-cycle hook failed for user {self.user_id}; statuses stay as loaded")

    def set_status(
        self,
        card_id: str,
        benefit_id: str,
        new_status: PerkStatus | str,
        remaining_value: float | None = None,
    ) -> PerkStatusSnapshot:
        """Apply a user's status change locally and adjust every total.

        The change is measured as the credited value after minus the credited
        value before, so a partial perk that becomes redeemed only adds what
        was still left. Totals and counts are clamped at zero.
        """
        new_status = PerkStatus(new_status)
        card, perk = self._find_perk(card_id, benefit_id)
        if not perk.period_months:
            raise DataQualityError(f"Perk {perk.name} ({benefit_id}) has no period and cannot be tracked")
        new_status, new_remaining = self._resolve_target(perk, new_status, remaining_value)

        old_status, old_remaining = perk.status, perk.remaining_value
        delta = (
            credited_value(perk.value, new_status, new_remaining)
            - credited_value(perk.value, old_status, old_remaining)
        )

        perk.status = new_status
        perk.remaining_value = new_remaining

        state = self._state
        state.redeemed_in_current_cycle[benefit_id] = new_status is not PerkStatus.AVAILABLE

        cumulative = state.cumulative_value_saved_per_card
        cumulative[card_id] = _clamp(cumulative.get(card_id, 0.0) + delta, f"savings for card {card_id}")

        label = f"period {perk.period_months}"
        aggregate = state.period_aggregates.setdefault(perk.period_months, PeriodAggregate())
        aggregate.redeemed_value = _clamp(aggregate.redeemed_value + delta, f"{label} redeemed_value")
        if old_status is not new_status:
            _shift_count(aggregate, old_status, -1, label)
            _shift_count(aggregate, new_status, 1, label)

        logger.info(
            f"Perk {benefit_id} on {card_id}: {old_status.value} -> {new_status.value} "
            f"({'+' if delta >= 0 else '-'}${abs(delta):.2f})"
        )

        if old_status is PerkStatus.AVAILABLE and new_status is not PerkStatus.AVAILABLE and not self._has_redeemed:
            self._has_redeemed = True
            self._first_redemption_pending = True

        return self.snapshot()

    async def notify_first_redemption(self) -> bool:
        """Run the first-redemption hook if a status change made one.

        Best effort: a failing hook is logged and not retried.
        """
        if not self._first_redemption_pending:
            return False
        self._first_redemption_pending = False
        if self._on_first_redemption is None:
            return False
        logger.info(f"First redemption for user {self.user_id}")
        try:
            await self._on_first_redemption()
        except Exception:
            logger.exception(f"First-redemption hook failed for user {self.user_id}; status change kept")
            return False
        return True

    def _find_perk(self, card_id: str, benefit_id: str) -> tuple[CardPerks, PerkState]:
        if self._state is not None:
            for card in self._state.cards:
                if card.card_id != card_id:
                    continue
                for perk in card.perks:
                    if perk.benefit_id == benefit_id:
                        return card, perk
        raise UnknownBenefitError(f"Perk {benefit_id} not found on card {card_id}")

    @staticmethod
    def _resolve_target(
        perk: PerkState,
        new_status: PerkStatus,
        remaining_value: float | None,
    ) -> tuple[PerkStatus, float]:
        if new_status is not PerkStatus.PARTIALLY_REDEEMED:
            return new_status, 0.0
        if remaining_value is None:
            raise ValueError("remaining_value is required for a partial redemption")
        if not 0 <= remaining_value < perk.value:
            raise ValueError(
                f"remaining_value must be at least 0 and below ${perk.value:.2f}, got {remaining_value}"
            )
        if remaining_value == 0:
            # Nothing left means the perk is used up.
            return PerkStatus.REDEEMED, 0.0
        return PerkStatus.PARTIALLY_REDEEMED, float(remaining_value)


class TrackerRegistry:
    """Process-wide owner of per-user trackers.

    Holds at most max_trackers; the least recently used one is dropped and
    rebuilt from the ledger the next time its user shows up.
    """

    def __init__(self, factory: Callable[[str, bool], PerkStatusTracker], max_trackers: int = 1000):
        self._factory = factory
        self._max_trackers = max_trackers
        self._trackers: OrderedDict[str, PerkStatusTracker] = OrderedDict()

    def __len__(self) -> int:
        return len(self._trackers)

    def get(self, user_id: str, has_redeemed_before: bool = False) -> PerkStatusTracker:
        tracker = self._trackers.get(user_id)
        if tracker is not None:
            self._trackers.move_to_end(user_id)
            return tracker

        tracker = self._factory(user_id, has_redeemed_before)
        self._trackers[user_id] = tracker
        while len(self._trackers) > self._max_trackers:
            evicted, _ = self._trackers.popitem(last=False)
            logger.debug(f"Evicted perk tracker for user {evicted}")
        return tracker

    def discard(self, user_id: str) -> None:
        """Forget a user's tracker, e.g. after their card list changed."""
        self._trackers.pop(user_id, None)
