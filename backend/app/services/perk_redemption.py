"""Commit path for user-initiated perk status changes.

The tracker is updated first so the caller sees the new totals at once;
the ledger write follows.
"""
import logging
from datetime import datetime

from app.config import get_settings
from app.schemas.perk import PerkState, PerkStatus, PerkStatusSnapshot
from app.services.benefit_periods import (
    CALENDAR_PERIODS,
    as_utc,
    get_benefit_cycle_bounds,
    next_reset_date,
    start_of_day,
    utcnow,
)
from app.services.perk_ledger import LedgerWriteError
from app.services.perk_status import DataQualityError, PerkStatusTracker, credited_value

logger = logging.getLogger(__name__)

# Cents; amounts within this of the perk value count as the full value.
AMOUNT_TOLERANCE = 0.005


async def mark_redeemed(
    tracker: PerkStatusTracker,
    ledger,
    card_id: str,
    benefit_id: str,
    amount: float | None = None,
    now: datetime | None = None,
    rollback_on_failure: bool | None = None,
) -> PerkStatusSnapshot:
    """Redeem `amount` of a perk, on top of whatever this cycle already used.

    With no amount the rest of the perk is redeemed. Raises ValueError when
    the amount is not positive or exceeds what is left.
    """
    card, perk = tracker.get_perk(card_id, benefit_id)
    if not perk.period_months:
        raise DataQualityError(f"Perk {perk.name} ({benefit_id}) has no period and cannot be tracked")

    left = perk.value - credited_value(perk.value, perk.status, perk.remaining_value)
    if left <= AMOUNT_TOLERANCE:
        raise ValueError(f"{perk.name} is already fully redeemed this cycle")
    if amount is None:
        amount = left
    if amount <= 0:
        raise ValueError("Redemption amount must be positive")
    if amount > left + AMOUNT_TOLERANCE:
        raise ValueError(f"Amount ${amount:.2f} exceeds the ${left:.2f} left on {perk.name}")

    remaining = round(max(left - amount, 0.0), 2)
    if remaining == 0:
        status, remaining_value = PerkStatus.REDEEMED, None
    else:
        status, remaining_value = PerkStatus.PARTIALLY_REDEEMED, remaining

    now = as_utc(now or utcnow())
    snapshot = tracker.set_status(card_id, benefit_id, status, remaining_value=remaining_value)

    try:
        await ledger.record_redemption(
            tracker.user_id,
            card_id,
            benefit_id,
            status,
            value_redeemed=min(amount, left),
            remaining_value=remaining,
            reset_date=next_reset_date(perk.period_months, now, perk.reset_type, card.card_anniversary),
            redemption_date=now,
        )
    except LedgerWriteError:
        _after_write_failure(tracker, card_id, perk, rollback_on_failure)
        raise
    await tracker.notify_first_redemption()
    return snapshot


async def mark_available(
    tracker: PerkStatusTracker,
    ledger,
    card_id: str,
    benefit_id: str,
    now: datetime | None = None,
    rollback_on_failure: bool | None = None,
) -> PerkStatusSnapshot:
    """Undo this cycle's redemption of a perk."""
    card, perk = tracker.get_perk(card_id, benefit_id)
    if perk.status is PerkStatus.AVAILABLE:
        logger.info(f"Perk {benefit_id} on {card_id} is already available")
        return tracker.snapshot()

    now = as_utc(now or utcnow())
    snapshot = tracker.set_status(card_id, benefit_id, PerkStatus.AVAILABLE)

    cycle_start = None
    if perk.period_months in CALENDAR_PERIODS:
        start, _ = get_benefit_cycle_bounds(perk.period_months, now, perk.reset_type, card.card_anniversary)
        cycle_start = start_of_day(start)

    try:
        await ledger.delete_current_cycle_redemptions(tracker.user_id, benefit_id, cycle_start, now=now)
    except LedgerWriteError:
        _after_write_failure(tracker, card_id, perk, rollback_on_failure)
        raise
    return snapshot


def _after_write_failure(
    tracker: PerkStatusTracker,
    card_id: str,
    previous: PerkState,
    rollback_on_failure: bool | None,
) -> None:
    if rollback_on_failure is None:
        rollback_on_failure = get_settings().rollback_on_write_failure

    if not rollback_on_failure:
        logger.warning(
            f"Ledger write for {previous.benefit_id} failed; local state stays ahead until the next refresh"
        )
        return

    remaining = previous.remaining_value if previous.status is PerkStatus.PARTIALLY_REDEEMED else None
    tracker.set_status(card_id, previous.benefit_id, previous.status, remaining_value=remaining)
    logger.warning(f"Ledger write for {previous.benefit_id} failed; rolled back to {previous.status.value}")
