"""Perk cycle calculation service.

Cycles are calendar-anchored: quarters start in Jan/Apr/Jul/Oct and
half-years in Jan/Jul, whatever the card's own anniversary. The one
exception is an annual perk with reset_type "anniversary", which runs
from card anniversary to card anniversary. All timestamps are compared
in UTC; naive values are taken to already be UTC.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import NamedTuple

from dateutil.relativedelta import relativedelta

logger = logging.getLogger(__name__)

MONTHLY = 1
QUARTERLY = 3
SEMI_ANNUAL = 6
ANNUAL = 12
ROLLING_PERIOD_MONTHS = 48  # e.g. Global Entry, resets from the redemption date

CALENDAR_PERIODS = (MONTHLY, QUARTERLY, SEMI_ANNUAL, ANNUAL)
PERIOD_LABELS = {
    MONTHLY: "monthly",
    QUARTERLY: "quarterly",
    SEMI_ANNUAL: "semi_annual",
    ANNUAL: "annual",
}

# Perks without a period are pushed to the back of urgency ordering.
NO_PERIOD_DAYS_REMAINING = 365 * 2


class UnrecognizedPeriodError(ValueError):
    """Period length outside the calendar cycles; points at a bad catalog entry."""


class CycleDetails(NamedTuple):
    cycle_end_date: date
    days_remaining: int


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return as_utc(value).date()
    return value


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def get_cycle_bounds(period_months: int, reference_date: date | datetime) -> tuple[date, date]:
    """Calculate the first and last day of the cycle containing reference_date.

    Args:
        period_months: 1 (monthly), 3 (quarterly), 6 (semi-annual) or 12 (annual)
        reference_date: The date to find the cycle for

    Returns:
        Tuple of (cycle_start, cycle_end), both inclusive

    Raises:
        UnrecognizedPeriodError: for any other period length
    """
    reference = as_date(reference_date)

    if period_months == MONTHLY:
        start = reference.replace(day=1)
    elif period_months == QUARTERLY:
        start = date(reference.year, (reference.month - 1) // 3 * 3 + 1, 1)
    elif period_months == SEMI_ANNUAL:
        start = date(reference.year, 1 if reference.month <= 6 else 7, 1)
    elif period_months == ANNUAL:
        start = date(reference.year, 1, 1)
    else:
        raise UnrecognizedPeriodError(f"Unknown period length: {period_months} months")

    end = start + relativedelta(months=period_months) - timedelta(days=1)
    return start, end


def get_anniversary_cycle_bounds(card_anniversary: date, reference_date: date | datetime) -> tuple[date, date]:
    """First and last day of the card-year containing reference_date.

    Only month and day of the anniversary matter. relativedelta clamps a
    Feb 29 anniversary to Feb 28 in common years.
    """
    reference = as_date(reference_date)
    start = card_anniversary + relativedelta(year=reference.year)
    if start > reference:
        start = card_anniversary + relativedelta(year=reference.year - 1)
    next_start = card_anniversary + relativedelta(year=start.year + 1)
    return start, next_start - timedelta(days=1)


def get_benefit_cycle_bounds(
    period_months: int,
    reference_date: date | datetime,
    reset_type: str = "calendar",
    card_anniversary: date | None = None,
) -> tuple[date, date]:
    """Cycle bounds honoring anniversary resets for annual perks.

    Without an anniversary on file the calendar year is used.
    """
    if period_months == ANNUAL and reset_type == "anniversary" and card_anniversary:
        return get_anniversary_cycle_bounds(card_anniversary, reference_date)
    return get_cycle_bounds(period_months, reference_date)


def is_redemption_valid_for_period(
    redemption_date: datetime,
    reset_date: datetime | None,
    period_months: int,
    now: datetime | None = None,
    horizon_days: int | None = None,
) -> bool:
    """Check whether a past redemption still counts for the current cycle.

    A recorded reset date decides on its own: in the past means the cycle has
    rolled over, otherwise the redemption holds. Without one, the redemption
    must fall on or after the start of the current calendar cycle.
    """
    now = as_utc(now or utcnow())

    if reset_date is not None:
        reset_at = as_utc(reset_date)
        if reset_at < now:
            return False
        if horizon_days is not None and reset_at - now > timedelta(days=horizon_days):
            logger.warning(
                f"Reset date {reset_at.isoformat()} is more than {horizon_days} days out; "
                "treating redemption as valid"
            )
        return True

    try:
        cycle_start, _ = get_cycle_bounds(period_months, now)
    except UnrecognizedPeriodError:
        logger.error(f"Unexpected period months: {period_months}; treating redemption as expired")
        return False

    return as_utc(redemption_date) >= start_of_day(cycle_start)


def calculate_perk_cycle_details(
    benefit,
    current_date: date | datetime,
    card_anniversary: date | None = None,
) -> CycleDetails:
    """End of the benefit's current cycle and the days left until then.

    Only used for urgency ordering; status comes from
    is_redemption_valid_for_period.
    """
    today = as_date(current_date)

    if not benefit.period_months:
        return CycleDetails(date(today.year + 2, 12, 31), NO_PERIOD_DAYS_REMAINING)

    try:
        _, cycle_end = get_benefit_cycle_bounds(
            benefit.period_months, today, getattr(benefit, "reset_type", "calendar"), card_anniversary
        )
    except UnrecognizedPeriodError:
        logger.error(f"Cannot compute cycle for {benefit.name}: {benefit.period_months} months")
        raise

    return CycleDetails(cycle_end, days_remaining_in_period(cycle_end, today))


def next_reset_date(
    period_months: int,
    redemption_date: datetime,
    reset_type: str = "calendar",
    card_anniversary: date | None = None,
) -> datetime:
    """Timestamp at which a redemption made at redemption_date stops counting."""
    redeemed_at = as_utc(redemption_date)

    if period_months == ROLLING_PERIOD_MONTHS:
        return redeemed_at + relativedelta(months=period_months)

    _, cycle_end = get_benefit_cycle_bounds(period_months, redeemed_at, reset_type, card_anniversary)
    return start_of_day(cycle_end + timedelta(days=1))


def days_remaining_in_period(period_end: date, today: date | None = None) -> int:
    """Calculate days remaining in a benefit period."""
    if today is None:
        today = utcnow().date()
    delta = period_end - today
    return max(0, delta.days)


def is_period_expiring_soon(period_end: date, threshold_days: int = 7, today: date | None = None) -> bool:
    """Check if a benefit period is expiring soon."""
    return days_remaining_in_period(period_end, today) <= threshold_days
