import logging
import os
import sys
from datetime import date, datetime, timezone
from types import SimpleNamespace

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.services.benefit_periods import (
    NO_PERIOD_DAYS_REMAINING,
    UnrecognizedPeriodError,
    calculate_perk_cycle_details,
    days_remaining_in_period,
    get_anniversary_cycle_bounds,
    get_benefit_cycle_bounds,
    get_cycle_bounds,
    is_period_expiring_soon,
    is_redemption_valid_for_period,
    next_reset_date,
)

NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("period_months", "reference", "expected"),
    [
        (1, date(2024, 2, 10), (date(2024, 2, 1), date(2024, 2, 29))),
        (1, date(2023, 12, 31), (date(2023, 12, 1), date(2023, 12, 31))),
        (3, date(2024, 5, 15), (date(2024, 4, 1), date(2024, 6, 30))),
        (3, date(2024, 10, 1), (date(2024, 10, 1), date(2024, 12, 31))),
        (6, date(2024, 6, 30), (date(2024, 1, 1), date(2024, 6, 30))),
        (6, date(2024, 8, 1), (date(2024, 7, 1), date(2024, 12, 31))),
        (12, date(2024, 3, 3), (date(2024, 1, 1), date(2024, 12, 31))),
    ],
)
def test_cycle_bounds_are_calendar_anchored(period_months, reference, expected):
    assert get_cycle_bounds(period_months, reference) == expected


def test_cycle_bounds_accept_datetimes():
    assert get_cycle_bounds(3, utc(2024, 5, 15, 23, 59)) == (date(2024, 4, 1), date(2024, 6, 30))


@pytest.mark.parametrize("period_months", [0, 2, 48, None])
def test_cycle_bounds_reject_unknown_periods(period_months):
    with pytest.raises(UnrecognizedPeriodError):
        get_cycle_bounds(period_months, date(2024, 5, 15))


@pytest.mark.parametrize("period_months", [1, 3, 6, 12, 48, 7])
def test_past_reset_date_is_never_valid(period_months):
    assert not is_redemption_valid_for_period(
        utc(2024, 5, 14), utc(2024, 5, 15, 11, 59), period_months, now=NOW
    )


def test_future_reset_date_is_valid_even_for_old_redemption():
    assert is_redemption_valid_for_period(utc(2021, 1, 1), utc(2025, 1, 1), 48, now=NOW)


def test_far_future_reset_date_is_valid_but_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="app.services.benefit_periods"):
        valid = is_redemption_valid_for_period(
            utc(2024, 5, 1), utc(2099, 1, 1), 1, now=NOW, horizon_days=366
        )

    assert valid
    assert "more than 366 days out" in caplog.text


def test_without_reset_date_redemption_must_fall_in_current_cycle():
    assert is_redemption_valid_for_period(utc(2024, 5, 1, 0, 0), None, 1, now=NOW)
    assert not is_redemption_valid_for_period(utc(2024, 4, 30, 23, 59), None, 1, now=NOW)
    assert is_redemption_valid_for_period(utc(2024, 4, 1), None, 3, now=NOW)
    assert not is_redemption_valid_for_period(utc(2024, 3, 31, 23, 59), None, 3, now=NOW)
    assert is_redemption_valid_for_period(utc(2024, 1, 2), None, 6, now=NOW)
    assert is_redemption_valid_for_period(utc(2024, 1, 1), None, 12, now=NOW)
    assert not is_redemption_valid_for_period(utc(2023, 12, 31), None, 12, now=NOW)


def test_naive_timestamps_are_treated_as_utc():
    assert is_redemption_valid_for_period(datetime(2024, 5, 2), None, 1, now=datetime(2024, 5, 15))


def test_unknown_period_without_reset_date_is_invalid(caplog):
    with caplog.at_level(logging.ERROR, logger="app.services.benefit_periods"):
        assert not is_redemption_valid_for_period(utc(2024, 5, 10), None, 5, now=NOW)
    assert "Unexpected period months: 5" in caplog.text


def test_cycle_details_for_quarterly_benefit():
    benefit = SimpleNamespace(name="Instacart Credit", period_months=3)

    details = calculate_perk_cycle_details(benefit, date(2024, 5, 15))

    assert details.cycle_end_date == date(2024, 6, 30)
    assert details.days_remaining == 46


def test_cycle_details_without_period_are_far_out():
    benefit = SimpleNamespace(name="Lounge Access", period_months=None)

    details = calculate_perk_cycle_details(benefit, date(2024, 5, 15))

    assert details.cycle_end_date == date(2026, 12, 31)
    assert details.days_remaining == NO_PERIOD_DAYS_REMAINING


def test_cycle_details_reraise_for_unknown_period():
    benefit = SimpleNamespace(name="Global Entry", period_months=48)

    with pytest.raises(UnrecognizedPeriodError):
        calculate_perk_cycle_details(benefit, date(2024, 5, 15))


def test_next_reset_date_is_start_of_next_cycle():
    assert next_reset_date(1, utc(2024, 1, 31, 15, 30)) == utc(2024, 2, 1)
    assert next_reset_date(3, utc(2024, 11, 10)) == utc(2025, 1, 1)
    assert next_reset_date(6, utc(2024, 6, 30, 23, 0)) == utc(2024, 7, 1)
    assert next_reset_date(12, utc(2024, 7, 4)) == utc(2025, 1, 1)


def test_next_reset_date_for_rolling_perk():
    assert next_reset_date(48, utc(2024, 5, 15, 9, 0)) == utc(2028, 5, 15, 9, 0)


def test_next_reset_date_uses_card_anniversary():
    anniversary = date(2000, 3, 15)

    assert next_reset_date(12, utc(2024, 5, 1), "anniversary", anniversary) == utc(2025, 3, 15)
    assert next_reset_date(12, utc(2024, 2, 1), "anniversary", anniversary) == utc(2024, 3, 15)
    # No anniversary on file falls back to the calendar year
    assert next_reset_date(12, utc(2024, 5, 1), "anniversary", None) == utc(2025, 1, 1)


def test_leap_day_anniversary_clamps_in_common_years():
    assert next_reset_date(12, utc(2024, 3, 1), "anniversary", date(2000, 2, 29)) == utc(2025, 2, 28)


def test_days_remaining_and_expiring_soon():
    assert days_remaining_in_period(date(2024, 5, 31), date(2024, 5, 15)) == 16
    assert days_remaining_in_period(date(2024, 5, 1), date(2024, 5, 15)) == 0
    assert is_period_expiring_soon(date(2024, 5, 20), threshold_days=7, today=date(2024, 5, 15))
    assert not is_period_expiring_soon(date(2024, 6, 30), threshold_days=7, today=date(2024, 5, 15))


@pytest.mark.parametrize(
    ("reference", "expected"),
    [
        (date(2024, 5, 15), (date(2023, 9, 1), date(2024, 8, 31))),
        (date(2024, 9, 1), (date(2024, 9, 1), date(2025, 8, 31))),
        (date(2024, 8, 31), (date(2023, 9, 1), date(2024, 8, 31))),
    ],
)
def test_anniversary_cycle_bounds(reference, expected):
    assert get_anniversary_cycle_bounds(date(2000, 9, 1), reference) == expected


def test_leap_day_anniversary_cycle_has_no_gap():
    start, end = get_anniversary_cycle_bounds(date(2000, 2, 29), date(2023, 6, 1))

    assert (start, end) == (date(2023, 2, 28), date(2024, 2, 28))
    assert get_anniversary_cycle_bounds(date(2000, 2, 29), date(2024, 2, 29))[0] == date(2024, 2, 29)


def test_benefit_cycle_bounds_only_use_anniversary_for_annual_perks():
    anniversary = date(2000, 9, 1)

    assert get_benefit_cycle_bounds(12, date(2024, 5, 15), "anniversary", anniversary) == (
        date(2023, 9, 1), date(2024, 8, 31),
    )
    assert get_benefit_cycle_bounds(12, date(2024, 5, 15), "anniversary", None) == (
        date(2024, 1, 1), date(2024, 12, 31),
    )
    assert get_benefit_cycle_bounds(3, date(2024, 5, 15), "anniversary", anniversary) == (
        date(2024, 4, 1), date(2024, 6, 30),
    )


def test_cycle_details_for_anniversary_benefit():
    benefit = SimpleNamespace(name="Travel Credit", period_months=12, reset_type="anniversary")

    details = calculate_perk_cycle_details(benefit, date(2024, 5, 15), card_anniversary=date(2000, 9, 1))

    assert details.cycle_end_date == date(2024, 8, 31)
    assert details.days_remaining == 108
