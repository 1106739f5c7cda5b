import asyncio
import os
import sys
from datetime import date, datetime, timezone

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.schemas.perk import OwnedBenefit, OwnedCard, PerkStatus, RedemptionEvent
from app.services.perk_ledger import LedgerWriteError
from app.services.perk_redemption import mark_available, mark_redeemed
from app.services.perk_status import DataQualityError, PerkStatusTracker, UnknownBenefitError

NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class RecordingLedger:
    """In-memory ledger that keeps what the commit path writes."""

    def __init__(self):
        self.events: list[RedemptionEvent] = []
        self.deletes = []
        self.fail_writes = False

    async def list_redemptions(self, user_id):
        return sorted(self.events, key=lambda e: e.redemption_date, reverse=True)

    async def record_redemption(self, user_id, user_card_id, benefit_id, status, value_redeemed,
                                remaining_value, reset_date, redemption_date=None):
        if self.fail_writes:
            raise LedgerWriteError("write failed")
        event = RedemptionEvent(
            perk_definition_id=benefit_id,
            user_card_id=user_card_id,
            redemption_date=redemption_date,
            reset_date=reset_date,
            status=status,
            value_redeemed=value_redeemed,
            remaining_value=remaining_value,
        )
        self.events.append(event)
        return event

    async def delete_current_cycle_redemptions(self, user_id, benefit_id, cycle_start, now=None):
        if self.fail_writes:
            raise LedgerWriteError("delete failed")
        self.deletes.append((benefit_id, cycle_start))
        kept = [e for e in self.events if e.perk_definition_id != benefit_id or e.reset_date <= now]
        deleted = len(self.events) - len(kept)
        self.events = kept
        return deleted


CARDS = [
    OwnedCard(
        card_id="csr",
        card_slug="chase-sapphire-reserve",
        name="Chase Sapphire Reserve",
        annual_fee=550,
        card_anniversary=date(2000, 9, 1),
        benefits=[
            OwnedBenefit(card_id="csr", benefit_id="doordash", name="DoorDash", value=20, period_months=1),
            OwnedBenefit(card_id="csr", benefit_id="instacart", name="Instacart", value=15, period_months=3),
            OwnedBenefit(
                card_id="csr", benefit_id="travel", name="Travel Credit", value=300,
                period_months=12, reset_type="anniversary",
            ),
            OwnedBenefit(card_id="csr", benefit_id="lounge", name="Lounge Access", value=0),
        ],
    ),
]


def _setup(**kwargs):
    ledger = RecordingLedger()

    async def list_owned_benefits(user_id):
        return CARDS

    tracker = PerkStatusTracker("user-1", list_owned_benefits, ledger, clock=lambda: NOW, **kwargs)
    asyncio.run(tracker.refresh())
    return tracker, ledger


def _perk(snapshot, benefit_id):
    return next(p for p in snapshot.cards[0].perks if p.benefit_id == benefit_id)


def test_mark_redeemed_without_amount_redeems_everything():
    tracker, ledger = _setup()

    snapshot = asyncio.run(mark_redeemed(tracker, ledger, "csr", "doordash", now=NOW))

    assert _perk(snapshot, "doordash").status is PerkStatus.REDEEMED
    assert snapshot.cumulative_value_saved_per_card["csr"] == 20
    [event] = ledger.events
    assert event.status is PerkStatus.REDEEMED
    assert event.value_redeemed == 20
    assert event.reset_date == utc(2024, 6, 1)


def test_partial_amounts_accumulate_within_cycle():
    tracker, ledger = _setup()

    first = asyncio.run(mark_redeemed(tracker, ledger, "csr", "doordash", amount=5, now=NOW))
    assert _perk(first, "doordash").status is PerkStatus.PARTIALLY_REDEEMED
    assert _perk(first, "doordash").remaining_value == 15

    second = asyncio.run(mark_redeemed(tracker, ledger, "csr", "doordash", amount=15, now=utc(2024, 5, 15, 12, 5)))
    assert _perk(second, "doordash").status is PerkStatus.REDEEMED
    assert second.cumulative_value_saved_per_card["csr"] == 20
    assert [(e.status, e.value_redeemed, e.remaining_value) for e in ledger.events] == [
        (PerkStatus.PARTIALLY_REDEEMED, 5, 15),
        (PerkStatus.REDEEMED, 15, 0),
    ]

    # The ledger agrees with the optimistic state
    refreshed = asyncio.run(tracker.refresh())
    assert refreshed.cumulative_value_saved_per_card == second.cumulative_value_saved_per_card


def test_invalid_amounts_are_rejected_before_anything_changes():
    tracker, ledger = _setup()

    with pytest.raises(ValueError):
        asyncio.run(mark_redeemed(tracker, ledger, "csr", "doordash", amount=0, now=NOW))
    with pytest.raises(ValueError):
        asyncio.run(mark_redeemed(tracker, ledger, "csr", "doordash", amount=25, now=NOW))

    asyncio.run(mark_redeemed(tracker, ledger, "csr", "doordash", now=NOW))
    with pytest.raises(ValueError, match="already fully redeemed"):
        asyncio.run(mark_redeemed(tracker, ledger, "csr", "doordash", amount=1, now=NOW))

    assert len(ledger.events) == 1


def test_unknown_and_untrackable_perks():
    tracker, ledger = _setup()

    with pytest.raises(UnknownBenefitError):
        asyncio.run(mark_redeemed(tracker, ledger, "csr", "saks", now=NOW))
    with pytest.raises(DataQualityError):
        asyncio.run(mark_redeemed(tracker, ledger, "csr", "lounge", now=NOW))


def test_anniversary_perk_resets_on_anniversary():
    tracker, ledger = _setup()

    asyncio.run(mark_redeemed(tracker, ledger, "csr", "travel", amount=120, now=NOW))

    assert ledger.events[0].reset_date == utc(2024, 9, 1)


def test_mark_available_reverts_and_removes_cycle_rows():
    tracker, ledger = _setup()
    asyncio.run(mark_redeemed(tracker, ledger, "csr", "instacart", now=NOW))

    snapshot = asyncio.run(mark_available(tracker, ledger, "csr", "instacart", now=NOW))

    assert _perk(snapshot, "instacart").status is PerkStatus.AVAILABLE
    assert snapshot.cumulative_value_saved_per_card["csr"] == 0
    assert ledger.deletes == [("instacart", utc(2024, 4, 1))]
    assert ledger.events == []


def test_mark_available_on_available_perk_is_a_no_op():
    tracker, ledger = _setup()

    asyncio.run(mark_available(tracker, ledger, "csr", "doordash", now=NOW))

    assert ledger.deletes == []


def test_write_failure_keeps_local_state_by_default():
    tracker, ledger = _setup()
    ledger.fail_writes = True

    with pytest.raises(LedgerWriteError):
        asyncio.run(mark_redeemed(
            tracker, ledger, "csr", "doordash", now=NOW, rollback_on_failure=False,
        ))

    assert _perk(tracker.snapshot(), "doordash").status is PerkStatus.REDEEMED
    # The next refresh reconciles with the ledger
    assert _perk(asyncio.run(tracker.refresh()), "doordash").status is PerkStatus.AVAILABLE


def test_write_failure_rolls_back_when_enabled():
    tracker, ledger = _setup()
    asyncio.run(mark_redeemed(tracker, ledger, "csr", "doordash", amount=5, now=NOW))
    ledger.fail_writes = True

    with pytest.raises(LedgerWriteError):
        asyncio.run(mark_redeemed(
            tracker, ledger, "csr", "doordash", amount=10, now=NOW, rollback_on_failure=True,
        ))
    perk = _perk(tracker.snapshot(), "doordash")
    assert perk.status is PerkStatus.PARTIALLY_REDEEMED
    assert perk.remaining_value == 15

    with pytest.raises(LedgerWriteError):
        asyncio.run(mark_available(tracker, ledger, "csr", "doordash", now=NOW, rollback_on_failure=True))
    assert _perk(tracker.snapshot(), "doordash").remaining_value == 15
    assert tracker.snapshot().cumulative_value_saved_per_card["csr"] == 5


def test_undo_of_anniversary_perk_uses_card_year():
    tracker, ledger = _setup()
    asyncio.run(mark_redeemed(tracker, ledger, "csr", "travel", now=NOW))

    asyncio.run(mark_available(tracker, ledger, "csr", "travel", now=NOW))

    assert ledger.deletes == [("travel", utc(2023, 9, 1))]
    assert ledger.events == []


def test_first_redemption_hook_runs_after_the_row_is_written():
    rows_at_call = []

    async def hook():
        rows_at_call.append(len(ledger.events))

    tracker, ledger = _setup(on_first_redemption=hook)

    asyncio.run(mark_redeemed(tracker, ledger, "csr", "doordash", now=NOW))
    asyncio.run(mark_redeemed(tracker, ledger, "csr", "instacart", now=NOW))

    assert rows_at_call == [1]


def test_first_redemption_hook_waits_for_a_successful_write():
    calls = []

    async def hook():
        calls.append("first")

    tracker, ledger = _setup(on_first_redemption=hook)
    ledger.fail_writes = True

    with pytest.raises(LedgerWriteError):
        asyncio.run(mark_redeemed(
            tracker, ledger, "csr", "doordash", now=NOW, rollback_on_failure=True,
        ))
    assert calls == []

    ledger.fail_writes = False
    asyncio.run(mark_redeemed(tracker, ledger, "csr", "instacart", now=NOW))
    assert calls == ["first"]
