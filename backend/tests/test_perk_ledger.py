import asyncio
import os
import sys
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.database import Base
from app.models.card import CardConfig, UserCard
from app.models.redemption import PerkRedemption
from app.models.user import User
from app.schemas.perk import PerkStatus, RedemptionEvent
from app.services.perk_ledger import (
    LedgerFetchError,
    LedgerWriteError,
    SqlRedemptionLedger,
    reduce_to_latest_per_benefit,
    to_ledger_timestamp,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _event(benefit_id: str, when: datetime, status=PerkStatus.REDEEMED, remaining=0.0) -> RedemptionEvent:
    return RedemptionEvent(
        perk_definition_id=benefit_id,
        redemption_date=when,
        status=status,
        value_redeemed=10.0,
        remaining_value=remaining,
    )


def _build_ledger():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    user = User(external_id="ledger-user")
    session.add(user)
    config = CardConfig(slug="test-card", name="Test Card", issuer="Test", annual_fee=95, benefits="[]")
    session.add(config)
    session.flush()
    user_card = UserCard(user_id=user.id, card_config_id=config.id)
    session.add(user_card)
    session.commit()
    ids = (user.id, user_card.id)
    session.close()

    return SqlRedemptionLedger(TestingSessionLocal), TestingSessionLocal, ids


def test_reduce_keeps_latest_event_per_benefit():
    older = _event("uber", utc(2024, 5, 1))
    newer = _event("uber", utc(2024, 5, 3), PerkStatus.PARTIALLY_REDEEMED, 5.0)
    other = _event("saks", utc(2024, 2, 1))

    latest = reduce_to_latest_per_benefit([newer, other, older])

    assert latest == {"uber": newer, "saks": other}


def test_reduce_breaks_ties_by_input_order():
    first = _event("uber", utc(2024, 5, 1))
    second = _event("uber", utc(2024, 5, 1), PerkStatus.PARTIALLY_REDEEMED, 5.0)

    assert reduce_to_latest_per_benefit([first, second])["uber"] is second
    assert reduce_to_latest_per_benefit([second, first])["uber"] is first


def test_ledger_timestamps_sort_as_text():
    earlier = to_ledger_timestamp(utc(2024, 5, 1, 9, 0))
    later = to_ledger_timestamp(utc(2024, 5, 1, 9, 0, 0, 1))

    assert earlier < later
    assert len(earlier) == len(later)
    assert to_ledger_timestamp(datetime(2024, 5, 1, 9, 0)) == earlier


def test_record_and_list_redemptions_newest_first():
    ledger, _, (user_id, user_card_id) = _build_ledger()

    async def scenario():
        await ledger.record_redemption(
            user_id, user_card_id, "uber", PerkStatus.REDEEMED, 15.0, 0.0,
            reset_date=utc(2024, 6, 1), redemption_date=utc(2024, 5, 2),
        )
        await ledger.record_redemption(
            user_id, user_card_id, "saks", PerkStatus.PARTIALLY_REDEEMED, 20.0, 30.0,
            reset_date=utc(2024, 7, 1), redemption_date=utc(2024, 5, 10),
        )
        return await ledger.list_redemptions(user_id)

    events = asyncio.run(scenario())

    assert [e.perk_definition_id for e in events] == ["saks", "uber"]
    assert events[0].status is PerkStatus.PARTIALLY_REDEEMED
    assert events[0].remaining_value == 30.0
    assert events[0].redemption_date == utc(2024, 5, 10)
    assert events[1].reset_date == utc(2024, 6, 1)
    assert events[1].user_card_id == user_card_id


def test_record_rejects_available_status():
    ledger, _, (user_id, user_card_id) = _build_ledger()

    with pytest.raises(ValueError):
        asyncio.run(ledger.record_redemption(
            user_id, user_card_id, "uber", PerkStatus.AVAILABLE, 0.0, 0.0, reset_date=None,
        ))


def test_delete_current_cycle_keeps_history():
    ledger, session_factory, (user_id, user_card_id) = _build_ledger()
    now = utc(2024, 5, 15)

    async def scenario():
        # Previous month, already reset
        await ledger.record_redemption(
            user_id, user_card_id, "uber", PerkStatus.REDEEMED, 15.0, 0.0,
            reset_date=utc(2024, 5, 1), redemption_date=utc(2024, 4, 10),
        )
        # This month, with and without a stored reset date
        await ledger.record_redemption(
            user_id, user_card_id, "uber", PerkStatus.PARTIALLY_REDEEMED, 5.0, 10.0,
            reset_date=utc(2024, 6, 1), redemption_date=utc(2024, 5, 3),
        )
        await ledger.record_redemption(
            user_id, user_card_id, "uber", PerkStatus.REDEEMED, 10.0, 0.0,
            reset_date=None, redemption_date=utc(2024, 5, 4),
        )
        # A different perk is untouched
        await ledger.record_redemption(
            user_id, user_card_id, "saks", PerkStatus.REDEEMED, 50.0, 0.0,
            reset_date=utc(2024, 7, 1), redemption_date=utc(2024, 5, 5),
        )
        return await ledger.delete_current_cycle_redemptions(user_id, "uber", utc(2024, 5, 1), now=now)

    deleted = asyncio.run(scenario())

    assert deleted == 2
    session = session_factory()
    rows = session.query(PerkRedemption).order_by(PerkRedemption.redemption_date).all()
    assert [(r.perk_definition_id, r.redemption_date[:10]) for r in rows] == [
        ("uber", "2024-04-10"),
        ("saks", "2024-05-05"),
    ]
    session.close()


def test_fetch_failure_is_wrapped():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    # No tables created, so every query fails
    ledger = SqlRedemptionLedger(sessionmaker(bind=engine))

    with pytest.raises(LedgerFetchError):
        asyncio.run(ledger.list_redemptions("nobody"))


def test_write_failure_is_wrapped():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    ledger = SqlRedemptionLedger(sessionmaker(bind=engine))

    with pytest.raises(LedgerWriteError):
        asyncio.run(ledger.record_redemption(
            "nobody", "no-card", "uber", PerkStatus.REDEEMED, 15.0, 0.0, reset_date=None,
        ))


def test_same_timestamp_rows_resolve_to_the_last_write():
    ledger, session_factory, (user_id, user_card_id) = _build_ledger()
    same_moment = to_ledger_timestamp(utc(2024, 5, 2, 9, 0))
    session = session_factory()
    # Inserted out of write order on purpose
    session.add(PerkRedemption(
        user_id=user_id, user_card_id=user_card_id, perk_definition_id="uber",
        redemption_date=same_moment, status="redeemed", value_redeemed=10.0, remaining_value=0.0,
        created_at="2024-05-02T09:00:01.000000+00:00",
    ))
    session.add(PerkRedemption(
        user_id=user_id, user_card_id=user_card_id, perk_definition_id="uber",
        redemption_date=same_moment, status="partially_redeemed", value_redeemed=5.0, remaining_value=10.0,
        created_at="2024-05-02T09:00:00.000000+00:00",
    ))
    session.commit()
    session.close()

    events = asyncio.run(ledger.list_redemptions(user_id))

    assert [e.status for e in events] == [PerkStatus.PARTIALLY_REDEEMED, PerkStatus.REDEEMED]
    assert reduce_to_latest_per_benefit(events)["uber"].status is PerkStatus.REDEEMED


def test_recorded_top_up_wins_over_partial_at_same_moment():
    ledger, _, (user_id, user_card_id) = _build_ledger()
    moment = utc(2024, 5, 2, 9, 0)

    async def scenario():
        await ledger.record_redemption(
            user_id, user_card_id, "saks", PerkStatus.PARTIALLY_REDEEMED, 20.0, 30.0,
            reset_date=utc(2024, 7, 1), redemption_date=moment,
        )
        await ledger.record_redemption(
            user_id, user_card_id, "saks", PerkStatus.REDEEMED, 30.0, 0.0,
            reset_date=utc(2024, 7, 1), redemption_date=moment,
        )
        return await ledger.list_redemptions(user_id)

    latest = reduce_to_latest_per_benefit(asyncio.run(scenario()))

    assert latest["saks"].status is PerkStatus.REDEEMED
