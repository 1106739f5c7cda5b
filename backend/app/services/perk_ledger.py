"""Redemption ledger service.

Rows are only ever appended (or removed when a redemption is undone); the
current state of a perk is its most recent row.
"""
import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from app.database import SessionLocal, get_db_context
from app.models.redemption import PerkRedemption
from app.schemas.perk import PerkStatus, RedemptionEvent
from app.services.benefit_periods import as_utc, utcnow

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for redemption store failures."""


class LedgerFetchError(LedgerError):
    """Redemptions could not be read."""


class LedgerWriteError(LedgerError):
    """A redemption could not be written or removed."""


def to_ledger_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO string so stored timestamps sort as text."""
    return as_utc(value).isoformat(timespec="microseconds")


def reduce_to_latest_per_benefit(events: Iterable[RedemptionEvent]) -> dict[str, RedemptionEvent]:
    """Keep the most recent event per perk; on equal dates the later one in input order wins."""
    latest: dict[str, RedemptionEvent] = {}
    for event in events:
        current = latest.get(event.perk_definition_id)
        if current is None or as_utc(event.redemption_date) >= as_utc(current.redemption_date):
            latest[event.perk_definition_id] = event
    return latest


class SqlRedemptionLedger:
    """Redemption store backed by the perk_redemptions table.

    Each call opens its own session and runs in the thread pool, so a
    ledger read can be awaited alongside the catalog read.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    async def list_redemptions(self, user_id: str) -> list[RedemptionEvent]:
        """All of the user's redemption events, newest first.

        Events sharing a redemption date come oldest write first, so
        reduce_to_latest_per_benefit settles the tie on the last write.
        """
        try:
            return await run_in_threadpool(self._list_redemptions, user_id)
        except Exception as exc:
            logger.error(f"Failed to fetch redemptions for user {user_id}: {exc}")
            raise LedgerFetchError(f"Could not load redemptions for user {user_id}") from exc

    async def record_redemption(
        self,
        user_id: str,
        user_card_id: str,
        benefit_id: str,
        status: PerkStatus,
        value_redeemed: float,
        remaining_value: float,
        reset_date: datetime | None,
        redemption_date: datetime | None = None,
    ) -> RedemptionEvent:
        """Append a redemption event."""
        if status is PerkStatus.AVAILABLE:
            raise ValueError("Only redemptions are recorded; use delete_current_cycle_redemptions")
        try:
            return await run_in_threadpool(
                self._record_redemption,
                user_id,
                user_card_id,
                benefit_id,
                status,
                value_redeemed,
                remaining_value,
                reset_date,
                redemption_date or utcnow(),
            )
        except Exception as exc:
            logger.error(f"Failed to record redemption of {benefit_id} for user {user_id}: {exc}")
            raise LedgerWriteError(f"Could not record redemption of {benefit_id}") from exc

    async def delete_current_cycle_redemptions(
        self,
        user_id: str,
        benefit_id: str,
        cycle_start: datetime | None,
        now: datetime | None = None,
    ) -> int:
        """Remove the events that make a perk count as redeemed right now.

        Events from earlier cycles stay in place for insights history.
        """
        try:
            return await run_in_threadpool(
                self._delete_current_cycle, user_id, benefit_id, cycle_start, now or utcnow()
            )
        except Exception as exc:
            logger.error(f"Failed to delete redemptions of {benefit_id} for user {user_id}: {exc}")
            raise LedgerWriteError(f"Could not undo redemption of {benefit_id}") from exc

    def _list_redemptions(self, user_id: str) -> list[RedemptionEvent]:
        with get_db_context(self._session_factory) as db:
            rows = db.query(PerkRedemption).filter(
                PerkRedemption.user_id == user_id,
            ).order_by(PerkRedemption.redemption_date.desc(), PerkRedemption.created_at).all()
            return [RedemptionEvent.model_validate(row, from_attributes=True) for row in rows]

    def _record_redemption(
        self,
        user_id: str,
        user_card_id: str,
        benefit_id: str,
        status: PerkStatus,
        value_redeemed: float,
        remaining_value: float,
        reset_date: datetime | None,
        redemption_date: datetime,
    ) -> RedemptionEvent:
        with get_db_context(self._session_factory) as db:
            row = PerkRedemption(
                user_id=user_id,
                user_card_id=user_card_id,
                perk_definition_id=benefit_id,
                redemption_date=to_ledger_timestamp(redemption_date),
                reset_date=to_ledger_timestamp(reset_date) if reset_date else None,
                status=status.value,
                value_redeemed=value_redeemed,
                remaining_value=remaining_value,
            )
            db.add(row)
            db.flush()
            logger.info(
                f"Recorded {status.value} of {benefit_id} for user {user_id}: "
                f"${value_redeemed:.2f} redeemed, ${remaining_value:.2f} left"
            )
            return RedemptionEvent.model_validate(row, from_attributes=True)

    def _delete_current_cycle(
        self,
        user_id: str,
        benefit_id: str,
        cycle_start: datetime | None,
        now: datetime,
    ) -> int:
        with get_db_context(self._session_factory) as db:
            still_valid = PerkRedemption.reset_date > to_ledger_timestamp(now)
            if cycle_start is not None:
                still_valid = or_(
                    still_valid,
                    and_(
                        PerkRedemption.reset_date.is_(None),
                        PerkRedemption.redemption_date >= to_ledger_timestamp(cycle_start),
                    ),
                )
            deleted = _query_user_perk(db, user_id, benefit_id).filter(still_valid).delete(
                synchronize_session=False
            )
            logger.info(f"Removed {deleted} current-cycle redemption(s) of {benefit_id} for user {user_id}")
            return deleted


def _query_user_perk(db: Session, user_id: str, benefit_id: str):
    return db.query(PerkRedemption).filter(
        PerkRedemption.user_id == user_id,
        PerkRedemption.perk_definition_id == benefit_id,
    )
