"""Monthly auto-redemption.

Some monthly perks get used without the user doing anything (streaming
credits and the like). A user can switch such a perk to auto-redeem; the
first load of each month then writes its ledger row. Each setting is
applied at most once per month, so a perk the user marks available again
stays available until the next month.
"""
import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from app.database import SessionLocal, get_db_context
from app.models.auto_redemption import AutoRedemption
from app.schemas.perk import AutoRedemptionSetting, PerkStatus, PerkStatusSnapshot
from app.services.benefit_periods import MONTHLY, as_utc, utcnow
from app.services.perk_ledger import LedgerFetchError, LedgerWriteError
from app.services.perk_redemption import mark_available, mark_redeemed
from app.services.perk_status import PerkStatusTracker, UnknownBenefitError, cycle_identifier

logger = logging.getLogger(__name__)


def list_auto_redemptions(db: Session, user_id: str, enabled_only: bool = True) -> list[AutoRedemption]:
    query = db.query(AutoRedemption).filter(AutoRedemption.user_id == user_id)
    if enabled_only:
        query = query.filter(AutoRedemption.is_enabled == 1)
    return query.order_by(AutoRedemption.created_at).all()


def set_auto_redemption(
    db: Session,
    user_id: str,
    user_card_id: str,
    benefit_id: str,
    enabled: bool,
    applied_cycle: str | None = None,
) -> AutoRedemption:
    """Create or update the setting for one perk on one card."""
    setting = db.query(AutoRedemption).filter(
        AutoRedemption.user_card_id == user_card_id,
        AutoRedemption.perk_definition_id == benefit_id,
    ).first()
    if setting is None:
        setting = AutoRedemption(user_id=user_id, user_card_id=user_card_id, perk_definition_id=benefit_id)
        db.add(setting)

    setting.is_enabled = 1 if enabled else 0
    if applied_cycle:
        setting.last_applied_cycle = applied_cycle
    db.flush()
    logger.info(f"Auto-redemption of {benefit_id} on {user_card_id} {'enabled' if enabled else 'disabled'}")
    return setting


class SqlAutoRedemptionStore:
    """Auto-redemption settings backed by the auto_redemptions table."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    async def list_enabled(self, user_id: str) -> list[AutoRedemptionSetting]:
        try:
            return await run_in_threadpool(self._list_enabled, user_id)
        except Exception as exc:
            logger.error(f"Failed to fetch auto-redemptions for user {user_id}: {exc}")
            raise LedgerFetchError(f"Could not load auto-redemptions for user {user_id}") from exc

    async def set(
        self,
        user_id: str,
        user_card_id: str,
        benefit_id: str,
        enabled: bool,
        applied_cycle: str | None = None,
    ) -> AutoRedemptionSetting:
        try:
            return await run_in_threadpool(
                self._set, user_id, user_card_id, benefit_id, enabled, applied_cycle
            )
        except Exception as exc:
            logger.error(f"Failed to save auto-redemption of {benefit_id} for user {user_id}: {exc}")
            raise LedgerWriteError(f"Could not save auto-redemption of {benefit_id}") from exc

    async def mark_applied(self, setting_ids: Iterable[str], cycle: str) -> None:
        setting_ids = list(setting_ids)
        try:
            await run_in_threadpool(self._mark_applied, setting_ids, cycle)
        except Exception as exc:
            logger.error(f"Failed to stamp auto-redemptions for {cycle}: {exc}")
            raise LedgerWriteError(f"Could not stamp auto-redemptions for {cycle}") from exc

    def _list_enabled(self, user_id: str) -> list[AutoRedemptionSetting]:
        with get_db_context(self._session_factory) as db:
            return [AutoRedemptionSetting.model_validate(row) for row in list_auto_redemptions(db, user_id)]

    def _set(
        self,
        user_id: str,
        user_card_id: str,
        benefit_id: str,
        enabled: bool,
        applied_cycle: str | None,
    ) -> AutoRedemptionSetting:
        with get_db_context(self._session_factory) as db:
            setting = set_auto_redemption(db, user_id, user_card_id, benefit_id, enabled, applied_cycle)
            return AutoRedemptionSetting.model_validate(setting)

    def _mark_applied(self, setting_ids: list[str], cycle: str) -> None:
        with get_db_context(self._session_factory) as db:
            db.query(AutoRedemption).filter(AutoRedemption.id.in_(setting_ids)).update(
                {"last_applied_cycle": cycle}, synchronize_session=False
            )


async def apply_auto_redemptions(
    tracker: PerkStatusTracker,
    ledger,
    store: SqlAutoRedemptionStore,
    now: datetime | None = None,
) -> list[str]:
    """Redeem every enabled perk not yet handled this month.

    Returns the benefit ids that were redeemed. A perk already redeemed
    this month only gets its setting stamped.
    """
    now = as_utc(now or utcnow())
    cycle = cycle_identifier(now)
    due = [s for s in await store.list_enabled(tracker.user_id) if s.last_applied_cycle != cycle]

    applied, redeemed = [], []
    for setting in due:
        try:
            _, perk = tracker.get_perk(setting.user_card_id, setting.perk_definition_id)
        except UnknownBenefitError:
            logger.warning(f"Auto-redemption {setting.id} points at a perk the user no longer holds; skipping")
            continue
        if perk.period_months != MONTHLY:
            logger.warning(f"Auto-redemption {setting.id} is for non-monthly perk {perk.benefit_id}; skipping")
            continue

        if perk.status is not PerkStatus.REDEEMED:
            try:
                await mark_redeemed(
                    tracker,
                    ledger,
                    setting.user_card_id,
                    setting.perk_definition_id,
                    now=now,
                    rollback_on_failure=True,
                )
            except LedgerWriteError:
                logger.error(f"Auto-redemption of {perk.benefit_id} for user {tracker.user_id} not recorded")
                continue
            redeemed.append(perk.benefit_id)
        applied.append(setting.id)

    if applied:
        await store.mark_applied(applied, cycle)
    if redeemed:
        logger.info(f"Auto-redeemed {len(redeemed)} perk(s) for user {tracker.user_id} in {cycle}")
    return redeemed


def make_auto_redemption_hook(ledger, store: SqlAutoRedemptionStore):
    """New-cycle hook for PerkStatusTracker."""
    async def hook(tracker: PerkStatusTracker, now: datetime) -> None:
        await apply_auto_redemptions(tracker, ledger, store, now=now)
    return hook


async def set_perk_auto_redemption(
    tracker: PerkStatusTracker,
    ledger,
    store: SqlAutoRedemptionStore,
    card_id: str,
    benefit_id: str,
    enabled: bool,
    now: datetime | None = None,
) -> PerkStatusSnapshot:
    """Switch auto-redemption on or off for one monthly perk.

    Switching on also redeems the perk for the current month; switching
    off makes it available again.
    """
    _, perk = tracker.get_perk(card_id, benefit_id)
    if perk.period_months != MONTHLY:
        raise ValueError(f"Only monthly perks can be auto-redeemed; {perk.name} is not monthly")

    now = as_utc(now or utcnow())
    await store.set(
        tracker.user_id,
        card_id,
        benefit_id,
        enabled,
        applied_cycle=cycle_identifier(now) if enabled else None,
    )

    if not enabled:
        return await mark_available(tracker, ledger, card_id, benefit_id, now=now)
    if perk.status is PerkStatus.REDEEMED:
        return tracker.snapshot()
    return await mark_redeemed(tracker, ledger, card_id, benefit_id, now=now)
