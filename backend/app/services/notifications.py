"""Notification service for first-redemption messages and expiring perks."""
import logging
from datetime import date

from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from app.database import SessionLocal, get_db_context
from app.models.notification import Notification
from app.models.user import User, utcnow_iso
from app.schemas.perk import ExpiringPerk, PerkStatus, PerkStatusSnapshot
from app.services.benefit_periods import (
    CALENDAR_PERIODS,
    calculate_perk_cycle_details,
    is_period_expiring_soon,
)

logger = logging.getLogger(__name__)

FIRST_REDEMPTION_TITLE = "First perk redeemed"
FIRST_REDEMPTION_MESSAGE = "You've redeemed your first perk. Your savings now show up in insights."


def create_notification(
    db: Session,
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    user_card_id: str | None = None,
    perk_definition_id: str | None = None,
    expires_at: str | None = None,
) -> Notification:
    """Create an in-app notification."""
    notification = Notification(
        user_id=user_id,
        type=notification_type,
        title=title,
        message=message,
        user_card_id=user_card_id,
        perk_definition_id=perk_definition_id,
        expires_at=expires_at,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def record_first_redemption(db: Session, user_id: str) -> Notification | None:
    """Stamp the user's first redemption and leave them a notification.

    Does nothing for a user who already has the stamp.
    """
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.warning(f"First redemption for unknown user {user_id}")
        return None
    if user.first_redemption_at:
        return None

    user.first_redemption_at = utcnow_iso()
    logger.info(f"User {user_id} redeemed their first perk")
    return create_notification(
        db,
        user_id,
        "first_redemption",
        FIRST_REDEMPTION_TITLE,
        FIRST_REDEMPTION_MESSAGE,
    )


def make_first_redemption_hook(user_id: str, session_factory: sessionmaker = SessionLocal):
    """Async callable for PerkStatusTracker.on_first_redemption.

    The database work runs in the thread pool, off the event loop.
    """
    def record() -> None:
        with get_db_context(session_factory) as db:
            record_first_redemption(db, user_id)

    async def hook() -> None:
        await run_in_threadpool(record)
    return hook


def get_expiring_perks(
    snapshot: PerkStatusSnapshot,
    today: date,
    days_threshold: int = 7,
) -> list[ExpiringPerk]:
    """Perks with value left whose cycle ends within the threshold, soonest first."""
    expiring = []
    for card in snapshot.cards:
        for perk in card.perks:
            # Rolling perks have no calendar cycle end
            if perk.status is PerkStatus.REDEEMED or perk.period_months not in CALENDAR_PERIODS:
                continue
            details = calculate_perk_cycle_details(perk, today, card.card_anniversary)
            if not is_period_expiring_soon(details.cycle_end_date, days_threshold, today):
                continue
            remaining = perk.remaining_value if perk.status is PerkStatus.PARTIALLY_REDEEMED else perk.value
            expiring.append(ExpiringPerk(
                card_id=card.card_id,
                card_name=card.name,
                benefit_id=perk.benefit_id,
                benefit_name=perk.name,
                value=perk.value,
                remaining_value=remaining,
                status=perk.status,
                cycle_end_date=details.cycle_end_date,
                days_remaining=details.days_remaining,
            ))

    expiring.sort(key=lambda item: item.days_remaining)
    return expiring
