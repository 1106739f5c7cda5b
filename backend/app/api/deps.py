"""Shared API dependencies."""
import logging

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.user import User
from app.services.auto_redemption import SqlAutoRedemptionStore
from app.services.catalog import CatalogCache, OwnedBenefitsReader
from app.services.perk_ledger import SqlRedemptionLedger
from app.services.perk_status import PerkStatusTracker, TrackerRegistry

logger = logging.getLogger(__name__)

__all__ = [
    "get_db",
    "get_current_user",
    "get_catalog",
    "get_ledger",
    "get_auto_redemptions",
    "get_owned_benefits",
    "get_tracker_registry",
    "get_tracker",
]


def get_current_user(
    x_user_id: str | None = Header(None),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the user the gateway forwarded, creating the row on first sight."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )

    user = db.query(User).filter(User.external_id == x_user_id).first()
    if user is None:
        user = User(external_id=x_user_id)
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info(f"Provisioned user {user.id} for {x_user_id}")
    return user


def get_catalog(request: Request) -> CatalogCache:
    return request.app.state.catalog


def get_ledger(request: Request) -> SqlRedemptionLedger:
    return request.app.state.ledger


def get_owned_benefits(request: Request) -> OwnedBenefitsReader:
    return request.app.state.owned_benefits


def get_auto_redemptions(request: Request) -> SqlAutoRedemptionStore:
    return request.app.state.auto_redemptions


def get_tracker_registry(request: Request) -> TrackerRegistry:
    return request.app.state.trackers


def get_tracker(
    registry: TrackerRegistry = Depends(get_tracker_registry),
    current_user: User = Depends(get_current_user),
) -> PerkStatusTracker:
    return registry.get(current_user.id, has_redeemed_before=bool(current_user.first_redemption_at))
