"""Cards API endpoints."""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_db, get_tracker_registry
from app.models.card import CardConfig, UserCard
from app.models.user import User
from app.schemas.card import (
    CardConfigResponse,
    UserCardCreate,
    UserCardResponse,
    UserCardUpdate,
)
from app.services.catalog import parse_anniversary
from app.services.perk_status import TrackerRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cards", tags=["cards"])


def _card_response(user_card: UserCard) -> UserCardResponse:
    return UserCardResponse(
        id=user_card.id,
        card_config_id=user_card.card_config_id,
        card_slug=user_card.card_config.slug,
        card_name=user_card.card_config.name,
        card_issuer=user_card.card_config.issuer,
        nickname=user_card.nickname,
        card_anniversary=user_card.card_anniversary,
        active=bool(user_card.active),
        added_at=user_card.added_at,
    )


def _check_anniversary(value: str | None) -> None:
    if value and parse_anniversary(value) is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="card_anniversary must be MM-DD or YYYY-MM-DD",
        )


def _get_user_card(db: Session, user_id: str, user_card_id: str) -> UserCard:
    user_card = db.query(UserCard).filter(
        UserCard.id == user_card_id,
        UserCard.user_id == user_id,
    ).first()
    if not user_card:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Card not found in your portfolio",
        )
    return user_card


@router.get("/available", response_model=list[CardConfigResponse])
def get_available_cards(db: Session = Depends(get_db)):
    """Get all card definitions in the catalog (no user required)."""
    return db.query(CardConfig).order_by(CardConfig.name).all()


@router.get("/my", response_model=list[UserCardResponse])
def get_my_cards(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Get current user's card portfolio."""
    user_cards = db.query(UserCard).filter(
        UserCard.user_id == current_user.id,
    ).order_by(UserCard.added_at).all()
    return [_card_response(uc) for uc in user_cards]


@router.post("/my", response_model=UserCardResponse, status_code=status.HTTP_201_CREATED)
def add_card_to_portfolio(
    card_data: UserCardCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    trackers: TrackerRegistry = Depends(get_tracker_registry),
):
    """Add a card to user's portfolio."""
    card_config = db.query(CardConfig).filter(CardConfig.id == card_data.card_config_id).first()
    if not card_config:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Card configuration not found",
        )
    _check_anniversary(card_data.card_anniversary)

    existing = db.query(UserCard).filter(
        UserCard.user_id == current_user.id,
        UserCard.card_config_id == card_data.card_config_id,
    ).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Card already in portfolio",
        )

    user_card = UserCard(
        user_id=current_user.id,
        card_config_id=card_data.card_config_id,
        nickname=card_data.nickname,
        card_anniversary=card_data.card_anniversary,
    )
    db.add(user_card)
    db.commit()
    db.refresh(user_card)

    # Perk totals are rebuilt on the next status read
    trackers.discard(current_user.id)
    logger.info(f"User {current_user.id} added {card_config.slug}")
    return _card_response(user_card)


@router.patch("/my/{user_card_id}", response_model=UserCardResponse)
def update_user_card(
    user_card_id: str,
    card_data: UserCardUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    trackers: TrackerRegistry = Depends(get_tracker_registry),
):
    """Update a card in user's portfolio."""
    user_card = _get_user_card(db, current_user.id, user_card_id)
    _check_anniversary(card_data.card_anniversary)

    if card_data.nickname is not None:
        user_card.nickname = card_data.nickname
    if card_data.card_anniversary is not None:
        user_card.card_anniversary = card_data.card_anniversary
    if card_data.active is not None:
        user_card.active = 1 if card_data.active else 0

    db.commit()
    db.refresh(user_card)
    trackers.discard(current_user.id)
    return _card_response(user_card)


@router.delete("/my/{user_card_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_card_from_portfolio(
    user_card_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    trackers: TrackerRegistry = Depends(get_tracker_registry),
):
    """Remove a card and its redemption history from user's portfolio."""
    user_card = _get_user_card(db, current_user.id, user_card_id)
    db.delete(user_card)
    db.commit()
    trackers.discard(current_user.id)
