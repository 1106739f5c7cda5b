"""SQLAlchemy models package."""
from app.models.user import User
from app.models.card import CardConfig, UserCard
from app.models.redemption import PerkRedemption
from app.models.auto_redemption import AutoRedemption
from app.models.notification import Notification

__all__ = [
    "User",
    "CardConfig",
    "UserCard",
    "PerkRedemption",
    "AutoRedemption",
    "Notification",
]
