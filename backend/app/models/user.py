"""User model."""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Text
from sqlalchemy.orm import relationship

from app.database import Base


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class User(Base):
    """User account, provisioned from the identity the gateway forwards."""
    
    __tablename__ = "users"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    external_id = Column(String(128), unique=True, nullable=False, index=True)
    display_name = Column(String(100))
    settings = Column(Text, default="{}")  # JSON for notification prefs, etc.
    first_redemption_at = Column(String(32))  # Set once, by the first-redemption hook
    created_at = Column(String(32), default=utcnow_iso)
    updated_at = Column(String(32), default=utcnow_iso, onupdate=utcnow_iso)
    
    # Relationships
    user_cards = relationship("UserCard", back_populates="user", cascade="all, delete-orphan")
    redemptions = relationship("PerkRedemption", back_populates="user", cascade="all, delete-orphan")
    notifications = relationship("Notification", backref="user", cascade="all, delete-orphan")
