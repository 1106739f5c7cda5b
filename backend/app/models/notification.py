"""Notification model for in-app messages."""
import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text

from app.database import Base
from app.models.user import utcnow_iso


class Notification(Base):
    """In-app notification (first redemption, expiring perks)."""
    
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_unread", "user_id", "read"),
        Index("ix_notifications_created", "user_id", "created_at"),
    )
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    
    # Notification type: first_redemption, perk_expiring, system
    type = Column(String(50), nullable=False)
    
    # Context
    user_card_id = Column(String(36), ForeignKey("user_cards.id", ondelete="CASCADE"))
    perk_definition_id = Column(String(80))
    
    # Content
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    
    # Status
    read = Column(Integer, default=0)  # SQLite boolean
    read_at = Column(String(32))
    
    expires_at = Column(String(32))  # When notification is no longer relevant
    
    # Timestamps
    created_at = Column(String(32), default=utcnow_iso)
