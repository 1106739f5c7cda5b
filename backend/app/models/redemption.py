"""Redemption ledger model."""
import uuid

from sqlalchemy import Column, Float, ForeignKey, Index, String
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.user import utcnow_iso


class PerkRedemption(Base):
    """One redemption event. Rows are appended; the latest per perk wins."""
    
    __tablename__ = "perk_redemptions"
    __table_args__ = (
        Index("ix_perk_redemptions_user_date", "user_id", "redemption_date"),
        Index("ix_perk_redemptions_user_perk", "user_id", "perk_definition_id"),
    )
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    user_card_id = Column(String(36), ForeignKey("user_cards.id", ondelete="CASCADE"), nullable=False)
    perk_definition_id = Column(String(80), nullable=False)
    
    redemption_date = Column(String(32), nullable=False)  # ISO timestamp, UTC
    reset_date = Column(String(32))  # When this redemption's cycle ends
    
    status = Column(String(20), nullable=False)  # redeemed, partially_redeemed
    value_redeemed = Column(Float, nullable=False, default=0.0)  # Amount added by this event
    remaining_value = Column(Float, nullable=False, default=0.0)
    
    created_at = Column(String(32), default=utcnow_iso)
    
    # Relationships
    user = relationship("User", back_populates="redemptions")
    user_card = relationship("UserCard", back_populates="redemptions")
