"""Auto-redemption settings model."""
import uuid

from sqlalchemy import Column, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.user import utcnow_iso


class AutoRedemption(Base):
    """Monthly perk the user wants marked redeemed every month without asking."""

    __tablename__ = "auto_redemptions"
    __table_args__ = (
        UniqueConstraint("user_card_id", "perk_definition_id", name="uq_auto_redemption"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user_card_id = Column(String(36), ForeignKey("user_cards.id", ondelete="CASCADE"), nullable=False)
    perk_definition_id = Column(String(80), nullable=False)
    is_enabled = Column(Integer, default=1)  # SQLite boolean
    last_applied_cycle = Column(String(10))  # YYYY-M, set once the month's ledger row exists
    created_at = Column(String(32), default=utcnow_iso)
    updated_at = Column(String(32), default=utcnow_iso, onupdate=utcnow_iso)

    # Relationships
    user_card = relationship("UserCard", back_populates="auto_redemptions")
