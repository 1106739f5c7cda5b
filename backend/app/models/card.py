"""Card-related models."""
import uuid

from sqlalchemy import Column, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.user import utcnow_iso


class CardConfig(Base):
    """Credit card definition (seeded from the YAML catalog)."""
    
    __tablename__ = "card_configs"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    slug = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    issuer = Column(String(50), nullable=False)
    annual_fee = Column(Integer, default=0)
    benefits_url = Column(String(255))  # Link to official benefits page
    benefits = Column(Text, nullable=False)  # JSON array of benefit definitions
    created_at = Column(String(32), default=utcnow_iso)
    updated_at = Column(String(32), default=utcnow_iso, onupdate=utcnow_iso)
    
    # Relationships
    user_cards = relationship("UserCard", back_populates="card_config")


class UserCard(Base):
    """User's card in their portfolio."""
    
    __tablename__ = "user_cards"
    __table_args__ = (
        UniqueConstraint("user_id", "card_config_id", name="uq_user_card"),
    )
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    card_config_id = Column(String(36), ForeignKey("card_configs.id"), nullable=False)
    nickname = Column(String(100))
    card_anniversary = Column(String(10))  # MM-DD or YYYY-MM-DD, for anniversary resets
    active = Column(Integer, default=1)  # SQLite boolean
    added_at = Column(String(32), default=utcnow_iso)
    
    # Relationships
    user = relationship("User", back_populates="user_cards")
    card_config = relationship("CardConfig", back_populates="user_cards")
    redemptions = relationship("PerkRedemption", back_populates="user_card", cascade="all, delete-orphan")
    auto_redemptions = relationship("AutoRedemption", back_populates="user_card", cascade="all, delete-orphan")
