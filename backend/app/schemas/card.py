"""Card schemas."""
import json
from typing import Any

from pydantic import BaseModel, Field, field_validator


class BenefitConfig(BaseModel):
    """Benefit definition from the YAML catalog."""

    id: str  # globally unique perk definition id
    name: str
    value: float
    period_months: int | None = None  # 1, 3, 6, 12 or 48
    reset_type: str = "calendar"  # calendar, anniversary
    categories: list[str] = Field(default_factory=list)
    notes: str | None = None


class CardConfigResponse(BaseModel):
    """Card configuration response (available cards)."""

    id: str
    slug: str
    name: str
    issuer: str
    annual_fee: int
    benefits_url: str | None = None
    benefits: list[BenefitConfig]

    @field_validator("benefits", mode="before")
    @classmethod
    def parse_benefits(cls, v: Any) -> list[dict]:
        if isinstance(v, str):
            return json.loads(v)
        return v

    class Config:
        from_attributes = True


class UserCardCreate(BaseModel):
    """Request to add a card to user's portfolio."""

    card_config_id: str
    nickname: str | None = None
    card_anniversary: str | None = Field(
        None,
        description="Card anniversary date (MM-DD) for anniversary-reset benefits"
    )


class UserCardUpdate(BaseModel):
    """Request to update a user's card."""

    nickname: str | None = None
    card_anniversary: str | None = None
    active: bool | None = None


class UserCardResponse(BaseModel):
    """User's card in their portfolio."""

    id: str
    card_config_id: str
    card_slug: str
    card_name: str
    card_issuer: str
    nickname: str | None
    card_anniversary: str | None
    active: bool
    added_at: str

    class Config:
        from_attributes = True
