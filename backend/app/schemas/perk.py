"""Perk status and redemption ledger schemas."""
from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class PerkStatus(str, Enum):
    """Redemption state of a perk within its current cycle."""

    AVAILABLE = "available"
    REDEEMED = "redeemed"
    PARTIALLY_REDEEMED = "partially_redeemed"


class OwnedBenefit(BaseModel):
    """A catalog benefit on one of the user's cards."""

    card_id: str  # user card id
    benefit_id: str
    name: str
    value: float
    period_months: int | None = None
    reset_type: str = "calendar"  # calendar, anniversary
    categories: list[str] = Field(default_factory=list)


class OwnedCard(BaseModel):
    """A card the user holds, with its catalog benefits."""

    card_id: str
    card_slug: str
    name: str
    annual_fee: int = 0
    card_anniversary: date | None = None
    added_on: date | None = None
    benefits: list[OwnedBenefit] = Field(default_factory=list)


class RedemptionEvent(BaseModel):
    """One ledger row as read back from the redemption store."""

    perk_definition_id: str
    user_card_id: str | None = None
    redemption_date: datetime
    reset_date: datetime | None = None
    status: PerkStatus
    value_redeemed: float = 0.0
    remaining_value: float = 0.0

    @field_validator("status")
    @classmethod
    def reject_available(cls, v: PerkStatus) -> PerkStatus:
        if v is PerkStatus.AVAILABLE:
            raise ValueError("ledger rows record redemptions only")
        return v


class PeriodAggregate(BaseModel):
    """Redeemed vs possible value for all perks sharing a period length."""

    redeemed_value: float = 0.0
    possible_value: float = 0.0
    redeemed_count: int = 0
    total_count: int = 0
    partially_redeemed_count: int = 0


class PerkState(BaseModel):
    """Derived status of a single perk for the current cycle."""

    benefit_id: str
    name: str
    value: float
    period_months: int | None = None
    reset_type: str = "calendar"
    status: PerkStatus = PerkStatus.AVAILABLE
    remaining_value: float = 0.0


class CardPerks(BaseModel):
    """All perk states for one card."""

    card_id: str
    card_slug: str
    name: str
    annual_fee: int = 0
    card_anniversary: date | None = None
    perks: list[PerkState]


class PerkStatusSnapshot(BaseModel):
    """Read-only view of the tracker state handed to consumers."""

    cards: list[CardPerks] = Field(default_factory=list)
    period_aggregates: dict[int, PeriodAggregate] = Field(default_factory=dict)
    cumulative_value_saved_per_card: dict[str, float] = Field(default_factory=dict)
    redeemed_in_current_cycle: dict[str, bool] = Field(default_factory=dict)
    calculated_at: datetime | None = None


class MarkRedeemedRequest(BaseModel):
    """Request to mark a perk as fully or partially redeemed."""

    user_card_id: str
    benefit_id: str
    amount: float | None = None  # None redeems whatever is left this cycle


class MarkAvailableRequest(BaseModel):
    """Request to undo the current cycle's redemption of a perk."""

    user_card_id: str
    benefit_id: str


class ExpiringPerk(BaseModel):
    """A perk with value left whose cycle is about to reset."""

    card_id: str
    card_name: str
    benefit_id: str
    benefit_name: str
    value: float
    remaining_value: float
    status: PerkStatus
    cycle_end_date: date
    days_remaining: int


class AutoRedemptionRequest(BaseModel):
    """Request to switch monthly auto-redemption on or off for a perk."""

    user_card_id: str
    benefit_id: str
    enabled: bool = True


class AutoRedemptionSetting(BaseModel):
    """A monthly perk that gets marked redeemed at the start of each month."""

    id: str
    user_card_id: str
    perk_definition_id: str
    is_enabled: bool
    last_applied_cycle: str | None = None  # YYYY-M of the last month it was applied

    class Config:
        from_attributes = True
