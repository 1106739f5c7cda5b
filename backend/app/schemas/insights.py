"""Insights schemas."""
from enum import Enum

from pydantic import BaseModel, Field


class DetailStatus(str, Enum):
    """How a perk ended up within one calendar month."""

    REDEEMED = "redeemed"
    PARTIAL = "partial"
    AVAILABLE = "available"
    MISSED = "missed"


class PerkBucket(str, Enum):
    """Display bucket a perk falls into for one month."""

    MONTHLY = "monthly"
    DUE_THIS_MONTH = "due_this_month"
    EXPIRING_NEXT_MONTH = "expiring_next_month"
    BONUS_EARLY = "bonus_early"
    SUCCESSFULLY_REDEEMED = "successfully_redeemed"
    NOT_DUE = "not_due"  # open non-monthly perk with nothing due; never part of a built summary


class PerkDetail(BaseModel):
    """One perk's outcome in a monthly summary."""

    id: str
    name: str
    card_id: str | None = None
    value: float
    status: DetailStatus
    period: str  # monthly, quarterly, semi_annual, annual
    expires_this_month: bool = False
    expires_next_month: bool = False
    partial_value: float | None = None


class MonthlyRedemptionSummary(BaseModel):
    """Perk outcomes and totals for one calendar month."""

    month_year: str  # e.g. "March 2025"
    month_key: str  # e.g. "2025-03"
    total_redeemed_value: float = 0.0
    total_potential_value: float = 0.0
    perks_redeemed_count: int = 0
    perks_missed_count: int = 0
    card_fees_proportion: float = 0.0  # monthly share of the annual fees
    all_monthly_perks_redeemed: bool = False
    perk_details: list[PerkDetail] = Field(default_factory=list)


class RedemptionCalculations(BaseModel):
    """Value sums over a set of perk details."""

    redeemed_value: float = 0.0
    partial_value: float = 0.0
    total_redeemed_value: float = 0.0  # redeemed + partial
    available_value: float = 0.0
    missed_value: float = 0.0
    potential_value: float = 0.0


class ProgressBreakdown(BaseModel):
    """Percentages for the segmented progress bar of a month."""

    redeemed: float = 0.0
    partial: float = 0.0
    available: float = 0.0
    missed: float = 0.0


class CardROI(BaseModel):
    """Redeemed value of a card against its annual fee."""

    id: str
    name: str
    total_redeemed: float
    annual_fee: float
    roi_percentage: float


class YearSection(BaseModel):
    """Monthly summaries of one year, newest month first."""

    year: str
    data: list[MonthlyRedemptionSummary]


class FilterCard(BaseModel):
    """A card selectable in the insights filter."""

    id: str
    name: str
    activity_count: int = 0


class InsightsResponse(BaseModel):
    """Everything the insights view shows."""

    year_sections: list[YearSection]
    card_rois: list[CardROI]
    available_cards_for_filter: list[FilterCard]
    current_streak: int = 0
