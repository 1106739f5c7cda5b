"""Insights API endpoints."""
import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_current_user, get_ledger, get_owned_benefits
from app.config import get_settings
from app.models.user import User
from app.schemas.insights import InsightsResponse
from app.services.benefit_periods import utcnow
from app.services.catalog import CatalogUnavailableError, OwnedBenefitsReader
from app.services.insights import build_insights
from app.services.perk_ledger import LedgerFetchError, SqlRedemptionLedger

settings = get_settings()

router = APIRouter(prefix="/insights", tags=["insights"])


@router.get("", response_model=InsightsResponse)
async def get_insights(
    months: int = Query(settings.insights_months, ge=1, le=24),
    card_ids: list[str] | None = Query(None),
    current_user: User = Depends(get_current_user),
    owned_benefits: OwnedBenefitsReader = Depends(get_owned_benefits),
    ledger: SqlRedemptionLedger = Depends(get_ledger),
):
    """Monthly redemption history, card ROI and redemption streak."""
    try:
        cards, events = await asyncio.gather(
            owned_benefits(current_user.id),
            ledger.list_redemptions(current_user.id),
        )
    except (LedgerFetchError, CatalogUnavailableError) as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not load insights",
        ) from e

    return build_insights(cards, events, utcnow().date(), months=months, card_ids=card_ids)
