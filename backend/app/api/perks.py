"""Perk status API endpoints."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_auto_redemptions, get_current_user, get_ledger, get_tracker
from app.config import get_settings
from app.models.user import User
from app.schemas.perk import (
    AutoRedemptionRequest,
    AutoRedemptionSetting,
    ExpiringPerk,
    MarkAvailableRequest,
    MarkRedeemedRequest,
    PerkStatusSnapshot,
)
from app.services.auto_redemption import SqlAutoRedemptionStore, set_perk_auto_redemption
from app.services.benefit_periods import utcnow
from app.services.catalog import CatalogUnavailableError
from app.services.notifications import get_expiring_perks
from app.services.perk_ledger import LedgerFetchError, LedgerWriteError, SqlRedemptionLedger
from app.services.perk_redemption import mark_available, mark_redeemed
from app.services.perk_status import DataQualityError, PerkStatusTracker, UnknownBenefitError

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/perks", tags=["perks"])

REFRESH_FAILED = "Could not refresh savings"


async def _ensure_current(tracker: PerkStatusTracker) -> None:
    """Load the tracker on first use and after a month change.

    A failed reload keeps serving the previous numbers when there are any.
    """
    try:
        await tracker.ensure_loaded()
    except (LedgerFetchError, CatalogUnavailableError) as e:
        if not tracker.is_loaded:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=REFRESH_FAILED,
            ) from e
        logger.warning(f"Serving previous savings for user {tracker.user_id}: {e}")


def _raise_for_mutation_error(e: Exception) -> None:
    if isinstance(e, UnknownBenefitError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    if isinstance(e, DataQualityError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
    if isinstance(e, LedgerWriteError):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    if isinstance(e, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    raise e


@router.get("/status", response_model=PerkStatusSnapshot)
async def get_perk_status(tracker: PerkStatusTracker = Depends(get_tracker)):
    """Current cycle status of every perk, with period and per-card totals."""
    await _ensure_current(tracker)
    return tracker.snapshot()


@router.post("/refresh", response_model=PerkStatusSnapshot)
async def refresh_perk_status(tracker: PerkStatusTracker = Depends(get_tracker)):
    """Recalculate from the ledger, dropping any optimistic drift."""
    try:
        return await tracker.refresh()
    except (LedgerFetchError, CatalogUnavailableError) as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=REFRESH_FAILED,
        ) from e


@router.post("/mark-redeemed", response_model=PerkStatusSnapshot)
async def mark_perk_redeemed(
    request: MarkRedeemedRequest,
    tracker: PerkStatusTracker = Depends(get_tracker),
    ledger: SqlRedemptionLedger = Depends(get_ledger),
):
    """Redeem a perk in full, or part of it when an amount is given."""
    await _ensure_current(tracker)
    try:
        return await mark_redeemed(
            tracker,
            ledger,
            request.user_card_id,
            request.benefit_id,
            amount=request.amount,
        )
    except (UnknownBenefitError, ValueError, LedgerWriteError) as e:
        _raise_for_mutation_error(e)


@router.post("/mark-available", response_model=PerkStatusSnapshot)
async def mark_perk_available(
    request: MarkAvailableRequest,
    tracker: PerkStatusTracker = Depends(get_tracker),
    ledger: SqlRedemptionLedger = Depends(get_ledger),
):
    """Undo this cycle's redemption of a perk."""
    await _ensure_current(tracker)
    try:
        return await mark_available(tracker, ledger, request.user_card_id, request.benefit_id)
    except (UnknownBenefitError, ValueError, LedgerWriteError) as e:
        _raise_for_mutation_error(e)


@router.get("/expiring", response_model=list[ExpiringPerk])
async def get_expiring(
    days: int = Query(settings.expiring_soon_days, ge=0, le=366),
    tracker: PerkStatusTracker = Depends(get_tracker),
):
    """Perks with value left whose cycle ends within `days` days."""
    await _ensure_current(tracker)
    return get_expiring_perks(tracker.snapshot(), utcnow().date(), days_threshold=days)


@router.get("/auto-redemptions", response_model=list[AutoRedemptionSetting])
async def list_auto_redemptions(
    current_user: User = Depends(get_current_user),
    store: SqlAutoRedemptionStore = Depends(get_auto_redemptions),
):
    """Monthly perks currently set to auto-redeem."""
    try:
        return await store.list_enabled(current_user.id)
    except LedgerFetchError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not load auto-redemptions",
        ) from e


@router.put("/auto-redemption", response_model=PerkStatusSnapshot)
async def update_auto_redemption(
    request: AutoRedemptionRequest,
    tracker: PerkStatusTracker = Depends(get_tracker),
    ledger: SqlRedemptionLedger = Depends(get_ledger),
    store: SqlAutoRedemptionStore = Depends(get_auto_redemptions),
):
    """Turn monthly auto-redemption on (redeeming this month) or off (undoing it)."""
    await _ensure_current(tracker)
    try:
        return await set_perk_auto_redemption(
            tracker,
            ledger,
            store,
            request.user_card_id,
            request.benefit_id,
            request.enabled,
        )
    except (UnknownBenefitError, ValueError, LedgerWriteError) as e:
        _raise_for_mutation_error(e)
