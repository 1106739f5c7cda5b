"""Credify - Credit Card Perk Tracker API."""
import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import sessionmaker

from app.config import get_settings
from app.database import SessionLocal
from app.services.auto_redemption import SqlAutoRedemptionStore, make_auto_redemption_hook
from app.services.benefit_periods import utcnow
from app.services.catalog import CatalogCache, OwnedBenefitsReader, load_catalog_from_db
from app.services.notifications import make_first_redemption_hook
from app.services.perk_ledger import SqlRedemptionLedger
from app.services.perk_status import PerkStatusTracker, TrackerRegistry

settings = get_settings()
logger = logging.getLogger(__name__)


def setup_services(
    app: FastAPI,
    session_factory: sessionmaker = SessionLocal,
    clock: Callable[[], datetime] = utcnow,
) -> None:
    """Attach the catalog cache, ledger, auto-redemption store and tracker registry to the app."""
    catalog = CatalogCache(
        lambda: load_catalog_from_db(session_factory),
        ttl_seconds=settings.catalog_cache_ttl_seconds,
    )
    ledger = SqlRedemptionLedger(session_factory)
    auto_redemptions = SqlAutoRedemptionStore(session_factory)
    owned_benefits = OwnedBenefitsReader(catalog, session_factory)

    def build_tracker(user_id: str, has_redeemed_before: bool) -> PerkStatusTracker:
        return PerkStatusTracker(
            user_id,
            owned_benefits,
            ledger,
            on_first_redemption=make_first_redemption_hook(user_id, session_factory),
            has_redeemed_before=has_redeemed_before,
            clock=clock,
            horizon_days=settings.reset_date_horizon_days,
            on_new_cycle=make_auto_redemption_hook(ledger, auto_redemptions),
        )

    app.state.catalog = catalog
    app.state.ledger = ledger
    app.state.owned_benefits = owned_benefits
    app.state.auto_redemptions = auto_redemptions
    app.state.trackers = TrackerRegistry(build_tracker, max_trackers=settings.max_cached_trackers)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Startup: Create tables and load card configs
    from app.database import Base, engine, get_db_context
    from app.services.card_config_loader import load_card_configs

    # Import all models so they're registered with Base
    from app import models  # noqa: F401

    if settings.database_url.startswith("sqlite:///"):
        db_path = settings.database_url.removeprefix("sqlite:///")
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    Base.metadata.create_all(bind=engine)

    with get_db_context() as db:
        load_card_configs(db)

    if not hasattr(app.state, "trackers"):
        setup_services(app)
    logger.info(f"{settings.app_name} started")

    yield
    # Shutdown: cleanup if needed


app = FastAPI(
    title=settings.app_name,
    description="Track your credit card perks and see what your annual fees bought you",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "http://localhost:8081"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "app": settings.app_name}


# Import and include routers
from app.api import cards, insights, notifications, perks  # noqa: E402

app.include_router(cards.router, prefix="/api")
app.include_router(perks.router, prefix="/api")
app.include_router(insights.router, prefix="/api")
app.include_router(notifications.router, prefix="/api")
