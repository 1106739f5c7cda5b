"""Card catalog cache and owned-benefit lookup."""
import logging
import threading
import time
from collections.abc import Callable
from datetime import date, datetime

from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from app.database import SessionLocal, get_db_context
from app.models.card import UserCard
from app.schemas.card import CardConfigResponse
from app.schemas.perk import OwnedBenefit, OwnedCard
from app.services.card_config_loader import get_card_configs

logger = logging.getLogger(__name__)

CatalogLoader = Callable[[], dict[str, CardConfigResponse]]


class CatalogUnavailableError(Exception):
    """Card definitions or a user's cards could not be loaded."""


class CatalogCache:
    """Card definitions cached in memory with explicit invalidation.

    One instance is shared by every tracker in the process; tests build
    their own with a fake loader.
    """

    def __init__(
        self,
        loader: CatalogLoader,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._cards: dict[str, CardConfigResponse] | None = None
        self._loaded_at: float | None = None
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._cards is not None

    def get(self) -> dict[str, CardConfigResponse]:
        """Card configs keyed by id, reloaded once the TTL has passed."""
        with self._lock:
            if self._cards is not None and not self._is_stale():
                return self._cards
            try:
                cards = self._loader()
            except Exception as exc:
                if self._cards is not None:
                    logger.warning(f"Catalog reload failed, serving cached copy: {exc}")
                    return self._cards
                raise CatalogUnavailableError("Card catalog could not be loaded") from exc
            self._cards = cards
            self._loaded_at = self._clock()
            logger.debug(f"Catalog loaded: {len(cards)} cards")
            return cards

    def invalidate(self) -> None:
        """Drop the cached catalog; the next get() reloads it."""
        with self._lock:
            self._cards = None
            self._loaded_at = None

    def refresh(self) -> dict[str, CardConfigResponse]:
        self.invalidate()
        return self.get()

    def _is_stale(self) -> bool:
        return self._loaded_at is None or self._clock() - self._loaded_at >= self._ttl_seconds


def load_catalog_from_db(session_factory: sessionmaker = SessionLocal) -> dict[str, CardConfigResponse]:
    with get_db_context(session_factory) as db:
        return {config.id: CardConfigResponse.model_validate(config) for config in get_card_configs(db)}


def parse_anniversary(anniversary_str: str | None) -> date | None:
    """Convert an MM-DD or YYYY-MM-DD anniversary string to a date.

    MM-DD values land in leap year 2000 so 02-29 survives; only month and
    day are used downstream.
    """
    if not anniversary_str:
        return None
    try:
        if len(anniversary_str) == 10:  # YYYY-MM-DD
            return datetime.strptime(anniversary_str, "%Y-%m-%d").date()
        if len(anniversary_str) == 5:  # MM-DD
            return datetime.strptime(f"2000-{anniversary_str}", "%Y-%m-%d").date()
    except ValueError:
        pass
    logger.warning(f"Ignoring malformed card anniversary: {anniversary_str!r}")
    return None


def list_owned_benefits(db: Session, user_id: str, catalog: CatalogCache) -> list[OwnedCard]:
    """The user's active cards joined with their catalog benefits."""
    user_cards = db.query(UserCard).filter(
        UserCard.user_id == user_id,
        UserCard.active == 1,
    ).order_by(UserCard.added_at).all()

    cards_by_id = catalog.get()
    owned = []
    for user_card in user_cards:
        config = cards_by_id.get(user_card.card_config_id)
        if config is None:
            logger.warning(f"User card {user_card.id} points at unknown card config {user_card.card_config_id}")
            continue
        owned.append(OwnedCard(
            card_id=user_card.id,
            card_slug=config.slug,
            name=user_card.nickname or config.name,
            annual_fee=config.annual_fee,
            card_anniversary=parse_anniversary(user_card.card_anniversary),
            added_on=datetime.fromisoformat(user_card.added_at).date() if user_card.added_at else None,
            benefits=[
                OwnedBenefit(
                    card_id=user_card.id,
                    benefit_id=benefit.id,
                    name=benefit.name,
                    value=benefit.value,
                    period_months=benefit.period_months,
                    reset_type=benefit.reset_type,
                    categories=benefit.categories,
                )
                for benefit in config.benefits
            ],
        ))
    return owned


class OwnedBenefitsReader:
    """Async catalog read for the tracker, one session per call."""

    def __init__(self, catalog: CatalogCache, session_factory: sessionmaker = SessionLocal):
        self._catalog = catalog
        self._session_factory = session_factory

    async def __call__(self, user_id: str) -> list[OwnedCard]:
        try:
            return await run_in_threadpool(self._read, user_id)
        except CatalogUnavailableError:
            raise
        except Exception as exc:
            logger.error(f"Failed to load cards for user {user_id}: {exc}")
            raise CatalogUnavailableError(f"Could not load cards for user {user_id}") from exc

    def _read(self, user_id: str) -> list[OwnedCard]:
        with get_db_context(self._session_factory) as db:
            return list_owned_benefits(db, user_id, self._catalog)
