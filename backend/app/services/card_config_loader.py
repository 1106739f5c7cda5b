"""Service to load card configs from YAML files into database."""
import json
import logging
from pathlib import Path

import yaml
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.card import CardConfig
from app.schemas.card import BenefitConfig
from app.services.benefit_periods import CALENDAR_PERIODS, ROLLING_PERIOD_MONTHS

logger = logging.getLogger(__name__)
settings = get_settings()


def load_card_configs(db: Session, configs_dir: Path | None = None) -> list[CardConfig]:
    """Load all card configs from YAML files and upsert to database.

    Returns list of loaded/updated CardConfig objects.
    """
    configs_dir = configs_dir or settings.configs_dir
    if not configs_dir.exists():
        logger.warning(f"Card configs directory not found: {configs_dir}")
        return []

    loaded_configs = []
    seen_benefit_ids: dict[str, str] = {}

    for yaml_file in sorted(configs_dir.glob("*.yaml")):
        try:
            config = _load_single_config(db, yaml_file, seen_benefit_ids)
            if config:
                loaded_configs.append(config)
        except (OSError, yaml.YAMLError, ValidationError) as e:
            logger.error(f"Failed to load card config from {yaml_file}: {e}")

    db.commit()
    logger.info(f"Loaded {len(loaded_configs)} card configs")
    return loaded_configs


def _load_single_config(db: Session, yaml_path: Path, seen_benefit_ids: dict[str, str]) -> CardConfig | None:
    """Load a single card config from YAML file."""
    with open(yaml_path, "r") as f:
        data = yaml.safe_load(f)

    slug = data.get("slug")
    if not slug:
        logger.warning(f"Card config missing slug: {yaml_path}")
        return None

    benefits = [BenefitConfig.model_validate(b) for b in data.get("benefits", [])]
    for benefit in benefits:
        _check_benefit(slug, benefit, seen_benefit_ids)
    benefits_json = json.dumps([b.model_dump() for b in benefits])

    # Check if config already exists
    existing = db.query(CardConfig).filter(CardConfig.slug == slug).first()

    if existing:
        existing.name = data.get("name", existing.name)
        existing.issuer = data.get("issuer", existing.issuer)
        existing.annual_fee = data.get("annual_fee", existing.annual_fee)
        existing.benefits_url = data.get("benefits_url")
        existing.benefits = benefits_json
        logger.debug(f"Updated card config: {slug}")
        return existing

    config = CardConfig(
        slug=slug,
        name=data.get("name", slug),
        issuer=data.get("issuer", "Unknown"),
        annual_fee=data.get("annual_fee", 0),
        benefits_url=data.get("benefits_url"),
        benefits=benefits_json,
    )
    db.add(config)
    logger.debug(f"Created card config: {slug}")
    return config


def _check_benefit(card_slug: str, benefit: BenefitConfig, seen_benefit_ids: dict[str, str]) -> None:
    """Log catalog entries the redemption tracker will not be able to handle."""
    owner = seen_benefit_ids.setdefault(benefit.id, card_slug)
    if owner != card_slug:
        logger.warning(f"Benefit id {benefit.id} on {card_slug} is already used by {owner}")
    if benefit.period_months is None:
        logger.warning(f"Benefit {benefit.id} on {card_slug} has no period_months")
    elif benefit.period_months not in CALENDAR_PERIODS + (ROLLING_PERIOD_MONTHS,):
        logger.error(f"Benefit {benefit.id} on {card_slug} has unsupported period_months={benefit.period_months}")


def get_card_configs(db: Session) -> list[CardConfig]:
    """Get all card configs from database."""
    return db.query(CardConfig).all()


def get_card_config_by_slug(db: Session, slug: str) -> CardConfig | None:
    """Get a card config by its slug."""
    return db.query(CardConfig).filter(CardConfig.slug == slug).first()
