# backend/modules/loyalty/services/program_config.py

"""
Program configuration source.

Reads the active ``LoyaltyProgram`` and ``LoyaltyTierConfig`` rows on every
``load()`` so configuration changes take effect on the next operation,
without a restart. Without a program row the defaults from
``core.config.settings`` apply.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
import logging

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from core.config import settings
from ..models.loyalty_models import LoyaltyProgram, LoyaltyTierConfig, DEFAULT_TIER_CONFIGS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierThreshold:
    name: str
    min_lifetime_points: int
    display_name: str = ""
    benefits: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


DEFAULT_TIERS: Tuple[TierThreshold, ...] = tuple(
    TierThreshold(
        name=config["tier_name"],
        min_lifetime_points=config["min_lifetime_points"],
        display_name=config["display_name"],
        benefits=dict(config["benefits"]),
    )
    for config in sorted(DEFAULT_TIER_CONFIGS, key=lambda c: c["tier_order"])
)


@dataclass(frozen=True)
class ProgramSettings:
    points_per_currency_unit: Decimal = Decimal("1")
    expiration_months: int = 12
    signup_bonus_points: int = 0
    birthday_bonus_points: int = 0
    anniversary_bonus_points: int = 0
    minimum_redemption_points: int = 0
    max_points_per_transaction: Optional[int] = None
    tiers: Tuple[TierThreshold, ...] = DEFAULT_TIERS
    program_id: Optional[int] = None

    @property
    def base_tier(self) -> str:
        return self.tiers[0].name

    def expiration_for(self, earned_at: datetime) -> Optional[datetime]:
        """Expiry of points earned at ``earned_at``; ``None`` if points never expire."""
        if self.expiration_months <= 0:
            return None
        return earned_at + relativedelta(months=self.expiration_months)

    def occasion_bonus(self, occasion: str) -> int:
        if occasion == "birthday":
            return self.birthday_bonus_points
        if occasion == "anniversary":
            return self.anniversary_bonus_points
        raise ValueError(f"Unknown bonus occasion: {occasion}")


class ProgramConfigSource:
    """Loads the current program settings from the database."""

    def __init__(self, db: Session):
        self.db = db

    def load(self) -> ProgramSettings:
        program = (
            self.db.query(LoyaltyProgram)
            .filter(LoyaltyProgram.is_active.is_(True))
            .order_by(LoyaltyProgram.id.desc())
            .first()
        )
        tiers = self._load_tiers()

        if program is None:
            return ProgramSettings(
                points_per_currency_unit=Decimal(str(settings.default_points_per_currency_unit)),
                expiration_months=settings.default_expiration_months,
                signup_bonus_points=settings.default_signup_bonus_points,
                birthday_bonus_points=settings.default_birthday_bonus_points,
                anniversary_bonus_points=settings.default_anniversary_bonus_points,
                minimum_redemption_points=settings.default_minimum_redemption_points,
                max_points_per_transaction=settings.default_max_points_per_transaction,
                tiers=tiers,
            )

        return ProgramSettings(
            points_per_currency_unit=Decimal(str(program.points_per_currency_unit)),
            expiration_months=program.expiration_months or 0,
            signup_bonus_points=program.signup_bonus_points or 0,
            birthday_bonus_points=program.birthday_bonus_points or 0,
            anniversary_bonus_points=program.anniversary_bonus_points or 0,
            minimum_redemption_points=program.minimum_redemption_points or 0,
            max_points_per_transaction=program.max_points_per_transaction,
            tiers=tiers,
            program_id=program.id,
        )

    def _load_tiers(self) -> Tuple[TierThreshold, ...]:
        rows = (
            self.db.query(LoyaltyTierConfig)
            .filter(LoyaltyTierConfig.is_active.is_(True))
            .order_by(LoyaltyTierConfig.tier_order)
            .all()
        )
        if not rows:
            return DEFAULT_TIERS

        return tuple(
            TierThreshold(
                name=row.tier_name,
                min_lifetime_points=row.min_lifetime_points,
                display_name=row.display_name,
                benefits=dict(row.benefits or {}),
            )
            for row in rows
        )
