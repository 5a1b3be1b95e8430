# backend/modules/loyalty/models/loyalty_models.py

"""
Loyalty program, tier configuration and customer account models
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Numeric,
    JSON,
    Text,
    CheckConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from core.database import Base
from core.mixins import TimestampMixin
from datetime import datetime


class LoyaltyProgram(Base, TimestampMixin):
    """Loyalty program configuration. One active row drives the program."""
    __tablename__ = "loyalty_programs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    points_per_currency_unit = Column(Numeric(10, 4), nullable=False, default=1.0)
    expiration_months = Column(Integer, nullable=False, default=12)  # 0 = never
    signup_bonus_points = Column(Integer, nullable=False, default=0)
    birthday_bonus_points = Column(Integer, nullable=False, default=0)
    anniversary_bonus_points = Column(Integer, nullable=False, default=0)
    minimum_redemption_points = Column(Integer, nullable=False, default=0)
    max_points_per_transaction = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, index=True)

    __table_args__ = (
        CheckConstraint('expiration_months >= 0', name='expiration_months_non_negative'),
        CheckConstraint('signup_bonus_points >= 0', name='signup_bonus_non_negative'),
        CheckConstraint('minimum_redemption_points >= 0', name='minimum_redemption_non_negative'),
    )

    def __repr__(self):
        return f"<LoyaltyProgram(id={self.id}, name='{self.name}')>"


class LoyaltyTierConfig(Base, TimestampMixin):
    """Configurable loyalty tier thresholds and benefits"""
    __tablename__ = "loyalty_tier_configs"

    id = Column(Integer, primary_key=True, index=True)
    tier_name = Column(String(50), nullable=False, unique=True, index=True)
    tier_order = Column(Integer, nullable=False, index=True)  # 1=Bronze, 2=Silver, etc.
    min_lifetime_points = Column(Integer, nullable=False, default=0)

    # e.g., {"point_multiplier": 1.5, "free_delivery": true}
    benefits = Column(JSON, nullable=True)

    is_active = Column(Boolean, default=True)
    display_name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)

    def __repr__(self):
        return f"<LoyaltyTierConfig(tier='{self.tier_name}', min_points={self.min_lifetime_points})>"


class LoyaltyAccount(Base, TimestampMixin):
    """A customer's points account. Balances change only through the ledger."""
    __tablename__ = "loyalty_accounts"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, nullable=False, unique=True, index=True)

    tier = Column(String(50), nullable=False, default="bronze")
    available_points = Column(Integer, nullable=False, default=0)
    pending_points = Column(Integer, nullable=False, default=0)
    lifetime_earned = Column(Integer, nullable=False, default=0)
    lifetime_redeemed = Column(Integer, nullable=False, default=0)

    enrollment_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_activity_at = Column(DateTime, nullable=True)
    last_tier_change_at = Column(DateTime, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    deactivated_at = Column(DateTime, nullable=True)

    transactions = relationship(
        "PointsTransaction", back_populates="account", order_by="PointsTransaction.id"
    )

    __table_args__ = (
        CheckConstraint('available_points >= 0', name='available_points_non_negative'),
        CheckConstraint('pending_points >= 0', name='pending_points_non_negative'),
        CheckConstraint('lifetime_earned >= 0', name='lifetime_earned_non_negative'),
        CheckConstraint('lifetime_redeemed >= 0', name='lifetime_redeemed_non_negative'),
        Index('ix_loyalty_accounts_tier_active', 'tier', 'is_active'),
    )

    def __repr__(self):
        return (
            f"<LoyaltyAccount(id={self.id}, customer_id={self.customer_id}, "
            f"points={self.available_points}, tier='{self.tier}')>"
        )


# Default tier configurations
DEFAULT_TIER_CONFIGS = [
    {
        "tier_name": "bronze",
        "tier_order": 1,
        "min_lifetime_points": 0,
        "display_name": "Bronze Member",
        "description": "Welcome to our loyalty program!",
        "benefits": {
            "point_multiplier": 1.0,
            "birthday_bonus": 100,
        },
    },
    {
        "tier_name": "silver",
        "tier_order": 2,
        "min_lifetime_points": 2000,
        "display_name": "Silver Member",
        "description": "Enjoy enhanced benefits as a Silver member",
        "benefits": {
            "point_multiplier": 1.25,
            "birthday_bonus": 250,
            "free_delivery_threshold": 25.0,
        },
    },
    {
        "tier_name": "gold",
        "tier_order": 3,
        "min_lifetime_points": 5000,
        "display_name": "Gold Member",
        "description": "Premium benefits for our valued Gold members",
        "benefits": {
            "point_multiplier": 1.5,
            "birthday_bonus": 500,
            "free_delivery": True,
            "priority_support": True,
        },
    },
    {
        "tier_name": "platinum",
        "tier_order": 4,
        "min_lifetime_points": 10000,
        "display_name": "Platinum Member",
        "description": "Exclusive VIP treatment for our Platinum members",
        "benefits": {
            "point_multiplier": 2.0,
            "birthday_bonus": 1000,
            "free_delivery": True,
            "priority_support": True,
            "exclusive_events": True,
        },
    },
]
