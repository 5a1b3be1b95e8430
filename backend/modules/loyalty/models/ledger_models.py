# backend/modules/loyalty/models/ledger_models.py

from sqlalchemy import (Column, Integer, String, ForeignKey, DateTime, Time,
                        Numeric, Text, Boolean, JSON, Enum as SQLEnum, Index, CheckConstraint)
from sqlalchemy.orm import relationship
from core.database import Base
from core.mixins import TimestampMixin
from datetime import datetime
from enum import Enum


class TransactionType(str, Enum):
    """Kinds of ledger entries"""
    EARN = "earn"                # Points from a purchase
    BONUS = "bonus"              # Signup, birthday, anniversary, promotions
    REDEEM = "redeem"            # Points spent on a reward
    ADJUSTMENT = "adjustment"    # Manual correction, either direction
    REVERSAL = "reversal"        # Inverse of an earlier entry
    EXPIRATION = "expiration"    # Outstanding points of an expired lot


class TransactionDirection(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionStatus(str, Enum):
    ACTIVE = "active"
    REVERSED = "reversed"
    EXPIRED = "expired"


# Entry types that add spendable points and can expire
CREDIT_LOT_TYPES = (TransactionType.EARN, TransactionType.BONUS)

REVERSIBLE_TYPES = (
    TransactionType.EARN,
    TransactionType.BONUS,
    TransactionType.REDEEM,
    TransactionType.ADJUSTMENT,
)

# Debits behind a redemption record are only undone by cancelling the redemption
REDEMPTION_REFERENCE = "redemption"


class PointsTransaction(Base, TimestampMixin):
    """Append-only ledger entry. Only ``status`` (and reversal stamps) ever change."""
    __tablename__ = "points_transactions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("loyalty_accounts.id"), nullable=False, index=True)

    transaction_type = Column(SQLEnum(TransactionType), nullable=False, index=True)
    direction = Column(SQLEnum(TransactionDirection), nullable=False)
    amount = Column(Integer, nullable=False)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)

    # Loose back-reference to the originating sale, redemption, etc.
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(String(100), nullable=True)
    related_transaction_id = Column(Integer, ForeignKey("points_transactions.id"), nullable=True, index=True)

    description = Column(String(255), nullable=True)
    expiration_date = Column(DateTime, nullable=True)

    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.ACTIVE)
    reversed_at = Column(DateTime, nullable=True)
    reversal_reason = Column(String(255), nullable=True)

    transaction_data = Column(JSON, nullable=True)
    created_by = Column(Integer, nullable=True)

    account = relationship("LoyaltyAccount", back_populates="transactions")
    related_transaction = relationship("PointsTransaction", remote_side=[id])

    __table_args__ = (
        CheckConstraint('amount > 0', name='amount_positive'),
        CheckConstraint('balance_before >= 0', name='balance_before_non_negative'),
        CheckConstraint('balance_after >= 0', name='balance_after_non_negative'),
        Index('ix_points_transactions_account_type', 'account_id', 'transaction_type'),
        Index('ix_points_transactions_reference', 'reference_type', 'reference_id'),
        Index('ix_points_transactions_expiry', 'expiration_date', 'status'),
    )

    @property
    def signed_amount(self) -> int:
        return self.amount if self.direction == TransactionDirection.CREDIT else -self.amount

    def __repr__(self):
        return (
            f"<PointsTransaction(id={self.id}, account_id={self.account_id}, "
            f"type='{self.transaction_type}', points={self.signed_amount})>"
        )


class EarningRule(Base, TimestampMixin):
    """Configurable rule deciding how many points a purchase earns"""
    __tablename__ = "earning_rules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    rule_type = Column(String(50), nullable=False, default="purchase")  # purchase, category, product, promotion

    points_multiplier = Column(Numeric(10, 4), nullable=False, default=0)
    fixed_points = Column(Integer, nullable=False, default=0)
    minimum_purchase = Column(Numeric(12, 2), nullable=False, default=0)
    maximum_points_per_transaction = Column(Integer, nullable=True)

    applicable_categories = Column(JSON, nullable=True)
    applicable_products = Column(JSON, nullable=True)
    excluded_products = Column(JSON, nullable=True)
    applicable_tiers = Column(JSON, nullable=True)

    valid_days = Column(JSON, nullable=True)  # weekday ints, 0 = Monday
    valid_period_start = Column(DateTime, nullable=True)
    valid_period_end = Column(DateTime, nullable=True)
    valid_time_start = Column(Time, nullable=True)
    valid_time_end = Column(Time, nullable=True)

    priority = Column(Integer, nullable=False, default=0)  # Lower runs first
    is_exclusive = Column(Boolean, nullable=False, default=False)
    require_coupon_code = Column(String(50), nullable=True)
    max_uses_per_customer = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    __table_args__ = (
        CheckConstraint('points_multiplier >= 0', name='points_multiplier_non_negative'),
        CheckConstraint('fixed_points >= 0', name='fixed_points_non_negative'),
        Index('ix_earning_rules_active_priority', 'is_active', 'priority'),
    )

    def __repr__(self):
        return f"<EarningRule(id={self.id}, name='{self.name}', priority={self.priority})>"
