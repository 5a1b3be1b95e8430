# backend/modules/loyalty/models/rewards_models.py

from sqlalchemy import (Column, Integer, String, ForeignKey, DateTime,
                        Text, Boolean, JSON, Enum as SQLEnum, Index, CheckConstraint)
from sqlalchemy.orm import relationship
from core.database import Base
from core.mixins import TimestampMixin
from enum import Enum

UNLIMITED_STOCK = -1


class RedemptionStatus(str, Enum):
    """Lifecycle of a redemption"""
    PENDING = "pending"          # Points debited, waiting for approval
    APPROVED = "approved"        # Approved, waiting for fulfillment
    COMPLETED = "completed"      # Handed over to the customer
    CANCELLED = "cancelled"      # Points refunded, stock restored


class FulfillmentMethod(str, Enum):
    IN_STORE = "in_store"
    SHIP = "ship"
    DIGITAL = "digital"
    EMAIL = "email"
    SMS = "sms"


class RewardItem(Base, TimestampMixin):
    """Catalog item that can be bought with points"""
    __tablename__ = "reward_items"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=True)

    points_cost = Column(Integer, nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=UNLIMITED_STOCK)  # -1 = unlimited
    eligible_tiers = Column(JSON, nullable=False)
    min_points_balance = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    total_redemptions = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint('points_cost > 0', name='points_cost_positive'),
        CheckConstraint('stock_quantity >= -1', name='stock_quantity_valid'),
        CheckConstraint('min_points_balance >= 0', name='min_points_balance_non_negative'),
    )

    @property
    def has_unlimited_stock(self) -> bool:
        return self.stock_quantity == UNLIMITED_STOCK

    def __repr__(self):
        return f"<RewardItem(id={self.id}, name='{self.name}', cost={self.points_cost})>"


class RedemptionRecord(Base, TimestampMixin):
    """A customer's redemption of a reward item"""
    __tablename__ = "redemption_records"

    id = Column(Integer, primary_key=True, index=True)
    redemption_code = Column(String(20), unique=True, nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("loyalty_accounts.id"), nullable=False, index=True)
    reward_id = Column(Integer, ForeignKey("reward_items.id"), nullable=False, index=True)

    # Snapshots taken at redemption time
    reward_name = Column(String(100), nullable=False)
    points_cost = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    status = Column(SQLEnum(RedemptionStatus), nullable=False, default=RedemptionStatus.PENDING, index=True)
    fulfillment_method = Column(SQLEnum(FulfillmentMethod), nullable=False, default=FulfillmentMethod.IN_STORE)
    points_transaction_id = Column(Integer, ForeignKey("points_transactions.id"), nullable=False)

    approval_date = Column(DateTime, nullable=True)
    approved_by = Column(Integer, nullable=True)
    fulfillment_date = Column(DateTime, nullable=True)
    fulfilled_by = Column(Integer, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(Integer, nullable=True)

    notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)

    account = relationship("LoyaltyAccount")
    reward = relationship("RewardItem")
    points_transaction = relationship("PointsTransaction")

    __table_args__ = (
        CheckConstraint('quantity >= 1', name='quantity_positive'),
        CheckConstraint('points_cost > 0', name='redemption_points_cost_positive'),
        Index('ix_redemption_records_account_status', 'account_id', 'status'),
    )

    def __repr__(self):
        return f"<RedemptionRecord(id={self.id}, code='{self.redemption_code}', status='{self.status}')>"
