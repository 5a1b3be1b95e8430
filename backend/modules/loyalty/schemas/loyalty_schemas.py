# backend/modules/loyalty/schemas/loyalty_schemas.py

"""
Schemas for loyalty accounts, the points ledger and earning.
"""

from typing import List, Dict, Any, Optional
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.database_utils import to_naive_utc

from ..models.ledger_models import (
    TransactionType, TransactionDirection, TransactionStatus
)


# ========== Account Schemas ==========

class EnrollmentRequest(BaseModel):
    """Enroll a customer"""
    customer_id: int = Field(..., gt=0)
    signup_bonus: Optional[int] = Field(None, ge=0)


class LoyaltyAccountResponse(BaseModel):
    """Loyalty account response"""
    id: int
    customer_id: int
    tier: str
    available_points: int
    pending_points: int
    lifetime_earned: int
    lifetime_redeemed: int
    enrollment_date: datetime
    last_activity_at: Optional[datetime] = None
    last_tier_change_at: Optional[datetime] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class LoyaltyAccountSummary(BaseModel):
    """Balances plus tier progress for one customer"""
    account_id: int
    customer_id: int
    tier: str
    tier_benefits: Dict[str, Any]
    available_points: int
    pending_points: int
    lifetime_earned: int
    lifetime_redeemed: int
    next_tier: Optional[str] = None
    points_to_next_tier: Optional[int] = None
    points_expiring_soon: int = 0
    is_active: bool


class OccasionBonusRequest(BaseModel):
    occasion: str = Field(..., pattern="^(birthday|anniversary)$")
    reference_id: str = Field(..., min_length=1, max_length=100)


class TierDistribution(BaseModel):
    tier: str
    count: int
    total_points: int


class LoyaltyAccountList(BaseModel):
    """Page of accounts plus how members spread across tiers"""
    items: List[LoyaltyAccountResponse]
    total: int
    page: int
    limit: int
    tier_distribution: List[TierDistribution] = []


# ========== Ledger Schemas ==========

class PointsTransactionResponse(BaseModel):
    """Ledger entry response"""
    id: int
    account_id: int
    transaction_type: TransactionType
    direction: TransactionDirection
    amount: int
    balance_before: int
    balance_after: int
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    related_transaction_id: Optional[int] = None
    description: Optional[str] = None
    expiration_date: Optional[datetime] = None
    status: TransactionStatus
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None
    transaction_data: Optional[Dict[str, Any]] = None
    created_at: datetime
    created_by: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class PointsTransactionList(BaseModel):
    items: List[PointsTransactionResponse]
    total: int
    page: int
    limit: int


class PointsAdjustmentRequest(BaseModel):
    """Manual points correction"""
    amount: int = Field(..., gt=0)
    direction: TransactionDirection
    reason: str = Field(..., min_length=1, max_length=255)


class ReversalRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255)


class BulkAdjustmentItem(PointsAdjustmentRequest):
    account_id: int = Field(..., gt=0)


class BulkAdjustmentRequest(BaseModel):
    """Several manual corrections; each one succeeds or fails on its own"""
    adjustments: List[BulkAdjustmentItem] = Field(..., min_length=1, max_length=500)


class BulkAdjustmentError(BaseModel):
    index: int
    account_id: int
    error_code: str
    message: str


class BulkAdjustmentResponse(BaseModel):
    succeeded: List[PointsTransactionResponse]
    errors: List[BulkAdjustmentError] = []


class ExpirationSweepResponse(BaseModel):
    skipped: bool
    accounts_processed: int
    lots_expired: int
    points_expired: int
    failed_accounts: List[int] = []


class ExpirationReminderResponse(BaseModel):
    """Points a customer is about to lose, and whether they were told"""
    customer_id: int
    account_id: int
    points_expiring: int
    earliest_expiration: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    current_balance: int
    sent: bool


class ExpirationReminderBatchResponse(BaseModel):
    reminders_sent: int
    points_expiring: int
    results: List[ExpirationReminderResponse] = []
    failed_accounts: List[int] = []


# ========== Earning Schemas ==========

class PurchaseItem(BaseModel):
    """One line of a completed sale"""
    product_id: int
    category_id: Optional[int] = None
    quantity: int = Field(1, ge=1)
    unit_price: Decimal = Field(Decimal("0"), ge=0)


class PurchaseContext(BaseModel):
    """Everything the earning rules look at for one sale"""
    amount: Decimal = Field(..., ge=0)
    items: List[PurchaseItem] = []
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    coupon_code: Optional[str] = None
    sale_id: Optional[str] = None
    # rule id -> times this customer already earned through the rule
    rule_usage: Dict[int, int] = {}

    model_config = ConfigDict(frozen=True)

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon(cls, v):
        return v.strip().upper() if v else v

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v):
        return to_naive_utc(v)

    @property
    def product_ids(self) -> set:
        return {item.product_id for item in self.items}

    @property
    def category_ids(self) -> set:
        return {item.category_id for item in self.items if item.category_id is not None}


class RuleContribution(BaseModel):
    rule_id: int
    rule_name: str
    points: int


class PointsPreviewResponse(BaseModel):
    """Points a purchase would earn"""
    total_points: int
    contributions: List[RuleContribution]
    program_cap_applied: bool = False
