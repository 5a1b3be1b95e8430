# backend/modules/loyalty/schemas/rewards_schemas.py

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List
from datetime import datetime

from ..models.rewards_models import RedemptionStatus, FulfillmentMethod, UNLIMITED_STOCK


# Reward catalog schemas
class RewardItemBase(BaseModel):
    """Base schema for reward catalog items"""

    name: str = Field(..., max_length=100)
    description: Optional[str] = None
    points_cost: int = Field(..., gt=0)
    stock_quantity: int = Field(UNLIMITED_STOCK, ge=UNLIMITED_STOCK)
    eligible_tiers: List[str] = Field(..., min_length=1)
    min_points_balance: int = Field(0, ge=0)
    is_active: bool = True

    @field_validator("eligible_tiers")
    @classmethod
    def normalize_tiers(cls, v):
        return [tier.strip().lower() for tier in v]


class RewardItemCreate(RewardItemBase):
    pass


class RewardItemResponse(RewardItemBase):
    id: int
    total_redemptions: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Redemption schemas
class RedemptionRequest(BaseModel):
    """Redeem a reward with points"""

    account_id: int
    reward_id: int
    quantity: int = Field(1, ge=1)
    fulfillment_method: FulfillmentMethod = FulfillmentMethod.IN_STORE
    notes: Optional[str] = Field(None, max_length=1000)


class RedemptionStatusUpdate(BaseModel):
    status: RedemptionStatus
    notes: Optional[str] = Field(None, max_length=1000)


class RedemptionResponse(BaseModel):
    id: int
    redemption_code: str
    account_id: int
    reward_id: int
    reward_name: str
    points_cost: int
    quantity: int
    status: RedemptionStatus
    fulfillment_method: FulfillmentMethod
    points_transaction_id: int
    approval_date: Optional[datetime] = None
    approved_by: Optional[int] = None
    fulfillment_date: Optional[datetime] = None
    fulfilled_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime
    created_by: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class RedemptionHistory(BaseModel):
    items: List[RedemptionResponse]
    total: int
    page: int
    limit: int
