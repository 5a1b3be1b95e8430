# backend/modules/loyalty/models/__init__.py

from .loyalty_models import (
    LoyaltyProgram,
    LoyaltyTierConfig,
    LoyaltyAccount,
    DEFAULT_TIER_CONFIGS,
)
from .ledger_models import (
    TransactionType,
    TransactionDirection,
    TransactionStatus,
    PointsTransaction,
    EarningRule,
)
from .rewards_models import (
    RedemptionStatus,
    FulfillmentMethod,
    RewardItem,
    RedemptionRecord,
    UNLIMITED_STOCK,
)

__all__ = [
    "LoyaltyProgram",
    "LoyaltyTierConfig",
    "LoyaltyAccount",
    "DEFAULT_TIER_CONFIGS",
    "TransactionType",
    "TransactionDirection",
    "TransactionStatus",
    "PointsTransaction",
    "EarningRule",
    "RedemptionStatus",
    "FulfillmentMethod",
    "RewardItem",
    "RedemptionRecord",
    "UNLIMITED_STOCK",
]
