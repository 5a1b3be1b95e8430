# backend/modules/loyalty/__init__.py

"""
Loyalty points ledger and redemption engine.
"""

from .routes.loyalty_routes import router as loyalty_router
from .services.account_service import LoyaltyAccountService
from .services.points_ledger import PointsLedger
from .services.redemption_service import RedemptionService
from .services.sale_integration import SaleLoyaltyIntegration

__all__ = [
    "loyalty_router",
    "LoyaltyAccountService",
    "PointsLedger",
    "RedemptionService",
    "SaleLoyaltyIntegration",
]
