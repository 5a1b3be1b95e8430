# backend/modules/loyalty/services/reward_catalog.py

from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from core.database import atomic
from core.error_handling import NotFoundError
from ..models.rewards_models import RewardItem, UNLIMITED_STOCK
from ..schemas.rewards_schemas import RewardItemCreate
from ..exceptions import InsufficientStock

logger = logging.getLogger(__name__)


class RewardCatalog:
    """Reward items and their stock"""

    def __init__(self, db: Session):
        self.db = db

    def get_reward(self, reward_id: int) -> RewardItem:
        reward = self.db.query(RewardItem).filter(RewardItem.id == reward_id).first()
        if not reward:
            raise NotFoundError("Reward", reward_id)
        return reward

    def get_reward_for_update(self, reward_id: int) -> Optional[RewardItem]:
        """Row-locked read for use inside a transaction; ``None`` if missing."""
        self.db.flush()
        return (
            self.db.query(RewardItem)
            .filter(RewardItem.id == reward_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def list_available(
        self,
        tier: Optional[str] = None,
        points_balance: Optional[int] = None,
    ) -> List[RewardItem]:
        """Active, in-stock rewards, optionally narrowed to what a customer can redeem now."""
        rewards = (
            self.db.query(RewardItem)
            .filter(
                RewardItem.is_active.is_(True),
                RewardItem.stock_quantity != 0,
            )
            .order_by(RewardItem.points_cost, RewardItem.id)
            .all()
        )

        if tier is not None:
            tier = tier.lower()
            rewards = [
                r for r in rewards
                if tier in [t.lower() for t in (r.eligible_tiers or [])]
            ]
        if points_balance is not None:
            rewards = [
                r for r in rewards
                if points_balance >= r.points_cost and points_balance >= r.min_points_balance
            ]
        return rewards

    def create_reward(self, data: RewardItemCreate) -> RewardItem:
        with atomic(self.db):
            reward = RewardItem(**data.model_dump(), total_redemptions=0)
            self.db.add(reward)
            self.db.flush()
        logger.info(f"Created reward {reward.id} '{reward.name}' costing {reward.points_cost} points")
        return reward

    def decrement_stock(self, reward: RewardItem, quantity: int) -> None:
        """Take ``quantity`` units out of stock; unlimited rewards are left alone.

        Caller holds the reward row lock.
        """
        if reward.stock_quantity == UNLIMITED_STOCK:
            return
        if reward.stock_quantity < quantity:
            raise InsufficientStock(reward.id, reward.stock_quantity, quantity)
        reward.stock_quantity -= quantity

    def restore_stock(self, reward: RewardItem, quantity: int) -> None:
        if reward.stock_quantity == UNLIMITED_STOCK:
            return
        reward.stock_quantity += quantity
