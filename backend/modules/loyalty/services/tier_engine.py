# backend/modules/loyalty/services/tier_engine.py

from datetime import datetime
from typing import Any, Dict, Optional, Sequence
import logging

from sqlalchemy.orm import object_session

from core.database import after_commit
from ..models.loyalty_models import LoyaltyAccount
from .program_config import ProgramSettings, TierThreshold
from .loyalty_notifications import LoyaltyNotificationService

logger = logging.getLogger(__name__)


class TierEngine:
    """
    Maps lifetime earned points to a tier.

    Tiers are ordered by ``min_lifetime_points``; the first one is the base
    tier every account starts in. Earning can only move an account up:
    redemptions, reversals and expirations never cost a customer their tier.
    """

    def __init__(
        self,
        tiers: Sequence[TierThreshold],
        notifier: Optional[LoyaltyNotificationService] = None,
    ):
        if not tiers:
            raise ValueError("At least one tier threshold is required")
        for lower, higher in zip(tiers, tiers[1:]):
            if higher.min_lifetime_points <= lower.min_lifetime_points:
                raise ValueError(
                    f"Tier thresholds must be strictly increasing: "
                    f"{lower.name}={lower.min_lifetime_points}, "
                    f"{higher.name}={higher.min_lifetime_points}"
                )
        self.tiers = tuple(tiers)
        self.notifier = notifier or LoyaltyNotificationService()
        self._rank = {tier.name: index for index, tier in enumerate(self.tiers)}

    @classmethod
    def from_program(
        cls, program: ProgramSettings, notifier: Optional[LoyaltyNotificationService] = None
    ) -> "TierEngine":
        return cls(program.tiers, notifier)

    @property
    def base_tier(self) -> str:
        return self.tiers[0].name

    def rank(self, tier_name: str) -> int:
        """Position of the tier, -1 for names no longer configured."""
        return self._rank.get(tier_name, -1)

    def compute_tier(self, lifetime_earned: int) -> str:
        current = self.tiers[0]
        for tier in self.tiers:
            if lifetime_earned >= tier.min_lifetime_points:
                current = tier
            else:
                break
        return current.name

    def next_tier(self, lifetime_earned: int) -> Optional[TierThreshold]:
        for tier in self.tiers:
            if tier.min_lifetime_points > lifetime_earned:
                return tier
        return None

    def benefits_for(self, tier_name: str) -> Dict[str, Any]:
        for tier in self.tiers:
            if tier.name == tier_name:
                return dict(tier.benefits)
        return {}

    def on_earn(self, account: LoyaltyAccount) -> bool:
        """Upgrade the account if its lifetime points reached a higher tier.

        Must run inside the transaction that recorded the earn. The customer
        notification is sent once that transaction has committed.

        Returns:
            True when the tier changed
        """
        new_tier = self.compute_tier(account.lifetime_earned)
        if self.rank(new_tier) <= self.rank(account.tier):
            return False

        old_tier = account.tier
        account.tier = new_tier
        account.last_tier_change_at = datetime.utcnow()
        logger.info(
            f"Account {account.id} upgraded from {old_tier} to {new_tier} "
            f"at {account.lifetime_earned} lifetime points"
        )

        customer_id = account.customer_id
        benefits = self.benefits_for(new_tier)

        def notify():
            try:
                self.notifier.notify_tier_upgrade(customer_id, old_tier, new_tier, benefits)
            except Exception as e:
                logger.error(f"Tier upgrade notification for customer {customer_id} failed: {e}")

        db = object_session(account)
        if db is None:
            notify()
        else:
            after_commit(db, notify)
        return True
