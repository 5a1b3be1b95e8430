# backend/modules/loyalty/services/loyalty_notifications.py

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional
import logging
from enum import Enum


logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """Types of loyalty notifications"""

    TIER_UPGRADE = "tier_upgrade"
    POINTS_EXPIRING = "points_expiring"


class NotificationChannel(str, Enum):
    """Notification delivery channels"""

    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in_app"


# (channel, customer_id, subject, content, metadata) -> delivered?
Sender = Callable[[NotificationChannel, int, str, str, Dict[str, Any]], bool]


class LoyaltyNotificationService:
    """Tells customers about tier upgrades and points about to expire.

    Delivery is fire-and-forget: the tier engine schedules upgrades after the
    ledger transaction commits, and a failed send is only logged.
    """

    def __init__(
        self,
        sender: Optional[Sender] = None,
        channels: Iterable[NotificationChannel] = (NotificationChannel.EMAIL, NotificationChannel.IN_APP),
    ):
        self.sender = sender or self._log_sender
        self.channels = tuple(channels)

    def notify_tier_upgrade(
        self,
        customer_id: int,
        old_tier: str,
        new_tier: str,
        benefits: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Notify customer about tier upgrade"""
        subject = f"Congratulations! You've reached {new_tier.title()} tier"
        content = self._build_tier_upgrade_content(old_tier, new_tier, benefits or {})
        metadata = {
            "notification_type": NotificationType.TIER_UPGRADE.value,
            "old_tier": old_tier,
            "new_tier": new_tier,
        }
        return self._send(NotificationType.TIER_UPGRADE, customer_id, subject, content, metadata)

    def notify_points_expiring(
        self,
        customer_id: int,
        points_expiring: int,
        earliest_expiration: datetime,
        days_until_expiry: int,
        current_balance: int,
    ) -> bool:
        """Remind a customer that part of their balance is about to expire"""
        subject = f"{points_expiring} loyalty points expiring soon!"
        content = self._build_expiring_points_content(
            points_expiring, earliest_expiration, days_until_expiry, current_balance
        )
        metadata = {
            "notification_type": NotificationType.POINTS_EXPIRING.value,
            "points_expiring": points_expiring,
            "expiry_date": earliest_expiration.isoformat(),
            "days_until_expiry": days_until_expiry,
        }
        return self._send(NotificationType.POINTS_EXPIRING, customer_id, subject, content, metadata)

    def _send(
        self,
        notification_type: NotificationType,
        customer_id: int,
        subject: str,
        content: str,
        metadata: Dict[str, Any],
    ) -> bool:
        success = True
        for channel in self.channels:
            try:
                if not self.sender(channel, customer_id, subject, content, metadata):
                    success = False
            except Exception as e:
                logger.error(
                    f"Failed to send {notification_type.value} notification via {channel.value} "
                    f"to customer {customer_id}: {str(e)}"
                )
                success = False

        return success

    def _build_tier_upgrade_content(
        self, old_tier: str, new_tier: str, benefits: Dict[str, Any]
    ) -> str:
        lines = [
            f"You've moved up from {old_tier.title()} to {new_tier.title()}!",
        ]
        if benefits:
            lines.append("Your new benefits:")
            for name, value in sorted(benefits.items()):
                label = name.replace("_", " ").capitalize()
                lines.append(f"  - {label}: {value}")
        return "\n".join(lines)

    def _build_expiring_points_content(
        self,
        points_expiring: int,
        earliest_expiration: datetime,
        days_until_expiry: int,
        current_balance: int,
    ) -> str:
        if days_until_expiry <= 0:
            when = "today"
        elif days_until_expiry == 1:
            when = "tomorrow"
        else:
            when = f"in {days_until_expiry} days"

        return "\n".join([
            f"{points_expiring} of your {current_balance} points expire {when} "
            f"({earliest_expiration.strftime('%B %d')}).",
            "Don't let them go to waste! Redeem them on your next visit.",
        ])

    @staticmethod
    def _log_sender(
        channel: NotificationChannel,
        customer_id: int,
        subject: str,
        content: str,
        metadata: Dict[str, Any],
    ) -> bool:
        logger.info(
            f"[{channel.value}] notification to customer {customer_id}: {subject}"
        )
        return True
