# backend/modules/loyalty/services/expiration_reminders.py

import math
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from sqlalchemy.orm import Session

from core.audit_logger import AuditEvent, AuditRecorder
from core.database import atomic
from core.error_handling import APIError
from ..models.loyalty_models import LoyaltyAccount
from ..schemas.loyalty_schemas import (
    ExpirationReminderBatchResponse,
    ExpirationReminderResponse,
)
from .loyalty_notifications import LoyaltyNotificationService
from .points_ledger import OutstandingLot, PointsLedger

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_DAYS = 30


class ExpirationReminderService:
    """Warns customers whose earned points are close to their expiration date.

    Reminders are read-only with respect to the ledger: they look at the
    outstanding lots and never move points.
    """

    def __init__(
        self,
        db: Session,
        ledger: Optional[PointsLedger] = None,
        notifier: Optional[LoyaltyNotificationService] = None,
        audit: Optional[AuditRecorder] = None,
    ):
        self.db = db
        self.audit = audit or AuditRecorder.for_session(db)
        self.ledger = ledger or PointsLedger(db, audit=self.audit)
        self.notifier = notifier or LoyaltyNotificationService()

    def remind_customer(
        self,
        customer_id: int,
        within_days: int = DEFAULT_REMINDER_DAYS,
        actor_id: Optional[int] = None,
    ) -> ExpirationReminderResponse:
        with atomic(self.db):
            account = self.ledger.accounts.get_account(customer_id)
            lots = self.ledger.expiring_lots(account.id, within_days)
        return self._remind(account, lots, within_days, actor_id)

    def send_batch(
        self,
        within_days: int = DEFAULT_REMINDER_DAYS,
        actor_id: Optional[int] = None,
    ) -> ExpirationReminderBatchResponse:
        """Remind every active member with points expiring in the window."""
        with atomic(self.db):
            account_ids = [
                row.id
                for row in self.db.query(LoyaltyAccount.id)
                .filter(LoyaltyAccount.is_active.is_(True))
                .order_by(LoyaltyAccount.id)
                .all()
            ]

        results = []
        failed = []
        for account_id in account_ids:
            try:
                with atomic(self.db):
                    account = self.ledger.accounts.get_account_by_id(account_id)
                    lots = self.ledger.expiring_lots(account_id, within_days)
                result = self._remind(account, lots, within_days, actor_id)
            except APIError as e:
                logger.warning(f"Expiration reminder failed for account {account_id}: {e.message}")
                failed.append(account_id)
                continue
            if result.points_expiring > 0:
                results.append(result)

        reminders_sent = sum(1 for r in results if r.sent)
        points_expiring = sum(r.points_expiring for r in results)
        logger.info(
            f"Expiration reminders: {reminders_sent} sent for {points_expiring} points "
            f"expiring within {within_days} days, {len(failed)} failed"
        )
        return ExpirationReminderBatchResponse(
            reminders_sent=reminders_sent,
            points_expiring=points_expiring,
            results=results,
            failed_accounts=failed,
        )

    def _remind(
        self,
        account: LoyaltyAccount,
        lots: List[OutstandingLot],
        within_days: int,
        actor_id: Optional[int],
    ) -> ExpirationReminderResponse:
        """Send the reminder for lots read in an already committed unit."""
        points_expiring = sum(lot.outstanding for lot in lots)
        if points_expiring <= 0:
            return ExpirationReminderResponse(
                customer_id=account.customer_id,
                account_id=account.id,
                points_expiring=0,
                current_balance=account.available_points,
                sent=False,
            )

        earliest = min(lot.expiration_date for lot in lots)
        remaining = (earliest - datetime.utcnow()) / timedelta(days=1)
        days_until_expiry = max(0, math.ceil(remaining))

        sent = self.notifier.notify_points_expiring(
            customer_id=account.customer_id,
            points_expiring=points_expiring,
            earliest_expiration=earliest,
            days_until_expiry=days_until_expiry,
            current_balance=account.available_points,
        )
        if sent:
            self.audit.record(AuditEvent(
                action="account.expiration_reminder",
                entity_type="loyalty_account",
                entity_id=account.id,
                actor_id=actor_id,
                details={
                    "points_expiring": points_expiring,
                    "earliest_expiration": earliest.isoformat(),
                    "within_days": within_days,
                },
            ))
        else:
            logger.warning(f"Expiration reminder for customer {account.customer_id} was not delivered")

        return ExpirationReminderResponse(
            customer_id=account.customer_id,
            account_id=account.id,
            points_expiring=points_expiring,
            earliest_expiration=earliest,
            days_until_expiry=days_until_expiry,
            current_balance=account.available_points,
            sent=sent,
        )
