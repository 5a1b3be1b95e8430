# backend/modules/loyalty/services/redemption_service.py

"""
Redemption of reward items with points.

A redemption validates the account and reward under row locks, debits the
points, takes the items out of stock and creates the redemption record, all
in one transaction. Cancelling gives the points and stock back the same way.
"""

from sqlalchemy.orm import Session
from typing import List, Optional, Tuple
from datetime import datetime
import logging
import secrets
import string

from core.audit_logger import AuditEvent, AuditRecorder
from core.database import atomic, after_commit
from core.error_handling import APIValidationError, NotFoundError
from ..models.ledger_models import REDEMPTION_REFERENCE
from ..models.rewards_models import (
    RedemptionRecord, RedemptionStatus, FulfillmentMethod,
)
from ..exceptions import (
    BelowMinimumRedemption, InsufficientBalance, InsufficientStock,
    InvalidStatusTransition, MinimumBalanceNotMet, RewardUnavailable, TierIneligible,
)
from .points_ledger import PointsLedger
from .reward_catalog import RewardCatalog

logger = logging.getLogger(__name__)

CODE_PREFIX = "RDM"
CODE_LENGTH = 10
CODE_CHARS = string.ascii_uppercase + string.digits

ALLOWED_TRANSITIONS = {
    RedemptionStatus.PENDING: {RedemptionStatus.APPROVED, RedemptionStatus.CANCELLED},
    RedemptionStatus.APPROVED: {RedemptionStatus.COMPLETED, RedemptionStatus.CANCELLED},
    RedemptionStatus.COMPLETED: set(),
    RedemptionStatus.CANCELLED: set(),
}


class RedemptionService:
    """Service for redeeming rewards and managing the redemption lifecycle"""

    def __init__(
        self,
        db: Session,
        ledger: Optional[PointsLedger] = None,
        catalog: Optional[RewardCatalog] = None,
        audit: Optional[AuditRecorder] = None,
    ):
        self.db = db
        self.ledger = ledger or PointsLedger(db, audit=audit)
        self.catalog = catalog or RewardCatalog(db)
        self.audit = audit or self.ledger.audit

    @property
    def accounts(self):
        return self.ledger.accounts

    def redeem(
        self,
        account_id: int,
        reward_id: int,
        quantity: int = 1,
        fulfillment_method: FulfillmentMethod = FulfillmentMethod.IN_STORE,
        notes: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> RedemptionRecord:
        """Redeem ``quantity`` units of a reward.

        Checks run in this order, and the first failure is raised before
        anything is written:

        1. account exists and is active (``NotEnrolled`` / ``AccountInactive``)
        2. reward exists and is active (``RewardUnavailable``)
        3. the account's tier is eligible (``TierIneligible``)
        4. balance meets the reward's minimum (``MinimumBalanceNotMet``)
        5. enough stock (``InsufficientStock``)
        6. balance covers the cost (``InsufficientBalance``)
        7. cost meets the program's minimum redemption (``BelowMinimumRedemption``)
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise APIValidationError(
                "Quantity must be at least 1", {"quantity": str(quantity)}
            )
        fulfillment_method = FulfillmentMethod(fulfillment_method)

        with atomic(self.db):
            account = self.accounts.lock_account(account_id)
            self.accounts.require_active(account)

            reward = self.catalog.get_reward_for_update(reward_id)
            if reward is None or not reward.is_active:
                raise RewardUnavailable(reward_id)

            eligible_tiers = [t.lower() for t in (reward.eligible_tiers or [])]
            if account.tier.lower() not in eligible_tiers:
                raise TierIneligible(account.tier, reward.eligible_tiers)

            available = account.available_points
            if available < reward.min_points_balance:
                raise MinimumBalanceNotMet(available, reward.min_points_balance)

            if not reward.has_unlimited_stock and reward.stock_quantity < quantity:
                raise InsufficientStock(reward.id, reward.stock_quantity, quantity)

            total_cost = reward.points_cost * quantity
            if available < total_cost:
                raise InsufficientBalance(available, total_cost)

            program = self.ledger.config_source.load()
            if total_cost < program.minimum_redemption_points:
                raise BelowMinimumRedemption(total_cost, program.minimum_redemption_points)

            code = self._generate_redemption_code()
            debit = self.ledger.record_redeem(
                account.id,
                total_cost,
                reference_type=REDEMPTION_REFERENCE,
                reference_id=code,
                created_by=created_by,
                description=f"Redeemed {quantity} x {reward.name}",
                transaction_data={"reward_id": reward.id, "quantity": quantity},
            )

            self.catalog.decrement_stock(reward, quantity)
            reward.total_redemptions = (reward.total_redemptions or 0) + quantity

            record = RedemptionRecord(
                redemption_code=code,
                account_id=account.id,
                reward_id=reward.id,
                reward_name=reward.name,
                points_cost=total_cost,
                quantity=quantity,
                status=RedemptionStatus.PENDING,
                fulfillment_method=fulfillment_method,
                points_transaction_id=debit.id,
                notes=notes,
                created_by=created_by,
                created_at=datetime.utcnow(),
            )
            self.db.add(record)
            self.db.flush()
            self._audit(
                "redemption.create", record, created_by,
                {"points_cost": total_cost, "quantity": quantity, "reward_id": reward.id},
            )

        logger.info(
            f"Account {account_id} redeemed {quantity} x reward {reward_id} "
            f"for {total_cost} points ({record.redemption_code})"
        )
        return record

    def update_status(
        self,
        redemption_id: int,
        new_status: RedemptionStatus,
        notes: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> RedemptionRecord:
        """Move a redemption through pending -> approved -> completed.

        Pending and approved redemptions can be cancelled, which reverses the
        points debit and puts the items back in stock.

        Raises:
            NotFoundError: If the redemption does not exist
            InvalidStatusTransition: For any other transition
        """
        new_status = RedemptionStatus(new_status)

        with atomic(self.db):
            record = self._get_for_update(redemption_id)
            current = record.status
            if new_status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidStatusTransition(current.value, new_status.value)

            now = datetime.utcnow()
            if new_status == RedemptionStatus.APPROVED:
                record.approval_date = now
                record.approved_by = actor_id
            elif new_status == RedemptionStatus.COMPLETED:
                record.fulfillment_date = now
                record.fulfilled_by = actor_id
            elif new_status == RedemptionStatus.CANCELLED:
                self.ledger.reverse_redemption_debit(
                    record.points_transaction_id,
                    reason=f"Redemption {record.redemption_code} cancelled",
                    created_by=actor_id,
                )
                reward = self.catalog.get_reward_for_update(record.reward_id)
                if reward is not None:
                    self.catalog.restore_stock(reward, record.quantity)
                    reward.total_redemptions = max(0, (reward.total_redemptions or 0) - record.quantity)
                record.cancelled_at = now
                record.cancelled_by = actor_id

            record.status = new_status
            if notes:
                record.notes = f"{record.notes}\n{notes}" if record.notes else notes
            self.db.flush()
            self._audit(
                "redemption.status_change", record, actor_id,
                {"from": current.value, "to": new_status.value},
            )

        logger.info(
            f"Redemption {record.redemption_code} moved from {current.value} to {new_status.value}"
        )
        return record

    # ========== Reads ==========

    def get_by_code(self, redemption_code: str) -> RedemptionRecord:
        record = self.db.query(RedemptionRecord).filter(
            RedemptionRecord.redemption_code == redemption_code.strip().upper()
        ).first()
        if not record:
            raise NotFoundError("Redemption", redemption_code)
        return record

    def list_history(
        self,
        account_id: int,
        status: Optional[RedemptionStatus] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[RedemptionRecord], int]:
        query = self.db.query(RedemptionRecord).filter(
            RedemptionRecord.account_id == account_id
        )
        if status:
            query = query.filter(RedemptionRecord.status == status)

        total = query.count()
        items = (
            query.order_by(RedemptionRecord.created_at.desc(), RedemptionRecord.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    # ========== Helper Methods ==========

    def _get_for_update(self, redemption_id: int) -> RedemptionRecord:
        self.db.flush()
        record = (
            self.db.query(RedemptionRecord)
            .filter(RedemptionRecord.id == redemption_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not record:
            raise NotFoundError("Redemption", redemption_id)
        return record

    def _generate_redemption_code(self) -> str:
        """Generate unique redemption code"""
        while True:
            code = CODE_PREFIX + "".join(secrets.choice(CODE_CHARS) for _ in range(CODE_LENGTH))
            existing = self.db.query(RedemptionRecord.id).filter(
                RedemptionRecord.redemption_code == code
            ).first()
            if not existing:
                return code

    def _audit(
        self,
        action: str,
        record: RedemptionRecord,
        actor_id: Optional[int],
        details: dict,
    ) -> None:
        event = AuditEvent(
            action=action,
            entity_type="redemption",
            entity_id=record.id,
            actor_id=actor_id,
            details={"redemption_code": record.redemption_code, "account_id": record.account_id, **details},
        )
        after_commit(self.db, lambda: self.audit.record(event))
