# backend/modules/loyalty/services/points_ledger.py

"""
Append-only points ledger.

Every balance change is a ``PointsTransaction`` written in the same
transaction as the account update, with the account row locked first. The
account's ``available_points`` therefore always equals the signed sum of its
ledger entries.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import threading

from sqlalchemy.orm import Session

from core.audit_logger import AuditEvent, AuditRecorder
from core.database import atomic, after_commit
from core.database_utils import to_naive_utc
from core.error_handling import APIError, NotFoundError
from ..models.loyalty_models import LoyaltyAccount
from ..models.ledger_models import (
    PointsTransaction, TransactionType, TransactionDirection, TransactionStatus,
    CREDIT_LOT_TYPES, REVERSIBLE_TYPES, REDEMPTION_REFERENCE,
)
from ..schemas.loyalty_schemas import BulkAdjustmentItem
from ..exceptions import (
    InsufficientBalance, InvalidAmount, AlreadyReversed, TransactionNotReversible,
)
from .account_service import LoyaltyAccountService
from .program_config import ProgramConfigSource, ProgramSettings
from .tier_engine import TierEngine

logger = logging.getLogger(__name__)

# One expiration sweep at a time per process
_expiration_sweep_lock = threading.Lock()


@dataclass
class OutstandingLot:
    transaction_id: int
    transaction_type: TransactionType
    amount: int
    outstanding: int
    created_at: datetime
    expiration_date: Optional[datetime]


@dataclass
class ExpirationSummary:
    skipped: bool = False
    accounts_processed: int = 0
    lots_expired: int = 0
    points_expired: int = 0
    failed_accounts: List[int] = field(default_factory=list)


@dataclass
class BulkAdjustmentOutcome:
    succeeded: List[PointsTransaction] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)


def _inverse(direction: TransactionDirection) -> TransactionDirection:
    if direction == TransactionDirection.CREDIT:
        return TransactionDirection.DEBIT
    return TransactionDirection.CREDIT


def _validate_amount(amount: Any) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(amount)


class PointsLedger:
    """Writes and reads ledger entries for loyalty accounts"""

    def __init__(
        self,
        db: Session,
        account_service: Optional[LoyaltyAccountService] = None,
        tier_engine: Optional[TierEngine] = None,
        audit: Optional[AuditRecorder] = None,
        config_source: Optional[ProgramConfigSource] = None,
    ):
        self.db = db
        self.config_source = config_source or ProgramConfigSource(db)
        self.audit = audit or AuditRecorder.for_session(db)
        self.tier_engine = tier_engine
        self.accounts = account_service or LoyaltyAccountService(
            db,
            ledger=self,
            tier_engine=tier_engine,
            audit=self.audit,
            config_source=self.config_source,
        )

    # ========== Writes ==========

    def record_earn(
        self,
        account_id: int,
        amount: int,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        expiration_date: Optional[datetime] = None,
        transaction_type: TransactionType = TransactionType.EARN,
        created_by: Optional[int] = None,
        description: Optional[str] = None,
        transaction_data: Optional[Dict[str, Any]] = None,
    ) -> PointsTransaction:
        """Credit earned or bonus points to an account.

        Points expire ``expiration_months`` after they are earned unless an
        explicit ``expiration_date`` is given. Tier is recomputed in the same
        transaction.

        Raises:
            InvalidAmount: If ``amount`` is not a positive integer
            NotEnrolled: If the account does not exist
            AccountInactive: If the account is deactivated
        """
        _validate_amount(amount)
        if transaction_type not in CREDIT_LOT_TYPES:
            raise ValueError(f"record_earn cannot write {transaction_type} entries")

        with atomic(self.db):
            program = self.config_source.load()
            account = self.accounts.lock_account(account_id)
            self.accounts.require_active(account)

            if expiration_date is None:
                expiration_date = program.expiration_for(datetime.utcnow())
            else:
                expiration_date = to_naive_utc(expiration_date)

            entry = self._append(
                account,
                transaction_type,
                TransactionDirection.CREDIT,
                amount,
                reference_type=reference_type,
                reference_id=reference_id,
                expiration_date=expiration_date,
                description=description,
                transaction_data=transaction_data,
                created_by=created_by,
            )
            account.lifetime_earned += amount
            self._tier_engine(program).on_earn(account)
            self.db.flush()
            self._audit(f"points.{transaction_type.value}", entry, created_by)

        logger.info(
            f"Credited {amount} {transaction_type.value} points to account {account_id} "
            f"(balance {entry.balance_after})"
        )
        return entry

    def record_redeem(
        self,
        account_id: int,
        amount: int,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        created_by: Optional[int] = None,
        description: Optional[str] = None,
        transaction_data: Optional[Dict[str, Any]] = None,
    ) -> PointsTransaction:
        """Debit spent points.

        The balance check reads the account under the row lock of the
        transaction that writes the debit, so concurrent redemptions can never
        overdraw the account.

        Raises:
            InvalidAmount, NotEnrolled, AccountInactive, InsufficientBalance
        """
        _validate_amount(amount)

        with atomic(self.db):
            account = self.accounts.lock_account(account_id)
            self.accounts.require_active(account)
            if amount > account.available_points:
                raise InsufficientBalance(account.available_points, amount)

            entry = self._append(
                account,
                TransactionType.REDEEM,
                TransactionDirection.DEBIT,
                amount,
                reference_type=reference_type,
                reference_id=reference_id,
                description=description,
                transaction_data=transaction_data,
                created_by=created_by,
            )
            account.lifetime_redeemed += amount
            self.db.flush()
            self._audit("points.redeem", entry, created_by)

        logger.info(
            f"Debited {amount} redeemed points from account {account_id} "
            f"(balance {entry.balance_after})"
        )
        return entry

    def record_adjustment(
        self,
        account_id: int,
        amount: int,
        direction: TransactionDirection,
        reason: str,
        created_by: Optional[int] = None,
        reference_type: Optional[str] = "manual",
        reference_id: Optional[str] = None,
    ) -> PointsTransaction:
        """Manual correction by staff. Lifetime counters are left alone."""
        _validate_amount(amount)
        direction = TransactionDirection(direction)

        with atomic(self.db):
            account = self.accounts.lock_account(account_id)
            self.accounts.require_active(account)
            if direction == TransactionDirection.DEBIT and amount > account.available_points:
                raise InsufficientBalance(account.available_points, amount)

            entry = self._append(
                account,
                TransactionType.ADJUSTMENT,
                direction,
                amount,
                reference_type=reference_type,
                reference_id=reference_id,
                description=reason,
                created_by=created_by,
            )
            self.db.flush()
            self._audit("points.adjust", entry, created_by, {"reason": reason})

        logger.info(
            f"Adjusted account {account_id} by {entry.signed_amount} points: {reason}"
        )
        return entry

    def record_adjustments(
        self,
        adjustments: Sequence[BulkAdjustmentItem],
        created_by: Optional[int] = None,
    ) -> BulkAdjustmentOutcome:
        """Apply several manual corrections, each in its own transaction.

        A failing item is reported with its index and leaves the others in
        place.
        """
        outcome = BulkAdjustmentOutcome()
        for index, item in enumerate(adjustments):
            try:
                entry = self.record_adjustment(
                    item.account_id,
                    item.amount,
                    item.direction,
                    item.reason,
                    created_by=created_by,
                )
            except APIError as e:
                logger.warning(
                    f"Bulk adjustment {index} for account {item.account_id} failed: {e.message}"
                )
                outcome.errors.append({
                    "index": index,
                    "account_id": item.account_id,
                    "error_code": e.error_code,
                    "message": e.message,
                })
                continue
            outcome.succeeded.append(entry)

        logger.info(
            f"Bulk adjustment applied {len(outcome.succeeded)} of {len(adjustments)} corrections"
        )
        return outcome

    def reverse(
        self,
        transaction_id: int,
        reason: str,
        created_by: Optional[int] = None,
    ) -> PointsTransaction:
        """Undo an entry by writing its inverse and marking it reversed.

        Redemption debits are refused here: cancelling the redemption gives
        the points and the stock back together.

        Raises:
            NotFoundError: If the transaction does not exist
            AlreadyReversed: If it was reversed before
            TransactionNotReversible: For expired lots, reversal/expiration
                entries and redemption debits
            InsufficientBalance: If taking back a credit would overdraw the account
        """
        return self._reverse(transaction_id, reason, created_by, allow_redemption=False)

    def reverse_redemption_debit(
        self,
        transaction_id: int,
        reason: str,
        created_by: Optional[int] = None,
    ) -> PointsTransaction:
        """Refund the debit of a cancelled redemption.

        Only ``RedemptionService.update_status`` calls this, inside the unit
        that also restores the reward stock.
        """
        return self._reverse(transaction_id, reason, created_by, allow_redemption=True)

    def _reverse(
        self,
        transaction_id: int,
        reason: str,
        created_by: Optional[int],
        allow_redemption: bool,
    ) -> PointsTransaction:
        with atomic(self.db):
            original = self.get_transaction(transaction_id)
            account = self.accounts.lock_account(original.account_id)
            # Re-read under the account lock; status changes all hold it
            original = (
                self.db.query(PointsTransaction)
                .filter(PointsTransaction.id == transaction_id)
                .populate_existing()
                .one()
            )

            if original.status == TransactionStatus.REVERSED:
                raise AlreadyReversed(transaction_id)
            if original.status == TransactionStatus.EXPIRED:
                raise TransactionNotReversible(transaction_id, "the points have expired")
            if original.transaction_type not in REVERSIBLE_TYPES:
                raise TransactionNotReversible(
                    transaction_id, f"{original.transaction_type.value} entries cannot be reversed"
                )
            if original.reference_type == REDEMPTION_REFERENCE and not allow_redemption:
                raise TransactionNotReversible(transaction_id, "cancel the redemption instead")

            direction = _inverse(original.direction)
            if direction == TransactionDirection.DEBIT and original.amount > account.available_points:
                raise InsufficientBalance(account.available_points, original.amount)

            entry = self._append(
                account,
                TransactionType.REVERSAL,
                direction,
                original.amount,
                reference_type=original.reference_type,
                reference_id=original.reference_id,
                related_transaction_id=original.id,
                description=reason,
                created_by=created_by,
            )

            original.status = TransactionStatus.REVERSED
            original.reversed_at = datetime.utcnow()
            original.reversal_reason = reason

            if original.transaction_type in CREDIT_LOT_TYPES:
                account.lifetime_earned = max(0, account.lifetime_earned - original.amount)
            elif original.transaction_type == TransactionType.REDEEM:
                account.lifetime_redeemed = max(0, account.lifetime_redeemed - original.amount)

            self.db.flush()
            self._audit(
                "points.reverse", entry, created_by,
                {"reversed_transaction_id": original.id, "reason": reason},
            )

        logger.info(f"Reversed transaction {transaction_id} on account {original.account_id}: {reason}")
        return entry

    def expire_outstanding(self, as_of: Optional[datetime] = None) -> ExpirationSummary:
        """Expire the outstanding part of every lot past its expiration date.

        Each account is handled in its own transaction under its row lock. A
        sweep already running in this process makes the call return at once
        with ``skipped=True``.
        """
        as_of = to_naive_utc(as_of) or datetime.utcnow()
        if not _expiration_sweep_lock.acquire(blocking=False):
            logger.info("Points expiration sweep already running, skipping")
            return ExpirationSummary(skipped=True)

        summary = ExpirationSummary()
        try:
            with atomic(self.db):
                account_ids = [
                    row[0]
                    for row in self.db.query(PointsTransaction.account_id)
                    .filter(
                        PointsTransaction.transaction_type.in_(CREDIT_LOT_TYPES),
                        PointsTransaction.status == TransactionStatus.ACTIVE,
                        PointsTransaction.expiration_date.isnot(None),
                        PointsTransaction.expiration_date <= as_of,
                    )
                    .distinct()
                    .order_by(PointsTransaction.account_id)
                    .all()
                ]

            for account_id in account_ids:
                try:
                    with atomic(self.db):
                        lots, points = self._expire_account(account_id, as_of)
                except APIError as e:
                    logger.error(f"Failed to expire points for account {account_id}: {e.message}")
                    summary.failed_accounts.append(account_id)
                    continue

                summary.accounts_processed += 1
                summary.lots_expired += lots
                summary.points_expired += points
        finally:
            _expiration_sweep_lock.release()

        logger.info(
            f"Expired {summary.points_expired} points in {summary.lots_expired} lots "
            f"across {summary.accounts_processed} accounts"
        )
        return summary

    # ========== Reads ==========

    def get_transaction(self, transaction_id: int) -> PointsTransaction:
        entry = self.db.query(PointsTransaction).filter(
            PointsTransaction.id == transaction_id
        ).first()
        if not entry:
            raise NotFoundError("Points transaction", transaction_id)
        return entry

    def list_transactions(
        self,
        account_id: int,
        transaction_type: Optional[TransactionType] = None,
        status: Optional[TransactionStatus] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[PointsTransaction], int]:
        """Newest first. Returns the page and the total count."""
        query = self.db.query(PointsTransaction).filter(
            PointsTransaction.account_id == account_id
        )
        if transaction_type:
            query = query.filter(PointsTransaction.transaction_type == transaction_type)
        if status:
            query = query.filter(PointsTransaction.status == status)

        total = query.count()
        items = (
            query.order_by(PointsTransaction.created_at.desc(), PointsTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def reconstruct_balance(self, account_id: int) -> int:
        """Balance recomputed from the ledger alone."""
        return sum(entry.signed_amount for entry in self._entries(account_id))

    def outstanding_lots(self, account_id: int) -> List[OutstandingLot]:
        """Active credit lots that still hold unspent points, oldest first."""
        entries = self._entries(account_id)
        remaining = self._allocate(entries)
        lots = []
        for entry in entries:
            if entry.status != TransactionStatus.ACTIVE or entry.id not in remaining:
                continue
            outstanding = remaining[entry.id]
            if outstanding > 0:
                lots.append(
                    OutstandingLot(
                        transaction_id=entry.id,
                        transaction_type=entry.transaction_type,
                        amount=entry.amount,
                        outstanding=outstanding,
                        created_at=entry.created_at,
                        expiration_date=entry.expiration_date,
                    )
                )
        return lots

    def expiring_lots(self, account_id: int, within_days: int = 30) -> List[OutstandingLot]:
        """Outstanding lots that expire within ``within_days``, oldest first."""
        cutoff = datetime.utcnow() + timedelta(days=within_days)
        return [
            lot for lot in self.outstanding_lots(account_id)
            if lot.expiration_date is not None and lot.expiration_date <= cutoff
        ]

    def expiring_points(self, account_id: int, within_days: int = 30) -> int:
        return sum(lot.outstanding for lot in self.expiring_lots(account_id, within_days))

    # ========== Helper Methods ==========

    def _append(
        self,
        account: LoyaltyAccount,
        transaction_type: TransactionType,
        direction: TransactionDirection,
        amount: int,
        **fields,
    ) -> PointsTransaction:
        balance_before = account.available_points
        delta = amount if direction == TransactionDirection.CREDIT else -amount
        balance_after = self.accounts.apply_balance_delta(account, delta)

        entry = PointsTransaction(
            account_id=account.id,
            transaction_type=transaction_type,
            direction=direction,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            status=TransactionStatus.ACTIVE,
            created_at=datetime.utcnow(),
            **fields,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def _entries(self, account_id: int) -> List[PointsTransaction]:
        return (
            self.db.query(PointsTransaction)
            .filter(PointsTransaction.account_id == account_id)
            .order_by(PointsTransaction.created_at, PointsTransaction.id)
            .all()
        )

    @staticmethod
    def _allocate(entries: List[PointsTransaction]) -> Dict[int, int]:
        """
        Consume credit lots first-in first-out.

        Reversed entries and their reversals cancel out and are left out.
        Expiration entries are left out too; the lot they expired only ever
        offers ``amount - expired`` points. Every other debit consumes the
        oldest remaining credit first.

        Returns:
            Remaining points per credit entry id
        """
        expired = {}
        for entry in entries:
            if entry.transaction_type == TransactionType.EXPIRATION and entry.related_transaction_id:
                expired[entry.related_transaction_id] = (
                    expired.get(entry.related_transaction_id, 0) + entry.amount
                )

        remaining: Dict[int, int] = {}
        queue = deque()
        deficit = 0

        for entry in entries:
            if entry.transaction_type in (TransactionType.REVERSAL, TransactionType.EXPIRATION):
                continue
            if entry.status == TransactionStatus.REVERSED:
                continue

            if entry.direction == TransactionDirection.CREDIT:
                capacity = max(0, entry.amount - expired.get(entry.id, 0))
                paid = min(capacity, deficit)
                deficit -= paid
                remaining[entry.id] = capacity - paid
                if remaining[entry.id] > 0:
                    queue.append(entry.id)
                continue

            to_consume = entry.amount
            while to_consume > 0 and queue:
                lot_id = queue[0]
                taken = min(remaining[lot_id], to_consume)
                remaining[lot_id] -= taken
                to_consume -= taken
                if remaining[lot_id] == 0:
                    queue.popleft()
            deficit += to_consume

        return remaining

    def _expire_account(self, account_id: int, as_of: datetime) -> Tuple[int, int]:
        account = self.accounts.lock_account(account_id)
        entries = self._entries(account_id)
        remaining = self._allocate(entries)

        lots = 0
        points = 0
        for entry in entries:
            if (
                entry.transaction_type not in CREDIT_LOT_TYPES
                or entry.status != TransactionStatus.ACTIVE
                or entry.expiration_date is None
                or entry.expiration_date > as_of
            ):
                continue

            outstanding = min(remaining.get(entry.id, 0), account.available_points)
            if outstanding > 0:
                expiration = self._append(
                    account,
                    TransactionType.EXPIRATION,
                    TransactionDirection.DEBIT,
                    outstanding,
                    reference_type="points_transaction",
                    reference_id=str(entry.id),
                    related_transaction_id=entry.id,
                    description=f"Points from transaction {entry.id} expired",
                )
                self._audit(
                    "points.expire", expiration, None,
                    {"expired_transaction_id": entry.id},
                )
                points += outstanding

            entry.status = TransactionStatus.EXPIRED
            lots += 1

        self.db.flush()
        if lots:
            logger.info(f"Expired {points} points in {lots} lots for account {account_id}")
        return lots, points

    def _tier_engine(self, program: ProgramSettings) -> TierEngine:
        return self.tier_engine or TierEngine.from_program(program)

    def _audit(
        self,
        action: str,
        entry: PointsTransaction,
        actor_id: Optional[int],
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = {
            "account_id": entry.account_id,
            "transaction_type": entry.transaction_type.value,
            "direction": entry.direction.value,
            "amount": entry.amount,
            "balance_before": entry.balance_before,
            "balance_after": entry.balance_after,
            "reference_type": entry.reference_type,
            "reference_id": entry.reference_id,
        }
        details.update(extra or {})
        event = AuditEvent(
            action=action,
            entity_type="points_transaction",
            entity_id=entry.id,
            actor_id=actor_id,
            details=details,
        )
        after_commit(self.db, lambda: self.audit.record(event))
