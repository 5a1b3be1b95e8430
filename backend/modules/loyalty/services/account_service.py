# backend/modules/loyalty/services/account_service.py

"""
Customer loyalty accounts: enrollment, lookup, deactivation and bonuses.

Balances are never written here directly except through
``apply_balance_delta``, which only the points ledger calls from inside its
own transaction.
"""

from sqlalchemy.orm import Session
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from typing import List, Optional, Tuple
from datetime import datetime
import logging

from core.audit_logger import AuditEvent, AuditRecorder
from core.database import atomic, after_commit
from core.error_handling import APIValidationError
from ..models.loyalty_models import LoyaltyAccount
from ..models.ledger_models import PointsTransaction, TransactionType, TransactionStatus
from ..schemas.loyalty_schemas import LoyaltyAccountSummary, TierDistribution
from ..exceptions import (
    AccountInactive, AlreadyEnrolled, BonusAlreadyAwarded, InsufficientBalance,
    InvalidAmount, NotEnrolled,
)
from .program_config import ProgramConfigSource
from .tier_engine import TierEngine

logger = logging.getLogger(__name__)

EXPIRING_SOON_DAYS = 30


class LoyaltyAccountService:
    """Service for managing customer loyalty accounts"""

    def __init__(
        self,
        db: Session,
        ledger=None,
        tier_engine: Optional[TierEngine] = None,
        audit: Optional[AuditRecorder] = None,
        config_source: Optional[ProgramConfigSource] = None,
    ):
        self.db = db
        self.config_source = config_source or ProgramConfigSource(db)
        self.audit = audit or AuditRecorder.for_session(db)
        self.tier_engine = tier_engine
        self._ledger = ledger

    @property
    def ledger(self):
        if self._ledger is None:
            from .points_ledger import PointsLedger

            self._ledger = PointsLedger(
                self.db,
                account_service=self,
                tier_engine=self.tier_engine,
                audit=self.audit,
                config_source=self.config_source,
            )
        return self._ledger

    # ========== Lookup ==========

    def get_account(self, customer_id: int) -> LoyaltyAccount:
        account = self.db.query(LoyaltyAccount).filter(
            LoyaltyAccount.customer_id == customer_id
        ).first()
        if not account:
            raise NotEnrolled(customer_id, resource="Customer")
        return account

    def get_account_by_id(self, account_id: int) -> LoyaltyAccount:
        account = self.db.query(LoyaltyAccount).filter(
            LoyaltyAccount.id == account_id
        ).first()
        if not account:
            raise NotEnrolled(account_id)
        return account

    def list_accounts(
        self,
        tier: Optional[str] = None,
        is_active: Optional[bool] = True,
        min_points: Optional[int] = None,
        max_points: Optional[int] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[LoyaltyAccount], int]:
        """Enrolled accounts, largest balance first. ``is_active=None`` lists all."""
        query = self.db.query(LoyaltyAccount)
        if tier:
            query = query.filter(func.lower(LoyaltyAccount.tier) == tier.lower())
        if is_active is not None:
            query = query.filter(LoyaltyAccount.is_active.is_(is_active))
        if min_points is not None:
            query = query.filter(LoyaltyAccount.available_points >= min_points)
        if max_points is not None:
            query = query.filter(LoyaltyAccount.available_points <= max_points)

        total = query.count()
        items = (
            query.order_by(LoyaltyAccount.available_points.desc(), LoyaltyAccount.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def tier_distribution(self) -> List[TierDistribution]:
        """Active members and their points per tier"""
        rows = (
            self.db.query(
                LoyaltyAccount.tier,
                func.count(LoyaltyAccount.id),
                func.coalesce(func.sum(LoyaltyAccount.available_points), 0),
            )
            .filter(LoyaltyAccount.is_active.is_(True))
            .group_by(LoyaltyAccount.tier)
            .order_by(LoyaltyAccount.tier)
            .all()
        )
        return [
            TierDistribution(tier=tier, count=count, total_points=int(total_points))
            for tier, count, total_points in rows
        ]

    def lock_account(self, account_id: int) -> LoyaltyAccount:
        """Load the account under a row lock held until the transaction ends.

        Pending changes are flushed first; the locked read refreshes the
        in-session copy with the committed row.
        """
        self.db.flush()
        account = (
            self.db.query(LoyaltyAccount)
            .filter(LoyaltyAccount.id == account_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not account:
            raise NotEnrolled(account_id)
        return account

    @staticmethod
    def require_active(account: LoyaltyAccount) -> None:
        if not account.is_active:
            raise AccountInactive(account.id)

    # ========== Balance ==========

    def apply_balance_delta(self, account: LoyaltyAccount, delta: int) -> int:
        """Apply a signed change to the spendable balance.

        Only the points ledger calls this, under the account row lock of the
        transaction that writes the matching ledger entry.
        """
        new_balance = account.available_points + delta
        if new_balance < 0:
            raise InsufficientBalance(account.available_points, -delta)
        account.available_points = new_balance
        account.last_activity_at = datetime.utcnow()
        return new_balance

    # ========== Lifecycle ==========

    def enroll(
        self,
        customer_id: int,
        signup_bonus: Optional[int] = None,
        created_by: Optional[int] = None,
    ) -> LoyaltyAccount:
        """Enroll a customer in the loyalty program.

        Creates the account at zero balance in the base tier and, when a
        signup bonus applies, records it as a ``bonus`` entry in the same
        transaction. A deactivated account is reactivated with its balance
        kept and no new signup bonus.

        Args:
            customer_id: The customer to enroll
            signup_bonus: Bonus points; the program's signup bonus when omitted
            created_by: Staff member performing the enrollment

        Raises:
            AlreadyEnrolled: If the customer already has an active account
            InvalidAmount: If ``signup_bonus`` is negative
        """
        if signup_bonus is not None and (isinstance(signup_bonus, bool) or not isinstance(signup_bonus, int) or signup_bonus < 0):
            raise InvalidAmount(signup_bonus)

        with atomic(self.db):
            program = self.config_source.load()
            existing = (
                self.db.query(LoyaltyAccount)
                .filter(LoyaltyAccount.customer_id == customer_id)
                .with_for_update()
                .populate_existing()
                .first()
            )

            if existing is not None:
                if existing.is_active:
                    raise AlreadyEnrolled(customer_id)
                existing.is_active = True
                existing.deactivated_at = None
                existing.last_activity_at = datetime.utcnow()
                self._audit(
                    "account.reactivate", existing.id, created_by,
                    {"customer_id": customer_id, "available_points": existing.available_points},
                )
                logger.info(f"Reactivated loyalty account {existing.id} for customer {customer_id}")
                return existing

            now = datetime.utcnow()
            account = LoyaltyAccount(
                customer_id=customer_id,
                tier=self._tier_engine(program).base_tier,
                available_points=0,
                pending_points=0,
                lifetime_earned=0,
                lifetime_redeemed=0,
                enrollment_date=now,
                last_activity_at=now,
                is_active=True,
            )
            self.db.add(account)
            try:
                self.db.flush()
            except IntegrityError:
                raise AlreadyEnrolled(customer_id)

            bonus = program.signup_bonus_points if signup_bonus is None else signup_bonus
            if bonus > 0:
                self.ledger.record_earn(
                    account.id,
                    bonus,
                    reference_type="enrollment",
                    reference_id=str(customer_id),
                    transaction_type=TransactionType.BONUS,
                    description="Signup bonus",
                    created_by=created_by,
                )

            self._audit(
                "account.enroll", account.id, created_by,
                {"customer_id": customer_id, "signup_bonus": bonus},
            )

        logger.info(f"Enrolled customer {customer_id} as loyalty account {account.id}")
        return account

    def deactivate(self, account_id: int, actor_id: Optional[int] = None) -> LoyaltyAccount:
        """Soft-disable the account. The balance stays but can no longer be used."""
        with atomic(self.db):
            account = self.lock_account(account_id)
            if not account.is_active:
                return account
            account.is_active = False
            account.deactivated_at = datetime.utcnow()
            self._audit(
                "account.deactivate", account.id, actor_id,
                {"customer_id": account.customer_id, "available_points": account.available_points},
            )

        logger.info(f"Deactivated loyalty account {account_id}")
        return account

    def award_occasion_bonus(
        self,
        customer_id: int,
        occasion: str,
        reference_id: str,
        created_by: Optional[int] = None,
    ) -> Optional[PointsTransaction]:
        """Award the program's birthday or anniversary bonus once per reference.

        ``reference_id`` identifies the occasion (e.g. ``"2026"`` for a
        birthday year). Returns ``None`` when the program awards nothing for
        the occasion.
        """
        program = self.config_source.load()
        try:
            points = program.occasion_bonus(occasion)
        except ValueError as e:
            raise APIValidationError(str(e), {"occasion": occasion})

        if points <= 0:
            logger.info(f"No {occasion} bonus configured, skipping customer {customer_id}")
            return None

        account = self.get_account(customer_id)
        reference_type = f"{occasion}_bonus"

        with atomic(self.db):
            account = self.lock_account(account.id)
            self.require_active(account)

            already_awarded = self.db.query(PointsTransaction.id).filter(
                PointsTransaction.account_id == account.id,
                PointsTransaction.transaction_type == TransactionType.BONUS,
                PointsTransaction.reference_type == reference_type,
                PointsTransaction.reference_id == str(reference_id),
                PointsTransaction.status != TransactionStatus.REVERSED,
            ).first()
            if already_awarded:
                raise BonusAlreadyAwarded(occasion, reference_id)

            entry = self.ledger.record_earn(
                account.id,
                points,
                reference_type=reference_type,
                reference_id=str(reference_id),
                transaction_type=TransactionType.BONUS,
                description=f"{occasion.title()} bonus",
                created_by=created_by,
            )

        return entry

    # ========== Summary ==========

    def get_summary(self, customer_id: int) -> LoyaltyAccountSummary:
        account = self.get_account(customer_id)
        engine = self._tier_engine(self.config_source.load())
        next_tier = engine.next_tier(account.lifetime_earned)

        return LoyaltyAccountSummary(
            account_id=account.id,
            customer_id=account.customer_id,
            tier=account.tier,
            tier_benefits=engine.benefits_for(account.tier),
            available_points=account.available_points,
            pending_points=account.pending_points,
            lifetime_earned=account.lifetime_earned,
            lifetime_redeemed=account.lifetime_redeemed,
            next_tier=next_tier.name if next_tier else None,
            points_to_next_tier=(
                next_tier.min_lifetime_points - account.lifetime_earned if next_tier else None
            ),
            points_expiring_soon=self.ledger.expiring_points(account.id, EXPIRING_SOON_DAYS),
            is_active=account.is_active,
        )

    # ========== Helper Methods ==========

    def _tier_engine(self, program) -> TierEngine:
        return self.tier_engine or TierEngine.from_program(program)

    def _audit(self, action: str, account_id: int, actor_id: Optional[int], details: dict) -> None:
        event = AuditEvent(
            action=action,
            entity_type="loyalty_account",
            entity_id=account_id,
            actor_id=actor_id,
            details=details,
        )
        after_commit(self.db, lambda: self.audit.record(event))
