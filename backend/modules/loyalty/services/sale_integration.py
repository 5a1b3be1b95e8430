# backend/modules/loyalty/services/sale_integration.py

from sqlalchemy.orm import Session
from typing import Dict, Any, List, Optional
from collections import Counter
import logging

from core.database import atomic
from ..models.loyalty_models import LoyaltyAccount
from ..models.ledger_models import (
    PointsTransaction, TransactionType, TransactionStatus,
)
from ..schemas.loyalty_schemas import PurchaseContext
from ..exceptions import NotEnrolled
from .earning_rules import EarningBreakdown, EarningRuleEngine, RuleSpec
from .points_ledger import PointsLedger


logger = logging.getLogger(__name__)

SALE_REFERENCE = "sale"


class SaleLoyaltyIntegration:
    """Awards points when a sale completes and takes them back when it is refunded"""

    def __init__(self, db: Session, ledger: Optional[PointsLedger] = None):
        self.db = db
        self.ledger = ledger or PointsLedger(db)
        self.rule_engine = EarningRuleEngine(db)

    def process_completed_sale(
        self,
        customer_id: int,
        purchase: PurchaseContext,
        created_by: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Evaluate the earning rules for a sale and credit the points.

        The duplicate-sale check, the rule usage counts and the credit all run
        under the account row lock, so two deliveries of the same sale credit
        it once.
        """
        logger.info(f"Processing loyalty points for sale {purchase.sale_id} of customer {customer_id}")

        with atomic(self.db):
            account = self.db.query(LoyaltyAccount).filter(
                LoyaltyAccount.customer_id == customer_id
            ).first()
            if account is not None:
                account = self.ledger.accounts.lock_account(account.id)
            if account is None or not account.is_active:
                logger.info(f"Customer {customer_id} has no active loyalty account, no points awarded")
                return {"success": True, "points_earned": 0, "skipped": "not_enrolled"}

            if purchase.sale_id and self._sale_already_credited(account.id, purchase.sale_id):
                logger.info(f"Sale {purchase.sale_id} already earned points, skipping")
                return {"success": True, "points_earned": 0, "skipped": "already_processed"}

            breakdown = self._breakdown(account, purchase)

            if breakdown.total_points <= 0:
                return {"success": True, "points_earned": 0, "rule_ids": []}

            entry = self.ledger.record_earn(
                account.id,
                breakdown.total_points,
                reference_type=SALE_REFERENCE,
                reference_id=purchase.sale_id,
                created_by=created_by,
                description=f"Points earned on sale {purchase.sale_id}" if purchase.sale_id else "Points earned on sale",
                transaction_data={
                    "rule_ids": breakdown.rule_ids,
                    "purchase_amount": str(purchase.amount),
                    "program_cap_applied": breakdown.program_cap_applied,
                },
            )

        return {
            "success": True,
            "points_earned": entry.amount,
            "transaction_id": entry.id,
            "rule_ids": breakdown.rule_ids,
            "balance": entry.balance_after,
        }

    def preview_points(self, customer_id: int, purchase: PurchaseContext) -> EarningBreakdown:
        """Points the purchase would earn, without writing anything"""
        account = self.db.query(LoyaltyAccount).filter(
            LoyaltyAccount.customer_id == customer_id
        ).first()
        if account is None:
            raise NotEnrolled(customer_id, resource="Customer")
        return self._breakdown(account, purchase)

    def reverse_sale(
        self,
        sale_id: str,
        reason: str = "Sale refunded",
        created_by: Optional[int] = None,
    ) -> List[PointsTransaction]:
        """Reverse every active ledger entry that references the sale"""
        reversals = []
        with atomic(self.db):
            entries = (
                self.db.query(PointsTransaction)
                .filter(
                    PointsTransaction.reference_type == SALE_REFERENCE,
                    PointsTransaction.reference_id == str(sale_id),
                    PointsTransaction.transaction_type != TransactionType.REVERSAL,
                    PointsTransaction.status == TransactionStatus.ACTIVE,
                )
                .order_by(PointsTransaction.id)
                .all()
            )
            for entry in entries:
                reversals.append(self.ledger.reverse(entry.id, reason, created_by=created_by))

        logger.info(f"Reversed {len(reversals)} loyalty entries for sale {sale_id}")
        return reversals

    def _breakdown(self, account: LoyaltyAccount, purchase: PurchaseContext) -> EarningBreakdown:
        program = self.ledger.config_source.load()
        rules = self.rule_engine.active_rules()
        rules.append(RuleSpec.base_rate(program.points_per_currency_unit))

        context = purchase.model_copy(update={"rule_usage": self._rule_usage(account.id)})
        return self.rule_engine.evaluate_detailed(
            context,
            account.tier,
            rules=rules,
            program_cap=program.max_points_per_transaction,
        )

    def _sale_already_credited(self, account_id: int, sale_id: str) -> bool:
        return self.db.query(PointsTransaction.id).filter(
            PointsTransaction.account_id == account_id,
            PointsTransaction.transaction_type == TransactionType.EARN,
            PointsTransaction.reference_type == SALE_REFERENCE,
            PointsTransaction.reference_id == str(sale_id),
        ).first() is not None

    def _rule_usage(self, account_id: int) -> Dict[int, int]:
        """How many times each earning rule has credited this account"""
        rows = self.db.query(PointsTransaction.transaction_data).filter(
            PointsTransaction.account_id == account_id,
            PointsTransaction.transaction_type == TransactionType.EARN,
            PointsTransaction.status != TransactionStatus.REVERSED,
        ).all()

        usage = Counter()
        for (data,) in rows:
            for rule_id in (data or {}).get("rule_ids", []):
                usage[int(rule_id)] += 1
        return dict(usage)
