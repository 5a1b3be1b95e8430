# backend/modules/loyalty/services/earning_rules.py

"""
Earning rule evaluation.

Rules are evaluated on immutable ``RuleSpec`` snapshots so the computation is
a pure function of the purchase, the rules and the customer's tier. Rules run
in ascending ``priority`` (ties broken by id); every matching rule adds its
points, and a matching exclusive rule stops evaluation of the rules after it.
"""

from dataclasses import dataclass, field
from datetime import datetime, time
from decimal import Decimal
from typing import FrozenSet, Iterable, List, Optional, Sequence
import logging
import math

from sqlalchemy.orm import Session

from core.database_utils import to_naive_utc

from ..models.ledger_models import EarningRule
from ..schemas.loyalty_schemas import PurchaseContext

logger = logging.getLogger(__name__)

BASE_RATE_RULE_ID = 0
BASE_RATE_PRIORITY = 1_000_000


def _frozen(values, transform=None) -> frozenset:
    if not values:
        return frozenset()
    return frozenset(transform(v) if transform else v for v in values)


@dataclass(frozen=True)
class RuleSpec:
    id: int
    name: str
    points_multiplier: Decimal = Decimal("0")
    fixed_points: int = 0
    minimum_purchase: Decimal = Decimal("0")
    maximum_points_per_transaction: Optional[int] = None
    applicable_categories: FrozenSet[int] = frozenset()
    applicable_products: FrozenSet[int] = frozenset()
    excluded_products: FrozenSet[int] = frozenset()
    applicable_tiers: FrozenSet[str] = frozenset()
    valid_days: FrozenSet[int] = frozenset()
    valid_period_start: Optional[datetime] = None
    valid_period_end: Optional[datetime] = None
    valid_time_start: Optional[time] = None
    valid_time_end: Optional[time] = None
    priority: int = 0
    is_exclusive: bool = False
    require_coupon_code: Optional[str] = None
    max_uses_per_customer: Optional[int] = None
    is_active: bool = True
    rule_type: str = "purchase"

    @classmethod
    def from_model(cls, rule: EarningRule) -> "RuleSpec":
        return cls(
            id=rule.id,
            name=rule.name,
            points_multiplier=Decimal(str(rule.points_multiplier or 0)),
            fixed_points=rule.fixed_points or 0,
            minimum_purchase=Decimal(str(rule.minimum_purchase or 0)),
            maximum_points_per_transaction=rule.maximum_points_per_transaction,
            applicable_categories=_frozen(rule.applicable_categories, int),
            applicable_products=_frozen(rule.applicable_products, int),
            excluded_products=_frozen(rule.excluded_products, int),
            applicable_tiers=_frozen(rule.applicable_tiers, lambda t: str(t).lower()),
            valid_days=_frozen(rule.valid_days, int),
            valid_period_start=to_naive_utc(rule.valid_period_start),
            valid_period_end=to_naive_utc(rule.valid_period_end),
            valid_time_start=rule.valid_time_start,
            valid_time_end=rule.valid_time_end,
            priority=rule.priority or 0,
            is_exclusive=bool(rule.is_exclusive),
            require_coupon_code=rule.require_coupon_code,
            max_uses_per_customer=rule.max_uses_per_customer,
            is_active=bool(rule.is_active),
            rule_type=rule.rule_type or "purchase",
        )

    @classmethod
    def base_rate(cls, points_per_currency_unit: Decimal) -> "RuleSpec":
        """Catch-all rule awarding the program's standard earning rate."""
        return cls(
            id=BASE_RATE_RULE_ID,
            name="Base earning rate",
            points_multiplier=Decimal(str(points_per_currency_unit)),
            priority=BASE_RATE_PRIORITY,
            rule_type="base_rate",
        )


@dataclass(frozen=True)
class Contribution:
    rule_id: int
    rule_name: str
    points: int


@dataclass(frozen=True)
class EarningBreakdown:
    total_points: int = 0
    contributions: List[Contribution] = field(default_factory=list)
    program_cap_applied: bool = False

    @property
    def rule_ids(self) -> List[int]:
        return [c.rule_id for c in self.contributions]


def _in_time_window(moment: time, start: Optional[time], end: Optional[time]) -> bool:
    if start is None and end is None:
        return True
    if start is None:
        return moment <= end
    if end is None:
        return moment >= start
    if start <= end:
        return start <= moment <= end
    # Window wraps midnight, e.g. 22:00-02:00
    return moment >= start or moment <= end


def rule_matches(rule: RuleSpec, purchase: PurchaseContext, customer_tier: str) -> bool:
    """Whether ``rule`` applies to ``purchase`` for a customer in ``customer_tier``."""
    if not rule.is_active:
        return False

    moment = purchase.timestamp
    if rule.valid_period_start and moment < rule.valid_period_start:
        return False
    if rule.valid_period_end and moment > rule.valid_period_end:
        return False
    if rule.valid_days and moment.weekday() not in rule.valid_days:
        return False
    if not _in_time_window(moment.time(), rule.valid_time_start, rule.valid_time_end):
        return False

    if rule.applicable_tiers and (customer_tier or "").lower() not in rule.applicable_tiers:
        return False

    if rule.applicable_categories or rule.applicable_products:
        if not (
            rule.applicable_categories & purchase.category_ids
            or rule.applicable_products & purchase.product_ids
        ):
            return False
    if rule.excluded_products & purchase.product_ids:
        return False

    if purchase.amount < rule.minimum_purchase:
        return False

    if rule.require_coupon_code:
        if purchase.coupon_code != rule.require_coupon_code.strip().upper():
            return False

    if rule.max_uses_per_customer is not None:
        if purchase.rule_usage.get(rule.id, 0) >= rule.max_uses_per_customer:
            return False

    return True


def rule_points(rule: RuleSpec, amount: Decimal) -> int:
    points = math.floor(Decimal(amount) * rule.points_multiplier) + rule.fixed_points
    if rule.maximum_points_per_transaction is not None:
        points = min(points, rule.maximum_points_per_transaction)
    return max(0, points)


def evaluate_detailed(
    purchase: PurchaseContext,
    active_rules: Iterable[RuleSpec],
    customer_tier: str,
    program_cap: Optional[int] = None,
) -> EarningBreakdown:
    contributions = []
    total = 0

    for rule in sorted(active_rules, key=lambda r: (r.priority, r.id)):
        if not rule_matches(rule, purchase, customer_tier):
            continue
        points = rule_points(rule, purchase.amount)
        if points > 0:
            contributions.append(Contribution(rule.id, rule.name, points))
            total += points
        if rule.is_exclusive:
            break

    cap_applied = program_cap is not None and total > program_cap
    if cap_applied:
        total = program_cap

    return EarningBreakdown(
        total_points=total, contributions=contributions, program_cap_applied=cap_applied
    )


def evaluate(
    purchase: PurchaseContext,
    active_rules: Iterable[RuleSpec],
    customer_tier: str,
    program_cap: Optional[int] = None,
) -> int:
    """Points earned by ``purchase``; 0 when no rule matches."""
    return evaluate_detailed(purchase, active_rules, customer_tier, program_cap).total_points


class EarningRuleEngine:
    """Loads active earning rules and evaluates purchases against them"""

    def __init__(self, db: Session):
        self.db = db

    def active_rules(self) -> List[RuleSpec]:
        rules = (
            self.db.query(EarningRule)
            .filter(EarningRule.is_active.is_(True))
            .order_by(EarningRule.priority, EarningRule.id)
            .all()
        )
        return [RuleSpec.from_model(rule) for rule in rules]

    def evaluate(
        self,
        purchase: PurchaseContext,
        customer_tier: str,
        rules: Optional[Sequence[RuleSpec]] = None,
        program_cap: Optional[int] = None,
    ) -> int:
        return self.evaluate_detailed(purchase, customer_tier, rules, program_cap).total_points

    def evaluate_detailed(
        self,
        purchase: PurchaseContext,
        customer_tier: str,
        rules: Optional[Sequence[RuleSpec]] = None,
        program_cap: Optional[int] = None,
    ) -> EarningBreakdown:
        if rules is None:
            rules = self.active_rules()
        breakdown = evaluate_detailed(purchase, rules, customer_tier, program_cap)
        logger.debug(
            f"Purchase of {purchase.amount} earns {breakdown.total_points} points "
            f"from rules {breakdown.rule_ids}"
        )
        return breakdown
