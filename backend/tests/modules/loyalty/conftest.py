"""
Fixtures for the loyalty ledger tests.

Each test gets its own file-backed SQLite database, so sessions opened from
other threads (and the audit recorder's own session) see the same data.
"""

import pytest
from decimal import Decimal
from sqlalchemy.orm import sessionmaker

from core.database import Base, build_engine
from core.audit_logger import AuditRecorder
from modules.loyalty.models import (
    LoyaltyAccount,
    LoyaltyProgram,
    EarningRule,
    RewardItem,
)
from modules.loyalty.services.account_service import LoyaltyAccountService
from modules.loyalty.services.points_ledger import PointsLedger
from modules.loyalty.services.redemption_service import RedemptionService


ALL_TIERS = ["bronze", "silver", "gold", "platinum"]


@pytest.fixture
def engine(tmp_path):
    """Engine on a fresh database file with all tables created"""
    engine = build_engine(f"sqlite:///{tmp_path / 'loyalty.db'}", lock_timeout_seconds=10)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def audit(session_factory):
    return AuditRecorder(session_factory)


@pytest.fixture
def ledger(db_session, audit):
    return PointsLedger(db_session, audit=audit)


@pytest.fixture
def account_service(ledger):
    return ledger.accounts


@pytest.fixture
def redemption_service(db_session, ledger):
    return RedemptionService(db_session, ledger=ledger)


@pytest.fixture
def make_account(account_service, ledger):
    """Enroll a customer and give them a starting balance"""

    def _make_account(customer_id: int = 1001, points: int = 0) -> LoyaltyAccount:
        account = account_service.enroll(customer_id, signup_bonus=0)
        if points:
            ledger.record_earn(account.id, points, reference_type="test")
        return account

    return _make_account


@pytest.fixture
def account(make_account):
    """Bronze account holding 100 points"""
    return make_account(customer_id=1001, points=100)


@pytest.fixture
def program(db_session):
    program = LoyaltyProgram(
        name="House Rewards",
        points_per_currency_unit=Decimal("1.0"),
        expiration_months=12,
        signup_bonus_points=50,
        birthday_bonus_points=200,
        anniversary_bonus_points=0,
        minimum_redemption_points=0,
        is_active=True,
    )
    db_session.add(program)
    db_session.commit()
    return program


@pytest.fixture
def make_reward(db_session):
    def _make_reward(
        name: str = "Free Coffee",
        points_cost: int = 30,
        stock_quantity: int = -1,
        eligible_tiers=None,
        min_points_balance: int = 0,
        is_active: bool = True,
    ) -> RewardItem:
        reward = RewardItem(
            name=name,
            points_cost=points_cost,
            stock_quantity=stock_quantity,
            eligible_tiers=list(eligible_tiers or ALL_TIERS),
            min_points_balance=min_points_balance,
            is_active=is_active,
            total_redemptions=0,
        )
        db_session.add(reward)
        db_session.commit()
        return reward

    return _make_reward


@pytest.fixture
def reward(make_reward):
    return make_reward()


@pytest.fixture
def make_rule(db_session):
    def _make_rule(**fields) -> EarningRule:
        values = {
            "name": "Double points",
            "rule_type": "purchase",
            "points_multiplier": Decimal("1.0"),
            "fixed_points": 0,
            "minimum_purchase": Decimal("0"),
            "priority": 10,
            "is_exclusive": False,
            "is_active": True,
        }
        values.update(fields)
        rule = EarningRule(**values)
        db_session.add(rule)
        db_session.commit()
        return rule

    return _make_rule
