# backend/tests/modules/loyalty/test_points_ledger.py

import pytest
from datetime import datetime, timedelta, timezone

from dateutil.relativedelta import relativedelta

from core.error_handling import NotFoundError, TransactionTimeoutError
from modules.loyalty.models import (
    LoyaltyAccount,
    PointsTransaction,
    TransactionType,
    TransactionDirection,
    TransactionStatus,
)
from modules.loyalty.exceptions import (
    AccountInactive,
    AlreadyReversed,
    InsufficientBalance,
    InvalidAmount,
    NotEnrolled,
    TransactionNotReversible,
)
from modules.loyalty.schemas.loyalty_schemas import BulkAdjustmentItem
from modules.loyalty.services import points_ledger as points_ledger_module


def _entry_count(db_session, account_id):
    return db_session.query(PointsTransaction).filter(
        PointsTransaction.account_id == account_id
    ).count()


class TestRecordEarn:
    """Test crediting earned points"""

    def test_earn_writes_entry_and_balance(self, ledger, make_account):
        """Test an earn entry records the balance before and after"""
        account = make_account(points=0)

        entry = ledger.record_earn(account.id, 250, reference_type="sale", reference_id="S-1")

        assert entry.transaction_type == TransactionType.EARN
        assert entry.direction == TransactionDirection.CREDIT
        assert entry.amount == 250
        assert entry.balance_before == 0
        assert entry.balance_after == 250
        assert entry.status == TransactionStatus.ACTIVE
        assert account.available_points == 250
        assert account.lifetime_earned == 250

    def test_earn_uses_program_expiration(self, ledger, make_account):
        """Test points expire twelve months after they are earned by default"""
        account = make_account(points=0)

        entry = ledger.record_earn(account.id, 10)

        expected = datetime.utcnow() + relativedelta(months=12)
        assert abs(entry.expiration_date - expected) < timedelta(minutes=1)

    def test_earn_stores_aware_expiration_as_utc(self, ledger, make_account):
        account = make_account(points=0)
        expires = datetime(2027, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

        entry = ledger.record_earn(account.id, 10, expiration_date=expires)

        assert entry.expiration_date == datetime(2027, 1, 1, 12, 0)

    def test_earn_keeps_explicit_expiration(self, ledger, make_account):
        account = make_account(points=0)
        expires = datetime.utcnow() + timedelta(days=7)

        entry = ledger.record_earn(account.id, 10, expiration_date=expires)

        assert entry.expiration_date == expires

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True, "10", None])
    def test_earn_rejects_invalid_amount(self, ledger, account, db_session, amount):
        """Test non-positive or non-integer amounts are rejected before any write"""
        before = _entry_count(db_session, account.id)

        with pytest.raises(InvalidAmount) as exc_info:
            ledger.record_earn(account.id, amount)

        assert exc_info.value.error_code == "INVALID_AMOUNT"
        assert _entry_count(db_session, account.id) == before

    def test_earn_unknown_account(self, ledger):
        with pytest.raises(NotEnrolled):
            ledger.record_earn(999999, 10)

    def test_earn_on_deactivated_account(self, ledger, account, account_service):
        account_service.deactivate(account.id)

        with pytest.raises(AccountInactive):
            ledger.record_earn(account.id, 10)

    def test_earn_rejects_debit_types(self, ledger, account):
        with pytest.raises(ValueError):
            ledger.record_earn(account.id, 10, transaction_type=TransactionType.REDEEM)


class TestRecordRedeem:
    """Test debiting redeemed points"""

    def test_redeem_debits_balance(self, ledger, account):
        entry = ledger.record_redeem(account.id, 40, reference_type="redemption")

        assert entry.direction == TransactionDirection.DEBIT
        assert entry.balance_before == 100
        assert entry.balance_after == 60
        assert account.available_points == 60
        assert account.lifetime_redeemed == 40

    def test_redeem_exact_balance(self, ledger, account):
        """Test the whole balance can be spent, leaving zero"""
        entry = ledger.record_redeem(account.id, 100)

        assert entry.balance_after == 0

    def test_insufficient_balance(self, ledger, account, db_session):
        """Test redeeming more than the balance is rejected without a write"""
        before = _entry_count(db_session, account.id)

        with pytest.raises(InsufficientBalance) as exc_info:
            ledger.record_redeem(account.id, 101)

        assert exc_info.value.details == {"available": 100, "required": 101}
        assert "have 100, need 101" in exc_info.value.message
        assert _entry_count(db_session, account.id) == before
        db_session.refresh(account)
        assert account.available_points == 100

    def test_redeem_on_deactivated_account(self, ledger, account, account_service):
        account_service.deactivate(account.id)

        with pytest.raises(AccountInactive):
            ledger.record_redeem(account.id, 10)


class TestRecordAdjustment:
    """Test manual adjustments"""

    def test_credit_adjustment_leaves_lifetime_counters(self, ledger, account):
        entry = ledger.record_adjustment(
            account.id, 25, TransactionDirection.CREDIT, "Goodwill", created_by=7
        )

        assert entry.transaction_type == TransactionType.ADJUSTMENT
        assert entry.description == "Goodwill"
        assert entry.created_by == 7
        assert account.available_points == 125
        assert account.lifetime_earned == 100

    def test_debit_adjustment_cannot_overdraw(self, ledger, account):
        with pytest.raises(InsufficientBalance):
            ledger.record_adjustment(account.id, 500, "debit", "Correction")

    def test_debit_adjustment(self, ledger, account):
        entry = ledger.record_adjustment(account.id, 30, "debit", "Correction")

        assert entry.signed_amount == -30
        assert account.available_points == 70
        assert account.lifetime_redeemed == 0

    def test_bulk_adjustment_keeps_successful_items(self, ledger, make_account, db_session):
        first = make_account(customer_id=1101, points=100)
        second = make_account(customer_id=1102, points=10)
        items = [
            BulkAdjustmentItem(account_id=first.id, amount=20, direction="credit", reason="Promo"),
            BulkAdjustmentItem(account_id=second.id, amount=50, direction="debit", reason="Fix"),
            BulkAdjustmentItem(account_id=999999, amount=5, direction="credit", reason="Promo"),
            BulkAdjustmentItem(account_id=second.id, amount=5, direction="debit", reason="Fix"),
        ]

        outcome = ledger.record_adjustments(items, created_by=3)

        assert [e.account_id for e in outcome.succeeded] == [first.id, second.id]
        assert all(e.created_by == 3 for e in outcome.succeeded)
        assert outcome.errors == [
            {
                "index": 1,
                "account_id": second.id,
                "error_code": "INSUFFICIENT_BALANCE",
                "message": "Insufficient points balance: have 10, need 50",
            },
            {
                "index": 2,
                "account_id": 999999,
                "error_code": "NOT_ENROLLED",
                "message": "Loyalty account 999999 is not enrolled in the loyalty program",
            },
        ]
        db_session.expire_all()
        assert db_session.get(LoyaltyAccount, first.id).available_points == 120
        assert db_session.get(LoyaltyAccount, second.id).available_points == 5


class TestReverse:
    """Test reversing ledger entries"""

    def test_reverse_earn(self, ledger, make_account, db_session):
        """Test reversing an earn debits the points and marks the original"""
        account = make_account(points=0)
        earn = ledger.record_earn(account.id, 80)

        reversal = ledger.reverse(earn.id, "Sale refunded", created_by=3)

        assert reversal.transaction_type == TransactionType.REVERSAL
        assert reversal.direction == TransactionDirection.DEBIT
        assert reversal.amount == 80
        assert reversal.related_transaction_id == earn.id
        assert reversal.balance_after == 0

        db_session.refresh(earn)
        assert earn.status == TransactionStatus.REVERSED
        assert earn.reversal_reason == "Sale refunded"
        assert earn.reversed_at is not None
        assert account.lifetime_earned == 0

    def test_reverse_redeem_credits_back(self, ledger, account):
        redeem = ledger.record_redeem(account.id, 30)

        reversal = ledger.reverse(redeem.id, "Cancelled")

        assert reversal.direction == TransactionDirection.CREDIT
        assert account.available_points == 100
        assert account.lifetime_redeemed == 0

    def test_reverse_twice(self, ledger, account, db_session):
        """Test an entry can be reversed only once"""
        redeem = ledger.record_redeem(account.id, 30)
        ledger.reverse(redeem.id, "Cancelled")
        before = _entry_count(db_session, account.id)

        with pytest.raises(AlreadyReversed) as exc_info:
            ledger.reverse(redeem.id, "Cancelled again")

        assert exc_info.value.error_code == "ALREADY_REVERSED"
        assert _entry_count(db_session, account.id) == before

    def test_reversal_entries_are_not_reversible(self, ledger, account):
        redeem = ledger.record_redeem(account.id, 30)
        reversal = ledger.reverse(redeem.id, "Cancelled")

        with pytest.raises(TransactionNotReversible):
            ledger.reverse(reversal.id, "Undo the undo")

    def test_reverse_spent_earn_would_overdraw(self, ledger, make_account):
        """Test taking back points that were already spent is rejected"""
        account = make_account(points=0)
        earn = ledger.record_earn(account.id, 50)
        ledger.record_redeem(account.id, 40)

        with pytest.raises(InsufficientBalance):
            ledger.reverse(earn.id, "Refund")

    def test_reverse_unknown_transaction(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.reverse(424242, "Missing")

    def test_reverse_allowed_on_deactivated_account(self, ledger, account, account_service):
        redeem = ledger.record_redeem(account.id, 30)
        account_service.deactivate(account.id)

        ledger.reverse(redeem.id, "Cancelled")

        assert account.available_points == 100

    def test_redemption_debit_not_reversible(self, ledger, account, db_session):
        """Test the debit behind a redemption can only be undone by cancelling it"""
        redeem = ledger.record_redeem(account.id, 30, reference_type="redemption", reference_id="RDMABC")
        before = _entry_count(db_session, account.id)

        with pytest.raises(TransactionNotReversible) as exc_info:
            ledger.reverse(redeem.id, "Refund")

        assert exc_info.value.details["reason"] == "cancel the redemption instead"
        assert account.available_points == 70
        assert _entry_count(db_session, account.id) == before

    def test_reverse_redemption_debit(self, ledger, account):
        redeem = ledger.record_redeem(account.id, 30, reference_type="redemption", reference_id="RDMABC")

        reversal = ledger.reverse_redemption_debit(redeem.id, "Redemption RDMABC cancelled")

        assert reversal.related_transaction_id == redeem.id
        assert reversal.reference_type == "redemption"
        assert account.available_points == 100


class TestBalanceIdentity:
    """The balance always equals the signed sum of the ledger"""

    def test_identity_after_mixed_operations(self, ledger, make_account, db_session):
        account = make_account(points=0)
        earn = ledger.record_earn(account.id, 300)
        ledger.record_earn(account.id, 50, transaction_type=TransactionType.BONUS)
        redeem = ledger.record_redeem(account.id, 120)
        ledger.record_adjustment(account.id, 15, "credit", "Goodwill")
        ledger.reverse(redeem.id, "Cancelled")
        ledger.record_redeem(account.id, 200)

        db_session.refresh(account)
        assert account.available_points == 165
        assert ledger.reconstruct_balance(account.id) == account.available_points

        with pytest.raises(InsufficientBalance):
            ledger.reverse(earn.id, "Refund")
        assert ledger.reconstruct_balance(account.id) == 165

    def test_earn_then_reverse_nets_zero(self, ledger, make_account):
        account = make_account(points=0)
        earn = ledger.record_earn(account.id, 75)
        ledger.reverse(earn.id, "Refund")

        assert ledger.reconstruct_balance(account.id) == 0
        assert account.available_points == 0

    def test_balance_never_negative(self, ledger, make_account):
        account = make_account(points=10)

        for _ in range(3):
            try:
                ledger.record_redeem(account.id, 4)
            except InsufficientBalance:
                pass

        assert account.available_points == 2
        assert ledger.reconstruct_balance(account.id) == 2


class TestLedgerReads:
    """Test transaction history and lot queries"""

    def test_list_transactions_newest_first(self, ledger, make_account):
        account = make_account(points=0)
        first = ledger.record_earn(account.id, 10)
        second = ledger.record_earn(account.id, 20)
        third = ledger.record_redeem(account.id, 5)

        items, total = ledger.list_transactions(account.id, page=1, limit=2)

        assert total == 3
        assert [item.id for item in items] == [third.id, second.id]

        items, _ = ledger.list_transactions(account.id, page=2, limit=2)
        assert [item.id for item in items] == [first.id]

    def test_list_transactions_filters(self, ledger, make_account):
        account = make_account(points=0)
        ledger.record_earn(account.id, 10)
        redeem = ledger.record_redeem(account.id, 5)

        items, total = ledger.list_transactions(
            account.id, transaction_type=TransactionType.REDEEM
        )

        assert total == 1
        assert items[0].id == redeem.id

    def test_outstanding_lots_fifo(self, ledger, make_account):
        """Test debits consume the oldest lot first"""
        account = make_account(points=0)
        first = ledger.record_earn(account.id, 100)
        second = ledger.record_earn(account.id, 50)
        ledger.record_redeem(account.id, 120)

        lots = ledger.outstanding_lots(account.id)

        assert [(lot.transaction_id, lot.outstanding) for lot in lots] == [(second.id, 30)]
        assert first.id not in [lot.transaction_id for lot in lots]

    def test_expiring_points(self, ledger, make_account):
        account = make_account(points=0)
        now = datetime.utcnow()
        ledger.record_earn(account.id, 40, expiration_date=now + timedelta(days=10))
        ledger.record_earn(account.id, 60, expiration_date=now + timedelta(days=90))

        assert ledger.expiring_points(account.id, within_days=30) == 40
        assert ledger.expiring_points(account.id, within_days=120) == 100

    def test_expiring_lots_oldest_first(self, ledger, make_account):
        account = make_account(points=0)
        now = datetime.utcnow()
        later = ledger.record_earn(account.id, 30, expiration_date=now + timedelta(days=20))
        sooner = ledger.record_earn(account.id, 40, expiration_date=now + timedelta(days=5))
        ledger.record_earn(account.id, 60)

        lots = ledger.expiring_lots(account.id, within_days=30)

        assert sorted(lot.transaction_id for lot in lots) == sorted([later.id, sooner.id])
        assert sum(lot.outstanding for lot in lots) == 70


class TestExpiration:
    """Test the points expiration sweep"""

    def test_expires_outstanding_part_fifo(self, ledger, make_account, db_session):
        """Test only the unspent part of an expired lot is expired"""
        account = make_account(points=0)
        now = datetime.utcnow()
        old = ledger.record_earn(account.id, 100, expiration_date=now - timedelta(days=1))
        new = ledger.record_earn(account.id, 50, expiration_date=now + timedelta(days=365))
        ledger.record_redeem(account.id, 70)

        summary = ledger.expire_outstanding(now)

        assert summary.skipped is False
        assert summary.accounts_processed == 1
        assert summary.lots_expired == 1
        assert summary.points_expired == 30

        db_session.refresh(account)
        db_session.refresh(old)
        assert account.available_points == 50
        assert old.status == TransactionStatus.EXPIRED
        assert ledger.reconstruct_balance(account.id) == 50

        expiration = db_session.query(PointsTransaction).filter(
            PointsTransaction.transaction_type == TransactionType.EXPIRATION
        ).one()
        assert expiration.related_transaction_id == old.id
        assert expiration.amount == 30

        lots = ledger.outstanding_lots(account.id)
        assert [(lot.transaction_id, lot.outstanding) for lot in lots] == [(new.id, 50)]

    def test_fully_spent_lot_expires_nothing(self, ledger, make_account, db_session):
        account = make_account(points=0)
        now = datetime.utcnow()
        lot = ledger.record_earn(account.id, 40, expiration_date=now - timedelta(hours=1))
        ledger.record_redeem(account.id, 40)

        summary = ledger.expire_outstanding(now)

        assert summary.lots_expired == 1
        assert summary.points_expired == 0
        db_session.refresh(lot)
        assert lot.status == TransactionStatus.EXPIRED

    def test_sweep_is_idempotent(self, ledger, make_account):
        account = make_account(points=0)
        now = datetime.utcnow()
        ledger.record_earn(account.id, 40, expiration_date=now - timedelta(days=1))

        first = ledger.expire_outstanding(now)
        second = ledger.expire_outstanding(now)

        assert first.points_expired == 40
        assert second.accounts_processed == 0
        assert second.points_expired == 0

    def test_expired_lot_not_reversible(self, ledger, make_account):
        account = make_account(points=0)
        now = datetime.utcnow()
        lot = ledger.record_earn(account.id, 40, expiration_date=now - timedelta(days=1))
        ledger.expire_outstanding(now)

        with pytest.raises(TransactionNotReversible):
            ledger.reverse(lot.id, "Refund")

    def test_expiration_entry_not_reversible(self, ledger, make_account, db_session):
        account = make_account(points=0)
        now = datetime.utcnow()
        ledger.record_earn(account.id, 40, expiration_date=now - timedelta(days=1))
        ledger.expire_outstanding(now)
        expiration = db_session.query(PointsTransaction).filter(
            PointsTransaction.transaction_type == TransactionType.EXPIRATION
        ).one()

        with pytest.raises(TransactionNotReversible):
            ledger.reverse(expiration.id, "Undo")

    def test_concurrent_sweep_is_skipped(self, ledger, make_account):
        """Test a sweep started while another runs returns at once"""
        account = make_account(points=0)
        ledger.record_earn(account.id, 40, expiration_date=datetime.utcnow() - timedelta(days=1))

        with points_ledger_module._expiration_sweep_lock:
            summary = ledger.expire_outstanding()

        assert summary.skipped is True
        assert summary.points_expired == 0
        assert account.available_points == 40

    def test_failed_account_does_not_stop_sweep(self, ledger, make_account, monkeypatch):
        """Test one failing account is reported and the others still expire"""
        first = make_account(customer_id=1, points=0)
        second = make_account(customer_id=2, points=0)
        past = datetime.utcnow() - timedelta(days=1)
        ledger.record_earn(first.id, 10, expiration_date=past)
        ledger.record_earn(second.id, 20, expiration_date=past)

        original = ledger._expire_account

        def flaky_expire(account_id, as_of):
            if account_id == first.id:
                raise TransactionTimeoutError()
            return original(account_id, as_of)

        monkeypatch.setattr(ledger, "_expire_account", flaky_expire)

        summary = ledger.expire_outstanding()

        assert summary.failed_accounts == [first.id]
        assert summary.accounts_processed == 1
        assert summary.points_expired == 20
        assert ledger.reconstruct_balance(first.id) == 10

    def test_sweep_accepts_aware_cutoff(self, ledger, make_account):
        """Test a cutoff with a UTC offset is compared as UTC"""
        account = make_account(points=0)
        now = datetime.utcnow()
        ledger.record_earn(account.id, 40, expiration_date=now - timedelta(hours=3))
        ledger.record_earn(account.id, 25, expiration_date=now + timedelta(hours=3))

        # Same instant as now, written in UTC+02:00
        cutoff = (now + timedelta(hours=2)).replace(tzinfo=timezone(timedelta(hours=2)))
        summary = ledger.expire_outstanding(cutoff)

        assert summary.failed_accounts == []
        assert summary.points_expired == 40
        assert ledger.reconstruct_balance(account.id) == 25
