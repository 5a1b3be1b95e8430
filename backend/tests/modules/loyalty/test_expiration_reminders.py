# backend/tests/modules/loyalty/test_expiration_reminders.py

import pytest
from datetime import datetime, timedelta
from unittest.mock import Mock

from core.audit_logger import AuditLog
from modules.loyalty.exceptions import NotEnrolled
from modules.loyalty.services.expiration_reminders import ExpirationReminderService


@pytest.fixture
def notifier():
    notifier = Mock()
    notifier.notify_points_expiring.return_value = True
    return notifier


@pytest.fixture
def reminders(db_session, ledger, audit, notifier):
    return ExpirationReminderService(db_session, ledger=ledger, notifier=notifier, audit=audit)


class TestRemindCustomer:
    """Test reminding a single customer"""

    def test_reminds_about_expiring_points(self, reminders, ledger, make_account, notifier, session_factory):
        account = make_account(customer_id=6001, points=0)
        now = datetime.utcnow()
        ledger.record_earn(account.id, 40, expiration_date=now + timedelta(days=10, hours=1))
        ledger.record_earn(account.id, 25, expiration_date=now + timedelta(days=20))
        ledger.record_earn(account.id, 100, expiration_date=now + timedelta(days=200))

        result = reminders.remind_customer(6001, within_days=30, actor_id=5)

        assert result.sent is True
        assert result.points_expiring == 65
        assert result.current_balance == 165
        assert result.days_until_expiry == 11
        kwargs = notifier.notify_points_expiring.call_args.kwargs
        assert kwargs["customer_id"] == 6001
        assert kwargs["points_expiring"] == 65
        assert kwargs["earliest_expiration"] == result.earliest_expiration

        with session_factory() as session:
            logged = session.query(AuditLog).filter(
                AuditLog.action == "account.expiration_reminder"
            ).one()
        assert logged.entity_id == str(account.id)
        assert logged.actor_id == 5
        assert logged.details["points_expiring"] == 65

    def test_spent_points_are_not_expiring(self, reminders, ledger, make_account, notifier):
        account = make_account(customer_id=6002, points=0)
        ledger.record_earn(account.id, 50, expiration_date=datetime.utcnow() + timedelta(days=5))
        ledger.record_redeem(account.id, 50)

        result = reminders.remind_customer(6002)

        assert result.sent is False
        assert result.points_expiring == 0
        assert result.earliest_expiration is None
        notifier.notify_points_expiring.assert_not_called()

    def test_undelivered_reminder_is_reported(self, reminders, ledger, make_account, notifier):
        account = make_account(customer_id=6003, points=0)
        ledger.record_earn(account.id, 50, expiration_date=datetime.utcnow() + timedelta(days=5))
        notifier.notify_points_expiring.return_value = False

        result = reminders.remind_customer(6003)

        assert result.sent is False
        assert result.points_expiring == 50

    def test_overdue_lot_counts_as_today(self, reminders, ledger, make_account):
        account = make_account(customer_id=6004, points=0)
        ledger.record_earn(account.id, 50, expiration_date=datetime.utcnow() - timedelta(hours=3))

        result = reminders.remind_customer(6004)

        assert result.days_until_expiry == 0

    def test_not_enrolled(self, reminders):
        with pytest.raises(NotEnrolled):
            reminders.remind_customer(404404)


class TestReminderBatch:
    """Test reminding every member"""

    def test_batch_skips_members_with_nothing_expiring(
        self, reminders, ledger, make_account, account_service, notifier
    ):
        soon = datetime.utcnow() + timedelta(days=3)
        first = make_account(customer_id=6101, points=0)
        ledger.record_earn(first.id, 30, expiration_date=soon)
        make_account(customer_id=6102, points=80)
        former = make_account(customer_id=6103, points=0)
        ledger.record_earn(former.id, 70, expiration_date=soon)
        account_service.deactivate(former.id)
        last = make_account(customer_id=6104, points=0)
        ledger.record_earn(last.id, 45, expiration_date=soon)

        batch = reminders.send_batch(within_days=7)

        assert batch.reminders_sent == 2
        assert batch.points_expiring == 75
        assert [r.customer_id for r in batch.results] == [6101, 6104]
        assert batch.failed_accounts == []
        assert notifier.notify_points_expiring.call_count == 2

    def test_failed_account_does_not_stop_batch(self, reminders, ledger, make_account, monkeypatch):
        soon = datetime.utcnow() + timedelta(days=3)
        first = make_account(customer_id=6201, points=0)
        ledger.record_earn(first.id, 30, expiration_date=soon)
        second = make_account(customer_id=6202, points=0)
        ledger.record_earn(second.id, 20, expiration_date=soon)

        original = ledger.expiring_lots

        def flaky(account_id, within_days=30):
            if account_id == first.id:
                raise NotEnrolled(account_id)
            return original(account_id, within_days)

        monkeypatch.setattr(ledger, "expiring_lots", flaky)

        batch = reminders.send_batch()

        assert batch.failed_accounts == [first.id]
        assert batch.reminders_sent == 1
        assert batch.points_expiring == 20
