"""backend/workers/tests/test_points_expiration_worker.py

Unit tests for the points expiration worker: result shape and database
session cleanup, including when the sweep fails.
"""

import pytest
from unittest.mock import Mock, patch
from datetime import datetime, timezone

from modules.loyalty.schemas.loyalty_schemas import ExpirationReminderBatchResponse
from modules.loyalty.services.points_ledger import ExpirationSummary
from workers.points_expiration_worker import PointsExpirationWorker, WorkerSettings


class TestPointsExpirationWorker:
    """Test the points expiration task"""

    @pytest.mark.asyncio
    async def test_expire_points_session_cleanup(self):
        """Test that database session is properly closed after the sweep"""

        mock_session = Mock()

        with patch('workers.points_expiration_worker.SessionLocal', return_value=mock_session):
            with patch('workers.points_expiration_worker.PointsLedger') as MockLedger:
                MockLedger.return_value.expire_outstanding.return_value = ExpirationSummary(
                    accounts_processed=3, lots_expired=4, points_expired=250
                )

                result = await PointsExpirationWorker.expire_points({})

                mock_session.close.assert_called_once()
                MockLedger.assert_called_once_with(mock_session)

                assert result["task"] == "expire_points"
                assert result["skipped"] is False
                assert result["accounts_processed"] == 3
                assert result["lots_expired"] == 4
                assert result["points_expired"] == 250
                assert result["failed_accounts"] == []
                assert "duration_ms" in result

    @pytest.mark.asyncio
    async def test_expire_points_as_of(self):
        """Test the cutoff date is passed through to the ledger"""

        mock_session = Mock()

        with patch('workers.points_expiration_worker.SessionLocal', return_value=mock_session):
            with patch('workers.points_expiration_worker.PointsLedger') as MockLedger:
                MockLedger.return_value.expire_outstanding.return_value = ExpirationSummary()

                await PointsExpirationWorker.expire_points({}, as_of="2026-01-31T00:00:00")

                MockLedger.return_value.expire_outstanding.assert_called_once_with(
                    datetime(2026, 1, 31)
                )

    @pytest.mark.asyncio
    async def test_expire_points_as_of_utc_suffix(self):
        """Test a cutoff ending in Z is accepted"""

        mock_session = Mock()

        with patch('workers.points_expiration_worker.SessionLocal', return_value=mock_session):
            with patch('workers.points_expiration_worker.PointsLedger') as MockLedger:
                MockLedger.return_value.expire_outstanding.return_value = ExpirationSummary()

                result = await PointsExpirationWorker.expire_points({}, as_of="2026-01-31T00:00:00Z")

                MockLedger.return_value.expire_outstanding.assert_called_once_with(
                    datetime(2026, 1, 31, tzinfo=timezone.utc)
                )
                assert "error" not in result

    @pytest.mark.asyncio
    async def test_expire_points_session_cleanup_on_error(self):
        """Test that database session is closed even when the sweep fails"""

        mock_session = Mock()

        with patch('workers.points_expiration_worker.SessionLocal', return_value=mock_session):
            with patch('workers.points_expiration_worker.PointsLedger') as MockLedger:
                MockLedger.return_value.expire_outstanding.side_effect = Exception("database is down")

                result = await PointsExpirationWorker.expire_points({})

                mock_session.close.assert_called_once()
                assert result["error"] == "database is down"

    @pytest.mark.asyncio
    async def test_expire_points_reports_failed_accounts(self):
        mock_session = Mock()

        with patch('workers.points_expiration_worker.SessionLocal', return_value=mock_session):
            with patch('workers.points_expiration_worker.PointsLedger') as MockLedger:
                MockLedger.return_value.expire_outstanding.return_value = ExpirationSummary(
                    accounts_processed=1, failed_accounts=[7]
                )

                result = await PointsExpirationWorker.expire_points({})

                assert result["failed_accounts"] == [7]


class TestExpirationReminderJob:
    """Test the daily expiration reminder task"""

    @pytest.mark.asyncio
    async def test_reminders_use_configured_window(self):
        mock_session = Mock()

        with patch('workers.points_expiration_worker.SessionLocal', return_value=mock_session):
            with patch('workers.points_expiration_worker.ExpirationReminderService') as MockService:
                MockService.return_value.send_batch.return_value = ExpirationReminderBatchResponse(
                    reminders_sent=2, points_expiring=150, failed_accounts=[9]
                )
                with patch('workers.points_expiration_worker.settings') as mock_settings:
                    mock_settings.expiration_reminder_days = 7

                    result = await PointsExpirationWorker.send_expiration_reminders({})

                MockService.return_value.send_batch.assert_called_once_with(within_days=7)
                mock_session.close.assert_called_once()
                assert result["reminders_sent"] == 2
                assert result["points_expiring"] == 150
                assert result["failed_accounts"] == [9]

    @pytest.mark.asyncio
    async def test_reminder_session_closed_on_error(self):
        mock_session = Mock()

        with patch('workers.points_expiration_worker.SessionLocal', return_value=mock_session):
            with patch('workers.points_expiration_worker.ExpirationReminderService') as MockService:
                MockService.return_value.send_batch.side_effect = Exception("smtp down")

                result = await PointsExpirationWorker.send_expiration_reminders({}, within_days=3)

                mock_session.close.assert_called_once()
                assert result["error"] == "smtp down"


class TestWorkerSettings:
    def test_daily_cron_registered(self):
        cron_job = WorkerSettings["cron_jobs"][0]

        assert cron_job.unique is True
        assert PointsExpirationWorker.expire_points in WorkerSettings["functions"]

    def test_reminder_cron_registered(self):
        assert len(WorkerSettings["cron_jobs"]) == 2
        assert PointsExpirationWorker.send_expiration_reminders in WorkerSettings["functions"]
