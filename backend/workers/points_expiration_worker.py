"""backend/workers/points_expiration_worker.py

Background worker that expires loyalty points past their expiration date.
The job runs on Arq once a day; the time is configurable through
``POINTS_EXPIRATION_CRON_HOUR`` / ``POINTS_EXPIRATION_CRON_MINUTE``. Each
account is expired in its own transaction, and a sweep that overlaps a
running one is skipped. A second daily job reminds members whose points
expire within ``EXPIRATION_REMINDER_DAYS``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Any

from arq import cron
from arq.connections import RedisSettings
from dateutil.parser import isoparse

from core.config import settings
from core.database import SessionLocal, get_engine
from modules.loyalty.services.expiration_reminders import ExpirationReminderService
from modules.loyalty.services.points_ledger import PointsLedger


logger = logging.getLogger(__name__)


class PointsExpirationWorker:  # pylint: disable=too-few-public-methods
    """Async tasks used by Arq for loyalty points expiration."""

    @staticmethod
    async def expire_points(ctx: Dict[str, Any], as_of: str | None = None) -> Dict[str, Any]:
        """Expire the outstanding points of every lot due by ``as_of`` (ISO date, default now)."""

        start = datetime.utcnow()
        cutoff = isoparse(as_of) if as_of else start

        db = SessionLocal()
        try:
            summary = PointsLedger(db).expire_outstanding(cutoff)
        except Exception as e:
            logger.error(f"Points expiration sweep failed: {e}")
            return {
                "task": "expire_points",
                "error": str(e),
                "duration_ms": int((datetime.utcnow() - start).total_seconds() * 1000),
            }
        finally:
            db.close()

        if summary.failed_accounts:
            logger.warning(
                f"Points expiration failed for accounts {summary.failed_accounts}; "
                "they will be retried on the next run"
            )

        return {
            "task": "expire_points",
            "skipped": summary.skipped,
            "accounts_processed": summary.accounts_processed,
            "lots_expired": summary.lots_expired,
            "points_expired": summary.points_expired,
            "failed_accounts": summary.failed_accounts,
            "duration_ms": int((datetime.utcnow() - start).total_seconds() * 1000),
        }

    @staticmethod
    async def send_expiration_reminders(
        ctx: Dict[str, Any], within_days: int | None = None
    ) -> Dict[str, Any]:
        """Remind members whose points expire within ``within_days`` (default from settings)."""

        start = datetime.utcnow()
        within_days = within_days or settings.expiration_reminder_days

        db = SessionLocal()
        try:
            batch = ExpirationReminderService(db).send_batch(within_days=within_days)
        except Exception as e:
            logger.error(f"Expiration reminders failed: {e}")
            return {
                "task": "send_expiration_reminders",
                "error": str(e),
                "duration_ms": int((datetime.utcnow() - start).total_seconds() * 1000),
            }
        finally:
            db.close()

        return {
            "task": "send_expiration_reminders",
            "within_days": within_days,
            "reminders_sent": batch.reminders_sent,
            "points_expiring": batch.points_expiring,
            "failed_accounts": batch.failed_accounts,
            "duration_ms": int((datetime.utcnow() - start).total_seconds() * 1000),
        }


# -------------------------------------------------------------------------
# Arq worker configuration
# -------------------------------------------------------------------------


async def startup(ctx: Dict[str, Any]):
    get_engine()
    logger.info("Points-expiration worker starting up")
    ctx["startup_time"] = datetime.utcnow()


async def shutdown(ctx: Dict[str, Any]):
    logger.info("Points-expiration worker shutting down")


# Worker settings consumed by arq.run_worker
WorkerSettings = {
    "redis_settings": RedisSettings.from_dsn(settings.redis_url),
    "max_jobs": 1,
    "job_timeout": 1800,
    "keep_result": 86400,  # 24h
    "functions": [
        PointsExpirationWorker.expire_points,
        PointsExpirationWorker.send_expiration_reminders,
    ],
    "cron_jobs": [
        cron(
            PointsExpirationWorker.expire_points,
            hour=settings.points_expiration_cron_hour,
            minute=settings.points_expiration_cron_minute,
            unique=True,
        ),
        cron(
            PointsExpirationWorker.send_expiration_reminders,
            hour=settings.expiration_reminder_cron_hour,
            minute=settings.expiration_reminder_cron_minute,
            unique=True,
        ),
    ],
    "on_startup": startup,
    "on_shutdown": shutdown,
}


if __name__ == "__main__":
    from arq import run_worker

    run_worker(WorkerSettings)
