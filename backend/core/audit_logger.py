"""
Audit logging for loyalty ledger mutations.

Every successful mutation (enrollment, earn, redeem, reversal, expiration,
status change, ...) produces one ``AuditEvent``. The recorder writes it as a
JSON line to the ``audit`` logger and persists it to ``loyalty_audit_logs``
in a session of its own. Recording is best-effort: a failure is logged and
never propagates into the operation that produced the event.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index
from sqlalchemy.orm import Session, sessionmaker

from .database import Base

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "audit"


class AuditLog(Base):
    """Database model for audit logs."""

    __tablename__ = "loyalty_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    action = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    actor_id = Column(Integer, nullable=True, index=True)
    details = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_loyalty_audit_entity", "entity_type", "entity_id"),
        Index("idx_loyalty_audit_timestamp_action", "timestamp", "action"),
    )

    def __repr__(self):
        return f"<AuditLog(action='{self.action}', entity={self.entity_type}:{self.entity_id})>"


@dataclass
class AuditEvent:
    action: str
    entity_type: str
    entity_id: Any
    actor_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["entity_id"] = str(self.entity_id)
        data["timestamp"] = self.timestamp.isoformat()
        return data


def setup_audit_file_logger(log_dir: str) -> logging.Logger:
    """Attach a daily-rotating file handler to the ``audit`` logger."""
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    audit_logger.setLevel(logging.INFO)

    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    target = str((path / "audit.log").resolve())

    for handler in audit_logger.handlers:
        if getattr(handler, "baseFilename", None) == target:
            return audit_logger

    handler = TimedRotatingFileHandler(
        filename=target,
        when="midnight",
        interval=1,
        backupCount=365,  # Keep 1 year of logs
        encoding="utf-8",
    )
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )
    )
    audit_logger.addHandler(handler)
    return audit_logger


class AuditRecorder:
    """
    Records audit events to the ``audit`` logger and the database.

    Args:
        session_factory: Callable returning a new Session used only for the
            audit row. ``None`` disables database persistence.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self.session_factory = session_factory
        self.file_logger = logging.getLogger(AUDIT_LOGGER_NAME)

    @classmethod
    def for_session(cls, db: Session) -> "AuditRecorder":
        """Recorder persisting through its own session on ``db``'s engine."""
        from .config import settings

        if not settings.audit_persist_to_db:
            return cls()
        return cls(sessionmaker(bind=db.get_bind(), expire_on_commit=False))

    def record(self, event: AuditEvent) -> None:
        payload = event.to_dict()
        try:
            self.file_logger.info(f"AUDIT: {json.dumps(payload, default=str)}")
        except Exception as e:
            logger.error(f"Failed to write audit line for {event.action}: {e}")

        if self.session_factory is None:
            return

        session = None
        try:
            session = self.session_factory()
            session.add(
                AuditLog(
                    timestamp=event.timestamp,
                    action=event.action,
                    entity_type=event.entity_type,
                    entity_id=str(event.entity_id),
                    actor_id=event.actor_id,
                    details=json.loads(json.dumps(event.details, default=str)),
                )
            )
            session.commit()
        except Exception as e:
            logger.error(f"Failed to persist audit event {event.action}: {e}")
            if session is not None:
                session.rollback()
        finally:
            if session is not None:
                session.close()
