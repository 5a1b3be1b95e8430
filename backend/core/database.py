# backend/core/database.py

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings
from .database_utils import is_lock_timeout_error
from .error_handling import StorageUnavailableError, TransactionTimeoutError

logger = logging.getLogger(__name__)

Base = declarative_base()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)

_engine: Optional[Engine] = None

_DEPTH_KEY = "atomic_depth"
_AFTER_COMMIT_KEY = "after_commit"


def build_engine(
    database_url: str, lock_timeout_seconds: Optional[float] = None
) -> Engine:
    """Create an engine whose transactions serialise writers on the account row.

    SQLite has no row locks, so every transaction starts with
    ``BEGIN IMMEDIATE`` and waits on the busy timeout instead.
    """
    lock_timeout = lock_timeout_seconds or settings.lock_timeout_seconds
    engine_kwargs = {
        "echo": settings.log_sql_queries,
        "pool_pre_ping": True,
    }

    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": lock_timeout,
        }
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_size"] = settings.db_pool_size
        engine_kwargs["max_overflow"] = settings.db_max_overflow

    engine = create_engine(database_url, **engine_kwargs)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _disable_driver_transactions(dbapi_connection, connection_record):
            # pysqlite issues its own BEGIN; take that over
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine(settings.database_url)
        SessionLocal.configure(bind=_engine)
    return _engine


def get_db():
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def after_commit(db: Session, callback: Callable[[], None]) -> None:
    """Run ``callback`` once the enclosing atomic unit has committed.

    Outside an atomic unit the callback runs immediately.
    """
    if db.info.get(_DEPTH_KEY, 0) == 0:
        _run_callbacks(db, [callback])
        return
    db.info.setdefault(_AFTER_COMMIT_KEY, []).append(callback)


def _run_callbacks(db: Session, callbacks) -> None:
    for callback in callbacks:
        try:
            callback()
        except Exception as e:
            logger.error(f"After-commit callback failed: {e}")


def _apply_timeouts(db: Session) -> None:
    bind = db.get_bind()
    if bind.dialect.name != "postgresql":
        return
    lock_ms = int(settings.lock_timeout_seconds * 1000)
    statement_ms = int(settings.transaction_timeout_seconds * 1000)
    db.execute(text(f"SET LOCAL lock_timeout = '{lock_ms}ms'"))
    db.execute(text(f"SET LOCAL statement_timeout = '{statement_ms}ms'"))


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    Execute the enclosed block as one transaction against the backing store.

    The outermost ``atomic`` commits on success and rolls back on any error;
    nested uses join the outer unit. Driver-level failures are surfaced as
    ``TransactionTimeoutError`` (lock wait / statement timeout) or
    ``StorageUnavailableError``. Nothing is retried here: a retried write could
    land twice.

    Example:
        with atomic(db):
            account = db.query(LoyaltyAccount).with_for_update().first()
            account.available_points -= 10
    """
    depth = db.info.get(_DEPTH_KEY, 0)
    db.info[_DEPTH_KEY] = depth + 1

    if depth > 0:
        try:
            yield db
        finally:
            db.info[_DEPTH_KEY] = depth
        return

    try:
        _apply_timeouts(db)
        yield db
        db.commit()
    except DBAPIError as e:
        db.rollback()
        db.info.pop(_AFTER_COMMIT_KEY, None)
        if is_lock_timeout_error(e):
            logger.warning(f"Transaction aborted on lock/statement timeout: {e}")
            raise TransactionTimeoutError() from e
        logger.error(f"Transaction aborted, storage error: {e}")
        raise StorageUnavailableError() from e
    except BaseException:
        db.rollback()
        db.info.pop(_AFTER_COMMIT_KEY, None)
        raise
    finally:
        db.info[_DEPTH_KEY] = depth

    _run_callbacks(db, db.info.pop(_AFTER_COMMIT_KEY, []))
