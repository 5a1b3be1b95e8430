# backend/core/database_utils.py

from datetime import datetime, timezone
from typing import Optional, Set

from sqlalchemy.exc import DBAPIError, OperationalError

# Error codes that mean the transaction gave up waiting, not that the data is bad
TIMEOUT_ERROR_CODES: Set[str] = {
    # PostgreSQL
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available
    "57014",  # query_canceled (statement timeout)
    # MySQL
    "1205",  # Lock wait timeout exceeded
    "1213",  # Deadlock found when trying to get lock
    # SQLite
    "database is locked",
    "database table is locked",
}


def is_lock_timeout_error(error: Exception) -> bool:
    """
    Check if a database error means the transaction timed out waiting

    Args:
        error: The exception to check

    Returns:
        True if the caller may retry the whole operation later
    """
    if not isinstance(error, (OperationalError, DBAPIError)):
        return False

    error_str = str(error).lower()
    if any(marker in error_str for marker in ["deadlock", "serializ", "lock timeout", "locked", "statement timeout"]):
        return True

    orig = getattr(error, "orig", None)
    if orig is None:
        return False

    pgcode = getattr(orig, "pgcode", None)
    if pgcode:
        return pgcode in TIMEOUT_ERROR_CODES

    args = getattr(orig, "args", None)
    if args:
        error_code = str(args[0])
        return any(code in error_code for code in TIMEOUT_ERROR_CODES)

    return False


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Convert a datetime to the naive UTC form the ``DateTime`` columns store.

    Naive values are taken to be UTC already and returned unchanged.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
