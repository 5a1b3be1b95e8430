# backend/core/error_handling.py

"""
Error types and API error handling utilities.

Every service error carries a stable ``error_code``, a human-readable message
and a ``details`` dict, so callers can branch on the kind and show the message
as-is.
"""

from typing import Callable, Dict, Any, Optional
from functools import wraps
import logging
import inspect
import traceback

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, OperationalError
from pydantic import ValidationError

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors"""

    error_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class NotFoundError(APIError):
    """Resource not found error"""

    error_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any, error_code: Optional[str] = None):
        super().__init__(
            message=f"{resource} with identifier {identifier} not found",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "identifier": str(identifier)},
            error_code=error_code,
        )


class ConflictError(APIError):
    """Business-rule rejection; safe to show to the user directly"""

    error_code = "CONFLICT"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
            error_code=error_code,
        )


class APIValidationError(APIError):
    """Input validation error - renamed from ValidationError to avoid Pydantic collision"""

    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        errors: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"validation_errors": errors} if errors else {},
            error_code=error_code,
        )


class TransactionTimeoutError(APIError):
    """The store transaction hit its lock or statement timeout. Retryable."""

    error_code = "TRANSACTION_TIMEOUT"

    def __init__(self, message: str = "Transaction timed out; retry the operation"):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"retryable": True},
        )


class StorageUnavailableError(APIError):
    """The backing store could not be reached or failed. Retryable."""

    error_code = "STORAGE_UNAVAILABLE"

    def __init__(self, message: str = "Storage temporarily unavailable"):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"retryable": True},
        )


def handle_api_errors(func: Callable) -> Callable:
    """
    Decorator to handle common API errors with proper status codes and messages.
    Properly handles both async and sync functions.

    Usage:
        @router.get("/items/{item_id}")
        @handle_api_errors
        async def get_item(item_id: int, db: Session = Depends(get_db)):
            # Your code here
            pass
    """

    def handle_exception(e: Exception, func_name: str) -> None:
        """Common exception handling logic"""
        if isinstance(e, APIError):
            if e.status_code >= 500:
                logger.error(f"API Error in {func_name}: {e.message}")
            else:
                logger.warning(
                    f"API Error in {func_name}: {e.message}",
                    extra={"status_code": e.status_code, "error_code": e.error_code},
                )
            raise HTTPException(status_code=e.status_code, detail=e.to_dict())

        elif isinstance(e, IntegrityError):
            logger.error(f"Database integrity error in {func_name}: {str(e.orig)}")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "message": "Database constraint violation",
                    "error_code": "INTEGRITY_ERROR",
                },
            )

        elif isinstance(e, OperationalError):
            logger.error(f"Database operational error in {func_name}: {str(e.orig)}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={
                    "message": "Database service temporarily unavailable",
                    "error_code": StorageUnavailableError.error_code,
                },
            )

        elif isinstance(e, ValidationError):
            logger.warning(f"Pydantic validation error in {func_name}: {e.errors()}")
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={
                    "message": "Request validation failed",
                    "error_code": APIValidationError.error_code,
                    "errors": e.errors(),
                },
            )

        elif isinstance(e, HTTPException):
            raise e

        else:
            logger.error(
                f"Unexpected error in {func_name}: {str(e)}\n{traceback.format_exc()}"
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "message": "An unexpected error occurred",
                    "error_code": APIError.error_code,
                },
            )

    if inspect.iscoroutinefunction(func):

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                handle_exception(e, func.__name__)

        return async_wrapper
    else:

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                handle_exception(e, func.__name__)

        return sync_wrapper


async def handle_api_error(request: Request, exc: APIError) -> JSONResponse:
    """Handle service errors raised outside decorated routes"""
    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_dict(), "path": str(request.url.path)},
    )


def register_exception_handlers(app):
    """Register exception handlers with the FastAPI app"""
    app.add_exception_handler(APIError, handle_api_error)
