"""Typed errors, classification and the retry wrapper used by every store call.

The workbook behind the repositories is shared, human-editable and gives no
transactional guarantees, so store calls can fail for transient reasons (a
file locked by another editor, a slow network share) as well as for
permanent ones (missing permissions, business-rule violations). Everything
raised out of this package is an :class:`AppError` carrying a closed
:class:`ErrorCode`, the operation it came from and whether retrying makes
sense. :func:`with_retry` uses that flag to decide between backing off and
giving up.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
RETRY_DELAY = 1.0  # seconds; the n-th retry waits n * RETRY_DELAY


class ErrorCode(str, Enum):
    # System
    SYSTEM_ERROR = "SYS001"
    CONFIG_ERROR = "SYS002"
    TIMEOUT_ERROR = "SYS003"

    # Data
    DATA_NOT_FOUND = "DATA001"
    DATA_DUPLICATE = "DATA002"
    DATA_INVALID = "DATA003"

    # Store (workbook) access
    STORE_ACCESS_ERROR = "SS001"
    STORE_PERMISSION_ERROR = "SS002"
    STORE_SHEET_NOT_FOUND = "SS003"

    # Customers
    CUSTOMER_NOT_FOUND = "CUST001"
    CUSTOMER_DUPLICATE = "CUST002"
    CUSTOMER_VALIDATION_ERROR = "CUST003"
    CUSTOMER_HAS_INVOICES = "CUST004"

    # Invoices
    INVOICE_NOT_FOUND = "INV001"
    INVOICE_DUPLICATE = "INV002"
    INVOICE_VALIDATION_ERROR = "INV003"
    INVOICE_STATUS_ERROR = "INV004"

    # Rendering
    PDF_TEMPLATE_NOT_FOUND = "PDF001"
    PDF_GENERATION_FAILED = "PDF002"
    PDF_SAVE_FAILED = "PDF003"

    # Drive (file storage used by the rendering pipeline)
    DRIVE_ACCESS_ERROR = "DRIVE001"
    DRIVE_PERMISSION_ERROR = "DRIVE002"
    DRIVE_FOLDER_NOT_FOUND = "DRIVE003"


class AppError(Exception):
    """Base class for every error surfaced by the billing core."""

    default_retryable = False

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        context: Optional[str] = None,
        details: Any = None,
        is_retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = context
        self.details = details
        self.is_retryable = (
            self.default_retryable if is_retryable is None else is_retryable
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "context": self.context,
            "details": self.details,
            "is_retryable": self.is_retryable,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class CustomerError(AppError):
    pass


class InvoiceError(AppError):
    pass


class StoreError(AppError):
    default_retryable = True


class DriveError(AppError):
    default_retryable = True


class PDFError(AppError):
    default_retryable = True


class ValidationError(AppError):
    """A field-level validation failure. Never retryable."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        context: Optional[str] = None,
    ) -> None:
        super().__init__(
            ErrorCode.DATA_INVALID,
            message,
            context,
            {"field": field, "value": value},
            False,
        )
        self.field = field
        self.value = value


_STORE_MARKERS = ("workbook", "worksheet", "spreadsheet", "sheet")


def classify(error: BaseException, context: Optional[str] = None) -> AppError:
    """Map any exception onto the typed hierarchy.

    Typed errors pass through unchanged (their context is filled in if they
    have none). Other exceptions are recognised by type or by substrings of
    their message.
    """

    if isinstance(error, AppError):
        if error.context is None:
            error.context = context
        return error

    raw = str(error) or type(error).__name__
    text = raw.lower()

    if isinstance(error, PermissionError) or "permission" in text:
        return StoreError(
            ErrorCode.STORE_PERMISSION_ERROR,
            "Permission denied while accessing the workbook",
            context,
            raw,
            False,
        )
    if "drive" in text:
        return DriveError(
            ErrorCode.DRIVE_ACCESS_ERROR,
            "Error while accessing file storage",
            context,
            raw,
            True,
        )
    if isinstance(error, TimeoutError) or "timeout" in text or "timed out" in text:
        return AppError(
            ErrorCode.TIMEOUT_ERROR, "The operation timed out", context, raw, True
        )
    if any(marker in text for marker in _STORE_MARKERS):
        return StoreError(
            ErrorCode.STORE_ACCESS_ERROR,
            "Error while accessing the workbook",
            context,
            raw,
            True,
        )
    return AppError(ErrorCode.SYSTEM_ERROR, raw, context, raw, False)


def handle_error(error: BaseException, context: Optional[str] = None) -> AppError:
    """Classify ``error`` and log it against ``context``."""
    app_error = classify(error, context)
    logger.error(
        "%s failed: %s", context or app_error.context, app_error,
        extra={"app_error": app_error.to_dict()},
    )
    return app_error


@contextmanager
def error_context(context: str) -> Iterator[None]:
    """Re-raise anything escaping the block as a logged :class:`AppError`."""
    try:
        yield
    except Exception as exc:
        app_error = handle_error(exc, context)
        if app_error is exc:
            raise
        raise app_error from exc


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, AppError) and error.is_retryable


def _log_retry(context: str, max_attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0
        logger.warning(
            "Retrying %s (%d/%d) in %.1fs: %s",
            context,
            state.attempt_number,
            max_attempts - 1,
            delay,
            error,
        )

    return before_sleep


def with_retry(
    operation: Callable[[], T],
    context: str,
    max_attempts: int = MAX_ATTEMPTS,
    base_delay: float = RETRY_DELAY,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Run ``operation`` and retry classified-retryable failures.

    Every failure is passed through :func:`classify` first. Non-retryable
    errors propagate at once; retryable ones are retried with a linear
    backoff (``base_delay * attempt``) until ``max_attempts`` is reached,
    after which the last classified error is raised.
    """

    def attempt() -> T:
        try:
            return operation()
        except Exception as exc:
            classified = classify(exc, context)
            if classified is exc:
                raise
            raise classified from exc

    retryer = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_incrementing(start=base_delay, increment=base_delay),
        retry=retry_if_exception(_is_retryable),
        before_sleep=_log_retry(context, max_attempts),
        sleep=sleep or time.sleep,
        reraise=True,
    )
    return retryer(attempt)


_USER_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.CUSTOMER_NOT_FOUND: "The selected customer could not be found.",
    ErrorCode.CUSTOMER_DUPLICATE: "This customer is already registered.",
    ErrorCode.CUSTOMER_HAS_INVOICES: "This customer still has invoices and cannot be deleted.",
    ErrorCode.INVOICE_NOT_FOUND: "The selected invoice could not be found.",
    ErrorCode.INVOICE_STATUS_ERROR: "This action is not allowed for the invoice's current status.",
    ErrorCode.DATA_INVALID: "Some of the entered values are invalid. Please check them and try again.",
    ErrorCode.PDF_TEMPLATE_NOT_FOUND: "The invoice template could not be found. Please contact your administrator.",
    ErrorCode.PDF_GENERATION_FAILED: "The PDF could not be created. Please wait a moment and try again.",
    ErrorCode.STORE_PERMISSION_ERROR: "You do not have permission to access the workbook. Please contact your administrator.",
    ErrorCode.DRIVE_PERMISSION_ERROR: "You do not have permission to access file storage. Please contact your administrator.",
}

GENERIC_MESSAGE = "An error occurred. Please contact your administrator."


def user_facing_message(error: AppError) -> str:
    """Return the fixed, non-technical sentence shown to end users."""
    return _USER_MESSAGES.get(error.code, GENERIC_MESSAGE)


__all__ = [
    "AppError",
    "CustomerError",
    "DriveError",
    "ErrorCode",
    "InvoiceError",
    "PDFError",
    "StoreError",
    "ValidationError",
    "classify",
    "error_context",
    "handle_error",
    "user_facing_message",
    "with_retry",
]
