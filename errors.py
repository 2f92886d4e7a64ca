"""
Pipeline error hierarchy and error classification.

All pipeline-level exceptions inherit from PipelineError, which provides:
- message: technical detail (for logs)
- user_message: safe string (for UI display, no PII)
- recoverable: whether the caller should retry

classify_error() and identify_error_source() work on any failure the
pipelines see: our own exceptions, requests/httpx exceptions, or plain dicts
describing an error.
"""

import re
import traceback
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx
import requests

from log_utils import create_logger, redact

logger = create_logger("errors")


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, user_message: str, recoverable: bool = True):
        self.message = message
        self.user_message = user_message
        self.recoverable = recoverable
        super().__init__(message)


class ErrorType(str, Enum):
    NETWORK = "network"
    API = "api"
    VALIDATION = "validation"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ErrorSource(str, Enum):
    HUBSPOT = "HubSpot"
    LEMLIST = "Lemlist"
    LEMCAL = "Lemcal"
    SUPABASE = "Database"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Classification:
    """How a failure should be reported and whether it is worth retrying."""

    type: ErrorType
    user_message: str
    retryable: bool


USER_MESSAGES = {
    ErrorType.NETWORK: "Unable to connect. Please check your internet connection.",
    ErrorType.TIMEOUT: "Request timed out. The server may be busy.",
    ErrorType.PERMISSION: "Access denied. Please check your API credentials.",
    ErrorType.VALIDATION: "Invalid request. Please check your data and try again.",
    ErrorType.API: "Server error. Our team has been notified.",
    ErrorType.UNKNOWN: "Something went wrong. Please try again.",
}

RETRYABLE_TYPES = {ErrorType.NETWORK, ErrorType.TIMEOUT, ErrorType.API, ErrorType.UNKNOWN}

TIMEOUT_EXCEPTIONS = (TimeoutError, requests.exceptions.Timeout, httpx.TimeoutException)
NETWORK_EXCEPTIONS = (ConnectionError, requests.exceptions.ConnectionError, httpx.NetworkError)

# Hostname fragment (or explicit context source) -> ErrorSource, checked in order
SOURCE_HINTS = [
    ("hubspot", ErrorSource.HUBSPOT),
    ("hubapi", ErrorSource.HUBSPOT),
    ("lemlist", ErrorSource.LEMLIST),
    ("lemcal", ErrorSource.LEMCAL),
    ("supabase", ErrorSource.SUPABASE),
]

_STATUS_IN_MESSAGE = re.compile(r"status code (\d{3})")


def _field(obj: Any, name: str) -> Any:
    """Read an attribute or mapping key without raising."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    try:
        return getattr(obj, name, None)
    except RuntimeError:
        # httpx raises when .request/.response was never attached
        return None


def get_error_message(error: Any) -> str:
    """Best-effort technical message for any failure object."""
    message = _field(error, "message")
    if isinstance(message, str) and message:
        return message
    if isinstance(error, BaseException):
        return str(error)
    return ""


def get_status_code(error: Any) -> int | None:
    """Find an HTTP status code on an error, its response, or in its message."""
    response = _field(error, "response")
    candidates = [
        _field(error, "status"),
        _field(error, "status_code"),
        _field(response, "status_code"),
        _field(response, "status"),
    ]
    for value in candidates:
        if isinstance(value, int) and not isinstance(value, bool):
            return value

    match = _STATUS_IN_MESSAGE.search(get_error_message(error).lower())
    if match:
        return int(match.group(1))
    return None


def _classification(error_type: ErrorType) -> Classification:
    return Classification(
        type=error_type,
        user_message=USER_MESSAGES[error_type],
        retryable=error_type in RETRYABLE_TYPES,
    )


def classify_error(error: Any) -> Classification:
    """Classify a failure into a type, a user-facing message and a retry flag.

    First match wins. Permission and validation failures are caller-fixable
    and never retried; everything else is treated as transient.
    """
    message = get_error_message(error).lower()
    status = get_status_code(error)

    if status in (401, 403):
        return _classification(ErrorType.PERMISSION)

    is_timeout_exc = isinstance(error, TIMEOUT_EXCEPTIONS)

    if (
        "network" in message
        or "fetch" in message
        or "failed to fetch" in message
        or (isinstance(error, NETWORK_EXCEPTIONS) and not is_timeout_exc)
    ):
        return _classification(ErrorType.NETWORK)

    if "timeout" in message or "timed out" in message or is_timeout_exc:
        return _classification(ErrorType.TIMEOUT)

    if "unauthorized" in message or "forbidden" in message:
        return _classification(ErrorType.PERMISSION)

    if status == 400 or "validation" in message or "invalid" in message:
        return _classification(ErrorType.VALIDATION)

    if status is not None and status >= 500:
        return _classification(ErrorType.API)

    return _classification(ErrorType.UNKNOWN)


def _error_url(error: Any, context: Mapping) -> str:
    for holder in ("config", "request", "response"):
        url = _field(_field(error, holder), "url")
        if url:
            return str(url)
    url = _field(error, "url") or context.get("url")
    return str(url) if url else ""


def identify_error_source(error: Any, context: Mapping | None = None) -> ErrorSource:
    """Attribute a failure to an upstream system (for logs and alerts only)."""
    context = context or {}
    url = _error_url(error, context).lower()
    explicit = str(context.get("source") or "").lower()

    for hint, source in SOURCE_HINTS:
        if hint in url or explicit == hint:
            return source
    return ErrorSource.UNKNOWN


def create_user_error_message(error: Any, context: Mapping | None = None) -> str:
    """User-friendly message, prefixed with the upstream system when known."""
    classification = classify_error(error)
    source = identify_error_source(error, context)
    if source is not ErrorSource.UNKNOWN:
        return f"{source.value} API: {classification.user_message}"
    return classification.user_message


class EnhancedError(PipelineError):
    """A raw failure wrapped with a stable type, source and user message."""

    def __init__(self, original_error: Any, classification: Classification,
                 source: ErrorSource, context: Mapping | None = None):
        self.original_error = original_error
        self.type = classification.type
        self.source = source
        self.retryable = classification.retryable
        self.context = dict(context or {})
        super().__init__(
            message=classification.user_message,
            user_message=classification.user_message,
            recoverable=classification.retryable,
        )


def enhance_error(error: Any, context: Mapping | None = None) -> EnhancedError:
    """Wrap an error for presentation layers that must not leak internals."""
    enhanced = EnhancedError(
        error,
        classify_error(error),
        identify_error_source(error, context),
        context,
    )
    if isinstance(error, BaseException):
        enhanced.__cause__ = error
    return enhanced


def format_stack(error: Any) -> str | None:
    """Stack trace text for an exception, or a provided ``stack`` string."""
    if isinstance(error, BaseException) and error.__traceback__ is not None:
        return "".join(traceback.format_exception(type(error), error, error.__traceback__))
    stack = _field(error, "stack")
    return stack if isinstance(stack, str) and stack else None


def track_error(error: Any, context: Mapping | None = None) -> dict:
    """Build an error record for tracking and log it."""
    classification = classify_error(error)
    source = identify_error_source(error, context)

    error_data = {
        "type": classification.type.value,
        "source": source.value,
        "message": get_error_message(error),
        "stack": format_stack(error),
        "context": redact(dict(context or {})),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    logger.error("Tracked error", **{k: v for k, v in error_data.items() if k != "stack"})
    return error_data
