# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Error types and error classification for the routing library.

Backend failures arrive as arbitrary exceptions (BackendError raised by our
own backends, LiteLLM exceptions, httpx errors, asyncio timeouts). They are
reduced to exactly one ErrorKind per attempt by classify_error(), which the
fallback engine uses to pick its next action.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

import httpx

from .types import ErrorKind

if TYPE_CHECKING:
    from .types import AttemptRecord


# =============================================================================
# EXCEPTIONS
# =============================================================================


class RoutingError(Exception):
    """Base class for all routing library errors."""


class ConfigurationError(RoutingError):
    """Raised when the provider catalog or settings are malformed."""


class BackendError(RoutingError):
    """
    Failure reported by a backend client.

    Backends raise this instead of retrying: the fallback engine decides
    what happens next.
    """

    def __init__(
        self,
        raw_message: str,
        http_status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(raw_message)
        self.raw_message = raw_message
        self.http_status = http_status
        self.retry_after = retry_after


class NoCandidateError(RoutingError):
    """
    No (provider, model) pair can accept the request.

    Admission-control failure: every pair is rate limited, uncredentialed or
    lacks a required capability. Not retryable.
    """

    def __init__(self, message: str, task_hint: Optional[str] = None):
        super().__init__(message)
        self.task_hint = task_hint


class ExhaustedError(RoutingError):
    """
    Every fallback option failed.

    Carries the last classified error kind and the ordered attempt trail so
    callers never need to look at retry internals.
    """

    def __init__(
        self,
        last_kind: ErrorKind,
        attempts: List["AttemptRecord"],
        last_error: Optional["ClassifiedError"] = None,
    ):
        self.last_kind = last_kind
        self.attempts = list(attempts)
        self.last_error = last_error
        detail = f": {last_error.message}" if last_error and last_error.message else ""
        super().__init__(
            f"Exhausted after {len(self.attempts)} attempt(s); "
            f"last error {last_kind.value}{detail}"
        )


# =============================================================================
# CLASSIFICATION
# =============================================================================


@dataclass
class ClassifiedError:
    """An attempt failure reduced to one ErrorKind."""

    kind: ErrorKind
    message: str = ""
    status_code: Optional[int] = None
    retry_after: Optional[float] = None
    original: Optional[BaseException] = None

    @property
    def error_type(self) -> str:
        return self.kind.value


_RATE_LIMIT_PATTERNS = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "ratelimit",
    "quota",
    "resource_exhausted",
)
_AUTH_PATTERNS = (
    "unauthorized",
    "invalid api key",
    "invalid_api_key",
    "incorrect api key",
    "authentication",
    "forbidden",
    "permission denied",
)
_OVERLOADED_PATTERNS = (
    "overloaded",
    "capacity",
    "service unavailable",
    "unavailable",
)
_TIMEOUT_PATTERNS = ("timed out", "timeout", "deadline exceeded")
_SERVER_PATTERNS = ("internal server error", "bad gateway", "server error")

_RETRY_AFTER_RE = re.compile(r"retry[- ]after[^\d]{0,10}(\d+(?:\.\d+)?)", re.IGNORECASE)


def _extract_status_code(error: BaseException) -> Optional[int]:
    """Find an HTTP status on the error, whatever library raised it."""
    if isinstance(error, BackendError):
        return error.http_status
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "http_status", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _extract_retry_after(error: BaseException, message: str) -> Optional[float]:
    value = getattr(error, "retry_after", None)
    if isinstance(value, (int, float)) and value > 0:
        return float(value)
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        try:
            header = headers.get("retry-after")
        except AttributeError:
            header = None
        if header:
            try:
                return float(header)
            except ValueError:
                pass
    match = _RETRY_AFTER_RE.search(message)
    if match:
        return float(match.group(1))
    return None


def _kind_from_status(status: int) -> Optional[ErrorKind]:
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (401, 403):
        return ErrorKind.AUTH_FAILED
    if status in (503, 529):
        return ErrorKind.OVERLOADED
    if status == 408:
        return ErrorKind.TIMEOUT
    if status >= 500:
        return ErrorKind.SERVER_ERROR
    return None


def _kind_from_message(message: str) -> Optional[ErrorKind]:
    lowered = message.lower()
    if any(p in lowered for p in _RATE_LIMIT_PATTERNS):
        return ErrorKind.RATE_LIMITED
    if any(p in lowered for p in _AUTH_PATTERNS):
        return ErrorKind.AUTH_FAILED
    if any(p in lowered for p in _OVERLOADED_PATTERNS):
        return ErrorKind.OVERLOADED
    if any(p in lowered for p in _TIMEOUT_PATTERNS):
        return ErrorKind.TIMEOUT
    if any(p in lowered for p in _SERVER_PATTERNS):
        return ErrorKind.SERVER_ERROR
    return None


def classify_error(error: BaseException) -> ClassifiedError:
    """
    Classify a backend failure into exactly one ErrorKind.

    Status codes win over message content; message patterns are only used
    when the status is missing or uninformative.

    Args:
        error: The exception raised by the backend call

    Returns:
        ClassifiedError with kind, status and optional retry-after hint
    """
    message = (
        error.raw_message if isinstance(error, BackendError) else str(error)
    ) or type(error).__name__
    status = _extract_status_code(error)
    retry_after = _extract_retry_after(error, message)

    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        kind: Optional[ErrorKind] = ErrorKind.TIMEOUT
    else:
        kind = _kind_from_status(status) if status is not None else None
        if kind is None:
            kind = _kind_from_message(message)
        if kind is None and isinstance(error, httpx.TransportError):
            kind = ErrorKind.SERVER_ERROR

    return ClassifiedError(
        kind=kind or ErrorKind.UNKNOWN,
        message=message[:300],
        status_code=status,
        retry_after=retry_after,
        original=error,
    )


def mask_credential(credential: Optional[str], style: str = "short") -> str:
    """
    Mask a credential for logging.

    Args:
        credential: API key or other secret
        style: "short" keeps the last 4 characters, "full" the first 4 and
            last 4

    Returns:
        Masked string safe to log
    """
    if not credential:
        return "<none>"
    if len(credential) <= 8:
        return "****"
    if style == "full":
        return f"{credential[:4]}...{credential[-4:]}"
    return f"...{credential[-4:]}"
