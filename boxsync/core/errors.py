from __future__ import annotations

from typing import Any

# Remote error codes (document-store canonical codes, kebab-case)
PERMISSION_DENIED = "permission-denied"
UNAUTHENTICATED = "unauthenticated"
INVALID_ARGUMENT = "invalid-argument"
NOT_FOUND = "not-found"
UNAVAILABLE = "unavailable"
DEADLINE_EXCEEDED = "deadline-exceeded"
ALREADY_EXISTS = "already-exists"
FAILED_PRECONDITION = "failed-precondition"
ABORTED = "aborted"
RESOURCE_EXHAUSTED = "resource-exhausted"
INTERNAL = "internal"
UNKNOWN = "unknown"

# Never retried: another attempt cannot succeed without caller action.
FATAL_CODES = frozenset({PERMISSION_DENIED, UNAUTHENTICATED, INVALID_ARGUMENT})

# Worth another attempt: the store may not have seen the request, or asked us to
# back off. Unclassified exceptions map to UNKNOWN and land here too.
TRANSIENT_CODES = frozenset({UNAVAILABLE, DEADLINE_EXCEEDED, ABORTED, RESOURCE_EXHAUSTED, INTERNAL, UNKNOWN})

# A live query that fails with one of these is not reconnected.
SUBSCRIPTION_FATAL_CODES = frozenset({PERMISSION_DENIED, UNAUTHENTICATED})


class SyncError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class ValidationError(SyncError):
    """Bad input detected before any remote call. Never retried."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message, reason="validation")
        self.field = field


class NotFoundError(SyncError):
    def __init__(self, message: str) -> None:
        super().__init__(message, reason="not_found")


class BusinessRuleError(SyncError):
    def __init__(self, message: str, *, rule: str) -> None:
        super().__init__(message, reason="business_rule")
        self.rule = rule


class OfflineError(SyncError):
    """Raised by writes issued while the connection is known to be offline."""

    def __init__(self, message: str = "connection is offline; write not attempted") -> None:
        super().__init__(message, reason="offline")


class RemoteError(SyncError):
    """
    Failure reported by (or while talking to) the remote document store.

    `fallback` is filled in by read paths that hand the caller the best cached
    snapshot alongside a fatal error.
    """

    def __init__(self, code: str, message: str = "", *, status_code: int | None = None) -> None:
        super().__init__(message or code, reason=code)
        self.code = code
        self.status_code = status_code
        self.fallback: Any = None

    @property
    def fatal(self) -> bool:
        return self.code in FATAL_CODES

    def __repr__(self) -> str:
        return f"RemoteError(code={self.code!r}, message={str(self)!r})"


def error_code(err: BaseException) -> str:
    code = getattr(err, "code", None)
    return code if isinstance(code, str) and code else UNKNOWN


def is_fatal(err: BaseException) -> bool:
    return error_code(err) in FATAL_CODES


def is_retryable(err: BaseException) -> bool:
    # not-found, already-exists, ... are answers, not connectivity failures
    return error_code(err) in TRANSIENT_CODES


def is_subscription_fatal(err: BaseException) -> bool:
    return error_code(err) in SUBSCRIPTION_FATAL_CODES
