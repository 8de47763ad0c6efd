#!/usr/bin/env python3
"""Errors raised while keeping the protocol engine and the legacy platform in sync.

Every error derives from SyncBridgeError and carries a machine-readable code,
a details dict, the causing exception and a recoverable flag. Subclasses set
their code and recoverability as class attributes; constructors only add the
details specific to them.

    SyncBridgeError
    ├── ConfigurationError            fix the environment and restart
    ├── AuthenticationError           one refresh, one retry
    │   ├── TokenFetchError
    │   ├── TokenExpiredError         HTTP 401
    │   └── InvalidCredentialsError
    ├── APIError                      any other HTTP error status
    │   ├── RateLimitError            429, honours Retry-After
    │   ├── NotFoundError             404, "already absent" on delete
    │   ├── ValidationError           400/422, never retried
    │   └── ServerError               5xx
    ├── TransientNetworkError         retried with backoff
    │   ├── ConnectionError
    │   └── TimeoutError
    ├── QueueError
    │   ├── QueueNotInitializedError
    │   └── QueueRoutingError
    ├── SerializationError            dead-lettered
    └── SyncError
        ├── PartialSyncError
        └── CircuitOpenError
"""
from datetime import datetime, timezone
from typing import Any, Optional

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


def _details(kwargs: dict[str, Any], **fields: Any) -> dict[str, Any]:
    """Pop any caller-supplied details and add the non-empty fields."""
    details = dict(kwargs.pop("details", None) or {})
    details.update({key: value for key, value in fields.items() if value is not None})
    return details


class SyncBridgeError(Exception):
    """Base exception for all SyncBridge errors.

    Attributes:
        message: Human-readable description
        code: Machine-readable code, e.g. "TOKEN_EXPIRED"
        details: Extra context, rendered into str() and to_dict()
        timestamp: When the error was raised (UTC)
        cause: The exception this one wraps, if any
        recoverable: Whether retrying may succeed
    """

    default_code: Optional[str] = None
    default_recoverable: Optional[bool] = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code or type(self).__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.cause = cause
        self.recoverable = bool(self.default_recoverable) if recoverable is None else recoverable
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        text = f"[{self.code}] {self.message}"
        if self.details:
            text += " (" + ", ".join(f"{k}={v}" for k, v in self.details.items()) + ")"
        return text

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self.message!r}, code={self.code!r}, "
            f"details={self.details!r}, recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigurationError(SyncBridgeError):
    """Missing or malformed settings."""

    default_code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, missing_keys: Optional[list[str]] = None, **kwargs):
        super().__init__(message, details=_details(kwargs, missing_keys=missing_keys or None), **kwargs)


# ============================================
# Authentication
# ============================================

class AuthenticationError(SyncBridgeError):
    default_recoverable = True


class TokenFetchError(AuthenticationError):
    """The token endpoint did not hand out a token."""

    default_code = "TOKEN_FETCH_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, attempts: int = 1, **kwargs):
        details = _details(kwargs, status_code=status_code or None, attempts=attempts)
        super().__init__(message, details=details, **kwargs)


class TokenExpiredError(AuthenticationError):
    """The remote rejected the bearer token (HTTP 401)."""

    default_code = "TOKEN_EXPIRED"

    def __init__(self, message: str = "Access token has expired", **kwargs):
        super().__init__(message, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """The configured client or user credentials were refused."""

    default_code = "INVALID_CREDENTIALS"
    default_recoverable = False

    def __init__(self, message: str = "Invalid credentials", **kwargs):
        super().__init__(message, **kwargs)


# ============================================
# HTTP status errors
# ============================================

class APIError(SyncBridgeError):
    """An HTTP error status from either system.

    Recoverability follows the status unless a subclass fixes it:
    429 and 5xx gateway statuses are retryable, everything else is not.
    """

    default_recoverable = None

    def __init__(
        self,
        message: str,
        status_code: int,
        endpoint: Optional[str] = None,
        response_body: Optional[str] = None,
        method: str = "GET",
        **kwargs,
    ):
        details = _details(
            kwargs,
            status_code=status_code,
            endpoint=endpoint,
            method=method or None,
            response_body=response_body[:500] if response_body else None,
        )
        kwargs.setdefault("code", self.default_code or f"API_ERROR_{status_code}")
        if self.default_recoverable is None:
            kwargs.setdefault("recoverable", status_code in RETRYABLE_STATUSES)
        super().__init__(message, details=details, **kwargs)
        self.status_code = status_code
        self.endpoint = endpoint
        self.response_body = response_body
        self.method = method


class RateLimitError(APIError):
    """HTTP 429. retry_after is the server's hint in seconds (60 if absent)."""

    default_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[int] = None, **kwargs):
        kwargs.setdefault("status_code", 429)
        kwargs["details"] = _details(kwargs, retry_after_seconds=retry_after or None)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after or 60


class NotFoundError(APIError):
    """HTTP 404 for one entity or endpoint."""

    default_code = "NOT_FOUND"
    default_recoverable = False

    def __init__(self, resource_type: str, resource_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("status_code", 404)
        kwargs["details"] = _details(kwargs, resource_type=resource_type, resource_id=resource_id or None)
        label = f"{resource_type} '{resource_id}'" if resource_id else resource_type
        super().__init__(f"{label} not found", **kwargs)
        self.resource_type = resource_type
        self.resource_id = resource_id


class ValidationError(APIError):
    """The entity or request was rejected as malformed (HTTP 400/422)."""

    default_code = "VALIDATION_ERROR"
    default_recoverable = False

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        kwargs.setdefault("status_code", 400)
        kwargs["details"] = _details(kwargs, field=field)
        super().__init__(message, **kwargs)


class ServerError(APIError):
    default_code = "SERVER_ERROR"
    default_recoverable = True

    def __init__(self, message: str = "Server error", **kwargs):
        kwargs.setdefault("status_code", 500)
        super().__init__(message, **kwargs)


# ============================================
# Network
# ============================================

class TransientNetworkError(SyncBridgeError):
    """The request never got an HTTP answer. Safe to retry with backoff."""

    default_recoverable = True


class ConnectionError(TransientNetworkError):
    default_code = "CONNECTION_ERROR"

    def __init__(self, message: str = "Failed to connect to server", host: Optional[str] = None, **kwargs):
        super().__init__(message, details=_details(kwargs, host=host), **kwargs)


class TimeoutError(TransientNetworkError):
    default_code = "TIMEOUT_ERROR"

    def __init__(self, message: str = "Request timed out", timeout_seconds: Optional[float] = None, **kwargs):
        super().__init__(message, details=_details(kwargs, timeout_seconds=timeout_seconds or None), **kwargs)


# ============================================
# Queue and payloads
# ============================================

class QueueError(SyncBridgeError):
    """Broker-side failure. queue_name is the queue involved, when known."""

    default_recoverable = True

    def __init__(self, message: str, queue_name: Optional[str] = None, **kwargs):
        super().__init__(message, details=_details(kwargs, queue=queue_name), **kwargs)
        self.queue_name = queue_name


class QueueNotInitializedError(QueueError):
    default_code = "QUEUE_NOT_INITIALIZED"

    def __init__(self, message: str = "Queue channel not initialized", **kwargs):
        super().__init__(message, **kwargs)


class QueueRoutingError(QueueError):
    """No queue exists for an event's entity class and type."""

    default_code = "QUEUE_ROUTING_ERROR"
    default_recoverable = False


class SerializationError(SyncBridgeError):
    """An event or message body could not be decoded; it is dead-lettered."""

    default_code = "SERIALIZATION_ERROR"

    def __init__(self, message: str, raw: Optional[Any] = None, **kwargs):
        snippet = str(raw)[:200] if raw is not None else None
        super().__init__(message, details=_details(kwargs, raw=snippet), **kwargs)


# ============================================
# Sync
# ============================================

class SyncError(SyncBridgeError):
    pass


class PartialSyncError(SyncError):
    """A sweep finished with some items failed.

    Attributes:
        succeeded: Items applied
        failed: Items that failed
        errors: The individual failures (possibly capped)
    """

    default_code = "PARTIAL_SYNC_ERROR"
    default_recoverable = True

    def __init__(
        self,
        message: str,
        succeeded: int = 0,
        failed: int = 0,
        errors: Optional[list[Exception]] = None,
        **kwargs,
    ):
        errors = errors or []
        details = _details(
            kwargs,
            succeeded=succeeded,
            failed=failed,
            error_count=len(errors) or None,
            sample_errors=[str(e)[:100] for e in errors[:5]] or None,
        )
        super().__init__(message, details=details, **kwargs)
        self.succeeded = succeeded
        self.failed = failed
        self.errors = errors


class CircuitOpenError(SyncError):
    """A client's circuit breaker is open; the call was not attempted."""

    default_code = "CIRCUIT_OPEN"
    default_recoverable = True

    def __init__(
        self,
        message: str = "Circuit breaker is open, requests rejected",
        reset_at: Optional[datetime] = None,
        failure_count: int = 0,
        **kwargs,
    ):
        details = _details(
            kwargs,
            reset_at=reset_at.isoformat() if reset_at else None,
            failure_count=failure_count,
        )
        super().__init__(message, details=details, **kwargs)
        self.reset_at = reset_at
        self.failure_count = failure_count


# ============================================
# Per-item failure collection
# ============================================

class ErrorCollector:
    """Gathers per-item failures so a sweep can continue past them.

    Only the first max_errors are kept; count() still reports every failure.

    Example:
        collector = ErrorCollector()
        for entity in plan.to_create:
            try:
                await target.create(entity)
            except Exception as e:
                collector.add(e, context={"entity_id": entity["id"], "step": "create"})
    """

    def __init__(self, max_errors: int = 100):
        self.max_errors = max_errors
        self.errors: list[tuple[Exception, dict[str, Any]]] = []
        self._total = 0

    def add(self, error: Exception, context: Optional[dict[str, Any]] = None) -> None:
        self._total += 1
        if len(self.errors) < self.max_errors:
            self.errors.append((error, context or {}))

    def has_errors(self) -> bool:
        return self._total > 0

    def count(self) -> int:
        return self._total

    def get_errors(self) -> list[tuple[Exception, dict[str, Any]]]:
        return list(self.errors)

    def to_exception(self, succeeded: int = 0) -> PartialSyncError:
        """Summarise as a PartialSyncError. ValueError if nothing was collected."""
        if not self._total:
            raise ValueError("No errors to convert")
        return PartialSyncError(
            f"{self._total} item(s) failed",
            succeeded=succeeded,
            failed=self._total,
            errors=[error for error, _ in self.errors],
        )

    def clear(self) -> None:
        self.errors.clear()
        self._total = 0


__all__ = [
    "SyncBridgeError",
    "ConfigurationError",
    "AuthenticationError",
    "TokenFetchError",
    "TokenExpiredError",
    "InvalidCredentialsError",
    "APIError",
    "RateLimitError",
    "NotFoundError",
    "ValidationError",
    "ServerError",
    "TransientNetworkError",
    "ConnectionError",
    "TimeoutError",
    "QueueError",
    "QueueNotInitializedError",
    "QueueRoutingError",
    "SerializationError",
    "SyncError",
    "PartialSyncError",
    "CircuitOpenError",
    "ErrorCollector",
]
