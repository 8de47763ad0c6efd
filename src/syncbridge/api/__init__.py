"""Outbound API modules.

This package provides the HTTP layer shared by both target systems and
the typed clients built on it.

Classes:
    RestClient: Generic HTTP client with pagination, retry, and circuit breaker
    OAuth2TokenManager: OAuth2 token management for the protocol engine
    LoginTokenManager: JSON-login token management for the legacy platform
    ProtocolEngineClient: Protocol engine (source of truth) client
    LegacyPlatformClient: Legacy platform (replica) client

Exceptions:
    SyncBridgeError: Base exception for all SyncBridge errors
    ConfigurationError, AuthenticationError, APIError, TransientNetworkError,
    QueueError, SerializationError, SyncError and their subclasses

Resilience:
    CircuitBreaker: Prevent cascading failures
    retry_async: Retry with exponential backoff
    with_timeout: Bounded execution
"""
from .auth import CachedToken, LoginTokenManager, OAuth2TokenManager, TokenManager, jwt_expiry
from .client import PaginationConfig, RestClient
from .error_sanitizer import ErrorSanitizer, get_sanitizer, sanitize_error_message
from .exceptions import (
    APIError,
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    ConnectionError,
    ErrorCollector,
    InvalidCredentialsError,
    NotFoundError,
    PartialSyncError,
    QueueError,
    QueueNotInitializedError,
    QueueRoutingError,
    RateLimitError,
    SerializationError,
    ServerError,
    SyncBridgeError,
    SyncError,
    TimeoutError,
    TokenExpiredError,
    TokenFetchError,
    TransientNetworkError,
    ValidationError,
)
from .legacy_platform import LegacyPlatformClient
from .protocol_engine import ProtocolEngineClient
from .resilience import CircuitBreaker, CircuitState, retry_async, with_timeout

__all__ = [
    # Clients
    "RestClient",
    "PaginationConfig",
    "ProtocolEngineClient",
    "LegacyPlatformClient",
    # Auth
    "TokenManager",
    "OAuth2TokenManager",
    "LoginTokenManager",
    "CachedToken",
    "jwt_expiry",
    # Exceptions
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
    # Resilience
    "CircuitBreaker",
    "CircuitState",
    "retry_async",
    "with_timeout",
    # Sanitization
    "ErrorSanitizer",
    "get_sanitizer",
    "sanitize_error_message",
]
