#!/usr/bin/env python3
"""Token Management for the protocol engine and the legacy platform.

Both target systems authenticate with bearer tokens, but obtain them
differently:

    - The protocol engine sits behind an OIDC provider. Tokens come from an
      OAuth2 token endpoint using the password grant (when a username is
      configured) or the client credentials grant.
    - The legacy platform exposes a JSON login endpoint
      (``POST /api/auth/login``) that returns ``{token, refreshToken}``. The
      expiry is read from the JWT ``exp`` claim when present, else from
      ``expiresIn``, else assumed to be one hour.

Features:
    - Token caching with dynamic expiration buffer (10% of TTL, 30s..5min)
    - Proactive refresh before expiry, with jitter to avoid herd refresh
    - Refresh serialized per manager using asyncio.Lock
    - Short exponential backoff on transient token endpoint failures

Security Notes:
    - Tokens are cached in memory only (never persisted to disk)
    - Logs carry a SHA-256 token id (first 8 chars), never the token
"""
import asyncio
import hashlib
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
import jwt

from .exceptions import (
    ConfigurationError,
    ConnectionError,
    InvalidCredentialsError,
    TimeoutError,
    TokenFetchError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = 3600


@dataclass
class CachedToken:
    """Container for a cached bearer token.

    Attributes:
        access_token: The bearer token string.
        expires_at: Unix timestamp when the token expires.
        expires_in: Original TTL in seconds (for dynamic buffer calculation).
        refresh_token: Refresh token, when the issuer provides one.
    """
    access_token: str
    expires_at: float
    expires_in: int = DEFAULT_TOKEN_TTL
    refresh_token: Optional[str] = None

    MAX_BUFFER_SECONDS = 300
    MIN_BUFFER_SECONDS = 30

    @property
    def token_id(self) -> str:
        """Safe identifier for logging (SHA-256 hash, first 8 chars)."""
        return hashlib.sha256(self.access_token.encode()).hexdigest()[:8]

    @property
    def _buffer_seconds(self) -> float:
        base_buffer = self.expires_in * 0.1
        buffer = max(self.MIN_BUFFER_SECONDS, min(base_buffer, self.MAX_BUFFER_SECONDS))
        jitter = buffer * random.uniform(-0.1, 0.1)
        return buffer + jitter

    @property
    def is_expired(self) -> bool:
        """True once the token is inside its refresh window."""
        return time.time() >= (self.expires_at - self._buffer_seconds)

    @property
    def time_remaining(self) -> float:
        return max(0, self.expires_at - time.time())


def jwt_expiry(token: str) -> Optional[float]:
    """Read the ``exp`` claim from a JWT without verifying its signature.

    The signature belongs to the issuer; we only need the expiry to schedule
    a refresh. Returns None when the token is not a JWT or has no ``exp``.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return float(exp)
    return None


class TokenManager(ABC):
    """Base token manager: caching, proactive refresh and the refresh lock.

    Subclasses implement ``_request_token`` for a single attempt against
    their auth endpoint. ``get_token`` is safe to call from many concurrent
    tasks; only one of them performs the fetch.
    """

    def __init__(self, timeout_seconds: float = 30.0, max_attempts: int = 3):
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self._cached_token: Optional[CachedToken] = None
        self._lock = asyncio.Lock()

    @property
    @abstractmethod
    def name(self) -> str:
        """Short label used in log lines."""

    @abstractmethod
    async def _request_token(self, session: aiohttp.ClientSession) -> CachedToken:
        """Perform one token request.

        Raises:
            InvalidCredentialsError: Credentials rejected (never retried)
            TokenFetchError: Endpoint returned an unusable response
        """

    async def get_token(self) -> str:
        """Get a valid access token, fetching or refreshing as needed."""
        if self._cached_token and not self._cached_token.is_expired:
            return self._cached_token.access_token

        async with self._lock:
            if self._cached_token and not self._cached_token.is_expired:
                return self._cached_token.access_token

            if self._cached_token:
                logger.info(
                    f"{self.name} token {self._cached_token.token_id} near expiry, refreshing"
                )
            self._cached_token = await self._fetch_token()
            return self._cached_token.access_token

    async def _fetch_token(self) -> CachedToken:
        """Fetch a new token with short exponential backoff.

        Raises:
            TokenFetchError: If the token cannot be fetched after retries
            InvalidCredentialsError: If credentials are invalid
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                async with aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
                ) as session:
                    token = await self._request_token(session)
                logger.info(
                    f"{self.name} token fetched (id={token.token_id}), "
                    f"expires in {token.expires_in}s"
                )
                return token

            except InvalidCredentialsError:
                raise

            except TokenFetchError as e:
                status = e.details.get("status_code")
                if status is not None and status < 500:
                    raise
                last_error = e

            except aiohttp.ClientConnectionError as e:
                last_error = ConnectionError(
                    f"Failed to connect to {self.name} auth endpoint: {e}",
                    cause=e,
                )

            except asyncio.TimeoutError as e:
                last_error = TimeoutError(
                    f"{self.name} token request timed out",
                    timeout_seconds=self.timeout_seconds,
                    cause=e,
                )

            except aiohttp.ClientError as e:
                last_error = TransientNetworkError(
                    f"Network error fetching {self.name} token: {e}",
                    cause=e,
                )

            logger.warning(
                f"{self.name} token fetch attempt {attempt}/{self.max_attempts} failed: {last_error}"
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(2 ** (attempt - 1))

        raise TokenFetchError(
            f"Failed to fetch {self.name} token after {self.max_attempts} attempts",
            attempts=self.max_attempts,
            cause=last_error,
        )

    async def force_refresh(self) -> str:
        """Force a token refresh, ignoring the cache."""
        async with self._lock:
            self._cached_token = await self._fetch_token()
            return self._cached_token.access_token

    def invalidate(self):
        """Drop the cached token so the next call fetches a new one."""
        self._cached_token = None

    @property
    def token_info(self) -> Optional[dict[str, Any]]:
        """Info about the current cached token for debugging."""
        if not self._cached_token:
            return None
        return {
            "token_id": self._cached_token.token_id,
            "is_expired": self._cached_token.is_expired,
            "time_remaining_seconds": self._cached_token.time_remaining,
            "expires_in_original": self._cached_token.expires_in,
        }


class OAuth2TokenManager(TokenManager):
    """OAuth2 token manager for the protocol engine's OIDC provider.

    Uses the password grant when a username is configured (the engine
    resolves parties from the user's claims), otherwise client credentials.
    """

    name = "protocol-engine"

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        missing = []
        if not token_url:
            missing.append("NPL_TOKEN_URL")
        if not client_id:
            missing.append("NPL_CLIENT_ID")
        if username and not password:
            missing.append("NPL_PASSWORD")
        if missing:
            raise ConfigurationError(
                f"Missing required protocol engine settings: {', '.join(missing)}",
                missing_keys=missing,
            )

        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.username = username
        self.password = password

    def _grant_payload(self) -> dict[str, str]:
        payload = {"client_id": self.client_id}
        if self.client_secret:
            payload["client_secret"] = self.client_secret
        if self.username:
            payload["grant_type"] = "password"
            payload["username"] = self.username
            payload["password"] = self.password or ""
        else:
            payload["grant_type"] = "client_credentials"
        return payload

    async def _request_token(self, session: aiohttp.ClientSession) -> CachedToken:
        async with session.post(
            self.token_url,
            data=self._grant_payload(),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        ) as response:
            if response.status == 200:
                data = await response.json()
                access_token = data.get("access_token")
                if not access_token:
                    raise TokenFetchError(
                        "Token response missing access_token",
                        status_code=200,
                        details={"response_keys": list(data.keys())},
                    )
                expires_in = int(data.get("expires_in", DEFAULT_TOKEN_TTL))
                return CachedToken(
                    access_token=access_token,
                    expires_at=time.time() + expires_in,
                    expires_in=expires_in,
                    refresh_token=data.get("refresh_token"),
                )

            error_text = await response.text()
            if response.status in (400, 401):
                raise InvalidCredentialsError(
                    "Protocol engine rejected client credentials",
                    details={"status_code": response.status, "response": error_text[:200]},
                )
            raise TokenFetchError(
                f"Token server returned HTTP {response.status}",
                status_code=response.status,
                details={"response": error_text[:200]},
            )


class LoginTokenManager(TokenManager):
    """JSON-login token manager for the legacy platform."""

    name = "legacy-platform"

    LOGIN_PATH = "/api/auth/login"

    def __init__(self, base_url: str, username: str, password: str, **kwargs):
        super().__init__(**kwargs)
        missing = []
        if not base_url:
            missing.append("LEGACY_BASE_URL")
        if not username:
            missing.append("LEGACY_USERNAME")
        if not password:
            missing.append("LEGACY_PASSWORD")
        if missing:
            raise ConfigurationError(
                f"Missing required legacy platform settings: {', '.join(missing)}",
                missing_keys=missing,
            )

        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password

    async def _request_token(self, session: aiohttp.ClientSession) -> CachedToken:
        async with session.post(
            f"{self.base_url}{self.LOGIN_PATH}",
            json={"username": self.username, "password": self.password},
        ) as response:
            if response.status == 200:
                data = await response.json()
                return self._parse_login_response(data)

            error_text = await response.text()
            if response.status == 401:
                raise InvalidCredentialsError(
                    "Legacy platform rejected login",
                    details={"response": error_text[:200]},
                )
            raise TokenFetchError(
                f"Login endpoint returned HTTP {response.status}",
                status_code=response.status,
                details={"response": error_text[:200]},
            )

    @staticmethod
    def _parse_login_response(data: dict[str, Any]) -> CachedToken:
        access_token = data.get("token")
        if not access_token:
            raise TokenFetchError(
                "Login response missing token",
                status_code=200,
                details={"response_keys": list(data.keys())},
            )

        now = time.time()
        expires_at = jwt_expiry(access_token)
        if expires_at is not None:
            expires_in = max(0, int(expires_at - now))
        else:
            expires_in = int(data.get("expiresIn") or DEFAULT_TOKEN_TTL)
            expires_at = now + expires_in

        return CachedToken(
            access_token=access_token,
            expires_at=expires_at,
            expires_in=expires_in,
            refresh_token=data.get("refreshToken"),
        )


__all__ = [
    "CachedToken",
    "TokenManager",
    "OAuth2TokenManager",
    "LoginTokenManager",
    "jwt_expiry",
]
