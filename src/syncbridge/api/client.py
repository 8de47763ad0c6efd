#!/usr/bin/env python3
"""Generic REST Client shared by the protocol engine and legacy platform clients.

This module provides a reusable HTTP client that handles the common
concerns of talking to either target system:

    - Bearer authentication via a TokenManager
    - One token refresh and one retry on 401 responses
    - Bounded, configurable retries for transient failures (default: none)
    - Mapping of 4xx/5xx responses to typed exceptions
    - Page-number pagination for full-set retrieval
    - Connection pooling via a shared aiohttp session
    - Circuit breaker for fail-fast during outages

Design Philosophy:
    This client knows HOW to talk to a target system, but not WHAT to fetch.
    It has no knowledge of devices or tenants. That knowledge belongs in
    ProtocolEngineClient and LegacyPlatformClient, which compose this client.

Usage:
    async with RestClient(token_manager, base_url, name="legacy") as client:
        device = await client.get("/api/device/abc")

        async for page in client.paginate("/api/tenants"):
            for tenant in page:
                process(tenant)
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import aiohttp

from .auth import TokenManager
from .exceptions import (
    APIError,
    ConfigurationError,
    ConnectionError,
    NotFoundError,
    RateLimitError,
    ServerError,
    SyncBridgeError,
    TimeoutError,
    TokenExpiredError,
    TransientNetworkError,
    ValidationError,
)
from .resilience import DEFAULT_RETRYABLE_EXCEPTIONS, CircuitBreaker, retry_async

logger = logging.getLogger(__name__)

# Error statuses with a dedicated type. 401, 404 and 429 carry extra
# context and are built separately; other 5xx map to ServerError.
STATUS_ERRORS: dict[int, type[APIError]] = {
    400: ValidationError,
    422: ValidationError,
}

# ============================================
# Configuration
# ============================================

@dataclass
class PaginationConfig:
    """Configuration for paginated list requests.

    Attributes:
        page_size: Number of items per request
        page_param: Query parameter carrying the zero-based page number
        size_param: Query parameter carrying the page size
        delay_between_pages: Seconds to wait between requests
        max_pages: Safety limit to prevent infinite loops (None = no limit)
    """
    page_size: int = 100
    page_param: str = "page"
    size_param: str = "pageSize"
    delay_between_pages: float = 0.0
    max_pages: Optional[int] = None


# ============================================
# The Client
# ============================================

class RestClient:
    """Async HTTP client for one target system.

    Use as an async context manager to ensure the session is closed:

        async with RestClient(token_manager, base_url) as client:
            data = await client.get("/some/endpoint")

    Attributes:
        token_manager: Source of bearer tokens
        base_url: Base URL for requests
        name: Label for logs and the circuit breaker
        timeout_seconds: Total timeout per request
        max_retries: Extra attempts for transient failures (0 = no retry)
    """

    def __init__(
        self,
        token_manager: TokenManager,
        base_url: str,
        name: str = "target",
        timeout_seconds: float = 30.0,
        max_retries: int = 0,
        enable_circuit_breaker: bool = True,
        circuit_failure_threshold: int = 5,
        circuit_timeout: float = 60.0,
    ):
        self.token_manager = token_manager
        self.base_url = (base_url or "").rstrip("/")
        self.name = name
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, max_retries)

        if not self.base_url:
            raise ConfigurationError(f"Base URL is required for {name} client")

        self._session: Optional[aiohttp.ClientSession] = None

        self._circuit_breaker: Optional[CircuitBreaker] = None
        if enable_circuit_breaker:
            self._circuit_breaker = CircuitBreaker(
                failure_threshold=circuit_failure_threshold,
                timeout=circuit_timeout,
                name=name,
            )

    # ----------------------------------------
    # Context Manager Protocol
    # ----------------------------------------

    async def __aenter__(self) -> "RestClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def open(self) -> None:
        """Create the HTTP session (idempotent)."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=10, limit_per_host=10),
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    # ----------------------------------------
    # Low-Level Request Methods
    # ----------------------------------------

    async def _get_auth_headers(self) -> dict[str, str]:
        token = await self.token_manager.get_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[Any] = None,
    ) -> Any:
        """Make a single HTTP request (no retry logic).

        Returns:
            Parsed JSON response, or None for an empty body

        Raises:
            APIError: If response status is not 2xx
            ConnectionError: If connection to server fails
            TimeoutError: If request times out
        """
        if not self._session:
            raise RuntimeError(
                f"{self.name} client must be opened before use: "
                "async with RestClient(...) as client:"
            )

        url = f"{self.base_url}{endpoint}"

        try:
            headers = await self._get_auth_headers()

            async with self._session.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_body,
            ) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise self._create_api_error(
                        status=response.status,
                        method=method,
                        endpoint=endpoint,
                        response_body=error_text,
                        retry_after=response.headers.get("Retry-After"),
                    )

                if response.status == 204 or response.content_length == 0:
                    return None
                return await response.json(content_type=None)

        except aiohttp.ClientConnectionError as e:
            raise ConnectionError(
                f"Failed to connect to {self.base_url}",
                host=self.base_url,
                cause=e,
            )

        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Request to {endpoint} timed out",
                timeout_seconds=self.timeout_seconds,
                cause=e,
            )

        except aiohttp.ClientError as e:
            raise TransientNetworkError(
                f"Network error during {method} {endpoint}: {e}",
                cause=e,
            )

    def _create_api_error(
        self,
        status: int,
        method: str,
        endpoint: str,
        response_body: str,
        retry_after: Optional[str] = None,
    ) -> SyncBridgeError:
        """Typed exception for an error status; see STATUS_ERRORS."""
        if status == 401:
            return TokenExpiredError("Access token expired or invalid", details={"endpoint": endpoint})

        context = {"endpoint": endpoint, "method": method, "response_body": response_body}
        if status == 404:
            return NotFoundError("Resource", endpoint, **context)
        if status == 429:
            seconds = int(retry_after) if retry_after and retry_after.isdigit() else None
            return RateLimitError(f"{endpoint} is rate limited", retry_after=seconds, **context)

        error_class = STATUS_ERRORS.get(status) or (ServerError if status >= 500 else APIError)
        return error_class(f"{method} {endpoint} returned HTTP {status}", status_code=status, **context)

    async def _request_authenticated(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[Any] = None,
    ) -> Any:
        """Request with a single token refresh on 401."""
        try:
            return await self._request(method, endpoint, params, json_body)
        except TokenExpiredError:
            logger.warning(f"{self.name}: 401 on {method} {endpoint}, refreshing token")
            self.token_manager.invalidate()
            return await self._request(method, endpoint, params, json_body)

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[Any] = None,
    ) -> Any:
        """Make an HTTP request through the circuit breaker.

            - Circuit breaker: fail fast while the system is down
            - 401 Unauthorized: invalidate token, refresh, retry once
            - Transient (network, timeout, 429, 5xx): up to max_retries more
            - Other 4xx: raised immediately as typed errors

        Raises:
            CircuitOpenError: If circuit breaker is open
            SyncBridgeError subclasses for every failure mode
        """
        if self._circuit_breaker:
            await self._circuit_breaker.before_call()

        try:
            result = await retry_async(
                self._request_authenticated,
                method,
                endpoint,
                params,
                json_body,
                max_attempts=self.max_retries + 1,
            )
        except DEFAULT_RETRYABLE_EXCEPTIONS as e:
            if self._circuit_breaker:
                await self._circuit_breaker.record_failure(e)
            raise
        except APIError:
            # The remote answered; it is reachable even if it said no.
            if self._circuit_breaker:
                await self._circuit_breaker.record_success()
            raise

        if self._circuit_breaker:
            await self._circuit_breaker.record_success()
        return result

    @property
    def circuit_status(self) -> Optional[dict[str, Any]]:
        if self._circuit_breaker:
            return self._circuit_breaker.get_status()
        return None

    # ----------------------------------------
    # High-Level Request Methods
    # ----------------------------------------

    async def get(self, endpoint: str, params: Optional[dict] = None) -> Any:
        return await self._request_with_retry("GET", endpoint, params=params)

    async def post(
        self,
        endpoint: str,
        json_body: Optional[Any] = None,
        params: Optional[dict] = None,
    ) -> Any:
        return await self._request_with_retry("POST", endpoint, params=params, json_body=json_body)

    async def put(
        self,
        endpoint: str,
        json_body: Any,
        params: Optional[dict] = None,
    ) -> Any:
        return await self._request_with_retry("PUT", endpoint, params=params, json_body=json_body)

    async def delete(self, endpoint: str, params: Optional[dict] = None) -> Any:
        return await self._request_with_retry("DELETE", endpoint, params=params)

    # ----------------------------------------
    # Pagination Methods
    # ----------------------------------------

    @staticmethod
    def unpack_page(data: Any) -> tuple[list[dict], Optional[bool]]:
        """Split a page response into (items, has_next).

        Accepts a bare JSON list or an envelope with ``data``/``items`` and
        an optional ``hasNext`` flag.
        """
        if data is None:
            return [], False
        if isinstance(data, list):
            return data, None
        items = data.get("data")
        if items is None:
            items = data.get("items", [])
        has_next = data.get("hasNext")
        return items, has_next if isinstance(has_next, bool) else None

    async def paginate(
        self,
        endpoint: str,
        config: Optional[PaginationConfig] = None,
        params: Optional[dict] = None,
    ) -> AsyncIterator[list[dict]]:
        """Iterate through paginated list responses, one page at a time.

        Stops when the server reports no next page, a short page arrives, or a
        page brings no ids not already seen (a server that ignores paging).
        """
        config = config or PaginationConfig()
        params = dict(params or {})

        page = 0
        fetched_count = 0
        seen_ids: set[str] = set()

        while True:
            params[config.page_param] = page
            params[config.size_param] = config.page_size

            data = await self.get(endpoint, params=params)
            items, has_next = self.unpack_page(data)

            new_items = [i for i in items if i.get("id") not in seen_ids]
            if items and not new_items:
                logger.debug(f"{endpoint}: page {page} repeated earlier ids, stopping")
                break
            seen_ids.update(i.get("id") for i in new_items)

            if new_items:
                yield new_items
            fetched_count += len(new_items)
            page += 1

            if has_next is False:
                break
            if has_next is None and len(items) < config.page_size:
                break
            if config.max_pages and page >= config.max_pages:
                logger.info(f"Reached max_pages limit ({config.max_pages})")
                break

            if config.delay_between_pages > 0:
                await asyncio.sleep(config.delay_between_pages)

        logger.debug(f"{self.name}: paginated {endpoint}, {fetched_count} items in {page} pages")

    async def fetch_all(
        self,
        endpoint: str,
        config: Optional[PaginationConfig] = None,
        params: Optional[dict] = None,
    ) -> list[dict]:
        """Fetch all items from a paginated endpoint."""
        all_items = []
        async for page in self.paginate(endpoint, config, params):
            all_items.extend(page)
        return all_items


__all__ = ["RestClient", "PaginationConfig"]
