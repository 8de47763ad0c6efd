"""Notification ingest from the protocol engine.

NotificationNormalizer turns raw notifications into SyncEvents, dropping
system frames and malformed notifications. NotificationStream reads the
protocol engine's server-sent-event stream over aiohttp and hands every
normalized event to a callback.

SSE framing: each event is one or more "data:" lines followed by a blank
line. The joined data is one JSON notification.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import aiohttp

from ...api.auth import TokenManager
from ...api.exceptions import ConnectionError, SerializationError, SyncBridgeError
from ..domain.entities import SyncEvent
from .event_transformer import EventTransformer

logger = logging.getLogger(__name__)

EventCallback = Callable[[SyncEvent], Awaitable[Any]]


class NotificationNormalizer:
    """Exactly one SyncEvent per well-formed notification, None otherwise."""

    def __init__(self, transformer: Optional[EventTransformer] = None):
        self.transformer = transformer or EventTransformer()
        self.stats = {"received": 0, "emitted": 0, "dropped": 0, "system": 0}

    def normalize(self, notification: Any) -> Optional[SyncEvent]:
        self.stats["received"] += 1

        if isinstance(notification, dict) and notification.get("type", "notify") != "notify":
            self.stats["system"] += 1
            logger.debug(f"System frame ignored: type={notification.get('type')}")
            return None

        try:
            event = self.transformer.to_sync_event(notification)
        except SerializationError as e:
            self.stats["dropped"] += 1
            logger.warning(f"Dropped malformed notification: {e.message}")
            return None

        self.stats["emitted"] += 1
        return event


class NotificationStream:
    """Consumes the protocol engine notification stream.

    Reconnects with exponential backoff, bounded by max_reconnect_attempts
    consecutive failures; the counter resets after every successful connect.

    Example:
        stream = NotificationStream(engine.stream_url, token_manager, on_event)
        task = asyncio.create_task(stream.run())
        ...
        await stream.stop()
    """

    def __init__(
        self,
        stream_url: str,
        token_manager: TokenManager,
        callback: EventCallback,
        normalizer: Optional[NotificationNormalizer] = None,
        max_reconnect_attempts: int = 5,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        connect_timeout: float = 30.0,
    ):
        self.stream_url = stream_url
        self.token_manager = token_manager
        self.callback = callback
        self.normalizer = normalizer or NotificationNormalizer()
        self.max_reconnect_attempts = max_reconnect_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.connect_timeout = connect_timeout

        self._running = False
        self._session: Optional[aiohttp.ClientSession] = None
        self.connected = False
        self.callback_failures = 0

    async def run(self) -> None:
        """Stream until stopped.

        Raises:
            ConnectionError: After max_reconnect_attempts consecutive failures
        """
        self._running = True
        failures = 0
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            self._session = session
            try:
                while self._running:
                    try:
                        await self._listen(session)
                        failures = 0
                        delay = self.initial_delay
                        if self._running:
                            logger.warning("Notification stream ended, reconnecting")
                    except (aiohttp.ClientError, asyncio.TimeoutError, SyncBridgeError) as e:
                        if not self._running:
                            break
                        failures += 1
                        if failures > self.max_reconnect_attempts:
                            raise ConnectionError(
                                f"Notification stream unavailable after {self.max_reconnect_attempts} reconnect attempts",
                                host=self.stream_url,
                                cause=e,
                            )
                        delay = min(self.initial_delay * (2 ** (failures - 1)), self.max_delay)
                        logger.warning(
                            f"Notification stream error ({failures}/{self.max_reconnect_attempts}), "
                            f"retrying in {delay:.1f}s: {e}"
                        )
                    finally:
                        self.connected = False

                    if self._running:
                        await asyncio.sleep(delay)
            finally:
                self._session = None
                self._running = False

    async def _listen(self, session: aiohttp.ClientSession) -> None:
        """Deliver events from one connection until the server closes it."""
        token = await self.token_manager.get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "text/event-stream",
        }

        async with session.get(self.stream_url, headers=headers) as response:
            if response.status == 401:
                self.token_manager.invalidate()
                raise aiohttp.ClientResponseError(
                    response.request_info,
                    response.history,
                    status=401,
                    message="Stream token rejected",
                )
            response.raise_for_status()

            self.connected = True
            logger.info(f"Connected to notification stream {self.stream_url}")

            data_lines: list[str] = []
            undecodable = False
            async for raw in response.content:
                if not self._running:
                    break
                try:
                    line = raw.decode("utf-8").rstrip("\r\n")
                except UnicodeDecodeError:
                    # The whole frame is dropped at its closing blank line.
                    undecodable = True
                    continue
                if line.startswith("data:"):
                    data_lines.append(line[5:].lstrip())
                elif line == "" and (data_lines or undecodable):
                    await self._end_frame(data_lines, undecodable)
                    data_lines = []
                    undecodable = False
            if data_lines or undecodable:
                await self._end_frame(data_lines, undecodable)

    async def _end_frame(self, data_lines: list[str], undecodable: bool) -> None:
        if undecodable:
            self.normalizer.stats["dropped"] += 1
            logger.warning("Dropped stream frame with invalid UTF-8")
            return
        await self._deliver("\n".join(data_lines))

    async def _deliver(self, data: str) -> None:
        try:
            notification = json.loads(data)
        except json.JSONDecodeError:
            self.normalizer.stats["dropped"] += 1
            logger.warning(f"Dropped non-JSON stream frame ({len(data)} bytes)")
            return

        event = self.normalizer.normalize(notification)
        if event is None:
            return
        try:
            await self.callback(event)
        except Exception:
            # Missed events converge on the next sweep.
            self.callback_failures += 1
            logger.exception(f"Event callback failed for {event.event_type.value} {event.event_id}")

    async def stop(self) -> None:
        self._running = False
        if self._session is not None and not self._session.closed:
            await self._session.close()
