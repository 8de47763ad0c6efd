"""SyncService - wires clients, stores, orchestrators, queue and ingest.

This is the process-level control surface:
    get_sync_status, reconcile_source_to_target, reconcile_target_to_source,
    force_sync, cancel_reconcile, health_check

and the runtime (start/stop) used by `main.py serve`:
    1. open both clients
    2. initialize the queue and start consumers (unless direct apply)
    3. start the notification stream
    4. optionally sweep every class once, then on every interval
"""

import asyncio
import logging
from typing import Any, Optional

from .api.auth import LoginTokenManager, OAuth2TokenManager
from .api.exceptions import ValidationError
from .api.legacy_platform import LegacyPlatformClient
from .api.protocol_engine import ProtocolEngineClient
from .config import SyncBridgeConfig
from .sync.adapters.amqp_queue import AmqpQueueAdapter
from .sync.adapters.entity_stores import LegacyPlatformStore, ProtocolEngineStore
from .sync.adapters.event_transformer import EventTransformer
from .sync.adapters.notification_stream import NotificationStream
from .sync.domain.entities import EntityClass, SyncEvent, SyncFailure
from .sync.use_cases.orchestrator import SyncOrchestrator
from .sync.use_cases.queue_consumer import QueueConsumer
from .sync.use_cases.status_reporter import StatusReporter

logger = logging.getLogger(__name__)


class SyncService:
    """Composition root for one SyncBridge process.

    Example:
        service = SyncService(load_config())
        await service.start()
        ...
        await service.stop()
    """

    def __init__(
        self,
        config: SyncBridgeConfig,
        engine: Optional[ProtocolEngineClient] = None,
        legacy: Optional[LegacyPlatformClient] = None,
        queue: Optional[AmqpQueueAdapter] = None,
    ):
        self.config = config
        timeout = config.http_timeout_seconds

        self.engine = engine or ProtocolEngineClient(
            config.protocol_engine.engine_url,
            OAuth2TokenManager(
                config.protocol_engine.token_url,
                config.protocol_engine.client_id,
                client_secret=config.protocol_engine.client_secret,
                username=config.protocol_engine.username,
                password=config.protocol_engine.password,
                timeout_seconds=timeout,
            ),
            timeout_seconds=timeout,
            max_retries=config.http_max_retries,
        )
        self.legacy = legacy or LegacyPlatformClient(
            config.legacy_platform.base_url,
            LoginTokenManager(
                config.legacy_platform.base_url,
                config.legacy_platform.username,
                config.legacy_platform.password,
                timeout_seconds=timeout,
            ),
            timeout_seconds=timeout,
            max_retries=config.http_max_retries,
        )

        if config.sync.direct_apply:
            self.queue = None
        else:
            self.queue = queue or AmqpQueueAdapter(
                config.amqp.url,
                prefetch_count=config.amqp.prefetch_count,
            )

        transformer = EventTransformer()
        self.orchestrators: dict[EntityClass, SyncOrchestrator] = {}
        for entity_class in config.sync.entity_classes:
            orchestrator = SyncOrchestrator(
                entity_class,
                source=ProtocolEngineStore(self.engine, entity_class),
                target=LegacyPlatformStore(self.legacy, entity_class),
                transformer=transformer,
                publisher=self.queue,
                sweep_timeout=config.sync.timeout_seconds,
                dedup_window_size=config.sync.dedup_window_size,
            )
            orchestrator.add_failure_listener(self._log_failure)
            self.orchestrators[entity_class] = orchestrator

        self.consumer = (
            QueueConsumer(self.queue, self.orchestrators, max_concurrency=config.amqp.prefetch_count)
            if self.queue is not None
            else None
        )
        self.stream = NotificationStream(
            self.engine.stream_url,
            self.engine.token_manager,
            self.on_event,
        )
        self.reporter = StatusReporter(
            self.orchestrators,
            publisher=self.queue,
            clients={"protocolEngine": self.engine, "legacyPlatform": self.legacy},
            stream=self.stream,
        )

        self._shutdown = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    # ----------------------------------------
    # Event flow
    # ----------------------------------------

    async def on_event(self, event: SyncEvent) -> None:
        """Ingest callback: route the event to its class's orchestrator."""
        orchestrator = self.orchestrators.get(event.entity_class)
        if orchestrator is None:
            logger.debug(f"Ignoring {event.entity_class.value} event {event.event_id}: class not synced")
            return
        await orchestrator.dispatch(event)

    @staticmethod
    async def _log_failure(failure: SyncFailure) -> None:
        event_id = failure.event.event_id if failure.event else None
        logger.error(f"sync-failed: {failure.operation} event={event_id}: {failure.error}")

    # ----------------------------------------
    # Control surface
    # ----------------------------------------

    def orchestrator(self, entity_class: Any) -> SyncOrchestrator:
        """Orchestrator for an entity class.

        Raises:
            ValidationError: Unknown or unsynced entity class
        """
        try:
            key = EntityClass(getattr(entity_class, "value", entity_class))
        except ValueError:
            raise ValidationError(f"Unknown entity class '{entity_class}'", field="entityClass")
        if key not in self.orchestrators:
            raise ValidationError(f"Entity class '{key.value}' is not synced", field="entityClass")
        return self.orchestrators[key]

    async def get_sync_status(self, entity_class: Any = None) -> dict[str, Any]:
        if entity_class is not None:
            status = await self.orchestrator(entity_class).get_sync_status()
            return status.to_dict()
        statuses = await self.reporter.get_sync_status()
        return {name: status.to_dict() for name, status in statuses.items()}

    async def reconcile_source_to_target(self, entity_class: Any) -> dict[str, Any]:
        report = await self.orchestrator(entity_class).reconcile()
        return report.to_dict()

    async def reconcile_target_to_source(self, entity_class: Any) -> dict[str, Any]:
        report = await self.orchestrator(entity_class).reconcile_target_to_source()
        return report.to_dict()

    async def force_sync(self, entity_class: Any) -> dict[str, Any]:
        return await self.orchestrator(entity_class).force_sync()

    def cancel_reconcile(self, entity_class: Any) -> bool:
        return self.orchestrator(entity_class).cancel_reconcile()

    async def health_check(self) -> dict[str, Any]:
        return await self.reporter.health_check()

    # ----------------------------------------
    # Runtime
    # ----------------------------------------

    async def open(self) -> None:
        await self.engine.open()
        await self.legacy.open()

    async def start(self, with_stream: bool = True, with_schedule: bool = True) -> None:
        """Open clients, start consumers, ingest and the sweep schedule."""
        logger.info(f"Starting SyncBridge: {self.config}")
        self._shutdown.clear()
        await self.open()

        if self.queue is not None:
            await self.queue.initialize()
            await self.consumer.start()
        else:
            logger.info("Direct apply mode: events bypass the queue")

        if with_stream:
            self._tasks.append(asyncio.create_task(self._run_stream(), name="notification-stream"))
        if with_schedule:
            self._tasks.append(asyncio.create_task(self.sweep_loop(), name="sweep-schedule"))

    async def _run_stream(self) -> None:
        try:
            await self.stream.run()
        except Exception:
            logger.exception("Notification stream stopped; periodic sweeps still converge")

    async def sweep_all(self) -> dict[str, Any]:
        """One forward sweep per class, concurrently (classes don't share state)."""
        reports = await asyncio.gather(*(orch.reconcile() for orch in self.orchestrators.values()))
        return {cls.value: report.to_dict() for cls, report in zip(self.orchestrators, reports)}

    async def sweep_loop(self) -> None:
        interval_seconds = self.config.sync.interval_minutes * 60

        if self.config.sync.sync_on_startup:
            logger.info("Running initial sweep on startup")
            await self.sweep_all()

        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            logger.info("Scheduled sweep starting")
            results = await self.sweep_all()
            failed = [name for name, report in results.items() if not report["success"]]
            if failed:
                logger.warning(f"Scheduled sweep finished with failures: {failed}")

        logger.info("Sweep schedule stopped")

    async def stop(self) -> None:
        """Stop ingest, cancel sweeps, close queue and clients."""
        logger.info("Stopping SyncBridge")
        self._shutdown.set()
        await self.stream.stop()
        for orchestrator in self.orchestrators.values():
            orchestrator.cancel_reconcile()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.queue is not None:
            await self.queue.close()
        await self.engine.close()
        await self.legacy.close()
        logger.info("SyncBridge stopped")
