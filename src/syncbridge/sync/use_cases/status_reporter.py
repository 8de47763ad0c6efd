"""Status Reporter - sync status and process health for operators."""

import asyncio
import logging
import time
from typing import Any, Optional

import psutil

from ...api.exceptions import SyncBridgeError
from ..domain.entities import EntityClass, SyncStatus
from ..domain.ports import IEventPublisher
from .orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class StatusReporter:
    """Aggregates per-class sync status and component health.

    Health levels:
        healthy    every component reachable, no open circuit
        degraded   queue/stream down or a client circuit open
        unhealthy  no orchestrator configured
    """

    def __init__(
        self,
        orchestrators: dict[EntityClass, SyncOrchestrator],
        publisher: Optional[IEventPublisher] = None,
        clients: Optional[dict[str, Any]] = None,
        stream: Optional[Any] = None,
    ):
        self.orchestrators = orchestrators
        self.publisher = publisher
        self.clients = clients or {}
        self.stream = stream
        self.started_at = time.time()

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.started_at

    async def get_sync_status(self, entity_class: Optional[EntityClass] = None) -> dict[str, SyncStatus]:
        """Status per entity class; never raises."""
        if entity_class is not None:
            selected = {EntityClass(entity_class): self.orchestrators[EntityClass(entity_class)]}
        else:
            selected = self.orchestrators
        statuses = await asyncio.gather(*(orch.get_sync_status() for orch in selected.values()))
        return {cls.value: status for cls, status in zip(selected, statuses)}

    def last_reports(self) -> dict[str, Optional[dict[str, Any]]]:
        return {
            cls.value: orch.last_report.to_dict() if orch.last_report else None
            for cls, orch in self.orchestrators.items()
        }

    @staticmethod
    def resource_usage() -> dict[str, float]:
        """Process and host resource usage via psutil."""
        process = psutil.Process()
        memory = psutil.virtual_memory()
        return {
            "cpuPercent": psutil.cpu_percent(interval=None),
            "memoryPercent": memory.percent,
            "memoryUsedMb": round(memory.used / (1024 * 1024), 1),
            "memoryTotalMb": round(memory.total / (1024 * 1024), 1),
            "processRssMb": round(process.memory_info().rss / (1024 * 1024), 1),
        }

    async def health_check(self) -> dict[str, Any]:
        components: dict[str, Any] = {}
        degraded = False

        if self.publisher is not None:
            queue_ok = await self.publisher.is_healthy()
            components["queue"] = {"healthy": queue_ok}
            if queue_ok:
                try:
                    components["queue"]["depths"] = await self.publisher.queue_depths()
                except SyncBridgeError as e:
                    logger.warning(f"Failed to read queue depths: {e}")
            degraded = degraded or not queue_ok

        if self.stream is not None:
            components["notificationStream"] = {"connected": bool(self.stream.connected)}
            degraded = degraded or not self.stream.connected

        for name, client in self.clients.items():
            circuit = client.circuit_status
            components[name] = {"circuit": circuit}
            if circuit and circuit.get("state") == "open":
                degraded = True

        for cls, orch in self.orchestrators.items():
            components[f"{cls.value}Sync"] = {
                "syncInProgress": orch.sync_in_progress,
                "lastSyncTime": orch.last_sync_time.isoformat() if orch.last_sync_time else None,
                "stats": dict(orch.stats),
            }

        try:
            resources = self.resource_usage()
        except psutil.Error as e:
            logger.warning(f"Failed to read resource usage: {e}")
            resources = {}

        if not self.orchestrators:
            status = "unhealthy"
        elif degraded:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "uptimeSeconds": round(self.uptime_seconds, 1),
            "resources": resources,
            "components": components,
        }
