"""Tests for sync status aggregation and health checks."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import psutil
import pytest

from src.syncbridge.api.exceptions import QueueError
from src.syncbridge.sync.domain.entities import EntityClass, SyncStatus
from src.syncbridge.sync.use_cases.status_reporter import StatusReporter

RESOURCES = {
    "cpuPercent": 1.0,
    "memoryPercent": 20.0,
    "memoryUsedMb": 100.0,
    "memoryTotalMb": 500.0,
    "processRssMb": 50.0,
}


def make_orchestrator(source_count=1, target_count=1):
    orchestrator = MagicMock()
    orchestrator.get_sync_status = AsyncMock(
        return_value=SyncStatus(source_count, target_count, sync_in_progress=False)
    )
    orchestrator.sync_in_progress = False
    orchestrator.last_sync_time = datetime(2024, 5, 1, tzinfo=timezone.utc)
    orchestrator.last_report = None
    orchestrator.stats = {"processed": 3}
    return orchestrator


def make_client(state="closed"):
    client = MagicMock()
    client.circuit_status = {"name": "legacy-platform", "state": state}
    return client


def make_publisher(healthy=True):
    publisher = MagicMock()
    publisher.is_healthy = AsyncMock(return_value=healthy)
    publisher.queue_depths = AsyncMock(return_value={"device-sync": 4, "tenant-sync": 0})
    return publisher


class TestSyncStatus:

    @pytest.mark.asyncio
    async def test_all_classes(self):
        reporter = StatusReporter({
            EntityClass.DEVICE: make_orchestrator(5, 4),
            EntityClass.TENANT: make_orchestrator(2, 2),
        })

        statuses = await reporter.get_sync_status()

        assert set(statuses) == {"device", "tenant"}
        assert statuses["device"].source_count == 5

    @pytest.mark.asyncio
    async def test_single_class(self):
        tenant = make_orchestrator()
        reporter = StatusReporter({EntityClass.DEVICE: make_orchestrator(), EntityClass.TENANT: tenant})

        statuses = await reporter.get_sync_status("tenant")

        assert list(statuses) == ["tenant"]
        tenant.get_sync_status.assert_awaited_once()

    def test_last_reports_none_before_first_sweep(self):
        reporter = StatusReporter({EntityClass.DEVICE: make_orchestrator()})
        assert reporter.last_reports() == {"device": None}


class TestHealthCheck:

    @pytest.mark.asyncio
    async def test_healthy(self):
        stream = MagicMock(connected=True)
        reporter = StatusReporter(
            {EntityClass.DEVICE: make_orchestrator()},
            publisher=make_publisher(),
            clients={"legacyPlatform": make_client()},
            stream=stream,
        )

        with patch.object(StatusReporter, "resource_usage", return_value=RESOURCES):
            health = await reporter.health_check()

        assert health["status"] == "healthy"
        assert health["resources"] == RESOURCES
        assert health["components"]["queue"] == {
            "healthy": True,
            "depths": {"device-sync": 4, "tenant-sync": 0},
        }
        assert health["components"]["notificationStream"] == {"connected": True}
        assert health["components"]["deviceSync"]["lastSyncTime"] == "2024-05-01T00:00:00+00:00"
        assert health["uptimeSeconds"] >= 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "publisher,stream,client",
        [
            (make_publisher(False), MagicMock(connected=True), make_client()),
            (make_publisher(), MagicMock(connected=False), make_client()),
            (make_publisher(), MagicMock(connected=True), make_client("open")),
        ],
    )
    async def test_degraded(self, publisher, stream, client):
        reporter = StatusReporter(
            {EntityClass.DEVICE: make_orchestrator()},
            publisher=publisher,
            clients={"protocolEngine": client},
            stream=stream,
        )

        with patch.object(StatusReporter, "resource_usage", return_value=RESOURCES):
            health = await reporter.health_check()

        assert health["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_queue_depth_failure_keeps_health(self):
        publisher = make_publisher()
        publisher.queue_depths = AsyncMock(side_effect=QueueError("channel closed"))
        reporter = StatusReporter({EntityClass.DEVICE: make_orchestrator()}, publisher=publisher)

        with patch.object(StatusReporter, "resource_usage", return_value=RESOURCES):
            health = await reporter.health_check()

        assert health["status"] == "healthy"
        assert health["components"]["queue"] == {"healthy": True}

    @pytest.mark.asyncio
    async def test_unhealthy_queue_skips_depths(self):
        publisher = make_publisher(False)
        reporter = StatusReporter({EntityClass.DEVICE: make_orchestrator()}, publisher=publisher)

        with patch.object(StatusReporter, "resource_usage", return_value=RESOURCES):
            await reporter.health_check()

        publisher.queue_depths.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unhealthy_without_orchestrators(self):
        with patch.object(StatusReporter, "resource_usage", return_value=RESOURCES):
            health = await StatusReporter({}).health_check()
        assert health["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_resource_read_failure_tolerated(self):
        reporter = StatusReporter({EntityClass.DEVICE: make_orchestrator()})

        with patch.object(StatusReporter, "resource_usage", side_effect=psutil.AccessDenied()):
            health = await reporter.health_check()

        assert health["status"] == "healthy"
        assert health["resources"] == {}

    def test_resource_usage_keys(self):
        usage = StatusReporter.resource_usage()
        assert set(usage) == set(RESOURCES)
        assert usage["processRssMb"] > 0
