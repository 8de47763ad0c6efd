"""Tests for the sync orchestrator.

Uses in-memory stores behind the port interfaces, so every property is
checked against real planning and apply logic without network I/O.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.syncbridge.api.exceptions import ValidationError
from src.syncbridge.sync.adapters.event_transformer import EventTransformer
from src.syncbridge.sync.domain.entities import (
    BulkPayload,
    EntityClass,
    EntityIdPayload,
    EntityPayload,
    EventMetadata,
    EventType,
    RelationPayload,
    SyncEvent,
    SyncFailure,
)
from src.syncbridge.sync.domain.ports import ISourceStore, ITargetStore
from src.syncbridge.sync.use_cases.orchestrator import SyncOrchestrator

DEFAULT_LIMITS = {"maxUsers": 100, "maxDevices": 1000, "maxAssets": 500, "maxCustomers": 50}


# ============================================
# In-memory stores
# ============================================

class InMemorySourceStore(ISourceStore):
    def __init__(self, entity_class, entities=()):
        self.entity_class = entity_class
        self.entities = {e["id"]: dict(e) for e in entities}
        self.created = []
        self.fail_count = False

    async def fetch_all(self):
        return [dict(e) for e in self.entities.values()]

    async def count(self):
        if self.fail_count:
            raise ConnectionRefusedError("engine unreachable")
        return len(self.entities)

    async def exists(self, entity_id):
        return entity_id in self.entities

    async def create(self, entity):
        self.entities[entity["id"]] = dict(entity)
        self.created.append(entity["id"])
        return entity


class InMemoryTargetStore(ITargetStore):
    def __init__(self, entity_class, entities=()):
        self.entity_class = entity_class
        self.entities = {e["id"]: dict(e) for e in entities}
        self.calls = []
        self.fail_ids = set()
        self.gate = None
        self.fetch_started = asyncio.Event()

    def _check(self, entity_id):
        if entity_id in self.fail_ids:
            raise ValidationError(f"rejected {entity_id}", status_code=400)

    async def fetch_all(self):
        self.fetch_started.set()
        if self.gate is not None:
            await self.gate.wait()
        return [dict(e) for e in self.entities.values()]

    async def count(self):
        return len(self.entities)

    async def get(self, entity_id):
        entity = self.entities.get(entity_id)
        return dict(entity) if entity else None

    async def create(self, entity):
        self._check(entity["id"])
        self.calls.append(("create", entity["id"]))
        self.entities[entity["id"]] = dict(entity)
        return entity

    async def update(self, entity_id, entity):
        self._check(entity_id)
        self.calls.append(("update", entity_id))
        self.entities[entity_id] = dict(entity)
        return entity

    async def delete(self, entity_id):
        self.calls.append(("delete", entity_id))
        return self.entities.pop(entity_id, None) is not None

    async def assign(self, entity_id, related_id):
        self.calls.append(("assign", entity_id, related_id))
        self.entities[entity_id]["customerId"] = related_id

    async def unassign(self, entity_id, related_id=None):
        self.calls.append(("unassign", entity_id, related_id))
        self.entities[entity_id]["customerId"] = None


def make_event(event_type, payload, entity_class=EntityClass.DEVICE, event_id="evt-1"):
    return SyncEvent(
        event_type=event_type,
        event_id=event_id,
        source="npl-engine",
        entity_class=entity_class,
        payload=payload,
        metadata=EventMetadata(timestamp=datetime.now(timezone.utc), correlation_id="c-1"),
    )


def make_orchestrator(entity_class=EntityClass.DEVICE, source=(), target=(), **kwargs):
    return SyncOrchestrator(
        entity_class,
        source=InMemorySourceStore(entity_class, source),
        target=InMemoryTargetStore(entity_class, target),
        **kwargs,
    )


# ============================================
# Incremental propagation
# ============================================

class TestHandleEvent:
    """Tests for single-event apply."""

    @pytest.mark.asyncio
    async def test_create_when_absent(self):
        orchestrator = make_orchestrator()
        event = make_event(EventType.ENTITY_CREATED, EntityPayload({"id": "d-1", "name": "Pump"}))

        result = await orchestrator.handle_event(event)

        assert result.success
        assert result.operation == "create"
        assert orchestrator.target.entities["d-1"]["name"] == "Pump"

    @pytest.mark.asyncio
    async def test_update_when_changed(self):
        orchestrator = make_orchestrator(target=[{"id": "d-1", "name": "Old"}])
        event = make_event(EventType.ENTITY_UPDATED, EntityPayload({"id": "d-1", "name": "New"}))

        result = await orchestrator.handle_event(event)

        assert result.operation == "update"
        assert orchestrator.target.entities["d-1"]["name"] == "New"

    @pytest.mark.asyncio
    async def test_unchanged_is_noop(self):
        orchestrator = make_orchestrator(target=[{"id": "d-1", "name": "Same", "version": 3}])
        event = make_event(EventType.ENTITY_UPDATED, EntityPayload({"id": "d-1", "name": "Same"}))

        result = await orchestrator.handle_event(event)

        assert result.operation == "noop"
        assert orchestrator.target.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_delivery_applies_once(self):
        orchestrator = make_orchestrator()
        event = make_event(EventType.ENTITY_CREATED, EntityPayload({"id": "d-1", "name": "Pump"}))

        first = await orchestrator.handle_event(event)
        second = await orchestrator.handle_event(event)

        assert first.success and second.success
        assert second.operation == "duplicate"
        assert orchestrator.target.calls == [("create", "d-1")]
        assert len(orchestrator.target.entities) == 1
        assert orchestrator.stats["duplicates"] == 1

    @pytest.mark.asyncio
    async def test_redelivered_create_with_new_id_is_still_idempotent(self):
        orchestrator = make_orchestrator()
        payload = EntityPayload({"id": "d-1", "name": "Pump"})

        await orchestrator.handle_event(make_event(EventType.ENTITY_CREATED, payload, event_id="a"))
        result = await orchestrator.handle_event(make_event(EventType.ENTITY_CREATED, payload, event_id="b"))

        assert result.success
        assert result.operation == "noop"
        assert len(orchestrator.target.entities) == 1

    @pytest.mark.asyncio
    async def test_dedup_window_is_bounded(self):
        orchestrator = make_orchestrator(dedup_window_size=2)
        for event_id in ("a", "b", "c"):
            await orchestrator.handle_event(
                make_event(EventType.ENTITY_DELETED, EntityIdPayload("d-1"), event_id=event_id)
            )

        result = await orchestrator.handle_event(
            make_event(EventType.ENTITY_DELETED, EntityIdPayload("d-1"), event_id="a")
        )

        assert result.operation == "delete"

    @pytest.mark.asyncio
    async def test_delete_of_absent_entity_is_not_an_error(self):
        orchestrator = make_orchestrator()
        result = await orchestrator.handle_event(make_event(EventType.ENTITY_DELETED, EntityIdPayload("ghost")))

        assert result.success
        assert result.operation == "delete"

    @pytest.mark.asyncio
    async def test_sensitive_fields_never_reach_target(self):
        orchestrator = make_orchestrator()
        payload = EntityPayload({"id": "d-1", "credentials": "device-token", "additionalInfo": {"secret": "s"}})

        await orchestrator.handle_event(make_event(EventType.ENTITY_CREATED, payload))

        stored = orchestrator.target.entities["d-1"]
        assert stored["credentials"] == ""
        assert stored["additionalInfo"]["secret"] == ""

    @pytest.mark.asyncio
    async def test_assign_and_unassign(self):
        orchestrator = make_orchestrator(target=[{"id": "d-1", "customerId": None}])

        await orchestrator.handle_event(
            make_event(EventType.RELATION_ASSIGNED, RelationPayload("d-1", "C1"), event_id="a")
        )
        result = await orchestrator.handle_event(
            make_event(EventType.RELATION_UNASSIGNED, RelationPayload("d-1"), event_id="b")
        )

        assert result.operation == "unassign"
        assert orchestrator.target.calls == [("assign", "d-1", "C1"), ("unassign", "d-1", "C1")]

    @pytest.mark.asyncio
    async def test_unassign_without_customer_is_noop(self):
        orchestrator = make_orchestrator(target=[{"id": "d-1"}])
        result = await orchestrator.handle_event(make_event(EventType.RELATION_UNASSIGNED, RelationPayload("d-1")))

        assert result.success
        assert result.operation == "noop"

    @pytest.mark.asyncio
    async def test_bulk_import_triggers_reconcile(self):
        orchestrator = make_orchestrator(source=[{"id": "d-1"}, {"id": "d-2"}])
        result = await orchestrator.handle_event(make_event(EventType.BULK_IMPORTED, BulkPayload(2, 0)))

        assert result.success
        assert result.operation == "reconcile"
        assert set(orchestrator.target.entities) == {"d-1", "d-2"}

    @pytest.mark.asyncio
    async def test_bulk_delete_is_logged_only(self):
        orchestrator = make_orchestrator(target=[{"id": "d-1"}])
        result = await orchestrator.handle_event(make_event(EventType.BULK_DELETED, BulkPayload(5, 0)))

        assert result.operation == "noop"
        assert "d-1" in orchestrator.target.entities


class TestFailureSignalling:
    """Tests for sync-failed signals."""

    @pytest.mark.asyncio
    async def test_failure_returns_result_and_signals(self):
        orchestrator = make_orchestrator()
        orchestrator.target.fail_ids.add("d-1")
        received = []
        orchestrator.add_failure_listener(received.append)

        event = make_event(EventType.ENTITY_CREATED, EntityPayload({"id": "d-1", "credentials": "x"}))
        result = await orchestrator.handle_event(event)

        assert not result.success
        assert "rejected d-1" in result.error
        assert len(received) == 1
        failure = received[0]
        assert isinstance(failure, SyncFailure)
        assert failure.event is event
        assert failure.entity["credentials"] == ""
        assert isinstance(failure.error, ValidationError)

    @pytest.mark.asyncio
    async def test_failed_event_can_be_retried(self):
        orchestrator = make_orchestrator()
        orchestrator.target.fail_ids.add("d-1")
        event = make_event(EventType.ENTITY_CREATED, EntityPayload({"id": "d-1"}))

        await orchestrator.handle_event(event)
        orchestrator.target.fail_ids.clear()
        result = await orchestrator.handle_event(event)

        assert result.success
        assert result.operation == "create"

    @pytest.mark.asyncio
    async def test_async_listener_awaited_and_errors_contained(self):
        orchestrator = make_orchestrator()
        orchestrator.target.fail_ids.add("d-1")
        async_listener = AsyncMock()
        orchestrator.add_failure_listener(MagicMock(side_effect=RuntimeError("listener bug")))
        orchestrator.add_failure_listener(async_listener)

        result = await orchestrator.handle_event(
            make_event(EventType.ENTITY_CREATED, EntityPayload({"id": "d-1"}))
        )

        assert not result.success
        async_listener.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(self):
        orchestrator = make_orchestrator()
        orchestrator.target.fail_ids.add("d-1")
        listener = MagicMock()
        orchestrator.add_failure_listener(listener)
        orchestrator.remove_failure_listener(listener)

        await orchestrator.handle_event(make_event(EventType.ENTITY_CREATED, EntityPayload({"id": "d-1"})))

        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_wrong_entity_class_fails(self):
        orchestrator = make_orchestrator()
        event = make_event(EventType.ENTITY_CREATED, EntityPayload({"id": "T1"}), entity_class=EntityClass.TENANT)

        result = await orchestrator.handle_event(event)

        assert not result.success
        assert orchestrator.target.calls == []

    @pytest.mark.asyncio
    async def test_relation_event_for_tenant_fails(self):
        orchestrator = make_orchestrator(EntityClass.TENANT, target=[{"id": "T1"}])
        event = make_event(EventType.RELATION_ASSIGNED, RelationPayload("T1", "C1"), entity_class=EntityClass.TENANT)

        result = await orchestrator.handle_event(event)

        assert not result.success
        assert orchestrator.stats["failed"] == 1


class TestDispatch:

    @pytest.mark.asyncio
    async def test_publishes_when_queue_attached(self):
        publisher = MagicMock()
        publisher.publish_event = AsyncMock()
        orchestrator = make_orchestrator(publisher=publisher)
        event = make_event(EventType.ENTITY_DELETED, EntityIdPayload("d-1"))

        assert await orchestrator.dispatch(event) is None
        publisher.publish_event.assert_awaited_once_with(event)
        assert orchestrator.target.calls == []

    @pytest.mark.asyncio
    async def test_applies_directly_without_queue(self):
        orchestrator = make_orchestrator(target=[{"id": "d-1"}])
        result = await orchestrator.dispatch(make_event(EventType.ENTITY_DELETED, EntityIdPayload("d-1")))

        assert result.success
        assert orchestrator.target.entities == {}


# ============================================
# Full reconciliation
# ============================================

class TestReconcile:
    """Tests for forward and reverse sweeps."""

    @pytest.mark.asyncio
    async def test_converges_target_to_source(self):
        orchestrator = make_orchestrator(
            source=[{"id": "a", "name": "A"}, {"id": "b", "name": "B2"}, {"id": "c", "name": "C"}],
            target=[{"id": "b", "name": "B1"}, {"id": "c", "name": "C"}, {"id": "z", "name": "Z"}],
        )

        report = await orchestrator.reconcile()

        assert report.success
        assert (report.created, report.updated, report.deleted) == (1, 1, 1)
        assert (report.source_count, report.target_count) == (3, 3)
        assert set(orchestrator.target.entities) == {"a", "b", "c"}
        for entity_id, entity in orchestrator.source.entities.items():
            assert orchestrator.target.entities[entity_id]["name"] == entity["name"]
        assert orchestrator.last_sync_time is not None
        assert orchestrator.last_report is report

    @pytest.mark.asyncio
    async def test_second_sweep_is_empty(self):
        orchestrator = make_orchestrator(source=[{"id": "a", "name": "A"}], target=[{"id": "z"}])

        await orchestrator.reconcile()
        orchestrator.target.calls.clear()
        report = await orchestrator.reconcile()

        assert orchestrator.target.calls == []
        assert (report.created, report.updated, report.deleted) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_sweep_sanitizes(self):
        orchestrator = make_orchestrator(source=[{"id": "a", "credentials": "device-token"}])

        await orchestrator.reconcile()

        assert orchestrator.target.entities["a"]["credentials"] == ""

    @pytest.mark.asyncio
    async def test_item_failures_are_isolated(self):
        orchestrator = make_orchestrator(source=[{"id": "a"}, {"id": "b"}, {"id": "c"}])
        orchestrator.target.fail_ids.add("b")

        report = await orchestrator.reconcile()

        assert report.created == 2
        assert not report.success
        assert len(report.errors) == 1
        assert report.errors[0].startswith("create b:")
        assert set(orchestrator.target.entities) == {"a", "c"}

    @pytest.mark.asyncio
    async def test_never_deletes_id_created_mid_sweep(self):
        class LateArrivalSource(InMemorySourceStore):
            async def fetch_all(self):
                snapshot = await super().fetch_all()
                # An incremental create lands in both stores after the snapshot.
                self.entities["late"] = {"id": "late"}
                return snapshot

        orchestrator = SyncOrchestrator(
            EntityClass.DEVICE,
            source=LateArrivalSource(EntityClass.DEVICE, [{"id": "a"}]),
            target=InMemoryTargetStore(EntityClass.DEVICE, [{"id": "a"}, {"id": "late"}, {"id": "stale"}]),
        )

        report = await orchestrator.reconcile()

        assert report.kept == 1
        assert report.deleted == 1
        assert "late" in orchestrator.target.entities
        assert "stale" not in orchestrator.target.entities

    @pytest.mark.asyncio
    async def test_reverse_reimports_missing_entities(self):
        orchestrator = make_orchestrator(
            EntityClass.TENANT,
            source=[{"id": "T1", "title": "Acme"}],
            target=[
                {"id": "T1", "title": "Acme"},
                {"id": "T2", "title": "Globex", "state": "active", "tenantProfileId": "premium"},
            ],
        )

        report = await orchestrator.reconcile_target_to_source()

        assert report.direction.value == "target-to-source"
        assert report.created == 1
        assert orchestrator.source.created == ["T2"]
        reimported = orchestrator.source.entities["T2"]
        assert reimported["stateName"] == "active"
        assert reimported["limits"]["maxUsers"] == 200
        assert orchestrator.target.calls == []

    @pytest.mark.asyncio
    async def test_reverse_converts_through_transformer(self):
        transformer = EventTransformer()
        target_tenant = {"id": "T2", "title": "Globex"}
        orchestrator = make_orchestrator(
            EntityClass.TENANT,
            target=[target_tenant],
            transformer=transformer,
        )

        with patch.object(transformer, "to_source_entity", wraps=transformer.to_source_entity) as convert:
            await orchestrator.reconcile_target_to_source()

        convert.assert_called_once_with(EntityClass.TENANT, target_tenant)
        assert orchestrator.source.created == ["T2"]

    @pytest.mark.asyncio
    async def test_fetch_failure_reported(self):
        orchestrator = make_orchestrator()
        orchestrator.source.fetch_all = AsyncMock(side_effect=ConnectionRefusedError("engine down"))

        report = await orchestrator.reconcile()

        assert not report.success
        assert "engine down" in report.errors[0]
        assert not orchestrator.sync_in_progress


class TestSweepGuard:
    """Tests for concurrency exclusion, cancellation and timeout."""

    @pytest.mark.asyncio
    async def test_concurrent_reconcile_runs_once(self):
        orchestrator = make_orchestrator(source=[{"id": "a"}])
        orchestrator.target.gate = asyncio.Event()

        first = asyncio.create_task(orchestrator.reconcile())
        await orchestrator.target.fetch_started.wait()

        status = await orchestrator.get_sync_status()
        second = await orchestrator.reconcile()

        assert status.sync_in_progress
        assert second.skipped
        assert not second.success

        orchestrator.target.gate.set()
        report = await first

        assert report.success
        assert report.created == 1
        assert not orchestrator.sync_in_progress

    @pytest.mark.asyncio
    async def test_cancel_running_sweep(self):
        orchestrator = make_orchestrator(source=[{"id": "a"}])
        orchestrator.target.gate = asyncio.Event()

        running = asyncio.create_task(orchestrator.reconcile())
        await orchestrator.target.fetch_started.wait()

        assert orchestrator.cancel_reconcile() is True
        report = await running

        assert report.cancelled
        assert not orchestrator.sync_in_progress

        orchestrator.target.gate = None
        assert (await orchestrator.reconcile()).created == 1

    def test_cancel_when_idle(self):
        assert make_orchestrator().cancel_reconcile() is False

    @pytest.mark.asyncio
    async def test_timeout_releases_guard(self):
        orchestrator = make_orchestrator(source=[{"id": "a"}], sweep_timeout=0.05)
        orchestrator.target.gate = asyncio.Event()

        report = await orchestrator.reconcile()

        assert report.timed_out
        assert not report.success
        assert not orchestrator.sync_in_progress

    @pytest.mark.asyncio
    async def test_force_sync_reports_skip(self):
        orchestrator = make_orchestrator()
        orchestrator.target.gate = asyncio.Event()

        running = asyncio.create_task(orchestrator.reconcile())
        await orchestrator.target.fetch_started.wait()
        result = await orchestrator.force_sync()
        orchestrator.target.gate.set()
        await running

        assert result["success"] is False
        assert result["error"] == "Sync already in progress"
        assert result["report"]["skipped"] is True


class TestStatus:

    @pytest.mark.asyncio
    async def test_counts(self):
        orchestrator = make_orchestrator(source=[{"id": "a"}, {"id": "b"}], target=[{"id": "a"}])

        status = await orchestrator.get_sync_status()

        assert (status.source_count, status.target_count) == (2, 1)
        assert status.error is None

    @pytest.mark.asyncio
    async def test_count_failure_never_raises(self):
        orchestrator = make_orchestrator(source=[{"id": "a"}])
        orchestrator.source.fail_count = True

        status = await orchestrator.get_sync_status()

        assert (status.source_count, status.target_count) == (0, 0)
        assert "engine unreachable" in status.error

    @pytest.mark.asyncio
    async def test_force_sync_success_message(self):
        orchestrator = make_orchestrator(source=[{"id": "a"}])

        result = await orchestrator.force_sync()

        assert result["success"] is True
        assert result["message"] == "device sync completed: 1 created, 0 updated, 0 deleted"


# ============================================
# End-to-end tenant scenario
# ============================================

class TestTenantLifecycle:

    @pytest.mark.asyncio
    async def test_create_update_delete(self):
        tenant = {"id": "T1", "title": "Acme", "email": "ops@acme.example", "limits": dict(DEFAULT_LIMITS)}
        orchestrator = make_orchestrator(EntityClass.TENANT, source=[tenant])
        source, target = orchestrator.source, orchestrator.target

        report = await orchestrator.reconcile()
        assert report.created == 1
        assert target.entities["T1"]["tenantProfileId"] == "default"
        assert target.entities["T1"]["email"] == "ops@acme.example"

        source.entities["T1"]["email"] = "billing@acme.example"
        target.calls.clear()
        report = await orchestrator.reconcile()
        assert target.calls == [("update", "T1")]
        assert (report.created, report.updated, report.deleted) == (0, 1, 0)
        assert target.entities["T1"]["email"] == "billing@acme.example"

        del source.entities["T1"]
        target.calls.clear()
        report = await orchestrator.reconcile()
        assert target.calls == [("delete", "T1")]
        assert report.deleted == 1
        assert "T1" not in target.entities
