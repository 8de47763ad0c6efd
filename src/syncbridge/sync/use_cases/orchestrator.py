"""Sync Orchestrator - keeps one entity class converged between the two stores.

One orchestrator exists per entity class (device, tenant). It has two
independent operating modes:

Incremental propagation (handle_event):
1. Drop duplicate event ids seen inside the de-duplication window
2. Dispatch by event type: upsert, delete-if-exists, assign/unassign,
   bulk-import triggers a sweep, bulk-delete is logged
3. Return a SyncResult; on failure also emit a "sync-failed" signal to
   every registered failure listener

Full reconciliation (reconcile):
1. Fetch the complete source and target sets
2. Map the source set into the target schema and plan the changes
3. Apply creates, then updates, then deletes, isolating each item
4. Re-check the live source before every delete

Only one sweep per orchestrator runs at a time. A second call while one
runs is a no-op that returns a skipped report. Sweeps honour a timeout and
can be cancelled by an operator; the guard is always released.

Incremental handling for an id is not serialized against a running sweep.
The pre-delete re-check narrows that window but does not close it.
"""

import asyncio
import inspect
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from ...api.exceptions import ErrorCollector, SyncError, ValidationError
from ...api.resilience import with_timeout
from ..adapters.event_transformer import EventTransformer
from ..adapters.field_mapper import get_mapper
from ..domain.entities import (
    Direction,
    EntityClass,
    EventType,
    ReconcileReport,
    RelationPayload,
    SyncEvent,
    SyncFailure,
    SyncResult,
    SyncStatus,
    utcnow,
)
from ..domain.ports import IEntityMapper, IEventPublisher, ISourceStore, ITargetStore
from ..domain.reconciliation import changed_fields, plan_reconcile, plan_reverse

logger = logging.getLogger(__name__)

FailureListener = Callable[[SyncFailure], Awaitable[Any] | Any]


class SyncOrchestrator:
    """Incremental propagation and full reconciliation for one entity class.

    Example:
        orchestrator = SyncOrchestrator(
            EntityClass.TENANT,
            source=ProtocolEngineStore(engine, EntityClass.TENANT),
            target=LegacyPlatformStore(legacy, EntityClass.TENANT),
            sweep_timeout=600,
        )
        report = await orchestrator.reconcile()
    """

    def __init__(
        self,
        entity_class: EntityClass,
        source: ISourceStore,
        target: ITargetStore,
        mapper: IEntityMapper | None = None,
        transformer: EventTransformer | None = None,
        publisher: IEventPublisher | None = None,
        sweep_timeout: float | None = None,
        dedup_window_size: int = 1000,
    ):
        """Initialize the orchestrator with its dependencies.

        Args:
            entity_class: Entity class this orchestrator owns
            source: Port for the authoritative store
            target: Port for the replica store
            mapper: Schema mapper (defaults to the class's field mapper)
            transformer: Event transformer for incremental events
            publisher: Queue port; when set, dispatch() publishes instead of applying
            sweep_timeout: Seconds before a sweep is abandoned (None = no limit)
            dedup_window_size: How many recent event ids are remembered
        """
        self.entity_class = EntityClass(entity_class)
        self.source = source
        self.target = target
        self.mapper = mapper or get_mapper(self.entity_class)
        self.transformer = transformer or EventTransformer()
        self.publisher = publisher
        self.sweep_timeout = sweep_timeout
        self.dedup_window_size = dedup_window_size

        self._sweep_lock = asyncio.Lock()
        self._sweep_task: asyncio.Task | None = None
        self._cancel_requested = False
        self._seen_events: OrderedDict[str, None] = OrderedDict()
        self._listeners: list[FailureListener] = []

        self.last_sync_time: datetime | None = None
        self.last_report: ReconcileReport | None = None
        self.last_result: SyncResult | None = None
        self.stats = {"processed": 0, "succeeded": 0, "failed": 0, "duplicates": 0}

    # ----------------------------------------
    # Failure signalling
    # ----------------------------------------

    def add_failure_listener(self, listener: FailureListener) -> None:
        """Register a consumer of "sync-failed" signals."""
        self._listeners.append(listener)

    def remove_failure_listener(self, listener: FailureListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit_failure(self, failure: SyncFailure) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(failure)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(f"sync-failed listener raised for {self.entity_class.value}")

    # ----------------------------------------
    # De-duplication window
    # ----------------------------------------

    def _is_duplicate(self, event_id: str) -> bool:
        return event_id in self._seen_events

    def _remember(self, event_id: str) -> None:
        self._seen_events[event_id] = None
        self._seen_events.move_to_end(event_id)
        while len(self._seen_events) > self.dedup_window_size:
            self._seen_events.popitem(last=False)

    # ----------------------------------------
    # Incremental propagation
    # ----------------------------------------

    async def dispatch(self, event: SyncEvent) -> SyncResult | None:
        """Route an ingested event: publish when a queue is attached, else apply."""
        if self.publisher is not None:
            await self.publisher.publish_event(event)
            return None
        return await self.handle_event(event)

    async def handle_event(self, event: SyncEvent) -> SyncResult:
        """Apply one event to the target store.

        Never raises for apply failures; they come back as
        SyncResult(success=False) and a sync-failed signal.
        """
        self.stats["processed"] += 1

        if self._is_duplicate(event.event_id):
            self.stats["duplicates"] += 1
            logger.info(f"Duplicate event {event.event_id} ignored")
            return self._record(SyncResult(
                success=True,
                event_id=event.event_id,
                operation="duplicate",
                entity_id=event.entity_id,
            ))

        operation = event.event_type.value
        entity: Any = None
        try:
            if event.entity_class != self.entity_class:
                raise ValidationError(
                    f"{event.entity_class.value} event routed to {self.entity_class.value} orchestrator",
                    field="entityClass",
                )
            entity = self.transformer.to_target_entity(event.event_type, event.payload, self.entity_class)
            operation, error = await self._apply(event, entity)
        except Exception as e:
            logger.error(
                f"Failed to apply {event.event_type.value} for "
                f"{self.entity_class.value} {event.entity_id}: {e}"
            )
            self.stats["failed"] += 1
            await self._emit_failure(SyncFailure(
                entity=entity if entity is not None else event.entity_id,
                operation=operation,
                error=e,
                event=event,
            ))
            return self._record(SyncResult(
                success=False,
                event_id=event.event_id,
                operation=operation,
                entity_id=event.entity_id,
                error=str(e),
            ))

        self._remember(event.event_id)
        if error:
            self.stats["failed"] += 1
            await self._emit_failure(SyncFailure(
                entity=entity,
                operation=operation,
                error=SyncError(error),
                event=event,
            ))
        else:
            self.stats["succeeded"] += 1
        return self._record(SyncResult(
            success=error is None,
            event_id=event.event_id,
            operation=operation,
            entity_id=event.entity_id,
            error=error,
        ))

    def _record(self, result: SyncResult) -> SyncResult:
        self.last_result = result
        return result

    async def _apply(self, event: SyncEvent, entity: dict[str, Any]) -> tuple[str, str | None]:
        """Perform the side effect for an event.

        Returns:
            (operation label, error text or None)
        """
        event_type = event.event_type

        if event_type in (EventType.ENTITY_CREATED, EventType.ENTITY_UPDATED):
            return await self._upsert(entity), None

        if event_type == EventType.ENTITY_DELETED:
            deleted = await self.target.delete(entity["id"])
            if not deleted:
                logger.info(f"{self.entity_class.value} {entity['id']} already absent, delete is a no-op")
            return "delete", None

        if event_type in (EventType.RELATION_ASSIGNED, EventType.RELATION_UNASSIGNED):
            if self.entity_class != EntityClass.DEVICE:
                raise ValidationError(
                    f"Relation events are not supported for {self.entity_class.value}",
                    field="eventType",
                )
            payload: RelationPayload = event.payload  # type: ignore[assignment]
            if event_type == EventType.RELATION_ASSIGNED:
                await self.target.assign(payload.entity_id, payload.related_id)
                return "assign", None
            return await self._unassign(payload), None

        if event_type == EventType.BULK_IMPORTED:
            logger.info(
                f"Bulk import of {self.entity_class.value}: {entity.get('succeeded')} imported, "
                f"{entity.get('failed')} failed; reconciling"
            )
            report = await self.reconcile()
            if report.skipped:
                return "reconcile-skipped", None
            error = "; ".join(report.errors[:5]) if report.errors else None
            if report.timed_out:
                error = "Reconcile timed out"
            elif report.cancelled:
                error = "Reconcile cancelled"
            return "reconcile", error

        logger.info(
            f"Bulk delete of {self.entity_class.value}: {entity.get('succeeded')} deleted; "
            "individual delete events carry the deletions"
        )
        return "noop", None

    async def _upsert(self, entity: dict[str, Any]) -> str:
        entity_id = str(entity["id"])
        current = await self.target.get(entity_id)
        if current is None:
            await self.target.create(entity)
            return "create"
        if not changed_fields(entity, current, self.mapper.comparable):
            logger.debug(f"{self.entity_class.value} {entity_id} already up to date")
            return "noop"
        await self.target.update(entity_id, entity)
        return "update"

    async def _unassign(self, payload: RelationPayload) -> str:
        related_id = payload.related_id
        if related_id is None:
            current = await self.target.get(payload.entity_id)
            related_id = (current or {}).get("customerId")
            if not related_id:
                logger.info(f"Device {payload.entity_id} has no customer, unassign is a no-op")
                return "noop"
        await self.target.unassign(payload.entity_id, related_id)
        return "unassign"

    # ----------------------------------------
    # Full reconciliation
    # ----------------------------------------

    @property
    def sync_in_progress(self) -> bool:
        return self._sweep_lock.locked()

    async def reconcile(self) -> ReconcileReport:
        """Converge the target to the source (source -> target)."""
        return await self._run_guarded(Direction.SOURCE_TO_TARGET, self._sweep_forward)

    async def reconcile_target_to_source(self) -> ReconcileReport:
        """Re-import target entities missing from the source (create only)."""
        return await self._run_guarded(Direction.TARGET_TO_SOURCE, self._sweep_reverse)

    async def force_sync(self) -> dict[str, Any]:
        """Forward reconcile, summarised for operators."""
        report = await self.reconcile()
        if report.success:
            return {
                "success": True,
                "message": (
                    f"{self.entity_class.value} sync completed: {report.created} created, "
                    f"{report.updated} updated, {report.deleted} deleted"
                ),
                "report": report.to_dict(),
            }
        if report.skipped:
            error = "Sync already in progress"
        elif report.timed_out:
            error = "Sync timed out"
        elif report.cancelled:
            error = "Sync cancelled"
        else:
            error = "; ".join(report.errors[:5])
        return {"success": False, "error": error, "report": report.to_dict()}

    def cancel_reconcile(self) -> bool:
        """Cancel a running sweep.

        Returns:
            True if a sweep was running and has been asked to stop
        """
        task = self._sweep_task
        if task is None or task.done():
            return False
        logger.warning(f"Cancelling {self.entity_class.value} sweep on operator request")
        self._cancel_requested = True
        task.cancel()
        return True

    async def _run_guarded(
        self,
        direction: Direction,
        sweep: Callable[[ReconcileReport], Awaitable[None]],
    ) -> ReconcileReport:
        if self._sweep_lock.locked():
            logger.info(f"{self.entity_class.value} sweep already in progress, skipping")
            return ReconcileReport(
                entity_class=self.entity_class,
                direction=direction,
                skipped=True,
                completed_at=utcnow(),
            )

        async with self._sweep_lock:
            report = ReconcileReport(entity_class=self.entity_class, direction=direction)
            logger.info(f"Starting {self.entity_class.value} sweep ({direction.value})")

            self._cancel_requested = False
            task = asyncio.create_task(with_timeout(sweep, self.sweep_timeout, report))
            self._sweep_task = task
            try:
                await task
            except asyncio.TimeoutError:
                report.timed_out = True
                logger.error(f"{self.entity_class.value} sweep timed out after {self.sweep_timeout}s")
            except asyncio.CancelledError:
                if not (self._cancel_requested and task.cancelled()):
                    raise
                report.cancelled = True
                logger.warning(f"{self.entity_class.value} sweep cancelled")
            except Exception as e:
                report.errors.append(str(e))
                logger.error(f"{self.entity_class.value} sweep failed: {e}")
            finally:
                self._sweep_task = None
                self._cancel_requested = False
                report.completed_at = utcnow()
                self.last_report = report

            logger.info(
                f"{self.entity_class.value} sweep finished in {report.duration_seconds:.2f}s: "
                f"{report.created} created, {report.updated} updated, {report.deleted} deleted, "
                f"{report.kept} kept, {len(report.errors)} errors"
            )
            return report

    async def _fetch_both(self, report: ReconcileReport) -> tuple[list[dict], list[dict]]:
        source_entities, target_entities = await asyncio.gather(
            self.source.fetch_all(),
            self.target.fetch_all(),
        )
        report.source_count = len(source_entities)
        report.target_count = len(target_entities)
        logger.info(
            f"Fetched {report.source_count} source and {report.target_count} target "
            f"{self.entity_class.value} entities"
        )
        return source_entities, target_entities

    async def _sweep_forward(self, report: ReconcileReport) -> None:
        source_entities, target_entities = await self._fetch_both(report)
        collector = ErrorCollector()

        desired = []
        for entity in source_entities:
            try:
                desired.append(self.mapper.to_target(entity))
            except Exception as e:
                collector.add(e, context={"entity_id": entity.get("id"), "step": "map"})

        plan = plan_reconcile(desired, target_entities, self.mapper.comparable)
        logger.info(
            f"{self.entity_class.value} plan: {len(plan.to_create)} to create, "
            f"{len(plan.to_update)} to update, {len(plan.to_delete)} to delete"
        )

        for entity in plan.to_create:
            try:
                await self.target.create(entity)
                report.created += 1
            except Exception as e:
                logger.warning(f"Create {self.entity_class.value} {entity['id']} failed: {e}")
                collector.add(e, context={"entity_id": entity["id"], "step": "create"})

        for entity in plan.to_update:
            try:
                await self.target.update(str(entity["id"]), entity)
                report.updated += 1
            except Exception as e:
                logger.warning(f"Update {self.entity_class.value} {entity['id']} failed: {e}")
                collector.add(e, context={"entity_id": entity["id"], "step": "update"})

        for entity_id in plan.to_delete:
            try:
                if await self.source.exists(entity_id):
                    report.kept += 1
                    logger.info(
                        f"{self.entity_class.value} {entity_id} appeared in source during sweep, not deleting"
                    )
                    continue
                if await self.target.delete(entity_id):
                    report.deleted += 1
            except Exception as e:
                logger.warning(f"Delete {self.entity_class.value} {entity_id} failed: {e}")
                collector.add(e, context={"entity_id": entity_id, "step": "delete"})

        report.errors.extend(self._describe(collector))
        self.last_sync_time = utcnow()

    async def _sweep_reverse(self, report: ReconcileReport) -> None:
        source_entities, target_entities = await self._fetch_both(report)
        collector = ErrorCollector()

        missing = plan_reverse(source_entities, target_entities)
        logger.info(f"{len(missing)} {self.entity_class.value} entities to re-import into source")

        for entity in missing:
            try:
                await self.source.create(self.transformer.to_source_entity(self.entity_class, entity))
                report.created += 1
            except Exception as e:
                logger.warning(f"Re-import {self.entity_class.value} {entity.get('id')} failed: {e}")
                collector.add(e, context={"entity_id": entity.get("id"), "step": "create"})

        report.errors.extend(self._describe(collector))
        self.last_sync_time = utcnow()

    @staticmethod
    def _describe(collector: ErrorCollector) -> list[str]:
        return [
            f"{ctx.get('step')} {ctx.get('entity_id')}: {error}"
            for error, ctx in collector.get_errors()
        ]

    # ----------------------------------------
    # Status
    # ----------------------------------------

    async def get_sync_status(self) -> SyncStatus:
        """Counts and sweep state. Never raises."""
        try:
            source_count, target_count = await asyncio.gather(
                self.source.count(),
                self.target.count(),
            )
        except Exception as e:
            logger.error(f"Failed to count {self.entity_class.value} entities: {e}")
            return SyncStatus(
                source_count=0,
                target_count=0,
                sync_in_progress=self.sync_in_progress,
                last_sync_time=self.last_sync_time,
                error=str(e),
            )
        return SyncStatus(
            source_count=source_count,
            target_count=target_count,
            sync_in_progress=self.sync_in_progress,
            last_sync_time=self.last_sync_time,
        )
