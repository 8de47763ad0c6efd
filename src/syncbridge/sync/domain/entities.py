"""Domain entities for sync operations.

These are pure data structures with no infrastructure dependencies. Entities
themselves (devices, tenants) travel as plain dicts keyed by schema field
name, with the stable identifier under "id"; the types here describe the
events, results and reports that move them between the two stores.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from ...api.exceptions import SerializationError

# A device or tenant record in either schema. "id" is the sole join key.
SyncEntity = dict[str, Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 to datetime, accepting a trailing "Z" on every supported Python."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


class EntityClass(str, Enum):
    """Entity classes kept in sync. One orchestrator and one queue each."""

    DEVICE = "device"
    TENANT = "tenant"


class EventType(str, Enum):
    """Normalized change kinds carried by a SyncEvent."""

    ENTITY_CREATED = "entity-created"
    ENTITY_UPDATED = "entity-updated"
    ENTITY_DELETED = "entity-deleted"
    RELATION_ASSIGNED = "relation-assigned"
    RELATION_UNASSIGNED = "relation-unassigned"
    BULK_IMPORTED = "bulk-imported"
    BULK_DELETED = "bulk-deleted"


class Direction(str, Enum):
    """Reconciliation direction."""

    SOURCE_TO_TARGET = "source-to-target"
    TARGET_TO_SOURCE = "target-to-source"


# ============================================
# Event payloads (tagged by EventType)
# ============================================


@dataclass(frozen=True)
class EntityPayload:
    """Full entity snapshot, for created/updated events."""

    entity: SyncEntity

    def to_dict(self) -> dict[str, Any]:
        return {"entity": self.entity}


@dataclass(frozen=True)
class EntityIdPayload:
    """Bare identifier, for deleted events."""

    entity_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"entityId": self.entity_id}


@dataclass(frozen=True)
class RelationPayload:
    """Assignment change. related_id is the customer id when known."""

    entity_id: str
    related_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"entityId": self.entity_id}
        if self.related_id is not None:
            data["relatedId"] = self.related_id
        return data


@dataclass(frozen=True)
class BulkPayload:
    """Outcome counts of a bulk operation in the protocol engine."""

    succeeded: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"succeeded": self.succeeded, "failed": self.failed}


SyncPayload = Union[EntityPayload, EntityIdPayload, RelationPayload, BulkPayload]

PAYLOAD_TYPES: dict[EventType, type] = {
    EventType.ENTITY_CREATED: EntityPayload,
    EventType.ENTITY_UPDATED: EntityPayload,
    EventType.ENTITY_DELETED: EntityIdPayload,
    EventType.RELATION_ASSIGNED: RelationPayload,
    EventType.RELATION_UNASSIGNED: RelationPayload,
    EventType.BULK_IMPORTED: BulkPayload,
    EventType.BULK_DELETED: BulkPayload,
}


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise SerializationError(f"Payload field '{key}' must be a non-empty string", raw=data)
    return value


def decode_payload(event_type: EventType, data: Any) -> SyncPayload:
    """Decode a wire payload into the variant for event_type.

    Raises:
        SerializationError: If the payload doesn't match the variant's shape
    """
    if not isinstance(data, dict):
        raise SerializationError(f"Payload for {event_type.value} must be an object", raw=data)

    payload_type = PAYLOAD_TYPES[event_type]
    if payload_type is EntityPayload:
        entity = data.get("entity")
        if not isinstance(entity, dict) or not entity.get("id"):
            raise SerializationError("Entity payload requires an entity with an id", raw=data)
        return EntityPayload(entity=entity)
    if payload_type is EntityIdPayload:
        return EntityIdPayload(entity_id=_require_str(data, "entityId"))
    if payload_type is RelationPayload:
        related = data.get("relatedId")
        return RelationPayload(
            entity_id=_require_str(data, "entityId"),
            related_id=str(related) if related else None,
        )
    try:
        return BulkPayload(
            succeeded=int(data.get("succeeded", 0)),
            failed=int(data.get("failed", 0)),
        )
    except (TypeError, ValueError) as e:
        raise SerializationError("Bulk payload counts must be integers", raw=data, cause=e)


# ============================================
# SyncEvent
# ============================================


@dataclass
class EventMetadata:
    """Tracing context attached to every SyncEvent."""

    timestamp: datetime
    correlation_id: str
    protocol_id: str | None = None
    user_id: str | None = None
    tenant_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "correlationId": self.correlation_id,
        }
        if self.protocol_id:
            data["protocolId"] = self.protocol_id
        if self.user_id:
            data["userId"] = self.user_id
        if self.tenant_id:
            data["tenantId"] = self.tenant_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EventMetadata":
        raw_ts = data.get("timestamp")
        try:
            timestamp = parse_timestamp(raw_ts) if raw_ts else utcnow()
        except (AttributeError, TypeError, ValueError) as e:
            raise SerializationError("Invalid metadata timestamp", raw=raw_ts, cause=e)
        return cls(
            timestamp=timestamp,
            correlation_id=str(data.get("correlationId") or ""),
            protocol_id=data.get("protocolId"),
            user_id=data.get("userId"),
            tenant_id=data.get("tenantId"),
        )


@dataclass
class SyncEvent:
    """Normalized representation of a single domain-change notification.

    event_id is unique per emission; consumers use it to ignore duplicate
    deliveries from the at-least-once queue.
    """

    event_type: EventType
    event_id: str
    source: str
    entity_class: EntityClass
    payload: SyncPayload
    metadata: EventMetadata

    @property
    def entity_id(self) -> str | None:
        """Id of the entity this event concerns, if it concerns one."""
        if isinstance(self.payload, EntityPayload):
            return str(self.payload.entity.get("id"))
        if isinstance(self.payload, (EntityIdPayload, RelationPayload)):
            return self.payload.entity_id
        return None

    def to_dict(self) -> dict[str, Any]:
        """Wire format (JSON-serializable)."""
        return {
            "eventType": self.event_type.value,
            "eventId": self.event_id,
            "source": self.source,
            "entityClass": self.entity_class.value,
            "payload": self.payload.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SyncEvent":
        """Decode the wire format, validating the payload variant.

        Raises:
            SerializationError: On any shape or enum mismatch
        """
        if not isinstance(data, dict):
            raise SerializationError("Sync event must be a JSON object", raw=data)
        try:
            event_type = EventType(data.get("eventType"))
            entity_class = EntityClass(data.get("entityClass"))
        except ValueError as e:
            raise SerializationError(f"Unknown event type or entity class: {e}", raw=data, cause=e)

        event_id = data.get("eventId")
        if not isinstance(event_id, str) or not event_id:
            raise SerializationError("Sync event requires an eventId", raw=data)

        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise SerializationError("Sync event metadata must be an object", raw=data)

        return cls(
            event_type=event_type,
            event_id=event_id,
            source=str(data.get("source") or "unknown"),
            entity_class=entity_class,
            payload=decode_payload(event_type, data.get("payload")),
            metadata=EventMetadata.from_dict(metadata),
        )


# ============================================
# Results and reports
# ============================================


@dataclass
class SyncResult:
    """Outcome of one apply attempt. Transient; never persisted."""

    success: bool
    event_id: str
    operation: str
    entity_id: str | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "eventId": self.event_id,
            "operation": self.operation,
            "entityId": self.entity_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class SyncFailure:
    """The "sync-failed" signal handed to failure listeners."""

    entity: SyncEntity | str | None
    operation: str
    error: Exception
    event: SyncEvent | None = None


@dataclass
class ReconcilePlan:
    """Minimal set of changes that converges the target to the source."""

    to_create: list[SyncEntity] = field(default_factory=list)
    to_update: list[SyncEntity] = field(default_factory=list)
    to_delete: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)


@dataclass
class ReconcileReport:
    """Statistics about one sweep."""

    entity_class: EntityClass
    direction: Direction
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    source_count: int = 0
    target_count: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    kept: int = 0  # deletes skipped because the id reappeared in the source
    errors: list[str] = field(default_factory=list)
    skipped: bool = False
    cancelled: bool = False
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return not (self.errors or self.skipped or self.cancelled or self.timed_out)

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityClass": self.entity_class.value,
            "direction": self.direction.value,
            "success": self.success,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "timedOut": self.timed_out,
            "sourceCount": self.source_count,
            "targetCount": self.target_count,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "kept": self.kept,
            "errors": list(self.errors),
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "durationSeconds": self.duration_seconds,
        }


@dataclass
class SyncStatus:
    """Orchestrator status. Zero counts plus error when counting failed."""

    source_count: int
    target_count: int
    sync_in_progress: bool
    last_sync_time: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sourceCount": self.source_count,
            "targetCount": self.target_count,
            "syncInProgress": self.sync_in_progress,
            "lastSyncTime": self.last_sync_time.isoformat() if self.last_sync_time else None,
        }
        if self.error:
            data["error"] = self.error
        return data
