"""Event transformer: protocol engine notifications -> SyncEvents -> target entities.

Every mapping here is pure. Notification names map to (entity class,
event type) through a static table; argument values are decoded once into
the payload variant for that event type.

Raw notification shape, as emitted on the protocol engine's stream:

    {
        "type": "notify",
        "name": "deviceAssigned",
        "protocolId": "...",
        "timestamp": "2024-05-01T12:00:00Z",
        "arguments": [{"value": "<deviceId>"}, {"value": "<customerId>"}]
    }
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from ...api.exceptions import SerializationError
from ..domain.entities import (
    BulkPayload,
    EntityClass,
    EntityIdPayload,
    EntityPayload,
    EventMetadata,
    EventType,
    RelationPayload,
    SyncEntity,
    SyncEvent,
    SyncPayload,
    parse_timestamp,
)
from .field_mapper import get_mapper, sanitize

logger = logging.getLogger(__name__)

SOURCE_TAG = "npl-engine"

NOTIFICATION_TABLE: dict[str, tuple[EntityClass, EventType]] = {
    "deviceSaved": (EntityClass.DEVICE, EventType.ENTITY_CREATED),
    "deviceCreated": (EntityClass.DEVICE, EventType.ENTITY_CREATED),
    "deviceUpdated": (EntityClass.DEVICE, EventType.ENTITY_UPDATED),
    "deviceDeleted": (EntityClass.DEVICE, EventType.ENTITY_DELETED),
    "deviceAssigned": (EntityClass.DEVICE, EventType.RELATION_ASSIGNED),
    "deviceUnassigned": (EntityClass.DEVICE, EventType.RELATION_UNASSIGNED),
    "devicesBulkImported": (EntityClass.DEVICE, EventType.BULK_IMPORTED),
    "devicesBulkDeleted": (EntityClass.DEVICE, EventType.BULK_DELETED),
    "tenantCreated": (EntityClass.TENANT, EventType.ENTITY_CREATED),
    "tenantUpdated": (EntityClass.TENANT, EventType.ENTITY_UPDATED),
    "tenantDeleted": (EntityClass.TENANT, EventType.ENTITY_DELETED),
    "tenantsBulkImported": (EntityClass.TENANT, EventType.BULK_IMPORTED),
    "tenantsBulkDeleted": (EntityClass.TENANT, EventType.BULK_DELETED),
}


def _argument(notification: dict[str, Any], index: int) -> Any:
    arguments = notification.get("arguments") or []
    if not isinstance(arguments, list) or index >= len(arguments):
        return None
    arg = arguments[index]
    if isinstance(arg, dict):
        return arg.get("value")
    return arg


def _as_id(value: Any) -> str | None:
    """Accept a bare id, or an object carrying one."""
    if isinstance(value, dict):
        value = value.get("id")
    if value is None or value == "":
        return None
    return str(value)


def _parse_timestamp(value: Any) -> datetime:
    """ISO-8601 string or epoch milliseconds; now when absent or unreadable."""
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            return parse_timestamp(value)
        except ValueError:
            logger.debug(f"Unreadable notification timestamp {value!r}, using now")
    return datetime.now(timezone.utc)


class EventTransformer:
    """Builds SyncEvents from notifications and target entities from events."""

    def __init__(self, source: str = SOURCE_TAG):
        self.source = source

    # ----------------------------------------
    # Notification -> SyncEvent
    # ----------------------------------------

    def _build_payload(
        self,
        name: str,
        event_type: EventType,
        notification: dict[str, Any],
    ) -> SyncPayload:
        value = _argument(notification, 0)
        if value is None:
            raise SerializationError(f"Notification '{name}' has no argument payload", raw=notification)

        if event_type in (EventType.ENTITY_CREATED, EventType.ENTITY_UPDATED):
            if not isinstance(value, dict) or not value.get("id"):
                raise SerializationError(f"Notification '{name}' carries no entity with an id", raw=notification)
            return EntityPayload(entity=sanitize(value))

        if event_type == EventType.ENTITY_DELETED:
            entity_id = _as_id(value)
            if not entity_id:
                raise SerializationError(f"Notification '{name}' carries no entity id", raw=notification)
            return EntityIdPayload(entity_id=entity_id)

        if event_type in (EventType.RELATION_ASSIGNED, EventType.RELATION_UNASSIGNED):
            entity_id = _as_id(value)
            if not entity_id:
                raise SerializationError(f"Notification '{name}' carries no entity id", raw=notification)
            related_id = _as_id(_argument(notification, 1))
            if event_type == EventType.RELATION_ASSIGNED and not related_id:
                raise SerializationError(f"Notification '{name}' carries no related id", raw=notification)
            return RelationPayload(entity_id=entity_id, related_id=related_id)

        if not isinstance(value, dict):
            raise SerializationError(f"Notification '{name}' carries no bulk summary", raw=notification)
        try:
            succeeded = int(value.get("succeeded", value.get("importedCount", value.get("deletedCount", 0))))
            failed = int(value.get("failed", value.get("failedCount", 0)))
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Notification '{name}' has non-numeric counts", raw=notification, cause=e)
        return BulkPayload(succeeded=succeeded, failed=failed)

    def to_sync_event(self, notification: dict[str, Any]) -> SyncEvent:
        """Normalize one notification into a SyncEvent.

        Raises:
            SerializationError: Missing name, unknown name, or bad arguments
        """
        if not isinstance(notification, dict):
            raise SerializationError("Notification must be an object", raw=notification)

        name = notification.get("name")
        if not name:
            raise SerializationError("Notification has no name", raw=notification)
        if name not in NOTIFICATION_TABLE:
            raise SerializationError(f"Unknown notification '{name}'", raw=notification)

        entity_class, event_type = NOTIFICATION_TABLE[name]
        payload = self._build_payload(name, event_type, notification)

        tenant_id = notification.get("tenantId")
        if tenant_id is None and isinstance(payload, EntityPayload):
            tenant_id = payload.entity.get("tenantId") if entity_class == EntityClass.DEVICE else payload.entity.get("id")

        metadata = EventMetadata(
            timestamp=_parse_timestamp(notification.get("timestamp")),
            correlation_id=str(notification.get("correlationId") or uuid.uuid4()),
            protocol_id=notification.get("protocolId"),
            user_id=notification.get("userId"),
            tenant_id=str(tenant_id) if tenant_id else None,
        )

        return SyncEvent(
            event_type=event_type,
            event_id=str(notification.get("eventId") or notification.get("id") or uuid.uuid4()),
            source=self.source,
            entity_class=entity_class,
            payload=payload,
            metadata=metadata,
        )

    # ----------------------------------------
    # SyncEvent -> target entity
    # ----------------------------------------

    def to_target_entity(
        self,
        event_type: EventType | str,
        payload: SyncPayload | dict[str, Any],
        entity_class: EntityClass = EntityClass.DEVICE,
    ) -> SyncEntity:
        """Target-schema entity for an event, always sanitized.

        Unknown event types pass the raw payload through unchanged apart from
        sanitization.
        """
        try:
            known = EventType(event_type)
        except ValueError:
            logger.warning(f"Unknown event type '{event_type}', passing payload through")
            raw = payload.to_dict() if hasattr(payload, "to_dict") else dict(payload)
            return sanitize(raw)

        if isinstance(payload, EntityPayload):
            return get_mapper(entity_class).to_target(payload.entity)
        if isinstance(payload, EntityIdPayload):
            return {"id": payload.entity_id}
        if isinstance(payload, RelationPayload):
            return {"id": payload.entity_id, "customerId": payload.related_id}
        if isinstance(payload, BulkPayload):
            return payload.to_dict()

        logger.warning(f"Undecoded payload for {known.value}, passing through")
        return sanitize(dict(payload))

    def to_source_entity(self, entity_class: EntityClass, target: SyncEntity) -> SyncEntity:
        """Source-schema entity for a target entity (reverse direction)."""
        return get_mapper(entity_class).to_source(target)
