"""Adapters layer - Infrastructure implementations of the sync ports.

- ProtocolEngineStore: protocol engine client as an ISourceStore
- LegacyPlatformStore: legacy platform client as an ITargetStore
- DeviceFieldMapper / TenantFieldMapper: IEntityMapper implementations
- AmqpQueueAdapter: RabbitMQ implementation of IEventPublisher
- EventTransformer: notifications to SyncEvents to target entities
- NotificationNormalizer / NotificationStream: protocol engine ingest
"""

from .amqp_queue import AmqpQueueAdapter, QUEUE_FOR_CLASS, route
from .entity_stores import LegacyPlatformStore, ProtocolEngineStore
from .event_transformer import NOTIFICATION_TABLE, EventTransformer
from .field_mapper import DeviceFieldMapper, TenantFieldMapper, get_mapper, sanitize
from .notification_stream import NotificationNormalizer, NotificationStream

__all__ = [
    # Stores
    "ProtocolEngineStore",
    "LegacyPlatformStore",
    # Mapping
    "DeviceFieldMapper",
    "TenantFieldMapper",
    "get_mapper",
    "sanitize",
    "EventTransformer",
    "NOTIFICATION_TABLE",
    # Transport
    "AmqpQueueAdapter",
    "QUEUE_FOR_CLASS",
    "route",
    # Ingest
    "NotificationNormalizer",
    "NotificationStream",
]
