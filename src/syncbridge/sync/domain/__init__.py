"""Domain layer - Pure entities, tier mapping, planning and port interfaces.

No infrastructure dependencies allowed in this layer.
"""

from .entities import (
    BulkPayload,
    Direction,
    EntityClass,
    EntityIdPayload,
    EntityPayload,
    EventMetadata,
    EventType,
    ReconcilePlan,
    ReconcileReport,
    RelationPayload,
    SyncEntity,
    SyncEvent,
    SyncFailure,
    SyncPayload,
    SyncResult,
    SyncStatus,
    decode_payload,
)
from .ports import IEntityMapper, IEventPublisher, ISourceStore, ITargetStore
from .reconciliation import changed_fields, index_by_id, plan_reconcile, plan_reverse
from .tiers import TIER_LIMITS, TenantLimits, Tier, limits_to_tier, tier_to_limits

__all__ = [
    # Entities
    "EntityClass",
    "EventType",
    "Direction",
    "SyncEntity",
    "SyncEvent",
    "EventMetadata",
    "SyncPayload",
    "EntityPayload",
    "EntityIdPayload",
    "RelationPayload",
    "BulkPayload",
    "decode_payload",
    # Results
    "SyncResult",
    "SyncFailure",
    "SyncStatus",
    "ReconcilePlan",
    "ReconcileReport",
    # Tiers
    "Tier",
    "TenantLimits",
    "TIER_LIMITS",
    "tier_to_limits",
    "limits_to_tier",
    # Planning
    "index_by_id",
    "changed_fields",
    "plan_reconcile",
    "plan_reverse",
    # Ports
    "ISourceStore",
    "ITargetStore",
    "IEntityMapper",
    "IEventPublisher",
]
