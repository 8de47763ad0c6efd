"""Sync module - hexagonal implementation of the protocol engine to legacy platform sync.

Architecture:
    domain/     - Pure entities, the tier table, reconciliation planning and port interfaces
    use_cases/  - Orchestration: incremental propagation, sweeps, queue consumption, status
    adapters/   - Infrastructure: stores over the API clients, AMQP queue, notification ingest
"""

from .domain.entities import (
    EntityClass,
    EventType,
    ReconcileReport,
    SyncEvent,
    SyncResult,
    SyncStatus,
)
from .domain.ports import IEntityMapper, IEventPublisher, ISourceStore, ITargetStore

__all__ = [
    # Entities
    "EntityClass",
    "EventType",
    "SyncEvent",
    "SyncResult",
    "SyncStatus",
    "ReconcileReport",
    # Ports
    "ISourceStore",
    "ITargetStore",
    "IEntityMapper",
    "IEventPublisher",
]
