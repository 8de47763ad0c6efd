"""Port interfaces for sync operations.

Ports define the contracts between the domain/use cases and the infrastructure.
These are abstract base classes that adapters must implement.

Following the Hexagonal Architecture (Ports and Adapters) pattern:
- Ports are interfaces defined in the domain layer
- Adapters implement these ports in the adapters layer
- Use cases depend only on ports, not concrete implementations

Each store port is bound to a single entity class; the orchestrator for
devices holds device stores, the one for tenants holds tenant stores.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from .entities import EntityClass, SyncEntity, SyncEvent


class ISourceStore(ABC):
    """Port for the authoritative store (the protocol engine).

    The source accepts creates (used when re-importing from the target) but
    never arbitrary overwrites or deletes from this engine.
    """

    entity_class: EntityClass

    @abstractmethod
    async def fetch_all(self) -> list[SyncEntity]:
        """Fetch the complete entity set, following pagination."""
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def exists(self, entity_id: str) -> bool:
        """Check a single id against the live store (not a snapshot)."""
        ...

    @abstractmethod
    async def create(self, entity: SyncEntity) -> SyncEntity:
        ...


class ITargetStore(ABC):
    """Port for the replica store (the legacy platform).

    Always safe to overwrite or delete from.
    """

    entity_class: EntityClass

    @abstractmethod
    async def fetch_all(self) -> list[SyncEntity]:
        """Fetch the complete entity set, following pagination."""
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def get(self, entity_id: str) -> SyncEntity | None:
        """Fetch one entity, None when absent."""
        ...

    @abstractmethod
    async def create(self, entity: SyncEntity) -> SyncEntity:
        ...

    @abstractmethod
    async def update(self, entity_id: str, entity: SyncEntity) -> SyncEntity:
        ...

    @abstractmethod
    async def delete(self, entity_id: str) -> bool:
        """Delete if present.

        Returns:
            True if deleted, False if it was already absent
        """
        ...

    async def assign(self, entity_id: str, related_id: str) -> None:
        """Attach the entity to a related entity (device -> customer)."""
        raise NotImplementedError(f"{self.entity_class.value} has no relations")

    async def unassign(self, entity_id: str, related_id: str | None = None) -> None:
        """Detach the entity from its related entity."""
        raise NotImplementedError(f"{self.entity_class.value} has no relations")


class IEntityMapper(ABC):
    """Port for schema mapping between the source and target schemas.

    Every produced entity must have sensitive fields blanked.
    """

    @abstractmethod
    def to_target(self, source: SyncEntity) -> SyncEntity:
        ...

    @abstractmethod
    def to_source(self, target: SyncEntity) -> SyncEntity:
        ...

    @abstractmethod
    def comparable(self, target: SyncEntity) -> dict[str, Any]:
        """Project a target-schema entity onto the fields that are diffed.

        Sanitized and non-replicated fields are excluded.
        """
        ...


class IEventPublisher(ABC):
    """Port for handing events to the transport queue."""

    @abstractmethod
    async def publish_event(self, event: SyncEvent) -> None:
        ...

    @abstractmethod
    async def is_healthy(self) -> bool:
        ...

    @abstractmethod
    async def queue_depths(self) -> dict[str, int]:
        """Messages waiting per queue."""
        ...


# Async callback receiving each normalized event.
EventHandler = Callable[[SyncEvent], Awaitable[Any]]
