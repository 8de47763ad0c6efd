"""Store adapters binding the target-system clients to one entity class.

ProtocolEngineStore implements ISourceStore and LegacyPlatformStore
implements ITargetStore, wrapping the shared clients so the orchestrator
for each entity class sees a store for just that class.
"""

import logging
from typing import TYPE_CHECKING

from ...api.exceptions import NotFoundError
from ..domain.entities import EntityClass, SyncEntity
from ..domain.ports import ISourceStore, ITargetStore

if TYPE_CHECKING:
    from ...api.legacy_platform import LegacyPlatformClient
    from ...api.protocol_engine import ProtocolEngineClient

logger = logging.getLogger(__name__)


class ProtocolEngineStore(ISourceStore):
    """Protocol engine entities of one class."""

    def __init__(self, client: "ProtocolEngineClient", entity_class: EntityClass):
        self.client = client
        self.entity_class = EntityClass(entity_class)

    async def fetch_all(self) -> list[SyncEntity]:
        return await self.client.get_all(self.entity_class.value)

    async def count(self) -> int:
        return await self.client.get_count(self.entity_class.value)

    async def exists(self, entity_id: str) -> bool:
        return await self.client.get(self.entity_class.value, entity_id) is not None

    async def create(self, entity: SyncEntity) -> SyncEntity:
        return await self.client.create(self.entity_class.value, entity)


class LegacyPlatformStore(ITargetStore):
    """Legacy platform entities of one class."""

    def __init__(self, client: "LegacyPlatformClient", entity_class: EntityClass):
        self.client = client
        self.entity_class = EntityClass(entity_class)

    async def fetch_all(self) -> list[SyncEntity]:
        return await self.client.get_all(self.entity_class.value)

    async def count(self) -> int:
        return await self.client.get_count(self.entity_class.value)

    async def get(self, entity_id: str) -> SyncEntity | None:
        return await self.client.get(self.entity_class.value, entity_id)

    async def create(self, entity: SyncEntity) -> SyncEntity:
        return await self.client.create(self.entity_class.value, entity)

    async def update(self, entity_id: str, entity: SyncEntity) -> SyncEntity:
        return await self.client.update(self.entity_class.value, entity_id, entity)

    async def delete(self, entity_id: str) -> bool:
        try:
            await self.client.delete(self.entity_class.value, entity_id)
        except NotFoundError:
            logger.debug(f"{self.entity_class.value} {entity_id} already absent from legacy platform")
            return False
        return True

    async def assign(self, entity_id: str, related_id: str) -> None:
        if self.entity_class != EntityClass.DEVICE:
            await super().assign(entity_id, related_id)
        await self.client.assign_device(entity_id, related_id)

    async def unassign(self, entity_id: str, related_id: str | None = None) -> None:
        if self.entity_class != EntityClass.DEVICE:
            await super().unassign(entity_id, related_id)
        await self.client.unassign_device(entity_id)
