#!/usr/bin/env python3
"""Legacy platform client.

Typed CRUD/query access to the legacy platform's REST API. The legacy
platform is the replica: this engine creates, updates and deletes there
freely.

Endpoints (per entity class, e.g. device):
    GET    /api/tenant/devices?page=&pageSize=   paginated list (device)
    GET    /api/tenants?page=&pageSize=          paginated list (tenant)
    GET    /api/device/{id}                      single entity
    POST   /api/device                           create
    PUT    /api/device/{id}                      update
    DELETE /api/device/{id}                      delete
    POST   /api/customer/{customerId}/device/{deviceId}   assign
    DELETE /api/customer/device/{deviceId}               unassign

Page responses use the envelope {data, totalElements, hasNext}; there is no
count endpoint, so counts come from totalElements of a one-item page.
"""
import logging
from typing import Any, Optional

from .auth import LoginTokenManager
from .client import PaginationConfig, RestClient
from .exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# entity class -> (item path, collection path)
ENTITY_PATHS: dict[str, tuple[str, str]] = {
    "device": ("/api/device", "/api/tenant/devices"),
    "tenant": ("/api/tenant", "/api/tenants"),
}


def entity_paths(entity_class: str) -> tuple[str, str]:
    try:
        return ENTITY_PATHS[getattr(entity_class, "value", entity_class)]
    except KeyError:
        raise ValidationError(
            f"Unsupported entity class '{entity_class}'",
            field="entityClass",
        )


class LegacyPlatformClient:
    """Client for the legacy platform (replica).

    Example:
        async with LegacyPlatformClient(base_url, token_manager) as legacy:
            await legacy.update("tenant", "T1", tenant)
    """

    def __init__(
        self,
        base_url: str,
        token_manager: LoginTokenManager,
        timeout_seconds: float = 30.0,
        max_retries: int = 0,
        page_size: int = 100,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_manager = token_manager
        self.pagination = PaginationConfig(page_size=page_size)
        self.rest = RestClient(
            token_manager,
            self.base_url,
            name="legacy-platform",
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
        )

    async def __aenter__(self) -> "LegacyPlatformClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def open(self) -> None:
        await self.rest.open()

    async def close(self) -> None:
        await self.rest.close()

    async def get_all(self, entity_class: str) -> list[dict[str, Any]]:
        """Complete entity set, following pagination."""
        _, collection = entity_paths(entity_class)
        return await self.rest.fetch_all(collection, config=self.pagination)

    async def get_count(self, entity_class: str) -> int:
        _, collection = entity_paths(entity_class)
        data = await self.rest.get(
            collection,
            params={self.pagination.page_param: 0, self.pagination.size_param: 1},
        )
        if isinstance(data, dict) and "totalElements" in data:
            return int(data["totalElements"])
        items, _ = RestClient.unpack_page(data)
        if len(items) < 1:
            return 0
        # No total in the envelope: fall back to a full walk.
        return len(await self.get_all(entity_class))

    async def get(self, entity_class: str, entity_id: str) -> Optional[dict[str, Any]]:
        """Single entity, None when absent."""
        item, _ = entity_paths(entity_class)
        try:
            return await self.rest.get(f"{item}/{entity_id}")
        except NotFoundError:
            return None

    async def create(self, entity_class: str, entity: dict[str, Any]) -> dict[str, Any]:
        item, _ = entity_paths(entity_class)
        created = await self.rest.post(item, json_body=entity)
        logger.info(f"Created {entity_class} {entity.get('id')} in legacy platform")
        return created or entity

    async def update(self, entity_class: str, entity_id: str, entity: dict[str, Any]) -> dict[str, Any]:
        item, _ = entity_paths(entity_class)
        body = dict(entity)
        body["id"] = entity_id
        try:
            updated = await self.rest.put(f"{item}/{entity_id}", json_body=body)
        except NotFoundError as e:
            raise NotFoundError(entity_class, entity_id, cause=e)
        logger.info(f"Updated {entity_class} {entity_id} in legacy platform")
        return updated or body

    async def delete(self, entity_class: str, entity_id: str) -> None:
        """Delete an entity.

        Raises:
            NotFoundError: If the entity doesn't exist
        """
        item, _ = entity_paths(entity_class)
        try:
            await self.rest.delete(f"{item}/{entity_id}")
        except NotFoundError as e:
            raise NotFoundError(entity_class, entity_id, cause=e)
        logger.info(f"Deleted {entity_class} {entity_id} from legacy platform")

    async def assign_device(self, device_id: str, customer_id: str) -> None:
        await self.rest.post(f"/api/customer/{customer_id}/device/{device_id}")
        logger.info(f"Assigned device {device_id} to customer {customer_id}")

    async def unassign_device(self, device_id: str) -> None:
        await self.rest.delete(f"/api/customer/device/{device_id}")
        logger.info(f"Unassigned device {device_id}")

    @property
    def circuit_status(self) -> Optional[dict[str, Any]]:
        return self.rest.circuit_status
