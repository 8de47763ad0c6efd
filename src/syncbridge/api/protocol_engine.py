#!/usr/bin/env python3
"""Protocol engine client.

Typed CRUD/query access to the protocol engine's entity API. The engine is
the authoritative writer, so this client only reads, counts and creates;
it exposes no update.

Endpoints (per entity class, e.g. device):
    GET    /api/devices            paginated list
    GET    /api/devices/count      total count
    GET    /api/device/{id}        single entity
    POST   /api/device             create
    DELETE /api/device/{id}        delete
"""
import logging
from typing import Any, Optional

from .auth import OAuth2TokenManager
from .client import PaginationConfig, RestClient
from .exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# entity class -> (item path, collection path)
ENTITY_PATHS: dict[str, tuple[str, str]] = {
    "device": ("/api/device", "/api/devices"),
    "tenant": ("/api/tenant", "/api/tenants"),
}

STREAM_PATH = "/api/streams"


def entity_paths(entity_class: str) -> tuple[str, str]:
    try:
        return ENTITY_PATHS[getattr(entity_class, "value", entity_class)]
    except KeyError:
        raise ValidationError(
            f"Unsupported entity class '{entity_class}'",
            field="entityClass",
            status_code=400,
        )


def parse_count(data: Any) -> int:
    """Counts come back as a bare number or as {"count": n}."""
    if isinstance(data, dict):
        data = data.get("count", data.get("totalElements", 0))
    try:
        return int(data or 0)
    except (TypeError, ValueError):
        raise ValidationError(f"Unreadable count response: {data!r}")


class ProtocolEngineClient:
    """Client for the protocol engine (source of truth).

    Example:
        async with ProtocolEngineClient(base_url, token_manager) as engine:
            devices = await engine.get_all("device")
    """

    def __init__(
        self,
        base_url: str,
        token_manager: OAuth2TokenManager,
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
            name="protocol-engine",
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
        )

    async def __aenter__(self) -> "ProtocolEngineClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def open(self) -> None:
        await self.rest.open()

    async def close(self) -> None:
        await self.rest.close()

    @property
    def stream_url(self) -> str:
        return f"{self.base_url}{STREAM_PATH}"

    async def get_all(self, entity_class: str) -> list[dict[str, Any]]:
        """Complete entity set, following pagination."""
        _, collection = entity_paths(entity_class)
        items = await self.rest.fetch_all(collection, config=self.pagination)
        logger.debug(f"Protocol engine returned {len(items)} {entity_class} entities")
        return items

    async def get_count(self, entity_class: str) -> int:
        _, collection = entity_paths(entity_class)
        return parse_count(await self.rest.get(f"{collection}/count"))

    async def get(self, entity_class: str, entity_id: str) -> Optional[dict[str, Any]]:
        """Single entity, None when the engine reports 404."""
        item, _ = entity_paths(entity_class)
        try:
            return await self.rest.get(f"{item}/{entity_id}")
        except NotFoundError:
            return None

    async def create(self, entity_class: str, entity: dict[str, Any]) -> dict[str, Any]:
        item, _ = entity_paths(entity_class)
        created = await self.rest.post(item, json_body=entity)
        logger.info(f"Created {entity_class} {entity.get('id')} in protocol engine")
        return created or entity

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
        logger.info(f"Deleted {entity_class} {entity_id} from protocol engine")

    @property
    def circuit_status(self) -> Optional[dict[str, Any]]:
        return self.rest.circuit_status
