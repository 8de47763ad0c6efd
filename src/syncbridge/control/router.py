"""FastAPI router for sync control endpoints (mounted at /api/sync)."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from ..api.error_sanitizer import sanitize_error_message
from ..api.exceptions import SyncBridgeError, ValidationError
from ..service import SyncService
from ..sync.domain.entities import EntityClass
from ..sync.domain.tiers import all_tiers
from .dependencies import get_service, verify_api_key
from .schemas import (
    CancelResponse,
    ForceSyncResponse,
    HealthResponse,
    ReconcileReportDTO,
    SyncStatusDTO,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["Sync"])


def _entity_class(service: SyncService, entity: str) -> EntityClass:
    """Resolve a path segment to a synced entity class, 404 otherwise."""
    try:
        return service.orchestrator(entity).entity_class
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=sanitize_error_message(e.message))


def _sanitized_report(report: dict[str, Any]) -> dict[str, Any]:
    return {**report, "errors": [sanitize_error_message(error) for error in report.get("errors", [])]}


def _upstream_error(action: str, error: SyncBridgeError) -> HTTPException:
    logger.error(f"{action} failed: {error}")
    return HTTPException(status_code=502, detail=sanitize_error_message(str(error), f"{action} failed"))


@router.get("/health", response_model=HealthResponse)
async def health_check(service: SyncService = Depends(get_service)):
    """Health check endpoint (no authentication)."""
    return await service.health_check()


@router.get("/config")
async def get_config(
    service: SyncService = Depends(get_service),
    _auth: bool = Depends(verify_api_key),
) -> dict[str, Any]:
    """Non-secret runtime configuration plus the tenant tier table."""
    return {**service.config.to_public_dict(), "tiers": all_tiers()}


@router.get("/status", response_model=dict[str, SyncStatusDTO])
async def get_all_status(
    service: SyncService = Depends(get_service),
    _auth: bool = Depends(verify_api_key),
):
    return await service.get_sync_status()


@router.get("/{entity}/status", response_model=SyncStatusDTO)
async def get_status(
    entity: str,
    service: SyncService = Depends(get_service),
    _auth: bool = Depends(verify_api_key),
):
    entity_class = _entity_class(service, entity)
    return await service.get_sync_status(entity_class)


@router.post("/{entity}/reconcile", response_model=ReconcileReportDTO)
async def reconcile(
    entity: str,
    service: SyncService = Depends(get_service),
    _auth: bool = Depends(verify_api_key),
):
    """Converge the legacy platform to the protocol engine for one class.

    Returns immediately with a skipped report if a sweep is already running.
    """
    entity_class = _entity_class(service, entity)
    try:
        report = await service.reconcile_source_to_target(entity_class)
    except SyncBridgeError as e:
        raise _upstream_error("Reconcile", e)
    return _sanitized_report(report)


@router.post("/{entity}/reconcile/reverse", response_model=ReconcileReportDTO)
async def reconcile_reverse(
    entity: str,
    service: SyncService = Depends(get_service),
    _auth: bool = Depends(verify_api_key),
):
    """Re-import legacy platform entities missing from the protocol engine."""
    entity_class = _entity_class(service, entity)
    try:
        report = await service.reconcile_target_to_source(entity_class)
    except SyncBridgeError as e:
        raise _upstream_error("Reverse reconcile", e)
    return _sanitized_report(report)


@router.post("/{entity}/force", response_model=ForceSyncResponse)
async def force_sync(
    entity: str,
    service: SyncService = Depends(get_service),
    _auth: bool = Depends(verify_api_key),
):
    entity_class = _entity_class(service, entity)
    try:
        result = await service.force_sync(entity_class)
    except SyncBridgeError as e:
        raise _upstream_error("Force sync", e)
    if result.get("error"):
        result = {**result, "error": sanitize_error_message(result["error"])}
    if result.get("report"):
        result = {**result, "report": _sanitized_report(result["report"])}
    return result


@router.post("/{entity}/cancel", response_model=CancelResponse)
async def cancel(
    entity: str,
    service: SyncService = Depends(get_service),
    _auth: bool = Depends(verify_api_key),
):
    entity_class = _entity_class(service, entity)
    cancelled = service.cancel_reconcile(entity_class)
    return {"entityClass": entity_class.value, "cancelled": cancelled}
