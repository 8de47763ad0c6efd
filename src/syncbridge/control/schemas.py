"""Pydantic schemas for control API responses.

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class SyncStatusDTO(BaseModel):
    """Counts and sweep state for one entity class."""

    model_config = ConfigDict(populate_by_name=True)

    source_count: int = Field(alias="sourceCount")
    target_count: int = Field(alias="targetCount")
    sync_in_progress: bool = Field(alias="syncInProgress")
    last_sync_time: Optional[datetime] = Field(default=None, alias="lastSyncTime")
    error: Optional[str] = None


class ReconcileReportDTO(BaseModel):
    """Outcome of one sweep."""

    model_config = ConfigDict(populate_by_name=True)

    entity_class: str = Field(alias="entityClass")
    direction: str
    success: bool
    skipped: bool = False
    cancelled: bool = False
    timed_out: bool = Field(default=False, alias="timedOut")
    source_count: int = Field(default=0, alias="sourceCount")
    target_count: int = Field(default=0, alias="targetCount")
    created: int = 0
    updated: int = 0
    deleted: int = 0
    kept: int = 0
    errors: list[str] = Field(default_factory=list)
    started_at: datetime = Field(alias="startedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    duration_seconds: Optional[float] = Field(default=None, alias="durationSeconds")


class ForceSyncResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    report: Optional[ReconcileReportDTO] = None


class CancelResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entity_class: str = Field(alias="entityClass")
    cancelled: bool


class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    uptime_seconds: float = Field(alias="uptimeSeconds")
    resources: dict[str, float] = Field(default_factory=dict)
    components: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    detail: str
