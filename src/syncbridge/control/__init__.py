"""HTTP control surface (FastAPI) for a running SyncService."""

from .app import create_app
from .router import router

__all__ = ["create_app", "router"]
