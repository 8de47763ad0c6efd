"""FastAPI dependencies for the control API.

The SyncService and the expected API key live on app.state, set by
create_app().

Security:
- X-API-Key required on every endpoint except /health
- If no API key is configured, requests are rejected (fail-closed)
- DISABLE_AUTH=true disables the check (development only)
"""

import logging
import os
import secrets
from typing import Optional

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from ..service import SyncService

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_service(request: Request) -> SyncService:
    return request.app.state.service


async def verify_api_key(
    request: Request,
    api_key: Optional[str] = Security(api_key_header),
) -> bool:
    """Verify the API key from the request header.

    Raises:
        HTTPException: 500 if no key is configured, 401 if missing or invalid
    """
    if os.getenv("DISABLE_AUTH", "").lower() == "true":
        logger.warning("Authentication disabled (DISABLE_AUTH=true). Only use this in development!")
        return True

    expected_key = getattr(request.app.state, "api_key", None)
    if not expected_key:
        logger.error("API_KEY not set - rejecting request")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: API_KEY not set",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Provide X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not secrets.compare_digest(api_key, expected_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return True
