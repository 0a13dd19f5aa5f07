"""
API-key auth for the scheduler's /api routes (health stays open).

Callers send the shared key as a bearer token:
    Authorization: Bearer <API_KEY>

Leaving API_KEY empty turns auth off, which is only allowed outside
production.
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from adops.config import get_settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

DEV_PRINCIPAL = "dev-no-auth"


async def require_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> str:
    """Router dependency. Returns the caller's API key, or DEV_PRINCIPAL when auth is off."""
    settings = get_settings()
    if not settings.api_key:
        if settings.is_production:
            raise HTTPException(status_code=500, detail="API_KEY is not configured on this server.")
        return DEV_PRINCIPAL

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing API key. Send Authorization: Bearer <API_KEY>")
    if not secrets.compare_digest(credentials.credentials, settings.api_key):
        logger.warning("Rejected request with an invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return settings.api_key
