"""Admin authentication for the operations API"""

from __future__ import annotations

import os
import secrets

from fastapi import Header, HTTPException, status

from digestq.infrastructure.settings import ADMIN_API_KEY_ENV, is_production
from digestq.observability.logging import get_logger

logger = get_logger(__name__)


class APIKeyAuth:
    """
    Bearer API key for the job and delivery endpoints.

    The key is read from DIGESTQ_ADMIN_API_KEY on every request so it can be
    rotated without a restart. Without a key the endpoints are open, which is
    only tolerated outside production.
    """

    @property
    def api_key(self) -> str | None:
        return os.getenv(ADMIN_API_KEY_ENV) or None

    def verify_api_key(self, authorization: str | None) -> bool:
        api_key = self.api_key
        if not api_key:
            if is_production():
                logger.error("%s not set in production, refusing admin request", ADMIN_API_KEY_ENV)
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail="Admin authentication not configured",
                )
            return True

        if not authorization:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing authorization header",
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            scheme, token = authorization.split()
            if scheme.lower() != "bearer":
                raise ValueError("Invalid authentication scheme")
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authorization header format. Expected: Bearer {api_key}",
                headers={"WWW-Authenticate": "Bearer"},
            ) from e

        # Timing-safe comparison
        if not secrets.compare_digest(token, api_key):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")

        return True


auth = APIKeyAuth()


def require_admin_auth(authorization: str | None = Header(None)) -> bool:
    """
    Dependency for endpoints that require admin authentication.

    Usage:
        @router.post("/jobs/run")
        async def run(_authenticated: bool = Depends(require_admin_auth)):
            ...
    """
    return auth.verify_api_key(authorization)
