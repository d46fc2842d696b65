"""Health endpoints for the DigestQ operations API.

- /health    - service status and LLM credential presence
- /health/db - connection pool health and schema check
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from digestq.config import APP_VERSION
from digestq.llm.gemini import current_backend

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint.

    Reports credential readiness for Vertex AI / Gemini without calling the model.
    """
    has_api_key = bool(os.getenv("GOOGLE_API_KEY"))
    has_project = bool(os.getenv("GOOGLE_CLOUD_PROJECT"))

    return {
        "status": "healthy",
        "service": "DigestQ",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "llm": {
            "ready": has_api_key or has_project,
            "google_api_key": has_api_key,
            "google_cloud_project": has_project,
            "backend": current_backend(),
        },
    }


@router.get("/health/db")
async def database_health() -> dict[str, Any]:
    """
    Database health check endpoint.

    Degraded when pool usage exceeds 80% or the schema is incomplete.
    """
    from digestq.infrastructure.database import get_db_connection, get_pool_stats
    from digestq.infrastructure.database_schema import validate_schema

    schema_error = None
    try:
        with get_db_connection() as conn:
            validate_schema(conn)
    except (ValueError, FileNotFoundError) as e:
        schema_error = str(e)

    stats = get_pool_stats()
    usage_percent = stats["usage_percent"]
    degraded = usage_percent > 80 or schema_error is not None

    return {
        "status": "degraded" if degraded else "healthy",
        "pool": stats,
        "schema_error": schema_error,
        "warning": "Pool usage high" if usage_percent > 80 else None,
    }
