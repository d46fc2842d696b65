"""FastAPI server for DigestQ operations"""

from __future__ import annotations

import sqlite3
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from digestq.api.routes.deliveries import router as deliveries_router
from digestq.api.routes.health import router as health_router
from digestq.api.routes.jobs import router as jobs_router
from digestq.api.routes.summaries import router as summaries_router
from digestq.config import API_HOST, API_PORT, APP_VERSION, LOG_LEVEL
from digestq.infrastructure.database import init_database
from digestq.observability.logging import get_logger
from digestq.observability.telemetry import counter, log_event
from digestq.utils.redaction import redact

app = FastAPI(title="DigestQ API", version=APP_VERSION)

logger = get_logger(__name__)


# Custom validation error handler to prevent information leakage
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.warning("Validation error on %s: %s", redact(str(request.url)), exc.errors())
    counter("api.validation_errors")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


# Initialize database schema (idempotent)
try:
    logger.info("Initializing database schema...")
    init_database()
    logger.info("Database initialization complete")
except sqlite3.OperationalError as e:
    logger.critical("Database schema error: %s", e)
    raise RuntimeError(f"Database initialization failed: {e}") from e
except OSError as e:
    logger.critical("Database path not usable: %s", e)
    raise RuntimeError(f"Database initialization failed: {e}") from e

app.include_router(health_router)
app.include_router(jobs_router)
app.include_router(summaries_router)
app.include_router(deliveries_router)

log_event("api.startup", service="digestq", version=APP_VERSION)


@app.get("/")
def root() -> dict[str, Any]:
    return {
        "service": "DigestQ API",
        "version": APP_VERSION,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "health_db": "/health/db",
            "run_cycle": "/jobs/run",
            "run_daily": "/jobs/daily",
            "retention": "/jobs/retention",
            "summary": "/summaries/{summary_id}",
            "ack": "/deliveries/{summary_id}/{channel}/ack",
        },
    }


def main() -> None:
    """Console entry point (digestq-api)."""
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
