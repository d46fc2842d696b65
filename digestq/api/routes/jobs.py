"""
Job endpoints, invoked by the host scheduler.

- POST /jobs/run        - one aggregation, summarization and dispatch cycle
- POST /jobs/daily      - daily summaries for a day (default: yesterday, UTC)
- POST /jobs/retention  - archive payloads of old processed windows
"""

from __future__ import annotations

import re
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator

from digestq.aggregation.windows import day_key_for
from digestq.api.dependencies import get_service
from digestq.api.middleware.auth import require_admin_auth
from digestq.infrastructure.errors import StoreUnavailableError
from digestq.observability.logging import get_logger
from digestq.observability.telemetry import log_event
from digestq.service import DigestService
from digestq.utils.timestamps import utc_now

router = APIRouter(prefix="/jobs", tags=["jobs"])
logger = get_logger(__name__)

DAY_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class DailyJobRequest(BaseModel):
    day: str | None = Field(default=None, description="YYYY-MM-DD, defaults to yesterday (UTC)")

    @field_validator("day")
    @classmethod
    def validate_day(cls, v: str | None) -> str | None:
        if v is not None and not DAY_KEY_PATTERN.match(v):
            raise ValueError("day must be YYYY-MM-DD")
        return v


class RetentionJobRequest(BaseModel):
    dry_run: bool = False


@router.post("/run")
def run_cycle(
    service: DigestService = Depends(get_service),
    _authenticated: bool = Depends(require_admin_auth),
) -> dict[str, Any]:
    """
    Side Effects:
        - Claims and processes due windows, generates summaries, dispatches deliveries
    """
    try:
        report = service.run_cycle()
    except StoreUnavailableError as e:
        log_event("api.jobs.run.error", error=str(e))
        raise HTTPException(status_code=503, detail="Store unavailable, retry later") from e
    return report.to_dict()


@router.post("/daily")
def run_daily(
    request: DailyJobRequest,
    service: DigestService = Depends(get_service),
    _authenticated: bool = Depends(require_admin_auth),
) -> dict[str, Any]:
    day = request.day or day_key_for(utc_now() - timedelta(days=1))
    try:
        report = service.run_daily(day)
    except StoreUnavailableError as e:
        log_event("api.jobs.daily.error", day=day, error=str(e))
        raise HTTPException(status_code=503, detail="Store unavailable, retry later") from e
    return {"day": day, **report.to_dict()}


@router.post("/retention")
def run_retention(
    request: RetentionJobRequest,
    service: DigestService = Depends(get_service),
    _authenticated: bool = Depends(require_admin_auth),
) -> dict[str, Any]:
    try:
        report = service.run_retention(dry_run=request.dry_run)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail="Store unavailable, retry later") from e
    return report.to_dict()
