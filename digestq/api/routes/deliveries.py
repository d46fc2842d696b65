"""
Asynchronous transport confirmations.

- POST /deliveries/{summary_id}/{channel}/ack      - SENT -> ACKED
- POST /deliveries/{summary_id}/{channel}/failure  - SENT -> FAILED

Both are idempotent for repeated calls: a record never moves backwards.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from digestq.api.dependencies import get_service
from digestq.api.middleware.auth import require_admin_auth
from digestq.infrastructure.errors import InvalidTransitionError
from digestq.observability.logging import get_logger
from digestq.service import DigestService

router = APIRouter(prefix="/deliveries", tags=["deliveries"])
logger = get_logger(__name__)


class FailureReport(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


@router.post("/{summary_id}/{channel}/ack")
def acknowledge_delivery(
    summary_id: str,
    channel: str,
    service: DigestService = Depends(get_service),
    _authenticated: bool = Depends(require_admin_auth),
) -> dict[str, Any]:
    try:
        record = service.dispatcher.acknowledge(summary_id, channel)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    if record is None:
        raise HTTPException(status_code=404, detail="Delivery record not found")
    return {"summary_id": summary_id, **record.to_api_dict()}


@router.post("/{summary_id}/{channel}/failure")
def report_delivery_failure(
    summary_id: str,
    channel: str,
    report: FailureReport,
    service: DigestService = Depends(get_service),
    _authenticated: bool = Depends(require_admin_auth),
) -> dict[str, Any]:
    record = service.dispatcher.report_failure(summary_id, channel, report.reason)
    if record is None:
        raise HTTPException(status_code=404, detail="Delivery record not found")
    return {"summary_id": summary_id, **record.to_api_dict()}
