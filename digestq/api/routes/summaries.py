"""Summary lookup endpoint: a summary with its per-channel delivery records."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from digestq.api.middleware.auth import require_admin_auth
from digestq.delivery.repository import DeliveryRecordRepository
from digestq.storage.models import Summary
from digestq.storage.summaries import SummaryRepository

router = APIRouter(prefix="/summaries", tags=["summaries"])


class SummaryResponse(BaseModel):
    summary_id: str
    recipient_id: str
    window_key: str
    granularity: str
    status: str
    headline: str | None
    bullets: list[str]
    included_event_ids: list[str]
    failure_reason: str | None
    repair_attempted: bool
    created_at: str
    updated_at: str
    deliveries: list[dict[str, Any]]

    @classmethod
    def from_summary(cls, summary: Summary, deliveries: list[dict[str, Any]]) -> SummaryResponse:
        return cls(
            summary_id=summary.summary_id,
            recipient_id=summary.recipient_id,
            window_key=summary.window_key,
            granularity=summary.granularity.value,
            status=summary.status.value,
            headline=summary.headline,
            bullets=list(summary.bullets),
            included_event_ids=list(summary.included_event_ids),
            failure_reason=summary.failure_reason,
            repair_attempted=summary.repair_attempted,
            created_at=summary.created_at.isoformat(),
            updated_at=summary.updated_at.isoformat(),
            deliveries=deliveries,
        )


@router.get("/{summary_id}", response_model=SummaryResponse)
def get_summary(
    summary_id: str, _authenticated: bool = Depends(require_admin_auth)
) -> SummaryResponse:
    summary = SummaryRepository.get(summary_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Summary not found")
    records = DeliveryRecordRepository.list_for_summary(summary_id)
    return SummaryResponse.from_summary(summary, [record.to_api_dict() for record in records])
