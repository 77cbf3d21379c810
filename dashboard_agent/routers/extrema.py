from __future__ import annotations

from fastapi import APIRouter, Request

from dashboard_agent.http_utils import pipeline
from dashboard_agent.schemas import ExtremaResponse, ExtremumView

router = APIRouter(prefix="/v1")


def _extrema_payload(request: Request) -> ExtremaResponse:
    tracker = pipeline(request).tracker
    return ExtremaResponse(
        last_reset_at=tracker.last_reset_at,
        reset_window_seconds=tracker.reset_window_seconds,
        records={key: ExtremumView.from_record(record) for key, record in tracker.snapshot().items()},
    )


@router.get("/extrema")
async def list_extrema(request: Request) -> ExtremaResponse:
    return _extrema_payload(request)


@router.post("/extrema/reset")
async def reset_extrema(request: Request) -> ExtremaResponse:
    pipeline(request).reset_extrema()
    return _extrema_payload(request)
