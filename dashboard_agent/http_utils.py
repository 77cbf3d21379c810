from __future__ import annotations

from fastapi import HTTPException, Request, status

from dashboard_agent.services.bus import BusConnection
from dashboard_agent.services.pipeline import TelemetryPipeline


def pipeline(request: Request) -> TelemetryPipeline:
    instance: TelemetryPipeline | None = getattr(request.app.state, "pipeline", None)
    if instance is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not running")
    return instance


def bus(request: Request) -> BusConnection | None:
    return getattr(request.app.state, "bus", None)
