from __future__ import annotations

from aiomqtt import MqttError
from fastapi import APIRouter, HTTPException, Request, status

from dashboard_agent.http_utils import pipeline
from dashboard_agent.schemas import ToggleRequest, ToggleResponse
from dashboard_agent.services.bus import BusUnavailableError

router = APIRouter(prefix="/v1")


@router.post("/actuators/toggle")
async def toggle_actuator(body: ToggleRequest, request: Request) -> ToggleResponse:
    current = pipeline(request)
    entry = current.catalog.find(body.target)
    if entry is None or not entry.is_actuator:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown actuator {body.target}")
    try:
        payload = await current.toggle(entry)
    except (BusUnavailableError, MqttError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ToggleResponse(label=entry.label, topic=current.catalog.command_topic(entry) or "", payload=payload)
