from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends

from dashboard_agent.config import Settings, get_settings

router = APIRouter()


@router.get("/")
async def landing(settings: Settings = Depends(get_settings)) -> Dict[str, object]:
    return {
        "service": "dashboard-agent",
        "instance_id": settings.instance_id,
        "instance_name": settings.instance_name,
        "version": settings.service_version,
    }


@router.get("/healthz")
async def healthz():
    return {"status": "ok"}
