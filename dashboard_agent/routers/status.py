from __future__ import annotations

import os
import time
from typing import Dict

import psutil
from fastapi import APIRouter, Depends, Request

from dashboard_agent.config import Settings, get_settings
from dashboard_agent.http_utils import bus, pipeline

router = APIRouter(prefix="/v1")


@router.get("/status")
async def status_endpoint(request: Request, settings: Settings = Depends(get_settings)) -> Dict[str, object]:
    uptime = int(time.monotonic() - getattr(request.app.state, "started_at", time.monotonic()))
    connection = bus(request)
    process = psutil.Process(os.getpid())
    return {
        "instance_id": settings.instance_id,
        "instance_name": settings.instance_name,
        "service_version": settings.service_version,
        "uptime_seconds": uptime,
        "flush_interval_seconds": settings.flush_interval_seconds,
        "extrema_reset_seconds": settings.extrema_reset_seconds,
        "bus": {
            "enabled": settings.mqtt_enabled,
            "broker": f"{settings.mqtt_host}:{settings.mqtt_port}",
            "connected": bool(connection and connection.connected),
            "last_error": connection.last_error if connection else None,
            "last_connected_at": connection.last_connected_at.isoformat()
            if connection and connection.last_connected_at
            else None,
            "dropped_messages": connection.dropped_messages if connection else 0,
            "subscriptions": list(connection.topics) if connection else [],
        },
        "pipeline": pipeline(request).status_snapshot(),
        "process": {
            "cpu_percent": process.cpu_percent(interval=0.0),
            "memory_rss_bytes": process.memory_info().rss,
        },
    }
