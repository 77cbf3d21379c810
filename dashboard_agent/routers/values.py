from __future__ import annotations

from typing import Dict, List

from fastapi import APIRouter, HTTPException, Request, status

from dashboard_agent.http_utils import pipeline
from dashboard_agent.schemas import EntityView, ExtremumView, KeyView

router = APIRouter(prefix="/v1")


@router.get("/values")
async def list_values(request: Request) -> Dict[str, object]:
    current = pipeline(request)
    return {
        "last_updated": current.last_updated.isoformat() if current.last_updated else None,
        "values": current.values.snapshot(),
    }


@router.get("/values/{key:path}")
async def get_value(key: str, request: Request) -> KeyView:
    current = pipeline(request)
    value = current.values.get(key)
    if value is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No value observed for {key}")
    record = current.tracker.get(key)
    return KeyView(key=key, value=value, extrema=ExtremumView.from_record(record) if record else None)


@router.get("/catalog")
async def catalog_view(request: Request) -> List[EntityView]:
    current = pipeline(request)
    entities: List[EntityView] = []
    for entry in current.catalog.entries:
        if entry.type == "group":
            members = [(member.label, member.key) for member in entry.keys]
        else:
            members = [(None, key) for key in entry.all_keys()]
        keys: List[KeyView] = []
        for label, key in members:
            record = current.tracker.get(key)
            keys.append(
                KeyView(
                    label=label,
                    key=key,
                    value=current.values.get(key),
                    extrema=ExtremumView.from_record(record) if record else None,
                )
            )
        entities.append(
            EntityView(
                label=entry.label,
                type=entry.type,
                unit=entry.unit,
                favorite=entry.favorite,
                max_value=entry.max_value,
                actuator=entry.is_actuator,
                keys=keys,
            )
        )
    return entities
