from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from dashboard_agent.services.extrema import ExtremumRecord


class ToggleRequest(BaseModel):
    target: str = Field(description="Entity label, status topic or command topic")


class ToggleResponse(BaseModel):
    label: str
    topic: str
    payload: str


class ExtremumView(BaseModel):
    min: float
    max: float
    min_at: float
    max_at: float

    @classmethod
    def from_record(cls, record: ExtremumRecord) -> "ExtremumView":
        return cls(min=record.min, max=record.max, min_at=record.min_at, max_at=record.max_at)


class KeyView(BaseModel):
    label: Optional[str] = None
    key: str
    value: Optional[str] = None
    extrema: Optional[ExtremumView] = None


class EntityView(BaseModel):
    label: str
    type: str
    unit: Optional[str] = None
    favorite: bool = False
    max_value: Optional[float] = None
    actuator: bool = False
    keys: List[KeyView] = Field(default_factory=list)


class ExtremaResponse(BaseModel):
    last_reset_at: float
    reset_window_seconds: float
    records: Dict[str, ExtremumView] = Field(default_factory=dict)
