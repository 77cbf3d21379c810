"""Local cache of extremum state across restarts."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

from dashboard_agent.services.extrema import ExtremumRecord, IncomingExtremum, from_millis, to_millis
from dashboard_agent.services.reconciliation import decode_snapshot

logger = logging.getLogger(__name__)


@dataclass
class CachedState:
    last_reset_at: float
    extrema: Dict[str, IncomingExtremum]
    reset_floor: Optional[float] = None


class StateStore:
    """Handles serialization of the tracker's records and reset time."""

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Optional[CachedState]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable state cache %s: %s", self.path, exc)
            return None
        if not isinstance(data, dict):
            return None
        try:
            last_reset_at = from_millis(float(data["last_reset_at"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("State cache %s has no usable last_reset_at", self.path)
            return None
        reset_floor = data.get("reset_floor")
        if isinstance(reset_floor, bool) or not isinstance(reset_floor, (int, float)):
            reset_floor = None
        extrema = decode_snapshot(json.dumps(data.get("extrema") or {})) or {}
        return CachedState(
            last_reset_at=last_reset_at,
            extrema=extrema,
            reset_floor=from_millis(reset_floor) if reset_floor is not None else None,
        )

    def save(
        self,
        last_reset_at: float,
        records: Mapping[str, ExtremumRecord],
        reset_floor: Optional[float] = None,
    ) -> None:
        payload = {
            "last_reset_at": to_millis(last_reset_at),
            "reset_floor": to_millis(reset_floor) if reset_floor is not None else None,
            "extrema": {key: record.as_wire() for key, record in records.items()},
        }
        temp_path = self.path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(payload, indent=2, sort_keys=True))
        temp_path.replace(self.path)
