from __future__ import annotations

import math
from datetime import datetime
from typing import Dict, Mapping, Optional

TRUE_STATES = {"ON", "TRUE", "1"}
FALSE_STATES = {"OFF", "FALSE", "0"}


class ValueStore:
    """Latest raw string per key; interpretation happens on read."""

    def __init__(self) -> None:
        self._values: Dict[str, str] = {}
        self.last_updated: Optional[datetime] = None

    def apply(self, updates: Mapping[str, str], at: datetime) -> None:
        if not updates:
            return
        self._values.update(updates)
        self.last_updated = at

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def number(self, key: str) -> Optional[float]:
        return parse_number(self._values.get(key))

    def boolean(self, key: str) -> Optional[bool]:
        raw = self._values.get(key)
        if raw is None:
            return None
        state = raw.strip().upper()
        if state in TRUE_STATES:
            return True
        if state in FALSE_STATES:
            return False
        return None

    def snapshot(self) -> Dict[str, str]:
        return dict(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values


def parse_number(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        value = float(raw.strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return value
