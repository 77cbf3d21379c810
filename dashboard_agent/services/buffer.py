from __future__ import annotations

import threading
from typing import Dict, Mapping, Optional


class PendingUpdateBuffer:
    """Latest value per key since the last drain (last write wins)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Dict[str, str] = {}

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._pending[key] = value

    def merge(self, updates: Mapping[str, str]) -> None:
        if not updates:
            return
        with self._lock:
            self._pending.update(updates)

    def peek(self, key: str) -> Optional[str]:
        with self._lock:
            return self._pending.get(key)

    def drain(self) -> Dict[str, str]:
        """Swap the pending map for an empty one and return the old contents."""

        with self._lock:
            drained, self._pending = self._pending, {}
        return drained

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
