"""Running minimum/maximum per eligible key, with a rolling global reset."""
from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional, Pattern

from dashboard_agent.config import DEFAULT_EXTREMA_EXCLUDE, DEFAULT_EXTREMA_INCLUDE
from dashboard_agent.services.value_store import parse_number

logger = logging.getLogger(__name__)

DEFAULT_RESET_WINDOW_SECONDS = 60.0 * 60.0 * 24.0


def to_millis(ts: float) -> int:
    return int(round(ts * 1000.0))


def from_millis(ms: float) -> float:
    return float(ms) / 1000.0


@dataclass
class ExtremumRecord:
    key: str
    min: float
    min_at: float
    max: float
    max_at: float

    def as_wire(self) -> Dict[str, object]:
        return {
            "min": self.min,
            "max": self.max,
            "minAt": to_millis(self.min_at),
            "maxAt": to_millis(self.max_at),
        }


@dataclass(frozen=True)
class IncomingExtremum:
    """A peer's view of one key; timestamps are optional on the wire."""

    min: float
    max: float
    min_at: Optional[float] = None
    max_at: Optional[float] = None


class EligibilityPolicy:
    """Decides which keys get min/max tracking.

    A key is eligible when any include pattern matches it and no exclude
    pattern does. Patterns are regular expressions applied with ``search``,
    so plain substrings work as-is.
    """

    def __init__(self, include: Iterable[str] = DEFAULT_EXTREMA_INCLUDE, exclude: Iterable[str] = DEFAULT_EXTREMA_EXCLUDE):
        self._include: List[Pattern[str]] = [re.compile(pattern) for pattern in include]
        self._exclude: List[Pattern[str]] = [re.compile(pattern) for pattern in exclude]
        self._cache: Dict[str, bool] = {}

    def is_eligible(self, key: str) -> bool:
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        eligible = any(p.search(key) for p in self._include) and not any(p.search(key) for p in self._exclude)
        self._cache[key] = eligible
        return eligible


class ExtremumTracker:
    def __init__(
        self,
        policy: EligibilityPolicy | None = None,
        *,
        reset_window_seconds: float = DEFAULT_RESET_WINDOW_SECONDS,
        last_reset_at: float | None = None,
    ) -> None:
        self.policy = policy or EligibilityPolicy()
        self.reset_window_seconds = float(reset_window_seconds)
        self.last_reset_at = float(last_reset_at) if last_reset_at is not None else time.time()
        # Set once a reset has actually cleared history; until then peer
        # history of any age is accepted.
        self.reset_floor: Optional[float] = None
        self._records: Dict[str, ExtremumRecord] = {}

    def update(self, key: str, value: float, now: float) -> bool:
        """Fold one numeric observation into the record for ``key``."""

        record = self._records.get(key)
        if record is None:
            self._records[key] = ExtremumRecord(key=key, min=value, min_at=now, max=value, max_at=now)
            return True
        changed = False
        if value < record.min:
            record.min = value
            record.min_at = now
            changed = True
        if value > record.max:
            record.max = value
            record.max_at = now
            changed = True
        return changed

    def observe(self, key: str, raw: str, now: float) -> bool:
        if not self.policy.is_eligible(key):
            return False
        value = parse_number(raw)
        if value is None:
            logger.debug("Ignoring non-numeric value %r for %s", raw, key)
            return False
        return self.update(key, value, now)

    def observe_batch(self, updates: Mapping[str, str], now: float) -> List[str]:
        return [key for key, raw in updates.items() if self.observe(key, raw, now)]

    def merge(self, incoming: Mapping[str, IncomingExtremum], now: float) -> List[str]:
        """Tighten local bounds with a peer snapshot.

        Bounds only move outward (lower min, higher max), ties keep the earlier
        timestamp, so merging is idempotent and order independent. Once this
        tracker has reset, entries stamped before that reset are skipped; a
        tracker that never reset adopts peer history as-is.
        """

        changed: List[str] = []
        for key, peer in incoming.items():
            if not self.policy.is_eligible(key):
                continue
            if not (math.isfinite(peer.min) and math.isfinite(peer.max)) or peer.min > peer.max:
                logger.debug("Dropping inconsistent extremum for %s: %s", key, peer)
                continue
            if self._predates_reset(peer.min_at) or self._predates_reset(peer.max_at):
                continue
            min_at = min(peer.min_at, now) if peer.min_at is not None else None
            max_at = min(peer.max_at, now) if peer.max_at is not None else None

            record = self._records.get(key)
            if record is None:
                self._records[key] = ExtremumRecord(
                    key=key,
                    min=peer.min,
                    min_at=min_at if min_at is not None else now,
                    max=peer.max,
                    max_at=max_at if max_at is not None else now,
                )
                changed.append(key)
                continue

            before = replace(record)
            if peer.min < record.min:
                record.min = peer.min
                if min_at is not None:
                    record.min_at = min_at
            elif peer.min == record.min and min_at is not None and min_at < record.min_at:
                record.min_at = min_at
            if peer.max > record.max:
                record.max = peer.max
                if max_at is not None:
                    record.max_at = max_at
            elif peer.max == record.max and max_at is not None and max_at < record.max_at:
                record.max_at = max_at
            if record != before:
                changed.append(key)
        return changed

    def _predates_reset(self, ts: Optional[float]) -> bool:
        # wire timestamps carry millisecond precision
        if ts is None or self.reset_floor is None:
            return False
        return ts < self.reset_floor - 0.001

    def reset(self, now: float) -> None:
        logger.info("Resetting %d extremum records", len(self._records))
        self._records = {}
        self.last_reset_at = float(now)
        self.reset_floor = float(now)

    def maybe_reset(self, now: float) -> bool:
        if now - self.last_reset_at < self.reset_window_seconds:
            return False
        self.reset(now)
        return True

    def restore(
        self,
        records: Mapping[str, IncomingExtremum],
        last_reset_at: float,
        now: float,
        reset_floor: Optional[float] = None,
    ) -> None:
        """Load a locally cached snapshot; stale caches are discarded."""

        self._records = {}
        self.last_reset_at = float(last_reset_at)
        self.reset_floor = float(reset_floor) if reset_floor is not None else None
        if self.maybe_reset(now):
            return
        self.merge(records, now)

    def get(self, key: str) -> Optional[ExtremumRecord]:
        record = self._records.get(key)
        return replace(record) if record else None

    def snapshot(self) -> Dict[str, ExtremumRecord]:
        return {key: replace(record) for key, record in self._records.items()}

    def __len__(self) -> int:
        return len(self._records)
