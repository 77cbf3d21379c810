"""Wire format for the shared min/max broadcast topic."""
from __future__ import annotations

import json
import logging
import math
import time
from typing import Any, Dict, Mapping, Optional

from dashboard_agent.services.extrema import ExtremumRecord, IncomingExtremum, from_millis, to_millis

logger = logging.getLogger(__name__)


def encode_snapshot(records: Mapping[str, ExtremumRecord]) -> bytes:
    payload = {key: record.as_wire() for key, record in records.items()}
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _finite(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def _decode_entry(entry: Any) -> Optional[IncomingExtremum]:
    if not isinstance(entry, dict):
        return None
    low = _finite(entry.get("min"))
    high = _finite(entry.get("max"))
    if low is None or high is None or low > high:
        return None
    min_at = _finite(entry.get("minAt"))
    max_at = _finite(entry.get("maxAt"))
    return IncomingExtremum(
        min=low,
        max=high,
        min_at=from_millis(min_at) if min_at is not None else None,
        max_at=from_millis(max_at) if max_at is not None else None,
    )


def decode_snapshot(payload: bytes | str) -> Optional[Dict[str, IncomingExtremum]]:
    """Parse a peer broadcast.

    Returns ``None`` when the payload is not a JSON object. Individual entries
    that are malformed are skipped; the rest of the snapshot is kept.
    """

    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else str(payload)
        data = json.loads(text)
    except (UnicodeDecodeError, ValueError) as exc:
        logger.warning("Discarding undecodable reconciliation payload: %s", exc)
        return None
    if not isinstance(data, dict):
        logger.warning("Discarding reconciliation payload of type %s", type(data).__name__)
        return None
    snapshot: Dict[str, IncomingExtremum] = {}
    for key, entry in data.items():
        decoded = _decode_entry(entry)
        if decoded is None:
            logger.debug("Skipping malformed reconciliation entry for %s", key)
            continue
        snapshot[str(key)] = decoded
    return snapshot


def encode_request(instance_id: str, now: float | None = None) -> bytes:
    ts = time.time() if now is None else now
    return json.dumps({"instance_id": instance_id, "ts": to_millis(ts)}).encode("utf-8")


def decode_request(payload: bytes | str) -> Optional[str]:
    """Instance id of the requester, or an empty string for anonymous requests."""

    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else str(payload)
    except UnicodeDecodeError:
        return None
    if not text.strip():
        return ""
    try:
        data = json.loads(text)
    except ValueError:
        return ""
    if isinstance(data, dict):
        return str(data.get("instance_id") or "")
    return ""
