"""Flatten raw bus messages into key/value pairs."""
from __future__ import annotations

import json
import math
from typing import Any, Collection, Dict, List, Tuple


def render_leaf(value: Any) -> str:
    """String form of a JSON leaf, following JSON text conventions."""

    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def _decode(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload).decode("utf-8", errors="replace")
    return str(payload)


def flatten_document(address: str, document: Any) -> Dict[str, str]:
    """Walk a parsed document and emit one key per leaf.

    Keys are ``address`` followed by the dotted path to the leaf; list items use
    their index as the path segment. The walk uses an explicit stack.
    """

    flat: Dict[str, str] = {}
    stack: List[Tuple[str, Any]] = [(address, document)]
    while stack:
        prefix, node = stack.pop()
        if isinstance(node, dict):
            for name, child in node.items():
                stack.append((f"{prefix}.{name}", child))
        elif isinstance(node, list):
            for index, child in enumerate(node):
                stack.append((f"{prefix}.{index}", child))
        else:
            flat[prefix] = render_leaf(node)
    return flat


def normalize_message(address: str, payload: bytes | str | None, direct_topics: Collection[str] = ()) -> Dict[str, str]:
    text = _decode(payload)
    if address in direct_topics:
        return {address: text}
    if not text.strip():
        return {}
    try:
        document = json.loads(text)
    except ValueError:
        return {address: text}
    return flatten_document(address, document)
