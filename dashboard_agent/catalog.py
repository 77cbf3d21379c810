"""Static catalog of monitored entities and the bus addresses they map to."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Set

from pydantic import TypeAdapter, ValidationError

from dashboard_agent.config import Settings, TopicConfig

logger = logging.getLogger(__name__)

_TOPIC_LIST = TypeAdapter(List[TopicConfig])

DEFAULT_CATALOG: List[dict] = [
    {
        "label": "Ender 3 Pro",
        "type": "boolean",
        "status_topic": "stat/Ender_3_Pro/POWER1",
        "publish_topic": "cmnd/Ender_3_Pro/POWER",
        "favorite": True,
    },
    {
        "label": "Sidewinder X1",
        "type": "boolean",
        "status_topic": "stat/Sidewinder_X1/POWER1",
        "publish_topic": "cmnd/Sidewinder_X1/POWER",
        "favorite": True,
    },
    {
        "label": "Steckdose 1",
        "type": "boolean",
        "status_topic": "stat/Steckdose_1/POWER",
        "publish_topic": "cmnd/Steckdose_1/POWER",
    },
    {
        "label": "Steckdose 2",
        "type": "boolean",
        "status_topic": "stat/Steckdose_2/POWER",
        "publish_topic": "cmnd/Steckdose_2/POWER",
    },
    {
        "label": "Poolpumpe",
        "type": "boolean",
        "status_topic": "stat/Poolpumpe/POWER",
        "publish_topic": "cmnd/Poolpumpe/POWER",
    },
    {"label": "Pool Temperatur", "type": "number", "unit": "°C", "status_topic": "Pool_temp/temperatur", "max_value": 40},
    {
        "label": "Verbrauch aktuell",
        "type": "number",
        "unit": "W",
        "status_topic": "tele/Stromzähler/SENSOR.grid.Verbrauch_aktuell",
    },
    {
        "label": "Verbrauch gesamt",
        "type": "number",
        "unit": "kWh",
        "status_topic": "tele/Stromzähler/SENSOR.grid.Verbrauch_gesamt",
    },
    {
        "label": "Eingespeist gesamt",
        "type": "number",
        "unit": "kWh",
        "status_topic": "tele/Stromzähler/SENSOR.grid.Eingespeist_gesamt",
    },
    {"label": "Gaszähler Stand", "type": "number", "unit": "m³", "status_topic": "Gaszaehler/stand"},
    {
        "label": "Spannung",
        "type": "group",
        "unit": "V",
        "max_value": 250,
        "keys": [
            {"label": f"L{phase}", "key": f"tele/Stromzähler/SENSOR.grid.Spannung_L{phase}"} for phase in (1, 2, 3)
        ],
    },
    {
        "label": "Strom",
        "type": "group",
        "unit": "A",
        "keys": [{"label": f"L{phase}", "key": f"tele/Stromzähler/SENSOR.grid.Strom_L{phase}"} for phase in (1, 2, 3)],
    },
    {
        "label": "Leistung",
        "type": "group",
        "unit": "W",
        "max_value": 1000,
        "keys": [{"label": f"L{phase}", "key": f"tele/Stromzähler/SENSOR.grid.power_L{phase}"} for phase in (1, 2, 3)],
    },
    {
        "label": "Balkonkraftwerk Power",
        "type": "number",
        "unit": "W",
        "status_topic": "Balkonkraftwerk/ENERGY_Power_0",
        "favorite": True,
    },
]


def address_for_key(key: str) -> str:
    """Bus address a key is published on (the part before the JSON path)."""

    return key.split(".", 1)[0]


class TopicCatalog:
    """Read-only view over the configured entities."""

    def __init__(self, entries: Iterable[TopicConfig], *, direct_topics: Iterable[str] = (), extra_subscriptions: Iterable[str] = ()):
        self.entries: List[TopicConfig] = list(entries)
        self._extra_direct = [topic for topic in direct_topics if topic]
        self._extra_subscriptions = [topic for topic in extra_subscriptions if topic]

    @classmethod
    def from_settings(cls, settings: Settings) -> "TopicCatalog":
        entries: Optional[List[TopicConfig]] = None
        if settings.catalog:
            entries = list(settings.catalog)
        elif settings.catalog_path:
            entries = load_catalog_file(Path(settings.catalog_path))
        if entries is None:
            entries = _TOPIC_LIST.validate_python(DEFAULT_CATALOG)
        return cls(
            entries,
            direct_topics=settings.direct_topics,
            extra_subscriptions=settings.extra_subscriptions,
        )

    def keys(self) -> List[str]:
        seen: List[str] = []
        for entry in self.entries:
            for key in entry.all_keys():
                if key not in seen:
                    seen.append(key)
        return seen

    def subscriptions(self) -> List[str]:
        topics: List[str] = []
        for key in self.keys():
            address = address_for_key(key)
            if address not in topics:
                topics.append(address)
        for topic in self._extra_subscriptions:
            if topic not in topics:
                topics.append(topic)
        return topics

    def direct_topics(self) -> Set[str]:
        topics = {entry.status_topic for entry in self.entries if entry.type == "boolean" and entry.status_topic}
        topics.update(self._extra_direct)
        return topics

    def find(self, target: str) -> Optional[TopicConfig]:
        for entry in self.entries:
            if target in (entry.label, entry.status_topic, entry.publish_topic):
                return entry
        return None

    @staticmethod
    def command_topic(entry: TopicConfig) -> Optional[str]:
        return entry.publish_topic or entry.status_topic


def load_catalog_file(path: Path) -> Optional[List[TopicConfig]]:
    if not path.exists():
        logger.warning("Catalog file %s not found; using built-in catalog", path)
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Catalog file %s is unreadable (%s); using built-in catalog", path, exc)
        return None
    if isinstance(data, dict):
        data = data.get("topics")
    try:
        return _TOPIC_LIST.validate_python(data)
    except ValidationError as exc:
        logger.warning("Catalog file %s is invalid; using built-in catalog: %s", path, exc)
        return None
