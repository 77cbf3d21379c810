from __future__ import annotations

import asyncio
from typing import List, Tuple

import pytest

from dashboard_agent.config import get_settings
from dashboard_agent.services.bus import BusUnavailableError


class FakeBus:
    """In-memory stand-in for the broker connection."""

    def __init__(self, *, fail: bool = False):
        self.messages: asyncio.Queue = asyncio.Queue()
        self.published: List[Tuple[str, bytes | str]] = []
        self.fail = fail

    async def publish(self, topic, payload, *, retain=False):
        if self.fail:
            raise BusUnavailableError("broker down")
        self.published.append((topic, payload))

    def published_on(self, topic: str) -> list:
        return [payload for published_topic, payload in self.published if published_topic == topic]


@pytest.fixture
def fake_bus() -> FakeBus:
    return FakeBus()


@pytest.fixture(autouse=True)
def reset_settings_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DASH_STATE_PATH", str(tmp_path / "state.json"))
    monkeypatch.setenv("DASH_MQTT_ENABLED", "false")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
