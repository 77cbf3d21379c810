from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path

import pytest

from dashboard_agent.catalog import TopicCatalog
from dashboard_agent.config import Settings, TopicConfig
from dashboard_agent.services.bus import RawMessage
from dashboard_agent.services.extrema import ExtremumTracker
from dashboard_agent.services.pipeline import TelemetryPipeline, pipeline_topics
from dashboard_agent.services.reconciliation import encode_request
from dashboard_agent.services.state_store import StateStore

from conftest import FakeBus

GRID_KEY = "A.grid.Verbrauch_aktuell"
SWITCH = TopicConfig(
    label="Steckdose 1",
    type="boolean",
    status_topic="stat/Steckdose_1/POWER",
    publish_topic="cmnd/Steckdose_1/POWER",
)


def _pipeline(bus: FakeBus, *, settings: Settings | None = None, state_store: StateStore | None = None, reset_at: float = 0.0):
    settings = settings or Settings(instance_id="local")
    catalog = TopicCatalog([SWITCH])
    tracker = ExtremumTracker(reset_window_seconds=settings.extrema_reset_seconds, last_reset_at=reset_at)
    return TelemetryPipeline(settings, catalog, bus, tracker=tracker, state_store=state_store)


def test_grid_consumption_scenario(fake_bus):
    pipeline = _pipeline(fake_bus)

    async def runner():
        pipeline.ingest(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 450}}'))
        assert await pipeline.flush(now=1000.0) is True
        assert pipeline.values.get(GRID_KEY) == "450"
        record = pipeline.tracker.get(GRID_KEY)
        assert (record.min, record.max) == (450.0, 450.0)

        pipeline.ingest(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 300}}'))
        await pipeline.flush(now=1001.0)
        record = pipeline.tracker.get(GRID_KEY)
        assert (record.min, record.max) == (300.0, 450.0)
        assert record.min_at == 1001.0
        assert record.max_at == 1000.0

    asyncio.run(runner())
    broadcasts = fake_bus.published_on("dashboard/minmax")
    assert len(broadcasts) == 2
    body = json.loads(broadcasts[-1])
    assert body[GRID_KEY] == {"min": 300.0, "max": 450.0, "minAt": 1001000, "maxAt": 1000000}


def test_intermediate_values_in_a_window_are_never_observed(fake_bus):
    pipeline = _pipeline(fake_bus)

    async def runner():
        pipeline.ingest(RawMessage("k", b"1"))
        pipeline.ingest(RawMessage("k", b"2"))
        await pipeline.flush(now=10.0)

    asyncio.run(runner())
    assert pipeline.values.get("k") == "2"


def test_empty_flush_does_not_touch_last_updated_or_broadcast(fake_bus):
    pipeline = _pipeline(fake_bus)

    async def runner():
        assert await pipeline.flush(now=5.0) is False

    asyncio.run(runner())
    assert pipeline.last_updated is None
    assert fake_bus.published == []


def test_broadcast_failure_keeps_local_state():
    bus = FakeBus(fail=True)
    pipeline = _pipeline(bus)

    async def runner():
        pipeline.ingest(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 120}}'))
        assert await pipeline.flush(now=50.0) is True

    asyncio.run(runner())
    assert pipeline.values.get(GRID_KEY) == "120"
    assert pipeline.tracker.get(GRID_KEY).max == 120.0
    assert pipeline.broadcast_failures == 1
    assert pipeline.last_broadcast_error == "broker down"
    assert pipeline.last_updated is not None


def test_peer_broadcast_is_merged_on_next_tick(fake_bus):
    pipeline = _pipeline(fake_bus)
    peer = {GRID_KEY: {"min": 100.0, "max": 900.0, "minAt": 20000, "maxAt": 21000}}

    async def runner():
        pipeline.ingest(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 450}}'))
        await pipeline.flush(now=30.0)
        pipeline.ingest(RawMessage("dashboard/minmax", json.dumps(peer).encode("utf-8")))
        assert pipeline.tracker.get(GRID_KEY).min == 450.0
        await pipeline.flush(now=31.0)

    asyncio.run(runner())
    record = pipeline.tracker.get(GRID_KEY)
    assert (record.min, record.min_at) == (100.0, 20.0)
    assert (record.max, record.max_at) == (900.0, 21.0)
    assert pipeline.peer_snapshots_merged == 1
    # merging alone does not trigger a rebroadcast
    assert len(fake_bus.published_on("dashboard/minmax")) == 1


def test_own_broadcast_is_tolerated(fake_bus):
    pipeline = _pipeline(fake_bus)

    async def runner():
        pipeline.ingest(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 450}}'))
        await pipeline.flush(now=30.0)
        before = pipeline.tracker.snapshot()
        own = fake_bus.published_on("dashboard/minmax")[-1]
        pipeline.ingest(RawMessage("dashboard/minmax", own))
        await pipeline.flush(now=31.0)
        assert pipeline.tracker.snapshot() == before

    asyncio.run(runner())


def test_corrupt_peer_broadcast_is_discarded(fake_bus):
    pipeline = _pipeline(fake_bus)

    async def runner():
        pipeline.ingest(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 450}}'))
        await pipeline.flush(now=30.0)
        pipeline.ingest(RawMessage("dashboard/minmax", b"{garbage"))
        await pipeline.flush(now=31.0)

    asyncio.run(runner())
    assert pipeline.tracker.get(GRID_KEY).min == 450.0
    assert "dashboard/minmax" not in pipeline.values


def test_toggle_alternates_commands(fake_bus):
    pipeline = _pipeline(fake_bus)

    async def runner():
        pipeline.ingest(RawMessage("stat/Steckdose_1/POWER", b"ON"))
        await pipeline.flush(now=1.0)
        assert await pipeline.toggle(SWITCH) == "OFF"
        assert await pipeline.toggle(SWITCH) == "ON"
        await pipeline.flush(now=2.0)
        assert pipeline.values.get("stat/Steckdose_1/POWER") == "ON"

    asyncio.run(runner())
    assert fake_bus.published == [("cmnd/Steckdose_1/POWER", "OFF"), ("cmnd/Steckdose_1/POWER", "ON")]


def test_toggle_rejects_non_boolean(fake_bus):
    pipeline = _pipeline(fake_bus)
    entry = TopicConfig(label="Pool", type="number", status_topic="Pool_temp/temperatur")
    with pytest.raises(ValueError):
        asyncio.run(pipeline.toggle(entry))


def test_request_from_peer_is_answered_with_snapshot(fake_bus):
    pipeline = _pipeline(fake_bus)

    async def runner():
        pipeline.ingest(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 450}}'))
        await pipeline.flush(now=30.0)
        fake_bus.published.clear()

        pipeline.ingest(RawMessage("dashboard/minmax/request", encode_request("local")))
        await pipeline.flush(now=31.0)
        assert fake_bus.published == []

        pipeline.ingest(RawMessage("dashboard/minmax/request", encode_request("peer-2")))
        await pipeline.flush(now=32.0)
        assert len(fake_bus.published_on("dashboard/minmax")) == 1

    asyncio.run(runner())


def test_announce_publishes_request(fake_bus):
    pipeline = _pipeline(fake_bus)
    assert asyncio.run(pipeline.announce()) is True
    topic, payload = fake_bus.published[0]
    assert topic == "dashboard/minmax/request"
    assert json.loads(payload)["instance_id"] == "local"
    assert asyncio.run(_pipeline(FakeBus(fail=True)).announce()) is False


def test_flush_applies_rolling_reset(fake_bus):
    settings = Settings(instance_id="local", extrema_reset_seconds=3600)
    pipeline = _pipeline(fake_bus, settings=settings, reset_at=0.0)

    async def runner():
        pipeline.ingest(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 10}}'))
        await pipeline.flush(now=100.0)
        pipeline.ingest(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 500}}'))
        await pipeline.flush(now=3700.0)

    asyncio.run(runner())
    record = pipeline.tracker.get(GRID_KEY)
    assert (record.min, record.max) == (500.0, 500.0)
    assert pipeline.tracker.last_reset_at == 3700.0


def test_state_cache_survives_restart(tmp_path: Path, fake_bus):
    store = StateStore(tmp_path / "cache" / "state.json")
    settings = Settings(instance_id="local", state_persist_seconds=0.1)
    first = _pipeline(fake_bus, settings=settings, state_store=store, reset_at=0.0)

    async def runner():
        first.ingest(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 42}}'))
        await first.flush(now=100.0)

    asyncio.run(runner())
    assert store.path.exists()

    second = _pipeline(FakeBus(), settings=settings, state_store=store, reset_at=50.0)
    second.restore_state(now=200.0)
    record = second.tracker.get(GRID_KEY)
    assert (record.min, record.max) == (42.0, 42.0)
    assert second.tracker.last_reset_at == 0.0


def test_corrupt_state_cache_is_ignored(tmp_path: Path, fake_bus):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    pipeline = _pipeline(fake_bus, state_store=StateStore(path), reset_at=7.0)
    pipeline.restore_state(now=10.0)
    assert len(pipeline.tracker) == 0
    assert pipeline.tracker.last_reset_at == 7.0


def test_background_loops_consume_and_flush(fake_bus):
    settings = Settings(instance_id="local", flush_interval_seconds=0.05)
    pipeline = _pipeline(fake_bus, settings=settings)

    async def runner():
        pipeline.start()
        fake_bus.messages.put_nowait(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 75}}'))
        for _ in range(100):
            if pipeline.values.get(GRID_KEY) == "75":
                break
            await asyncio.sleep(0.02)
        await pipeline.stop()

    asyncio.run(runner())
    assert pipeline.values.get(GRID_KEY) == "75"
    assert pipeline.messages_received == 1


def test_pipeline_topics_include_reconciliation_channels():
    settings = Settings(instance_id="local")
    topics = pipeline_topics(settings, TopicCatalog([SWITCH], extra_subscriptions=["tele/+/SENSOR"]))
    assert topics == [
        "stat/Steckdose_1/POWER",
        "tele/+/SENSOR",
        "dashboard/minmax",
        "dashboard/minmax/request",
    ]


def test_fresh_instance_adopts_peer_history_from_before_it_started():
    pipeline = TelemetryPipeline(Settings(instance_id="new"), TopicCatalog([]), FakeBus())
    hour_ago = time.time() - 3600.0
    peer = {GRID_KEY: {"min": 100.0, "max": 900.0, "minAt": int(hour_ago * 1000), "maxAt": int(hour_ago * 1000) + 1000}}

    async def runner():
        pipeline.ingest(RawMessage("dashboard/minmax", json.dumps(peer).encode("utf-8")))
        await pipeline.flush()

    asyncio.run(runner())
    record = pipeline.tracker.get(GRID_KEY)
    assert record is not None
    assert (record.min, record.max) == (100.0, 900.0)
    assert record.min_at == pytest.approx(hour_ago, abs=0.001)


def test_late_instance_converges_to_running_instance():
    bus_a, bus_b = FakeBus(), FakeBus()
    started = time.time()
    first = TelemetryPipeline(Settings(instance_id="a"), TopicCatalog([]), bus_a)

    async def runner():
        first.ingest(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 450}}'))
        await first.flush(now=started - 60.0)
        first.ingest(RawMessage("A", b'{"grid":{"Verbrauch_aktuell": 120}}'))
        await first.flush(now=started - 30.0)

        second = TelemetryPipeline(Settings(instance_id="b"), TopicCatalog([]), bus_b)
        assert await second.announce() is True
        first.ingest(RawMessage("dashboard/minmax/request", bus_b.published_on("dashboard/minmax/request")[-1]))
        await first.flush(now=started - 20.0)
        second.ingest(RawMessage("dashboard/minmax", bus_a.published_on("dashboard/minmax")[-1]))
        await second.flush(now=started + 1.0)
        return second

    second = asyncio.run(runner())
    expected = {key: record.as_wire() for key, record in first.tracker.snapshot().items()}
    assert expected
    assert {key: record.as_wire() for key, record in second.tracker.snapshot().items()} == expected


def test_queued_peer_snapshots_all_merge_in_one_tick(fake_bus):
    pipeline = _pipeline(fake_bus)
    low = {GRID_KEY: {"min": 10.0, "max": 20.0, "minAt": 1000, "maxAt": 2000}}
    high = {GRID_KEY: {"min": 15.0, "max": 80.0, "minAt": 3000, "maxAt": 4000}}

    async def runner():
        pipeline.ingest(RawMessage("dashboard/minmax", json.dumps(low).encode("utf-8")))
        pipeline.ingest(RawMessage("dashboard/minmax", json.dumps(high).encode("utf-8")))
        await pipeline.flush(now=10.0)

    asyncio.run(runner())
    record = pipeline.tracker.get(GRID_KEY)
    assert (record.min, record.max) == (10.0, 80.0)
    assert pipeline.peer_snapshots_merged == 2


def test_reset_boundary_survives_restart(tmp_path: Path):
    store = StateStore(tmp_path / "state.json")
    settings = Settings(instance_id="local")
    first = _pipeline(FakeBus(), settings=settings, state_store=store)
    first.reset_extrema(now=100.0)

    second = _pipeline(FakeBus(), settings=settings, state_store=store)
    second.restore_state(now=150.0)
    assert second.tracker.reset_floor == 100.0
    stale = {GRID_KEY: {"min": 1.0, "max": 2.0, "minAt": 50000, "maxAt": 60000}}

    async def runner():
        second.ingest(RawMessage("dashboard/minmax", json.dumps(stale).encode("utf-8")))
        await second.flush(now=151.0)

    asyncio.run(runner())
    assert second.tracker.get(GRID_KEY) is None


def test_toggle_echo_is_replaced_by_device_status(fake_bus):
    pipeline = _pipeline(fake_bus)

    async def runner():
        await pipeline.toggle(SWITCH)
        await pipeline.flush(now=1.0)
        assert pipeline.values.get("stat/Steckdose_1/POWER") == "ON"
        # device refused the command and reports its real state
        pipeline.ingest(RawMessage("stat/Steckdose_1/POWER", b"OFF"))
        await pipeline.flush(now=2.0)
        assert pipeline.values.get("stat/Steckdose_1/POWER") == "OFF"

    asyncio.run(runner())
