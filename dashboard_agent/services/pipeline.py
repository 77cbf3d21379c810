"""Telemetry ingestion: normalize, batch, track extrema, reconcile with peers."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Protocol

from dashboard_agent.catalog import TopicCatalog
from dashboard_agent.config import Settings, TopicConfig
from dashboard_agent.services.buffer import PendingUpdateBuffer
from dashboard_agent.services.bus import RawMessage
from dashboard_agent.services.extrema import EligibilityPolicy, ExtremumTracker, IncomingExtremum
from dashboard_agent.services.normalizer import normalize_message
from dashboard_agent.services.reconciliation import decode_request, decode_snapshot, encode_request, encode_snapshot
from dashboard_agent.services.state_store import StateStore
from dashboard_agent.services.value_store import ValueStore

logger = logging.getLogger(__name__)

FAILURE_LOG_INTERVAL_SECONDS = 30.0


class MessageBus(Protocol):
    messages: asyncio.Queue

    async def publish(self, topic: str, payload: bytes | str, *, retain: bool = False) -> None: ...


def pipeline_topics(settings: Settings, catalog: TopicCatalog) -> List[str]:
    """Every address the pipeline needs a subscription for."""

    topics = catalog.subscriptions()
    for topic in (settings.reconcile_topic, settings.reconcile_request_topic):
        if topic not in topics:
            topics.append(topic)
    return topics


class TelemetryPipeline:
    def __init__(
        self,
        settings: Settings,
        catalog: TopicCatalog,
        bus: MessageBus,
        *,
        tracker: ExtremumTracker | None = None,
        state_store: StateStore | None = None,
    ):
        self.settings = settings
        self.catalog = catalog
        self.bus = bus
        self.buffer = PendingUpdateBuffer()
        self.values = ValueStore()
        self.tracker = tracker or ExtremumTracker(
            EligibilityPolicy(settings.extrema_include, settings.extrema_exclude),
            reset_window_seconds=settings.extrema_reset_seconds,
        )
        self.state_store = state_store
        self._direct_topics = catalog.direct_topics()
        self._peer_snapshots: Deque[Dict[str, IncomingExtremum]] = deque()
        self._answer_request = False
        self._stop_event = asyncio.Event()
        self._consumer_task: asyncio.Task | None = None
        self._flush_task: asyncio.Task | None = None
        self._last_persist_at: float = 0.0
        self._last_failure_log: float = 0.0
        self.messages_received: int = 0
        self.flushes: int = 0
        self.broadcasts_sent: int = 0
        self.broadcast_failures: int = 0
        self.peer_snapshots_merged: int = 0
        self.last_broadcast_error: Optional[str] = None

    @property
    def last_updated(self) -> Optional[datetime]:
        return self.values.last_updated

    def restore_state(self, now: float | None = None) -> None:
        if self.state_store is None:
            return
        cached = self.state_store.load()
        if cached is None:
            return
        now = time.time() if now is None else now
        self.tracker.restore(cached.extrema, cached.last_reset_at, now, cached.reset_floor)
        logger.info("Restored %d extremum records from %s", len(self.tracker), self.state_store.path)

    def start(self) -> None:
        if self._flush_task and not self._flush_task.done():
            return
        self._stop_event.clear()
        self._consumer_task = asyncio.create_task(self._run_consumer(), name="telemetry-consumer")
        self._flush_task = asyncio.create_task(self._run_flusher(), name="telemetry-flusher")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._consumer_task:
            self._consumer_task.cancel()
        for task in (self._consumer_task, self._flush_task):
            if not task:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._persist(time.time(), force=True)

    async def announce(self) -> bool:
        """Ask running peers for their extremum snapshot."""

        try:
            await self.bus.publish(self.settings.reconcile_request_topic, encode_request(self.settings.instance_id))
        except Exception as exc:
            logger.warning("Unable to request peer extrema: %s", exc)
            return False
        return True

    def ingest(self, message: RawMessage) -> None:
        self.messages_received += 1
        if message.topic == self.settings.reconcile_topic:
            snapshot = decode_snapshot(message.payload)
            if snapshot:
                self._peer_snapshots.append(snapshot)
            return
        if message.topic == self.settings.reconcile_request_topic:
            requester = decode_request(message.payload)
            if requester is not None and requester != self.settings.instance_id:
                self._answer_request = True
            return
        self.buffer.merge(normalize_message(message.topic, message.payload, self._direct_topics))

    async def flush(self, now: float | None = None) -> bool:
        """Apply one batch. Returns True when the drained batch was non-empty."""

        now = time.time() if now is None else now
        if self.tracker.maybe_reset(now):
            self._persist(now, force=True)

        while self._peer_snapshots:
            snapshot = self._peer_snapshots.popleft()
            changed = self.tracker.merge(snapshot, now)
            self.peer_snapshots_merged += 1
            if changed:
                logger.debug("Peer snapshot tightened %d keys", len(changed))

        drained = self.buffer.drain()
        answer = self._answer_request
        self._answer_request = False
        if drained:
            self.values.apply(drained, datetime.fromtimestamp(now, tz=timezone.utc))
            self.tracker.observe_batch(drained, now)
            self.flushes += 1
        if drained or (answer and len(self.tracker)):
            await self._broadcast(now)
        self._persist(now)
        return bool(drained)

    async def toggle(self, entry: TopicConfig) -> str:
        """Publish the inverse of the entity's current state and return it.

        The commanded state is echoed into the buffer optimistically, so the
        value store reports it before the device confirms on its status
        topic. A later status message overwrites the echo.
        """

        if entry.type != "boolean":
            raise ValueError(f"{entry.label} is not a boolean actuator")
        status_key = entry.status_topic or entry.publish_topic
        command_topic = self.catalog.command_topic(entry)
        if not status_key or not command_topic:
            raise ValueError(f"{entry.label} has no command topic")
        current = self.buffer.peek(status_key)
        if current is None:
            current = self.values.get(status_key)
        payload = "OFF" if (current or "").strip().upper() == "ON" else "ON"
        await self.bus.publish(command_topic, payload)
        self.buffer.put(status_key, payload)
        logger.info("Toggled %s -> %s", entry.label, payload)
        return payload

    def reset_extrema(self, now: float | None = None) -> None:
        now = time.time() if now is None else now
        self.tracker.reset(now)
        self._persist(now, force=True)

    def status_snapshot(self) -> Dict[str, object]:
        return {
            "messages_received": self.messages_received,
            "pending_keys": len(self.buffer),
            "value_count": len(self.values),
            "extrema_count": len(self.tracker),
            "flushes": self.flushes,
            "broadcasts_sent": self.broadcasts_sent,
            "broadcast_failures": self.broadcast_failures,
            "peer_snapshots_merged": self.peer_snapshots_merged,
            "last_broadcast_error": self.last_broadcast_error,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "last_reset_at": datetime.fromtimestamp(self.tracker.last_reset_at, tz=timezone.utc).isoformat(),
        }

    async def _broadcast(self, now: float) -> None:
        try:
            await self.bus.publish(self.settings.reconcile_topic, encode_snapshot(self.tracker.snapshot()))
        except Exception as exc:
            self.broadcast_failures += 1
            self.last_broadcast_error = str(exc)
            # Avoid log spam while the broker is down; emit at most once per 30s.
            if now - self._last_failure_log >= FAILURE_LOG_INTERVAL_SECONDS:
                self._last_failure_log = now
                logger.warning("Extremum broadcast failed; keeping local state: %s", exc)
            return
        self.broadcasts_sent += 1
        self.last_broadcast_error = None

    def _persist(self, now: float, *, force: bool = False) -> None:
        if self.state_store is None:
            return
        if not force and now - self._last_persist_at < self.settings.state_persist_seconds:
            return
        self._last_persist_at = now
        try:
            self.state_store.save(self.tracker.last_reset_at, self.tracker.snapshot(), self.tracker.reset_floor)
        except OSError as exc:
            logger.warning("Unable to write state cache %s: %s", self.state_store.path, exc)

    async def _run_consumer(self) -> None:
        while not self._stop_event.is_set():
            message = await self.bus.messages.get()
            try:
                self.ingest(message)
            except Exception:
                logger.exception("Failed to ingest message on %s", getattr(message, "topic", "?"))

    async def _run_flusher(self) -> None:
        interval = self.settings.flush_interval_seconds
        while not self._stop_event.is_set():
            try:
                await self.flush()
            except Exception:
                logger.exception("Unhandled error during flush")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
