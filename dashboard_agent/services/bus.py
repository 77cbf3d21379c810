"""Owned MQTT connection feeding raw messages into an asyncio queue."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from aiomqtt import Client, MqttError

from dashboard_agent.config import Settings

logger = logging.getLogger(__name__)


class BusUnavailableError(RuntimeError):
    """Raised when publishing while the broker connection is down."""


@dataclass
class RawMessage:
    topic: str
    payload: bytes
    received_at: float = field(default_factory=time.time)


class BusConnection:
    """Subscribe to a fixed topic set and push everything onto ``messages``.

    The connection is constructed and closed explicitly by its owner; the
    pipeline is the single consumer of ``messages``.
    """

    def __init__(self, settings: Settings, topics: Iterable[str], *, queue_max: int = 10_000):
        self.settings = settings
        self.topics: List[str] = list(dict.fromkeys(topics))
        self.messages: asyncio.Queue[RawMessage] = asyncio.Queue()
        self._queue_max = max(int(queue_max), 1)
        self._client: Client | None = None
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._connected_event = asyncio.Event()
        self.connected: bool = False
        self.last_error: Optional[str] = None
        self.last_connected_at: Optional[datetime] = None
        self.dropped_messages: int = 0

    async def __aenter__(self) -> "BusConnection":
        self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def open(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="bus-connection")

    async def close(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._mark_disconnected()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def publish(self, topic: str, payload: bytes | str, *, retain: bool = False) -> None:
        client = self._client
        if client is None or not self.connected:
            raise BusUnavailableError(f"not connected to {self.settings.mqtt_host}:{self.settings.mqtt_port}")
        await client.publish(topic, payload=payload, retain=retain)

    def push(self, message: RawMessage) -> None:
        """Queue one message, dropping the oldest once the channel is full."""

        while self.messages.qsize() >= self._queue_max:
            try:
                self.messages.get_nowait()
            except asyncio.QueueEmpty:
                break
            self.dropped_messages += 1
        self.messages.put_nowait(message)

    async def _run(self) -> None:
        retry_delay = self.settings.mqtt_reconnect_seconds
        while not self._stop.is_set():
            try:
                logger.info("Connecting to MQTT broker %s:%s", self.settings.mqtt_host, self.settings.mqtt_port)
                async with Client(
                    self.settings.mqtt_host,
                    port=self.settings.mqtt_port,
                    username=self.settings.mqtt_username,
                    password=self.settings.mqtt_password,
                    identifier=f"dashboard-{self.settings.instance_id}",
                ) as client:
                    self._client = client
                    self.connected = True
                    self.last_error = None
                    self.last_connected_at = datetime.now(timezone.utc)
                    self._connected_event.set()
                    try:
                        await self._listen(client)
                    finally:
                        self._mark_disconnected()
            except asyncio.CancelledError:
                break
            except MqttError as exc:
                self.last_error = str(exc)
                logger.warning("MQTT error %s; retrying in %ss", exc, retry_delay)
                await asyncio.sleep(retry_delay)
            except Exception as exc:
                self.last_error = str(exc)
                logger.exception("Unhandled error in bus connection")
                await asyncio.sleep(retry_delay)

    async def _listen(self, client: Client) -> None:
        for topic in self.topics:
            await client.subscribe(topic)
        logger.info("Subscribed to %d topics", len(self.topics))
        async for message in client.messages:
            if self._stop.is_set():
                break
            topic = getattr(message.topic, "value", None)
            if topic is None:
                topic = str(message.topic)
            payload = message.payload
            if isinstance(payload, str):
                payload = payload.encode("utf-8")
            elif payload is None:
                payload = b""
            elif not isinstance(payload, (bytes, bytearray)):
                payload = str(payload).encode("utf-8")
            self.push(RawMessage(topic=topic, payload=bytes(payload)))

    def _mark_disconnected(self) -> None:
        self.connected = False
        self._client = None
        self._connected_event.clear()
