"""FastAPI application exposing live telemetry values and min/max statistics."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from dashboard_agent.catalog import TopicCatalog
from dashboard_agent.config import get_settings
from dashboard_agent.observability import configure_observability
from dashboard_agent.routers import actuators as actuators_router
from dashboard_agent.routers import extrema as extrema_router
from dashboard_agent.routers import root as root_router
from dashboard_agent.routers import status as status_router
from dashboard_agent.routers import values as values_router
from dashboard_agent.services.bus import BusConnection
from dashboard_agent.services.pipeline import TelemetryPipeline, pipeline_topics
from dashboard_agent.services.state_store import StateStore

logger = logging.getLogger(__name__)

ANNOUNCE_TIMEOUT_SECONDS = 30.0


async def _announce_when_connected(bus: BusConnection, pipeline: TelemetryPipeline) -> None:
    if await bus.wait_connected(timeout=ANNOUNCE_TIMEOUT_SECONDS):
        await pipeline.announce()
    else:
        logger.info("Broker not reachable within %ss; relying on peer broadcasts", ANNOUNCE_TIMEOUT_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    catalog = TopicCatalog.from_settings(settings)
    bus = BusConnection(settings, pipeline_topics(settings, catalog))
    pipeline = TelemetryPipeline(settings, catalog, bus, state_store=StateStore(Path(settings.state_path)))
    pipeline.restore_state()
    pipeline.start()
    announce_task = None
    if settings.mqtt_enabled:
        bus.open()
        announce_task = asyncio.create_task(_announce_when_connected(bus, pipeline), name="extrema-announce")
    else:
        logger.info("MQTT disabled; pipeline runs without a broker")

    app.state.bus = bus
    app.state.pipeline = pipeline
    app.state.started_at = time.monotonic()
    logger.info("Dashboard agent started as %s with %d subscriptions", settings.instance_id, len(bus.topics))

    try:
        yield
    finally:
        if announce_task and not announce_task.done():
            announce_task.cancel()
            try:
                await announce_task
            except asyncio.CancelledError:
                pass
        await pipeline.stop()
        await bus.close()
        logger.info("Dashboard agent stopped")


settings = get_settings()
app = FastAPI(title="Dashboard Agent", lifespan=lifespan)
configure_observability(
    app,
    service_name=settings.otel_service_name,
    service_version=settings.service_version,
    log_level=settings.log_level,
    instance_id=settings.instance_id,
    otel_enabled=settings.otel_enabled,
    otlp_endpoint=settings.otel_exporter_otlp_endpoint,
    otlp_headers=settings.otel_exporter_otlp_headers,
    otel_sample_ratio=settings.otel_sample_ratio,
)

app.include_router(root_router.router)
app.include_router(status_router.router)
app.include_router(values_router.router)
app.include_router(extrema_router.router)
app.include_router(actuators_router.router)


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("dashboard_agent.main:app", host="0.0.0.0", port=9100, reload=True)
