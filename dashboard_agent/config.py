"""Runtime configuration for the dashboard agent."""
from __future__ import annotations

import uuid
from functools import lru_cache
from typing import List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_FLUSH_INTERVAL_SECONDS = 0.05
MAX_FLUSH_INTERVAL_SECONDS = 10.0
MIN_RESET_WINDOW_SECONDS = 60.0

DEFAULT_EXTREMA_INCLUDE = [
    "power_L",
    "Verbrauch_aktuell",
    "Balkonkraftwerk/ENERGY_Power",
    "Pool_temp/temperatur",
    "Spannung_L",
    "Strom_L",
]
DEFAULT_EXTREMA_EXCLUDE = [
    "gesamt",
    "Total",
]


def _clamp_seconds(value: float, *, field: str, minimum: float, maximum: float | None = None) -> float:
    try:
        parsed = float(value)
    except Exception as exc:
        raise ValueError(f"{field} must be a number") from exc
    if parsed != parsed:  # NaN
        raise ValueError(f"{field} must be a real number")
    parsed = max(minimum, parsed)
    if maximum is not None:
        parsed = min(parsed, maximum)
    return parsed


class GroupKey(BaseModel):
    label: str
    key: str


class TopicConfig(BaseModel):
    """One monitored entity shown on the dashboard."""

    label: str
    type: Literal["boolean", "number", "string", "group"] = "number"
    unit: Optional[str] = None
    status_topic: Optional[str] = Field(
        default=None,
        description="Bus address or synthesized key (address + '.' + JSON path) holding the state",
    )
    publish_topic: Optional[str] = Field(default=None, description="Command address for boolean actuators")
    favorite: bool = False
    keys: List[GroupKey] = Field(default_factory=list, description="Member keys for grouped entities")
    max_value: Optional[float] = Field(default=None, description="Upper bound hint for bar rendering")

    @property
    def is_actuator(self) -> bool:
        return self.type == "boolean" and bool(self.status_topic or self.publish_topic)

    def all_keys(self) -> List[str]:
        if self.type == "group":
            return [member.key for member in self.keys]
        return [self.status_topic] if self.status_topic else []


class Settings(BaseSettings):
    """Environment driven settings with defaults for a single dashboard instance."""

    instance_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8], description="Identifier for this instance")
    instance_name: str = Field(default="Dashboard", description="Human readable name")
    service_version: str = "0.1.0"
    log_level: str = "INFO"
    otel_enabled: bool = False
    otel_service_name: str = "dashboard-agent"
    otel_exporter_otlp_endpoint: str = "http://127.0.0.1:4317"
    otel_exporter_otlp_headers: Optional[str] = None
    otel_sample_ratio: float = 1.0
    mqtt_url: str = Field(default="mqtt://127.0.0.1:1883", description="MQTT broker URL")
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_enabled: bool = Field(default=True, description="Connect to the broker on startup")
    mqtt_reconnect_seconds: float = 2.0
    flush_interval_seconds: float = 0.5
    extrema_reset_seconds: float = 60.0 * 60.0 * 24.0
    reconcile_topic: str = "dashboard/minmax"
    reconcile_request_topic: str = "dashboard/minmax/request"
    direct_topics: List[str] = Field(
        default_factory=list,
        description="Extra addresses whose payload is stored verbatim instead of being parsed",
    )
    extra_subscriptions: List[str] = Field(default_factory=list)
    extrema_include: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTREMA_INCLUDE))
    extrema_exclude: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTREMA_EXCLUDE))
    catalog_path: Optional[str] = None
    catalog: List[TopicConfig] = Field(default_factory=list)
    state_path: str = "storage/dashboard_state.json"
    state_persist_seconds: float = 60.0

    model_config = SettingsConfigDict(
        env_prefix="DASH_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("flush_interval_seconds")
    @classmethod
    def _clamp_flush(cls, value: float) -> float:
        return _clamp_seconds(
            value,
            field="flush_interval_seconds",
            minimum=MIN_FLUSH_INTERVAL_SECONDS,
            maximum=MAX_FLUSH_INTERVAL_SECONDS,
        )

    @field_validator("extrema_reset_seconds")
    @classmethod
    def _clamp_reset(cls, value: float) -> float:
        return _clamp_seconds(value, field="extrema_reset_seconds", minimum=MIN_RESET_WINDOW_SECONDS)

    @field_validator("mqtt_reconnect_seconds", "state_persist_seconds")
    @classmethod
    def _clamp_misc(cls, value: float) -> float:
        return _clamp_seconds(value, field="interval", minimum=0.1)

    @property
    def mqtt_host(self) -> str:
        return _parsed_mqtt(self.mqtt_url).hostname or "127.0.0.1"

    @property
    def mqtt_port(self) -> int:
        return _parsed_mqtt(self.mqtt_url).port or 1883


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


@lru_cache(maxsize=32)
def _parsed_mqtt(url: str):
    return urlparse(url)
