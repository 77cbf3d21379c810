#!/usr/bin/env python3
"""Publish simulated meter, pool and switch telemetry to an MQTT broker."""
from __future__ import annotations

import json
import math
import os
import random
import time
from dataclasses import dataclass
from typing import Dict, List

import paho.mqtt.client as mqtt


@dataclass(frozen=True)
class PhaseProfile:
    phase: int
    base_power: float
    amplitude: float
    period: float
    phase_offset: float


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_list(key: str) -> List[str]:
    value = os.getenv(key, "")
    return [entry.strip() for entry in value.split(",") if entry.strip()]


def _build_phases(seed: int) -> List[PhaseProfile]:
    rng = random.Random(seed)
    return [
        PhaseProfile(
            phase=phase,
            base_power=100.0 + rng.random() * 400.0,
            amplitude=50.0 + rng.random() * 200.0,
            period=20.0 + rng.random() * 60.0,
            phase_offset=rng.random() * math.tau,
        )
        for phase in (1, 2, 3)
    ]


def meter_payload(phases: List[PhaseProfile], elapsed: float, total_kwh: float) -> Dict[str, object]:
    grid: Dict[str, object] = {}
    consumption = 0.0
    for profile in phases:
        power = max(profile.base_power + profile.amplitude * math.sin(elapsed / profile.period + profile.phase_offset), 0.0)
        voltage = 230.0 + 3.0 * math.sin(elapsed / 17.0 + profile.phase)
        consumption += power
        grid[f"power_L{profile.phase}"] = round(power, 1)
        grid[f"Spannung_L{profile.phase}"] = round(voltage, 1)
        grid[f"Strom_L{profile.phase}"] = round(power / voltage, 2)
    grid["Verbrauch_aktuell"] = round(consumption, 1)
    grid["Verbrauch_gesamt"] = round(total_kwh, 3)
    return {"Time": time.strftime("%Y-%m-%dT%H:%M:%S"), "grid": grid}


def main() -> None:
    mqtt_host = os.getenv("MQTT_HOST", "127.0.0.1")
    mqtt_port = _env_int("MQTT_PORT", 1883)
    mqtt_keepalive = _env_int("MQTT_KEEPALIVE", 60)
    meter_topic = os.getenv("SIM_METER_TOPIC", "tele/Stromzähler/SENSOR")
    pool_topic = os.getenv("SIM_POOL_TOPIC", "Pool_temp/temperatur")
    switch_topics = _env_list("SIM_SWITCH_TOPICS") or ["stat/Steckdose_1/POWER", "stat/Poolpumpe/POWER"]
    interval = _env_float("SIM_INTERVAL", 1.0)
    seed = _env_int("SIM_SEED", 42)

    phases = _build_phases(seed)
    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=f"dashboard-sim-meter-{seed}")

    def _on_connect(_client, _userdata, _flags, reason_code, _properties):
        if reason_code == 0:
            print(f"[sim-meter] connected to MQTT at {mqtt_host}:{mqtt_port}")
        else:
            print(f"[sim-meter] MQTT connection failed: {reason_code}")

    def _on_message(_client, _userdata, message):
        # Echo switch commands back as state, like a smart plug would.
        state = message.payload.decode("utf-8", errors="ignore").strip().upper()
        status_topic = message.topic.replace("cmnd/", "stat/", 1)
        if state in {"ON", "OFF"}:
            client.publish(status_topic, state, qos=0, retain=True)

    client.on_connect = _on_connect
    client.on_message = _on_message

    while True:
        try:
            client.connect(mqtt_host, mqtt_port, mqtt_keepalive)
            break
        except Exception as exc:
            print(f"[sim-meter] MQTT connect failed: {exc}")
            time.sleep(2)

    client.subscribe("cmnd/#")
    client.loop_start()
    for topic in switch_topics:
        client.publish(topic, "OFF", qos=0, retain=True)

    start = time.monotonic()
    total_kwh = 1234.5
    try:
        while True:
            elapsed = time.monotonic() - start
            payload = meter_payload(phases, elapsed, total_kwh)
            total_kwh += payload["grid"]["Verbrauch_aktuell"] * interval / 3_600_000.0
            client.publish(meter_topic, json.dumps(payload), qos=0, retain=False)
            pool_temp = 24.0 + 1.5 * math.sin(elapsed / 300.0)
            client.publish(pool_topic, f"{pool_temp:.2f}", qos=0, retain=False)
            time.sleep(interval)
    except KeyboardInterrupt:
        print("[sim-meter] shutting down")
    finally:
        client.loop_stop()
        client.disconnect()


if __name__ == "__main__":
    main()
