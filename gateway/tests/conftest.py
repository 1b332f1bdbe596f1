"""
Shared test fixtures for gateway tests.

Provides environment isolation for GatewaySettings, a recording message bus
that stands in for MQTT, and helpers for letting background tasks run.

CHANGELOG:
- 2026-02-28: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any

import pytest
from gateway.src.errors import BusPublishError
from gateway.src.models import QoSLevel

# All GatewaySettings environment variable names, used for cleanup.
_ALL_GATEWAY_ENV_VARS = (
    "MQTT_HOST",
    "MQTT_PORT",
    "MQTT_CLIENT_ID",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "MQTT_TLS",
    "DEVICES_FILE",
    "SPOOL_PATH",
    "HEALTH_PATH",
    "LOG_LEVEL",
    "PUBLISH_TIMEOUT_S",
    "FLUSH_INTERVAL_S",
    "HEALTH_INTERVAL_S",
    "STORE_BASE_URL",
    "STORE_TOKEN",
)


@pytest.fixture(autouse=True)
def _clean_gateway_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all gateway env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_GATEWAY_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all environment variables for GatewaySettings."""
    env = {
        "MQTT_HOST": "broker.local",
        "MQTT_PORT": "8883",
        "MQTT_CLIENT_ID": "gateway-test",
        "MQTT_USERNAME": "gateway",
        "MQTT_PASSWORD": "broker-secret",
        "MQTT_TLS": "true",
        "DEVICES_FILE": "/tmp/devices.json",
        "SPOOL_PATH": "/tmp/outbox.db",
        "HEALTH_PATH": "/tmp/health.json",
        "LOG_LEVEL": "debug",
        "PUBLISH_TIMEOUT_S": "5",
        "FLUSH_INTERVAL_S": "2",
        "HEALTH_INTERVAL_S": "15",
        "STORE_BASE_URL": "https://store.example.com",
        "STORE_TOKEN": "store-token-abc",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


# ---------------------------------------------------------------------------
# Recording bus
# ---------------------------------------------------------------------------


@dataclass
class Published:
    """One message captured by :class:`RecordingBus`."""

    topic: str
    payload: dict[str, Any]
    qos: QoSLevel
    retain: bool


class RecordingBus:
    """In-memory MessageBus that records publishes and routes deliveries."""

    def __init__(self) -> None:
        self.published: list[Published] = []
        self.handlers: dict[str, Any] = {}
        self.fail = False

    async def publish(self, topic: str, payload: str, *, qos: QoSLevel, retain: bool) -> None:
        if self.fail:
            raise BusPublishError("broker unreachable", topic=topic)
        self.published.append(Published(topic, json.loads(payload), QoSLevel(qos), retain))

    async def subscribe(self, topic: str, handler: Any) -> None:
        self.handlers[topic] = handler

    async def unsubscribe(self, topic: str) -> None:
        self.handlers.pop(topic, None)

    async def deliver(self, topic: str, payload: dict[str, Any] | bytes) -> None:
        raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        await self.handlers[topic](topic, raw)

    def on(self, topic: str) -> list[Published]:
        return [p for p in self.published if p.topic == topic]

    def topics(self) -> list[str]:
        return [p.topic for p in self.published]


@pytest.fixture()
def bus() -> RecordingBus:
    """A fresh recording bus."""
    return RecordingBus()


async def drain(predicate: Any = None, *, rounds: int = 500) -> None:
    """Yield to the event loop until *predicate()* holds or rounds run out."""
    for _ in range(rounds):
        if predicate is not None and predicate():
            return
        await asyncio.sleep(0)


@pytest.fixture()
def run_until():
    """Return :func:`drain` for tests that need background tasks to progress."""
    return drain
