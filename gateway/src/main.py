"""
Gateway main: composition root and process entrypoint.

Builds the bus, outbox, optional reading store and one adapter registry per
protocol family, registers every configured device, then runs two loops
until SIGTERM/SIGINT:

1. **Flush loop**: replays messages parked in the outbox while the broker
   was unreachable.
2. **Health loop**: writes per-device link state, last publish timestamp
   and outbox size to the health file.

Both loops are resilient: an exception in one iteration is logged and does
not crash the loop. On shutdown the registries disconnect their devices
concurrently, a final outbox flush is attempted and the bus is stopped.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-03-05: Drop removed devices from the health file
- 2026-03-03: Add reading store and per-device health
- 2026-02-28: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from gateway.src.health import HealthWriter
from gateway.src.models import Protocol
from gateway.src.registry import AdapterRegistry

if TYPE_CHECKING:
    from gateway.src.bus import ReliablePublisher
    from gateway.src.config import GatewaySettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the gateway.

    Sets up the root logger with a JSON-formatted handler writing to stderr.

    Args:
        level: Root log level name.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def _fingerprint(secret: str) -> str:
    if not secret:
        return "<unset>"
    return "sha256:" + hashlib.sha256(secret.encode("utf-8")).hexdigest()[:8]


def log_config_summary(settings: GatewaySettings) -> None:
    """Log a config summary at startup, excluding secrets.

    The MQTT password and store token are logged only as short
    fingerprints so operators can tell which credential is deployed.
    """
    logger.info(
        "Gateway starting with config: "
        "mqtt_host=%s, mqtt_port=%s, mqtt_client_id=%s, mqtt_tls=%s, "
        "mqtt_username=%s, mqtt_password=%s, devices_file=%s, "
        "spool_path=%s, health_path=%s, flush_interval_s=%s, "
        "health_interval_s=%s, store_base_url=%s, store_token=%s",
        settings.mqtt_host,
        settings.mqtt_port,
        settings.mqtt_client_id,
        settings.mqtt_tls,
        settings.mqtt_username or "<unset>",
        _fingerprint(settings.mqtt_password),
        settings.devices_file,
        settings.spool_path,
        settings.health_path,
        settings.flush_interval_s,
        settings.health_interval_s,
        settings.store_base_url or "<disabled>",
        _fingerprint(settings.store_token),
    )


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


async def _flush_once(*, publisher: ReliablePublisher) -> int:
    """Replay one batch from the outbox.

    Catches all exceptions so that the caller's loop is never broken.

    Returns:
        Number of messages replayed.
    """
    try:
        return await publisher.flush()
    except Exception:
        logger.error("Flush cycle error", exc_info=True)
        return 0


async def _health_once(
    *,
    registries: dict[Protocol, AdapterRegistry],
    publisher: ReliablePublisher,
    health: HealthWriter,
) -> None:
    """Refresh the health file from the registries and the publisher.

    Devices no longer held by any registry are dropped from the file.
    """
    try:
        live: set[int] = set()
        for registry in registries.values():
            for adapter in registry.adapters():
                live.add(adapter.device_id)
                health.set_device_state(adapter.device_id, adapter.lifecycle.state.value)
        for device_id in health.device_ids():
            if device_id not in live:
                health.remove_device(device_id)
        health.record_publish(publisher.last_publish_ts)
        health.set_spool_count(await publisher.pending())
    except Exception:
        logger.warning("Failed to write health file", exc_info=True)


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _flush_loop(
    *,
    publisher: ReliablePublisher,
    flush_interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run the outbox flush loop until shutdown_event is set."""
    logger.info("Flush loop started (interval=%ss)", flush_interval_s)
    while not shutdown_event.is_set():
        await _flush_once(publisher=publisher)
        # Use wait with timeout so we can check shutdown between sleeps
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=flush_interval_s)
    logger.info("Flush loop stopped")


async def _health_loop(
    *,
    registries: dict[Protocol, AdapterRegistry],
    publisher: ReliablePublisher,
    health: HealthWriter,
    health_interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run the health loop until shutdown_event is set."""
    logger.info("Health loop started (interval=%ss)", health_interval_s)
    while not shutdown_event.is_set():
        await _health_once(registries=registries, publisher=publisher, health=health)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=health_interval_s)
    logger.info("Health loop stopped")


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def build_registries() -> dict[Protocol, AdapterRegistry]:
    """Create one empty registry per protocol family."""
    return {protocol: AdapterRegistry(protocol) for protocol in Protocol}


async def shutdown_registries(registries: dict[Protocol, AdapterRegistry]) -> None:
    """Shut every registry down concurrently."""
    await asyncio.gather(*(registry.shutdown() for registry in registries.values()))


async def run(
    *,
    registries: dict[Protocol, AdapterRegistry],
    publisher: ReliablePublisher,
    health: HealthWriter,
    flush_interval_s: float,
    health_interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run flush and health loops until shutdown, then stop the devices.

    After the loops end every registry is shut down, one final flush is
    attempted and the health file is refreshed.
    """
    await asyncio.gather(
        _flush_loop(
            publisher=publisher,
            flush_interval_s=flush_interval_s,
            shutdown_event=shutdown_event,
        ),
        _health_loop(
            registries=registries,
            publisher=publisher,
            health=health,
            health_interval_s=health_interval_s,
            shutdown_event=shutdown_event,
        ),
    )

    logger.info("Stopping devices")
    await shutdown_registries(registries)
    logger.info("Attempting final outbox flush before exit")
    await _flush_once(publisher=publisher)
    await _health_once(registries=registries, publisher=publisher, health=health)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run loops.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    from gateway.src.bus import MqttBus, ReliablePublisher
    from gateway.src.config import GatewaySettings
    from gateway.src.factory import build_adapter, load_device_configs
    from gateway.src.spool import Spool
    from gateway.src.store import HttpReadingStore

    settings = GatewaySettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    configs = load_device_configs(settings.devices_file)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    bus = MqttBus(
        host=settings.mqtt_host,
        port=settings.mqtt_port,
        client_id=settings.mqtt_client_id,
        username=settings.mqtt_username or None,
        password=settings.mqtt_password or None,
        tls=settings.mqtt_tls,
        publish_timeout_s=settings.publish_timeout_s,
    )
    store = (
        HttpReadingStore(settings.store_base_url, settings.store_token)
        if settings.store_base_url
        else None
    )
    health = HealthWriter(settings.health_path)
    registries = build_registries()

    await bus.start()
    try:
        async with Spool(settings.spool_path) as spool:
            publisher = ReliablePublisher(bus, spool)
            for config in configs:
                adapter = build_adapter(config, publisher, store=store)
                await registries[config.protocol].add_device(adapter)

            await run(
                registries=registries,
                publisher=publisher,
                health=health,
                flush_interval_s=settings.flush_interval_s,
                health_interval_s=settings.health_interval_s,
                shutdown_event=shutdown_event,
            )
    finally:
        await bus.stop()


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the gateway."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
