"""
Message bus client: interface, MQTT implementation and reliable publisher.

The gateway treats the broker as a black-box publish/subscribe service. The
bridge and adapters depend only on the :class:`MessageBus` protocol:

- ``publish(topic, payload, *, qos, retain)``: raises
  :class:`~gateway.src.errors.BusPublishError` when the broker rejects or
  does not acknowledge a QoS >= 1 message within the publish timeout.
- ``subscribe(topic, handler)`` / ``unsubscribe(topic)``.

:class:`MqttBus` implements it on paho-mqtt. Paho runs its own network
thread; inbound messages are handed to the asyncio loop with
``call_soon_threadsafe`` and acknowledgement waits run in a worker thread.

:class:`ReliablePublisher` wraps any bus and parks failed QoS >= 1
publishes in the SQLite outbox for later replay. QoS 0 failures are dropped.

CHANGELOG:
- 2026-03-02: Add ReliablePublisher with outbox replay
- 2026-02-28: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

import paho.mqtt.client as mqtt

from gateway.src.errors import BusPublishError
from gateway.src.models import QoSLevel

if TYPE_CHECKING:
    from gateway.src.spool import Spool

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None]]
"""Async callback receiving ``(topic, payload)`` for a subscribed topic."""

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_PUBLISH_TIMEOUT_S: float = 10.0
"""Seconds to wait for a broker acknowledgement on QoS >= 1 publishes."""

FLUSH_BATCH_SIZE: int = 100
"""Maximum outbox rows replayed per flush."""


class MessageBus(Protocol):
    """Publish/subscribe interface consumed by the bridge."""

    async def publish(self, topic: str, payload: str, *, qos: QoSLevel, retain: bool) -> None: ...

    async def subscribe(self, topic: str, handler: MessageHandler) -> None: ...

    async def unsubscribe(self, topic: str) -> None: ...


# ---------------------------------------------------------------------------
# MQTT implementation
# ---------------------------------------------------------------------------


class MqttBus:
    """paho-mqtt backed :class:`MessageBus`.

    Paho handles broker reconnection itself (``connect_async`` +
    ``loop_start``); subscriptions are re-established in ``on_connect``.

    Args:
        host: Broker hostname.
        port: Broker port.
        client_id: MQTT client id.
        username: Optional broker username.
        password: Optional broker password.
        tls: Enable TLS with the system CA bundle.
        keepalive: MQTT keepalive in seconds.
        publish_timeout_s: Acknowledgement wait for QoS >= 1.
        client: Pre-built paho client (tests inject a mock).
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 1883,
        client_id: str = "",
        username: str | None = None,
        password: str | None = None,
        tls: bool = False,
        keepalive: int = 60,
        publish_timeout_s: float = DEFAULT_PUBLISH_TIMEOUT_S,
        client: mqtt.Client | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._keepalive = keepalive
        self._publish_timeout_s = publish_timeout_s
        self._client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
        )
        if username:
            self._client.username_pw_set(username, password)
        if tls:
            self._client.tls_set()
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._handlers: dict[str, MessageHandler] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._dispatch_tasks: set[asyncio.Task[None]] = set()
        self._connected = False

    @property
    def connected(self) -> bool:
        """True while paho reports an established broker session."""
        return self._connected

    async def start(self) -> None:
        """Start the paho network thread and connect in the background."""
        self._loop = asyncio.get_running_loop()
        self._client.reconnect_delay_set(min_delay=1, max_delay=120)
        self._client.connect_async(self._host, self._port, keepalive=self._keepalive)
        self._client.loop_start()
        logger.info("MQTT client started for %s:%d", self._host, self._port)

    async def stop(self) -> None:
        """Disconnect from the broker and stop the network thread."""
        self._client.disconnect()
        self._client.loop_stop()
        self._connected = False
        logger.info("MQTT client stopped")

    async def publish(self, topic: str, payload: str, *, qos: QoSLevel, retain: bool) -> None:
        """Publish one message.

        Raises:
            BusPublishError: If paho rejects the message, or a QoS >= 1
                message is not acknowledged within the publish timeout.
        """
        info = self._client.publish(topic, payload, qos=int(qos), retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise BusPublishError(f"publish rejected: {mqtt.error_string(info.rc)}", topic=topic)
        if qos == QoSLevel.AT_MOST_ONCE:
            return
        try:
            await asyncio.to_thread(info.wait_for_publish, self._publish_timeout_s)
        except (ValueError, RuntimeError) as exc:
            raise BusPublishError(f"publish failed: {exc}", topic=topic) from exc
        if not info.is_published():
            raise BusPublishError(
                f"no acknowledgement within {self._publish_timeout_s}s",
                topic=topic,
            )

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """Route messages on *topic* (MQTT wildcards allowed) to *handler*."""
        self._handlers[topic] = handler
        if self._connected:
            self._client.subscribe(topic, qos=int(QoSLevel.AT_LEAST_ONCE))

    async def unsubscribe(self, topic: str) -> None:
        """Stop routing *topic*."""
        if self._handlers.pop(topic, None) is not None and self._connected:
            self._client.unsubscribe(topic)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            logger.error("MQTT connection refused: %s", reason_code)
            return
        self._connected = True
        logger.info("MQTT connected to %s:%d", self._host, self._port)
        for topic in list(self._handlers):
            client.subscribe(topic, qos=int(QoSLevel.AT_LEAST_ONCE))

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._connected = False
        if reason_code.is_failure:
            logger.warning("MQTT disconnected unexpectedly: %s", reason_code)

    def _on_message(self, client, userdata, message) -> None:
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._dispatch, message.topic, bytes(message.payload))

    # ------------------------------------------------------------------
    # Event loop side
    # ------------------------------------------------------------------

    def _dispatch(self, topic: str, payload: bytes) -> None:
        for pattern, handler in list(self._handlers.items()):
            if mqtt.topic_matches_sub(pattern, topic):
                task = asyncio.create_task(self._run_handler(handler, topic, payload))
                self._dispatch_tasks.add(task)
                task.add_done_callback(self._dispatch_tasks.discard)

    async def _run_handler(self, handler: MessageHandler, topic: str, payload: bytes) -> None:
        try:
            await handler(topic, payload)
        except Exception:
            logger.error("Handler for %s failed", topic, exc_info=True)


# ---------------------------------------------------------------------------
# Reliable publisher
# ---------------------------------------------------------------------------


class ReliablePublisher:
    """:class:`MessageBus` wrapper that never raises on publish.

    QoS >= 1 messages that fail are written to the outbox and replayed by
    :meth:`flush`; QoS 0 failures are dropped.

    Args:
        bus: Underlying bus client.
        spool: Outbox, or None to drop all failed publishes.
    """

    def __init__(self, bus: MessageBus, spool: Spool | None = None) -> None:
        self._bus = bus
        self._spool = spool
        self.published_count = 0
        self.spooled_count = 0
        self.dropped_count = 0
        self.last_publish_ts: str | None = None

    async def publish(self, topic: str, payload: str, *, qos: QoSLevel, retain: bool) -> None:
        """Publish, spooling reliable messages on failure."""
        try:
            await self._bus.publish(topic, payload, qos=qos, retain=retain)
        except BusPublishError as exc:
            if qos == QoSLevel.AT_MOST_ONCE or self._spool is None:
                self.dropped_count += 1
                logger.debug("Dropped publish: %s", exc)
                return
            await self._spool.enqueue(topic, payload, int(qos), retain)
            self.spooled_count += 1
            logger.warning("Publish failed, spooled for replay: %s", exc)
            return
        self.published_count += 1
        self.last_publish_ts = datetime.now(tz=UTC).isoformat()

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        await self._bus.subscribe(topic, handler)

    async def unsubscribe(self, topic: str) -> None:
        await self._bus.unsubscribe(topic)

    async def flush(self, batch_size: int = FLUSH_BATCH_SIZE) -> int:
        """Replay spooled messages oldest first.

        Stops at the first failure so ordering is preserved; replayed rows
        are acknowledged even when a later row fails.

        Returns:
            Number of messages replayed.
        """
        if self._spool is None:
            return 0
        rows = await self._spool.peek(batch_size)
        sent: list[int] = []
        for row in rows:
            try:
                await self._bus.publish(
                    row.topic,
                    row.payload,
                    qos=QoSLevel(row.qos),
                    retain=row.retain,
                )
            except BusPublishError as exc:
                logger.info("Outbox replay paused: %s", exc)
                break
            sent.append(row.rowid)
        await self._spool.ack(sent)
        if sent:
            self.published_count += len(sent)
            self.last_publish_ts = datetime.now(tz=UTC).isoformat()
            logger.info("Replayed %d spooled messages", len(sent))
        return len(sent)

    async def pending(self) -> int:
        """Number of messages waiting in the outbox."""
        if self._spool is None:
            return 0
        return await self._spool.count()
