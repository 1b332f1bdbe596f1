"""
Protocol bridge: the single path from device adapters to the canonical bus.

For each device the bridge:

- maps native readings through the device's rule table and publishes a
  ``telemetry`` envelope to ``devices/{id}/telemetry``;
- republishes recognised secondary signals (battery SOC, meter reading, ...)
  to narrow type-specific topics with their own QoS/retain policy;
- publishes retained ``status`` envelopes to the device status topic and the
  type-specific status topic when one exists;
- publishes non-retained ``command_response`` envelopes, and optionally
  listens on the command request topic and dispatches to the adapter.

Publishing is fire-and-forget for callers: bus failures are logged here and
never raised into adapter loops.

CHANGELOG:
- 2026-03-04: Add command request dispatch (attach_commands)
- 2026-02-28: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from gateway.src.errors import BusPublishError, CommandValidationError, GatewayError
from gateway.src.mapping import DEFAULT_RULES, MappingRule, apply_rules
from gateway.src.models import (
    CommandRequest,
    CommandResponseMessage,
    DeviceIdentity,
    DeviceStatus,
    QoSLevel,
    Reading,
    StatusMessage,
    TelemetryMessage,
    TelemetryMetadata,
)
from gateway.src.topics import (
    SIGNAL_ROUTES,
    TYPE_STATUS_TOPICS,
    SignalRoute,
    command_request_topic,
    command_response_topic,
    default_retain,
    protocol_aware_qos,
    status_topic,
    telemetry_topic,
)

if TYPE_CHECKING:
    from gateway.src.bus import MessageBus

logger = logging.getLogger(__name__)

CommandHandler = Callable[[str, dict[str, Any]], Awaitable[Any]]
"""Adapter callback ``(command, params) -> result``."""


class ProtocolBridge:
    """Translate one device's readings into canonical bus messages.

    Args:
        identity: Device identity (id, type, protocol).
        bus: Bus client the messages are published to.
        rules: Mapping rules. Defaults to the device type's rule table.
        qos: Telemetry QoS. Defaults to the protocol-aware QoS.
        retain: Telemetry retain flag. Defaults to the device type policy.
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        bus: MessageBus,
        *,
        rules: list[MappingRule] | None = None,
        qos: QoSLevel | None = None,
        retain: bool | None = None,
    ) -> None:
        self._identity = identity
        self._bus = bus
        self._rules = list(rules) if rules is not None else list(DEFAULT_RULES[identity.device_type])
        self._qos = qos if qos is not None else protocol_aware_qos(identity.protocol)
        self._retain = retain if retain is not None else default_retain(identity.device_type)
        self._command_handler: CommandHandler | None = None

    @property
    def identity(self) -> DeviceIdentity:
        return self._identity

    @property
    def qos(self) -> QoSLevel:
        return self._qos

    @property
    def retain(self) -> bool:
        return self._retain

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    async def bridge_telemetry(self, reading: Reading) -> dict[str, Any]:
        """Map and publish a reading, then republish its secondary signals.

        Args:
            reading: Native reading from the adapter.

        Returns:
            The mapped readings that were published.
        """
        device_id = self._identity.device_id
        mapped = apply_rules(reading.values, self._rules)
        message = TelemetryMessage(
            timestamp=reading.captured_at,
            device_id=device_id,
            qos=self._qos,
            readings=mapped,
            metadata=TelemetryMetadata(
                source=self._identity.protocol,
                device_type=self._identity.device_type,
            ),
        )
        await self._publish(telemetry_topic(device_id), message.to_json(), self._qos, self._retain)

        base = message.model_dump(mode="json", by_alias=True, exclude_none=True)
        for route in SIGNAL_ROUTES[self._identity.device_type]:
            await self._publish_signal(route, base, mapped)
        return mapped

    async def _publish_signal(
        self,
        route: SignalRoute,
        base: dict[str, Any],
        mapped: dict[str, Any],
    ) -> None:
        present = {name: mapped[name] for name in route.fields if name in mapped}
        if not present:
            return
        qos = route.qos if route.qos is not None else self._qos
        payload = {**base, "qos": int(qos)}
        if route.session:
            connector = mapped.get("connectorId") or 1
            payload.update(
                connectorId=connector,
                chargingPower=mapped.get("power"),
                energyDelivered=mapped.get("energy"),
                sessionStatus=mapped.get("status"),
            )
            topic = route.template.format(id=self._identity.device_id, connector=connector)
        else:
            payload.update(present)
            topic = route.template.format(id=self._identity.device_id)
        await self._publish(topic, json.dumps(payload), qos, route.retain)

    # ------------------------------------------------------------------
    # Status and command responses
    # ------------------------------------------------------------------

    async def bridge_status(
        self,
        status: DeviceStatus,
        details: dict[str, Any] | None = None,
        *,
        timestamp: datetime | None = None,
    ) -> None:
        """Publish a retained status message.

        Args:
            status: New device status.
            details: Optional context (error message, attempts, ...).
            timestamp: Event time. Defaults to now.
        """
        fields: dict[str, Any] = {
            "device_id": self._identity.device_id,
            "qos": QoSLevel.AT_LEAST_ONCE,
            "status": status,
            "details": details,
        }
        if timestamp is not None:
            fields["timestamp"] = timestamp
        payload = StatusMessage(**fields).to_json()
        await self._publish(
            status_topic(self._identity.device_id),
            payload,
            QoSLevel.AT_LEAST_ONCE,
            True,
        )
        type_topic = TYPE_STATUS_TOPICS[self._identity.device_type]
        if type_topic is not None:
            await self._publish(
                type_topic.format(id=self._identity.device_id),
                payload,
                QoSLevel.AT_LEAST_ONCE,
                True,
            )

    async def bridge_command_response(
        self,
        command: str,
        success: bool,
        result: Any = None,
        error: str | None = None,
        request_id: str | None = None,
    ) -> None:
        """Publish a non-retained command response.

        Args:
            command: Command name being answered.
            success: Whether the command succeeded.
            result: Command result data.
            error: Error message on failure.
            request_id: Correlation id from the originating request.
        """
        message = CommandResponseMessage(
            device_id=self._identity.device_id,
            qos=QoSLevel.AT_LEAST_ONCE,
            command=command,
            success=success,
            data=result,
            message=error,
            request_id=request_id,
        )
        await self._publish(
            command_response_topic(self._identity.device_id),
            message.to_json(),
            QoSLevel.AT_LEAST_ONCE,
            False,
        )

    # ------------------------------------------------------------------
    # Command requests
    # ------------------------------------------------------------------

    async def attach_commands(self, handler: CommandHandler) -> None:
        """Subscribe to the device's command request topic.

        Args:
            handler: Adapter callback executing ``(command, params)``.
        """
        self._command_handler = handler
        await self._bus.subscribe(
            command_request_topic(self._identity.device_id),
            self._on_command_request,
        )

    async def detach_commands(self) -> None:
        """Stop listening for command requests."""
        if self._command_handler is None:
            return
        self._command_handler = None
        await self._bus.unsubscribe(command_request_topic(self._identity.device_id))

    async def _on_command_request(self, topic: str, payload: bytes) -> None:
        try:
            request = CommandRequest.model_validate_json(payload)
        except ValidationError as exc:
            logger.warning("Malformed command request on %s: %s", topic, exc)
            await self.bridge_command_response(
                "unknown",
                False,
                error="Malformed command request",
            )
            return

        handler = self._command_handler
        if handler is None:
            return
        try:
            result = await handler(request.command, request.params)
        except CommandValidationError as exc:
            logger.info(
                "Command %s rejected for device %d: %s",
                request.command,
                self._identity.device_id,
                exc.message,
            )
            await self.bridge_command_response(
                request.command, False, error=exc.message, request_id=request.request_id
            )
        except GatewayError as exc:
            logger.warning(
                "Command %s failed for device %d: %s",
                request.command,
                self._identity.device_id,
                exc.message,
            )
            await self.bridge_command_response(
                request.command, False, error=exc.message, request_id=request.request_id
            )
        else:
            await self.bridge_command_response(
                request.command, True, result=result, request_id=request.request_id
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _publish(self, topic: str, payload: str, qos: QoSLevel, retain: bool) -> None:
        try:
            await self._bus.publish(topic, payload, qos=qos, retain=retain)
        except BusPublishError:
            logger.warning("Publish to %s failed", topic, exc_info=True)
