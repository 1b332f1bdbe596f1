"""
Data model for the energy device gateway.

Closed enums for device types, protocols, QoS levels and statuses, plus the
pydantic models that flow between adapters, the bridge and the bus:

- DeviceIdentity: immutable (device_id, device_type, protocol) triple.
- Reading: flat device-native field map plus capture timestamp.
- Envelope models: canonical bus messages, serialised with camelCase keys.
- CommandRequest: inbound command parsed from the request topic.
- Transaction: OCPP charging session record.

CHANGELOG:
- 2026-03-04: Add CommandRequest and requestId correlation on responses
- 2026-02-21: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class DeviceType(str, Enum):
    """Kind of energy asset behind an adapter."""

    SOLAR_INVERTER = "solar_inverter"
    BATTERY = "battery"
    EV_CHARGER = "ev_charger"
    HEAT_PUMP = "heat_pump"
    METER = "meter"
    LOAD_CONTROLLER = "load_controller"


class Protocol(str, Enum):
    """Field protocol spoken by a device."""

    MODBUS = "modbus"
    OCPP = "ocpp"
    EEBUS = "eebus"
    TCPIP = "tcpip"
    SUNSPEC = "sunspec"


class QoSLevel(IntEnum):
    """Bus delivery guarantee, numerically identical to MQTT QoS."""

    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


class MessageType(str, Enum):
    """Canonical message kinds."""

    TELEMETRY = "telemetry"
    STATUS = "status"
    COMMAND_REQUEST = "command_request"
    COMMAND_RESPONSE = "command_response"


class DeviceStatus(str, Enum):
    """Status values published on the device status topic."""

    ONLINE = "online"
    OFFLINE = "offline"
    STANDBY = "standby"
    ERROR = "error"


class TransactionStatus(str, Enum):
    """Lifecycle of an OCPP charging transaction."""

    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"


# ---------------------------------------------------------------------------
# Device-side models
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class DeviceIdentity(BaseModel):
    """Immutable identity of a device for the lifetime of its adapter.

    Attributes:
        device_id: Numeric device identifier, unique per gateway.
        device_type: Kind of energy asset.
        protocol: Field protocol used to reach the device.
    """

    model_config = {"frozen": True}

    device_id: int
    device_type: DeviceType
    protocol: Protocol


class Reading(BaseModel):
    """A single device-native reading.

    Attributes:
        values: Native field name to raw value.
        captured_at: UTC timestamp at which the reading was taken.
    """

    values: dict[str, float | int | bool | str]
    captured_at: datetime = Field(default_factory=_utcnow)


class Transaction(BaseModel):
    """OCPP charging transaction on one connector.

    Attributes:
        id: Transaction id assigned by the central system (or locally).
        connector_id: Connector the session runs on.
        id_tag: Authorisation tag that started the session.
        status: InProgress until stopped, then Completed.
        start_time: Session start (UTC).
        meter_start: Energy register at start, in Wh.
        meter_stop: Energy register at stop, in Wh.
        stop_time: Session end (UTC).
    """

    id: int
    connector_id: int
    id_tag: str
    status: TransactionStatus = TransactionStatus.IN_PROGRESS
    start_time: datetime = Field(default_factory=_utcnow)
    meter_start: int = 0
    meter_stop: int | None = None
    stop_time: datetime | None = None


# ---------------------------------------------------------------------------
# Canonical bus envelopes
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    """Fields shared by every canonical message."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    message_type: MessageType
    timestamp: datetime = Field(default_factory=_utcnow)
    device_id: int
    qos: QoSLevel = QoSLevel.AT_LEAST_ONCE

    def to_json(self) -> str:
        """Serialise with camelCase keys, omitting unset optional fields."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


class TelemetryMetadata(BaseModel):
    """Origin of a telemetry message."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    source: Protocol
    device_type: DeviceType


class TelemetryMessage(Envelope):
    """Mapped readings of one device."""

    message_type: MessageType = MessageType.TELEMETRY
    readings: dict[str, Any]
    metadata: TelemetryMetadata


class StatusMessage(Envelope):
    """Device status change."""

    message_type: MessageType = MessageType.STATUS
    status: DeviceStatus
    details: dict[str, Any] | None = None


class CommandResponseMessage(Envelope):
    """Outcome of a command, correlated to its request."""

    message_type: MessageType = MessageType.COMMAND_RESPONSE
    command: str
    success: bool
    data: Any = None
    message: str | None = None
    request_id: str | None = None


class CommandRequest(BaseModel):
    """Inbound command parsed from ``devices/{id}/commands/request``.

    Attributes:
        command: Command name understood by the target adapter.
        params: Command parameters.
        request_id: Optional caller correlation id echoed in the response.
    """

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    command: str
    params: dict[str, Any] = Field(default_factory=dict)
    request_id: str | None = None
