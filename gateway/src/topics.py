"""
Bus topic layout and per-signal delivery policy.

Generic device topics follow ``devices/{id}/...``. Device types with a
recognised secondary signal also get narrow type-specific topics so
consumers can subscribe to just that signal. Every table here is keyed by
the closed :class:`~gateway.src.models.DeviceType` enum and covers all of its
members, so a new device type must be added explicitly.

CHANGELOG:
- 2026-02-28: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass

from gateway.src.models import DeviceType, Protocol, QoSLevel

# ---------------------------------------------------------------------------
# Generic device topics
# ---------------------------------------------------------------------------


def telemetry_topic(device_id: int) -> str:
    return f"devices/{device_id}/telemetry"


def status_topic(device_id: int) -> str:
    return f"devices/{device_id}/status"


def command_request_topic(device_id: int) -> str:
    return f"devices/{device_id}/commands/request"


def command_response_topic(device_id: int) -> str:
    return f"devices/{device_id}/commands/response"


# ---------------------------------------------------------------------------
# Type-specific signals
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SignalRoute:
    """A secondary signal republished to a narrow topic.

    Attributes:
        template: Topic template with ``{id}`` (and ``{connector}`` for
            EV charger sessions).
        fields: Mapped reading fields that make up the payload. The signal
            is published only when at least one is present.
        qos: Fixed QoS, or None to use the bridge's configured QoS.
        retain: Whether the broker keeps the last value.
        session: Payload is an EV charging session summary
            (connectorId, chargingPower, energyDelivered, sessionStatus).
    """

    template: str
    fields: tuple[str, ...]
    qos: QoSLevel | None
    retain: bool
    session: bool = False


SIGNAL_ROUTES: dict[DeviceType, tuple[SignalRoute, ...]] = {
    DeviceType.BATTERY: (
        SignalRoute("battery/{id}/soc", ("soc",), QoSLevel.EXACTLY_ONCE, True),
        SignalRoute("battery/{id}/power", ("power",), QoSLevel.AT_MOST_ONCE, False),
    ),
    DeviceType.SOLAR_INVERTER: (
        SignalRoute("solar/{id}/production", ("production", "power", "energy"), None, False),
    ),
    DeviceType.HEAT_PUMP: (
        SignalRoute("heatpump/{id}/temperature", ("temperature",), None, True),
    ),
    DeviceType.METER: (
        SignalRoute("meter/{id}/reading", ("reading", "energy"), QoSLevel.EXACTLY_ONCE, True),
        SignalRoute("meter/{id}/power", ("power",), QoSLevel.AT_MOST_ONCE, False),
    ),
    DeviceType.EV_CHARGER: (
        SignalRoute(
            "evcharger/{id}/connector/{connector}/session",
            ("power", "energy"),
            None,
            False,
            session=True,
        ),
    ),
    DeviceType.LOAD_CONTROLLER: (),
}
"""Secondary signals per device type."""

TYPE_STATUS_TOPICS: dict[DeviceType, str | None] = {
    DeviceType.BATTERY: "battery/{id}/status",
    DeviceType.SOLAR_INVERTER: "solar/{id}/status",
    DeviceType.HEAT_PUMP: "heatpump/{id}/status",
    DeviceType.EV_CHARGER: "evcharger/{id}/connector/1/status",
    DeviceType.METER: None,
    DeviceType.LOAD_CONTROLLER: None,
}
"""Type-specific status topic, where one is defined."""

RETAINED_TYPES: frozenset[DeviceType] = frozenset(
    {DeviceType.BATTERY, DeviceType.METER, DeviceType.SOLAR_INVERTER}
)
"""Device types whose last telemetry matters to a newly joined subscriber."""


# ---------------------------------------------------------------------------
# Policy helpers
# ---------------------------------------------------------------------------

_RELIABLE_PROTOCOLS: frozenset[Protocol] = frozenset(
    {Protocol.MODBUS, Protocol.SUNSPEC, Protocol.TCPIP}
)


def protocol_aware_qos(protocol: Protocol, default: QoSLevel = QoSLevel.AT_LEAST_ONCE) -> QoSLevel:
    """Return the telemetry QoS for a protocol.

    Modbus, SunSpec and TCP/IP telemetry is raised to at least
    AT_LEAST_ONCE; other protocols keep *default*.
    """
    if protocol in _RELIABLE_PROTOCOLS:
        return max(default, QoSLevel.AT_LEAST_ONCE)
    return default


def default_retain(device_type: DeviceType) -> bool:
    """Whether telemetry for *device_type* is retained by default."""
    return device_type in RETAINED_TYPES
