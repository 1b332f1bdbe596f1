"""
Device factory: turns validated device configs into wired adapters.

A device config names the device (id, type, protocol), its connection
descriptor, and optionally its register map, mapping rules and telemetry
QoS/retain overrides. The factory validates the config, builds the
protocol bridge, picks a real or simulated transport (``mock_mode`` is
consumed here and nowhere else) and constructs the adapter.

Builders are looked up in a table keyed by every
:class:`~gateway.src.models.Protocol` member, so adding a protocol without a
builder fails loudly.

Operations:
- load_device_configs(path): Read and validate the devices JSON file.
- build_adapter(config, bus, ...): Build one adapter.

CHANGELOG:
- 2026-03-05: Route remote OCPP calls to the adapter
- 2026-03-03: Wire the optional reading store into adapters
- 2026-03-01: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import random
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from gateway.src.adapters.base import DeviceAdapter
from gateway.src.adapters.eebus import EebusAdapter, EebusConnection
from gateway.src.adapters.modbus import ModbusAdapter, ModbusConnection, PymodbusTransport
from gateway.src.adapters.ocpp import Connector, OcppAdapter, OcppConnection, WebSocketOcppTransport
from gateway.src.adapters.sunspec import SunSpecAdapter
from gateway.src.adapters.tcpip import TcpConnection, TcpIpAdapter, TcpStreamTransport
from gateway.src.bridge import ProtocolBridge
from gateway.src.bus import MessageBus
from gateway.src.errors import GatewayConfigError
from gateway.src.mapping import MappingRule
from gateway.src.models import DeviceIdentity, DeviceType, Protocol, QoSLevel
from gateway.src.registers import DEFAULT_REGISTER_MAPS, SUNSPEC_BASE_ADDRESS, RegisterDef
from gateway.src.simulation import (
    SimulatedEebusTransport,
    SimulatedMeter,
    SimulatedModbusTransport,
    SimulatedOcppTransport,
    SimulatedStreamTransport,
)
from gateway.src.store import ReadingStore

logger = logging.getLogger(__name__)


class DeviceConfig(BaseModel):
    """One entry of the devices file.

    Attributes:
        device_id: Numeric device id, unique across the gateway.
        device_type: Kind of energy asset.
        protocol: Field protocol.
        connection: Protocol-specific connection descriptor fields.
        registers: Register map (Modbus only). Defaults to the built-in map
            for the device type.
        rules: Mapping rules. Defaults to the device type's rule table.
        qos: Telemetry QoS override.
        retain: Telemetry retain override.
    """

    model_config = {"populate_by_name": True}

    device_id: int = Field(alias="id", ge=0)
    device_type: DeviceType = Field(alias="type")
    protocol: Protocol
    connection: dict[str, Any] = Field(default_factory=dict)
    registers: list[dict[str, Any]] | None = None
    rules: list[dict[str, Any]] | None = None
    qos: QoSLevel | None = None
    retain: bool | None = None

    @property
    def identity(self) -> DeviceIdentity:
        return DeviceIdentity(
            device_id=self.device_id,
            device_type=self.device_type,
            protocol=self.protocol,
        )

    @property
    def mock_mode(self) -> bool:
        return bool(self.connection.get("mock_mode", False))


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_device_configs(path: str | Path) -> list[DeviceConfig]:
    """Read and validate the devices file.

    The file holds either a JSON list of device configs or an object with a
    ``devices`` list.

    Raises:
        GatewayConfigError: Unreadable file, invalid JSON, an invalid entry
            or a duplicate device id.
    """
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise GatewayConfigError(f"Cannot read devices file {path}: {exc}") from exc
    except ValueError as exc:
        raise GatewayConfigError(f"Devices file {path} is not valid JSON: {exc}") from exc

    entries = raw.get("devices", []) if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise GatewayConfigError(f"Devices file {path} must hold a list of devices")

    configs: list[DeviceConfig] = []
    seen: set[int] = set()
    for index, entry in enumerate(entries):
        try:
            config = DeviceConfig.model_validate(entry)
        except ValidationError as exc:
            raise GatewayConfigError(f"Invalid device entry #{index}: {exc}") from exc
        if config.device_id in seen:
            raise GatewayConfigError(f"Duplicate device id {config.device_id}")
        seen.add(config.device_id)
        configs.append(config)
    logger.info("Loaded %d device configs from %s", len(configs), path)
    return configs


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

Builder = Callable[..., DeviceAdapter]


def _connection(model: type[BaseModel], config: DeviceConfig) -> Any:
    try:
        return model.model_validate(config.connection)
    except ValidationError as exc:
        raise GatewayConfigError(f"Device {config.device_id}: invalid connection: {exc}") from exc


def _registers(config: DeviceConfig) -> list[RegisterDef]:
    if config.registers is None:
        return list(DEFAULT_REGISTER_MAPS[config.device_type])
    try:
        return [RegisterDef.from_dict(entry) for entry in config.registers]
    except (TypeError, ValueError) as exc:
        raise GatewayConfigError(f"Device {config.device_id}: invalid register map: {exc}") from exc


def _build_modbus(config, bridge, *, transport, rng, **kwargs) -> DeviceAdapter:
    conn: ModbusConnection = _connection(ModbusConnection, config)
    registers = _registers(config)
    if not registers:
        raise GatewayConfigError(
            f"Device {config.device_id}: no register map for {config.device_type.value}"
        )
    if transport is None:
        if conn.mock_mode:
            transport = SimulatedModbusTransport(registers, jitter=0.02, rng=rng)
        else:
            transport = PymodbusTransport(conn, device_id=config.device_id)
    return ModbusAdapter(
        config.identity,
        bridge,
        transport,
        registers=registers,
        scan_interval_s=conn.scan_interval_s,
        **kwargs,
    )


def _build_sunspec(config, bridge, *, transport, rng, **kwargs) -> DeviceAdapter:
    conn: ModbusConnection = _connection(ModbusConnection, config)
    base_address = int(config.connection.get("base_address", SUNSPEC_BASE_ADDRESS))
    if transport is None:
        if conn.mock_mode:
            transport = SimulatedModbusTransport.sunspec(base_address=base_address)
        else:
            transport = PymodbusTransport(conn, device_id=config.device_id)
    return SunSpecAdapter(
        config.identity,
        bridge,
        transport,
        scan_interval_s=conn.scan_interval_s,
        base_address=base_address,
        **kwargs,
    )


def _build_ocpp(config, bridge, *, transport, rng, **kwargs) -> DeviceAdapter:
    conn: OcppConnection = _connection(OcppConnection, config)
    meter_source = None
    if transport is None:
        if conn.mock_mode:
            transport = SimulatedOcppTransport()
            meter_source = SimulatedMeter(rng)
        elif not conn.url:
            raise GatewayConfigError(f"Device {config.device_id}: OCPP connection needs a url")
        else:
            transport = WebSocketOcppTransport(conn, device_id=config.device_id)
    adapter = OcppAdapter(
        config.identity,
        bridge,
        transport,
        connectors=[Connector(cid) for cid in conn.connectors],
        vendor=conn.vendor,
        model=conn.model,
        heartbeat_interval_s=conn.heartbeat_interval_s,
        meter_interval_s=conn.meter_interval_s,
        meter_source=meter_source,
        **kwargs,
    )
    if isinstance(transport, WebSocketOcppTransport):
        transport.on_closed = adapter.lifecycle.link_lost
        transport.on_call = adapter.handle_call
    return adapter


def _build_eebus(config, bridge, *, transport, rng, **kwargs) -> DeviceAdapter:
    conn: EebusConnection = _connection(EebusConnection, config)
    if transport is None:
        if not conn.mock_mode:
            raise GatewayConfigError(
                f"Device {config.device_id}: no EEBus transport available; "
                "set mock_mode or supply a transport"
            )
        transport = SimulatedEebusTransport(poll_interval_s=conn.poll_interval_s, rng=rng)
    return EebusAdapter(
        config.identity,
        bridge,
        transport,
        poll_interval_s=conn.poll_interval_s,
        temperature_range=(conn.min_temperature_c, conn.max_temperature_c),
        **kwargs,
    )


def _build_tcpip(config, bridge, *, transport, rng, **kwargs) -> DeviceAdapter:
    conn: TcpConnection = _connection(TcpConnection, config)
    if transport is None:
        if conn.mock_mode:
            transport = SimulatedStreamTransport()
        elif not conn.host or not conn.port:
            raise GatewayConfigError(f"Device {config.device_id}: TCP connection needs host and port")
        else:
            transport = TcpStreamTransport(conn, device_id=config.device_id)
    return TcpIpAdapter(
        config.identity,
        bridge,
        transport,
        data_format=conn.data_format,
        templates=conn.commands,
        poll_interval_s=conn.poll_interval_s,
        **kwargs,
    )


BUILDERS: dict[Protocol, Builder] = {
    Protocol.MODBUS: _build_modbus,
    Protocol.SUNSPEC: _build_sunspec,
    Protocol.OCPP: _build_ocpp,
    Protocol.EEBUS: _build_eebus,
    Protocol.TCPIP: _build_tcpip,
}
"""Adapter builder per protocol."""


def build_adapter(
    config: DeviceConfig,
    bus: MessageBus,
    *,
    store: ReadingStore | None = None,
    transport: Any = None,
    rng: random.Random | None = None,
    **kwargs: Any,
) -> DeviceAdapter:
    """Build a fully wired adapter for *config*.

    Args:
        config: Validated device config.
        bus: Bus the device's bridge publishes to.
        store: Optional reading store.
        transport: Transport to use instead of the one the config selects.
        rng: Random source for simulated transports.
        **kwargs: Forwarded to the adapter (``policy``, ``sleep``,
            ``uniform``).

    Raises:
        GatewayConfigError: Invalid connection, register map or rules.
    """
    try:
        rules = (
            [MappingRule.from_dict(rule) for rule in config.rules]
            if config.rules is not None
            else None
        )
    except GatewayConfigError as exc:
        raise GatewayConfigError(f"Device {config.device_id}: {exc.message}") from exc

    bridge = ProtocolBridge(
        config.identity,
        bus,
        rules=rules,
        qos=config.qos,
        retain=config.retain,
    )
    adapter = BUILDERS[config.protocol](
        config,
        bridge,
        transport=transport,
        rng=rng or random.Random(),
        store=store,
        **kwargs,
    )
    logger.info(
        "Built %s adapter for device %d (%s%s)",
        config.protocol.value,
        config.device_id,
        config.device_type.value,
        ", simulated" if config.mock_mode and transport is None else "",
    )
    return adapter
