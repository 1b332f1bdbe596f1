"""
Unit tests for the device factory.

Tests verify:
- load_device_configs() accepts a list or a {"devices": [...]} object and
  rejects unreadable files, bad JSON, invalid entries and duplicate ids.
- build_adapter() picks the adapter class per protocol and a simulated
  transport when mock_mode is set.
- Incomplete connections (OCPP without url, TCP without host, EEBus without
  a transport) and empty register maps raise GatewayConfigError.
- Rule, QoS and retain overrides reach the bridge.

CHANGELOG:
- 2026-03-05: Cover remote-call wiring of the OCPP transport
- 2026-03-03: Cover store and override wiring
- 2026-03-01: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import random
from pathlib import Path
from typing import Any

import pytest
from gateway.src.adapters.eebus import EebusAdapter
from gateway.src.adapters.modbus import ModbusAdapter, PymodbusTransport
from gateway.src.adapters.ocpp import OcppAdapter, WebSocketOcppTransport
from gateway.src.adapters.sunspec import SunSpecAdapter
from gateway.src.adapters.tcpip import TcpIpAdapter
from gateway.src.errors import GatewayConfigError
from gateway.src.factory import BUILDERS, DeviceConfig, build_adapter, load_device_configs
from gateway.src.models import DeviceType, Protocol, QoSLevel
from gateway.src.simulation import (
    SimulatedEebusTransport,
    SimulatedModbusTransport,
    SimulatedOcppTransport,
    SimulatedStreamTransport,
)

from .conftest import RecordingBus

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _config(**overrides: Any) -> DeviceConfig:
    entry: dict[str, Any] = {
        "id": 7,
        "type": "battery",
        "protocol": "modbus",
        "connection": {"host": "10.0.0.7", "mock_mode": True},
    }
    entry.update(overrides)
    return DeviceConfig.model_validate(entry)


def _write(tmp_path: Path, content: Any) -> Path:
    path = tmp_path / "devices.json"
    path.write_text(content if isinstance(content, str) else json.dumps(content))
    return path


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoadDeviceConfigs:
    """Devices file parsing."""

    def test_list_form(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            [
                {"id": 1, "type": "battery", "protocol": "modbus"},
                {"id": 2, "type": "ev_charger", "protocol": "ocpp", "connection": {"mock_mode": True}},
            ],
        )

        configs = load_device_configs(path)

        assert [c.device_id for c in configs] == [1, 2]
        assert configs[1].device_type is DeviceType.EV_CHARGER
        assert configs[1].mock_mode is True
        assert configs[0].mock_mode is False

    def test_object_form(self, tmp_path: Path) -> None:
        path = _write(tmp_path, {"devices": [{"id": 5, "type": "heat_pump", "protocol": "eebus"}]})

        [config] = load_device_configs(path)

        assert config.protocol is Protocol.EEBUS

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(GatewayConfigError, match="Cannot read"):
            load_device_configs(tmp_path / "absent.json")

    def test_invalid_json(self, tmp_path: Path) -> None:
        with pytest.raises(GatewayConfigError, match="not valid JSON"):
            load_device_configs(_write(tmp_path, "[{"))

    def test_not_a_list(self, tmp_path: Path) -> None:
        with pytest.raises(GatewayConfigError, match="list of devices"):
            load_device_configs(_write(tmp_path, {"devices": "battery"}))

    def test_invalid_entry(self, tmp_path: Path) -> None:
        path = _write(tmp_path, [{"id": 1, "type": "toaster", "protocol": "modbus"}])

        with pytest.raises(GatewayConfigError, match="entry #0"):
            load_device_configs(path)

    def test_duplicate_ids(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            [
                {"id": 3, "type": "battery", "protocol": "modbus"},
                {"id": 3, "type": "meter", "protocol": "modbus"},
            ],
        )

        with pytest.raises(GatewayConfigError, match="Duplicate device id 3"):
            load_device_configs(path)


# ---------------------------------------------------------------------------
# Building
# ---------------------------------------------------------------------------


class TestBuildAdapter:
    """build_adapter() per protocol."""

    def test_every_protocol_has_a_builder(self) -> None:
        assert set(BUILDERS) == set(Protocol)

    @pytest.mark.parametrize(
        ("device_type", "protocol", "adapter_cls", "transport_cls"),
        [
            ("battery", "modbus", ModbusAdapter, SimulatedModbusTransport),
            ("solar_inverter", "sunspec", SunSpecAdapter, SimulatedModbusTransport),
            ("ev_charger", "ocpp", OcppAdapter, SimulatedOcppTransport),
            ("heat_pump", "eebus", EebusAdapter, SimulatedEebusTransport),
            ("load_controller", "tcpip", TcpIpAdapter, SimulatedStreamTransport),
        ],
    )
    def test_mock_mode_uses_simulation(
        self,
        bus: RecordingBus,
        device_type: str,
        protocol: str,
        adapter_cls: type,
        transport_cls: type,
    ) -> None:
        config = _config(type=device_type, protocol=protocol, connection={"mock_mode": True})

        adapter = build_adapter(config, bus, rng=random.Random(1))

        assert type(adapter) is adapter_cls
        assert isinstance(adapter.transport, transport_cls)
        assert adapter.device_id == 7

    def test_real_modbus_transport(self, bus: RecordingBus) -> None:
        adapter = build_adapter(_config(connection={"host": "10.0.0.7"}), bus)

        assert isinstance(adapter.transport, PymodbusTransport)

    def test_real_ocpp_transport_wired_to_adapter(self, bus: RecordingBus) -> None:
        config = _config(
            type="ev_charger",
            protocol="ocpp",
            connection={"url": "wss://csms.example.com/ocpp", "charge_point_id": "CP-1"},
        )

        adapter = build_adapter(config, bus)

        assert isinstance(adapter.transport, WebSocketOcppTransport)
        assert adapter.transport.on_closed == adapter.lifecycle.link_lost
        assert adapter.transport.on_call == adapter.handle_call

    def test_ocpp_without_url(self, bus: RecordingBus) -> None:
        config = _config(type="ev_charger", protocol="ocpp", connection={})

        with pytest.raises(GatewayConfigError, match="needs a url"):
            build_adapter(config, bus)

    def test_tcp_without_host(self, bus: RecordingBus) -> None:
        config = _config(type="load_controller", protocol="tcpip", connection={"port": 9000})

        with pytest.raises(GatewayConfigError, match="host and port"):
            build_adapter(config, bus)

    def test_eebus_without_transport(self, bus: RecordingBus) -> None:
        config = _config(type="heat_pump", protocol="eebus", connection={"host": "hp.local"})

        with pytest.raises(GatewayConfigError, match="no EEBus transport"):
            build_adapter(config, bus)

    def test_eebus_with_supplied_transport(self, bus: RecordingBus) -> None:
        config = _config(type="heat_pump", protocol="eebus", connection={"host": "hp.local"})
        transport = SimulatedEebusTransport()

        adapter = build_adapter(config, bus, transport=transport)

        assert adapter.transport is transport

    def test_modbus_without_register_map(self, bus: RecordingBus) -> None:
        config = _config(type="ev_charger", protocol="modbus")

        with pytest.raises(GatewayConfigError, match="no register map"):
            build_adapter(config, bus)

    def test_custom_register_map(self, bus: RecordingBus) -> None:
        config = _config(
            type="ev_charger",
            protocol="modbus",
            registers=[{"address": 10, "name": "session_energy", "type": "uint32", "unit": "Wh"}],
        )

        adapter = build_adapter(config, bus)

        assert isinstance(adapter, ModbusAdapter)

    def test_invalid_register_entry(self, bus: RecordingBus) -> None:
        config = _config(registers=[{"address": 10, "label": "x"}])

        with pytest.raises(GatewayConfigError, match="invalid register map"):
            build_adapter(config, bus)

    def test_invalid_connection(self, bus: RecordingBus) -> None:
        config = _config(connection={"host": "10.0.0.7", "port": 70000})

        with pytest.raises(GatewayConfigError, match="invalid connection"):
            build_adapter(config, bus)

    def test_invalid_rule(self, bus: RecordingBus) -> None:
        config = _config(rules=[{"sourceField": "soc"}])

        with pytest.raises(GatewayConfigError, match="Device 7"):
            build_adapter(config, bus)

    def test_overrides_reach_bridge(self, bus: RecordingBus) -> None:
        config = _config(qos=0, retain=True)

        adapter = build_adapter(config, bus)

        assert adapter.bridge.qos is QoSLevel.AT_MOST_ONCE
        assert adapter.bridge.retain is True

    def test_store_attached(self, bus: RecordingBus) -> None:
        store = object()

        adapter = build_adapter(_config(), bus, store=store)

        assert adapter.store is store
