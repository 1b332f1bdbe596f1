"""
Simulated transports for devices running in mock mode.

The factory selects these in place of real I/O when a device config sets
``mock_mode``; adapters cannot tell the difference. They are also the
transports used by the test suite.

- SimulatedModbusTransport: in-memory register image encoded with the
  register codec, with optional value jitter and a SunSpec image builder.
- SimulatedOcppTransport: central system answering OCPP calls.
- SimulatedMeter: ramping meter for charging connectors.
- SimulatedEebusTransport: heat pump whose temperature follows the target.
- SimulatedStreamTransport: byte stream with a feed queue.

All randomness comes from an injectable ``random.Random``.

CHANGELOG:
- 2026-03-02: Add SunSpec register image
- 2026-02-28: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import random
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from gateway.src.adapters.eebus import OperationMode
from gateway.src.adapters.ocpp import Connector
from gateway.src.codec import RegisterType, encode
from gateway.src.errors import DeviceConnectionError, GatewayError
from gateway.src.registers import (
    INVERTER_103_LENGTH,
    INVERTER_103_POINTS,
    SUNSPEC_BASE_ADDRESS,
    SUNSPEC_INVERTER_MODEL,
    SUNSPEC_MARKER,
    RegisterDef,
    RegisterTable,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Modbus
# ---------------------------------------------------------------------------

DEFAULT_VALUES: dict[str, Any] = {
    "state_of_charge": 850,
    "power_watts": -2500,
    "voltage": 52.1,
    "current": -48.0,
    "temp_celsius": 25.5,
    "status": 3,
    "ac_power": 4200,
    "daily_energy": 12.4,
    "dc_voltage": 385.0,
    "active_power": 1530.5,
    "import_energy": 10234.7,
    "export_energy": 4120.2,
}
"""Engineering values used for registers a caller does not set."""

SUNSPEC_DEFAULT_POINTS: dict[str, int] = {
    "A": 125,
    "A_SF": -1,
    "PhVphA": 2301,
    "V_SF": -1,
    "W": 4500,
    "W_SF": 0,
    "Hz": 5000,
    "Hz_SF": -2,
    "WH": 1234567,
    "WH_SF": 0,
    "TmpCab": 352,
    "Tmp_SF": -1,
    "St": 4,
}
"""Raw model 103 point values of the simulated SunSpec inverter."""

SUNSPEC_COMMON_LENGTH: int = 66
"""Body length of SunSpec common model 1."""

_STATE_FIELDS = frozenset({"status", "St"})


class SimulatedModbusTransport:
    """In-memory register image behind the Modbus transport interface.

    Args:
        registers: Register map whose fields are populated.
        values: Engineering values per field name; missing fields fall back
            to :data:`DEFAULT_VALUES` (or 0).
        jitter: Relative noise applied to numeric fields on each read.
        rng: Random source for jitter.
        fail_opens: Number of ``open()`` calls that fail before one succeeds.
    """

    def __init__(
        self,
        registers: list[RegisterDef] | None = None,
        *,
        values: dict[str, Any] | None = None,
        jitter: float = 0.0,
        rng: random.Random | None = None,
        fail_opens: int = 0,
    ) -> None:
        self._registers = list(registers or [])
        self._image: dict[tuple[RegisterTable, int], int] = {}
        self._values: dict[str, Any] = {}
        self._jitter = jitter
        self._rng = rng or random.Random()
        self.fail_opens = fail_opens
        self.is_open = False
        self.open_calls = 0
        self.writes: list[tuple[str, int, Any]] = []
        self._pending_error: GatewayError | None = None
        for reg in self._registers:
            default = (values or {}).get(reg.name, DEFAULT_VALUES.get(reg.name, 0))
            self.set_value(reg.name, default)

    @classmethod
    def sunspec(
        cls,
        points: dict[str, int] | None = None,
        *,
        base_address: int = SUNSPEC_BASE_ADDRESS,
    ) -> SimulatedModbusTransport:
        """Build a transport holding a SunSpec block.

        The block contains the ``SunS`` marker, common model 1, inverter
        model 103 and the end marker.
        """
        transport = cls()
        raw = {**SUNSPEC_DEFAULT_POINTS, **(points or {})}
        address = base_address
        transport.load_words(address, encode(SUNSPEC_MARKER, RegisterType.UINT32))
        address += 2
        transport.load_words(address, [1, SUNSPEC_COMMON_LENGTH])
        address += 2 + SUNSPEC_COMMON_LENGTH
        transport.load_words(address, [SUNSPEC_INVERTER_MODEL, INVERTER_103_LENGTH])
        body = address + 2
        for point in INVERTER_103_POINTS:
            if point.name in raw:
                transport.load_words(body + point.offset, encode(raw[point.name], point.reg_type))
        transport.load_words(body + INVERTER_103_LENGTH, [0xFFFF, 0])
        return transport

    # ------------------------------------------------------------------
    # Image manipulation
    # ------------------------------------------------------------------

    def load_words(
        self,
        address: int,
        words: list[int],
        table: RegisterTable = RegisterTable.HOLDING,
    ) -> None:
        """Write raw words into the image."""
        for i, word in enumerate(words):
            self._image[(table, address + i)] = word & 0xFFFF

    def set_value(self, name: str, value: Any) -> None:
        """Store an engineering value for a mapped field."""
        reg = self._register(name)
        self._values[name] = value
        self.load_words(reg.address, self._encode(reg, value), reg.table)

    def inject_error(self, error: GatewayError) -> None:
        """Raise *error* from the next read or write."""
        self._pending_error = error

    def _register(self, name: str) -> RegisterDef:
        for reg in self._registers:
            if reg.name == name:
                return reg
        raise KeyError(name)

    @staticmethod
    def _encode(reg: RegisterDef, value: Any) -> list[int]:
        if reg.reg_type in (RegisterType.COIL, RegisterType.STRING):
            return encode(value, reg.reg_type, word_count=reg.word_count)
        raw = (value - reg.offset) / reg.scale
        if reg.reg_type is not RegisterType.FLOAT32:
            raw = int(round(raw))
        return encode(raw, reg.reg_type, byte_order=reg.byte_order, word_order=reg.word_order)

    def _apply_jitter(self) -> None:
        for reg in self._registers:
            value = self._values.get(reg.name)
            if reg.name in _STATE_FIELDS or isinstance(value, (bool, str)) or not value:
                continue
            noisy = value * (1 + self._rng.uniform(-self._jitter, self._jitter))
            try:
                self.load_words(reg.address, self._encode(reg, noisy), reg.table)
            except GatewayError:
                logger.debug("Jittered value for %s out of range, kept previous", reg.name)

    def _raise_pending(self) -> None:
        error, self._pending_error = self._pending_error, None
        if error is not None:
            raise error

    # ------------------------------------------------------------------
    # ModbusTransport
    # ------------------------------------------------------------------

    async def open(self) -> bool:
        self.open_calls += 1
        if self.fail_opens > 0:
            self.fail_opens -= 1
            return False
        self.is_open = True
        return True

    async def close(self) -> None:
        self.is_open = False

    async def read_words(self, address: int, count: int, table: RegisterTable) -> list[int]:
        if not self.is_open:
            raise DeviceConnectionError("simulated link closed", device_id=0)
        self._raise_pending()
        if self._jitter:
            self._apply_jitter()
        return [self._image.get((table, address + i), 0) for i in range(count)]

    async def write_register(self, address: int, value: int) -> None:
        self._raise_pending()
        self.writes.append(("register", address, value))
        self.load_words(address, [value])

    async def write_registers(self, address: int, values: list[int]) -> None:
        self._raise_pending()
        self.writes.append(("registers", address, list(values)))
        self.load_words(address, values)

    async def write_coil(self, address: int, value: bool) -> None:
        self._raise_pending()
        self.writes.append(("coil", address, value))
        self.load_words(address, [1 if value else 0], RegisterTable.COIL)


# ---------------------------------------------------------------------------
# OCPP
# ---------------------------------------------------------------------------


class SimulatedOcppTransport:
    """Central system that accepts every request.

    Args:
        rejected_tags: Id tags answered with ``Invalid``.
        heartbeat_interval: Interval returned by BootNotification.
    """

    def __init__(
        self,
        *,
        rejected_tags: set[str] | None = None,
        heartbeat_interval: int = 300,
    ) -> None:
        self.rejected_tags = set(rejected_tags or ())
        self.heartbeat_interval = heartbeat_interval
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.is_open = False
        self._transaction_ids = itertools.count(1)

    async def open(self) -> bool:
        self.is_open = True
        return True

    async def close(self) -> None:
        self.is_open = False

    async def call(self, action: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.is_open:
            raise DeviceConnectionError(f"{action}: simulated link closed", device_id=0)
        self.calls.append((action, payload))
        now = datetime.now(tz=UTC).isoformat()
        if action == "BootNotification":
            return {"status": "Accepted", "currentTime": now, "interval": self.heartbeat_interval}
        if action == "Heartbeat":
            return {"currentTime": now}
        if action == "StartTransaction":
            status = "Invalid" if payload.get("idTag") in self.rejected_tags else "Accepted"
            return {
                "transactionId": next(self._transaction_ids),
                "idTagInfo": {"status": status},
            }
        if action == "StopTransaction":
            return {"idTagInfo": {"status": "Accepted"}}
        if action == "MeterValues":
            return {}
        return {"status": "Accepted"}

    def actions(self) -> list[str]:
        """Names of the actions called so far, in order."""
        return [action for action, _ in self.calls]


class SimulatedMeter:
    """Meter that charges near the connector's maximum power.

    Args:
        rng: Random source for power variation.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def sample(self, connector: Connector, elapsed_s: float) -> tuple[int, float]:
        power_w = connector.max_power_w * self._rng.uniform(0.85, 1.0)
        energy_wh = connector.energy_wh + int(power_w * elapsed_s / 3600)
        return energy_wh, round(power_w, 1)


# ---------------------------------------------------------------------------
# EEBus
# ---------------------------------------------------------------------------

_MODE_MODIFIERS: dict[OperationMode, float] = {
    OperationMode.OFF: 0.05,
    OperationMode.HEAT: 1.2,
    OperationMode.COOL: 1.3,
    OperationMode.AUTO: 1.0,
    OperationMode.DRY: 0.8,
    OperationMode.ECO: 0.7,
    OperationMode.BOOST: 1.8,
}
"""Power multiplier per operation mode."""


class SimulatedEebusTransport:
    """Heat pump whose room temperature moves toward the target when active.

    Args:
        poll_interval_s: Interval used to accumulate energy between reads.
        rng: Random source.
    """

    def __init__(self, *, poll_interval_s: float = 30.0, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()
        self._poll_interval_s = poll_interval_s
        self._temperature: float | None = None
        self._energy: float | None = None
        self.applied: list[tuple[str, Any]] = []
        self.is_open = False

    async def open(self) -> bool:
        self.is_open = True
        return True

    async def close(self) -> None:
        self.is_open = False

    async def apply_mode(self, mode: OperationMode) -> None:
        self.applied.append(("mode", mode))

    async def apply_target_temperature(self, target_c: float) -> None:
        self.applied.append(("target_temperature", target_c))

    async def read_state(self, mode: OperationMode, target_c: float) -> dict[str, Any]:
        if not self.is_open:
            raise DeviceConnectionError("simulated link closed", device_id=0)
        rng = self._rng
        active = mode is not OperationMode.OFF and rng.random() > 0.3

        if self._temperature is None:
            temperature = 18 + rng.random() * 4
        elif active:
            diff = target_c - self._temperature
            step = min(0.5, abs(diff)) * (1 if diff >= 0 else -1)
            temperature = self._temperature + step + rng.uniform(-0.1, 0.1)
        else:
            temperature = self._temperature + rng.uniform(-0.15, 0.15)
        self._temperature = temperature

        gap = abs(target_c - temperature)
        if active:
            power = (500 + rng.random() * 2000) * _MODE_MODIFIERS[mode] * (1 + gap * 0.1)
        else:
            power = rng.random() * 50
        cop = 3.5 - gap * 0.2 + rng.random() * 0.5

        if self._energy is None:
            self._energy = 150 + rng.random() * 50
        else:
            self._energy += power * self._poll_interval_s / 3_600_000

        return {
            "power": round(power, 1),
            "energy": round(self._energy, 2),
            "temperature": round(temperature, 1),
            "cop": round(cop, 2),
            "is_active": active,
        }


# ---------------------------------------------------------------------------
# TCP/IP
# ---------------------------------------------------------------------------


def _json_ack(data: bytes) -> bytes | None:
    return json.dumps({"status": "ok", "received": data.decode("utf-8", errors="replace")}).encode()


class SimulatedStreamTransport:
    """Byte stream fed from a queue.

    Args:
        responder: Maps each written message to a reply that is queued for
            reading, or None for no reply.
    """

    _EOF = b""

    def __init__(self, responder: Callable[[bytes], bytes | None] | None = _json_ack) -> None:
        self._responder = responder
        self._inbox: asyncio.Queue[bytes] = asyncio.Queue()
        self.sent: list[bytes] = []
        self.is_open = False

    def feed(self, data: bytes) -> None:
        """Queue *data* as one message from the device."""
        self._inbox.put_nowait(data)

    def drop(self) -> None:
        """Simulate the peer closing the connection."""
        self._inbox.put_nowait(self._EOF)

    async def open(self) -> bool:
        self.is_open = True
        return True

    async def close(self) -> None:
        self.is_open = False

    async def read(self) -> bytes:
        data = await self._inbox.get()
        if data == self._EOF or not self.is_open:
            raise DeviceConnectionError("simulated peer closed", device_id=0)
        return data

    async def write(self, data: bytes) -> None:
        if not self.is_open:
            raise DeviceConnectionError("simulated link closed", device_id=0)
        self.sent.append(data)
        if self._responder is not None:
            reply = self._responder(data)
            if reply:
                self.feed(reply)
