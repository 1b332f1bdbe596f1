"""
Modbus adapter: register-polled devices over Modbus TCP or RTU.

On every scan interval the adapter reads each configured register through a
:class:`ModbusTransport`, decodes it with the register codec and publishes
the assembled reading. Transport failures are classified at the transport
boundary:

- ``ConnectionException``, ``ModbusIOException``, ``OSError`` and timeouts
  become :class:`~gateway.src.errors.DeviceConnectionError`, which hands the
  link to the lifecycle controller for reconnection.
- Exception responses and short replies become
  :class:`~gateway.src.errors.DeviceProtocolError`; the scan cycle is
  skipped and the connection kept.

Writes take an ``{address, value, type}`` triple. 32-bit and float values
are split into two 16-bit words (high word first unless ``word_order`` says
otherwise).

CHANGELOG:
- 2026-03-01: Add RTU (serial) transport
- 2026-02-27: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, Field
from pymodbus.client import AsyncModbusSerialClient, AsyncModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException

from gateway.src.adapters.base import CommandFn, DeviceAdapter
from gateway.src.codec import ByteOrder, RegisterType, decode, encode
from gateway.src.errors import (
    CommandValidationError,
    DeviceConnectionError,
    DeviceProtocolError,
)
from gateway.src.lifecycle import MODBUS_POLICY
from gateway.src.models import Reading
from gateway.src.registers import RegisterDef, RegisterTable

if TYPE_CHECKING:
    from gateway.src.bridge import ProtocolBridge

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Connection descriptor
# ---------------------------------------------------------------------------


class ModbusLink(str, Enum):
    """Physical Modbus transport."""

    TCP = "tcp"
    RTU = "rtu"


class ModbusConnection(BaseModel):
    """Connection parameters for a Modbus device.

    Attributes:
        link: ``tcp`` or ``rtu``.
        host: Device or gateway hostname (TCP).
        port: Modbus TCP port.
        serial_port: Serial device path (RTU).
        baudrate: Serial baud rate (RTU).
        unit_id: Modbus unit / slave id (1-247).
        timeout_s: Timeout per request.
        scan_interval_s: Seconds between scan cycles.
        mock_mode: Use the simulated transport instead of real I/O.
    """

    link: ModbusLink = ModbusLink.TCP
    host: str = ""
    port: int = Field(default=502, ge=1, le=65535)
    serial_port: str = ""
    baudrate: int = 9600
    unit_id: int = Field(default=1, ge=0, le=247)
    timeout_s: float = Field(default=10.0, gt=0)
    scan_interval_s: float = Field(default=5.0, gt=0)
    mock_mode: bool = False


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class ModbusTransport(Protocol):
    """Register-level I/O used by the Modbus and SunSpec adapters."""

    async def open(self) -> bool: ...

    async def close(self) -> None: ...

    async def read_words(self, address: int, count: int, table: RegisterTable) -> list[int]: ...

    async def write_register(self, address: int, value: int) -> None: ...

    async def write_registers(self, address: int, values: list[int]) -> None: ...

    async def write_coil(self, address: int, value: bool) -> None: ...


class PymodbusTransport:
    """:class:`ModbusTransport` backed by pymodbus async clients.

    Args:
        connection: Connection descriptor.
        device_id: Gateway device id used in errors.
    """

    def __init__(self, connection: ModbusConnection, *, device_id: int) -> None:
        self._conn = connection
        self._device_id = device_id
        self._client: AsyncModbusTcpClient | AsyncModbusSerialClient | None = None

    def _build_client(self) -> AsyncModbusTcpClient | AsyncModbusSerialClient:
        if self._conn.link is ModbusLink.RTU:
            return AsyncModbusSerialClient(
                self._conn.serial_port,
                baudrate=self._conn.baudrate,
                timeout=self._conn.timeout_s,
            )
        return AsyncModbusTcpClient(
            self._conn.host,
            port=self._conn.port,
            timeout=self._conn.timeout_s,
        )

    async def open(self) -> bool:
        client = self._build_client()
        try:
            ok = await client.connect()
        except (ConnectionException, OSError):
            client.close()
            raise
        if not ok:
            client.close()
            return False
        self._client = client
        return True

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    async def read_words(self, address: int, count: int, table: RegisterTable) -> list[int]:
        client = self._require_client()
        unit = self._conn.unit_id
        if table is RegisterTable.HOLDING:
            call = client.read_holding_registers(address, count=count, device_id=unit)
        elif table is RegisterTable.INPUT:
            call = client.read_input_registers(address, count=count, device_id=unit)
        elif table is RegisterTable.COIL:
            call = client.read_coils(address, count=count, device_id=unit)
        else:
            call = client.read_discrete_inputs(address, count=count, device_id=unit)
        response = await self._execute(call, f"read {table.value} {address}+{count}")

        if table in (RegisterTable.COIL, RegisterTable.DISCRETE):
            bits = list(response.bits)[:count]
            if len(bits) < count:
                raise DeviceProtocolError(
                    f"short reply at {address}: {len(bits)}/{count} bits",
                    device_id=self._device_id,
                )
            return [1 if bit else 0 for bit in bits]

        words = list(response.registers)
        if len(words) < count:
            raise DeviceProtocolError(
                f"short reply at {address}: {len(words)}/{count} words",
                device_id=self._device_id,
            )
        return words[:count]

    async def write_register(self, address: int, value: int) -> None:
        client = self._require_client()
        await self._execute(
            client.write_register(address, value, device_id=self._conn.unit_id),
            f"write register {address}",
        )

    async def write_registers(self, address: int, values: list[int]) -> None:
        client = self._require_client()
        await self._execute(
            client.write_registers(address, values, device_id=self._conn.unit_id),
            f"write registers {address}+{len(values)}",
        )

    async def write_coil(self, address: int, value: bool) -> None:
        client = self._require_client()
        await self._execute(
            client.write_coil(address, value, device_id=self._conn.unit_id),
            f"write coil {address}",
        )

    def _require_client(self) -> AsyncModbusTcpClient | AsyncModbusSerialClient:
        if self._client is None or not self._client.connected:
            raise DeviceConnectionError("modbus client not connected", device_id=self._device_id)
        return self._client

    async def _execute(self, call: Any, what: str) -> Any:
        try:
            response = await asyncio.wait_for(call, timeout=self._conn.timeout_s)
        except TimeoutError as exc:
            raise DeviceConnectionError(f"{what}: timed out", device_id=self._device_id) from exc
        except (ConnectionException, ModbusIOException, OSError) as exc:
            raise DeviceConnectionError(f"{what}: {exc}", device_id=self._device_id) from exc
        except ModbusException as exc:
            raise DeviceProtocolError(f"{what}: {exc}", device_id=self._device_id) from exc
        if response.isError():
            raise DeviceProtocolError(f"{what}: exception response {response}", device_id=self._device_id)
        return response


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

_SINGLE_WORD_TYPES = frozenset({RegisterType.INT16, RegisterType.UINT16, RegisterType.GENERIC})
_DOUBLE_WORD_TYPES = frozenset({RegisterType.INT32, RegisterType.UINT32, RegisterType.FLOAT32})
_WRITE_TYPE_ALIASES = {"holding": RegisterType.UINT16.value}


class ModbusAdapter(DeviceAdapter):
    """Register-polling adapter.

    Args:
        identity: Device identity.
        bridge: Bridge for this device.
        transport: Register-level transport (real or simulated).
        registers: Register map scanned each cycle.
        scan_interval_s: Seconds between scans.
        **kwargs: Forwarded to :class:`DeviceAdapter`.
    """

    default_policy = MODBUS_POLICY

    def __init__(
        self,
        identity: Any,
        bridge: ProtocolBridge,
        transport: ModbusTransport,
        *,
        registers: list[RegisterDef],
        scan_interval_s: float = 5.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(identity, bridge, transport, **kwargs)
        self.transport = transport
        self._registers = list(registers)
        self._scan_interval_s = scan_interval_s

    @property
    def registers(self) -> list[RegisterDef]:
        return list(self._registers)

    async def _on_link_up(self) -> None:
        self._spawn(self._every(self._scan_interval_s, self.scan_once, "scan"), "scan")

    async def scan_once(self) -> dict[str, Any]:
        """Read all registers and publish the reading.

        Returns:
            The mapped readings as published.
        """
        reading = await self.read_data()
        return await self._publish_reading(reading)

    async def read_data(self) -> Reading:
        """Read and decode every configured register.

        Registers are read sequentially; a protocol error on any register
        aborts the whole cycle.

        Raises:
            DeviceConnectionError: Transport failure or not connected.
            DeviceProtocolError: Malformed reply.
        """
        self._require_connected()
        values: dict[str, Any] = {}
        for reg in self._registers:
            words = await self.transport.read_words(reg.address, reg.word_count, reg.table)
            values[reg.name] = decode(
                words,
                reg.reg_type,
                byte_order=reg.byte_order,
                word_order=reg.word_order,
                scale=reg.scale,
                offset=reg.offset,
                word_count=reg.word_count,
                device_id=self.device_id,
            )
        reading = Reading(values=values)
        self._last_reading = reading
        return reading

    async def write_data(self, params: dict[str, Any]) -> bool:
        """Write ``{address, value, type}`` to the device.

        Optional ``byte_order``/``word_order`` apply to 32-bit types.

        Returns:
            True on success; False if the device rejected the write or the
            link failed (the link failure is handed to the lifecycle).

        Raises:
            CommandValidationError: Missing fields, unsupported type, or a
                value that does not fit the type.
        """
        if "address" not in params or "value" not in params:
            raise CommandValidationError("Modbus write requires 'address' and 'value'")
        try:
            address = int(params["address"])
        except (TypeError, ValueError) as exc:
            raise CommandValidationError(f"Invalid address {params['address']!r}") from exc
        raw_type = str(params.get("type", RegisterType.UINT16.value)).lower()
        raw_type = _WRITE_TYPE_ALIASES.get(raw_type, raw_type)
        try:
            reg_type = RegisterType(raw_type)
        except ValueError as exc:
            raise CommandValidationError(f"Unsupported register type for write: '{raw_type}'") from exc
        value = params["value"]

        if reg_type is RegisterType.COIL:
            words = [1 if value else 0]
        elif reg_type in _SINGLE_WORD_TYPES:
            words = encode(value, reg_type)
        elif reg_type in _DOUBLE_WORD_TYPES:
            words = encode(
                value,
                reg_type,
                byte_order=params.get("byte_order", ByteOrder.BIG),
                word_order=params.get("word_order", ByteOrder.BIG),
            )
        else:
            raise CommandValidationError(f"Unsupported register type for write: '{reg_type.value}'")

        self._require_connected()
        try:
            if reg_type is RegisterType.COIL:
                await self.transport.write_coil(address, bool(words[0]))
            elif len(words) == 1:
                await self.transport.write_register(address, words[0])
            else:
                await self.transport.write_registers(address, words)
        except DeviceConnectionError as exc:
            await self.lifecycle.link_lost(exc.message)
            return False
        except DeviceProtocolError as exc:
            logger.warning("Device %d write rejected: %s", self.device_id, exc.message)
            return False
        logger.info("Device %d wrote %r (%s) to %d", self.device_id, value, reg_type.value, address)
        return True

    def commands(self) -> dict[str, CommandFn]:
        table = super().commands()
        table["write_register"] = self._command_write
        return table

    def get_device_info(self) -> dict[str, Any]:
        info = super().get_device_info()
        info["registers"] = [reg.name for reg in self._registers]
        info["scanIntervalS"] = self._scan_interval_s
        return info
