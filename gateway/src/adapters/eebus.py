"""
EEBus adapter: mode-oriented appliances such as heat pumps.

The adapter keeps the appliance's operation mode and target temperature and
polls its energy state on a fixed interval. Mode and setpoint changes are
validated before anything else happens: an unknown mode or an out-of-range
temperature raises :class:`~gateway.src.errors.CommandValidationError`
without touching local state or publishing. Accepted changes go through the
:class:`EebusTransport` and are answered with a command response.

CHANGELOG:
- 2026-03-02: Make setpoint range configurable per device
- 2026-02-27: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, Field, model_validator

from gateway.src.adapters.base import CommandFn, DeviceAdapter
from gateway.src.errors import CommandValidationError, DeviceProtocolError
from gateway.src.models import Reading

if TYPE_CHECKING:
    from gateway.src.bridge import ProtocolBridge

logger = logging.getLogger(__name__)


class OperationMode(str, Enum):
    """EEBus appliance operation mode."""

    OFF = "off"
    HEAT = "heat"
    COOL = "cool"
    AUTO = "auto"
    DRY = "dry"
    ECO = "eco"
    BOOST = "boost"


DEFAULT_MODE: OperationMode = OperationMode.AUTO
"""Mode assumed until the appliance reports or is told otherwise."""

DEFAULT_TARGET_C: float = 21.0
"""Initial target temperature in °C."""

READING_FIELDS: tuple[str, ...] = (
    "power",
    "energy",
    "temperature",
    "target_temperature",
    "mode",
    "cop",
    "is_active",
)
"""Fields of every EEBus reading."""


class EebusConnection(BaseModel):
    """Connection parameters for an EEBus appliance.

    Attributes:
        host: Appliance hostname.
        port: SHIP/EEBus port.
        ski: Subject key identifier of the remote certificate.
        poll_interval_s: Seconds between state polls.
        timeout_s: Request timeout.
        min_temperature_c: Lowest accepted target temperature.
        max_temperature_c: Highest accepted target temperature.
        mock_mode: Use the simulated transport instead of real I/O.
    """

    host: str = ""
    port: int = Field(default=4712, ge=1, le=65535)
    ski: str = ""
    poll_interval_s: float = Field(default=30.0, gt=0)
    timeout_s: float = Field(default=10.0, gt=0)
    min_temperature_c: float = 10.0
    max_temperature_c: float = 30.0
    mock_mode: bool = False

    @model_validator(mode="after")
    def _check_range(self) -> EebusConnection:
        if self.min_temperature_c >= self.max_temperature_c:
            raise ValueError("min_temperature_c must be below max_temperature_c")
        return self


class EebusTransport(Protocol):
    """Appliance-level EEBus operations."""

    async def open(self) -> bool: ...

    async def close(self) -> None: ...

    async def read_state(self, mode: OperationMode, target_c: float) -> dict[str, Any]: ...

    async def apply_mode(self, mode: OperationMode) -> None: ...

    async def apply_target_temperature(self, target_c: float) -> None: ...


class EebusAdapter(DeviceAdapter):
    """Adapter for EEBus appliances.

    Args:
        identity: Device identity.
        bridge: Bridge for this device.
        transport: EEBus transport (real or simulated).
        poll_interval_s: Seconds between state polls.
        temperature_range: Inclusive ``(min, max)`` target range in °C.
        **kwargs: Forwarded to :class:`DeviceAdapter`.
    """

    def __init__(
        self,
        identity: Any,
        bridge: ProtocolBridge,
        transport: EebusTransport,
        *,
        poll_interval_s: float = 30.0,
        temperature_range: tuple[float, float] = (10.0, 30.0),
        **kwargs: Any,
    ) -> None:
        super().__init__(identity, bridge, transport, **kwargs)
        self.transport = transport
        self._poll_interval_s = poll_interval_s
        self._min_c, self._max_c = temperature_range
        self._mode = DEFAULT_MODE
        self._target_c = DEFAULT_TARGET_C

    @property
    def mode(self) -> OperationMode:
        return self._mode

    @property
    def target_temperature(self) -> float:
        return self._target_c

    async def _on_link_up(self) -> None:
        self._spawn(self._every(self._poll_interval_s, self.poll_once, "poll"), "poll")

    async def poll_once(self) -> dict[str, Any]:
        """Read the appliance state and publish it."""
        reading = await self.read_data()
        return await self._publish_reading(reading)

    async def read_data(self) -> Reading:
        """Read power, energy, temperatures, mode, COP and activity.

        Raises:
            DeviceConnectionError: Not connected or transport failure.
            DeviceProtocolError: The appliance returned an incomplete state.
        """
        self._require_connected()
        state = await self.transport.read_state(self._mode, self._target_c)
        missing = [name for name in ("power", "energy", "temperature") if name not in state]
        if missing:
            raise DeviceProtocolError(
                f"EEBus state missing {', '.join(missing)}",
                device_id=self.device_id,
            )
        values: dict[str, Any] = {name: state[name] for name in READING_FIELDS if name in state}
        values["target_temperature"] = self._target_c
        values["mode"] = self._mode.value
        values.setdefault("is_active", self._mode is not OperationMode.OFF)
        reading = Reading(values=values)
        self._last_reading = reading
        return reading

    async def write_data(self, params: dict[str, Any]) -> bool:
        """Apply ``mode`` and/or ``target_temperature`` from *params*."""
        if "mode" not in params and "target_temperature" not in params:
            raise CommandValidationError("EEBus write requires 'mode' or 'target_temperature'")
        mode = self._validate_mode(params["mode"]) if "mode" in params else None
        target = (
            self._validate_target(params["target_temperature"])
            if "target_temperature" in params
            else None
        )
        self._require_connected()
        if mode is not None:
            await self._apply_mode(mode)
        if target is not None:
            await self._apply_target(target)
        return True

    async def set_operation_mode(self, mode: OperationMode | str) -> bool:
        """Switch the appliance to *mode* and publish a command response.

        Raises:
            CommandValidationError: Unknown mode. Nothing is changed or
                published.
            DeviceConnectionError: Not connected.
        """
        new_mode = self._validate_mode(mode)
        self._require_connected()
        await self._apply_mode(new_mode)
        await self.bridge.bridge_command_response(
            "set_operation_mode", True, result={"mode": new_mode.value}
        )
        return True

    async def set_target_temperature(self, temperature: float) -> bool:
        """Change the target temperature and publish a command response.

        Raises:
            CommandValidationError: Outside the configured range. Nothing is
                changed or published.
            DeviceConnectionError: Not connected.
        """
        target = self._validate_target(temperature)
        self._require_connected()
        await self._apply_target(target)
        await self.bridge.bridge_command_response(
            "set_target_temperature", True, result={"temperature": target}
        )
        return True

    async def _apply_mode(self, mode: OperationMode) -> None:
        await self.transport.apply_mode(mode)
        self._mode = mode
        logger.info("Device %d mode set to %s", self.device_id, mode.value)

    async def _apply_target(self, target: float) -> None:
        await self.transport.apply_target_temperature(target)
        self._target_c = target
        logger.info("Device %d target temperature set to %.1f", self.device_id, target)

    def _validate_mode(self, mode: OperationMode | str) -> OperationMode:
        try:
            return OperationMode(mode)
        except ValueError as exc:
            valid = ", ".join(m.value for m in OperationMode)
            raise CommandValidationError(f"Invalid operation mode '{mode}' (expected {valid})") from exc

    def _validate_target(self, temperature: Any) -> float:
        if isinstance(temperature, bool):
            raise CommandValidationError("Temperature must be a number")
        try:
            value = float(temperature)
        except (TypeError, ValueError) as exc:
            raise CommandValidationError(f"Temperature must be a number, got {temperature!r}") from exc
        if not self._min_c <= value <= self._max_c:
            raise CommandValidationError(
                f"Temperature must be between {self._min_c:g}°C and {self._max_c:g}°C"
            )
        return value

    def commands(self) -> dict[str, CommandFn]:
        table = super().commands()
        table.update(
            set_operation_mode=self._command_mode,
            set_target_temperature=self._command_target,
        )
        return table

    # Command-topic handlers; the bridge publishes the correlated response.

    async def _command_mode(self, params: dict[str, Any]) -> dict[str, Any]:
        mode = self._validate_mode(params.get("mode", ""))
        self._require_connected()
        await self._apply_mode(mode)
        return {"mode": mode.value}

    async def _command_target(self, params: dict[str, Any]) -> dict[str, Any]:
        target = self._validate_target(params.get("temperature"))
        self._require_connected()
        await self._apply_target(target)
        return {"temperature": target}

    def get_device_info(self) -> dict[str, Any]:
        info = super().get_device_info()
        info["mode"] = self._mode.value
        info["targetTemperature"] = self._target_c
        info["temperatureRange"] = [self._min_c, self._max_c]
        return info
