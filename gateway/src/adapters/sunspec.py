"""
SunSpec adapter: Modbus inverters exposing the SunSpec information model.

After the link comes up the adapter locates the SunSpec block (``SunS``
marker at the base address, 40000 by default) and walks the model chain to
find inverter model 103. Each scan reads the model body in one request and
applies the model's scale-factor points (``value * 10**sf``). Points holding
the SunSpec "not implemented" sentinel are omitted from the reading.

CHANGELOG:
- 2026-03-05: Use the discovered model address directly in read_data
- 2026-02-26: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import Any

from gateway.src.adapters.modbus import ModbusAdapter
from gateway.src.codec import RegisterType, decode
from gateway.src.errors import DeviceProtocolError
from gateway.src.models import Reading
from gateway.src.registers import (
    INVERTER_103_LENGTH,
    INVERTER_103_POINTS,
    SUNSPEC_BASE_ADDRESS,
    SUNSPEC_INVERTER_MODEL,
    SUNSPEC_MARKER,
    RegisterTable,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

END_MODEL_ID: int = 0xFFFF
"""Model id terminating the SunSpec model chain."""

MAX_MODELS: int = 32
"""Upper bound on models walked during discovery."""

_NOT_IMPLEMENTED: dict[RegisterType, int] = {
    RegisterType.UINT16: 0xFFFF,
    RegisterType.INT16: -0x8000,
    RegisterType.UINT32: 0xFFFFFFFF,
}
"""SunSpec sentinel per point type meaning "not implemented"."""


class SunSpecAdapter(ModbusAdapter):
    """Modbus adapter reading SunSpec inverter model 103.

    Args:
        base_address: Address of the ``SunS`` marker.
        **kwargs: Forwarded to :class:`ModbusAdapter` (``registers`` is
            ignored and may be omitted).
    """

    def __init__(self, *args: Any, base_address: int = SUNSPEC_BASE_ADDRESS, **kwargs: Any) -> None:
        kwargs.setdefault("registers", [])
        super().__init__(*args, **kwargs)
        self._base_address = base_address
        self._model_address: int | None = None

    @property
    def model_address(self) -> int | None:
        """Address of the model 103 header once discovered."""
        return self._model_address

    async def _on_link_up(self) -> None:
        self._model_address = None
        await super()._on_link_up()

    async def discover(self) -> int:
        """Locate inverter model 103 and return its header address.

        Raises:
            DeviceProtocolError: Marker missing or model 103 not present.
        """
        marker_words = await self.transport.read_words(self._base_address, 2, RegisterTable.HOLDING)
        marker = decode(marker_words, RegisterType.UINT32, device_id=self.device_id)
        if marker != SUNSPEC_MARKER:
            raise DeviceProtocolError(
                f"no SunSpec marker at {self._base_address} (got {marker:#010x})",
                device_id=self.device_id,
            )

        address = self._base_address + 2
        for _ in range(MAX_MODELS):
            model_id, length = await self.transport.read_words(address, 2, RegisterTable.HOLDING)
            if model_id == END_MODEL_ID:
                break
            if model_id == SUNSPEC_INVERTER_MODEL:
                logger.info("Device %d: SunSpec model %d at %d", self.device_id, model_id, address)
                self._model_address = address
                return address
            address += 2 + length
        raise DeviceProtocolError(
            f"SunSpec model {SUNSPEC_INVERTER_MODEL} not found",
            device_id=self.device_id,
        )

    async def read_data(self) -> Reading:
        """Read model 103 and return scaled point values."""
        self._require_connected()
        model_address = self._model_address
        if model_address is None:
            model_address = await self.discover()
        body = await self.transport.read_words(
            model_address + 2,
            INVERTER_103_LENGTH,
            RegisterTable.HOLDING,
        )

        raw: dict[str, int] = {}
        for point in INVERTER_103_POINTS:
            value = decode(body[point.offset :], point.reg_type, device_id=self.device_id)
            if _NOT_IMPLEMENTED.get(point.reg_type) == value:
                continue
            raw[point.name] = value

        values: dict[str, Any] = {}
        for point in INVERTER_103_POINTS:
            if point.name not in raw or point.name.endswith("_SF"):
                continue
            value = raw[point.name]
            if point.scale_factor is not None:
                if point.scale_factor not in raw:
                    continue
                value = value * 10 ** raw[point.scale_factor]
            values[point.name] = value

        reading = Reading(values=values)
        self._last_reading = reading
        return reading

    def get_device_info(self) -> dict[str, Any]:
        info = super().get_device_info()
        info["sunspecModelAddress"] = self._model_address
        return info
