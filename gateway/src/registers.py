"""
Register definitions and built-in register maps.

A :class:`RegisterDef` describes one device field: where it lives (address and
register table), how it is encoded (type, byte/word order) and how the raw
value is scaled. Register maps are plain lists of RegisterDef; device configs
can supply their own or fall back to the built-in map for their device type.

References:
    - Modbus Application Protocol Specification V1.1b3
    - SunSpec Information Model Specification (model 1 and 103)

CHANGELOG:
- 2026-02-26: Add SunSpec model 103 point map
- 2026-02-22: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from gateway.src.codec import WORD_COUNTS, ByteOrder, RegisterType
from gateway.src.models import DeviceType

# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------


class RegisterTable(str, Enum):
    """Modbus data table a register is read from."""

    HOLDING = "holding"
    INPUT = "input"
    COIL = "coil"
    DISCRETE = "discrete"


@dataclass(frozen=True, slots=True)
class RegisterDef:
    """Definition of a single device register field.

    Attributes:
        address: Start address within *table*.
        name: Native field name used as the reading key.
        reg_type: Data type of the field.
        unit: Engineering unit string (e.g. ``"W"``, ``"%"``).
        scale: Multiplier applied to the decoded raw value.
        offset: Added to the scaled value.
        byte_order: Endianness of the field.
        word_order: Order of 16-bit words in 32-bit fields.
        table: Modbus table the field is read from.
        description: Free-text description.
        word_count: Number of 16-bit words. Derived from *reg_type* unless
            the type is ``string``, which must set it explicitly.
    """

    address: int
    name: str
    reg_type: RegisterType
    unit: str = ""
    scale: float = 1.0
    offset: float = 0.0
    byte_order: ByteOrder = ByteOrder.BIG
    word_order: ByteOrder = ByteOrder.BIG
    table: RegisterTable = RegisterTable.HOLDING
    description: str = ""
    word_count: int = field(default=0, repr=False)

    def __post_init__(self) -> None:  # noqa: D105
        object.__setattr__(self, "reg_type", RegisterType(self.reg_type))
        object.__setattr__(self, "byte_order", ByteOrder(self.byte_order))
        object.__setattr__(self, "word_order", ByteOrder(self.word_order))
        object.__setattr__(self, "table", RegisterTable(self.table))
        if self.reg_type is RegisterType.COIL and self.table is RegisterTable.HOLDING:
            object.__setattr__(self, "table", RegisterTable.COIL)
        if self.word_count == 0:
            wc = WORD_COUNTS.get(self.reg_type)
            if wc is None:
                msg = (
                    f"Register '{self.name}': word_count must be set "
                    f"explicitly for type '{self.reg_type.value}'"
                )
                raise ValueError(msg)
            object.__setattr__(self, "word_count", wc)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegisterDef:
        """Build a RegisterDef from a config mapping (``type`` aliases ``reg_type``)."""
        values = dict(data)
        if "type" in values:
            values["reg_type"] = values.pop("type")
        return cls(**values)


# ---------------------------------------------------------------------------
# Built-in register maps
# ---------------------------------------------------------------------------

BATTERY_REGISTERS: list[RegisterDef] = [
    RegisterDef(100, "state_of_charge", RegisterType.UINT16, "%", description="SOC in 0.1 %"),
    RegisterDef(101, "power_watts", RegisterType.INT32, "W", description="+charge / -discharge"),
    RegisterDef(103, "voltage", RegisterType.UINT16, "V", scale=0.1),
    RegisterDef(104, "current", RegisterType.INT16, "A", scale=0.1),
    RegisterDef(105, "temp_celsius", RegisterType.INT16, "degC", scale=0.1),
    RegisterDef(106, "status", RegisterType.UINT16, description="Operating state code"),
]
"""Generic battery storage map (holding registers)."""

SOLAR_REGISTERS: list[RegisterDef] = [
    RegisterDef(200, "ac_power", RegisterType.UINT32, "W", table=RegisterTable.INPUT),
    RegisterDef(202, "daily_energy", RegisterType.UINT32, "kWh", scale=0.1, table=RegisterTable.INPUT),
    RegisterDef(204, "dc_voltage", RegisterType.UINT16, "V", scale=0.1, table=RegisterTable.INPUT),
    RegisterDef(205, "status", RegisterType.UINT16, table=RegisterTable.INPUT),
]
"""Generic PV inverter map (input registers)."""

METER_REGISTERS: list[RegisterDef] = [
    RegisterDef(300, "active_power", RegisterType.FLOAT32, "W", table=RegisterTable.INPUT),
    RegisterDef(302, "import_energy", RegisterType.FLOAT32, "kWh", table=RegisterTable.INPUT),
    RegisterDef(304, "export_energy", RegisterType.FLOAT32, "kWh", table=RegisterTable.INPUT),
    RegisterDef(306, "voltage", RegisterType.FLOAT32, "V", table=RegisterTable.INPUT),
]
"""Generic energy meter map (IEEE 754 float input registers)."""

DEFAULT_REGISTER_MAPS: dict[DeviceType, list[RegisterDef]] = {
    DeviceType.SOLAR_INVERTER: SOLAR_REGISTERS,
    DeviceType.BATTERY: BATTERY_REGISTERS,
    DeviceType.EV_CHARGER: [],
    DeviceType.HEAT_PUMP: [],
    DeviceType.METER: METER_REGISTERS,
    DeviceType.LOAD_CONTROLLER: [],
}
"""Register map used when a Modbus device config declares none."""


# ---------------------------------------------------------------------------
# SunSpec
# ---------------------------------------------------------------------------

SUNSPEC_BASE_ADDRESS: int = 40000
"""Conventional start of the SunSpec block (holds the ``SunS`` marker)."""

SUNSPEC_MARKER: int = 0x53756E53
"""``SunS`` as a big-endian uint32."""

SUNSPEC_INVERTER_MODEL: int = 103
"""Three-phase inverter model id."""


@dataclass(frozen=True, slots=True)
class SunSpecPoint:
    """One point of a SunSpec model.

    Attributes:
        offset: Word offset from the start of the model body.
        name: Native field name used as the reading key.
        reg_type: Point data type.
        scale_factor: Name of the ``sunssf`` point scaling this one, if any.
        unit: Engineering unit string.
    """

    offset: int
    name: str
    reg_type: RegisterType
    scale_factor: str | None = None
    unit: str = ""


INVERTER_103_POINTS: list[SunSpecPoint] = [
    SunSpecPoint(0, "A", RegisterType.UINT16, "A_SF", "A"),
    SunSpecPoint(4, "A_SF", RegisterType.INT16),
    SunSpecPoint(8, "PhVphA", RegisterType.UINT16, "V_SF", "V"),
    SunSpecPoint(11, "V_SF", RegisterType.INT16),
    SunSpecPoint(12, "W", RegisterType.INT16, "W_SF", "W"),
    SunSpecPoint(13, "W_SF", RegisterType.INT16),
    SunSpecPoint(14, "Hz", RegisterType.UINT16, "Hz_SF", "Hz"),
    SunSpecPoint(15, "Hz_SF", RegisterType.INT16),
    SunSpecPoint(22, "WH", RegisterType.UINT32, "WH_SF", "Wh"),
    SunSpecPoint(24, "WH_SF", RegisterType.INT16),
    SunSpecPoint(31, "TmpCab", RegisterType.INT16, "Tmp_SF", "degC"),
    SunSpecPoint(35, "Tmp_SF", RegisterType.INT16),
    SunSpecPoint(36, "St", RegisterType.UINT16),
]
"""Subset of model 103 points read by the SunSpec adapter."""

INVERTER_103_LENGTH: int = 50
"""Model 103 body length in words."""
