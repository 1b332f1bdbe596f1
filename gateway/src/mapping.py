"""
Mapping engine: declarative field transformations for device readings.

A :class:`MappingRule` names a native source field, a canonical target field
and a transformation (``none``, ``scale``, ``lookup`` or ``custom``).
:func:`apply_rules` keeps every original field and writes each transformed
value under its target name. Rule tables are data; onboarding a new device
type means adding a table to :data:`DEFAULT_RULES`, not new code.

This is a pure module: no I/O, no clock.

CHANGELOG:
- 2026-03-05: Round scaled values to a rule precision
- 2026-03-01: Add named custom transforms for JSON device configs
- 2026-02-23: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from gateway.src.errors import GatewayConfigError
from gateway.src.models import DeviceType

logger = logging.getLogger(__name__)


class Transformation(str, Enum):
    """Kind of transformation a rule applies."""

    NONE = "none"
    SCALE = "scale"
    LOOKUP = "lookup"
    CUSTOM = "custom"


@dataclass(frozen=True, slots=True)
class MappingRule:
    """One declarative field mapping.

    Attributes:
        source_field: Native field name in the reading.
        target_field: Canonical field name written to the output.
        transformation: Transformation kind.
        params: Transformation parameters:
            ``scale`` -> ``factor`` (default 1), ``offset`` (default 0) and
            ``precision``, decimal places the result is rounded to (unset
            keeps full float precision);
            ``lookup`` -> ``table`` mapping raw values to canonical values;
            ``custom`` -> ``function``, a callable or the name of an entry in
            :data:`CUSTOM_TRANSFORMS`.
    """

    source_field: str
    target_field: str
    transformation: Transformation = Transformation.NONE
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:  # noqa: D105
        object.__setattr__(self, "transformation", Transformation(self.transformation))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MappingRule:
        """Build a rule from a config mapping (snake_case or camelCase keys).

        Raises:
            GatewayConfigError: If required keys are missing or the
                transformation is unknown.
        """
        try:
            return cls(
                source_field=data.get("source_field") or data["sourceField"],
                target_field=data.get("target_field") or data["targetField"],
                transformation=data.get("transformation", "none"),
                params=data.get("params") or data.get("transformationParams") or {},
            )
        except (KeyError, ValueError) as exc:
            raise GatewayConfigError(f"Invalid mapping rule {dict(data)!r}: {exc}") from exc


# ---------------------------------------------------------------------------
# Custom transforms
# ---------------------------------------------------------------------------


def _celsius_from_kelvin(value: Any) -> Any:
    return value - 273.15


def _kw_from_w(value: Any) -> Any:
    return value / 1000.0


def _negate(value: Any) -> Any:
    return -value


CUSTOM_TRANSFORMS: dict[str, Callable[[Any], Any]] = {
    "celsius_from_kelvin": _celsius_from_kelvin,
    "kw_from_w": _kw_from_w,
    "negate": _negate,
}
"""Named custom transforms that JSON device configs can reference."""


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _apply_one(rule: MappingRule, value: Any) -> Any:
    kind = rule.transformation
    if kind is Transformation.NONE:
        return value
    if kind is Transformation.SCALE:
        if not _is_number(value):
            logger.warning(
                "Scale rule %s -> %s: non-numeric value %r passed through",
                rule.source_field,
                rule.target_field,
                value,
            )
            return value
        scaled = value * rule.params.get("factor", 1) + rule.params.get("offset", 0)
        precision = rule.params.get("precision")
        return scaled if precision is None else round(scaled, int(precision))
    if kind is Transformation.LOOKUP:
        table = rule.params.get("table", {})
        if value in table:
            return table[value]
        # JSON config tables have string keys
        return table.get(str(value), value)
    func = rule.params.get("function")
    if isinstance(func, str):
        func = CUSTOM_TRANSFORMS.get(func)
    if not callable(func):
        logger.warning(
            "Custom rule %s -> %s has no usable function, value passed through",
            rule.source_field,
            rule.target_field,
        )
        return value
    return func(value)


def apply_rules(
    values: Mapping[str, Any],
    rules: list[MappingRule],
) -> dict[str, Any]:
    """Apply mapping rules to a flat reading.

    Rules whose source field is absent are skipped. A custom function that
    raises is logged and its target is left unset for this reading.

    Args:
        values: Native field name to raw value.
        rules: Rules applied in order.

    Returns:
        A new dict holding all original fields plus each rule's target field.
    """
    result: dict[str, Any] = dict(values)
    for rule in rules:
        if rule.source_field not in values:
            continue
        try:
            result[rule.target_field] = _apply_one(rule, values[rule.source_field])
        except Exception:
            logger.warning(
                "Mapping rule %s -> %s failed",
                rule.source_field,
                rule.target_field,
                exc_info=True,
            )
    return result


# ---------------------------------------------------------------------------
# Default rule tables
# ---------------------------------------------------------------------------

BATTERY_STATUS_TABLE: dict[int, str] = {
    0: "offline",
    1: "standby",
    2: "charging",
    3: "discharging",
    4: "error",
    5: "maintenance",
}
"""Battery operating state code to canonical state name."""

INVERTER_STATUS_TABLE: dict[int, str] = {
    1: "off",
    2: "sleeping",
    3: "starting",
    4: "producing",
    5: "throttled",
    6: "shutting_down",
    7: "fault",
    8: "standby",
}
"""SunSpec ``St`` operating state to canonical state name."""

DEFAULT_RULES: dict[DeviceType, list[MappingRule]] = {
    DeviceType.BATTERY: [
        MappingRule("state_of_charge", "soc", Transformation.SCALE, {"factor": 0.1, "precision": 1}),
        MappingRule("power_watts", "power", Transformation.SCALE, {"factor": 0.001, "precision": 3}),
        MappingRule("voltage", "voltage"),
        MappingRule("current", "current"),
        MappingRule("temp_celsius", "temperature"),
        MappingRule("status", "status", Transformation.LOOKUP, {"table": BATTERY_STATUS_TABLE}),
    ],
    DeviceType.SOLAR_INVERTER: [
        MappingRule("ac_power", "power", Transformation.SCALE, {"factor": 0.001, "precision": 3}),
        MappingRule("W", "power", Transformation.SCALE, {"factor": 0.001, "precision": 3}),
        MappingRule("daily_energy", "energy"),
        MappingRule("WH", "energy", Transformation.SCALE, {"factor": 0.001, "precision": 3}),
        MappingRule("St", "status", Transformation.LOOKUP, {"table": INVERTER_STATUS_TABLE}),
    ],
    DeviceType.EV_CHARGER: [
        MappingRule("connector_id", "connectorId"),
    ],
    DeviceType.HEAT_PUMP: [
        MappingRule("target_temperature", "targetTemperature"),
        MappingRule("is_active", "isActive"),
    ],
    DeviceType.METER: [
        MappingRule("active_power", "power", Transformation.SCALE, {"factor": 0.001, "precision": 3}),
        MappingRule("import_energy", "energy"),
    ],
    DeviceType.LOAD_CONTROLLER: [],
}
"""Rule table per device type, used when a device config declares none."""
