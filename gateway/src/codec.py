"""
Register codec: converts 16-bit register words to and from typed values.

Pure, protocol-agnostic functions used by the Modbus and SunSpec adapters.
Words are always laid out big-endian inside each register (as transmitted on
the wire). ``word_order`` swaps the 16-bit words of multi-word fields before
packing; ``byte_order`` then selects how the resulting byte string is read.

Supported types:
- int16, uint16, int32, uint32, float32: numerics, with optional scale/offset.
- coil: boolean from a single word or bit.
- string: fixed-length ASCII, NUL/space padded.
- generic: raw unsigned first word.

CHANGELOG:
- 2026-02-25: Add fixed-length string and word_order support
- 2026-02-22: Initial creation

TODO:
- None
"""

from __future__ import annotations

import struct
from enum import Enum

from gateway.src.errors import CommandValidationError, DeviceProtocolError

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RegisterType(str, Enum):
    """Declared data type of a register field."""

    INT16 = "int16"
    UINT16 = "uint16"
    INT32 = "int32"
    UINT32 = "uint32"
    FLOAT32 = "float32"
    COIL = "coil"
    STRING = "string"
    GENERIC = "generic"


class ByteOrder(str, Enum):
    """Endianness of a field, or order of its 16-bit words."""

    BIG = "big"
    LITTLE = "little"


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_STRUCT_FORMATS: dict[RegisterType, str] = {
    RegisterType.INT16: "h",
    RegisterType.UINT16: "H",
    RegisterType.INT32: "i",
    RegisterType.UINT32: "I",
    RegisterType.FLOAT32: "f",
}
"""struct format character per numeric register type."""

_INT_RANGES: dict[RegisterType, tuple[int, int]] = {
    RegisterType.INT16: (-0x8000, 0x7FFF),
    RegisterType.UINT16: (0, 0xFFFF),
    RegisterType.INT32: (-0x80000000, 0x7FFFFFFF),
    RegisterType.UINT32: (0, 0xFFFFFFFF),
}
"""Inclusive value range per integer register type."""

WORD_COUNTS: dict[RegisterType, int] = {
    RegisterType.INT16: 1,
    RegisterType.UINT16: 1,
    RegisterType.INT32: 2,
    RegisterType.UINT32: 2,
    RegisterType.FLOAT32: 2,
    RegisterType.COIL: 1,
    RegisterType.GENERIC: 1,
}
"""Number of 16-bit words per fixed-width type. Strings set their own length."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _words_to_bytes(words: list[int]) -> bytes:
    return b"".join(struct.pack(">H", w & 0xFFFF) for w in words)


def _bytes_to_words(data: bytes) -> list[int]:
    return [struct.unpack(">H", data[i : i + 2])[0] for i in range(0, len(data), 2)]


def _order(value: ByteOrder | str) -> ByteOrder:
    try:
        return ByteOrder(value)
    except ValueError as exc:
        raise CommandValidationError(f"Unknown byte/word order '{value}'") from exc


def _endian(byte_order: ByteOrder | str) -> str:
    return "<" if _order(byte_order) is ByteOrder.LITTLE else ">"


def _ordered(words: list[int], word_order: ByteOrder | str) -> list[int]:
    if _order(word_order) is ByteOrder.LITTLE and len(words) > 1:
        return list(reversed(words))
    return list(words)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def decode(
    words: list[int],
    reg_type: RegisterType | str,
    *,
    byte_order: ByteOrder | str = ByteOrder.BIG,
    word_order: ByteOrder | str = ByteOrder.BIG,
    scale: float = 1.0,
    offset: float = 0.0,
    word_count: int | None = None,
    device_id: int = 0,
) -> int | float | bool | str:
    """Decode register words into a typed value.

    Args:
        words: Raw 16-bit words as read from the device.
        reg_type: Declared register type.
        byte_order: Endianness used to read the assembled bytes.
        word_order: Order of 16-bit words in multi-word fields.
        scale: Multiplier applied to numeric results.
        offset: Added to numeric results after scaling.
        word_count: Length in words for ``string`` fields.
        device_id: Device id attached to raised errors.

    Returns:
        The decoded value. Integers stay ``int`` when no scaling applies.

    Raises:
        DeviceProtocolError: If fewer words were supplied than the type needs.
        CommandValidationError: If *reg_type* is not a known type.
    """
    try:
        rtype = RegisterType(reg_type)
    except ValueError as exc:
        raise CommandValidationError(f"Unsupported register type '{reg_type}'") from exc

    needed = word_count if rtype is RegisterType.STRING else WORD_COUNTS[rtype]
    if needed is None or needed < 1:
        raise CommandValidationError("String registers require a positive word_count")
    if len(words) < needed:
        raise DeviceProtocolError(
            f"{rtype.value} needs {needed} words, got {len(words)}",
            device_id=device_id,
        )
    field = list(words[:needed])

    if rtype is RegisterType.COIL:
        return bool(field[0])
    if rtype is RegisterType.GENERIC:
        return field[0] & 0xFFFF
    if rtype is RegisterType.STRING:
        return _words_to_bytes(field).decode("ascii", errors="replace").rstrip("\x00 ")

    data = _words_to_bytes(_ordered(field, word_order))
    value = struct.unpack(_endian(byte_order) + _STRUCT_FORMATS[rtype], data)[0]
    if scale == 1.0 and offset == 0.0:
        return value
    return value * scale + offset


def encode(
    value: int | float | bool | str,
    reg_type: RegisterType | str,
    *,
    byte_order: ByteOrder | str = ByteOrder.BIG,
    word_order: ByteOrder | str = ByteOrder.BIG,
    word_count: int | None = None,
) -> list[int]:
    """Encode a typed value into 16-bit register words.

    32-bit types are split into two words, high word first unless
    *word_order* is little.

    Args:
        value: Value to encode (unscaled device units).
        reg_type: Target register type.
        byte_order: Endianness used to pack the value.
        word_order: Order of 16-bit words in multi-word fields.
        word_count: Length in words for ``string`` fields.

    Returns:
        List of 16-bit words ready to write.

    Raises:
        CommandValidationError: If the type is unknown or the value does not
            fit the type.
    """
    try:
        rtype = RegisterType(reg_type)
    except ValueError as exc:
        raise CommandValidationError(f"Unsupported register type '{reg_type}'") from exc

    if rtype is RegisterType.COIL:
        return [1 if value else 0]

    if rtype is RegisterType.STRING:
        if not word_count or word_count < 1:
            raise CommandValidationError("String registers require a positive word_count")
        raw = str(value).encode("ascii", errors="replace")
        if len(raw) > word_count * 2:
            raise CommandValidationError(
                f"String of {len(raw)} bytes does not fit {word_count} words"
            )
        return _bytes_to_words(raw.ljust(word_count * 2, b"\x00"))

    if rtype is RegisterType.GENERIC:
        rtype = RegisterType.UINT16

    if isinstance(value, (bool, str)):
        raise CommandValidationError(f"{rtype.value} requires a numeric value, got {value!r}")

    if rtype is not RegisterType.FLOAT32:
        if isinstance(value, float):
            if not value.is_integer():
                raise CommandValidationError(
                    f"{rtype.value} requires an integral value, got {value!r}"
                )
            value = int(value)
        low, high = _INT_RANGES[rtype]
        if not low <= value <= high:
            raise CommandValidationError(
                f"Value {value} out of range for {rtype.value} [{low}, {high}]"
            )

    try:
        data = struct.pack(_endian(byte_order) + _STRUCT_FORMATS[rtype], value)
    except (struct.error, OverflowError) as exc:
        raise CommandValidationError(f"Value {value!r} not representable as {rtype.value}") from exc
    return _ordered(_bytes_to_words(data), word_order)
