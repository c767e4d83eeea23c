"""Modbus RTU CRC16 helpers and inter-frame interval calculation."""

from __future__ import annotations

from collections.abc import Iterable

_POLY = 0xA001
_MIN_INTERVAL_US = 1750


def _table_entry(index: int) -> int:
    value = index
    for _ in range(8):
        value = (value >> 1) ^ _POLY if value & 1 else value >> 1
    return value


_TABLE = tuple(_table_entry(i) for i in range(256))


def calc_crc(data: Iterable[int]) -> int:
    """Return the Modbus CRC16 of the given bytes.

    The low byte of the result is the one sent first on the wire.
    """
    crc = 0xFFFF
    for byte in bytes(data):
        crc = (crc >> 8) ^ _TABLE[(crc ^ byte) & 0xFF]
    return crc


def valid_crc(data: Iterable[int], crc: int | None = None) -> bool:
    """Check a CRC.

    With ``crc`` given, compare it to the CRC of ``data``. Without it, the
    last two bytes of ``data`` are taken as the CRC, low byte first.
    """
    raw = bytes(data)
    if crc is not None:
        return calc_crc(raw) == crc
    if len(raw) < 2:
        raise ValueError("data too short to hold a CRC")
    given = raw[-2] | (raw[-1] << 8)
    return calc_crc(raw[:-2]) == given


def add_crc(data: Iterable[int]) -> bytes:
    """Return ``data`` with its CRC appended, low byte first."""
    raw = bytes(data)
    crc = calc_crc(raw)
    return raw + bytes((crc & 0xFF, (crc >> 8) & 0xFF))


def calculate_interval(baud_rate: int) -> int:
    """Return the minimal silent gap between RTU frames in microseconds.

    That is 3.5 character times, but never less than 1750 µs.
    """
    if baud_rate <= 0:
        raise ValueError("baud rate must be positive")
    return max(35_000_000 // baud_rate, _MIN_INTERVAL_US)