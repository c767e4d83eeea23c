"""Framing, sending and receiving of Modbus RTU and Modbus ASCII messages on a serial line."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from enum import Enum, auto
from typing import Protocol

from .crc import add_crc, calc_crc
from .errors import Error, ModbusError

RTSCallback = Callable[[bool], None]

_BUFFER_LIMIT = 512

_LEAD_IN = 0xF0
_CARRIAGE_RETURN = 0xF1
_LINE_FEED = 0xF2


def _ascii_table() -> dict[int, int]:
    table = {ord(c): int(c, 16) for c in "0123456789ABCDEFabcdef"}
    table[ord(":")] = _LEAD_IN
    table[ord("\r")] = _CARRIAGE_RETURN
    table[ord("\n")] = _LINE_FEED
    return table


_ASCII_READ = _ascii_table()


class SerialPort(Protocol):
    """The part of a serial port interface the link relies on."""

    @property
    def in_waiting(self) -> int: ...

    def read(self, size: int = 1) -> bytes: ...

    def write(self, data: bytes) -> int | None: ...

    def flush(self) -> None: ...


def _lrc(data: bytes) -> int:
    return (-sum(data)) & 0xFF


def encode_ascii_frame(data: Iterable[int]) -> bytes:
    """Return the Modbus ASCII frame for ``data``: ':' + hex digits + LRC + CR LF."""
    raw = bytes(data)
    body = raw.hex().upper() + f"{_lrc(raw):02X}"
    return b":" + body.encode("ascii") + b"\r\n"


def _no_rts(level: bool) -> None:
    """RTS callback for boards that switch half duplex direction themselves."""


class _RtuState(Enum):
    WAIT_DATA = auto()
    IN_PACKET = auto()


class _AsciiState(Enum):
    WAIT_DATA = auto()
    DATA = auto()
    WAIT_LEAD_OUT = auto()


class RTULink:
    """A serial line carrying Modbus messages in RTU or ASCII framing.

    ``interval`` is the minimal silent gap between frames in microseconds;
    ``rts`` is called with True before and False after each transmission.
    """

    def __init__(
        self,
        serial: SerialPort,
        interval: int,
        rts: RTSCallback | None = None,
        ascii_mode: bool = False,
    ) -> None:
        if interval < 0:
            raise ValueError("interval must not be negative")
        self.serial = serial
        self.interval = interval
        self.rts = rts if rts is not None else _no_rts
        self.ascii_mode = ascii_mode
        self._last_ns = time.monotonic_ns()

    def _micros_since_last(self) -> int:
        return (time.monotonic_ns() - self._last_ns) // 1000

    def _read_byte(self) -> int | None:
        if not self.serial.in_waiting:
            return None
        data = self.serial.read(1)
        return data[0] if data else None

    def _drain(self) -> None:
        while self.serial.in_waiting:
            if not self.serial.read(self.serial.in_waiting):
                break

    def send(self, data: Iterable[int]) -> None:
        """Send a message, adding the CRC (RTU) or LRC and framing (ASCII)."""
        raw = bytes(data)
        self._drain()
        if self.ascii_mode:
            self.rts(True)
            self.serial.write(encode_ascii_frame(raw))
            self.serial.flush()
            self.rts(False)
        else:
            frame = add_crc(raw)
            elapsed = self._micros_since_last()
            if elapsed < self.interval:
                time.sleep((self.interval - elapsed) / 1_000_000)
            self.rts(True)
            self.serial.write(frame)
            self.serial.flush()
            self.rts(False)
        self._last_ns = time.monotonic_ns()

    def receive(self, timeout: int, skip_leading_zero_bytes: bool = False) -> bytes:
        """Receive one message and return it without CRC or framing.

        ``timeout`` is in milliseconds. Failures raise ModbusError.
        """
        if self.ascii_mode:
            return self._receive_ascii(timeout)
        return self._receive_rtu(timeout, skip_leading_zero_bytes)

    def _receive_rtu(self, timeout: int, skip_zeros: bool) -> bytes:
        buffer = bytearray()
        state = _RtuState.WAIT_DATA
        started = time.monotonic()
        self._last_ns = time.monotonic_ns()

        while state is _RtuState.WAIT_DATA:
            byte = self._read_byte()
            if byte is not None:
                self._last_ns = time.monotonic_ns()
                if byte > 0 or not skip_zeros:
                    buffer.append(byte)
                    state = _RtuState.IN_PACKET
            else:
                if (time.monotonic() - started) * 1000 >= timeout:
                    raise ModbusError(Error.TIMEOUT)
                time.sleep(0.001)

        while True:
            while self.serial.in_waiting:
                chunk = self.serial.read(1)
                if not chunk:
                    break
                buffer += chunk
                self._last_ns = time.monotonic_ns()
                if len(buffer) >= _BUFFER_LIMIT:
                    raise ModbusError(Error.PACKET_LENGTH_ERROR)
            if self._micros_since_last() >= self.interval:
                break

        if len(buffer) < 4:
            raise ModbusError(Error.PACKET_LENGTH_ERROR)
        given = buffer[-2] | (buffer[-1] << 8)
        if calc_crc(buffer[:-2]) != given:
            raise ModbusError(Error.CRC_ERROR)
        return bytes(buffer[:-2])

    def _receive_ascii(self, timeout: int) -> bytes:
        buffer = bytearray()
        state = _AsciiState.WAIT_DATA
        high_nibble: int | None = None
        lrc = 0
        last = time.monotonic()

        while True:
            if (time.monotonic() - last) * 1000 >= timeout:
                raise ModbusError(Error.TIMEOUT)
            byte = self._read_byte()
            if byte is None:
                time.sleep(0.001)
                continue
            last = time.monotonic()
            value = _ASCII_READ.get(byte)
            if value is None:
                raise ModbusError(Error.ASCII_INVALID_CHAR)

            if state is _AsciiState.WAIT_DATA:
                if value == _LEAD_IN:
                    state = _AsciiState.DATA
            elif state is _AsciiState.DATA:
                if value == _CARRIAGE_RETURN:
                    if high_nibble is not None:
                        raise ModbusError(Error.PACKET_LENGTH_ERROR)
                    state = _AsciiState.WAIT_LEAD_OUT
                elif value < 0xF0:
                    if high_nibble is None:
                        high_nibble = value
                    else:
                        complete = (high_nibble << 4) | value
                        high_nibble = None
                        lrc = (lrc + complete) & 0xFF
                        buffer.append(complete)
                        if len(buffer) >= _BUFFER_LIMIT:
                            raise ModbusError(Error.PACKET_LENGTH_ERROR)
                else:
                    raise ModbusError(Error.ASCII_INVALID_CHAR)
            else:
                if value != _LINE_FEED:
                    raise ModbusError(Error.ASCII_FRAME_ERR)
                if len(buffer) < 3:
                    raise ModbusError(Error.PACKET_LENGTH_ERROR)
                if lrc != 0:
                    raise ModbusError(Error.ASCII_CRC_ERR)
                return bytes(buffer[:-1])