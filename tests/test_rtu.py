import time

import pytest

from modlink.crc import add_crc
from modlink.errors import Error, ModbusError
from modlink.rtu import RTULink, encode_ascii_frame


class FakeSerial:
    def __init__(self, incoming: bytes = b"") -> None:
        self.incoming = bytearray(incoming)
        self.written = bytearray()
        self.flushes = 0

    def feed(self, data: bytes) -> None:
        self.incoming += data

    @property
    def in_waiting(self) -> int:
        return len(self.incoming)

    def read(self, size: int = 1) -> bytes:
        chunk = bytes(self.incoming[:size])
        del self.incoming[:size]
        return chunk

    def write(self, data: bytes) -> int:
        self.written += data
        return len(data)

    def flush(self) -> None:
        self.flushes += 1


REQUEST = bytes([0x01, 0x03, 0x00, 0x10, 0x00, 0x01])


def test_ascii_frame_wire_format():
    assert encode_ascii_frame(REQUEST) == b":010300100001EB\r\n"


def test_rtu_send_writes_data_with_crc_and_toggles_rts():
    levels = []
    port = FakeSerial()
    link = RTULink(port, 0, rts=levels.append)
    link.send(REQUEST)
    assert bytes(port.written) == add_crc(REQUEST)
    assert levels == [True, False]
    assert port.flushes == 1


def test_send_clears_pending_input():
    port = FakeSerial(b"\x01\x02\x03")
    RTULink(port, 0).send(REQUEST)
    assert port.in_waiting == 0


def test_ascii_send_writes_frame():
    levels = []
    port = FakeSerial()
    RTULink(port, 0, rts=levels.append, ascii_mode=True).send(REQUEST)
    assert bytes(port.written) == encode_ascii_frame(REQUEST)
    assert levels == [True, False]


def test_rtu_send_respects_interval():
    port = FakeSerial()
    link = RTULink(port, 20_000)
    link.send(REQUEST)
    start = time.monotonic()
    link.send(REQUEST)
    assert time.monotonic() - start >= 0.019
    assert bytes(port.written) == add_crc(REQUEST) * 2


def test_rtu_round_trip():
    sender = FakeSerial()
    RTULink(sender, 0).send(REQUEST)
    receiver = FakeSerial(bytes(sender.written))
    assert RTULink(receiver, 100).receive(200) == REQUEST


def test_rtu_bad_crc():
    frame = bytearray(add_crc(REQUEST))
    frame[-1] ^= 0xFF
    with pytest.raises(ModbusError) as info:
        RTULink(FakeSerial(bytes(frame)), 100).receive(200)
    assert info.value.code == Error.CRC_ERROR


def test_rtu_too_short():
    with pytest.raises(ModbusError) as info:
        RTULink(FakeSerial(b"\x01\x02\x03"), 100).receive(200)
    assert info.value.code == Error.PACKET_LENGTH_ERROR


def test_rtu_oversize():
    with pytest.raises(ModbusError) as info:
        RTULink(FakeSerial(bytes(range(1, 256)) * 3), 100).receive(200)
    assert info.value.code == Error.PACKET_LENGTH_ERROR


def test_rtu_timeout():
    start = time.monotonic()
    with pytest.raises(ModbusError) as info:
        RTULink(FakeSerial(), 100).receive(20)
    assert info.value.code == Error.TIMEOUT
    assert time.monotonic() - start >= 0.019


def test_rtu_skip_leading_zero_bytes():
    port = FakeSerial(b"\x00\x00" + add_crc(REQUEST))
    assert RTULink(port, 100).receive(200, skip_leading_zero_bytes=True) == REQUEST


def test_rtu_leading_zero_bytes_kept_by_default():
    port = FakeSerial(b"\x00\x00" + add_crc(REQUEST))
    with pytest.raises(ModbusError) as info:
        RTULink(port, 100).receive(200)
    assert info.value.code == Error.CRC_ERROR


def test_ascii_round_trip():
    sender = FakeSerial()
    RTULink(sender, 0, ascii_mode=True).send(REQUEST)
    receiver = FakeSerial(bytes(sender.written))
    assert RTULink(receiver, 0, ascii_mode=True).receive(200) == REQUEST


def test_ascii_accepts_lowercase_and_ignores_leading_digits():
    frame = b"12" + encode_ascii_frame(bytes([0x0A, 0xBC, 0xDE])).lower()
    link = RTULink(FakeSerial(frame), 0, ascii_mode=True)
    assert link.receive(200) == bytes([0x0A, 0xBC, 0xDE])


@pytest.mark.parametrize("garbage", [b"G", b"\x80", b" "])
def test_ascii_invalid_character(garbage):
    frame = b":0103" + garbage + b"00\r\n"
    with pytest.raises(ModbusError) as info:
        RTULink(FakeSerial(frame), 0, ascii_mode=True).receive(200)
    assert info.value.code == Error.ASCII_INVALID_CHAR


def test_ascii_second_lead_in_is_invalid():
    with pytest.raises(ModbusError) as info:
        RTULink(FakeSerial(b":01:03\r\n"), 0, ascii_mode=True).receive(200)
    assert info.value.code == Error.ASCII_INVALID_CHAR


def test_ascii_odd_number_of_digits():
    with pytest.raises(ModbusError) as info:
        RTULink(FakeSerial(b":01030\r\n"), 0, ascii_mode=True).receive(200)
    assert info.value.code == Error.PACKET_LENGTH_ERROR


def test_ascii_bad_lrc():
    frame = bytearray(encode_ascii_frame(REQUEST))
    frame[-3] = ord("0") if frame[-3] != ord("0") else ord("1")
    with pytest.raises(ModbusError) as info:
        RTULink(FakeSerial(bytes(frame)), 0, ascii_mode=True).receive(200)
    assert info.value.code == Error.ASCII_CRC_ERR


def test_ascii_missing_line_feed():
    frame = encode_ascii_frame(REQUEST)[:-1] + b"0"
    with pytest.raises(ModbusError) as info:
        RTULink(FakeSerial(frame), 0, ascii_mode=True).receive(200)
    assert info.value.code == Error.ASCII_FRAME_ERR


def test_ascii_too_short():
    frame = encode_ascii_frame(b"\x01")
    with pytest.raises(ModbusError) as info:
        RTULink(FakeSerial(frame), 0, ascii_mode=True).receive(200)
    assert info.value.code == Error.PACKET_LENGTH_ERROR


def test_ascii_timeout():
    with pytest.raises(ModbusError) as info:
        RTULink(FakeSerial(b":0103"), 0, ascii_mode=True).receive(20)
    assert info.value.code == Error.TIMEOUT


def test_negative_interval_rejected():
    with pytest.raises(ValueError):
        RTULink(FakeSerial(), -1)