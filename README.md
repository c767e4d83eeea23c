# modlink

Building blocks for Modbus communication in plain Python, with no
dependencies outside the standard library.

- `modlink.errors`: the Modbus error codes (`Error`), the `ModbusError`
  exception and `error_text()`, which gives a readable description of a code.
- `modlink.crc`: the Modbus CRC16 (`calc_crc`, `valid_crc`, `add_crc`) and
  `calculate_interval`, which gives the RTU inter-frame gap for a baud rate.
- `modlink.rtu`: `RTULink`, which sends and receives Modbus RTU or Modbus ASCII
  frames over a serial-like object, and `encode_ascii_frame` for ASCII framing.
- `modlink.tcpserver`: `ModbusServerTCP`, a threaded Modbus TCP server that
  passes requests to the worker functions you register.

## Installation

```
pip install .
```

For the tests:

```
pip install .[test]
pytest
```

## Error codes

`Error` is an `IntEnum` of the standard Modbus exception codes (0x01 to 0x0B)
and of communication errors (0xE0 to 0xF0, and 0xFF). `error_text()` returns
a description for any code; codes it does not know give
`"Unspecified error"`.

```python
from modlink.errors import Error, ModbusError, error_text

print(error_text(Error.ILLEGAL_DATA_ADDRESS))   # Illegal data address

try:
    raise ModbusError(Error.TIMEOUT)
except ModbusError as exc:
    print(int(exc), str(exc))                   # 224 Timeout
    print(exc.error)                            # Error.TIMEOUT
```

A `ModbusError` accepts any code from 0 to 255. Its `error` property is the
matching `Error` member, or `None` for a code that is not defined. It compares
equal to another `ModbusError` or to an integer with the same code.

## CRC helpers

```python
from modlink.crc import add_crc, calc_crc, valid_crc, calculate_interval

frame = add_crc(bytes([0x01, 0x03, 0x00, 0x10, 0x00, 0x01]))  # CRC appended, low byte first
assert valid_crc(frame)                                       # CRC read from the last two bytes
assert valid_crc(frame[:-2], calc_crc(frame[:-2]))            # CRC given explicitly

gap_us = calculate_interval(9600)   # 3.5 character times in microseconds, at least 1750
```

`valid_crc()` without a CRC argument raises `ValueError` for data shorter than
two bytes, and `calculate_interval()` raises `ValueError` for a baud rate that
is not positive.

## Serial links

`RTULink(serial, interval, rts=None, ascii_mode=False)` works with any object
that has `read(size)`, `write(data)`, `flush()` and an `in_waiting` count, as
a pySerial port has. `interval` is the silent gap between frames in
microseconds. `rts`, if given, is called with `True` before and `False` after
each transmission, for switching an RS485 driver.

```python
from modlink.crc import calculate_interval
from modlink.rtu import RTULink

link = RTULink(port, calculate_interval(19200))
link.send(bytes([0x01, 0x03, 0x00, 0x10, 0x00, 0x01]))
reply = link.receive(timeout=2000)
```

`send()` first discards any unread input. In RTU mode it appends the CRC and
waits until the interval since the last frame has passed. In ASCII mode it
sends `:`, the hex digits, the LRC and CR LF.

`receive(timeout, skip_leading_zero_bytes=False)` returns the message without
CRC, LRC or framing. `timeout` is in milliseconds. Failures raise
`ModbusError` with one of these codes:

- `TIMEOUT`: nothing arrived in time.
- `CRC_ERROR`: the RTU CRC is wrong.
- `PACKET_LENGTH_ERROR`: the frame is too short, longer than 512 bytes, or has
  an odd number of hex digits.
- `ASCII_INVALID_CHAR`, `ASCII_FRAME_ERR`, `ASCII_CRC_ERR`: the ASCII frame is
  malformed or its LRC is wrong.

In RTU mode, a frame ends when no byte has arrived for `interval`
microseconds. `skip_leading_zero_bytes` drops zero bytes that come before the
frame.

`encode_ascii_frame(data)` returns the complete ASCII frame for `data`.

## Modbus TCP server

A worker is called with the request PDU (server ID, function code, data) and
returns the response bytes. It may instead return one of two markers from
`modlink.tcpserver`:

- `NIL_RESPONSE`: send nothing.
- `ECHO_RESPONSE`: send the request back. For function codes 0x0F and 0x10,
  only its first six bytes are sent.

```python
from modlink.tcpserver import ModbusServerTCP

registers = [0] * 32

def read_holding(request: bytes) -> bytes:
    addr = int.from_bytes(request[2:4], "big")
    count = int.from_bytes(request[4:6], "big")
    words = registers[addr - 1:addr - 1 + count]
    body = b"".join(w.to_bytes(2, "big") for w in words)
    return bytes([request[0], request[1], len(body)]) + body

with ModbusServerTCP() as server:
    server.register_worker(1, 0x03, read_holding)
    server.start(port=5020, max_clients=2, timeout=10000)
    ...
```

`start(port, max_clients, timeout)` listens on all interfaces and serves at
most `max_clients` connections at once, each in its own thread. A client that
stays idle for `timeout` milliseconds is dropped; 0 keeps clients forever.
Port 0 picks a free port, which is then in `server.port`. `stop()`, or leaving
the `with` block, closes all connections and the listener.
`active_clients()` returns the number of connections being served.

`ANY_SERVER` and `ANY_FUNCTION_CODE` (both 0) can be used as wildcards in
`register_worker()`. `get_worker()` looks for an exact match first, then for
the server ID with any function code, then for any server with the function
code, and finally for the catch-all. `is_server_for()` tells whether any worker
is registered for a server ID.

Responses:

- No worker registered for the request's server ID: `INVALID_SERVER`.
- The server ID is known but no worker serves the function code:
  `ILLEGAL_FUNCTION`.
- The frame's protocol ID is not zero: `TCP_HEAD_MISMATCH`.

`handle_frame(frame)` processes one complete TCP frame (MBAP header and PDU)
and returns the response frame, or `None` if nothing is to be sent. This can
be used without opening a socket, for example in tests. Frames shorter than
eight bytes are ignored. `message_count` counts the frames processed and
`error_count` counts the error responses sent.

## What this package does not do

- There is no Modbus client, neither for TCP nor for serial lines. No requests
  are built, queued or matched to responses for you.
- There is no serial server loop that dispatches requests to workers.
  `RTULink` only moves single frames, and you bring the serial port object
  yourself.
- There is no command-line program.