"""Modbus error codes, CRC16 helpers, RTU/ASCII serial framing and a threaded Modbus TCP server."""

__version__ = "0.1.0"
__all__ = ["errors", "crc", "rtu", "tcpserver"]