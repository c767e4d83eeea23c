"""A Modbus TCP server dispatching requests to registered worker callables."""

from __future__ import annotations

import select
import socket
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .errors import Error

Worker = Callable[[bytes], bytes]

ANY_SERVER = 0x00
ANY_FUNCTION_CODE = 0x00

WRITE_MULT_COILS = 0x0F
WRITE_MULT_REGISTERS = 0x10

NIL_RESPONSE = bytes((0xFF, 0xF0))
ECHO_RESPONSE = bytes((0xFF, 0xF1))

_HEADER_SIZE = 6
_BUFFER_SIZE = 300
_RECEIVE_WAIT = 0.1
_POLL = 0.01


def _error_response(server_id: int, function_code: int, error: int) -> bytes:
    return bytes((server_id & 0xFF, (function_code | 0x80) & 0xFF, int(error) & 0xFF))


@dataclass
class _Client:
    sock: socket.socket
    timeout: int
    thread: threading.Thread | None = None
    done: threading.Event = field(default_factory=threading.Event)


class ModbusServerTCP:
    """Modbus TCP server: accepts clients and answers their requests via workers."""

    def __init__(self) -> None:
        self._workers: dict[tuple[int, int], Worker] = {}
        self._count_lock = threading.Lock()
        self._client_lock = threading.Lock()
        self.message_count = 0
        self.error_count = 0
        self.max_clients = 0
        self.timeout = 20000
        self.port = 502
        self._clients: list[_Client] = []
        self._listener: socket.socket | None = None
        self._server_thread: threading.Thread | None = None
        self._going_down = threading.Event()

    # ---------------------------------------------------------------- workers

    def register_worker(self, server_id: int, function_code: int, worker: Worker) -> None:
        """Register ``worker`` for a server ID and function code (wildcards allowed)."""
        self._workers[(server_id & 0xFF, function_code & 0xFF)] = worker

    def get_worker(self, server_id: int, function_code: int) -> Worker | None:
        """Return the best matching worker, or None if there is none."""
        for key in (
            (server_id, function_code),
            (server_id, ANY_FUNCTION_CODE),
            (ANY_SERVER, function_code),
            (ANY_SERVER, ANY_FUNCTION_CODE),
        ):
            worker = self._workers.get(key)
            if worker is not None:
                return worker
        return None

    def is_server_for(self, server_id: int) -> bool:
        """Tell whether any worker serves the given server ID."""
        return any(sid in (server_id, ANY_SERVER) for sid, _ in self._workers)

    # ------------------------------------------------------------- processing

    def _respond(self, request: bytes) -> bytes:
        server_id, function_code = request[0], request[1]
        if not self.is_server_for(server_id):
            return _error_response(server_id, function_code, Error.INVALID_SERVER)
        worker = self.get_worker(server_id, function_code)
        if worker is None:
            return _error_response(server_id, function_code, Error.ILLEGAL_FUNCTION)
        data = bytes(worker(request))
        if data == NIL_RESPONSE:
            return b""
        if data == ECHO_RESPONSE:
            if function_code in (WRITE_MULT_REGISTERS, WRITE_MULT_COILS):
                return request[:6]
            return request
        return data

    def handle_frame(self, frame: bytes) -> bytes | None:
        """Process one TCP frame and return the response frame, or None if none is due."""
        frame = bytes(frame)
        if len(frame) < _HEADER_SIZE + 2:
            return None
        with self._count_lock:
            self.message_count += 1
        request = frame[_HEADER_SIZE:]
        if frame[2] == 0 and frame[3] == 0:
            response = self._respond(request)
        else:
            response = _error_response(request[0], request[1], Error.TCP_HEAD_MISMATCH)
        if len(response) < 3:
            return None
        if response[1] & 0x80 and response[2] != Error.SUCCESS:
            with self._count_lock:
                self.error_count += 1
        return frame[:4] + len(response).to_bytes(2, "big") + response

    # ------------------------------------------------------------- networking

    def active_clients(self) -> int:
        """Return the number of client connections currently being served."""
        with self._client_lock:
            self._clients = [c for c in self._clients if not c.done.is_set()]
            return len(self._clients)

    def _client_available(self) -> bool:
        return self.max_clients - self.active_clients() > 0

    def start(self, port: int, max_clients: int, timeout: int) -> bool:
        """Listen on ``port`` with at most ``max_clients`` connections.

        ``timeout`` is the idle time in milliseconds after which a client is
        dropped; 0 keeps clients forever. Port 0 picks a free port.
        """
        if self._server_thread is not None:
            self.stop()
        self.max_clients = max_clients
        self.timeout = timeout
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind(("", port))
        listener.listen()
        self._listener = listener
        self.port = listener.getsockname()[1]
        self._going_down.clear()
        self._server_thread = threading.Thread(
            target=self._serve, name=f"MBserve{self.port:04X}", daemon=True
        )
        self._server_thread.start()
        return True

    def stop(self) -> bool:
        """Drop all connections and stop listening."""
        self._going_down.set()
        with self._client_lock:
            clients, self._clients = self._clients, []
        for client in clients:
            try:
                client.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        for client in clients:
            if client.thread is not None:
                client.thread.join(timeout=2)
        if self._server_thread is not None:
            self._server_thread.join(timeout=2)
            self._server_thread = None
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        return True

    def __enter__(self) -> ModbusServerTCP:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _serve(self) -> None:
        listener = self._listener
        assert listener is not None
        while not self._going_down.is_set():
            if self._client_available():
                try:
                    ready, _, _ = select.select([listener], [], [], _POLL)
                    if ready:
                        sock, _ = listener.accept()
                        self._accept(sock)
                        continue
                except OSError:
                    break
            time.sleep(_POLL)

    def _accept(self, sock: socket.socket) -> bool:
        with self._client_lock:
            if len(self._clients) >= self.max_clients:
                sock.close()
                return False
            client = _Client(sock=sock, timeout=self.timeout)
            client.thread = threading.Thread(
                target=self._work, args=(client,), name=f"MBsrv{len(self._clients):02X}clnt", daemon=True
            )
            self._clients.append(client)
        client.thread.start()
        return True

    def _receive(self, sock: socket.socket) -> tuple[bytes, bool]:
        """Read one frame; return it and whether the peer has closed."""
        buffer = bytearray()
        need = _HEADER_SIZE
        sock.settimeout(_RECEIVE_WAIT)
        closed = False
        while len(buffer) < need and len(buffer) < _BUFFER_SIZE:
            try:
                chunk = sock.recv(min(need, _BUFFER_SIZE) - len(buffer))
            except socket.timeout:
                break
            except OSError:
                closed = True
                break
            if not chunk:
                closed = True
                break
            had_header = len(buffer) >= _HEADER_SIZE
            buffer += chunk
            if not had_header and len(buffer) >= _HEADER_SIZE:
                need = int.from_bytes(buffer[4:6], "big") + _HEADER_SIZE
        if len(buffer) >= _BUFFER_SIZE:
            buffer[4:6] = len(buffer).to_bytes(2, "big")
        return bytes(buffer), closed

    def _work(self, client: _Client) -> None:
        sock = client.sock
        last = time.monotonic()
        try:
            while not self._going_down.is_set() and (
                not client.timeout or (time.monotonic() - last) * 1000 < client.timeout
            ):
                ready, _, _ = select.select([sock], [], [], _POLL)
                if not ready:
                    continue
                frame, closed = self._receive(sock)
                response = self.handle_frame(frame) if frame else None
                if response is not None:
                    sock.sendall(response)
                if closed:
                    break
                last = time.monotonic()
        except (OSError, ValueError):
            pass
        finally:
            try:
                sock.close()
            except OSError:
                pass
            client.done.set()