"""Blocking client of the microVM API unix socket."""

from __future__ import annotations

import os
import socket
import time
from typing import Any, Optional, Union

from .errors import AgentError
from .events import Event

MAX_BUFFER_SIZE = 64
RETRY_INTERVAL = 0.1
DEFAULT_TIMEOUT = 3.0

PathLike = Union[str, "os.PathLike[str]"]


class SocketAgent:
    """A connection to the API socket that sends requests and reads answers."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock: Optional[socket.socket] = sock

    @classmethod
    def connect(cls, socket_path: PathLike, timeout: float = DEFAULT_TIMEOUT) -> SocketAgent:
        """Connect to ``socket_path``, retrying until it accepts or ``timeout`` passes."""
        path = os.fspath(socket_path)
        deadline = time.monotonic() + timeout
        while True:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.connect(path)
            except (FileNotFoundError, ConnectionRefusedError) as exc:
                sock.close()
                if time.monotonic() >= deadline:
                    raise AgentError(f"Connection timed out: {exc}") from exc
                time.sleep(RETRY_INTERVAL)
            except OSError:
                sock.close()
                raise
            else:
                return cls(sock)

    def __enter__(self) -> SocketAgent:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._sock is None

    def _socket(self) -> socket.socket:
        if self._sock is None:
            raise AgentError("Agent is closed")
        return self._sock

    def send_request(self, data: bytes) -> None:
        """Write the whole of ``data`` to the socket."""
        self._socket().sendall(data)

    def recv_response(self) -> bytes:
        """Read one answer: chunks are read until a short one or end of stream."""
        sock = self._socket()
        chunks: list[bytes] = []
        while True:
            try:
                chunk = sock.recv(MAX_BUFFER_SIZE)
            except BlockingIOError:
                continue
            except OSError as exc:
                raise AgentError(f"Bad read from socket: {exc}") from exc
            if not chunk:
                break
            chunks.append(chunk)
            if len(chunk) < MAX_BUFFER_SIZE:
                break
        return b"".join(chunks)

    def event(self, event: Event) -> Any:
        """Send ``event`` and return its decoded answer."""
        self.send_request(event.encode())
        return event.decode(self.recv_response())

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None