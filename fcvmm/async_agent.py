"""Asyncio client of the microVM API unix socket."""

from __future__ import annotations

import asyncio
import os
from typing import Any, Optional, Union

from .errors import AgentError
from .events import Event

MAX_BUFFER_SIZE = 64
RETRY_INTERVAL = 0.01
DEFAULT_TIMEOUT = 3.0

PathLike = Union[str, "os.PathLike[str]"]


class AsyncSocketAgent:
    """An asyncio connection to the API socket."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer: Optional[asyncio.StreamWriter] = writer

    @classmethod
    async def connect(
        cls, socket_path: PathLike, timeout: float = DEFAULT_TIMEOUT
    ) -> AsyncSocketAgent:
        """Wait for ``socket_path`` to appear and accept, for at most ``timeout``."""
        path = os.fspath(socket_path)
        last_error: Optional[OSError] = None

        async def attempt() -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
            nonlocal last_error
            while True:
                if os.path.exists(path):
                    try:
                        return await asyncio.open_unix_connection(path)
                    except (FileNotFoundError, ConnectionRefusedError) as exc:
                        last_error = exc
                await asyncio.sleep(RETRY_INTERVAL)

        try:
            reader, writer = await asyncio.wait_for(attempt(), timeout)
        except asyncio.TimeoutError as exc:
            reason = last_error if last_error is not None else f"{path} did not appear"
            raise AgentError(f"Connection timed out: {reason}") from exc
        return cls(reader, writer)

    async def __aenter__(self) -> AsyncSocketAgent:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._writer is None

    def _stream(self) -> asyncio.StreamWriter:
        if self._writer is None:
            raise AgentError("Agent is closed")
        return self._writer

    async def send_request(self, data: bytes) -> None:
        """Write the whole of ``data`` and wait until it is flushed."""
        writer = self._stream()
        writer.write(data)
        await writer.drain()

    async def recv_response(self) -> bytes:
        """Read one answer: chunks are read until a short one or end of stream."""
        self._stream()
        chunks: list[bytes] = []
        while True:
            try:
                chunk = await self._reader.read(MAX_BUFFER_SIZE)
            except OSError as exc:
                raise AgentError(f"Bad read from socket: {exc}") from exc
            if not chunk:
                break
            chunks.append(chunk)
            if len(chunk) < MAX_BUFFER_SIZE:
                break
        return b"".join(chunks)

    async def event(self, event: Event) -> Any:
        """Send ``event`` and return its decoded answer."""
        await self.send_request(event.encode())
        return event.decode(await self.recv_response())

    async def close(self) -> None:
        if self._writer is not None:
            writer, self._writer = self._writer, None
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass