"""Output sink abstraction — where encoded alerts are written.

Selections accepted by ``open_output``:
  ""                 stdout
  file://path        append to a file (created 0640)
  tcp://host:port    stream to a TCP listener
  udp://host:port    one datagram per alert
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO

from .exceptions import ConfigError

logger = logging.getLogger("mdatp-watch")

FILE_PREFIX = "file://"
TCP_PREFIX = "tcp://"
UDP_PREFIX = "udp://"


class OutputSink(ABC):
    """Abstract interface for all output destinations."""

    @abstractmethod
    async def write(self, data: bytes) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @property
    @abstractmethod
    def description(self) -> str: ...


class StreamSink(OutputSink):
    """Writes to a binary file object (stdout, a file, an in-memory buffer)."""

    def __init__(
        self, stream: BinaryIO, name: str = "stream", close_stream: bool = True
    ) -> None:
        self._stream = stream
        self._name = name
        self._close_stream = close_stream

    async def write(self, data: bytes) -> None:
        # A slow reader on the other end of stdout must not stall the loop
        await asyncio.to_thread(self._write_sync, data)

    def _write_sync(self, data: bytes) -> None:
        self._stream.write(data)
        self._stream.flush()

    async def close(self) -> None:
        if self._close_stream:
            self._stream.close()

    @property
    def description(self) -> str:
        return self._name


class TcpSink(OutputSink):
    """Streams alerts over a TCP connection."""

    def __init__(self, host: str, port: int) -> None:
        self._host = host
        self._port = port
        self._writer: asyncio.StreamWriter | None = None

    async def open(self) -> None:
        _, self._writer = await asyncio.open_connection(self._host, self._port)
        logger.debug(f"Connected to {self.description}")

    async def write(self, data: bytes) -> None:
        if self._writer is None:
            raise ConnectionError(f"{self.description} is not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def close(self) -> None:
        if self._writer is None:
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except ConnectionError as e:
            logger.debug(f"Error closing {self.description}: {e}")
        self._writer = None

    @property
    def description(self) -> str:
        return f"tcp://{self._host}:{self._port}"


class _DatagramErrors(asyncio.DatagramProtocol):
    """Keeps the last send error the transport reported."""

    def __init__(self) -> None:
        self.error: Exception | None = None

    def error_received(self, exc: Exception) -> None:
        self.error = exc

    def take_error(self) -> Exception | None:
        error, self.error = self.error, None
        return error


class UdpSink(OutputSink):
    """Sends each alert as a single UDP datagram.

    Send errors (oversized datagram, ICMP port unreachable) are raised by
    the write that caused them, or by the next one when reported late.
    """

    def __init__(self, host: str, port: int) -> None:
        self._host = host
        self._port = port
        self._transport: asyncio.DatagramTransport | None = None
        self._protocol: _DatagramErrors | None = None

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        self._transport, self._protocol = await loop.create_datagram_endpoint(
            _DatagramErrors, remote_addr=(self._host, self._port)
        )

    def _raise_send_error(self) -> None:
        error = self._protocol.take_error() if self._protocol else None
        if error is not None:
            raise error

    async def write(self, data: bytes) -> None:
        if self._transport is None or self._transport.is_closing():
            raise ConnectionError(f"{self.description} is not open")
        self._raise_send_error()
        self._transport.sendto(data)
        self._raise_send_error()

    async def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
            self._protocol = None

    @property
    def description(self) -> str:
        return f"udp://{self._host}:{self._port}"


def _parse_address(address: str, selection: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ConfigError(f"Output address must be host:port, got {selection!r}")
    return host.strip("[]"), int(port)


def _open_file(path_str: str) -> StreamSink:
    path = Path(path_str).expanduser().resolve()
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o640)
    return StreamSink(os.fdopen(fd, "ab"), name=f"file://{path}")


async def open_output(selection: str = "") -> OutputSink:
    """Open the output sink described by ``selection``."""
    if not selection:
        return StreamSink(sys.stdout.buffer, name="stdout", close_stream=False)

    if selection.startswith(FILE_PREFIX):
        path = selection[len(FILE_PREFIX):]
        if not path:
            raise ConfigError("file:// output needs a path")
        try:
            return _open_file(path)
        except OSError as e:
            raise ConfigError(f"Could not open output file {path}: {e}") from e

    if selection.startswith(TCP_PREFIX):
        sink: TcpSink | UdpSink = TcpSink(
            *_parse_address(selection[len(TCP_PREFIX):], selection)
        )
    elif selection.startswith(UDP_PREFIX):
        sink = UdpSink(*_parse_address(selection[len(UDP_PREFIX):], selection))
    else:
        raise ConfigError(
            f"Invalid output {selection!r}; use file://, tcp:// or udp://"
        )

    try:
        await sink.open()
    except OSError as e:
        raise ConfigError(f"Could not connect to {sink.description}: {e}") from e
    return sink
