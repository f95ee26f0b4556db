#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
DeviceTransport -- Moves framed, obfuscated payloads to and from a single device endpoint.

Two variants are provided:

  1. StreamTransport: a persistent TCP connection, reused across commands, with each payload
     preceded by a 4-byte length.
  2. DatagramTransport: one UDP socket per request; a single datagram is sent and a single
     reply datagram is awaited.

Transports never retry on their own; retry policy belongs to CommandQueue. Every transport
releases its socket on every exit path, including cancellation.
"""

from __future__ import annotations

import asyncio
from asyncio import Future
from abc import abstractmethod

from .internal_types import *
from .pkg_logging import logger
from .endpoint import Endpoint, TransportKind
from .exceptions import ProtocolTimeoutError, TransportError
from .codec import decode_frame, read_stream_frame

class DeviceTransport(AsyncContextManager['DeviceTransport']):
    """Abstract transport owning at most one live connection to one endpoint."""

    endpoint: Endpoint
    """The device this transport talks to"""

    one_shot: bool = False
    """If True, the transport should be closed after every request/response exchange."""

    def __init__(self, endpoint: Endpoint) -> None:
        self.endpoint = endpoint

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True if a connection/socket is currently held."""
        raise NotImplementedError()

    @abstractmethod
    async def open(self, timeout: Optional[float]=None) -> None:
        """Opens the connection if it is not already open.

        Raises ProtocolTimeoutError if the connection could not be established within timeout
        seconds, or TransportError if the connection was refused or otherwise failed."""
        raise NotImplementedError()

    @abstractmethod
    async def write(self, frame: bytes) -> None:
        """Sends one complete frame (as produced by codec.encode_frame)."""
        raise NotImplementedError()

    @abstractmethod
    async def read(self, timeout: Optional[float]=None) -> bytes:
        """Waits up to timeout seconds for one complete frame and returns its decoded plaintext.

        Raises ProtocolTimeoutError on deadline expiry or TransportError if the connection breaks."""
        raise NotImplementedError()

    @abstractmethod
    async def close(self) -> None:
        """Releases the connection. Safe to call when already closed."""
        raise NotImplementedError()

    async def reset(self) -> None:
        """Drops the current connection after a failure so that the next request starts clean."""
        await self.close()

    async def __aenter__(self) -> Self:
        await self.open()
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        await self.close()
        return False

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.endpoint})"

    def __repr__(self) -> str:
        return str(self)

class StreamTransport(DeviceTransport):
    """A persistent TCP connection to a device."""

    reader: Optional[asyncio.StreamReader] = None
    writer: Optional[asyncio.StreamWriter] = None

    connect_count: int = 0
    """The number of connections made over the life of this transport"""

    @property
    def is_open(self) -> bool:
        return self.writer is not None and not self.writer.is_closing()

    async def open(self, timeout: Optional[float]=None) -> None:
        if self.is_open:
            return
        # A half-closed connection may still be hanging around
        self._abort()
        logger.debug(f"Connecting to {self.endpoint}")
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.endpoint.host, self.endpoint.port),
                timeout
              )
        except asyncio.TimeoutError as e:
            raise ProtocolTimeoutError(self.endpoint, timeout, f"Timed out after {timeout} seconds connecting to {self.endpoint}") from e
        except OSError as e:
            raise TransportError(self.endpoint, f"Unable to connect to {self.endpoint}: {e}") from e
        self.connect_count += 1
        logger.info(f"Connected to {self.endpoint}")

    async def write(self, frame: bytes) -> None:
        if not self.is_open:
            # The previous connection was dropped; reconnect once and let any failure surface
            await self.open()
        if self.writer is None:
            raise TransportError(self.endpoint, f"Not connected to {self.endpoint}")
        logger.debug(f"Writing {len(frame)} bytes to {self.endpoint}: {frame.hex(' ')}")
        try:
            self.writer.write(frame)
            await self.writer.drain()
        except OSError as e:
            self._abort()
            raise TransportError(self.endpoint, f"Connection to {self.endpoint} failed while writing: {e}") from e
        except BaseException:
            self._abort()
            raise

    async def read(self, timeout: Optional[float]=None) -> bytes:
        if self.reader is None:
            raise TransportError(self.endpoint, f"Not connected to {self.endpoint}")
        try:
            plain = await asyncio.wait_for(read_stream_frame(self.reader), timeout)
        except asyncio.TimeoutError as e:
            # The stream position is unknown after an abandoned read, and a late reply
            # must not be read by the next command.
            self._abort()
            raise ProtocolTimeoutError(self.endpoint, timeout) from e
        except asyncio.IncompleteReadError as e:
            self._abort()
            raise TransportError(self.endpoint, f"Connection closed by {self.endpoint} after {len(e.partial)} bytes of a {e.expected}-byte read") from e
        except OSError as e:
            self._abort()
            raise TransportError(self.endpoint, f"Connection to {self.endpoint} failed while reading: {e}") from e
        except BaseException:
            self._abort()
            raise
        logger.debug(f"Read {len(plain)}-byte payload from {self.endpoint}")
        return plain

    def _abort(self) -> None:
        writer = self.writer
        self.reader = None
        self.writer = None
        if writer is not None:
            try:
                writer.close()
            except Exception as e:
                logger.debug(f"Error closing connection to {self.endpoint}: {e}")

    async def close(self) -> None:
        writer = self.writer
        self._abort()
        if writer is not None:
            try:
                await writer.wait_closed()
            except Exception as e:
                logger.debug(f"Error waiting for connection to {self.endpoint} to close: {e}")
            logger.info(f"Disconnected from {self.endpoint}")

class _DatagramReplyProtocol(asyncio.DatagramProtocol):
    """An adapter between the asyncio datagram transport and DatagramTransport. One instance is
       created per opened socket, stamped with the generation that opened it."""

    owner: DatagramTransport
    generation: int

    def __init__(self, owner: DatagramTransport, generation: int):
        self.owner = owner
        self.generation = generation

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.owner._on_datagram(self.generation, data, addr)

    def error_received(self, exc: Exception) -> None:
        self.owner._on_error(self.generation, exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.owner._on_connection_lost(self.generation, exc)

class DatagramTransport(DeviceTransport):
    """A one-shot UDP exchange with a device: open, send one datagram, await one reply, close."""

    one_shot = True

    generation: int = 0
    """Incremented each time a socket is opened. Replies stamped with an older generation are late
       and are discarded."""

    discarded_count: int = 0
    """The number of late or unsolicited datagrams that have been dropped"""

    _transport: Optional[asyncio.DatagramTransport] = None
    _reply: Optional[Future[bytes]] = None

    @property
    def is_open(self) -> bool:
        return self._transport is not None

    async def open(self, timeout: Optional[float]=None) -> None:
        if self.is_open:
            return
        loop = asyncio.get_running_loop()
        self.generation += 1
        generation = self.generation
        self._reply = loop.create_future()
        logger.debug(f"Opening datagram socket to {self.endpoint} (generation {generation})")
        try:
            # Note: asyncio datagram transports do not inherit from asyncio.DatagramTransport, hence the type: ignore
            transport, _ = await asyncio.wait_for(
                loop.create_datagram_endpoint(
                    lambda: _DatagramReplyProtocol(self, generation),
                    remote_addr=self.endpoint.addr
                  ),
                timeout
              )
        except asyncio.TimeoutError as e:
            self._drop_reply()
            raise ProtocolTimeoutError(self.endpoint, timeout, f"Timed out after {timeout} seconds opening socket to {self.endpoint}") from e
        except OSError as e:
            self._drop_reply()
            raise TransportError(self.endpoint, f"Unable to open datagram socket to {self.endpoint}: {e}") from e
        self._transport = transport # type: ignore[assignment]

    async def write(self, frame: bytes) -> None:
        if not self.is_open:
            await self.open()
        if self._transport is None:
            raise TransportError(self.endpoint, f"No datagram socket open to {self.endpoint}")
        logger.debug(f"Sending {len(frame)}-byte datagram to {self.endpoint}: {frame.hex(' ')}")
        try:
            self._transport.sendto(frame)
        except OSError as e:
            await self.close()
            raise TransportError(self.endpoint, f"Unable to send datagram to {self.endpoint}: {e}") from e

    async def read(self, timeout: Optional[float]=None) -> bytes:
        reply = self._reply
        if reply is None:
            raise TransportError(self.endpoint, f"No datagram socket open to {self.endpoint}")
        try:
            data = await asyncio.wait_for(reply, timeout)
        except asyncio.TimeoutError as e:
            raise ProtocolTimeoutError(self.endpoint, timeout) from e
        finally:
            # one reply per socket; anything arriving later belongs to a dead generation
            await self.close()
        logger.debug(f"Received {len(data)}-byte datagram from {self.endpoint}")
        return decode_frame(data, TransportKind.DATAGRAM)

    def _on_datagram(self, generation: int, data: bytes, addr: Tuple[str, int]) -> None:
        reply = self._reply
        if generation != self.generation or reply is None or reply.done():
            self.discarded_count += 1
            logger.debug(f"Discarding late datagram from {addr} for {self.endpoint} (generation {generation}, current {self.generation})")
            return
        reply.set_result(data)

    def _on_error(self, generation: int, exc: Exception) -> None:
        reply = self._reply
        if generation != self.generation or reply is None or reply.done():
            logger.debug(f"Ignoring socket error for {self.endpoint} (generation {generation}): {exc}")
            return
        reply.set_exception(TransportError(self.endpoint, f"Datagram exchange with {self.endpoint} failed: {exc}"))

    def _on_connection_lost(self, generation: int, exc: Optional[Exception]) -> None:
        if exc is not None:
            self._on_error(generation, exc)

    def _drop_reply(self) -> None:
        reply = self._reply
        self._reply = None
        if reply is not None:
            if not reply.done():
                reply.cancel()
            elif not reply.cancelled():
                # mark any stored exception as retrieved
                reply.exception()

    async def close(self) -> None:
        transport = self._transport
        self._transport = None
        self._drop_reply()
        if transport is not None:
            transport.close()
            logger.debug(f"Closed datagram socket to {self.endpoint}")

def create_transport(endpoint: Endpoint) -> DeviceTransport:
    """Creates the transport variant matching an endpoint's transport kind."""
    if endpoint.transport_kind == TransportKind.STREAM:
        return StreamTransport(endpoint)
    return DatagramTransport(endpoint)
