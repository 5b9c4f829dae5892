"""TCP and UDP transports on asyncio streams and datagram endpoints."""

from __future__ import annotations

import asyncio
import logging

from ..exceptions import TransportError, TransportErrorKind
from ..models.connection import ConnectionSettings
from .base import READ_CHUNK_SIZE, Transport

logger = logging.getLogger(__name__)

OPEN_TIMEOUT_S = 5.0
UDP_QUEUE_LIMIT = 1024


class TcpTransport(Transport):
    """TCP client link (e.g. SITL on port 5760 or a telemetry bridge)."""

    def __init__(self, settings: ConnectionSettings, open_timeout: float = OPEN_TIMEOUT_S) -> None:
        super().__init__(settings)
        self._open_timeout = open_timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def open(self) -> None:
        if self._open:
            return
        host, port = self.settings.host, self.settings.port_number
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self._open_timeout
            )
        except asyncio.TimeoutError as e:
            raise TransportError(
                TransportErrorKind.TIMEOUT, f"Timed out connecting to {host}:{port}"
            ) from e
        except OSError as e:
            raise TransportError(
                TransportErrorKind.HOST_UNREACHABLE, f"Could not reach {host}:{port}: {e}"
            ) from e
        self._open = True
        logger.info("Connected to TCP %s:%d", host, port)

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        writer, self._writer, self._reader = self._writer, None, None
        try:
            writer.close()
            await writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.warning("Error closing TCP link: %s", e)
        logger.info("Closed TCP %s:%d", self.settings.host, self.settings.port_number)

    async def send(self, data: bytes) -> None:
        if not self._open:
            raise TransportError(TransportErrorKind.WRITE_FAILED, "TCP link is not open")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, ConnectionError) as e:
            raise TransportError(TransportErrorKind.WRITE_FAILED, str(e)) from e

    async def receive(self) -> bytes:
        if not self._open:
            raise TransportError(TransportErrorKind.READ_FAILED, "TCP link is not open")
        try:
            data = await self._reader.read(READ_CHUNK_SIZE)
        except (OSError, ConnectionError) as e:
            raise TransportError(TransportErrorKind.READ_FAILED, str(e)) from e
        if not data:
            raise TransportError(TransportErrorKind.READ_FAILED, "Connection closed by peer")
        return data


class _DatagramQueue(asyncio.DatagramProtocol):
    def __init__(self, transport: UdpTransport) -> None:
        self._owner = transport

    def datagram_received(self, data: bytes, addr) -> None:
        self._owner._on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.debug("UDP error: %s", exc)

    def connection_lost(self, exc: Exception | None) -> None:
        self._owner._on_closed(exc)


class UdpTransport(Transport):
    """UDP link.

    With a host configured, datagrams go to ``host:port_number``. Without one
    the transport listens on ``port_number`` and replies to the most recent
    sender. Datagrams may be lost or reordered; a full inbound queue drops
    the newest datagram.
    """

    preserves_boundaries = True

    def __init__(self, settings: ConnectionSettings) -> None:
        super().__init__(settings)
        self._endpoint: asyncio.DatagramTransport | None = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=UDP_QUEUE_LIMIT)
        self._peer = None
        self.dropped = 0

    async def open(self) -> None:
        if self._open:
            return
        loop = asyncio.get_running_loop()
        s = self.settings
        try:
            if s.listen:
                self._endpoint, _ = await loop.create_datagram_endpoint(
                    lambda: _DatagramQueue(self), local_addr=("0.0.0.0", s.port_number)
                )
            else:
                self._endpoint, _ = await loop.create_datagram_endpoint(
                    lambda: _DatagramQueue(self), remote_addr=(s.host, s.port_number)
                )
                self._peer = (s.host, s.port_number)
        except OSError as e:
            kind = TransportErrorKind.PORT_UNAVAILABLE if s.listen else TransportErrorKind.HOST_UNREACHABLE
            raise TransportError(kind, f"Could not open UDP {s.describe()}: {e}") from e
        self._open = True
        logger.info("Opened UDP %s", s.describe())

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        endpoint, self._endpoint = self._endpoint, None
        endpoint.close()
        logger.info("Closed UDP %s", self.settings.describe())

    async def send(self, data: bytes) -> None:
        if not self._open:
            raise TransportError(TransportErrorKind.WRITE_FAILED, "UDP link is not open")
        if self._peer is None:
            # Listening and nobody has spoken yet
            logger.debug("No UDP peer yet, dropping %d bytes", len(data))
            return
        try:
            if self.settings.listen:
                self._endpoint.sendto(data, self._peer)
            else:
                self._endpoint.sendto(data)
        except OSError as e:
            raise TransportError(TransportErrorKind.WRITE_FAILED, str(e)) from e

    async def receive(self) -> bytes:
        if not self._open:
            raise TransportError(TransportErrorKind.READ_FAILED, "UDP link is not open")
        item = await self._queue.get()
        if isinstance(item, TransportError):
            raise item
        return item

    def _on_datagram(self, data: bytes, addr) -> None:
        if self.settings.listen:
            self._peer = addr
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            self.dropped += 1

    def _on_closed(self, exc: Exception | None) -> None:
        if exc is not None:
            error = TransportError(TransportErrorKind.READ_FAILED, str(exc))
            try:
                self._queue.put_nowait(error)
            except asyncio.QueueFull:
                pass
