"""Transport interface shared by the serial, TCP and UDP links."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..models.connection import ConnectionSettings

READ_CHUNK_SIZE = 4096


class Transport(ABC):
    """One physical channel carrying raw bytes.

    Usage::

        transport = TcpTransport(ConnectionSettings.tcp("127.0.0.1"))
        await transport.open()
        await transport.send(frame_bytes)
        data = await transport.receive()
        await transport.close()
    """

    # True when each receive() returns one whole datagram
    preserves_boundaries = False

    def __init__(self, settings: ConnectionSettings) -> None:
        self.settings = settings
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @abstractmethod
    async def open(self) -> None:
        """Open the channel.

        Raises:
            TransportError: ``PORT_UNAVAILABLE``, ``TIMEOUT`` or ``HOST_UNREACHABLE``.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Write bytes.

        Raises:
            TransportError: ``WRITE_FAILED``.
        """

    @abstractmethod
    async def receive(self) -> bytes:
        """Wait for the next chunk of inbound bytes.

        May return ``b""`` when a poll interval elapses with no data.

        Raises:
            TransportError: ``READ_FAILED`` once the channel is gone.
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.settings.describe()}, open={self._open})"
