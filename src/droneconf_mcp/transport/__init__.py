"""Physical channels: serial, TCP and UDP."""

from __future__ import annotations

from ..models.connection import ConnectionSettings, TransportKind
from .base import Transport
from .network import TcpTransport, UdpTransport
from .serial_connection import SerialTransport, list_serial_ports


def create_transport(settings: ConnectionSettings) -> Transport:
    """Pick the transport implementation for ``settings.kind``."""
    if settings.kind is TransportKind.SERIAL:
        return SerialTransport(settings)
    if settings.kind is TransportKind.TCP:
        return TcpTransport(settings)
    if settings.kind is TransportKind.UDP:
        return UdpTransport(settings)
    raise ValueError(f"Unsupported transport kind: {settings.kind!r}")


async def open_transport(settings: ConnectionSettings) -> Transport:
    """Create and open a transport.

    Raises:
        TransportError: If the channel cannot be opened.
    """
    transport = create_transport(settings)
    await transport.open()
    return transport


__all__ = [
    "Transport",
    "SerialTransport",
    "TcpTransport",
    "UdpTransport",
    "create_transport",
    "open_transport",
    "list_serial_ports",
]
