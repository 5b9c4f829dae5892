"""Serial (UART / USB-CDC) transport built on pyserial.

pyserial is blocking, so reads and writes run in the default executor. Reads
use a short timeout so a cancelled receive never holds the port for long.
"""

from __future__ import annotations

import asyncio
import logging

import serial
from serial.tools import list_ports

from ..exceptions import TransportError, TransportErrorKind
from ..models.connection import ConnectionSettings, SerialPortInfo
from .base import Transport

logger = logging.getLogger(__name__)

READ_TIMEOUT_S = 0.1
WRITE_TIMEOUT_S = 1.0


def list_serial_ports() -> list[SerialPortInfo]:
    """Enumerate serial ports. Works whether or not a link is open."""
    ports = []
    for info in sorted(list_ports.comports(), key=lambda p: p.device):
        label = info.description if info.description and info.description != "n/a" else ""
        ports.append(SerialPortInfo(name=info.device, label=label))
    return ports


class SerialTransport(Transport):
    """Serial link to the autopilot."""

    def __init__(self, settings: ConnectionSettings, serial_cls: type | None = None) -> None:
        super().__init__(settings)
        self._serial_cls = serial_cls or serial.Serial
        self._port = None

    async def open(self) -> None:
        """Open the serial device with the configured line settings.

        Raises:
            TransportError: ``PORT_UNAVAILABLE`` if the device cannot be opened.
        """
        if self._open:
            return
        s = self.settings
        try:
            self._port = await asyncio.to_thread(
                self._serial_cls,
                s.device,
                s.baud_rate,
                bytesize=s.data_bits,
                parity=s.parity,
                stopbits=s.stop_bits,
                timeout=READ_TIMEOUT_S,
                write_timeout=WRITE_TIMEOUT_S,
            )
        except (serial.SerialException, OSError, ValueError) as e:
            raise TransportError(
                TransportErrorKind.PORT_UNAVAILABLE,
                f"Could not open {s.device}: {e}",
            ) from e
        self._open = True
        logger.info("Opened serial port %s at %d baud", s.device, s.baud_rate)

    async def close(self) -> None:
        if not self._open:
            return
        port, self._port = self._port, None
        self._open = False
        try:
            port.close()
        except (serial.SerialException, OSError) as e:
            logger.warning("Error closing %s: %s", self.settings.device, e)
        logger.info("Closed serial port %s", self.settings.device)

    async def send(self, data: bytes) -> None:
        if not self._open:
            raise TransportError(TransportErrorKind.WRITE_FAILED, "Serial port is not open")
        try:
            await asyncio.to_thread(self._port.write, data)
        except (serial.SerialException, OSError) as e:
            raise TransportError(TransportErrorKind.WRITE_FAILED, str(e)) from e

    async def receive(self) -> bytes:
        if not self._open:
            raise TransportError(TransportErrorKind.READ_FAILED, "Serial port is not open")
        try:
            return await asyncio.to_thread(self._read_available)
        except (serial.SerialException, OSError, TypeError, AttributeError) as e:
            # TypeError/AttributeError: port closed underneath a pending read
            raise TransportError(TransportErrorKind.READ_FAILED, str(e)) from e

    def _read_available(self) -> bytes:
        port = self._port
        if port is None:
            raise TransportError(TransportErrorKind.READ_FAILED, "Serial port closed")
        waiting = port.in_waiting
        return bytes(port.read(waiting or 1))
