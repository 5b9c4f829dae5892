"""Connection settings, link state and session tuning."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_BAUD_RATE = 115200
DEFAULT_TCP_PORT = 5760
DEFAULT_UDP_PORT = 14550

VALID_DATA_BITS = (5, 6, 7, 8)
VALID_PARITIES = ("N", "E", "O", "M", "S")
VALID_STOP_BITS = (1, 1.5, 2)


class TransportKind(str, Enum):
    SERIAL = "serial"
    TCP = "tcp"
    UDP = "udp"


class LinkState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LOST = "lost"


# Reconnect attempts only ever start from LOST
ALLOWED_TRANSITIONS: dict[LinkState, frozenset[LinkState]] = {
    LinkState.DISCONNECTED: frozenset({LinkState.CONNECTING}),
    LinkState.CONNECTING: frozenset({LinkState.CONNECTED, LinkState.DISCONNECTED}),
    LinkState.CONNECTED: frozenset({LinkState.LOST, LinkState.DISCONNECTED}),
    LinkState.LOST: frozenset({LinkState.CONNECTED, LinkState.DISCONNECTED}),
}


@dataclass(frozen=True)
class SerialPortInfo:
    """An enumerated serial port."""

    name: str
    label: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "label": self.label or self.name}


@dataclass(frozen=True)
class ConnectionSettings:
    """Endpoint description for one connection attempt.

    Serial links use ``device`` plus the line settings; TCP and UDP use
    ``host`` and ``port_number``. For UDP an empty host (or ``0.0.0.0``)
    means listen on ``port_number`` and answer whoever talks first.
    """

    kind: TransportKind
    device: str = ""
    baud_rate: int = DEFAULT_BAUD_RATE
    data_bits: int = 8
    parity: str = "N"
    stop_bits: float = 1
    host: str = ""
    port_number: int = 0

    def __post_init__(self) -> None:
        if self.kind is TransportKind.SERIAL:
            if not self.device:
                raise ValueError("Serial connections need a device, e.g. /dev/ttyACM0")
            if self.baud_rate <= 0:
                raise ValueError(f"Baud rate must be positive, got {self.baud_rate}")
            if self.data_bits not in VALID_DATA_BITS:
                raise ValueError(f"Data bits must be one of {VALID_DATA_BITS}, got {self.data_bits}")
            if self.parity not in VALID_PARITIES:
                raise ValueError(f"Parity must be one of {VALID_PARITIES}, got {self.parity!r}")
            if self.stop_bits not in VALID_STOP_BITS:
                raise ValueError(f"Stop bits must be one of {VALID_STOP_BITS}, got {self.stop_bits}")
        else:
            if not 0 < self.port_number <= 65535:
                raise ValueError(f"Port number must be 1-65535, got {self.port_number}")
            if self.kind is TransportKind.TCP and not self.host:
                raise ValueError("TCP connections need a host")

    @classmethod
    def serial(cls, device: str, baud_rate: int = DEFAULT_BAUD_RATE, **line) -> ConnectionSettings:
        return cls(kind=TransportKind.SERIAL, device=device, baud_rate=baud_rate, **line)

    @classmethod
    def tcp(cls, host: str, port_number: int = DEFAULT_TCP_PORT) -> ConnectionSettings:
        return cls(kind=TransportKind.TCP, host=host, port_number=port_number)

    @classmethod
    def udp(cls, host: str = "", port_number: int = DEFAULT_UDP_PORT) -> ConnectionSettings:
        return cls(kind=TransportKind.UDP, host=host, port_number=port_number)

    @property
    def listen(self) -> bool:
        """True for a UDP endpoint that binds locally instead of dialling out."""
        return self.kind is TransportKind.UDP and self.host in ("", "0.0.0.0")

    def describe(self) -> str:
        if self.kind is TransportKind.SERIAL:
            return f"serial:{self.device}@{self.baud_rate}"
        return f"{self.kind.value}:{self.host or '0.0.0.0'}:{self.port_number}"

    def to_dict(self) -> dict:
        if self.kind is TransportKind.SERIAL:
            return {
                "type": self.kind.value,
                "port": self.device,
                "baud": self.baud_rate,
                "data_bits": self.data_bits,
                "parity": self.parity,
                "stop_bits": self.stop_bits,
            }
        return {"type": self.kind.value, "host": self.host, "port": self.port_number}


@dataclass
class SessionConfig:
    """Timing and tolerance knobs for a link session (seconds)."""

    connect_timeout: float = 10.0
    heartbeat_timeout: float = 5.0
    watchdog_interval: float = 0.5
    gcs_heartbeat_interval: float = 1.0
    max_consecutive_frame_errors: int = 20
    reconnect_initial_delay: float = 0.5
    reconnect_max_delay: float = 10.0
    max_reconnect_attempts: int | None = None
    wait_for_heartbeat: bool = True
