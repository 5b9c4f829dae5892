"""Error taxonomy for the ground-station link.

Transport and frame errors are normally absorbed into link state and
counters. Caller-facing operations report the others through
:class:`~droneconf_mcp.models.result.OperationResult` instead of raising;
only opening a connection raises.
"""

from __future__ import annotations

from enum import Enum


class TransportErrorKind(str, Enum):
    PORT_UNAVAILABLE = "port_unavailable"
    TIMEOUT = "timeout"
    HOST_UNREACHABLE = "host_unreachable"
    WRITE_FAILED = "write_failed"
    READ_FAILED = "read_failed"


class LinkErrorKind(str, Enum):
    NOT_CONNECTED = "not_connected"
    DISCONNECTED = "disconnected"


class ProtocolErrorKind(str, Enum):
    WRITE_NOT_CONFIRMED = "write_not_confirmed"
    COUNT_MISMATCH = "count_mismatch"
    DOWNLOAD_INCOMPLETE = "download_incomplete"


class ValidationErrorKind(str, Enum):
    OUT_OF_RANGE = "out_of_range"
    NOT_FINITE = "not_finite"
    INVALID_NAME = "invalid_name"


class CommandErrorKind(str, Enum):
    REJECTED = "rejected"
    TIMEOUT = "timeout"


class ConcurrencyErrorKind(str, Enum):
    REQUEST_PENDING = "request_pending"
    CALIBRATION_ALREADY_IN_PROGRESS = "calibration_already_in_progress"
    DOWNLOAD_IN_PROGRESS = "download_in_progress"


class DroneConfError(Exception):
    """Base class for all ground-station errors."""


class TransportError(DroneConfError):
    """I/O failure on the physical channel. Recoverable by reconnecting."""

    def __init__(self, kind: TransportErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value)


class LinkError(DroneConfError):
    """Session-level failure (not connected, torn down while waiting)."""

    def __init__(self, kind: LinkErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value)


class FrameError(DroneConfError):
    """A malformed frame. Counted by the session, never fatal on its own."""


class ProtocolError(DroneConfError):
    def __init__(self, kind: ProtocolErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value)


class ValidationError(DroneConfError):
    """Rejected on the client side. Nothing was sent to the device."""

    def __init__(self, kind: ValidationErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value)


class CommandError(DroneConfError):
    """A command was rejected by the device or never acknowledged."""

    def __init__(
        self,
        kind: CommandErrorKind,
        message: str = "",
        result_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.result_code = result_code
        super().__init__(message or kind.value)


class PreconditionError(DroneConfError):
    """A required operator confirmation has not been given."""


class ConcurrencyError(DroneConfError):
    """A conflicting operation is already in flight."""

    def __init__(
        self,
        kind: ConcurrencyErrorKind = ConcurrencyErrorKind.REQUEST_PENDING,
        message: str = "",
    ) -> None:
        self.kind = kind
        super().__init__(message or kind.value)


__all__ = [
    "DroneConfError",
    "TransportError",
    "TransportErrorKind",
    "LinkError",
    "LinkErrorKind",
    "FrameError",
    "ProtocolError",
    "ProtocolErrorKind",
    "ValidationError",
    "ValidationErrorKind",
    "CommandError",
    "CommandErrorKind",
    "PreconditionError",
    "ConcurrencyError",
    "ConcurrencyErrorKind",
]
