"""Message and command identifiers plus frame builders.

Message ids and payload layouts follow the MAVLink common set where a
matching message exists. All multi-byte fields are little-endian.
"""

from __future__ import annotations

import math
import struct
from enum import IntEnum, IntFlag

from .framing import build_frame


class MessageId(IntEnum):
    """Message identifiers carried in the frame header."""

    HEARTBEAT = 0
    PARAM_REQUEST_READ = 20
    PARAM_REQUEST_LIST = 21
    PARAM_VALUE = 22
    PARAM_SET = 23
    COMMAND_LONG = 76
    COMMAND_ACK = 77
    CALIBRATION_PROGRESS = 191
    STATUSTEXT = 253


class CommandId(IntEnum):
    """Command identifiers used in command-long / command-ack."""

    DO_MOTOR_TEST = 209
    PREFLIGHT_CALIBRATION = 241
    PREFLIGHT_REBOOT_SHUTDOWN = 246
    COMPONENT_ARM_DISARM = 400
    ACCELCAL_VEHICLE_POS = 42429


class CommandResult(IntEnum):
    """Result codes carried by command-ack."""

    ACCEPTED = 0
    TEMPORARILY_REJECTED = 1
    DENIED = 2
    UNSUPPORTED = 3
    FAILED = 4
    IN_PROGRESS = 5
    CANCELLED = 6


class CalibrationFlag(IntFlag):
    """Bit flags in the calibration-progress message."""

    NONE = 0
    COMPLETE = 0x01
    FAILED = 0x02
    RESTART = 0x04


class MotorTestThrottleType(IntEnum):
    PERCENT = 0
    PWM = 1
    PILOT = 2
    COMPASS_CAL = 3


class MotorTestOrder(IntEnum):
    DEFAULT = 0
    SEQUENCE = 1


# Heartbeat base_mode bit set while the vehicle is armed
MODE_FLAG_SAFETY_ARMED = 0x80

# Magic param2 value that bypasses pre-arm checks
ARM_FORCE_MAGIC = 21196

PARAM_NAME_SIZE = 16
STATUSTEXT_SIZE = 50
PARAM_TYPE_REAL32 = 9
PARAM_INDEX_BY_NAME = 0xFFFF

_HEARTBEAT = struct.Struct("<IBBBBB")
_PARAM_REQUEST_READ = struct.Struct("<h16s")
_PARAM_VALUE = struct.Struct("<fHH16sB")
_PARAM_SET = struct.Struct("<f16sB")
_COMMAND_LONG = struct.Struct("<7fHB")
_COMMAND_ACK = struct.Struct("<HB")
_CALIBRATION_PROGRESS = struct.Struct("<BBBB")
_STATUSTEXT = struct.Struct(f"<B{STATUSTEXT_SIZE}s")

# Fixed payload lengths, used by the decoder to reject malformed frames
PAYLOAD_LENGTHS: dict[int, int] = {
    MessageId.HEARTBEAT: _HEARTBEAT.size,
    MessageId.PARAM_REQUEST_READ: _PARAM_REQUEST_READ.size,
    MessageId.PARAM_REQUEST_LIST: 0,
    MessageId.PARAM_VALUE: _PARAM_VALUE.size,
    MessageId.PARAM_SET: _PARAM_SET.size,
    MessageId.COMMAND_LONG: _COMMAND_LONG.size,
    MessageId.COMMAND_ACK: _COMMAND_ACK.size,
    MessageId.CALIBRATION_PROGRESS: _CALIBRATION_PROGRESS.size,
    MessageId.STATUSTEXT: _STATUSTEXT.size,
}


def encode_param_name(name: str) -> bytes:
    """Encode a parameter name as a 16-byte, null-padded ASCII field."""
    raw = name.encode("ascii")
    if not raw or len(raw) > PARAM_NAME_SIZE:
        raise ValueError(
            f"Parameter name must be 1-{PARAM_NAME_SIZE} ASCII chars, got {name!r}"
        )
    return raw.ljust(PARAM_NAME_SIZE, b"\x00")


def decode_param_name(raw: bytes) -> str:
    return raw.split(b"\x00")[0].decode("ascii", errors="replace")


def build_heartbeat(
    vehicle_type: int = 6,
    autopilot: int = 8,
    base_mode: int = 0,
    custom_mode: int = 0,
    system_status: int = 0,
) -> bytes:
    """Build a heartbeat. Defaults describe a ground control station."""
    payload = _HEARTBEAT.pack(
        custom_mode, vehicle_type, autopilot, base_mode, system_status, 3
    )
    return build_frame(MessageId.HEARTBEAT, payload)


def build_param_request_list() -> bytes:
    """Request the full parameter table."""
    return build_frame(MessageId.PARAM_REQUEST_LIST)


def build_param_request_read(index: int) -> bytes:
    """Request one parameter by its table index.

    Args:
        index: Parameter index 0-32767.
    """
    if not 0 <= index <= 0x7FFF:
        raise ValueError(f"Parameter index must be 0-32767, got {index}")
    payload = _PARAM_REQUEST_READ.pack(index, b"\x00" * PARAM_NAME_SIZE)
    return build_frame(MessageId.PARAM_REQUEST_READ, payload)


def build_param_set(name: str, value: float) -> bytes:
    """Build a parameter write request."""
    payload = _PARAM_SET.pack(value, encode_param_name(name), PARAM_TYPE_REAL32)
    return build_frame(MessageId.PARAM_SET, payload)


def build_param_value(name: str, value: float, index: int, count: int) -> bytes:
    """Build a parameter report, as the vehicle sends it."""
    payload = _PARAM_VALUE.pack(
        value, count, index, encode_param_name(name), PARAM_TYPE_REAL32
    )
    return build_frame(MessageId.PARAM_VALUE, payload)


def build_command_long(
    command: int,
    params: tuple[float, ...] | list[float] = (),
    confirmation: int = 0,
) -> bytes:
    """Build a command-long frame.

    Args:
        command: Command identifier.
        params: Up to seven numeric parameters; missing ones are zero.
        confirmation: Retransmission counter, always 0 for first sends.
    """
    if len(params) > 7:
        raise ValueError(f"command-long takes at most 7 params, got {len(params)}")
    values = [float(p) for p in params] + [0.0] * (7 - len(params))
    if not all(math.isfinite(v) for v in values):
        raise ValueError(f"command-long params must be finite, got {values}")
    payload = _COMMAND_LONG.pack(*values, int(command), confirmation)
    return build_frame(MessageId.COMMAND_LONG, payload)


def build_command_ack(command: int, result: int) -> bytes:
    return build_frame(MessageId.COMMAND_ACK, _COMMAND_ACK.pack(int(command), int(result)))


def build_calibration_progress(
    calibration_type: int,
    percent: int,
    step: int = 0,
    flags: int = CalibrationFlag.NONE,
) -> bytes:
    """Build a calibration-progress frame, as the vehicle sends it."""
    if not 0 <= percent <= 100:
        raise ValueError(f"Percent must be 0-100, got {percent}")
    payload = _CALIBRATION_PROGRESS.pack(
        int(calibration_type), percent, step, int(flags)
    )
    return build_frame(MessageId.CALIBRATION_PROGRESS, payload)


def build_statustext(severity: int, text: str) -> bytes:
    raw = text.encode("ascii", errors="replace")[:STATUSTEXT_SIZE]
    payload = _STATUSTEXT.pack(severity, raw.ljust(STATUSTEXT_SIZE, b"\x00"))
    return build_frame(MessageId.STATUSTEXT, payload)
