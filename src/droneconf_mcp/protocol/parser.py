"""Typed decoding of frames received from the vehicle."""

from __future__ import annotations

import struct
from dataclasses import dataclass

from .framing import Frame
from .messages import (
    MODE_FLAG_SAFETY_ARMED,
    PARAM_INDEX_BY_NAME,
    CalibrationFlag,
    MessageId,
    decode_param_name,
)


@dataclass
class Heartbeat:
    """Parsed heartbeat."""

    vehicle_type: int
    autopilot: int
    base_mode: int
    custom_mode: int
    system_status: int

    @property
    def armed(self) -> bool:
        return bool(self.base_mode & MODE_FLAG_SAFETY_ARMED)


@dataclass
class ParamValue:
    """Parsed parameter report."""

    name: str
    value: float
    index: int
    count: int

    @property
    def has_index(self) -> bool:
        """False for replies to by-name reads, which carry no table index."""
        return self.index != PARAM_INDEX_BY_NAME


@dataclass
class ParamSet:
    """Parsed parameter write request (vehicle side of the exchange)."""

    name: str
    value: float


@dataclass
class ParamRequestRead:
    index: int


@dataclass
class CommandLong:
    command: int
    params: tuple[float, ...]
    confirmation: int = 0


@dataclass
class CommandAck:
    """Parsed command acknowledgement."""

    command: int
    result: int


@dataclass
class CalibrationReport:
    """Parsed calibration-progress message."""

    calibration_type: int
    percent: int
    step: int
    flags: CalibrationFlag

    @property
    def complete(self) -> bool:
        return CalibrationFlag.COMPLETE in self.flags

    @property
    def failed(self) -> bool:
        return CalibrationFlag.FAILED in self.flags

    @property
    def restart(self) -> bool:
        return CalibrationFlag.RESTART in self.flags


@dataclass
class StatusText:
    severity: int
    text: str


def parse_heartbeat(frame: Frame) -> Heartbeat | None:
    if frame.message_id != MessageId.HEARTBEAT or len(frame.payload) < 9:
        return None
    custom_mode, vehicle_type, autopilot, base_mode, status, _version = struct.unpack(
        "<IBBBBB", frame.payload[:9]
    )
    return Heartbeat(
        vehicle_type=vehicle_type,
        autopilot=autopilot,
        base_mode=base_mode,
        custom_mode=custom_mode,
        system_status=status,
    )


def parse_param_value(frame: Frame) -> ParamValue | None:
    """Parse a parameter report.

    Payload: float value, uint16 count, uint16 index, char[16] name,
    uint8 type.
    """
    if frame.message_id != MessageId.PARAM_VALUE or len(frame.payload) < 25:
        return None
    value, count, index, raw_name, _ptype = struct.unpack(
        "<fHH16sB", frame.payload[:25]
    )
    name = decode_param_name(raw_name)
    if not name:
        return None
    return ParamValue(name=name, value=value, index=index, count=count)


def parse_param_set(frame: Frame) -> ParamSet | None:
    if frame.message_id != MessageId.PARAM_SET or len(frame.payload) < 21:
        return None
    value, raw_name, _ptype = struct.unpack("<f16sB", frame.payload[:21])
    return ParamSet(name=decode_param_name(raw_name), value=value)


def parse_param_request_read(frame: Frame) -> ParamRequestRead | None:
    if frame.message_id != MessageId.PARAM_REQUEST_READ or len(frame.payload) < 18:
        return None
    index, _name = struct.unpack("<h16s", frame.payload[:18])
    return ParamRequestRead(index=index)


def parse_command_long(frame: Frame) -> CommandLong | None:
    if frame.message_id != MessageId.COMMAND_LONG or len(frame.payload) < 31:
        return None
    fields = struct.unpack("<7fHB", frame.payload[:31])
    return CommandLong(
        command=fields[7], params=tuple(fields[:7]), confirmation=fields[8]
    )


def parse_command_ack(frame: Frame) -> CommandAck | None:
    if frame.message_id != MessageId.COMMAND_ACK or len(frame.payload) < 3:
        return None
    command, result = struct.unpack("<HB", frame.payload[:3])
    return CommandAck(command=command, result=result)


def parse_calibration_progress(frame: Frame) -> CalibrationReport | None:
    if frame.message_id != MessageId.CALIBRATION_PROGRESS or len(frame.payload) < 4:
        return None
    cal_type, percent, step, flags = struct.unpack("<BBBB", frame.payload[:4])
    return CalibrationReport(
        calibration_type=cal_type,
        percent=min(percent, 100),
        step=step,
        flags=CalibrationFlag(flags & 0x07),
    )


def parse_statustext(frame: Frame) -> StatusText | None:
    if frame.message_id != MessageId.STATUSTEXT or len(frame.payload) < 1:
        return None
    severity = frame.payload[0]
    text = frame.payload[1:].split(b"\x00")[0].decode("ascii", errors="replace")
    return StatusText(severity=severity, text=text)


def parse_message(frame: Frame):
    """Auto-dispatch a frame to the matching parser.

    Returns the parsed dataclass, or the raw Frame if no parser matches.
    """
    parsers = {
        MessageId.HEARTBEAT: parse_heartbeat,
        MessageId.PARAM_VALUE: parse_param_value,
        MessageId.PARAM_SET: parse_param_set,
        MessageId.PARAM_REQUEST_READ: parse_param_request_read,
        MessageId.COMMAND_LONG: parse_command_long,
        MessageId.COMMAND_ACK: parse_command_ack,
        MessageId.CALIBRATION_PROGRESS: parse_calibration_progress,
        MessageId.STATUSTEXT: parse_statustext,
    }
    parser = parsers.get(frame.message_id)
    if parser:
        result = parser(frame)
        if result is not None:
            return result
    return frame
