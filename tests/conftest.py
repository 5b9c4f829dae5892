"""Shared fixtures: an in-memory transport and a scripted vehicle."""

from __future__ import annotations

import asyncio
import struct

import pytest_asyncio

from droneconf_mcp.exceptions import TransportError, TransportErrorKind
from droneconf_mcp.models.connection import ConnectionSettings, SessionConfig
from droneconf_mcp.protocol.framing import Frame, FrameDecoder
from droneconf_mcp.protocol.messages import (
    MessageId,
    build_heartbeat,
    build_param_value,
)
from droneconf_mcp.protocol.parser import parse_param_request_read, parse_param_set
from droneconf_mcp.services.calibration import CalibrationConfig
from droneconf_mcp.services.commands import CommandConfig
from droneconf_mcp.services.parameters import ParameterSyncConfig
from droneconf_mcp.station import GroundStation, StationConfig
from droneconf_mcp.transport.base import Transport

TCP_SETTINGS = ConnectionSettings.tcp("127.0.0.1", 5760)


async def settle(seconds: float = 0.02) -> None:
    """Let the read loop and posted callbacks run."""
    await asyncio.sleep(seconds)


class FakeVehicle:
    """Decodes what the station sends and answers through registered handlers."""

    def __init__(self) -> None:
        self.heartbeat_on_open = True
        self.handlers = {}
        self.received: list[Frame] = []
        self._decoder = FrameDecoder()

    def on(self, message_id, handler) -> None:
        """``handler(frame)`` returns an iterable of raw frames to send back."""
        self.handlers[message_id] = handler

    def handle(self, data: bytes) -> list[bytes]:
        replies = []
        for item in self._decoder.feed(data):
            if isinstance(item, Frame):
                self.received.append(item)
                handler = self.handlers.get(item.message_id)
                if handler is not None:
                    replies.extend(handler(item) or ())
        return replies

    def frames(self, message_id) -> list[Frame]:
        return [f for f in self.received if f.message_id == message_id]


class LoopbackTransport(Transport):
    """Transport whose far end is a :class:`FakeVehicle`."""

    def __init__(self, settings, vehicle: FakeVehicle, open_error=None) -> None:
        super().__init__(settings)
        self.vehicle = vehicle
        self.open_error = open_error
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[bytes] = []

    async def open(self) -> None:
        if self.open_error is not None:
            raise self.open_error
        self._open = True
        if self.vehicle.heartbeat_on_open:
            self.inject(build_heartbeat(vehicle_type=2, autopilot=3))

    async def close(self) -> None:
        if self._open:
            self._open = False
            self.inbound.put_nowait(None)

    async def send(self, data: bytes) -> None:
        if not self._open:
            raise TransportError(TransportErrorKind.WRITE_FAILED, "closed")
        self.sent.append(data)
        for reply in self.vehicle.handle(data):
            self.inject(reply)

    async def receive(self) -> bytes:
        item = await self.inbound.get()
        if item is None:
            raise TransportError(TransportErrorKind.READ_FAILED, "closed")
        return item

    def inject(self, data: bytes) -> None:
        self.inbound.put_nowait(data)

    def drop(self) -> None:
        """Simulate the cable being pulled."""
        self._open = False
        self.inbound.put_nowait(None)


class FakeLink:
    """Transport factory handing out loopback transports to one vehicle."""

    def __init__(self, vehicle: FakeVehicle | None = None) -> None:
        self.vehicle = vehicle or FakeVehicle()
        self.transports: list[LoopbackTransport] = []
        self.open_error = None

    def __call__(self, settings) -> LoopbackTransport:
        transport = LoopbackTransport(settings, self.vehicle, self.open_error)
        self.transports.append(transport)
        return transport

    @property
    def transport(self) -> LoopbackTransport:
        return self.transports[-1]

    def inject(self, data: bytes) -> None:
        self.transport.inject(data)


def _f32(value: float) -> float:
    return struct.unpack("<f", struct.pack("<f", value))[0]


class SimulatedParameters:
    """Vehicle-side parameter table answering list, read and set requests."""

    def __init__(self, vehicle: FakeVehicle, values: dict[str, float], drop=()) -> None:
        self.names = list(values)
        self.values = {k: _f32(v) for k, v in values.items()}
        self.drop = set(drop)  # indices lost on the first list reply
        self.accept_writes = True
        vehicle.on(MessageId.PARAM_REQUEST_LIST, self._on_list)
        vehicle.on(MessageId.PARAM_REQUEST_READ, self._on_read)
        vehicle.on(MessageId.PARAM_SET, self._on_set)

    def report(self, index: int) -> bytes:
        name = self.names[index]
        return build_param_value(name, self.values[name], index, len(self.names))

    def _on_list(self, frame):
        replies = [self.report(i) for i in range(len(self.names)) if i not in self.drop]
        self.drop.clear()
        return replies

    def _on_read(self, frame):
        request = parse_param_request_read(frame)
        return [self.report(request.index)]

    def _on_set(self, frame):
        request = parse_param_set(frame)
        if self.accept_writes:
            self.values[request.name] = request.value
        index = self.names.index(request.name)
        return [self.report(index)]


def fast_config(**session) -> StationConfig:
    session_config = SessionConfig(
        connect_timeout=0.5,
        heartbeat_timeout=5.0,
        watchdog_interval=0.05,
        gcs_heartbeat_interval=0,
        reconnect_initial_delay=0.01,
        reconnect_max_delay=0.05,
    )
    for key, value in session.items():
        setattr(session_config, key, value)
    return StationConfig(
        session=session_config,
        parameters=ParameterSyncConfig(
            download_timeout=0.1,
            download_retries=3,
            missing_chunk_interval=0,
            write_timeout=0.1,
            write_retries=1,
        ),
        commands=CommandConfig(ack_timeout=0.1),
        calibration=CalibrationConfig(),
    )


@pytest_asyncio.fixture
async def link():
    return FakeLink()


@pytest_asyncio.fixture
async def station(link):
    gs = GroundStation(fast_config(), transport_factory=link)
    await gs.connect(TCP_SETTINGS)
    await settle()
    yield gs
    await gs.close()
