"""Link session: one transport, framed I/O, liveness and reconnection.

The session owns the transport exclusively. A single read task turns inbound
bytes into frames and posts them to subscribers on the event loop, so slow
consumers never stall decoding. A single writer task drains one FIFO queue,
so frames reach the wire in the order they were submitted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .events import EventStream, Subscription
from .exceptions import (
    ConcurrencyError,
    ConcurrencyErrorKind,
    FrameError,
    LinkError,
    LinkErrorKind,
    TransportError,
    TransportErrorKind,
)
from .models.connection import (
    ALLOWED_TRANSITIONS,
    ConnectionSettings,
    LinkState,
    SessionConfig,
)
from .protocol.framing import Frame, FrameDecoder
from .protocol.messages import PAYLOAD_LENGTHS, MessageId, build_heartbeat
from .protocol.parser import parse_heartbeat, parse_statustext
from .transport import Transport, create_transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ConnectionSettings], Transport]


class LinkSession:
    """Reliable typed-frame link to one vehicle.

    Usage::

        session = LinkSession()
        await session.connect(ConnectionSettings.tcp("127.0.0.1"))
        sub = session.subscribe(lambda frame: print(frame))
        await session.send_frame(build_param_request_list())
        await session.disconnect()
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        transport_factory: TransportFactory = create_transport,
    ) -> None:
        self.config = config or SessionConfig()
        self._transport_factory = transport_factory
        self._state = LinkState.DISCONNECTED
        self._settings: ConnectionSettings | None = None
        self._transport: Transport | None = None
        self._decoder = FrameDecoder(PAYLOAD_LENGTHS)
        self._outbound: asyncio.Queue | None = None
        self._heartbeat_waiter: asyncio.Future | None = None

        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._gcs_heartbeat_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

        self.frames = EventStream("frames")
        self.state_changed = EventStream("state_changed")
        self.heartbeats = EventStream("heartbeats")
        self.status_messages = EventStream("status_messages")

        self.frames_received = 0
        self.frames_sent = 0
        self.frame_errors = 0
        self.consecutive_frame_errors = 0
        self.last_frame_time: float | None = None
        self.reconnect_attempts = 0

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def settings(self) -> ConnectionSettings | None:
        return self._settings

    @property
    def is_connected(self) -> bool:
        return self._state is LinkState.CONNECTED

    def subscribe(self, callback: Callable[[Frame], None]) -> Subscription:
        """Receive every decoded frame, in arrival order."""
        return self.frames.subscribe(callback)

    # -- lifecycle ----------------------------------------------------------

    async def connect(self, settings: ConnectionSettings) -> None:
        """Open the link and wait for the vehicle's first heartbeat.

        Raises:
            TransportError: The channel could not be opened, or no heartbeat
                arrived within ``connect_timeout`` (kind ``TIMEOUT``).
            ConcurrencyError: The session is not disconnected.
        """
        if self._state is not LinkState.DISCONNECTED:
            raise ConcurrencyError(
                ConcurrencyErrorKind.REQUEST_PENDING,
                f"Session is {self._state.value}; disconnect first",
            )
        self._settings = settings
        self._set_state(LinkState.CONNECTING)
        self._outbound = asyncio.Queue()
        self._writer_task = asyncio.create_task(self._write_loop(), name="link-writer")
        if self.config.gcs_heartbeat_interval > 0:
            self._gcs_heartbeat_task = asyncio.create_task(
                self._gcs_heartbeat_loop(), name="link-gcs-heartbeat"
            )
        try:
            await self._establish(settings)
        except (TransportError, LinkError):
            if self._state is LinkState.CONNECTING:
                await self._teardown()
                self._set_state(LinkState.DISCONNECTED)
            raise
        self._set_state(LinkState.CONNECTED)
        self._watchdog_task = asyncio.create_task(self._watchdog_loop(), name="link-watchdog")
        logger.info("Link up: %s", settings.describe())

    async def disconnect(self) -> None:
        """Tear everything down unconditionally. Safe to call in any state."""
        if self._state is LinkState.DISCONNECTED:
            return
        await self._teardown()
        self._set_state(LinkState.DISCONNECTED)
        logger.info("Link closed")

    async def _establish(self, settings: ConnectionSettings) -> None:
        transport = self._transport_factory(settings)
        await transport.open()
        self._transport = transport
        self._decoder.reset()
        self.consecutive_frame_errors = 0
        loop = asyncio.get_running_loop()
        if self.config.wait_for_heartbeat:
            self._heartbeat_waiter = loop.create_future()
        self._reader_task = asyncio.create_task(self._read_loop(transport), name="link-reader")
        try:
            # Some vehicles stay silent until they hear a ground station
            await transport.send(build_heartbeat())
        except TransportError:
            self._heartbeat_waiter = None
            await self._drop_transport()
            raise
        self.frames_sent += 1

        if self._heartbeat_waiter is not None:
            try:
                await asyncio.wait_for(self._heartbeat_waiter, self.config.connect_timeout)
            except asyncio.TimeoutError as e:
                await self._drop_transport()
                raise TransportError(
                    TransportErrorKind.TIMEOUT,
                    f"No heartbeat from {settings.describe()} within "
                    f"{self.config.connect_timeout:g}s",
                ) from e
            except TransportError:
                await self._drop_transport()
                raise
            finally:
                self._heartbeat_waiter = None
        self.last_frame_time = loop.time()

    async def _drop_transport(self) -> None:
        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()
        self._decoder.reset()

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        tasks = [
            t
            for t in (
                self._writer_task,
                self._watchdog_task,
                self._gcs_heartbeat_task,
                self._reconnect_task,
            )
            if t is not None and t is not current
        ]
        self._writer_task = self._watchdog_task = None
        self._gcs_heartbeat_task = self._reconnect_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._heartbeat_waiter is not None and not self._heartbeat_waiter.done():
            self._heartbeat_waiter.set_exception(
                LinkError(LinkErrorKind.DISCONNECTED, "Disconnected while connecting")
            )
        self._fail_queued_sends()
        await self._drop_transport()

    def _fail_queued_sends(self) -> None:
        queue, self._outbound = self._outbound, None
        if queue is None:
            return
        error = LinkError(LinkErrorKind.DISCONNECTED, "Link closed before send")
        while not queue.empty():
            _data, future = queue.get_nowait()
            if not future.done():
                future.set_exception(error)

    def _set_state(self, new: LinkState) -> None:
        old = self._state
        if new is old:
            return
        if new not in ALLOWED_TRANSITIONS[old]:
            raise RuntimeError(f"Illegal link transition {old.value} -> {new.value}")
        self._state = new
        logger.debug("Link state %s -> %s", old.value, new.value)
        self.state_changed.emit(new)

    # -- outbound -------------------------------------------------------------

    async def send_frame(self, frame: Frame | bytes) -> None:
        """Queue a frame and wait until it has been written.

        Raises:
            LinkError: ``NOT_CONNECTED`` unless the link is up.
            TransportError: ``WRITE_FAILED`` if the write itself failed.
        """
        await self.post_frame(frame)

    def post_frame(self, frame: Frame | bytes) -> asyncio.Future:
        """Queue a frame without waiting. The returned future tracks the write.

        Raises:
            LinkError: ``NOT_CONNECTED`` unless the link is up.
        """
        if self._state is not LinkState.CONNECTED:
            raise LinkError(LinkErrorKind.NOT_CONNECTED, f"Link is {self._state.value}")
        return self._enqueue(frame)

    def _enqueue(self, frame: Frame | bytes) -> asyncio.Future:
        data = frame.to_bytes() if isinstance(frame, Frame) else bytes(frame)
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_log_send_failure)
        self._outbound.put_nowait((data, future))
        return future

    async def _write_loop(self) -> None:
        while True:
            data, future = await self._outbound.get()
            if future.done():
                continue
            transport = self._transport
            try:
                if transport is None or not transport.is_open:
                    raise TransportError(TransportErrorKind.WRITE_FAILED, "Link is down")
                await transport.send(data)
            except TransportError as e:
                if not future.done():
                    future.set_exception(e)
                self._link_lost(f"write failed: {e}")
                continue
            self.frames_sent += 1
            if not future.done():
                future.set_result(None)

    async def _gcs_heartbeat_loop(self) -> None:
        frame = build_heartbeat()
        while True:
            if self._state in (LinkState.CONNECTING, LinkState.CONNECTED) and self._transport:
                self._enqueue(frame)
            await asyncio.sleep(self.config.gcs_heartbeat_interval)

    # -- inbound --------------------------------------------------------------

    async def _read_loop(self, transport: Transport) -> None:
        while True:
            try:
                data = await transport.receive()
            except TransportError as e:
                self._on_read_failure(e)
                return
            if data:
                self._on_bytes(data, transport.preserves_boundaries)

    def _on_bytes(self, data: bytes, datagram: bool) -> None:
        items = self._decoder.feed(data)
        if datagram:
            items.extend(self._decoder.discard_partial())
        for item in items:
            if isinstance(item, FrameError):
                self._on_frame_error(item)
            else:
                self._on_frame(item)

    def _on_frame(self, frame: Frame) -> None:
        self.frames_received += 1
        self.consecutive_frame_errors = 0
        self.last_frame_time = asyncio.get_running_loop().time()

        if frame.message_id == MessageId.HEARTBEAT:
            heartbeat = parse_heartbeat(frame)
            if heartbeat is not None:
                waiter = self._heartbeat_waiter
                if waiter is not None and not waiter.done():
                    waiter.set_result(heartbeat)
                self.heartbeats.post(heartbeat)
        elif frame.message_id == MessageId.STATUSTEXT:
            status = parse_statustext(frame)
            if status is not None:
                logger.info("Vehicle: %s", status.text)
                self.status_messages.post(status)
        self.frames.post(frame)

    def _on_frame_error(self, error: FrameError) -> None:
        self.frame_errors += 1
        self.consecutive_frame_errors += 1
        logger.debug("Dropped frame: %s", error)
        if self.consecutive_frame_errors >= self.config.max_consecutive_frame_errors:
            self._link_lost(f"{self.consecutive_frame_errors} consecutive frame errors")

    def _on_read_failure(self, error: TransportError) -> None:
        waiter = self._heartbeat_waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(error)
            return
        self._link_lost(f"read failed: {error}")

    # -- liveness -------------------------------------------------------------

    async def _watchdog_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.config.watchdog_interval)
            if self._state is not LinkState.CONNECTED or self.last_frame_time is None:
                continue
            silence = loop.time() - self.last_frame_time
            if silence > self.config.heartbeat_timeout:
                self._link_lost(f"no frames for {silence:.1f}s")

    def _link_lost(self, reason: str) -> None:
        if self._state is not LinkState.CONNECTED:
            return
        logger.warning("Link lost: %s", reason)
        self._set_state(LinkState.LOST)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(), name="link-reconnect")

    async def _reconnect_loop(self) -> None:
        cfg = self.config
        self.reconnect_attempts = 0
        while self._state is LinkState.LOST:
            if (
                cfg.max_reconnect_attempts is not None
                and self.reconnect_attempts >= cfg.max_reconnect_attempts
            ):
                logger.warning("Giving up after %d reconnect attempts", self.reconnect_attempts)
                await self._teardown()
                self._set_state(LinkState.DISCONNECTED)
                return
            delay = min(
                cfg.reconnect_initial_delay * 2 ** self.reconnect_attempts,
                cfg.reconnect_max_delay,
            )
            self.reconnect_attempts += 1
            await asyncio.sleep(delay)
            await self._drop_transport()
            try:
                await self._establish(self._settings)
            except TransportError as e:
                logger.info("Reconnect attempt %d failed: %s", self.reconnect_attempts, e)
                continue
            self._reconnect_task = None
            self._set_state(LinkState.CONNECTED)
            logger.info("Link restored after %d attempt(s)", self.reconnect_attempts)
            return

    def to_dict(self) -> dict:
        d = {
            "state": self._state.value,
            "frames_received": self.frames_received,
            "frames_sent": self.frames_sent,
            "frame_errors": self.frame_errors,
        }
        if self._settings is not None:
            d["connection"] = self._settings.to_dict()
        if self.last_frame_time is not None and self._state is not LinkState.DISCONNECTED:
            age = asyncio.get_running_loop().time() - self.last_frame_time
            d["seconds_since_last_frame"] = round(age, 2)
        return d


def _log_send_failure(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.debug("Send failed: %s", error)
