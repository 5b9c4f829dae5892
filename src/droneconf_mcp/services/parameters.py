"""Parameter table download and confirmed writes."""

from __future__ import annotations

import asyncio
import logging
import math
import struct
from dataclasses import dataclass
from typing import Mapping

from ..events import EventStream
from ..exceptions import (
    ConcurrencyError,
    ConcurrencyErrorKind,
    LinkError,
    LinkErrorKind,
    ProtocolError,
    ProtocolErrorKind,
    TransportError,
    ValidationError,
    ValidationErrorKind,
)
from ..models.parameter import DroneParameter, ParameterDownloadState, ParameterMetadata
from ..models.result import OperationResult
from ..protocol.framing import Frame
from ..protocol.messages import (
    MessageId,
    build_param_request_list,
    build_param_request_read,
    build_param_set,
    encode_param_name,
)
from ..protocol.parser import ParamValue, parse_param_value
from ..session import LinkSession
from .pending import PendingRequests

logger = logging.getLogger(__name__)

WRITE_MATCH_REL_TOL = 1e-6


@dataclass
class ParameterSyncConfig:
    """Download and write timing (seconds)."""

    download_timeout: float = 3.0
    download_retries: int = 10
    missing_chunk_size: int = 5
    missing_chunk_interval: float = 0.2
    write_timeout: float = 2.0
    write_retries: int = 2


def _as_float32(value: float) -> float:
    return struct.unpack("<f", struct.pack("<f", value))[0]


def write_confirmed(reported: float, target: float) -> bool:
    """True if a reported value confirms a write of ``target``.

    The target goes through the same float32 rounding as the wire value.
    """
    expected = _as_float32(target)
    return reported == expected or math.isclose(
        reported, expected, rel_tol=WRITE_MATCH_REL_TOL
    )


class ParameterSyncEngine:
    """Keeps a local mirror of the vehicle's parameter table.

    Events (all :class:`~droneconf_mcp.events.EventStream`):

    - ``parameter_updated(name)``: a name was seen for the first time, or a
      write was confirmed.
    - ``download_started()``
    - ``download_progress(received, expected)``
    - ``download_completed(success)``
    """

    def __init__(self, session: LinkSession, config: ParameterSyncConfig | None = None) -> None:
        self._session = session
        self.config = config or ParameterSyncConfig()
        self.download = ParameterDownloadState()
        self._params: dict[str, DroneParameter] = {}
        self._metadata: dict[str, ParameterMetadata] = {}
        self._pending_writes: PendingRequests[str] = PendingRequests("parameter write")

        self._download_in_progress = False
        self._download_complete = False
        self._download_task: asyncio.Task | None = None
        self._download_result: asyncio.Future | None = None
        self._activity = asyncio.Event()
        self.count_mismatch: ProtocolError | None = None

        self.parameter_updated = EventStream("parameter_updated")
        self.download_started = EventStream("download_started")
        self.download_progress = EventStream("download_progress")
        self.download_completed = EventStream("download_completed")

        self._subscription = session.subscribe(self._on_frame)

    @property
    def is_download_in_progress(self) -> bool:
        return self._download_in_progress

    @property
    def is_download_complete(self) -> bool:
        return self._download_complete

    # -- reads ----------------------------------------------------------------

    def get_parameter(self, name: str) -> DroneParameter | None:
        return self._params.get(name)

    def get_all_parameters(self) -> list[DroneParameter]:
        return [self._params[name] for name in sorted(self._params)]

    def set_metadata(self, metadata: Mapping[str, ParameterMetadata | dict]) -> None:
        """Attach static limits/descriptions. Kept across :meth:`reset`."""
        for name, meta in metadata.items():
            if isinstance(meta, dict):
                meta = ParameterMetadata.from_dict(meta)
            self._metadata[name] = meta
            param = self._params.get(name)
            if param is not None:
                param.apply_metadata(meta)

    # -- download -------------------------------------------------------------

    async def refresh_parameters(self, wait: bool = False) -> OperationResult:
        """Start a fresh download of the whole table.

        Args:
            wait: Return only after the download completes or gives up.
        """
        if self._download_in_progress:
            return OperationResult.fail(ConcurrencyError(
                ConcurrencyErrorKind.DOWNLOAD_IN_PROGRESS, "Parameter download already running"
            ))
        if not self._session.is_connected:
            return OperationResult.fail(LinkError(LinkErrorKind.NOT_CONNECTED, "Not connected"))

        self.download.reset()
        self._download_complete = False
        self.count_mismatch = None
        self._download_in_progress = True
        self._download_result = asyncio.get_running_loop().create_future()
        self.download_started.emit()
        try:
            await self._session.send_frame(build_param_request_list())
        except (LinkError, TransportError) as e:
            self._finish_download(False)
            return OperationResult.fail(e)
        logger.info("Requested parameter list")
        self._download_task = asyncio.create_task(self._supervise_download(), name="param-download")

        if not wait:
            return OperationResult.ok("Parameter download started")
        success = await asyncio.shield(self._download_result)
        return self._download_outcome(success)

    def _download_outcome(self, success: bool) -> OperationResult:
        received, expected = self.download.received_count, self.download.expected_count
        counts = {"received": received, "expected": expected}
        if self.count_mismatch is not None:
            counts["count_mismatch"] = str(self.count_mismatch)
        if success:
            return OperationResult.ok(f"Downloaded {received} parameters", value=counts)
        error = ProtocolError(
            ProtocolErrorKind.DOWNLOAD_INCOMPLETE,
            f"Received {received} of {expected if expected is not None else '?'} parameters",
        )
        result = OperationResult.fail(error)
        result.value = counts
        return result

    async def _supervise_download(self) -> None:
        cfg = self.config
        retries = 0
        while self._download_in_progress:
            self._activity.clear()
            try:
                await asyncio.wait_for(self._activity.wait(), cfg.download_timeout)
                continue
            except asyncio.TimeoutError:
                pass
            if not self._download_in_progress:
                return
            if retries >= cfg.download_retries:
                logger.warning(
                    "Parameter download gave up after %d retries: %d/%s received",
                    retries, self.download.received_count, self.download.expected_count,
                )
                self._finish_download(False)
                return
            retries += 1
            try:
                await self._request_missing(retries)
            except (LinkError, TransportError) as e:
                logger.warning("Parameter re-request failed: %s", e)

    async def _request_missing(self, attempt: int) -> None:
        cfg = self.config
        if self.download.expected_count is None:
            logger.warning(
                "No parameters received, resending list request (attempt %d/%d)",
                attempt, cfg.download_retries,
            )
            await self._session.send_frame(build_param_request_list())
            return
        missing = self.download.missing_indices()
        logger.info(
            "Retry %d: %d/%d parameters, requesting %d missing",
            attempt, self.download.received_count, self.download.expected_count, len(missing),
        )
        for start in range(0, len(missing), cfg.missing_chunk_size):
            if start:
                await asyncio.sleep(cfg.missing_chunk_interval)
            for index in missing[start:start + cfg.missing_chunk_size]:
                await self._session.send_frame(build_param_request_read(index))

    def _finish_download(self, success: bool) -> None:
        if not self._download_in_progress:
            return
        self._download_in_progress = False
        if success:
            self._download_complete = True
            logger.info("Parameter download complete: %d parameters", self.download.received_count)
        task, self._download_task = self._download_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        if self._download_result is not None and not self._download_result.done():
            self._download_result.set_result(success)
        self.download_completed.emit(success)

    # -- inbound --------------------------------------------------------------

    def _on_frame(self, frame: Frame) -> None:
        if frame.message_id != MessageId.PARAM_VALUE:
            return
        report = parse_param_value(frame)
        if report is not None:
            self._handle_report(report)

    def _handle_report(self, report: ParamValue) -> None:
        dl = self.download
        if dl.expected_count is None and report.count > 0:
            dl.expected_count = report.count
        elif (
            dl.expected_count is not None
            and report.count != dl.expected_count
            and self.count_mismatch is None
        ):
            # First report's count stands; the value is still stored
            self.count_mismatch = ProtocolError(
                ProtocolErrorKind.COUNT_MISMATCH,
                f"Vehicle reported {report.count} parameters after {dl.expected_count}",
            )
            logger.warning("%s; keeping %d", self.count_mismatch, dl.expected_count)

        param = self._params.get(report.name)
        is_new = param is None
        if is_new:
            param = DroneParameter(name=report.name, value=report.value)
            meta = self._metadata.get(report.name)
            if meta is not None:
                param.apply_metadata(meta)
            self._params[report.name] = param
        else:
            param.value = report.value
        if report.has_index:
            param.index = report.index

        counted = False
        if report.name not in dl.received_names and (
            dl.expected_count is None or dl.received_count < dl.expected_count
        ):
            dl.received_names.add(report.name)
            counted = True
        if report.has_index and dl.expected_count is not None and report.index < dl.expected_count:
            dl.received_indices.add(report.index)

        confirmed = False
        target = self._pending_writes.context(report.name)
        if target is not None and write_confirmed(report.value, target):
            confirmed = self._pending_writes.resolve(report.name, report.value)

        self._activity.set()
        if is_new or confirmed:
            self.parameter_updated.emit(report.name)
        if counted:
            self.download_progress.emit(dl.received_count, dl.expected_count)
        if self._download_in_progress and dl.complete:
            self._finish_download(True)

    # -- writes ---------------------------------------------------------------

    def validate(self, name: str, value: float) -> float:
        """Client-side checks for a write.

        Raises:
            ValidationError: Bad name, non-finite value, or outside known limits.
        """
        try:
            encode_param_name(name)
        except (ValueError, UnicodeEncodeError) as e:
            raise ValidationError(ValidationErrorKind.INVALID_NAME, str(e)) from e
        try:
            value = float(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                ValidationErrorKind.NOT_FINITE, f"{name}: {value!r} is not a number"
            ) from e
        if not math.isfinite(value):
            raise ValidationError(ValidationErrorKind.NOT_FINITE, f"{name}: {value} is not finite")

        limits = self._params.get(name)
        if limits is None:
            meta = self._metadata.get(name)
            if meta is not None:
                limits = DroneParameter(name, 0.0, meta.min_value, meta.max_value)
        if limits is not None and not limits.in_range(value):
            raise ValidationError(
                ValidationErrorKind.OUT_OF_RANGE,
                f"{name}={value:g} outside [{limits.min_value}, {limits.max_value}]",
            )
        return value

    async def set_parameter(self, name: str, value: float) -> OperationResult:
        """Write one parameter and wait for the vehicle to report it back."""
        try:
            value = self.validate(name, value)
            future = self._pending_writes.register(name, context=value)
        except (ValidationError, ConcurrencyError) as e:
            return OperationResult.fail(e)

        cfg = self.config
        frame = build_param_set(name, value)
        attempts = 1 + cfg.write_retries
        try:
            for attempt in range(1, attempts + 1):
                try:
                    await self._session.send_frame(frame)
                    confirmed = await asyncio.wait_for(asyncio.shield(future), cfg.write_timeout)
                except asyncio.TimeoutError:
                    logger.info("No confirmation for %s (attempt %d/%d)", name, attempt, attempts)
                    continue
                except (LinkError, TransportError) as e:
                    return OperationResult.fail(e)
                logger.info("Set %s = %g", name, confirmed)
                return OperationResult.ok(f"{name} set to {confirmed:g}", value=confirmed)
        finally:
            self._pending_writes.discard(name, future)

        return OperationResult.fail(ProtocolError(
            ProtocolErrorKind.WRITE_NOT_CONFIRMED,
            f"{name} not confirmed after {attempts} attempts",
        ))

    async def apply_parameters(self, values: Mapping[str, float]) -> OperationResult:
        """Write several parameters in order; succeeds only if all are confirmed.

        The result value maps each name to its outcome message.
        """
        outcomes: dict[str, dict] = {}
        failed = []
        for name, value in values.items():
            result = await self.set_parameter(name, value)
            outcomes[name] = result.to_dict()
            if not result:
                failed.append(name)
        if failed:
            result = OperationResult.fail(
                ProtocolError(ProtocolErrorKind.WRITE_NOT_CONFIRMED, "Some writes failed"),
                f"{len(failed)} of {len(values)} parameters failed: {', '.join(failed)}",
            )
            result.value = outcomes
            return result
        return OperationResult.ok(f"Applied {len(values)} parameters", value=outcomes)

    # -- lifecycle ------------------------------------------------------------

    def reset(self) -> None:
        """Forget the table and fail in-flight writes. Metadata is kept."""
        self._finish_download(False)
        self._pending_writes.fail_all(
            LinkError(LinkErrorKind.DISCONNECTED, "Parameter write aborted by reset")
        )
        self._params.clear()
        self.download.reset()
        self._download_complete = False
        self._download_result = None
        self.count_mismatch = None

    def close(self) -> None:
        self.reset()
        self._subscription.unsubscribe()
