"""Multi-step sensor calibration driven by vehicle progress reports.

A run goes ``IDLE -> REQUESTED -> IN_PROGRESS -> {COMPLETED | FAILED |
CANCELLED}``. Any terminal state allows a new run; only one run is active
at a time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from ..events import EventStream
from ..exceptions import (
    CommandError,
    CommandErrorKind,
    ConcurrencyError,
    ConcurrencyErrorKind,
    LinkError,
    LinkErrorKind,
    PreconditionError,
    TransportError,
    ValidationError,
    ValidationErrorKind,
)
from ..models.calibration import (
    OPERATOR_STEP_TIMEOUTS,
    START_PARAMS,
    STEP_TIMEOUTS,
    AccelPosition,
    CalibrationProgress,
    CalibrationState,
    CalibrationType,
)
from ..models.result import OperationResult
from ..protocol.framing import Frame
from ..protocol.messages import CommandId, CommandResult, MessageId, build_command_long
from ..protocol.parser import CalibrationReport, parse_calibration_progress
from ..session import LinkSession
from .commands import CommandDispatcher

logger = logging.getLogger(__name__)


@dataclass
class CalibrationConfig:
    """Silence windows between progress reports (seconds).

    ``operator_step_timeouts`` overrides ``step_timeouts`` for the steps
    listed in it, such as accelerometer positions.
    """

    step_timeouts: dict[CalibrationType, float] = field(
        default_factory=lambda: dict(STEP_TIMEOUTS)
    )
    operator_step_timeouts: dict[tuple[CalibrationType, int], float] = field(
        default_factory=lambda: dict(OPERATOR_STEP_TIMEOUTS)
    )

    def window_for(self, calibration_type: CalibrationType, step: int) -> float:
        fallback = self.step_timeouts.get(calibration_type, 60.0)
        return self.operator_step_timeouts.get((calibration_type, step), fallback)


class CalibrationStateMachine:
    """Runs one calibration at a time.

    Events:

    - ``progress(CalibrationProgress)``: an accepted progress report.
    - ``state_changed(CalibrationState)``
    """

    def __init__(
        self,
        session: LinkSession,
        commands: CommandDispatcher,
        config: CalibrationConfig | None = None,
    ) -> None:
        self._session = session
        self._commands = commands
        self.config = config or CalibrationConfig()
        self.state = CalibrationState.IDLE
        self.calibration_type: CalibrationType | None = None
        self.current_progress: CalibrationProgress | None = None
        self.last_result: OperationResult | None = None
        self._activity = asyncio.Event()
        self._supervisor: asyncio.Task | None = None
        self._done: asyncio.Future | None = None

        self.progress = EventStream("calibration_progress")
        self.state_changed = EventStream("calibration_state")
        self._subscription = session.subscribe(self._on_frame)

    @property
    def is_active(self) -> bool:
        return self.state in (CalibrationState.REQUESTED, CalibrationState.IN_PROGRESS)

    def _set_state(self, state: CalibrationState) -> None:
        if state is self.state:
            return
        logger.debug("Calibration %s -> %s", self.state.value, state.value)
        self.state = state
        self.state_changed.emit(state)

    # -- start ------------------------------------------------------------------

    async def calibrate(self, calibration_type: CalibrationType) -> OperationResult:
        """Start a calibration and return once the vehicle has accepted it.

        Use :meth:`wait_for_completion` to wait for the final outcome.
        """
        if self.is_active:
            return OperationResult.fail(ConcurrencyError(
                ConcurrencyErrorKind.CALIBRATION_ALREADY_IN_PROGRESS,
                f"{self.calibration_type.name.lower()} calibration already running",
            ))
        try:
            calibration_type = CalibrationType(calibration_type)
        except ValueError as e:
            return OperationResult.fail(ValidationError(ValidationErrorKind.OUT_OF_RANGE, str(e)))

        self.calibration_type = calibration_type
        self.current_progress = CalibrationProgress(calibration_type, percent=0)
        self.last_result = None
        self._done = asyncio.get_running_loop().create_future()
        self._set_state(CalibrationState.REQUESTED)
        logger.info("Starting %s calibration", calibration_type.name.lower())

        try:
            await self._commands.send_command(
                CommandId.PREFLIGHT_CALIBRATION, START_PARAMS[calibration_type]
            )
        except (CommandError, ConcurrencyError, LinkError, TransportError) as e:
            if self.state is CalibrationState.REQUESTED:
                self._finish(CalibrationState.FAILED, OperationResult.fail(e))
            return OperationResult.fail(e)

        if self.state is CalibrationState.REQUESTED:
            self._set_state(CalibrationState.IN_PROGRESS)
        if self.state is CalibrationState.IN_PROGRESS:
            self._supervisor = asyncio.create_task(
                self._supervise(calibration_type), name="calibration-watchdog"
            )
        elif self.last_result is not None:
            return self.last_result
        return OperationResult.ok(f"{calibration_type.name.lower()} calibration started")

    async def calibrate_gyroscope(self) -> OperationResult:
        return await self.calibrate(CalibrationType.GYROSCOPE)

    async def calibrate_accelerometer(self) -> OperationResult:
        """Six-position accelerometer calibration.

        The vehicle reports the orientation it wants as the progress step;
        call :meth:`confirm_accelerometer_position` once the vehicle is placed.
        """
        return await self.calibrate(CalibrationType.ACCELEROMETER)

    async def calibrate_magnetometer(self) -> OperationResult:
        return await self.calibrate(CalibrationType.MAGNETOMETER)

    async def calibrate_barometer(self) -> OperationResult:
        return await self.calibrate(CalibrationType.BAROMETER)

    async def calibrate_level_horizon(self) -> OperationResult:
        return await self.calibrate(CalibrationType.LEVEL_HORIZON)

    async def calibrate_esc(self) -> OperationResult:
        return await self.calibrate(CalibrationType.ESC)

    async def calibrate_airspeed(self) -> OperationResult:
        return await self.calibrate(CalibrationType.AIRSPEED)

    async def calibrate_rc_trim(self) -> OperationResult:
        return await self.calibrate(CalibrationType.RC_TRIM)

    async def wait_for_completion(self, timeout: float | None = None) -> OperationResult:
        """Wait for the current (or last) run to reach a terminal state."""
        if self._done is None:
            return OperationResult.fail(PreconditionError("No calibration has been started"))
        try:
            return await asyncio.wait_for(asyncio.shield(self._done), timeout)
        except asyncio.TimeoutError:
            return OperationResult.fail(CommandError(
                CommandErrorKind.TIMEOUT, "Calibration still running"
            ))

    # -- operator actions -----------------------------------------------------

    async def confirm_accelerometer_position(self, position: AccelPosition) -> OperationResult:
        """Tell the vehicle it has been placed in ``position``."""
        if not self.is_active or self.calibration_type is not CalibrationType.ACCELEROMETER:
            return OperationResult.fail(
                PreconditionError("No accelerometer calibration is running")
            )
        try:
            position = AccelPosition(position)
        except ValueError as e:
            return OperationResult.fail(ValidationError(ValidationErrorKind.OUT_OF_RANGE, str(e)))
        self._activity.set()
        try:
            await self._commands.send_command(CommandId.ACCELCAL_VEHICLE_POS, (int(position),))
        except (CommandError, ConcurrencyError, LinkError, TransportError) as e:
            return OperationResult.fail(e)
        logger.info("Accelerometer position confirmed: %s", position.name.lower())
        return OperationResult.ok(f"Position {position.name.lower()} confirmed")

    def cancel_calibration(self) -> OperationResult:
        """Abort the running calibration. Sent without waiting for an ack."""
        if not self.is_active:
            return OperationResult.fail(PreconditionError("No calibration is running"))
        try:
            self._session.post_frame(build_command_long(CommandId.PREFLIGHT_CALIBRATION))
        except LinkError as e:
            logger.warning("Could not send calibration cancel: %s", e)
        self._finish(CalibrationState.CANCELLED, OperationResult.fail(CommandError(
            CommandErrorKind.REJECTED, "Calibration cancelled", result_code=CommandResult.CANCELLED
        )))
        return OperationResult.ok("Calibration cancelled")

    # -- progress ---------------------------------------------------------------

    def _on_frame(self, frame: Frame) -> None:
        if frame.message_id != MessageId.CALIBRATION_PROGRESS or not self.is_active:
            return
        report = parse_calibration_progress(frame)
        if report is None or report.calibration_type != self.calibration_type:
            return
        self._handle_report(report)

    def _handle_report(self, report: CalibrationReport) -> None:
        current = self.current_progress
        if report.restart:
            logger.info("Vehicle restarted %s calibration", self.calibration_type.name.lower())
        elif current is not None and report.percent < current.percent:
            logger.debug("Stale calibration report %d%% < %d%%", report.percent, current.percent)
            return

        self.current_progress = CalibrationProgress(
            calibration_type=self.calibration_type,
            percent=report.percent,
            step=report.step,
            is_complete=report.complete and not report.failed,
        )
        self._activity.set()
        if self.state is CalibrationState.REQUESTED:
            self._set_state(CalibrationState.IN_PROGRESS)
        self.progress.emit(self.current_progress)

        name = self.calibration_type.name.lower()
        if report.failed:
            self._finish(CalibrationState.FAILED, OperationResult.fail(CommandError(
                CommandErrorKind.REJECTED, f"Vehicle reported {name} calibration failure"
            )))
        elif report.complete:
            self._finish(CalibrationState.COMPLETED, OperationResult.ok(
                f"{name} calibration complete", value=self.current_progress.to_dict()
            ))

    async def _supervise(self, calibration_type: CalibrationType) -> None:
        while self.is_active:
            step = self.current_progress.step if self.current_progress else 0
            window = self.config.window_for(calibration_type, step)
            self._activity.clear()
            try:
                await asyncio.wait_for(self._activity.wait(), window)
            except asyncio.TimeoutError:
                if self.is_active:
                    logger.warning(
                        "%s calibration: no progress for %gs", calibration_type.name.lower(), window
                    )
                    self._finish(CalibrationState.FAILED, OperationResult.fail(CommandError(
                        CommandErrorKind.TIMEOUT, f"No calibration progress for {window:g}s"
                    )))
                return

    def _finish(self, state: CalibrationState, result: OperationResult) -> None:
        self.last_result = result
        self._set_state(state)
        task, self._supervisor = self._supervisor, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        if self._done is not None and not self._done.done():
            self._done.set_result(result)
        log = logger.info if result else logger.warning
        log("Calibration %s: %s", state.value, result.message)

    def status(self) -> dict:
        d = {"state": self.state.value}
        if self.calibration_type is not None:
            d["type"] = self.calibration_type.name.lower()
        if self.current_progress is not None:
            d["progress"] = self.current_progress.to_dict()
        if self.last_result is not None:
            d["result"] = self.last_result.to_dict()
        return d

    def reset(self) -> None:
        """Abandon any run (used on disconnect) and return to IDLE."""
        if self.is_active:
            self._finish(CalibrationState.FAILED, OperationResult.fail(
                LinkError(LinkErrorKind.DISCONNECTED, "Link closed during calibration")
            ))
        self._set_state(CalibrationState.IDLE)
        self.calibration_type = None
        self.current_progress = None

    def close(self) -> None:
        self.reset()
        self._subscription.unsubscribe()
