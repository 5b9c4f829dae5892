"""Acknowledged one-shot commands: arming, reboot/shutdown and motor tests."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ..exceptions import (
    CommandError,
    CommandErrorKind,
    ConcurrencyError,
    LinkError,
    LinkErrorKind,
    PreconditionError,
    TransportError,
    ValidationError,
    ValidationErrorKind,
)
from ..models.result import OperationResult
from ..protocol.framing import Frame
from ..protocol.messages import (
    ARM_FORCE_MAGIC,
    CommandId,
    CommandResult,
    MessageId,
    MotorTestOrder,
    MotorTestThrottleType,
    build_command_long,
)
from ..protocol.parser import CommandAck, Heartbeat, parse_command_ack
from ..session import LinkSession
from .pending import PendingRequests

logger = logging.getLogger(__name__)

REBOOT_AUTOPILOT = 1
SHUTDOWN_AUTOPILOT = 2

# Valid throttle range per throttle type
THROTTLE_LIMITS = {
    MotorTestThrottleType.PERCENT: (0.0, 100.0),
    MotorTestThrottleType.PWM: (1000.0, 2000.0),
}


@dataclass
class CommandConfig:
    """Acknowledgement timing and operator-confirmation gates."""

    ack_timeout: float = 3.0
    require_arming_confirmation: bool = True
    require_propeller_removal_confirmation: bool = True
    default_motor_count: int = 4
    max_motor_count: int = 12
    max_motor_test_duration: float = 10.0


class _AckWait:
    __slots__ = ("in_progress",)

    def __init__(self) -> None:
        self.in_progress = False


class CommandDispatcher:
    """Sends command-long frames and waits for the matching command-ack.

    Commands are never retried automatically. One command per command id
    may be in flight; a second one fails with :class:`ConcurrencyError`.
    """

    def __init__(self, session: LinkSession, config: CommandConfig | None = None) -> None:
        self._session = session
        self.config = config or CommandConfig()
        self._pending: PendingRequests[int] = PendingRequests("command")
        self.is_armed = False
        self._arming_confirmed = False
        self._propellers_removed = False
        self._subscriptions = [
            session.subscribe(self._on_frame),
            session.heartbeats.subscribe(self._on_heartbeat),
        ]

    # -- confirmations ----------------------------------------------------------

    def confirm_arming(self) -> None:
        """Operator confirms the vehicle may be armed."""
        self._arming_confirmed = True

    def confirm_propellers_removed(self) -> None:
        """Operator confirms the propellers are off for motor testing."""
        self._propellers_removed = True

    def clear_confirmations(self) -> None:
        self._arming_confirmed = False
        self._propellers_removed = False

    @property
    def confirmations(self) -> dict:
        return {
            "arming_confirmed": self._arming_confirmed,
            "propellers_removed": self._propellers_removed,
        }

    def _check_arming_gates(self) -> None:
        if self.config.require_arming_confirmation and not self._arming_confirmed:
            raise PreconditionError("Arming has not been confirmed by the operator")
        self._check_propeller_gate()

    def _check_propeller_gate(self) -> None:
        if self.config.require_propeller_removal_confirmation and not self._propellers_removed:
            raise PreconditionError("Propeller removal has not been confirmed")

    # -- core -----------------------------------------------------------------

    async def send_command(
        self,
        command: int,
        params: tuple[float, ...] = (),
        timeout: float | None = None,
    ) -> CommandAck:
        """Send one command and wait for an accepting acknowledgement.

        An ``IN_PROGRESS`` ack restarts the wait instead of completing it.

        Raises:
            CommandError: ``REJECTED`` (with ``result_code``) or ``TIMEOUT``.
            ConcurrencyError: The same command id is already awaiting an ack.
            LinkError: The link is down.
        """
        frame = build_command_long(command, params)
        wait = _AckWait()
        future = self._pending.register(int(command), context=wait)
        timeout = self.config.ack_timeout if timeout is None else timeout
        try:
            await self._session.send_frame(frame)
            logger.debug("Sent command %d %s", command, params)
            while True:
                wait.in_progress = False
                try:
                    ack = await asyncio.wait_for(asyncio.shield(future), timeout)
                    break
                except asyncio.TimeoutError:
                    if wait.in_progress:
                        continue
                    raise CommandError(
                        CommandErrorKind.TIMEOUT,
                        f"No acknowledgement for command {command} within {timeout:g}s",
                    ) from None
        finally:
            self._pending.discard(int(command), future)

        if ack.result != CommandResult.ACCEPTED:
            raise CommandError(
                CommandErrorKind.REJECTED,
                f"Command {command} rejected: {_result_name(ack.result)}",
                result_code=ack.result,
            )
        return ack

    async def _run(self, command: int, params: tuple[float, ...], success: str) -> OperationResult:
        try:
            ack = await self.send_command(command, params)
        except (CommandError, ConcurrencyError, LinkError, TransportError) as e:
            logger.warning("Command %d failed: %s", command, e)
            return OperationResult.fail(e)
        return OperationResult.ok(success, value={"command": ack.command, "result": ack.result})

    # -- operations ---------------------------------------------------------------

    async def arm(self, force: bool = False) -> OperationResult:
        try:
            self._check_arming_gates()
        except PreconditionError as e:
            return OperationResult.fail(e)
        params = (1, ARM_FORCE_MAGIC if force else 0)
        result = await self._run(CommandId.COMPONENT_ARM_DISARM, params, "Vehicle armed")
        if result:
            self.is_armed = True
            logger.info("Armed%s", " (forced)" if force else "")
        return result

    async def disarm(self, force: bool = False) -> OperationResult:
        params = (0, ARM_FORCE_MAGIC if force else 0)
        result = await self._run(CommandId.COMPONENT_ARM_DISARM, params, "Vehicle disarmed")
        if result:
            self.is_armed = False
            logger.info("Disarmed%s", " (forced)" if force else "")
        return result

    async def reboot(self) -> OperationResult:
        """Reboot the autopilot. Refused while armed."""
        if self.is_armed:
            return OperationResult.fail(PreconditionError("Disarm before rebooting"))
        return await self._run(
            CommandId.PREFLIGHT_REBOOT_SHUTDOWN, (REBOOT_AUTOPILOT,), "Reboot accepted"
        )

    async def shutdown(self) -> OperationResult:
        """Shut the autopilot down. Refused while armed."""
        if self.is_armed:
            return OperationResult.fail(PreconditionError("Disarm before shutting down"))
        return await self._run(
            CommandId.PREFLIGHT_REBOOT_SHUTDOWN, (SHUTDOWN_AUTOPILOT,), "Shutdown accepted"
        )

    async def motor_test(
        self,
        motor: int,
        throttle: float,
        duration: float,
        throttle_type: MotorTestThrottleType = MotorTestThrottleType.PERCENT,
        motor_count: int = 0,
        order: MotorTestOrder = MotorTestOrder.DEFAULT,
    ) -> OperationResult:
        """Spin one motor (1-based instance) for ``duration`` seconds.

        Args:
            motor: Motor instance, 1-based.
            throttle: Throttle value in units of ``throttle_type``.
            duration: Run time in seconds.
            throttle_type: How ``throttle`` is interpreted.
            motor_count: Motors to test in sequence starting at ``motor``; 0 for one.
            order: Test order.
        """
        try:
            self._check_propeller_gate()
            self._validate_motor_test(motor, throttle, duration, throttle_type, motor_count)
        except (PreconditionError, ValidationError) as e:
            return OperationResult.fail(e)
        params = (motor, int(throttle_type), throttle, duration, motor_count, int(order))
        return await self._run(
            CommandId.DO_MOTOR_TEST, params, f"Motor {motor} test started"
        )

    def _validate_motor_test(self, motor, throttle, duration, throttle_type, motor_count) -> None:
        cfg = self.config
        if not 1 <= motor <= cfg.max_motor_count:
            raise ValidationError(
                ValidationErrorKind.OUT_OF_RANGE,
                f"Motor must be 1-{cfg.max_motor_count}, got {motor}",
            )
        if not 0 <= motor_count <= cfg.max_motor_count:
            raise ValidationError(
                ValidationErrorKind.OUT_OF_RANGE,
                f"Motor count must be 0-{cfg.max_motor_count}, got {motor_count}",
            )
        try:
            throttle_type = MotorTestThrottleType(throttle_type)
        except ValueError as e:
            raise ValidationError(ValidationErrorKind.OUT_OF_RANGE, str(e)) from e
        limits = THROTTLE_LIMITS.get(throttle_type)
        if limits is not None and not limits[0] <= throttle <= limits[1]:
            raise ValidationError(
                ValidationErrorKind.OUT_OF_RANGE,
                f"Throttle must be {limits[0]:g}-{limits[1]:g}, got {throttle}",
            )
        if not 0 < duration <= cfg.max_motor_test_duration:
            raise ValidationError(
                ValidationErrorKind.OUT_OF_RANGE,
                f"Duration must be 0-{cfg.max_motor_test_duration:g}s, got {duration}",
            )

    def stop_all_motors(self, motor_count: int | None = None) -> OperationResult:
        """Queue a zero-throttle test for every motor and return immediately.

        Does not wait for acknowledgements and is not blocked by a pending
        motor test.
        """
        count = motor_count or self.config.default_motor_count
        try:
            for motor in range(1, count + 1):
                self._session.post_frame(build_command_long(
                    CommandId.DO_MOTOR_TEST,
                    (motor, MotorTestThrottleType.PERCENT, 0, 0, 0, MotorTestOrder.DEFAULT),
                ))
        except LinkError as e:
            return OperationResult.fail(e)
        logger.info("Stop sent to %d motors", count)
        return OperationResult.ok(f"Stop sent to {count} motors")

    # -- inbound --------------------------------------------------------------

    def _on_frame(self, frame: Frame) -> None:
        if frame.message_id != MessageId.COMMAND_ACK:
            return
        ack = parse_command_ack(frame)
        if ack is None:
            return
        wait = self._pending.context(ack.command)
        if wait is None:
            logger.debug("Unsolicited ack for command %d: %d", ack.command, ack.result)
            return
        if ack.result == CommandResult.IN_PROGRESS:
            wait.in_progress = True
            return
        self._pending.resolve(ack.command, ack)

    def _on_heartbeat(self, heartbeat: Heartbeat) -> None:
        self.is_armed = heartbeat.armed

    def reset(self) -> None:
        """Fail pending commands and forget confirmations and armed state."""
        self._pending.fail_all(LinkError(LinkErrorKind.DISCONNECTED, "Command aborted by disconnect"))
        self.clear_confirmations()
        self.is_armed = False

    def close(self) -> None:
        self.reset()
        for sub in self._subscriptions:
            sub.unsubscribe()


def _result_name(code: int) -> str:
    try:
        return CommandResult(code).name
    except ValueError:
        return str(code)
