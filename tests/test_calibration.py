"""Tests for the calibration state machine."""

import pytest

from droneconf_mcp.exceptions import (
    CommandError,
    CommandErrorKind,
    ConcurrencyError,
    ConcurrencyErrorKind,
    LinkError,
    PreconditionError,
)
from droneconf_mcp.models.calibration import (
    STEP_TIMEOUTS,
    AccelPosition,
    CalibrationState,
    CalibrationType,
)
from droneconf_mcp.protocol.messages import (
    CalibrationFlag,
    CommandId,
    CommandResult,
    MessageId,
    build_calibration_progress,
    build_command_ack,
)
from droneconf_mcp.protocol.parser import parse_command_long
from droneconf_mcp.services.calibration import CalibrationConfig

from conftest import settle

GYRO = CalibrationType.GYROSCOPE


def ack_all(link, result=CommandResult.ACCEPTED):
    def handler(frame):
        cmd = parse_command_long(frame)
        return [build_command_ack(cmd.command, result)]

    link.vehicle.on(MessageId.COMMAND_LONG, handler)


def sent_commands(link):
    return [parse_command_long(f) for f in link.vehicle.frames(MessageId.COMMAND_LONG)]


@pytest.mark.asyncio
async def test_gyro_runs_to_completion(station, link):
    ack_all(link)
    cal = station.calibration
    seen = []
    cal.progress.subscribe(lambda p: seen.append(p.percent))

    result = await cal.calibrate_gyroscope()
    assert result
    assert cal.state is CalibrationState.IN_PROGRESS
    cmd = sent_commands(link)[0]
    assert cmd.command == CommandId.PREFLIGHT_CALIBRATION
    assert cmd.params[0] == 1.0

    link.inject(build_calibration_progress(GYRO, 30))
    link.inject(build_calibration_progress(GYRO, 60))
    link.inject(build_calibration_progress(GYRO, 100, flags=CalibrationFlag.COMPLETE))
    final = await cal.wait_for_completion(timeout=1)
    assert final
    assert cal.state is CalibrationState.COMPLETED
    assert seen == [30, 60, 100]
    assert cal.current_progress.is_complete


@pytest.mark.asyncio
async def test_second_calibration_refused_while_first_runs(station, link):
    ack_all(link)
    cal = station.calibration
    assert await cal.calibrate(GYRO)
    second = await cal.calibrate(CalibrationType.BAROMETER)
    assert isinstance(second.error, ConcurrencyError)
    assert second.error.kind is ConcurrencyErrorKind.CALIBRATION_ALREADY_IN_PROGRESS
    assert len(sent_commands(link)) == 1

    # The first run is untouched
    link.inject(build_calibration_progress(GYRO, 100, flags=CalibrationFlag.COMPLETE))
    await settle()
    assert cal.state is CalibrationState.COMPLETED
    assert cal.calibration_type is GYRO


@pytest.mark.asyncio
async def test_percent_never_goes_backwards(station, link):
    ack_all(link)
    cal = station.calibration
    await cal.calibrate(GYRO)
    link.inject(build_calibration_progress(GYRO, 50))
    link.inject(build_calibration_progress(GYRO, 20))
    await settle()
    assert cal.current_progress.percent == 50


@pytest.mark.asyncio
async def test_restart_flag_resets_percent(station, link):
    ack_all(link)
    cal = station.calibration
    await cal.calibrate(CalibrationType.MAGNETOMETER)
    link.inject(build_calibration_progress(CalibrationType.MAGNETOMETER, 70))
    link.inject(build_calibration_progress(
        CalibrationType.MAGNETOMETER, 0, flags=CalibrationFlag.RESTART
    ))
    await settle()
    assert cal.current_progress.percent == 0
    assert cal.state is CalibrationState.IN_PROGRESS


@pytest.mark.asyncio
async def test_reports_for_other_types_ignored(station, link):
    ack_all(link)
    cal = station.calibration
    await cal.calibrate(GYRO)
    link.inject(build_calibration_progress(CalibrationType.BAROMETER, 100, flags=CalibrationFlag.COMPLETE))
    await settle()
    assert cal.state is CalibrationState.IN_PROGRESS


@pytest.mark.asyncio
async def test_vehicle_reported_failure(station, link):
    ack_all(link)
    cal = station.calibration
    await cal.calibrate(GYRO)
    link.inject(build_calibration_progress(GYRO, 40, flags=CalibrationFlag.FAILED))
    result = await cal.wait_for_completion(timeout=1)
    assert not result
    assert cal.state is CalibrationState.FAILED
    assert not cal.current_progress.is_complete


@pytest.mark.asyncio
async def test_start_rejected(station, link):
    ack_all(link, CommandResult.TEMPORARILY_REJECTED)
    cal = station.calibration
    result = await cal.calibrate(GYRO)
    assert not result
    assert result.error.kind is CommandErrorKind.REJECTED
    assert cal.state is CalibrationState.FAILED
    # A terminal state allows a new run
    ack_all(link)
    assert await cal.calibrate(GYRO)


@pytest.mark.asyncio
async def test_step_timeout_fails_run(station, link):
    ack_all(link)
    cal = station.calibration
    cal.config.step_timeouts[GYRO] = 0.1
    await cal.calibrate(GYRO)
    link.inject(build_calibration_progress(GYRO, 10))
    result = await cal.wait_for_completion(timeout=1)
    assert cal.state is CalibrationState.FAILED
    assert isinstance(result.error, CommandError)
    assert result.error.kind is CommandErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_operator_position_step_gets_its_own_window(station, link):
    """Waiting for the vehicle to be turned over is not held to the type window."""
    ack_all(link)
    cal = station.calibration
    accel = CalibrationType.ACCELEROMETER
    cal.config.step_timeouts[accel] = 0.1
    cal.config.operator_step_timeouts[(accel, AccelPosition.LEFT)] = 1.0
    await cal.calibrate_accelerometer()
    link.inject(build_calibration_progress(accel, 20, step=AccelPosition.LEFT))
    await settle(0.3)
    assert cal.state is CalibrationState.IN_PROGRESS

    # An automatic step falls back to the short type window
    link.inject(build_calibration_progress(accel, 40, step=0))
    result = await cal.wait_for_completion(timeout=1)
    assert cal.state is CalibrationState.FAILED
    assert result.error.kind is CommandErrorKind.TIMEOUT
    assert "0.1s" in str(result.error)


def test_window_for_falls_back_to_type():
    config = CalibrationConfig()
    assert config.window_for(GYRO, 0) == STEP_TIMEOUTS[GYRO]
    accel = CalibrationType.ACCELEROMETER
    assert config.window_for(accel, AccelPosition.BACK) > config.window_for(accel, 0)


@pytest.mark.asyncio
async def test_cancel_sends_zeroed_command(station, link):
    ack_all(link)
    cal = station.calibration
    await cal.calibrate(GYRO)
    result = cal.cancel_calibration()
    assert result
    assert cal.state is CalibrationState.CANCELLED
    await settle()
    cancel = sent_commands(link)[-1]
    assert cancel.command == CommandId.PREFLIGHT_CALIBRATION
    assert cancel.params == (0.0,) * 7
    # Late reports after cancel are ignored
    link.inject(build_calibration_progress(GYRO, 100, flags=CalibrationFlag.COMPLETE))
    await settle()
    assert cal.state is CalibrationState.CANCELLED


@pytest.mark.asyncio
async def test_cancel_without_run_is_refused(station):
    result = station.calibration.cancel_calibration()
    assert isinstance(result.error, PreconditionError)


@pytest.mark.asyncio
async def test_accelerometer_position_confirmation(station, link):
    ack_all(link)
    cal = station.calibration
    await cal.calibrate_accelerometer()
    link.inject(build_calibration_progress(CalibrationType.ACCELEROMETER, 0, step=AccelPosition.LEFT))
    await settle()
    assert cal.current_progress.step_name == "left"

    result = await cal.confirm_accelerometer_position(AccelPosition.LEFT)
    assert result
    cmd = sent_commands(link)[-1]
    assert cmd.command == CommandId.ACCELCAL_VEHICLE_POS
    assert cmd.params[0] == float(AccelPosition.LEFT)


@pytest.mark.asyncio
async def test_accel_position_requires_accel_run(station, link):
    result = await station.calibration.confirm_accelerometer_position(AccelPosition.LEVEL)
    assert isinstance(result.error, PreconditionError)
    assert sent_commands(link) == []


@pytest.mark.asyncio
async def test_disconnect_fails_running_calibration(station, link):
    ack_all(link)
    cal = station.calibration
    await cal.calibrate(GYRO)
    waiter = cal.wait_for_completion(timeout=1)
    await station.disconnect()
    result = await waiter
    assert isinstance(result.error, LinkError)
    assert cal.state is CalibrationState.IDLE
    assert cal.status() == {"state": "idle", "result": result.to_dict()}
