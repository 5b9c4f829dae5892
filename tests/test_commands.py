"""Tests for the command dispatcher: gating, acks, motor tests."""

import asyncio

import pytest

from droneconf_mcp.exceptions import (
    CommandError,
    CommandErrorKind,
    ConcurrencyError,
    LinkError,
    PreconditionError,
    ValidationError,
)
from droneconf_mcp.protocol.messages import (
    CommandId,
    CommandResult,
    MessageId,
    build_command_ack,
    build_heartbeat,
)
from droneconf_mcp.protocol.parser import parse_command_long

from conftest import settle


def ack_with(link, result=CommandResult.ACCEPTED, before=()):
    """Answer every command-long with ``result`` (after any ``before`` results)."""

    def handler(frame):
        cmd = parse_command_long(frame)
        return [build_command_ack(cmd.command, r) for r in (*before, result)]

    link.vehicle.on(MessageId.COMMAND_LONG, handler)


def sent_commands(link):
    return [parse_command_long(f) for f in link.vehicle.frames(MessageId.COMMAND_LONG)]


@pytest.mark.asyncio
async def test_arm_without_propeller_confirmation_sends_nothing(station, link):
    """Unconfirmed gate: failure and zero frames on the wire."""
    station.commands.confirm_arming()
    before = len(link.transport.sent)
    result = await station.commands.arm(force=False)
    assert not result
    assert isinstance(result.error, PreconditionError)
    assert len(link.transport.sent) == before
    assert not station.commands.is_armed


@pytest.mark.asyncio
async def test_arm_requires_arming_confirmation(station, link):
    station.commands.confirm_propellers_removed()
    result = await station.commands.arm()
    assert isinstance(result.error, PreconditionError)
    assert sent_commands(link) == []


@pytest.mark.asyncio
async def test_arm_accepted(station, link):
    ack_with(link)
    station.commands.confirm_arming()
    station.commands.confirm_propellers_removed()
    result = await station.commands.arm()
    assert result
    assert station.commands.is_armed
    cmd = sent_commands(link)[0]
    assert cmd.command == CommandId.COMPONENT_ARM_DISARM
    assert cmd.params[:2] == (1.0, 0.0)


@pytest.mark.asyncio
async def test_force_arm_sends_magic(station, link):
    ack_with(link)
    station.commands.confirm_arming()
    station.commands.confirm_propellers_removed()
    await station.commands.arm(force=True)
    assert sent_commands(link)[0].params[1] == 21196.0


@pytest.mark.asyncio
async def test_arm_ack_timeout_leaves_state(station, link):
    """No ack: CommandError(TIMEOUT) and is_armed unchanged."""
    station.commands.confirm_arming()
    station.commands.confirm_propellers_removed()
    result = await station.commands.arm()
    assert not result
    assert isinstance(result.error, CommandError)
    assert result.error.kind is CommandErrorKind.TIMEOUT
    assert not station.commands.is_armed
    assert len(sent_commands(link)) == 1  # no automatic retry


@pytest.mark.asyncio
async def test_disarm_rejected(station, link):
    ack_with(link, CommandResult.DENIED)
    result = await station.commands.disarm()
    assert not result
    assert result.error.kind is CommandErrorKind.REJECTED
    assert result.error.result_code == CommandResult.DENIED
    assert result.to_dict()["result_code"] == 2


@pytest.mark.asyncio
async def test_in_progress_ack_keeps_waiting(station, link):
    ack_with(link, CommandResult.ACCEPTED, before=(CommandResult.IN_PROGRESS,))
    result = await station.commands.disarm()
    assert result


@pytest.mark.asyncio
async def test_reboot_and_shutdown_params(station, link):
    ack_with(link)
    assert await station.commands.reboot()
    assert await station.commands.shutdown()
    reboot, shutdown = sent_commands(link)
    assert reboot.command == CommandId.PREFLIGHT_REBOOT_SHUTDOWN
    assert reboot.params[0] == 1.0
    assert shutdown.params[0] == 2.0


@pytest.mark.asyncio
async def test_reboot_refused_while_armed(station, link):
    link.inject(build_heartbeat(2, 3, base_mode=0x80))
    await settle()
    assert station.commands.is_armed
    result = await station.commands.reboot()
    assert isinstance(result.error, PreconditionError)
    assert sent_commands(link) == []


@pytest.mark.asyncio
async def test_motor_test_mapping(station, link):
    ack_with(link)
    station.commands.confirm_propellers_removed()
    result = await station.commands.motor_test(motor=3, throttle=15, duration=2, motor_count=0)
    assert result
    cmd = sent_commands(link)[0]
    assert cmd.command == CommandId.DO_MOTOR_TEST
    assert cmd.params == (3.0, 0.0, 15.0, 2.0, 0.0, 0.0, 0.0)


@pytest.mark.asyncio
async def test_motor_test_requires_propeller_confirmation(station, link):
    result = await station.commands.motor_test(1, 10, 1)
    assert isinstance(result.error, PreconditionError)
    assert sent_commands(link) == []


@pytest.mark.asyncio
async def test_motor_test_validation(station, link):
    station.commands.confirm_propellers_removed()
    for args in ((0, 10, 1), (1, 150, 1), (1, 10, 0), (1, 10, 60)):
        result = await station.commands.motor_test(*args)
        assert isinstance(result.error, ValidationError), args
    assert sent_commands(link) == []


@pytest.mark.asyncio
async def test_concurrent_same_command_fails_fast(station, link):
    station.commands.confirm_propellers_removed()
    first = asyncio.create_task(station.commands.motor_test(1, 10, 1))
    await settle(0.005)
    second = await station.commands.motor_test(2, 10, 1)
    assert isinstance(second.error, ConcurrencyError)
    assert (await first).error.kind is CommandErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_stop_all_motors_does_not_wait(station, link):
    """Stop goes out while a motor test is still waiting for its ack."""
    station.commands.confirm_propellers_removed()
    pending = asyncio.create_task(station.commands.motor_test(1, 20, 5))
    await settle(0.005)

    result = station.commands.stop_all_motors(4)
    assert result
    await settle(0.01)
    assert not pending.done()

    stops = sent_commands(link)[1:]
    assert [c.params[0] for c in stops] == [1.0, 2.0, 3.0, 4.0]
    assert all(c.params[2] == 0.0 for c in stops)
    await pending


@pytest.mark.asyncio
async def test_stop_all_motors_default_count(station, link):
    station.commands.stop_all_motors()
    await settle()
    assert len(sent_commands(link)) == station.commands.config.default_motor_count


@pytest.mark.asyncio
async def test_heartbeat_updates_armed_state(station, link):
    link.inject(build_heartbeat(2, 3, base_mode=0x80))
    await settle()
    assert station.commands.is_armed
    link.inject(build_heartbeat(2, 3, base_mode=0))
    await settle()
    assert not station.commands.is_armed


@pytest.mark.asyncio
async def test_disconnect_clears_confirmations_and_pending(station, link):
    station.commands.confirm_arming()
    station.commands.confirm_propellers_removed()
    task = asyncio.create_task(station.commands.disarm())
    await settle(0.005)
    await station.disconnect()
    result = await task
    assert isinstance(result.error, LinkError)
    assert station.commands.confirmations == {
        "arming_confirmed": False,
        "propellers_removed": False,
    }
