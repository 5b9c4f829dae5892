"""Tests for the MCP tool layer."""

from __future__ import annotations

import json
import sys
from unittest.mock import MagicMock, patch

import pytest

from droneconf_mcp.models.safety import FailsafeAction, SafetySettings

from conftest import SimulatedParameters


def _get_server_module():
    """Import server module with FastMCP mocked to avoid init issues."""
    mock_fastmcp_cls = MagicMock()
    mock_fastmcp_instance = MagicMock()
    # Make the @mcp.tool() decorator a no-op that returns the function unchanged
    mock_fastmcp_instance.tool.return_value = lambda fn: fn
    mock_fastmcp_instance.resource.return_value = lambda fn: fn
    mock_fastmcp_instance.prompt.return_value = lambda fn: fn
    mock_fastmcp_cls.return_value = mock_fastmcp_instance

    with patch.dict(sys.modules, {}):
        with patch("mcp.server.fastmcp.FastMCP", mock_fastmcp_cls):
            # Remove cached server module so it re-imports with our mock
            sys.modules.pop("droneconf_mcp.server", None)
            import droneconf_mcp.server as server_mod

    return server_mod


@pytest.fixture
def server(station):
    server = _get_server_module()
    with patch.object(server, "_get_station", return_value=station):
        yield server


@pytest.fixture
def profile_dir(tmp_path, monkeypatch):
    directory = tmp_path / "profiles"
    monkeypatch.setenv("DRONECONF_PROFILE_DIR", str(directory))
    return directory


SAFETY_TABLE = SafetySettings().to_parameters()


@pytest.mark.asyncio
async def test_connect_rejects_bad_settings(server):
    assert "error" in await server.connect(transport="carrier-pigeon")
    result = await server.connect(transport="serial", device="")
    assert "device" in result["error"]


@pytest.mark.asyncio
async def test_connect_when_already_connected(server):
    result = await server.connect(transport="tcp", host="127.0.0.1")
    assert result["connected"]
    assert result["message"] == "Already connected"


@pytest.mark.asyncio
async def test_arm_without_confirmation_reports_error(server):
    result = await server.arm()
    assert result["success"] is False
    assert result["error_type"] == "PreconditionError"
    assert "confirmed" in result["error"]


@pytest.mark.asyncio
async def test_confirm_safety(server):
    assert server.confirm_safety(propellers_removed=True) == {
        "arming_confirmed": False,
        "propellers_removed": True,
    }
    assert server.confirm_safety(arming=True)["arming_confirmed"]


@pytest.mark.asyncio
async def test_unknown_names_rejected(server):
    assert "gyroscope" in (await server.calibrate("compass-dance"))["error"]
    assert "percent" in (await server.motor_test(1, 10, throttle_type="warp"))["error"]
    assert "level" in (await server.confirm_accel_position("upside_down"))["error"]


@pytest.mark.asyncio
async def test_get_and_list_parameters(server, link):
    SimulatedParameters(link.vehicle, {"BATT_LOW_VOLT": 10.5, "BATT_CRT_VOLT": 10.0, "ARMING_CHECK": 1})
    refresh = await server.refresh_parameters()
    assert refresh["success"]
    assert server.get_parameter("BATT_LOW_VOLT")["value"] == 10.5
    assert "error" in server.get_parameter("NOPE")
    listed = server.list_parameters(prefix="batt_")
    assert listed["count"] == 2
    assert listed["download"] == {"received": 3, "expected": 3}


@pytest.mark.asyncio
async def test_set_parameter_out_of_range(server, tmp_path):
    meta = tmp_path / "meta.json"
    meta.write_text(json.dumps({"BATT_LOW_VOLT": {"min": 0, "max": 60}}))
    assert server.load_parameter_metadata(str(meta)) == {"loaded": 1}
    result = await server.set_parameter("BATT_LOW_VOLT", 99)
    assert result["kind"] == "out_of_range"
    assert result["error_type"] == "ValidationError"


@pytest.mark.asyncio
async def test_load_metadata_missing_file(server):
    assert "error" in server.load_parameter_metadata("/nonexistent/meta.json")


@pytest.mark.asyncio
async def test_profile_round_trip(server, link, profile_dir):
    sim = SimulatedParameters(link.vehicle, {"BATT_LOW_VOLT": 10.5, "ARMING_CHECK": 1})
    await server.refresh_parameters()
    saved = server.save_profile("bench")
    assert saved["parameter_count"] == 2
    assert server.list_profiles()["profiles"] == ["bench"]

    loaded = await server.load_profile("bench", apply=False)
    assert loaded["parameters"] == {"ARMING_CHECK": 1.0, "BATT_LOW_VOLT": 10.5}

    sim.values["BATT_LOW_VOLT"] = 9.0
    applied = await server.load_profile("bench")
    assert applied["success"]
    assert sim.values["BATT_LOW_VOLT"] == 10.5


@pytest.mark.asyncio
async def test_load_missing_profile(server, profile_dir):
    assert "error" in await server.load_profile("ghost")


@pytest.mark.asyncio
async def test_save_profile_without_parameters(server, profile_dir):
    assert "error" in server.save_profile("empty")


@pytest.mark.asyncio
async def test_apply_safety_settings_unknown_key(server):
    result = await server.apply_safety_settings({"warp_drive": 1})
    assert "Unknown safety setting" in result["error"]


@pytest.mark.asyncio
async def test_apply_safety_settings_legacy_action(server, link):
    sim = SimulatedParameters(link.vehicle, SAFETY_TABLE)
    await server.refresh_parameters()
    result = await server.apply_safety_settings(
        {"batt_fs_low_act": 3, "batt_low_volt": 14.4}, legacy_actions=True
    )
    assert result["success"]
    assert sim.values["BATT_FS_LOW_ACT"] == float(FailsafeAction.TERMINATE)
    assert sim.values["BATT_LOW_VOLT"] == pytest.approx(14.4)

    safety = server.get_safety_settings()
    assert safety["batt_fs_low_act"] == "terminate"


@pytest.mark.asyncio
async def test_apply_safety_settings_action_by_name(server, link):
    sim = SimulatedParameters(link.vehicle, SAFETY_TABLE)
    await server.refresh_parameters()
    result = await server.apply_safety_settings({"batt_fs_crt_act": "rtl"})
    assert result["success"]
    assert sim.values["BATT_FS_CRT_ACT"] == float(FailsafeAction.RTL)


@pytest.mark.asyncio
async def test_safety_settings_with_newer_failsafe_action(server, link):
    """An action number past the known table is reported and written back as is."""
    sim = SimulatedParameters(link.vehicle, {**SAFETY_TABLE, "BATT_FS_LOW_ACT": 6.0})
    await server.refresh_parameters()
    assert server.get_safety_settings()["batt_fs_low_act"] == 6

    result = await server.apply_safety_settings({"batt_low_volt": 14.4})
    assert result["success"]
    assert sim.values["BATT_FS_LOW_ACT"] == 6.0


@pytest.mark.asyncio
async def test_calibration_status_and_cancel(server):
    assert server.calibration_status() == {"state": "idle"}
    assert server.cancel_calibration()["error_type"] == "PreconditionError"


@pytest.mark.asyncio
async def test_resources_are_json(server):
    status = json.loads(await server.resource_link_status())
    assert status["link"]["state"] == "connected"
    assert json.loads(server.resource_parameters()) == []


@pytest.mark.asyncio
async def test_disconnect(server, station):
    assert await server.disconnect() == {"disconnected": True}
    assert not station.session.is_connected
    assert "error" in await server.arm()


def test_prompts_mention_tools():
    server = _get_server_module()
    assert "confirm_safety" in server.preflight_checklist()
    assert 'calibrate(sensor="magnetometer")' in server.calibration_walkthrough("magnetometer")
