"""MCP server entry point for the drone configurator.

Exposes tools, resources, and prompts via the Model Context Protocol
using the official Python MCP SDK with stdio transport.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from .exceptions import ConcurrencyError, TransportError
from .models.calibration import AccelPosition, CalibrationType
from .models.connection import (
    DEFAULT_BAUD_RATE,
    DEFAULT_TCP_PORT,
    DEFAULT_UDP_PORT,
    ConnectionSettings,
    TransportKind,
)
from .models.parameter import load_metadata
from .models.profile import JsonProfileStore
from .models.result import OperationResult
from .models.safety import FailsafeAction, SafetySettings, from_legacy
from .protocol.messages import MotorTestThrottleType
from .station import GroundStation
from .transport import list_serial_ports as _list_serial_ports

logger = logging.getLogger(__name__)

PROFILE_DIR_ENV = "DRONECONF_PROFILE_DIR"
DEFAULT_PROFILE_DIR = Path.home() / ".droneconf" / "profiles"

mcp = FastMCP(
    "droneconf",
    instructions="MCP server for configuring and calibrating an autopilot over serial, TCP or UDP",
)

# Global station state
_station: GroundStation | None = None


def _get_station() -> GroundStation:
    """Get the ground station, creating it on first use."""
    global _station
    if _station is None:
        _station = GroundStation()
    return _station


def _get_profile_store() -> JsonProfileStore:
    return JsonProfileStore(os.environ.get(PROFILE_DIR_ENV) or DEFAULT_PROFILE_DIR)


def _result(result: OperationResult) -> dict[str, Any]:
    d = result.to_dict()
    if not result:
        d["error"] = result.message
        d["error_type"] = type(result.error).__name__ if result.error else None
    return d


def _parse_enum(enum_cls, value: str | int):
    """Look an enum member up by name (case-insensitive) or value."""
    if isinstance(value, str) and not value.isdigit():
        try:
            return enum_cls[value.strip().upper()]
        except KeyError:
            names = ", ".join(m.name.lower() for m in enum_cls)
            raise ValueError(f"Unknown {enum_cls.__name__} '{value}'. Valid: {names}") from None
    return enum_cls(int(value))


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def list_serial_ports() -> dict[str, Any]:
    """List serial ports that an autopilot could be attached to."""
    return {"ports": [p.to_dict() for p in _list_serial_ports()]}


@mcp.tool()
async def connect(
    transport: str = "serial",
    device: str = "",
    baud_rate: int = DEFAULT_BAUD_RATE,
    host: str = "",
    port: int = 0,
) -> dict[str, Any]:
    """Connect to the autopilot and wait for its heartbeat.

    Args:
        transport: "serial", "tcp" or "udp".
        device: Serial device, e.g. /dev/ttyACM0 or COM3 (serial only).
        baud_rate: Serial baud rate (default 115200).
        host: Host for TCP/UDP. For UDP leave empty to listen for the vehicle.
        port: TCP/UDP port (defaults: TCP 5760, UDP 14550).
    """
    try:
        kind = TransportKind(transport.lower())
        if kind is TransportKind.SERIAL:
            settings = ConnectionSettings.serial(device, baud_rate)
        elif kind is TransportKind.TCP:
            settings = ConnectionSettings.tcp(host, port or DEFAULT_TCP_PORT)
        else:
            settings = ConnectionSettings.udp(host, port or DEFAULT_UDP_PORT)
    except ValueError as e:
        return {"error": str(e)}

    station = _get_station()
    if station.session.is_connected:
        return {"connected": True, "message": "Already connected", **station.session.to_dict()}
    try:
        await station.connect(settings)
    except (TransportError, ConcurrencyError) as e:
        return {"error": str(e), "kind": e.kind.value}

    # Kick off the parameter download; progress is visible via link_status
    await station.parameters.refresh_parameters()
    return {"connected": True, **station.session.to_dict()}


@mcp.tool()
async def disconnect() -> dict[str, bool]:
    """Close the link to the autopilot."""
    await _get_station().disconnect()
    return {"disconnected": True}


@mcp.tool()
async def link_status() -> dict[str, Any]:
    """Report link state, counters, armed state and download/calibration progress."""
    return _get_station().status()


# ─── PARAMETER TOOLS ─────────────────────────────────────────────────

@mcp.tool()
async def refresh_parameters(wait: bool = True) -> dict[str, Any]:
    """Download the full parameter table from the vehicle.

    Args:
        wait: Wait until the download finishes or gives up (default True).
    """
    return _result(await _get_station().parameters.refresh_parameters(wait=wait))


@mcp.tool()
def get_parameter(name: str) -> dict[str, Any]:
    """Read one parameter from the downloaded table.

    Args:
        name: Parameter name, e.g. "BATT_LOW_VOLT".
    """
    param = _get_station().parameters.get_parameter(name)
    if param is None:
        return {"error": f"Parameter '{name}' not found. Run refresh_parameters first?"}
    return param.to_dict()


@mcp.tool()
def list_parameters(prefix: str = "") -> dict[str, Any]:
    """List downloaded parameters, optionally filtered by name prefix.

    Args:
        prefix: Only names starting with this (case-insensitive), e.g. "BATT_".
    """
    engine = _get_station().parameters
    prefix = prefix.upper()
    params = [p.to_dict() for p in engine.get_all_parameters() if p.name.startswith(prefix)]
    return {
        "parameters": params,
        "count": len(params),
        "download": engine.download.to_dict(),
    }


@mcp.tool()
async def set_parameter(name: str, value: float) -> dict[str, Any]:
    """Write a parameter and wait for the vehicle to confirm it.

    Args:
        name: Parameter name (max 16 chars).
        value: New value. Checked against known min/max before sending.
    """
    return _result(await _get_station().parameters.set_parameter(name, value))


@mcp.tool()
def load_parameter_metadata(path: str) -> dict[str, Any]:
    """Load min/max/description metadata for parameters from a JSON file.

    Args:
        path: File of the form {"NAME": {"min": 0, "max": 1, "description": "..."}}.
    """
    if not Path(path).exists():
        return {"error": f"File not found: {path}"}
    try:
        metadata = load_metadata(path)
    except (ValueError, json.JSONDecodeError) as e:
        return {"error": str(e)}
    _get_station().parameters.set_metadata(metadata)
    return {"loaded": len(metadata)}


# ─── COMMAND TOOLS ───────────────────────────────────────────────────

@mcp.tool()
def confirm_safety(arming: bool = False, propellers_removed: bool = False) -> dict[str, Any]:
    """Record operator safety confirmations for this connection.

    Arming needs both confirmations; motor tests need propellers_removed.
    Confirmations are cleared on disconnect.

    Args:
        arming: Operator confirms the vehicle may be armed.
        propellers_removed: Operator confirms all propellers are removed.
    """
    commands = _get_station().commands
    if arming:
        commands.confirm_arming()
    if propellers_removed:
        commands.confirm_propellers_removed()
    return commands.confirmations


@mcp.tool()
async def arm(force: bool = False) -> dict[str, Any]:
    """Arm the vehicle. Requires confirm_safety first.

    Args:
        force: Bypass the autopilot's pre-arm checks.
    """
    return _result(await _get_station().commands.arm(force))


@mcp.tool()
async def disarm(force: bool = False) -> dict[str, Any]:
    """Disarm the vehicle.

    Args:
        force: Disarm even if the autopilot considers it unsafe (e.g. in flight).
    """
    return _result(await _get_station().commands.disarm(force))


@mcp.tool()
async def reboot() -> dict[str, Any]:
    """Reboot the autopilot. The link will drop and reconnect."""
    return _result(await _get_station().commands.reboot())


@mcp.tool()
async def shutdown() -> dict[str, Any]:
    """Shut the autopilot down."""
    return _result(await _get_station().commands.shutdown())


@mcp.tool()
async def motor_test(
    motor: int,
    throttle: float,
    duration: float = 2.0,
    throttle_type: str = "percent",
    motor_count: int = 0,
) -> dict[str, Any]:
    """Spin a motor briefly. Requires confirm_safety(propellers_removed=True).

    Args:
        motor: Motor number, starting at 1.
        throttle: Throttle in units of throttle_type (percent: 0-100, pwm: 1000-2000).
        duration: Seconds to run (default 2).
        throttle_type: "percent", "pwm" or "pilot".
        motor_count: Test this many motors in sequence from `motor` (0 = just one).
    """
    try:
        kind = _parse_enum(MotorTestThrottleType, throttle_type)
    except ValueError as e:
        return {"error": str(e)}
    return _result(await _get_station().commands.motor_test(
        motor, throttle, duration, throttle_type=kind, motor_count=motor_count
    ))


@mcp.tool()
def stop_all_motors(motor_count: int = 0) -> dict[str, Any]:
    """Immediately send zero throttle to every motor.

    Args:
        motor_count: Number of motors (default 4).
    """
    return _result(_get_station().commands.stop_all_motors(motor_count or None))


# ─── CALIBRATION TOOLS ───────────────────────────────────────────────

@mcp.tool()
async def calibrate(sensor: str, wait: bool = False) -> dict[str, Any]:
    """Start a sensor calibration.

    Args:
        sensor: gyroscope, accelerometer, magnetometer, barometer,
                level_horizon, rc_trim, esc or airspeed.
        wait: Wait for the run to finish. Leave False for the accelerometer,
              which needs confirm_accel_position for each orientation.
    """
    try:
        kind = _parse_enum(CalibrationType, sensor)
    except ValueError as e:
        return {"error": str(e)}
    calibration = _get_station().calibration
    result = await calibration.calibrate(kind)
    if result and wait:
        result = await calibration.wait_for_completion()
    return {**_result(result), "status": calibration.status()}


@mcp.tool()
def calibration_status() -> dict[str, Any]:
    """Report the state and progress of the current or last calibration."""
    return _get_station().calibration.status()


@mcp.tool()
async def confirm_accel_position(position: str) -> dict[str, Any]:
    """Confirm the vehicle is placed in the orientation the calibration asked for.

    Args:
        position: level, left, right, nose_down, nose_up or back.
    """
    try:
        pos = _parse_enum(AccelPosition, position)
    except ValueError as e:
        return {"error": str(e)}
    return _result(await _get_station().calibration.confirm_accelerometer_position(pos))


@mcp.tool()
def cancel_calibration() -> dict[str, Any]:
    """Abort the running calibration."""
    return _result(_get_station().calibration.cancel_calibration())


# ─── PROFILE / SAFETY TOOLS ──────────────────────────────────────────

@mcp.tool()
def save_profile(name: str, prefix: str = "") -> dict[str, Any]:
    """Save the downloaded parameter values as a named profile.

    Args:
        name: Profile name (letters, digits, '_', '-', '.').
        prefix: Only save parameters whose names start with this.
    """
    params = {
        p.name: p.value
        for p in _get_station().parameters.get_all_parameters()
        if p.name.startswith(prefix.upper())
    }
    if not params:
        return {"error": "No parameters to save. Run refresh_parameters first."}
    try:
        path = _get_profile_store().save_profile(name, params)
    except (ValueError, OSError) as e:
        return {"error": str(e)}
    return {"saved": True, "path": str(path), "parameter_count": len(params)}


@mcp.tool()
async def load_profile(name: str, apply: bool = True) -> dict[str, Any]:
    """Load a saved profile and (by default) write it to the vehicle.

    Args:
        name: Profile name.
        apply: Write the values to the vehicle; False just returns them.
    """
    try:
        params = _get_profile_store().load_profile(name)
    except FileNotFoundError as e:
        return {"error": str(e)}
    except (ValueError, json.JSONDecodeError) as e:
        return {"error": f"Invalid profile '{name}': {e}"}
    if not apply:
        return {"name": name, "parameters": params}
    return _result(await _get_station().parameters.apply_parameters(params))


@mcp.tool()
def list_profiles() -> dict[str, Any]:
    """List saved parameter profiles."""
    store = _get_profile_store()
    return {"profiles": store.list_profiles(), "directory": str(store.directory)}


@mcp.tool()
def get_safety_settings() -> dict[str, Any]:
    """Read failsafe and fence settings from the downloaded parameter table."""
    params = {p.name: p.value for p in _get_station().parameters.get_all_parameters()}
    settings = SafetySettings.from_parameters(params)
    return {
        name: value.name.lower() if isinstance(value, FailsafeAction) else value
        for name, value in vars(settings).items()
    }


@mcp.tool()
async def apply_safety_settings(
    settings: dict[str, Any],
    legacy_actions: bool = False,
) -> dict[str, Any]:
    """Write failsafe and fence settings to the vehicle.

    Unspecified fields keep their current values when known, else defaults.

    Args:
        settings: Field overrides, e.g. {"batt_low_volt": 14.0, "batt_fs_low_act": "rtl"}.
        legacy_actions: Interpret numeric failsafe actions with the old five-value
                        numbering (none/land/rtl/disarm/continue).
    """
    station = _get_station()
    current = {p.name: p.value for p in station.parameters.get_all_parameters()}
    values = vars(SafetySettings.from_parameters(current)).copy()
    for key, value in settings.items():
        if key not in values:
            return {"error": f"Unknown safety setting '{key}'. Valid: {sorted(values)}"}
        try:
            if key in ("batt_fs_low_act", "batt_fs_crt_act"):
                if legacy_actions and not isinstance(value, str):
                    value = from_legacy(int(value))
                else:
                    value = _parse_enum(FailsafeAction, value)
            else:
                value = float(value)
        except (ValueError, TypeError) as e:
            return {"error": f"{key}: {e}"}
        values[key] = value
    safety = SafetySettings(**values)
    return _result(await station.parameters.apply_parameters(safety.to_parameters()))


# ─── RESOURCES ───────────────────────────────────────────────────────

@mcp.resource("droneconf://link/status")
async def resource_link_status() -> str:
    """Link state, counters and service status."""
    return json.dumps(_get_station().status(), indent=2)


@mcp.resource("droneconf://parameters/list")
def resource_parameters() -> str:
    """Downloaded parameter table."""
    params = [p.to_dict() for p in _get_station().parameters.get_all_parameters()]
    return json.dumps(params, indent=2)


@mcp.resource("droneconf://calibration/status")
def resource_calibration_status() -> str:
    return json.dumps(_get_station().calibration.status(), indent=2)


@mcp.resource("droneconf://profiles/list")
def resource_profiles() -> str:
    return json.dumps(_get_profile_store().list_profiles())


# ─── PROMPTS ─────────────────────────────────────────────────────────

@mcp.prompt()
def preflight_checklist() -> str:
    """Walk through a pre-flight configuration check."""
    return """Check the vehicle is ready to fly.
Steps:
- Use link_status to confirm the link is connected and the parameter download completed
- Use get_safety_settings and review battery failsafe voltages and actions
- Check ARMING_CHECK is not 0 (pre-arm checks disabled)
- Confirm a geofence is enabled if flying near people (FENCE_ENABLE)
- Review calibration_status; recalibrate the accelerometer and compass if the
  vehicle or its sensors have been moved
- Ask the operator to remove propellers before any motor_test

Report anything unusual and suggest fixes with set_parameter or apply_safety_settings.
Never arm without explicit operator confirmation via confirm_safety."""


@mcp.prompt()
def calibration_walkthrough(sensor: str = "accelerometer") -> str:
    """Guide the operator through a sensor calibration.

    Args:
        sensor: Sensor to calibrate (e.g. accelerometer, magnetometer, gyroscope).
    """
    return f"""Guide the operator through {sensor} calibration.
1. Use link_status to make sure the vehicle is connected and disarmed.
2. Start with calibrate(sensor="{sensor}").
3. Poll calibration_status and relay the progress percentage.
4. For the accelerometer, the progress step names the orientation the vehicle
   wants (level, left, right, nose_down, nose_up, back). Ask the operator to
   place the vehicle, then call confirm_accel_position with that orientation.
5. For the magnetometer, ask the operator to rotate the vehicle on all axes
   until progress reaches 100%.
6. If the operator wants to stop, call cancel_calibration.
7. When complete, suggest a reboot so new offsets take effect."""


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
