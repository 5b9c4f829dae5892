"""Calibration types, states and progress snapshots."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum


class CalibrationType(IntEnum):
    """Sensor calibration kinds. Values are the wire ``type`` field."""

    GYROSCOPE = 0
    MAGNETOMETER = 1
    ACCELEROMETER = 2
    BAROMETER = 3
    LEVEL_HORIZON = 4
    RC_TRIM = 5
    ESC = 6
    AIRSPEED = 7


class CalibrationState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (
            CalibrationState.COMPLETED,
            CalibrationState.FAILED,
            CalibrationState.CANCELLED,
        )


class AccelPosition(IntEnum):
    """Vehicle orientations requested during six-point accelerometer calibration."""

    LEVEL = 1
    LEFT = 2
    RIGHT = 3
    NOSE_DOWN = 4
    NOSE_UP = 5
    BACK = 6


# Preflight-calibration command params (param1..param7) that start each type
START_PARAMS: dict[CalibrationType, tuple[float, ...]] = {
    CalibrationType.GYROSCOPE: (1, 0, 0, 0, 0, 0, 0),
    CalibrationType.MAGNETOMETER: (0, 1, 0, 0, 0, 0, 0),
    CalibrationType.BAROMETER: (0, 0, 1, 0, 0, 0, 0),
    CalibrationType.RC_TRIM: (0, 0, 0, 1, 0, 0, 0),
    CalibrationType.ACCELEROMETER: (0, 0, 0, 0, 1, 0, 0),
    CalibrationType.LEVEL_HORIZON: (0, 0, 0, 0, 2, 0, 0),
    CalibrationType.AIRSPEED: (0, 0, 0, 0, 0, 1, 0),
    CalibrationType.ESC: (0, 0, 0, 0, 0, 0, 1),
}

# Longest silence tolerated between progress reports, per type (seconds).
# Accelerometer and compass runs wait on the operator moving the vehicle.
STEP_TIMEOUTS: dict[CalibrationType, float] = {
    CalibrationType.GYROSCOPE: 15.0,
    CalibrationType.MAGNETOMETER: 120.0,
    CalibrationType.ACCELEROMETER: 90.0,
    CalibrationType.BAROMETER: 15.0,
    CalibrationType.LEVEL_HORIZON: 20.0,
    CalibrationType.RC_TRIM: 20.0,
    CalibrationType.ESC: 60.0,
    CalibrationType.AIRSPEED: 30.0,
}

# Steps where the vehicle sits waiting for the operator to reposition it get
# their own window, keyed by (type, step). Other steps use the type window.
OPERATOR_STEP_TIMEOUTS: dict[tuple[CalibrationType, int], float] = {
    (CalibrationType.ACCELEROMETER, position): 180.0 for position in AccelPosition
}


def step_name(calibration_type: CalibrationType, step: int) -> str:
    if calibration_type is CalibrationType.ACCELEROMETER and AccelPosition.LEVEL <= step <= AccelPosition.BACK:
        return AccelPosition(step).name.lower()
    return f"step {step}"


@dataclass
class CalibrationProgress:
    """One accepted progress report for the running calibration."""

    calibration_type: CalibrationType
    percent: int
    step: int = 0
    is_complete: bool = False

    @property
    def step_name(self) -> str:
        return step_name(self.calibration_type, self.step)

    def to_dict(self) -> dict:
        return {
            "type": self.calibration_type.name.lower(),
            "percent": self.percent,
            "step": self.step,
            "step_name": self.step_name,
            "complete": self.is_complete,
        }
