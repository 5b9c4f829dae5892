"""Safety configuration: failsafe actions, thresholds and fence limits.

This is configuration, not protocol state. It is read by the caller and can
be converted to autopilot parameter writes with :meth:`SafetySettings.to_parameters`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from enum import IntEnum

logger = logging.getLogger(__name__)


class FailsafeAction(IntEnum):
    """Canonical failsafe actions (battery failsafe numbering).

    Values match the autopilot's ``BATT_FS_LOW_ACT`` / ``BATT_FS_CRT_ACT``
    parameters, which is where these are most often written.
    """

    DISABLED = 0
    LAND = 1
    RTL = 2
    SMART_RTL_OR_LAND = 3
    SMART_RTL_OR_RTL = 4
    TERMINATE = 5


class LegacyFailsafeAction(IntEnum):
    """Five-value action set found in older saved profiles."""

    NONE = 0
    LAND = 1
    RETURN_TO_LAUNCH = 2
    DISARM = 3
    CONTINUE = 4


# DISARM maps to TERMINATE (both stop the motors); CONTINUE has no
# equivalent on the battery failsafe and maps to DISABLED.
LEGACY_ACTION_MAP: dict[LegacyFailsafeAction, FailsafeAction] = {
    LegacyFailsafeAction.NONE: FailsafeAction.DISABLED,
    LegacyFailsafeAction.LAND: FailsafeAction.LAND,
    LegacyFailsafeAction.RETURN_TO_LAUNCH: FailsafeAction.RTL,
    LegacyFailsafeAction.DISARM: FailsafeAction.TERMINATE,
    LegacyFailsafeAction.CONTINUE: FailsafeAction.DISABLED,
}


def from_legacy(value: int) -> FailsafeAction:
    return LEGACY_ACTION_MAP[LegacyFailsafeAction(value)]


# Field name -> autopilot parameter name
PARAMETER_NAMES: dict[str, str] = {
    "batt_low_volt": "BATT_LOW_VOLT",
    "batt_crt_volt": "BATT_CRT_VOLT",
    "batt_fs_low_act": "BATT_FS_LOW_ACT",
    "batt_fs_crt_act": "BATT_FS_CRT_ACT",
    "batt_capacity": "BATT_CAPACITY",
    "fs_thr_enable": "FS_THR_ENABLE",
    "fs_thr_value": "FS_THR_VALUE",
    "fs_gcs_enable": "FS_GCS_ENABLE",
    "fs_gcs_timeout": "FS_GCS_TIMEOUT",
    "crash_detect": "FS_CRASH_CHECK",
    "arming_check": "ARMING_CHECK",
    "fence_enable": "FENCE_ENABLE",
    "fence_type": "FENCE_TYPE",
    "fence_alt_max": "FENCE_ALT_MAX",
    "fence_radius": "FENCE_RADIUS",
    "fence_action": "FENCE_ACTION",
    "mot_safe_disarm": "MOT_SAFE_DISARM",
}


@dataclass
class SafetySettings:
    """Failsafe and fence configuration pushed to the vehicle as parameters."""

    batt_low_volt: float = 10.5
    batt_crt_volt: float = 10.0
    batt_fs_low_act: FailsafeAction | int = FailsafeAction.RTL
    batt_fs_crt_act: FailsafeAction | int = FailsafeAction.LAND
    batt_capacity: float = 0.0
    fs_thr_enable: float = 1
    fs_thr_value: float = 975
    fs_gcs_enable: float = 0
    fs_gcs_timeout: float = 5
    crash_detect: float = 1
    arming_check: int = 1
    fence_enable: float = 0
    fence_type: float = 7
    fence_alt_max: float = 100
    fence_radius: float = 300
    fence_action: float = 1
    mot_safe_disarm: float = 0

    def to_parameters(self) -> dict[str, float]:
        return {
            PARAMETER_NAMES[f.name]: float(getattr(self, f.name))
            for f in fields(self)
        }

    @classmethod
    def from_parameters(cls, params: dict[str, float]) -> SafetySettings:
        """Build settings from a parameter table, keeping defaults for gaps.

        Failsafe action numbers this table does not know (newer firmware adds
        some) are carried as plain ints so writing the settings back leaves
        them unchanged.
        """
        kwargs = {}
        for f in fields(cls):
            name = PARAMETER_NAMES[f.name]
            if name not in params:
                continue
            value = params[name]
            if f.name in ("batt_fs_low_act", "batt_fs_crt_act"):
                kwargs[f.name] = _failsafe_action(name, value)
            elif f.name == "arming_check":
                kwargs[f.name] = int(value)
            else:
                kwargs[f.name] = value
        return cls(**kwargs)


def _failsafe_action(name: str, value: float) -> FailsafeAction | int:
    try:
        return FailsafeAction(int(value))
    except ValueError:
        logger.warning("%s=%g is not a known failsafe action; keeping it as is", name, value)
        return int(value)
