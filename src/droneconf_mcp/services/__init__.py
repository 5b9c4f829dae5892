"""Consumers of the link session: parameters, commands and calibration."""

from .calibration import CalibrationConfig, CalibrationStateMachine
from .commands import CommandConfig, CommandDispatcher
from .parameters import ParameterSyncConfig, ParameterSyncEngine
from .pending import PendingRequests
