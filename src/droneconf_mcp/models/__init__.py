"""Data models for connections, parameters, calibration and safety settings."""

from .calibration import AccelPosition, CalibrationProgress, CalibrationState, CalibrationType
from .connection import ConnectionSettings, LinkState, SerialPortInfo, SessionConfig, TransportKind
from .parameter import DroneParameter, ParameterDownloadState, ParameterMetadata
from .profile import JsonProfileStore, ProfileStore
from .result import OperationResult
from .safety import FailsafeAction, SafetySettings
