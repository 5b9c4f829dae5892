"""Ground-station configurator for autopilots, exposed as an MCP server."""

from .models.connection import ConnectionSettings, LinkState
from .models.result import OperationResult
from .session import LinkSession
from .station import GroundStation, StationConfig

__version__ = "0.1.0"
