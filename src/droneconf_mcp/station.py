"""Wiring: one session shared by the parameter, command and calibration services."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .models.connection import ConnectionSettings, LinkState, SessionConfig
from .services.calibration import CalibrationConfig, CalibrationStateMachine
from .services.commands import CommandConfig, CommandDispatcher
from .services.parameters import ParameterSyncConfig, ParameterSyncEngine
from .session import LinkSession, TransportFactory
from .transport import create_transport

logger = logging.getLogger(__name__)


@dataclass
class StationConfig:
    session: SessionConfig = field(default_factory=SessionConfig)
    parameters: ParameterSyncConfig = field(default_factory=ParameterSyncConfig)
    commands: CommandConfig = field(default_factory=CommandConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)


class GroundStation:
    """Owns one :class:`LinkSession` and the services built on it.

    Services are reset whenever the link reaches ``DISCONNECTED``, so every
    connection starts with an empty parameter table and no confirmations.
    """

    def __init__(
        self,
        config: StationConfig | None = None,
        transport_factory: TransportFactory = create_transport,
    ) -> None:
        self.config = config or StationConfig()
        self.session = LinkSession(self.config.session, transport_factory)
        self.parameters = ParameterSyncEngine(self.session, self.config.parameters)
        self.commands = CommandDispatcher(self.session, self.config.commands)
        self.calibration = CalibrationStateMachine(
            self.session, self.commands, self.config.calibration
        )
        self._state_sub = self.session.state_changed.subscribe(self._on_state)

    def _on_state(self, state: LinkState) -> None:
        if state is LinkState.DISCONNECTED:
            self.calibration.reset()
            self.commands.reset()
            self.parameters.reset()
            logger.debug("Services reset after disconnect")

    async def connect(self, settings: ConnectionSettings) -> None:
        await self.session.connect(settings)

    async def disconnect(self) -> None:
        await self.session.disconnect()

    async def close(self) -> None:
        await self.session.disconnect()
        self._state_sub.unsubscribe()
        self.calibration.close()
        self.commands.close()
        self.parameters.close()

    def status(self) -> dict:
        return {
            "link": self.session.to_dict(),
            "armed": self.commands.is_armed,
            "confirmations": self.commands.confirmations,
            "parameters": {
                **self.parameters.download.to_dict(),
                "in_progress": self.parameters.is_download_in_progress,
                "complete": self.parameters.is_download_complete,
            },
            "calibration": self.calibration.status(),
        }
