# diqube client
# File: client.py
# Version: v2
"""One client session: a login, one websocket and the services on top of it.

Usage::

    client = DiqubeClient.from_env()
    analysis = await client.analysis.load_analysis("A1")
    ...
    await client.aclose()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .analysis import AnalysisService
from .auth import LoginState
from .config import DiqubeConfig
from .execution import ExecutionService
from .remote import RemoteService, SocketFactory


@dataclass
class DiqubeClient:
    """Wires the services of a session together. Create it inside an event loop."""

    config: DiqubeConfig
    login: LoginState
    remote: RemoteService = field(init=False)
    execution: ExecutionService = field(init=False)
    analysis: AnalysisService = field(init=False)
    socket_factory: Optional[SocketFactory] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.remote = RemoteService(self.config.connection, self.login, self.socket_factory)
        self.execution = ExecutionService(self.remote)
        self.analysis = AnalysisService(self.remote, self.execution)

    @classmethod
    def from_config(
        cls, config: DiqubeConfig, socket_factory: Optional[SocketFactory] = None
    ) -> "DiqubeClient":
        return cls(
            config=config,
            login=LoginState.from_config(config),
            socket_factory=socket_factory,
        )

    @classmethod
    def from_env(cls) -> "DiqubeClient":
        return cls.from_config(DiqubeConfig.from_env())

    @property
    def connected(self) -> bool:
        return self.remote.connected

    async def aclose(self) -> None:
        """Close the websocket on purpose and wait until it is gone."""
        self.remote.close()
        await self.remote.wait_closed()
