# diqube client
# File: auth.py
# Version: v2

"""Login state: the ticket that authorises commands sent to the server."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional
import logging

from .config import DiqubeConfig

logger = logging.getLogger(__name__)


@dataclass
class LoginState:
    """Holds the serialized ticket of the logged in user.

    The ticket is obtained out of band (login UI, cookie, environment) and is
    attached to every command. When the server rejects it, the remote service
    calls ``logout_successful`` which clears it and informs listeners.
    """

    ticket: Optional[str] = None
    username: Optional[str] = None
    _logout_listeners: List[Callable[[], None]] = field(default_factory=list, repr=False)

    @classmethod
    def from_config(cls, config: DiqubeConfig) -> "LoginState":
        return cls(ticket=config.ticket, username=config.username)

    def login_successful(self, ticket: str, username: str) -> None:
        self.ticket = ticket
        self.username = username
        logger.info("Logged in as %s", username)

    def logout_successful(self) -> None:
        """Forget the ticket and notify everyone interested in the logout."""
        logger.info("Logging out %s", self.username)
        self.ticket = None
        self.username = None

        for listener in list(self._logout_listeners):
            try:
                listener()
            except Exception:  # listeners must not break message dispatch
                logger.warning("Logout listener %r failed", listener, exc_info=True)

    def is_ticket_available(self) -> bool:
        return bool(self.ticket)

    def add_logout_listener(self, listener: Callable[[], None]) -> None:
        self._logout_listeners.append(listener)

    def remove_logout_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._logout_listeners:
            self._logout_listeners.remove(listener)
