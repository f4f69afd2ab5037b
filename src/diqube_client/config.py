# diqube client
# File: config.py
# Version: v3

"""Configuration loading for the diqube client."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse, urlunparse
import os


def _parse_bool_env(name: str, default: bool = False) -> bool:
    """Parse a boolean-like environment variable.

    Accepts 1/0, true/false, yes/no, on/off (case-insensitive).
    """
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def _parse_int_env(
    name: str,
    default: int,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    """Parse an int environment variable with clamping and safe fallback."""
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        value = int(default)
    else:
        try:
            value = int(str(raw).strip())
        except ValueError:
            value = int(default)

    if min_value is not None and value < min_value:
        value = min_value
    if max_value is not None and value > max_value:
        value = max_value

    return value


def _parse_list_env(name: str) -> Optional[List[str]]:
    """Parse a comma separated environment variable, None if unset/empty."""
    raw = os.getenv(name, "") or ""
    items = [p.strip() for p in raw.split(",") if p.strip()]
    return items or None


def socket_url_from_server_url(server_url: str) -> str:
    """Derive the websocket URL from the http(s) URL the UI is served under.

    ``https://host/ctx`` becomes ``wss://host/ctx/socket``.
    """
    parsed = urlparse(server_url.strip())
    scheme = "wss" if parsed.scheme.lower() in {"https", "wss"} else "ws"
    path = parsed.path.rstrip("/") + "/socket"
    return urlunparse((scheme, parsed.netloc, path, "", "", ""))


@dataclass
class ConnectionConfig:
    """Settings for one reconnecting websocket.

    Defaults are those of a bare transport; the session wiring in
    ``DiqubeConfig`` turns on enqueueing.
    """

    url: str
    lazy: bool = False
    reconnect: bool = True
    # Milliseconds between checks whether the socket needs re-opening.
    reconnect_interval_ms: int = 2000
    # Queue messages while disconnected and flush them on reconnect.
    enqueue: bool = False
    protocols: Optional[List[str]] = None

    @property
    def reconnect_interval(self) -> float:
        return self.reconnect_interval_ms / 1000.0


@dataclass
class DiqubeConfig:
    """Configuration values required to talk to a diqube UI server."""

    connection: ConnectionConfig
    ticket: Optional[str] = None
    username: Optional[str] = None

    # Only bounds how long the tool surface waits; 0 disables the bound.
    query_timeout_seconds: int = 300

    @classmethod
    def from_env(cls) -> "DiqubeConfig":
        """Create configuration from environment variables."""
        url = os.getenv("DIQUBE_URL")
        server_url = os.getenv("DIQUBE_SERVER_URL")
        if not url and server_url:
            url = socket_url_from_server_url(server_url)

        connection = ConnectionConfig(
            url=url or "ws://localhost:8080/diqube-ui/socket",
            lazy=_parse_bool_env("DIQUBE_LAZY_CONNECT", default=False),
            reconnect=_parse_bool_env("DIQUBE_RECONNECT", default=True),
            reconnect_interval_ms=_parse_int_env(
                "DIQUBE_RECONNECT_INTERVAL_MS", default=2000, min_value=10, max_value=600000
            ),
            enqueue=_parse_bool_env("DIQUBE_ENQUEUE", default=True),
            protocols=_parse_list_env("DIQUBE_PROTOCOLS"),
        )

        return cls(
            connection=connection,
            ticket=os.getenv("DIQUBE_TICKET") or None,
            username=os.getenv("DIQUBE_USERNAME") or None,
            query_timeout_seconds=_parse_int_env(
                "DIQUBE_QUERY_TIMEOUT_SECONDS", default=300, min_value=0, max_value=86400
            ),
        )
