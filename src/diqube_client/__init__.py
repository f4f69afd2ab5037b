# diqube client
# File: __init__.py
# Version: v1

"""Python client for the diqube UI server's websocket protocol."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

from .client import DiqubeClient
from .config import ConnectionConfig, DiqubeConfig

__all__ = ["ConnectionConfig", "DiqubeClient", "DiqubeConfig", "__version__"]


def _resolve_version() -> str:
    """Resolve the installed distribution version, with a fallback for source trees."""
    try:
        return version("diqube-client")
    except PackageNotFoundError:
        return "0.1.0"


__version__ = _resolve_version()
