# diqube client
# File: transports/stdio_server.py
# Version: v2

"""STDIO entrypoint for the diqube MCP server.

This is the script behind the ``diqube-mcp`` console command. It creates a
FastMCP server, registers the diqube tools and runs the built-in stdio
transport. The websocket session is opened on the first tool call.
"""

from __future__ import annotations

import logging
import os

from mcp.server.fastmcp import FastMCP

from ..tools import tasks


def main() -> None:
    """Synchronous entrypoint for console_scripts."""
    # stdout belongs to the MCP protocol; basicConfig logs to stderr.
    logging.basicConfig(level=os.getenv("DIQUBE_LOG_LEVEL", "WARNING").upper())

    mcp = FastMCP("diqube-client")
    tasks.register_tools(mcp)

    # Let FastMCP handle stdio + event loop setup.
    mcp.run()


if __name__ == "__main__":
    main()
