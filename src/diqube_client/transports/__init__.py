# diqube client
# File: transports/__init__.py
# Version: v1

"""Transports: the reconnecting websocket and the MCP stdio entrypoint."""
