# diqube client
# File: tools/__init__.py
# Version: v1

"""MCP tools exposing a diqube client session."""
