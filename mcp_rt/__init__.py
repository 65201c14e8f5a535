"""MCP server exposing the Request Tracker (RT) REST 2.0 API as tools."""

__version__ = "1.0.0"
