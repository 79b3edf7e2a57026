"""Stdio, Server-Sent Events and streamable HTTP transports with client session management for MCP servers."""

__version__ = "0.1.0"

__all__ = [
    "logger",
    "sessions",
    "session_ids",
    "sse",
    "sse_session",
    "stdio",
    "streamable_http",
    "streamable_session",
]