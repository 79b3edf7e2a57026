"""Session state and path helpers for the SSE transport."""

from __future__ import annotations

import itertools
import queue
import threading
from collections.abc import Mapping
from typing import Any

from .sessions import (
    DEFAULT_QUEUE_SIZE,
    ServerTool,
    SessionWithClientInfo,
    SessionWithLogging,
    SessionWithTools,
)


def _clean_path(path: str) -> str:
    """Lexically clean a slash-separated path, collapsing '.', '..' and repeated slashes."""
    rooted = path.startswith("/")
    parts: list[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if parts and parts[-1] != "..":
                parts.pop()
            elif not rooted:
                parts.append(segment)
            continue
        parts.append(segment)
    cleaned = "/".join(parts)
    if rooted:
        return "/" + cleaned
    return cleaned or "."


def normalize_url_path(*elements: str) -> str:
    """Join path elements into a cleaned path with a leading slash and no trailing slash."""
    non_empty = [element for element in elements if element]
    joined = _clean_path("/".join(non_empty)) if non_empty else ""
    if not joined.startswith("/"):
        joined = "/" + joined
    if len(joined) > 1 and joined.endswith("/"):
        joined = joined[:-1]
    return joined


class DynamicPathConfigError(RuntimeError):
    """Raised when a static-path operation is used on a server with a dynamic base path."""

    def __init__(self, method: str) -> None:
        self.method = method
        super().__init__(
            f"{method} cannot be used with a dynamic base path; "
            "mount sse_handler and message_handler instead"
        )


class SSESession(SessionWithTools, SessionWithLogging, SessionWithClientInfo):
    """One open SSE connection.

    ``event_queue`` holds formatted events waiting to be written to the stream,
    ``done`` is set once the connection is closed, and ``request_ids`` yields
    the ids of requests the server sends to the client.
    """

    def __init__(
        self,
        session_id: str,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        tools: Mapping[str, ServerTool] | None = None,
    ) -> None:
        super().__init__(session_id, queue_size=queue_size, tools=tools)
        self.event_queue: queue.Queue[str] = queue.Queue(maxsize=queue_size)
        self.done = threading.Event()
        self.request_ids = itertools.count(1)

    def initialize(self) -> None:
        """Reset the log level to its default and mark the session ready."""
        super().initialize()

    @property
    def tools(self) -> dict[str, ServerTool]:
        """A copy of the session's tools; never ``None``."""
        with self._tools_lock:
            return dict(self._tools or {})

    @tools.setter
    def tools(self, value: Mapping[str, ServerTool] | None) -> None:
        with self._tools_lock:
            self._tools = dict(value or {})