"""Session state for the streamable HTTP transport."""

from __future__ import annotations

import json
import threading
from collections.abc import Mapping
from typing import Any

from .sessions import (
    DEFAULT_QUEUE_SIZE,
    ServerTool,
    SessionWithStreamableHTTPConfig,
    SessionWithTools,
)


class SessionToolsStore:
    """Per-session tools that outlive the short-lived request sessions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tools: dict[str, dict[str, ServerTool]] = {}

    def tools_for(self, session_id: str) -> dict[str, ServerTool] | None:
        """Return a copy of the session's tools, or ``None`` if it has none."""
        with self._lock:
            tools = self._tools.get(session_id)
            return None if tools is None else dict(tools)

    def replace(self, session_id: str, tools: Mapping[str, ServerTool] | None) -> None:
        """Set the session's tools; ``None`` forgets them."""
        with self._lock:
            if tools is None:
                self._tools.pop(session_id, None)
            else:
                self._tools[session_id] = dict(tools)


class StreamableHTTPSession(SessionWithTools, SessionWithStreamableHTTPConfig):
    """A streamable HTTP session.

    For POST requests it lives only as long as the request; for GET listeners
    it is registered with the server. Its tools live in a shared store so that
    they survive between requests carrying the same session id.
    """

    _ready = True

    def __init__(
        self,
        session_id: str,
        store: SessionToolsStore,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        super().__init__(session_id, queue_size=queue_size, initialized=True)
        self._store = store
        self._upgrade_lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        """Always ready: there is no handshake for these sessions."""
        return self._ready

    def initialize(self) -> None:
        """Mark the session ready; it already is from the start."""
        self._ready = True

    @property
    def tools(self) -> dict[str, ServerTool] | None:
        return self._store.tools_for(self.session_id)

    @tools.setter
    def tools(self, value: Mapping[str, ServerTool] | None) -> None:
        self._store.replace(self.session_id, value)

    def upgrade_to_sse_when_receive_notification(self) -> None:
        """Switch the current response to an event stream."""
        with self._upgrade_lock:
            self.upgrade_to_sse = True


def _encode_default(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")


def format_sse_event(data: Any) -> str:
    """Format ``data`` as one server-sent ``message`` event."""
    to_dict = getattr(data, "to_dict", None)
    if callable(to_dict):
        data = to_dict()
    try:
        encoded = json.dumps(
            data, default=_encode_default, separators=(",", ":"), ensure_ascii=False
        )
    except (TypeError, ValueError) as exc:
        raise TypeError(f"failed to marshal data: {exc}") from exc
    return f"event: message\ndata: {encoded}\n\n"