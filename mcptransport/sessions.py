"""Client sessions and the registry that delivers notifications to them."""

from __future__ import annotations

import contextlib
import contextvars
import queue
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

JSONRPC_VERSION = "2.0"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

TOOLS_LIST_CHANGED = "notifications/tools/list_changed"
DEFAULT_QUEUE_SIZE = 100
DEFAULT_LOG_LEVEL = "error"


@dataclass(frozen=True)
class JSONRPCNotification:
    """A JSON-RPC notification sent from the server to a client."""

    method: str
    params: Mapping[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the wire form of the notification."""
        data: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            data["params"] = dict(self.params)
        return data


def error_response(request_id: Any, code: int, message: str) -> dict[str, Any]:
    """Build a JSON-RPC error response."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


@dataclass
class ServerTool:
    """A tool description together with the callable that runs it."""

    tool: Mapping[str, Any]
    handler: Callable[..., Any] | None = None

    @property
    def name(self) -> str:
        return self.tool["name"]


class SessionError(Exception):
    """Base class for session errors."""

    default_message = "session error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class SessionExistsError(SessionError):
    default_message = "session already exists"


class SessionNotFoundError(SessionError):
    default_message = "session not found"


class SessionNotInitializedError(SessionError):
    default_message = "session not properly initialized"


class NotificationNotInitializedError(SessionError):
    default_message = "notification channel not initialized"


class NotificationChannelBlockedError(SessionError):
    default_message = "notification channel queue is full"


class SessionDoesNotSupportToolsError(SessionError):
    default_message = "session does not support per-session tools"


class ClientSession:
    """An active client connection that can receive notifications."""

    def __init__(
        self,
        session_id: str,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        initialized: bool = False,
    ) -> None:
        self.session_id = session_id
        self.notifications: queue.Queue[JSONRPCNotification] = queue.Queue(
            maxsize=queue_size
        )
        self._initialized = initialized

    @property
    def initialized(self) -> bool:
        """Whether the session is ready to accept notifications."""
        return self._initialized

    def initialize(self) -> None:
        """Mark the session as fully initialized."""
        self._initialized = True


class SessionWithLogging(ClientSession):
    """A session that keeps a minimum log level."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.log_level = DEFAULT_LOG_LEVEL

    def initialize(self) -> None:
        self.log_level = DEFAULT_LOG_LEVEL
        super().initialize()


class SessionWithTools(ClientSession):
    """A session that carries its own tools, safe for concurrent access."""

    def __init__(
        self, *args: Any, tools: Mapping[str, ServerTool] | None = None, **kwargs: Any
    ) -> None:
        super().__init__(*args, **kwargs)
        self._tools_lock = threading.Lock()
        self._tools: dict[str, ServerTool] | None = (
            dict(tools) if tools is not None else {}
        )

    @property
    def tools(self) -> dict[str, ServerTool] | None:
        """A copy of the session's tools, keyed by name."""
        with self._tools_lock:
            return None if self._tools is None else dict(self._tools)

    @tools.setter
    def tools(self, value: Mapping[str, ServerTool] | None) -> None:
        with self._tools_lock:
            self._tools = None if value is None else dict(value)


class SessionWithClientInfo(ClientSession):
    """A session that remembers the client's implementation info."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.client_info: dict[str, Any] = {}


class SessionWithStreamableHTTPConfig(ClientSession):
    """A session whose responses switch to an SSE stream once notified."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.upgrade_to_sse = False

    def upgrade_to_sse_when_receive_notification(self) -> None:
        """Switch the current response to an event stream."""
        self.upgrade_to_sse = True


_current_session: contextvars.ContextVar[ClientSession | None] = contextvars.ContextVar(
    "mcptransport_current_session", default=None
)


def current_session() -> ClientSession | None:
    """Return the session bound to the current context, if any."""
    return _current_session.get()


@contextlib.contextmanager
def session_context(session: ClientSession) -> Iterator[ClientSession]:
    """Bind ``session`` as the current session for the duration of the block."""
    token = _current_session.set(session)
    try:
        yield session
    finally:
        _current_session.reset(token)


MessageHandler = Callable[[Any], Any]
ErrorHook = Callable[[Any, str, Mapping[str, Any], BaseException], None]
SessionHook = Callable[[ClientSession], None]


class SessionRegistry:
    """Keeps the live sessions of a server and routes notifications to them.

    ``handler`` processes one raw JSON-RPC message and returns the response,
    or ``None`` for notifications.
    """

    def __init__(
        self,
        handler: MessageHandler,
        *,
        tool_list_changed: bool | None = None,
        on_register_session: SessionHook | None = None,
        on_unregister_session: SessionHook | None = None,
        on_error: ErrorHook | None = None,
    ) -> None:
        self._handler = handler
        self.tool_list_changed = tool_list_changed
        self._on_register_session = on_register_session
        self._on_unregister_session = on_unregister_session
        self._on_error = on_error
        self._sessions: dict[str, ClientSession] = {}
        self._lock = threading.Lock()

    def handle_message(self, message: Any) -> Any:
        """Process one raw message and return the response, if any."""
        return self._handler(message)

    def get_session(self, session_id: str) -> ClientSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def register_session(self, session: ClientSession) -> None:
        """Add a session; raise :class:`SessionExistsError` on a duplicate id."""
        with self._lock:
            if session.session_id in self._sessions:
                raise SessionExistsError()
            self._sessions[session.session_id] = session
        if self._on_register_session is not None:
            self._on_register_session(session)

    def unregister_session(self, session_id: str) -> None:
        """Remove a session that has shut down."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None and self._on_unregister_session is not None:
            self._on_unregister_session(session)

    def _report_error(self, method: str, session_id: str, error: BaseException) -> None:
        if self._on_error is None:
            return
        message = {"method": method, "sessionID": session_id}
        threading.Thread(
            target=self._on_error,
            args=(None, "notification", message, error),
            daemon=True,
        ).start()

    def _push(self, session: ClientSession, notification: JSONRPCNotification) -> None:
        try:
            session.notifications.put_nowait(notification)
        except queue.Full:
            self._report_error(
                notification.method,
                session.session_id,
                NotificationChannelBlockedError(
                    f"notification channel blocked for session {session.session_id}"
                ),
            )
            raise NotificationChannelBlockedError() from None

    def send_notification_to_all_clients(
        self, method: str, params: Mapping[str, Any] | None = None
    ) -> None:
        """Queue a notification for every initialized session."""
        notification = JSONRPCNotification(method, params)
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            if not session.initialized:
                continue
            try:
                self._push(session, notification)
            except NotificationChannelBlockedError:
                continue

    def send_notification_to_client(
        self, method: str, params: Mapping[str, Any] | None = None
    ) -> None:
        """Queue a notification for the session bound to the current context."""
        session = current_session()
        if session is None or not session.initialized:
            raise NotificationNotInitializedError()
        if isinstance(session, SessionWithStreamableHTTPConfig):
            session.upgrade_to_sse_when_receive_notification()
        self._push(session, JSONRPCNotification(method, params))

    def send_notification_to_specific_client(
        self, session_id: str, method: str, params: Mapping[str, Any] | None = None
    ) -> None:
        """Queue a notification for the session with the given id."""
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError()
        if not session.initialized:
            raise SessionNotInitializedError()
        if isinstance(session, SessionWithStreamableHTTPConfig):
            session.upgrade_to_sse_when_receive_notification()
        self._push(session, JSONRPCNotification(method, params))

    def _tools_session(self, session_id: str) -> SessionWithTools:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError()
        if not isinstance(session, SessionWithTools):
            raise SessionDoesNotSupportToolsError()
        return session

    def _notify_tools_changed(self, session: ClientSession, action: str) -> None:
        if not (session.initialized and self.tool_list_changed):
            return
        try:
            self.send_notification_to_specific_client(
                session.session_id, TOOLS_LIST_CHANGED
            )
        except SessionError as exc:
            failure = SessionError(
                f"failed to send notification after {action} tools: {exc}"
            )
            failure.__cause__ = exc
            self._report_error(TOOLS_LIST_CHANGED, session.session_id, failure)

    def add_session_tool(
        self,
        session_id: str,
        tool: Mapping[str, Any],
        handler: Callable[..., Any] | None,
    ) -> None:
        """Add one tool to a session."""
        self.add_session_tools(session_id, ServerTool(tool, handler))

    def add_session_tools(self, session_id: str, *tools: ServerTool) -> None:
        """Add tools to a session, replacing any with the same name."""
        session = self._tools_session(session_id)
        if self.tool_list_changed is None:
            self.tool_list_changed = True
        updated = dict(session.tools or {})
        updated.update((tool.name, tool) for tool in tools)
        session.tools = updated
        self._notify_tools_changed(session, "adding")

    def delete_session_tools(self, session_id: str, *names: str) -> None:
        """Remove the named tools from a session."""
        session = self._tools_session(session_id)
        current = session.tools
        if current is None:
            return
        for name in names:
            current.pop(name, None)
        session.tools = current
        self._notify_tools_changed(session, "deleting")