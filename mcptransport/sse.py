"""A Server-Sent Events transport served as a WSGI application."""

from __future__ import annotations

import contextvars
import json
import queue
import socketserver
import threading
import uuid
from collections.abc import Callable, Iterable, Mapping
from typing import Any
from urllib.parse import parse_qs, urlsplit
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from .logger import default_logger
from .sessions import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    PARSE_ERROR,
    SessionError,
    SessionNotFoundError,
    SessionRegistry,
    error_response,
    session_context,
)
from .sse_session import DynamicPathConfigError, SSESession, normalize_url_path

StartResponse = Callable[..., Any]
DynamicBasePathFunc = Callable[[Mapping[str, Any], str], str]
SSEContextFunc = Callable[[Mapping[str, Any]], Any]

DEFAULT_KEEP_ALIVE_INTERVAL = 10.0
_POLL_INTERVAL = 0.05
_MARSHAL_FAILURE_EVENT = (
    'event: message\ndata: {"error": "internal error","jsonrpc": "2.0", "id": null}\n\n'
)


def _encode_default(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")


def _to_wire(message: Any) -> str:
    to_dict = getattr(message, "to_dict", None)
    if callable(to_dict):
        message = to_dict()
    return json.dumps(
        message, default=_encode_default, separators=(",", ":"), ensure_ascii=False
    )


def _validated_base_url(base_url: str) -> str:
    """Return the URL without a trailing slash, or '' if it is not acceptable."""
    if base_url:
        try:
            parts = urlsplit(base_url)
        except ValueError:
            return ""
        if parts.scheme not in ("http", "https"):
            return ""
        host = parts.netloc.rpartition("@")[2]
        if not host or host.startswith(":"):
            return ""
        if parse_qs(parts.query, keep_blank_values=True):
            return ""
    return base_url.removesuffix("/")


def _text_response(start_response: StartResponse, status: str, text: str) -> list[bytes]:
    body = (text + "\n").encode("utf-8")
    start_response(
        status,
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Length", str(len(body))),
        ],
    )
    return [body]


def _read_body(environ: Mapping[str, Any]) -> bytes:
    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        length = 0
    stream = environ.get("wsgi.input")
    if stream is None or length <= 0:
        return b""
    return stream.read(length)


def _put_until_done(session: SSESession, event: str) -> bool:
    """Queue ``event`` for the stream, waiting for room; give up once the session ends."""
    while not session.done.is_set():
        try:
            session.event_queue.put(event, timeout=_POLL_INTERVAL)
            return True
        except queue.Full:
            continue
    return False


class _EventStream:
    """The response body of one SSE connection; closing it ends the session."""

    def __init__(self, owner: SSEServer, session: SSESession, first_event: str) -> None:
        self._owner = owner
        self._session = session
        self._first: str | None = first_event
        self._closed = False

    def __iter__(self) -> _EventStream:
        return self

    def __next__(self) -> bytes:
        if self._first is not None:
            event, self._first = self._first, None
            return event.encode("utf-8")
        while not self._session.done.is_set():
            try:
                event = self._session.event_queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            return event.encode("utf-8")
        raise StopIteration

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._owner._release_session(self._session)


class _ThreadingWSGIServer(socketserver.ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        pass


class SSEServer:
    """Serves MCP over Server-Sent Events.

    Clients open a GET stream on the SSE endpoint and receive the URL to which
    they POST their messages; responses are delivered over the stream.
    """

    def __init__(
        self,
        server: SessionRegistry,
        *,
        base_url: str | None = None,
        static_base_path: str | None = None,
        dynamic_base_path: DynamicBasePathFunc | None = None,
        message_endpoint: str = "/message",
        sse_endpoint: str = "/sse",
        append_query_to_message_endpoint: bool = False,
        use_full_url_for_message_endpoint: bool = True,
        keep_alive: bool | None = None,
        keep_alive_interval: float | None = None,
        context_func: SSEContextFunc | None = None,
    ) -> None:
        self.server = server
        self.base_url = _validated_base_url(base_url) if base_url is not None else ""
        self.base_path = (
            normalize_url_path(static_base_path) if static_base_path is not None else ""
        )
        self.dynamic_base_path: DynamicBasePathFunc | None = None
        if dynamic_base_path is not None:
            self.dynamic_base_path = lambda environ, sid: normalize_url_path(
                dynamic_base_path(environ, sid)
            )
        self.message_endpoint = message_endpoint
        self.sse_endpoint = sse_endpoint
        self.append_query_to_message_endpoint = append_query_to_message_endpoint
        self.use_full_url_for_message_endpoint = use_full_url_for_message_endpoint
        self.keep_alive = (
            keep_alive if keep_alive is not None else keep_alive_interval is not None
        )
        self.keep_alive_interval = (
            keep_alive_interval
            if keep_alive_interval is not None
            else DEFAULT_KEEP_ALIVE_INTERVAL
        )
        self.context_func = context_func
        self.server_address: tuple[str, int] | None = None
        self._sessions: dict[str, SSESession] = {}
        self._sessions_lock = threading.Lock()
        self._httpd: _ThreadingWSGIServer | None = None
        self._httpd_lock = threading.Lock()
        self._logger = default_logger()

    # -- WSGI entry points -------------------------------------------------

    def __call__(
        self, environ: Mapping[str, Any], start_response: StartResponse
    ) -> Iterable[bytes]:
        """Route to the SSE or message handler by exact path."""
        if self.dynamic_base_path is not None:
            return _text_response(
                start_response,
                "500 Internal Server Error",
                str(DynamicPathConfigError("__call__")),
            )
        path = environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")
        sse_path = self.complete_sse_path()
        if sse_path and path == sse_path:
            return self.sse_handler(environ, start_response)
        message_path = self.complete_message_path()
        if message_path and path == message_path:
            return self.message_handler(environ, start_response)
        return _text_response(start_response, "404 Not Found", "404 page not found")

    def sse_handler(
        self, environ: Mapping[str, Any], start_response: StartResponse
    ) -> Iterable[bytes]:
        """Open an event stream for a new session."""
        if environ.get("REQUEST_METHOD") != "GET":
            return _text_response(
                start_response, "405 Method Not Allowed", "Method not allowed"
            )

        session_id = str(uuid.uuid4())
        session = SSESession(session_id)
        with self._sessions_lock:
            self._sessions[session_id] = session
        try:
            self.server.register_session(session)
        except SessionError as exc:
            with self._sessions_lock:
                self._sessions.pop(session_id, None)
            return _text_response(
                start_response,
                "500 Internal Server Error",
                f"Session registration failed: {exc}",
            )

        threading.Thread(
            target=self._forward_notifications, args=(session,), daemon=True
        ).start()
        if self.keep_alive:
            threading.Thread(
                target=self._send_pings, args=(session,), daemon=True
            ).start()

        endpoint = self.message_endpoint_for_client(environ, session_id)
        query = environ.get("QUERY_STRING", "")
        if self.append_query_to_message_endpoint and query:
            endpoint += "&" + query

        start_response(
            "200 OK",
            [
                ("Content-Type", "text/event-stream"),
                ("Cache-Control", "no-cache"),
                ("Access-Control-Allow-Origin", "*"),
            ],
        )
        return _EventStream(self, session, f"event: endpoint\ndata: {endpoint}\r\n\r\n")

    def message_handler(
        self, environ: Mapping[str, Any], start_response: StartResponse
    ) -> Iterable[bytes]:
        """Accept one JSON-RPC message; the response goes out over the session's stream."""
        if environ.get("REQUEST_METHOD") != "POST":
            return self._json_error(start_response, INVALID_REQUEST, "Method not allowed")

        query = parse_qs(environ.get("QUERY_STRING", ""))
        session_id = query.get("sessionId", [""])[0]
        if not session_id:
            return self._json_error(start_response, INVALID_PARAMS, "Missing sessionId")
        with self._sessions_lock:
            session = self._sessions.get(session_id)
        if session is None:
            return self._json_error(start_response, INVALID_PARAMS, "Invalid session ID")

        try:
            text = _read_body(environ).decode("utf-8")
            message, _ = json.JSONDecoder().raw_decode(text.lstrip())
        except (UnicodeDecodeError, ValueError):
            return self._json_error(start_response, PARSE_ERROR, "Parse error")

        request_environ = dict(environ)
        request_environ.pop("wsgi.input", None)
        context = contextvars.copy_context()
        threading.Thread(
            target=context.run,
            args=(self._process_message, session, request_environ, message),
            daemon=True,
        ).start()

        start_response("202 Accepted", [("Content-Length", "0")])
        return [b""]

    # -- endpoints ---------------------------------------------------------

    def message_endpoint_for_client(
        self, environ: Mapping[str, Any], session_id: str
    ) -> str:
        """Return the URL a client posts its messages to, session id included."""
        base_path = self.base_path
        if self.dynamic_base_path is not None:
            base_path = self.dynamic_base_path(environ, session_id)
        endpoint = normalize_url_path(base_path, self.message_endpoint)
        if self.use_full_url_for_message_endpoint and self.base_url:
            endpoint = self.base_url + endpoint
        return f"{endpoint}?sessionId={session_id}"

    def complete_sse_endpoint(self) -> str:
        """Return the full URL of the SSE endpoint."""
        if self.dynamic_base_path is not None:
            raise DynamicPathConfigError("complete_sse_endpoint")
        return self.base_url + normalize_url_path(self.base_path, self.sse_endpoint)

    def complete_sse_path(self) -> str:
        """Return the path part of the SSE endpoint."""
        try:
            return urlsplit(self.complete_sse_endpoint()).path
        except (DynamicPathConfigError, ValueError):
            return normalize_url_path(self.base_path, self.sse_endpoint)

    def complete_message_endpoint(self) -> str:
        """Return the full URL of the message endpoint."""
        if self.dynamic_base_path is not None:
            raise DynamicPathConfigError("complete_message_endpoint")
        return self.base_url + normalize_url_path(self.base_path, self.message_endpoint)

    def complete_message_path(self) -> str:
        """Return the path part of the message endpoint."""
        try:
            return urlsplit(self.complete_message_endpoint()).path
        except (DynamicPathConfigError, ValueError):
            return normalize_url_path(self.base_path, self.message_endpoint)

    # -- sending -----------------------------------------------------------

    def send_event_to_session(self, session_id: str, event: Any) -> None:
        """Queue ``event`` as a message event on the given session's stream."""
        with self._sessions_lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"session not found: {session_id}")
        data = _to_wire(event)
        if session.done.is_set():
            raise SessionError("session closed")
        try:
            session.event_queue.put_nowait(f"event: message\ndata: {data}\n\n")
        except queue.Full:
            raise SessionError("event queue full") from None

    # -- serving -----------------------------------------------------------

    def start(self, host: str, port: int) -> None:
        """Serve on ``host``:``port`` until :meth:`shutdown` is called."""
        with self._httpd_lock:
            if self._httpd is not None:
                raise RuntimeError("server already started")
            httpd = make_server(
                host,
                port,
                self,
                server_class=_ThreadingWSGIServer,
                handler_class=_QuietHandler,
            )
            self._httpd = httpd
            self.server_address = httpd.server_address[:2]
        httpd.serve_forever(poll_interval=_POLL_INTERVAL)

    def shutdown(self) -> None:
        """Close every open session and stop the HTTP server, if one was started."""
        with self._httpd_lock:
            httpd = self._httpd
            self._httpd = None
        if httpd is None:
            return
        with self._sessions_lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.done.set()
        httpd.shutdown()
        httpd.server_close()

    # -- internals ---------------------------------------------------------

    def _json_error(
        self, start_response: StartResponse, code: int, message: str
    ) -> list[bytes]:
        body = (json.dumps(error_response(None, code, message)) + "\n").encode("utf-8")
        start_response(
            "400 Bad Request",
            [("Content-Type", "application/json"), ("Content-Length", str(len(body)))],
        )
        return [body]

    def _release_session(self, session: SSESession) -> None:
        session.done.set()
        with self._sessions_lock:
            if self._sessions.get(session.session_id) is session:
                del self._sessions[session.session_id]
        self.server.unregister_session(session.session_id)

    def _forward_notifications(self, session: SSESession) -> None:
        while not session.done.is_set():
            try:
                notification = session.notifications.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                data = _to_wire(notification)
            except (TypeError, ValueError):
                continue
            if not _put_until_done(session, f"event: message\ndata: {data}\n\n"):
                return

    def _send_pings(self, session: SSESession) -> None:
        while not session.done.wait(self.keep_alive_interval):
            ping = {"jsonrpc": "2.0", "id": next(session.request_ids), "method": "ping"}
            if not _put_until_done(session, f"event: message\ndata:{_to_wire(ping)}\n\n"):
                return

    def _process_message(
        self, session: SSESession, environ: Mapping[str, Any], message: Any
    ) -> None:
        with session_context(session):
            if self.context_func is not None:
                self.context_func(environ)
            try:
                response = self.server.handle_message(message)
            except Exception as exc:  # a failing handler must not kill the worker silently
                self._logger.error("failed to handle message: %s", exc)
                return
        if response is None:
            return
        try:
            event = f"event: message\ndata: {_to_wire(response)}\n\n"
        except (TypeError, ValueError) as exc:
            self._logger.error("failed to marshal response: %s", exc)
            event = _MARSHAL_FAILURE_EVENT
        if session.done.is_set():
            return
        try:
            session.event_queue.put_nowait(event)
        except queue.Full:
            self._logger.error("Event queue full for session %s", session.session_id)