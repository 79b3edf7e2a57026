"""The streamable HTTP transport, served as a WSGI application."""

from __future__ import annotations

import contextvars
import json
import logging
import queue
import socketserver
import threading
import time
import uuid
from collections.abc import Callable, Iterator, Mapping
from typing import Any
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from .logger import Logger, default_logger
from .session_ids import (
    InvalidSessionIdError,
    InsecureStatefulSessionIdManager,
    SessionIdManager,
    StatelessSessionIdManager,
)
from .sessions import (
    INTERNAL_ERROR,
    PARSE_ERROR,
    SessionError,
    SessionRegistry,
    error_response,
    session_context,
)
from .streamable_session import SessionToolsStore, StreamableHTTPSession, format_sse_event

StartResponse = Callable[..., Any]
HTTPContextFunc = Callable[[Mapping[str, Any]], Any]

HEADER_SESSION_ID = "Mcp-Session-Id"
_ENVIRON_SESSION_ID = "HTTP_MCP_SESSION_ID"
_POLL_INTERVAL = 0.05
_SSE_HEADERS = [("Content-Type", "text/event-stream"), ("Cache-Control", "no-cache")]
_PING = {"jsonrpc": "2.0", "method": "ping"}

_access_log = logging.getLogger(__name__ + ".access")


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


def _method_of(message: Any) -> str:
    """Return the message's method; raise ValueError if the body has the wrong shape."""
    if message is None:
        return ""
    if not isinstance(message, dict):
        raise ValueError("message is not an object")
    method = message.get("method")
    if method is None:
        return ""
    if not isinstance(method, str):
        raise ValueError("method is not a string")
    return method


class _ListenStream:
    """The body of a GET listening connection; closing it unregisters the session."""

    def __init__(self, owner: StreamableHTTPServer, session: StreamableHTTPSession) -> None:
        self._owner = owner
        self._session = session
        self._headers_sent = False
        self._closed = False
        interval = owner.heartbeat_interval
        self._next_ping = time.monotonic() + interval if interval > 0 else None

    def __iter__(self) -> _ListenStream:
        return self

    def __next__(self) -> bytes:
        if not self._headers_sent:
            self._headers_sent = True
            return b""
        while not self._closed and not self._owner._stopped.is_set():
            timeout = _POLL_INTERVAL
            if self._next_ping is not None:
                remaining = self._next_ping - time.monotonic()
                if remaining <= 0:
                    self._next_ping = time.monotonic() + self._owner.heartbeat_interval
                    return format_sse_event(_PING).encode("utf-8")
                timeout = min(timeout, remaining)
            try:
                notification = self._session.notifications.get(timeout=timeout)
            except queue.Empty:
                continue
            try:
                return format_sse_event(notification).encode("utf-8")
            except TypeError as exc:
                self._owner.logger.error("Failed to write SSE event: %s", exc)
                break
        raise StopIteration

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._owner.server.unregister_session(self._session.session_id)


class _ThreadingWSGIServer(socketserver.ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _QuietHandler(WSGIRequestHandler):
    """Sends access lines to a debug logger instead of standard error."""

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        _access_log.debug("%s - " + format, self.address_string(), *args)


class StreamableHTTPServer:
    """Serves MCP over streamable HTTP.

    POST carries requests and notifications; the response is plain JSON, or an
    event stream when the handler sends notifications to the client. GET opens
    a listening stream for server notifications, DELETE terminates a session.
    Batched messages and stream resumption are not supported.
    """

    def __init__(
        self,
        server: SessionRegistry,
        *,
        endpoint_path: str = "/mcp",
        stateless: bool = False,
        session_id_manager: SessionIdManager | None = None,
        heartbeat_interval: float = 0.0,
        context_func: HTTPContextFunc | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.server = server
        self.endpoint_path = "/" + endpoint_path.strip("/")
        if session_id_manager is not None:
            self.session_id_manager = session_id_manager
        elif stateless:
            self.session_id_manager = StatelessSessionIdManager()
        else:
            self.session_id_manager = InsecureStatefulSessionIdManager()
        self.heartbeat_interval = heartbeat_interval
        self.context_func = context_func
        self.logger = logger if logger is not None else default_logger()
        self.server_address: tuple[str, int] | None = None
        self._tools_store = SessionToolsStore()
        self._stopped = threading.Event()
        self._httpd: _ThreadingWSGIServer | None = None
        self._httpd_lock = threading.Lock()

    def __call__(self, environ: Mapping[str, Any], start_response: StartResponse) -> Any:
        """Dispatch on the request method; the path is not checked."""
        method = environ.get("REQUEST_METHOD")
        if method == "POST":
            return self._handle_post(environ, start_response)
        if method == "GET":
            return self._handle_get(environ, start_response)
        if method == "DELETE":
            return self._handle_delete(environ, start_response)
        return _text_response(start_response, "404 Not Found", "404 page not found")

    # -- POST --------------------------------------------------------------

    def _handle_post(self, environ: Mapping[str, Any], start_response: StartResponse) -> Any:
        if environ.get("CONTENT_TYPE") != "application/json":
            return _text_response(
                start_response,
                "400 Bad Request",
                "Invalid content type: must be 'application/json'",
            )
        try:
            raw = _read_body(environ)
        except OSError as exc:
            return self._json_error(
                start_response, PARSE_ERROR, f"read request body error: {exc}"
            )
        try:
            message = json.loads(raw.decode("utf-8"))
            method = _method_of(message)
        except (UnicodeDecodeError, ValueError):
            return self._json_error(
                start_response, PARSE_ERROR, "request body is not valid json"
            )
        is_initialize = method == "initialize"

        if is_initialize:
            session_id = self.session_id_manager.generate()
        else:
            session_id = environ.get(_ENVIRON_SESSION_ID, "")
            try:
                terminated = self.session_id_manager.validate(session_id)
            except InvalidSessionIdError:
                return _text_response(start_response, "400 Bad Request", "Invalid session ID")
            if terminated:
                return _text_response(start_response, "404 Not Found", "Session terminated")

        session = StreamableHTTPSession(session_id, self._tools_store)
        request_environ = dict(environ)
        request_environ.pop("wsgi.input", None)
        outcome: dict[str, Any] = {}
        finished = threading.Event()

        def work() -> None:
            try:
                with session_context(session):
                    if self.context_func is not None:
                        self.context_func(request_environ)
                    outcome["response"] = self.server.handle_message(message)
            except Exception as exc:  # reported to the client as an internal error
                outcome["error"] = exc
            finally:
                finished.set()

        context = contextvars.copy_context()
        threading.Thread(target=context.run, args=(work,), daemon=True).start()
        return self._post_stream(
            start_response, session, finished, outcome, message, is_initialize
        )

    def _post_stream(
        self,
        start_response: StartResponse,
        session: StreamableHTTPSession,
        finished: threading.Event,
        outcome: dict[str, Any],
        message: Any,
        is_initialize: bool,
    ) -> Iterator[bytes]:
        upgraded = False
        while True:
            done = finished.is_set()
            try:
                if done:
                    notification = session.notifications.get_nowait()
                else:
                    notification = session.notifications.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if done:
                    break
                continue
            try:
                event = format_sse_event(notification)
            except TypeError as exc:
                self.logger.error("Failed to write SSE event: %s", exc)
                continue
            if not upgraded:
                start_response("202 Accepted", list(_SSE_HEADERS))
                upgraded = True
            yield event.encode("utf-8")

        if "error" in outcome:
            self.logger.error("Failed to handle message: %s", outcome["error"])
            request_id = message.get("id") if isinstance(message, dict) else None
            response = error_response(request_id, INTERNAL_ERROR, "internal error")
        else:
            response = outcome.get("response")

        if response is None:
            if not upgraded:
                start_response("202 Accepted", [("Content-Length", "0")])
                yield b""
            return

        if upgraded or session.upgrade_to_sse:
            try:
                body = format_sse_event(response).encode("utf-8")
            except TypeError as exc:
                self.logger.error("Failed to write final SSE response event: %s", exc)
                body = b""
            if not upgraded:
                start_response("202 Accepted", list(_SSE_HEADERS))
            yield body
            return

        headers = [("Content-Type", "application/json")]
        if is_initialize and session.session_id:
            headers.append((HEADER_SESSION_ID, session.session_id))
        try:
            body = (_to_wire(response) + "\n").encode("utf-8")
        except (TypeError, ValueError) as exc:
            self.logger.error("Failed to write response: %s", exc)
            body = b""
        start_response("200 OK", headers)
        yield body

    # -- GET ---------------------------------------------------------------

    def _handle_get(self, environ: Mapping[str, Any], start_response: StartResponse) -> Any:
        session_id = environ.get(_ENVIRON_SESSION_ID, "") or str(uuid.uuid4())
        session = StreamableHTTPSession(session_id, self._tools_store)
        try:
            self.server.register_session(session)
        except SessionError as exc:
            return _text_response(
                start_response, "400 Bad Request", f"Session registration failed: {exc}"
            )
        start_response("202 Accepted", list(_SSE_HEADERS))
        return _ListenStream(self, session)

    # -- DELETE ------------------------------------------------------------

    def _handle_delete(self, environ: Mapping[str, Any], start_response: StartResponse) -> Any:
        session_id = environ.get(_ENVIRON_SESSION_ID, "")
        try:
            not_allowed = self.session_id_manager.terminate(session_id)
        except Exception as exc:  # any manager failure is a server error
            return _text_response(
                start_response,
                "500 Internal Server Error",
                f"Session termination failed: {exc}",
            )
        if not_allowed:
            return _text_response(
                start_response, "405 Method Not Allowed", "Session termination not allowed"
            )
        self._tools_store.replace(session_id, None)
        start_response("200 OK", [("Content-Length", "0")])
        return [b""]

    # -- serving -----------------------------------------------------------

    def _mounted(self, environ: Mapping[str, Any], start_response: StartResponse) -> Any:
        if environ.get("PATH_INFO", "") != self.endpoint_path:
            return _text_response(start_response, "404 Not Found", "404 page not found")
        return self(environ, start_response)

    def start(self, host: str, port: int) -> None:
        """Serve on ``host``:``port`` at the endpoint path until :meth:`shutdown`."""
        with self._httpd_lock:
            if self._httpd is not None:
                raise RuntimeError("server already started")
            self._stopped.clear()
            httpd = make_server(
                host,
                port,
                self._mounted,
                server_class=_ThreadingWSGIServer,
                handler_class=_QuietHandler,
            )
            self._httpd = httpd
            self.server_address = httpd.server_address[:2]
        httpd.serve_forever(poll_interval=_POLL_INTERVAL)

    def shutdown(self) -> None:
        """Stop the HTTP server, if one was started, and end listening streams."""
        with self._httpd_lock:
            httpd = self._httpd
            self._httpd = None
        self._stopped.set()
        if httpd is None:
            return
        httpd.shutdown()
        httpd.server_close()

    def _json_error(
        self, start_response: StartResponse, code: int, message: str
    ) -> list[bytes]:
        body = (json.dumps(error_response(None, code, message)) + "\n").encode("utf-8")
        start_response(
            "400 Bad Request",
            [("Content-Type", "application/json"), ("Content-Length", str(len(body)))],
        )
        return [body]