"""Serve a session registry over standard input and output, one JSON message per line."""

from __future__ import annotations

import contextvars
import json
import queue
import signal
import sys
import threading
from collections.abc import Callable
from typing import IO, Any

from .logger import Logger, default_logger
from .sessions import (
    DEFAULT_QUEUE_SIZE,
    PARSE_ERROR,
    SessionRegistry,
    SessionWithClientInfo,
    SessionWithLogging,
    error_response,
    session_context,
)

STDIO_SESSION_ID = "stdio"
_POLL_INTERVAL = 0.05

ContextFunc = Callable[[], Any]


class StdioSession(SessionWithLogging, SessionWithClientInfo):
    """The single session of a stdio server: there is only one client."""

    def __init__(self, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        super().__init__(STDIO_SESSION_ID, queue_size=queue_size)

    def initialize(self) -> None:
        """Reset the log level to its default and mark the session ready."""
        super().initialize()


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


def _read_lines(stdin: IO[Any], out: queue.Queue[Any]) -> None:
    """Feed complete lines from ``stdin`` into ``out``; ``None`` marks the end."""
    try:
        while True:
            line = stdin.readline()
            if isinstance(line, bytes):
                line = line.decode("utf-8")
            if not line.endswith("\n"):
                # End of input; a trailing partial line is dropped.
                out.put(None)
                return
            out.put(line)
    except (OSError, ValueError) as exc:
        out.put(exc)


class StdioServer:
    """Reads JSON-RPC messages line by line and writes the responses back.

    ``context_func`` is called once, with no arguments, inside the context in
    which every message is handled; it may set context variables for handlers.
    """

    def __init__(
        self,
        server: SessionRegistry,
        *,
        error_logger: Logger | None = None,
        context_func: ContextFunc | None = None,
    ) -> None:
        self.server = server
        self.error_logger = error_logger if error_logger is not None else default_logger()
        self.context_func = context_func
        self.session = StdioSession()
        self._write_lock = threading.Lock()

    def listen(
        self,
        stdin: IO[Any],
        stdout: IO[str],
        stop_event: threading.Event | None = None,
    ) -> None:
        """Serve until end of input or until ``stop_event`` is set."""
        stop = stop_event if stop_event is not None else threading.Event()
        contextvars.copy_context().run(self._listen, stdin, stdout, stop)

    def _listen(self, stdin: IO[Any], stdout: IO[str], stop: threading.Event) -> None:
        self.server.register_session(self.session)
        try:
            with session_context(self.session):
                if self.context_func is not None:
                    self.context_func()
                finished = threading.Event()
                notifier = threading.Thread(
                    target=self._handle_notifications,
                    args=(stdout, stop, finished),
                    daemon=True,
                )
                notifier.start()
                try:
                    self._process_input_stream(stdin, stdout, stop)
                finally:
                    finished.set()
                    notifier.join()
        finally:
            self.server.unregister_session(self.session.session_id)

    def _handle_notifications(
        self, stdout: IO[str], stop: threading.Event, finished: threading.Event
    ) -> None:
        while True:
            try:
                notification = self.session.notifications.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if stop.is_set() or finished.is_set():
                    return
                continue
            try:
                self._write(notification, stdout)
            except (OSError, TypeError, ValueError) as exc:
                self.error_logger.error("Error writing notification: %s", exc)

    def _process_input_stream(
        self, stdin: IO[Any], stdout: IO[str], stop: threading.Event
    ) -> None:
        lines: queue.Queue[Any] = queue.Queue()
        threading.Thread(target=_read_lines, args=(stdin, lines), daemon=True).start()
        while not stop.is_set():
            try:
                item = lines.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is None:
                return
            if isinstance(item, BaseException):
                self.error_logger.error("Error reading input: %s", item)
                raise item
            try:
                self._process_message(item, stdout)
            except (OSError, TypeError, ValueError) as exc:
                self.error_logger.error("Error handling message: %s", exc)
                raise

    def _process_message(self, line: str, stdout: IO[str]) -> None:
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            self._write(error_response(None, PARSE_ERROR, "Parse error"), stdout)
            return
        response = self.server.handle_message(message)
        if response is not None:
            self._write(response, stdout)

    def _write(self, message: Any, stdout: IO[str]) -> None:
        data = _to_wire(message)
        with self._write_lock:
            stdout.write(data + "\n")
            stdout.flush()


def serve_stdio(
    server: SessionRegistry,
    *,
    error_logger: Logger | None = None,
    context_func: ContextFunc | None = None,
) -> None:
    """Serve ``server`` on the process's stdin and stdout until EOF, SIGINT or SIGTERM."""
    stdio = StdioServer(server, error_logger=error_logger, context_func=context_func)
    stop = threading.Event()
    previous: dict[int, Any] = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGTERM, signal.SIGINT):
            previous[signum] = signal.signal(signum, lambda *_: stop.set())
    try:
        stdio.listen(sys.stdin, sys.stdout, stop)
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)