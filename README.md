# mcptransport

Transports for Model Context Protocol (MCP) servers. The package carries
JSON-RPC messages between clients and a message handler you supply, and keeps
track of the client sessions connected to it.

Three transports are provided:

- **stdio**: one client, newline-delimited JSON-RPC on standard input and
  output (`mcptransport.stdio`).
- **Server-Sent Events**: clients open an SSE stream and post messages to a
  per-session endpoint. Responses travel back over the stream
  (`mcptransport.sse`).
- **Streamable HTTP**: clients post JSON-RPC messages to a single endpoint
  and get either a JSON body or an SSE stream back. A GET on the same endpoint
  listens for server notifications (`mcptransport.streamable_http`).

It uses only the Python standard library and supports Python 3.10 and later.

## What the package does not do

The package moves messages and manages sessions. It does not implement the
MCP methods themselves. `initialize`, `ping`, `tools/list`, `tools/call`,
`logging/setLevel` and the rest are all left to the handler you give to
`SessionRegistry`. It has no command-line program. Streamable HTTP does not
support batched messages or resuming a stream.

## Sessions

`mcptransport.sessions.SessionRegistry` sits between a transport and your
message handler. It registers and unregisters client sessions, routes
notifications to them, and holds tools that belong to a single session.

```python
from mcptransport.sessions import SessionRegistry, current_session

def handle(message):
    # message is the decoded JSON-RPC message. Return a response
    # (a dict, or anything with to_dict()), or None for notifications.
    session = current_session()
    ...

registry = SessionRegistry(
    handle,
    tool_list_changed=True,
    on_register_session=lambda session: ...,
    on_unregister_session=lambda session: ...,
    on_error=lambda request_id, method, message, error: ...,
)
```

While a transport is handling a message, `current_session()` returns the
session the message came from. You can bind a session yourself with the
`session_context(session)` context manager.

Notifications can be sent to:

- every initialized session: `registry.send_notification_to_all_clients(method, params)`
- the session bound to the current context: `registry.send_notification_to_client(method, params)`
- one session by id: `registry.send_notification_to_specific_client(session_id, method, params)`

Failures are raised as exceptions, all derived from `SessionError`:
`SessionExistsError`, `SessionNotFoundError`, `SessionNotInitializedError`,
`NotificationNotInitializedError`, `NotificationChannelBlockedError` and
`SessionDoesNotSupportToolsError`. Each session queues up to 100
notifications. When a session's queue is full, the error is also passed to
`on_error` on a background thread. The broadcast skips full sessions and
raises nothing for them.

The session classes are `ClientSession` and its mix-ins
`SessionWithLogging` (`log_level`, `"error"` by default),
`SessionWithTools` (`tools`), `SessionWithClientInfo` (`client_info`) and
`SessionWithStreamableHTTPConfig`.

Session-specific tools are `ServerTool(tool, handler)` objects, keyed by
`tool["name"]`. They are added with `add_session_tool(session_id, tool,
handler)` and `add_session_tools(session_id, *tools)`, and removed with
`delete_session_tools(session_id, *names)`. A tool with the same name as an
existing one replaces it. Initialized sessions receive
`notifications/tools/list_changed` when their tools change and
`tool_list_changed` is true. If `tool_list_changed` was left as `None`,
adding a tool turns it on.

`error_response(request_id, code, message)` builds a JSON-RPC error object.
The standard codes are available as `PARSE_ERROR`, `INVALID_REQUEST`,
`METHOD_NOT_FOUND`, `INVALID_PARAMS` and `INTERNAL_ERROR`.

## stdio

```python
from mcptransport.stdio import serve_stdio

serve_stdio(registry)
```

`serve_stdio` reads from standard input and writes to standard output. It
runs until input ends or the process receives SIGINT or SIGTERM. Signals are
handled only when it is called from the main thread.

For other streams, use `StdioServer(registry).listen(stdin, stdout,
stop_event)`. Setting the `threading.Event` stops the loop.

The server registers a single `StdioSession` with the id `"stdio"`. Lines
that are not valid JSON are answered with a parse error. Notifications queued
for the session are written to the output as they arrive. `context_func` is
called once, with no arguments, inside the context in which messages are
handled, so it can set context variables for your handler.

## Server-Sent Events

`SSEServer` is a WSGI application.

```python
from mcptransport.sse import SSEServer

app = SSEServer(registry, static_base_path="/mcp", keep_alive=True)
app.start("127.0.0.1", 8080)   # blocks until app.shutdown()
```

A client connects with GET to `/mcp/sse`. The first event it receives is an
`endpoint` event naming the URL to post messages to, such as
`/mcp/message?sessionId=...`:

- If `base_url` is set and `use_full_url_for_message_endpoint` is true (the
  default), that URL is prefixed with `base_url`.
- With `append_query_to_message_endpoint=True`, the query string of the SSE
  request is appended to it.

Posted messages are answered with `202 Accepted`. The JSON-RPC response is
then delivered as a `message` event on the stream. Errors in the POST itself
come back as a `400` JSON-RPC error: wrong method, missing or unknown
`sessionId`, or a body that cannot be parsed.

Other options:

- `keep_alive` and `keep_alive_interval` send `ping` requests over the stream
  (every 10 seconds by default). Giving `keep_alive_interval` turns keep-alive
  on.
- `sse_endpoint` and `message_endpoint` change the endpoint paths (`/sse` and
  `/message` by default).
- `context_func(environ)` runs inside the handling context before each
  message is processed.

`send_event_to_session(session_id, event)` queues an arbitrary event on a
stream. `complete_sse_endpoint()`, `complete_message_endpoint()`,
`complete_sse_path()` and `complete_message_path()` return the configured
URLs and paths. `message_endpoint_for_client(environ, session_id)` returns
the URL sent to a client.

When the server is mounted under a path that is only known per request, pass
`dynamic_base_path=lambda environ, session_id: ...`, and mount
`app.sse_handler` and `app.message_handler` yourself. In that mode,
`complete_sse_endpoint()` and `complete_message_endpoint()` raise
`DynamicPathConfigError`, and calling the app directly answers `500`.

`normalize_url_path(*elements)` in `mcptransport.sse_session` joins and
cleans path segments into a path with a leading slash and no trailing slash.

## Streamable HTTP

`StreamableHTTPServer` is also a WSGI application.

```python
from mcptransport.streamable_http import StreamableHTTPServer

app = StreamableHTTPServer(registry, endpoint_path="/mcp")
app.start("127.0.0.1", 8080)   # serves only /mcp, blocks until app.shutdown()
```

Used directly as a WSGI app, it dispatches on the request method and does not
check the path.

- **POST** with `Content-Type: application/json` carries a request or
  notification.
  - An `initialize` request returns a new session id in the `Mcp-Session-Id`
    header. Later requests must send it back. An invalid id is answered with
    `400`.
  - If the handler sends notifications to the client while answering, the
    response becomes an SSE stream with status `202`, and the final response
    is its last event.
  - Notifications from the client are answered with `202` and no body.
- **GET** registers a session and opens a stream for server notifications.
  Set `heartbeat_interval` (in seconds) to send `ping` events on it.
- **DELETE** ends the session named by `Mcp-Session-Id` and forgets its
  tools.

Pass `stateless=True`, or a `session_id_manager`, to change how session ids
are issued and checked. The managers in `mcptransport.session_ids` are:

- `StatelessSessionIdManager`: no ids are issued, and a request carrying one
  is rejected.
- `InsecureStatefulSessionIdManager`: the default. It issues
  `mcp-session-<uuid>` ids and checks only their form.

Custom managers subclass `SessionIdManager`. `validate` raises
`InvalidSessionIdError` for ids it does not accept. Session tools for this
transport live in a `SessionToolsStore`, so they survive between requests
with the same id.

## Logging

`mcptransport.logger.default_logger()` returns a `StdLogger` that writes
`INFO:` and `ERROR:` lines through the standard `logging` module, under the
logger named `mcptransport`. Any object with `info(fmt, *args)` and
`error(fmt, *args)` methods can be used instead:

- as `logger` for `StreamableHTTPServer`
- as `error_logger` for `StdioServer` and `serve_stdio`