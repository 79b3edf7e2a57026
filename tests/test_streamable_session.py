import threading

import pytest

from mcptransport.sessions import (
    JSONRPCNotification,
    ServerTool,
    SessionRegistry,
    session_context,
)
from mcptransport.streamable_session import (
    SessionToolsStore,
    StreamableHTTPSession,
    format_sse_event,
)


def test_store_unknown_session_has_no_tools():
    store = SessionToolsStore()
    assert store.tools_for("missing") is None


def test_store_replace_and_read():
    store = SessionToolsStore()
    tool = ServerTool({"name": "a"})
    store.replace("s1", {"a": tool})
    assert store.tools_for("s1") == {"a": tool}
    assert store.tools_for("s2") is None


def test_store_replace_none_forgets_tools():
    store = SessionToolsStore()
    store.replace("s1", {"a": ServerTool({"name": "a"})})
    store.replace("s1", None)
    assert store.tools_for("s1") is None


def test_store_returns_copies():
    store = SessionToolsStore()
    store.replace("s1", {"a": ServerTool({"name": "a"})})
    store.tools_for("s1").clear()
    assert list(store.tools_for("s1")) == ["a"]


def test_session_is_always_initialized():
    session = StreamableHTTPSession("s1", SessionToolsStore())
    assert session.initialized is True
    session.initialize()
    assert session.initialized is True


def test_sessions_with_same_id_share_tools():
    store = SessionToolsStore()
    first = StreamableHTTPSession("s1", store)
    second = StreamableHTTPSession("s1", store)
    other = StreamableHTTPSession("s2", store)
    first.tools = {"test_tool": ServerTool({"name": "test_tool"})}
    assert list(second.tools) == ["test_tool"]
    assert other.tools is None


def test_upgrade_flag():
    session = StreamableHTTPSession("s1", SessionToolsStore())
    assert session.upgrade_to_sse is False
    session.upgrade_to_sse_when_receive_notification()
    assert session.upgrade_to_sse is True


def test_notification_to_current_client_upgrades_to_sse():
    registry = SessionRegistry(lambda message: None)
    session = StreamableHTTPSession("s1", SessionToolsStore())
    with session_context(session):
        registry.send_notification_to_client("test/notification", {"value": 1})
    assert session.upgrade_to_sse is True
    assert session.notifications.get_nowait() == JSONRPCNotification(
        "test/notification", {"value": 1}
    )


def test_registry_adds_tools_through_store():
    store = SessionToolsStore()
    registry = SessionRegistry(lambda message: None, tool_list_changed=True)
    session = StreamableHTTPSession("s1", store)
    registry.register_session(session)
    registry.add_session_tools("s1", ServerTool({"name": "session-tool"}))
    assert list(store.tools_for("s1")) == ["session-tool"]
    assert session.notifications.get_nowait().method == "notifications/tools/list_changed"
    assert session.upgrade_to_sse is True


def test_concurrent_tool_access():
    session = StreamableHTTPSession("s1", SessionToolsStore())

    def writer(i):
        session.tools = {f"tool_{i}": ServerTool({"name": f"tool_{i}"})}

    def reader():
        session.tools

    threads = []
    for i in range(10):
        threads.append(threading.Thread(target=writer, args=(i,)))
        threads.append(threading.Thread(target=reader))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    session.tools = {"final_tool": ServerTool({"name": "final_tool"})}
    assert list(session.tools) == ["final_tool"]


def test_format_sse_event_for_notification():
    event = format_sse_event(JSONRPCNotification("test/notification", {"value": 3}))
    assert event == (
        'event: message\ndata: {"jsonrpc":"2.0","method":"test/notification",'
        '"params":{"value":3}}\n\n'
    )


def test_format_sse_event_for_dict():
    event = format_sse_event({"jsonrpc": "2.0", "method": "ping"})
    assert event == 'event: message\ndata: {"jsonrpc":"2.0","method":"ping"}\n\n'


def test_format_sse_event_nested_notification():
    event = format_sse_event({"wrapped": JSONRPCNotification("x")})
    assert event == 'event: message\ndata: {"wrapped":{"jsonrpc":"2.0","method":"x"}}\n\n'


def test_format_sse_event_rejects_unserializable():
    with pytest.raises(TypeError, match="failed to marshal data"):
        format_sse_event({"invalid": object()})