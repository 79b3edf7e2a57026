import threading

import pytest

from mcptransport.sessions import (
    JSONRPCNotification,
    ServerTool,
    SessionRegistry,
)
from mcptransport.sse_session import (
    DynamicPathConfigError,
    SSESession,
    normalize_url_path,
)


@pytest.mark.parametrize(
    "inputs, expected",
    [
        (["", ""], "/"),
        (["mcp"], "/mcp"),
        (["mcp", "api", "message"], "/mcp/api/message"),
        (["/mcp", "message"], "/mcp/message"),
        (["/mcp", "/message"], "/mcp/message"),
        (["mcp/", "message/"], "/mcp/message"),
        (["mcp", "message/"], "/mcp/message"),
        (["/"], "/"),
        (["mcp//api", "//message"], "/mcp/api/message"),
        (["mcp/parent/../child", "message"], "/mcp/child/message"),
        (["mcp/./api", "./message"], "/mcp/api/message"),
        (["/mcp/", "/api//", "message/"], "/mcp/api/message"),
        (["tenant", "/message"], "/tenant/message"),
        (["/mcp/{tenant}", "message"], "/mcp/{tenant}/message"),
    ],
)
def test_normalize_url_path(inputs, expected):
    assert normalize_url_path(*inputs) == expected


def test_normalize_url_path_no_arguments():
    assert normalize_url_path() == "/"


def test_normalize_url_path_parent_above_root():
    assert normalize_url_path("/..", "sse") == "/sse"


def test_dynamic_path_config_error_carries_method():
    error = DynamicPathConfigError("ServeHTTP")
    assert error.method == "ServeHTTP"
    assert str(error).startswith("ServeHTTP cannot be used with a dynamic base path")


def test_dynamic_path_config_error_message_names_method():
    error = DynamicPathConfigError("CompleteSseEndpoint")
    assert isinstance(error, Exception)
    assert "CompleteSseEndpoint" in str(error)
    assert error.method == "CompleteSseEndpoint"


def test_session_defaults():
    session = SSESession("abc")
    assert session.session_id == "abc"
    assert session.initialized is False
    assert session.log_level == "error"
    assert session.client_info == {}
    assert session.tools == {}
    assert session.event_queue.maxsize == 100
    assert session.notifications.maxsize == 100
    assert not session.done.is_set()


def test_initialize_resets_log_level():
    session = SSESession("abc")
    session.log_level = "critical"
    session.initialize()
    assert session.initialized is True
    assert session.log_level == "error"


def test_request_ids_increment():
    session = SSESession("abc")
    assert [next(session.request_ids) for _ in range(3)] == [1, 2, 3]


def test_set_and_get_tools():
    session = SSESession("abc")
    tool = ServerTool(
        {"name": "test_tool", "description": "A test tool"},
        lambda request: "test",
    )
    session.tools = {"test_tool": tool}
    retrieved = session.tools
    assert list(retrieved) == ["test_tool"]
    assert retrieved["test_tool"].name == "test_tool"


def test_tools_getter_returns_copy():
    session = SSESession("abc")
    session.tools = {"a": ServerTool({"name": "a"})}
    copy = session.tools
    copy.pop("a")
    assert "a" in session.tools


def test_setting_none_clears_tools():
    session = SSESession("abc", tools={"a": ServerTool({"name": "a"})})
    session.tools = None
    assert session.tools == {}


def test_concurrent_tool_access():
    session = SSESession("abc")

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


def test_registry_delivers_notification_to_sse_session():
    registry = SessionRegistry(lambda message: None)
    session = SSESession("sse-1")
    session.initialize()
    registry.register_session(session)
    registry.send_notification_to_specific_client("sse-1", "test-method", {"data": "x"})
    notification = session.notifications.get_nowait()
    assert notification == JSONRPCNotification("test-method", {"data": "x"})


def test_registry_adds_tools_to_sse_session():
    registry = SessionRegistry(lambda message: None, tool_list_changed=True)
    session = SSESession("sse-1")
    session.initialize()
    registry.register_session(session)
    registry.add_session_tools("sse-1", ServerTool({"name": "session-tool"}))
    assert list(session.tools) == ["session-tool"]
    assert session.notifications.get_nowait().method == "notifications/tools/list_changed"