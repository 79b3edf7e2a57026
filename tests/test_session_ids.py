import uuid

import pytest

from mcptransport.session_ids import (
    InsecureStatefulSessionIdManager,
    InvalidSessionIdError,
    SessionIdManager,
    StatelessSessionIdManager,
)


def test_stateless_generates_no_id():
    assert StatelessSessionIdManager().generate() == ""


def test_stateless_accepts_empty_id():
    assert StatelessSessionIdManager().validate("") is False


def test_stateless_rejects_any_id():
    with pytest.raises(InvalidSessionIdError, match="not allowed to be set when stateless"):
        StatelessSessionIdManager().validate("dummy-session-id")


def test_stateless_terminate_is_allowed():
    assert StatelessSessionIdManager().terminate("anything") is False


def test_stateful_generates_prefixed_uuid():
    session_id = InsecureStatefulSessionIdManager().generate()
    assert session_id.startswith("mcp-session-")
    parsed = uuid.UUID(session_id[len("mcp-session-"):])
    assert str(parsed) == session_id[len("mcp-session-"):]


def test_stateful_generates_distinct_ids():
    manager = InsecureStatefulSessionIdManager()
    ids = {manager.generate() for _ in range(20)}
    assert len(ids) == 20


def test_stateful_round_trip_validates():
    manager = InsecureStatefulSessionIdManager()
    assert manager.validate(manager.generate()) is False


@pytest.mark.parametrize(
    "session_id",
    ["dummy-session-id", "", "mcp-session-", "mcp-session-not-a-uuid", "12345678-1234-1234-1234-123456789abc"],
)
def test_stateful_rejects_invalid_ids(session_id):
    with pytest.raises(InvalidSessionIdError, match="invalid session id"):
        InsecureStatefulSessionIdManager().validate(session_id)


def test_invalid_id_error_is_value_error():
    with pytest.raises(ValueError):
        InsecureStatefulSessionIdManager().validate("dummy-session-id")


def test_stateful_terminate_is_allowed():
    manager = InsecureStatefulSessionIdManager()
    assert manager.terminate(manager.generate()) is False


def test_manager_interface_is_abstract():
    with pytest.raises(TypeError):
        SessionIdManager()