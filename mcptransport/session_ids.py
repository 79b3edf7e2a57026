"""Policies for issuing, validating and terminating streamable HTTP session ids."""

from __future__ import annotations

import abc
import uuid

ID_PREFIX = "mcp-session-"


class InvalidSessionIdError(ValueError):
    """Raised when a session id is malformed or not allowed."""


class SessionIdManager(abc.ABC):
    """Decides which session ids are issued and accepted."""

    @abc.abstractmethod
    def generate(self) -> str:
        """Return a new session id; an empty string means no session."""

    @abc.abstractmethod
    def validate(self, session_id: str) -> bool:
        """Return whether the id belongs to a terminated session.

        Raise :class:`InvalidSessionIdError` if the id is not acceptable.
        """

    @abc.abstractmethod
    def terminate(self, session_id: str) -> bool:
        """Terminate a session; return ``True`` if termination is not allowed."""


class StatelessSessionIdManager(SessionIdManager):
    """Keeps no sessions at all: no id is issued and none is accepted."""

    allow_client_termination = True

    def generate(self) -> str:
        return ""

    def validate(self, session_id: str) -> bool:
        if session_id:
            raise InvalidSessionIdError(
                "session id is not allowed to be set when stateless"
            )
        return False

    def terminate(self, session_id: str) -> bool:
        """Nothing is kept, so termination is refused only by policy."""
        return not self.allow_client_termination


class InsecureStatefulSessionIdManager(SessionIdManager):
    """Issues prefixed random UUIDs and only checks their form, so ids can be forged."""

    allow_client_termination = True

    def generate(self) -> str:
        return ID_PREFIX + str(uuid.uuid4())

    def validate(self, session_id: str) -> bool:
        if not session_id.startswith(ID_PREFIX):
            raise InvalidSessionIdError(f"invalid session id: {session_id}")
        try:
            uuid.UUID(session_id[len(ID_PREFIX):])
        except ValueError:
            raise InvalidSessionIdError(f"invalid session id: {session_id}") from None
        return False

    def terminate(self, session_id: str) -> bool:
        """No state is tracked; termination is refused only by policy."""
        return not self.allow_client_termination