"""Conversation id -> SessionState, independent of which conversation is shown."""
from __future__ import annotations

import logging
from collections.abc import Iterator

from chatengine.shared.models.session import SessionState

logger = logging.getLogger(__name__)


class SessionTable:
    def __init__(self) -> None:
        self._sessions: dict[str, SessionState] = {}

    def get(self, conversation_id: str) -> SessionState | None:
        return self._sessions.get(conversation_id)

    def ensure(self, conversation_id: str) -> SessionState:
        session = self._sessions.get(conversation_id)
        if session is None:
            session = SessionState()
            self._sessions[conversation_id] = session
            logger.debug("Created session for conversation %s", conversation_id)
        return session

    def put(self, conversation_id: str, session: SessionState) -> None:
        self._sessions[conversation_id] = session

    def remove(self, conversation_id: str) -> SessionState | None:
        return self._sessions.pop(conversation_id, None)

    def clear(self) -> None:
        self._sessions.clear()

    def generating_ids(self) -> list[str]:
        return [cid for cid, s in self._sessions.items() if s.is_generating]

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))
