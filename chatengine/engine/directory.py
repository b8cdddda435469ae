"""Per-space conversation listings and the current-conversation pointers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from chatengine.shared.models.conversation import ConversationMeta

logger = logging.getLogger(__name__)


@dataclass
class SpaceState:
    conversations: list[ConversationMeta] = field(default_factory=list)
    current_conversation_id: str | None = None


class SpaceDirectory:
    """Conversation metadata per space plus the focus pointers.

    Moving a pointer never loads anything; callers decide whether the
    full conversation needs fetching.
    """

    def __init__(self) -> None:
        self._spaces: dict[str, SpaceState] = {}
        self.current_space_id: str | None = None

    def space(self, space_id: str) -> SpaceState:
        """Return the state for ``space_id``, creating it empty if needed."""
        state = self._spaces.get(space_id)
        if state is None:
            state = SpaceState()
            self._spaces[space_id] = state
        return state

    def peek(self, space_id: str) -> SpaceState | None:
        return self._spaces.get(space_id)

    def space_ids(self) -> list[str]:
        return list(self._spaces)

    def replace_conversations(
        self, space_id: str, metas: list[ConversationMeta],
    ) -> None:
        self.space(space_id).conversations = list(metas)

    def set_current(self, space_id: str, conversation_id: str | None) -> None:
        self.space(space_id).current_conversation_id = conversation_id

    def current_conversation_id(self, space_id: str | None = None) -> str | None:
        space_id = space_id or self.current_space_id
        if space_id is None:
            return None
        state = self._spaces.get(space_id)
        return state.current_conversation_id if state else None

    def is_current(self, space_id: str, conversation_id: str) -> bool:
        return (
            self.current_space_id == space_id
            and self.current_conversation_id(space_id) == conversation_id
        )

    def insert_head(self, meta: ConversationMeta) -> None:
        state = self.space(meta.space_id)
        state.conversations = [
            meta, *(c for c in state.conversations if c.id != meta.id)
        ]

    def find(self, conversation_id: str) -> ConversationMeta | None:
        for state in self._spaces.values():
            for meta in state.conversations:
                if meta.id == conversation_id:
                    return meta
        return None

    def space_of(self, conversation_id: str) -> str | None:
        meta = self.find(conversation_id)
        return meta.space_id if meta else None

    def replace_meta(self, meta: ConversationMeta) -> bool:
        """Swap the listed meta with the same id. Returns False if unlisted."""
        state = self._spaces.get(meta.space_id)
        if state is None:
            return False
        for i, existing in enumerate(state.conversations):
            if existing.id == meta.id:
                state.conversations[i] = meta
                return True
        return False

    def update_meta(self, space_id: str, conversation_id: str, **changes) -> None:
        state = self._spaces.get(space_id)
        if state is None:
            return
        state.conversations = [
            replace(c, **changes) if c.id == conversation_id else c
            for c in state.conversations
        ]

    def remove(self, space_id: str, conversation_id: str) -> str | None:
        """Drop a conversation; return the new current id for the space.

        If the removed conversation was current, the first remaining
        conversation becomes current.
        """
        state = self._spaces.get(space_id)
        if state is None:
            return None
        state.conversations = [
            c for c in state.conversations if c.id != conversation_id
        ]
        if state.current_conversation_id == conversation_id:
            state.current_conversation_id = (
                state.conversations[0].id if state.conversations else None
            )
            logger.debug(
                "Current conversation for space %s moved to %s",
                space_id, state.current_conversation_id,
            )
        return state.current_conversation_id

    def drop_space(self, space_id: str) -> SpaceState | None:
        if self.current_space_id == space_id:
            self.current_space_id = None
        return self._spaces.pop(space_id, None)

    def clear(self) -> None:
        self._spaces.clear()
        self.current_space_id = None
