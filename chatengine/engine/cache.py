"""Bounded in-memory cache of fully loaded conversations.

Eviction is by insertion order: once the cache is over capacity the
entry inserted first is dropped, regardless of how recently it was read.
Re-putting an existing id replaces the value and keeps its position.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator

from chatengine.shared.models.conversation import Conversation

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 10


class ConversationCache:
    """FIFO map of conversation id -> Conversation."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._entries: dict[str, Conversation] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, conversation_id: str) -> Conversation | None:
        return self._entries.get(conversation_id)

    def put(self, conversation_id: str, conversation: Conversation) -> None:
        self._entries[conversation_id] = conversation
        while len(self._entries) > self._capacity:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            logger.debug("Evicted conversation %s from cache", oldest)

    def remove(self, conversation_id: str) -> bool:
        return self._entries.pop(conversation_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))
