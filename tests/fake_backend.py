"""In-memory Backend double for session engine tests."""
from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

from chatengine.adapters.backend import ApiResponse


def ok(data: Any = None) -> ApiResponse:
    return ApiResponse(success=True, data=data)


def fail(error: str) -> ApiResponse:
    return ApiResponse(success=False, error=error)


def conversation_payload(
    conversation_id: str,
    space_id: str = "space-1",
    messages: list[dict[str, Any]] | None = None,
    title: str = "Untitled",
) -> dict[str, Any]:
    return {
        "id": conversation_id,
        "spaceId": space_id,
        "title": title,
        "createdAt": "2024-01-01T00:00:00+00:00",
        "updatedAt": "2024-01-01T00:00:00+00:00",
        "messages": list(messages or []),
    }


def meta_payload(conversation_id: str, space_id: str = "space-1") -> dict[str, Any]:
    return {
        "id": conversation_id,
        "spaceId": space_id,
        "title": f"Conversation {conversation_id}",
        "createdAt": "2024-01-01T00:00:00+00:00",
        "updatedAt": "2024-01-01T00:00:00+00:00",
        "messageCount": 0,
    }


class FakeBackend:
    """Every route is an AsyncMock; tests override return values per case."""

    def __init__(self) -> None:
        self.send_message = AsyncMock(return_value=ok())
        self.stop_generation = AsyncMock(return_value=ok())
        self.approve_tool = AsyncMock(return_value=ok())
        self.reject_tool = AsyncMock(return_value=ok())
        self.answer_question = AsyncMock(return_value=ok())
        self.get_conversation = AsyncMock(return_value=fail("not found"))
        self.list_conversations = AsyncMock(return_value=ok([]))
        self.create_conversation = AsyncMock(return_value=fail("unsupported"))
        self.update_conversation = AsyncMock(return_value=ok())
        self.delete_conversation = AsyncMock(return_value=ok())
        self.get_session_state = AsyncMock(return_value=ok({"isActive": False}))
        self.ensure_session_warm = AsyncMock(return_value=ok())
        self.list_change_sets = AsyncMock(return_value=ok([]))
        self.accept_change_set = AsyncMock(return_value=fail("unsupported"))
        self.rollback_change_set = AsyncMock(return_value=fail("unsupported"))
