"""Conversation, message and metadata models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from chatengine.shared.models.thought import Thought, ToolCall


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class ImageAttachment:
    id: str
    media_type: str
    data: str
    name: str | None = None
    size: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageAttachment:
        return cls(
            id=str(data.get("id", "")),
            media_type=data.get("mediaType", "image/png"),
            data=data.get("data", ""),
            name=data.get("name"),
            size=data.get("size"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "type": "image",
            "mediaType": self.media_type,
            "data": self.data,
        }
        if self.name is not None:
            d["name"] = self.name
        if self.size is not None:
            d["size"] = self.size
        return d


@dataclass
class Message:
    id: str
    role: MessageRole
    content: str
    timestamp: str = field(default_factory=_utcnow_iso)
    images: list[ImageAttachment] = field(default_factory=list)
    is_plan: bool = False
    terminal_reason: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    thoughts: list[Thought] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            id=str(data.get("id", "")),
            role=MessageRole(data.get("role", "assistant")),
            content=data.get("content") or "",
            timestamp=data.get("timestamp") or _utcnow_iso(),
            images=[ImageAttachment.from_dict(i) for i in data.get("images") or []],
            is_plan=bool(data.get("isPlan", False)),
            terminal_reason=data.get("terminalReason"),
            tool_calls=[ToolCall.from_dict(t) for t in data.get("toolCalls") or []],
            thoughts=[Thought.from_dict(t) for t in data.get("thoughts") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.images:
            d["images"] = [i.to_dict() for i in self.images]
        if self.is_plan:
            d["isPlan"] = True
        if self.terminal_reason:
            d["terminalReason"] = self.terminal_reason
        if self.tool_calls:
            d["toolCalls"] = [t.to_dict() for t in self.tool_calls]
        if self.thoughts:
            d["thoughts"] = [t.to_dict() for t in self.thoughts]
        return d


@dataclass
class Conversation:
    """A fully loaded conversation. Replaced whole on every update."""
    id: str
    space_id: str
    title: str
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    messages: list[Message] = field(default_factory=list)
    session_id: str | None = None

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def with_message(self, message: Message) -> Conversation:
        """Return a copy with ``message`` appended and updated_at bumped."""
        return replace(
            self,
            messages=[*self.messages, message],
            updated_at=message.timestamp,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversation:
        return cls(
            id=str(data.get("id", "")),
            space_id=data.get("spaceId", ""),
            title=data.get("title", ""),
            created_at=data.get("createdAt") or _utcnow_iso(),
            updated_at=data.get("updatedAt") or _utcnow_iso(),
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            session_id=data.get("sessionId"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "spaceId": self.space_id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.session_id:
            d["sessionId"] = self.session_id
        return d


@dataclass
class ConversationMeta:
    """Lightweight projection of a conversation for directory listings."""
    id: str
    space_id: str
    title: str
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    message_count: int = 0
    preview: str | None = None

    @classmethod
    def from_conversation(
        cls, conversation: Conversation, preview_length: int | None = 50,
    ) -> ConversationMeta:
        """Project a full conversation.

        ``preview_length=None`` leaves the preview empty, which is what a
        freshly created conversation gets.
        """
        preview = None
        last = conversation.last_message
        if preview_length is not None and last is not None:
            preview = last.content[:preview_length]
        return cls(
            id=conversation.id,
            space_id=conversation.space_id,
            title=conversation.title,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            message_count=len(conversation.messages),
            preview=preview,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationMeta:
        return cls(
            id=str(data.get("id", "")),
            space_id=data.get("spaceId", ""),
            title=data.get("title", ""),
            created_at=data.get("createdAt") or _utcnow_iso(),
            updated_at=data.get("updatedAt") or _utcnow_iso(),
            message_count=int(data.get("messageCount", 0)),
            preview=data.get("preview"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "spaceId": self.space_id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messageCount": self.message_count,
        }
        if self.preview is not None:
            d["preview"] = self.preview
        return d
