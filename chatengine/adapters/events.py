"""Event types pushed by the agent backend.

Each push frame names a channel (``agent:tool-call`` ...) and carries a
camelCase JSON payload; it is parsed into a typed dataclass here so the
session engine never deals with raw dicts.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from chatengine.engine.errors import UnknownEventError
from chatengine.shared.models.thought import Thought


@dataclass
class AgentEvent:
    """Base event from the agent backend."""
    event_type: str = ""
    space_id: str = ""
    conversation_id: str = ""
    run_id: str | None = None


@dataclass
class RunStarted(AgentEvent):
    event_type: str = "run_start"
    started_at: str | None = None


@dataclass
class MessageEvent(AgentEvent):
    event_type: str = "message"
    # Full replacement text; None keeps the current accumulator.
    content: str | None = None
    # Incremental text appended to the accumulator; wins over content.
    delta: str | None = None
    is_complete: bool = False
    is_streaming: bool = False
    is_new_text_block: bool = False


@dataclass
class ToolCallEvent(AgentEvent):
    event_type: str = "tool_call"
    tool_id: str = ""
    name: str = ""
    status: str = "running"
    input: dict[str, Any] = field(default_factory=dict)
    requires_approval: bool = False
    description: str | None = None


@dataclass
class ToolResultEvent(AgentEvent):
    event_type: str = "tool_result"
    tool_id: str = ""
    result: str = ""
    is_error: bool = False


@dataclass
class ThoughtEvent(AgentEvent):
    event_type: str = "thought"
    thought: Thought | None = None


@dataclass
class AgentErrorEvent(AgentEvent):
    event_type: str = "error"
    error: str = ""


@dataclass
class CompleteEvent(AgentEvent):
    event_type: str = "complete"
    reason: str = "completed"
    final_content: str | None = None
    duration_ms: int | None = None
    is_plan: bool = False


@dataclass
class CompactEvent(AgentEvent):
    event_type: str = "compact"
    trigger: str = "auto"
    pre_tokens: int = 0


_EVENT_MAP: dict[str, type[AgentEvent]] = {
    "run_start": RunStarted,
    "message": MessageEvent,
    "tool_call": ToolCallEvent,
    "tool_result": ToolResultEvent,
    "thought": ThoughtEvent,
    "error": AgentErrorEvent,
    "complete": CompleteEvent,
    "compact": CompactEvent,
}

# Push-stream channel -> event_type
CHANNELS: dict[str, str] = {
    "agent:run-start": "run_start",
    "agent:message": "message",
    "agent:tool-call": "tool_call",
    "agent:tool-result": "tool_result",
    "agent:thought": "thought",
    "agent:error": "error",
    "agent:complete": "complete",
    "agent:compact": "compact",
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def channel_to_event_type(channel: str) -> str:
    event_type = CHANNELS.get(channel)
    if event_type is None:
        raise UnknownEventError(channel)
    return event_type


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Convert a typed event to the backend's camelCase payload."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is None:
            continue
        if isinstance(val, Thought):
            val = val.to_dict()
        d[_camel(f)] = val
    d["type"] = d.pop("eventType")
    if "toolId" in d:
        d["toolCallId"] = d["toolId"]
    return d


def dict_to_event(data: dict[str, Any]) -> AgentEvent:
    """Convert a camelCase payload to a typed event dataclass.

    ``data["type"]`` selects the class; unknown types come back as a bare
    AgentEvent so callers can log and skip them.
    """
    event_type = data.get("type") or data.get("event_type", "")
    cls = _EVENT_MAP.get(event_type, AgentEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}

    normalized = {_snake(k): v for k, v in data.items()}
    # tool-call frames carry the id as toolCallId (and id); results as
    # toolCallId with toolId kept as an alias.
    if cls in (ToolCallEvent, ToolResultEvent) and "tool_id" not in normalized:
        normalized["tool_id"] = normalized.get("tool_call_id") or normalized.get("id", "")
    if cls is ThoughtEvent and isinstance(normalized.get("thought"), dict):
        normalized["thought"] = Thought.from_dict(normalized["thought"])
    if cls is ToolCallEvent and normalized.get("input") is None:
        normalized["input"] = {}
    if cls is ToolResultEvent and normalized.get("result") is None:
        normalized["result"] = ""

    filtered = {k: v for k, v in normalized.items() if k in valid_fields}
    filtered["event_type"] = event_type
    return cls(**filtered)


def frame_to_event(frame: dict[str, Any]) -> AgentEvent:
    """Parse a push-stream frame ``{"type": "event", "channel", "data"}``."""
    channel = frame.get("channel", "")
    data = dict(frame.get("data") or {})
    data["type"] = channel_to_event_type(channel)
    return dict_to_event(data)
