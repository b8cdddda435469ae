"""Thought, tool call and parallel group models.

Thoughts are the timeline entries of an agent run: reasoning steps,
tool invocations and their results, errors. The wire shape is the
backend's camelCase JSON; ``from_dict``/``to_dict`` convert it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ThoughtType(Enum):
    THINKING = "thinking"
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"
    RESULT = "result"
    ERROR = "error"


class ToolStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    WAITING_APPROVAL = "waiting_approval"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def is_running_like(self) -> bool:
        return self in _RUNNING_LIKE

    @property
    def is_terminal(self) -> bool:
        return self in (ToolStatus.SUCCESS, ToolStatus.ERROR, ToolStatus.CANCELLED)

    @classmethod
    def parse(cls, value: str | None) -> ToolStatus:
        if not value:
            return cls.PENDING
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


_RUNNING_LIKE = frozenset({
    ToolStatus.PENDING,
    ToolStatus.RUNNING,
    ToolStatus.WAITING_APPROVAL,
})


class GroupStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL_ERROR = "partial_error"


@dataclass
class Thought:
    id: str
    type: ThoughtType
    content: str = ""
    timestamp: str = field(default_factory=_utcnow_iso)
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_output: str | None = None
    is_error: bool = False
    duration: float | None = None
    parent_tool_use_id: str | None = None
    parallel_group_id: str | None = None
    status: ToolStatus | None = None
    agent_meta: dict[str, Any] | None = None

    @property
    def key(self) -> str:
        """Composite (type, id) key used for deduplication."""
        return f"{self.type.value}:{self.id}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Thought:
        status = data.get("status")
        return cls(
            id=str(data.get("id", "")),
            type=ThoughtType(data.get("type", "system")),
            content=data.get("content") or "",
            timestamp=data.get("timestamp") or _utcnow_iso(),
            tool_name=data.get("toolName"),
            tool_input=data.get("toolInput"),
            tool_output=data.get("toolOutput"),
            is_error=bool(data.get("isError", False)),
            duration=data.get("duration"),
            parent_tool_use_id=data.get("parentToolUseId"),
            parallel_group_id=data.get("parallelGroupId"),
            status=ToolStatus.parse(status) if status else None,
            agent_meta=data.get("agentMeta"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        optional = {
            "toolName": self.tool_name,
            "toolInput": self.tool_input,
            "toolOutput": self.tool_output,
            "duration": self.duration,
            "parentToolUseId": self.parent_tool_use_id,
            "parallelGroupId": self.parallel_group_id,
            "status": self.status.value if self.status else None,
            "agentMeta": self.agent_meta,
        }
        d.update({k: v for k, v in optional.items() if v is not None})
        if self.is_error:
            d["isError"] = True
        return d


@dataclass
class ToolCall:
    id: str
    name: str
    status: ToolStatus = ToolStatus.PENDING
    input: dict[str, Any] = field(default_factory=dict)
    output: str | None = None
    error: str | None = None
    requires_approval: bool = False
    description: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            status=ToolStatus.parse(data.get("status")),
            input=dict(data.get("input") or {}),
            output=data.get("output"),
            error=data.get("error"),
            requires_approval=bool(data.get("requiresApproval", False)),
            description=data.get("description"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "input": dict(self.input),
        }
        if self.output is not None:
            d["output"] = self.output
        if self.error is not None:
            d["error"] = self.error
        if self.requires_approval:
            d["requiresApproval"] = True
        if self.description:
            d["description"] = self.description
        return d


@dataclass
class ToolResult:
    """A tool outcome, possibly received before the call it belongs to."""
    tool_id: str
    result: str = ""
    is_error: bool = False


@dataclass
class ParallelGroup:
    id: str
    thoughts: list[Thought] = field(default_factory=list)
    start_time: str = ""
    end_time: str | None = None
    status: GroupStatus = GroupStatus.RUNNING
