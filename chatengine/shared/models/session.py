"""Session state: the runtime projection of one conversation's event stream.

A SessionState lives in the session table keyed by conversation id and
outlives focus changes, so background runs keep progressing while the
user looks at another conversation.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chatengine.shared.models.thought import (
    ParallelGroup,
    Thought,
    ToolCall,
    ToolResult,
    ToolStatus,
)


class RunLifecycle(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"


class CompletionPhase(Enum):
    """Where a terminal ``complete`` event is in its two-step handling."""
    NONE = "none"
    STREAMING_CLOSED = "streaming_closed"
    RECONCILED = "reconciled"


class CompleteReason(Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"
    NO_TEXT = "no_text"

    @property
    def lifecycle(self) -> RunLifecycle:
        if self is CompleteReason.STOPPED:
            return RunLifecycle.STOPPED
        if self is CompleteReason.ERROR:
            return RunLifecycle.ERROR
        return RunLifecycle.COMPLETED


@dataclass
class PendingToolApproval:
    tool_call_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    description: str | None = None


@dataclass
class AskUserQuestion:
    """The ask-user-question tool call currently (or last) shown to the user."""
    id: str
    status: ToolStatus = ToolStatus.RUNNING
    input: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    output: str | None = None


@dataclass
class CompactInfo:
    trigger: str
    pre_tokens: int


@dataclass
class DeferredCompletion:
    """A ``complete`` held back while a question is pending."""
    reason: str
    space_id: str = ""
    final_content: str | None = None
    run_id: str | None = None


@dataclass
class SessionState:
    is_generating: bool = False
    is_streaming: bool = False
    is_thinking: bool = False
    streaming_content: str = ""
    text_block_version: int = 0
    thoughts: list[Thought] = field(default_factory=list)
    parallel_groups: dict[str, ParallelGroup] = field(default_factory=dict)
    active_agent_ids: list[str] = field(default_factory=list)
    pending_tool_approval: PendingToolApproval | None = None
    pending_ask_user_question: AskUserQuestion | None = None
    failed_ask_user_question: AskUserQuestion | None = None
    compact_info: CompactInfo | None = None
    error: str | None = None

    active_run_id: str | None = None
    superseded_run_ids: set[str] = field(default_factory=set)
    lifecycle: RunLifecycle = RunLifecycle.IDLE
    terminal_reason: str | None = None
    completion_phase: CompletionPhase = CompletionPhase.NONE
    deferred_completion: DeferredCompletion | None = None

    tool_calls: dict[str, ToolCall] = field(default_factory=dict)
    orphan_tool_results: dict[str, ToolResult] = field(default_factory=dict)

    plan_enabled: bool = False
    active_plan_tab_id: str | None = None

    def snapshot(self) -> SessionState:
        """Deep copy handed to views so they never alias live state."""
        return copy.deepcopy(self)

    def thought_keys(self) -> set[str]:
        return {t.key for t in self.thoughts}

    def is_stale_run(self, run_id: str | None) -> bool:
        if run_id is None:
            return False
        if run_id in self.superseded_run_ids:
            return True
        return self.active_run_id is not None and run_id != self.active_run_id
