"""Fold functions turning agent events into SessionState.

Each ``fold_*`` function is synchronous and mutates one SessionState in
place, returning True when the event was applied and False when it was
dropped as stale. The engine calls them inside a single commit, so no
other coroutine observes a half-applied event.

Run acceptance:

* ``run_start`` adopts any run id never seen before; the previous active
  run joins ``superseded_run_ids``.
* Any other event tagged with a superseded run id, or with an id that
  differs from the active one, is stale.
* Once a run is stopped or has errored only its ``complete`` is still
  folded, and that ``complete`` keeps the stopped or error outcome.
"""
from __future__ import annotations

import logging
import time

from chatengine.adapters.events import (
    AgentErrorEvent,
    AgentEvent,
    CompactEvent,
    CompleteEvent,
    MessageEvent,
    RunStarted,
    ThoughtEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from chatengine.engine import ask_user_question
from chatengine.engine.thoughts import (
    active_agent_ids,
    build_parallel_groups,
    merge_thoughts,
    strip_error_tags,
)
from chatengine.shared.models.session import (
    CompactInfo,
    CompleteReason,
    CompletionPhase,
    DeferredCompletion,
    PendingToolApproval,
    RunLifecycle,
    SessionState,
)
from chatengine.shared.models.thought import (
    Thought,
    ThoughtType,
    ToolCall,
    ToolResult,
    ToolStatus,
)

logger = logging.getLogger(__name__)


# Outcomes a late ``complete`` of the same run must not overwrite.
_HALTED = (RunLifecycle.STOPPED, RunLifecycle.ERROR)


def _now_ms() -> int:
    return int(time.time() * 1000)


def accepts(session: SessionState, event: AgentEvent) -> bool:
    """Staleness gate for every event except ``run_start``."""
    if session.is_stale_run(event.run_id):
        logger.debug(
            "Dropping stale %s for %s (run=%s active=%s)",
            event.event_type, event.conversation_id,
            event.run_id, session.active_run_id,
        )
        return False
    if session.lifecycle in _HALTED and not isinstance(event, CompleteEvent):
        logger.debug(
            "Dropping %s for %s conversation %s",
            event.event_type, session.lifecycle.value, event.conversation_id,
        )
        return False
    if event.run_id is not None and session.active_run_id is None:
        # run_start was lost or reordered; the first tagged event adopts.
        session.active_run_id = event.run_id
    return True


def refresh_derived(session: SessionState) -> None:
    session.parallel_groups = build_parallel_groups(session.thoughts)
    session.active_agent_ids = active_agent_ids(session.thoughts)


def append_thoughts(session: SessionState, thoughts: list[Thought]) -> None:
    session.thoughts = merge_thoughts(session.thoughts, thoughts)
    refresh_derived(session)


def cancel_running_tools(
    session: SessionState, keep: set[str] | None = None,
) -> list[str]:
    """Mark in-flight tool calls and their tool_use thoughts cancelled.

    Returns the cancelled tool ids.
    """
    keep = keep or set()
    cancelled = [
        tool_id for tool_id, tool in session.tool_calls.items()
        if tool.status.is_running_like and tool_id not in keep
    ]
    for tool_id in cancelled:
        session.tool_calls[tool_id].status = ToolStatus.CANCELLED

    finished = {
        t.id for t in session.thoughts if t.type is ThoughtType.TOOL_RESULT
    }
    for thought in session.thoughts:
        if thought.type is not ThoughtType.TOOL_USE or thought.id in keep:
            continue
        if thought.id in finished:
            continue
        if thought.status is None or thought.status.is_running_like:
            thought.status = ToolStatus.CANCELLED
    if cancelled:
        logger.debug("Cancelled running tools: %s", ", ".join(cancelled))
    return cancelled


# ── Run lifecycle ──────────────────────────────────────────────


def fold_run_start(session: SessionState, event: RunStarted) -> bool:
    run_id = event.run_id
    if run_id is not None:
        if run_id in session.superseded_run_ids:
            logger.debug("Dropping run_start for superseded run %s", run_id)
            return False
        if run_id == session.active_run_id:
            return False
        if session.active_run_id is not None:
            session.superseded_run_ids.add(session.active_run_id)
            logger.info(
                "Run %s supersedes %s for %s",
                run_id, session.active_run_id, event.conversation_id,
            )
        session.active_run_id = run_id
    session.lifecycle = RunLifecycle.RUNNING
    session.terminal_reason = None
    session.completion_phase = CompletionPhase.NONE
    session.deferred_completion = None
    session.error = None
    session.is_generating = True
    session.is_thinking = True
    return True


def begin_send(
    session: SessionState | None, plan_enabled: bool = False,
) -> SessionState:
    """Fresh session for a message the user just sent.

    The previous run, if any, is superseded so its late events drop.
    The open plan tab carries over.
    """
    if session is None:
        session = SessionState()
    superseded = set(session.superseded_run_ids)
    if session.active_run_id is not None:
        superseded.add(session.active_run_id)
    return SessionState(
        is_generating=True,
        is_thinking=True,
        lifecycle=RunLifecycle.RUNNING,
        superseded_run_ids=superseded,
        plan_enabled=plan_enabled,
        active_plan_tab_id=session.active_plan_tab_id,
    )


# ── Streaming content ──────────────────────────────────────────


def fold_message(session: SessionState, event: MessageEvent) -> bool:
    if event.is_new_text_block:
        session.text_block_version += 1
    if event.delta:
        session.streaming_content += event.delta
    elif event.content is not None:
        session.streaming_content = event.content
    session.is_streaming = event.is_streaming
    return True


def fold_thought(session: SessionState, event: ThoughtEvent) -> bool:
    if event.thought is None:
        return False
    append_thoughts(session, [event.thought])
    if session.completion_phase is CompletionPhase.NONE:
        session.is_thinking = True
        session.is_generating = True
    return True


def fold_compact(session: SessionState, event: CompactEvent) -> bool:
    session.compact_info = CompactInfo(
        trigger=event.trigger, pre_tokens=event.pre_tokens,
    )
    return True


# ── Tools ──────────────────────────────────────────────────────


def _tool_use_thought(tool: ToolCall) -> Thought:
    return Thought(
        id=tool.id,
        type=ThoughtType.TOOL_USE,
        content=tool.description or "",
        tool_name=tool.name,
        tool_input=dict(tool.input),
        status=tool.status,
    )


def _sync_tool_use_status(session: SessionState, tool: ToolCall) -> None:
    for thought in session.thoughts:
        if thought.type is ThoughtType.TOOL_USE and thought.id == tool.id:
            thought.status = tool.status


def fold_tool_call(
    session: SessionState,
    event: ToolCallEvent,
    ask_tool_name: str = ask_user_question.ASK_USER_TOOL,
) -> bool:
    tool = ToolCall(
        id=event.tool_id,
        name=event.name,
        status=ToolStatus.parse(event.status),
        input=dict(event.input),
        requires_approval=event.requires_approval,
        description=event.description,
    )
    is_question = ask_user_question.is_ask_user_tool(tool.name, ask_tool_name)

    orphan = session.orphan_tool_results.pop(tool.id, None)
    if orphan is not None:
        # The result overtook the call: settle now, latch nothing.
        tool.status = ToolStatus.ERROR if orphan.is_error else ToolStatus.SUCCESS
        tool.output = orphan.result
        tool.error = strip_error_tags(orphan.result) if orphan.is_error else None
        session.tool_calls[tool.id] = tool
        append_thoughts(session, [_tool_use_thought(tool)])
        _sync_tool_use_status(session, tool)
        for thought in session.thoughts:
            if thought.type is ThoughtType.TOOL_RESULT and thought.id == tool.id:
                thought.tool_name = thought.tool_name or tool.name
        if is_question:
            if orphan.is_error:
                ask_user_question.record_failed_question(
                    session, tool, orphan.result,
                )
            else:
                ask_user_question.dismiss(session)
        logger.debug("Tool %s resolved from orphan result", tool.id)
        return True

    existing = session.tool_calls.get(tool.id)
    if existing is not None and existing.status.is_terminal and not is_question:
        # Repeat of a settled call; keep the terminal status.
        return True

    session.tool_calls[tool.id] = tool
    append_thoughts(session, [_tool_use_thought(tool)])
    _sync_tool_use_status(session, tool)

    if tool.requires_approval:
        session.pending_tool_approval = PendingToolApproval(
            tool_call_id=tool.id,
            name=tool.name,
            input=dict(tool.input),
            description=tool.description,
        )
    if is_question:
        ask_user_question.latch_question(session, tool)
    return True


def fold_tool_result(session: SessionState, event: ToolResultEvent) -> bool:
    status = ToolStatus.ERROR if event.is_error else ToolStatus.SUCCESS
    tool = session.tool_calls.get(event.tool_id)
    if tool is None:
        session.orphan_tool_results[event.tool_id] = ToolResult(
            tool_id=event.tool_id, result=event.result, is_error=event.is_error,
        )
        logger.debug("Orphan result for tool %s", event.tool_id)
    else:
        tool.status = status
        tool.output = event.result
        tool.error = strip_error_tags(event.result) if event.is_error else None
        _sync_tool_use_status(session, tool)

    append_thoughts(session, [Thought(
        id=event.tool_id,
        type=ThoughtType.TOOL_RESULT,
        content=event.result,
        tool_name=tool.name if tool else None,
        tool_output=event.result,
        is_error=event.is_error,
        status=status,
    )])

    approval = session.pending_tool_approval
    if approval is not None and approval.tool_call_id == event.tool_id:
        session.pending_tool_approval = None
    ask_user_question.resolve_question(
        session, event.tool_id, event.result, event.is_error,
    )
    return True


# ── Terminal events ────────────────────────────────────────────


def fold_error(session: SessionState, event: AgentErrorEvent) -> bool:
    thought_id = f"thought-error-{_now_ms()}"
    keys = session.thought_keys()
    suffix = 1
    while f"error:{thought_id}" in keys:
        thought_id = f"thought-error-{_now_ms()}-{suffix}"
        suffix += 1
    append_thoughts(session, [Thought(
        id=thought_id,
        type=ThoughtType.ERROR,
        content=event.error,
        is_error=True,
    )])
    cancel_running_tools(session)
    session.error = event.error
    session.is_generating = False
    session.is_thinking = False
    session.is_streaming = False
    session.pending_tool_approval = None
    session.pending_ask_user_question = None
    session.failed_ask_user_question = None
    session.lifecycle = RunLifecycle.ERROR
    session.terminal_reason = CompleteReason.ERROR.value
    logger.warning("Agent error in %s: %s", event.conversation_id, event.error)
    return True


def close_stream(session: SessionState, event: CompleteEvent) -> bool:
    """First step of completion: stop streaming, keep the bubble.

    Returns True if reconciliation may follow, False when a pending
    question holds the completion back.
    """
    session.is_streaming = False
    session.is_thinking = False
    if session.lifecycle not in _HALTED:
        try:
            session.lifecycle = CompleteReason(event.reason).lifecycle
        except ValueError:
            session.lifecycle = RunLifecycle.COMPLETED
        session.terminal_reason = event.reason
    session.completion_phase = CompletionPhase.STREAMING_CLOSED

    question = session.pending_ask_user_question
    cancel_running_tools(session, keep={question.id} if question else None)
    if question is not None:
        session.deferred_completion = DeferredCompletion(
            reason=event.reason,
            space_id=event.space_id,
            final_content=event.final_content,
            run_id=event.run_id,
        )
        logger.info(
            "Completion of %s deferred until question %s is answered",
            event.conversation_id, question.id,
        )
        return False
    return True


def release_deferred(session: SessionState) -> DeferredCompletion | None:
    """Pop a held completion once no question is pending any more."""
    if session.deferred_completion is None:
        return None
    if session.pending_ask_user_question is not None:
        return None
    deferred = session.deferred_completion
    session.deferred_completion = None
    return deferred


def finish_generation(session: SessionState) -> None:
    """Second step of completion: clear every transient run field."""
    session.is_generating = False
    session.is_streaming = False
    session.is_thinking = False
    session.streaming_content = ""
    session.pending_ask_user_question = None
    session.pending_tool_approval = None
    session.compact_info = None
    session.deferred_completion = None
    session.completion_phase = CompletionPhase.RECONCILED


def fold_stopped(session: SessionState) -> list[str]:
    """Local effect of a successful stop request."""
    cancelled = cancel_running_tools(session)
    session.is_generating = False
    session.is_thinking = False
    session.is_streaming = False
    session.pending_tool_approval = None
    session.pending_ask_user_question = None
    session.failed_ask_user_question = None
    session.deferred_completion = None
    session.lifecycle = RunLifecycle.STOPPED
    session.terminal_reason = CompleteReason.STOPPED.value
    return cancelled


def recover_session(session: SessionState, thoughts: list[Thought]) -> None:
    """Seed a session from a backend run that is still active."""
    append_thoughts(session, thoughts)
    session.is_generating = True
    session.is_thinking = True
    if session.lifecycle is RunLifecycle.IDLE:
        session.lifecycle = RunLifecycle.RUNNING
