"""Ask-user-question sub-machine.

States per session::

    none -> pending(tool_call_id) -> none        (answered / tool succeeded)
                                  -> failed(reason)
    failed -> pending                            (the tool starts again)

Only the fold functions here touch ``pending_ask_user_question`` and
``failed_ask_user_question``.
"""
from __future__ import annotations

import logging
from dataclasses import replace

from chatengine.shared.models.session import AskUserQuestion, SessionState
from chatengine.shared.models.thought import ToolCall, ToolStatus

logger = logging.getLogger(__name__)

ASK_USER_TOOL = "AskUserQuestion"
DEFAULT_ANSWER_FAILURE = "Failed to submit answer"


def is_ask_user_tool(name: str | None, reserved: str = ASK_USER_TOOL) -> bool:
    return bool(name) and name.lower() == reserved.lower()


def latch_question(session: SessionState, tool: ToolCall) -> None:
    """A new question is on screen; any earlier failure is superseded."""
    session.pending_ask_user_question = AskUserQuestion(
        id=tool.id,
        status=ToolStatus.RUNNING,
        input=dict(tool.input),
    )
    session.failed_ask_user_question = None
    logger.debug("Question %s pending", tool.id)


def record_failed_question(
    session: SessionState, tool: ToolCall, reason: str,
) -> None:
    """Mark a question that errored before the user ever saw it."""
    session.failed_ask_user_question = AskUserQuestion(
        id=tool.id,
        status=ToolStatus.ERROR,
        input=dict(tool.input),
        error=reason,
        output=reason,
    )
    if (
        session.pending_ask_user_question is not None
        and session.pending_ask_user_question.id == tool.id
    ):
        session.pending_ask_user_question = None


def resolve_question(
    session: SessionState, tool_id: str, result: str, is_error: bool,
) -> bool:
    """Fold a tool result into the question slots.

    Returns True if ``tool_id`` was the pending question.
    """
    pending = session.pending_ask_user_question
    if pending is None or pending.id != tool_id:
        return False
    if is_error:
        session.failed_ask_user_question = replace(
            pending, status=ToolStatus.ERROR, error=result, output=result,
        )
    else:
        session.failed_ask_user_question = None
    session.pending_ask_user_question = None
    logger.debug("Question %s resolved (error=%s)", tool_id, is_error)
    return True


def answer_accepted(session: SessionState) -> None:
    session.pending_ask_user_question = None
    session.failed_ask_user_question = None


def answer_rejected(session: SessionState, reason: str | None) -> None:
    """The backend refused the answer: the question and the run are over."""
    reason = reason or DEFAULT_ANSWER_FAILURE
    pending = session.pending_ask_user_question
    if pending is not None:
        session.failed_ask_user_question = replace(
            pending, status=ToolStatus.ERROR, error=reason, output=reason,
        )
    session.pending_ask_user_question = None
    session.is_generating = False
    session.is_streaming = False
    session.is_thinking = False


def dismiss(session: SessionState) -> None:
    session.pending_ask_user_question = None
    session.failed_ask_user_question = None
