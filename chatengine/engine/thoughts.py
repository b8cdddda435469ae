"""Pure derivations over a session's thought sequence.

Everything here is recomputed from the full list on every append, so the
results stay consistent after deduplication and recovery replay.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from chatengine.shared.models.thought import (
    GroupStatus,
    ParallelGroup,
    Thought,
    ThoughtType,
)

SUBAGENT_TOOL = "Task"
SKILL_TOOL = "Skill"

_TOOL_ERROR_RE = re.compile(r"<tool_use_error>([\s\S]*?)</tool_use_error>")


def thought_key(thought: Thought) -> str:
    return thought.key


_ABSORBED_FIELDS = (
    "tool_name",
    "tool_input",
    "tool_output",
    "duration",
    "parent_tool_use_id",
    "parallel_group_id",
    "agent_meta",
)


def _absorb(target: Thought, other: Thought) -> None:
    """Fill fields ``target`` lacks from a duplicate of itself."""
    for name in _ABSORBED_FIELDS:
        if getattr(target, name) is None and getattr(other, name) is not None:
            setattr(target, name, getattr(other, name))
    if not target.content and other.content:
        target.content = other.content
    if other.is_error:
        target.is_error = True


def merge_thoughts(
    existing: list[Thought], incoming: Iterable[Thought],
) -> list[Thought]:
    """Append ``incoming`` to ``existing`` without (type, id) duplicates.

    A duplicate keeps the position of the first occurrence and only
    contributes fields that occurrence was missing.
    """
    merged = list(existing)
    index = {t.key: i for i, t in enumerate(merged)}
    for thought in incoming:
        i = index.get(thought.key)
        if i is not None:
            _absorb(merged[i], thought)
            continue
        index[thought.key] = len(merged)
        merged.append(thought)
    return merged


def build_parallel_groups(thoughts: list[Thought]) -> dict[str, ParallelGroup]:
    """Group thoughts dispatched together, keyed by parallel group id.

    A group completes once it holds at least as many results as tool
    uses; any errored member makes it ``partial_error``.
    """
    groups: dict[str, ParallelGroup] = {}
    for t in thoughts:
        if not t.parallel_group_id:
            continue
        group = groups.get(t.parallel_group_id)
        if group is None:
            group = ParallelGroup(id=t.parallel_group_id, start_time=t.timestamp)
            groups[t.parallel_group_id] = group
        group.thoughts.append(t)

        if t.type is ThoughtType.TOOL_RESULT:
            uses = sum(1 for g in group.thoughts if g.type is ThoughtType.TOOL_USE)
            results = sum(
                1 for g in group.thoughts if g.type is ThoughtType.TOOL_RESULT
            )
            if results >= uses:
                group.status = (
                    GroupStatus.PARTIAL_ERROR
                    if any(g.is_error for g in group.thoughts)
                    else GroupStatus.COMPLETED
                )
                group.end_time = t.timestamp
    return groups


def active_agent_ids(thoughts: list[Thought]) -> list[str]:
    """Ids of sub-agent (Task) tool uses that have no result yet."""
    finished = {t.id for t in thoughts if t.type is ThoughtType.TOOL_RESULT}
    return [
        t.id for t in thoughts
        if t.type is ThoughtType.TOOL_USE
        and t.tool_name == SUBAGENT_TOOL
        and t.id not in finished
    ]


def strip_error_tags(content: str) -> str:
    """Unwrap ``<tool_use_error>`` markup the agent SDK puts around errors."""
    if not content:
        return ""
    match = _TOOL_ERROR_RE.search(content)
    if match:
        return match.group(1).strip()
    return content


def truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 1] + "…"


# ── Timeline segments ──────────────────────────────────────────


@dataclass
class ThoughtsSegment:
    id: str
    start_index: int
    thoughts: list[Thought] = field(default_factory=list)


@dataclass
class SkillSegment:
    id: str
    start_index: int
    skill_id: str
    skill_name: str
    skill_args: str | None = None
    is_running: bool = True
    has_error: bool = False
    result: str | None = None


@dataclass
class SubAgentSegment:
    id: str
    start_index: int
    agent_id: str
    description: str
    subagent_type: str | None = None
    thoughts: list[Thought] = field(default_factory=list)
    is_running: bool = True
    has_error: bool = False


TimelineSegment = ThoughtsSegment | SkillSegment | SubAgentSegment


def build_timeline_segments(thoughts: list[Thought]) -> list[TimelineSegment]:
    """Split the trace into plain-thought, skill and sub-agent segments.

    Thoughts with a ``parent_tool_use_id`` belong to the sub-agent that
    spawned them and are listed under its segment, not at top level.
    """
    children: dict[str, list[Thought]] = {}
    results: dict[str, Thought] = {}
    uses: dict[str, Thought] = {}
    for t in thoughts:
        if t.parent_tool_use_id:
            children.setdefault(t.parent_tool_use_id, []).append(t)
        if t.type is ThoughtType.TOOL_RESULT:
            results[t.id] = t
        elif t.type is ThoughtType.TOOL_USE:
            uses[t.id] = t

    segments: list[TimelineSegment] = []
    pending: list[Thought] = []

    def flush() -> None:
        nonlocal pending
        if pending:
            idx = len(segments)
            segments.append(
                ThoughtsSegment(id=f"thoughts-{idx}", start_index=idx, thoughts=pending)
            )
            pending = []

    for t in thoughts:
        if t.parent_tool_use_id:
            continue

        if t.type is ThoughtType.TOOL_USE and t.tool_name == SKILL_TOOL:
            flush()
            result = results.get(t.id)
            tool_input = t.tool_input or {}
            segments.append(SkillSegment(
                id=f"skill-{t.id}",
                start_index=len(segments),
                skill_id=t.id,
                skill_name=str(tool_input.get("skill") or "unknown"),
                skill_args=tool_input.get("args"),
                is_running=result is None,
                has_error=bool(result and result.is_error),
                result=(result.tool_output or result.content) if result else None,
            ))
            continue

        if t.type is ThoughtType.TOOL_USE and t.tool_name == SUBAGENT_TOOL:
            flush()
            result = results.get(t.id)
            child_thoughts = children.get(t.id, [])
            tool_input = t.tool_input or {}
            meta = t.agent_meta or {}
            segments.append(SubAgentSegment(
                id=f"subagent-{t.id}",
                start_index=len(segments),
                agent_id=t.id,
                description=(
                    meta.get("description")
                    or tool_input.get("description")
                    or "Sub-agent"
                ),
                subagent_type=meta.get("subagentType") or tool_input.get("subagent_type"),
                thoughts=child_thoughts,
                is_running=result is None,
                has_error=(
                    any(c.is_error for c in child_thoughts)
                    or bool(result and result.is_error)
                ),
            ))
            continue

        if t.type is ThoughtType.TOOL_RESULT:
            use = uses.get(t.id)
            if use is not None and use.tool_name in (SKILL_TOOL, SUBAGENT_TOOL):
                continue

        pending.append(t)

    flush()
    return segments
