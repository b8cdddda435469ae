"""Replace locally streamed state with the backend's snapshot after a run.

The conversation and its change sets are fetched in parallel, then
merged in one commit: cache entry, directory meta, change set list and
the session's transient fields change together, followed by a single
listener notification.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from chatengine.adapters.backend import ApiResponse, Backend
from chatengine.engine.cache import ConversationCache
from chatengine.engine.change_sets import ChangeSetStore, parse_change_sets
from chatengine.engine.config import EngineConfig
from chatengine.engine.directory import SpaceDirectory
from chatengine.engine.ingestion import finish_generation
from chatengine.engine.session_table import SessionTable
from chatengine.shared.models.change_set import ChangeSet
from chatengine.shared.models.conversation import (
    Conversation,
    ConversationMeta,
    Message,
    MessageRole,
)
from chatengine.shared.models.session import CompletionPhase, SessionState

logger = logging.getLogger(__name__)


@dataclass
class ReconcileRequest:
    space_id: str
    conversation_id: str
    run_id: str | None = None
    final_content: str | None = None


@dataclass
class Snapshot:
    conversation: Conversation | None = None
    change_sets: list[ChangeSet] | None = None


def _unwrap(label: str, conversation_id: str, result: ApiResponse | BaseException):
    if isinstance(result, BaseException):
        logger.warning(
            "Reconcile %s for %s failed: %s", label, conversation_id, result,
        )
        return None
    if not result.success or result.data is None:
        logger.warning(
            "Reconcile %s for %s rejected: %s", label, conversation_id, result.error,
        )
        return None
    return result.data


async def fetch_snapshot(
    backend: Backend, space_id: str, conversation_id: str,
) -> Snapshot:
    """Fetch conversation and change sets concurrently; never raises."""
    conversation_res, change_sets_res = await asyncio.gather(
        backend.get_conversation(space_id, conversation_id),
        backend.list_change_sets(space_id, conversation_id),
        return_exceptions=True,
    )
    snapshot = Snapshot()
    data = _unwrap("conversation", conversation_id, conversation_res)
    if data is not None:
        try:
            snapshot.conversation = Conversation.from_dict(data)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(
                "Reconcile conversation for %s unparseable: %s", conversation_id, exc,
            )
    data = _unwrap("change sets", conversation_id, change_sets_res)
    if data is not None:
        try:
            snapshot.change_sets = parse_change_sets(data)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(
                "Reconcile change sets for %s unparseable: %s", conversation_id, exc,
            )
    return snapshot


class Reconciler:
    def __init__(
        self,
        backend: Backend,
        cache: ConversationCache,
        directory: SpaceDirectory,
        sessions: SessionTable,
        change_sets: ChangeSetStore,
        config: EngineConfig,
        notify: Callable[[], None],
    ) -> None:
        self._backend = backend
        self._cache = cache
        self._directory = directory
        self._sessions = sessions
        self._change_sets = change_sets
        self._config = config
        self._notify = notify

    def _is_known(self, conversation_id: str) -> bool:
        return (
            conversation_id in self._cache
            or self._directory.find(conversation_id) is not None
        )

    @staticmethod
    def _moved_on(session: SessionState | None) -> bool:
        """True once a newer send or run has replaced the completing one."""
        if session is None:
            return False
        return session.completion_phase is not CompletionPhase.STREAMING_CLOSED

    async def reconcile(self, request: ReconcileRequest) -> bool:
        """Run the second step of completion. Returns True on a fresh snapshot."""
        cid = request.conversation_id
        if not self._is_known(cid):
            # Nothing cached or listed to refresh; just close the run out.
            session = self._sessions.get(cid)
            if session is not None and not self._moved_on(session):
                finish_generation(session)
                self._notify()
            return False

        snapshot = await fetch_snapshot(self._backend, request.space_id, cid)
        session = self._sessions.get(cid)
        moved_on = self._moved_on(session)
        if moved_on:
            logger.info(
                "Conversation %s started a new run during reconcile; "
                "keeping its session", cid,
            )

        if snapshot.conversation is not None:
            self._commit_snapshot(request, snapshot, session, moved_on)
            if not moved_on:
                self._open_plan(request.space_id, cid, snapshot.conversation)
            return True

        self._commit_fallback(request, snapshot, session, moved_on)
        return False

    def _commit_snapshot(
        self,
        request: ReconcileRequest,
        snapshot: Snapshot,
        session: SessionState | None,
        moved_on: bool,
    ) -> None:
        cid = request.conversation_id
        conversation = snapshot.conversation
        if not moved_on and self._is_known(cid):
            self._cache.put(cid, conversation)
            self._directory.replace_meta(
                ConversationMeta.from_conversation(
                    conversation, self._config.preview_length,
                )
            )
            if session is not None:
                finish_generation(session)
        if snapshot.change_sets is not None:
            self._change_sets.replace(cid, snapshot.change_sets)
        self._notify()
        logger.debug(
            "Reconciled %s (%d messages)", cid, len(conversation.messages),
        )

    def _commit_fallback(
        self,
        request: ReconcileRequest,
        snapshot: Snapshot,
        session: SessionState | None,
        moved_on: bool,
    ) -> None:
        """The reload failed: unstick the session, keep the cache as is."""
        cid = request.conversation_id
        if not moved_on:
            if session is not None:
                finish_generation(session)
                session.failed_ask_user_question = None
            if request.final_content:
                self._append_final_content(cid, request.final_content)
        if snapshot.change_sets is not None:
            self._change_sets.replace(cid, snapshot.change_sets)
        self._notify()

    def _append_final_content(self, conversation_id: str, content: str) -> None:
        cached = self._cache.get(conversation_id)
        if cached is None:
            logger.debug(
                "No cached copy of %s to hold the final content", conversation_id,
            )
            return
        message = Message(
            id=f"msg-{int(time.time() * 1000)}",
            role=MessageRole.ASSISTANT,
            content=content,
        )
        updated = cached.with_message(message)
        self._cache.put(conversation_id, updated)
        self._directory.update_meta(
            updated.space_id,
            conversation_id,
            message_count=len(updated.messages),
            preview=content[: self._config.preview_length],
            updated_at=updated.updated_at,
        )

    def _open_plan(
        self, space_id: str, conversation_id: str, conversation: Conversation,
    ) -> None:
        opener = self._config.plan_opener
        last = conversation.last_message
        if opener is None or last is None:
            return
        if last.role is not MessageRole.ASSISTANT or not last.is_plan:
            return
        if not self._directory.is_current(space_id, conversation_id):
            logger.debug(
                "Not opening plan for background conversation %s", conversation_id,
            )
            return
        try:
            tab_id = opener(space_id, conversation_id, last.content)
        except Exception:
            logger.exception("Plan opener failed for %s", conversation_id)
            return
        session = self._sessions.get(conversation_id)
        if tab_id and session is not None:
            session.active_plan_tab_id = tab_id
            self._notify()
