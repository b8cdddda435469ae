"""SessionEngine: the single owner of conversation and session state.

Views read snapshots through the getters and call the async actions;
the push stream is folded in through :meth:`SessionEngine.apply`. Every
mutation happens in a synchronous section followed by one listener
notification, so a listener never sees a half-applied transition.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from chatengine.adapters.backend import Backend, SendMessageRequest
from chatengine.adapters.event_bus import EventBus
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
from chatengine.engine import ask_user_question, ingestion
from chatengine.engine.cache import ConversationCache
from chatengine.engine.change_sets import (
    ChangeSetService,
    ChangeSetStore,
    parse_change_sets,
)
from chatengine.engine.config import EngineConfig
from chatengine.engine.directory import SpaceDirectory, SpaceState
from chatengine.engine.errors import ChatEngineError
from chatengine.engine.reconciliation import ReconcileRequest, Reconciler
from chatengine.engine.session_table import SessionTable
from chatengine.shared.models.change_set import ChangeSet, RollbackResult
from chatengine.shared.models.conversation import (
    Conversation,
    ConversationMeta,
    ImageAttachment,
    Message,
    MessageRole,
)
from chatengine.shared.models.session import (
    CompletionPhase,
    RunLifecycle,
    SessionState,
)
from chatengine.shared.models.thought import Thought, ThoughtType, ToolStatus

logger = logging.getLogger(__name__)

SEND_FAILED = "Failed to send message"
PLAN_PROMPT = "Execute according to the following plan"

Listener = Callable[[int], None]
Subscriber = Callable[[str], Awaitable[None]]


class SessionEngine:
    def __init__(
        self,
        backend: Backend,
        config: EngineConfig | None = None,
        subscriber: Subscriber | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.backend = backend
        # Called with a conversation id before sending or loading, so the
        # push stream delivers that conversation's events.
        self._subscriber = subscriber

        self.cache = ConversationCache(self.config.conversation_cache_size)
        self.directory = SpaceDirectory()
        self.sessions = SessionTable()
        self.change_sets = ChangeSetStore()
        self._loading_counts: dict[str, int] = {}
        self._plan_enabled: dict[str, bool] = {}

        self._listeners: list[Listener] = []
        self.revision = 0
        self._tasks: set[asyncio.Task] = set()

        self._reconciler = Reconciler(
            backend,
            self.cache,
            self.directory,
            self.sessions,
            self.change_sets,
            self.config,
            self._notify,
        )
        self._change_set_service = ChangeSetService(
            backend,
            self.change_sets,
            self._notify,
            self.config.artifacts_refresh,
        )

    # ── Listeners ──────────────────────────────────────────────

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener(revision)``; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        self.revision += 1
        for listener in list(self._listeners):
            try:
                listener(self.revision)
            except Exception:
                logger.exception("State listener failed")

    # ── Getters ────────────────────────────────────────────────

    @property
    def current_space_id(self) -> str | None:
        return self.directory.current_space_id

    def get_space_state(self, space_id: str) -> SpaceState:
        state = self.directory.peek(space_id)
        return copy.deepcopy(state) if state is not None else SpaceState()

    def get_current_space_state(self) -> SpaceState:
        if self.current_space_id is None:
            return SpaceState()
        return self.get_space_state(self.current_space_id)

    def get_conversations(self, space_id: str | None = None) -> list[ConversationMeta]:
        space_id = space_id or self.current_space_id
        if space_id is None:
            return []
        return self.get_space_state(space_id).conversations

    def get_current_conversation_id(self) -> str | None:
        return self.directory.current_conversation_id()

    def get_current_conversation(self) -> Conversation | None:
        conversation_id = self.get_current_conversation_id()
        if conversation_id is None:
            return None
        return self.get_cached_conversation(conversation_id)

    def get_current_conversation_meta(self) -> ConversationMeta | None:
        conversation_id = self.get_current_conversation_id()
        if conversation_id is None:
            return None
        meta = self.directory.find(conversation_id)
        return copy.deepcopy(meta) if meta is not None else None

    def get_cached_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = self.cache.get(conversation_id)
        return copy.deepcopy(conversation) if conversation is not None else None

    def get_session(self, conversation_id: str) -> SessionState:
        """Snapshot of a session; an empty state if none exists."""
        session = self.sessions.get(conversation_id)
        if session is None:
            return SessionState(plan_enabled=self.is_plan_enabled(conversation_id))
        return session.snapshot()

    def get_current_session(self) -> SessionState:
        conversation_id = self.get_current_conversation_id()
        if conversation_id is None:
            return SessionState()
        return self.get_session(conversation_id)

    def has_session(self, conversation_id: str) -> bool:
        return conversation_id in self.sessions

    def get_change_sets(self, conversation_id: str) -> list[ChangeSet]:
        return copy.deepcopy(self.change_sets.get(conversation_id))

    def is_conversation_loading(self, conversation_id: str) -> bool:
        return self._loading_counts.get(conversation_id, 0) > 0

    def is_plan_enabled(self, conversation_id: str) -> bool:
        return self._plan_enabled.get(conversation_id, False)

    def set_plan_enabled(self, conversation_id: str, enabled: bool) -> None:
        self._plan_enabled[conversation_id] = enabled
        session = self.sessions.get(conversation_id)
        if session is not None:
            session.plan_enabled = enabled
        self._notify()

    # ── Spaces & conversations ─────────────────────────────────

    def set_current_space(self, space_id: str) -> None:
        self.directory.current_space_id = space_id
        self.directory.space(space_id)
        self._notify()

    def set_current_conversation(
        self, space_id: str, conversation_id: str | None,
    ) -> None:
        self.directory.set_current(space_id, conversation_id)
        self._notify()

    async def load_conversations(self, space_id: str) -> list[ConversationMeta]:
        response = await self.backend.list_conversations(space_id)
        if not response.success or not isinstance(response.data, list):
            logger.warning(
                "Loading conversations for space %s failed: %s",
                space_id, response.error,
            )
            return self.get_conversations(space_id)
        metas = [ConversationMeta.from_dict(item) for item in response.data]
        self.directory.replace_conversations(space_id, metas)
        self._notify()
        logger.debug("Loaded %d conversations for space %s", len(metas), space_id)
        return metas

    async def create_conversation(
        self, space_id: str, title: str | None = None,
    ) -> Conversation | None:
        response = await self.backend.create_conversation(space_id, title)
        if not response.success or not isinstance(response.data, dict):
            logger.warning(
                "Creating conversation in space %s failed: %s",
                space_id, response.error,
            )
            return None
        conversation = Conversation.from_dict(response.data)
        if not conversation.space_id:
            conversation = replace(conversation, space_id=space_id)
        self.directory.insert_head(
            ConversationMeta.from_conversation(conversation, preview_length=None)
        )
        self.directory.set_current(space_id, conversation.id)
        self.cache.put(conversation.id, conversation)
        self._notify()
        logger.info("Created conversation %s in space %s", conversation.id, space_id)
        return copy.deepcopy(conversation)

    async def rename_conversation(
        self, space_id: str, conversation_id: str, title: str,
    ) -> bool:
        response = await self.backend.update_conversation(
            space_id, conversation_id, {"title": title},
        )
        if not response.success:
            logger.warning(
                "Renaming conversation %s failed: %s", conversation_id, response.error,
            )
            return False
        updated_at = _utcnow_iso()
        cached = self.cache.get(conversation_id)
        if cached is not None:
            self.cache.put(
                conversation_id, replace(cached, title=title, updated_at=updated_at),
            )
        self.directory.update_meta(
            space_id, conversation_id, title=title, updated_at=updated_at,
        )
        self._notify()
        return True

    async def delete_conversation(self, space_id: str, conversation_id: str) -> bool:
        response = await self.backend.delete_conversation(space_id, conversation_id)
        if not response.success:
            logger.warning(
                "Deleting conversation %s failed: %s", conversation_id, response.error,
            )
            return False
        self.directory.remove(space_id, conversation_id)
        self.cache.remove(conversation_id)
        self.sessions.remove(conversation_id)
        self.change_sets.remove(conversation_id)
        self._loading_counts.pop(conversation_id, None)
        self._plan_enabled.pop(conversation_id, None)
        self._notify()
        logger.info("Deleted conversation %s", conversation_id)
        return True

    async def ensure_conversation_loaded(
        self,
        space_id: str,
        conversation_id: str,
        set_current: bool = False,
        subscribe: bool = True,
        warm_session: bool | None = None,
    ) -> Conversation | None:
        """Make a conversation ready to show.

        Fetches the conversation (unless cached), the backend session
        state and the change sets in parallel. A still-running backend
        session seeds the local SessionState so a reopened conversation
        keeps showing its live run.
        """
        if set_current:
            self.directory.set_current(space_id, conversation_id)
        self._loading_counts[conversation_id] = (
            self._loading_counts.get(conversation_id, 0) + 1
        )
        self._notify()

        try:
            if subscribe:
                await self._subscribe(conversation_id)

            cached = self.cache.get(conversation_id)
            fetch_conversation = (
                self.backend.get_conversation(space_id, conversation_id)
                if cached is None else _completed(None)
            )
            conversation_res, session_res, change_sets_res = await asyncio.gather(
                fetch_conversation,
                self.backend.get_session_state(conversation_id),
                self.backend.list_change_sets(space_id, conversation_id),
                return_exceptions=True,
            )

            conversation = cached
            if _ok(conversation_res, dict):
                conversation = Conversation.from_dict(conversation_res.data)
                self.cache.put(conversation_id, conversation)
            elif cached is None:
                logger.warning(
                    "Loading conversation %s failed: %s",
                    conversation_id, _describe(conversation_res),
                )
            if _ok(session_res, dict):
                self._recover_session(conversation_id, session_res.data)
            if _ok(change_sets_res, list):
                self.change_sets.replace(
                    conversation_id, parse_change_sets(change_sets_res.data),
                )
            self._notify()
        finally:
            count = self._loading_counts.get(conversation_id, 0) - 1
            if count > 0:
                self._loading_counts[conversation_id] = count
            else:
                self._loading_counts.pop(conversation_id, None)
            self._notify()

        if warm_session if warm_session is not None else self.config.warm_sessions:
            try:
                await self.backend.ensure_session_warm(space_id, conversation_id)
            except ChatEngineError as exc:
                logger.debug("Warming session %s failed: %s", conversation_id, exc)
        return copy.deepcopy(conversation) if conversation is not None else None

    def _recover_session(self, conversation_id: str, data: dict[str, Any]) -> None:
        if not data.get("isActive"):
            return
        session = self.sessions.get(conversation_id)
        if session is not None and (
            session.lifecycle in (RunLifecycle.STOPPED, RunLifecycle.ERROR)
            or session.completion_phase is not CompletionPhase.NONE
        ):
            return
        thoughts = [Thought.from_dict(t) for t in data.get("thoughts") or []]
        session = self.sessions.ensure(conversation_id)
        session.plan_enabled = self.is_plan_enabled(conversation_id)
        ingestion.recover_session(session, thoughts)
        logger.info(
            "Recovered active session for %s (%d thoughts)",
            conversation_id, len(thoughts),
        )

    async def select_conversation(self, conversation_id: str) -> Conversation | None:
        space_id = self.current_space_id
        if space_id is None:
            logger.warning("select_conversation(%s) without a current space", conversation_id)
            return None
        return await self.ensure_conversation_loaded(
            space_id, conversation_id, set_current=True,
        )

    async def hydrate_conversation(
        self, space_id: str, conversation_id: str,
    ) -> Conversation | None:
        """Load a conversation in the background without moving focus."""
        return await self.ensure_conversation_loaded(
            space_id, conversation_id, set_current=False,
        )

    # ── Messaging ──────────────────────────────────────────────

    async def send_message(
        self,
        content: str,
        images: list[ImageAttachment] | None = None,
        thinking_enabled: bool = False,
    ) -> bool:
        """Send to the focused conversation of the current space."""
        space_id = self.current_space_id
        conversation_id = self.get_current_conversation_id()
        if space_id is None or conversation_id is None:
            logger.warning("send_message with no focused conversation")
            return False
        return await self.send_message_to_conversation(
            space_id, conversation_id, content, images, thinking_enabled,
        )

    async def send_message_to_conversation(
        self,
        space_id: str,
        conversation_id: str,
        content: str,
        images: list[ImageAttachment] | None = None,
        thinking_enabled: bool = False,
        plan_enabled: bool | None = None,
    ) -> bool:
        if plan_enabled is None:
            plan_enabled = self.is_plan_enabled(conversation_id)
        session = ingestion.begin_send(
            self.sessions.get(conversation_id), plan_enabled,
        )
        self.sessions.put(conversation_id, session)

        message = Message(
            id=f"msg-{int(time.time() * 1000)}",
            role=MessageRole.USER,
            content=content,
            images=list(images or []),
        )
        cached = self.cache.get(conversation_id)
        if cached is not None:
            self.cache.put(conversation_id, cached.with_message(message))
        meta = self.directory.find(conversation_id)
        if meta is not None:
            self.directory.update_meta(
                meta.space_id,
                conversation_id,
                message_count=meta.message_count + 1,
                updated_at=message.timestamp,
            )
        self._notify()

        request = SendMessageRequest(
            space_id=space_id,
            conversation_id=conversation_id,
            message=content,
            images=list(images or []),
            plan_enabled=plan_enabled,
            thinking_enabled=thinking_enabled,
        )
        try:
            await self._subscribe(conversation_id)
            response = await self.backend.send_message(request)
        except ChatEngineError:
            logger.exception("Sending message to %s failed", conversation_id)
            self._fail_send(conversation_id, session, SEND_FAILED)
            raise

        if not response.success:
            self._fail_send(conversation_id, session, response.error or SEND_FAILED)
            return False
        return True

    def _fail_send(
        self, conversation_id: str, session: SessionState, error: str,
    ) -> None:
        if self.sessions.get(conversation_id) is not session:
            return
        session.error = error
        session.is_generating = False
        session.is_thinking = False
        session.lifecycle = RunLifecycle.ERROR
        self._notify()

    async def execute_plan(
        self, space_id: str, conversation_id: str, plan_content: str,
    ) -> bool:
        prompt = f"{PLAN_PROMPT}:\n\n{plan_content}"
        sent = await self.send_message_to_conversation(
            space_id, conversation_id, prompt, plan_enabled=False,
        )
        if sent:
            session = self.sessions.get(conversation_id)
            if session is not None:
                session.active_plan_tab_id = None
                self._notify()
        return sent

    async def stop_generation(self, conversation_id: str | None = None) -> bool:
        conversation_id = conversation_id or self.get_current_conversation_id()
        if conversation_id is None:
            return False
        response = await self.backend.stop_generation(conversation_id)
        if not response.success:
            logger.warning(
                "Backend refused stop for %s: %s", conversation_id, response.error,
            )
        session = self.sessions.get(conversation_id)
        if session is not None:
            cancelled = ingestion.fold_stopped(session)
            self._notify()
            logger.info(
                "Stopped %s (%d tools cancelled)", conversation_id, len(cancelled),
            )
        return response.success

    # ── Tool approval & questions ──────────────────────────────

    async def approve_tool(self, conversation_id: str) -> bool:
        return await self._settle_approval(conversation_id, approve=True)

    async def reject_tool(self, conversation_id: str) -> bool:
        return await self._settle_approval(conversation_id, approve=False)

    async def _settle_approval(self, conversation_id: str, approve: bool) -> bool:
        if approve:
            response = await self.backend.approve_tool(conversation_id)
        else:
            response = await self.backend.reject_tool(conversation_id)
        if not response.success:
            logger.warning(
                "Backend refused %s for %s: %s",
                "approval" if approve else "rejection",
                conversation_id, response.error,
            )
            return False
        session = self.sessions.get(conversation_id)
        if session is None or session.pending_tool_approval is None:
            return True
        tool_id = session.pending_tool_approval.tool_call_id
        tool = session.tool_calls.get(tool_id)
        if tool is not None:
            tool.status = ToolStatus.RUNNING if approve else ToolStatus.CANCELLED
            for thought in session.thoughts:
                if thought.type is ThoughtType.TOOL_USE and thought.id == tool_id:
                    thought.status = tool.status
        session.pending_tool_approval = None
        self._notify()
        return True

    async def answer_question(self, conversation_id: str, answer: Any) -> bool:
        """Submit an answer to the pending question.

        A transport failure leaves the question pending and re-raises so
        the caller can retry. A refusal from the backend ends the
        question (and the run) with the backend's reason.
        """
        try:
            response = await self.backend.answer_question(conversation_id, answer)
        except ChatEngineError:
            logger.warning("Answer for %s not delivered", conversation_id)
            raise

        session = self.sessions.get(conversation_id)
        if session is None:
            return response.success
        if response.success:
            ask_user_question.answer_accepted(session)
        else:
            ask_user_question.answer_rejected(session, response.error)
            logger.warning(
                "Answer for %s rejected: %s", conversation_id, response.error,
            )
        deferred = ingestion.release_deferred(session)
        self._notify()
        if deferred is not None:
            await self._reconciler.reconcile(ReconcileRequest(
                space_id=deferred.space_id or self.directory.space_of(conversation_id) or "",
                conversation_id=conversation_id,
                run_id=deferred.run_id,
                final_content=deferred.final_content,
            ))
        return response.success

    def dismiss_ask_user_question(self, conversation_id: str) -> None:
        session = self.sessions.get(conversation_id)
        if session is None:
            return
        ask_user_question.dismiss(session)
        self._notify()

    # ── Change sets ────────────────────────────────────────────

    async def load_change_sets(
        self, space_id: str, conversation_id: str,
    ) -> list[ChangeSet]:
        return await self._change_set_service.load(space_id, conversation_id)

    async def accept_change_set(
        self,
        space_id: str,
        conversation_id: str,
        change_set_id: str,
        file_path: str | None = None,
    ) -> ChangeSet | None:
        return await self._change_set_service.accept(
            space_id, conversation_id, change_set_id, file_path,
        )

    async def rollback_change_set(
        self,
        space_id: str,
        conversation_id: str,
        change_set_id: str,
        file_path: str | None = None,
        force: bool = False,
    ) -> RollbackResult:
        return await self._change_set_service.rollback(
            space_id, conversation_id, change_set_id, file_path, force,
        )

    # ── Event ingestion ────────────────────────────────────────

    def apply(self, event: AgentEvent) -> ReconcileRequest | None:
        """Fold one pushed event into its session.

        Returns a reconciliation request when the event ended a run (or
        released a completion held back by a question); the caller runs
        it with :meth:`reconcile`.
        """
        conversation_id = event.conversation_id
        if not conversation_id:
            logger.debug("Dropping %s without conversation id", event.event_type)
            return None

        if isinstance(event, CompleteEvent):
            return self._apply_complete(event)

        session = self.sessions.get(conversation_id)
        if session is None:
            session = self.sessions.ensure(conversation_id)
            session.plan_enabled = self.is_plan_enabled(conversation_id)

        if isinstance(event, RunStarted):
            applied = ingestion.fold_run_start(session, event)
        elif not ingestion.accepts(session, event):
            applied = False
        elif isinstance(event, MessageEvent):
            applied = ingestion.fold_message(session, event)
        elif isinstance(event, ToolCallEvent):
            applied = ingestion.fold_tool_call(
                session, event, self.config.ask_user_tool_name,
            )
        elif isinstance(event, ToolResultEvent):
            applied = ingestion.fold_tool_result(session, event)
        elif isinstance(event, ThoughtEvent):
            applied = ingestion.fold_thought(session, event)
        elif isinstance(event, CompactEvent):
            applied = ingestion.fold_compact(session, event)
        elif isinstance(event, AgentErrorEvent):
            applied = ingestion.fold_error(session, event)
        else:
            logger.debug("Unhandled event type: %s", event.event_type)
            applied = False

        if not applied:
            return None
        deferred = ingestion.release_deferred(session)
        self._notify()
        if deferred is None:
            return None
        return ReconcileRequest(
            space_id=deferred.space_id or event.space_id,
            conversation_id=conversation_id,
            run_id=deferred.run_id,
            final_content=deferred.final_content,
        )

    def _apply_complete(self, event: CompleteEvent) -> ReconcileRequest | None:
        session = self.sessions.get(event.conversation_id)
        if session is not None:
            if not ingestion.accepts(session, event):
                return None
            proceed = ingestion.close_stream(session, event)
            self._notify()
            if not proceed:
                return None
        return ReconcileRequest(
            space_id=event.space_id,
            conversation_id=event.conversation_id,
            run_id=event.run_id,
            final_content=event.final_content,
        )

    async def reconcile(self, request: ReconcileRequest) -> bool:
        return await self._reconciler.reconcile(request)

    async def handle_event(self, event: AgentEvent) -> None:
        """Fold ``event`` and wait for any reconciliation it triggers."""
        request = self.apply(event)
        if request is not None:
            await self.reconcile(request)

    async def consume(self, bus: EventBus) -> None:
        """Fold events from ``bus`` until it closes.

        Reconciliation runs in background tasks so one conversation's
        reload never holds up another conversation's events.
        """
        async for event in bus.consume():
            try:
                request = self.apply(event)
            except Exception:
                logger.exception(
                    "Error applying %s for %s", event.event_type, event.conversation_id,
                )
                continue
            if request is not None:
                self._spawn(self.reconcile(request))

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background reconcile failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for background reconciliations to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _subscribe(self, conversation_id: str) -> None:
        if self._subscriber is None:
            return
        try:
            await self._subscriber(conversation_id)
        except Exception:
            logger.exception("Subscribing to %s failed", conversation_id)

    # ── Reset ──────────────────────────────────────────────────

    def reset(self) -> None:
        self.cache.clear()
        self.directory.clear()
        self.sessions.clear()
        self.change_sets.clear()
        self._loading_counts.clear()
        self._plan_enabled.clear()
        self._notify()

    def reset_space(self, space_id: str) -> None:
        self.directory.drop_space(space_id)
        self.change_sets.remove_space(space_id)
        self._notify()


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _completed(value: Any) -> Any:
    return value


def _ok(result: Any, data_type: type) -> bool:
    return (
        not isinstance(result, BaseException)
        and result is not None
        and result.success
        and isinstance(result.data, data_type)
    )


def _describe(result: Any) -> str:
    if isinstance(result, BaseException):
        return str(result)
    if result is None:
        return "no response"
    return result.error or "unknown error"
