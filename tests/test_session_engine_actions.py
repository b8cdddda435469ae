from __future__ import annotations

import unittest
from unittest.mock import AsyncMock

from fake_backend import FakeBackend, conversation_payload, fail, meta_payload, ok

from chatengine.adapters.events import MessageEvent, RunStarted, ToolCallEvent
from chatengine.engine.engine import SessionEngine
from chatengine.engine.errors import BackendTransportError
from chatengine.shared.models.conversation import (
    Conversation,
    ConversationMeta,
    MessageRole,
)
from chatengine.shared.models.session import RunLifecycle
from chatengine.shared.models.thought import ToolStatus

CID = "conv-1"
SPACE = "space-1"


def _focused_engine(subscriber=None) -> SessionEngine:
    engine = SessionEngine(FakeBackend(), subscriber=subscriber)
    engine.set_current_space(SPACE)
    engine.directory.replace_conversations(SPACE, [
        ConversationMeta.from_dict(meta_payload(CID, SPACE)),
        ConversationMeta.from_dict(meta_payload("conv-2", SPACE)),
    ])
    engine.cache.put(CID, Conversation.from_dict(conversation_payload(CID, SPACE)))
    engine.set_current_conversation(SPACE, CID)
    return engine


def test_listener_failure_does_not_block_others() -> None:
    engine = SessionEngine(FakeBackend())
    seen: list[int] = []

    def broken(revision: int) -> None:
        raise RuntimeError("view crashed")

    engine.add_listener(broken)
    remove = engine.add_listener(seen.append)
    engine.set_current_space(SPACE)
    remove()
    engine.set_current_space("space-2")
    assert seen == [1]
    assert engine.revision == 2


def test_plan_flag_does_not_create_a_session() -> None:
    engine = SessionEngine(FakeBackend())
    engine.set_plan_enabled(CID, True)
    assert engine.is_plan_enabled(CID)
    assert not engine.has_session(CID)
    assert engine.get_session(CID).plan_enabled is True


def test_reset_space_drops_only_that_space() -> None:
    engine = _focused_engine()
    engine.directory.replace_conversations("space-2", [
        ConversationMeta.from_dict(meta_payload("other", "space-2")),
    ])
    engine.reset_space(SPACE)
    assert engine.current_space_id is None
    assert engine.get_conversations(SPACE) == []
    assert [m.id for m in engine.get_conversations("space-2")] == ["other"]

    engine.reset()
    assert engine.get_conversations("space-2") == []
    assert engine.get_cached_conversation(CID) is None


class TestSendMessage(unittest.IsolatedAsyncioTestCase):
    async def test_send_appends_user_message_optimistically(self):
        subscriber = AsyncMock()
        engine = _focused_engine(subscriber)
        self.assertTrue(await engine.send_message("hello"))

        last = engine.get_current_conversation().last_message
        self.assertIs(last.role, MessageRole.USER)
        self.assertEqual(last.content, "hello")
        self.assertTrue(last.id.startswith("msg-"))
        self.assertEqual(engine.get_current_conversation_meta().message_count, 1)

        session = engine.get_current_session()
        self.assertTrue(session.is_generating)
        self.assertIs(session.lifecycle, RunLifecycle.RUNNING)

        request = engine.backend.send_message.await_args.args[0]
        self.assertEqual(request.conversation_id, CID)
        self.assertEqual(request.message, "hello")
        self.assertFalse(request.plan_enabled)
        subscriber.assert_awaited_with(CID)

    async def test_send_supersedes_running_run(self):
        engine = _focused_engine()
        engine.apply(RunStarted(space_id=SPACE, conversation_id=CID, run_id="run-A"))
        await engine.send_message("follow-up")

        engine.apply(MessageEvent(
            space_id=SPACE, conversation_id=CID, run_id="run-A", delta="stale",
        ))
        session = engine.get_session(CID)
        self.assertIn("run-A", session.superseded_run_ids)
        self.assertEqual(session.streaming_content, "")

    async def test_transport_failure_marks_session_and_raises(self):
        engine = _focused_engine()
        engine.backend.send_message.side_effect = BackendTransportError(
            "POST", "/api/agent/message", "connection refused",
        )
        with self.assertRaises(BackendTransportError):
            await engine.send_message("hello")
        session = engine.get_session(CID)
        self.assertEqual(session.error, "Failed to send message")
        self.assertFalse(session.is_generating)
        self.assertIs(session.lifecycle, RunLifecycle.ERROR)

    async def test_semantic_failure_records_backend_error(self):
        engine = _focused_engine()
        engine.backend.send_message.return_value = fail("Agent is busy")
        self.assertFalse(await engine.send_message("hello"))
        self.assertEqual(engine.get_session(CID).error, "Agent is busy")

    async def test_send_without_focus_is_refused(self):
        engine = SessionEngine(FakeBackend())
        self.assertFalse(await engine.send_message("hello"))
        engine.backend.send_message.assert_not_awaited()

    async def test_pinned_send_leaves_focus_alone(self):
        engine = _focused_engine()
        await engine.send_message_to_conversation(SPACE, "conv-2", "background")
        self.assertEqual(engine.get_current_conversation_id(), CID)
        self.assertTrue(engine.get_session("conv-2").is_generating)
        self.assertFalse(engine.has_session(CID))

    async def test_plan_mode_flag_is_sent(self):
        engine = _focused_engine()
        engine.set_plan_enabled(CID, True)
        await engine.send_message("make a plan")
        request = engine.backend.send_message.await_args.args[0]
        self.assertTrue(request.plan_enabled)
        self.assertTrue(engine.get_session(CID).plan_enabled)

    async def test_execute_plan_sends_prompt_and_closes_plan_tab(self):
        engine = _focused_engine()
        engine.set_plan_enabled(CID, True)
        await engine.send_message("plan it")
        engine.sessions.get(CID).active_plan_tab_id = "tab-1"

        self.assertTrue(await engine.execute_plan(SPACE, CID, "1. Edit a.py"))
        request = engine.backend.send_message.await_args.args[0]
        self.assertEqual(
            request.message,
            "Execute according to the following plan:\n\n1. Edit a.py",
        )
        self.assertFalse(request.plan_enabled)
        self.assertIsNone(engine.get_session(CID).active_plan_tab_id)


class TestConversationActions(unittest.IsolatedAsyncioTestCase):
    async def test_load_conversations_replaces_listing(self):
        engine = SessionEngine(FakeBackend())
        engine.backend.list_conversations.return_value = ok([
            meta_payload("a", SPACE), meta_payload("b", SPACE),
        ])
        metas = await engine.load_conversations(SPACE)
        self.assertEqual([m.id for m in metas], ["a", "b"])
        self.assertEqual([m.id for m in engine.get_conversations(SPACE)], ["a", "b"])

    async def test_create_conversation_goes_to_head_without_preview(self):
        engine = _focused_engine()
        engine.backend.create_conversation.return_value = ok(
            conversation_payload("new", SPACE, title="Fresh"),
        )
        created = await engine.create_conversation(SPACE, "Fresh")

        self.assertEqual(created.id, "new")
        metas = engine.get_conversations(SPACE)
        self.assertEqual(metas[0].id, "new")
        self.assertIsNone(metas[0].preview)
        self.assertEqual(engine.get_current_conversation_id(), "new")
        self.assertIsNotNone(engine.get_cached_conversation("new"))

    async def test_rename_updates_cache_and_listing(self):
        engine = _focused_engine()
        self.assertTrue(await engine.rename_conversation(SPACE, CID, "Renamed"))
        engine.backend.update_conversation.assert_awaited_once_with(
            SPACE, CID, {"title": "Renamed"},
        )
        self.assertEqual(engine.get_cached_conversation(CID).title, "Renamed")
        self.assertEqual(engine.get_current_conversation_meta().title, "Renamed")

    async def test_delete_current_moves_focus(self):
        engine = _focused_engine()
        engine.apply(RunStarted(space_id=SPACE, conversation_id=CID, run_id="r"))
        self.assertTrue(await engine.delete_conversation(SPACE, CID))

        self.assertEqual(engine.get_current_conversation_id(), "conv-2")
        self.assertIsNone(engine.get_cached_conversation(CID))
        self.assertFalse(engine.has_session(CID))

    async def test_failed_delete_changes_nothing(self):
        engine = _focused_engine()
        engine.backend.delete_conversation.return_value = fail("locked")
        self.assertFalse(await engine.delete_conversation(SPACE, CID))
        self.assertEqual(engine.get_current_conversation_id(), CID)

    async def test_ensure_loaded_recovers_active_backend_run(self):
        subscriber = AsyncMock()
        engine = SessionEngine(FakeBackend(), subscriber=subscriber)
        engine.set_current_space(SPACE)
        loading_seen: list[bool] = []

        async def get_conversation(space_id, conversation_id):
            loading_seen.append(engine.is_conversation_loading(conversation_id))
            return ok(conversation_payload(conversation_id, space_id))

        engine.backend.get_conversation.side_effect = get_conversation
        engine.backend.get_session_state.return_value = ok({
            "isActive": True,
            "thoughts": [
                {"id": "th-1", "type": "thinking", "content": "reading"},
                {"id": "th-1", "type": "thinking", "content": "reading"},
            ],
        })
        engine.backend.list_change_sets.return_value = ok([
            {"id": "cs-1", "spaceId": SPACE, "conversationId": CID},
        ])

        conversation = await engine.ensure_conversation_loaded(
            SPACE, CID, set_current=True,
        )

        self.assertEqual(conversation.id, CID)
        self.assertEqual(loading_seen, [True])
        self.assertFalse(engine.is_conversation_loading(CID))
        self.assertEqual(engine.get_current_conversation_id(), CID)
        session = engine.get_session(CID)
        self.assertTrue(session.is_generating)
        self.assertEqual(len(session.thoughts), 1)
        self.assertEqual([cs.id for cs in engine.get_change_sets(CID)], ["cs-1"])
        subscriber.assert_awaited_once_with(CID)
        engine.backend.ensure_session_warm.assert_awaited_once_with(SPACE, CID)

    async def test_ensure_loaded_uses_cache(self):
        engine = _focused_engine()
        await engine.hydrate_conversation(SPACE, CID)
        engine.backend.get_conversation.assert_not_awaited()
        self.assertFalse(engine.has_session(CID))

    async def test_select_conversation_moves_focus(self):
        engine = _focused_engine()
        engine.backend.get_conversation.return_value = ok(
            conversation_payload("conv-2", SPACE),
        )
        await engine.select_conversation("conv-2")
        self.assertEqual(engine.get_current_conversation_id(), "conv-2")
        self.assertEqual(engine.get_current_conversation().id, "conv-2")


class TestToolApproval(unittest.IsolatedAsyncioTestCase):
    def _engine_waiting(self) -> SessionEngine:
        engine = SessionEngine(FakeBackend())
        engine.apply(RunStarted(space_id=SPACE, conversation_id=CID, run_id="r"))
        engine.apply(ToolCallEvent(
            space_id=SPACE, conversation_id=CID, run_id="r",
            tool_id="t1", name="Bash", status="waiting_approval",
            requires_approval=True,
        ))
        return engine

    async def test_approve_resumes_tool(self):
        engine = self._engine_waiting()
        self.assertTrue(await engine.approve_tool(CID))
        session = engine.get_session(CID)
        self.assertIsNone(session.pending_tool_approval)
        self.assertIs(session.tool_calls["t1"].status, ToolStatus.RUNNING)

    async def test_reject_cancels_tool(self):
        engine = self._engine_waiting()
        self.assertTrue(await engine.reject_tool(CID))
        session = engine.get_session(CID)
        self.assertIsNone(session.pending_tool_approval)
        self.assertIs(session.tool_calls["t1"].status, ToolStatus.CANCELLED)

    async def test_refused_approval_keeps_prompt(self):
        engine = self._engine_waiting()
        engine.backend.approve_tool.return_value = fail("expired")
        self.assertFalse(await engine.approve_tool(CID))
        self.assertEqual(
            engine.get_session(CID).pending_tool_approval.tool_call_id, "t1",
        )
