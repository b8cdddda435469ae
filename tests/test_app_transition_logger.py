from __future__ import annotations

import logging

from fake_backend import FakeBackend

from chatengine.adapters.events import AgentErrorEvent, MessageEvent, RunStarted
from chatengine.app import ERROR_SUMMARY_LENGTH, TransitionLogger
from chatengine.engine.engine import SessionEngine


def test_logs_only_when_a_watched_session_changes(caplog) -> None:
    engine = SessionEngine(FakeBackend())
    engine.add_listener(TransitionLogger(engine, ["c1"]))

    with caplog.at_level(logging.INFO, logger="chatengine.app"):
        engine.apply(RunStarted(space_id="s1", conversation_id="c1", run_id="r1"))
        # Streaming text alone does not change the logged summary.
        engine.apply(MessageEvent(
            space_id="s1", conversation_id="c1", run_id="r1", delta="hi",
        ))
        engine.apply(RunStarted(space_id="s1", conversation_id="other", run_id="r9"))

    records = [r for r in caplog.records if r.name == "chatengine.app"]
    assert len(records) == 1
    assert "c1 lifecycle=running" in records[0].getMessage()


def test_long_errors_are_shortened_in_the_log(caplog) -> None:
    engine = SessionEngine(FakeBackend())
    engine.add_listener(TransitionLogger(engine, ["c1"]))
    engine.apply(RunStarted(space_id="s1", conversation_id="c1", run_id="r1"))

    with caplog.at_level(logging.INFO, logger="chatengine.app"):
        engine.apply(AgentErrorEvent(
            space_id="s1", conversation_id="c1", run_id="r1", error="x" * 500,
        ))

    records = [r for r in caplog.records if r.name == "chatengine.app"]
    message = records[-1].getMessage()
    assert message.endswith("error=" + "x" * (ERROR_SUMMARY_LENGTH - 1) + "…")
    assert engine.get_session("c1").error == "x" * 500
