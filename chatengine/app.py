"""chatengine - headless session engine runner.

Connects to an agent backend, subscribes to the given conversations and
folds their push stream into a SessionEngine, logging every session
transition until interrupted.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from chatengine.adapters.backend import HttpBackend
from chatengine.adapters.event_bus import EventBus
from chatengine.adapters.event_stream import WebSocketEventStream
from chatengine.engine.config import EngineConfig
from chatengine.engine.engine import SessionEngine
from chatengine.engine.thoughts import truncate_text
from chatengine.shared.models.session import SessionState

logger = logging.getLogger(__name__)

ERROR_SUMMARY_LENGTH = 120


def _configure_logging(level_name: str) -> Path:
    log_dir = Path.home() / ".chatengine" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "chatengine.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _describe(session: SessionState) -> tuple:
    return (
        session.lifecycle.value,
        session.completion_phase.value,
        session.is_generating,
        len(session.thoughts),
        session.pending_ask_user_question.id
        if session.pending_ask_user_question else None,
        session.pending_tool_approval.tool_call_id
        if session.pending_tool_approval else None,
        truncate_text(session.error, ERROR_SUMMARY_LENGTH) if session.error else None,
    )


class TransitionLogger:
    """Engine listener logging each conversation whose session changed."""

    def __init__(self, engine: SessionEngine, conversation_ids: list[str]) -> None:
        self._engine = engine
        self._conversation_ids = conversation_ids
        self._last: dict[str, tuple] = {}

    def __call__(self, revision: int) -> None:
        for conversation_id in self._conversation_ids:
            if not self._engine.has_session(conversation_id):
                continue
            state = _describe(self._engine.get_session(conversation_id))
            if self._last.get(conversation_id) == state:
                continue
            self._last[conversation_id] = state
            lifecycle, phase, generating, thoughts, question, approval, error = state
            logger.info(
                "[rev %d] %s lifecycle=%s phase=%s generating=%s thoughts=%d "
                "question=%s approval=%s error=%s",
                revision, conversation_id, lifecycle, phase, generating,
                thoughts, question, approval, error,
            )


async def run(
    config: EngineConfig, space_id: str | None, conversation_ids: list[str],
) -> None:
    bus = EventBus(maxsize=config.event_queue_size)
    async with HttpBackend(
        config.backend_url,
        auth_token=config.auth_token,
        timeout_seconds=config.request_timeout_seconds,
    ) as backend:
        stream = WebSocketEventStream(
            config.backend_url,
            bus,
            auth_token=config.auth_token,
            reconnect_delay_seconds=config.reconnect_delay_seconds,
        )
        engine = SessionEngine(backend, config, subscriber=stream.subscribe)
        engine.add_listener(TransitionLogger(engine, conversation_ids))

        stream_task = asyncio.create_task(stream.run())
        consume_task = asyncio.create_task(engine.consume(bus))
        try:
            if space_id:
                engine.set_current_space(space_id)
                await engine.load_conversations(space_id)
            for conversation_id in conversation_ids:
                if space_id:
                    await engine.hydrate_conversation(space_id, conversation_id)
                else:
                    await stream.subscribe(conversation_id)
            logger.info(
                "Watching %d conversation(s); Ctrl+C to stop",
                len(conversation_ids),
            )
            await asyncio.gather(stream_task, consume_task)
        finally:
            await stream.stop()
            bus.close()
            for task in (stream_task, consume_task):
                task.cancel()
            await asyncio.gather(stream_task, consume_task, return_exceptions=True)
            await engine.drain()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="chatengine",
        description="Follow agent conversations through the session engine",
    )
    parser.add_argument(
        "conversations", nargs="*", metavar="CONVERSATION_ID",
        help="Conversation ids to subscribe to",
    )
    parser.add_argument(
        "--space", metavar="SPACE_ID",
        help="Space holding the conversations (enables loading and reconcile)",
    )
    parser.add_argument(
        "--backend-url", metavar="URL",
        help="Backend base URL (overrides config)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file for engine settings and subscriptions",
    )
    parser.add_argument(
        "--log-level", metavar="LEVEL",
        help="Logging level (default: CHATENGINE_LOG_LEVEL or INFO)",
    )
    args = parser.parse_args()

    conversation_ids = list(args.conversations)
    if args.config:
        from chatengine.engine.yaml_config import load_yaml_config

        parsed = load_yaml_config(args.config)
        config = parsed.engine
        for conversation_id in parsed.subscriptions:
            if conversation_id not in conversation_ids:
                conversation_ids.append(conversation_id)
    else:
        config = EngineConfig.from_env()
    if args.backend_url:
        config.backend_url = args.backend_url

    log_level = args.log_level or os.getenv("CHATENGINE_LOG_LEVEL") or config.log_level
    log_file = _configure_logging(log_level)
    logger.info(
        "Starting chatengine backend=%s space=%s conversations=%d config=%s log=%s",
        config.backend_url,
        args.space or "<none>",
        len(conversation_ids),
        args.config or "<none>",
        log_file,
    )

    try:
        asyncio.run(run(config, args.space, conversation_ids))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
