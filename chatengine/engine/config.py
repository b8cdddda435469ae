"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CHATENGINE_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


# Optional callback asked to open a plan view after reconciliation.
# Signature: def opener(space_id, conversation_id, plan_content) -> str | None
# Returns: the opened tab id, or None if no view was opened.
PlanOpener = Callable[[str, str, str], Optional[str]]

# Optional async hook fired after a rollback changed files on disk.
# Signature: async def refresh(space_id) -> None
ArtifactsRefresh = Callable[[str], Awaitable[None]]


@dataclass
class EngineConfig:
    """Session engine configuration."""

    # Backend HTTP/WebSocket endpoint
    backend_url: str = "http://127.0.0.1:3847"
    auth_token: str | None = field(default=None, repr=False)
    request_timeout_seconds: float = 30.0
    # Delay before the push stream reconnects after a dropped socket.
    reconnect_delay_seconds: float = 2.0

    # Full conversations kept in memory. Eviction is insertion-order.
    conversation_cache_size: int = 10
    # Characters of the last message copied into ConversationMeta.preview
    preview_length: int = 50
    # Reserved tool name that pauses a run for a user answer
    # (matched case-insensitively).
    ask_user_tool_name: str = "AskUserQuestion"
    # Ask the backend to pre-warm the agent process on conversation load.
    warm_sessions: bool = True

    # Event queue size
    event_queue_size: int = 5000

    # Logging
    log_level: str = "INFO"

    plan_opener: PlanOpener | None = field(default=None, repr=False)
    artifacts_refresh: ArtifactsRefresh | None = field(
        default=None, repr=False,
    )

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from CHATENGINE_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CHATENGINE_")
        }
        if env_vars:
            logger.info(
                "EngineConfig.from_env: CHATENGINE_* env overrides: %s",
                ", ".join(
                    f"{k}={'***' if k == 'CHATENGINE_AUTH_TOKEN' else v}"
                    for k, v in sorted(env_vars.items())
                ),
            )
        else:
            logger.debug(
                "EngineConfig.from_env: no CHATENGINE_* env vars set, using defaults"
            )

        config = cls(
            backend_url=os.getenv("CHATENGINE_BACKEND_URL", cls.backend_url),
            auth_token=os.getenv("CHATENGINE_AUTH_TOKEN") or None,
            request_timeout_seconds=float(os.getenv(
                "CHATENGINE_REQUEST_TIMEOUT", str(cls.request_timeout_seconds)
            )),
            reconnect_delay_seconds=float(os.getenv(
                "CHATENGINE_RECONNECT_DELAY", str(cls.reconnect_delay_seconds)
            )),
            conversation_cache_size=int(os.getenv(
                "CHATENGINE_CACHE_SIZE", str(cls.conversation_cache_size)
            )),
            preview_length=int(os.getenv(
                "CHATENGINE_PREVIEW_LENGTH", str(cls.preview_length)
            )),
            ask_user_tool_name=os.getenv(
                "CHATENGINE_ASK_USER_TOOL", cls.ask_user_tool_name
            ),
            warm_sessions=(
                os.getenv("CHATENGINE_WARM_SESSIONS", "true").lower()
                in {"1", "true", "yes"}
            ),
            event_queue_size=int(os.getenv(
                "CHATENGINE_QUEUE_SIZE", str(cls.event_queue_size)
            )),
            log_level=os.getenv("CHATENGINE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: backend=%s cache_size=%d log_level=%s",
            config.backend_url, config.conversation_cache_size, config.log_level,
        )
        return config
