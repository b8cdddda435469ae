"""YAML configuration loader.

Example YAML:
    engine:
      backend_url: http://127.0.0.1:3847
      conversation_cache_size: 10
      preview_length: 50
      log_level: DEBUG

    subscriptions:
      - conversation-1
      - conversation-2

Keys left out fall back to the EngineConfig defaults; environment
variables are not consulted when a YAML file is given.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .config import EngineConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class ChatEngineConfig:
    """Complete parsed configuration from YAML."""
    engine: EngineConfig
    subscriptions: list[str] = field(default_factory=list)


def load_yaml_config(path: str | Path) -> ChatEngineConfig:
    """Load and parse a YAML config file into an EngineConfig."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    engine_raw = raw.get("engine", {}) or {}
    if not isinstance(engine_raw, dict):
        raise ConfigError(str(path), "'engine' must be a mapping")

    engine = EngineConfig(
        backend_url=str(engine_raw.get(
            "backend_url", EngineConfig.backend_url
        )),
        auth_token=engine_raw.get("auth_token"),
        request_timeout_seconds=float(engine_raw.get(
            "request_timeout_seconds", EngineConfig.request_timeout_seconds
        )),
        reconnect_delay_seconds=float(engine_raw.get(
            "reconnect_delay_seconds", EngineConfig.reconnect_delay_seconds
        )),
        conversation_cache_size=int(engine_raw.get(
            "conversation_cache_size", EngineConfig.conversation_cache_size
        )),
        preview_length=int(engine_raw.get(
            "preview_length", EngineConfig.preview_length
        )),
        ask_user_tool_name=str(engine_raw.get(
            "ask_user_tool_name", EngineConfig.ask_user_tool_name
        )),
        warm_sessions=bool(engine_raw.get(
            "warm_sessions", EngineConfig.warm_sessions
        )),
        event_queue_size=int(engine_raw.get(
            "event_queue_size", EngineConfig.event_queue_size
        )),
        log_level=str(engine_raw.get("log_level", EngineConfig.log_level)),
    )
    if engine.conversation_cache_size < 1:
        raise ConfigError(str(path), "conversation_cache_size must be >= 1")

    subscriptions = [str(s) for s in raw.get("subscriptions", []) or []]
    logger.info(
        "Parsed YAML config %s: backend=%s subscriptions=%d",
        path.name, engine.backend_url, len(subscriptions),
    )
    return ChatEngineConfig(engine=engine, subscriptions=subscriptions)
