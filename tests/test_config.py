from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from chatengine.engine.config import EngineConfig
from chatengine.engine.errors import ConfigError
from chatengine.engine.yaml_config import load_yaml_config


def test_defaults() -> None:
    config = EngineConfig()
    assert config.backend_url == "http://127.0.0.1:3847"
    assert config.conversation_cache_size == 10
    assert config.preview_length == 50
    assert config.ask_user_tool_name == "AskUserQuestion"
    assert config.plan_opener is None


def test_from_env_overrides() -> None:
    env = {
        "CHATENGINE_BACKEND_URL": "http://backend:9000",
        "CHATENGINE_AUTH_TOKEN": "tok",
        "CHATENGINE_CACHE_SIZE": "3",
        "CHATENGINE_REQUEST_TIMEOUT": "5.5",
        "CHATENGINE_WARM_SESSIONS": "no",
        "CHATENGINE_LOG_LEVEL": "DEBUG",
    }
    with patch.dict(os.environ, env, clear=False):
        config = EngineConfig.from_env()
    assert config.backend_url == "http://backend:9000"
    assert config.auth_token == "tok"
    assert config.conversation_cache_size == 3
    assert config.request_timeout_seconds == 5.5
    assert config.warm_sessions is False
    assert config.log_level == "DEBUG"
    assert "tok" not in repr(config)


def test_from_env_masks_token_in_log(caplog) -> None:
    with patch.dict(os.environ, {"CHATENGINE_AUTH_TOKEN": "hunter2"}, clear=False):
        with caplog.at_level("INFO", logger="chatengine.engine.config"):
            EngineConfig.from_env()
    assert "hunter2" not in caplog.text
    assert "CHATENGINE_AUTH_TOKEN=***" in caplog.text


def test_load_yaml_config(tmp_path: Path) -> None:
    path = tmp_path / "chatengine.yaml"
    path.write_text(yaml.safe_dump({
        "engine": {
            "backend_url": "http://localhost:4000",
            "conversation_cache_size": 4,
            "ask_user_tool_name": "Ask",
        },
        "subscriptions": ["c1", "c2"],
    }))
    parsed = load_yaml_config(path)
    assert parsed.engine.backend_url == "http://localhost:4000"
    assert parsed.engine.conversation_cache_size == 4
    assert parsed.engine.ask_user_tool_name == "Ask"
    assert parsed.engine.preview_length == 50
    assert parsed.subscriptions == ["c1", "c2"]


def test_empty_yaml_uses_defaults(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("")
    parsed = load_yaml_config(path)
    assert parsed.engine.conversation_cache_size == 10
    assert parsed.subscriptions == []


def test_yaml_rejects_bad_structure(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- not\n- a mapping\n")
    with pytest.raises(ConfigError):
        load_yaml_config(path)

    path.write_text("engine:\n  conversation_cache_size: 0\n")
    with pytest.raises(ConfigError, match="conversation_cache_size"):
        load_yaml_config(path)


def test_missing_and_malformed_yaml_reraise(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml")

    path = tmp_path / "broken.yaml"
    path.write_text("engine: [unclosed\n")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(path)


def test_engine_package_exports_resolve() -> None:
    import chatengine.engine as engine_pkg

    for name in engine_pkg.__all__:
        assert getattr(engine_pkg, name) is not None, name
