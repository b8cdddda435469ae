"""Conversation session engine: state, ingestion and reconciliation."""
from .config import EngineConfig
from .cache import ConversationCache
from .directory import SpaceDirectory, SpaceState
from .session_table import SessionTable
from .errors import (
    BackendTransportError,
    ChatEngineError,
    ConfigError,
    UnknownEventError,
)

__all__ = [
    # Core engine (lazy import to avoid circular deps)
    "SessionEngine",
    "Reconciler",
    "ReconcileRequest",
    # State containers
    "ConversationCache",
    "SpaceDirectory",
    "SpaceState",
    "SessionTable",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "ChatEngineConfig",
    "load_yaml_config",
    # Errors
    "BackendTransportError",
    "ChatEngineError",
    "ConfigError",
    "UnknownEventError",
]


def __getattr__(name: str):
    if name == "SessionEngine":
        from .engine import SessionEngine
        return SessionEngine
    if name == "Reconciler":
        from .reconciliation import Reconciler
        return Reconciler
    if name == "ReconcileRequest":
        from .reconciliation import ReconcileRequest
        return ReconcileRequest
    if name == "ChatEngineConfig":
        from .yaml_config import ChatEngineConfig
        return ChatEngineConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
