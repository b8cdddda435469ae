"""Exception hierarchy for the session engine.

Transport errors propagate to the caller; semantic failures returned by
the backend (``success: false``) are folded into session state instead.
"""
from __future__ import annotations


class ChatEngineError(Exception):
    """Base exception for all session engine errors."""


class BackendTransportError(ChatEngineError):
    """The backend could not be reached or replied with garbage."""
    def __init__(self, method: str, path: str, reason: str):
        self.method = method
        self.path = path
        self.reason = reason
        super().__init__(f"{method} {path} failed: {reason}")


class ConfigError(ChatEngineError):
    """Configuration file is missing required structure."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid config {path}: {reason}")


class UnknownEventError(ChatEngineError):
    """A push frame named a channel the engine does not handle."""
    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"Unknown event channel: {channel}")
