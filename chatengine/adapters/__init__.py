"""Adapters package - Bridge between the engine and the agent backend.

This package contains the HTTP backend client, the WebSocket push
stream, the event bus and the event codec that feed the engine.
"""
from __future__ import annotations

__all__ = [
    "HttpBackend",
    "EventBus",
    "WebSocketEventStream",
    "dict_to_event",
    "event_to_dict",
]

from chatengine.adapters.backend import HttpBackend
from chatengine.adapters.event_bus import EventBus
from chatengine.adapters.event_stream import WebSocketEventStream
from chatengine.adapters.events import dict_to_event, event_to_dict
