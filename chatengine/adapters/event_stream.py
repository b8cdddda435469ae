"""WebSocket reader for the backend's push stream.

Frames look like ``{"type": "event", "channel": "agent:message",
"data": {...}}``. Each one is handed to the EventBus; the socket is
re-opened after a drop and the conversation subscriptions re-sent.
"""
from __future__ import annotations

import asyncio
import json
import logging

import aiohttp

from chatengine.adapters.event_bus import EventBus

logger = logging.getLogger(__name__)


def _ws_url(base_url: str) -> str:
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/ws"


class WebSocketEventStream:
    def __init__(
        self,
        base_url: str,
        bus: EventBus,
        auth_token: str | None = None,
        reconnect_delay_seconds: float = 2.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.url = _ws_url(base_url)
        self._bus = bus
        self._auth_token = auth_token
        self._reconnect_delay = reconnect_delay_seconds
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._subscriptions: set[str] = set()
        self._stopped = False
        self.connected = asyncio.Event()

    @property
    def subscriptions(self) -> frozenset[str]:
        return frozenset(self._subscriptions)

    async def subscribe(self, conversation_id: str) -> None:
        if conversation_id in self._subscriptions:
            return
        self._subscriptions.add(conversation_id)
        await self._send_subscription("subscribe", conversation_id)

    async def unsubscribe(self, conversation_id: str) -> None:
        if conversation_id not in self._subscriptions:
            return
        self._subscriptions.discard(conversation_id)
        await self._send_subscription("unsubscribe", conversation_id)

    async def _send_subscription(self, kind: str, conversation_id: str) -> None:
        if self._ws is None or self._ws.closed:
            # Sent on (re)connect instead
            return
        await self._ws.send_json(
            {"type": kind, "payload": {"conversationId": conversation_id}}
        )

    async def run(self) -> None:
        """Read frames until stop(), reconnecting after drops."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        headers = {}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        try:
            while not self._stopped:
                try:
                    await self._read_once(headers)
                except aiohttp.ClientError as exc:
                    logger.warning("Push stream %s failed: %s", self.url, exc)
                if self._stopped:
                    break
                logger.info(
                    "Push stream disconnected, reconnecting in %.1fs",
                    self._reconnect_delay,
                )
                await asyncio.sleep(self._reconnect_delay)
        finally:
            self.connected.clear()
            if self._owns_session and self._session is not None:
                await self._session.close()
                self._session = None

    async def _read_once(self, headers: dict[str, str]) -> None:
        async with self._session.ws_connect(self.url, headers=headers) as ws:
            self._ws = ws
            self.connected.set()
            logger.info("Push stream connected to %s", self.url)
            for conversation_id in sorted(self._subscriptions):
                await ws.send_json(
                    {"type": "subscribe", "payload": {"conversationId": conversation_id}}
                )
            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        await self._handle_text(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        logger.warning("Push stream error: %s", ws.exception())
                        break
            finally:
                self._ws = None
                self.connected.clear()

    async def _handle_text(self, text: str) -> None:
        try:
            frame = json.loads(text)
        except ValueError:
            logger.warning("Push stream sent non-JSON frame: %.200s", text)
            return
        if not isinstance(frame, dict) or frame.get("type") != "event":
            logger.debug("Ignoring push frame: %.200s", text)
            return
        await self._bus.emit_frame(frame)

    async def stop(self) -> None:
        self._stopped = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
