"""HTTP client for the agent backend.

Every route answers ``{"success": bool, "data": ..., "error": str}``.
A reply with ``success: false`` is a normal ApiResponse; only network
failures, timeouts and unparseable bodies raise BackendTransportError.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp

from chatengine.engine.errors import BackendTransportError
from chatengine.shared.models.conversation import ImageAttachment

logger = logging.getLogger(__name__)


@dataclass
class ApiResponse:
    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def from_json(cls, payload: Any) -> ApiResponse:
        if not isinstance(payload, dict):
            return cls(success=False, error="Malformed backend response")
        return cls(
            success=bool(payload.get("success", False)),
            data=payload.get("data"),
            error=payload.get("error"),
        )


@dataclass
class SendMessageRequest:
    space_id: str
    conversation_id: str
    message: str
    images: list[ImageAttachment] = field(default_factory=list)
    plan_enabled: bool = False
    thinking_enabled: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "spaceId": self.space_id,
            "conversationId": self.conversation_id,
            "message": self.message,
        }
        if self.images:
            d["images"] = [i.to_dict() for i in self.images]
        if self.plan_enabled:
            d["planEnabled"] = True
        if self.thinking_enabled:
            d["thinkingEnabled"] = True
        return d


class Backend(Protocol):
    """Request/response surface the session engine depends on."""

    async def send_message(self, request: SendMessageRequest) -> ApiResponse: ...
    async def stop_generation(self, conversation_id: str) -> ApiResponse: ...
    async def approve_tool(self, conversation_id: str) -> ApiResponse: ...
    async def reject_tool(self, conversation_id: str) -> ApiResponse: ...
    async def answer_question(
        self, conversation_id: str, answer: Any,
    ) -> ApiResponse: ...
    async def get_conversation(
        self, space_id: str, conversation_id: str,
    ) -> ApiResponse: ...
    async def list_conversations(self, space_id: str) -> ApiResponse: ...
    async def create_conversation(
        self, space_id: str, title: str | None = None,
    ) -> ApiResponse: ...
    async def update_conversation(
        self, space_id: str, conversation_id: str, updates: dict[str, Any],
    ) -> ApiResponse: ...
    async def delete_conversation(
        self, space_id: str, conversation_id: str,
    ) -> ApiResponse: ...
    async def get_session_state(self, conversation_id: str) -> ApiResponse: ...
    async def ensure_session_warm(
        self, space_id: str, conversation_id: str,
    ) -> ApiResponse: ...
    async def list_change_sets(
        self, space_id: str, conversation_id: str,
    ) -> ApiResponse: ...
    async def accept_change_set(
        self,
        space_id: str,
        conversation_id: str,
        change_set_id: str,
        file_path: str | None = None,
    ) -> ApiResponse: ...
    async def rollback_change_set(
        self,
        space_id: str,
        conversation_id: str,
        change_set_id: str,
        file_path: str | None = None,
        force: bool = False,
    ) -> ApiResponse: ...


class HttpBackend:
    """aiohttp implementation of :class:`Backend`."""

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        timeout_seconds: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    @property
    def headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout, headers=self.headers,
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> HttpBackend:
        self._ensure_session()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(
        self, method: str, path: str, body: dict[str, Any] | None = None,
    ) -> ApiResponse:
        session = self._ensure_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(
                method, url, json=body, headers=self.headers,
            ) as resp:
                try:
                    payload = await resp.json(content_type=None)
                except ValueError as exc:
                    raise BackendTransportError(
                        method, path, f"HTTP {resp.status}: invalid JSON ({exc})"
                    ) from exc
        except aiohttp.ClientError as exc:
            logger.warning("Backend %s %s failed: %s", method, path, exc)
            raise BackendTransportError(method, path, str(exc)) from exc
        except asyncio.TimeoutError as exc:
            logger.warning("Backend %s %s timed out", method, path)
            raise BackendTransportError(method, path, "timed out") from exc

        response = ApiResponse.from_json(payload)
        if not response.success:
            logger.info(
                "Backend %s %s returned failure: %s", method, path, response.error,
            )
        return response

    # ── Agent ──────────────────────────────────────────────────

    async def send_message(self, request: SendMessageRequest) -> ApiResponse:
        return await self._request("POST", "/api/agent/message", request.to_dict())

    async def stop_generation(self, conversation_id: str) -> ApiResponse:
        return await self._request(
            "POST", "/api/agent/stop", {"conversationId": conversation_id},
        )

    async def approve_tool(self, conversation_id: str) -> ApiResponse:
        return await self._request(
            "POST", "/api/agent/approve", {"conversationId": conversation_id},
        )

    async def reject_tool(self, conversation_id: str) -> ApiResponse:
        return await self._request(
            "POST", "/api/agent/reject", {"conversationId": conversation_id},
        )

    async def answer_question(
        self, conversation_id: str, answer: Any,
    ) -> ApiResponse:
        # Plain strings go as ``answer``; structured answers as ``payload``.
        key = "answer" if isinstance(answer, str) else "payload"
        return await self._request(
            "POST",
            "/api/agent/answer-question",
            {"conversationId": conversation_id, key: answer},
        )

    async def get_session_state(self, conversation_id: str) -> ApiResponse:
        return await self._request("GET", f"/api/agent/session/{conversation_id}")

    async def ensure_session_warm(
        self, space_id: str, conversation_id: str,
    ) -> ApiResponse:
        return await self._request(
            "POST",
            "/api/agent/warm",
            {"spaceId": space_id, "conversationId": conversation_id},
        )

    # ── Conversations ──────────────────────────────────────────

    async def list_conversations(self, space_id: str) -> ApiResponse:
        return await self._request("GET", f"/api/spaces/{space_id}/conversations")

    async def create_conversation(
        self, space_id: str, title: str | None = None,
    ) -> ApiResponse:
        return await self._request(
            "POST", f"/api/spaces/{space_id}/conversations", {"title": title},
        )

    async def get_conversation(
        self, space_id: str, conversation_id: str,
    ) -> ApiResponse:
        return await self._request(
            "GET", f"/api/spaces/{space_id}/conversations/{conversation_id}",
        )

    async def update_conversation(
        self, space_id: str, conversation_id: str, updates: dict[str, Any],
    ) -> ApiResponse:
        return await self._request(
            "PUT",
            f"/api/spaces/{space_id}/conversations/{conversation_id}",
            updates,
        )

    async def delete_conversation(
        self, space_id: str, conversation_id: str,
    ) -> ApiResponse:
        return await self._request(
            "DELETE", f"/api/spaces/{space_id}/conversations/{conversation_id}",
        )

    # ── Change sets ────────────────────────────────────────────

    def _change_sets_path(self, space_id: str, conversation_id: str) -> str:
        return (
            f"/api/spaces/{space_id}/conversations/{conversation_id}/change-sets"
        )

    async def list_change_sets(
        self, space_id: str, conversation_id: str,
    ) -> ApiResponse:
        return await self._request(
            "GET", self._change_sets_path(space_id, conversation_id),
        )

    async def accept_change_set(
        self,
        space_id: str,
        conversation_id: str,
        change_set_id: str,
        file_path: str | None = None,
    ) -> ApiResponse:
        body: dict[str, Any] = {"changeSetId": change_set_id}
        if file_path:
            body["filePath"] = file_path
        return await self._request(
            "POST",
            f"{self._change_sets_path(space_id, conversation_id)}/accept",
            body,
        )

    async def rollback_change_set(
        self,
        space_id: str,
        conversation_id: str,
        change_set_id: str,
        file_path: str | None = None,
        force: bool = False,
    ) -> ApiResponse:
        body: dict[str, Any] = {"changeSetId": change_set_id, "force": force}
        if file_path:
            body["filePath"] = file_path
        return await self._request(
            "POST",
            f"{self._change_sets_path(space_id, conversation_id)}/rollback",
            body,
        )
