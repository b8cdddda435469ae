"""Tests for the aiohttp backend client against an in-process server."""
from __future__ import annotations

from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from chatengine.adapters.backend import HttpBackend, SendMessageRequest
from chatengine.engine.errors import BackendTransportError
from chatengine.shared.models.conversation import ImageAttachment


class TestHttpBackend(AioHTTPTestCase):
    async def get_application(self) -> web.Application:
        self.received: list[tuple[str, str, dict | None, str | None]] = []

        async def echo(request: web.Request) -> web.Response:
            body = await request.json() if request.can_read_body else None
            self.received.append((
                request.method,
                request.path,
                body,
                request.headers.get("Authorization"),
            ))
            return web.json_response({"success": True, "data": body})

        async def listing(request: web.Request) -> web.Response:
            space_id = request.match_info["space_id"]
            return web.json_response({
                "success": True,
                "data": [{"id": "c1", "spaceId": space_id, "title": "First"}],
            })

        async def refuse(request: web.Request) -> web.Response:
            return web.json_response({"success": False, "error": "Conversation locked"})

        async def broken(request: web.Request) -> web.Response:
            return web.Response(status=502, text="<html>bad gateway</html>")

        app = web.Application()
        app.router.add_post("/api/agent/message", echo)
        app.router.add_post("/api/agent/answer-question", echo)
        app.router.add_post(
            "/api/spaces/{space_id}/conversations/{cid}/change-sets/rollback", echo,
        )
        app.router.add_get("/api/spaces/{space_id}/conversations", listing)
        app.router.add_delete("/api/spaces/{space_id}/conversations/{cid}", refuse)
        app.router.add_get("/api/agent/session/{cid}", broken)
        return app

    def _backend(self, **kwargs) -> HttpBackend:
        return HttpBackend(str(self.server.make_url("/")), **kwargs)

    async def test_send_message_posts_camel_case_body(self):
        async with self._backend(auth_token="secret") as backend:
            response = await backend.send_message(SendMessageRequest(
                space_id="s1",
                conversation_id="c1",
                message="hi",
                images=[ImageAttachment(id="img", media_type="image/png", data="AAA")],
                plan_enabled=True,
            ))
        self.assertTrue(response.success)
        method, path, body, auth = self.received[0]
        self.assertEqual((method, path), ("POST", "/api/agent/message"))
        self.assertEqual(body["conversationId"], "c1")
        self.assertTrue(body["planEnabled"])
        self.assertNotIn("thinkingEnabled", body)
        self.assertEqual(body["images"][0]["mediaType"], "image/png")
        self.assertEqual(auth, "Bearer secret")

    async def test_answer_question_string_and_structured(self):
        async with self._backend() as backend:
            await backend.answer_question("c1", "yes")
            await backend.answer_question("c1", {"Proceed?": "Yes"})
        self.assertEqual(self.received[0][2], {"conversationId": "c1", "answer": "yes"})
        self.assertEqual(
            self.received[1][2],
            {"conversationId": "c1", "payload": {"Proceed?": "Yes"}},
        )
        self.assertIsNone(self.received[0][3])

    async def test_rollback_sends_force_and_file(self):
        async with self._backend() as backend:
            await backend.rollback_change_set("s1", "c1", "cs-1", "/repo/a.py", force=True)
        _, path, body, _ = self.received[0]
        self.assertEqual(path, "/api/spaces/s1/conversations/c1/change-sets/rollback")
        self.assertEqual(
            body, {"changeSetId": "cs-1", "force": True, "filePath": "/repo/a.py"},
        )

    async def test_semantic_failure_is_a_response_not_an_error(self):
        async with self._backend() as backend:
            listing = await backend.list_conversations("s1")
            deleted = await backend.delete_conversation("s1", "c1")
        self.assertEqual(listing.data[0]["spaceId"], "s1")
        self.assertFalse(deleted.success)
        self.assertEqual(deleted.error, "Conversation locked")

    async def test_non_json_reply_raises_transport_error(self):
        async with self._backend() as backend:
            with self.assertRaises(BackendTransportError) as ctx:
                await backend.get_session_state("c1")
        self.assertIn("HTTP 502", str(ctx.exception))

    async def test_unreachable_backend_raises_transport_error(self):
        async with HttpBackend("http://127.0.0.1:1", timeout_seconds=2) as backend:
            with self.assertRaises(BackendTransportError):
                await backend.stop_generation("c1")
