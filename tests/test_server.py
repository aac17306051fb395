"""HTTP tests for chatstream/server.py via httpx's ASGI transport.

The lifespan does not run here; the module-level services are patched in.
"""
import pytest
import pytest_asyncio
import httpx
from unittest.mock import AsyncMock, MagicMock

import chatstream.server as server
from chatstream.config import ChatStreamConfig, LoggingConfig, ServerConfig
from chatstream.pipeline.budget import PromptBudgeter
from chatstream.pipeline.completion import CompletionPipeline
from chatstream.pipeline.relay import format_event

from conftest import FakeCompletionClient


def _install(monkeypatch, db, client, cfg=None):
    cfg = cfg or ChatStreamConfig(logging=LoggingConfig(file=None))
    monkeypatch.setattr(server, "config", cfg)
    monkeypatch.setattr(server, "sqlite_db", db)
    monkeypatch.setattr(server, "llm_client", client)
    monkeypatch.setattr(
        server, "pipeline",
        CompletionPipeline(db, client, PromptBudgeter(cfg.token_budget, cfg.prompt)),
    )


def _http():
    transport = httpx.ASGITransport(app=server.app)
    return httpx.AsyncClient(transport=transport, base_url="http://testserver")


@pytest_asyncio.fixture
async def api(db, monkeypatch):
    client = FakeCompletionClient("Hello", "!")
    _install(monkeypatch, db, client)
    async with _http() as http:
        yield http


class TestCompletionEndpoint:
    @pytest.mark.asyncio
    async def test_missing_conversation_id(self, monkeypatch):
        db = MagicMock()
        db.get_conversation = AsyncMock()
        db.get_messages = AsyncMock()
        db.insert_message = AsyncMock()
        client = MagicMock()
        _install(monkeypatch, db, client)
        async with _http() as http:
            resp = await http.get("/completion")
        assert resp.status_code == 404
        assert resp.text == "Invalid request. No Conversation provided."
        assert resp.headers["content-type"].startswith("text/plain")
        db.get_conversation.assert_not_awaited()
        db.insert_message.assert_not_awaited()
        client.stream.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_conversation_id(self, api):
        resp = await api.get("/completion", params={"conversationId": ""})
        assert resp.status_code == 404
        assert resp.text == "Invalid request. No Conversation provided."

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, api):
        resp = await api.get("/completion", params={"conversationId": "nope"})
        assert resp.status_code == 404
        assert "not found" in resp.text

    @pytest.mark.asyncio
    async def test_streams_reply_and_stores_it(self, api):
        conv = (await api.post("/api/conversations", json={"title": "chat"})).json()
        await api.post(f"/api/conversations/{conv['id']}/messages", json={"text": "Hi"})

        resp = await api.get("/completion", params={"conversationId": conv["id"]})

        assert resp.status_code == 200
        assert resp.headers["content-type"] == "text/event-stream"
        assert resp.headers["cache-control"] == "no-cache"
        assert resp.headers["connection"] == "keep-alive"
        assert resp.text == format_event("Hello") + format_event("!") + format_event("[DONE]")

        detail = (await api.get(f"/api/conversations/{conv['id']}")).json()
        assert [(m["role"], m["content"]) for m in detail["messages"]] == [
            ("user", "Hi"),
            ("assistant", "Hello!"),
        ]

    @pytest.mark.asyncio
    async def test_budget_failure_is_500(self, db, monkeypatch):
        cfg = ChatStreamConfig(logging=LoggingConfig(file=None))
        cfg.token_budget.context_window = 100
        cfg.token_budget.max_response_tokens = 100
        _install(monkeypatch, db, FakeCompletionClient("x"), cfg)
        conv = await db.create_conversation("local", "chat")
        async with _http() as http:
            resp = await http.get("/completion", params={"conversationId": conv["id"]})
        assert resp.status_code == 500
        assert resp.headers["content-type"].startswith("text/plain")


class TestConversationsApi:
    @pytest.mark.asyncio
    async def test_status(self, api):
        resp = await api.get("/api/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "running"
        assert body["model"] == "gpt-3.5-turbo"

    @pytest.mark.asyncio
    async def test_create_and_list(self, api):
        resp = await api.post("/api/conversations", json={"title": "first"})
        assert resp.status_code == 201
        assert resp.json()["user_id"] == "local"
        listed = (await api.get("/api/conversations")).json()
        assert [c["title"] for c in listed] == ["first"]

    @pytest.mark.asyncio
    async def test_default_title(self, api):
        resp = await api.post("/api/conversations", json={})
        assert resp.json()["title"] == "New conversation"

    @pytest.mark.asyncio
    async def test_get_missing(self, api):
        resp = await api.get("/api/conversations/missing")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_delete(self, api):
        conv = (await api.post("/api/conversations", json={"title": "temp"})).json()
        resp = await api.delete(f"/api/conversations/{conv['id']}")
        assert resp.status_code == 200
        assert (await api.get(f"/api/conversations/{conv['id']}")).status_code == 404
        assert (await api.delete(f"/api/conversations/{conv['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, api):
        conv = (await api.post("/api/conversations", json={"title": "chat"})).json()
        resp = await api.post(f"/api/conversations/{conv['id']}/messages", json={"text": ""})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_message_into_unknown_conversation(self, api):
        resp = await api.post("/api/conversations/missing/messages", json={"text": "Hi"})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_message(self, api):
        conv = (await api.post("/api/conversations", json={"title": "chat"})).json()
        other = (await api.post("/api/conversations", json={"title": "other"})).json()
        msg = (await api.post(
            f"/api/conversations/{conv['id']}/messages", json={"text": "Hi"}
        )).json()
        assert msg["role"] == "user"

        wrong = await api.delete(f"/api/conversations/{other['id']}/messages/{msg['id']}")
        assert wrong.status_code == 404
        resp = await api.delete(f"/api/conversations/{conv['id']}/messages/{msg['id']}")
        assert resp.status_code == 200
        detail = (await api.get(f"/api/conversations/{conv['id']}")).json()
        assert detail["messages"] == []


class TestAuth:
    @pytest_asyncio.fixture
    async def secured(self, db, monkeypatch):
        cfg = ChatStreamConfig(
            server=ServerConfig(api_keys={"alice-token": "alice", "bob-token": "bob"}),
            logging=LoggingConfig(file=None),
        )
        _install(monkeypatch, db, FakeCompletionClient("x"), cfg)
        async with _http() as http:
            yield http

    @pytest.mark.asyncio
    async def test_missing_token(self, secured):
        resp = await secured.get("/api/conversations")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_token(self, secured):
        resp = await secured.get(
            "/api/conversations", headers={"Authorization": "Bearer nope"}
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_token_maps_to_owner(self, secured):
        alice = {"Authorization": "Bearer alice-token"}
        bob = {"Authorization": "Bearer bob-token"}
        conv = (await secured.post("/api/conversations", json={"title": "a"}, headers=alice)).json()
        assert conv["user_id"] == "alice"

        assert (await secured.get("/api/conversations", headers=bob)).json() == []
        resp = await secured.get(
            "/completion", params={"conversationId": conv["id"]}, headers=bob
        )
        assert resp.status_code == 404
