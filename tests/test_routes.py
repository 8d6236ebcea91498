"""
Tests for API routes.

The app is created with a fake context builder, so the lifespan runs
without touching Elasticsearch, Anthropic or any mailbox.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient

from inboxsync.agent.schemas import Category, EmailRecord, ExampleDocument, ReplySuggestion
from inboxsync.errors import ConnectivityError, NotFoundError, ValidationError
from inboxsync.logging.config import setup_logging
from inboxsync.main import create_app


@pytest.fixture(autouse=True)
def init_logging():
    setup_logging("debug")


@pytest.fixture
def ctx() -> MagicMock:
    ctx = MagicMock()
    ctx.store.fetch_by_id = AsyncMock()
    ctx.store.ping = AsyncMock()
    ctx.retrieval.suggest_reply = AsyncMock()
    ctx.retrieval.add_example = AsyncMock()
    ctx.retrieval.initialized = True
    ctx.retrieval.stats.return_value = {"total_documents": 6, "initialized": True}
    ctx.supervisors.status.return_value = {
        "is_running": True,
        "connected_accounts": ["account1"],
        "total_accounts": 1,
        "accounts": [{"account_id": "account1", "state": "watching", "mode": "push"}],
    }
    ctx.llm.get_session_stats.return_value = {"total_calls": 3, "total_cost_usd": 0.0123}
    ctx.dispatcher.check_sinks = AsyncMock(return_value={
        "slack": {"configured": True, "reachable": False, "error": "invalid_auth"},
        "webhook": {"configured": False, "reachable": None, "error": None},
    })
    ctx.shutdown = AsyncMock()
    return ctx


@pytest.fixture
def client(ctx):
    async def build():
        return ctx

    with TestClient(create_app(build_context=build)) as client:
        yield client


class TestLifecycle:
    def test_shutdown_runs_on_exit(self, ctx):
        async def build():
            return ctx

        with TestClient(create_app(build_context=build)):
            pass

        ctx.shutdown.assert_awaited_once()

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert "X-Request-ID" in resp.headers

    def test_ready(self, client):
        resp = client.get("/ready")
        assert resp.json()["status"] == "ready"

    def test_not_ready_when_store_down(self, client, ctx):
        ctx.store.ping.side_effect = ConnectivityError("down")
        resp = client.get("/ready")
        body = resp.json()
        assert body["status"] == "not_ready"
        assert body["checks"]["document_store"] is False


class TestEmails:
    def test_fetch_by_id(self, client, ctx):
        record = EmailRecord(id="abc", account="account1", sender="a@b.com", category=Category.SPAM)
        ctx.store.fetch_by_id.return_value = record

        resp = client.get("/api/emails/abc")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["id"] == "abc"
        assert data["from"] == "a@b.com"
        assert data["category"] == "Spam"

    def test_missing_email_is_404(self, client, ctx):
        ctx.store.fetch_by_id.side_effect = NotFoundError("Email nope not found")

        resp = client.get("/api/emails/nope")

        assert resp.status_code == 404
        assert resp.json()["error"] == {"kind": "not_found", "message": "Email nope not found"}

    def test_store_down_is_503(self, client, ctx):
        ctx.store.fetch_by_id.side_effect = ConnectivityError("store unreachable")

        resp = client.get("/api/emails/abc")

        assert resp.status_code == 503
        assert resp.json()["error"]["kind"] == "connectivity_error"


class TestSuggestReply:
    def test_suggestion_returned(self, client, ctx):
        example = ExampleDocument(id="e1", context="Interview", email="Chat?", reply="Sure")
        ctx.retrieval.suggest_reply.return_value = ReplySuggestion(
            reply="Happy to talk!", examples=[example], confidence=82
        )

        resp = client.post(
            "/api/suggest-reply",
            json={"subject": "Interview", "body": "Can we chat?", "from": "hr@example.com"},
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["suggested_reply"] == "Happy to talk!"
        assert data["confidence"] == 82
        assert data["relevant_examples"][0]["context"] == "Interview"
        request = ctx.retrieval.suggest_reply.call_args.args[0]
        assert request.sender == "hr@example.com"

    def test_empty_content_is_400(self, client, ctx):
        ctx.retrieval.suggest_reply.side_effect = ValidationError("No email content provided")

        resp = client.post("/api/suggest-reply", json={"subject": "", "body": ""})

        assert resp.status_code == 400
        assert resp.json()["error"]["kind"] == "validation_error"


class TestTrainingExamples:
    def test_add_example(self, client, ctx):
        ctx.retrieval.add_example.return_value = ExampleDocument(
            id="custom_1", context="c", email="e", reply="r"
        )

        resp = client.post("/api/training-examples", json={"context": "c", "email": "e", "reply": "r"})

        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == "custom_1"
        assert resp.json()["stats"]["total_documents"] == 6
        ctx.retrieval.add_example.assert_awaited_once_with("c", "e", "r")

    def test_missing_field_is_422(self, client):
        resp = client.post("/api/training-examples", json={"context": "c"})
        assert resp.status_code == 422


class TestSyncStatus:
    def test_status(self, client):
        resp = client.get("/api/sync/status")
        assert resp.status_code == 200
        assert resp.json()["connected_accounts"] == ["account1"]


class TestOperationalStatus:
    def test_llm_usage(self, client):
        resp = client.get("/api/llm/usage")
        assert resp.status_code == 200
        assert resp.json()["data"]["total_calls"] == 3

    def test_notification_status(self, client, ctx):
        resp = client.get("/api/notifications/status")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["slack"]["reachable"] is False
        assert data["webhook"]["configured"] is False
        ctx.dispatcher.check_sinks.assert_awaited_once()
