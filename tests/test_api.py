"""
Tests — HTTP surface: webhooks, chatbots, contexts, test sessions.

Uses FastAPI's TestClient against an app wired to the in-memory store and the
simulated sender, so nothing leaves the process.

Run:
  pytest tests/test_api.py -v
"""
import pytest
from fastapi.testclient import TestClient

from api.main import create_app


GREETING_BOT = {
    "id": "bot-api",
    "name": "Greeter",
    "is_active": True,
    "nodes": [
        {"id": "start", "type": "start", "data": {}},
        {"id": "ask", "type": "question", "data": {"content": "Your name?", "variable": "name"}},
        {"id": "hello", "type": "message", "data": {"content": "Hello {{name}}", "terminal": True}},
    ],
    "edges": [
        {"source": "start", "target": "ask"},
        {"source": "ask", "target": "hello"},
    ],
}


def webhook(phone, message_id, body):
    return {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {
        "messages": [{"from": phone, "id": message_id, "type": "text", "text": {"body": body}}],
    }}]}]}


@pytest.fixture
def client(settings, make_orchestrator):
    settings.whatsapp.verify_token = "s3cret"
    app = create_app(settings, orchestrator=make_orchestrator())
    with TestClient(app) as client:
        yield client


@pytest.fixture
def bot(client):
    response = client.post("/api/v1/chatbots", json=GREETING_BOT)
    assert response.status_code == 200
    return response.json()


# ──────────────────────────────────────────────────────────────
#  Health & webhooks
# ──────────────────────────────────────────────────────────────

class TestHealthAndWebhooks:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["sender"]["channel"] == "simulator"
        assert body["contexts"]["active"] == 0

    def test_verify_accepts_matching_token(self, client):
        response = client.get("/webhooks/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "s3cret", "hub.challenge": "42"})
        assert response.status_code == 200
        assert response.text == "42"

    def test_verify_rejects_wrong_token(self, client):
        response = client.get("/webhooks/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "42"})
        assert response.status_code == 403

    def test_inbound_messages_drive_the_flow(self, client, bot, sender):
        first = client.post("/webhooks/whatsapp", json=webhook("15550001111", "wamid.1", "hi"))
        assert first.json() == {"status": "ok", "processed": 1, "duplicates": 0, "refused": 0}

        again = client.post("/webhooks/whatsapp", json=webhook("15550001111", "wamid.1", "hi"))
        assert again.json()["duplicates"] == 1

        client.post("/webhooks/whatsapp", json=webhook("15550001111", "wamid.2", "Ana"))
        assert [m.text for m in sender.sent] == ["Your name?", "Hello Ana"]

    def test_status_only_webhook_is_acknowledged(self, client):
        payload = {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {
            "statuses": [{"id": "wamid.1", "status": "delivered"}]}}]}]}
        assert client.post("/webhooks/whatsapp", json=payload).json()["processed"] == 0


# ──────────────────────────────────────────────────────────────
#  Chatbots
# ──────────────────────────────────────────────────────────────

class TestChatbotRoutes:

    def test_save_and_list(self, client, bot):
        assert bot["id"] == "bot-api"
        assert bot["version"] == 1
        assert bot["warnings"] == []

        listed = client.get("/api/v1/chatbots").json()
        assert [(c["id"], c["is_active"], c["nodes"]) for c in listed] == [("bot-api", True, 3)]

    def test_resave_bumps_version(self, client, bot):
        again = client.post("/api/v1/chatbots", json=GREETING_BOT).json()
        assert again["version"] == 2

    def test_save_reports_dead_ends(self, client):
        body = dict(GREETING_BOT, id="bot-dead", edges=[{"source": "start", "target": "ask"}])
        warnings = client.post("/api/v1/chatbots", json=body).json()["warnings"]
        assert "node 'ask' has no outgoing edge and is not terminal" in warnings

    def test_get_unknown_chatbot(self, client):
        assert client.get("/api/v1/chatbots/missing").status_code == 404

    def test_export_and_reimport(self, client, bot):
        document = client.get("/api/v1/chatbots/bot-api/export").json()
        assert document["chatbot"]["name"] == "Greeter"

        validation = client.post("/api/v1/chatbots/import/validate", json=document).json()
        assert validation["is_valid"]

        result = client.post("/api/v1/chatbots/import", json={"document": document, "name": "Copy"}).json()
        assert result["success"]
        assert client.get(f"/api/v1/chatbots/{result['chatbot_id']}").json()["name"] == "Copy"

    def test_invalid_import_is_422(self, client):
        response = client.post("/api/v1/chatbots/import", json={"document": {"version": "1.0"}})
        assert response.status_code == 422
        assert response.json() == {"error": "invalid_import", "errors": ["missing chatbot section"]}


# ──────────────────────────────────────────────────────────────
#  Contexts & operator actions
# ──────────────────────────────────────────────────────────────

class TestContextRoutes:

    @pytest.fixture
    def live(self, client, bot):
        client.post("/webhooks/whatsapp", json=webhook("15550001111", "wamid.1", "hi"))
        [context] = client.get("/api/v1/contexts").json()
        return context

    def test_list_and_get(self, client, live):
        assert live["status"] == "waiting_input"
        assert live["current_node_id"] == "ask"
        fetched = client.get(f"/api/v1/contexts/{live['id']}").json()
        assert fetched["conversation_id"] == live["conversation_id"]
        assert len(client.get("/api/v1/contexts/active").json()) == 1

    def test_filter_by_status(self, client, live):
        assert client.get("/api/v1/contexts", params={"status": "completed"}).json() == []

    def test_unknown_context_is_404(self, client):
        response = client.get("/api/v1/contexts/ghost")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_stop_then_refuse(self, client, live):
        stopped = client.post(f"/api/v1/conversations/{live['conversation_id']}/stop").json()
        assert stopped["status"] == "stopped"
        assert stopped["completion_reason"] == "user_stopped"

        again = client.post(f"/api/v1/conversations/{live['conversation_id']}/stop")
        assert again.status_code == 404

        refused = client.post("/webhooks/whatsapp", json=webhook("15550001111", "wamid.2", "Ana"))
        assert refused.json()["refused"] == 1

    def test_skip_moves_past_question(self, client, live):
        body = client.post(f"/api/v1/conversations/{live['conversation_id']}/skip").json()
        assert body["status"] == "completed"
        assert body["outbound"][0]["text"] == "Hello {{name}}"

    def test_skip_without_active_context(self, client):
        assert client.post("/api/v1/conversations/nobody/skip").status_code == 404

    def test_force_complete_twice_conflicts(self, client, live):
        done = client.post(f"/api/v1/contexts/{live['id']}/force-complete").json()
        assert done["completion_reason"] == "force_completed"

        conflict = client.post(f"/api/v1/contexts/{live['id']}/force-complete")
        assert conflict.status_code == 409
        assert conflict.json()["error"] == "already_terminal"
        assert conflict.json()["context_id"] == live["id"]

    def test_stats_and_cleanup(self, client, live):
        assert client.get("/api/v1/contexts/stats").json()["waiting_input"] == 1
        assert client.post("/api/v1/contexts/cleanup").json() == {"expired": 0}


# ──────────────────────────────────────────────────────────────
#  Test sessions
# ──────────────────────────────────────────────────────────────

class TestTestSessionRoutes:

    def test_session_round_trip(self, client, bot, sender):
        started = client.post("/api/v1/test-sessions", json={"chatbot_id": "bot-api"}).json()
        assert started["created"]
        assert started["status"] == "waiting_input"
        context_id = started["context_id"]

        reply = client.post(f"/api/v1/test-sessions/{context_id}/messages", json={"text": "Ana"}).json()
        assert reply["status"] == "completed"
        assert reply["variables"]["name"] == "Ana"
        # Simulated sessions never reach the production sender
        assert sender.sent == []

        events = [e["event"] for e in client.get(f"/api/v1/test-sessions/{context_id}/events").json()]
        assert "test-started" in events
        assert "completed" in events

    def test_pause_blocks_messages(self, client, bot):
        context_id = client.post("/api/v1/test-sessions", json={}).json()["context_id"]

        assert client.post(f"/api/v1/test-sessions/{context_id}/pause").json()["paused"]
        blocked = client.post(f"/api/v1/test-sessions/{context_id}/messages", json={"text": "Ana"})
        assert blocked.status_code == 409
        assert blocked.json()["error"] == "session_paused"

        assert not client.post(f"/api/v1/test-sessions/{context_id}/resume").json()["paused"]
        resumed = client.post(f"/api/v1/test-sessions/{context_id}/messages", json={"text": "Ana"})
        assert resumed.json()["status"] == "completed"

    def test_unknown_chatbot_is_404(self, client):
        response = client.post("/api/v1/test-sessions", json={"chatbot_id": "missing"})
        assert response.status_code == 404

    def test_messages_to_production_context_conflict(self, client, bot):
        client.post("/webhooks/whatsapp", json=webhook("15550001111", "wamid.1", "hi"))
        [context] = client.get("/api/v1/contexts").json()
        response = client.post(f"/api/v1/test-sessions/{context['id']}/messages", json={"text": "x"})
        assert response.status_code == 409
