import asyncio
import json
import pytest

from coach.models.session import DoneEvent, TurnRequest
from server.main import app

# All tests use the test_client fixture from conftest.py


def parse_sse(body):
    events = []
    for frame in body.strip().split("\n\n"):
        event_line, data_line = frame.split("\n")
        assert event_line.startswith("event: ")
        assert data_line.startswith("data: ")
        events.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return events


def test_version(test_client):
    response = test_client.get("/api/v1/version")
    assert response.status_code == 200
    assert response.json() == {"version": "1.0.0"}


class TestChatStream:

    def test_stream_turn(self, test_client, store):
        response = test_client.post(
            "/api/v1/chat/stream",
            json={"user_id": "test_user", "content": "How much water should I drink?"},
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        conversation_id = response.headers["x-conversation-id"]

        events = parse_sse(response.text)
        assert [name for name, _ in events] == ["chunk", "chunk", "chunk", "done"]
        assert "".join(data["content"] for name, data in events if name == "chunk") == "Hello, world"
        done = events[-1][1]
        assert done["conversation_id"] == conversation_id
        assert done["cancelled"] is False

        messages = test_client.get(f"/api/v1/conversations/{conversation_id}/messages").json()["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[1]["id"] == done["message_id"]

    def test_continue_existing_conversation(self, test_client):
        conversation_id = test_client.post(
            "/api/v1/users/test_user/conversations", json={"title": "Hydration"}
        ).json()["conversation_id"]

        response = test_client.post(
            "/api/v1/chat/stream",
            json={"user_id": "test_user", "conversation_id": conversation_id, "content": "hi"},
        )

        assert response.headers["x-conversation-id"] == conversation_id
        assert parse_sse(response.text)[-1][0] == "done"

    def test_provider_failure_reported_in_stream(self, test_client, adapter):
        adapter.fail_after = 0
        response = test_client.post("/api/v1/chat/stream", json={"user_id": "test_user", "content": "hi"})

        assert response.status_code == 200
        events = parse_sse(response.text)
        assert events == [("error", {
            "type": "error",
            "kind": "provider",
            "message": "scripted: rate limited",
            "conversation_id": response.headers["x-conversation-id"],
        })]

    @pytest.mark.parametrize("payload", [
        {"user_id": "test_user", "content": ""},
        {"user_id": "bad user!", "content": "hi"},
        {"user_id": "test_user", "content": "hi", "conversation_id": "missing"},
        {"user_id": "test_user", "content": "hi", "provider": "mistral"},
        {"user_id": "test_user", "attachments": [{"file_name": "a.exe", "file_type": "application/x-msdownload"}]},
    ])
    def test_rejected_before_streaming(self, test_client, payload):
        response = test_client.post("/api/v1/chat/stream", json=payload)
        assert response.status_code == 422

    def test_busy_conversation(self, test_client, controller, store):
        conversation_id = test_client.post("/api/v1/users/test_user/conversations").json()["conversation_id"]
        request = TurnRequest(user_id="test_user", conversation_id=conversation_id, content="first")
        session = test_client.portal.call(controller.open_session, request)

        response = test_client.post(
            "/api/v1/chat/stream",
            json={"user_id": "test_user", "conversation_id": conversation_id, "content": "second"},
        )
        assert response.status_code == 409

        cancel = test_client.post(f"/api/v1/conversations/{conversation_id}/cancel")
        assert cancel.status_code == 200
        assert session.cancel_requested
        assert not controller.locks.is_busy(conversation_id)

        retry = test_client.post(
            "/api/v1/chat/stream",
            json={"user_id": "test_user", "conversation_id": conversation_id, "content": "second"},
        )
        assert parse_sse(retry.text)[-1][0] == "done"

    def test_cancel_without_active_turn(self, test_client):
        response = test_client.post("/api/v1/conversations/nothing-running/cancel")
        assert response.status_code == 404



class TestClientDisconnect:

    @pytest.mark.asyncio
    async def test_disconnect_before_stream_starts_frees_conversation(self, services, controller, store):
        conversation_id = await store.create_conversation("test_user", "Left early")
        body = json.dumps(
            {"user_id": "test_user", "conversation_id": conversation_id, "content": "hi"}
        ).encode()
        inbound = [
            {"type": "http.request", "body": body, "more_body": False},
            {"type": "http.disconnect"},
        ]
        stalled = asyncio.Event()

        async def receive():
            if inbound:
                return inbound.pop(0)
            await stalled.wait()

        async def send(message):
            # The client is gone, so the response start never completes
            await stalled.wait()

        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "POST",
            "scheme": "http",
            "path": "/api/v1/chat/stream",
            "raw_path": b"/api/v1/chat/stream",
            "root_path": "",
            "query_string": b"",
            "headers": [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ],
            "client": ("testclient", 50000),
            "server": ("testserver", 80),
        }

        app.state.services = services
        try:
            await asyncio.wait_for(app(scope, receive, send), 1)
        finally:
            app.state.services = None

        assert not controller.locks.is_busy(conversation_id)
        assert controller.active_session(conversation_id) is None
        assert await store.read_conversation(conversation_id) == []

        retry = TurnRequest(user_id="test_user", conversation_id=conversation_id, content="hi again")
        events = [event async for event in controller.stream_turn(retry)]
        assert isinstance(events[-1], DoneEvent)
        await services.supervisor.drain(timeout=1)

class TestConversations:

    def test_create_conversation(self, test_client, store):
        response = test_client.post("/api/v1/users/test_user/conversations", json={"title": "Sleep"})
        assert response.status_code == 201
        conversation_id = response.json()["conversation_id"]
        assert store.conversations[conversation_id].title == "Sleep"

    def test_create_conversation_without_body(self, test_client, store):
        response = test_client.post("/api/v1/users/test_user/conversations")
        assert response.status_code == 201
        assert store.conversations[response.json()["conversation_id"]].title == "New Conversation"

    def test_invalid_user(self, test_client):
        response = test_client.post("/api/v1/users/bad$user/conversations")
        assert response.status_code == 422

    def test_messages_of_unknown_conversation(self, test_client):
        response = test_client.get("/api/v1/conversations/missing/messages")
        assert response.status_code == 404


class TestMemories:

    def test_store_and_list(self, test_client):
        response = test_client.post(
            "/api/v1/users/test_user/memories",
            json={"content": "Allergic to peanuts", "category": "personal_info", "importance": 0.9},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["verdict"] == "insert"
        assert "embedding" not in body["memory"]

        listed = test_client.get("/api/v1/users/test_user/memories").json()["memories"]
        assert [m["content"] for m in listed] == ["Allergic to peanuts"]
        assert test_client.get(
            "/api/v1/users/test_user/memories", params={"category": "goal"}
        ).json()["memories"] == []

    def test_duplicate_is_merged(self, test_client):
        payload = {"content": "Runs every morning", "category": "preference"}
        first = test_client.post("/api/v1/users/test_user/memories", json=payload).json()
        second = test_client.post("/api/v1/users/test_user/memories", json=payload).json()

        assert second["verdict"] == "skip"
        assert second["matched_id"] == first["memory"]["id"]
        assert second["memory"] is None

    def test_empty_content_rejected(self, test_client):
        response = test_client.post("/api/v1/users/test_user/memories", json={"content": "   "})
        assert response.status_code == 422

    def test_embedding_outage(self, test_client, embedding_client):
        embedding_client.embeddings.side_effect = RuntimeError("503 Service Unavailable")
        response = test_client.post("/api/v1/users/test_user/memories", json={"content": "Likes tea"})
        assert response.status_code == 503

    def test_search(self, test_client):
        test_client.post("/api/v1/users/test_user/memories", json={"content": "Training for a triathlon"})
        test_client.post("/api/v1/users/test_user/memories", json={"content": "Drinks oat milk"})

        response = test_client.post(
            "/api/v1/users/test_user/memories/search",
            json={"query": "Training for a triathlon", "limit": 1},
        )

        assert response.status_code == 200
        results = response.json()["results"]
        assert len(results) == 1
        assert results[0]["memory"]["content"] == "Training for a triathlon"
        assert results[0]["similarity"] == pytest.approx(1.0)

    def test_delete_and_approve_missing(self, test_client):
        memory_id = test_client.post(
            "/api/v1/users/test_user/memories", json={"content": "Cycles to work"}
        ).json()["memory"]["id"]

        assert test_client.delete(f"/api/v1/users/test_user/memories/{memory_id}").status_code == 200
        assert test_client.delete(f"/api/v1/users/test_user/memories/{memory_id}").status_code == 404
        assert test_client.post(f"/api/v1/users/test_user/memories/{memory_id}/approve").status_code == 404
