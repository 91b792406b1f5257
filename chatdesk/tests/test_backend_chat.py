import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parents[2]  # repo root
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from conftest import FakeProvider, reply  # noqa: E402

from chatdesk import config  # noqa: E402
from chatdesk.backend.app import create_app  # noqa: E402
from chatdesk.utils.error_handler import ProviderError  # noqa: E402


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def client(make_coordinator, provider):
    coordinator = make_coordinator(provider)
    return TestClient(create_app(coordinator=coordinator))


def send(client, prompt, **extra):
    return client.post("/exchange", json={"model": "m", "prompt": prompt, **extra})


def test_exchange_round_trip(client, provider):
    provider.replies.append(reply("Hi there"))

    resp = send(client, "Hello", chat_title="Greeting")

    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["state"] == "success"
    assert data["chat_created"] is True
    assert data["chat_title"] == "Greeting"
    assert data["completion"] == "Hi there"
    assert data["finish_reason"] == "stop"
    assert data["prompt_tokens"] == 1
    assert [e["event"] for e in data["events"]] == ["chat-created", "response-ready", "response-success"]

    chats = client.get("/chats").json()
    assert len(chats) == 1
    assert chats[0]["chat_id"] == data["chat_id"]
    assert chats[0]["request_id"] == data["request_id"]

    history = client.get(f"/chats/{data['chat_id']}/history").json()
    assert history["history"][0]["completion"] == "Hi there"


def test_follow_up_uses_server_side_context(client, provider):
    provider.replies.extend([reply("first"), reply("second")])
    chat_id = send(client, "one").json()["chat_id"]

    resp = send(client, "two", chat_id=chat_id)

    assert resp.status_code == 200
    assert [m["content"] for m in provider.calls[1]["messages"]] == ["", "one", "first", "two"]

    context = client.get(f"/chats/{chat_id}/context").json()
    assert context["context_tokens"] == 4
    assert len(context["messages"]) == 5

    reset = client.post(f"/chats/{chat_id}/context/reset").json()
    assert reset["context_tokens"] == 0


def test_trimmed_context_view_leaves_the_context_alone(client, provider, monkeypatch):
    monkeypatch.setitem(config.MODEL_CONTEXT_LIMITS, "tiny", 10)
    provider.replies.extend([reply("first"), reply("second")])
    chat_id = send(client, "one").json()["chat_id"]
    send(client, "two", chat_id=chat_id)

    # the configured reserve alone exceeds the tiny limit
    trimmed = client.get(f"/chats/{chat_id}/context", params={"trim": True, "model": "tiny"}).json()
    assert trimmed["messages"] == [{"role": "system", "content": ""}]

    untouched = client.get(f"/chats/{chat_id}/context").json()
    assert untouched["context_tokens"] == 4
    assert len(untouched["messages"]) == 5


def test_provider_error_returns_prompt(client, provider):
    provider.replies.append(ProviderError("quota exceeded"))

    resp = send(client, "Hello")

    assert resp.status_code == 502
    data = resp.json()
    assert data["state"] == "failure"
    assert data["prompt"] == "Hello"
    assert "quota exceeded" in data["error"]
    assert data["rows"][0]["kind"] == "error"
    assert client.get("/chats").json() == []


def test_empty_prompt_is_unprocessable(client):
    assert send(client, "  ").status_code == 422


def test_unknown_chat(client):
    resp = send(client, "Hello", chat_id=404)
    assert resp.status_code == 404
    assert resp.json()["chat_id"] == 404


def test_rename_and_delete(client, provider):
    provider.replies.append(reply("Hi"))
    chat_id = send(client, "Hello", chat_title="Old").json()["chat_id"]

    resp = client.patch(f"/chats/{chat_id}", json={"old_title": "Old", "new_title": "New"})
    assert resp.status_code == 204
    assert client.get("/chats").json()[0]["chat_title"] == "New"

    resp = client.patch(f"/chats/{chat_id}", json={"old_title": "New", "new_title": ""})
    assert resp.status_code == 422
    assert resp.json()["old_title"] == "New"

    resp = client.delete(f"/chats/{chat_id}")
    assert resp.json() == {"chat_id": chat_id, "deleted": True}
    assert client.get("/chats").json() == []
    assert client.delete(f"/chats/{chat_id}").status_code == 404


def test_search_endpoint(client, provider):
    provider.replies.append(reply("Paris is the capital of France."))
    send(client, "What is the capital of France?")

    results = client.get("/search", params={"query": "capital"}).json()

    assert len(results) == 1
    keys = [m["key"] for m in results[0]["matches"]]
    assert keys == ["prompt", "completion"]
    assert any(run["highlighted"] for run in results[0]["matches"][0]["runs"])

    assert client.get("/search", params={"query": "x"}).status_code == 422


def test_export_endpoint(client, provider):
    provider.replies.append(reply("Hi"))
    chat_id = send(client, "Hello").json()["chat_id"]

    resp = client.get(f"/chats/{chat_id}/export")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert resp.text.splitlines()[0] == "model,system_message,prompt,parameters,completion,completion_created,finish_reason"
