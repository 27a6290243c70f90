"""Tests for the HTTP API."""

import json

import pytest
from fastapi.testclient import TestClient

from fiesta.app.api.chat import get_pipeline, sanitize_input
from fiesta.app.core.config import settings
from fiesta.app.main import create_app
from fiesta.app.providers.factory import ProviderRegistry
from fiesta.app.providers.inprocess import InProcessProvider
from fiesta.app.providers.mock import MockChat
from fiesta.app.services.models import DoneEvent, KeyType, MetaEvent, TokenEvent
from fiesta.app.services.pipeline import ChatPipeline
from fiesta.app.services.sse import SSEDecoder


async def broken_chat(message, **options):
    raise RuntimeError("backend exploded")


@pytest.fixture
def registry():
    registry = ProviderRegistry()
    registry.register(InProcessProvider("mock", MockChat()))
    registry.register(InProcessProvider("broken", broken_chat))
    return registry


@pytest.fixture
def client(registry):
    app = create_app()
    app.dependency_overrides[get_pipeline] = lambda: ChatPipeline(registry)
    with TestClient(app) as client:
        yield client


def chat_body(content="ping", **extra):
    body = {"messages": [{"role": "user", "content": content}]}
    body.update(extra)
    return body


class TestChatEndpoint:
    def test_success(self, client):
        resp = client.post("/api/chat/mock", json=chat_body("ping", model="mock-openai"))

        assert resp.status_code == 200
        data = resp.json()
        assert data["text"] == "Mock reply to: ping"
        assert data["provider"] == "mock"
        assert data["usedKeyType"] == "none"
        assert "error" not in data
        assert data["responseTime"] >= 0
        assert "startTime" in data and "endTime" in data

    def test_response_headers(self, client):
        resp = client.post("/api/chat/mock", json=chat_body(), headers={"X-Request-ID": "req-42"})

        assert resp.headers["X-Request-ID"] == "req-42"
        assert resp.headers["X-RateLimit-Limit"] == str(settings.rate_limit_max_requests)
        assert "X-RateLimit-Reset" in resp.headers

    def test_request_id_generated_when_missing_or_oversized(self, client):
        generated = client.post("/api/chat/mock", json=chat_body())
        oversized = client.post("/api/chat/mock", json=chat_body(), headers={"X-Request-ID": "x" * 500})

        assert len(generated.headers["X-Request-ID"]) == 36
        assert oversized.headers["X-Request-ID"] != "x" * 500

    def test_backend_failure_is_200_with_error(self, client):
        resp = client.post("/api/chat/broken", json=chat_body())

        assert resp.status_code == 200
        data = resp.json()
        assert data["error"] == "backend exploded"
        assert "text" not in data

    def test_fallback_to_default_model(self, client):
        resp = client.post("/api/chat/mock", json=chat_body(model="mock-failure"))

        assert resp.json()["text"] == "Mock reply to: ping"

    def test_unknown_provider(self, client):
        resp = client.post("/api/chat/nope", json=chat_body())

        assert resp.status_code == 404
        assert resp.json()["error"] == "Unknown provider: nope"
        assert "timestamp" in resp.json()

    def test_content_is_sanitized(self, client):
        resp = client.post("/api/chat/mock", json=chat_body("  <b>ping</b>  "))

        assert resp.json()["text"] == "Mock reply to: bping/b"


class TestRequestValidation:
    @pytest.mark.parametrize(
        "body,message",
        [
            ({}, "Request body is required"),
            ({"model": "x"}, "Messages array is required"),
            ({"messages": "hi"}, "Messages array is required"),
            ({"messages": []}, "At least one message is required"),
            ({"messages": ["hi"]}, "Invalid message format"),
            ({"messages": [{"role": "user"}]}, "Each message must have role and content"),
            ({"messages": [{"role": "tool", "content": "x"}]}, "Invalid message role"),
            ({"messages": [{"role": "user", "content": 5}]}, "Message content must be string under 50000 characters"),
            (chat_body(model="m" * 101), "Invalid model parameter"),
            (chat_body(apiKey=123), "Invalid apiKey parameter"),
        ],
    )
    def test_invalid_bodies(self, client, body, message):
        resp = client.post("/api/chat/mock", json=body)

        assert resp.status_code == 400
        assert resp.json()["error"] == message

    def test_too_many_messages(self, client):
        body = {"messages": [{"role": "user", "content": "x"}] * 101}

        resp = client.post("/api/chat/mock", json=body)

        assert resp.status_code == 400
        assert resp.json()["error"] == "Too many messages (max 100)"

    def test_content_too_long(self, client):
        resp = client.post("/api/chat/mock", json=chat_body("x" * 50001))

        assert resp.status_code == 400

    def test_invalid_json(self, client):
        resp = client.post(
            "/api/chat/mock",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid JSON in request body"

    def test_sanitize_input(self):
        assert sanitize_input("  <script>x</script> ") == "scriptx/script"
        assert sanitize_input("abcdef", max_chars=3) == "abc"


class TestStreamEndpoint:
    def test_stream_frames_decode(self, client):
        resp = client.post("/api/chat/mock/stream", json=chat_body())

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")

        decoder = SSEDecoder()
        events = decoder.feed(resp.content) + decoder.close()

        assert isinstance(events[0], MetaEvent)
        assert events[0].provider == "mock"
        assert events[0].used_key_type == KeyType.NONE
        assert events[1] == TokenEvent(delta="Mock reply to: ping")
        assert events[-1] == DoneEvent()

    def test_stream_ends_with_timing_frame(self, client):
        resp = client.post("/api/chat/mock/stream", json=chat_body())

        frames = [f for f in resp.text.split("\n\n") if f]
        assert frames[-1] == "data: [DONE]"
        timing = json.loads(frames[-2][len("data: "):])
        assert timing["provider"] == "mock"
        assert timing["responseTime"] >= 0
        assert "startTime" in timing and "endTime" in timing

    def test_stream_error_frame(self, client):
        resp = client.post("/api/chat/broken/stream", json=chat_body())

        frames = [json.loads(f[len("data: "):]) for f in resp.text.split("\n\n") if f and "[DONE]" not in f]
        errors = [f for f in frames if "error" in f]
        assert errors[0]["error"] == "backend exploded"
        assert errors[0]["provider"] == "broken"
        assert resp.text.endswith("data: [DONE]\n\n")

    def test_stream_unknown_provider(self, client):
        resp = client.post("/api/chat/nope/stream", json=chat_body())

        assert resp.status_code == 404


class TestCompareEndpoint:
    def test_compare(self, client):
        body = chat_body(
            targets=[
                {"provider": "mock", "model": "mock-claude"},
                {"provider": "broken"},
                {"provider": "unknown"},
            ]
        )

        resp = client.post("/api/compare", json=body)

        assert resp.status_code == 200
        results = resp.json()["results"]
        assert results[0]["text"] == "Mock reply to: ping"
        assert results[1]["error"] == "backend exploded"
        assert results[2]["error"] == "Unknown provider: unknown"

    def test_compare_requires_targets(self, client):
        resp = client.post("/api/compare", json=chat_body(targets=[]))

        assert resp.status_code == 400
        assert resp.json()["error"].startswith("Invalid targets")


class TestMetaEndpoints:
    def test_providers(self, client):
        resp = client.get("/api/providers")

        assert resp.status_code == 200
        names = [p["name"] for p in resp.json()["providers"]]
        assert names == ["mock", "broken"]
        assert resp.json()["providers"][0]["family"] == "in-process"

    def test_health(self, client):
        resp = client.get("/health")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert "uptime" in data
        assert "pid" in data
        assert "openrouter" in data["providers"]
        assert "X-RateLimit-Limit" not in resp.headers


class TestRateLimiting:
    def test_requests_over_limit_get_429(self, registry, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_max_requests", 2)
        app = create_app()
        app.dependency_overrides[get_pipeline] = lambda: ChatPipeline(registry)

        with TestClient(app) as client:
            headers = {"X-Forwarded-For": "203.0.113.9"}
            statuses = [
                client.post("/api/chat/mock", json=chat_body(), headers=headers).status_code
                for _ in range(3)
            ]
            other = client.post("/api/chat/mock", json=chat_body(), headers={"X-Forwarded-For": "203.0.113.10"})
            denied = client.post("/api/chat/mock", json=chat_body(), headers=headers)

        assert statuses == [200, 200, 429]
        assert other.status_code == 200
        assert denied.headers["Retry-After"]
        assert denied.json()["error"] == "Rate limit exceeded. Please try again later."
