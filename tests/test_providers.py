"""Tests for provider adapters."""

import asyncio
import json

import httpx
import pytest
import respx
from httpx import Response

from fiesta.app.providers.base import race_abort
from fiesta.app.providers.inprocess import InProcessProvider
from fiesta.app.providers.mock import MockChat
from fiesta.app.providers.openai import OpenAICompatibleProvider, OpenRouterProvider, build_messages
from fiesta.app.services.models import (
    ChatMessage,
    ChatRequest,
    DoneEvent,
    ErrorEvent,
    KeyType,
    MetaEvent,
    TokenEvent,
)

BASE_URL = "https://llm.example.com/v1"
COMPLETIONS_URL = f"{BASE_URL}/chat/completions"


def make_request(content: str = "Hello", model: str = "", **kwargs) -> ChatRequest:
    return ChatRequest(model=model, messages=[ChatMessage(role="user", content=content)], **kwargs)


async def collect(events):
    return [event async for event in events]


def sse_body(*payloads) -> bytes:
    frames = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


@pytest.fixture
def provider():
    return OpenAICompatibleProvider(
        name="gemini",
        base_url=BASE_URL,
        api_key="shared-key",
        default_model="default-model",
    )


@pytest.fixture
def mocked():
    with respx.mock(assert_all_called=False) as router:
        yield router


class TestOpenAICompatibleComplete:
    @pytest.mark.asyncio
    async def test_success_uses_shared_key(self, provider, mocked):
        route = mocked.post(COMPLETIONS_URL).mock(
            return_value=Response(200, json={"choices": [{"message": {"content": " Hi! "}}]})
        )

        result = await provider.complete(make_request())

        assert result.text == "Hi!"
        assert result.error is None
        assert result.provider == "gemini"
        assert result.used_key_type == KeyType.SHARED
        assert result.model == "default-model"
        sent = route.calls.last.request
        assert sent.headers["Authorization"] == "Bearer shared-key"
        assert json.loads(sent.content)["model"] == "default-model"

    @pytest.mark.asyncio
    async def test_caller_key_wins(self, provider, mocked):
        route = mocked.post(COMPLETIONS_URL).mock(return_value=Response(200, json={"text": "ok"}))

        result = await provider.complete(make_request(api_key="user-key", model="m1"))

        assert result.used_key_type == KeyType.USER
        assert route.calls.last.request.headers["Authorization"] == "Bearer user-key"
        assert json.loads(route.calls.last.request.content)["model"] == "m1"

    @pytest.mark.asyncio
    async def test_missing_key(self, mocked):
        provider = OpenAICompatibleProvider(name="gemini", base_url=BASE_URL)
        route = mocked.post(COMPLETIONS_URL)

        result = await provider.complete(make_request())

        assert result.error == "Missing API key"
        assert result.used_key_type == KeyType.NONE
        assert not route.called

    @pytest.mark.asyncio
    async def test_http_error_uses_backend_message(self, provider, mocked):
        mocked.post(COMPLETIONS_URL).mock(
            return_value=Response(401, json={"error": {"message": "No auth credentials found", "code": 401}})
        )

        result = await provider.complete(make_request())

        assert result.error == "HTTP 401: No auth credentials found"
        assert result.used_key_type == KeyType.SHARED

    @pytest.mark.asyncio
    async def test_http_error_with_text_body(self, provider, mocked):
        mocked.post(COMPLETIONS_URL).mock(return_value=Response(502, text="Bad gateway"))

        result = await provider.complete(make_request())

        assert result.error == "HTTP 502: Bad gateway"

    @pytest.mark.asyncio
    async def test_error_envelope_with_200(self, provider, mocked):
        mocked.post(COMPLETIONS_URL).mock(
            return_value=Response(200, json={"success": False, "error": {"message": "model overloaded"}})
        )

        result = await provider.complete(make_request())

        assert result.error == "model overloaded"
        assert result.text is None

    @pytest.mark.asyncio
    async def test_timeout(self, provider, mocked):
        mocked.post(COMPLETIONS_URL).mock(side_effect=httpx.ReadTimeout("timed out"))

        result = await provider.complete(make_request())

        assert result.error == "Request timed out"

    @pytest.mark.asyncio
    async def test_network_error(self, provider, mocked):
        mocked.post(COMPLETIONS_URL).mock(side_effect=httpx.ConnectError("connection refused"))

        result = await provider.complete(make_request())

        assert result.error.startswith("Network error:")

    @pytest.mark.asyncio
    async def test_image_is_sent_as_content_part(self, provider, mocked):
        route = mocked.post(COMPLETIONS_URL).mock(return_value=Response(200, json={"text": "a cat"}))
        request = make_request("What is this?", image_data_url="data:image/png;base64,AAAA")

        await provider.complete(request)

        content = json.loads(route.calls.last.request.content)["messages"][-1]["content"]
        assert content == [
            {"type": "text", "text": "What is this?"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
        ]

    @pytest.mark.asyncio
    async def test_uses_injected_client(self, mocked):
        mocked.post(COMPLETIONS_URL).mock(return_value=Response(200, json={"text": "pooled"}))
        async with httpx.AsyncClient() as client:
            provider = OpenAICompatibleProvider(
                name="gemini", base_url=BASE_URL, api_key="k", http_client=client
            )
            result = await provider.complete(make_request())
            assert not client.is_closed

        assert result.text == "pooled"


class TestOpenRouterProvider:
    @pytest.mark.asyncio
    async def test_attribution_headers(self, mocked):
        route = mocked.post("https://openrouter.ai/api/v1/chat/completions").mock(
            return_value=Response(200, json={"choices": [{"message": {"content": "ok"}}]})
        )
        provider = OpenRouterProvider(api_key="k", referer="https://fiesta.example", title="AI Fiesta")

        result = await provider.complete(make_request())

        headers = route.calls.last.request.headers
        assert headers["HTTP-Referer"] == "https://fiesta.example"
        assert headers["X-Title"] == "AI Fiesta"
        assert result.provider == "openrouter"
        assert json.loads(route.calls.last.request.content)["model"] == "openrouter/auto"


class TestOpenAICompatibleStream:
    @pytest.mark.asyncio
    async def test_stream_tokens(self, provider, mocked):
        body = sse_body(
            {"provider": "Google", "choices": [{"delta": {"role": "assistant"}}]},
            {"provider": "Google", "choices": [{"delta": {"content": "Hel"}}]},
            {"provider": "Google", "choices": [{"delta": {"content": "lo"}}]},
        )
        route = mocked.post(COMPLETIONS_URL).mock(
            return_value=Response(200, content=body, headers={"Content-Type": "text/event-stream"})
        )

        events = await collect(provider.stream(make_request()))

        assert events == [
            MetaEvent(provider="gemini", used_key_type=KeyType.SHARED, model="default-model"),
            TokenEvent(delta="Hel"),
            TokenEvent(delta="lo"),
            DoneEvent(),
        ]
        assert json.loads(route.calls.last.request.content)["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_http_error(self, provider, mocked):
        mocked.post(COMPLETIONS_URL).mock(
            return_value=Response(429, json={"error": {"message": "Rate limit"}})
        )

        events = await collect(provider.stream(make_request()))

        assert events[1] == ErrorEvent(message="HTTP 429: Rate limit", code=429, provider="gemini")
        assert events[-1] == DoneEvent()
        assert len(events) == 3

    @pytest.mark.asyncio
    async def test_stream_error_frame(self, provider, mocked):
        body = sse_body(
            {"choices": [{"delta": {"content": "par"}}]},
            {"error": {"message": "upstream died", "code": 502}},
        )
        mocked.post(COMPLETIONS_URL).mock(return_value=Response(200, content=body))

        events = await collect(provider.stream(make_request()))

        assert events[1:] == [
            TokenEvent(delta="par"),
            ErrorEvent(message="upstream died", code=502, provider="gemini"),
            DoneEvent(),
        ]

    @pytest.mark.asyncio
    async def test_stream_truncated_body(self, provider, mocked):
        body = b'data: {"choices":[{"delta":{"content":"cut"}}]}\n\n'
        mocked.post(COMPLETIONS_URL).mock(return_value=Response(200, content=body))

        events = await collect(provider.stream(make_request()))

        assert events[-2:] == [TokenEvent(delta="cut"), DoneEvent()]

    @pytest.mark.asyncio
    async def test_stream_missing_key(self, mocked):
        provider = OpenAICompatibleProvider(name="gemini", base_url=BASE_URL)

        events = await collect(provider.stream(make_request()))

        assert events == [
            MetaEvent(provider="gemini", used_key_type=KeyType.NONE, model=""),
            ErrorEvent(message="Missing API key", code=401, provider="gemini"),
            DoneEvent(),
        ]

    @pytest.mark.asyncio
    async def test_stream_transport_failure(self, provider, mocked):
        mocked.post(COMPLETIONS_URL).mock(side_effect=httpx.ConnectError("refused"))

        events = await collect(provider.stream(make_request()))

        assert isinstance(events[-2], ErrorEvent)
        assert events[-2].message.startswith("Network error:")
        assert events[-1] == DoneEvent()

    @pytest.mark.asyncio
    async def test_stream_already_aborted(self, provider, mocked):
        mocked.post(COMPLETIONS_URL).mock(return_value=Response(200, content=sse_body({"delta": "x"})))
        abort = asyncio.Event()
        abort.set()

        events = await collect(provider.stream(make_request(), abort))

        assert events[-1] == DoneEvent(aborted=True)
        assert not any(isinstance(e, (TokenEvent, ErrorEvent)) for e in events)

    @pytest.mark.asyncio
    async def test_abort_while_waiting_for_headers(self):
        async def slow_handler(request):
            await asyncio.sleep(30)
            return Response(200, content=sse_body({"choices": [{"delta": {"content": "late"}}]}))

        client = httpx.AsyncClient(transport=httpx.MockTransport(slow_handler))
        provider = OpenAICompatibleProvider(name="gemini", base_url=BASE_URL, api_key="k", http_client=client)
        abort = asyncio.Event()

        task = asyncio.create_task(collect(provider.stream(make_request(), abort)))
        await asyncio.sleep(0.05)
        abort.set()
        events = await asyncio.wait_for(task, 2)
        await client.aclose()

        assert events == [
            MetaEvent(provider="gemini", used_key_type=KeyType.SHARED, model=""),
            DoneEvent(aborted=True),
        ]

    @pytest.mark.asyncio
    async def test_abort_between_chunks_keeps_earlier_tokens(self):
        async def body():
            yield b'data: {"choices":[{"delta":{"content":"a"}}]}\n\n'
            await asyncio.sleep(30)
            yield b'data: {"choices":[{"delta":{"content":"b"}}]}\n\n'

        async def handler(request):
            return Response(200, content=body(), headers={"Content-Type": "text/event-stream"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = OpenAICompatibleProvider(name="gemini", base_url=BASE_URL, api_key="k", http_client=client)
        abort = asyncio.Event()
        events = []

        async def consume():
            async for event in provider.stream(make_request(), abort):
                events.append(event)

        task = asyncio.create_task(consume())
        for _ in range(100):
            if len(events) >= 2:
                break
            await asyncio.sleep(0.01)
        abort.set()
        await asyncio.wait_for(task, 2)
        await client.aclose()

        assert events[1:] == [TokenEvent(delta="a"), DoneEvent(aborted=True)]
        assert sum(isinstance(e, DoneEvent) for e in events) == 1

    @pytest.mark.asyncio
    async def test_per_call_client_uses_configured_factory(self, monkeypatch):
        created = []

        def fake_factory(**kwargs):
            created.append(kwargs)
            return httpx.AsyncClient(
                transport=httpx.MockTransport(lambda request: Response(200, json={"text": "pooled"}))
            )

        monkeypatch.setattr("fiesta.app.providers.base.create_http_client", fake_factory)
        provider = OpenAICompatibleProvider(name="gemini", base_url=BASE_URL, api_key="k", timeout=7.0)

        result = await provider.complete(make_request())

        assert result.text == "pooled"
        assert created == [{"timeout": 7.0}]

    @pytest.mark.asyncio
    async def test_non_streaming_provider_emits_single_token(self, mocked):
        provider = OpenAICompatibleProvider(
            name="gemini", base_url=BASE_URL, api_key="k", supports_streaming=False
        )
        mocked.post(COMPLETIONS_URL).mock(return_value=Response(200, json={"text": "all at once"}))

        events = await collect(provider.stream(make_request()))

        assert events[1:] == [TokenEvent(delta="all at once"), DoneEvent()]
        assert events[0].provider == "gemini"


class TestBuildMessages:
    def test_image_goes_to_last_user_message(self):
        request = ChatRequest(
            messages=[
                ChatMessage(role="user", content="first"),
                ChatMessage(role="assistant", content="reply"),
                ChatMessage(role="user", content="second"),
                ChatMessage(role="assistant", content="trailing"),
            ],
            image_data_url="data:image/png;base64,AAAA",
        )

        messages = build_messages(request)

        assert messages[0]["content"] == "first"
        assert isinstance(messages[2]["content"], list)
        assert messages[3]["content"] == "trailing"


class TestInProcessProvider:
    @pytest.mark.asyncio
    async def test_sync_callable_text_is_classified(self):
        provider = InProcessProvider("puter", lambda message, **options: "hello there")

        result = await provider.complete(make_request())
        events = await collect(provider.stream(make_request()))

        assert result.text == "hello there"
        assert result.error is None
        assert events[1:] == [TokenEvent(delta="hello there"), DoneEvent()]

    @pytest.mark.asyncio
    async def test_default_model_sends_no_options(self):
        calls = []

        async def chat_fn(message, **options):
            calls.append((message, options))
            return "  reply  "

        provider = InProcessProvider("puter", chat_fn, default_model="gpt-4o-mini")
        result = await provider.complete(make_request("hi there"))

        assert result.text == "reply"
        assert result.used_key_type == KeyType.NONE
        assert calls == [("hi there", {})]

    @pytest.mark.asyncio
    async def test_specific_model_options(self):
        calls = []

        async def chat_fn(message, **options):
            calls.append(options)
            return {"message": {"content": "ok"}}

        provider = InProcessProvider("puter", chat_fn)
        await provider.complete(make_request(model="claude-sonnet"))
        await provider.complete(make_request(model="gpt-5-chat-latest"))

        assert calls[0] == {"model": "claude-sonnet", "stream": False}
        assert calls[1] == {"model": "gpt-5-chat-latest", "stream": False, "max_tokens": 8000}

    @pytest.mark.asyncio
    async def test_only_last_user_message_is_sent(self):
        seen = []

        def chat_fn(message, **options):
            seen.append(message)
            return "sync reply"

        provider = InProcessProvider("puter", chat_fn)
        request = ChatRequest(
            messages=[
                ChatMessage(role="system", content="be brief"),
                ChatMessage(role="user", content="one"),
                ChatMessage(role="assistant", content="1"),
                ChatMessage(role="user", content="two"),
            ]
        )
        result = await provider.complete(request)

        assert seen == ["two"]
        assert result.text == "sync reply"

    @pytest.mark.asyncio
    async def test_no_user_message(self):
        provider = InProcessProvider("puter", lambda message, **options: "unused")
        request = ChatRequest(messages=[ChatMessage(role="system", content="rules")])

        result = await provider.complete(request)

        assert result.error == "No user message found"

    @pytest.mark.asyncio
    async def test_raised_structured_error_is_flattened(self):
        class PuterError(Exception):
            def __init__(self, body):
                self.body = body
                super().__init__("puter call failed")

        async def chat_fn(message, **options):
            raise PuterError({"success": False, "error": {"message": "Authentication required"}})

        provider = InProcessProvider("puter", chat_fn)
        result = await provider.complete(make_request())

        assert result.error == "Authentication required"
        assert result.text is None

    @pytest.mark.asyncio
    async def test_raised_plain_error(self):
        async def chat_fn(message, **options):
            raise RuntimeError("socket closed")

        result = await InProcessProvider("puter", chat_fn).complete(make_request())

        assert result.error == "socket closed"

    @pytest.mark.asyncio
    async def test_abort_cancels_pending_call(self):
        cancelled = asyncio.Event()

        async def chat_fn(message, **options):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return "too late"

        provider = InProcessProvider("puter", chat_fn)
        abort = asyncio.Event()
        task = asyncio.create_task(provider.complete(make_request(), abort))
        await asyncio.sleep(0.01)
        abort.set()
        result = await task

        assert result.aborted is True
        assert result.text is None
        assert result.error is None
        assert cancelled.is_set()


class TestMockChat:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "model,expected_text",
        [
            ("", "Mock reply to: ping"),
            ("mock-openai", "Mock reply to: ping"),
            ("mock-claude", "Mock reply to: ping"),
            ("mock-envelope", "Mock reply to: ping"),
        ],
    )
    async def test_success_shapes(self, model, expected_text):
        provider = InProcessProvider("mock", MockChat())

        result = await provider.complete(make_request("ping", model=model))

        assert result.text == expected_text

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "model,expected_error",
        [
            ("mock-failure", "Simulated backend failure"),
            ("mock-raise", "Simulated backend exception"),
            ("mock-empty", "empty response"),
        ],
    )
    async def test_failure_shapes(self, model, expected_error):
        provider = InProcessProvider("mock", MockChat())

        result = await provider.complete(make_request("ping", model=model))

        assert result.error == expected_error


class TestRaceAbort:
    @pytest.mark.asyncio
    async def test_without_abort(self):
        async def work():
            return 7

        assert await race_abort(work(), None) == (False, 7)

    @pytest.mark.asyncio
    async def test_already_set(self):
        abort = asyncio.Event()
        abort.set()

        async def work():
            return 7

        assert await race_abort(work(), abort) == (True, None)

    @pytest.mark.asyncio
    async def test_exception_propagates(self):
        async def work():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await race_abort(work(), asyncio.Event())
