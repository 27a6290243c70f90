"""OpenAI-compatible chat completion backends.

Covers any endpoint speaking the ``/chat/completions`` protocol: OpenRouter,
Gemini's OpenAI-compatible surface, local servers. Replies are read as raw
JSON and handed to the classifier rather than trusted to be OpenAI-shaped.
"""

import asyncio
import json
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from fiesta.app.core.logging import get_log_context, get_logger
from fiesta.app.exceptions import MissingAPIKeyError
from fiesta.app.providers.base import HTTPProvider, iterate_until_aborted, race_abort
from fiesta.app.services.classifier import extract_error_message
from fiesta.app.services.models import (
    ChatRequest,
    DoneEvent,
    ErrorEvent,
    KeyType,
    MetaEvent,
    NormalizedResult,
    StreamEvent,
)
from fiesta.app.services.sse import SSEDecoder

logger = get_logger(__name__)

CHAT_COMPLETIONS_ENDPOINT = "/chat/completions"


def build_messages(request: ChatRequest) -> List[Dict[str, Any]]:
    """Convert the conversation to the wire format.

    An attached image is sent as an ``image_url`` part of the last user
    message.
    """
    messages: List[Dict[str, Any]] = [
        {"role": m.role, "content": m.content} for m in request.messages
    ]
    if not request.image_data_url:
        return messages

    for message in reversed(messages):
        if message["role"] == "user":
            message["content"] = [
                {"type": "text", "text": message["content"]},
                {"type": "image_url", "image_url": {"url": request.image_data_url}},
            ]
            break
    return messages


def http_error_message(status_code: int, body: Any) -> str:
    """Describe a non-2xx reply, preferring the backend's own error message."""
    detail = ""
    if isinstance(body, dict):
        detail = extract_error_message(body.get("error", body), default="")
    elif isinstance(body, str):
        detail = body.strip()[:200]
    if detail:
        return f"HTTP {status_code}: {detail}"
    return f"HTTP {status_code}"


def _parse_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return resp.text


class OpenAICompatibleProvider(HTTPProvider):
    """Backend speaking the OpenAI chat completions protocol.

    Supports both direct JSON replies and native SSE streaming. When
    ``http_client`` is given it is used for all requests (connection reuse).
    """

    family = "openai-compatible"

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str = "",
        default_model: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
        supports_streaming: bool = True,
    ):
        super().__init__(name, base_url, api_key, default_model, http_client, timeout)
        self.supports_streaming = supports_streaming

    def build_payload(self, request: ChatRequest, stream: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.resolve_model(request),
            "messages": build_messages(request),
        }
        if stream:
            payload["stream"] = True
        return payload

    async def _complete(self, request: ChatRequest) -> NormalizedResult:
        model = self.resolve_model(request)
        try:
            api_key, key_type = self.resolve_key(request)
        except MissingAPIKeyError as e:
            return self.error_result(e.message, KeyType.NONE, model)

        url = self.endpoint_url(CHAT_COMPLETIONS_ENDPOINT)
        headers = self.build_headers(api_key)
        payload = self.build_payload(request)

        try:
            async with self.client_context() as client:
                resp = await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException:
            logger.warning(
                "Backend request timed out",
                extra=get_log_context(provider=self.name, model=model),
            )
            return self.error_result("Request timed out", key_type, model)
        except httpx.HTTPError as e:
            logger.warning(
                f"Backend request failed: {e}",
                extra=get_log_context(provider=self.name, model=model),
            )
            return self.error_result(f"Network error: {e}", key_type, model)

        body = _parse_body(resp)
        if resp.status_code >= 400:
            return self.error_result(http_error_message(resp.status_code, body), key_type, model)
        return self.result(self.classify_body(body), key_type, model)

    async def stream(
        self, request: ChatRequest, abort: Optional[asyncio.Event] = None
    ) -> AsyncIterator[StreamEvent]:
        """Stream a chat completion as normalized events.

        Emits a ``MetaEvent`` first, then tokens, and always ends with one
        ``DoneEvent``.
        """
        if not self.supports_streaming:
            async for event in super().stream(request, abort):
                yield event
            return

        model = self.resolve_model(request)
        try:
            api_key, key_type = self.resolve_key(request)
        except MissingAPIKeyError as e:
            yield MetaEvent(provider=self.name, used_key_type=KeyType.NONE, model=model)
            yield ErrorEvent(message=e.message, code=e.code, provider=self.name)
            yield DoneEvent()
            return

        meta = MetaEvent(provider=self.name, used_key_type=key_type, model=model)
        yield meta

        url = self.endpoint_url(CHAT_COMPLETIONS_ENDPOINT)
        headers = self.build_headers(api_key)
        payload = self.build_payload(request, stream=True)
        decoder = SSEDecoder()

        try:
            async with self.client_context() as client:
                http_request = client.build_request("POST", url, headers=headers, json=payload)
                aborted, resp = await race_abort(client.send(http_request, stream=True), abort)
                if aborted:
                    for event in decoder.abort():
                        yield event
                    return

                try:
                    if resp.status_code >= 400:
                        raw = await resp.aread()
                        body = _parse_body(resp) if raw else ""
                        yield ErrorEvent(
                            message=http_error_message(resp.status_code, body),
                            code=resp.status_code,
                            provider=self.name,
                        )
                        yield DoneEvent()
                        return

                    async for chunk in iterate_until_aborted(resp.aiter_bytes(), abort):
                        for event in decoder.feed(chunk):
                            if not isinstance(event, MetaEvent):
                                yield self._own_event(event)
                        if decoder.closed:
                            return

                    if abort is not None and abort.is_set():
                        for event in decoder.abort():
                            yield event
                        return
                    for event in decoder.close():
                        if not isinstance(event, MetaEvent):
                            yield self._own_event(event)
                finally:
                    await resp.aclose()
        except httpx.HTTPError as e:
            if decoder.closed:
                return
            logger.warning(
                f"Stream interrupted: {e}",
                extra=get_log_context(provider=self.name, model=model),
            )
            message = "Request timed out" if isinstance(e, httpx.TimeoutException) else f"Network error: {e}"
            yield ErrorEvent(message=message, provider=self.name)
            yield DoneEvent()

    def _own_event(self, event: StreamEvent) -> StreamEvent:
        # Upstream chunks name their own vendor; events leaving this adapter
        # carry the registry name. Upstream meta frames are dropped since the
        # adapter has already announced itself.
        if isinstance(event, ErrorEvent):
            return replace(event, provider=self.name)
        return event


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter, which asks callers to identify their app.

    Args:
        referer: Sent as ``HTTP-Referer``
        title: Sent as ``X-Title``
    """

    def __init__(
        self,
        name: str = "openrouter",
        base_url: str = "https://openrouter.ai/api/v1",
        api_key: str = "",
        default_model: str = "openrouter/auto",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
        referer: str = "",
        title: str = "",
    ):
        super().__init__(name, base_url, api_key, default_model, http_client, timeout)
        self.referer = referer
        self.title = title

    def build_headers(self, api_key: str) -> Dict[str, str]:
        headers = super().build_headers(api_key)
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.title:
            headers["X-Title"] = self.title
        return headers
