"""Chat call pipeline.

Composes provider lookup, default-model fallback and timing into the two
entry points the HTTP layer uses. Nothing here raises for a failed backend
call; failures arrive as ``NormalizedResult.error`` or an ``ErrorEvent``.
"""

import asyncio
import inspect
from typing import Any, AsyncIterator, Callable, List, Optional, Sequence, Tuple

from fiesta.app.core.logging import get_log_context, get_logger
from fiesta.app.exceptions import ProviderNotFoundError
from fiesta.app.providers.base import BaseProvider
from fiesta.app.providers.factory import ProviderRegistry, get_provider_registry
from fiesta.app.providers.retry import FallbackPolicy, complete_with_fallback, stream_with_fallback
from fiesta.app.services.models import (
    ChatRequest,
    DoneEvent,
    ErrorEvent,
    MetaEvent,
    NormalizedResult,
    StreamEvent,
)
from fiesta.app.services.telemetry import Stopwatch, timed_complete, timed_stream

logger = get_logger(__name__)

EventSink = Callable[[StreamEvent], Any]


async def deliver(events: AsyncIterator[StreamEvent], sink: EventSink) -> None:
    """Push every event of a stream into ``sink`` in order.

    ``sink`` may be a plain function or a coroutine function.
    """
    async for event in events:
        outcome = sink(event)
        if inspect.isawaitable(outcome):
            await outcome


class ChatPipeline:
    """Entry point for single, streamed and fan-out chat calls.

    Usage:
        pipeline = ChatPipeline(registry)
        result = await pipeline.complete("openrouter", request)
        async for event in pipeline.stream("openrouter", request, abort):
            ...
    """

    def __init__(self, registry: ProviderRegistry, policy: Optional[FallbackPolicy] = None):
        self.registry = registry
        self.policy = policy or FallbackPolicy()

    def provider(self, name: str) -> BaseProvider:
        """Raises ProviderNotFoundError for unknown names."""
        return self.registry.get(name)

    async def complete(
        self,
        provider_name: str,
        request: ChatRequest,
        abort: Optional[asyncio.Event] = None,
    ) -> NormalizedResult:
        provider = self.provider(provider_name)
        result = await timed_complete(
            lambda: complete_with_fallback(provider, request, abort, self.policy)
        )
        logger.info(
            "Call aborted" if result.aborted else "Call completed",
            extra=get_log_context(
                provider=provider.name,
                model=result.model,
                used_key_type=result.used_key_type.value,
                duration_ms=result.response_time,
                ok=result.ok,
            ),
        )
        return result

    def stream(
        self,
        provider_name: str,
        request: ChatRequest,
        abort: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Return the event stream for one call.

        The provider is resolved eagerly so an unknown name fails before any
        event is produced.
        """
        provider = self.provider(provider_name)
        return self._stream(provider, request, abort)

    async def _stream(
        self,
        provider: BaseProvider,
        request: ChatRequest,
        abort: Optional[asyncio.Event],
    ) -> AsyncIterator[StreamEvent]:
        watch = Stopwatch()
        events = timed_stream(stream_with_fallback(provider, request, abort, self.policy), watch)
        model: Optional[str] = None
        failed = False
        async for event in events:
            if isinstance(event, MetaEvent) and event.model:
                model = event.model
            elif isinstance(event, ErrorEvent):
                failed = True
            elif isinstance(event, DoneEvent):
                logger.info(
                    "Stream aborted" if event.aborted else "Stream completed",
                    extra=get_log_context(
                        provider=provider.name,
                        model=model,
                        duration_ms=event.response_time,
                        ok=not failed,
                    ),
                )
            yield event

    async def send(
        self,
        provider_name: str,
        request: ChatRequest,
        sink: EventSink,
        abort: Optional[asyncio.Event] = None,
    ) -> None:
        """Stream one call into a consumer callable."""
        await deliver(self.stream(provider_name, request, abort), sink)

    async def compare(
        self,
        targets: Sequence[Tuple[str, ChatRequest]],
        abort: Optional[asyncio.Event] = None,
    ) -> List[NormalizedResult]:
        """Run several calls concurrently; results keep the order of ``targets``.

        An unknown provider yields an error result in its slot instead of
        failing the whole batch.
        """

        async def run(provider_name: str, request: ChatRequest) -> NormalizedResult:
            try:
                return await self.complete(provider_name, request, abort)
            except ProviderNotFoundError as e:
                return NormalizedResult(error=e.message, provider=provider_name)

        return list(await asyncio.gather(*(run(name, req) for name, req in targets)))


# Global pipeline instance
_pipeline: Optional[ChatPipeline] = None


def get_chat_pipeline() -> ChatPipeline:
    """Get the global pipeline over the global provider registry."""
    global _pipeline
    if _pipeline is None:
        _pipeline = ChatPipeline(get_provider_registry())
    return _pipeline


def reset_chat_pipeline() -> None:
    """Reset the global pipeline (useful for testing)."""
    global _pipeline
    _pipeline = None
