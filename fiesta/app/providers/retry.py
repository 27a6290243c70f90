"""Default-model fallback for chat calls.

When a call that named a specific model fails, it is retried once with the
provider's default model. A call that already used the default is never
retried, so there is at most one extra attempt per request.
"""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from fiesta.app.core.logging import get_log_context, get_logger
from fiesta.app.providers.base import BaseProvider
from fiesta.app.services.models import (
    ChatRequest,
    DoneEvent,
    ErrorEvent,
    NormalizedResult,
    StreamEvent,
    TokenEvent,
)

logger = get_logger(__name__)


def compose_fallback_error(model: str, first_error: str, default_error: str) -> str:
    return f'Model "{model}" failed: {first_error}. Default model also failed: {default_error}'


@dataclass
class FallbackPolicy:
    """Configuration for the default-model fallback.

    Attributes:
        enabled: Whether failed calls are retried at all
    """

    enabled: bool = True

    def should_retry(self, provider: BaseProvider, request: ChatRequest) -> bool:
        return self.enabled and not provider.is_default_model(request.model)


def _aborted(abort: Optional[asyncio.Event]) -> bool:
    return abort is not None and abort.is_set()


async def complete_with_fallback(
    provider: BaseProvider,
    request: ChatRequest,
    abort: Optional[asyncio.Event] = None,
    policy: Optional[FallbackPolicy] = None,
) -> NormalizedResult:
    """Run a direct call, retrying once with the default model on error.

    Aborted calls are returned as they are and never retried. When the retry
    fails too, the result carries both error messages.
    """
    fallback_policy = policy or FallbackPolicy()

    result = await provider.complete(request, abort)
    if result.ok or result.aborted or not fallback_policy.should_retry(provider, request):
        return result
    if _aborted(abort):
        return provider.aborted_result(result.model)

    logger.warning(
        f"Model {request.model} failed, retrying with default model: {result.error}",
        extra=get_log_context(provider=provider.name, model=request.model),
    )
    retry = await provider.complete(request.with_model(""), abort)
    if retry.ok or retry.aborted:
        return retry
    return retry.model_copy(
        update={"error": compose_fallback_error(request.model, result.error, retry.error)}
    )


async def stream_with_fallback(
    provider: BaseProvider,
    request: ChatRequest,
    abort: Optional[asyncio.Event] = None,
    policy: Optional[FallbackPolicy] = None,
) -> AsyncIterator[StreamEvent]:
    """Stream a call, retrying with the default model if it fails early.

    The retry only happens when the error arrives before the first token;
    once text has been delivered an error is passed through as it is. Events
    that precede the first token are held back so a discarded attempt leaves
    no trace in the output.
    """
    fallback_policy = policy or FallbackPolicy()
    can_retry = fallback_policy.should_retry(provider, request)

    pending: List[StreamEvent] = []
    first_error: Optional[ErrorEvent] = None
    started = not can_retry

    async with aclosing(provider.stream(request, abort)) as events:
        async for event in events:
            if started:
                yield event
                continue
            if isinstance(event, ErrorEvent):
                first_error = event
                break
            pending.append(event)
            if isinstance(event, (TokenEvent, DoneEvent)):
                started = True
                for held in pending:
                    yield held
                pending.clear()

    if first_error is None:
        for held in pending:
            yield held
        return

    if _aborted(abort):
        yield DoneEvent(aborted=True)
        return

    logger.warning(
        f"Model {request.model} failed before streaming, retrying with default model: "
        f"{first_error.message}",
        extra=get_log_context(provider=provider.name, model=request.model),
    )
    retry_started = False
    async with aclosing(provider.stream(request.with_model(""), abort)) as events:
        async for event in events:
            if not retry_started and isinstance(event, ErrorEvent):
                yield ErrorEvent(
                    message=compose_fallback_error(request.model, first_error.message, event.message),
                    code=event.code,
                    provider=event.provider,
                )
                continue
            if isinstance(event, TokenEvent):
                retry_started = True
            yield event
