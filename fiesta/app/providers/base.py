import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Awaitable, Dict, Optional, Tuple, TypeVar

import httpx

from fiesta.app.core.config import settings
from fiesta.app.core.http_client import create_http_client
from fiesta.app.core.logging import get_log_context, get_logger
from fiesta.app.exceptions import MissingAPIKeyError
from fiesta.app.services.classifier import Classification, classify
from fiesta.app.services.models import (
    ChatRequest,
    DoneEvent,
    ErrorEvent,
    KeyType,
    MetaEvent,
    NormalizedResult,
    StreamEvent,
    TokenEvent,
)

logger = get_logger(__name__)

T = TypeVar("T")


async def race_abort(awaitable: Awaitable[T], abort: Optional[asyncio.Event]) -> Tuple[bool, Optional[T]]:
    """Await ``awaitable`` unless ``abort`` is set first.

    Returns:
        ``(True, None)`` when aborted (the pending work is cancelled),
        otherwise ``(False, result)``. Exceptions from the awaitable
        propagate.
    """
    if abort is None:
        return False, await awaitable
    if abort.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        return True, None

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return False, task.result()

    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    return True, None


async def iterate_until_aborted(
    source: AsyncIterator[T], abort: Optional[asyncio.Event]
) -> AsyncIterator[T]:
    """Yield from ``source`` until it is exhausted or ``abort`` is set.

    A read that is still pending when the abort arrives is cancelled.
    """
    iterator = source.__aiter__()
    while True:
        try:
            aborted, item = await race_abort(iterator.__anext__(), abort)
        except StopAsyncIteration:
            return
        if aborted:
            return
        yield item


class BaseProvider(ABC):
    """Base class for chat backends.

    A provider turns a :class:`ChatRequest` into a :class:`NormalizedResult`
    (``complete``) or a sequence of stream events (``stream``). Neither
    method raises for backend failures; those come back as ``error`` /
    ``ErrorEvent``.

    Attributes:
        name: Registry name, reported as ``provider`` in results
        family: Backend family (``openai-compatible``, ``in-process``)
        default_model: Model used when a request names none. Requests for it
            are never retried by the fallback controller.
    """

    family: str = "base"
    supports_streaming: bool = False

    def __init__(self, name: str, default_model: str = ""):
        self.name = name
        self.default_model = default_model

    def is_default_model(self, model: Optional[str]) -> bool:
        return not model or model == self.default_model

    def resolve_model(self, request: ChatRequest) -> str:
        return request.model or self.default_model

    def result(
        self,
        classification: Classification,
        used_key_type: KeyType,
        model: Optional[str],
    ) -> NormalizedResult:
        return NormalizedResult(
            text=classification.text,
            error=classification.error,
            provider=self.name,
            used_key_type=used_key_type,
            model=model or None,
            low_confidence=classification.low_confidence,
        )

    def error_result(
        self,
        message: str,
        used_key_type: KeyType = KeyType.NONE,
        model: Optional[str] = None,
    ) -> NormalizedResult:
        return NormalizedResult(
            error=message,
            provider=self.name,
            used_key_type=used_key_type,
            model=model or None,
        )

    def aborted_result(self, model: Optional[str] = None) -> NormalizedResult:
        return NormalizedResult(provider=self.name, model=model or None, aborted=True)

    async def complete(
        self, request: ChatRequest, abort: Optional[asyncio.Event] = None
    ) -> NormalizedResult:
        """Run one call and normalize its outcome."""
        model = self.resolve_model(request)
        try:
            aborted, result = await race_abort(self._complete(request), abort)
        except Exception as e:
            logger.exception(
                f"Unexpected provider failure: {e}",
                extra=get_log_context(provider=self.name, model=model),
            )
            return self.error_result(str(e) or type(e).__name__, model=model)
        if aborted:
            return self.aborted_result(model)
        return result

    async def stream(
        self, request: ChatRequest, abort: Optional[asyncio.Event] = None
    ) -> AsyncIterator[StreamEvent]:
        """Stream one call.

        Providers without native streaming answer with their complete result
        as a single token.
        """
        result = await self.complete(request, abort)
        yield MetaEvent(provider=self.name, used_key_type=result.used_key_type, model=result.model)
        if result.aborted:
            yield DoneEvent(aborted=True)
            return
        if result.text is not None:
            yield TokenEvent(delta=result.text)
            yield DoneEvent()
            return
        yield ErrorEvent(message=result.error or "", provider=self.name)
        yield DoneEvent()

    def classify_body(self, body: Any) -> Classification:
        return classify(body, allow_scan=settings.classifier_scan_fallback)

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "family": self.family,
            "defaultModel": self.default_model,
            "streaming": self.supports_streaming,
        }

    @abstractmethod
    async def _complete(self, request: ChatRequest) -> NormalizedResult:
        """Perform the backend call; may raise, the caller normalizes."""


class HTTPProvider(BaseProvider):
    """Base class for backends reached over HTTP.

    Accepts an external ``httpx.AsyncClient`` for connection pooling, or
    creates a short-lived one per call when none is provided.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str = "",
        default_model: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        super().__init__(name, default_model)
        self._http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    @property
    def http_client(self) -> Optional[httpx.AsyncClient]:
        return self._http_client

    def resolve_key(self, request: ChatRequest) -> Tuple[str, KeyType]:
        """Pick the caller's key when given, else the shared one.

        Raises:
            MissingAPIKeyError: If neither is available
        """
        if request.api_key and request.api_key.strip():
            return request.api_key.strip(), KeyType.USER
        if self.api_key:
            return self.api_key, KeyType.SHARED
        raise MissingAPIKeyError(self.name)

    def build_headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def endpoint_url(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint}"

    @asynccontextmanager
    async def client_context(self):
        """Yield the shared client, or a per-call client that is closed after."""
        if self._http_client is not None:
            yield self._http_client
            return
        client = create_http_client(timeout=self.timeout)
        try:
            yield client
        finally:
            await client.aclose()
