"""Backends that live in the same process.

An in-process backend is an async (or plain) callable taking the user's
message and returning a reply of whatever shape its library prefers. The
reply, or any exception it raises, is run through the classifier.
"""

import inspect
from typing import Any, Awaitable, Callable, Dict, Union

from fiesta.app.core.logging import get_log_context, get_logger
from fiesta.app.providers.base import BaseProvider
from fiesta.app.services.classifier import describe_exception
from fiesta.app.services.models import ChatRequest, KeyType, NormalizedResult

logger = get_logger(__name__)

NO_USER_MESSAGE = "No user message found"

# Reasoning-heavy "chat-latest" models truncate early without a raised limit.
EXTENDED_MAX_TOKENS = 8000

ChatCallable = Callable[..., Union[Any, Awaitable[Any]]]


class InProcessProvider(BaseProvider):
    """Adapter around an in-process chat callable.

    The callable is invoked as ``chat_fn(message, **options)`` with only the
    last user message. ``options`` is empty for the default model so the
    library applies its own default; otherwise it holds ``model`` and
    ``stream=False``.
    """

    family = "in-process"

    def __init__(self, name: str, chat_fn: ChatCallable, default_model: str = ""):
        super().__init__(name, default_model)
        self.chat_fn = chat_fn

    def call_options(self, model: str) -> Dict[str, Any]:
        if self.is_default_model(model):
            return {}
        options: Dict[str, Any] = {"model": model, "stream": False}
        if "chat-latest" in model:
            options["max_tokens"] = EXTENDED_MAX_TOKENS
        return options

    async def _complete(self, request: ChatRequest) -> NormalizedResult:
        model = self.resolve_model(request)
        message = request.last_user_message()
        if message is None:
            return self.error_result(NO_USER_MESSAGE, KeyType.NONE, model)

        try:
            raw = self.chat_fn(message.content, **self.call_options(request.model))
            if inspect.isawaitable(raw):
                raw = await raw
        except Exception as e:
            error = describe_exception(e)
            logger.warning(
                f"In-process backend raised: {error}",
                extra=get_log_context(provider=self.name, model=model),
            )
            return self.error_result(error, KeyType.NONE, model)

        return self.result(self.classify_body(raw), KeyType.NONE, model)
