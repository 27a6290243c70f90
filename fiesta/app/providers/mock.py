"""Mock in-process backend.

Simulates a chat library without making external calls. Useful for local
development and for exercising the normalization pipeline: the model name
selects which reply shape comes back.

Enable by setting environment variable:
    MOCK_PROVIDER_ENABLED=true
"""

import asyncio
import random
import time
import uuid
from typing import Any, Dict, Optional


class MockBackendError(Exception):
    """Failure raised by the mock backend, carrying a structured body."""

    def __init__(self, body: Dict[str, Any]):
        self.body = body
        super().__init__(str(body))


class MockChat:
    """Callable mock chat library.

    Models:
        ``mock-openai``: OpenAI ``choices`` reply
        ``mock-claude``: content block list
        ``mock-envelope``: ``{success: true, data: ...}``
        ``mock-failure``: ``{success: false, error: {...}}`` envelope
        ``mock-raise``: raises :class:`MockBackendError`
        ``mock-empty``: whitespace-only string
        anything else: plain string
    """

    def __init__(
        self,
        min_delay: float = 0.0,
        max_delay: float = 0.0,
        failure_rate: float = 0.0,
    ):
        """Initialize the mock backend.

        Args:
            min_delay: Minimum response delay in seconds
            max_delay: Maximum response delay in seconds
            failure_rate: Probability of raising an error (0-1)
        """
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.failure_rate = failure_rate

    def _generate_content(self, user_message: str) -> str:
        # Simple keyword-based replies
        user_lower = user_message.lower()

        if any(kw in user_lower for kw in ["hello", "hi"]):
            return "Hello! I'm a mock AI assistant. How can I help you today?"

        if any(kw in user_lower for kw in ["python", "code", "programming"]):
            return "Python is a powerful programming language. Here's a simple example:\n\n```python\nprint('Hello, World!')\n```"

        return f"Mock reply to: {user_message}"

    def _shape(self, model: Optional[str], content: str) -> Any:
        if model == "mock-openai":
            return {
                "id": f"chatcmpl-{uuid.uuid4().hex[:24]}",
                "object": "chat.completion",
                "created": int(time.time()),
                "model": model,
                "choices": [{
                    "index": 0,
                    "message": {"role": "assistant", "content": content},
                    "finish_reason": "stop",
                }],
            }
        if model == "mock-claude":
            return {"message": {"content": [{"type": "text", "text": content}]}}
        if model == "mock-envelope":
            return {"success": True, "data": content}
        if model == "mock-failure":
            return {"success": False, "error": {"message": "Simulated backend failure"}}
        if model == "mock-raise":
            raise MockBackendError({"error": {"message": "Simulated backend exception", "code": 500}})
        if model == "mock-empty":
            return "   "
        return content

    async def __call__(self, message: str, model: Optional[str] = None, **options: Any) -> Any:
        if self.max_delay > 0:
            await asyncio.sleep(random.uniform(self.min_delay, self.max_delay))

        if self.failure_rate and random.random() < self.failure_rate:
            raise MockBackendError({"error": {"message": "Simulated provider failure"}})

        return self._shape(model, self._generate_content(message))
