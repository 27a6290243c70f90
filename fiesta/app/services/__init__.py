"""Normalization services.

This package provides:
- The shared data model (NormalizedResult, stream events)
- Response shape classification
- SSE frame decoding and encoding
- Call timing
- The chat pipeline (import from ``fiesta.app.services.pipeline``)
"""

from fiesta.app.services.classifier import Classification, classify, extract_error_message
from fiesta.app.services.models import (
    ChatMessage,
    ChatRequest,
    DoneEvent,
    ErrorEvent,
    KeyType,
    MetaEvent,
    NormalizedResult,
    StreamEvent,
    TokenEvent,
)
from fiesta.app.services.sse import SSEDecoder, encode_event
from fiesta.app.services.telemetry import Stopwatch, timed_complete, timed_stream

__all__ = [
    "Classification",
    "classify",
    "extract_error_message",
    "ChatMessage",
    "ChatRequest",
    "DoneEvent",
    "ErrorEvent",
    "KeyType",
    "MetaEvent",
    "NormalizedResult",
    "StreamEvent",
    "TokenEvent",
    "SSEDecoder",
    "encode_event",
    "Stopwatch",
    "timed_complete",
    "timed_stream",
]
