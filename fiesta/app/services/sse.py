"""Server-Sent-Events frame decoding and encoding.

:class:`SSEDecoder` turns the chunks of a live response body into stream
events. Transport chunks do not line up with frames, so the trailing partial
frame of every chunk is carried over and completed by the next one.

The frames it understands are the ones :func:`encode_event` writes::

    data: {"provider": "openrouter", "usedKeyType": "shared"}

    data: {"delta": "Hel"}

    data: {"error": "Rate limited", "code": 429}

    data: [DONE]

plus OpenAI-style ``chat.completion.chunk`` frames, whose token text lives in
``choices[0].delta.content``.
"""

import codecs
import json
from typing import Any, List, Mapping, Optional, Union

from fiesta.app.core.logging import get_logger
from fiesta.app.services.classifier import extract_error_message
from fiesta.app.services.models import (
    DoneEvent,
    ErrorEvent,
    KeyType,
    MetaEvent,
    StreamEvent,
    TokenEvent,
)

logger = get_logger(__name__)

FRAME_DELIMITER = "\n\n"
DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def _as_key_type(value: Any) -> Optional[KeyType]:
    try:
        return KeyType(value)
    except ValueError:
        return None


def _token_text(payload: Mapping) -> Optional[str]:
    delta = payload.get("delta")
    if isinstance(delta, str):
        return delta
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        chunk_delta = choices[0].get("delta")
        if isinstance(chunk_delta, Mapping) and isinstance(chunk_delta.get("content"), str):
            return chunk_delta["content"]
    return None


def _error_code(payload: Mapping) -> Optional[int]:
    candidates = [payload.get("code")]
    error = payload.get("error")
    if isinstance(error, Mapping):
        candidates.append(error.get("code"))
    for candidate in candidates:
        if isinstance(candidate, int) and not isinstance(candidate, bool):
            return candidate
        if isinstance(candidate, str) and candidate.isdigit():
            return int(candidate)
    return None


class SSEDecoder:
    """Stateful decoder for one response body.

    States are *streaming* and *closed*. Once closed (``[DONE]`` seen, an
    error frame seen, end of input or abort) every further call returns no
    events. Each decoder emits exactly one ``DoneEvent`` over its lifetime.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._buffer = ""
        self._closed = False
        # Incremental decoding keeps multi-byte characters split across
        # chunks intact.
        self._text_decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, chunk: Union[bytes, str]) -> List[StreamEvent]:
        """Consume one transport chunk and return the events it completes."""
        if self._closed:
            return []

        if isinstance(chunk, bytes):
            chunk = self._text_decoder.decode(chunk)
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")

        *frames, self._buffer = self._buffer.split(FRAME_DELIMITER)

        events: List[StreamEvent] = []
        for frame in frames:
            events.extend(self._decode_frame(frame))
            if self._closed:
                break
        return events

    def close(self) -> List[StreamEvent]:
        """Signal end of input.

        A body that ends without ``[DONE]`` still terminates the stream. A
        trailing frame that lacks only its final delimiter is decoded first.
        """
        if self._closed:
            return []
        events: List[StreamEvent] = []
        tail = self._buffer + self._text_decoder.decode(b"", final=True)
        self._buffer = ""
        if tail.strip():
            events.extend(self._decode_frame(tail))
        if not self._closed:
            events.append(self._finish())
        return events

    def abort(self) -> List[StreamEvent]:
        """Stop decoding on consumer request; buffered input is discarded."""
        if self._closed:
            return []
        self._buffer = ""
        return [self._finish(aborted=True)]

    def _finish(self, aborted: bool = False) -> DoneEvent:
        self._closed = True
        return DoneEvent(aborted=aborted)

    def _decode_frame(self, frame: str) -> List[StreamEvent]:
        line = frame.strip()
        if not line.startswith(DATA_PREFIX):
            # Comments and keep-alives (": ping") and other fields.
            return []
        payload_text = line[len(DATA_PREFIX):].strip()

        if payload_text == DONE_SENTINEL:
            return [self._finish()]

        try:
            payload = json.loads(payload_text)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed SSE frame", extra={"frame_preview": payload_text[:100]})
            return []
        if not isinstance(payload, Mapping):
            return []

        events: List[StreamEvent] = []

        token = _token_text(payload)
        if token:
            events.append(TokenEvent(delta=token))

        provider = payload.get("provider")
        used_key_type = payload.get("usedKeyType")
        if provider or used_key_type:
            events.append(
                MetaEvent(
                    provider=provider if isinstance(provider, str) else None,
                    used_key_type=_as_key_type(used_key_type),
                )
            )

        error = payload.get("error")
        if error is not None and error is not False:
            events.append(
                ErrorEvent(
                    message=extract_error_message(error, default="Stream error"),
                    code=_error_code(payload),
                    provider=provider if isinstance(provider, str) else None,
                )
            )
            events.append(self._finish())

        return events


def _timing(event: Any) -> dict:
    data = {}
    if event.start_time is not None:
        data["startTime"] = event.start_time.isoformat()
    if event.end_time is not None:
        data["endTime"] = event.end_time.isoformat()
    if event.response_time is not None:
        data["responseTime"] = event.response_time
    return data


def encode_event(event: StreamEvent) -> str:
    """Serialize an event as one SSE frame, delimiter included."""
    if isinstance(event, TokenEvent):
        payload: dict = {"delta": event.delta}
    elif isinstance(event, MetaEvent):
        payload = {}
        if event.provider:
            payload["provider"] = event.provider
        if event.used_key_type is not None:
            payload["usedKeyType"] = event.used_key_type.value
        if event.model:
            payload["model"] = event.model
        payload.update(_timing(event))
    elif isinstance(event, ErrorEvent):
        payload = {"error": event.message}
        if event.code is not None:
            payload["code"] = event.code
        if event.provider:
            payload["provider"] = event.provider
        payload.update(_timing(event))
    else:
        return f"{DATA_PREFIX} {DONE_SENTINEL}{FRAME_DELIMITER}"
    return f"{DATA_PREFIX} {json.dumps(payload, ensure_ascii=False)}{FRAME_DELIMITER}"
