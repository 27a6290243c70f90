"""Response shape classification.

Backends answer in many shapes: a bare string, an OpenAI ``choices`` array,
an Anthropic-style content block list, a ``{success: false}`` envelope, or
something nobody documented. :func:`classify` reduces any of them to either
text or an error by trying an ordered list of extractors; the first one that
recognises the shape decides the outcome.

Order matters. Error envelopes are checked before any success shape because
some backends wrap an error inside an otherwise successful-looking body, and
the loose "any long string" scan runs last because it would happily return a
diagnostic message as the answer.
"""

from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Tuple

from fiesta.app.core.logging import get_logger

logger = get_logger(__name__)

EMPTY_RESPONSE = "empty response"
UNKNOWN_ERROR_OBJECT = "unknown error object"
NO_TEXT_BLOCKS = "no text blocks"

# Minimum length for a value picked up by the last-resort string scan.
SCAN_MIN_LENGTH = 10


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one raw reply.

    Attributes:
        text: Extracted answer, trimmed and non-empty, or None
        error: Error message, or None
        rule: Name of the extractor that decided the outcome
        low_confidence: True when the answer came from the string scan
    """
    text: Optional[str] = None
    error: Optional[str] = None
    rule: str = ""
    low_confidence: bool = False

    @property
    def ok(self) -> bool:
        return self.text is not None


Extractor = Callable[[Any], Optional[Classification]]


def _success(text: str, rule: str, low_confidence: bool = False) -> Classification:
    return Classification(text=text, rule=rule, low_confidence=low_confidence)


def _failure(error: str, rule: str) -> Classification:
    return Classification(error=error, rule=rule)


def _format_keys(obj: Mapping) -> str:
    return ", ".join(str(k) for k in obj.keys())


def extract_error_message(error: Any, default: str = UNKNOWN_ERROR_OBJECT) -> str:
    """Flatten an error value of unknown shape into one message.

    Strings are returned as they are. Mappings are probed for ``message``,
    then a string ``error``, then a nested ``error`` mapping, then ``type``,
    then a numeric ``code``.
    """
    if isinstance(error, str):
        return error.strip() or default
    if not isinstance(error, Mapping):
        return default

    message = error.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()

    inner = error.get("error")
    if isinstance(inner, str) and inner.strip():
        return inner.strip()
    if isinstance(inner, Mapping):
        nested = extract_error_message(inner, default="")
        if nested:
            return nested

    error_type = error.get("type")
    if isinstance(error_type, str) and error_type:
        return f"Error type: {error_type}"

    code = error.get("code")
    if isinstance(code, int) and not isinstance(code, bool):
        return f"Error code: {code}"

    return default


def _get_path(obj: Any, *path: Any) -> Any:
    """Walk mapping keys and sequence indexes, returning None on any miss."""
    current = obj
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
        elif not isinstance(current, Mapping):
            return None
        current = current[step] if isinstance(step, int) else current.get(step)
        if current is None:
            return None
    return current


# ---------------------------------------------------------------------------
# Extractors. Each is total and side-effect free: it returns None when the
# shape does not apply, otherwise the final classification.
# ---------------------------------------------------------------------------

def _from_string(raw: Any) -> Optional[Classification]:
    if isinstance(raw, str):
        return _success(raw, "string")
    return None


def _from_nothing(raw: Any) -> Optional[Classification]:
    if raw is None:
        return _failure(EMPTY_RESPONSE, "null")
    return None


def _from_non_object(raw: Any) -> Optional[Classification]:
    if isinstance(raw, Mapping):
        return None
    return _failure(f"unexpected reply type: {type(raw).__name__}", "non_object")


def _from_success_false(raw: Mapping) -> Optional[Classification]:
    if raw.get("success") is False:
        return _failure(extract_error_message(raw.get("error")), "success_false")
    return None


def _from_error_field(raw: Mapping) -> Optional[Classification]:
    error = raw.get("error")
    if error is None or error is False:
        return None
    return _failure(extract_error_message(error), "error_field")


def _string_probe(rule: str, *path: Any) -> Extractor:
    def probe(raw: Mapping) -> Optional[Classification]:
        value = _get_path(raw, *path)
        if isinstance(value, str):
            return _success(value, rule)
        return None

    probe.__name__ = f"_probe_{rule}"
    return probe


def _from_content_blocks(raw: Mapping) -> Optional[Classification]:
    blocks = _get_path(raw, "message", "content")
    if not isinstance(blocks, list):
        return None
    texts = [
        block["text"]
        for block in blocks
        if isinstance(block, Mapping)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
    ]
    if not texts:
        return _failure(NO_TEXT_BLOCKS, "message.content[]")
    return _success("".join(texts), "message.content[]")


def _from_any_long_string(raw: Mapping) -> Optional[Classification]:
    for key, value in raw.items():
        if isinstance(value, str) and value.strip() and len(value) > SCAN_MIN_LENGTH:
            logger.warning(
                "Reply text taken from unrecognised field by string scan",
                extra={"field": str(key), "keys": _format_keys(raw)},
            )
            return _success(value, f"scan:{key}", low_confidence=True)
    return None


def _unrecognised(raw: Mapping) -> Classification:
    return _failure(
        f"unhandled reply format with keys: {_format_keys(raw) or '(none)'}",
        "unrecognised",
    )


# Shape checks that run before any success probing.
GUARD_EXTRACTORS: List[Extractor] = [
    _from_string,
    _from_nothing,
    _from_non_object,
    _from_success_false,
    _from_error_field,
]

# Success shapes in priority order.
SUCCESS_EXTRACTORS: List[Extractor] = [
    _string_probe("choices[0].message.content", "choices", 0, "message", "content"),
    _string_probe("message.content", "message", "content"),
    _from_content_blocks,
    _string_probe("message.text", "message", "text"),
    _string_probe("message.data", "message", "data"),
    _string_probe("text", "text"),
    _string_probe("content", "content"),
    _string_probe("result", "result"),
    _string_probe("response", "response"),
    _string_probe("data", "data"),
    _string_probe("answer", "answer"),
    _string_probe("output", "output"),
]


def _finalize(result: Classification) -> Classification:
    if result.text is None:
        return result
    text = result.text.strip()
    if not text:
        return _failure(EMPTY_RESPONSE, result.rule)
    return Classification(text=text, rule=result.rule, low_confidence=result.low_confidence)


def classify(raw: Any, *, allow_scan: bool = True) -> Classification:
    """Classify a raw backend reply as text or error.

    Args:
        raw: Parsed reply of any shape
        allow_scan: Whether to fall back to the first long string value of an
            otherwise unrecognised object. Such answers are marked
            ``low_confidence``.

    Returns:
        A Classification with exactly one of ``text``/``error`` set
    """
    extractors: Tuple[Extractor, ...] = tuple(GUARD_EXTRACTORS) + tuple(SUCCESS_EXTRACTORS)
    if allow_scan:
        extractors += (_from_any_long_string,)

    for extractor in extractors:
        result = extractor(raw)
        if result is not None:
            return _finalize(result)
    return _unrecognised(raw)


def describe_exception(exc: BaseException) -> str:
    """Turn an exception raised by a backend callable into an error message.

    Exceptions that carry a structured payload (a ``body``/``error``
    attribute, or a single mapping argument) are flattened with the same
    cascade used for error envelopes; others fall back to ``str(exc)`` and
    finally the exception class name.
    """
    for attr in ("body", "error", "response_body"):
        payload = getattr(exc, attr, None)
        if isinstance(payload, Mapping):
            if payload.get("success") is False or "error" in payload:
                return extract_error_message(payload.get("error"), default=extract_error_message(payload))
            return extract_error_message(payload, default=f"error object with keys: {_format_keys(payload)}")

    if len(exc.args) == 1 and isinstance(exc.args[0], Mapping):
        payload = exc.args[0]
        return extract_error_message(payload, default=f"error object with keys: {_format_keys(payload)}")

    message = str(exc).strip()
    return message or type(exc).__name__
