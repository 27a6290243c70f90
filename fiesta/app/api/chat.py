"""Chat API endpoints."""

import asyncio
import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from fiesta.app.core.config import settings
from fiesta.app.core.logging import get_log_context, get_logger
from fiesta.app.exceptions import RequestValidationError
from fiesta.app.middleware.request_id import get_request_id
from fiesta.app.services.models import ChatMessage, ChatRequest, DoneEvent, MetaEvent
from fiesta.app.services.pipeline import ChatPipeline, get_chat_pipeline
from fiesta.app.services.sse import encode_event

router = APIRouter(prefix="/api")
logger = get_logger(__name__)

VALID_ROLES = ("user", "assistant", "system")
MAX_COMPARE_TARGETS = 10


class CompareTarget(BaseModel):
    provider: str = Field(..., min_length=1, max_length=50)
    model: str = ""


class CompareRequest(BaseModel):
    """Request body for ``POST /api/compare``; messages are validated separately."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    targets: List[CompareTarget] = Field(..., min_length=1, max_length=MAX_COMPARE_TARGETS)


def sanitize_input(value: str, max_chars: Optional[int] = None) -> str:
    """Strip angle brackets, trim, and cap the length."""
    limit = max_chars if max_chars is not None else settings.max_message_chars
    return value.replace("<", "").replace(">", "").strip()[:limit]


def validate_chat_body(body: Any) -> None:
    """Check an inbound chat body.

    Raises:
        RequestValidationError: With a message naming the first problem found
    """
    if not body or not isinstance(body, dict):
        raise RequestValidationError("Request body is required")

    messages = body.get("messages")
    if not isinstance(messages, list):
        raise RequestValidationError("Messages array is required")
    if not messages:
        raise RequestValidationError("At least one message is required")
    if len(messages) > settings.max_messages:
        raise RequestValidationError(f"Too many messages (max {settings.max_messages})")

    for message in messages:
        if not message or not isinstance(message, dict):
            raise RequestValidationError("Invalid message format")
        if not message.get("role") or not message.get("content"):
            raise RequestValidationError("Each message must have role and content")
        if message["role"] not in VALID_ROLES:
            raise RequestValidationError("Invalid message role")
        content = message["content"]
        if not isinstance(content, str) or len(content) > settings.max_message_chars:
            raise RequestValidationError(
                f"Message content must be string under {settings.max_message_chars} characters"
            )

    model = body.get("model")
    if model and (not isinstance(model, str) or len(model) > settings.max_model_chars):
        raise RequestValidationError("Invalid model parameter")

    for field in ("apiKey", "imageDataUrl"):
        value = body.get(field)
        if value is not None and not isinstance(value, str):
            raise RequestValidationError(f"Invalid {field} parameter")


def parse_chat_request(body: Any) -> ChatRequest:
    """Validate and sanitize an inbound body into a ChatRequest."""
    validate_chat_body(body)
    messages = [
        ChatMessage(role=m["role"], content=sanitize_input(m["content"]))
        for m in body["messages"]
    ]
    model = body.get("model") or ""
    return ChatRequest(
        model=sanitize_input(model) if model else "",
        messages=messages,
        api_key=body.get("apiKey") or None,
        image_data_url=body.get("imageDataUrl") or None,
    )


async def read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise RequestValidationError("Invalid JSON in request body")


def get_pipeline() -> ChatPipeline:
    """Get the chat pipeline as a FastAPI dependency."""
    return get_chat_pipeline()


@router.get("/providers")
async def list_providers(pipeline: ChatPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """List registered providers."""
    registry = pipeline.registry
    return {"providers": [registry.get(name).describe() for name in registry.names()]}


@router.post("/chat/{provider}")
async def chat(
    provider: str,
    request: Request,
    pipeline: ChatPipeline = Depends(get_pipeline),
) -> JSONResponse:
    """Run one chat call and return its normalized result.

    Backend failures are reported in the ``error`` field with status 200;
    only unknown providers and invalid bodies produce error statuses.
    """
    chat_request = parse_chat_request(await read_json(request))
    pipeline.provider(provider)

    logger.info(
        "Chat request",
        extra=get_log_context(
            request_id=get_request_id(request),
            provider=provider,
            model=chat_request.model or None,
        ),
    )
    result = await pipeline.complete(provider, chat_request, asyncio.Event())
    return JSONResponse(content=result.to_json())


@router.post("/chat/{provider}/stream")
async def chat_stream(
    provider: str,
    request: Request,
    pipeline: ChatPipeline = Depends(get_pipeline),
) -> StreamingResponse:
    """Stream one chat call as normalized SSE frames.

    The last frame before ``[DONE]`` is a meta frame carrying the call's
    timing.
    """
    chat_request = parse_chat_request(await read_json(request))
    abort = asyncio.Event()
    events = pipeline.stream(provider, chat_request, abort)
    request_id = get_request_id(request)

    async def stream_generator():
        try:
            async for event in events:
                if isinstance(event, DoneEvent):
                    yield encode_event(
                        MetaEvent(
                            provider=provider,
                            start_time=event.start_time,
                            end_time=event.end_time,
                            response_time=event.response_time,
                        )
                    )
                yield encode_event(event)
        except asyncio.CancelledError:
            # Client went away; stop the backend call too.
            abort.set()
            logger.info(
                "Client disconnected during stream",
                extra=get_log_context(request_id=request_id, provider=provider),
            )
            raise

    return StreamingResponse(
        stream_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/compare")
async def compare(
    request: Request,
    pipeline: ChatPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    """Send one conversation to several provider/model targets concurrently."""
    body = await read_json(request)
    chat_request = parse_chat_request(body)
    try:
        compare_request = CompareRequest.model_validate(body)
    except ValidationError as e:
        raise RequestValidationError(f"Invalid targets: {e.errors()[0]['msg']}")

    targets = []
    for target in compare_request.targets:
        model = target.model
        if len(model) > settings.max_model_chars:
            raise RequestValidationError("Invalid model parameter")
        targets.append((target.provider, chat_request.with_model(sanitize_input(model))))

    results = await pipeline.compare(targets, asyncio.Event())
    return {"results": [r.to_json() for r in results]}
