"""Data model shared by the normalization pipeline.

``NormalizedResult`` is the one shape every synchronous backend call is
reduced to; the ``*Event`` dataclasses are what a streamed call is reduced
to. Both serialize to the JSON the UI consumes.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class KeyType(str, Enum):
    """Whose credentials paid for a backend call."""
    USER = "user"
    SHARED = "shared"
    NONE = "none"


class ChatMessage(BaseModel):
    """Message in a chat conversation."""
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    """A chat request as it reaches the core.

    Validation of lengths and sanitization happen at the HTTP boundary; the
    core trusts what it is given.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    model: str = ""
    messages: list[ChatMessage] = Field(default_factory=list)
    api_key: Optional[str] = None
    image_data_url: Optional[str] = None

    def last_user_message(self) -> Optional[ChatMessage]:
        for message in reversed(self.messages):
            if message.role == "user":
                return message
        return None

    def with_model(self, model: str) -> "ChatRequest":
        return self.model_copy(update={"model": model})


class NormalizedResult(BaseModel):
    """Uniform outcome of one backend call.

    Exactly one of ``text``/``error`` is set unless the call was aborted, in
    which case neither is. Timing fields are stamped by the telemetry
    wrapper and stay ``None`` on a result that never went through it.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    text: Optional[str] = None
    error: Optional[str] = None
    provider: str
    used_key_type: KeyType = KeyType.NONE
    model: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    response_time: Optional[float] = None  # milliseconds
    aborted: bool = False
    low_confidence: bool = False

    @model_validator(mode="after")
    def check_outcome(self) -> "NormalizedResult":
        if self.text is not None and self.error is not None:
            raise ValueError("a result cannot carry both text and error")
        if self.text is not None and not self.text.strip():
            raise ValueError("result text must not be blank")
        if self.aborted:
            if self.text is not None or self.error is not None:
                raise ValueError("an aborted result carries neither text nor error")
        elif self.text is None and self.error is None:
            raise ValueError("a result must carry text or error")
        return self

    @property
    def ok(self) -> bool:
        return self.text is not None

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


@dataclass(frozen=True)
class TokenEvent:
    delta: str


@dataclass(frozen=True)
class MetaEvent:
    provider: Optional[str] = None
    used_key_type: Optional[KeyType] = None
    model: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    response_time: Optional[float] = None


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    code: Optional[int] = None
    provider: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    response_time: Optional[float] = None


@dataclass(frozen=True)
class DoneEvent:
    aborted: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    response_time: Optional[float] = None


StreamEvent = Union[TokenEvent, MetaEvent, ErrorEvent, DoneEvent]
