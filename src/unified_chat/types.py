"""Provider-agnostic request/response models."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Literal, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from unified_chat.errors import APIError, ErrorKind

ModelId = str
StreamRole = Literal["assistant", "reasoning"]


class FunctionCall(BaseModel):
    """Function name plus its raw JSON argument string."""

    name: str
    arguments: str = ""


class ToolCall(BaseModel):
    """Tool invocation requested by the model."""

    id: str
    type: str = "function"
    function: FunctionCall


class Message(BaseModel):
    """Single chat message.

    ``content`` is plain text that may embed ``<image-uuid>`` / ``<file-uuid>``
    attachment markers.
    """

    role: str
    content: str = ""
    tool_call_id: str | None = None
    name: str | None = None
    tool_calls: list[ToolCall] | None = None


class StreamEvent(BaseModel):
    """One normalized streaming update."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    finished: bool = False
    error: APIError | None = None
    text_delta: str | None = None
    role: StreamRole | None = None
    tool_calls: list[ToolCall] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.finished or self.error is not None

    @property
    def has_payload(self) -> bool:
        return bool(self.text_delta) or bool(self.tool_calls)

    @classmethod
    def done(cls) -> StreamEvent:
        return cls(finished=True)

    @classmethod
    def failure(cls, error: APIError) -> StreamEvent:
        return cls(finished=True, error=error)

    @classmethod
    def decoding_failed(cls, message: str) -> StreamEvent:
        return cls.failure(APIError(ErrorKind.DECODING_FAILED, message))


class ParsedMessage(NamedTuple):
    """Result of parsing one complete non-streaming response body."""

    text: str | None
    role: str | None = None
    tool_calls: list[ToolCall] | None = None


class ChatResponse(BaseModel):
    """Normalized non-streaming chat response."""

    provider: str
    model: str
    text: str | None = None
    role: str | None = None
    tool_calls: list[ToolCall] | None = None


class PreparedRequest(BaseModel):
    """Vendor HTTP request built without performing any I/O."""

    method: str = "POST"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    json_body: dict[str, Any] | None = None
    params: dict[str, str] = Field(default_factory=dict)


def coerce_messages(messages: Iterable[Message | Mapping[str, Any]]) -> list[Message]:
    """Accept ``Message`` objects or plain mappings from callers."""
    return [m if isinstance(m, Message) else Message.model_validate(m) for m in messages]
