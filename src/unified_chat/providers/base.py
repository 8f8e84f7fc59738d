"""Provider-agnostic base interface: request execution and stream driving."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from contextlib import aclosing
from collections.abc import AsyncIterator, Iterable, Mapping
from typing import Any, ClassVar

import httpx

from unified_chat.attachments import AttachmentResolver, NullAttachmentResolver
from unified_chat.config import REQUEST_TIMEOUT_S, ProviderConfig, http_timeout
from unified_chat.errors import (
    APIError,
    ErrorKind,
    FrameDecodeError,
    classify_http_response,
    classify_response,
    classify_transport_error,
)
from unified_chat.transport import StreamFormat, iter_frames
from unified_chat.types import (
    ChatResponse,
    Message,
    ModelId,
    ParsedMessage,
    PreparedRequest,
    StreamEvent,
    ToolCall,
    coerce_messages,
)

MessagesInput = Iterable[Message | Mapping[str, Any]]
Tools = list[dict[str, Any]] | None


def load_json(data: bytes | str) -> Any:
    """Decode a JSON body; raises ``ValueError`` on malformed input."""
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    return json.loads(data)


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def decode_frame(data: bytes | str) -> str:
    return data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data


def parse_tool_calls(raw: Any, *, strict: bool = True) -> list[ToolCall] | None:
    """Parse OpenAI-shaped tool calls.

    ``strict`` drops entries missing id/type/name/arguments (complete
    responses); streaming deltas fill gaps with empty strings instead.
    """
    if not isinstance(raw, list):
        return None
    calls: list[ToolCall] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        function = item.get("function") if isinstance(item.get("function"), dict) else {}
        fields = (item.get("id"), item.get("type"), function.get("name"), function.get("arguments"))
        if strict and not all(isinstance(f, str) for f in fields):
            BaseProvider._logger.warning("Invalid tool call structure: %s", item)
            continue
        if not strict and not isinstance(item.get("index"), int):
            BaseProvider._logger.warning("Missing index in tool call delta")
            continue
        call_id, call_type, name, arguments = (f if isinstance(f, str) else "" for f in fields)
        calls.append(
            ToolCall(id=call_id, type=call_type, function={"name": name, "arguments": arguments})
        )
    return calls


class BaseProvider(ABC):
    """Abstract base class for provider implementations.

    Subclasses supply the vendor protocol (``prepare_request`` and the two
    parsers); this class runs the HTTP calls and turns framed bytes into a
    single ordered stream of ``StreamEvent`` values.
    """

    stream_format: ClassVar[StreamFormat] = StreamFormat.SSE
    default_timeout_s: ClassVar[float] = REQUEST_TIMEOUT_S
    uses_http: ClassVar[bool] = True
    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        config: ProviderConfig,
        *,
        resolver: AttachmentResolver | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.config = config
        self.name = config.name
        self.model = config.model
        self._resolver: AttachmentResolver = resolver or NullAttachmentResolver()
        self._owns_client = client is None and self.uses_http
        self._client: httpx.AsyncClient | None = client
        if self._owns_client:
            self._client = httpx.AsyncClient(timeout=http_timeout(timeout_s or self.default_timeout_s))

    @property
    def api_url(self) -> str:
        return self.config.api_url

    @property
    def api_key(self) -> str:
        return self.config.api_key

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise APIError(ErrorKind.NO_API_SERVICE, f"{self.name} does not issue HTTP requests")
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this provider created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()

    async def __aenter__(self) -> BaseProvider:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Vendor protocol
    # ------------------------------------------------------------------

    @abstractmethod
    def prepare_request(
        self,
        messages: list[Message],
        tools: Tools,
        model: str,
        temperature: float,
        stream: bool,
    ) -> PreparedRequest:
        """Build the vendor HTTP request. Must not perform network I/O."""
        raise NotImplementedError

    @abstractmethod
    def parse_json_response(self, data: bytes | str) -> ParsedMessage | None:
        """Parse one complete response body; ``None`` on unrecognized shape."""
        raise NotImplementedError

    @abstractmethod
    def parse_delta_json_response(self, data: bytes | str | None, state: Any = None) -> StreamEvent:
        """Parse exactly one framed streaming payload."""
        raise NotImplementedError

    def new_stream_state(self, messages: list[Message]) -> Any:
        """Fresh per-call accumulator handed to ``parse_delta_json_response``."""
        return None

    def streams_as_single_shot(self, messages: list[Message]) -> bool:
        """Whether a streaming call should degrade to one non-streaming round-trip."""
        return False

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def fetch_models(self) -> list[ModelId]:
        """Return the provider's model catalog."""
        return []

    async def send_message(
        self,
        messages: MessagesInput,
        tools: Tools = None,
        temperature: float = 1.0,
    ) -> ChatResponse:
        """Single round-trip completion."""
        msgs = coerce_messages(messages)
        request = self.prepare_request(msgs, tools, self.model, temperature, stream=False)
        response = await self._execute(request)

        parsed = self.parse_json_response(response.content)
        if parsed is None:
            self._logger.debug(
                "Default parsing failed. Handler: %s. Response bytes: %d",
                self.name,
                len(response.content),
            )
            raise APIError(ErrorKind.DECODING_FAILED, "Failed to parse response")

        return ChatResponse(
            provider=self.name,
            model=self.model,
            text=parsed.text,
            role=parsed.role,
            tool_calls=parsed.tool_calls,
        )

    def send_message_stream(
        self,
        messages: MessagesInput,
        tools: Tools = None,
        temperature: float = 1.0,
    ) -> AsyncIterator[StreamEvent]:
        """Return an async iterator of normalized events ending in one terminal event."""
        msgs = coerce_messages(messages)
        if self.streams_as_single_shot(msgs):
            return self._single_shot_stream(msgs, tools, temperature)
        return self._stream(msgs, tools, temperature)

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _build_http_request(self, request: PreparedRequest) -> httpx.Request:
        return self.http_client.build_request(
            request.method,
            request.url,
            headers=request.headers,
            json=request.json_body,
            params=request.params or None,
        )

    async def _execute(self, request: PreparedRequest) -> httpx.Response:
        try:
            response = await self.http_client.send(self._build_http_request(request))
        except httpx.HTTPError as exc:
            self._logger.error("%s request failed: %s", self.name, exc)
            raise classify_transport_error(exc) from exc

        error = classify_http_response(response)
        if error is not None:
            self._logger.error("%s returned %s: %s", self.name, response.status_code, error.message)
            raise error
        return response

    async def _get_json(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        request = PreparedRequest(method="GET", url=url, headers=headers or {}, params=params or {})
        response = await self._execute(request)
        try:
            return response.json()
        except ValueError as exc:
            raise APIError(ErrorKind.DECODING_FAILED, f"Failed to decode models list: {exc}") from exc

    async def _single_shot_stream(
        self,
        messages: list[Message],
        tools: Tools,
        temperature: float,
    ) -> AsyncIterator[StreamEvent]:
        try:
            response = await self.send_message(messages, tools, temperature)
        except APIError as exc:
            yield StreamEvent.failure(exc)
            return
        yield StreamEvent(
            finished=True,
            text_delta=response.text,
            role="assistant",
            tool_calls=response.tool_calls,
        )

    async def _stream(
        self,
        messages: list[Message],
        tools: Tools,
        temperature: float,
    ) -> AsyncIterator[StreamEvent]:
        state = self.new_stream_state(messages)
        try:
            request = self.prepare_request(messages, tools, self.model, temperature, stream=True)
        except APIError as exc:
            yield StreamEvent.failure(exc)
            return

        self._logger.debug("Starting stream: %s", request.url)
        skipped: FrameDecodeError | None = None

        try:
            async with self.http_client.stream(
                request.method,
                request.url,
                headers=request.headers,
                json=request.json_body,
                params=request.params or None,
            ) as response:
                if not 200 <= response.status_code <= 299:
                    body = await response.aread()
                    error = classify_response(response.status_code, body)
                    self._logger.error("HTTP error %d: %s", response.status_code, error.message)
                    yield StreamEvent.failure(error)
                    return

                async with aclosing(iter_frames(response.aiter_bytes(), self.stream_format)) as frames:
                    async for frame in frames:
                        event = self.parse_delta_json_response(frame, state)

                        if isinstance(event.error, FrameDecodeError):
                            if skipped is not None:
                                self._logger.warning("Skipping malformed frame: %s", skipped.message)
                            skipped = event.error
                            continue
                        if skipped is not None:
                            self._logger.warning("Skipping malformed frame: %s", skipped.message)
                            skipped = None

                        if event.is_terminal:
                            yield event
                            return
                        if event.has_payload:
                            yield event
        except httpx.HTTPError as exc:
            self._logger.error("Stream failed: %s", exc)
            yield StreamEvent.failure(classify_transport_error(exc))
            return

        if skipped is not None:
            yield StreamEvent.failure(skipped)
            return
        yield StreamEvent.done()
