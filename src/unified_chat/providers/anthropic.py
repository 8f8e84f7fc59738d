"""Anthropic provider implementation."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from unified_chat.attachments import encode_base64, has_markers, resolve_attachments, sniff_image_mime
from unified_chat.content import compose_response
from unified_chat.errors import APIError, ErrorKind, FrameDecodeError
from unified_chat.providers.base import BaseProvider, Tools, as_dict, decode_frame, load_json
from unified_chat.types import FunctionCall, Message, ModelId, ParsedMessage, PreparedRequest, StreamEvent, ToolCall

_API_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 4096
_EXTENDED_MAX_TOKENS = 8192
_EXTENDED_OUTPUT_MODELS = frozenset({"claude-3-5-sonnet-latest"})


class ClaudeProvider(BaseProvider):
    """Async wrapper for the Anthropic Messages API with typed SSE streaming."""

    _logger = logging.getLogger(__name__)

    def _headers(self) -> dict[str, str]:
        return {
            "X-API-Key": self.api_key,
            "Anthropic-Version": _API_VERSION,
            "Content-Type": "application/json",
        }

    def prepare_request(
        self,
        messages: list[Message],
        tools: Tools,
        model: str,
        temperature: float,
        stream: bool,
    ) -> PreparedRequest:
        system_text, rest = self._split_system(messages)
        max_tokens = _EXTENDED_MAX_TOKENS if model in _EXTENDED_OUTPUT_MODELS else _DEFAULT_MAX_TOKENS

        payload: dict[str, Any] = {
            "model": model,
            "messages": [self._serialize_message(m) for m in rest],
            "stream": stream,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if system_text:
            payload["system"] = system_text
        if tools:
            payload["tools"] = tools

        return PreparedRequest(url=self.api_url, headers=self._headers(), json_body=payload)

    @staticmethod
    def _split_system(messages: list[Message]) -> tuple[str, list[Message]]:
        # Only a leading system message is lifted; later ones stay in place.
        if messages and messages[0].role == "system":
            return messages[0].content, messages[1:]
        return "", list(messages)

    def _serialize_message(self, message: Message) -> dict[str, Any]:
        if not has_markers(message.content):
            return {"role": message.role, "content": message.content}

        resolved = resolve_attachments(message.content, self._resolver)
        blocks: list[dict[str, Any]] = [{"type": "text", "text": t} for t in resolved.file_texts]
        if resolved.text:
            blocks.append({"type": "text", "text": resolved.text})
        for data in resolved.images:
            blocks.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": sniff_image_mime(data) or "image/jpeg",
                        "data": encode_base64(data),
                    },
                }
            )
        return {"role": message.role, "content": blocks}

    def parse_json_response(self, data: bytes | str) -> ParsedMessage | None:
        try:
            payload = load_json(data)
        except ValueError as exc:
            self._logger.error("Claude JSON parse error: %s", exc)
            return None

        if not isinstance(payload, dict):
            return None
        role = payload.get("role")
        blocks = payload.get("content")
        if not isinstance(role, str) or not isinstance(blocks, list):
            return None

        texts: list[str] = []
        thoughts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            kind = block.get("type")
            if kind == "text" and isinstance(block.get("text"), str):
                texts.append(block["text"])
            elif kind == "thinking" and isinstance(block.get("thinking"), str):
                thoughts.append(block["thinking"])
            elif kind == "tool_use" and isinstance(block.get("name"), str):
                tool_calls.append(
                    ToolCall(
                        id=str(block.get("id", "")),
                        function=FunctionCall(
                            name=block["name"],
                            arguments=json.dumps(block.get("input") or {}),
                        ),
                    )
                )

        text = compose_response("\n".join(thoughts), "\n".join(texts))
        if text is None and not tool_calls:
            return None
        return ParsedMessage(text, role, tool_calls or None)

    def parse_delta_json_response(self, data: bytes | str | None, state: Any = None) -> StreamEvent:
        if data is None:
            return StreamEvent.decoding_failed("No data received in SSE event")

        try:
            event = json.loads(decode_frame(data))
        except ValueError as exc:
            self._logger.debug("Skipping non-JSON streaming chunk: %s", exc)
            return StreamEvent(error=FrameDecodeError("Failed to parse JSON"))
        if not isinstance(event, dict):
            return StreamEvent()

        event_type = event.get("type")
        if event_type == "content_block_start":
            block = as_dict(event.get("content_block"))
            if isinstance(block.get("text"), str) and block["text"]:
                return StreamEvent(text_delta=block["text"], role="assistant")
            if isinstance(block.get("thinking"), str) and block["thinking"]:
                return StreamEvent(text_delta=block["thinking"], role="reasoning")
        elif event_type == "content_block_delta":
            delta = as_dict(event.get("delta"))
            if delta.get("type") == "thinking_delta" and isinstance(delta.get("thinking"), str):
                return StreamEvent(text_delta=delta["thinking"], role="reasoning")
            if isinstance(delta.get("text"), str):
                return StreamEvent(text_delta=delta["text"], role="assistant")
        elif event_type == "message_delta":
            delta = as_dict(event.get("delta"))
            if delta.get("stop_reason") == "end_turn":
                return StreamEvent.done()
        elif event_type == "message_stop":
            return StreamEvent.done()
        elif event_type == "error":
            error = as_dict(event.get("error"))
            message = error.get("message")
            self._logger.error("Claude stream error event: %s", event)
            return StreamEvent.failure(APIError(ErrorKind.SERVER_ERROR, message or "Stream error"))
        # ping and unknown event types carry no payload
        return StreamEvent()

    async def fetch_models(self) -> list[ModelId]:
        url = httpx.URL(self.api_url)
        parent = url.path.rstrip("/").rsplit("/", 1)[0]
        payload = await self._get_json(
            str(url.copy_with(path=f"{parent}/models")),
            headers=self._headers(),
        )
        try:
            return [item["id"] for item in payload["data"]]
        except (KeyError, TypeError) as exc:
            raise APIError(ErrorKind.DECODING_FAILED, f"Unexpected models response: {exc}") from exc
