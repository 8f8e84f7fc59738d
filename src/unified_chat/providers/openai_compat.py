"""OpenAI-compatible Chat Completions codec shared by several vendors."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from unified_chat.attachments import has_markers, image_data_url, resolve_attachments, strip_markers
from unified_chat.config import OPENAI_REASONING_MODELS, PRESETS, ProviderConfig, normalize_provider_id
from unified_chat.content import compose_response, extract_text_content, format_citations, strip_think_tags
from unified_chat.errors import APIError, ErrorKind, FrameDecodeError
from unified_chat.providers.base import BaseProvider, Tools, decode_frame, load_json, parse_tool_calls
from unified_chat.transport import DONE_SENTINEL
from unified_chat.types import Message, ModelId, ParsedMessage, PreparedRequest, StreamEvent

_CHAT_PATH = "/chat/completions"
_IMAGES_PATH = "/images/generations"
_FINISH_REASONS = frozenset({"stop", "tool_calls", "length"})


@dataclass(frozen=True)
class VendorPolicy:
    """Per-vendor differences on top of the OpenAI wire format."""

    name: str
    auth_required: bool = True
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    reasoning_models: frozenset[str] = frozenset()
    image_generation: bool = False
    supports_vision: bool = True
    strip_think_tags: bool = False
    format_citations: bool = False
    tool_choice: str | None = "auto"
    models_fetching: bool = True


POLICIES: dict[str, VendorPolicy] = {
    "chatgpt": VendorPolicy(
        name="chatgpt",
        reasoning_models=frozenset(OPENAI_REASONING_MODELS),
        image_generation=True,
    ),
    "groq": VendorPolicy(name="groq"),
    "xai": VendorPolicy(name="xai"),
    "mistral": VendorPolicy(name="mistral", supports_vision=False, tool_choice=None),
    "lmstudio": VendorPolicy(name="lmstudio", auth_required=False),
    "deepseek": VendorPolicy(name="deepseek", strip_think_tags=True),
    "openrouter": VendorPolicy(
        name="openrouter",
        strip_think_tags=True,
        extra_headers={"HTTP-Referer": "http://localhost", "X-Title": "unified-chat-client"},
    ),
    "perplexity": VendorPolicy(
        name="perplexity",
        supports_vision=False,
        format_citations=True,
        tool_choice=None,
        models_fetching=False,
    ),
}
POLICIES["chatgpt image"] = replace(POLICIES["chatgpt"], name="chatgpt image", models_fetching=False)


def policy_for(name: str) -> VendorPolicy | None:
    return POLICIES.get(normalize_provider_id(name))


def models_url(api_url: str) -> str:
    """``.../v1/chat/completions`` -> ``.../v1/models``."""
    url = httpx.URL(api_url)
    parent = url.path.rstrip("/").rsplit("/", 2)[0]
    return str(url.copy_with(path=f"{parent}/models", query=None))


def _error_message(payload: dict[str, Any]) -> str | None:
    for key in ("error", "message"):
        value = payload.get(key)
        if isinstance(value, str):
            return value
        if isinstance(value, dict) and isinstance(value.get("message"), str):
            return value["message"]
    return None


class OpenAICompatibleProvider(BaseProvider):
    """Chat Completions adapter parametrized by a ``VendorPolicy``."""

    _logger = logging.getLogger(__name__)

    def __init__(self, config: ProviderConfig, policy: VendorPolicy | None = None, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self.policy = policy or policy_for(config.name) or POLICIES["chatgpt"]

    def is_image_generation(self, model: str) -> bool:
        if not self.policy.image_generation:
            return False
        return _IMAGES_PATH in self.api_url or model.lower().startswith("gpt-image")

    def streams_as_single_shot(self, messages: list[Message]) -> bool:
        return self.is_image_generation(self.model)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.policy.auth_required or self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        headers.update(self.policy.extra_headers)
        return headers

    def _images_url(self) -> str:
        if _IMAGES_PATH in self.api_url:
            return self.api_url
        if _CHAT_PATH in self.api_url:
            return self.api_url.replace(_CHAT_PATH, _IMAGES_PATH)
        return self.api_url.rstrip("/") + _IMAGES_PATH

    def prepare_request(
        self,
        messages: list[Message],
        tools: Tools,
        model: str,
        temperature: float,
        stream: bool,
    ) -> PreparedRequest:
        if self.is_image_generation(model):
            prompt = "\n\n".join(m.content for m in messages if m.content)
            body: dict[str, Any] = {
                "model": model,
                "prompt": strip_markers(prompt),
                "n": 1,
                "size": "1024x1024",
            }
            self._logger.debug("Image generation request for model %s", model)
            return PreparedRequest(url=self._images_url(), headers=self._headers(), json_body=body)

        if model in self.policy.reasoning_models:
            temperature = 1.0

        body = {
            "model": model,
            "stream": stream,
            "messages": [self._serialize_message(m) for m in messages],
            "temperature": temperature,
        }
        if tools:
            body["tools"] = tools
            if self.policy.tool_choice:
                body["tool_choice"] = self.policy.tool_choice

        return PreparedRequest(url=self.api_url, headers=self._headers(), json_body=body)

    def _serialize_message(self, message: Message) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": message.role}
        if message.tool_call_id:
            payload["tool_call_id"] = message.tool_call_id
        if message.name:
            payload["name"] = message.name

        content = message.content
        if self.policy.strip_think_tags:
            content = strip_think_tags(content)

        if has_markers(content):
            resolved = resolve_attachments(content, self._resolver)
            if self.policy.supports_vision:
                parts: list[dict[str, Any]] = [{"type": "text", "text": t} for t in resolved.file_texts]
                if resolved.text:
                    parts.append({"type": "text", "text": resolved.text})
                parts.extend(
                    {"type": "image_url", "image_url": {"url": image_data_url(data)}}
                    for data in resolved.images
                )
                payload["content"] = parts
            else:
                payload["content"] = "\n\n".join(t for t in [*resolved.file_texts, resolved.text] if t)
        else:
            payload["content"] = content

        if message.tool_calls:
            payload["tool_calls"] = [call.model_dump() for call in message.tool_calls]
        return payload

    def parse_json_response(self, data: bytes | str) -> ParsedMessage | None:
        try:
            payload = load_json(data)
        except ValueError as exc:
            self._logger.error("%s JSON parse error: %s", self.name, exc)
            return None
        if not isinstance(payload, dict):
            return None

        images = payload.get("data")
        if isinstance(images, list) and images and isinstance(images[0], dict):
            first = images[0]
            if isinstance(first.get("url"), str):
                return ParsedMessage(f"<image-url>{first['url']}</image-url>", "assistant")
            if isinstance(first.get("b64_json"), str):
                return ParsedMessage(
                    f"<image-url>data:image/png;base64,{first['b64_json']}</image-url>", "assistant"
                )
            self._logger.warning("Image response missing expected fields, returning empty content")
            return ParsedMessage("", "assistant")

        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[-1], dict):
            self._logger.warning("Response doesn't match expected chat completion format")
            return None
        message = choices[-1].get("message")
        if not isinstance(message, dict):
            self._logger.warning("Response doesn't match expected chat completion format")
            return None

        content = extract_text_content(message.get("content"))
        if content and self.policy.format_citations:
            content = format_citations(content, payload.get("citations"))
        reasoning_value = message.get("reasoning_content")
        if reasoning_value is None:
            reasoning_value = message.get("reasoning")
        reasoning = extract_text_content(reasoning_value)

        role = message.get("role") if isinstance(message.get("role"), str) else None
        return ParsedMessage(
            compose_response(reasoning, content),
            role,
            parse_tool_calls(message.get("tool_calls")),
        )

    def parse_delta_json_response(self, data: bytes | str | None, state: Any = None) -> StreamEvent:
        if data is None:
            self._logger.error("No data received in SSE event")
            return StreamEvent.decoding_failed("No data received in SSE event")

        text = decode_frame(data).strip()
        if text == DONE_SENTINEL:
            return StreamEvent.done()

        try:
            payload = json.loads(text)
        except ValueError as exc:
            self._logger.error("Failed to parse delta JSON: %s", exc)
            return StreamEvent(error=FrameDecodeError(f"Failed to parse JSON: {exc}"))

        if not isinstance(payload, dict):
            return StreamEvent.decoding_failed("Unexpected response format")

        if "error" in payload or "message" in payload:
            message = _error_message(payload)
            self._logger.error("API returned error response: %s", payload)
            if message is None:
                return StreamEvent.failure(APIError(ErrorKind.UNKNOWN, "Unknown API error"))
            return StreamEvent.failure(APIError(ErrorKind.SERVER_ERROR, message))

        choices = payload.get("choices")
        if choices == []:
            # usage-only trailer chunk
            return StreamEvent()
        if not isinstance(choices, list) or not isinstance(choices[0], dict):
            return StreamEvent.decoding_failed("Unexpected response format")
        first = choices[0]
        delta = first.get("delta")
        if not isinstance(delta, dict):
            self._logger.warning("Delta response missing expected structure")
            return StreamEvent.decoding_failed("Unexpected response format")

        finished = first.get("finish_reason") in _FINISH_REASONS

        reasoning_value = delta.get("reasoning_content")
        if reasoning_value is None:
            reasoning_value = delta.get("reasoning")
        reasoning = extract_text_content(reasoning_value)
        if reasoning:
            return StreamEvent(finished=finished, text_delta=reasoning, role="reasoning")

        content = extract_text_content(delta.get("content"))
        if content and self.policy.format_citations:
            content = format_citations(content, payload.get("citations"))
        return StreamEvent(
            finished=finished,
            text_delta=content,
            role="assistant",
            tool_calls=parse_tool_calls(delta.get("tool_calls"), strict=False) or None,
        )

    async def fetch_models(self) -> list[ModelId]:
        if not self.policy.models_fetching:
            preset = PRESETS.get(self.policy.name)
            return list(preset.models) if preset else []

        url = models_url(self.api_url)
        self._logger.debug("Fetching models from: %s", url)
        payload = await self._get_json(url, headers=self._headers())
        try:
            return [item["id"] for item in payload["data"]]
        except (KeyError, TypeError) as exc:
            raise APIError(ErrorKind.DECODING_FAILED, f"Unexpected models response: {exc}") from exc
