"""Ollama provider implementation (NDJSON streaming)."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar

from unified_chat.attachments import (
    decode_base64_image,
    encode_base64,
    extract_data_urls,
    has_markers,
    resolve_attachments,
    strip_markers,
)
from unified_chat.config import OLLAMA_TIMEOUT_S
from unified_chat.content import compose_response
from unified_chat.errors import APIError, ErrorKind, FrameDecodeError
from unified_chat.providers.base import BaseProvider, Tools, as_dict, decode_frame
from unified_chat.transport import StreamFormat
from unified_chat.types import Message, ModelId, ParsedMessage, PreparedRequest, StreamEvent

IMAGE_PREFIX = "IMAGE_BASE64:"
IMAGE_MODEL_KEYWORDS: tuple[str, ...] = (
    "image",
    "img",
    "diffusion",
    "stable-diffusion",
    "sdxl",
    "flux",
    "kandinsky",
    "dream",
    "pixel",
    "turbo",
    "generative",
    "bark",
    "riffusion",
    "cogview",
    "wand",
)
_OMITTED_IMAGE = "[omitted image"
_CHAT_SUFFIX = "/api/chat"
_GENERATE_SUFFIX = "/api/generate"
_FALLBACK_IMAGE = re.compile(re.escape(IMAGE_PREFIX) + r'\s*([^"]+)')


def is_image_generation_model(model: str) -> bool:
    name = model.lower()
    return any(keyword in name for keyword in IMAGE_MODEL_KEYWORDS)


def detect_image_generation(messages: list[Message], model: str) -> bool:
    """Heuristic routing between ``/api/chat`` and image generation.

    Looks at the last user message only: inline ``data:image/`` payloads or
    attachment markers, then falls back to a keyword match on the model name.
    """
    last_user = next((m for m in reversed(messages) if m.role == "user"), None)
    if last_user is None:
        return False
    if "data:image/" in last_user.content or has_markers(last_user.content):
        return True
    return is_image_generation_model(model)


@dataclass
class OllamaStreamState:
    """Per-call accumulator for image payloads split across NDJSON lines."""

    image_generation: bool = False
    chunks: list[str] = field(default_factory=list)
    saw_image_prefix: bool = False

    def add(self, content: str) -> None:
        if content.startswith(IMAGE_PREFIX):
            self.saw_image_prefix = True
            content = content[len(IMAGE_PREFIX) :]
        self.chunks.append(content)

    def drain(self) -> str:
        data = "".join(self.chunks)
        self.chunks.clear()
        return data


class OllamaProvider(BaseProvider):
    """Local Ollama server adapter."""

    stream_format: ClassVar[StreamFormat] = StreamFormat.NDJSON
    default_timeout_s: ClassVar[float] = OLLAMA_TIMEOUT_S
    _logger = logging.getLogger(__name__)

    def new_stream_state(self, messages: list[Message]) -> OllamaStreamState:
        return OllamaStreamState(image_generation=detect_image_generation(messages, self.model))

    def _generate_url(self) -> str:
        if self.api_url.endswith(_CHAT_SUFFIX):
            return self.api_url[: -len(_CHAT_SUFFIX)] + _GENERATE_SUFFIX
        return self.api_url

    def prepare_request(
        self,
        messages: list[Message],
        tools: Tools,
        model: str,
        temperature: float,
        stream: bool,
    ) -> PreparedRequest:
        image_mode = detect_image_generation(messages, model)
        url = self._generate_url() if image_mode else self.api_url
        effective_stream = False if image_mode else stream
        use_chat = not image_mode and _CHAT_SUFFIX in url

        self._logger.debug(
            "Preparing Ollama request. model=%s stream=%s image_mode=%s endpoint=%s",
            model,
            effective_stream,
            image_mode,
            url,
        )

        body: dict[str, Any] = {
            "model": model,
            "stream": effective_stream,
            "options": {"temperature": temperature},
        }
        if use_chat:
            body["messages"] = self._chat_messages(messages)
            if tools:
                body["tools"] = tools
        else:
            prompt, images = self._generate_prompt(messages, cleaned=image_mode)
            body["prompt"] = prompt
            if images:
                body["images"] = images

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/x-ndjson" if effective_stream else "application/json",
        }
        return PreparedRequest(url=url, headers=headers, json_body=body)

    def _chat_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                content = strip_markers(message.content) if has_markers(message.content) else message.content
                out.append({"role": "system", "content": content})
                continue

            resolved = resolve_attachments(message.content, self._resolver)
            text = resolved.text if resolved.had_markers else message.content
            if resolved.file_texts:
                text = "\n\n".join(t for t in [*resolved.file_texts, text] if t)

            if message.role == "assistant" and not text.strip():
                continue
            if message.role == "user" and not text.strip() and not resolved.images:
                continue

            entry: dict[str, Any] = {"role": message.role, "content": text}
            if resolved.images:
                entry["images"] = [encode_base64(data) for data in resolved.images]
            out.append(entry)

        self._logger.debug("Using /api/chat with %d message(s) (from %d input)", len(out), len(messages))
        return out

    def _generate_prompt(self, messages: list[Message], *, cleaned: bool) -> tuple[str, list[str]]:
        for message in reversed(messages):
            if message.role != "user" or message.content.startswith(_OMITTED_IMAGE):
                continue
            if not cleaned and not message.content:
                continue
            resolved = resolve_attachments(message.content, self._resolver)
            prompt, inline = extract_data_urls(resolved.text)
            if resolved.file_texts:
                prompt = "\n\n".join(t for t in [*resolved.file_texts, prompt] if t)
            images = [encode_base64(data) for data in [*resolved.images, *inline]]
            return prompt, images
        return "", []

    def parse_json_response(self, data: bytes | str) -> ParsedMessage | None:
        text = decode_frame(data)
        lines = [line for line in text.splitlines() if line.strip()]
        if lines:
            try:
                payload = json.loads(lines[-1])
            except ValueError as exc:
                self._logger.error("Failed to parse JSON line: %s", exc)
                payload = None
            if isinstance(payload, dict):
                parsed = self._parse_payload(payload)
                if parsed is not None:
                    return parsed

        match = _FALLBACK_IMAGE.search(text)
        if match:
            candidate = match.group(1).strip()
            if decode_base64_image(candidate) is not None:
                return ParsedMessage(f"<image-url>{candidate}</image-url>", "assistant")

        self._logger.error("Could not extract image or text from response")
        return None

    @staticmethod
    def _parse_payload(payload: dict[str, Any]) -> ParsedMessage | None:
        message = as_dict(payload.get("message"))
        thinking = payload.get("thinking") or message.get("thinking")
        thinking = thinking if isinstance(thinking, str) else None

        def compose(content: str) -> str:
            return (compose_response(thinking, content) or "") if thinking else content

        image = payload.get("image")
        if isinstance(image, str) and image and decode_base64_image(image) is not None:
            return ParsedMessage(compose(f"<image-url>{image}</image-url>"), "assistant")

        response = payload.get("response")
        if isinstance(response, str):
            stripped = response.removeprefix(IMAGE_PREFIX)
            if stripped and decode_base64_image(stripped) is not None:
                return ParsedMessage(compose(f"<image-url>{stripped}</image-url>"), "assistant")
            return ParsedMessage(compose(response), "assistant")

        if isinstance(message.get("content"), str):
            return ParsedMessage(compose(message["content"]), "assistant")
        return None

    def parse_delta_json_response(self, data: bytes | str | None, state: Any = None) -> StreamEvent:
        if data is None:
            return StreamEvent.decoding_failed("No data received in SSE event")

        text = decode_frame(data).strip()
        if not text:
            return StreamEvent()
        try:
            payload = json.loads(text)
        except ValueError as exc:
            self._logger.error("Delta JSON parse error: %s", exc)
            return StreamEvent(error=FrameDecodeError(f"Failed to parse JSON: {exc}"))
        if not isinstance(payload, dict):
            return StreamEvent()

        if isinstance(payload.get("error"), str):
            return StreamEvent.failure(APIError(ErrorKind.SERVER_ERROR, payload["error"]))

        state = state if isinstance(state, OllamaStreamState) else OllamaStreamState()
        done = payload.get("done") is True

        message = payload.get("message")
        if isinstance(message, dict):
            content, thinking = message.get("content"), message.get("thinking")
        else:
            content = payload.get("content")
            if content is None:
                content = payload.get("response")
            thinking = payload.get("thinking")

        # a final image line is drained below even when it carries thinking
        if isinstance(thinking, str) and thinking and not (state.image_generation and done):
            return StreamEvent(finished=done, text_delta=thinking, role="reasoning")

        content = content if isinstance(content, str) else ""
        if state.image_generation:
            if content:
                state.add(content)
            if done:
                return self._finish_image(state)
            return StreamEvent()

        if content.startswith(IMAGE_PREFIX):
            self._logger.debug("Suppressing image payload in text stream")
            return StreamEvent(finished=done)
        if content:
            return StreamEvent(finished=done, text_delta=content, role="assistant")
        return StreamEvent(finished=done)

    def _finish_image(self, state: OllamaStreamState) -> StreamEvent:
        accumulated = state.drain()
        if not accumulated:
            return StreamEvent.done()
        if state.saw_image_prefix or decode_base64_image(accumulated) is not None:
            self._logger.debug("Delivering accumulated image data: %d chars", len(accumulated))
            return StreamEvent(finished=True, text_delta=f"<image-url>{accumulated}</image-url>", role="assistant")
        return StreamEvent(finished=True, text_delta=accumulated, role="assistant")

    async def fetch_models(self) -> list[ModelId]:
        base = self.api_url.rstrip("/").rsplit("/", 1)[0]
        payload = await self._get_json(f"{base}/tags")
        try:
            return [item["name"] for item in payload["models"]]
        except (KeyError, TypeError) as exc:
            raise APIError(ErrorKind.DECODING_FAILED, f"Unexpected models response: {exc}") from exc
