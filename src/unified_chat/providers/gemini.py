"""Google Gemini provider implementation."""

from __future__ import annotations

import json
import logging
from typing import Any

from unified_chat.attachments import encode_base64, resolve_attachments
from unified_chat.errors import APIError, ErrorKind, FrameDecodeError
from unified_chat.providers.base import BaseProvider, Tools, as_dict, decode_frame, load_json
from unified_chat.types import Message, ModelId, ParsedMessage, PreparedRequest, StreamEvent

_GENERATE = ":generateContent"
_STREAM_GENERATE = ":streamGenerateContent"
_FINISH_REASON_KEYS = ("finishReason", "finishreason", "finish_reason")


def map_role(role: str) -> str:
    """Gemini only knows ``user`` and ``model`` turns."""
    return "model" if role.lower() == "assistant" else "user"


def _first_candidate(payload: Any) -> dict[str, Any] | None:
    if not isinstance(payload, dict):
        return None
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return None
    return candidates[0]


def _split_parts(candidate: dict[str, Any]) -> tuple[list[str], tuple[str, str] | None]:
    parts = as_dict(candidate.get("content")).get("parts")
    texts: list[str] = []
    inline: tuple[str, str] | None = None
    for part in parts if isinstance(parts, list) else ():
        if not isinstance(part, dict):
            continue
        if isinstance(part.get("text"), str):
            texts.append(part["text"])
            continue
        inline_data = as_dict(part.get("inlineData"))
        if isinstance(inline_data.get("data"), str):
            inline = (inline_data.get("mimeType") or "image/png", inline_data["data"])
    return texts, inline


class GeminiProvider(BaseProvider):
    """REST adapter for ``generateContent`` with the API key passed as a query parameter."""

    _logger = logging.getLogger(__name__)

    def _root_url(self) -> str:
        url = self.api_url.split("?", 1)[0].rstrip("/")
        if "/models/" in url:
            return url.split("/models/", 1)[0]
        if url.endswith("/models"):
            return url[: -len("/models")]
        return url

    def _endpoint(self, model: str, stream: bool) -> str:
        url = self.api_url.split("?", 1)[0]
        if _GENERATE in url or _STREAM_GENERATE in url:
            if stream:
                return url.replace(_STREAM_GENERATE, _GENERATE).replace(_GENERATE, _STREAM_GENERATE)
            return url.replace(_STREAM_GENERATE, _GENERATE)
        method = _STREAM_GENERATE if stream else _GENERATE
        return f"{self._root_url()}/models/{model}{method}"

    def _params(self, stream: bool) -> dict[str, str]:
        params = {"key": self.api_key}
        if stream:
            params["alt"] = "sse"
        return params

    def prepare_request(
        self,
        messages: list[Message],
        tools: Tools,
        model: str,
        temperature: float,
        stream: bool,
    ) -> PreparedRequest:
        contents = []
        for message in messages:
            parts = self._build_parts(message.content)
            if parts:
                contents.append({"role": map_role(message.role), "parts": parts})

        body = {
            "contents": contents,
            "generationConfig": {"temperature": temperature},
        }
        return PreparedRequest(
            url=self._endpoint(model, stream),
            headers={"Content-Type": "application/json"},
            json_body=body,
            params=self._params(stream),
        )

    def _build_parts(self, content: str) -> list[dict[str, Any]]:
        resolved = resolve_attachments(content, self._resolver)
        parts: list[dict[str, Any]] = [{"text": t} for t in resolved.file_texts]
        text = resolved.text if resolved.had_markers else content
        if text.strip():
            parts.append({"text": text})
        for data in resolved.images:
            parts.append({"inlineData": {"mimeType": "image/jpeg", "data": encode_base64(data)}})
        return parts

    def parse_json_response(self, data: bytes | str) -> ParsedMessage | None:
        try:
            payload = load_json(data)
        except ValueError as exc:
            self._logger.error("Gemini JSON parse error: %s", exc)
            return None

        candidate = _first_candidate(payload)
        if candidate is None:
            return None
        texts, inline = _split_parts(candidate)
        if texts:
            return ParsedMessage("".join(texts), "assistant")
        if inline is not None:
            mime_type, b64 = inline
            return ParsedMessage(f"<image-url>data:{mime_type};base64,{b64}</image-url>", "assistant")
        return None

    def parse_delta_json_response(self, data: bytes | str | None, state: Any = None) -> StreamEvent:
        if data is None:
            return StreamEvent.decoding_failed("No data received in SSE event")

        try:
            payload = json.loads(decode_frame(data))
        except ValueError as exc:
            self._logger.debug("Failed to parse Gemini chunk: %s", exc)
            return StreamEvent(error=FrameDecodeError(f"Failed to parse JSON: {exc}"))

        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            message = payload["error"].get("message")
            return StreamEvent.failure(APIError(ErrorKind.SERVER_ERROR, message or None))

        candidate = _first_candidate(payload)
        if candidate is None:
            return StreamEvent()

        finished = payload.get("done") is True
        for key in _FINISH_REASON_KEYS:
            value = candidate.get(key) or payload.get(key)
            if isinstance(value, str) and value.strip():
                finished = True
                break

        texts, inline = _split_parts(candidate)
        if texts:
            return StreamEvent(finished=finished, text_delta="".join(texts), role="assistant")
        if inline is not None:
            mime_type, b64 = inline
            return StreamEvent(
                finished=finished,
                text_delta=f"<image-url>data:{mime_type};base64,{b64}</image-url>",
                role="assistant",
            )
        return StreamEvent(finished=finished)

    async def fetch_models(self) -> list[ModelId]:
        payload = await self._get_json(f"{self._root_url()}/models", params={"key": self.api_key})
        try:
            return [item["name"].removeprefix("models/") for item in payload["models"]]
        except (KeyError, TypeError, AttributeError) as exc:
            raise APIError(ErrorKind.DECODING_FAILED, f"Unexpected models response: {exc}") from exc
