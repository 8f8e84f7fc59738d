"""On-device model provider.

Generation runs in-process through a pluggable ``LocalRuntime``; nothing in
this module touches the network. Loaded models are shared process-wide by
absolute folder path.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections.abc import AsyncIterator, Iterable, Mapping
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, ClassVar, Protocol, runtime_checkable
from urllib.parse import unquote, urlparse

from unified_chat.attachments import (
    AttachmentResolver,
    extract_data_urls,
    image_data_url,
    resolve_attachments,
    sniff_image_mime,
)
from unified_chat.config import ProviderConfig
from unified_chat.errors import APIError, ErrorKind
from unified_chat.providers.base import BaseProvider, Tools
from unified_chat.types import (
    ChatResponse,
    Message,
    ModelId,
    ParsedMessage,
    PreparedRequest,
    StreamEvent,
    coerce_messages,
)

_logger = logging.getLogger(__name__)

_PATH_SEPARATORS = re.compile(r"[\n,;]")
_DASH_VARIANTS = ("\u2010", "\u2011", "\u2012", "\u2013", "\u2014", "\u2015", "\u2212")
_SCAN_DEPTH = 2

_DIFFUSERS_REQUIRED = (
    "unet/config.json",
    "vae/config.json",
    "scheduler/scheduler_config.json",
    "tokenizer/vocab.json",
)
_DIFFUSERS_ENCODERS = ("text_encoder/config.json", "text_encoder_2/config.json")
_FLUX_COMPONENTS = ("transformer", "vae", "text_encoder", "text_encoder_2")
_COREML_DIFFUSION = ("TextEncoder.mlmodelc", "Unet.mlmodelc", "VAEDecoder.mlmodelc")
_VISION_MARKERS = ("preprocessor_config.json", "processor_config.json")


class LocalModelKind(str, Enum):
    TEXT = "text"
    VISION = "vision"
    IMAGE_GENERATION = "image_generation"


@runtime_checkable
class LocalModel(Protocol):
    """A loaded model. ``generate`` yields text chunks, or image bytes / data URLs."""

    def generate(
        self,
        prompt: str,
        images: list[bytes],
        temperature: float,
    ) -> AsyncIterator[str | bytes]: ...


@runtime_checkable
class LocalRuntime(Protocol):
    """Loads model folders into ``LocalModel`` instances."""

    async def load(self, path: Path, kind: LocalModelKind) -> LocalModel: ...


def resolve_model_path(raw: str) -> Path:
    """Normalize a user-entered model location into an absolute path.

    Only the first non-empty entry of a newline/comma/semicolon separated list
    is used.
    """
    first = next((p.strip() for p in _PATH_SEPARATORS.split(raw) if p.strip()), "")
    if not first:
        raise APIError(ErrorKind.SERVER_ERROR, "No local model path configured")
    for dash in _DASH_VARIANTS:
        first = first.replace(dash, "-")
    if first.startswith("file://"):
        first = unquote(urlparse(first).path)
    return Path(os.path.abspath(os.path.expanduser(first)))


def _walk(root: Path, depth: int = _SCAN_DEPTH) -> Iterable[Path]:
    """Breadth-first directories under ``root`` (inclusive), skipping hidden ones."""
    queue = [(root, 0)]
    while queue:
        current, level = queue.pop(0)
        yield current
        if level >= depth:
            continue
        try:
            children = sorted(p for p in current.iterdir() if p.is_dir() and not p.name.startswith("."))
        except OSError:
            continue
        queue.extend((child, level + 1) for child in children)


def _is_diffusers_root(path: Path) -> bool:
    if not all((path / rel).exists() for rel in _DIFFUSERS_REQUIRED):
        return False
    return any((path / rel).exists() for rel in _DIFFUSERS_ENCODERS)


def _is_flux_root(path: Path) -> bool:
    return sum((path / name).exists() for name in _FLUX_COMPONENTS) >= 3


def _is_coreml_diffusion(path: Path) -> bool:
    return all((path / name).exists() for name in _COREML_DIFFUSION)


def _has_vision_config(path: Path) -> bool:
    if any((path / name).exists() for name in _VISION_MARKERS):
        return True
    config = path / "config.json"
    if not config.is_file():
        return False
    try:
        data = json.loads(config.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        _logger.debug("Unreadable config.json in %s", path)
        return False
    return isinstance(data, dict) and "vision_config" in data


def classify_model_folder(path: Path | str) -> LocalModelKind:
    """Decide what a local model folder can do from the files it contains."""
    root = Path(path)
    if not root.is_dir():
        raise APIError(ErrorKind.SERVER_ERROR, f"Model folder not found: {root}")

    for candidate in _walk(root):
        if _is_diffusers_root(candidate) or _is_flux_root(candidate) or _is_coreml_diffusion(candidate):
            return LocalModelKind.IMAGE_GENERATION
    if _has_vision_config(root):
        return LocalModelKind.VISION
    return LocalModelKind.TEXT


class LocalModelCache:
    """Process-wide cache of loaded models with single-flight loading."""

    def __init__(self) -> None:
        self._models: dict[str, LocalModel] = {}
        self._loading: dict[str, asyncio.Future[LocalModel]] = {}

    def __contains__(self, path: object) -> bool:
        return isinstance(path, (str, Path)) and str(Path(path).absolute()) in self._models

    async def get(self, path: Path, kind: LocalModelKind, runtime: LocalRuntime) -> LocalModel:
        """Return the cached model, loading it once for all concurrent callers.

        The load runs in its own task; cancelling one caller does not cancel
        the load or the other callers waiting on it.
        """
        key = str(Path(path).absolute())
        model = self._models.get(key)
        if model is not None:
            return model

        task = self._loading.get(key)
        if task is None:
            _logger.debug("Loading local model from %s (%s)", key, kind.value)
            task = asyncio.ensure_future(runtime.load(Path(key), kind))
            self._loading[key] = task
            task.add_done_callback(partial(self._settle, key))
        return await asyncio.shield(task)

    def _settle(self, key: str, task: asyncio.Future[LocalModel]) -> None:
        self._loading.pop(key, None)
        if task.cancelled():
            return
        # retrieving the exception keeps an unawaited failure quiet
        if task.exception() is None:
            self._models[key] = task.result()

    async def reload(self, path: Path, kind: LocalModelKind, runtime: LocalRuntime) -> LocalModel:
        self.invalidate(path)
        return await self.get(path, kind, runtime)

    def invalidate(self, path: Path | str | None = None) -> None:
        """Drop one cached model, or all of them when ``path`` is None."""
        if path is None:
            self._models.clear()
        else:
            self._models.pop(str(Path(path).absolute()), None)


default_model_cache = LocalModelCache()


def clean_output(chunk: str) -> str:
    return chunk.replace("\\n", "\n").replace("<s>", "").replace("</s>", "")


def build_transcript(messages: list[Message], resolver: AttachmentResolver | None = None) -> str:
    """Role-tagged prompt for plain text models."""
    parts: list[str] = []
    for message in messages:
        resolved = resolve_attachments(message.content, resolver)
        content = resolved.text if resolved.had_markers else message.content
        if resolved.file_texts:
            content = "\n\n".join(t for t in [*resolved.file_texts, content] if t)
        parts.append(f"[{message.role.upper()}]\n{content}\n\n")
    parts.append("[ASSISTANT]\n")
    return "".join(parts)


class LocalModelProvider(BaseProvider):
    """Runs generation in-process through a ``LocalRuntime``."""

    uses_http: ClassVar[bool] = False
    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        config: ProviderConfig,
        *,
        runtime: LocalRuntime | None = None,
        cache: LocalModelCache | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self._runtime = runtime
        self._cache = cache or default_model_cache

    def model_path(self) -> Path:
        raw = self.model.strip() or self.api_url.removeprefix("local://")
        return resolve_model_path(raw)

    def prepare_request(
        self,
        messages: list[Message],
        tools: Tools,
        model: str,
        temperature: float,
        stream: bool,
    ) -> PreparedRequest:
        raise APIError(ErrorKind.NO_API_SERVICE, "On-device models do not issue network requests")

    def parse_json_response(self, data: bytes | str) -> ParsedMessage | None:
        return None

    def parse_delta_json_response(self, data: bytes | str | None, state: Any = None) -> StreamEvent:
        if data is None:
            return StreamEvent.decoding_failed("No data received in SSE event")
        return StreamEvent.done()

    async def fetch_models(self) -> list[ModelId]:
        return []

    async def _load(self) -> tuple[LocalModel, LocalModelKind]:
        path = self.model_path()
        kind = await asyncio.to_thread(classify_model_folder, path)
        if self._runtime is None:
            raise APIError(ErrorKind.NO_API_SERVICE, "No on-device runtime configured")
        try:
            model = await self._cache.get(path, kind, self._runtime)
        except APIError:
            raise
        except Exception as exc:
            raise APIError(ErrorKind.SERVER_ERROR, f"Failed to load model at {path}: {exc}") from exc
        return model, kind

    def build_prompt(self, messages: list[Message], kind: LocalModelKind) -> tuple[str, list[bytes]]:
        if kind is LocalModelKind.TEXT:
            return build_transcript(messages, self._resolver), []

        last_user = next((m for m in reversed(messages) if m.role.lower() == "user"), None)
        content = last_user.content if last_user else (messages[-1].content if messages else "")
        resolved = resolve_attachments(content, self._resolver)
        prompt, inline = extract_data_urls(resolved.text)
        if resolved.file_texts:
            prompt = "\n\n".join(t for t in [*resolved.file_texts, prompt] if t)
        return prompt, [*resolved.images, *inline]

    @staticmethod
    def _image_event(chunk: str | bytes) -> StreamEvent:
        if isinstance(chunk, bytes):
            url = image_data_url(chunk, sniff_image_mime(chunk) or "image/png")
        else:
            url = chunk.strip()
        return StreamEvent(finished=True, text_delta=f"<image-url>{url}</image-url>", role="assistant")

    async def _generate(self, messages: list[Message], temperature: float) -> AsyncIterator[StreamEvent]:
        try:
            model, kind = await self._load()
            prompt, images = self.build_prompt(messages, kind)
        except APIError as exc:
            yield StreamEvent.failure(exc)
            return

        self._logger.debug("Local generation: kind=%s prompt=%d chars images=%d", kind.value, len(prompt), len(images))
        try:
            async for chunk in model.generate(prompt, images, temperature):
                if isinstance(chunk, bytes) or (
                    kind is LocalModelKind.IMAGE_GENERATION and chunk.lstrip().startswith("data:image/")
                ):
                    yield self._image_event(chunk)
                    return
                text = clean_output(chunk)
                if text:
                    yield StreamEvent(text_delta=text, role="assistant")
        except APIError as exc:
            yield StreamEvent.failure(exc)
            return
        except Exception as exc:
            self._logger.exception("Local generation failed")
            yield StreamEvent.failure(APIError(ErrorKind.SERVER_ERROR, f"Local generation failed: {exc}"))
            return
        yield StreamEvent.done()

    def send_message_stream(
        self,
        messages: Iterable[Message | Mapping[str, Any]],
        tools: Tools = None,
        temperature: float = 1.0,
    ) -> AsyncIterator[StreamEvent]:
        return self._generate(coerce_messages(messages), temperature)

    async def send_message(
        self,
        messages: Iterable[Message | Mapping[str, Any]],
        tools: Tools = None,
        temperature: float = 1.0,
    ) -> ChatResponse:
        parts: list[str] = []
        async for event in self.send_message_stream(messages, tools, temperature):
            if event.error is not None:
                raise event.error
            if event.text_delta:
                parts.append(event.text_delta)
        return ChatResponse(
            provider=self.name,
            model=self.model,
            text="".join(parts).strip(),
            role="assistant",
        )
