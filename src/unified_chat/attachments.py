"""Attachment marker parsing and resolution.

Message text references out-of-band payloads with ``<image-uuid>ID</image-uuid>``
and ``<file-uuid>ID</file-uuid>``. The surrounding application owns the bytes
and exposes them through an ``AttachmentResolver``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

_logger = logging.getLogger(__name__)

IMAGE_MARKER = re.compile(r"<image-uuid>(.*?)</image-uuid>")
FILE_MARKER = re.compile(r"<file-uuid>(.*?)</file-uuid>")
DATA_URL = re.compile(r"data:image/[^;]+;base64,([A-Za-z0-9+/=]+)")


@runtime_checkable
class AttachmentResolver(Protocol):
    """Loads attachment payloads referenced by marker ids."""

    def load_image(self, uuid: str) -> bytes | None: ...

    def load_file_text(self, uuid: str) -> str | None: ...


class NullAttachmentResolver:
    """Resolver for callers without attachments; every marker is dropped."""

    def load_image(self, uuid: str) -> bytes | None:
        return None

    def load_file_text(self, uuid: str) -> str | None:
        return None


class InMemoryAttachmentResolver:
    """Dictionary backed resolver."""

    def __init__(
        self,
        images: Mapping[str, bytes] | None = None,
        files: Mapping[str, str] | None = None,
    ) -> None:
        self._images = dict(images or {})
        self._files = dict(files or {})

    def load_image(self, uuid: str) -> bytes | None:
        return self._images.get(uuid)

    def load_file_text(self, uuid: str) -> str | None:
        return self._files.get(uuid)


@dataclass(frozen=True)
class MarkedContent:
    """Message text with attachment markers separated out."""

    text: str
    image_ids: tuple[str, ...] = ()
    file_ids: tuple[str, ...] = ()

    @property
    def has_attachments(self) -> bool:
        return bool(self.image_ids or self.file_ids)


@dataclass
class ResolvedContent:
    text: str
    file_texts: list[str] = field(default_factory=list)
    images: list[bytes] = field(default_factory=list)
    had_markers: bool = False


def has_markers(content: str) -> bool:
    return IMAGE_MARKER.search(content) is not None or FILE_MARKER.search(content) is not None


def strip_markers(content: str) -> str:
    """Remove every attachment marker and trim the remaining text."""
    return FILE_MARKER.sub("", IMAGE_MARKER.sub("", content)).strip()


def parse_markers(content: str) -> MarkedContent:
    return MarkedContent(
        text=strip_markers(content),
        image_ids=tuple(IMAGE_MARKER.findall(content)),
        file_ids=tuple(FILE_MARKER.findall(content)),
    )


def resolve_attachments(content: str, resolver: AttachmentResolver | None) -> ResolvedContent:
    """Strip markers from ``content`` and load what the resolver can supply.

    Markers without a payload are dropped; they never fail the request.
    """
    marked = parse_markers(content)
    resolved = ResolvedContent(text=marked.text, had_markers=marked.has_attachments)
    if not marked.has_attachments:
        return resolved

    resolver = resolver or NullAttachmentResolver()
    for uuid in marked.file_ids:
        text = resolver.load_file_text(uuid)
        if text is None:
            _logger.warning("Dropping file marker with no content: %s", uuid)
            continue
        resolved.file_texts.append(text)
    for uuid in marked.image_ids:
        data = resolver.load_image(uuid)
        if not data:
            _logger.warning("Dropping image marker with no data: %s", uuid)
            continue
        resolved.images.append(data)

    _logger.debug(
        "Resolved %d/%d file(s), %d/%d image(s)",
        len(resolved.file_texts),
        len(marked.file_ids),
        len(resolved.images),
        len(marked.image_ids),
    )
    return resolved


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def image_data_url(data: bytes, mime_type: str = "image/jpeg") -> str:
    return f"data:{mime_type};base64,{encode_base64(data)}"


def sniff_image_mime(data: bytes) -> str | None:
    """Guess an image MIME type from magic bytes."""
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"GIF8"):
        return "image/gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def decode_base64_image(payload: str) -> bytes | None:
    """Decode ``payload`` and return the bytes only if they look like an image."""
    cleaned = re.sub(r"[^A-Za-z0-9+/=]", "", payload)
    if not cleaned:
        return None
    try:
        data = base64.b64decode(cleaned + "=" * (-len(cleaned) % 4))
    except (binascii.Error, ValueError):
        return None
    return data if sniff_image_mime(data) else None


def extract_data_urls(content: str) -> tuple[str, list[bytes]]:
    """Pull inline ``data:image/...;base64,...`` payloads out of ``content``."""
    images: list[bytes] = []
    for payload in DATA_URL.findall(content):
        try:
            images.append(base64.b64decode(payload, validate=True))
        except (binascii.Error, ValueError):
            _logger.warning("Skipping malformed inline image data (%d chars)", len(payload))
    return DATA_URL.sub("", content).strip(), images
