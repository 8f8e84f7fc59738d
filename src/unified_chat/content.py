"""Normalization of heterogeneous JSON content shapes into plain text."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Union

_THINK_BLOCK = re.compile(r"<think>\s*([\s\S]*?)\s*</think>")


@dataclass(frozen=True)
class JSONString:
    value: str


@dataclass(frozen=True)
class JSONNumber:
    value: int | float


@dataclass(frozen=True)
class JSONBool:
    value: bool


@dataclass(frozen=True)
class JSONNull:
    pass


@dataclass(frozen=True)
class JSONArray:
    items: tuple[JSONValue, ...] = ()


@dataclass(frozen=True)
class JSONObject:
    fields: dict[str, JSONValue] = field(default_factory=dict)

    def get(self, key: str) -> JSONValue | None:
        return self.fields.get(key)

    def get_str(self, key: str) -> str | None:
        value = self.fields.get(key)
        return value.value if isinstance(value, JSONString) else None


JSONValue = Union[JSONString, JSONNumber, JSONBool, JSONNull, JSONArray, JSONObject]
_VARIANTS = (JSONString, JSONNumber, JSONBool, JSONNull, JSONArray, JSONObject)


def to_json_value(obj: Any) -> JSONValue:
    """Wrap a decoded JSON document (``json.loads`` output) in the tagged variants."""
    if isinstance(obj, _VARIANTS):
        return obj
    if obj is None:
        return JSONNull()
    # bool is an int subclass, test it first
    if isinstance(obj, bool):
        return JSONBool(obj)
    if isinstance(obj, (int, float)):
        return JSONNumber(obj)
    if isinstance(obj, str):
        return JSONString(obj)
    if isinstance(obj, dict):
        return JSONObject({str(k): to_json_value(v) for k, v in obj.items()})
    if isinstance(obj, (list, tuple)):
        return JSONArray(tuple(to_json_value(v) for v in obj))
    raise TypeError(f"Not a JSON value: {type(obj).__name__}")


def _image_marker(url: str) -> str:
    return f"<image-url>{url}</image-url>"


def _image_url_from(value: JSONValue | None) -> str | None:
    if isinstance(value, JSONObject):
        return value.get_str("url")
    if isinstance(value, JSONString):
        return value.value
    return None


def _extract_from_object(obj: JSONObject) -> str | None:
    kind = obj.get_str("type")
    if kind == "text":
        text = obj.get_str("text")
        if text is not None:
            return text
    elif kind == "image_url":
        url = _image_url_from(obj.get("image_url"))
        if url is not None:
            return _image_marker(url)

    text = obj.get("text")
    if text is not None:
        return _extract(text)
    url = _image_url_from(obj.get("image_url"))
    if url is not None:
        return _image_marker(url)
    for key in ("content", "value"):
        nested = obj.get(key)
        if nested is not None:
            return _extract(nested)
    return None


def _extract(value: JSONValue) -> str | None:
    if isinstance(value, JSONString):
        return value.value
    if isinstance(value, JSONObject):
        return _extract_from_object(value)
    if isinstance(value, JSONArray):
        parts = [part for part in (_extract(item) for item in value.items) if part is not None]
        return "\n".join(parts) if parts else None
    if isinstance(value, (JSONNumber, JSONBool, JSONNull)):
        return None
    raise TypeError(f"Unhandled JSON variant: {type(value).__name__}")


def extract_text_content(value: Any) -> str | None:
    """Resolve string, typed-part, or array content into text.

    Image parts become ``<image-url>URL</image-url>`` markers; array parts are
    joined with newlines. Returns ``None`` when nothing textual is present.
    """
    if value is None:
        return None
    return _extract(to_json_value(value))


def compose_response(reasoning: str | None, content: str | None) -> str | None:
    """Join a reasoning section and the answer text."""
    sections: list[str] = []
    trimmed_reasoning = (reasoning or "").strip()
    if trimmed_reasoning:
        sections.append(f"<think>\n{trimmed_reasoning}\n</think>")
    if content and content.strip():
        sections.append(content)
    if not sections:
        return None
    return "\n\n".join(sections)


def strip_think_tags(text: str) -> str:
    """Drop ``<think>`` blocks from previously generated assistant text."""
    return _THINK_BLOCK.sub("", text).strip()


def format_citations(text: str, citations: Sequence[str] | None) -> str:
    """Rewrite ``[n]`` references into markdown links to ``citations[n-1]``."""
    if not citations or "[" not in text:
        return text
    for index, citation in enumerate(citations, start=1):
        text = text.replace(f"[{index}]", f"[\\[{index}\\]]({citation})")
    return text
