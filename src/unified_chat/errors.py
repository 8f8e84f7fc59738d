"""Package specific exception hierarchy and HTTP outcome classification."""

from __future__ import annotations

from enum import Enum

import httpx


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced by every provider."""

    REQUEST_FAILED = "requestFailed"
    INVALID_RESPONSE = "invalidResponse"
    DECODING_FAILED = "decodingFailed"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rateLimited"
    SERVER_ERROR = "serverError"
    UNKNOWN = "unknown"
    NO_API_SERVICE = "noApiService"


_DEFAULT_MESSAGES = {
    ErrorKind.REQUEST_FAILED: "Request failed.",
    ErrorKind.INVALID_RESPONSE: "Invalid response from server.",
    ErrorKind.DECODING_FAILED: "Failed to decode response.",
    ErrorKind.UNAUTHORIZED: "Unauthorized (check API key).",
    ErrorKind.RATE_LIMITED: "Rate limited. Please retry in a moment.",
    ErrorKind.SERVER_ERROR: "Server error.",
    ErrorKind.UNKNOWN: "Unknown error.",
    ErrorKind.NO_API_SERVICE: "No API service available.",
}


class UnifiedChatError(Exception):
    """Base exception for unified_chat package."""


class APIError(UnifiedChatError):
    """A classified provider failure carrying one ``ErrorKind``."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.message = message or _DEFAULT_MESSAGES[kind]
        self.status_code = status_code
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"APIError({self.kind.value}, {self.message!r})"


class FrameDecodeError(APIError):
    """Raised for a single streaming frame whose payload is not valid JSON."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.DECODING_FAILED, message)


class UnsupportedProviderError(APIError):
    """Raised when a provider has not been configured."""

    def __init__(self, provider: str) -> None:
        super().__init__(ErrorKind.NO_API_SERVICE, f"Provider '{provider}' is not available.")


def classify_response(status_code: int, body: bytes | str | None) -> APIError | None:
    """Map an HTTP status and body to an ``APIError``; ``None`` means success."""
    if 200 <= status_code <= 299:
        return None

    if body is None:
        return APIError(
            ErrorKind.SERVER_ERROR,
            f"HTTP {status_code} (<no response body>)",
            status_code=status_code,
        )

    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    safe_body = body.strip() or "<empty body>"

    if status_code == 401:
        return APIError(ErrorKind.UNAUTHORIZED, status_code=status_code)
    if status_code == 429:
        return APIError(ErrorKind.RATE_LIMITED, status_code=status_code)
    if 400 <= status_code <= 499:
        return APIError(
            ErrorKind.SERVER_ERROR,
            f"Client Error (HTTP {status_code}): {safe_body}",
            status_code=status_code,
        )
    if 500 <= status_code <= 599:
        return APIError(
            ErrorKind.SERVER_ERROR,
            f"Server Error (HTTP {status_code}): {safe_body}",
            status_code=status_code,
        )
    return APIError(ErrorKind.UNKNOWN, f"HTTP {status_code}: {safe_body}", status_code=status_code)


def classify_http_response(response: httpx.Response | None) -> APIError | None:
    """Classify a fully read ``httpx.Response``."""
    if response is None:
        return APIError(ErrorKind.INVALID_RESPONSE)
    return classify_response(response.status_code, response.content)


def classify_transport_error(exc: Exception) -> APIError:
    """Wrap a non-HTTP transport failure (connect, timeout, protocol)."""
    if isinstance(exc, APIError):
        return exc
    detail = str(exc).strip()
    return APIError(ErrorKind.REQUEST_FAILED, detail or None)
