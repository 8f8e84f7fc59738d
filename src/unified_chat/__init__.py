"""Provider-agnostic async chat-completion client."""

from .client import LLMClient
from .config import ProviderConfig
from .errors import APIError, ErrorKind, UnifiedChatError, UnsupportedProviderError
from .factory import create_provider
from .types import ChatResponse, Message, StreamEvent, ToolCall

__all__ = [
    "LLMClient",
    "ProviderConfig",
    "create_provider",
    "APIError",
    "ErrorKind",
    "UnifiedChatError",
    "UnsupportedProviderError",
    "ChatResponse",
    "Message",
    "StreamEvent",
    "ToolCall",
]
