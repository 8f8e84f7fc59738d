"""Provider definitions for unified_chat."""

from .anthropic import ClaudeProvider
from .base import BaseProvider
from .gemini import GeminiProvider
from .local import LocalModelProvider
from .ollama import OllamaProvider
from .openai_compat import OpenAICompatibleProvider, VendorPolicy

__all__ = [
    "BaseProvider",
    "OpenAICompatibleProvider",
    "VendorPolicy",
    "ClaudeProvider",
    "GeminiProvider",
    "OllamaProvider",
    "LocalModelProvider",
]
