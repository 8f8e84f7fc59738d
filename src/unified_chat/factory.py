"""Provider construction from a ``ProviderConfig``."""

from __future__ import annotations

import logging

import httpx

from unified_chat.attachments import AttachmentResolver
from unified_chat.config import ProviderConfig, adapter_key, normalize_provider_id
from unified_chat.providers.anthropic import ClaudeProvider
from unified_chat.providers.base import BaseProvider
from unified_chat.providers.gemini import GeminiProvider
from unified_chat.providers.local import LocalModelProvider, LocalRuntime
from unified_chat.providers.ollama import OllamaProvider
from unified_chat.providers.openai_compat import POLICIES, OpenAICompatibleProvider, policy_for

_logger = logging.getLogger(__name__)

_ADAPTERS: dict[str, type[BaseProvider]] = {
    "claude": ClaudeProvider,
    "gemini": GeminiProvider,
    "ollama": OllamaProvider,
}


def create_provider(
    config: ProviderConfig,
    *,
    resolver: AttachmentResolver | None = None,
    client: httpx.AsyncClient | None = None,
    runtime: LocalRuntime | None = None,
    timeout_s: float | None = None,
) -> BaseProvider:
    """Pick the adapter for ``config.name``; unknown names get the ChatGPT policy."""
    key = normalize_provider_id(config.name)
    family = adapter_key(key)
    options = {"resolver": resolver, "client": client, "timeout_s": timeout_s}

    if family == "local":
        return LocalModelProvider(config, runtime=runtime, **options)
    adapter = _ADAPTERS.get(family)
    if adapter is not None:
        return adapter(config, **options)

    policy = policy_for(key) or policy_for(family)
    if policy is None:
        _logger.warning("Unknown provider '%s', falling back to OpenAI-compatible defaults", config.name)
        policy = POLICIES["chatgpt"]
    return OpenAICompatibleProvider(config, policy, **options)
