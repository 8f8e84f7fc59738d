"""Async client orchestrating provider interactions."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable, Mapping
from typing import Any

from unified_chat.config import ProviderConfig, normalize_provider_id
from unified_chat.errors import UnsupportedProviderError
from unified_chat.factory import create_provider
from unified_chat.providers.base import BaseProvider, MessagesInput, Tools
from unified_chat.types import ChatResponse, ModelId, StreamEvent


class LLMClient:
    """High-level coordinator for chatting with configured providers."""

    def __init__(self, providers: Iterable[BaseProvider] = ()) -> None:
        self._providers: dict[str, BaseProvider] = {}
        for provider in providers:
            self.register(provider)

    @classmethod
    def from_configs(cls, configs: Iterable[ProviderConfig], **options: Any) -> LLMClient:
        """Build every provider through ``create_provider`` with shared options."""
        return cls(create_provider(config, **options) for config in configs)

    def register(self, provider: BaseProvider) -> None:
        self._providers[normalize_provider_id(provider.name)] = provider

    @property
    def providers(self) -> Mapping[str, BaseProvider]:
        return dict(self._providers)

    def get_provider(self, name: str) -> BaseProvider:
        """Return a provider by its registered name."""
        try:
            return self._providers[normalize_provider_id(name)]
        except KeyError as exc:
            raise UnsupportedProviderError(name) from exc

    async def send_message(
        self,
        provider: str,
        messages: MessagesInput,
        tools: Tools = None,
        temperature: float = 1.0,
    ) -> ChatResponse:
        """Execute a single round-trip chat completion."""
        return await self.get_provider(provider).send_message(messages, tools, temperature)

    def send_message_stream(
        self,
        provider: str,
        messages: MessagesInput,
        tools: Tools = None,
        temperature: float = 1.0,
    ) -> AsyncIterator[StreamEvent]:
        """Stream normalized events for a chat request."""
        return self.get_provider(provider).send_message_stream(messages, tools, temperature)

    async def fetch_models(self, provider: str) -> list[ModelId]:
        return await self.get_provider(provider).fetch_models()

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
