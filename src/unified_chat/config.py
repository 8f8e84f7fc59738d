"""Provider configuration and built-in presets."""

from __future__ import annotations

import httpx
from pydantic import BaseModel, ConfigDict

REQUEST_TIMEOUT_S = 180.0
OLLAMA_TIMEOUT_S = 1800.0
CONNECT_TIMEOUT_S = 30.0

OPENAI_REASONING_MODELS: tuple[str, ...] = (
    "o1",
    "o1-preview",
    "o1-mini",
    "o3-mini",
    "o3-mini-high",
    "o3-mini-2025-01-31",
    "o1-preview-2024-09-12",
    "o1-mini-2024-09-12",
    "o1-2024-12-17",
)


def http_timeout(seconds: float = REQUEST_TIMEOUT_S) -> httpx.Timeout:
    """Generation-friendly timeout: long reads, bounded connect."""
    return httpx.Timeout(seconds, connect=CONNECT_TIMEOUT_S)


class ProviderConfig(BaseModel):
    """Immutable per-call provider settings."""

    model_config = ConfigDict(frozen=True)

    name: str
    api_url: str
    api_key: str = ""
    model: str

    @classmethod
    def from_preset(cls, key: str, *, api_key: str = "", model: str | None = None) -> ProviderConfig:
        preset = get_preset(key)
        return cls(
            name=key,
            api_url=preset.url,
            api_key=api_key,
            model=model or preset.default_model,
        )


class ProviderPreset(BaseModel):
    """Built-in defaults for a provider family."""

    model_config = ConfigDict(frozen=True)

    name: str
    url: str
    default_model: str
    models: tuple[str, ...] = ()
    models_fetching: bool = True
    image_uploads_supported: bool = False
    max_tokens: int | None = None
    inherits: str | None = None


PRESETS: dict[str, ProviderPreset] = {
    "chatgpt": ProviderPreset(
        name="OpenAI",
        url="https://api.openai.com/v1/chat/completions",
        default_model="gpt-5",
        models=("gpt-5",),
        image_uploads_supported=True,
    ),
    "chatgpt image": ProviderPreset(
        name="OpenAI Image",
        url="https://api.openai.com/v1/images/generations",
        default_model="gpt-image-1",
        models=("gpt-image-1",),
        models_fetching=False,
        image_uploads_supported=True,
        inherits="chatgpt",
    ),
    "ollama": ProviderPreset(
        name="Ollama",
        url="http://localhost:11434/api/chat",
        default_model="llama3.1",
        models=("llama3.3", "llama3.2", "llama3.1", "qwen2.5", "qwen2.5-coder", "phi3", "gemma"),
    ),
    "claude": ProviderPreset(
        name="Claude",
        url="https://api.anthropic.com/v1/messages",
        default_model="claude-3-5-sonnet-latest",
        models=("claude-3-5-sonnet-latest", "claude-3-opus-latest", "claude-3-haiku-20240307"),
        max_tokens=4096,
        image_uploads_supported=True,
    ),
    "xai": ProviderPreset(
        name="xAI",
        url="https://api.x.ai/v1/chat/completions",
        default_model="grok-beta",
        models=("grok-beta",),
        inherits="chatgpt",
    ),
    "gemini": ProviderPreset(
        name="Google Gemini",
        url="https://generativelanguage.googleapis.com/v1beta",
        default_model="gemini-1.5-flash",
        models=("gemini-2.0-flash-exp", "gemini-1.5-flash", "gemini-1.5-flash-8b", "gemini-1.5-pro"),
        image_uploads_supported=True,
    ),
    "perplexity": ProviderPreset(
        name="Perplexity",
        url="https://api.perplexity.ai/chat/completions",
        default_model="sonar",
        models=("sonar-reasoning-pro", "sonar-reasoning", "sonar-pro", "sonar"),
        models_fetching=False,
    ),
    "deepseek": ProviderPreset(
        name="DeepSeek",
        url="https://api.deepseek.com/chat/completions",
        default_model="deepseek-chat",
        models=("deepseek-chat", "deepseek-reasoner"),
    ),
    "openrouter": ProviderPreset(
        name="OpenRouter",
        url="https://openrouter.ai/api/v1/chat/completions",
        default_model="deepseek/deepseek-r1:free",
        models=("openai/gpt-4o", "deepseek/deepseek-r1:free"),
    ),
    "groq": ProviderPreset(
        name="Groq",
        url="https://api.groq.com/openai/v1/chat/completions",
        default_model="llama-3.3-70b-versatile",
        models=("llama-3.3-70b-versatile", "llama-3.1-8b-instant", "gemma2-9b-it"),
        inherits="chatgpt",
    ),
    "mistral": ProviderPreset(
        name="Mistral",
        url="https://api.mistral.ai/v1/chat/completions",
        default_model="mistral-large-latest",
        models=("mistral-large-latest", "mistral-medium-latest", "mistral-small-latest"),
        inherits="chatgpt",
    ),
    "lmstudio": ProviderPreset(
        name="LM Studio",
        url="http://localhost:1234/v1/chat/completions",
        default_model="local-model",
        models=("local-model",),
        inherits="chatgpt",
    ),
    "local": ProviderPreset(
        name="On-device",
        url="local://model",
        default_model="",
        models_fetching=False,
    ),
}

_ALIASES: dict[str, str] = {
    "chat gpt": "chatgpt",
    "openai": "chatgpt",
    "openai image": "chatgpt image",
    "anthropic": "claude",
    "google": "gemini",
    "open router": "openrouter",
    "lm studio": "lmstudio",
    "x.ai": "xai",
    "grok": "xai",
    "on-device": "local",
    "mlx": "local",
    "coreml": "local",
    "core ml": "local",
    "coreml llm": "local",
    "huggingface": "local",
    "hugging face": "local",
}


def normalize_provider_id(name: str) -> str:
    """Case and whitespace insensitive provider key lookup."""
    key = " ".join(name.strip().lower().split())
    return _ALIASES.get(key, key)


def get_preset(name: str) -> ProviderPreset:
    key = normalize_provider_id(name)
    try:
        return PRESETS[key]
    except KeyError as exc:
        raise KeyError(f"No preset for provider '{name}'") from exc


def adapter_key(name: str) -> str:
    """Adapter family for a provider name, following ``inherits``."""
    key = normalize_provider_id(name)
    preset = PRESETS.get(key)
    if preset is not None and preset.inherits:
        return preset.inherits
    return key

