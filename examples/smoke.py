import asyncio
import logging

from unified_chat.client import LLMClient
from unified_chat.config import ProviderConfig
from unified_chat.errors import UnsupportedProviderError


async def main() -> None:
    logging.basicConfig(level=logging.INFO)
    client = LLMClient.from_configs(
        [
            ProviderConfig.from_preset("chatgpt", api_key="DUMMY"),
            ProviderConfig.from_preset("ollama"),
        ]
    )

    # Unregistered providers are rejected up front
    try:
        client.get_provider("claude")
    except UnsupportedProviderError as e:
        print("Expected error:", e.kind.value, e)

    # A bad key surfaces as a terminal error event, not an exception
    messages = [{"role": "user", "content": "hi"}]
    async with client:
        async for event in client.send_message_stream("chatgpt", messages):
            if event.error is not None:
                print("Stream ended with:", event.error.kind.value, event.error.message)
            elif event.text_delta:
                print(event.role, event.text_delta)


if __name__ == "__main__":
    asyncio.run(main())
