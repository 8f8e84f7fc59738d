import asyncio
import json
import unittest
from collections.abc import AsyncIterator, Callable

import httpx

from unified_chat.attachments import InMemoryAttachmentResolver
from unified_chat.config import ProviderConfig
from unified_chat.errors import ErrorKind
from unified_chat.providers.gemini import GeminiProvider, map_role
from unified_chat.types import Message, StreamEvent

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 8


def _provider(
    handler: Callable[[httpx.Request], httpx.Response] | None = None,
    api_url: str | None = None,
    **kwargs,
) -> GeminiProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler or (lambda r: httpx.Response(500))))
    config = ProviderConfig.from_preset("gemini", api_key="g-key")
    if api_url is not None:
        config = config.model_copy(update={"api_url": api_url})
    return GeminiProvider(config, client=client, **kwargs)


class GeminiRequestTests(unittest.TestCase):
    def test_query_auth_and_role_mapping(self) -> None:
        provider = _provider()
        messages = [
            Message(role="system", content="Rules"),
            Message(role="user", content="Hi"),
            Message(role="assistant", content="Hello"),
            Message(role="user", content=""),
        ]
        request = provider.prepare_request(messages, None, "gemini-1.5-flash", 0.7, stream=False)

        self.assertEqual(
            request.url,
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-flash:generateContent",
        )
        self.assertEqual(request.params, {"key": "g-key"})
        self.assertNotIn("Authorization", request.headers)
        self.assertEqual(
            request.json_body,
            {
                "contents": [
                    {"role": "user", "parts": [{"text": "Rules"}]},
                    {"role": "user", "parts": [{"text": "Hi"}]},
                    {"role": "model", "parts": [{"text": "Hello"}]},
                ],
                "generationConfig": {"temperature": 0.7},
            },
        )

    def test_streaming_endpoint(self) -> None:
        request = _provider().prepare_request([Message(role="user", content="Hi")], None, "gemini-1.5-pro", 1.0, stream=True)
        self.assertTrue(request.url.endswith("/models/gemini-1.5-pro:streamGenerateContent"))
        self.assertEqual(request.params, {"key": "g-key", "alt": "sse"})

    def test_configured_method_url_is_kept(self) -> None:
        url = "https://example.test/v1/models/custom:generateContent"
        provider = _provider(api_url=url)
        msgs = [Message(role="user", content="Hi")]
        self.assertEqual(provider.prepare_request(msgs, None, "other", 1.0, stream=False).url, url)
        self.assertEqual(
            provider.prepare_request(msgs, None, "other", 1.0, stream=True).url,
            "https://example.test/v1/models/custom:streamGenerateContent",
        )

    def test_inline_image_parts(self) -> None:
        provider = _provider(resolver=InMemoryAttachmentResolver(images={"p": PNG}, files={"f": "doc"}))
        request = provider.prepare_request(
            [Message(role="user", content="<file-uuid>f</file-uuid>look <image-uuid>p</image-uuid>")],
            None,
            "gemini-1.5-flash",
            1.0,
            stream=False,
        )
        parts = request.json_body["contents"][0]["parts"]
        self.assertEqual(parts[0], {"text": "doc"})
        self.assertEqual(parts[1], {"text": "look"})
        self.assertEqual(parts[2]["inlineData"]["mimeType"], "image/jpeg")

    def test_map_role(self) -> None:
        self.assertEqual(map_role("assistant"), "model")
        self.assertEqual(map_role("system"), "user")
        self.assertEqual(map_role("user"), "user")


class GeminiParsingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = _provider()

    def test_parse_joins_text_parts(self) -> None:
        body = {"candidates": [{"content": {"parts": [{"text": "Hel"}, {"text": "lo"}]}}]}
        parsed = self.provider.parse_json_response(json.dumps(body))
        self.assertEqual(parsed.text, "Hello")
        self.assertEqual(parsed.role, "assistant")

    def test_parse_inline_image(self) -> None:
        body = {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "QQ=="}}]}}]}
        parsed = self.provider.parse_json_response(json.dumps(body))
        self.assertEqual(parsed.text, "<image-url>data:image/png;base64,QQ==</image-url>")

    def test_parse_without_candidates(self) -> None:
        self.assertIsNone(self.provider.parse_json_response(b'{"candidates":[]}'))

    def test_delta_finish_reason(self) -> None:
        parse = self.provider.parse_delta_json_response
        event = parse('{"candidates":[{"content":{"parts":[{"text":"a"}]}}]}')
        self.assertEqual(event.text_delta, "a")
        self.assertFalse(event.finished)
        event = parse('{"candidates":[{"content":{"parts":[{"text":"b"}]},"finishReason":"STOP"}]}')
        self.assertTrue(event.finished)
        self.assertEqual(event.text_delta, "b")

    def test_delta_error(self) -> None:
        event = self.provider.parse_delta_json_response('{"error":{"code":400,"message":"API key not valid"}}')
        self.assertEqual(event.error.kind, ErrorKind.SERVER_ERROR)
        self.assertEqual(event.error.message, "API key not valid")

    def test_stream_and_models(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.params["key"], "g-key")
            if request.method == "GET":
                return httpx.Response(200, json={"models": [{"name": "models/gemini-1.5-pro"}]})
            self.assertEqual(request.url.params["alt"], "sse")
            return httpx.Response(
                200,
                content=(
                    b'data: {"candidates":[{"content":{"parts":[{"text":"Hi"}]}}]}\r\n\r\n'
                    b'data: {"candidates":[{"content":{"parts":[{"text":"!"}]},"finishReason":"STOP"}]}\r\n\r\n'
                ),
            )

        provider = _provider(handler)
        events = asyncio.run(_collect_events(provider.send_message_stream([{"role": "user", "content": "hi"}])))
        self.assertEqual([e.text_delta for e in events], ["Hi", "!"])
        self.assertTrue(events[-1].finished)

        self.assertEqual(asyncio.run(provider.fetch_models()), ["gemini-1.5-pro"])


async def _collect_events(stream: AsyncIterator[StreamEvent]) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    async for event in stream:
        events.append(event)
    return events


if __name__ == "__main__":
    unittest.main()
