import asyncio
import base64
import json
import unittest
from collections.abc import AsyncIterator, Callable

import httpx

from unified_chat.attachments import InMemoryAttachmentResolver
from unified_chat.config import ProviderConfig
from unified_chat.errors import APIError, ErrorKind
from unified_chat.providers.openai_compat import POLICIES, OpenAICompatibleProvider, models_url
from unified_chat.types import Message, StreamEvent

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 8


def _provider(
    name: str = "chatgpt",
    handler: Callable[[httpx.Request], httpx.Response] | None = None,
    **kwargs,
) -> OpenAICompatibleProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler or (lambda r: httpx.Response(500))))
    config = ProviderConfig.from_preset(name, api_key=kwargs.pop("api_key", "sk-test"), model=kwargs.pop("model", None))
    return OpenAICompatibleProvider(config, client=client, **kwargs)


def _sse(*payloads: str) -> bytes:
    return "".join(f"data: {p}\n\n" for p in payloads).encode()


class RequestBuildingTests(unittest.TestCase):
    def test_vision_message_becomes_content_parts(self) -> None:
        provider = _provider(resolver=InMemoryAttachmentResolver(images={"a": PNG}))
        messages = [Message(role="user", content="What is this? <image-uuid>a</image-uuid>")]

        request = provider.prepare_request(messages, None, "gpt-4o", 0.5, stream=True)

        self.assertEqual(request.url, "https://api.openai.com/v1/chat/completions")
        self.assertEqual(request.headers["Authorization"], "Bearer sk-test")
        self.assertEqual(request.json_body["stream"], True)
        self.assertEqual(request.json_body["temperature"], 0.5)
        self.assertEqual(
            request.json_body["messages"][0]["content"],
            [
                {"type": "text", "text": "What is this?"},
                {
                    "type": "image_url",
                    "image_url": {"url": "data:image/jpeg;base64," + base64.b64encode(PNG).decode()},
                },
            ],
        )

    def test_non_vision_vendor_flattens_attachments(self) -> None:
        provider = _provider(
            "mistral",
            resolver=InMemoryAttachmentResolver(files={"f": "notes"}, images={"a": PNG}),
        )
        messages = [Message(role="user", content="sum <file-uuid>f</file-uuid><image-uuid>a</image-uuid>")]
        body = provider.prepare_request(messages, None, "mistral-large-latest", 1.0, stream=False).json_body
        self.assertEqual(body["messages"][0]["content"], "notes\n\nsum")

    def test_reasoning_model_forces_temperature(self) -> None:
        provider = _provider()
        body = provider.prepare_request([Message(role="user", content="hi")], None, "o1", 0.2, stream=False).json_body
        self.assertEqual(body["temperature"], 1.0)

    def test_tools_and_tool_choice(self) -> None:
        tools = [{"type": "function", "function": {"name": "lookup", "parameters": {}}}]
        msgs = [Message(role="user", content="hi")]
        body = _provider().prepare_request(msgs, tools, "gpt-5", 1.0, stream=False).json_body
        self.assertEqual(body["tools"], tools)
        self.assertEqual(body["tool_choice"], "auto")

        body = _provider("mistral").prepare_request(msgs, tools, "m", 1.0, stream=False).json_body
        self.assertNotIn("tool_choice", body)

    def test_vendor_headers(self) -> None:
        lmstudio = _provider("lmstudio", api_key="")
        request = lmstudio.prepare_request([Message(role="user", content="hi")], None, "m", 1.0, stream=False)
        self.assertNotIn("Authorization", request.headers)

        openrouter = _provider("openrouter")
        request = openrouter.prepare_request([Message(role="user", content="hi")], None, "m", 1.0, stream=False)
        self.assertEqual(request.headers["X-Title"], "unified-chat-client")
        self.assertIn("HTTP-Referer", request.headers)

    def test_think_tags_stripped_from_history(self) -> None:
        provider = _provider("deepseek")
        messages = [
            Message(role="assistant", content="<think>\nplan\n</think>\n\nanswer"),
            Message(role="user", content="next"),
        ]
        body = provider.prepare_request(messages, None, "deepseek-chat", 1.0, stream=False).json_body
        self.assertEqual(body["messages"][0]["content"], "answer")

    def test_image_generation_request(self) -> None:
        provider = _provider("chatgpt image")
        request = provider.prepare_request(
            [Message(role="user", content="a red fox <image-uuid>x</image-uuid>")],
            None,
            "gpt-image-1",
            1.0,
            stream=True,
        )
        self.assertEqual(request.url, "https://api.openai.com/v1/images/generations")
        self.assertEqual(
            request.json_body,
            {"model": "gpt-image-1", "prompt": "a red fox", "n": 1, "size": "1024x1024"},
        )

    def test_models_url(self) -> None:
        self.assertEqual(models_url("https://api.openai.com/v1/chat/completions"), "https://api.openai.com/v1/models")
        self.assertEqual(
            models_url("https://api.groq.com/openai/v1/chat/completions"),
            "https://api.groq.com/openai/v1/models",
        )


class ResponseParsingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = _provider()

    def test_reasoning_and_content_are_composed(self) -> None:
        body = {
            "choices": [
                {"message": {"role": "assistant", "content": "answer", "reasoning_content": "thinking"}}
            ]
        }
        parsed = self.provider.parse_json_response(json.dumps(body))
        self.assertEqual(parsed.text, "<think>\nthinking\n</think>\n\nanswer")
        self.assertEqual(parsed.role, "assistant")

    def test_tool_calls(self) -> None:
        body = {
            "choices": [
                {
                    "message": {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {"id": "call_1", "type": "function", "function": {"name": "f", "arguments": "{}"}},
                            {"id": "broken"},
                        ],
                    }
                }
            ]
        }
        parsed = self.provider.parse_json_response(json.dumps(body))
        self.assertIsNone(parsed.text)
        self.assertEqual(len(parsed.tool_calls), 1)
        self.assertEqual(parsed.tool_calls[0].function.name, "f")

    def test_image_payloads(self) -> None:
        parsed = self.provider.parse_json_response(b'{"data":[{"url":"https://img/1.png"}]}')
        self.assertEqual(parsed.text, "<image-url>https://img/1.png</image-url>")
        parsed = self.provider.parse_json_response(b'{"data":[{"b64_json":"QQ=="}]}')
        self.assertEqual(parsed.text, "<image-url>data:image/png;base64,QQ==</image-url>")

    def test_citations(self) -> None:
        provider = _provider("perplexity")
        body = {"choices": [{"message": {"role": "assistant", "content": "Fact [1]."}}], "citations": ["https://src"]}
        parsed = provider.parse_json_response(json.dumps(body))
        self.assertEqual(parsed.text, "Fact [\\[1\\]](https://src).")

    def test_unrecognized_shapes(self) -> None:
        self.assertIsNone(self.provider.parse_json_response(b"not json"))
        self.assertIsNone(self.provider.parse_json_response(b'{"choices":[]}'))


class DeltaParsingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = _provider()

    def test_done_sentinel(self) -> None:
        event = self.provider.parse_delta_json_response("[DONE]")
        self.assertTrue(event.finished)
        self.assertIsNone(event.error)

    def test_reasoning_delta_tagged(self) -> None:
        event = self.provider.parse_delta_json_response(b'{"choices":[{"delta":{"reasoning_content":"hmm"}}]}')
        self.assertEqual((event.role, event.text_delta), ("reasoning", "hmm"))

    def test_finish_reason_terminates(self) -> None:
        event = self.provider.parse_delta_json_response(
            '{"choices":[{"delta":{"content":"!"},"finish_reason":"stop"}]}'
        )
        self.assertTrue(event.finished)
        self.assertEqual(event.text_delta, "!")

    def test_tool_call_delta(self) -> None:
        event = self.provider.parse_delta_json_response(
            '{"choices":[{"delta":{"tool_calls":[{"index":0,"id":"c1","function":{"name":"f"}}]}}]}'
        )
        self.assertEqual(event.tool_calls[0].id, "c1")
        self.assertEqual(event.tool_calls[0].function.arguments, "")

    def test_error_payloads(self) -> None:
        event = self.provider.parse_delta_json_response('{"error":{"message":"overloaded"}}')
        self.assertEqual(event.error.kind, ErrorKind.SERVER_ERROR)
        self.assertEqual(event.error.message, "overloaded")
        event = self.provider.parse_delta_json_response('{"error":{"code":1}}')
        self.assertEqual(event.error.kind, ErrorKind.UNKNOWN)

    def test_missing_delta_and_empty_choices(self) -> None:
        event = self.provider.parse_delta_json_response('{"choices":[{"index":0}]}')
        self.assertEqual(event.error.kind, ErrorKind.DECODING_FAILED)
        event = self.provider.parse_delta_json_response('{"choices":[],"usage":{}}')
        self.assertFalse(event.is_terminal)
        self.assertFalse(event.has_payload)


class NetworkTests(unittest.TestCase):
    def test_stream_yields_reasoning_then_text_then_done(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                content=_sse(
                    '{"choices":[{"delta":{"reasoning_content":"r"}}]}',
                    '{"choices":[{"delta":{"content":"Hel"}}]}',
                    '{"choices":[{"delta":{"content":"lo"}}]}',
                    "[DONE]",
                ),
            )

        provider = _provider(handler=handler)
        events = asyncio.run(_collect_events(provider.send_message_stream([{"role": "user", "content": "hi"}])))

        self.assertEqual([(e.role, e.text_delta) for e in events[:-1]], [("reasoning", "r"), ("assistant", "Hel"), ("assistant", "lo")])
        self.assertTrue(events[-1].finished)
        self.assertEqual(sum(e.is_terminal for e in events), 1)
        self.assertEqual(json.loads(seen[0].content)["stream"], True)

    def test_image_model_streams_single_terminal_event(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertTrue(request.url.path.endswith("/images/generations"))
            return httpx.Response(200, json={"data": [{"b64_json": "QQ=="}]})

        provider = _provider("chatgpt image", handler=handler)
        events = asyncio.run(_collect_events(provider.send_message_stream([{"role": "user", "content": "fox"}])))
        self.assertEqual(len(events), 1)
        self.assertTrue(events[0].finished)
        self.assertEqual(events[0].text_delta, "<image-url>data:image/png;base64,QQ==</image-url>")

    def test_send_message_and_http_errors(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.headers.get("Authorization") == "Bearer bad":
                return httpx.Response(401, text="nope")
            return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": "ok"}}]})

        response = asyncio.run(_provider(handler=handler).send_message([{"role": "user", "content": "hi"}]))
        self.assertEqual(response.text, "ok")
        self.assertEqual(response.provider, "chatgpt")

        with self.assertRaises(APIError) as ctx:
            asyncio.run(_provider(handler=handler, api_key="bad").send_message([{"role": "user", "content": "hi"}]))
        self.assertEqual(ctx.exception.kind, ErrorKind.UNAUTHORIZED)

    def test_fetch_models(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(str(request.url), "https://api.openai.com/v1/models")
            return httpx.Response(200, json={"data": [{"id": "gpt-5"}, {"id": "o1"}]})

        self.assertEqual(asyncio.run(_provider(handler=handler).fetch_models()), ["gpt-5", "o1"])
        self.assertEqual(
            asyncio.run(_provider("perplexity").fetch_models()),
            ["sonar-reasoning-pro", "sonar-reasoning", "sonar-pro", "sonar"],
        )

    def test_policies_cover_openai_family(self) -> None:
        for name in ("chatgpt", "chatgpt image", "groq", "xai", "mistral", "lmstudio", "deepseek", "openrouter", "perplexity"):
            self.assertIn(name, POLICIES)


async def _collect_events(stream: AsyncIterator[StreamEvent]) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    async for event in stream:
        events.append(event)
    return events


if __name__ == "__main__":
    unittest.main()
