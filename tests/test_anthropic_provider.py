import asyncio
import json
import unittest

import httpx

from llm_gateway.errors import TranslationError
from llm_gateway.providers import AnthropicProvider
from llm_gateway.types import DONE, ChatRequest, ProviderConfig

from support import NO_WAIT, collect, mock_client, sse_response


def _provider(handler=None) -> AnthropicProvider:
    handler = handler or (lambda r: httpx.Response(200))
    return AnthropicProvider(
        ProviderConfig(type="anthropic", api_key="sk-ant", model="claude-test"),
        client=mock_client(handler),
        retry_policy=NO_WAIT,
    )


def _request(messages: list[dict], **extra) -> ChatRequest:
    return ChatRequest.model_validate({"messages": messages, **extra})


class AnthropicRequestTests(unittest.TestCase):
    def test_system_messages_are_joined(self) -> None:
        payload = _provider().translate_request(
            _request(
                [
                    {"role": "system", "content": "Be brief."},
                    {"role": "user", "content": "hi"},
                    {"role": "system", "content": "Answer in French."},
                ]
            )
        )
        self.assertEqual(payload["system"], "Be brief.\n\nAnswer in French.")
        self.assertEqual(payload["messages"], [{"role": "user", "content": "hi"}])
        self.assertEqual(payload["max_tokens"], 4096)
        self.assertEqual(payload["model"], "claude-test")

    def test_system_only_conversation_is_rejected(self) -> None:
        with self.assertRaises(TranslationError):
            _provider().translate_request(_request([{"role": "system", "content": "alone"}]))

    def test_tool_calls_and_results_become_blocks(self) -> None:
        payload = _provider().translate_request(
            _request(
                [
                    {"role": "user", "content": "weather and time?"},
                    {
                        "role": "assistant",
                        "content": "Checking.",
                        "tool_calls": [
                            {"id": "tu_1", "function": {"name": "weather", "arguments": '{"city": "Oslo"}'}},
                            {"id": "tu_2", "function": {"name": "get_time", "arguments": "{}"}},
                        ],
                    },
                    {"role": "tool", "tool_call_id": "tu_1", "content": "rain"},
                    {"role": "tool", "tool_call_id": "tu_2", "content": "noon"},
                ],
                tools=[
                    {"type": "function", "function": {"name": "weather", "description": "Forecast"}},
                    {"type": "function", "function": {"name": "get_time"}},
                ],
                tool_choice="required",
                max_tokens=100,
                stop="END",
            )
        )
        assistant, results = payload["messages"][1], payload["messages"][2]
        self.assertEqual(assistant["content"][0], {"type": "text", "text": "Checking."})
        self.assertEqual(
            assistant["content"][1],
            {"type": "tool_use", "id": "tu_1", "name": "weather", "input": {"city": "Oslo"}},
        )
        self.assertEqual(len(payload["messages"]), 3)
        self.assertEqual(
            [block["tool_use_id"] for block in results["content"]], ["tu_1", "tu_2"]
        )
        self.assertEqual(results["role"], "user")
        self.assertEqual(payload["tools"][0]["name"], "weather")
        self.assertEqual(payload["tools"][0]["input_schema"], {"type": "object", "properties": {}})
        self.assertEqual(payload["tool_choice"], {"type": "any"})
        self.assertEqual(payload["max_tokens"], 100)
        self.assertEqual(payload["stop_sequences"], ["END"])

    def test_named_tool_choice(self) -> None:
        payload = _provider().translate_request(
            _request(
                [{"role": "user", "content": "hi"}],
                tools=[{"type": "function", "function": {"name": "get_time"}}],
                tool_choice={"type": "function", "function": {"name": "get_time"}},
            )
        )
        self.assertEqual(payload["tool_choice"], {"type": "tool", "name": "get_time"})

    def test_images_map_to_sources(self) -> None:
        payload = _provider().translate_request(
            _request(
                [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": "compare"},
                            {"type": "image_url", "image_url": {"url": "data:image/png;base64,QUJD"}},
                            {"type": "image_url", "image_url": {"url": "https://img.example/cat.jpg"}},
                        ],
                    }
                ]
            )
        )
        blocks = payload["messages"][0]["content"]
        self.assertEqual(
            blocks[1]["source"], {"type": "base64", "media_type": "image/png", "data": "QUJD"}
        )
        self.assertEqual(blocks[2]["source"], {"type": "url", "url": "https://img.example/cat.jpg"})


class AnthropicResponseTests(unittest.TestCase):
    def test_text_and_tool_use_response(self) -> None:
        response = _provider().translate_response(
            {
                "id": "msg_1",
                "model": "claude-test",
                "content": [
                    {"type": "text", "text": "Let me check."},
                    {"type": "tool_use", "id": "tu_1", "name": "get_time", "input": {"tz": "UTC"}},
                ],
                "stop_reason": "tool_use",
                "usage": {"input_tokens": 10, "output_tokens": 4},
            }
        )
        message = response.choices[0].message
        self.assertEqual(message.content, "Let me check.")
        self.assertEqual(message.tool_calls[0].index, 1)
        self.assertEqual(json.loads(message.tool_calls[0].function.arguments), {"tz": "UTC"})
        self.assertEqual(response.choices[0].finish_reason, "tool_use")
        self.assertEqual(response.usage.total_tokens, 14)

    def test_error_body_raises(self) -> None:
        with self.assertRaises(TranslationError):
            _provider().translate_response({"type": "error", "error": {"message": "overloaded"}})


class AnthropicStreamTests(unittest.TestCase):
    EVENTS = [
        {"type": "message_start", "message": {"id": "msg_9", "model": "claude-test", "usage": {"input_tokens": 7}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "ping"},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
        {"type": "content_block_stop", "index": 0},
        {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "tu_1", "name": "get_time"}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"tz":'}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '"UTC"}'}},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 3}},
        {"type": "message_stop"},
    ]

    def test_event_sequence_translation(self) -> None:
        chunks = asyncio.run(collect(_provider(lambda r: sse_response(*self.EVENTS)).stream(
            _request([{"role": "user", "content": "time?"}])
        )))
        self.assertEqual(chunks[0].delta.role, "assistant")
        self.assertTrue(all(chunk.id == "msg_9" for chunk in chunks))
        self.assertEqual(chunks[1].delta.content, "Hi")
        start = chunks[2].delta.tool_calls[0]
        self.assertEqual((start.index, start.id, start.function.name), (1, "tu_1", "get_time"))
        arguments = "".join(c.delta.tool_calls[0].function.arguments for c in chunks[3:5])
        self.assertEqual(json.loads(arguments), {"tz": "UTC"})
        self.assertEqual(chunks[-1].finish_reason, "tool_use")
        self.assertEqual(
            (chunks[-1].usage.prompt_tokens, chunks[-1].usage.completion_tokens), (7, 3)
        )
        self.assertEqual(len(chunks), 6)

    def test_message_stop_is_done_and_unknown_events_skip(self) -> None:
        provider = _provider()
        self.assertEqual(provider.translate_stream_chunk({"type": "message_stop"}), DONE)
        self.assertIsNone(provider.translate_stream_chunk({"type": "ping"}))
        self.assertIsNone(provider.translate_stream_chunk("data: not-json"))

    def test_stream_request_headers(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return sse_response({"type": "message_stop"})

        asyncio.run(collect(_provider(handler).stream(_request([{"role": "user", "content": "hi"}]))))
        request = seen[0]
        self.assertEqual(str(request.url), "https://api.anthropic.com/v1/messages")
        self.assertEqual(request.headers["x-api-key"], "sk-ant")
        self.assertEqual(request.headers["anthropic-version"], "2023-06-01")
        self.assertEqual(request.headers["accept"], "text/event-stream")
        self.assertTrue(json.loads(request.content)["stream"])


if __name__ == "__main__":
    unittest.main()
