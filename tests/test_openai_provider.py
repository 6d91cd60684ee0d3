import asyncio
import json
import unittest

import httpx

from llm_gateway.errors import NetworkError, UpstreamError
from llm_gateway.providers import OpenAIProvider
from llm_gateway.types import ChatRequest, ProviderConfig

from support import (
    NO_WAIT,
    collect,
    dropped_sse_response,
    mock_client,
    openai_chunk,
    openai_completion,
    sse_response,
)


def _provider(handler, **config) -> OpenAIProvider:
    settings = {"type": "openai", "api_key": "sk-test", "base_url": "https://llm.example/v1/"}
    settings.update(config)
    return OpenAIProvider(ProviderConfig(**settings), client=mock_client(handler), retry_policy=NO_WAIT)


def _request(**extra) -> ChatRequest:
    payload = {"model": "toy", "messages": [{"role": "user", "content": "hi"}]}
    payload.update(extra)
    return ChatRequest.model_validate(payload)


class OpenAITranslationTests(unittest.TestCase):
    def test_base_url_drops_trailing_slash_and_version(self) -> None:
        provider = _provider(lambda r: httpx.Response(200))
        self.assertEqual(provider.base_url, "https://llm.example")
        self.assertEqual(
            _provider(lambda r: httpx.Response(200), base_url=None).base_url,
            "https://api.openai.com",
        )

    def test_request_is_passthrough_without_internal_fields(self) -> None:
        req = ChatRequest.model_validate(
            {
                "model": "toy",
                "provider_id": "main",
                "temperature": 0.2,
                "messages": [
                    {"role": "user", "content": "time?"},
                    {
                        "role": "assistant",
                        "tool_calls": [
                            {
                                "id": "call_1",
                                "index": 0,
                                "gemini_thought_signature": "sig",
                                "function": {"name": "get_time", "arguments": "{}"},
                            }
                        ],
                    },
                    {"role": "tool", "tool_call_id": "call_1", "content": "noon"},
                ],
            }
        )
        payload = _provider(lambda r: httpx.Response(200)).translate_request(req)
        self.assertNotIn("provider_id", payload)
        self.assertEqual(payload["temperature"], 0.2)
        self.assertEqual(
            payload["messages"][1]["tool_calls"],
            [{"id": "call_1", "type": "function", "function": {"name": "get_time", "arguments": "{}"}}],
        )
        self.assertIsNone(payload["messages"][1]["content"])

    def test_default_model_used_when_request_omits_it(self) -> None:
        req = ChatRequest.model_validate({"messages": [{"role": "user", "content": "hi"}]})
        payload = _provider(lambda r: httpx.Response(200)).translate_request(req)
        self.assertEqual(payload["model"], "gpt-4.1-mini")

    def test_response_fills_missing_fields(self) -> None:
        provider = _provider(lambda r: httpx.Response(200))
        response = provider.translate_response(
            {"choices": [{"message": {"content": "Hello world"}}]}, _request()
        )
        self.assertEqual(response.choices[0].message.content, "Hello world")
        self.assertEqual(response.choices[0].message.role, "assistant")
        self.assertEqual(response.model, "toy")
        self.assertTrue(response.id.startswith("chatcmpl-"))

    def test_stream_chunks_need_no_translation(self) -> None:
        provider = _provider(lambda r: httpx.Response(200))
        self.assertFalse(provider.needs_streaming_translation())
        chunk = provider.translate_stream_chunk("data: " + json.dumps(openai_chunk({"content": "hi"})))
        self.assertEqual(chunk.delta.content, "hi")
        self.assertEqual(provider.translate_stream_chunk("data: [DONE]"), "[DONE]")
        self.assertIsNone(provider.translate_stream_chunk("data: {not json"))


class OpenAIExchangeTests(unittest.TestCase):
    def test_chat_posts_with_bearer_auth(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=openai_completion("Hello world"))

        response = asyncio.run(_provider(handler).chat(_request(stream=True)))
        self.assertEqual(response.choices[0].message.content, "Hello world")
        self.assertEqual(response.usage.total_tokens, 5)
        self.assertEqual(str(seen[0].url), "https://llm.example/v1/chat/completions")
        self.assertEqual(seen[0].headers["authorization"], "Bearer sk-test")
        self.assertFalse(json.loads(seen[0].content)["stream"])

    def test_stream_yields_chunks_until_done(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertTrue(json.loads(request.content)["stream"])
            return sse_response(
                openai_chunk({"role": "assistant", "content": ""}),
                openai_chunk({"content": "Hello"}),
                openai_chunk({"content": " world"}, finish_reason="stop"),
                "[DONE]",
                openai_chunk({"content": "never"}),
            )

        chunks = asyncio.run(collect(_provider(handler).stream(_request())))
        self.assertEqual("".join(c.delta.content or "" for c in chunks), "Hello world")
        self.assertEqual(chunks[-1].finish_reason, "stop")

    def test_stream_falls_back_to_json_body(self) -> None:
        provider = _provider(lambda r: httpx.Response(200, json=openai_completion("whole")))
        chunks = asyncio.run(collect(provider.stream(_request())))
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].delta.content, "whole")
        self.assertEqual(chunks[0].finish_reason, "stop")

    def test_error_status_raises_upstream_error(self) -> None:
        provider = _provider(lambda r: httpx.Response(401, json={"error": "bad key"}))
        with self.assertRaises(UpstreamError) as ctx:
            asyncio.run(provider.chat(_request()))
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIn("Upstream API error (401)", str(ctx.exception))

    def test_transport_failure_becomes_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with self.assertRaises(UpstreamError) as ctx:
            asyncio.run(_provider(handler).chat(_request()))
        self.assertEqual(ctx.exception.status_code, 502)

    def test_body_read_failure_becomes_network_error(self) -> None:
        provider = _provider(lambda r: dropped_sse_response())
        with self.assertRaises(NetworkError) as ctx:
            asyncio.run(collect(provider.stream(_request())))
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertIsInstance(ctx.exception.__cause__, httpx.ReadError)

    def test_list_models(self) -> None:
        provider = _provider(
            lambda r: httpx.Response(200, json={"data": [{"id": "toy"}, {"object": "junk"}]})
        )
        self.assertEqual(asyncio.run(provider.list_models()), [{"id": "toy"}])

    def test_is_configured_requires_credentials(self) -> None:
        self.assertTrue(_provider(lambda r: httpx.Response(200)).is_configured())
        self.assertFalse(_provider(lambda r: httpx.Response(200), api_key=None).is_configured())
        self.assertTrue(
            _provider(
                lambda r: httpx.Response(200), api_key=None, headers={"Authorization": "Bearer x"}
            ).is_configured()
        )


if __name__ == "__main__":
    unittest.main()
