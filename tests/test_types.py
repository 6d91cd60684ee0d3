import unittest

from pydantic import ValidationError

from llm_gateway.types import (
    ChatRequest,
    ChatResponse,
    Choice,
    ChunkDelta,
    ImageUrlPart,
    Message,
    StreamChunk,
    TextPart,
)


def _tool(name: str) -> dict:
    return {"type": "function", "function": {"name": name}}


class ChatRequestValidationTests(unittest.TestCase):
    def test_requires_at_least_one_message(self) -> None:
        with self.assertRaises(ValidationError):
            ChatRequest(messages=[])

    def test_rejects_duplicate_tool_names(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            ChatRequest.model_validate(
                {"messages": [{"role": "user", "content": "hi"}], "tools": [_tool("a"), _tool("a")]}
            )
        self.assertIn("duplicate tool names: a", str(ctx.exception))

    def test_tool_message_must_answer_preceding_assistant_call(self) -> None:
        assistant = {
            "role": "assistant",
            "tool_calls": [{"id": "call_1", "function": {"name": "get_time", "arguments": "{}"}}],
        }
        ok = ChatRequest.model_validate(
            {
                "messages": [
                    {"role": "user", "content": "time?"},
                    assistant,
                    {"role": "tool", "tool_call_id": "call_1", "content": "noon"},
                ]
            }
        )
        self.assertEqual(ok.messages[-1].tool_call_id, "call_1")

        with self.assertRaises(ValidationError):
            ChatRequest.model_validate(
                {
                    "messages": [
                        {"role": "user", "content": "time?"},
                        assistant,
                        {"role": "tool", "tool_call_id": "call_2", "content": "noon"},
                    ]
                }
            )

        with self.assertRaises(ValidationError):
            ChatRequest.model_validate(
                {
                    "messages": [
                        assistant,
                        {"role": "user", "content": "interrupt"},
                        {"role": "tool", "tool_call_id": "call_1", "content": "noon"},
                    ]
                }
            )

    def test_unknown_fields_are_ignored(self) -> None:
        req = ChatRequest.model_validate(
            {"messages": [{"role": "user", "content": "hi"}], "conversation_id": "abc"}
        )
        self.assertFalse(hasattr(req, "conversation_id"))

    def test_content_parts_are_discriminated(self) -> None:
        message = Message.model_validate(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "look "},
                    {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
                    {"type": "text", "text": "here"},
                ],
            }
        )
        assert isinstance(message.content, list)
        self.assertIsInstance(message.content[0], TextPart)
        self.assertIsInstance(message.content[1], ImageUrlPart)
        self.assertEqual(message.text(), "look here")


class SerializationTests(unittest.TestCase):
    def test_stream_chunk_keeps_null_finish_reason(self) -> None:
        payload = StreamChunk.of(ChunkDelta(content="hi"), model="toy").to_payload()
        self.assertEqual(payload["object"], "chat.completion.chunk")
        self.assertIn("finish_reason", payload["choices"][0])
        self.assertIsNone(payload["choices"][0]["finish_reason"])
        self.assertEqual(payload["choices"][0]["delta"], {"content": "hi"})
        self.assertNotIn("usage", payload)

    def test_chat_response_payload_keeps_message_content(self) -> None:
        response = ChatResponse(
            model="toy",
            choices=[Choice(message=Message(role="assistant"), finish_reason=None)],
        )
        payload = response.to_payload()
        self.assertEqual(payload["object"], "chat.completion")
        self.assertIsNone(payload["choices"][0]["message"]["content"])
        self.assertIsNone(payload["choices"][0]["finish_reason"])
        self.assertTrue(payload["id"].startswith("chatcmpl-"))


if __name__ == "__main__":
    unittest.main()
