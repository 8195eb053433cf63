import re
import unittest
from datetime import datetime
from types import SimpleNamespace

from backend.mindmap_errors import (
    ConfigurationError,
    EmptyResponseError,
    ModelCallError,
    NoJsonFoundError,
    NoTranscriptContent,
)
from backend.mindmap_generator import build_mindmap_messages, format_transcript, generate_mindmap

ONE_NODE = (
    '{"nodes": [{"id": "node-1", "label": "Budget", "type": "topic", "level": 1, '
    '"color": "#4A90E2", "size": 20}], "edges": []}'
)


def _completion(content, finish_reason="stop"):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason=finish_reason)]
    )


class _FakeChatClient:
    def __init__(self, *responses, provider="openai", model="gpt-4o-mini"):
        self.provider = provider
        self.model = model
        self.responses = list(responses)
        self.calls = []

    async def chat(self, messages, **kwargs):
        self.calls.append({"messages": messages, **kwargs})
        item = self.responses.pop(0) if self.responses else _completion(ONE_NODE)
        if isinstance(item, Exception):
            raise item
        return item


class TestFormatTranscript(unittest.TestCase):
    def test_lines_with_local_time(self):
        out = format_transcript([{"speaker": "Alice", "text": " We need a Q4 budget ", "start_at": 1700000000}])
        self.assertRegex(out, r"^\[\d{2}:\d{2}:\d{2}\] Alice: We need a Q4 budget$")

    def test_millisecond_timestamps(self):
        seconds = format_transcript([{"speaker": "A", "text": "x", "start_at": 1700000000}])
        millis = format_transcript([{"speaker": "A", "text": "x", "start_at": 1700000000000}])
        self.assertEqual(seconds, millis)
        expected = datetime.fromtimestamp(1700000000).strftime("%H:%M:%S")
        self.assertTrue(seconds.startswith(f"[{expected}]"))

    def test_unusable_timestamp_falls_back_to_index(self):
        out = format_transcript(
            [
                {"speaker": "Alice", "text": "hi", "start_at": None},
                {"speaker": "", "text": "hello", "start_at": "not-a-time"},
            ]
        )
        self.assertEqual(out.splitlines(), ["[0] Alice: hi", "[1] unknown: hello"])

    def test_prompt_embeds_transcript(self):
        messages = build_mindmap_messages("[0] Alice: budget")
        self.assertEqual(messages[0]["role"], "system")
        self.assertIn("Return only valid JSON", messages[0]["content"])
        self.assertIn("[0] Alice: budget", messages[1]["content"])
        self.assertTrue(re.search(r"max 20 char", messages[1]["content"]))


class TestGenerateMindmap(unittest.IsolatedAsyncioTestCase):
    async def test_single_turn_scenario(self):
        client = _FakeChatClient(_completion(ONE_NODE))
        result = await generate_mindmap([{"speaker": "Alice", "text": "We need a Q4 budget", "start_at": 1700000000}], client)

        self.assertEqual(len(result.nodes), 1)
        self.assertEqual(result.nodes[0]["label"], "Budget")
        self.assertEqual(result.edges, [])
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.finish_reason, "stop")

        call = client.calls[0]
        self.assertEqual(call["temperature"], 0.3)
        self.assertEqual(call["max_tokens"], 16384)
        self.assertTrue(call["json_mode"])

    async def test_unknown_provider_uses_default_capabilities(self):
        client = _FakeChatClient(_completion(ONE_NODE), provider="custom", model="local-llm")
        await generate_mindmap([{"speaker": "A", "text": "hello"}], client)
        self.assertEqual(client.calls[0]["max_tokens"], 8192)
        self.assertFalse(client.calls[0]["json_mode"])

    async def test_missing_client_is_configuration_error(self):
        with self.assertRaises(ConfigurationError) as ctx:
            await generate_mindmap([{"speaker": "A", "text": "hello"}], None)
        self.assertFalse(ctx.exception.retryable)

    async def test_blank_transcript_is_skipped(self):
        client = _FakeChatClient()
        with self.assertRaises(NoTranscriptContent):
            await generate_mindmap([{"speaker": "A", "text": "   "}], client)
        with self.assertRaises(NoTranscriptContent):
            await generate_mindmap([], client)
        self.assertEqual(client.calls, [])

    async def test_transport_failure_is_model_call_error(self):
        client = _FakeChatClient(RuntimeError("connection reset"))
        with self.assertRaises(ModelCallError) as ctx:
            await generate_mindmap([{"speaker": "A", "text": "hello"}], client)
        self.assertTrue(ctx.exception.retryable)
        self.assertIn("connection reset", str(ctx.exception))

    async def test_empty_response(self):
        client = _FakeChatClient(_completion("", finish_reason="content_filter"))
        with self.assertRaises(EmptyResponseError) as ctx:
            await generate_mindmap([{"speaker": "A", "text": "hello"}], client)
        self.assertEqual(ctx.exception.finish_reason, "content_filter")

    async def test_refusal(self):
        client = _FakeChatClient(_completion("I cannot help with that."))
        with self.assertRaises(NoJsonFoundError):
            await generate_mindmap([{"speaker": "A", "text": "hello"}], client)

    async def test_truncated_output_adds_warning(self):
        client = _FakeChatClient(_completion(ONE_NODE, finish_reason="length"))
        result = await generate_mindmap([{"speaker": "A", "text": "hello"}], client)
        self.assertEqual(len(result.nodes), 1)
        self.assertEqual(len(result.warnings), 1)
        self.assertIn("token limit", result.warnings[0])


if __name__ == "__main__":
    unittest.main()
