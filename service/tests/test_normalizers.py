"""Tests for per-vendor event normalization."""

import pytest

from airelay.services.llm.normalizers import (
    MalformedEventError,
    ProviderEvent,
    StreamChunk,
    normalize_event,
)


class TestOpenAI:

    def test_stream_delta(self):
        event = ProviderEvent("openai", {"choices": [{"delta": {"content": "Hel"}, "finish_reason": None}]})
        assert normalize_event(event) == StreamChunk("Hel", is_final=False)

    def test_final_delta(self):
        event = ProviderEvent("openai", {"choices": [{"delta": {}, "finish_reason": "stop"}]})
        assert normalize_event(event) == StreamChunk("", is_final=True)

    def test_full_response(self):
        event = ProviderEvent("openai", {"choices": [{"message": {"content": "Hello"}, "finish_reason": "stop"}]})
        assert normalize_event(event) == StreamChunk("Hello", is_final=True)

    def test_usage_trailer_without_choices(self):
        assert normalize_event(ProviderEvent("openai", {"choices": [], "usage": {"total_tokens": 9}})) == StreamChunk("")

    def test_error_payload(self):
        with pytest.raises(MalformedEventError):
            normalize_event(ProviderEvent("openai", {"error": {"message": "boom"}}))


class TestAnthropic:

    def test_text_delta(self):
        event = ProviderEvent("anthropic", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}})
        assert normalize_event(event) == StreamChunk("Hi")

    def test_non_text_delta_is_empty(self):
        event = ProviderEvent("anthropic", {"type": "content_block_delta", "delta": {"type": "input_json_delta"}})
        assert normalize_event(event) == StreamChunk("")

    def test_message_stop_is_final(self):
        assert normalize_event(ProviderEvent("anthropic", {"type": "message_stop"})).is_final

    def test_full_message_joins_text_blocks(self):
        event = ProviderEvent("anthropic", {
            "type": "message",
            "content": [{"type": "text", "text": "One. "}, {"type": "tool_use"}, {"type": "text", "text": "Two."}],
        })
        assert normalize_event(event) == StreamChunk("One. Two.", is_final=True)

    def test_error_event(self):
        with pytest.raises(MalformedEventError, match="overloaded"):
            normalize_event(ProviderEvent("anthropic", {"type": "error", "error": {"message": "overloaded"}}))


class TestGoogle:

    def test_parts_are_joined_and_thoughts_skipped(self):
        event = ProviderEvent("google", {"candidates": [{
            "content": {"parts": [{"text": "thinking", "thought": True}, {"text": "Answer"}]},
            "finish_reason": None,
        }]})
        assert normalize_event(event) == StreamChunk("Answer")

    def test_finish_reason_marks_final(self):
        event = ProviderEvent("google", {"candidates": [{"content": {"parts": []}, "finishReason": "STOP"}]})
        assert normalize_event(event).is_final

    def test_blocked_prompt(self):
        with pytest.raises(MalformedEventError):
            normalize_event(ProviderEvent("google", {"candidates": None, "prompt_feedback": {"block_reason": "SAFETY"}}))


def test_unknown_kind():
    with pytest.raises(MalformedEventError):
        normalize_event(ProviderEvent("mistral", {}))


def test_non_mapping_payload():
    with pytest.raises(MalformedEventError):
        normalize_event(ProviderEvent("openai", ["not", "a", "dict"]))
