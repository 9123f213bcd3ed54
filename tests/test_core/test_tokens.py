"""
Tests for agentloop/core/tokens.py - Token Estimation.

Tests:
- Content flattening (strings, parts, images, JSON)
- Approximate token counts
"""

from agentloop.core.tokens import content_to_string, count_approx_tokens, estimate_messages_tokens, message_tokens


class TestContentToString:
    """Tests for content_to_string."""

    def test_plain_string(self):
        assert content_to_string("hello") == "hello"

    def test_none(self):
        assert content_to_string(None) == ""

    def test_text_parts(self):
        content = [{"type": "text", "text": "hi"}, "there"]
        assert content_to_string(content) == "hi\nthere"

    def test_image_part(self):
        content = [{"type": "image_url", "image_url": {"url": "http://x/cat.png", "detail": "low"}}]
        assert content_to_string(content) == "[image:http://x/cat.png detail=low]"

    def test_image_part_without_detail(self):
        content = [{"type": "image_url", "image_url": "http://x/cat.png"}]
        assert content_to_string(content) == "[image:http://x/cat.png]"

    def test_other_values_serialized(self):
        assert content_to_string({"a": 1}) == '{"a": 1}'
        assert content_to_string([{"type": "audio"}]) == '{"type": "audio"}'


class TestTokenCounts:
    """Tests for the approximate counters."""

    def test_count_rounds_up(self):
        assert count_approx_tokens("") == 0
        assert count_approx_tokens(None) == 0
        assert count_approx_tokens("abcd") == 1
        assert count_approx_tokens("abcde") == 2

    def test_message_includes_tool_calls(self):
        plain = {"role": "assistant", "content": "abcd"}
        with_call = {**plain, "tool_calls": [{"id": "c1", "name": "echo", "args": {}}]}

        assert message_tokens(plain) == 1
        assert message_tokens(with_call) > 1

    def test_transcript_total(self):
        messages = [{"role": "user", "content": "abcd"}, {"role": "assistant", "content": "abcdefgh"}]
        assert estimate_messages_tokens(messages) == 3
