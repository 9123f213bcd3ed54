"""
Token Estimation for agentloop.

Cheap, provider-agnostic token approximation used by the summarizer and the
summarization trigger. Counts are estimates (roughly four characters per
token), never exact tokenizer output.

Also normalizes message content into plain text:
- Plain strings pass through
- Content-part lists contribute their text parts
- Image parts are rendered as "[image:<url> detail=<detail>]"
- Anything else is serialized as JSON
"""

import json
import math
from typing import Any, Dict, Iterable, Optional


# ============================================================================
# CONSTANTS
# ============================================================================

CHARS_PER_TOKEN = 4


# ============================================================================
# CONTENT NORMALIZATION
# ============================================================================

def _part_to_string(part: Any) -> str:
    if isinstance(part, str):
        return part
    if not isinstance(part, dict):
        return json.dumps(part, default=str)

    if part.get("type") == "text" and isinstance(part.get("text"), str):
        return part["text"]

    if part.get("type") == "image_url":
        image = part.get("image_url")
        if isinstance(image, dict):
            url = image.get("url", "")
            detail = image.get("detail")
        else:
            url, detail = image or "", None
        suffix = f" detail={detail}" if detail else ""
        return f"[image:{url}{suffix}]"

    return json.dumps(part, default=str)


def content_to_string(content: Any) -> str:
    """
    Flatten message content into a single string.

    Args:
        content: String, list of content parts, None, or any JSON-able value.

    Returns:
        Plain text representation of the content.

    Example:
        >>> content_to_string([{"type": "text", "text": "hi"}, "there"])
        'hi\\nthere'
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(_part_to_string(part) for part in content)
    return json.dumps(content, default=str)


# ============================================================================
# TOKEN COUNTING
# ============================================================================

def count_approx_tokens(text: Optional[str]) -> int:
    """Approximate token count for a string (ceil of chars / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def message_tokens(message: Dict[str, Any]) -> int:
    """
    Approximate tokens for one message, including its tool-call arguments.

    Args:
        message: Message dict (role, content, optional tool_calls).

    Returns:
        Estimated token count.
    """
    total = count_approx_tokens(content_to_string(message.get("content")))
    for call in message.get("tool_calls") or []:
        total += count_approx_tokens(json.dumps(call, default=str))
    return total


def estimate_messages_tokens(messages: Iterable[Dict[str, Any]]) -> int:
    """Approximate tokens for a whole transcript."""
    return sum(message_tokens(message) for message in messages)


__all__ = [
    "CHARS_PER_TOKEN",
    "content_to_string",
    "count_approx_tokens",
    "message_tokens",
    "estimate_messages_tokens",
]
