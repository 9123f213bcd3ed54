"""
Token Usage Normalization and Aggregation for agentloop.

Providers report usage under different key names (prompt_tokens vs
input_tokens, camelCase vs snake_case, nested detail objects). This module
maps them onto one common shape and aggregates it per model.

Run state carries usage as:
    {
        "per_request": [{"id", "model", "usage", "timestamp", "turn", "cached_input"}],
        "totals": {model_name: {"input", "output", "total", "cached_input", "call_count"}},
    }
"""

import copy
import logging
import math
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# NORMALIZATION
# ============================================================================

def _first_number(*values: Any) -> Optional[float]:
    for value in values:
        if value is None or isinstance(value, bool):
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if not math.isnan(number):
            return number
    return None


def _safe(value: Any) -> int:
    number = _first_number(value)
    if number is None or math.isinf(number) or number < 0:
        return 0
    return int(number)


def _get(raw: Any, key: str) -> Any:
    if isinstance(raw, dict):
        return raw.get(key)
    return getattr(raw, key, None)


def normalize_usage(raw: Any) -> Optional[Dict[str, Any]]:
    """
    Map a provider usage payload onto the common usage shape.

    Args:
        raw: Provider usage dict (or object). Falsy values yield None.

    Returns:
        Dict with prompt_tokens, completion_tokens, total_tokens,
        prompt_tokens_details, completion_tokens_details and the raw payload.
        Missing or invalid numbers become 0.

    Example:
        >>> normalize_usage({"input_tokens": 12, "output_tokens": 3})["total_tokens"]
        15
    """
    if not raw:
        return None

    prompt = _first_number(
        _get(raw, "prompt_tokens"), _get(raw, "input_tokens"),
        _get(raw, "promptTokens"), _get(raw, "total_prompt_tokens"),
    )
    completion = _first_number(
        _get(raw, "completion_tokens"), _get(raw, "output_tokens"),
        _get(raw, "completionTokens"), _get(raw, "total_completion_tokens"),
    )
    total = _first_number(_get(raw, "total_tokens"), _get(raw, "totalTokens"))
    if not total:
        total = (prompt or 0) + (completion or 0)

    prompt_details = _get(raw, "prompt_tokens_details") or _get(raw, "promptTokensDetails") or {}
    completion_details = _get(raw, "completion_tokens_details") or _get(raw, "completionTokensDetails") or {}

    cached = (
        _get(prompt_details, "cached_tokens") or _get(prompt_details, "cached")
        or _get(raw, "cached_input_tokens") or _get(raw, "cached_prompt_tokens")
    )

    return {
        "prompt_tokens": _safe(prompt),
        "completion_tokens": _safe(completion),
        "total_tokens": _safe(total),
        "prompt_tokens_details": {
            "cached_tokens": _safe(cached),
            "audio_tokens": _safe(_get(prompt_details, "audio_tokens")),
        },
        "completion_tokens_details": {
            "reasoning_tokens": _safe(_get(completion_details, "reasoning_tokens")),
            "audio_tokens": _safe(_get(completion_details, "audio_tokens")),
            "accepted_prediction_tokens": _safe(_get(completion_details, "accepted_prediction_tokens")),
            "rejected_prediction_tokens": _safe(_get(completion_details, "rejected_prediction_tokens")),
        },
        "raw": raw if isinstance(raw, dict) else None,
    }


def extract_raw_usage(message: Dict[str, Any]) -> Any:
    """Find the provider usage payload on a coerced model response."""
    metadata = message.get("response_metadata") or {}
    return (
        message.get("usage")
        or metadata.get("token_usage")
        or metadata.get("usage")
        or message.get("usage_metadata")
    )


# ============================================================================
# USAGE TRACKER
# ============================================================================

class UsageTracker:
    """
    Accumulates normalized token usage across model calls, with per-model totals.

    Example:
        >>> tracker = UsageTracker.from_dict(state.get("usage"))
        >>> tracker.add("gpt-4o-mini", normalize_usage(raw))
        >>> print(tracker.summary())
        "1 calls, 15 tokens"
    """

    def __init__(self):
        self.per_request: List[Dict[str, Any]] = []
        self.totals: Dict[str, Dict[str, int]] = {}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UsageTracker":
        """Build a tracker from run-state usage (copied, never aliased)."""
        tracker = cls()
        if data:
            tracker.per_request = copy.deepcopy(list(data.get("per_request") or []))
            tracker.totals = copy.deepcopy(dict(data.get("totals") or {}))
        return tracker

    def add(self, model_name: Optional[str], usage: Dict[str, Any]) -> Dict[str, Any]:
        """
        Record one model call.

        Args:
            model_name: Model identifier ("unknown" when missing).
            usage: Normalized usage from `normalize_usage`.

        Returns:
            The per-request entry that was appended.
        """
        model = model_name or "unknown"
        cached_input = usage["prompt_tokens_details"]["cached_tokens"]

        entry = {
            "id": uuid.uuid4().hex,
            "model": model,
            "usage": usage,
            "timestamp": datetime.now().isoformat(),
            "turn": len(self.per_request) + 1,
            "cached_input": cached_input,
        }
        self.per_request.append(entry)

        totals = self.totals.setdefault(
            model, {"input": 0, "output": 0, "total": 0, "cached_input": 0, "call_count": 0}
        )
        totals["input"] += usage["prompt_tokens"]
        totals["output"] += usage["completion_tokens"]
        totals["total"] += usage["total_tokens"]
        totals["cached_input"] += cached_input
        totals["call_count"] += 1

        logger.debug(f"Usage recorded for {model}: {usage['total_tokens']} tokens")
        return entry

    @property
    def call_count(self) -> int:
        return len(self.per_request)

    @property
    def total_tokens(self) -> int:
        return sum(stats["total"] for stats in self.totals.values())

    def get_model_breakdown(self) -> List[Dict[str, Any]]:
        """
        Get usage breakdown by model.

        Returns:
            List of dicts with model, tokens, input/output tokens and call count.
        """
        return [
            {
                "model": model,
                "tokens": stats["total"],
                "input_tokens": stats["input"],
                "output_tokens": stats["output"],
                "cached_input_tokens": stats["cached_input"],
                "call_count": stats["call_count"],
            }
            for model, stats in sorted(self.totals.items())
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {"per_request": self.per_request, "totals": self.totals}

    def summary(self) -> str:
        """Get human-readable summary string."""
        return f"{self.call_count} calls, {self.total_tokens:,} tokens"


__all__ = [
    "normalize_usage",
    "extract_raw_usage",
    "UsageTracker",
]
