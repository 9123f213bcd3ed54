"""
Context Summarization for agentloop.

When the transcript grows past `limits.max_token`, older tool outputs are
compacted:
1. The transcript is split into chunks that fit the summarizer's token budget
   (an assistant tool-call message and its tool answers stay together)
2. Each chunk is summarized by the model; partial summaries are merged
   iteratively under the same budget
3. Every eligible tool message is rewritten to a reference
   `SUMMARIZED executionId:'<id>'` so the full output stays retrievable
   (see get_tool_response)
4. A synthetic `context_summarize` tool call + answer carrying the summary
   is appended
5. Live tool history moves into the archive (deduplicated, latest wins)

Model failures never abort a run: a failed chunk becomes a placeholder and a
failed merge falls back to concatenation.
"""

import logging
import math
import re
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from agentloop.agents.state import SUMMARIZED_MARKER, SUMMARY_EXEMPT_TOOLS, ToolExecutionRecord
from agentloop.core.events import Event, EventSink, EventType, emit_event
from agentloop.core.model import coerce_message, get_tool_calls, invoke_model
from agentloop.core.tokens import content_to_string, count_approx_tokens, estimate_messages_tokens

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

CHUNK_SYSTEM_PROMPT = (
    "You are a concise summarization assistant for a tool-using agent. "
    "Summarize prior tool executions into a compact brief that preserves key facts, "
    "decisions, and outputs. Reference executionId values where helpful. "
    "Avoid repeating raw data; prefer synthesis."
)

MERGE_SYSTEM_PROMPT = (
    "You merge partial summaries into a single cohesive, non-redundant summary "
    "that preserves key facts and decisions. Be concise."
)

MERGE_USER_TEMPLATE = (
    "Merge the following partial summaries into a single concise brief. "
    "Avoid duplication, keep key facts and decisions.\n\n{items}\n\nMerged summary:"
)

SUMMARIZE_REASON = "Exceeded token limit: summarize prior tool outputs for context."
CHUNK_FAILURE_PLACEHOLDER = "[summary unavailable for one chunk]"
EMPTY_SUMMARY = "Context summarized."

MIN_SUMMARY_LIMIT = 1000
MIN_CALL_BUDGET = 500
MAX_SAFETY_BUFFER = 4000

_SUMMARIZED_RE = re.compile(rf"\b{SUMMARIZED_MARKER}\b")


# ============================================================================
# BUDGET / CHUNKING
# ============================================================================

def per_call_budget(summary_token_limit: int) -> int:
    """
    Token budget for one summarization call.

    limit = max(1000, summary_token_limit); a safety buffer of 5% (at most
    4000 tokens) is reserved; the budget never drops below 500.
    """
    limit = max(MIN_SUMMARY_LIMIT, int(summary_token_limit or 0))
    buffer = math.floor(min(MAX_SAFETY_BUFFER, limit * 0.05))
    return max(MIN_CALL_BUDGET, limit - buffer)


def _call_ids(message: Dict[str, Any]) -> List[str]:
    return [call["id"] for call in get_tool_calls(message) if isinstance(call.get("id"), str)]


def chunk_messages(
    messages: List[Dict[str, Any]],
    budget: int,
    system_text: str = CHUNK_SYSTEM_PROMPT,
    safe_tool_pair: bool = True,
) -> List[List[Dict[str, Any]]]:
    """
    Split a transcript into chunks that fit the token budget.

    Each chunk's count starts with the system prompt. With `safe_tool_pair`,
    a tool answer to a call opened in the current chunk is kept in that chunk
    even if the budget overflows, and a chunk is flushed early only when no
    tool answers are outstanding.

    Args:
        messages: Transcript to split.
        budget: Per-call token budget.
        system_text: Summarizer system prompt counted against every chunk.
        safe_tool_pair: Keep tool calls and their answers together.

    Returns:
        Ordered, non-empty chunks covering every message exactly once.
    """
    base_tokens = count_approx_tokens(system_text)
    chunks: List[List[Dict[str, Any]]] = []
    current: List[Dict[str, Any]] = []
    current_tokens = base_tokens
    pending: Set[str] = set()

    for message in messages:
        tokens = count_approx_tokens(content_to_string(message.get("content")))
        opened = _call_ids(message) if safe_tool_pair and message.get("role") == "assistant" else []
        answers = message.get("tool_call_id") if safe_tool_pair and message.get("role") == "tool" else None

        if current and current_tokens + tokens > budget:
            keep_with_current = answers is not None and answers in pending
            if not keep_with_current:
                chunks.append(current)
                current, current_tokens, pending = [], base_tokens, set()

        current.append(message)
        current_tokens += tokens
        pending.update(opened)
        if answers is not None:
            pending.discard(answers)

        if current_tokens >= budget and not pending:
            chunks.append(current)
            current, current_tokens, pending = [], base_tokens, set()

    if current:
        chunks.append(current)
    return chunks


def needs_summarization(state: Dict[str, Any], max_token: Optional[int]) -> bool:
    """
    Whether a summarization pass is due.

    True when the transcript's approximate size exceeds `max_token` and there
    is still something to compact (an unsummarized tool answer or live history).
    """
    if not max_token:
        return False
    messages = state.get("messages") or []
    if estimate_messages_tokens(messages) <= max_token:
        return False
    if state.get("tool_history"):
        return True
    return any(_is_rewritable(message) for message in messages)


def _is_rewritable(message: Dict[str, Any]) -> bool:
    if message.get("role") != "tool":
        return False
    if message.get("name") in SUMMARY_EXEMPT_TOOLS:
        return False
    return not _SUMMARIZED_RE.search(content_to_string(message.get("content")))


# ============================================================================
# SUMMARIZER
# ============================================================================

class ContextSummarizer:
    """
    Map-reduce transcript summarizer.

    Example:
        >>> summarizer = ContextSummarizer(model, summary_token_limit=50_000)
        >>> update = await summarizer.summarize(state, emit=on_event)
        >>> update["messages"][-1]["name"]
        'context_summarize'
    """

    def __init__(self, model: Any, summary_token_limit: int = 50_000, safe_tool_pair: bool = True):
        self.model = model
        self.budget = per_call_budget(summary_token_limit)
        self.safe_tool_pair = safe_tool_pair

    async def _complete(self, messages: List[Dict[str, Any]]) -> str:
        response = coerce_message(await invoke_model(self.model, messages))
        return content_to_string(response.get("content")).strip()

    async def summarize_text(self, messages: List[Dict[str, Any]]) -> str:
        """Summarize a transcript into one text (chunk, summarize, merge)."""
        chunks = chunk_messages(messages, self.budget, CHUNK_SYSTEM_PROMPT, self.safe_tool_pair)
        system = {"role": "system", "content": CHUNK_SYSTEM_PROMPT}

        partials: List[str] = []
        for chunk in chunks:
            try:
                partials.append(await self._complete([system, *chunk]))
            except Exception as e:
                logger.error(f"Summarization chunk failed: {e}", exc_info=True)
                partials.append(CHUNK_FAILURE_PLACEHOLDER)

        summary = await self.merge(partials)
        return summary or EMPTY_SUMMARY

    async def merge(self, texts: List[str]) -> str:
        """
        Merge partial summaries, grouping them so each merge call fits the budget.

        Repeats until a single summary remains.
        """
        while len(texts) > 1:
            groups: List[List[str]] = []
            group: List[str] = []
            tokens = count_approx_tokens(MERGE_SYSTEM_PROMPT)
            for text in texts:
                item = f"- {text}"
                item_tokens = count_approx_tokens(item)
                if group and tokens + item_tokens > self.budget:
                    groups.append(group)
                    group, tokens = [], count_approx_tokens(MERGE_SYSTEM_PROMPT)
                group.append(item)
                tokens += item_tokens
            if group:
                groups.append(group)

            merged: List[str] = []
            for items in groups:
                prompt = MERGE_USER_TEMPLATE.format(items="\n".join(items))
                try:
                    merged.append(await self._complete([
                        {"role": "system", "content": MERGE_SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ]))
                except Exception as e:
                    logger.error(f"Merge summarization failed: {e}", exc_info=True)
                    merged.append(" ".join(items))

            if len(merged) >= len(texts):
                # No group combined two items, so another pass cannot shrink the list.
                return " ".join(merged)
            texts = merged

        return texts[0] if texts else ""

    async def summarize(self, state: Dict[str, Any], emit: Optional[EventSink] = None) -> Dict[str, Any]:
        """
        Compact the transcript and archive tool history.

        Args:
            state: Current run state (never modified).
            emit: Event sink for the summarization event.

        Returns:
            State update: messages, tool_history (emptied), tool_history_archived,
            summaries, ctx.
        """
        messages = list(state.get("messages") or [])
        archived = [dict(item) for item in state.get("tool_history_archived") or []]
        live = [dict(item) for item in state.get("tool_history") or []]

        by_call_id: Dict[str, Dict[str, Any]] = {}
        for item in archived + live:
            if item.get("tool_call_id"):
                by_call_id[item["tool_call_id"]] = item

        try:
            summary = await self.summarize_text(messages)
        except Exception as e:
            logger.error(f"Error during context summarization: {e}", exc_info=True)
            summary = EMPTY_SUMMARY

        rewritten: List[Dict[str, Any]] = []
        for message in messages:
            if not _is_rewritable(message):
                rewritten.append(message)
                continue

            call_id = message.get("tool_call_id")
            record = by_call_id.get(call_id) if call_id else None
            if record is None:
                record = ToolExecutionRecord(
                    tool_name=message.get("name") or "unknown_tool",
                    args=None,
                    output=content_to_string(message.get("content")),
                    tool_call_id=call_id,
                    summarized=True,
                ).model_dump()
                archived.append(record)
                if call_id:
                    by_call_id[call_id] = record
            record["summarized"] = True

            rewritten.append({
                "role": "tool",
                "content": f"{SUMMARIZED_MARKER} executionId:'{record['execution_id']}'",
                "tool_call_id": call_id,
                "name": message.get("name"),
            })

        call_id = f"summarize_{uuid.uuid4().hex[:6]}"
        rewritten.append({
            "role": "assistant",
            "content": "",
            "tool_calls": [{"id": call_id, "name": "context_summarize", "args": {"reason": SUMMARIZE_REASON}}],
        })
        rewritten.append({
            "role": "tool",
            "content": summary,
            "tool_call_id": call_id,
            "name": "context_summarize",
        })

        for item in live:
            item["summarized"] = True
        deduped: Dict[str, Dict[str, Any]] = {}
        for item in archived + live:
            key = item.get("tool_call_id") or f"{item.get('tool_name')}:{item.get('timestamp')}"
            deduped[key] = item
        new_archive = list(deduped.values())

        await emit_event(emit, Event(EventType.SUMMARIZATION, {
            "summary": summary,
            "archived_count": len(new_archive),
        }))
        logger.info(f"Context summarized ({len(new_archive)} archived executions)")

        return {
            "messages": rewritten,
            "tool_history": [],
            "tool_history_archived": new_archive,
            "summaries": [*(state.get("summaries") or []), summary],
            "ctx": {
                **(state.get("ctx") or {}),
                "context_summarized": True,
                "last_summarized_at": datetime.now().isoformat(),
            },
        }


__all__ = [
    "CHUNK_SYSTEM_PROMPT",
    "MERGE_SYSTEM_PROMPT",
    "SUMMARIZE_REASON",
    "CHUNK_FAILURE_PLACEHOLDER",
    "EMPTY_SUMMARY",
    "per_call_budget",
    "chunk_messages",
    "needs_summarization",
    "ContextSummarizer",
]
