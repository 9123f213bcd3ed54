"""
Tests for agentloop/agents/summarizer.py - Context Summarization.

Tests:
- Per-call budget arithmetic
- Chunking with tool-pair integrity
- Summarization trigger
- Transcript rewriting and history archiving
- Failure fallbacks (chunk placeholder, merge concatenation)
"""

import pytest

from agentloop.agents.summarizer import (
    CHUNK_FAILURE_PLACEHOLDER,
    ContextSummarizer,
    chunk_messages,
    needs_summarization,
    per_call_budget,
)
from agentloop.core.events import EventType


def transcript():
    return [
        {"role": "user", "content": "look it up"},
        {"role": "assistant", "content": "", "tool_calls": [{"id": "call_1", "name": "echo", "args": {"text": "hi"}}]},
        {"role": "tool", "content": "echo: hi", "tool_call_id": "call_1", "name": "echo"},
    ]


def history_record(**overrides):
    record = {
        "execution_id": "exec-1",
        "tool_name": "echo",
        "args": {"text": "hi"},
        "output": "echo: hi",
        "raw_output": "echo: hi",
        "timestamp": "2024-01-01T00:00:00",
        "tool_call_id": "call_1",
        "summarized": False,
    }
    record.update(overrides)
    return record


class TestBudget:
    """Tests for per_call_budget."""

    def test_five_percent_buffer(self):
        assert per_call_budget(50_000) == 47_500

    def test_buffer_capped(self):
        assert per_call_budget(100_000) == 96_000

    def test_floor_applied(self):
        assert per_call_budget(0) == 950
        assert per_call_budget(200) == 950


class TestChunking:
    """Tests for chunk_messages."""

    def messages(self):
        return [
            {"role": "user", "content": "a" * 40},
            {"role": "assistant", "content": "", "tool_calls": [{"id": "c1", "name": "t", "args": {}}]},
            {"role": "tool", "content": "b" * 80, "tool_call_id": "c1"},
            {"role": "user", "content": "c"},
        ]

    def test_tool_answer_stays_with_its_call(self):
        chunks = chunk_messages(self.messages(), budget=10, system_text="")

        assert [len(chunk) for chunk in chunks] == [1, 2, 1]
        assert chunks[1][0]["role"] == "assistant"
        assert chunks[1][1]["role"] == "tool"

    def test_without_pairing(self):
        chunks = chunk_messages(self.messages(), budget=10, system_text="", safe_tool_pair=False)

        assert [len(chunk) for chunk in chunks] == [1, 1, 1, 1]

    def test_covers_every_message_once(self):
        messages = self.messages()
        chunks = chunk_messages(messages, budget=10, system_text="")

        assert [m for chunk in chunks for m in chunk] == messages

    def test_single_chunk_when_budget_is_large(self):
        assert len(chunk_messages(self.messages(), budget=10_000)) == 1


class TestNeedsSummarization:
    """Tests for needs_summarization."""

    def test_disabled_without_max_token(self):
        assert needs_summarization({"messages": transcript()}, None) is False

    def test_below_threshold(self):
        assert needs_summarization({"messages": transcript()}, 10_000) is False

    def test_above_threshold_with_tool_output(self):
        assert needs_summarization({"messages": transcript()}, 1) is True

    def test_nothing_left_to_compact(self):
        messages = [
            {"role": "user", "content": "x" * 400},
            {"role": "tool", "content": "SUMMARIZED executionId:'exec-1'", "tool_call_id": "call_1"},
        ]

        assert needs_summarization({"messages": messages, "tool_history": []}, 1) is False


class TestSummarize:
    """Tests for ContextSummarizer.summarize."""

    @pytest.mark.asyncio
    async def test_rewrites_and_archives(self, fake_model, events):
        model = fake_model("the user asked for an echo")
        state = {
            "messages": transcript(),
            "tool_history": [history_record()],
            "tool_history_archived": [],
            "summaries": [],
            "ctx": {"note": "keep"},
        }

        update = await ContextSummarizer(model).summarize(state, emit=events)

        messages = update["messages"]
        assert messages[2]["content"] == "SUMMARIZED executionId:'exec-1'"
        assert messages[2]["tool_call_id"] == "call_1"

        synthetic_call, synthetic_answer = messages[-2], messages[-1]
        assert synthetic_call["tool_calls"][0]["name"] == "context_summarize"
        assert synthetic_call["tool_calls"][0]["id"].startswith("summarize_")
        assert synthetic_answer["tool_call_id"] == synthetic_call["tool_calls"][0]["id"]
        assert synthetic_answer["content"] == "the user asked for an echo"

        assert update["tool_history"] == []
        assert len(update["tool_history_archived"]) == 1
        assert update["tool_history_archived"][0]["summarized"] is True
        assert update["summaries"] == ["the user asked for an echo"]
        assert update["ctx"]["context_summarized"] is True
        assert update["ctx"]["note"] == "keep"

        summary_event = events.of_type(EventType.SUMMARIZATION)[0]
        assert summary_event.data["archived_count"] == 1

        # Input state untouched
        assert state["messages"][2]["content"] == "echo: hi"
        assert state["tool_history"][0]["summarized"] is False

    @pytest.mark.asyncio
    async def test_missing_record_gets_stub(self, fake_model):
        state = {"messages": transcript(), "tool_history": [], "tool_history_archived": []}

        update = await ContextSummarizer(fake_model("summary")).summarize(state)

        stub = update["tool_history_archived"][0]
        assert stub["tool_call_id"] == "call_1"
        assert stub["output"] == "echo: hi"
        assert update["messages"][2]["content"] == f"SUMMARIZED executionId:'{stub['execution_id']}'"

    @pytest.mark.asyncio
    async def test_archive_is_deduplicated(self, fake_model):
        older = history_record(execution_id="old", output="stale")
        state = {
            "messages": transcript(),
            "tool_history": [history_record()],
            "tool_history_archived": [older],
        }

        update = await ContextSummarizer(fake_model("summary")).summarize(state)

        archived = update["tool_history_archived"]
        assert len(archived) == 1
        assert archived[0]["execution_id"] == "exec-1"

    @pytest.mark.asyncio
    async def test_second_pass_keeps_archive_size(self, fake_model):
        summarizer = ContextSummarizer(fake_model("first summary", "second summary"))
        state = {
            "messages": transcript(),
            "tool_history": [history_record()],
            "tool_history_archived": [],
        }

        first = await summarizer.summarize(state)
        second = await summarizer.summarize({**state, **first})

        assert len(first["tool_history_archived"]) == 1
        assert len(second["tool_history_archived"]) == 1
        assert second["tool_history_archived"][0]["execution_id"] == "exec-1"

    @pytest.mark.asyncio
    async def test_exempt_and_summarized_messages_untouched(self, fake_model):
        messages = [
            {"role": "tool", "content": "SUMMARIZED executionId:'x'", "tool_call_id": "a", "name": "echo"},
            {"role": "tool", "content": "[]", "tool_call_id": "b", "name": "manage_todo_list"},
        ]

        update = await ContextSummarizer(fake_model("summary")).summarize({"messages": messages})

        assert update["messages"][:2] == messages

    @pytest.mark.asyncio
    async def test_chunk_failure_uses_placeholder(self, fake_model):
        model = fake_model(RuntimeError("model down"))

        update = await ContextSummarizer(model).summarize({"messages": transcript()})

        assert update["summaries"] == [CHUNK_FAILURE_PLACEHOLDER]
        assert update["messages"][-1]["content"] == CHUNK_FAILURE_PLACEHOLDER


class TestMerge:
    """Tests for ContextSummarizer.merge."""

    @pytest.mark.asyncio
    async def test_merges_partials(self, fake_model):
        model = fake_model("merged")

        assert await ContextSummarizer(model).merge(["first", "second"]) == "merged"
        assert "- first" in model.calls[0][1]["content"]

    @pytest.mark.asyncio
    async def test_merge_failure_concatenates(self, fake_model):
        model = fake_model(RuntimeError("nope"))

        assert await ContextSummarizer(model).merge(["first", "second"]) == "- first - second"

    @pytest.mark.asyncio
    async def test_single_text_needs_no_call(self, fake_model):
        model = fake_model()

        assert await ContextSummarizer(model).merge(["only"]) == "only"
        assert model.calls == []
