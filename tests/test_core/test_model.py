"""
Tests for agentloop/core/model.py - Chat Model Contract and Message Helpers.

Tests:
- Sync/async model invocation
- Tool binding
- Tool-call normalization (internal, OpenAI, object shapes)
- Response coercion
- JSON extraction from text
"""

import json
from types import SimpleNamespace

import pytest

from agentloop.core.model import (
    assign_tool_call_ids,
    bind_tools,
    coerce_message,
    get_model_name,
    get_tool_calls,
    invoke_model,
    normalize_tool_call,
    parse_json_content,
    tool_message,
    tool_schema,
)
from agentloop.tools.registry import create_tool


class SyncModel:
    model_name = "sync-model"

    def invoke(self, messages):
        return f"seen {len(messages)}"


class AwaitableModel:
    async def invoke(self, messages):
        return {"role": "assistant", "content": "async"}


class TestInvokeModel:
    """Tests for invoke_model."""

    @pytest.mark.asyncio
    async def test_sync_invoke(self):
        assert await invoke_model(SyncModel(), [{"role": "user", "content": "hi"}]) == "seen 1"

    @pytest.mark.asyncio
    async def test_awaitable_invoke(self):
        assert (await invoke_model(AwaitableModel(), []))["content"] == "async"

    @pytest.mark.asyncio
    async def test_prefers_ainvoke(self, fake_model):
        model = fake_model("from ainvoke")

        assert await invoke_model(model, []) == "from ainvoke"


class TestBindTools:
    """Tests for bind_tools and tool_schema."""

    def test_binds_openai_schemas(self, fake_model, echo_tool):
        model = fake_model()

        assert bind_tools(model, [echo_tool]) is model
        assert model.bound_tools == [["echo"]]

    def test_no_tools_no_binding(self, fake_model):
        model = fake_model()

        bind_tools(model, [])

        assert model.bound_tools == []

    def test_model_without_binding(self, echo_tool):
        model = SyncModel()
        assert bind_tools(model, [echo_tool]) is model

    def test_schema_for_foreign_tool(self):
        schema = tool_schema(SimpleNamespace(name="lookup", description="Find things"))

        assert schema["function"] == {
            "name": "lookup",
            "description": "Find things",
            "parameters": {"type": "object", "properties": {}},
        }

    def test_model_name(self, fake_model):
        assert get_model_name(fake_model(model_name="gpt-x")) == "gpt-x"
        assert get_model_name(AwaitableModel()) == "AwaitableModel"


class TestNormalizeToolCall:
    """Tests for normalize_tool_call and get_tool_calls."""

    def test_internal_shape(self):
        assert normalize_tool_call({"id": "c1", "name": "echo", "args": {"text": "hi"}}) == {
            "id": "c1", "name": "echo", "args": {"text": "hi"},
        }

    def test_openai_shape(self):
        call = {"id": "c1", "type": "function", "function": {"name": "echo", "arguments": '{"text": "hi"}'}}

        assert normalize_tool_call(call) == {"id": "c1", "name": "echo", "args": {"text": "hi"}}

    def test_undecodable_arguments_kept(self):
        call = {"id": "c1", "function": {"name": "echo", "arguments": "{not json"}}

        assert normalize_tool_call(call)["args"] == "{not json"

    def test_empty_arguments(self):
        assert normalize_tool_call({"id": "c1", "name": "echo", "arguments": "  "})["args"] == {}

    def test_object_call(self):
        call = SimpleNamespace(id="c9", name="echo", args={"text": "x"})

        assert normalize_tool_call(call) == {"id": "c9", "name": "echo", "args": {"text": "x"}}

    def test_only_assistant_messages_have_calls(self):
        calls = [{"id": "c1", "name": "echo", "args": {}}]

        assert get_tool_calls({"role": "assistant", "tool_calls": calls})[0]["name"] == "echo"
        assert get_tool_calls({"role": "user", "tool_calls": calls}) == []
        assert get_tool_calls(None) == []


class TestAssignToolCallIds:
    """Tests for assign_tool_call_ids."""

    def test_fills_missing_ids(self):
        message = {"role": "assistant", "content": "", "tool_calls": [
            {"id": "c1", "name": "echo", "args": {}},
            {"function": {"name": "lookup", "arguments": "{}"}},
        ]}

        assigned = assign_tool_call_ids(message, 3)

        assert [call["id"] for call in assigned["tool_calls"]] == ["c1", "lookup_3_1"]
        assert assigned["tool_calls"][1]["name"] == "lookup"
        assert "id" not in message["tool_calls"][1]

    def test_complete_message_returned_as_is(self):
        message = {"role": "assistant", "tool_calls": [{"id": "c1", "name": "echo", "args": {}}]}

        assert assign_tool_call_ids(message, 0) is message


class TestCoerceMessage:
    """Tests for coerce_message."""

    def test_string(self):
        assert coerce_message("hi") == {"role": "assistant", "content": "hi"}

    def test_dict_defaults(self):
        assert coerce_message({"content": "hi", "tool_calls": []}) == {"role": "assistant", "content": "hi"}

    def test_role_alias(self):
        assert coerce_message({"role": "ai", "content": "x"})["role"] == "assistant"

    def test_message_object(self):
        response = SimpleNamespace(
            content="",
            type="ai",
            tool_calls=[{"id": "c1", "name": "echo", "args": {}}],
            usage_metadata={"input_tokens": 3},
        )

        message = coerce_message(response)

        assert message["role"] == "assistant"
        assert message["tool_calls"] == [{"id": "c1", "name": "echo", "args": {}}]
        assert message["usage_metadata"] == {"input_tokens": 3}

    def test_does_not_mutate_input(self):
        response = {"role": "assistant", "content": "x", "tool_calls": [{"id": "c1", "function": {"name": "e"}}]}

        coerce_message(response)

        assert "function" in response["tool_calls"][0]


class TestParseJsonContent:
    """Tests for parse_json_content."""

    def test_fenced_block(self):
        assert parse_json_content('Result:\n```json\n{"a": 1}\n```') == {"a": 1}

    def test_embedded_object(self):
        assert parse_json_content('The answer is {"a": [1, 2]} as requested.') == {"a": [1, 2]}

    def test_array(self):
        assert parse_json_content("[1, 2]") == [1, 2]

    def test_no_json(self):
        with pytest.raises(ValueError):
            parse_json_content("nothing here")


class TestToolMessage:
    """Tests for tool_message."""

    def test_shape(self):
        assert tool_message("ok", "c1", "echo") == {"role": "tool", "content": "ok", "tool_call_id": "c1", "name": "echo"}

    def test_without_name(self):
        assert "name" not in tool_message("ok", "c1")

    def test_tool_schema_from_tool(self):
        @create_tool
        def ping(args):
            """Ping."""
            return "pong"

        assert json.loads(json.dumps(tool_schema(ping)))["function"]["name"] == "ping"
