"""
Tests for agentloop/tools/context_tools.py - Context Tools.

Tests:
- get_tool_response lookups (live, archive, missing)
- manage_todo_list read/write and plan events
- Response tool sentinel
- create_context_tools composition
"""

from types import MappingProxyType

import pytest
from pydantic import BaseModel, ValidationError

from agentloop.core.events import EventType
from agentloop.tools.context_tools import (
    EXECUTION_NOT_FOUND,
    create_context_tools,
    create_response_tool,
    get_tool_response,
    manage_todo_list,
)
from agentloop.tools.registry import STRUCTURED_OUTPUT_KEY, ToolRegistry, ToolReturn


def record(execution_id, output, raw_output=None):
    return {"execution_id": execution_id, "tool_name": "search", "output": output, "raw_output": raw_output}


def todo(item_id=1, status="not-started"):
    return {"id": item_id, "title": "Draft", "description": "Write the first draft", "status": status}


class Verdict(BaseModel):
    approved: bool


class TestGetToolResponse:
    """Tests for get_tool_response."""

    def state(self):
        return MappingProxyType({
            "tool_history": (record("live-1", "short", raw_output={"hits": 3}),),
            "tool_history_archived": (record("old-1", "archived output"),),
        })

    def test_live_raw_output(self):
        assert get_tool_response({"execution_id": "live-1"}, self.state()) == {"hits": 3}

    def test_archived_falls_back_to_output(self):
        assert get_tool_response({"execution_id": "old-1"}, self.state()) == "archived output"

    def test_not_found(self):
        assert get_tool_response({"execution_id": "nope"}, self.state()) == EXECUTION_NOT_FOUND


class TestManageTodoList:
    """Tests for manage_todo_list."""

    @pytest.mark.asyncio
    async def test_read_existing_plan(self, events):
        state = {"plan": {"todo_list": [todo()]}, "on_event": events}

        result = await manage_todo_list({"operation": "read"}, state)

        assert result == [todo()]
        plan_event = events.of_type(EventType.PLAN)[0]
        assert plan_event.data["operation"] == "read"
        assert plan_event.data["source"] == "manage_todo_list"

    @pytest.mark.asyncio
    async def test_read_without_plan(self):
        assert await manage_todo_list({"operation": "read"}, {}) == []

    @pytest.mark.asyncio
    async def test_write_returns_state_update(self, events):
        items = [todo(1, "in-progress"), todo(2)]

        result = await manage_todo_list({"operation": "write", "todo_list": items}, {"on_event": events})

        assert isinstance(result, ToolReturn)
        assert result.output == {"status": "ok", "operation": "write", "count": 2}
        assert result.state_update["plan"]["todo_list"] == items
        assert "updated_at" in result.state_update["plan"]
        assert events.of_type(EventType.PLAN)[0].data["todo_list"] == items

    @pytest.mark.asyncio
    async def test_write_without_list(self):
        result = await manage_todo_list({"operation": "write", "todo_list": None}, {})

        assert result == {"status": "ok", "operation": "write", "count": None}

    @pytest.mark.asyncio
    async def test_invalid_todo_rejected_by_schema(self):
        registry = ToolRegistry(create_context_tools(planning_enabled=True))
        bad = {"operation": "write", "todo_list": [{**todo(), "status": "done"}]}

        with pytest.raises(ValidationError):
            await registry.invoke_tool("manage_todo_list", bad, {})


class TestResponseTool:
    """Tests for create_response_tool."""

    @pytest.mark.asyncio
    async def test_returns_sentinel(self):
        tool = create_response_tool(Verdict)

        result = await tool.invoke({"approved": True})

        assert tool.name == "response"
        assert result == {STRUCTURED_OUTPUT_KEY: True, "data": {"approved": True}}

    @pytest.mark.asyncio
    async def test_validates_against_schema(self):
        with pytest.raises(ValidationError):
            await create_response_tool(Verdict).invoke({"approved": "perhaps"})


class TestCreateContextTools:
    """Tests for create_context_tools."""

    def test_without_planning(self):
        tools = create_context_tools()

        assert [tool.name for tool in tools] == ["get_tool_response"]
        assert tools[0].needs_state is True

    def test_with_planning(self):
        assert [tool.name for tool in create_context_tools(planning_enabled=True)] == [
            "manage_todo_list",
            "get_tool_response",
        ]
