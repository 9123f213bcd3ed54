"""
Context Tools for agentloop.

Tools that operate on the run itself rather than the outside world:
- get_tool_response: fetch the full output of a summarized tool execution
- manage_todo_list: read/write a structured plan kept in run state
- response: finalize the run with structured output matching a schema

State-aware tools receive a read-only view of run state per call and
return a ToolReturn when they need state changed.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Optional, Type

from pydantic import BaseModel, Field

from agentloop.core.events import Event, EventType, emit_event
from agentloop.tools.registry import STRUCTURED_OUTPUT_KEY, Tool, ToolReturn

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

EXECUTION_NOT_FOUND = "Execution not found. Please check the executionId."

GET_TOOL_RESPONSE_DESCRIPTION = (
    "RETRIEVE tool execution response: Use this to access the full output of a tool "
    "execution that shows as 'SUMMARIZED' in the tool history."
)

MANAGE_TODO_DESCRIPTION = (
    "Manage a structured todo list to track progress and plan multi-step work.\n\n"
    "Use it to write a plan before starting, mark one todo in-progress at a time, "
    "and mark each todo completed as soon as it is done. Skip it for single, trivial "
    "or purely conversational requests.\n\n"
    "Todo states: not-started, in-progress, completed."
)

RESPONSE_DESCRIPTION = (
    "Finalize the answer by returning the final structured JSON matching the required "
    "schema. Call exactly once when you are fully done, then stop."
)


# ============================================================================
# ARGUMENT SCHEMAS
# ============================================================================

class GetToolResponseArgs(BaseModel):
    execution_id: str = Field(..., description="Tool execution id")


class TodoItem(BaseModel):
    id: int = Field(..., gt=0, description="Sequential id starting from 1")
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    status: Literal["not-started", "in-progress", "completed"]
    evidence: Optional[str] = Field(None, max_length=200)


class ManageTodoListArgs(BaseModel):
    operation: Literal["write", "read"]
    todo_list: Optional[List[TodoItem]] = None


# ============================================================================
# TOOL FUNCTIONS
# ============================================================================

def get_tool_response(args: Dict[str, Any], state: Mapping[str, Any]) -> Any:
    """
    Look up an execution in live history, then in the archive.

    Returns:
        The raw output when present, else the recorded output, else a not-found message.
    """
    execution_id = args["execution_id"]
    for source in ("tool_history", "tool_history_archived"):
        for record in state.get(source) or ():
            if record.get("execution_id") == execution_id:
                raw = record.get("raw_output")
                return raw if raw is not None else record.get("output")
    return EXECUTION_NOT_FOUND


async def manage_todo_list(args: Dict[str, Any], state: Mapping[str, Any]) -> Any:
    """Read the stored plan or replace it; emits a plan event either way."""
    operation = args["operation"]
    sink = state.get("on_event")

    if operation == "read":
        todo_list = list((state.get("plan") or {}).get("todo_list") or [])
        await emit_event(sink, Event(EventType.PLAN, {
            "source": "manage_todo_list", "operation": "read", "todo_list": todo_list,
        }))
        return todo_list

    todo_list = args.get("todo_list")
    await emit_event(sink, Event(EventType.PLAN, {
        "source": "manage_todo_list", "operation": "write", "todo_list": todo_list,
    }))
    payload = {
        "status": "ok",
        "operation": operation,
        "count": len(todo_list) if todo_list is not None else None,
    }
    if todo_list is None:
        return payload

    logger.debug(f"Plan updated ({len(todo_list)} todos)")
    return ToolReturn(
        output=payload,
        state_update={"plan": {"todo_list": todo_list, "updated_at": datetime.now().isoformat()}},
    )


# ============================================================================
# FACTORIES
# ============================================================================

def create_response_tool(output_schema: Type[BaseModel]) -> Tool:
    """
    Build the reserved `response` tool for structured output.

    Its result is the structured-output sentinel that finalizes the run.
    """
    def respond(args: Dict[str, Any]) -> Dict[str, Any]:
        return {STRUCTURED_OUTPUT_KEY: True, "data": args}

    return Tool(
        name="response",
        func=respond,
        description=RESPONSE_DESCRIPTION,
        args_schema=output_schema,
    )


def create_context_tools(planning_enabled: bool = False) -> List[Tool]:
    """
    Build the context tools for the smart preset.

    Args:
        planning_enabled: Include manage_todo_list.

    Returns:
        [manage_todo_list?, get_tool_response]
    """
    tools: List[Tool] = []
    if planning_enabled:
        tools.append(Tool(
            name="manage_todo_list",
            func=manage_todo_list,
            description=MANAGE_TODO_DESCRIPTION,
            args_schema=ManageTodoListArgs,
            needs_state=True,
        ))
    tools.append(Tool(
        name="get_tool_response",
        func=get_tool_response,
        description=GET_TOOL_RESPONSE_DESCRIPTION,
        args_schema=GetToolResponseArgs,
        needs_state=True,
    ))
    return tools


__all__ = [
    "EXECUTION_NOT_FOUND",
    "GetToolResponseArgs",
    "TodoItem",
    "ManageTodoListArgs",
    "get_tool_response",
    "manage_todo_list",
    "create_response_tool",
    "create_context_tools",
]
