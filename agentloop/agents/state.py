"""
Run State Schema for agentloop.

Defines RunState, the single mutable-by-replacement state threaded through
the agent loop graph. It supports:
- A conversation transcript of plain message dicts
- Tool execution history (live + archived after summarization)
- Approval-gated tool calls that pause and resume the loop
- Guardrail outcomes, token usage, plans, and free-form run context

Control flow is carried by `status` (a RunStatus); `ctx` carries payloads
(pause marker, awaiting-approval marker, structured output, event sink,
trace session, guardrail watermarks). Everything except the event sink,
trace session and runtime is JSON-serializable, so state can be snapshotted.

Memory Policy:
- `tool_history` holds records since the last summarization
- `tool_history_archived` holds every summarized record (deduplicated)
"""

import copy
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, TypedDict, Union

from pydantic import BaseModel, Field


# ============================================================================
# CONSTANTS
# ============================================================================

SUMMARIZED_MARKER = "SUMMARIZED"

# Tool names whose results are never compacted by the summarizer
SUMMARY_EXEMPT_TOOLS = ("context_summarize", "manage_todo_list")


# ============================================================================
# RUN STATUS
# ============================================================================

class RunStatus(str, Enum):
    """Loop control status stored in RunState["status"]."""

    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"
    RESUMING_TOOLS = "resuming_tools"
    FINALIZED_BY_TOOL_LIMIT = "finalized_by_tool_limit"
    FINALIZED_BY_STRUCTURED_OUTPUT = "finalized_by_structured_output"
    GUARDRAIL_BLOCKED = "guardrail_blocked"
    COMPLETED = "completed"
    ITERATION_LIMIT = "iteration_limit"


# Statuses that end the current invocation
STOP_STATUSES = frozenset({
    RunStatus.PAUSED,
    RunStatus.AWAITING_APPROVAL,
    RunStatus.FINALIZED_BY_STRUCTURED_OUTPUT,
    RunStatus.GUARDRAIL_BLOCKED,
    RunStatus.COMPLETED,
    RunStatus.ITERATION_LIMIT,
})

# Statuses carried over into the next invocation
CARRIED_STATUSES = frozenset({
    RunStatus.AWAITING_APPROVAL,
    RunStatus.RESUMING_TOOLS,
    RunStatus.FINALIZED_BY_TOOL_LIMIT,
})


# ============================================================================
# RECORD MODELS
# ============================================================================

class ToolExecutionRecord(BaseModel):
    """
    One tool call attempt (success, error, skip, rejection, or handoff).

    Attributes:
        execution_id: Unique id, referenced by summaries and get_tool_response.
        tool_name: Name of the requested tool.
        args: Arguments the tool was called with.
        output: Value reported back to the model.
        raw_output: Unprocessed tool result (None when the tool did not run).
        timestamp: ISO timestamp of the attempt.
        tool_call_id: Id of the originating tool call.
        summarized: Whether the record was folded into a summary.
    """
    execution_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Unique execution id")
    tool_name: str = Field(..., description="Name of the requested tool")
    args: Any = Field(default_factory=dict, description="Call arguments")
    output: Any = Field(None, description="Value reported to the model")
    raw_output: Any = Field(None, description="Unprocessed tool result")
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat(), description="ISO timestamp")
    tool_call_id: Optional[str] = Field(None, description="Originating tool call id")
    summarized: bool = Field(False, description="Folded into a summary")


ApprovalStatus = Literal["pending", "approved", "rejected", "executed"]


class PendingToolApproval(BaseModel):
    """
    Approval entry for an approval-gated tool call.

    Lifecycle: pending -> approved | rejected -> executed.
    """
    id: str = Field(default_factory=lambda: f"approval_{uuid.uuid4().hex[:12]}", description="Approval id")
    tool_call_id: str = Field(..., description="Tool call awaiting a decision")
    tool_name: str = Field(..., description="Requested tool")
    args: Any = Field(default_factory=dict, description="Original call arguments")
    status: ApprovalStatus = Field("pending", description="Lifecycle status")
    requested_at: str = Field(default_factory=lambda: datetime.now().isoformat(), description="ISO timestamp")
    decided_at: Optional[str] = Field(None, description="When a decision was recorded")
    decided_by: Optional[str] = Field(None, description="Reviewer identity")
    approved_args: Any = Field(None, description="Arguments to run with when approved")
    comment: Optional[str] = Field(None, description="Reviewer comment")
    resolved_at: Optional[str] = Field(None, description="When the decision was executed")
    execution_id: Optional[str] = Field(None, description="Execution record id once handled")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="prompt / defaults for reviewers")


# ============================================================================
# RUN STATE
# ============================================================================

class RunState(TypedDict, total=False):
    """
    Agent loop state.

    Conversation:
        messages: Ordered transcript (system/user/assistant/tool message dicts).

    Tool Execution:
        tool_history: Execution records since the last summarization.
        tool_history_archived: Summarized execution records (deduplicated).
        tool_call_count: Quota-consuming tool calls so far (monotonic).
        pending_approvals: Approval entries (PendingToolApproval dicts).

    Outcomes:
        guardrail_result: Latest guardrail outcome {ok, incidents}.
        usage: Token usage {per_request, totals}.
        plan: Todo plan written by manage_todo_list.
        summaries: Summaries produced by context summarization.

    Control:
        runtime: Active AgentRuntimeConfig (replaced on handoff).
        status: RunStatus driving the loop.
        iteration: Loop iterations in the current invocation.
        ctx: Run context payloads (pause/approval markers, sinks, flags).
        metadata: Caller-owned data, carried untouched.
    """

    messages: List[Dict[str, Any]]
    tool_history: List[Dict[str, Any]]
    tool_history_archived: List[Dict[str, Any]]
    tool_call_count: int
    pending_approvals: List[Dict[str, Any]]
    guardrail_result: Optional[Dict[str, Any]]
    usage: Dict[str, Any]
    plan: Optional[Dict[str, Any]]
    summaries: List[str]
    runtime: Any
    status: RunStatus
    iteration: int
    ctx: Dict[str, Any]
    metadata: Dict[str, Any]


# ============================================================================
# STATE FACTORY / RESOLVER
# ============================================================================

def create_initial_state(
    messages: Union[str, Dict[str, Any], List[Dict[str, Any]], None] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> RunState:
    """
    Create a fresh RunState.

    Args:
        messages: A user prompt string, one message dict, or a list of messages.
        metadata: Caller-owned data to carry with the run.

    Returns:
        RunState with every field defaulted.

    Example:
        >>> state = create_initial_state("What is 2 + 2?")
        >>> state["messages"]
        [{'role': 'user', 'content': 'What is 2 + 2?'}]
    """
    if messages is None:
        transcript: List[Dict[str, Any]] = []
    elif isinstance(messages, str):
        transcript = [{"role": "user", "content": messages}]
    elif isinstance(messages, dict):
        transcript = [dict(messages)]
    else:
        transcript = [dict(m) for m in messages]

    return RunState(
        messages=transcript,
        tool_history=[],
        tool_history_archived=[],
        tool_call_count=0,
        pending_approvals=[],
        guardrail_result=None,
        usage={"per_request": [], "totals": {}},
        plan=None,
        summaries=[],
        runtime=None,
        status=RunStatus.RUNNING,
        iteration=0,
        ctx={},
        metadata=dict(metadata or {}),
    )


def coerce_status(value: Any) -> RunStatus:
    if isinstance(value, RunStatus):
        return value
    try:
        return RunStatus(value)
    except ValueError:
        return RunStatus.RUNNING


def resolve_state(state: Dict[str, Any], runtime: Any = None) -> RunState:
    """
    Normalize caller-supplied state before a loop invocation.

    Fills missing collections and counters, copies every collection so the
    caller's object is never mutated, clears the previous invocation's pause,
    structured-output and guardrail-block markers, and resets terminal
    statuses. Approval and tool-limit statuses carry over.

    Args:
        state: Partial or complete RunState (e.g. restored from a snapshot).
        runtime: Default runtime when the state carries none.

    Returns:
        Complete RunState.
    """
    resolved = create_initial_state(state.get("messages"), state.get("metadata"))

    for key in ("tool_history", "tool_history_archived", "pending_approvals", "summaries"):
        resolved[key] = [copy.copy(item) for item in state.get(key) or []]

    resolved["tool_call_count"] = int(state.get("tool_call_count") or 0)
    resolved["guardrail_result"] = state.get("guardrail_result")
    resolved["plan"] = copy.deepcopy(state.get("plan"))
    if state.get("usage"):
        resolved["usage"] = copy.deepcopy(state["usage"])

    ctx = dict(state.get("ctx") or {})
    for key in ("paused", "structured_output", "guardrail_blocked"):
        ctx.pop(key, None)
    resolved["ctx"] = ctx

    status = coerce_status(state.get("status"))
    resolved["status"] = status if status in CARRIED_STATUSES else RunStatus.RUNNING
    resolved["runtime"] = state.get("runtime") or runtime
    resolved["iteration"] = 0
    return resolved


__all__ = [
    "SUMMARIZED_MARKER",
    "SUMMARY_EXEMPT_TOOLS",
    "RunStatus",
    "STOP_STATUSES",
    "CARRIED_STATUSES",
    "ToolExecutionRecord",
    "PendingToolApproval",
    "RunState",
    "create_initial_state",
    "coerce_status",
    "resolve_state",
]
