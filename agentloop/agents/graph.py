"""
Agent Loop Graph for agentloop.

Implements the tool-using agent loop as a LangGraph StateGraph:
- guard_request: iteration limit, checkpoint, request-phase guardrails
- agent: one model call with the active runtime's tools bound
- guard_response: response-phase guardrails
- tools: approval-aware, batched tool execution (handoff / structured output)
- tool_limit_finalize: answers calls past the quota and asks for a final answer
- summarize: compacts older tool outputs when the transcript is too large

Routing:
    entry --> tools (approval or unanswered calls) | tool_limit_finalize | summarize | guard_request
    guard_request --> agent | END
    agent --> guard_response | END (paused)
    guard_response --> tools | tool_limit_finalize | END
    tools --> summarize | guard_request | END
    tool_limit_finalize --> guard_request | END
    summarize --> guard_request

Per-invocation options travel in `config["configurable"]`:
    iteration_limit, on_state_change, checkpoint_reason.
Everything else (model, tools, limits, guardrails) is read from the runtime
stored in state, so a handoff takes effect on the very next node.
"""

import inspect
import logging
import time
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from agentloop.agents.state import STOP_STATUSES, RunState, RunStatus
from agentloop.agents.summarizer import ContextSummarizer, needs_summarization
from agentloop.agents.tool_executor import ToolExecutor
from agentloop.core.events import Event, EventType, emit_event
from agentloop.core.guardrails import GuardrailOutcome, GuardrailPhase, evaluate_guardrails
from agentloop.core.model import (
    assign_tool_call_ids,
    bind_tools,
    coerce_message,
    get_model_name,
    get_tool_calls,
    invoke_model,
)
from agentloop.core.tracing import estimate_payload_bytes
from agentloop.core.usage import UsageTracker, extract_raw_usage, normalize_usage

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_ITERATION_LIMIT = 10

REQUEST_BLOCKED_MESSAGE = "Request blocked by guardrail policy."
RESPONSE_BLOCKED_MESSAGE = "Response blocked by guardrail policy."

TOOL_LIMIT_NOTICE = (
    "Tool-call limit reached. Produce the best possible final answer using the "
    "available context and prior tool outputs. Do not call any more tools."
)

# Provider bookkeeping removed from stored assistant messages
_RESPONSE_ONLY_KEYS = ("usage", "usage_metadata", "response_metadata")


# ============================================================================
# HELPERS
# ============================================================================

def _configurable(config: Optional[RunnableConfig]) -> Dict[str, Any]:
    return dict((config or {}).get("configurable") or {})


def _sink(state: RunState):
    return (state.get("ctx") or {}).get("on_event")


def _trace(state: RunState):
    return (state.get("ctx") or {}).get("trace_session")


async def evaluate_checkpoint(state: Dict[str, Any], stage: str, config: Optional[RunnableConfig]) -> Optional[Dict[str, Any]]:
    """
    Evaluate the caller's on_state_change predicate at a checkpoint.

    Args:
        state: State as it stands at the checkpoint.
        stage: before_guardrails, after_agent, after_tools or after_loop.
        config: Runnable config carrying the predicate.

    Returns:
        State update that pauses the run, or None to keep going.
    """
    options = _configurable(config)
    predicate = options.get("on_state_change")
    if predicate is None:
        return None

    try:
        decision = predicate(dict(state))
        if inspect.isawaitable(decision):
            decision = await decision
    except Exception as e:
        logger.warning(f"on_state_change predicate failed at {stage}: {e}")
        return None

    if not decision:
        return None

    marker = {
        "stage": stage,
        "iteration": state.get("iteration", 0),
        "reason": options.get("checkpoint_reason") or "checkpoint",
        "timestamp": datetime.now().isoformat(),
    }
    logger.info(f"Run paused at {stage} (iteration {marker['iteration']})")
    await emit_event(_sink(state), Event(EventType.METADATA, {"paused": marker}))
    return {
        "ctx": {**(state.get("ctx") or {}), "paused": marker},
        "status": RunStatus.PAUSED,
    }


async def _run_guardrails(state: RunState, phase: GuardrailPhase, watermark_key: str) -> Optional[Dict[str, Any]]:
    """
    Run the runtime's guardrails for one phase.

    The phase is evaluated only when the transcript length changed since the
    last evaluation of that phase.

    Returns:
        None when nothing was evaluated, else a dict holding the outcome and
        the updated ctx.
    """
    runtime = state["runtime"]
    guardrails = list(getattr(runtime, "guardrails", None) or [])
    if not guardrails:
        return None

    messages = state.get("messages") or []
    ctx = dict(state.get("ctx") or {})
    store = dict(ctx.get("guardrail_store") or {})
    if store.get(watermark_key) == len(messages):
        return None

    outcome = await evaluate_guardrails(guardrails, phase, state, runtime=runtime, emit=_sink(state))
    store[watermark_key] = len(messages)
    ctx["guardrail_store"] = store
    return {"outcome": outcome, "ctx": ctx}


def _incidents(outcome: GuardrailOutcome):
    return [incident.model_dump(mode="json") for incident in outcome.incidents]


def _block_reason(outcome: GuardrailOutcome, default: str) -> str:
    for incident in outcome.incidents:
        if incident.disposition == "block" and incident.reason:
            return incident.reason
    return default


def _with_warnings(message: Dict[str, Any], phase: GuardrailPhase, outcome: GuardrailOutcome) -> Dict[str, Any]:
    metadata = dict(message.get("metadata") or {})
    metadata["guardrail"] = {"phase": phase.value, "incidents": _incidents(outcome)}
    return {**message, "metadata": metadata}


# ============================================================================
# NODES
# ============================================================================

async def guard_request_node(state: RunState, config: RunnableConfig) -> Dict[str, Any]:
    """
    Start an iteration: enforce the iteration limit, checkpoint, and check the request.

    Returns:
        State update; sets status ITERATION_LIMIT, PAUSED or GUARDRAIL_BLOCKED
        when the iteration must not reach the model.
    """
    limit = _configurable(config).get("iteration_limit") or DEFAULT_ITERATION_LIMIT
    # Summarize and tool_limit_finalize always route back here, so one count per
    # pass through this node bounds them too; recursion_limit_for caps the rest.
    iteration = int(state.get("iteration") or 0)
    if iteration >= limit:
        logger.warning(f"Iteration limit reached ({limit})")
        return {"status": RunStatus.ITERATION_LIMIT}

    update: Dict[str, Any] = {"iteration": iteration + 1}
    paused = await evaluate_checkpoint({**state, **update}, "before_guardrails", config)
    if paused:
        return {**update, **paused}

    evaluated = await _run_guardrails(state, GuardrailPhase.REQUEST, "last_request_length")
    if evaluated is None:
        return update

    outcome: GuardrailOutcome = evaluated["outcome"]
    ctx = evaluated["ctx"]
    update["guardrail_result"] = outcome.model_dump(mode="json")
    messages = list(state.get("messages") or [])

    if outcome.ok:
        if outcome.incidents and messages:
            messages[-1] = _with_warnings(messages[-1], GuardrailPhase.REQUEST, outcome)
            update["messages"] = messages
        update["ctx"] = ctx
        return update

    incidents = _incidents(outcome)
    messages.append({
        "role": "assistant",
        "name": "guardrail",
        "content": _block_reason(outcome, REQUEST_BLOCKED_MESSAGE),
        "metadata": {"guardrail": {"phase": GuardrailPhase.REQUEST.value, "incidents": incidents}},
    })
    ctx["guardrail_blocked"] = {"phase": GuardrailPhase.REQUEST.value, "incidents": incidents}
    update.update(messages=messages, ctx=ctx, status=RunStatus.GUARDRAIL_BLOCKED)
    return update


async def agent_node(state: RunState, config: RunnableConfig) -> Dict[str, Any]:
    """
    Call the active runtime's model with the transcript.

    Records token usage and an `ai_call` trace event. Model errors are traced
    and propagate to the caller.
    """
    runtime = state["runtime"]
    messages = list(state.get("messages") or [])
    trace = _trace(state)
    model_name = get_model_name(runtime.model)
    model = bind_tools(runtime.model, list(runtime.tools or []))
    started = time.monotonic()

    try:
        raw = await invoke_model(model, messages)
    except Exception as e:
        logger.error(f"Model call failed for {runtime.name}: {e}", exc_info=True)
        if trace is not None:
            trace.record(
                "ai_call",
                label=runtime.name,
                actor={"scope": "agent", "name": runtime.name},
                status="error",
                duration_ms=(time.monotonic() - started) * 1000,
                request_bytes=estimate_payload_bytes(messages),
                model=model_name,
                error=str(e),
            )
        raise

    response = assign_tool_call_ids(coerce_message(raw), len(messages))
    usage = normalize_usage(extract_raw_usage(response))
    for key in _RESPONSE_ONLY_KEYS:
        response.pop(key, None)

    update: Dict[str, Any] = {"messages": [*messages, response]}
    if usage is not None:
        tracker = UsageTracker.from_dict(state.get("usage"))
        tracker.add(model_name, usage)
        update["usage"] = tracker.to_dict()

    if trace is not None:
        trace.record(
            "ai_call",
            label=runtime.name,
            actor={"scope": "agent", "name": runtime.name},
            duration_ms=(time.monotonic() - started) * 1000,
            input_tokens=usage["prompt_tokens"] if usage else None,
            output_tokens=usage["completion_tokens"] if usage else None,
            total_tokens=usage["total_tokens"] if usage else None,
            cached_input_tokens=usage["prompt_tokens_details"]["cached_tokens"] if usage else None,
            request_bytes=estimate_payload_bytes(messages),
            response_bytes=estimate_payload_bytes(response.get("content")),
            model=model_name,
            messages=messages,
        )

    calls = get_tool_calls(response)
    logger.debug(f"{runtime.name} responded with {len(calls)} tool call(s)")

    paused = await evaluate_checkpoint({**state, **update}, "after_agent", config)
    if paused:
        update.update(paused)
    return update


async def guard_response_node(state: RunState) -> Dict[str, Any]:
    """Check the model's response; a blocking incident replaces the response."""
    evaluated = await _run_guardrails(state, GuardrailPhase.RESPONSE, "last_response_length")
    if evaluated is None:
        return {}

    outcome: GuardrailOutcome = evaluated["outcome"]
    ctx = evaluated["ctx"]
    messages = list(state.get("messages") or [])
    update: Dict[str, Any] = {"guardrail_result": outcome.model_dump(mode="json"), "ctx": ctx}

    if outcome.ok:
        if outcome.incidents and messages:
            messages[-1] = _with_warnings(messages[-1], GuardrailPhase.RESPONSE, outcome)
            update["messages"] = messages
        return update

    incidents = _incidents(outcome)
    original = messages.pop() if messages else None
    messages.append({
        "role": "assistant",
        "name": "guardrail",
        "content": _block_reason(outcome, RESPONSE_BLOCKED_MESSAGE),
        "metadata": {
            "guardrail": {"phase": GuardrailPhase.RESPONSE.value, "incidents": incidents},
            "replaced": original,
        },
    })
    ctx["guardrail_blocked"] = {"phase": GuardrailPhase.RESPONSE.value, "incidents": incidents}
    update.update(messages=messages, ctx=ctx, status=RunStatus.GUARDRAIL_BLOCKED)
    return update


async def tools_node(state: RunState, config: RunnableConfig) -> Dict[str, Any]:
    """
    Execute pending tool calls and fold the outcome into state.

    Sets AWAITING_APPROVAL when a call waits for a reviewer and
    FINALIZED_BY_STRUCTURED_OUTPUT when the response tool ran.
    """
    executor = ToolExecutor(state["runtime"], emit=_sink(state), trace=_trace(state))
    outcome = await executor.execute(state)

    ctx = dict(state.get("ctx") or {})
    ctx.pop("awaiting_approval", None)
    update: Dict[str, Any] = {
        "messages": outcome.messages,
        "tool_history": outcome.tool_history,
        "tool_call_count": outcome.tool_call_count,
        "pending_approvals": outcome.pending_approvals,
        "runtime": outcome.runtime,
    }
    if "plan" in outcome.state_update:
        update["plan"] = outcome.state_update["plan"]

    if outcome.awaiting_approval is not None:
        ctx["awaiting_approval"] = outcome.awaiting_approval
        update.update(ctx=ctx, status=RunStatus.AWAITING_APPROVAL)
        return update

    if outcome.finalized:
        ctx["structured_output"] = outcome.structured_output
        update.update(ctx=ctx, status=RunStatus.FINALIZED_BY_STRUCTURED_OUTPUT)
        logger.info("Run finalized by structured output")
        return update

    update.update(ctx=ctx, status=RunStatus.RUNNING)
    paused = await evaluate_checkpoint({**state, **update}, "after_tools", config)
    if paused:
        update.update(paused)
    return update


async def tool_limit_finalize_node(state: RunState) -> Dict[str, Any]:
    """
    Answer calls requested past the tool-call quota as skipped.

    The first time, a system notice asking for a final answer is appended and
    the status becomes FINALIZED_BY_TOOL_LIMIT; once finalized, the run ends
    after answering.
    """
    executor = ToolExecutor(state["runtime"], emit=_sink(state), trace=_trace(state))
    outcome = await executor.skip_pending(state)
    update: Dict[str, Any] = {
        "messages": outcome.messages,
        "tool_history": outcome.tool_history,
    }

    if state.get("status") != RunStatus.FINALIZED_BY_TOOL_LIMIT:
        logger.warning(f"Tool-call limit reached ({outcome.tool_call_count}); requesting final answer")
        update["messages"] = [*outcome.messages, {"role": "system", "content": TOOL_LIMIT_NOTICE}]
        update["status"] = RunStatus.FINALIZED_BY_TOOL_LIMIT
    return update


async def summarize_node(state: RunState) -> Dict[str, Any]:
    runtime = state["runtime"]
    summarizer = ContextSummarizer(runtime.model, summary_token_limit=runtime.limits.summary_token_limit)
    return await summarizer.summarize(state, emit=_sink(state))


# ============================================================================
# ROUTING LOGIC
# ============================================================================

def _summarization_due(state: RunState) -> bool:
    runtime = state.get("runtime")
    if runtime is None or not getattr(runtime, "summarization", False):
        return False
    return needs_summarization(state, runtime.limits.max_token)


def route_entry(state: RunState) -> Literal["tools", "tool_limit_finalize", "summarize", "guard_request", "__end__"]:
    """
    Pick where an invocation starts.

    Approval decisions and tool calls left unanswered by a pause go straight
    to tool execution without another model call.
    """
    if state.get("status") in (RunStatus.AWAITING_APPROVAL, RunStatus.RESUMING_TOOLS):
        return "tools"
    messages = state.get("messages") or []
    if messages and get_tool_calls(messages[-1]):
        return route_after_response(state)
    if _summarization_due(state):
        return "summarize"
    return "guard_request"


def route_after_guard_request(state: RunState) -> Literal["agent", "__end__"]:
    if state.get("status") in STOP_STATUSES:
        return END
    return "agent"


def route_after_agent(state: RunState) -> Literal["guard_response", "__end__"]:
    if state.get("status") == RunStatus.PAUSED:
        return END
    return "guard_response"


def route_after_response(state: RunState) -> Literal["tools", "tool_limit_finalize", "__end__"]:
    """
    Decide whether the latest response needs tools.

    Calls requested once the quota is spent go to tool_limit_finalize so every
    call still receives an answer.
    """
    if state.get("status") in STOP_STATUSES:
        return END

    messages = state.get("messages") or []
    if not messages or not get_tool_calls(messages[-1]):
        return END

    limits = state["runtime"].limits
    if state.get("status") == RunStatus.FINALIZED_BY_TOOL_LIMIT:
        return "tool_limit_finalize"
    if int(state.get("tool_call_count") or 0) >= limits.max_tool_calls:
        return "tool_limit_finalize"
    return "tools"


def route_after_tools(state: RunState) -> Literal["summarize", "guard_request", "__end__"]:
    if state.get("status") in STOP_STATUSES:
        return END
    if _summarization_due(state):
        return "summarize"
    return "guard_request"


def route_after_finalize(state: RunState) -> Literal["guard_request", "__end__"]:
    messages = state.get("messages") or []
    if messages and messages[-1].get("role") == "system":
        return "guard_request"
    return END


# ============================================================================
# GRAPH CONSTRUCTION
# ============================================================================

_agent_graph = None


def create_agent_graph():
    """
    Create the agent loop graph.

    Returns:
        Compiled StateGraph over RunState. Invoke it with a resolved state and
        a config holding `recursion_limit` and the per-run `configurable` options.
    """
    workflow = StateGraph(RunState)

    # Add nodes
    workflow.add_node("guard_request", guard_request_node)
    workflow.add_node("agent", agent_node)
    workflow.add_node("guard_response", guard_response_node)
    workflow.add_node("tools", tools_node)
    workflow.add_node("tool_limit_finalize", tool_limit_finalize_node)
    workflow.add_node("summarize", summarize_node)

    # Set entry point
    workflow.add_conditional_edges(
        START,
        route_entry,
        {
            "tools": "tools",
            "tool_limit_finalize": "tool_limit_finalize",
            "summarize": "summarize",
            "guard_request": "guard_request",
            END: END
        }
    )

    # Add conditional edges
    workflow.add_conditional_edges(
        "guard_request",
        route_after_guard_request,
        {"agent": "agent", END: END}
    )
    workflow.add_conditional_edges(
        "agent",
        route_after_agent,
        {"guard_response": "guard_response", END: END}
    )
    workflow.add_conditional_edges(
        "guard_response",
        route_after_response,
        {
            "tools": "tools",
            "tool_limit_finalize": "tool_limit_finalize",
            END: END
        }
    )
    workflow.add_conditional_edges(
        "tools",
        route_after_tools,
        {
            "summarize": "summarize",
            "guard_request": "guard_request",
            END: END
        }
    )
    workflow.add_conditional_edges(
        "tool_limit_finalize",
        route_after_finalize,
        {"guard_request": "guard_request", END: END}
    )
    workflow.add_edge("summarize", "guard_request")

    app = workflow.compile()
    logger.info("Agent loop graph compiled successfully")
    return app


def get_agent_graph():
    """Shared compiled graph; runtimes differ only by state and config."""
    global _agent_graph
    if _agent_graph is None:
        _agent_graph = create_agent_graph()
    return _agent_graph


def recursion_limit_for(iteration_limit: int) -> int:
    # Each iteration visits at most six nodes
    return iteration_limit * 6 + 10


__all__ = [
    "DEFAULT_ITERATION_LIMIT",
    "REQUEST_BLOCKED_MESSAGE",
    "RESPONSE_BLOCKED_MESSAGE",
    "TOOL_LIMIT_NOTICE",
    "guard_request_node",
    "agent_node",
    "guard_response_node",
    "tools_node",
    "tool_limit_finalize_node",
    "summarize_node",
    "route_entry",
    "route_after_response",
    "route_after_tools",
    "create_agent_graph",
    "get_agent_graph",
    "recursion_limit_for",
    "evaluate_checkpoint",
]
