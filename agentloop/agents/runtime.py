"""
Agent Runtime for agentloop.

Provides the entrypoint for running an agent loop with:
- Runtime configuration (model, tools, guardrails, limits) swappable on handoff
- Event streaming through an optional sink
- Pause checkpoints, snapshots and approval hand-back
- Structured output (response tool or JSON fallback)
- Optional per-invocation tracing

Usage:
    from agentloop import create_agent

    agent = create_agent(model, tools=[search], name="researcher")
    result = await agent.invoke("Find the release date of Python 3.12")
    print(result.content)

    # Approval-gated tools pause the run
    if result.state["status"] == RunStatus.AWAITING_APPROVAL:
        approval = result.state["ctx"]["awaiting_approval"]
        state = agent.resolve_approval(result.state, approval["approval_id"], approved=True)
        result = await agent.invoke(state)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel, Field, ValidationError, create_model

from agentloop.agents.graph import evaluate_checkpoint, get_agent_graph, recursion_limit_for
from agentloop.agents.state import RunState, RunStatus, coerce_status, create_initial_state, resolve_state
from agentloop.core.events import Event, EventSink, EventType, emit_event
from agentloop.core.guardrails import ConversationGuardrail
from agentloop.core.model import parse_json_content, system_message
from agentloop.core.settings import AgentLimits, coerce_limits, get_settings_manager
from agentloop.core.snapshots import ToolApprovalResolution, capture_snapshot, resolve_tool_approval, restore_snapshot
from agentloop.core.tokens import content_to_string, count_approx_tokens, estimate_messages_tokens
from agentloop.core.tracing import TracingConfig, create_trace_session
from agentloop.tools.context_tools import create_context_tools, create_response_tool
from agentloop.tools.registry import HANDOFF_KEY, Tool, ToolRegistry

logger = logging.getLogger(__name__)

StatePredicate = Callable[[Dict[str, Any]], Any]


# ============================================================================
# CONFIGURATION / RESULT MODELS
# ============================================================================

@dataclass
class AgentRuntimeConfig:
    """
    Everything the loop needs to run one agent.

    Stored in run state and replaced wholesale on a handoff.

    Attributes:
        name: Agent name (used for tracing, handoff and tool names).
        model: Chat model implementing the ChatModel contract.
        tools: Tools offered to the model (including reserved tools).
        guardrails: Conversation guardrails for request/response phases.
        limits: Run limits.
        version: Optional agent version.
        system_prompt: Prepended once as a system message.
        output_schema: Pydantic model for structured output.
        use_todo_list: The manage_todo_list tool is available.
        summarization: Compact the transcript when it exceeds limits.max_token.
    """
    name: str
    model: Any
    tools: List[Any] = field(default_factory=list)
    guardrails: List[ConversationGuardrail] = field(default_factory=list)
    limits: AgentLimits = field(default_factory=AgentLimits)
    version: Optional[str] = None
    system_prompt: Optional[str] = None
    output_schema: Optional[Type[BaseModel]] = None
    use_todo_list: bool = False
    summarization: bool = False


@dataclass
class AgentResult:
    """
    Result of one invocation.

    Attributes:
        content: Text of the last assistant message.
        output: Validated structured output (output_schema instance) or None.
        messages: Full transcript.
        state: Run state to continue from (resume, approval, snapshot).
        metadata: status, iterations, usage, trace session id and the
            context size report (see `context_report`).
    """
    content: str
    output: Optional[BaseModel]
    messages: List[Dict[str, Any]]
    state: RunState
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HandoffDescriptor:
    """Target runtime plus the tool that transfers control to it."""
    runtime: AgentRuntimeConfig
    tool_name: str
    description: str
    schema: Any = None


def _tool_safe_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name) or "agent"


# ============================================================================
# AGENT
# ============================================================================

class Agent:
    """
    A configured agent loop.

    Example:
        >>> agent = create_agent(model, tools=[echo], limits={"max_tool_calls": 3})
        >>> result = await agent.invoke("say hi")
        >>> result.state["status"]
        <RunStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        runtime: AgentRuntimeConfig,
        iteration_limit: int,
        tracing: Optional[TracingConfig] = None,
    ):
        self.runtime = runtime
        self.iteration_limit = iteration_limit
        self.tracing = tracing

    @property
    def name(self) -> str:
        return self.runtime.name

    def __repr__(self) -> str:
        return f"Agent(name={self.name!r}, tools={len(self.runtime.tools)})"

    # ------------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------------

    def _prepare_state(self, state_or_messages: Any) -> RunState:
        if isinstance(state_or_messages, (str, list)) or (
            isinstance(state_or_messages, dict) and "role" in state_or_messages
        ):
            state = create_initial_state(state_or_messages)
        else:
            state = dict(state_or_messages or {})
        resolved = resolve_state(state, self.runtime)

        prompt = resolved["runtime"].system_prompt
        if prompt and not any(
            m.get("role") == "system" and m.get("content") == prompt for m in resolved["messages"]
        ):
            resolved["messages"] = [system_message(prompt), *resolved["messages"]]
        return resolved

    async def invoke(
        self,
        state_or_messages: Union[str, Dict[str, Any], List[Dict[str, Any]], RunState],
        on_event: Optional[EventSink] = None,
        on_state_change: Optional[StatePredicate] = None,
        checkpoint_reason: Optional[str] = None,
    ) -> AgentResult:
        """
        Run the loop until it finishes, pauses, or waits for an approval.

        Args:
            state_or_messages: A prompt, message(s), or a previous run state.
            on_event: Event sink (sync or async callable, or an EventBus).
            on_state_change: Checkpoint predicate; returning True pauses the run.
            checkpoint_reason: Reason stored in the pause marker.

        Returns:
            AgentResult.

        Raises:
            Exception: Model invocation errors propagate unchanged.
        """
        state = self._prepare_state(state_or_messages)
        runtime = state["runtime"]
        trace = create_trace_session(self.tracing, runtime)

        ctx = dict(state["ctx"])
        ctx.pop("on_event", None)
        ctx.pop("trace_session", None)
        if on_event is not None:
            ctx["on_event"] = on_event
        if trace is not None:
            ctx["trace_session"] = trace
        state["ctx"] = ctx

        config = {
            "recursion_limit": recursion_limit_for(self.iteration_limit),
            "configurable": {
                "iteration_limit": self.iteration_limit,
                "on_state_change": on_state_change,
                "checkpoint_reason": checkpoint_reason,
            },
        }

        logger.info(f"Agent {runtime.name} invoked (status={state['status'].value})")
        try:
            final: Dict[str, Any] = dict(await get_agent_graph().ainvoke(state, config=config))
        except Exception as e:
            logger.error(f"Agent {runtime.name} run failed: {e}")
            if trace is not None:
                await trace.finalize("error", e)
            raise

        status = coerce_status(final.get("status"))
        if status == RunStatus.RUNNING:
            status = RunStatus.COMPLETED
        final["status"] = status

        if "paused" not in (final.get("ctx") or {}):
            paused = await evaluate_checkpoint(final, "after_loop", config)
            if paused:
                final.update(paused)

        active = final.get("runtime") or runtime
        content = self._final_content(final.get("messages") or [])
        output = self._structured_output(active, final.get("ctx") or {}, content)

        await emit_event(ctx.get("on_event"), Event(EventType.FINAL_ANSWER, {
            "agent": active.name,
            "content": content,
            "output": output.model_dump(mode="json") if output is not None else None,
            "status": final["status"].value,
        }))

        final_ctx = dict(final.get("ctx") or {})
        final_ctx.pop("on_event", None)
        final_ctx.pop("trace_session", None)
        final["ctx"] = final_ctx

        metadata: Dict[str, Any] = {
            "status": final["status"].value,
            "iterations": final.get("iteration", 0),
            "usage": final.get("usage"),
            "trace_session_id": None,
            "context": context_report(
                final.get("messages") or [], final.get("tool_history") or [], active.limits
            ),
        }
        if trace is not None:
            metadata["trace_session_id"] = trace.session_id
            await trace.finalize("success")

        logger.info(f"Agent {active.name} finished (status={final['status'].value})")
        return AgentResult(
            content=content,
            output=output,
            messages=list(final.get("messages") or []),
            state=final,
            metadata=metadata,
        )

    @staticmethod
    def _final_content(messages: List[Dict[str, Any]]) -> str:
        for message in reversed(messages):
            if message.get("role") == "assistant":
                return content_to_string(message.get("content"))
        return ""

    @staticmethod
    def _structured_output(
        runtime: AgentRuntimeConfig,
        ctx: Dict[str, Any],
        content: str,
    ) -> Optional[BaseModel]:
        schema = getattr(runtime, "output_schema", None)
        if schema is None:
            return None

        data = ctx.get("structured_output")
        if data is None:
            try:
                data = parse_json_content(content)
            except ValueError:
                return None

        try:
            return schema.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Structured output failed validation: {e}")
            return None

    # ------------------------------------------------------------------------
    # Snapshots / approvals
    # ------------------------------------------------------------------------

    def snapshot(self, state: Dict[str, Any], tag: Optional[str] = None) -> Dict[str, Any]:
        """Capture a serializable snapshot of `state` (see capture_snapshot)."""
        return capture_snapshot(state, tag=tag)

    async def resume(
        self,
        snapshot: Dict[str, Any],
        ctx: Optional[Dict[str, Any]] = None,
        merge_ctx: bool = True,
        runtime: Optional[AgentRuntimeConfig] = None,
        on_event: Optional[EventSink] = None,
        on_state_change: Optional[StatePredicate] = None,
        checkpoint_reason: Optional[str] = None,
    ) -> AgentResult:
        """
        Restore a snapshot and continue the run.

        The agent's own runtime is used unless `runtime` is given.
        """
        state = restore_snapshot(snapshot, ctx=ctx, merge_ctx=merge_ctx, runtime=runtime or self.runtime)
        return await self.invoke(
            state,
            on_event=on_event,
            on_state_change=on_state_change,
            checkpoint_reason=checkpoint_reason,
        )

    def resolve_approval(
        self,
        state: Dict[str, Any],
        approval_id: str,
        approved: bool,
        approved_args: Any = None,
        decided_by: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Record a reviewer decision; pass the returned state to `invoke` to continue.

        Raises:
            ApprovalNotFoundError: No matching approval entry.
            ApprovalAlreadyExecutedError: The call has already been executed.
        """
        resolution = ToolApprovalResolution(
            id=approval_id,
            approved=approved,
            approved_args=approved_args,
            decided_by=decided_by,
            comment=comment,
        )
        return resolve_tool_approval(state, resolution)

    # ------------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------------

    def as_tool(
        self,
        tool_name: Optional[str] = None,
        description: Optional[str] = None,
        input_description: Optional[str] = None,
    ) -> Tool:
        """
        Expose this agent as a tool taking `{"input": str}`.

        Each call runs a fresh sub-run and returns {"content": ...}, plus
        "output" when the agent produced structured output.
        """
        args_schema = create_model(
            "AgentToolInput",
            input=(str, Field(..., description=input_description or "Input for the agent")),
        )

        async def run_agent(args: Dict[str, Any]) -> Dict[str, Any]:
            result = await self.invoke(args["input"])
            payload: Dict[str, Any] = {"content": result.content}
            if result.output is not None:
                payload["output"] = result.output.model_dump(mode="json")
            return payload

        return Tool(
            name=tool_name or _tool_safe_name(self.name),
            func=run_agent,
            description=description or f"Delegate a task to the {self.name} agent.",
            args_schema=args_schema,
        )

    def as_handoff(
        self,
        tool_name: Optional[str] = None,
        description: Optional[str] = None,
        schema: Any = None,
    ) -> HandoffDescriptor:
        """Describe a handoff to this agent for `create_agent(handoffs=[...])`."""
        return HandoffDescriptor(
            runtime=self.runtime,
            tool_name=tool_name or f"handoff_to_{_tool_safe_name(self.name)}",
            description=description or f"Hand the conversation off to the {self.name} agent.",
            schema=schema,
        )


def context_report(messages: List[Dict[str, Any]], tool_history: List[Dict[str, Any]], limits: AgentLimits) -> Dict[str, Any]:
    """
    Transcript size against the soft ceilings in `limits`.

    Returns:
        tokens, token_limit, over_limit, and the execution ids of tool outputs
        above `tool_output_token_limit`.
    """
    tokens = estimate_messages_tokens(messages)
    oversized = [
        record.get("execution_id")
        for record in tool_history
        if count_approx_tokens(content_to_string(record.get("output"))) > limits.tool_output_token_limit
    ]
    return {
        "tokens": tokens,
        "token_limit": limits.context_token_limit,
        "over_limit": tokens > limits.context_token_limit,
        "oversized_tool_outputs": oversized,
    }


# ============================================================================
# FACTORIES
# ============================================================================

def create_handoff_tool(descriptor: HandoffDescriptor) -> Tool:
    target = descriptor.runtime

    def transfer(args: Any) -> Dict[str, Any]:
        return {HANDOFF_KEY: {"runtime": target, "args": args}}

    return Tool(
        name=descriptor.tool_name,
        func=transfer,
        description=descriptor.description,
        args_schema=descriptor.schema,
    )


def _default_tracing() -> Optional[TracingConfig]:
    defaults = get_settings_manager().get_tracing_defaults()
    if not defaults.get("enabled"):
        return None
    return TracingConfig(enabled=True, log_data=bool(defaults.get("log_data")))


def create_agent(
    model: Any,
    tools: Optional[List[Any]] = None,
    name: Optional[str] = None,
    version: Optional[str] = None,
    guardrails: Optional[List[ConversationGuardrail]] = None,
    limits: Union[AgentLimits, Dict[str, Any], None] = None,
    output_schema: Optional[Type[BaseModel]] = None,
    handoffs: Optional[List[HandoffDescriptor]] = None,
    tracing: Optional[TracingConfig] = None,
    system_prompt: Optional[str] = None,
    summarization: bool = False,
    iteration_limit: Optional[int] = None,
    use_todo_list: bool = False,
) -> Agent:
    """
    Create an agent.

    Args:
        model: Chat model (invoke/ainvoke, optional bind_tools).
        tools: Tools offered to the model.
        name: Agent name.
        version: Agent version.
        guardrails: Request/response guardrails.
        limits: AgentLimits or overrides; stored settings fill the rest.
        output_schema: Pydantic model; adds the `response` tool.
        handoffs: Descriptors from `Agent.as_handoff`.
        tracing: Tracing config; stored settings decide when omitted.
        system_prompt: Prepended once as a system message.
        summarization: Compact the transcript past limits.max_token.
        iteration_limit: Loop iterations per invocation
            (default max(max_tool_calls * 3 + 10, 40)).
        use_todo_list: Marks the runtime as planning-enabled.

    Returns:
        Agent.

    Raises:
        ValueError: Duplicate or unnamed tools.
        pydantic.ValidationError: Invalid limits.
    """
    resolved_limits = coerce_limits(limits)

    all_tools = list(tools or [])
    if output_schema is not None:
        all_tools.append(create_response_tool(output_schema))
    for descriptor in handoffs or []:
        all_tools.append(create_handoff_tool(descriptor))

    # Duplicate names raise here rather than mid-run
    ToolRegistry(all_tools)

    runtime = AgentRuntimeConfig(
        name=name or "agent",
        model=model,
        tools=all_tools,
        guardrails=list(guardrails or []),
        limits=resolved_limits,
        version=version,
        system_prompt=system_prompt,
        output_schema=output_schema,
        use_todo_list=use_todo_list,
        summarization=summarization,
    )

    if iteration_limit is None:
        iteration_limit = max(resolved_limits.max_tool_calls * 3 + 10, 40)

    logger.debug(f"Created agent {runtime.name} with {len(all_tools)} tools")
    return Agent(runtime, iteration_limit=iteration_limit, tracing=tracing if tracing is not None else _default_tracing())


def create_smart_agent(
    model: Any,
    tools: Optional[List[Any]] = None,
    name: Optional[str] = None,
    version: Optional[str] = None,
    guardrails: Optional[List[ConversationGuardrail]] = None,
    limits: Union[AgentLimits, Dict[str, Any], None] = None,
    output_schema: Optional[Type[BaseModel]] = None,
    handoffs: Optional[List[HandoffDescriptor]] = None,
    tracing: Optional[TracingConfig] = None,
    system_prompt: Optional[str] = None,
    use_todo_list: bool = True,
) -> Agent:
    """
    Create an agent with context tools and summarization enabled.

    Adds get_tool_response (and manage_todo_list when `use_todo_list`),
    enables summarization, and uses an iteration limit of
    max(max_tool_calls * 3 + 5, 30).
    """
    resolved_limits = coerce_limits(limits)
    context_tools = create_context_tools(planning_enabled=use_todo_list)

    return create_agent(
        model,
        tools=[*(tools or []), *context_tools],
        name=name,
        version=version,
        guardrails=guardrails,
        limits=resolved_limits,
        output_schema=output_schema,
        handoffs=handoffs,
        tracing=tracing,
        system_prompt=system_prompt,
        summarization=True,
        iteration_limit=max(resolved_limits.max_tool_calls * 3 + 5, 30),
        use_todo_list=use_todo_list,
    )


__all__ = [
    "AgentRuntimeConfig",
    "AgentResult",
    "HandoffDescriptor",
    "Agent",
    "context_report",
    "create_handoff_tool",
    "create_agent",
    "create_smart_agent",
]
