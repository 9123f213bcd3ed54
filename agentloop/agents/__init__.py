"""
Agent loop for agentloop.

- state: RunState schema, RunStatus, execution/approval records
- graph: LangGraph loop (guardrails, model step, tools, finalizer, summarizer)
- tool_executor: batched, approval-aware tool execution
- summarizer: token-budget map-reduce context summarization
- runtime: Agent facade and the create_agent / create_smart_agent factories
"""

from agentloop.agents.state import (
    RunState,
    RunStatus,
    ToolExecutionRecord,
    PendingToolApproval,
    create_initial_state,
    resolve_state,
)

from agentloop.agents.graph import (
    create_agent_graph,
    get_agent_graph,
)

from agentloop.agents.tool_executor import (
    ToolExecutor,
    ToolExecutionOutcome,
)

from agentloop.agents.summarizer import ContextSummarizer

from agentloop.agents.runtime import (
    Agent,
    AgentResult,
    AgentRuntimeConfig,
    HandoffDescriptor,
    create_agent,
    create_smart_agent,
)

__all__ = [
    # State
    "RunState",
    "RunStatus",
    "ToolExecutionRecord",
    "PendingToolApproval",
    "create_initial_state",
    "resolve_state",
    # Graph
    "create_agent_graph",
    "get_agent_graph",
    # Execution
    "ToolExecutor",
    "ToolExecutionOutcome",
    "ContextSummarizer",
    # Runtime
    "Agent",
    "AgentResult",
    "AgentRuntimeConfig",
    "HandoffDescriptor",
    "create_agent",
    "create_smart_agent",
]
