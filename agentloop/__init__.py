"""
agentloop: a tool-using agent loop on LangGraph.

Quick start:
    from agentloop import create_agent, create_tool

    @create_tool
    def add(args):
        "Add two numbers."
        return args["a"] + args["b"]

    agent = create_agent(model, tools=[add])
    result = await agent.invoke("What is 2 + 3?")
"""

from agentloop.agents.runtime import (
    Agent,
    AgentResult,
    AgentRuntimeConfig,
    HandoffDescriptor,
    create_agent,
    create_smart_agent,
)
from agentloop.agents.state import RunState, RunStatus, create_initial_state
from agentloop.core.events import Event, EventBus, EventType
from agentloop.core.guardrail_rules import (
    agent_verdict_rule,
    code_presence_rule,
    create_code_guardrail,
    create_json_guardrail,
    create_regex_guardrail,
    custom_callback_rule,
    json_schema_rule,
    regex_rule,
)
from agentloop.core.guardrails import (
    ConversationGuardrail,
    GuardrailOutcome,
    GuardrailPhase,
    GuardrailRule,
    GuardrailRuleResult,
    create_guardrail,
    evaluate_guardrails,
)
from agentloop.core.settings import AgentLimits, SettingsManager, get_settings_manager
from agentloop.core.snapshots import (
    ApprovalAlreadyExecutedError,
    ApprovalNotFoundError,
    ToolApprovalResolution,
    capture_snapshot,
    resolve_tool_approval,
    restore_snapshot,
)
from agentloop.core.tracing import TracingConfig, TraceSession
from agentloop.core.usage import UsageTracker, normalize_usage
from agentloop.tools.registry import Tool, ToolRegistry, ToolReturn, create_tool

__version__ = "0.1.0"

__all__ = [
    # Agents
    "Agent",
    "AgentResult",
    "AgentRuntimeConfig",
    "HandoffDescriptor",
    "create_agent",
    "create_smart_agent",
    "RunState",
    "RunStatus",
    "create_initial_state",
    # Tools
    "Tool",
    "ToolRegistry",
    "ToolReturn",
    "create_tool",
    # Guardrails
    "ConversationGuardrail",
    "GuardrailOutcome",
    "GuardrailPhase",
    "GuardrailRule",
    "GuardrailRuleResult",
    "create_guardrail",
    "evaluate_guardrails",
    "regex_rule",
    "json_schema_rule",
    "code_presence_rule",
    "custom_callback_rule",
    "agent_verdict_rule",
    "create_regex_guardrail",
    "create_json_guardrail",
    "create_code_guardrail",
    # Snapshots
    "capture_snapshot",
    "restore_snapshot",
    "resolve_tool_approval",
    "ToolApprovalResolution",
    "ApprovalNotFoundError",
    "ApprovalAlreadyExecutedError",
    # Events / tracing / usage / settings
    "Event",
    "EventBus",
    "EventType",
    "TracingConfig",
    "TraceSession",
    "UsageTracker",
    "normalize_usage",
    "AgentLimits",
    "SettingsManager",
    "get_settings_manager",
]
