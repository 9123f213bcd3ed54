"""
Tools for agentloop.

- registry: Tool definition, create_tool decorator, name-indexed ToolRegistry
- context_tools: get_tool_response, manage_todo_list, and the structured
  `response` tool
"""

from agentloop.tools.registry import Tool, ToolRegistry, ToolReturn, create_tool
from agentloop.tools.context_tools import create_context_tools, create_response_tool

__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolReturn",
    "create_tool",
    "create_context_tools",
    "create_response_tool",
]
