"""
Tool Registry for agentloop.

Provides tool definitions and name-based lookup/invocation for the agent loop.

Architecture:
- Tools carry metadata (name, description, argument schema, approval flags)
- The tool executor looks tools up by name for each requested call
- The registry validates arguments and invokes the tool
- Foreign tool objects are supported by duck typing: the first available of
  `ainvoke`, `invoke`, `call`, `run`, `func`, or the object itself is called

Argument schemas may be a pydantic model class (validated with pydantic) or
a JSON-schema dict (validated with jsonschema).
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Type, Union

import jsonschema
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ArgsSchema = Union[Type[BaseModel], Dict[str, Any], None]

# Result sentinels recognized by the tool executor
HANDOFF_KEY = "__handoff"
STRUCTURED_OUTPUT_KEY = "__final_structured_output"


# ============================================================================
# TOOL RESULT WRAPPER
# ============================================================================

@dataclass
class ToolReturn:
    """
    Tool result that also requests run-state changes.

    State-aware tools never mutate run state directly; they return the
    fields to update and the executor merges them.

    Attributes:
        output: Value reported back to the model.
        state_update: Run-state fields to replace (e.g. {"plan": {...}}).
    """
    output: Any
    state_update: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# TOOL DEFINITION
# ============================================================================

class Tool:
    """
    Tool metadata plus its callable.

    Attributes:
        name: Tool name (unique identifier).
        description: Human-readable description shown to the model.
        func: Callable taking the validated args dict (sync or async).
        args_schema: Pydantic model class, JSON-schema dict, or None.
        needs_approval: Whether calls must be approved before running.
        approval_prompt: Text shown to the reviewer.
        approval_defaults: Default values offered to the reviewer.
        needs_state: Pass a read-only run-state view as the second argument.
    """

    def __init__(
        self,
        name: str,
        func: Callable[..., Any],
        description: str = "",
        args_schema: ArgsSchema = None,
        needs_approval: bool = False,
        approval_prompt: Optional[str] = None,
        approval_defaults: Optional[Dict[str, Any]] = None,
        needs_state: bool = False,
    ):
        self.name = name
        self.func = func
        self.description = description
        self.args_schema = args_schema
        self.needs_approval = needs_approval
        self.approval_prompt = approval_prompt
        self.approval_defaults = approval_defaults
        self.needs_state = needs_state

    def parameters_schema(self) -> Dict[str, Any]:
        if inspect.isclass(self.args_schema) and issubclass(self.args_schema, BaseModel):
            return self.args_schema.model_json_schema()
        if isinstance(self.args_schema, dict):
            return self.args_schema
        return {"type": "object", "properties": {}}

    def to_openai_schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }

    def validate_args(self, args: Any) -> Any:
        """
        Validate call arguments against the tool's schema.

        Args:
            args: Decoded arguments from the model.

        Returns:
            Validated arguments (pydantic schemas return a plain dict).

        Raises:
            pydantic.ValidationError: Pydantic schema mismatch.
            jsonschema.ValidationError: JSON-schema mismatch.
        """
        if inspect.isclass(self.args_schema) and issubclass(self.args_schema, BaseModel):
            return self.args_schema.model_validate(args).model_dump()
        if isinstance(self.args_schema, dict):
            jsonschema.validate(args, self.args_schema)
        return args

    async def invoke(self, args: Any, state: Optional[Mapping[str, Any]] = None) -> Any:
        validated = self.validate_args(args)
        result = self.func(validated, state) if self.needs_state else self.func(validated)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"Tool(name={self.name!r}, needs_approval={self.needs_approval})"


def create_tool(
    func: Optional[Callable[..., Any]] = None,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    args_schema: ArgsSchema = None,
    needs_approval: bool = False,
    approval_prompt: Optional[str] = None,
    approval_defaults: Optional[Dict[str, Any]] = None,
    needs_state: bool = False,
) -> Any:
    """
    Build a Tool from a function; usable directly or as a decorator.

    Name and description default to the function's name and docstring.

    Example:
        >>> @create_tool(args_schema=EchoArgs)
        ... async def echo(args):
        ...     "Echo the text back."
        ...     return args["text"]
        >>> echo.name
        'echo'
    """
    def build(fn: Callable[..., Any]) -> Tool:
        return Tool(
            name=name or fn.__name__,
            func=fn,
            description=description if description is not None else (inspect.getdoc(fn) or ""),
            args_schema=args_schema,
            needs_approval=needs_approval,
            approval_prompt=approval_prompt,
            approval_defaults=approval_defaults,
            needs_state=needs_state,
        )

    if func is None:
        return build
    return build(func)


# ============================================================================
# TOOL REGISTRY
# ============================================================================

class ToolRegistry:
    """
    Name-indexed collection of tools for one agent runtime.

    Example:
        >>> registry = ToolRegistry([echo])
        >>> result = await registry.invoke_tool("echo", {"text": "hi"})
        >>> result
        'hi'
    """

    def __init__(self, tools: Optional[Iterable[Any]] = None):
        self.tools: Dict[str, Any] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Any) -> None:
        """
        Register a tool.

        Args:
            tool: Tool or any object with a `name` attribute.

        Raises:
            ValueError: If tool has no name or the name is already registered.
        """
        name = getattr(tool, "name", None)
        if not name:
            raise ValueError(f"Tool has no name: {tool!r}")
        if name in self.tools:
            raise ValueError(f"Tool already registered: {name}")

        self.tools[name] = tool
        logger.debug(f"Registered tool: {name}")

    def get(self, name: str) -> Optional[Any]:
        return self.tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.tools

    def __len__(self) -> int:
        return len(self.tools)

    def list_tools(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": name,
                "description": getattr(tool, "description", ""),
                "needs_approval": bool(getattr(tool, "needs_approval", False)),
            }
            for name, tool in self.tools.items()
        ]

    async def invoke_tool(self, name: str, args: Any, state: Optional[Mapping[str, Any]] = None) -> Any:
        """
        Invoke a registered tool.

        Args:
            name: Tool name.
            args: Call arguments.
            state: Read-only run-state view for state-aware tools.

        Returns:
            Raw tool result.

        Raises:
            KeyError: Unknown tool name.
            TypeError: Tool exposes no callable entry point.
        """
        tool = self.tools[name]

        if isinstance(tool, Tool):
            return await tool.invoke(args, state)

        for attr in ("ainvoke", "invoke", "call", "run", "func"):
            entry = getattr(tool, attr, None)
            if callable(entry):
                break
        else:
            entry = tool if callable(tool) else None

        if entry is None:
            raise TypeError(f"Tool has no callable entry point: {name}")

        result = entry(args)
        if inspect.isawaitable(result):
            result = await result
        return result


__all__ = [
    "HANDOFF_KEY",
    "STRUCTURED_OUTPUT_KEY",
    "ToolReturn",
    "Tool",
    "create_tool",
    "ToolRegistry",
]
