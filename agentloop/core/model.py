"""
Chat Model Contract and Message Helpers for agentloop.

The loop talks to language models through a minimal capability interface:
- `invoke(messages)` returns an assistant message (sync or async)
- `bind_tools(tools)` is optional and returns a tool-aware model

Messages are plain dicts so that run state stays JSON-serializable:
    {
        "role": "system" | "user" | "assistant" | "tool",
        "content": str | list,
        "name": Optional[str],
        "tool_calls": [{"id": str, "name": str, "args": dict}],
        "tool_call_id": Optional[str],
        "metadata": Optional[dict],
    }

Model responses may be dicts or objects (e.g. LangChain AIMessage); they are
normalized with `coerce_message` before entering state.
"""

import inspect
import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


# ============================================================================
# MODEL CONTRACT
# ============================================================================

@runtime_checkable
class ChatModel(Protocol):
    """Anything with an `invoke(messages)` method returning an assistant message."""

    def invoke(self, messages: List[Dict[str, Any]]) -> Any:
        ...


async def invoke_model(model: Any, messages: List[Dict[str, Any]]) -> Any:
    """
    Invoke a chat model, awaiting the result when the model is async.

    Prefers `ainvoke` when the model exposes one (LangChain convention),
    otherwise calls `invoke` and awaits it if it returned an awaitable.

    Args:
        model: Chat model implementing the ChatModel contract.
        messages: Transcript to send.

    Returns:
        Raw model response (dict or message object).
    """
    ainvoke = getattr(model, "ainvoke", None)
    if callable(ainvoke):
        return await ainvoke(messages)

    result = model.invoke(messages)
    if inspect.isawaitable(result):
        result = await result
    return result


def tool_schema(tool: Any) -> Dict[str, Any]:
    """Describe a tool in the OpenAI function-calling format accepted by most chat models."""
    to_schema = getattr(tool, "to_openai_schema", None)
    if callable(to_schema):
        return to_schema()
    return {
        "type": "function",
        "function": {
            "name": getattr(tool, "name", "tool"),
            "description": getattr(tool, "description", "") or "",
            "parameters": {"type": "object", "properties": {}},
        },
    }


def bind_tools(model: Any, tools: List[Any]) -> Any:
    """
    Bind tool schemas to a model if it supports `bind_tools`.

    Args:
        model: Chat model.
        tools: Tools available for this turn.

    Returns:
        Tool-aware model, or the model unchanged when binding is unsupported
        or there are no tools.
    """
    binder = getattr(model, "bind_tools", None)
    if not tools or not callable(binder):
        return model
    return binder([tool_schema(tool) for tool in tools])


def get_model_name(model: Any) -> str:
    for attr in ("model_name", "model", "name"):
        value = getattr(model, attr, None)
        if isinstance(value, str) and value:
            return value
    return type(model).__name__


# ============================================================================
# MESSAGE CONSTRUCTORS
# ============================================================================

def system_message(content: str) -> Dict[str, Any]:
    return {"role": "system", "content": content}


def user_message(content: Any) -> Dict[str, Any]:
    return {"role": "user", "content": content}


def assistant_message(
    content: Any = "",
    tool_calls: Optional[List[Dict[str, Any]]] = None,
    name: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    if name:
        message["name"] = name
    if metadata:
        message["metadata"] = metadata
    return message


def tool_message(content: str, tool_call_id: str, name: Optional[str] = None) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "tool", "content": content, "tool_call_id": tool_call_id}
    if name:
        message["name"] = name
    return message


# ============================================================================
# NORMALIZATION
# ============================================================================

_ROLE_ALIASES = {"ai": "assistant", "human": "user"}
_FENCED_JSON = re.compile(r"```(?:json)?\s*\n([\s\S]*?)```", re.IGNORECASE)


def normalize_tool_call(call: Any) -> Dict[str, Any]:
    """
    Normalize a tool call into `{"id", "name", "args"}`.

    Accepts the internal shape, LangChain's `{"id", "name", "args"}` and the
    OpenAI shape `{"id", "function": {"name", "arguments"}}`. String arguments
    are decoded as JSON when possible and kept verbatim otherwise.
    """
    if not isinstance(call, dict):
        call = {
            "id": getattr(call, "id", None),
            "name": getattr(call, "name", None),
            "args": getattr(call, "args", None),
        }

    function = call.get("function") if isinstance(call.get("function"), dict) else None
    name = call.get("name") or (function or {}).get("name") or ""
    args = call.get("args")
    if args is None and function is not None:
        args = function.get("arguments")
    if args is None:
        args = call.get("arguments")

    if isinstance(args, str):
        try:
            args = json.loads(args) if args.strip() else {}
        except json.JSONDecodeError:
            pass
    if args is None:
        args = {}

    return {"id": call.get("id"), "name": name, "args": args}


def assign_tool_call_ids(message: Dict[str, Any], index: int) -> Dict[str, Any]:
    """
    Give every id-less tool call of an assistant message a stable id.

    The id is `<name>_<index>_<position>`, where `index` is the message's
    position in the transcript.

    Returns:
        The message itself when every call has an id, otherwise a copy with
        normalized calls.
    """
    calls = [normalize_tool_call(call) for call in message.get("tool_calls") or []]
    if all(call["id"] for call in calls):
        return message
    assigned = [
        call if call["id"] else {**call, "id": f"{call['name']}_{index}_{position}"}
        for position, call in enumerate(calls)
    ]
    return {**message, "tool_calls": assigned}


def get_tool_calls(message: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Return the normalized tool calls of an assistant message (empty list otherwise)."""
    if not message or message.get("role") != "assistant":
        return []
    return [normalize_tool_call(call) for call in message.get("tool_calls") or []]


def parse_json_content(text: str) -> Any:
    """
    Extract a JSON value from assistant text.

    Tries a fenced ```json block first, then decodes from the first `{` or `[`.

    Raises:
        ValueError: No JSON value could be decoded.
    """
    fenced = _FENCED_JSON.search(text)
    if fenced:
        return json.loads(fenced.group(1).strip())

    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if not starts:
        return json.loads(text)
    value, _ = json.JSONDecoder().raw_decode(text[min(starts):])
    return value


def coerce_message(response: Any) -> Dict[str, Any]:
    """
    Convert a model response into an assistant message dict.

    Args:
        response: Dict, string, or message object with `content`/`tool_calls`.

    Returns:
        Message dict with role "assistant" unless the response names another role.
        Provider usage payloads are preserved under the "usage" key.
    """
    if isinstance(response, str):
        return assistant_message(response)

    if isinstance(response, dict):
        message = dict(response)
    else:
        message = {"content": getattr(response, "content", "")}
        for attr in ("name", "tool_calls", "usage", "usage_metadata", "response_metadata", "metadata"):
            value = getattr(response, attr, None)
            if value:
                message[attr] = value
        role = getattr(response, "role", None) or getattr(response, "type", None)
        if role:
            message["role"] = role

    role = message.get("role") or "assistant"
    message["role"] = _ROLE_ALIASES.get(role, role)
    message.setdefault("content", "")

    if message.get("tool_calls"):
        message["tool_calls"] = [normalize_tool_call(call) for call in message["tool_calls"]]
    else:
        message.pop("tool_calls", None)

    return message


__all__ = [
    "ChatModel",
    "invoke_model",
    "tool_schema",
    "bind_tools",
    "get_model_name",
    "system_message",
    "user_message",
    "assistant_message",
    "tool_message",
    "normalize_tool_call",
    "assign_tool_call_ids",
    "get_tool_calls",
    "parse_json_content",
    "coerce_message",
]
