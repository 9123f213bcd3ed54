"""
Pytest Configuration and Shared Fixtures for agentloop.

Provides common fixtures for:
- Isolated settings (temporary config directory)
- Scripted fake chat models
- Sample tools (echo, failing, approval-gated)
- Event collection
"""

import copy
import itertools
from typing import Any, Dict, List

import pytest
from pydantic import BaseModel

from agentloop.core import settings as settings_module
from agentloop.core.settings import SettingsManager
from agentloop.tools.registry import create_tool


# ============================================================================
# SETTINGS FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """
    Point the settings singleton at a temporary directory.

    Returns:
        SettingsManager: Manager backed by tmp_path/config.
    """
    manager = SettingsManager(config_dir=tmp_path / "config")
    monkeypatch.setattr(settings_module, "_settings_manager", manager)
    return manager


# ============================================================================
# MODEL FIXTURES
# ============================================================================

class FakeChatModel:
    """
    Chat model that replays scripted responses.

    Each response may be a message dict, a string, an exception (raised), or
    a callable taking the messages. When the script runs out, the model
    answers "done".
    """

    def __init__(self, responses: List[Any], model_name: str = "fake-model"):
        self.responses = list(responses)
        self.model_name = model_name
        self.calls: List[List[Dict[str, Any]]] = []
        self.bound_tools: List[List[str]] = []

    def bind_tools(self, tools):
        self.bound_tools.append([tool["function"]["name"] for tool in tools])
        return self

    async def ainvoke(self, messages):
        self.calls.append(copy.deepcopy(messages))
        if not self.responses:
            return {"role": "assistant", "content": "done"}
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(messages)
        return response


@pytest.fixture
def fake_model():
    """
    Factory fixture for scripted models.

    Returns:
        Callable: fake_model(*responses, model_name="fake-model") -> FakeChatModel.
    """
    def _create(*responses, model_name="fake-model"):
        return FakeChatModel(list(responses), model_name=model_name)

    return _create


@pytest.fixture
def ai_calls():
    """
    Factory fixture for assistant messages requesting tool calls.

    Returns:
        Callable: ai_calls(("name", {args}), ..., content="") -> message dict.
        Call ids are call_1, call_2, ... in order of creation.
    """
    counter = itertools.count(1)

    def _create(*calls, content=""):
        return {
            "role": "assistant",
            "content": content,
            "tool_calls": [
                {"id": f"call_{next(counter)}", "name": name, "args": args}
                for name, args in calls
            ],
        }

    return _create


# ============================================================================
# TOOL FIXTURES
# ============================================================================

class EchoArgs(BaseModel):
    text: str


class DeployArgs(BaseModel):
    env: str


@pytest.fixture
def echo_tool():
    @create_tool(args_schema=EchoArgs)
    async def echo(args):
        """Echo the text back."""
        return f"echo: {args['text']}"

    return echo


@pytest.fixture
def failing_tool():
    @create_tool
    def explode(args):
        """Always fails."""
        raise RuntimeError("boom")

    return explode


@pytest.fixture
def deploy_tool():
    """Approval-gated tool that records the environments it deployed to."""
    deployed: List[str] = []

    @create_tool(args_schema=DeployArgs, needs_approval=True, approval_prompt="Deploy to production?")
    def deploy(args):
        """Deploy the service."""
        deployed.append(args["env"])
        return f"deployed to {args['env']}"

    deploy.deployed = deployed
    return deploy


# ============================================================================
# EVENT FIXTURES
# ============================================================================

class EventCollector:
    """Async event sink that keeps every event it receives."""

    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [event for event in self.events if event.type == event_type]


@pytest.fixture
def events():
    return EventCollector()
