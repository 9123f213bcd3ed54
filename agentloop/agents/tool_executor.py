"""
Tool Execution for the agentloop graph.

Executes the tool calls requested by the most recent assistant message:
- Enforces the per-run tool-call quota (over-limit calls are answered as skipped)
- Pauses on approval-gated tools until a reviewer decides
- Runs ready calls in batches of `max_parallel_tools`
- Detects handoff and structured-output results
- Records every attempt in tool history with a unique execution id

Every requested call receives exactly one tool-role message, appended in
request order. Calls that already have an answer (e.g. the earlier part of a
batch resumed after approval) are never executed twice.

The executor never mutates the incoming state; it returns a
ToolExecutionOutcome that the graph node turns into a state update.
"""

import asyncio
import copy
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Set

from agentloop.agents.state import PendingToolApproval, ToolExecutionRecord
from agentloop.core.events import Event, EventSink, EventType, emit_event
from agentloop.core.model import assign_tool_call_ids, get_tool_calls, tool_message
from agentloop.core.tracing import TraceSession, estimate_payload_bytes
from agentloop.tools.registry import HANDOFF_KEY, STRUCTURED_OUTPUT_KEY, ToolRegistry, ToolReturn

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_REJECTION_REASON = "Tool call rejected by reviewer."


# ============================================================================
# RESULT MODELS
# ============================================================================

@dataclass
class ToolExecutionOutcome:
    """
    Result of one tool-execution pass.

    Attributes:
        messages: Full transcript with the new tool messages appended.
        tool_history: Live history with the new records appended.
        tool_call_count: Updated quota counter.
        pending_approvals: Updated approval entries.
        runtime: Active runtime (replaced by a handoff).
        awaiting_approval: Marker when a call is waiting for a decision.
        structured_output: Data from the structured-output tool, if it ran.
        state_update: Run-state fields requested by state-aware tools.
    """
    messages: List[Dict[str, Any]]
    tool_history: List[Dict[str, Any]]
    tool_call_count: int
    pending_approvals: List[Dict[str, Any]]
    runtime: Any
    awaiting_approval: Optional[Dict[str, Any]] = None
    structured_output: Any = None
    finalized: bool = False
    state_update: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _Slot:
    call: Dict[str, Any]
    action: str
    args: Any = None
    approval_index: Optional[int] = None
    approval: Optional[Dict[str, Any]] = None


@dataclass
class _CallResult:
    content: str
    record: Dict[str, Any]
    consumed: bool = True
    handoff_runtime: Any = None
    structured: bool = False
    structured_data: Any = None
    state_update: Dict[str, Any] = field(default_factory=dict)
    approval_index: Optional[int] = None


# ============================================================================
# HELPERS
# ============================================================================

def stringify_output(output: Any) -> str:
    if isinstance(output, str):
        return output
    try:
        return json.dumps(output, default=str)
    except (TypeError, ValueError):
        return str(output)


def find_pending_tool_calls(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Unanswered tool calls of the most recent assistant message that carries tool calls.

    Calls without an id get a stable one derived from their position; the
    assistant message is replaced in `messages` by a copy carrying those ids.

    Args:
        messages: Transcript (a working copy owned by the caller).

    Returns:
        Normalized calls ({"id", "name", "args"}) still lacking a tool-role answer.
    """
    for index in range(len(messages) - 1, -1, -1):
        if not get_tool_calls(messages[index]):
            continue

        messages[index] = assign_tool_call_ids(messages[index], index)
        calls = get_tool_calls(messages[index])
        answered: Set[str] = {
            m.get("tool_call_id") for m in messages[index + 1:] if m.get("role") == "tool"
        }
        return [call for call in calls if call["id"] not in answered]
    return []


def build_state_view(state: Dict[str, Any]) -> MappingProxyType:
    """Read-only copy of the state fields visible to state-aware tools."""
    ctx = state.get("ctx") or {}
    return MappingProxyType({
        "tool_history": tuple(copy.deepcopy(state.get("tool_history") or [])),
        "tool_history_archived": tuple(copy.deepcopy(state.get("tool_history_archived") or [])),
        "plan": copy.deepcopy(state.get("plan")),
        "on_event": ctx.get("on_event"),
    })


# ============================================================================
# TOOL EXECUTOR
# ============================================================================

class ToolExecutor:
    """
    Approval-aware, batched tool execution for one agent runtime.

    Example:
        >>> executor = ToolExecutor(runtime, emit=on_event)
        >>> outcome = await executor.execute(state)
        >>> outcome.tool_call_count
        2
    """

    def __init__(
        self,
        runtime: Any,
        emit: Optional[EventSink] = None,
        trace: Optional[TraceSession] = None,
    ):
        self.runtime = runtime
        self.registry = ToolRegistry(runtime.tools)
        self.emit = emit
        self.trace = trace

    async def execute(self, state: Dict[str, Any]) -> ToolExecutionOutcome:
        """
        Execute the pending tool calls of the latest assistant turn.

        Args:
            state: Current run state (never modified).

        Returns:
            ToolExecutionOutcome describing the new transcript and history.
        """
        messages = list(state.get("messages") or [])
        history = list(state.get("tool_history") or [])
        approvals = [dict(entry) for entry in state.get("pending_approvals") or []]
        count = int(state.get("tool_call_count") or 0)

        outcome = ToolExecutionOutcome(
            messages=messages,
            tool_history=history,
            tool_call_count=count,
            pending_approvals=approvals,
            runtime=self.runtime,
        )

        pending = find_pending_tool_calls(messages)
        if not pending:
            return outcome

        limits = self.runtime.limits
        remaining = max(0, limits.max_tool_calls - count)
        planned, over_limit = pending[:remaining], pending[remaining:]

        slots = await self._gate(planned, approvals, outcome)
        results = await self._run_slots(slots, state)

        if outcome.awaiting_approval is None:
            for call in over_limit:
                results.append(await self._skip(call))
            if over_limit:
                logger.warning(f"Tool-call limit reached: skipped {len(over_limit)} call(s)")

        await self._merge(results, outcome)
        return outcome

    async def skip_pending(self, state: Dict[str, Any]) -> ToolExecutionOutcome:
        """Answer every pending call as skipped without running anything."""
        outcome = ToolExecutionOutcome(
            messages=list(state.get("messages") or []),
            tool_history=list(state.get("tool_history") or []),
            tool_call_count=int(state.get("tool_call_count") or 0),
            pending_approvals=[dict(entry) for entry in state.get("pending_approvals") or []],
            runtime=self.runtime,
        )
        results = [await self._skip(call) for call in find_pending_tool_calls(outcome.messages)]
        await self._merge(results, outcome)
        return outcome

    # ------------------------------------------------------------------------
    # Gating
    # ------------------------------------------------------------------------

    async def _gate(
        self,
        planned: List[Dict[str, Any]],
        approvals: List[Dict[str, Any]],
        outcome: ToolExecutionOutcome,
    ) -> List[_Slot]:
        slots: List[_Slot] = []
        by_call_id = {entry.get("tool_call_id"): i for i, entry in enumerate(approvals)}

        for call in planned:
            tool = self.registry.get(call["name"])
            if tool is None:
                slots.append(_Slot(call=call, action="not_found"))
                continue

            if not getattr(tool, "needs_approval", False):
                slots.append(_Slot(call=call, action="run", args=call["args"]))
                continue

            index = by_call_id.get(call["id"])
            if index is None:
                entry = PendingToolApproval(
                    tool_call_id=call["id"],
                    tool_name=call["name"],
                    args=copy.deepcopy(call["args"]),
                    metadata={
                        "prompt": getattr(tool, "approval_prompt", None),
                        "defaults": getattr(tool, "approval_defaults", None),
                    },
                ).model_dump()
                approvals.append(entry)
                await emit_event(self.emit, Event(EventType.TOOL_APPROVAL, {
                    "status": "pending",
                    "approval_id": entry["id"],
                    "tool_call_id": call["id"],
                    "tool_name": call["name"],
                    "args": entry["args"],
                    "prompt": entry["metadata"]["prompt"],
                }))
                logger.info(f"Tool {call['name']} awaiting approval ({entry['id']})")
                outcome.awaiting_approval = self._awaiting_marker(entry)
                break

            entry = approvals[index]
            status = entry.get("status")
            if status == "pending":
                outcome.awaiting_approval = self._awaiting_marker(entry)
                break
            if status == "rejected":
                slots.append(_Slot(call=call, action="rejected", approval_index=index, approval=entry))
            elif status == "approved":
                args = entry.get("approved_args")
                slots.append(_Slot(
                    call=call,
                    action="run",
                    args=call["args"] if args is None else args,
                    approval_index=index,
                ))
            else:
                logger.warning(f"Approval {entry.get('id')} already executed; not re-running {call['name']}")
                slots.append(_Slot(call=call, action="executed", approval_index=index))

        return slots

    @staticmethod
    def _awaiting_marker(entry: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "approval_id": entry["id"],
            "tool_call_id": entry["tool_call_id"],
            "tool_name": entry["tool_name"],
            "requested_at": entry["requested_at"],
        }

    # ------------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------------

    async def _run_slots(self, slots: List[_Slot], state: Dict[str, Any]) -> List[_CallResult]:
        results: List[Optional[_CallResult]] = [None] * len(slots)
        runnable = []

        for i, slot in enumerate(slots):
            if slot.action == "run":
                runnable.append(i)
            elif slot.action == "not_found":
                results[i] = await self._not_found(slot)
            elif slot.action == "rejected":
                results[i] = await self._reject(slot)
            else:
                results[i] = self._already_executed(slot)

        batch_size = max(1, self.runtime.limits.max_parallel_tools)
        for start in range(0, len(runnable), batch_size):
            batch = runnable[start:start + batch_size]
            outputs = await asyncio.gather(*(self._run_one(slots[i], state) for i in batch))
            for i, result in zip(batch, outputs):
                results[i] = result

        return [result for result in results if result is not None]

    async def _run_one(self, slot: _Slot, state: Dict[str, Any]) -> _CallResult:
        call = slot.call
        name = call["name"]
        tool = self.registry.get(name)
        view = build_state_view(state) if getattr(tool, "needs_state", False) else None
        started = time.monotonic()

        if slot.approval_index is not None:
            await emit_event(self.emit, Event(EventType.TOOL_APPROVAL, {
                "status": "approved",
                "tool_call_id": call["id"],
                "tool_name": name,
                "args": slot.args,
            }))

        try:
            raw = await self.registry.invoke_tool(name, slot.args, view)
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}", exc_info=True)
            return await self._failed(slot, started, str(e))

        result = _CallResult(content="", record={}, approval_index=slot.approval_index)
        output = raw
        if isinstance(raw, ToolReturn):
            output = raw.output
            result.state_update = dict(raw.state_update)

        if isinstance(output, dict) and HANDOFF_KEY in output:
            handoff = output[HANDOFF_KEY]
            if not isinstance(handoff, dict) or handoff.get("runtime") is None:
                logger.error(f"Tool {name} returned an invalid handoff: {handoff!r}")
                return await self._failed(slot, started, f"invalid handoff payload: {handoff!r}")
            result.handoff_runtime = handoff["runtime"]
            result.content = "ok"
            result.record = self._record(call, slot.args, output="handoff:ok", raw_output=None)
        elif isinstance(output, dict) and output.get(STRUCTURED_OUTPUT_KEY) is True:
            result.structured = True
            result.structured_data = output.get("data")
            result.content = stringify_output(output.get("data"))
            result.record = self._record(call, slot.args, output=result.content, raw_output=output.get("data"))
        else:
            result.content = stringify_output(output)
            result.record = self._record(call, slot.args, output=result.content, raw_output=output)

        self._trace(name, result.record, started, status="success", args=slot.args)
        await self._emit_call(result.record, "success", result.content)
        logger.debug(f"Tool {name} executed ({result.record['execution_id']})")
        return result

    async def _failed(self, slot: _Slot, started: float, error: str) -> _CallResult:
        call = slot.call
        content = f"Error executing tool: {error}"
        record = self._record(call, slot.args, output=content)
        self._trace(call["name"], record, started, status="error", error=error, args=slot.args)
        await self._emit_call(record, "error", content)
        return _CallResult(content=content, record=record, approval_index=slot.approval_index)

    async def _not_found(self, slot: _Slot) -> _CallResult:
        name = slot.call["name"]
        logger.warning(f"Tool not found: {name}")
        content = f"Tool not found: {name}"
        record = self._record(slot.call, slot.call["args"], output=content)
        await self._emit_call(record, "not_found", content)
        return _CallResult(content=content, record=record)

    async def _reject(self, slot: _Slot) -> _CallResult:
        call = slot.call
        entry = slot.approval or {}
        reason = entry.get("comment") or DEFAULT_REJECTION_REASON
        content = f"Tool call rejected: {reason}"
        record = self._record(call, call["args"], output=f"Rejected: {reason}")
        await emit_event(self.emit, Event(EventType.TOOL_APPROVAL, {
            "status": "rejected",
            "approval_id": entry.get("id"),
            "tool_call_id": call["id"],
            "tool_name": call["name"],
            "comment": entry.get("comment"),
        }))
        await self._emit_call(record, "rejected", content)
        return _CallResult(content=content, record=record, approval_index=slot.approval_index)

    def _already_executed(self, slot: _Slot) -> _CallResult:
        content = f"Tool call already executed: {slot.call['name']}"
        record = self._record(slot.call, slot.call["args"], output=content)
        return _CallResult(content=content, record=record, consumed=False)

    async def _skip(self, call: Dict[str, Any]) -> _CallResult:
        content = f"Skipped tool due to tool-call limit: {call['name']}"
        record = self._record(call, call["args"], output=content)
        await self._emit_call(record, "skipped", content)
        return _CallResult(content=content, record=record, consumed=False)

    # ------------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------------

    @staticmethod
    def _record(call: Dict[str, Any], args: Any, output: Any, raw_output: Any = None) -> Dict[str, Any]:
        return ToolExecutionRecord(
            tool_name=call["name"],
            tool_call_id=call["id"],
            args=copy.deepcopy(args),
            output=output,
            raw_output=raw_output,
        ).model_dump()

    async def _emit_call(self, record: Dict[str, Any], status: str, content: str) -> None:
        await emit_event(self.emit, Event(EventType.TOOL_CALL, {
            "status": status,
            "tool_name": record["tool_name"],
            "tool_call_id": record["tool_call_id"],
            "execution_id": record["execution_id"],
            "args": record["args"],
            "output": content,
        }))

    def _trace(
        self,
        name: str,
        record: Dict[str, Any],
        started: float,
        status: str,
        args: Any,
        error: Optional[str] = None,
    ) -> None:
        if self.trace is None:
            return
        self.trace.record(
            "tool_call",
            label=name,
            actor={"scope": "tool", "name": name},
            status=status,
            duration_ms=(time.monotonic() - started) * 1000,
            request_bytes=estimate_payload_bytes(args),
            response_bytes=estimate_payload_bytes(record.get("output")),
            tool_execution_id=record["execution_id"],
            error=error,
        )

    async def _merge(self, results: List[_CallResult], outcome: ToolExecutionOutcome) -> None:
        now = datetime.now().isoformat()

        for result in results:
            record = result.record
            outcome.messages.append(tool_message(result.content, record["tool_call_id"], record["tool_name"]))
            outcome.tool_history.append(record)
            if result.consumed:
                outcome.tool_call_count += 1

            if result.approval_index is not None:
                entry = outcome.pending_approvals[result.approval_index]
                entry.update({"status": "executed", "resolved_at": now, "execution_id": record["execution_id"]})

            if result.state_update:
                outcome.state_update.update(result.state_update)

            if result.structured:
                outcome.structured_output = result.structured_data
                outcome.finalized = True

            if result.handoff_runtime is not None:
                previous = outcome.runtime
                outcome.runtime = result.handoff_runtime
                logger.info(
                    f"Handoff from {getattr(previous, 'name', None)} to {getattr(outcome.runtime, 'name', None)}"
                )
                await emit_event(self.emit, Event(EventType.HANDOFF, {
                    "from": getattr(previous, "name", None),
                    "to": getattr(outcome.runtime, "name", None),
                    "tool_name": record["tool_name"],
                }))


__all__ = [
    "ToolExecutionOutcome",
    "ToolExecutor",
    "stringify_output",
    "find_pending_tool_calls",
    "build_state_view",
]
