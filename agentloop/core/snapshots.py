"""
Run Snapshots and Approval Resolution for agentloop.

A snapshot is a plain, JSON-friendly deep copy of run state that can be
persisted and later restored to continue a paused or approval-gated run.

Excluded from snapshots:
- The active runtime (models and tools are not serializable); a small
  runtime hint (name, version, tool names) is kept instead
- Transient context: event sink, trace session, pause marker
"""

import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

TRANSIENT_CTX_KEYS = ("on_event", "trace_session", "paused")


# ============================================================================
# EXCEPTIONS
# ============================================================================

class ApprovalNotFoundError(KeyError):
    """Raised when no approval entry matches the given id or tool call id."""
    pass


class ApprovalAlreadyExecutedError(ValueError):
    """Raised when resolving an approval whose call has already run."""
    pass


# ============================================================================
# SNAPSHOT MODELS
# ============================================================================

class RuntimeHint(BaseModel):
    name: Optional[str] = Field(None, description="Runtime name")
    version: Optional[str] = Field(None, description="Runtime version")
    tools: List[str] = Field(default_factory=list, description="Tool names")


class SnapshotMetadata(BaseModel):
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat(), description="ISO timestamp")
    tag: Optional[str] = Field(None, description="Caller label")
    paused: Optional[Dict[str, Any]] = Field(None, description="Pause marker at capture time")


class AgentSnapshot(BaseModel):
    """
    Serializable snapshot of a run.

    Attributes:
        state: Deep-copied run state without runtime and transient context.
        runtime_hint: Identifies the runtime the state belonged to.
        metadata: Capture time, tag, and the pause marker (if any).
    """
    state: Dict[str, Any] = Field(..., description="Run state")
    runtime_hint: Optional[RuntimeHint] = Field(None, description="Runtime identity")
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata, description="Capture info")


# ============================================================================
# CAPTURE / RESTORE
# ============================================================================

def _runtime_hint(runtime: Any) -> Optional[RuntimeHint]:
    if runtime is None:
        return None
    return RuntimeHint(
        name=getattr(runtime, "name", None),
        version=getattr(runtime, "version", None),
        tools=[getattr(tool, "name", "") for tool in getattr(runtime, "tools", None) or []],
    )


def capture_snapshot(
    state: Dict[str, Any],
    tag: Optional[str] = None,
    include_runtime_hint: bool = True,
) -> Dict[str, Any]:
    """
    Capture a snapshot of run state.

    Args:
        state: Run state to capture (never modified).
        tag: Caller label stored in metadata.
        include_runtime_hint: Record runtime name, version and tool names.

    Returns:
        Snapshot dict: {"state", "runtime_hint", "metadata"}.

    Example:
        >>> snap = capture_snapshot(result.state, tag="awaiting-review")
        >>> json.dumps(snap)  # persist anywhere
    """
    ctx = dict(state.get("ctx") or {})
    paused = ctx.get("paused")
    for key in TRANSIENT_CTX_KEYS:
        ctx.pop(key, None)

    captured = {key: value for key, value in state.items() if key not in ("runtime", "ctx")}
    captured["ctx"] = ctx
    captured = copy.deepcopy(captured)

    snapshot = AgentSnapshot(
        state=captured,
        runtime_hint=_runtime_hint(state.get("runtime")) if include_runtime_hint else None,
        metadata=SnapshotMetadata(tag=tag, paused=copy.deepcopy(paused)),
    )
    logger.debug(f"Captured snapshot (tag={tag}, messages={len(captured.get('messages') or [])})")
    return snapshot.model_dump()


def restore_snapshot(
    snapshot: Union[AgentSnapshot, Dict[str, Any]],
    ctx: Optional[Dict[str, Any]] = None,
    merge_ctx: bool = True,
    runtime: Any = None,
) -> Dict[str, Any]:
    """
    Rebuild run state from a snapshot.

    Args:
        snapshot: Snapshot dict or AgentSnapshot.
        ctx: Context entries to add (or to replace the stored ctx when merge_ctx is False).
        merge_ctx: Merge `ctx` over the stored ctx instead of replacing it.
        runtime: Runtime to attach; otherwise the invoking agent's runtime is used.

    Returns:
        Run state ready to pass to `Agent.invoke`, with
        ctx["restored_from_snapshot"] set.

    Raises:
        pydantic.ValidationError: Malformed snapshot.
    """
    parsed = snapshot if isinstance(snapshot, AgentSnapshot) else AgentSnapshot.model_validate(snapshot)
    state = copy.deepcopy(parsed.state)

    stored_ctx = dict(state.get("ctx") or {})
    if ctx is None:
        restored_ctx = stored_ctx
    elif merge_ctx:
        restored_ctx = {**stored_ctx, **ctx}
    else:
        restored_ctx = dict(ctx)
    restored_ctx["restored_from_snapshot"] = True
    state["ctx"] = restored_ctx

    if runtime is not None:
        state["runtime"] = runtime
    return state


# ============================================================================
# APPROVAL RESOLUTION
# ============================================================================

class ToolApprovalResolution(BaseModel):
    """A reviewer decision for one pending approval."""
    id: str = Field(..., description="Approval id or tool call id")
    approved: bool = Field(..., description="Approve (True) or reject (False)")
    approved_args: Any = Field(None, description="Replacement arguments when approving")
    decided_by: Optional[str] = Field(None, description="Reviewer identity")
    comment: Optional[str] = Field(None, description="Reviewer comment")


def resolve_tool_approval(state: Dict[str, Any], resolution: ToolApprovalResolution) -> Dict[str, Any]:
    """
    Record a reviewer decision and mark the run for resumption.

    The next `invoke` with the returned state goes straight to tool
    execution, runs (or rejects) the decided call and continues the loop.

    Args:
        state: Run state holding the approval entry (never modified).
        resolution: Decision, matched by approval id or tool call id.

    Returns:
        New run state.

    Raises:
        ApprovalNotFoundError: No matching approval entry.
        ApprovalAlreadyExecutedError: The call has already been executed.
    """
    from agentloop.agents.state import RunStatus

    approvals = [dict(entry) for entry in state.get("pending_approvals") or []]
    index = next(
        (i for i, entry in enumerate(approvals)
         if entry.get("id") == resolution.id or entry.get("tool_call_id") == resolution.id),
        None,
    )
    if index is None:
        raise ApprovalNotFoundError(f"Approval not found: {resolution.id}")

    entry = approvals[index]
    if entry.get("status") == "executed":
        raise ApprovalAlreadyExecutedError(f"Approval already executed: {resolution.id}")

    status = "approved" if resolution.approved else "rejected"
    if resolution.approved:
        approved_args = resolution.approved_args if resolution.approved_args is not None else entry.get("args")
    else:
        approved_args = None

    entry.update({
        "status": status,
        "approved_args": copy.deepcopy(approved_args),
        "decided_by": resolution.decided_by,
        "comment": resolution.comment,
        "decided_at": datetime.now().isoformat(),
    })

    ctx = dict(state.get("ctx") or {})
    ctx.pop("awaiting_approval", None)
    ctx["approval_resolved"] = {"id": entry["id"], "status": status}

    logger.info(f"Approval {entry['id']} for {entry.get('tool_name')} {status}")
    return {**state, "pending_approvals": approvals, "ctx": ctx, "status": RunStatus.RESUMING_TOOLS}


__all__ = [
    "TRANSIENT_CTX_KEYS",
    "ApprovalNotFoundError",
    "ApprovalAlreadyExecutedError",
    "RuntimeHint",
    "SnapshotMetadata",
    "AgentSnapshot",
    "capture_snapshot",
    "restore_snapshot",
    "ToolApprovalResolution",
    "resolve_tool_approval",
]
