"""
Trace Sessions for agentloop.

Collects one record per model call and tool call during a run, keeps a
running summary (durations, tokens, bytes, event counts, errors), and hands
the finished session to an optional `on_session` callback. Shipping the
session anywhere (files, HTTP) is the callback's business.
"""

import inspect
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from agentloop.core.model import get_model_name

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIG
# ============================================================================

@dataclass
class TracingConfig:
    """
    Tracing options.

    Attributes:
        enabled: Create a trace session per invocation.
        log_data: Include message payloads in event records.
        on_event: Called with each event record as it is recorded.
        on_session: Called (sync or async) with the finalized session dict.
    """
    enabled: bool = True
    log_data: bool = False
    on_event: Optional[Callable[[Dict[str, Any]], Any]] = None
    on_session: Optional[Callable[[Dict[str, Any]], Any]] = None


def estimate_payload_bytes(value: Any) -> int:
    try:
        return len(json.dumps(value, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return len(str(value).encode("utf-8"))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# TRACE SESSION
# ============================================================================

class TraceSession:
    """
    In-memory trace of a single agent invocation.

    Example:
        >>> session = TraceSession(TracingConfig(on_session=print), agent_name="helper")
        >>> session.record("ai_call", model="gpt-4o-mini", duration_ms=120, input_tokens=30)
        >>> await session.finalize("success")
    """

    def __init__(
        self,
        config: TracingConfig,
        agent_name: Optional[str] = None,
        agent_version: Optional[str] = None,
        model_name: Optional[str] = None,
    ):
        self.config = config
        self.session_id = f"sess_{uuid.uuid4().hex[:16]}"
        self.agent = {"name": agent_name, "version": agent_version, "model": model_name}
        self.started_at = time.monotonic()
        self.started_at_iso = _now_iso()
        self.events: List[Dict[str, Any]] = []
        self.errors: List[Dict[str, Any]] = []
        self.status = "in_progress"
        self.summary: Dict[str, Any] = {
            "total_duration_ms": 0.0,
            "total_input_tokens": 0,
            "total_output_tokens": 0,
            "total_cached_input_tokens": 0,
            "total_bytes_in": 0,
            "total_bytes_out": 0,
            "event_counts": {},
        }

    def record(
        self,
        event_type: str,
        label: Optional[str] = None,
        actor: Optional[Dict[str, Any]] = None,
        status: str = "success",
        duration_ms: Optional[float] = None,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
        cached_input_tokens: Optional[int] = None,
        request_bytes: Optional[int] = None,
        response_bytes: Optional[int] = None,
        model: Optional[str] = None,
        tool_execution_id: Optional[str] = None,
        error: Optional[str] = None,
        messages: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """
        Append an event record and update the running summary.

        Args:
            event_type: "ai_call" or "tool_call" (free-form).
            label: Human label; defaults to the event type.
            status: "success" or "error".
            messages: Payload attached only when `log_data` is enabled.

        Returns:
            The stored event record.
        """
        sequence = len(self.events) + 1
        timestamp = _now_iso()
        summary = self.summary

        if duration_ms is not None:
            summary["total_duration_ms"] += duration_ms
        if input_tokens is not None:
            summary["total_input_tokens"] += input_tokens
        if output_tokens is not None:
            summary["total_output_tokens"] += output_tokens
        if cached_input_tokens is not None:
            summary["total_cached_input_tokens"] += cached_input_tokens
        if request_bytes is not None:
            summary["total_bytes_in"] += request_bytes
        if response_bytes is not None:
            summary["total_bytes_out"] += response_bytes
        summary["event_counts"][event_type] = summary["event_counts"].get(event_type, 0) + 1

        record = {
            "session_id": self.session_id,
            "id": f"evt_{sequence:04d}",
            "sequence": sequence,
            "type": event_type,
            "label": f"{label or event_type} #{sequence}",
            "timestamp": timestamp,
            "actor": actor,
            "status": status,
            "duration_ms": duration_ms,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": total_tokens,
            "cached_input_tokens": cached_input_tokens,
            "request_bytes": request_bytes,
            "response_bytes": response_bytes,
            "model": model,
            "tool_execution_id": tool_execution_id,
            "error": error if error or status != "error" else "Unknown error",
        }
        if self.config.log_data and messages is not None:
            record["data"] = json.loads(json.dumps(messages, default=str))

        if status == "error":
            self.errors.append({
                "event_id": record["id"],
                "message": record["error"],
                "type": event_type,
                "timestamp": timestamp,
            })

        self.events.append(record)

        if self.config.on_event is not None:
            try:
                self.config.on_event(dict(record))
            except Exception as e:
                logger.warning(f"Trace on_event callback failed: {e}")

        return record

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent": self.agent,
            "started_at": self.started_at_iso,
            "status": self.status,
            "summary": self.summary,
            "events": list(self.events),
            "errors": list(self.errors),
        }

    async def finalize(self, status: str = "success", error: Optional[BaseException] = None) -> Dict[str, Any]:
        """
        Close the session and deliver it to `on_session`.

        Args:
            status: "success" or "error"; forced to "partial" when events
                failed during an otherwise successful run.
            error: Fatal exception, recorded as a session-level error.

        Returns:
            The session dict.
        """
        if error is not None:
            self.errors.append({
                "event_id": "session",
                "message": str(error) or type(error).__name__,
                "type": "session",
                "timestamp": _now_iso(),
            })
        if status == "success" and self.errors:
            status = "partial"
        self.status = status

        payload = self.to_dict()
        payload["ended_at"] = _now_iso()
        payload["duration_ms"] = (time.monotonic() - self.started_at) * 1000

        if self.config.on_session is not None:
            try:
                result = self.config.on_session(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Trace on_session callback failed: {e}")

        logger.debug(f"Trace session {self.session_id} finalized ({status}, {len(self.events)} events)")
        return payload


def create_trace_session(config: Optional[TracingConfig], runtime: Any) -> Optional[TraceSession]:
    """Start a session for `runtime` when tracing is configured and enabled."""
    if config is None or not config.enabled:
        return None
    return TraceSession(
        config,
        agent_name=getattr(runtime, "name", None),
        agent_version=getattr(runtime, "version", None),
        model_name=get_model_name(runtime.model) if getattr(runtime, "model", None) is not None else None,
    )


__all__ = [
    "TracingConfig",
    "TraceSession",
    "create_trace_session",
    "estimate_payload_bytes",
]
