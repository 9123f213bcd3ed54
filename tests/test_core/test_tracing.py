"""
Tests for agentloop/core/tracing.py - Trace Sessions.

Tests:
- Event records and the running summary
- Error bookkeeping and final status
- Callback delivery
- Session creation from config
"""

import pytest

from agentloop.core.tracing import TraceSession, TracingConfig, create_trace_session, estimate_payload_bytes


class TestTraceSession:
    """Tests for TraceSession."""

    def test_record_updates_summary(self):
        session = TraceSession(TracingConfig(), agent_name="helper")

        first = session.record("ai_call", duration_ms=10, input_tokens=30, output_tokens=5, request_bytes=100)
        second = session.record("tool_call", label="echo", duration_ms=2.5, response_bytes=8)

        assert first["id"] == "evt_0001"
        assert second["label"] == "echo #2"
        assert session.summary["total_duration_ms"] == 12.5
        assert session.summary["total_input_tokens"] == 30
        assert session.summary["total_bytes_in"] == 100
        assert session.summary["total_bytes_out"] == 8
        assert session.summary["event_counts"] == {"ai_call": 1, "tool_call": 1}

    def test_payload_only_with_log_data(self):
        messages = [{"role": "user", "content": "hi"}]

        quiet = TraceSession(TracingConfig()).record("ai_call", messages=messages)
        verbose = TraceSession(TracingConfig(log_data=True)).record("ai_call", messages=messages)

        assert "data" not in quiet
        assert verbose["data"] == messages

    def test_error_without_message(self):
        session = TraceSession(TracingConfig())

        record = session.record("tool_call", status="error")

        assert record["error"] == "Unknown error"
        assert session.errors[0]["event_id"] == "evt_0001"

    def test_on_event_failure_is_swallowed(self):
        def on_event(record):
            raise RuntimeError("collector down")

        session = TraceSession(TracingConfig(on_event=on_event))

        assert session.record("ai_call")["sequence"] == 1

    @pytest.mark.asyncio
    async def test_finalize_success(self):
        delivered = []
        session = TraceSession(TracingConfig(on_session=delivered.append), agent_name="helper", model_name="m")
        session.record("ai_call")

        payload = await session.finalize()

        assert payload["status"] == "success"
        assert payload["agent"] == {"name": "helper", "version": None, "model": "m"}
        assert "ended_at" in payload
        assert delivered == [payload]

    @pytest.mark.asyncio
    async def test_event_errors_make_partial(self):
        session = TraceSession(TracingConfig())
        session.record("tool_call", status="error", error="boom")

        assert (await session.finalize("success"))["status"] == "partial"

    @pytest.mark.asyncio
    async def test_fatal_error_recorded(self):
        session = TraceSession(TracingConfig())

        payload = await session.finalize("error", RuntimeError("crash"))

        assert payload["status"] == "error"
        assert payload["errors"][-1] == {
            "event_id": "session",
            "message": "crash",
            "type": "session",
            "timestamp": payload["errors"][-1]["timestamp"],
        }

    @pytest.mark.asyncio
    async def test_async_on_session(self):
        delivered = []

        async def on_session(payload):
            delivered.append(payload["session_id"])

        session = TraceSession(TracingConfig(on_session=on_session))
        await session.finalize()

        assert delivered == [session.session_id]


class TestCreateTraceSession:
    """Tests for create_trace_session."""

    class Runtime:
        name = "helper"
        version = "2"
        model = None

    def test_disabled(self):
        assert create_trace_session(None, self.Runtime()) is None
        assert create_trace_session(TracingConfig(enabled=False), self.Runtime()) is None

    def test_enabled(self):
        session = create_trace_session(TracingConfig(), self.Runtime())

        assert session.session_id.startswith("sess_")
        assert session.agent == {"name": "helper", "version": "2", "model": None}


class TestEstimatePayloadBytes:
    """Tests for estimate_payload_bytes."""

    def test_json_size(self):
        assert estimate_payload_bytes({"a": 1}) == len('{"a": 1}')

    def test_unicode(self):
        assert estimate_payload_bytes("é") == len('"\\u00e9"')
