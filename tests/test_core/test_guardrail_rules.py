"""
Tests for agentloop/core/guardrail_rules.py - Guardrail Rule Builders.

Tests:
- Regex rules (deny and require modes)
- JSON schema rules (dict schemas and pydantic models)
- Code presence detection
- Custom callback rules
- Auditing-agent verdicts
- Guardrail presets
"""

import re
from dataclasses import dataclass
from typing import Any, Optional

import pytest
from pydantic import BaseModel

from agentloop.core.guardrail_rules import (
    GuardianVerdict,
    agent_verdict_rule,
    code_presence_rule,
    create_code_guardrail,
    create_json_guardrail,
    create_regex_guardrail,
    custom_callback_rule,
    json_schema_rule,
    regex_rule,
)
from agentloop.core.guardrails import GuardrailContext, GuardrailPhase, evaluate_guardrails


def context_for(text, phase=GuardrailPhase.RESPONSE):
    message = {"role": "assistant", "content": text}
    return GuardrailContext(phase=phase, messages=[message], latest_message=message, state={})


class Ticket(BaseModel):
    id: int
    title: str


TICKET_SCHEMA = {
    "type": "object",
    "properties": {"id": {"type": "integer"}, "title": {"type": "string"}},
    "required": ["id", "title"],
}


class TestRegexRule:
    """Tests for regex_rule."""

    def test_match_is_violation(self):
        result = regex_rule(r"password").evaluate(context_for("my PASSWORD is x"))

        assert result.passed is False
        assert result.disposition == "block"
        assert result.reason == "Message violates pattern: password"
        assert result.details["pattern"] == "password"

    def test_no_match_passes(self):
        assert regex_rule(r"password").evaluate(context_for("hello")).passed is True

    def test_allow_if_match(self):
        rule = regex_rule(r"^ticket-\d+", allow_if_match=True, failure_message="Must cite a ticket.")

        assert rule.evaluate(context_for("ticket-12 fixed")).passed is True
        assert rule.evaluate(context_for("fixed")).reason == "Must cite a ticket."

    def test_compiled_pattern_keeps_flags(self):
        rule = regex_rule(re.compile(r"secret"))

        assert rule.evaluate(context_for("SECRET")).passed is True

    def test_custom_selector_and_disposition(self):
        rule = regex_rule(r"beta", selector=lambda context: context.state.get("note", ""), match_disposition="warn")
        context = context_for("nothing here")
        context.state = {"note": "beta feature"}

        result = rule.evaluate(context)

        assert result.disposition == "warn"


class TestJsonSchemaRule:
    """Tests for json_schema_rule."""

    def test_valid_dict_schema(self):
        result = json_schema_rule(TICKET_SCHEMA).evaluate(context_for('{"id": 1, "title": "bug"}'))

        assert result.passed is True

    def test_schema_errors_reported(self):
        result = json_schema_rule(TICKET_SCHEMA).evaluate(context_for('{"id": "one"}'))

        assert result.passed is False
        assert result.reason == "Message JSON failed schema validation."
        assert len(result.details["errors"]) == 2

    def test_pydantic_schema(self):
        rule = json_schema_rule(Ticket)

        assert rule.evaluate(context_for('{"id": 1, "title": "bug"}')).passed is True
        assert rule.evaluate(context_for('{"id": 1}')).passed is False

    def test_not_json(self):
        result = json_schema_rule(TICKET_SCHEMA).evaluate(context_for("plain text"))

        assert result.passed is False
        assert result.reason == "Message content is not valid JSON."

    def test_allow_on_parse_error(self):
        rule = json_schema_rule(TICKET_SCHEMA, allow_on_parse_error=True)

        assert rule.evaluate(context_for("plain text")).passed is True


class TestCodePresenceRule:
    """Tests for code_presence_rule."""

    @pytest.mark.parametrize("text", [
        "```\nx = 1\n```",
        "import os",
        "const answer = 42",
        "<script>alert(1)</script>",
    ])
    def test_detects_code(self, text):
        result = code_presence_rule().evaluate(context_for(text))

        assert result.passed is False
        assert result.disposition == "warn"

    def test_plain_prose_passes(self):
        assert code_presence_rule().evaluate(context_for("The weather is nice today.")).passed is True

    def test_allow_list(self):
        rule = code_presence_rule(allow_list=[r"^<br>$"])

        assert rule.evaluate(context_for("<br>")).passed is True


class TestCustomCallbackRule:
    """Tests for custom_callback_rule."""

    @pytest.mark.asyncio
    async def test_bool_results(self):
        allow = custom_callback_rule(lambda context: True)
        deny = custom_callback_rule(lambda context: False, failure_message="Nope.")

        assert (await allow.evaluate(context_for("x"))).passed is True
        denied = await deny.evaluate(context_for("x"))
        assert denied.reason == "Nope."
        assert denied.disposition == "block"

    @pytest.mark.asyncio
    async def test_dict_result_gets_default_disposition(self):
        rule = custom_callback_rule(lambda context: {"passed": False, "reason": "hmm"}, default_disposition="warn")

        result = await rule.evaluate(context_for("x"))

        assert result.disposition == "warn"
        assert result.reason == "hmm"

    @pytest.mark.asyncio
    async def test_async_callback(self):
        async def check(context):
            return False

        result = await custom_callback_rule(check).evaluate(context_for("x"))

        assert result.passed is False


@dataclass
class AuditResult:
    content: str = ""
    output: Optional[Any] = None


class ScriptedAuditor:
    """Stands in for an auditing agent."""

    def __init__(self, result):
        self.result = result
        self.received = []

    async def invoke(self, messages):
        self.received.append(messages)
        return self.result


class TestAgentVerdictRule:
    """Tests for agent_verdict_rule."""

    @pytest.mark.asyncio
    async def test_structured_verdict(self):
        auditor = ScriptedAuditor(AuditResult(output=GuardianVerdict(allow=False, reason="unsafe")))

        result = await agent_verdict_rule(auditor).evaluate(context_for("do something bad"))

        assert result.passed is False
        assert result.reason == "unsafe"
        assert auditor.received[0][0]["role"] == "system"
        assert '"latest_message": "do something bad"' in auditor.received[0][1]["content"]

    @pytest.mark.asyncio
    async def test_json_text_verdict(self):
        auditor = ScriptedAuditor(AuditResult(content='{"allow": true, "disposition": "warn", "reason": "edgy"}'))

        result = await agent_verdict_rule(auditor).evaluate(context_for("hmm"))

        assert result.passed is True
        assert result.disposition == "warn"

    @pytest.mark.asyncio
    async def test_unparseable_verdict_blocks(self):
        auditor = ScriptedAuditor(AuditResult(content="I think it is fine"))

        result = await agent_verdict_rule(auditor).evaluate(context_for("hmm"))

        assert result.passed is False
        assert result.disposition == "block"
        assert result.reason == "Guardrail agent returned an unparseable verdict."

    @pytest.mark.asyncio
    async def test_custom_payload(self):
        auditor = ScriptedAuditor(AuditResult(output={"allow": True}))
        rule = agent_verdict_rule(auditor, payload_builder=lambda context: {"only": "this"})

        await rule.evaluate(context_for("x"))

        assert auditor.received[0][1]["content"] == '{"only": "this"}'

    @pytest.mark.asyncio
    async def test_with_real_agent(self, fake_model):
        from agentloop.agents.runtime import create_agent

        auditor = create_agent(fake_model('{"allow": false, "reason": "policy"}'), name="auditor")
        guardrail = create_regex_guardrail(r"^$")
        guardrail.rules.append(agent_verdict_rule(auditor))

        outcome = await evaluate_guardrails(
            [guardrail], GuardrailPhase.REQUEST, {"messages": [{"role": "user", "content": "hello"}]},
        )

        assert outcome.ok is False
        assert outcome.incidents[0].reason == "policy"


class TestPresets:
    """Tests for guardrail presets."""

    def test_regex_guardrail(self):
        guardrail = create_regex_guardrail(r"secret", guardrail_id="secrets", phases=[GuardrailPhase.RESPONSE])

        assert guardrail.id == "secrets"
        assert guardrail.title == "Regex Guardrail"
        assert guardrail.applies_to == [GuardrailPhase.RESPONSE]
        assert guardrail.rules[0].id == "regex"

    def test_json_guardrail_both_phases(self):
        guardrail = create_json_guardrail(TICKET_SCHEMA)

        assert guardrail.applies_to == [GuardrailPhase.REQUEST, GuardrailPhase.RESPONSE]

    @pytest.mark.asyncio
    async def test_code_guardrail_warns(self):
        outcome = await evaluate_guardrails(
            [create_code_guardrail()], "response", {"messages": [{"role": "assistant", "content": "import os"}]},
        )

        assert outcome.ok is True
        assert outcome.incidents[0].disposition == "warn"
