"""
Guardrail Rule Builders for agentloop.

Ready-made rules for `create_guardrail`:
- regex_rule: block (or require) a pattern in the latest message
- json_schema_rule: require the latest message to be JSON matching a schema
- code_presence_rule: flag code-looking content
- custom_callback_rule: wrap a bool/dict-returning callback
- agent_verdict_rule: ask another agent to audit the conversation

Plus one-line guardrail presets built from them (create_regex_guardrail,
create_json_guardrail, create_code_guardrail).
"""

import inspect
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence, Type, Union

import jsonschema
from pydantic import BaseModel, Field, ValidationError

from agentloop.core.guardrails import (
    ConversationGuardrail,
    Disposition,
    GuardrailContext,
    GuardrailPhase,
    GuardrailRule,
    GuardrailRuleResult,
    create_guardrail,
)
from agentloop.core.model import parse_json_content
from agentloop.core.tokens import content_to_string

logger = logging.getLogger(__name__)

Selector = Callable[[GuardrailContext], str]


# ============================================================================
# CONSTANTS
# ============================================================================

CODE_PATTERN = re.compile(
    r"```[\s\S]*?```|\b(function|class|import|export|const|let|var)\b|<[^>]+>"
)

SNIPPET_CHARS = 200

DEFAULT_AUDITOR_PROMPT = (
    "You are a safety auditor reviewing a conversation between a user and an AI assistant. "
    "Decide whether the latest message complies with policy. "
    "Respond with JSON only: "
    '{"allow": boolean, "disposition": "allow" | "warn" | "block", "reason": string}.'
)


def latest_text(context: GuardrailContext) -> str:
    """Default selector: text of the latest message."""
    if not context.latest_message:
        return ""
    return content_to_string(context.latest_message.get("content"))


# ============================================================================
# RULE BUILDERS
# ============================================================================

def regex_rule(
    pattern: Union[str, Pattern[str]],
    flags: int = re.IGNORECASE,
    selector: Selector = latest_text,
    allow_if_match: bool = False,
    match_disposition: Disposition = "block",
    failure_message: Optional[str] = None,
    id: Optional[str] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
) -> GuardrailRule:
    """
    Pattern check on the selected text.

    By default a match is a violation. With `allow_if_match=True` the text
    must match instead.

    Args:
        pattern: Regex string (compiled with `flags`) or compiled pattern.
        match_disposition: Disposition of a violation.
        failure_message: Reason text (defaults to "Message violates pattern: ...").

    Example:
        >>> rule = regex_rule(r"password|secret", title="No secrets")
    """
    compiled = pattern if isinstance(pattern, re.Pattern) else re.compile(pattern, flags)

    def evaluate(context: GuardrailContext) -> GuardrailRuleResult:
        text = selector(context) or ""
        matched = compiled.search(text) is not None
        passed = matched if allow_if_match else not matched
        if passed:
            return GuardrailRuleResult(passed=True)
        return GuardrailRuleResult(
            passed=False,
            reason=failure_message or f"Message violates pattern: {compiled.pattern}",
            details={"pattern": compiled.pattern, "text_snippet": text[:SNIPPET_CHARS]},
            disposition=match_disposition,
        )

    return GuardrailRule(evaluate=evaluate, id=id or "regex", title=title, description=description)


def json_schema_rule(
    schema: Union[Dict[str, Any], Type[BaseModel]],
    selector: Selector = latest_text,
    disposition: Disposition = "block",
    allow_on_parse_error: bool = False,
    id: Optional[str] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
) -> GuardrailRule:
    """
    Require the selected text to be JSON valid against a schema.

    Args:
        schema: JSON-schema dict (checked with jsonschema) or pydantic model class.
        allow_on_parse_error: Pass text that is not JSON at all.
    """
    def validate(value: Any) -> Optional[List[str]]:
        if isinstance(schema, dict):
            validator = jsonschema.Draft202012Validator(schema)
            errors = [error.message for error in validator.iter_errors(value)]
            return errors or None
        try:
            schema.model_validate(value)
        except ValidationError as e:
            return [err["msg"] for err in e.errors()]
        return None

    def evaluate(context: GuardrailContext) -> GuardrailRuleResult:
        text = selector(context) or ""
        try:
            value = json.loads(text)
        except json.JSONDecodeError as e:
            if allow_on_parse_error:
                return GuardrailRuleResult(passed=True)
            return GuardrailRuleResult(
                passed=False,
                reason="Message content is not valid JSON.",
                details={"error": str(e), "text_snippet": text[:SNIPPET_CHARS]},
                disposition=disposition,
            )

        errors = validate(value)
        if not errors:
            return GuardrailRuleResult(passed=True)
        return GuardrailRuleResult(
            passed=False,
            reason="Message JSON failed schema validation.",
            details={"errors": errors},
            disposition=disposition,
        )

    return GuardrailRule(evaluate=evaluate, id=id or "json_schema", title=title, description=description)


def code_presence_rule(
    selector: Selector = latest_text,
    disposition: Disposition = "warn",
    allow_list: Optional[Sequence[Union[str, Pattern[str]]]] = None,
    id: Optional[str] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
) -> GuardrailRule:
    """
    Flag code-looking content (fenced blocks, keywords, markup tags).

    Text matching any `allow_list` pattern passes regardless.
    """
    allowed = [p if isinstance(p, re.Pattern) else re.compile(p) for p in allow_list or []]

    def evaluate(context: GuardrailContext) -> GuardrailRuleResult:
        text = selector(context) or ""
        if any(p.search(text) for p in allowed):
            return GuardrailRuleResult(passed=True)
        match = CODE_PATTERN.search(text)
        if match is None:
            return GuardrailRuleResult(passed=True)
        return GuardrailRuleResult(
            passed=False,
            reason="Potential code content detected in message.",
            details={"match": match.group(0)[:SNIPPET_CHARS]},
            disposition=disposition,
        )

    return GuardrailRule(evaluate=evaluate, id=id or "code_presence", title=title, description=description)


def custom_callback_rule(
    callback: Callable[[GuardrailContext], Any],
    default_disposition: Disposition = "block",
    failure_message: Optional[str] = None,
    id: Optional[str] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
) -> GuardrailRule:
    """
    Wrap a callback returning a bool, a result dict, or a GuardrailRuleResult.

    A False return becomes a violation with `default_disposition`.
    """
    async def evaluate(context: GuardrailContext) -> GuardrailRuleResult:
        result = callback(context)
        if inspect.isawaitable(result):
            result = await result

        if isinstance(result, bool):
            if result:
                return GuardrailRuleResult(passed=True)
            return GuardrailRuleResult(
                passed=False,
                reason=failure_message or "Custom guardrail check failed.",
                disposition=default_disposition,
            )

        if isinstance(result, GuardrailRuleResult):
            parsed = result
        else:
            parsed = GuardrailRuleResult.model_validate(result or {})
        if not parsed.passed and parsed.disposition is None:
            parsed = parsed.model_copy(update={"disposition": default_disposition})
        return parsed

    return GuardrailRule(evaluate=evaluate, id=id or "custom", title=title, description=description)


class GuardianVerdict(BaseModel):
    """Verdict returned by an auditing agent."""
    allow: bool = Field(..., description="Whether the message is acceptable")
    disposition: Optional[Disposition] = Field(None, description="allow / warn / block")
    reason: Optional[str] = Field(None, max_length=400, description="Short explanation")
    details: Optional[Dict[str, Any]] = Field(None, description="Extra data")


def _default_payload(context: GuardrailContext, transcript_limit: int) -> Dict[str, Any]:
    transcript = [
        {"role": m.get("role"), "content": content_to_string(m.get("content"))}
        for m in context.messages[-transcript_limit:]
    ]
    return {
        "phase": context.phase.value,
        "latest_message": latest_text(context),
        "transcript": transcript,
        "metadata": {"runtime": getattr(context.runtime, "name", None)},
    }


def _parse_verdict(result: Any) -> GuardianVerdict:
    output = getattr(result, "output", None)
    if isinstance(output, GuardianVerdict):
        return output
    if isinstance(output, BaseModel):
        return GuardianVerdict.model_validate(output.model_dump())
    if isinstance(output, dict):
        return GuardianVerdict.model_validate(output)
    content = getattr(result, "content", result)
    return GuardianVerdict.model_validate(parse_json_content(content_to_string(content)))


def agent_verdict_rule(
    agent: Any,
    system_prompt: str = DEFAULT_AUDITOR_PROMPT,
    payload_builder: Optional[Callable[[GuardrailContext], Dict[str, Any]]] = None,
    transcript_limit: int = 10,
    fallback_disposition: Disposition = "block",
    id: Optional[str] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
) -> GuardrailRule:
    """
    Ask an auditing agent for a verdict on the conversation.

    The agent receives a system prompt plus a JSON payload (phase, latest
    message, recent transcript, runtime name) and must answer with a
    GuardianVerdict as structured output or JSON text.

    Args:
        agent: Anything with `await agent.invoke(messages)` returning a result
            exposing `output` and/or `content` (e.g. an agentloop Agent).
        fallback_disposition: Used when the verdict cannot be parsed.
    """
    async def evaluate(context: GuardrailContext) -> GuardrailRuleResult:
        payload = payload_builder(context) if payload_builder else _default_payload(context, transcript_limit)
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": json.dumps(payload, default=str)},
        ]
        result = await agent.invoke(messages)

        try:
            verdict = _parse_verdict(result)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Guardrail agent verdict could not be parsed: {e}")
            return GuardrailRuleResult(
                passed=False,
                reason="Guardrail agent returned an unparseable verdict.",
                details={"error": str(e)},
                disposition=fallback_disposition,
            )

        return GuardrailRuleResult(
            passed=verdict.allow,
            reason=verdict.reason,
            details=verdict.details,
            disposition=verdict.disposition,
        )

    return GuardrailRule(evaluate=evaluate, id=id or "agent_verdict", title=title, description=description)


# ============================================================================
# GUARDRAIL PRESETS
# ============================================================================

def create_regex_guardrail(
    pattern: Union[str, Pattern[str]],
    guardrail_id: Optional[str] = None,
    title: str = "Regex Guardrail",
    phases: Optional[Sequence[GuardrailPhase]] = None,
    halt_on_violation: Optional[bool] = None,
    on_violation: Optional[Callable[..., Any]] = None,
    **rule_options: Any,
) -> ConversationGuardrail:
    return create_guardrail(
        [regex_rule(pattern, **rule_options)],
        id=guardrail_id,
        title=title,
        applies_to=phases,
        halt_on_violation=halt_on_violation,
        on_violation=on_violation,
    )


def create_json_guardrail(
    schema: Union[Dict[str, Any], Type[BaseModel]],
    guardrail_id: Optional[str] = None,
    title: str = "JSON Schema Guardrail",
    phases: Optional[Sequence[GuardrailPhase]] = None,
    halt_on_violation: Optional[bool] = None,
    on_violation: Optional[Callable[..., Any]] = None,
    **rule_options: Any,
) -> ConversationGuardrail:
    return create_guardrail(
        [json_schema_rule(schema, **rule_options)],
        id=guardrail_id,
        title=title,
        applies_to=phases,
        halt_on_violation=halt_on_violation,
        on_violation=on_violation,
    )


def create_code_guardrail(
    guardrail_id: Optional[str] = None,
    title: str = "Code Presence Guardrail",
    phases: Optional[Sequence[GuardrailPhase]] = None,
    halt_on_violation: Optional[bool] = None,
    on_violation: Optional[Callable[..., Any]] = None,
    **rule_options: Any,
) -> ConversationGuardrail:
    return create_guardrail(
        [code_presence_rule(**rule_options)],
        id=guardrail_id,
        title=title,
        applies_to=phases,
        halt_on_violation=halt_on_violation,
        on_violation=on_violation,
    )


__all__ = [
    "CODE_PATTERN",
    "DEFAULT_AUDITOR_PROMPT",
    "latest_text",
    "regex_rule",
    "json_schema_rule",
    "code_presence_rule",
    "custom_callback_rule",
    "GuardianVerdict",
    "agent_verdict_rule",
    "create_regex_guardrail",
    "create_json_guardrail",
    "create_code_guardrail",
]
