"""
Conversation Guardrails for agentloop.

Enforces caller-defined policy on the conversation at two phases:
- request: before the model is called (latest message is usually the user's)
- response: after the model answers (latest message is the assistant's)

A guardrail is a named group of rules. Each rule returns a result with a
disposition (allow / warn / block). Non-allow results become incidents; any
blocking incident makes the outcome not-ok and the loop stops.

Rules may be sync or async. A rule that raises is treated as a blocking
failure, never as a crash.
"""

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, Field, ValidationError

from agentloop.core.events import Event, EventSink, EventType, emit_event

logger = logging.getLogger(__name__)


# ============================================================================
# TYPES
# ============================================================================

class GuardrailPhase(str, Enum):
    """When a guardrail is evaluated."""

    REQUEST = "request"
    RESPONSE = "response"


Disposition = Literal["allow", "warn", "block"]


class GuardrailRuleResult(BaseModel):
    """
    Result of a single rule evaluation.

    Attributes:
        passed: Whether the rule considers the message acceptable.
        reason: Human-readable explanation.
        details: Structured data for callers.
        disposition: Explicit allow/warn/block (derived from `passed` when omitted).
    """
    passed: bool = Field(True, description="Whether the rule passed")
    reason: Optional[str] = Field(None, description="Explanation")
    details: Optional[Dict[str, Any]] = Field(None, description="Structured data")
    disposition: Optional[Disposition] = Field(None, description="allow / warn / block")


class GuardrailIncident(BaseModel):
    """A non-allow rule result attributed to its guardrail and phase."""
    guardrail_id: str = Field(..., description="Owning guardrail id")
    guardrail_title: Optional[str] = Field(None, description="Owning guardrail title")
    rule_id: Optional[str] = Field(None, description="Rule id")
    rule_title: Optional[str] = Field(None, description="Rule title")
    phase: GuardrailPhase = Field(..., description="Phase that produced the incident")
    reason: Optional[str] = Field(None, description="Explanation")
    details: Optional[Dict[str, Any]] = Field(None, description="Structured data")
    disposition: Disposition = Field(..., description="allow / warn / block")


class GuardrailOutcome(BaseModel):
    """Aggregate result of one phase: ok unless some incident blocks."""
    ok: bool = Field(True, description="No blocking incident")
    incidents: List[GuardrailIncident] = Field(default_factory=list, description="All incidents")


@dataclass
class GuardrailContext:
    """What a rule sees when it is evaluated."""
    phase: GuardrailPhase
    messages: List[Dict[str, Any]]
    latest_message: Optional[Dict[str, Any]]
    state: Dict[str, Any]
    runtime: Any = None
    options: Dict[str, Any] = field(default_factory=dict)


RuleReturn = Union[GuardrailRuleResult, Dict[str, Any]]
RuleEvaluator = Callable[[GuardrailContext], Union[RuleReturn, Awaitable[RuleReturn]]]


@dataclass
class GuardrailRule:
    """A single check inside a guardrail."""
    evaluate: RuleEvaluator
    id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


ViolationHook = Callable[[GuardrailIncident, GuardrailContext], Any]


@dataclass
class ConversationGuardrail:
    """
    Named group of rules applied to one or both phases.

    Attributes:
        rules: Rules evaluated in order.
        applies_to: Phases this guardrail runs in.
        halt_on_violation: Stop evaluating later rules after a block (default True).
        on_violation: Hook called per incident; may return a replacement disposition.
    """
    rules: List[GuardrailRule]
    applies_to: List[GuardrailPhase] = field(
        default_factory=lambda: [GuardrailPhase.REQUEST, GuardrailPhase.RESPONSE]
    )
    id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    halt_on_violation: Optional[bool] = None
    on_violation: Optional[ViolationHook] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# ENGINE
# ============================================================================

def normalize_disposition(passed: bool, disposition: Optional[str] = None) -> Disposition:
    """Explicit disposition wins; otherwise allow when passed, block when not."""
    if disposition:
        return disposition  # type: ignore[return-value]
    return "allow" if passed else "block"


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def _run_rule(rule: GuardrailRule, context: GuardrailContext) -> GuardrailRuleResult:
    try:
        raw = await _maybe_await(rule.evaluate(context))
        if isinstance(raw, GuardrailRuleResult):
            return raw
        return GuardrailRuleResult.model_validate(raw or {})
    except ValidationError as e:
        logger.warning(f"Guardrail rule {rule.id or rule.title} returned an invalid result: {e}")
        return GuardrailRuleResult(
            passed=False,
            reason=f"Guardrail rule returned an invalid result: {e}",
            details={"thrown": True},
            disposition="block",
        )
    except Exception as e:
        logger.warning(f"Guardrail rule {rule.id or rule.title} raised: {e}")
        return GuardrailRuleResult(
            passed=False,
            reason=str(e) or "Guardrail rule failed",
            details={"thrown": True},
            disposition="block",
        )


async def evaluate_guardrails(
    guardrails: Sequence[ConversationGuardrail],
    phase: GuardrailPhase,
    state: Dict[str, Any],
    runtime: Any = None,
    emit: Optional[EventSink] = None,
    options: Optional[Dict[str, Any]] = None,
) -> GuardrailOutcome:
    """
    Evaluate every guardrail that applies to `phase`.

    Args:
        guardrails: Configured guardrails (order preserved).
        phase: Phase being evaluated.
        state: Current run state (messages are read from it).
        runtime: Active runtime, exposed to rules.
        emit: Event sink; one guardrail event per incident.
        options: Free-form options exposed to rules.

    Returns:
        GuardrailOutcome with ok=False when any incident blocks.

    Example:
        >>> outcome = await evaluate_guardrails([no_secrets], GuardrailPhase.REQUEST, state)
        >>> outcome.ok
        False
    """
    phase = GuardrailPhase(phase)
    messages = list(state.get("messages") or [])
    context = GuardrailContext(
        phase=phase,
        messages=messages,
        latest_message=messages[-1] if messages else None,
        state=state,
        runtime=runtime,
        options=dict(options or {}),
    )

    incidents: List[GuardrailIncident] = []

    for index, guardrail in enumerate(guardrails):
        if phase not in guardrail.applies_to:
            continue
        guardrail_id = guardrail.id or f"guardrail_{index}"

        for rule in guardrail.rules:
            result = await _run_rule(rule, context)
            disposition = normalize_disposition(result.passed, result.disposition)
            if result.passed and disposition == "allow":
                continue

            incident = GuardrailIncident(
                guardrail_id=guardrail_id,
                guardrail_title=guardrail.title,
                rule_id=rule.id,
                rule_title=rule.title,
                phase=phase,
                reason=result.reason,
                details=dict(result.details) if result.details else None,
                disposition=disposition,
            )

            if guardrail.on_violation is not None:
                try:
                    override = await _maybe_await(guardrail.on_violation(incident, context))
                    if override:
                        incident.disposition = override
                except Exception as e:
                    logger.warning(f"Guardrail {guardrail_id} on_violation hook failed: {e}")
                    incident.disposition = "block"
                    incident.details = {**(incident.details or {}), "on_violation_error": str(e)}
                    incident.reason = incident.reason or "Guardrail violation handler failed"

            incidents.append(incident)
            await emit_event(emit, Event(EventType.GUARDRAIL, incident.model_dump(mode="json")))

            if incident.disposition == "block" and guardrail.halt_on_violation is not False:
                break

    ok = not any(incident.disposition == "block" for incident in incidents)
    if not ok:
        logger.info(f"Guardrails blocked {phase.value} phase ({len(incidents)} incident(s))")
    return GuardrailOutcome(ok=ok, incidents=incidents)


def create_guardrail(
    rules: Sequence[Union[GuardrailRule, RuleEvaluator]],
    id: Optional[str] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
    applies_to: Optional[Sequence[Union[GuardrailPhase, str]]] = None,
    halt_on_violation: Optional[bool] = None,
    on_violation: Optional[ViolationHook] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ConversationGuardrail:
    """
    Build a guardrail; bare callables are wrapped as rules.

    Applies to both phases unless `applies_to` narrows it.
    """
    wrapped = [rule if isinstance(rule, GuardrailRule) else GuardrailRule(evaluate=rule) for rule in rules]
    phases = [GuardrailPhase(p) for p in applies_to] if applies_to else [
        GuardrailPhase.REQUEST, GuardrailPhase.RESPONSE
    ]
    return ConversationGuardrail(
        rules=wrapped,
        applies_to=phases,
        id=id,
        title=title,
        description=description,
        halt_on_violation=halt_on_violation,
        on_violation=on_violation,
        metadata=dict(metadata or {}),
    )


__all__ = [
    "GuardrailPhase",
    "Disposition",
    "GuardrailRuleResult",
    "GuardrailIncident",
    "GuardrailOutcome",
    "GuardrailContext",
    "GuardrailRule",
    "ConversationGuardrail",
    "normalize_disposition",
    "evaluate_guardrails",
    "create_guardrail",
]
