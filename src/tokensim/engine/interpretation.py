"""Event interpretation: raw events in, typed messages out.

Rules are filtered by ``enabled`` and their conditions, then applied in
descending priority (declaration order breaks ties). Every rule kind is an
Interpreter registered under its method type, so adding a kind never
touches the dispatcher:

    engine.register_interpreter("lookup", LookupInterpreter(table))

A failing rule is recorded in the result and the remaining rules still
run. Only InterpretationError and expression errors count as rule
failures; anything else is a bug and propagates.
"""

from __future__ import annotations

import json
import re
import time
import uuid
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from tokensim.contracts.definitions import (
    AIMethod,
    CustomRuleMethod,
    FormulaMethod,
    InterpretationRule,
    PassthroughMethod,
    PatternMethod,
    PatternSpec,
    RuleConditions,
    ScriptMethod,
)
from tokensim.contracts.enums import RuleMethodType
from tokensim.contracts.errors import InterpretationError, MissingAIClientError
from tokensim.contracts.runtime import Event, InterpretationResult, Message
from tokensim.core.logging import get_logger
from tokensim.engine.clock import DEFAULT_CLOCK
from tokensim.engine.expression_parser import ExpressionCache, ExpressionError

if TYPE_CHECKING:
    from tokensim.engine.clock import Clock

logger = get_logger(__name__)

FORMULA_NAMES = ("event", "metadata", "timestamp", "type", "source_type")
SCRIPT_NAMES = ("event",)

_MISSING = object()


class AIClient(Protocol):
    """Language model backend for ``ai`` rules.

    Returns candidate messages as mappings with ``message_type``,
    ``payload`` and ``confidence`` keys.
    """

    def complete(self, model: str | None, prompt: str) -> Sequence[Mapping[str, Any]]: ...


class MessageFactory:
    """Builds messages stamped with an id and the clock time."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock

    def create(
        self,
        message_type: str,
        payload: Any,
        *,
        event: Event | None = None,
        rule_id: str | None = None,
        confidence: float | None = None,
    ) -> Message:
        if not isinstance(payload, dict):
            payload = {"value": payload}
        return Message(
            id=f"msg_{uuid.uuid4().hex[:12]}",
            type=message_type,
            timestamp=self._clock.now_ms(),
            payload=payload,
            source_event_id=event.id if event is not None else None,
            interpretation_rule_id=rule_id,
            confidence=confidence,
        )


class Interpreter(Protocol):
    """One rule kind."""

    def interpret(self, rule: InterpretationRule, event: Event, messages: MessageFactory) -> list[Message]:
        """Produce messages for event.

        Raises:
            InterpretationError: If the rule cannot be applied
        """
        ...


def event_text(event: Event) -> str:
    """Text form of an event's raw data, used by regex conditions and patterns."""
    raw = event.raw_data
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict | list):
        return json.dumps(raw, separators=(",", ":"), default=str)
    return str(raw)


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Follow a dotted path through nested mappings."""
    current = data
    for key in path.split("."):
        if not isinstance(current, Mapping) or key not in current:
            return default
        current = current[key]
    return current


def has_path(data: Any, path: str) -> bool:
    return get_path(data, path, _MISSING) is not _MISSING


class PatternInterpreter:
    """One message per regex match; capture groups fill payload fields."""

    def interpret(self, rule: InterpretationRule, event: Event, messages: MessageFactory) -> list[Message]:
        method = rule.method
        assert isinstance(method, PatternMethod)
        text = event_text(event)
        produced: list[Message] = []
        for spec in method.patterns:
            try:
                regex = re.compile(spec.pattern, re.IGNORECASE)
            except re.error as e:
                raise InterpretationError(rule.id, f"Invalid pattern '{spec.pattern}': {e}") from e
            for match in regex.finditer(text):
                payload = {"originalEvent": event.raw_data, **self._extract(spec, match)}
                produced.append(messages.create(spec.message_type, payload, event=event, rule_id=rule.id))
        return produced

    @staticmethod
    def _extract(spec: PatternSpec, match: re.Match[str]) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for field_name, ref in (spec.extract_fields or {}).items():
            if ref.startswith("$"):
                index = int(ref[1:])
                if index <= (match.re.groups or 0) and match.group(index) is not None:
                    fields[field_name] = match.group(index)
            else:
                value = match.groupdict().get(ref)
                if value:
                    fields[field_name] = value
        return fields


class FormulaInterpreter:
    """Evaluates a safe expression; a non-None result becomes one message."""

    def __init__(self) -> None:
        self._expressions = ExpressionCache(FORMULA_NAMES)

    def interpret(self, rule: InterpretationRule, event: Event, messages: MessageFactory) -> list[Message]:
        method = rule.method
        assert isinstance(method, FormulaMethod)
        context = {
            "event": event.raw_data,
            "metadata": event.metadata,
            "timestamp": event.timestamp,
            "type": event.type,
            "source_type": event.source_type.value,
        }
        try:
            result = self._expressions.evaluate(method.formula, context)
        except ExpressionError as e:
            raise InterpretationError(rule.id, f"Formula evaluation failed: {e}") from e
        if result is None:
            return []
        return [messages.create(method.message_type, result, event=event, rule_id=rule.id)]


class ScriptInterpreter:
    """Like a formula, but a list result yields one message per item."""

    def __init__(self) -> None:
        self._expressions = ExpressionCache(SCRIPT_NAMES)

    def interpret(self, rule: InterpretationRule, event: Event, messages: MessageFactory) -> list[Message]:
        method = rule.method
        assert isinstance(method, ScriptMethod)
        context = {
            "event": {
                "id": event.id,
                "type": event.type,
                "timestamp": event.timestamp,
                "data": event.raw_data,
                "metadata": event.metadata,
                "source_type": event.source_type.value,
            }
        }
        try:
            result = self._expressions.evaluate(method.script, context)
        except ExpressionError as e:
            raise InterpretationError(rule.id, f"Script execution failed: {e}") from e
        if result is None:
            return []
        items = result if isinstance(result, list | tuple) else [result]
        return [messages.create(method.message_type, item, event=event, rule_id=rule.id) for item in items]


class PassthroughInterpreter:
    """Forwards raw data, optionally remapped through dotted paths."""

    def interpret(self, rule: InterpretationRule, event: Event, messages: MessageFactory) -> list[Message]:
        method = rule.method
        assert isinstance(method, PassthroughMethod)
        payload: Any = event.raw_data
        if method.field_mapping:
            payload = {
                target: get_path(event.raw_data, source)
                for target, source in method.field_mapping.items()
                if has_path(event.raw_data, source)
            }
        return [messages.create(method.message_type, payload, event=event, rule_id=rule.id)]


class AIInterpreter:
    """Delegates to an AIClient and keeps candidates above the confidence threshold."""

    def __init__(self, client: AIClient | None) -> None:
        self._client = client

    def interpret(self, rule: InterpretationRule, event: Event, messages: MessageFactory) -> list[Message]:
        method = rule.method
        assert isinstance(method, AIMethod)
        if self._client is None:
            raise MissingAIClientError(rule.id)

        prompt = render_prompt(method.prompt, event)
        try:
            candidates = self._client.complete(method.model, prompt)
        except Exception as e:
            # External system boundary: any client failure is a rule failure
            raise InterpretationError(rule.id, f"AI interpretation failed: {e}") from e

        produced: list[Message] = []
        for candidate in candidates:
            message_type = candidate.get("message_type")
            confidence = float(candidate.get("confidence", 0.0))
            if message_type is None or confidence < method.confidence_threshold:
                continue
            if method.message_types and message_type not in method.message_types:
                continue
            produced.append(
                messages.create(
                    message_type,
                    candidate.get("payload", {}),
                    event=event,
                    rule_id=rule.id,
                    confidence=confidence,
                )
            )
        return produced


def render_prompt(prompt: str, event: Event) -> str:
    """Fill {{event.type}}, {{event.data}} and {{event.timestamp}} (ISO-8601 UTC)."""
    timestamp = datetime.fromtimestamp(event.timestamp / 1000.0, tz=UTC).isoformat()
    return (
        prompt.replace("{{event.type}}", event.type)
        .replace("{{event.data}}", event_text(event))
        .replace("{{event.timestamp}}", timestamp)
    )


def rule_matches(conditions: RuleConditions, event: Event) -> bool:
    """True when every set condition holds for event.

    Raises:
        re.error: If event_pattern is not a valid regex
    """
    if conditions.event_types is not None and event.type not in conditions.event_types:
        return False
    if conditions.source_types is not None and event.source_type not in conditions.source_types:
        return False
    if conditions.event_pattern and not re.search(conditions.event_pattern, event_text(event), re.IGNORECASE):
        return False
    if conditions.metadata:
        for key, expected in conditions.metadata.items():
            if event.metadata.get(key, _MISSING) != expected:
                return False
    return True


class InterpretationEngine:
    """Applies interpretation rules to events.

    Example:
        engine = InterpretationEngine([RuleFactory.pattern("temp", r"temp=(\\d+)", "reading", {"celsius": "$1"})])
        result = engine.interpret(Event(id="e1", type="sensor", timestamp=0, raw_data="temp=21"))
        result.messages[0].payload["celsius"]  # "21"
    """

    def __init__(
        self,
        rules: Iterable[InterpretationRule] = (),
        *,
        ai_client: AIClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._messages = MessageFactory(self._clock)
        self._rules: dict[str, InterpretationRule] = {}
        self._interpreters: dict[str, Interpreter] = {
            RuleMethodType.PATTERN: PatternInterpreter(),
            RuleMethodType.FORMULA: FormulaInterpreter(),
            RuleMethodType.AI: AIInterpreter(ai_client),
            RuleMethodType.SCRIPT: ScriptInterpreter(),
            RuleMethodType.PASSTHROUGH: PassthroughInterpreter(),
        }
        for rule in rules:
            self.add_rule(rule)

    def register_interpreter(self, method_type: str, interpreter: Interpreter) -> None:
        """Install (or replace) the interpreter for a rule method type."""
        self._interpreters[method_type] = interpreter

    def add_rule(self, rule: InterpretationRule) -> None:
        self._rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    def update_rule(self, rule: InterpretationRule) -> bool:
        """Replace an existing rule. Returns False if the id is unknown."""
        if rule.id not in self._rules:
            return False
        self._rules[rule.id] = rule
        return True

    def set_rules(self, rules: Iterable[InterpretationRule]) -> None:
        """Replace the whole rule set."""
        self._rules = {rule.id: rule for rule in rules}

    def get_rules(self) -> list[InterpretationRule]:
        """Rules by descending priority; equal priorities keep insertion order."""
        return sorted(self._rules.values(), key=lambda rule: -rule.priority)

    def interpret(self, event: Event) -> InterpretationResult:
        """Interpret one event with every matching rule."""
        started = time.perf_counter()
        messages: list[Message] = []
        applied: list[str] = []
        errors: list[str] = []

        for rule in self.get_rules():
            if not rule.enabled:
                continue
            try:
                if not rule_matches(rule.conditions, event):
                    continue
                produced = self._interpreter_for(rule).interpret(rule, event, self._messages)
            except InterpretationError as e:
                errors.append(f"Rule {rule.name} failed: {e}")
                continue
            except re.error as e:
                errors.append(f"Rule {rule.name} failed: invalid event pattern: {e}")
                continue
            applied.append(rule.id)
            messages.extend(produced)

        if errors:
            logger.warning("interpretation_errors", event_id=event.id, errors=errors)

        return InterpretationResult(
            messages=tuple(messages),
            applied_rule_ids=tuple(applied),
            errors=tuple(errors),
            processing_time_ms=(time.perf_counter() - started) * 1000.0,
        )

    def _interpreter_for(self, rule: InterpretationRule) -> Interpreter:
        method_type = rule.method.type
        interpreter = self._interpreters.get(method_type)
        if interpreter is None:
            raise InterpretationError(rule.id, f"Unknown interpretation method: {method_type}")
        return interpreter


class RuleFactory:
    """Shorthand constructors for common rules."""

    @staticmethod
    def pattern(
        rule_id: str,
        pattern: str,
        message_type: str,
        extract_fields: dict[str, str] | None = None,
        *,
        priority: float = 100,
        event_types: Sequence[str] | None = None,
    ) -> InterpretationRule:
        return InterpretationRule(
            id=rule_id,
            name=f"Pattern: {message_type}",
            priority=priority,
            conditions=RuleConditions(event_types=tuple(event_types) if event_types is not None else None),
            method=PatternMethod(
                patterns=(PatternSpec(pattern=pattern, message_type=message_type, extract_fields=extract_fields),)
            ),
        )

    @staticmethod
    def formula(
        rule_id: str,
        formula: str,
        message_type: str,
        *,
        priority: float = 100,
        event_types: Sequence[str] | None = None,
    ) -> InterpretationRule:
        return InterpretationRule(
            id=rule_id,
            name=f"Formula: {message_type}",
            priority=priority,
            conditions=RuleConditions(event_types=tuple(event_types) if event_types is not None else None),
            method=FormulaMethod(formula=formula, message_type=message_type),
        )

    @staticmethod
    def passthrough(
        rule_id: str,
        message_type: str,
        field_mapping: dict[str, str] | None = None,
        *,
        priority: float = 100,
        event_types: Sequence[str] | None = None,
    ) -> InterpretationRule:
        return InterpretationRule(
            id=rule_id,
            name=f"Passthrough: {message_type}",
            priority=priority,
            conditions=RuleConditions(event_types=tuple(event_types) if event_types is not None else None),
            method=PassthroughMethod(message_type=message_type, field_mapping=field_mapping),
        )

    @staticmethod
    def ai(
        rule_id: str,
        prompt: str,
        message_types: Sequence[str],
        *,
        model: str | None = None,
        confidence_threshold: float = 0.8,
        priority: float = 100,
    ) -> InterpretationRule:
        return InterpretationRule(
            id=rule_id,
            name=f"AI: {', '.join(message_types)}",
            priority=priority,
            method=AIMethod(
                model=model,
                prompt=prompt,
                message_types=tuple(message_types),
                confidence_threshold=confidence_threshold,
            ),
        )

    @staticmethod
    def script(rule_id: str, script: str, message_type: str, *, priority: float = 100) -> InterpretationRule:
        return InterpretationRule(
            id=rule_id,
            name=f"Script: {message_type}",
            priority=priority,
            method=ScriptMethod(script=script, message_type=message_type),
        )

    @staticmethod
    def custom(rule_id: str, method_type: str, *, priority: float = 100, **options: Any) -> InterpretationRule:
        """Rule for an interpreter registered under method_type."""
        return InterpretationRule(
            id=rule_id,
            name=f"{method_type}: {rule_id}",
            priority=priority,
            method=CustomRuleMethod(type=method_type, **options),
        )
