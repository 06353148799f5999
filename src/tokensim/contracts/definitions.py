"""Enhanced FSM definition models.

An enhanced FSM definition is authored as JSON/YAML (camelCase keys) and
validated into these frozen pydantic models. Rule methods, action outputs
and transition triggers are tagged variants: the tag field (``type`` or
``outputType``) selects the model.

Interpretation rule methods are open: any ``type`` that is not a built-in
kind validates as a CustomRuleMethod, whose options are handed to an
interpreter registered on the InterpretationEngine under that type.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokensim.contracts.enums import (
    ActionLogLevel,
    ActionTrigger,
    ErrorPolicy,
    EventSourceType,
    HttpMethod,
    RuleMethodType,
    StateType,
    TargetStream,
    VariableOperation,
)
from tokensim.contracts.errors import DefinitionError
from tokensim.contracts.feedback import INTERCHANGE_CONFIG, FeedbackLoopConfig

# ---------------------------------------------------------------------------
# Interpretation rules
# ---------------------------------------------------------------------------


class RuleConditions(BaseModel):
    """Filters deciding whether a rule applies to an event at all.

    Every condition that is set must match. Unset conditions match anything.
    """

    model_config = INTERCHANGE_CONFIG

    event_types: tuple[str, ...] | None = Field(default=None, description="Accepted event types")
    event_pattern: str | None = Field(
        default=None,
        description="Case-insensitive regex searched in the event's text form",
    )
    metadata: dict[str, Any] | None = Field(default=None, description="Exact metadata key/value matches")
    source_types: tuple[EventSourceType, ...] | None = Field(default=None, description="Accepted event sources")


class PatternSpec(BaseModel):
    """One regex of a pattern rule and the message it produces per match."""

    model_config = INTERCHANGE_CONFIG

    pattern: str = Field(description="Regex, applied case-insensitively to every match position")
    message_type: str = Field(description="Type of the produced message")
    extract_fields: dict[str, str] | None = Field(
        default=None,
        description='Payload field -> capture reference ("$1") or named group name',
    )


class PatternMethod(BaseModel):
    model_config = INTERCHANGE_CONFIG

    type: Literal["pattern"] = "pattern"
    patterns: tuple[PatternSpec, ...]


class FormulaMethod(BaseModel):
    """Expression over event, metadata, timestamp, type and source_type."""

    model_config = INTERCHANGE_CONFIG

    type: Literal["formula"] = "formula"
    formula: str
    message_type: str


class AIMethod(BaseModel):
    model_config = INTERCHANGE_CONFIG

    type: Literal["ai"] = "ai"
    model: str | None = None
    prompt: str
    message_types: tuple[str, ...]
    confidence_threshold: float = Field(default=0.8, ge=0, le=1)


class ScriptMethod(BaseModel):
    """Sandboxed expression whose list result produces one message per item."""

    model_config = INTERCHANGE_CONFIG

    type: Literal["script"] = "script"
    script: str
    message_type: str


class PassthroughMethod(BaseModel):
    model_config = INTERCHANGE_CONFIG

    type: Literal["passthrough"] = "passthrough"
    message_type: str
    field_mapping: dict[str, str] | None = Field(
        default=None,
        description="Payload field -> dotted path into the event's raw data",
    )


class CustomRuleMethod(BaseModel):
    """A rule kind supplied by a registered interpreter.

    Everything besides ``type`` is kept as opaque options.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    type: str

    @field_validator("type")
    @classmethod
    def reject_builtin_type(cls, v: str) -> str:
        if v in {kind.value for kind in RuleMethodType}:
            raise ValueError(f"'{v}' is a built-in rule kind")
        return v

    @property
    def options(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


BuiltinRuleMethod = Annotated[
    PatternMethod | FormulaMethod | AIMethod | ScriptMethod | PassthroughMethod,
    Field(discriminator="type"),
]
RuleMethod = BuiltinRuleMethod | CustomRuleMethod


class InterpretationRule(BaseModel):
    """Turns matching raw events into typed messages."""

    model_config = INTERCHANGE_CONFIG

    id: str
    name: str
    description: str | None = None
    enabled: bool = True
    priority: float = Field(default=100, description="Higher runs first")
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    method: RuleMethod


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class EventOutput(BaseModel):
    model_config = INTERCHANGE_CONFIG

    output_type: Literal["event"] = "event"
    event_type: str
    data: dict[str, Any] = Field(default_factory=dict)
    target_stream: TargetStream = TargetStream.SELF
    target_node_id: str | None = Field(default=None, description="External target when target_stream is external")


class MessageOutput(BaseModel):
    model_config = INTERCHANGE_CONFIG

    output_type: Literal["message"] = "message"
    message_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    target_node_id: str | None = Field(default=None, description="Defaults to the emitting node")


class TokenOutput(BaseModel):
    model_config = INTERCHANGE_CONFIG

    output_type: Literal["token"] = "token"
    formula: str = Field(description="Expression producing the token value")
    destination_node_id: str | None = None
    destination_input_name: str | None = None


class ApiCallOutput(BaseModel):
    model_config = INTERCHANGE_CONFIG

    output_type: Literal["api_call"] = "api_call"
    method: HttpMethod
    url: str
    headers: dict[str, str] | None = None
    body: dict[str, Any] | None = None
    response_mapping: dict[str, str] | None = Field(
        default=None,
        description="Variable name -> dotted path into the JSON response",
    )


class LogOutput(BaseModel):
    model_config = INTERCHANGE_CONFIG

    output_type: Literal["log"] = "log"
    level: ActionLogLevel = ActionLogLevel.INFO
    message: str


class EmailOutput(BaseModel):
    model_config = INTERCHANGE_CONFIG

    output_type: Literal["email"] = "email"
    to: str
    subject: str
    body: str
    attachments: tuple[str, ...] = ()


class VariableOutput(BaseModel):
    """Mutates a node variable; a ``state.`` prefix targets state variables."""

    model_config = INTERCHANGE_CONFIG

    output_type: Literal["variable"] = "variable"
    variable_name: str
    value: Any = None
    operation: VariableOperation = VariableOperation.SET


OutputSpec = Annotated[
    EventOutput | MessageOutput | TokenOutput | ApiCallOutput | LogOutput | EmailOutput | VariableOutput,
    Field(discriminator="output_type"),
]


class ActionOutput(BaseModel):
    """One output of an action.

    The variant lives under the ``type`` key in JSON and is exposed as
    ``spec`` in Python.
    """

    model_config = INTERCHANGE_CONFIG

    id: str
    spec: OutputSpec = Field(alias="type")
    condition: str | None = Field(default=None, description="Expression; output is skipped when false")
    delay: float | None = Field(default=None, ge=0, description="Dispatch delay (ms)")


class Action(BaseModel):
    model_config = INTERCHANGE_CONFIG

    id: str
    name: str
    description: str | None = None
    enabled: bool = True
    trigger: ActionTrigger
    outputs: tuple[ActionOutput, ...] = ()
    on_error: ErrorPolicy = ErrorPolicy.CONTINUE
    retry_count: int = Field(default=0, ge=0)
    timeout: float = Field(default=5000, gt=0, description="Per-attempt timeout (ms)")
    delay: float | None = Field(default=None, ge=0, description="Scheduling delay after the trigger (ms)")


# ---------------------------------------------------------------------------
# States and transitions
# ---------------------------------------------------------------------------


class EnhancedState(BaseModel):
    model_config = INTERCHANGE_CONFIG

    id: str
    name: str
    description: str | None = None
    type: StateType = StateType.INTERMEDIATE
    timeout: float | None = Field(default=None, gt=0, description="Time in state before the error exit (ms)")
    variables: dict[str, Any] | None = None
    actions: tuple[Action, ...] = ()


class MessageTrigger(BaseModel):
    model_config = INTERCHANGE_CONFIG

    type: Literal["message"] = "message"
    message_type: str
    condition: str | None = None


class EventTrigger(BaseModel):
    model_config = INTERCHANGE_CONFIG

    type: Literal["event"] = "event"
    event_type: str
    condition: str | None = None


class TimerTrigger(BaseModel):
    model_config = INTERCHANGE_CONFIG

    type: Literal["timer"] = "timer"
    timeout: float = Field(ge=0, description="Time in state before firing (ms)")


class ConditionTrigger(BaseModel):
    model_config = INTERCHANGE_CONFIG

    type: Literal["condition"] = "condition"
    condition: str


class ManualTrigger(BaseModel):
    model_config = INTERCHANGE_CONFIG

    type: Literal["manual"] = "manual"
    description: str | None = None


TransitionTrigger = Annotated[
    MessageTrigger | EventTrigger | TimerTrigger | ConditionTrigger | ManualTrigger,
    Field(discriminator="type"),
]


class EnhancedTransition(BaseModel):
    model_config = INTERCHANGE_CONFIG

    id: str
    from_state: str = Field(alias="from")
    to_state: str = Field(alias="to")
    trigger: TransitionTrigger
    actions: tuple[Action, ...] = ()
    guard: str | None = Field(default=None, description="Expression that must be truthy to fire")
    priority: float = Field(default=100, description="Higher wins; ties go to declaration order")


class EnhancedFSMDefinition(BaseModel):
    """Complete definition of one enhanced FSM node.

    Pydantic checks field shapes. validate_structure() checks the
    cross-references between states and transitions.
    """

    model_config = INTERCHANGE_CONFIG

    states: tuple[EnhancedState, ...]
    transitions: tuple[EnhancedTransition, ...] = ()
    initial_state: str
    variables: dict[str, Any] = Field(default_factory=dict)
    interpretation_rules: tuple[InterpretationRule, ...] = ()
    feedback_config: FeedbackLoopConfig | None = None

    def state(self, state_id: str) -> EnhancedState | None:
        for state in self.states:
            if state.id == state_id:
                return state
        return None

    def validate_structure(self) -> None:
        """Check ids and references.

        Raises:
            DefinitionError: Listing every problem found
        """
        problems: list[str] = []
        state_ids = [s.id for s in self.states]
        known = set(state_ids)

        if not self.states:
            problems.append("Definition has no states")
        for duplicate in _duplicates(state_ids):
            problems.append(f"Duplicate state id '{duplicate}'")
        for duplicate in _duplicates([t.id for t in self.transitions]):
            problems.append(f"Duplicate transition id '{duplicate}'")
        for duplicate in _duplicates([r.id for r in self.interpretation_rules]):
            problems.append(f"Duplicate interpretation rule id '{duplicate}'")
        if self.states and self.initial_state not in known:
            problems.append(f"Initial state '{self.initial_state}' is not a defined state")
        for transition in self.transitions:
            if transition.from_state not in known:
                problems.append(f"Transition '{transition.id}' starts from unknown state '{transition.from_state}'")
            if transition.to_state not in known:
                problems.append(f"Transition '{transition.id}' targets unknown state '{transition.to_state}'")

        if problems:
            raise DefinitionError(problems)


def _duplicates(ids: list[str]) -> list[str]:
    seen: set[str] = set()
    duplicates: list[str] = []
    for item in ids:
        if item in seen and item not in duplicates:
            duplicates.append(item)
        seen.add(item)
    return duplicates
