"""Enhanced-FSM runtime records.

Events are raw stimuli, messages are their interpreted, typed form.
EnhancedNodeState is the per-node mutable state owned by the
EnhancedFSMRuntime; everything else here is an immutable record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tokensim.contracts.enums import ActionOutcome, EventSourceType

if TYPE_CHECKING:
    from tokensim.contracts.definitions import Action
    from tokensim.contracts.history import Token


@dataclass(frozen=True, slots=True)
class Event:
    """A raw stimulus delivered to a node's event stream.

    Attributes:
        id: Unique event id
        type: Event type, e.g. "token_received" or "sensor_reading"
        timestamp: Clock time in ms
        raw_data: Uninterpreted payload (string, mapping, number...)
        metadata: Routing and provenance hints
        source_type: external, internal, or feedback
    """

    id: str
    type: str
    timestamp: float
    raw_data: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)
    source_type: EventSourceType = EventSourceType.EXTERNAL
    processing_hints: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp,
            "rawData": self.raw_data,
            "metadata": dict(self.metadata),
            "sourceType": self.source_type.value,
            "processingHints": dict(self.processing_hints),
        }


@dataclass(frozen=True, slots=True)
class Message:
    """A typed, structured message produced by interpretation or an action."""

    id: str
    type: str
    timestamp: float
    payload: dict[str, Any] = field(default_factory=dict)
    source_event_id: str | None = None
    interpretation_rule_id: str | None = None
    confidence: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp,
            "payload": dict(self.payload),
        }
        if self.source_event_id is not None:
            data["sourceEventId"] = self.source_event_id
        if self.interpretation_rule_id is not None:
            data["interpretationRuleId"] = self.interpretation_rule_id
        if self.confidence is not None:
            data["confidence"] = self.confidence
        return data


@dataclass(frozen=True, slots=True)
class InterpretationResult:
    """Messages produced for one event.

    Rule failures never abort interpretation: each is recorded in
    ``errors`` and the remaining rules still run.
    """

    messages: tuple[Message, ...] = ()
    applied_rule_ids: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    processing_time_ms: float = 0.0

    @property
    def error(self) -> str | None:
        return "; ".join(self.errors) if self.errors else None


@dataclass(frozen=True, slots=True)
class OutputResult:
    """What one action output produced (or why it failed)."""

    output_id: str
    type: str
    data: Any = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ActionExecutionResult:
    """Outcome of one action.

    ``deferred`` holds output ids whose own delay postponed them; the
    runtime schedules those separately.
    """

    action_id: str
    success: bool
    outcome: ActionOutcome
    outputs: tuple[OutputResult, ...] = ()
    execution_time_ms: float = 0.0
    error: str | None = None
    attempts: int = 1
    skipped: bool = False
    deferred: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ActionContext:
    """Everything an action can read while it runs.

    ``variables`` and ``state_variables`` are the node's live dicts: variable
    outputs mutate them in place.
    """

    node_id: str
    state_name: str
    variables: dict[str, Any]
    state_variables: dict[str, Any]
    timestamp: float
    execution_id: str = ""
    trigger: str | None = None
    input_event: Event | None = None
    input_message: Message | None = None

    @property
    def input_data(self) -> Any:
        """Payload of the triggering message, else raw data of the triggering event."""
        if self.input_message is not None:
            return self.input_message.payload
        if self.input_event is not None and self.input_event.raw_data is not None:
            return self.input_event.raw_data
        return {}


@dataclass(frozen=True, slots=True)
class PendingAction:
    """An action scheduled to run at or after ``execute_at``.

    ``output_ids`` restricts execution to those outputs; empty means all.
    Actions scheduled by the same stimulus share a ``batch_id``; a failed
    action with onError=stop drops the rest of its batch.
    """

    action: Action
    scheduled_at: float
    execute_at: float
    context: ActionContext
    batch_id: str = ""
    output_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ActionHistoryEntry:
    action_id: str
    executed_at: float
    result: ActionOutcome
    outputs: tuple[OutputResult, ...] = ()
    error: str | None = None


@dataclass(slots=True)
class StateHistoryEntry:
    state: str
    entered_at: float
    exited_at: float | None = None
    trigger: str | None = None


@dataclass(frozen=True, slots=True)
class TransitionRecord:
    transition_id: str
    from_state: str
    to_state: str
    timestamp: float
    trigger: str
    message_id: str | None = None
    event_id: str | None = None


@dataclass(frozen=True, slots=True)
class NodeError:
    timestamp: float
    type: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class EnhancedNodeState:
    """Mutable per-node runtime state.

    Owned by exactly one EnhancedFSMRuntime and mutated only inside its
    tick; observers read snapshots via to_dict().
    """

    current_state: str
    state_changed_at: float = 0.0
    previous_state: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    state_variables: dict[str, Any] = field(default_factory=dict)
    event_buffer: list[Event] = field(default_factory=list)
    message_buffer: list[Message] = field(default_factory=list)
    token_buffers: dict[str, list[Token]] = field(default_factory=dict)
    events_processed: int = 0
    messages_processed: int = 0
    state_history: list[StateHistoryEntry] = field(default_factory=list)
    transition_history: list[TransitionRecord] = field(default_factory=list)
    pending_actions: list[PendingAction] = field(default_factory=list)
    action_history: list[ActionHistoryEntry] = field(default_factory=list)
    errors: list[NodeError] = field(default_factory=list)

    def buffer_sizes(self) -> dict[str, Any]:
        return {
            "events": len(self.event_buffer),
            "messages": len(self.message_buffer),
            "tokens": {name: len(tokens) for name, tokens in self.token_buffers.items()},
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentState": self.current_state,
            "previousState": self.previous_state,
            "stateChangedAt": self.state_changed_at,
            "variables": dict(self.variables),
            "stateVariables": dict(self.state_variables),
            "bufferSizes": self.buffer_sizes(),
            "processedEventCount": self.events_processed,
            "processedMessageCount": self.messages_processed,
            "pendingActions": len(self.pending_actions),
            "transitions": [
                {"from": t.from_state, "to": t.to_state, "timestamp": t.timestamp, "trigger": t.trigger}
                for t in self.transition_history
            ],
            "errors": [{"timestamp": e.timestamp, "type": e.type, "message": e.message} for e in self.errors],
        }


@dataclass(frozen=True, slots=True)
class TickResult:
    """What one process_tick() did for one node."""

    node_id: str
    transitions: tuple[TransitionRecord, ...] = ()
    actions: tuple[ActionExecutionResult, ...] = ()
    messages_produced: int = 0
    errors: tuple[str, ...] = ()

    @property
    def transitioned(self) -> bool:
        return bool(self.transitions)
