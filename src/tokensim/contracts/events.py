"""Observability events published on the event bus.

These are notifications for renderers and tests. None of the engine's
own control flow depends on anyone subscribing to them.
"""

from dataclasses import dataclass, field

from tokensim.contracts.enums import ActionOutcome


@dataclass(frozen=True, slots=True)
class StateTransitioned:
    """Emitted after an enhanced-FSM node changed state.

    Attributes:
        node_id: Node that transitioned
        transition_id: Definition id of the transition that fired
        from_state: State left
        to_state: State entered
        trigger: Trigger kind that caused it (message, event, timer, condition, manual, timeout)
        timestamp: Clock time in ms
    """

    node_id: str
    transition_id: str
    from_state: str
    to_state: str
    trigger: str
    timestamp: float


@dataclass(frozen=True, slots=True)
class FeedbackBlocked:
    """Emitted when an action output was denied feedback admission."""

    source_node_id: str
    target_node_id: str
    execution_id: str
    reason: str


@dataclass(frozen=True, slots=True)
class CircuitBreakerTripped:
    """Emitted when a node's circuit breaker opens."""

    node_id: str
    event_count: int
    trip_count: int
    timestamp: float


@dataclass(frozen=True, slots=True)
class ActionExecuted:
    """Emitted once per executed action, whatever its outcome."""

    node_id: str
    action_id: str
    outcome: ActionOutcome
    duration_ms: float
    error: str | None = None


@dataclass(frozen=True, slots=True)
class LazyNodesLoaded:
    """Emitted by the lazy lineage loader after a batch finished loading.

    Attributes:
        token_ids: Tokens whose children were loaded in this batch
        children: Loaded child node ids keyed by parent token id
    """

    token_ids: tuple[str, ...]
    children: dict[str, tuple[str, ...]] = field(default_factory=dict)
