"""Canonical state machine generator.

Each node kind has a FIXED canonical state list and a baseline transition
set. Only Queue specializes on configuration: its accumulating state gets
a capacity_reached exit when the node has a capacity (or a capacity
trigger) and a time_window_elapsed exit when aggregation is time-triggered.

Everything here is a pure function of static configuration. The lookup
tables below are read-only after import.

FSL syntax (one statement per transition, newline-joined):

    <from> '<event>' [<condition>] -> <to>;

The bracketed condition is omitted entirely when a transition has no guard.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from tokensim.contracts.enums import (
    AggregationTriggerType,
    CanonicalEvent,
    CanonicalState,
    GuardCondition,
    NodeKind,
)
from tokensim.contracts.errors import UnsupportedNodeType
from tokensim.contracts.fsm import CanonicalTransition, StateMachineTemplate

if TYPE_CHECKING:
    from tokensim.core.config import NodeConfig

S = CanonicalState
E = CanonicalEvent

CANONICAL_STATES: dict[NodeKind, tuple[str, ...]] = {
    NodeKind.QUEUE: (S.QUEUE_IDLE, S.QUEUE_ACCUMULATING, S.QUEUE_PROCESSING, S.QUEUE_EMITTING),
    NodeKind.DATA_SOURCE: (S.SOURCE_IDLE, S.SOURCE_GENERATING, S.SOURCE_EMITTING),
    NodeKind.PROCESS_NODE: (S.PROCESS_IDLE, S.PROCESS_COLLECTING, S.PROCESS_CALCULATING, S.PROCESS_EMITTING),
    NodeKind.SINK: (S.SINK_IDLE, S.SINK_PROCESSING),
}

INITIAL_STATES: dict[NodeKind, str] = {
    NodeKind.QUEUE: S.QUEUE_IDLE,
    NodeKind.DATA_SOURCE: S.SOURCE_IDLE,
    NodeKind.PROCESS_NODE: S.PROCESS_IDLE,
    NodeKind.SINK: S.SINK_IDLE,
}


def _t(from_state: str, event: str, to_state: str, condition: GuardCondition | None = None) -> CanonicalTransition:
    return CanonicalTransition(from_state=from_state, event=event, to_state=to_state, condition=condition)


def _queue_transitions(config: NodeConfig) -> list[CanonicalTransition]:
    trigger_type = config.aggregation.trigger.type if config.aggregation is not None else None

    transitions = [
        _t(S.QUEUE_IDLE, E.TOKEN_RECEIVED, S.QUEUE_ACCUMULATING),
        _t(S.QUEUE_ACCUMULATING, E.TOKEN_RECEIVED, S.QUEUE_ACCUMULATING),
    ]
    if trigger_type == AggregationTriggerType.CAPACITY or config.capacity:
        transitions.append(_t(S.QUEUE_ACCUMULATING, E.CAPACITY_REACHED, S.QUEUE_PROCESSING))
    if trigger_type == AggregationTriggerType.TIME:
        transitions.append(_t(S.QUEUE_ACCUMULATING, E.TIME_WINDOW_ELAPSED, S.QUEUE_PROCESSING))
    transitions.extend(
        [
            _t(S.QUEUE_PROCESSING, E.AGGREGATION_COMPLETE, S.QUEUE_EMITTING),
            _t(S.QUEUE_EMITTING, E.TOKEN_SENT, S.QUEUE_IDLE, GuardCondition.BUFFER_EMPTY),
            _t(S.QUEUE_EMITTING, E.TOKEN_SENT, S.QUEUE_ACCUMULATING, GuardCondition.BUFFER_NOT_EMPTY),
        ]
    )
    return transitions


def _data_source_transitions(config: NodeConfig) -> list[CanonicalTransition]:
    return [
        _t(S.SOURCE_IDLE, E.INTERVAL_REACHED, S.SOURCE_GENERATING),
        _t(S.SOURCE_GENERATING, E.TOKEN_CREATED, S.SOURCE_EMITTING),
        _t(S.SOURCE_EMITTING, E.EMISSION_COMPLETE, S.SOURCE_IDLE),
    ]


def _process_node_transitions(config: NodeConfig) -> list[CanonicalTransition]:
    return [
        _t(S.PROCESS_IDLE, E.TOKEN_RECEIVED, S.PROCESS_COLLECTING),
        _t(S.PROCESS_COLLECTING, E.TOKEN_RECEIVED, S.PROCESS_COLLECTING),
        _t(S.PROCESS_COLLECTING, E.INPUTS_READY, S.PROCESS_CALCULATING),
        _t(S.PROCESS_CALCULATING, E.CALCULATION_COMPLETE, S.PROCESS_EMITTING),
        _t(S.PROCESS_EMITTING, E.OUTPUTS_COMPLETE, S.PROCESS_IDLE),
    ]


def _sink_transitions(config: NodeConfig) -> list[CanonicalTransition]:
    return [
        _t(S.SINK_IDLE, E.TOKEN_RECEIVED, S.SINK_PROCESSING),
        _t(S.SINK_PROCESSING, E.CONSUMPTION_COMPLETE, S.SINK_IDLE),
    ]


_BUILDERS: dict[NodeKind, Callable[[NodeConfig], list[CanonicalTransition]]] = {
    NodeKind.QUEUE: _queue_transitions,
    NodeKind.DATA_SOURCE: _data_source_transitions,
    NodeKind.PROCESS_NODE: _process_node_transitions,
    NodeKind.SINK: _sink_transitions,
}


def resolve_node_kind(node_type: str) -> NodeKind:
    """Map a config type string to a NodeKind.

    Raises:
        UnsupportedNodeType: If the type has no canonical state machine
    """
    try:
        return NodeKind(node_type)
    except ValueError as e:
        raise UnsupportedNodeType(node_type) from e


def generate_for_node_config(config: NodeConfig) -> StateMachineTemplate:
    """Generate the config-specialized canonical state machine for a node.

    Raises:
        UnsupportedNodeType: If config.type is not a canonical node kind
    """
    kind = resolve_node_kind(config.type)
    transitions = tuple(_BUILDERS[kind](config))
    return StateMachineTemplate(
        states=tuple(str(s) for s in CANONICAL_STATES[kind]),
        transitions=transitions,
        initial_state=str(INITIAL_STATES[kind]),
        fsl=generate_fsl_syntax(transitions),
    )


def generate_fsl_syntax(transitions: Iterable[CanonicalTransition]) -> str:
    """Render transitions as FSL statements, one per line."""
    lines = []
    for t in transitions:
        condition = f" [{t.condition}]" if t.condition else ""
        lines.append(f"{t.from_state} '{t.event}'{condition} -> {t.to_state};")
    return "\n".join(lines)
