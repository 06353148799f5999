"""Canonical state machine contracts and replay results.

These types cross the boundary between the canonical generator, the
replay engine, and whatever renders the annotated trace.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tokensim.contracts.enums import GuardCondition


@dataclass(frozen=True, slots=True)
class CanonicalTransition:
    """One row of a canonical transition table.

    Attributes:
        from_state: Canonical state the transition leaves
        event: Canonical event that fires it
        to_state: Canonical state the transition enters
        condition: Optional guard from the closed guard vocabulary
    """

    from_state: str
    event: str
    to_state: str
    condition: GuardCondition | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"from": self.from_state, "event": self.event, "to": self.to_state}
        if self.condition is not None:
            data["condition"] = self.condition.value
        return data


@dataclass(frozen=True, slots=True)
class StateMachineTemplate:
    """Canonical state machine specialized for one node config."""

    states: tuple[str, ...]
    transitions: tuple[CanonicalTransition, ...]
    initial_state: str
    fsl: str


@dataclass(frozen=True, slots=True)
class LogEvent:
    """A raw log entry as fed to the replay engine.

    The ``state`` field is carried for human debugging only. Replay never
    reads it.
    """

    timestamp: float
    action: str
    value: Any = None
    state: str | None = None
    details: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEvent:
        return cls(
            timestamp=data["timestamp"],
            action=data["action"],
            value=data.get("value"),
            state=data.get("state"),
            details=data.get("details"),
        )


@dataclass(slots=True)
class RuntimeState:
    """Authoritative FSM position of a node during replay.

    Owned exclusively by the replay engine. Nothing in the raw log may
    write to it except through the engine's own update rules.
    """

    current_state: str
    buffer_size: int = 0
    output_buffer_size: int = 0
    time_anchor: float | None = None
    variables: dict[str, Any] = field(default_factory=dict)

    def snapshot(self) -> RuntimeState:
        """Detached copy for results."""
        return RuntimeState(
            current_state=self.current_state,
            buffer_size=self.buffer_size,
            output_buffer_size=self.output_buffer_size,
            time_anchor=self.time_anchor,
            variables=dict(self.variables),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "currentState": self.current_state,
            "buffer_size": self.buffer_size,
            "output_buffer_size": self.output_buffer_size,
            "variables": dict(self.variables),
        }
        if self.time_anchor is not None:
            data["time_anchor"] = self.time_anchor
        return data


@dataclass(slots=True)
class AnnotatedLogEntry:
    """One replayed log entry with FSM-computed before/after values.

    Every *_before/*_after value comes from the replay engine's
    RuntimeState. ``raw_state`` echoes the input's state label for
    side-by-side debugging and is never consulted.
    """

    timestamp: float
    raw_action: str
    state_before: str
    state_after: str
    buffer_before: int
    buffer_after: int
    output_buffer_before: int
    output_buffer_after: int
    raw_value: Any = None
    raw_state: str | None = None
    event: str | None = None
    derived_events: list[str] = field(default_factory=list)
    time_anchor: float | None = None
    notes: list[str] = field(default_factory=list)
    consistency_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "raw_action": self.raw_action,
            "raw_value": self.raw_value,
            "raw_state": self.raw_state,
            "state_before": self.state_before,
            "event": self.event,
            "state_after": self.state_after,
            "buffer_before": self.buffer_before,
            "buffer_after": self.buffer_after,
            "output_buffer_before": self.output_buffer_before,
            "output_buffer_after": self.output_buffer_after,
            "derived_events": list(self.derived_events),
            "time_anchor": self.time_anchor,
            "notes": list(self.notes),
            "consistency_errors": list(self.consistency_errors),
        }


@dataclass(frozen=True, slots=True)
class ConsistencyReport:
    """Authoritative pass/fail signal of a replay."""

    total_events: int
    successful_transitions: int
    failed_transitions: int
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def is_consistent(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_events": self.total_events,
            "successful_transitions": self.successful_transitions,
            "failed_transitions": self.failed_transitions,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    """Output of ReplayEngine.analyze()."""

    specialized_fsl: str
    transition_table: tuple[CanonicalTransition, ...]
    annotated_trace: tuple[AnnotatedLogEntry, ...]
    consistency_report: ConsistencyReport
    final_state: RuntimeState

    def to_dict(self) -> dict[str, Any]:
        return {
            "specialized_fsl": self.specialized_fsl,
            "transition_table": [t.to_dict() for t in self.transition_table],
            "annotated_trace": [entry.to_dict() for entry in self.annotated_trace],
            "consistency_report": self.consistency_report.to_dict(),
            "final_state": self.final_state.to_dict(),
        }
