"""FSM replay and analysis engine.

Replays raw log entries against a node's canonical state machine and
reports where the log is inconsistent with it.

The engine owns RuntimeState exclusively. A raw log entry's own ``state``
field is never read for control decisions; it is echoed into the trace as
``raw_state`` for side-by-side debugging and nothing else.

Per entry, in this fixed order:
1. Snapshot state/buffer/output buffer before processing
2. Apply raw-action-specific runtime variable updates
3. Normalize the raw action to a canonical event
4. Compute derived events from the post-update runtime state
5. Feed the normalized event, then each derived event, through the table
6. Apply transition side effects (time anchor set/reset)
7. Record state/buffer/output buffer after processing

Consistency errors accumulate per entry and never halt the replay.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from tokensim.contracts.enums import AggregationTriggerType, CanonicalEvent, CanonicalState, GuardCondition
from tokensim.contracts.fsm import (
    AnalysisResult,
    AnnotatedLogEntry,
    CanonicalTransition,
    ConsistencyReport,
    LogEvent,
    RuntimeState,
    StateMachineTemplate,
)
from tokensim.core.logging import get_logger
from tokensim.engine.canonical import generate_for_node_config
from tokensim.engine.normalizer import NON_TRANSITIONING_EVENTS, normalize_action

if TYPE_CHECKING:
    from tokensim.core.config import NodeConfig

logger = get_logger(__name__)

_AGGREGATION_ACTIONS = frozenset({"AGGREGATED_SUM", "AGGREGATED_AVERAGE", "AGGREGATED_COUNT"})


def _guard_holds(condition: GuardCondition | None, runtime: RuntimeState) -> bool:
    if condition is None:
        return True
    if condition == GuardCondition.BUFFER_EMPTY:
        return runtime.buffer_size == 0
    if condition == GuardCondition.BUFFER_NOT_EMPTY:
        return runtime.buffer_size > 0
    raise ValueError(f"Unknown guard condition: {condition!r}")


class ReplayEngine:
    """Replays raw logs for one node config.

    Example:
        engine = ReplayEngine(NodeConfig(node_id="Queue_1", type="Queue", capacity=2))
        result = engine.analyze([LogEvent(timestamp=0, action="RECEIVE_TOKEN"), ...])
        if not result.consistency_report.is_consistent:
            for error in result.consistency_report.errors:
                print(error)
    """

    def __init__(self, config: NodeConfig, *, warn_unmapped_actions: bool = True) -> None:
        """Build the canonical state machine up front.

        Args:
            config: Node configuration to specialize the machine for
            warn_unmapped_actions: Report each distinct unmapped raw action once

        Raises:
            UnsupportedNodeType: If the node type has no canonical state machine
        """
        self._config = config
        self._warn_unmapped = warn_unmapped_actions
        self._machine = generate_for_node_config(config)

    @property
    def state_machine(self) -> StateMachineTemplate:
        return self._machine

    def new_runtime(self) -> RuntimeState:
        """Fresh runtime state positioned at the initial canonical state."""
        return RuntimeState(current_state=self._machine.initial_state)

    def analyze(self, logs: Iterable[LogEvent]) -> AnalysisResult:
        """Replay a full log sequence from the initial state.

        Pure function of (config, logs): calling it twice yields identical
        traces and final states.
        """
        runtime = self.new_runtime()
        annotated: list[AnnotatedLogEntry] = []
        errors: list[str] = []
        warnings: list[str] = []
        unmapped_seen: set[str] = set()
        successful = 0
        failed = 0

        for log in logs:
            entry = self.process_log_entry(log, runtime)
            annotated.append(entry)
            if entry.consistency_errors:
                failed += 1
                errors.extend(entry.consistency_errors)
            else:
                successful += 1
            if self._warn_unmapped and entry.event is None and log.action not in unmapped_seen:
                unmapped_seen.add(log.action)
                warnings.append(f"Unmapped action '{log.action}' treated as variable update")

        if errors:
            logger.warning(
                "replay_inconsistent",
                node_id=self._config.node_id,
                failed_entries=failed,
                error_count=len(errors),
            )

        return AnalysisResult(
            specialized_fsl=self._machine.fsl,
            transition_table=self._machine.transitions,
            annotated_trace=tuple(annotated),
            consistency_report=ConsistencyReport(
                total_events=len(annotated),
                successful_transitions=successful,
                failed_transitions=failed,
                errors=tuple(errors),
                warnings=tuple(warnings),
            ),
            final_state=runtime.snapshot(),
        )

    def process_log_entry(self, log: LogEvent, runtime: RuntimeState) -> AnnotatedLogEntry:
        """Process one raw log entry, mutating runtime in place.

        This is the incremental call surface for a scheduler that replays
        as it appends. ``runtime`` must have come from new_runtime() (or a
        previous call) for this engine.
        """
        entry = AnnotatedLogEntry(
            timestamp=log.timestamp,
            raw_action=log.action,
            raw_value=log.value,
            raw_state=log.state,
            state_before=runtime.current_state,
            state_after=runtime.current_state,
            buffer_before=runtime.buffer_size,
            buffer_after=runtime.buffer_size,
            output_buffer_before=runtime.output_buffer_size,
            output_buffer_after=runtime.output_buffer_size,
            time_anchor=runtime.time_anchor,
        )

        self._update_runtime_variables(log, runtime, entry)

        event = normalize_action(log.action)
        entry.event = event

        # Computed exactly once per entry, from the post-update runtime
        derived = self._derived_events(runtime, log)
        entry.derived_events = list(derived)

        if event is not None:
            self._process_event(event, runtime, entry)
        for derived_event in derived:
            self._process_event(derived_event, runtime, entry)

        entry.state_after = runtime.current_state
        entry.buffer_after = runtime.buffer_size
        entry.output_buffer_after = runtime.output_buffer_size
        entry.time_anchor = runtime.time_anchor
        return entry

    def _update_runtime_variables(self, log: LogEvent, runtime: RuntimeState, entry: AnnotatedLogEntry) -> None:
        action = log.action
        if action == "RECEIVE_TOKEN":
            runtime.buffer_size += 1
            entry.notes.append(f"Token received: buffer {runtime.buffer_size - 1} -> {runtime.buffer_size}")
            if runtime.current_state == CanonicalState.QUEUE_IDLE and runtime.time_anchor is None:
                runtime.time_anchor = log.timestamp
                entry.notes.append(f"Set time_anchor to {log.timestamp}s")
        elif action == "TOKEN_CONSUMED_FOR_AGGREGATION":
            if runtime.buffer_size > 0:
                runtime.buffer_size -= 1
                entry.notes.append(f"Token consumed: buffer {runtime.buffer_size + 1} -> {runtime.buffer_size}")
            else:
                entry.consistency_errors.append("Cannot consume token: buffer already empty")
        elif action == "TOKEN_FORWARDED_FROM_OUTPUT":
            if runtime.output_buffer_size > 0:
                runtime.output_buffer_size -= 1
                entry.notes.append(
                    f"Output token sent: output_buffer {runtime.output_buffer_size + 1} -> {runtime.output_buffer_size}"
                )
            else:
                entry.consistency_errors.append("Cannot send token: output buffer already empty")
        elif action in _AGGREGATION_ACTIONS:
            runtime.output_buffer_size += 1
            entry.notes.append(
                f"Aggregation created output token: {log.value} "
                f"(output_buffer: {runtime.output_buffer_size - 1} -> {runtime.output_buffer_size})"
            )
        elif action == "EMIT_TOKEN":
            runtime.output_buffer_size += 1
            entry.notes.append(f"Token generated: {log.value}")

    def _derived_events(self, runtime: RuntimeState, log: LogEvent) -> tuple[str, ...]:
        derived: list[str] = []
        config = self._config
        accumulating = runtime.current_state == CanonicalState.QUEUE_ACCUMULATING

        if config.capacity and runtime.buffer_size >= config.capacity and accumulating:
            derived.append(CanonicalEvent.CAPACITY_REACHED)

        aggregation = config.aggregation
        if aggregation is not None and aggregation.trigger.type == AggregationTriggerType.TIME and runtime.time_anchor is not None:
            window = aggregation.trigger.window or 0
            if log.timestamp >= runtime.time_anchor + window and runtime.buffer_size > 0 and accumulating:
                derived.append(CanonicalEvent.TIME_WINDOW_ELAPSED)

        return tuple(derived)

    def _find_transition(self, event: str, runtime: RuntimeState) -> CanonicalTransition | None:
        for transition in self._machine.transitions:
            if transition.from_state != runtime.current_state or transition.event != event:
                continue
            if _guard_holds(transition.condition, runtime):
                return transition
        return None

    def _process_event(self, event: str, runtime: RuntimeState, entry: AnnotatedLogEntry) -> None:
        transition = self._find_transition(event, runtime)
        if transition is None:
            if event not in NON_TRANSITIONING_EVENTS:
                entry.consistency_errors.append(f"No valid transition from {runtime.current_state} for event '{event}'")
            return

        previous = runtime.current_state
        runtime.current_state = transition.to_state
        entry.notes.append(f"{event}: {previous} -> {transition.to_state}")
        self._apply_side_effects(transition, runtime, entry)

    @staticmethod
    def _apply_side_effects(transition: CanonicalTransition, runtime: RuntimeState, entry: AnnotatedLogEntry) -> None:
        accumulating = CanonicalState.QUEUE_ACCUMULATING
        if transition.from_state == accumulating and transition.to_state != accumulating and runtime.time_anchor is not None:
            runtime.time_anchor = None
            entry.notes.append("Reset time_anchor (left accumulating state)")

        if transition.to_state == accumulating and transition.from_state != accumulating:
            runtime.time_anchor = entry.timestamp
            entry.notes.append(f"Set time_anchor to {entry.timestamp}s (entered accumulating state)")


def analyze_log_sequence(config: NodeConfig, logs: Sequence[LogEvent]) -> AnalysisResult:
    """Convenience wrapper: replay logs for a node config."""
    return ReplayEngine(config).analyze(logs)


def generate_analysis(config: NodeConfig, logs: Sequence[LogEvent]) -> str:
    """Render a markdown summary of a replay."""
    result = analyze_log_sequence(config, logs)
    report = result.consistency_report

    lines = [
        f"## FSM Analysis for {config.node_id}",
        "",
        "### Specialized FSL",
        "```",
        result.specialized_fsl,
        "```",
        "",
        "### Consistency Report",
        f"- Total Events: {report.total_events}",
        f"- Successful: {report.successful_transitions}",
        f"- Failed: {report.failed_transitions}",
    ]
    if report.errors:
        lines.extend(["", "**Errors:**"])
        lines.extend(f"- {error}" for error in report.errors)
    return "\n".join(lines) + "\n"
