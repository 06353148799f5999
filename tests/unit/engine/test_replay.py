# tests/unit/engine/test_replay.py
"""Tests for the FSM replay and analysis engine."""

import pytest

from tokensim.contracts.fsm import LogEvent
from tokensim.core.config import AggregationConfig, AggregationTriggerConfig, NodeConfig


def _log(ts: float, action: str, value: object = None, state: str | None = None) -> LogEvent:
    return LogEvent(timestamp=ts, action=action, value=value, state=state)


@pytest.fixture
def capacity_queue() -> NodeConfig:
    return NodeConfig(
        node_id="Queue_1",
        type="Queue",
        capacity=2,
        aggregation=AggregationConfig(method="sum", trigger=AggregationTriggerConfig(type="capacity")),
    )


@pytest.fixture
def full_cycle() -> list[LogEvent]:
    return [
        _log(0, "RECEIVE_TOKEN", 5),
        _log(1, "RECEIVE_TOKEN", 7),
        _log(2, "TOKEN_CONSUMED_FOR_AGGREGATION"),
        _log(2, "TOKEN_CONSUMED_FOR_AGGREGATION"),
        _log(2, "AGGREGATED_SUM", 12),
        _log(3, "TOKEN_FORWARDED_FROM_OUTPUT", 12),
    ]


class TestConsistentReplay:
    def test_full_capacity_cycle(self, capacity_queue: NodeConfig, full_cycle: list[LogEvent]) -> None:
        from tokensim.engine.replay import ReplayEngine

        result = ReplayEngine(capacity_queue).analyze(full_cycle)
        report = result.consistency_report

        assert report.is_consistent
        assert report.total_events == 6
        assert report.successful_transitions == 6
        assert result.final_state.current_state == "queue_idle"
        assert result.final_state.buffer_size == 0
        assert result.final_state.output_buffer_size == 0

    def test_capacity_reached_is_derived(self, capacity_queue: NodeConfig, full_cycle: list[LogEvent]) -> None:
        from tokensim.engine.replay import ReplayEngine

        trace = ReplayEngine(capacity_queue).analyze(full_cycle).annotated_trace

        second = trace[1]
        assert second.event == "token_received"
        assert second.derived_events == ["capacity_reached"]
        assert second.state_before == "queue_accumulating"
        assert second.state_after == "queue_processing"
        assert second.buffer_before == 1
        assert second.buffer_after == 2

    def test_consume_token_does_not_transition(self, capacity_queue: NodeConfig, full_cycle: list[LogEvent]) -> None:
        from tokensim.engine.replay import ReplayEngine

        third = ReplayEngine(capacity_queue).analyze(full_cycle).annotated_trace[2]
        assert third.event == "consume_token"
        assert third.state_before == third.state_after == "queue_processing"
        assert third.consistency_errors == []

    def test_time_anchor_lifecycle(self, capacity_queue: NodeConfig, full_cycle: list[LogEvent]) -> None:
        from tokensim.engine.replay import ReplayEngine

        trace = ReplayEngine(capacity_queue).analyze(full_cycle).annotated_trace
        assert trace[0].time_anchor == 0
        # Leaving accumulating clears the anchor
        assert trace[1].time_anchor is None

    def test_raw_state_is_never_read(self, capacity_queue: NodeConfig) -> None:
        """A lying state label in the log does not move the FSM."""
        from tokensim.engine.replay import ReplayEngine

        result = ReplayEngine(capacity_queue).analyze([_log(0, "RECEIVE_TOKEN", state="queue_emitting")])
        entry = result.annotated_trace[0]

        assert entry.raw_state == "queue_emitting"
        assert entry.state_after == "queue_accumulating"

    def test_time_window_elapsed(self) -> None:
        from tokensim.engine.replay import ReplayEngine

        config = NodeConfig(
            node_id="Queue_2",
            type="Queue",
            aggregation=AggregationConfig(method="average", trigger=AggregationTriggerConfig(type="time", window=5)),
        )
        result = ReplayEngine(config).analyze([_log(0, "RECEIVE_TOKEN"), _log(6, "RECEIVE_TOKEN")])

        assert result.annotated_trace[1].derived_events == ["time_window_elapsed"]
        assert result.final_state.current_state == "queue_processing"
        assert result.consistency_report.is_consistent

    def test_window_not_yet_elapsed(self) -> None:
        from tokensim.engine.replay import ReplayEngine

        config = NodeConfig(
            node_id="Queue_2",
            type="Queue",
            aggregation=AggregationConfig(method="sum", trigger=AggregationTriggerConfig(type="time", window=5)),
        )
        result = ReplayEngine(config).analyze([_log(0, "RECEIVE_TOKEN"), _log(4, "RECEIVE_TOKEN")])

        assert result.final_state.current_state == "queue_accumulating"

    def test_analyze_is_repeatable(self, capacity_queue: NodeConfig, full_cycle: list[LogEvent]) -> None:
        from tokensim.engine.replay import ReplayEngine

        engine = ReplayEngine(capacity_queue)
        assert engine.analyze(full_cycle).to_dict() == engine.analyze(full_cycle).to_dict()


class TestInconsistentReplay:
    def test_no_transition_recorded_not_raised(self) -> None:
        from tokensim.engine.replay import ReplayEngine

        result = ReplayEngine(NodeConfig(node_id="Sink_1", type="Sink")).analyze([_log(0, "AGGREGATED_SUM", 3)])
        report = result.consistency_report

        assert not report.is_consistent
        assert report.failed_transitions == 1
        assert report.errors == ("No valid transition from sink_idle for event 'aggregation_complete'",)

    def test_consume_from_empty_buffer(self, capacity_queue: NodeConfig) -> None:
        from tokensim.engine.replay import ReplayEngine

        result = ReplayEngine(capacity_queue).analyze([_log(0, "TOKEN_CONSUMED_FOR_AGGREGATION")])

        assert result.consistency_report.errors == ("Cannot consume token: buffer already empty",)
        assert result.final_state.buffer_size == 0

    def test_send_from_empty_output_buffer(self, capacity_queue: NodeConfig) -> None:
        from tokensim.engine.replay import ReplayEngine

        result = ReplayEngine(capacity_queue).analyze([_log(0, "TOKEN_FORWARDED_FROM_OUTPUT")])

        assert "Cannot send token: output buffer already empty" in result.consistency_report.errors

    def test_errors_do_not_halt_replay(self, capacity_queue: NodeConfig) -> None:
        from tokensim.engine.replay import ReplayEngine

        result = ReplayEngine(capacity_queue).analyze(
            [_log(0, "TOKEN_FORWARDED_FROM_OUTPUT"), _log(1, "RECEIVE_TOKEN")]
        )

        assert result.consistency_report.total_events == 2
        assert result.consistency_report.successful_transitions == 1
        assert result.final_state.current_state == "queue_accumulating"


class TestUnmappedActions:
    def test_warned_once_per_action(self, capacity_queue: NodeConfig) -> None:
        from tokensim.engine.replay import ReplayEngine

        result = ReplayEngine(capacity_queue).analyze([_log(0, "CREATED"), _log(1, "CREATED"), _log(2, "FORWARDED")])

        assert result.consistency_report.is_consistent
        assert result.consistency_report.warnings == (
            "Unmapped action 'CREATED' treated as variable update",
            "Unmapped action 'FORWARDED' treated as variable update",
        )

    def test_warnings_can_be_disabled(self, capacity_queue: NodeConfig) -> None:
        from tokensim.engine.replay import ReplayEngine

        result = ReplayEngine(capacity_queue, warn_unmapped_actions=False).analyze([_log(0, "CREATED")])
        assert result.consistency_report.warnings == ()


class TestIncrementalReplay:
    def test_process_log_entry_mutates_runtime(self, capacity_queue: NodeConfig) -> None:
        from tokensim.engine.replay import ReplayEngine

        engine = ReplayEngine(capacity_queue)
        runtime = engine.new_runtime()

        engine.process_log_entry(_log(0, "RECEIVE_TOKEN"), runtime)

        assert runtime.current_state == "queue_accumulating"
        assert runtime.buffer_size == 1


class TestAnalysisHelpers:
    def test_generate_analysis_markdown(self, capacity_queue: NodeConfig) -> None:
        from tokensim.engine.replay import generate_analysis

        text = generate_analysis(capacity_queue, [_log(0, "TOKEN_CONSUMED_FOR_AGGREGATION")])

        assert text.startswith("## FSM Analysis for Queue_1")
        assert "### Specialized FSL" in text
        assert "- Failed: 1" in text
        assert "**Errors:**" in text

    def test_analyze_log_sequence(self, capacity_queue: NodeConfig, full_cycle: list[LogEvent]) -> None:
        from tokensim.engine.replay import analyze_log_sequence

        assert analyze_log_sequence(capacity_queue, full_cycle).consistency_report.is_consistent
