# tests/property/engine/test_feedback_properties.py
"""Property-based tests for feedback loop admission.

Circuit breaker cycle (threshold=3, time_window=1000ms, cooldown=500ms):
- Three events inside one window open the breaker
- The breaker stays open until cooldown_period has elapsed since the trip
- The first admission check after cooldown succeeds and resets the count

Depth and cycle guards:
- With max_depth=d, the hop after d registered hops is denied on depth
- Routing back to any node already on the live path is denied as a loop
"""

from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from tests.property.settings import STANDARD_SETTINGS
from tokensim.contracts.feedback import CircuitBreakerConfig, FeedbackLoopConfig
from tokensim.engine.clock import MockClock
from tokensim.engine.feedback import FeedbackLoopManager

THRESHOLD = 3
TIME_WINDOW = 1000.0
COOLDOWN = 500.0

# Offsets of the 2nd and 3rd event; their sum stays inside one window
event_gaps = st.lists(st.integers(min_value=0, max_value=499), min_size=THRESHOLD - 1, max_size=THRESHOLD - 1)

node_ids = st.text(alphabet="ABCDEFGHIJKLMNOPQRSTUVWXYZ", min_size=1, max_size=3)
execution_ids = st.uuids().map(str)


def _breaker_manager(clock: MockClock) -> FeedbackLoopManager:
    config = FeedbackLoopConfig(
        circuit_breaker=CircuitBreakerConfig(threshold=THRESHOLD, time_window=TIME_WINDOW, cooldown_period=COOLDOWN)
    )
    return FeedbackLoopManager(config, clock=clock)


def _trip(manager: FeedbackLoopManager, clock: MockClock, node: str, gaps: list[int]) -> None:
    manager.record_event(node)
    for gap in gaps:
        clock.advance(gap)
        manager.record_event(node)


class TestCircuitBreakerProperties:
    @given(node=node_ids, gaps=event_gaps, execution_id=execution_ids)
    @STANDARD_SETTINGS
    def test_threshold_within_window_opens_breaker(self, node: str, gaps: list[int], execution_id: str) -> None:
        """Property: THRESHOLD events inside one window deny feedback to the node."""
        clock = MockClock()
        manager = _breaker_manager(clock)

        _trip(manager, clock, node, gaps)

        decision = manager.can_create_feedback("source", node, execution_id, "event")
        assert not decision.allowed
        assert decision.reason == f"Circuit breaker open for node {node} (cooldown active)"
        assert manager.get_circuit_breaker_status(node)[node].is_open

    @given(node=node_ids, gaps=event_gaps, wait=st.integers(min_value=0, max_value=int(COOLDOWN) - 1))
    @STANDARD_SETTINGS
    def test_breaker_stays_open_during_cooldown(self, node: str, gaps: list[int], wait: int) -> None:
        """Property: before cooldown_period has passed, every check is denied."""
        clock = MockClock()
        manager = _breaker_manager(clock)
        _trip(manager, clock, node, gaps)

        clock.advance(wait)

        assert not manager.can_create_feedback("source", node, "exec", "event").allowed

    @given(node=node_ids, gaps=event_gaps, extra=st.integers(min_value=0, max_value=5000))
    @STANDARD_SETTINGS
    def test_cooldown_resets_breaker(self, node: str, gaps: list[int], extra: int) -> None:
        """Property: after cooldown the next check succeeds and zeroes the event count."""
        clock = MockClock()
        manager = _breaker_manager(clock)
        _trip(manager, clock, node, gaps)

        clock.advance(COOLDOWN + extra)

        assert manager.can_create_feedback("source", node, "exec", "event").allowed
        status = manager.get_circuit_breaker_status(node)[node]
        assert not status.is_open
        assert status.event_count == 0
        assert status.trip_count == 1

    @given(node=node_ids, gap=st.integers(min_value=int(TIME_WINDOW), max_value=5000))
    @STANDARD_SETTINGS
    def test_events_across_windows_do_not_trip(self, node: str, gap: int) -> None:
        """Property: THRESHOLD - 1 events per window never open the breaker."""
        clock = MockClock()
        manager = _breaker_manager(clock)

        for _ in range(3):
            for _ in range(THRESHOLD - 1):
                manager.record_event(node)
            clock.advance(gap)

        assert manager.can_create_feedback("source", node, "exec", "event").allowed


class TestDepthAndCycleProperties:
    @given(
        max_depth=st.integers(min_value=1, max_value=6),
        execution_id=execution_ids,
    )
    @STANDARD_SETTINGS
    def test_hop_after_max_depth_is_denied(self, max_depth: int, execution_id: str) -> None:
        """Property: a chain of max_depth admitted hops blocks the next one on depth."""
        manager = FeedbackLoopManager(FeedbackLoopConfig(max_depth=max_depth), clock=MockClock())
        chain = [f"N{i}" for i in range(max_depth + 2)]

        for source, target in zip(chain, chain[1 : max_depth + 1], strict=False):
            assert manager.can_create_feedback(source, target, execution_id, "event").allowed
            manager.register_feedback_loop(source, target, "event", execution_id)

        decision = manager.can_create_feedback(chain[max_depth], chain[max_depth + 1], execution_id, "event")
        assert decision.reason == f"Maximum depth {max_depth} reached"
        assert manager.get_depth(execution_id) == max_depth

    @given(
        path_length=st.integers(min_value=1, max_value=5),
        data=st.data(),
    )
    @STANDARD_SETTINGS
    def test_revisiting_live_path_is_a_loop(self, path_length: int, data: st.DataObject) -> None:
        """Property: targeting any node already on the path is denied as a loop, whatever the depth."""
        manager = FeedbackLoopManager(FeedbackLoopConfig(max_depth=10), clock=MockClock())
        chain = [f"N{i}" for i in range(path_length + 1)]
        for source, target in zip(chain, chain[1:], strict=False):
            manager.register_feedback_loop(source, target, "event", "exec")

        revisit = data.draw(st.sampled_from(chain[:-1]))

        decision = manager.can_create_feedback(chain[-1], revisit, "exec", "event")
        assert not decision.allowed
        assert decision.reason is not None
        assert decision.reason.startswith("Infinite loop detected: ")

    @given(max_depth=st.integers(min_value=1, max_value=6))
    @STANDARD_SETTINGS
    def test_completed_hops_release_depth(self, max_depth: int) -> None:
        """Property: completing every registered hop returns the execution to depth 0."""
        manager = FeedbackLoopManager(FeedbackLoopConfig(max_depth=max_depth), clock=MockClock())
        loop_ids = [manager.register_feedback_loop(f"N{i}", f"N{i + 1}", "event", "exec") for i in range(max_depth)]

        for loop_id in reversed(loop_ids):
            manager.complete_feedback_execution("exec", loop_id)

        assert manager.get_depth("exec") == 0
        assert manager.get_feedback_path("exec") == []
        assert manager.can_create_feedback("N0", "N1", "exec", "event").allowed
