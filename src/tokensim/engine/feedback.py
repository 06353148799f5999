"""Feedback loop admission control.

A feedback loop is an action output routed back toward a node that is
already part of the current causal chain. The manager decides whether
such a hop is admissible and keeps the bookkeeping needed to decide:

- per target node: a sliding-window circuit breaker
- per execution id: the live depth and the path of source nodes

Admission checks run in a fixed order and the first failure wins:
disabled, blacklisted target, self-feedback, external feedback, circuit
breaker, depth, loop detection (target already in the live path, or the
path is longer than twice max_depth).

Thread safety: counters are keyed by node id and execution id, and each
key has its own lock. Lock order is always execution lock, then node lock.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from tokensim.contracts.events import CircuitBreakerTripped
from tokensim.contracts.feedback import (
    CircuitBreakerState,
    FeedbackDecision,
    FeedbackLoop,
    FeedbackLoopConfig,
    FeedbackMetrics,
)
from tokensim.core.events import NullEventBus
from tokensim.core.logging import get_logger
from tokensim.engine.clock import DEFAULT_CLOCK

if TYPE_CHECKING:
    from tokensim.core.events import EventBusProtocol
    from tokensim.engine.clock import Clock

logger = get_logger(__name__)

FeedbackOutputType = Literal["event", "message"]

DEFAULT_CLEANUP_MAX_AGE_MS = 3_600_000
_RATE_WINDOW_MS = 1000.0


@dataclass(slots=True)
class _BreakerState:
    is_open: bool = False
    event_count: int = 0
    window_start_time: float = 0.0
    trip_count: int = 0
    last_trigger_time: float | None = None

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            is_open=self.is_open,
            event_count=self.event_count,
            window_start_time=self.window_start_time,
            trip_count=self.trip_count,
            last_trigger_time=self.last_trigger_time,
        )


@dataclass(slots=True)
class _ExecutionState:
    depth: int = 0
    path: list[str] = field(default_factory=list)


class _KeyedLocks:
    """One re-entrant lock per key, created on demand."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)


class FeedbackLoopManager:
    """Guards feedback routing with depth, cycle and circuit-breaker checks.

    Example:
        manager = FeedbackLoopManager(FeedbackConfigFactory.conservative(), clock=clock)

        decision = manager.can_create_feedback("A", "B", execution_id, "event")
        if decision.allowed:
            loop_id = manager.register_feedback_loop("A", "B", "event", execution_id)
            try:
                deliver()
            finally:
                manager.complete_feedback_execution(execution_id, loop_id)

        # Equivalent, with guaranteed completion:
        with manager.feedback_scope("A", "B", execution_id, "event") as decision:
            if decision.allowed:
                deliver()
    """

    def __init__(
        self,
        config: FeedbackLoopConfig | None = None,
        *,
        clock: Clock | None = None,
        event_bus: EventBusProtocol | None = None,
    ) -> None:
        self._config = config if config is not None else FeedbackLoopConfig()
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._event_bus: EventBusProtocol = event_bus if event_bus is not None else NullEventBus()

        self._node_locks = _KeyedLocks()
        self._execution_locks = _KeyedLocks()
        # Guards the shared registries below (not the per-key state objects)
        self._registry_lock = threading.Lock()

        self._breakers: dict[str, _BreakerState] = {}
        self._executions: dict[str, _ExecutionState] = {}
        self._loops: dict[str, FeedbackLoop] = {}
        self._event_times: dict[str, list[float]] = {}
        self._message_times: dict[str, list[float]] = {}

        self._total_loops = 0
        self._circuit_breaker_trips = 0
        self._max_depth_reached = 0

        self._cleanup_timer: threading.Timer | None = None
        self._cleanup_interval_s: float | None = None

    @property
    def config(self) -> FeedbackLoopConfig:
        return self._config

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def can_create_feedback(
        self,
        source_node_id: str,
        target_node_id: str,
        execution_id: str,
        output_type: FeedbackOutputType,
    ) -> FeedbackDecision:
        """Decide whether source may route an output of output_type to target.

        Denials are returned as data. An open breaker whose cooldown has
        elapsed is reset here, so this check can mutate breaker state.
        """
        config = self._config
        if not config.enabled:
            return FeedbackDecision.deny("Feedback loops disabled")
        if target_node_id in config.routing.blacklisted_nodes:
            return FeedbackDecision.deny(f"Target node {target_node_id} is blacklisted")
        if source_node_id == target_node_id and not config.routing.allow_self_feedback:
            return FeedbackDecision.deny("Self-feedback not allowed")
        if source_node_id != target_node_id and not config.routing.allow_external_feedback:
            return FeedbackDecision.deny("External feedback not allowed")

        breaker_decision = self._check_circuit_breaker(target_node_id)
        if not breaker_decision.allowed:
            return breaker_decision

        depth, path = self._execution_snapshot(execution_id)

        if depth >= config.max_depth:
            return FeedbackDecision.deny(f"Maximum depth {config.max_depth} reached")

        if target_node_id in path:
            loop_nodes = path[path.index(target_node_id) :]
            description = " -> ".join([*loop_nodes, target_node_id])
            return FeedbackDecision.deny(f"Infinite loop detected: {description}")
        if len(path) > config.max_depth * 2:
            return FeedbackDecision.deny(f"Infinite loop detected: Excessive path length: {len(path)} nodes")

        return FeedbackDecision.allow()

    def register_feedback_loop(
        self,
        source_node_id: str,
        target_node_id: str,
        output_type: FeedbackOutputType,
        execution_id: str,
    ) -> str:
        """Record an admitted hop: depth + 1 and source appended to the path.

        Returns:
            Loop id to pass to complete_feedback_execution()
        """
        now = self._clock.now_ms()
        with self._execution_locks.get(execution_id):
            with self._registry_lock:
                execution = self._executions.setdefault(execution_id, _ExecutionState())
                execution.depth += 1
                execution.path.append(source_node_id)
                depth = execution.depth

        loop = FeedbackLoop(
            id=f"loop_{uuid.uuid4().hex[:12]}",
            source_node_id=source_node_id,
            target_node_id=target_node_id,
            output_type=output_type,
            execution_id=execution_id,
            created_at=now,
            depth=depth,
        )
        with self._registry_lock:
            self._loops[loop.id] = loop
            self._total_loops += 1
            self._max_depth_reached = max(self._max_depth_reached, depth)

        logger.debug(
            "feedback_loop_registered",
            loop_id=loop.id,
            source_node_id=source_node_id,
            target_node_id=target_node_id,
            execution_id=execution_id,
            depth=depth,
        )
        return loop.id

    def complete_feedback_execution(self, execution_id: str, loop_id: str) -> None:
        """Release one hop: drop the loop, decrement depth, pop the path.

        Safe to call for an unknown loop id; depth never goes below zero.
        An execution back at depth zero is forgotten.
        """
        with self._execution_locks.get(execution_id):
            with self._registry_lock:
                self._loops.pop(loop_id, None)
                execution = self._executions.get(execution_id)
                if execution is not None:
                    if execution.depth > 0:
                        execution.depth -= 1
                    if execution.path:
                        execution.path.pop()
                released = execution is None or (execution.depth == 0 and not execution.path)
                if released:
                    self._executions.pop(execution_id, None)
        if released:
            self._execution_locks.discard(execution_id)

    def admit(
        self,
        source_node_id: str,
        target_node_id: str,
        execution_id: str,
        output_type: FeedbackOutputType,
    ) -> tuple[FeedbackDecision, str | None]:
        """Check and register in one step under the execution's lock.

        Returns:
            The decision, and the loop id when admitted (None otherwise).
            The caller owns completing the loop.
        """
        with self._execution_locks.get(execution_id):
            decision = self.can_create_feedback(source_node_id, target_node_id, execution_id, output_type)
            if not decision.allowed:
                return decision, None
            return decision, self.register_feedback_loop(source_node_id, target_node_id, output_type, execution_id)

    @contextmanager
    def feedback_scope(
        self,
        source_node_id: str,
        target_node_id: str,
        execution_id: str,
        output_type: FeedbackOutputType,
    ) -> Iterator[FeedbackDecision]:
        """Admission, registration and guaranteed completion as one block.

        The body runs whether or not the hop was admitted; it must inspect
        the yielded decision. Completion happens on normal exit and on
        exceptions alike.
        """
        decision, loop_id = self.admit(source_node_id, target_node_id, execution_id, output_type)
        try:
            yield decision
        finally:
            if loop_id is not None:
                self.complete_feedback_execution(execution_id, loop_id)

    def force_close_feedback_execution(self, execution_id: str) -> int:
        """Drop every loop and all depth/path state of one execution.

        Returns:
            Number of loops removed
        """
        with self._execution_locks.get(execution_id):
            with self._registry_lock:
                loop_ids = [loop_id for loop_id, loop in self._loops.items() if loop.execution_id == execution_id]
                for loop_id in loop_ids:
                    del self._loops[loop_id]
                self._executions.pop(execution_id, None)
        self._execution_locks.discard(execution_id)
        return len(loop_ids)

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    def record_event(self, node_id: str, event_type: FeedbackOutputType = "event") -> None:
        """Count one event or message for node_id and trip its breaker at threshold."""
        now = self._clock.now_ms()
        with self._node_locks.get(node_id):
            with self._registry_lock:
                times = self._event_times if event_type == "event" else self._message_times
                times.setdefault(node_id, []).append(now)
            self._update_circuit_breaker(node_id, now)

    def _update_circuit_breaker(self, node_id: str, now: float) -> None:
        breaker_config = self._config.circuit_breaker
        if not breaker_config.enabled:
            return

        with self._registry_lock:
            state = self._breakers.get(node_id)
            if state is None:
                state = _BreakerState(window_start_time=now)
                self._breakers[node_id] = state

        if now - state.window_start_time >= breaker_config.time_window:
            state.event_count = 0
            state.window_start_time = now

        state.event_count += 1
        if state.event_count >= breaker_config.threshold and not state.is_open:
            state.is_open = True
            state.last_trigger_time = now
            state.trip_count += 1
            with self._registry_lock:
                self._circuit_breaker_trips += 1
            logger.warning(
                "circuit_breaker_tripped",
                node_id=node_id,
                event_count=state.event_count,
                trip_count=state.trip_count,
            )
            self._event_bus.emit(
                CircuitBreakerTripped(
                    node_id=node_id,
                    event_count=state.event_count,
                    trip_count=state.trip_count,
                    timestamp=now,
                )
            )

    def _check_circuit_breaker(self, node_id: str) -> FeedbackDecision:
        breaker_config = self._config.circuit_breaker
        if not breaker_config.enabled:
            return FeedbackDecision.allow()

        with self._node_locks.get(node_id):
            with self._registry_lock:
                state = self._breakers.get(node_id)
            if state is None or not state.is_open:
                return FeedbackDecision.allow()

            now = self._clock.now_ms()
            if state.last_trigger_time is not None and now - state.last_trigger_time >= breaker_config.cooldown_period:
                state.is_open = False
                state.event_count = 0
                state.window_start_time = now
                logger.info("circuit_breaker_reset", node_id=node_id, reason="cooldown_elapsed")
                return FeedbackDecision.allow()

        return FeedbackDecision.deny(f"Circuit breaker open for node {node_id} (cooldown active)")

    def reset_circuit_breaker(self, node_id: str) -> bool:
        """Close a breaker manually.

        Returns:
            False if the node never recorded an event
        """
        with self._node_locks.get(node_id):
            with self._registry_lock:
                state = self._breakers.get(node_id)
            if state is None:
                return False
            state.is_open = False
            state.event_count = 0
            state.window_start_time = self._clock.now_ms()
        logger.info("circuit_breaker_reset", node_id=node_id, reason="manual")
        return True

    def get_circuit_breaker_status(self, node_id: str | None = None) -> dict[str, CircuitBreakerState]:
        """Snapshots of breaker state, for one node or all of them."""
        with self._registry_lock:
            items = list(self._breakers.items())
        return {key: state.snapshot() for key, state in items if node_id is None or key == node_id}

    # ------------------------------------------------------------------
    # Introspection and maintenance
    # ------------------------------------------------------------------

    def get_active_feedback_loops(self) -> list[FeedbackLoop]:
        with self._registry_lock:
            return list(self._loops.values())

    def get_feedback_path(self, execution_id: str) -> list[str]:
        """Copy of the live source-node path of an execution."""
        return self._execution_snapshot(execution_id)[1]

    def get_depth(self, execution_id: str) -> int:
        return self._execution_snapshot(execution_id)[0]

    def _execution_snapshot(self, execution_id: str) -> tuple[int, list[str]]:
        with self._registry_lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                return 0, []
            return execution.depth, list(execution.path)

    def get_metrics(self) -> FeedbackMetrics:
        now = self._clock.now_ms()
        with self._registry_lock:
            events = sum(1 for times in self._event_times.values() for t in times if now - t <= _RATE_WINDOW_MS)
            messages = sum(1 for times in self._message_times.values() for t in times if now - t <= _RATE_WINDOW_MS)
            depths = [execution.depth for execution in self._executions.values()]
            return FeedbackMetrics(
                total_loops=self._total_loops,
                active_loops=len(self._loops),
                circuit_breaker_trips=self._circuit_breaker_trips,
                average_depth=sum(depths) / len(depths) if depths else 0.0,
                max_depth_reached=self._max_depth_reached,
                events_per_second=events,
                messages_per_second=messages,
            )

    def update_config(self, config: FeedbackLoopConfig) -> None:
        """Swap the configuration. Existing counters are kept."""
        self._config = config
        logger.info("feedback_config_updated", max_depth=config.max_depth, enabled=config.enabled)

    def cleanup(self, max_age_ms: float = DEFAULT_CLEANUP_MAX_AGE_MS) -> int:
        """Drop event timestamps and loops older than max_age_ms.

        Executions left without a live loop are forgotten, and so are closed
        breakers whose counting window has run out.

        Returns:
            Number of stale loops removed
        """
        now = self._clock.now_ms()
        time_window = self._config.circuit_breaker.time_window
        with self._registry_lock:
            for times_by_node in (self._event_times, self._message_times):
                for node_id in list(times_by_node):
                    recent = [t for t in times_by_node[node_id] if now - t <= max_age_ms]
                    if recent:
                        times_by_node[node_id] = recent
                    else:
                        del times_by_node[node_id]

            stale = [loop_id for loop_id, loop in self._loops.items() if now - loop.created_at > max_age_ms]
            for loop_id in stale:
                del self._loops[loop_id]

            live_executions = {loop.execution_id for loop in self._loops.values()}
            idle_executions = [e for e in self._executions if e not in live_executions]
            for execution_id in idle_executions:
                del self._executions[execution_id]

            idle_breakers = [
                node_id
                for node_id, state in self._breakers.items()
                if not state.is_open and now - state.window_start_time >= time_window
            ]
            for node_id in idle_breakers:
                del self._breakers[node_id]

        for execution_id in idle_executions:
            self._execution_locks.discard(execution_id)
        for node_id in idle_breakers:
            self._node_locks.discard(node_id)

        if stale or idle_executions or idle_breakers:
            logger.info(
                "feedback_cleanup",
                stale_loops=len(stale),
                idle_executions=len(idle_executions),
                idle_breakers=len(idle_breakers),
            )
        return len(stale)

    def start_cleanup(self, interval_ms: float = 60000, max_age_ms: float = DEFAULT_CLEANUP_MAX_AGE_MS) -> None:
        """Run cleanup() every interval_ms of wall time until stop_cleanup().

        Raises:
            RuntimeError: If cleanup is already running
        """
        if self._cleanup_interval_s is not None:
            raise RuntimeError("Cleanup already started")
        self._cleanup_interval_s = interval_ms / 1000.0
        self._schedule_cleanup(max_age_ms)

    def _schedule_cleanup(self, max_age_ms: float) -> None:
        interval = self._cleanup_interval_s
        if interval is None:
            return

        def run() -> None:
            self.cleanup(max_age_ms)
            self._schedule_cleanup(max_age_ms)

        timer = threading.Timer(interval, run)
        timer.daemon = True
        self._cleanup_timer = timer
        timer.start()

    def stop_cleanup(self) -> None:
        """Cancel the periodic cleanup. No-op when it is not running."""
        self._cleanup_interval_s = None
        timer = self._cleanup_timer
        self._cleanup_timer = None
        if timer is not None:
            timer.cancel()

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_interval_s is not None
