"""Feedback loop configuration and bookkeeping records.

FeedbackLoopConfig is part of the enhanced-FSM definition interchange
shape, so it lives here with camelCase aliases. The runtime records
(FeedbackLoop, FeedbackDecision, CircuitBreakerState, FeedbackMetrics) are
what the FeedbackLoopManager hands out; they are copies, never live views
of its internal state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Frozen + camelCase aliases for models that round-trip scenario JSON
INTERCHANGE_CONFIG = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class CircuitBreakerConfig(BaseModel):
    """Sliding-window circuit breaker per target node.

    Durations are milliseconds of the injected clock.
    """

    model_config = INTERCHANGE_CONFIG

    enabled: bool = Field(default=True, description="Enable the circuit breaker")
    threshold: int = Field(default=100, ge=0, description="Events within time_window that trip the breaker")
    time_window: float = Field(default=60000, ge=0, description="Sliding window length (ms)")
    cooldown_period: float = Field(default=30000, ge=0, description="Time the breaker stays open after a trip (ms)")


class FeedbackRoutingConfig(BaseModel):
    """Which feedback routes are admissible at all."""

    model_config = INTERCHANGE_CONFIG

    allow_self_feedback: bool = Field(default=True, description="Allow a node to feed back into itself")
    allow_external_feedback: bool = Field(default=True, description="Allow feedback to other nodes")
    blacklisted_nodes: tuple[str, ...] = Field(default=(), description="Nodes that never accept feedback")


class FeedbackLoopConfig(BaseModel):
    """Feedback loop admission control.

    JSON shape (interchange contract):
        {"enabled": true, "maxDepth": 10,
         "circuitBreaker": {"enabled": true, "threshold": 100,
                            "timeWindow": 60000, "cooldownPeriod": 30000},
         "routing": {"allowSelfFeedback": true, "allowExternalFeedback": true,
                     "blacklistedNodes": []}}
    """

    model_config = INTERCHANGE_CONFIG

    enabled: bool = Field(default=True, description="Globally enable feedback loops")
    max_depth: int = Field(default=10, ge=0, description="Maximum feedback depth per execution")
    circuit_breaker: CircuitBreakerConfig = Field(
        default_factory=CircuitBreakerConfig,
        description="Per-node circuit breaker",
    )
    routing: FeedbackRoutingConfig = Field(
        default_factory=FeedbackRoutingConfig,
        description="Route admissibility rules",
    )

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase interchange shape."""
        return self.model_dump(by_alias=True, mode="json")


@dataclass(frozen=True, slots=True)
class FeedbackDecision:
    """Result of an admission check.

    Denials are returned, never raised, so a caller can disable one route
    without failing the whole tick.
    """

    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> FeedbackDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> FeedbackDecision:
        return cls(allowed=False, reason=reason)


@dataclass(frozen=True, slots=True)
class FeedbackLoop:
    """One registered, not yet completed, feedback hop."""

    id: str
    source_node_id: str
    target_node_id: str
    output_type: str
    execution_id: str
    created_at: float
    depth: int


@dataclass(frozen=True, slots=True)
class CircuitBreakerState:
    """Snapshot of one node's circuit breaker."""

    is_open: bool
    event_count: int
    window_start_time: float
    trip_count: int
    last_trigger_time: float | None = None


@dataclass(frozen=True, slots=True)
class FeedbackMetrics:
    """Aggregate feedback counters.

    events_per_second and messages_per_second count recorded events in the
    last 1000 ms of clock time.
    """

    total_loops: int = 0
    active_loops: int = 0
    circuit_breaker_trips: int = 0
    average_depth: float = 0.0
    max_depth_reached: int = 0
    events_per_second: int = 0
    messages_per_second: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalLoops": self.total_loops,
            "activeLoops": self.active_loops,
            "circuitBreakerTrips": self.circuit_breaker_trips,
            "averageDepth": self.average_depth,
            "maxDepthReached": self.max_depth_reached,
            "eventsPerSecond": self.events_per_second,
            "messagesPerSecond": self.messages_per_second,
        }
