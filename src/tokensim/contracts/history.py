"""Activity log records and tokens.

HistoryEntry is the append-only record every node writes to the global
activity log. Its JSON shape (camelCase keys) is an interchange contract
with the scheduler and UI, so to_dict()/from_dict() preserve it exactly.

Ordering: entries are totally ordered by (timestamp, epoch_timestamp,
sequence). Sequence is strictly increasing and is the final tie-breaker;
consumers must never infer causality from arrival order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tokensim.contracts.enums import LogEventType


@dataclass(frozen=True, slots=True)
class SourceTokenSummary:
    """Snapshot of an input token captured when a derived token was created."""

    id: str
    origin_node_id: str
    original_value: Any
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "originNodeId": self.origin_node_id,
            "originalValue": self.original_value,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceTokenSummary:
        return cls(
            id=data["id"],
            origin_node_id=data["originNodeId"],
            original_value=data.get("originalValue"),
            created_at=data.get("createdAt", 0),
        )


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """One append-only activity log record.

    Attributes:
        node_id: Node that produced the entry
        action: Raw action string (e.g. "RECEIVE_TOKEN", "AGGREGATED_SUM")
        timestamp: Simulation time
        epoch_timestamp: Wall-clock time the entry was appended
        sequence: Strictly increasing append sequence
        value: Optional value carried by the action
        details: Free-text details, e.g. "Token abc12345 from Queue_1 output"
        source_token_ids: Tokens consumed to produce the token in this entry
        source_token_summaries: Snapshots of those consumed tokens
        event_type: external_event or execution_event
        state: State label as written by the producer. Debug text only;
            the replay engine never reads it for control decisions.
    """

    node_id: str
    action: str
    timestamp: float
    epoch_timestamp: float
    sequence: int
    value: Any = None
    details: str | None = None
    source_token_ids: tuple[str, ...] = ()
    source_token_summaries: tuple[SourceTokenSummary, ...] = ()
    event_type: LogEventType | None = None
    state: str | None = None

    @property
    def sort_key(self) -> tuple[float, float, int]:
        """Total order key for replay and lineage."""
        return (self.timestamp, self.epoch_timestamp, self.sequence)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase interchange shape, omitting unset optionals."""
        data: dict[str, Any] = {
            "nodeId": self.node_id,
            "action": self.action,
            "timestamp": self.timestamp,
            "epochTimestamp": self.epoch_timestamp,
            "sequence": self.sequence,
        }
        if self.value is not None:
            data["value"] = self.value
        if self.details is not None:
            data["details"] = self.details
        if self.source_token_ids:
            data["sourceTokenIds"] = list(self.source_token_ids)
        if self.source_token_summaries:
            data["sourceTokenSummaries"] = [s.to_dict() for s in self.source_token_summaries]
        if self.event_type is not None:
            data["eventType"] = self.event_type.value
        if self.state is not None:
            data["state"] = self.state
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        """Parse the camelCase interchange shape.

        Required keys (nodeId, action, timestamp, sequence) are accessed
        directly so malformed input fails loudly with KeyError.
        """
        event_type = data.get("eventType")
        return cls(
            node_id=data["nodeId"],
            action=data["action"],
            timestamp=data["timestamp"],
            epoch_timestamp=data.get("epochTimestamp", 0),
            sequence=data["sequence"],
            value=data.get("value"),
            details=data.get("details"),
            source_token_ids=tuple(data.get("sourceTokenIds") or ()),
            source_token_summaries=tuple(SourceTokenSummary.from_dict(s) for s in data.get("sourceTokenSummaries") or ()),
            event_type=LogEventType(event_type) if event_type is not None else None,
            state=data.get("state"),
        )


@dataclass(frozen=True, slots=True)
class Token:
    """An immutable unit of data flowing between nodes.

    Ownership moves along the pipeline by reference. A consuming node may
    create descendant tokens but never mutates a token in place.
    """

    id: str
    value: Any
    created_at: float
    origin_node_id: str
    history: tuple[HistoryEntry, ...] = field(default=(), compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "value": self.value,
            "createdAt": self.created_at,
            "originNodeId": self.origin_node_id,
            "history": [entry.to_dict() for entry in self.history],
        }
