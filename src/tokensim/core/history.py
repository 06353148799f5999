"""Append-only global activity log."""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from pathlib import Path
from threading import Lock
from typing import Any

from tokensim.contracts.enums import LogEventType
from tokensim.contracts.fsm import LogEvent
from tokensim.contracts.history import HistoryEntry, SourceTokenSummary


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


class ActivityLog:
    """Append-only, totally ordered record of what every node did.

    Entries are never rewritten. Views such as external_events() filter
    a copy; they do not mutate the log.

    Appends are serialized under a lock, so action handlers running on a
    worker thread may write alongside the tick thread.
    """

    def __init__(self, *, wall_clock: Callable[[], float] = _wall_clock_ms) -> None:
        self._entries: list[HistoryEntry] = []
        self._lock = Lock()
        self._next_sequence = 0
        self._wall_clock = wall_clock

    def append(
        self,
        node_id: str,
        action: str,
        timestamp: float,
        *,
        value: Any = None,
        details: str | None = None,
        source_token_ids: Sequence[str] = (),
        source_token_summaries: Sequence[SourceTokenSummary] = (),
        event_type: LogEventType | None = None,
        state: str | None = None,
    ) -> HistoryEntry:
        """Append one entry, assigning its sequence and epoch timestamp."""
        with self._lock:
            entry = HistoryEntry(
                node_id=node_id,
                action=action,
                timestamp=timestamp,
                epoch_timestamp=self._wall_clock(),
                sequence=self._next_sequence,
                value=value,
                details=details,
                source_token_ids=tuple(source_token_ids),
                source_token_summaries=tuple(source_token_summaries),
                event_type=event_type,
                state=state,
            )
            self._entries.append(entry)
            self._next_sequence += 1
        return entry

    def extend(self, entries: Iterable[HistoryEntry]) -> None:
        """Import entries recorded elsewhere, keeping their sequences.

        Raises:
            ValueError: If an imported sequence does not exceed every sequence already present
        """
        with self._lock:
            for entry in entries:
                if entry.sequence < self._next_sequence:
                    raise ValueError(
                        f"Sequence {entry.sequence} is not greater than the last sequence {self._next_sequence - 1}"
                    )
                self._entries.append(entry)
                self._next_sequence = entry.sequence + 1

    def entries(self) -> list[HistoryEntry]:
        """Snapshot of all entries in (timestamp, epoch_timestamp, sequence) order."""
        with self._lock:
            snapshot = list(self._entries)
        return sorted(snapshot, key=lambda entry: entry.sort_key)

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(self.entries())

    def __len__(self) -> int:
        return len(self._entries)

    def for_node(self, node_id: str) -> list[HistoryEntry]:
        return [entry for entry in self.entries() if entry.node_id == node_id]

    def external_events(self) -> list[HistoryEntry]:
        """View without execution_event entries (the "reset to external events" view)."""
        return [entry for entry in self.entries() if entry.event_type != LogEventType.EXECUTION_EVENT]

    def to_log_events(self, node_id: str) -> list[LogEvent]:
        """A node's entries in the shape the replay engine consumes."""
        return [
            LogEvent(
                timestamp=entry.timestamp,
                action=entry.action,
                value=entry.value,
                state=entry.state,
                details=entry.details,
            )
            for entry in self.for_node(node_id)
        ]

    def to_records(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries()]

    @classmethod
    def from_records(cls, records: Iterable[dict[str, Any]]) -> ActivityLog:
        """Rebuild a log from its JSON records, in sequence order."""
        log = cls()
        log.extend(sorted((HistoryEntry.from_dict(record) for record in records), key=lambda e: e.sequence))
        return log

    @classmethod
    def load(cls, path: Path) -> ActivityLog:
        """Load a JSON list of history records.

        Raises:
            FileNotFoundError: If path does not exist
            ValueError: If the file is not a JSON list
        """
        with path.open(encoding="utf-8") as f:
            records = json.load(f)
        if not isinstance(records, list):
            raise ValueError(f"Expected a JSON list of history entries in {path}, got {type(records).__name__}")
        return cls.from_records(records)
