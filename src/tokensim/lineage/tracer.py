"""Log-only token tracer.

Recovers a token's provenance from activity log text alone, without a
token graph: details strings such as "Token ab12cd34 from Queue 1 output"
name the creating node, and entries of the creating node shortly before
the creation name the input tokens. Coarser than the genealogy engine,
but works on logs whose producers never wrote CREATED entries.
"""

from __future__ import annotations

import re
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from tokensim.contracts.enums import TraceEventRole
from tokensim.contracts.history import HistoryEntry
from tokensim.core.logging import get_logger

logger = get_logger(__name__)

TRACE_TOKEN_PATTERN = re.compile(r"Token ([A-Za-z0-9]{8})")
FROM_OUTPUT_PATTERN = re.compile(r"from (.+?) output")

# Simulation-time window before a creation in which the creator's inputs are searched
INPUT_WINDOW = 10.0

_EMITTING_ACTIONS = frozenset({"token_emitted", "firing", "processing"})
_INPUT_ACTIONS = frozenset({"token_consumed", "token_received", "consuming", "accumulating"})
_CONSUMING_ACTIONS = frozenset({"token_consumed", "consuming"})


@dataclass(frozen=True, slots=True)
class TraceEvent:
    """One activity log entry placed in a token trace.

    Attributes:
        depth: Hops from the traced token (0 is the token itself)
        role: Whether the entry created, fed, or consumed a token
    """

    timestamp: float
    node_id: str
    node_name: str
    action: str
    depth: int
    role: TraceEventRole
    value: Any = None
    details: str | None = None
    source_token_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class TokenTrace:
    token_id: str
    events: tuple[TraceEvent, ...]
    parent_tokens: tuple[str, ...]
    root_events: tuple[TraceEvent, ...]
    creation_chain: tuple[TraceEvent, ...]


def _mentions(entry: HistoryEntry, token_id: str) -> bool:
    return entry.details is not None and f"Token {token_id}" in entry.details


def _is_emission(entry: HistoryEntry) -> bool:
    details = entry.details or ""
    if entry.action == "token_emitted":
        return True
    if "→" in details and "←" not in details:
        return True
    return entry.action in ("firing", "processing") and "consumed" not in details


class SimpleTokenTracer:
    """Breadth-first trace of a token's history through the activity log.

    Example:
        tracer = SimpleTokenTracer(activity_log.entries(), {"q1": "Queue 1"})
        for line in tracer.get_timeline("ab12cd34"):
            print(line)
    """

    def __init__(self, entries: Iterable[HistoryEntry], node_names: Mapping[str, str] | None = None) -> None:
        self._entries = sorted(entries, key=lambda e: e.sort_key)
        self._node_names = dict(node_names or {})

    def _name(self, node_id: str) -> str:
        return self._node_names.get(node_id, node_id)

    def _node_id_for_name(self, name: str) -> str | None:
        for node_id, node_name in self._node_names.items():
            if node_name == name:
                return node_id
        return None

    def _find_creation(self, token_id: str) -> tuple[HistoryEntry | None, str | None]:
        """The entry that created token_id and the node that created it.

        A consumption entry ("... from X output") names the creator even
        when the creator's own entry cannot be found; the entry is then None.
        """
        for entry in self._entries:
            if not _mentions(entry, token_id):
                continue
            match = FROM_OUTPUT_PATTERN.search(entry.details or "")
            if match:
                creator = self._node_id_for_name(match.group(1))
                if creator is None:
                    return None, None
                for candidate in self._entries:
                    if (
                        candidate.node_id == creator
                        and _mentions(candidate, token_id)
                        and (candidate.action in _EMITTING_ACTIONS or "→" in (candidate.details or ""))
                    ):
                        return candidate, creator
                return None, creator
            if _is_emission(entry):
                return entry, entry.node_id
        return None, None

    def _inputs_of(self, creator: str, creation_time: float, creation: HistoryEntry | None) -> list[HistoryEntry]:
        return [
            entry
            for entry in self._entries
            if entry.node_id == creator
            and creation_time - INPUT_WINDOW <= entry.timestamp <= creation_time
            and (
                entry.action in _INPUT_ACTIONS
                or (entry.action == "processing" and bool(entry.source_token_ids))
                or (entry.action == "firing" and entry is not creation)
            )
        ]

    def trace_token(self, token_id: str) -> TokenTrace:
        visited = {token_id}
        parents: list[str] = []
        events: list[TraceEvent] = []
        creation_chain: list[TraceEvent] = []
        queue: deque[tuple[str, int]] = deque([(token_id, 0)])

        def enqueue(parent_id: str, depth: int) -> None:
            if parent_id in visited:
                return
            visited.add(parent_id)
            parents.append(parent_id)
            queue.append((parent_id, depth + 1))

        while queue:
            current, depth = queue.popleft()
            creation, creator = self._find_creation(current)

            if creator is not None:
                keeps_formula = (
                    creation is not None and creation.action == "processing" and "=" in (creation.details or "")
                )
                creation_event = TraceEvent(
                    timestamp=creation.timestamp if creation is not None else 0.0,
                    node_id=creator,
                    node_name=self._name(creator),
                    action="processing" if keeps_formula else "CREATED",
                    depth=depth,
                    role=TraceEventRole.CREATION,
                    value=creation.value if creation is not None else None,
                    details=(creation.details if creation is not None else None) or f"Token {current} created here",
                    source_token_ids=creation.source_token_ids if creation is not None else (),
                )
                events.append(creation_event)
                creation_chain.append(creation_event)

                if creation is not None:
                    creation_time = creation.timestamp
                else:
                    creation_time = next((e.timestamp for e in self._entries if _mentions(e, current)), 0.0)

                inputs = self._inputs_of(creator, creation_time, creation)
                for entry in inputs:
                    if _mentions(entry, current):
                        continue
                    events.append(
                        TraceEvent(
                            timestamp=entry.timestamp,
                            node_id=entry.node_id,
                            node_name=self._name(entry.node_id),
                            action=f"INPUT_{entry.action}",
                            depth=depth,
                            role=TraceEventRole.INPUT,
                            value=entry.value,
                            details=entry.details,
                            source_token_ids=entry.source_token_ids,
                        )
                    )
                    for parent_id in TRACE_TOKEN_PATTERN.findall(entry.details or ""):
                        if parent_id != current:
                            enqueue(parent_id, depth)
                    for parent_id in entry.source_token_ids:
                        enqueue(parent_id, depth)

            for entry in self._entries:
                if _mentions(entry, current) and (
                    entry.action in _CONSUMING_ACTIONS or "consumed" in (entry.details or "")
                ):
                    events.append(
                        TraceEvent(
                            timestamp=entry.timestamp,
                            node_id=entry.node_id,
                            node_name=self._name(entry.node_id),
                            action=entry.action,
                            depth=depth,
                            role=TraceEventRole.CONSUMPTION,
                            value=entry.value,
                            details=entry.details,
                            source_token_ids=entry.source_token_ids,
                        )
                    )

        events.sort(key=lambda e: e.timestamp)
        roots = tuple(e for e in events if e.role == TraceEventRole.CREATION and not e.source_token_ids)
        logger.debug("token_traced", token_id=token_id, events=len(events), parents=len(parents))
        return TokenTrace(
            token_id=token_id,
            events=tuple(events),
            parent_tokens=tuple(parents),
            root_events=roots,
            creation_chain=tuple(creation_chain),
        )

    def get_timeline(self, token_id: str) -> list[str]:
        """Trace events grouped by depth, sources first."""
        trace = self.trace_token(token_id)
        by_depth: dict[int, list[TraceEvent]] = {}
        for event in trace.events:
            by_depth.setdefault(event.depth, []).append(event)
        if not by_depth:
            return []

        max_depth = max(by_depth)
        lines: list[str] = []
        for depth in range(max_depth, -1, -1):
            depth_events = by_depth.get(depth)
            if not depth_events:
                continue
            label = " (Target)" if depth == 0 else " (Sources)" if depth == max_depth else ""
            lines.append(f"=== Depth {depth}{label} ===")
            for event in depth_events:
                line = f"[{event.role.value}] [{event.timestamp}s] {event.node_name} | {event.action}"
                if event.value is not None:
                    line += f" | value: {event.value}"
                if event.details:
                    line += f" | {event.details}"
                lines.append(line)
        return lines

    def get_correlation_chain(self, token_id: str) -> str:
        trace = self.trace_token(token_id)
        return " <- ".join([token_id, *trace.parent_tokens])
