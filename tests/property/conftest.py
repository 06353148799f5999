# tests/property/conftest.py
"""Shared Hypothesis strategies for property-based tests.

Strategy Categories:
- Raw log events for the replay engine
- Token DAGs and token cycles for lineage reconstruction

Usage:
    from tests.property.conftest import log_sequences, token_dags

    @given(logs=log_sequences)
    def test_replay_is_pure(logs: list[LogEvent]) -> None:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass

from hypothesis import strategies as st

from tests.conftest import HistoryBuilder
from tokensim.contracts.fsm import LogEvent
from tokensim.engine.normalizer import LOG_TO_EVENT_MAP

# =============================================================================
# Replay Strategies
# =============================================================================

# Every mapped action plus actions the normalizer does not know
raw_actions = st.sampled_from([*LOG_TO_EVENT_MAP, "CREATED", "FORWARDED", "UNKNOWN_ACTION"])

# Whatever a producer might have written into the debug state field
raw_states = st.none() | st.sampled_from(["queue_idle", "queue_processing", "sink_idle", "bogus"]) | st.text(max_size=8)

log_values = st.none() | st.integers(min_value=-100, max_value=100)


@st.composite
def log_sequences(draw: st.DrawFn, max_size: int = 25) -> list[LogEvent]:
    """Log events with non-decreasing timestamps."""
    actions = draw(st.lists(raw_actions, max_size=max_size))
    gaps = draw(st.lists(st.integers(min_value=0, max_value=5), min_size=len(actions), max_size=len(actions)))
    logs: list[LogEvent] = []
    timestamp = 0
    for action, gap in zip(actions, gaps, strict=True):
        timestamp += gap
        logs.append(LogEvent(timestamp=timestamp, action=action, value=draw(log_values), state=draw(raw_states)))
    return logs


# =============================================================================
# Lineage Strategies
# =============================================================================


@dataclass(frozen=True)
class TokenDag:
    """A generated token ancestry: parents[i] are indices smaller than i."""

    values: tuple[int, ...]
    parents: tuple[frozenset[int], ...]

    @staticmethod
    def token_id(index: int) -> str:
        return f"T{index}"

    def history(self) -> HistoryBuilder:
        builder = HistoryBuilder()
        for index, (value, parents) in enumerate(zip(self.values, self.parents, strict=True)):
            sources = [(self.token_id(p), f"Node_{p}", self.values[p]) for p in sorted(parents)]
            node = "DataSource_1" if not parents else f"Node_{index}"
            builder.created(self.token_id(index), node, value, at=float(index), sources=sources)
        return builder

    def generations(self, target: int) -> dict[int, int]:
        """BFS distance from target along parent edges, target excluded."""
        levels = {target: 0}
        frontier = [target]
        while frontier:
            following: list[int] = []
            for index in frontier:
                for parent in sorted(self.parents[index]):
                    if parent not in levels:
                        levels[parent] = levels[index] + 1
                        following.append(parent)
            frontier = following
        del levels[target]
        return levels


@st.composite
def token_dags(draw: st.DrawFn, max_tokens: int = 10) -> TokenDag:
    size = draw(st.integers(min_value=1, max_value=max_tokens))
    values = tuple(draw(st.integers(min_value=1, max_value=50)) for _ in range(size))
    parents = tuple(
        frozenset(draw(st.sets(st.integers(min_value=0, max_value=i - 1), max_size=3))) if i > 0 else frozenset()
        for i in range(size)
    )
    return TokenDag(values=values, parents=parents)


@st.composite
def token_cycles(draw: st.DrawFn) -> tuple[HistoryBuilder, list[str]]:
    """A ring of 2 to 6 tokens, each the parent of the next, optionally fed by a root."""
    size = draw(st.integers(min_value=2, max_value=6))
    with_root = draw(st.booleans())
    ring = [f"C{i}" for i in range(size)]

    builder = HistoryBuilder()
    if with_root:
        builder.created("R", "DataSource_1", 1, at=0.0)
    for i, token_id in enumerate(ring):
        previous = ring[i - 1]
        sources = [(previous, f"Node_{previous}", 1)]
        if with_root and i == 0:
            sources.append(("R", "DataSource_1", 1))
        builder.created(token_id, f"Node_{token_id}", 1, at=float(i + 1), sources=sources)
    return builder, ring
