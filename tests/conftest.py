# tests/conftest.py
"""Shared test fixtures.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import os
from collections.abc import Iterator
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings

from tokensim.contracts.history import HistoryEntry, SourceTokenSummary
from tokensim.engine.clock import MockClock

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


@pytest.fixture
def mock_clock() -> MockClock:
    return MockClock()


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """Keep structlog configuration from leaking between tests."""
    import structlog

    yield
    structlog.reset_defaults()


class HistoryBuilder:
    """Builds activity log entries with increasing sequence numbers.

    Example:
        h = HistoryBuilder()
        h.created("A", "DataSource_1", 5, at=1.0)
        h.aggregated("C", "Queue_1", 12, sources=[("A", "DataSource_1", 5)], method="SUM", at=3.0)
        graph = TokenGraph.build_from_history(h.entries)
    """

    def __init__(self) -> None:
        self.entries: list[HistoryEntry] = []

    def add(
        self,
        node_id: str,
        action: str,
        *,
        at: float,
        value: Any = None,
        details: str | None = None,
        sources: list[tuple[str, str, Any]] | None = None,
    ) -> HistoryEntry:
        summaries = tuple(
            SourceTokenSummary(id=tid, origin_node_id=origin, original_value=val, created_at=0.0)
            for tid, origin, val in (sources or [])
        )
        entry = HistoryEntry(
            node_id=node_id,
            action=action,
            timestamp=at,
            epoch_timestamp=1_700_000_000_000 + len(self.entries),
            sequence=len(self.entries),
            value=value,
            details=details,
            source_token_ids=tuple(s.id for s in summaries),
            source_token_summaries=summaries,
        )
        self.entries.append(entry)
        return entry

    def created(
        self,
        token_id: str,
        node_id: str,
        value: Any,
        *,
        at: float,
        sources: list[tuple[str, str, Any]] | None = None,
    ) -> HistoryEntry:
        return self.add(node_id, "CREATED", at=at, value=value, details=f"Token {token_id} created", sources=sources)

    def aggregated(
        self,
        token_id: str,
        node_id: str,
        value: Any,
        *,
        at: float,
        sources: list[tuple[str, str, Any]],
        method: str = "SUM",
    ) -> HistoryEntry:
        return self.add(
            node_id,
            f"AGGREGATED_{method}",
            at=at,
            value=value,
            details=f"Token {token_id} aggregated",
            sources=sources,
        )


@pytest.fixture
def history() -> HistoryBuilder:
    return HistoryBuilder()
