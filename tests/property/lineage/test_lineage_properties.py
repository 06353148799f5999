# tests/property/lineage/test_lineage_properties.py
"""Property-based tests for lineage reconstruction.

Properties:
- On a DAG, all_ancestors is exactly the set of tokens reachable through
  parent edges, each at its BFS generation level
- On a DAG, root contributions of a token with ancestors sum to 1.0, and a
  single root receives all of it
- Tracing the same token twice yields the same lineage
- A trace through a cycle terminates and reports circular_reference
"""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from tests.conftest import HistoryBuilder
from tests.property.conftest import TokenDag, token_cycles, token_dags
from tests.property.settings import DETERMINISM_SETTINGS, STANDARD_SETTINGS
from tokensim.contracts.enums import LineageErrorType
from tokensim.lineage.genealogy import TokenGenealogyEngine


def _engine(dag: TokenDag) -> TokenGenealogyEngine:
    return TokenGenealogyEngine.from_history(dag.history().entries)


class TestDagLineageProperties:
    """Lineage over acyclic token graphs."""

    @given(dag=token_dags(), data=st.data())
    @STANDARD_SETTINGS
    def test_ancestors_are_reachable_set_with_bfs_levels(self, dag: TokenDag, data: st.DataObject) -> None:
        """Property: ancestors and their levels match a plain BFS over parent edges."""
        target = data.draw(st.integers(min_value=0, max_value=len(dag.values) - 1))
        result = _engine(dag).trace_lineage(TokenDag.token_id(target))

        assert result.ok
        assert result.lineage is not None
        expected = {TokenDag.token_id(i): level for i, level in dag.generations(target).items()}
        actual = {a.id: a.generation_level for a in result.lineage.all_ancestors}
        assert actual == expected

    @given(dag=token_dags(), data=st.data())
    @STANDARD_SETTINGS
    def test_generation_levels_increase_away_from_target(self, dag: TokenDag, data: st.DataObject) -> None:
        """Property: generation levels are 0, 1, 2, ... with the target alone at 0."""
        target = data.draw(st.integers(min_value=0, max_value=len(dag.values) - 1))
        lineage = _engine(dag).trace_lineage(TokenDag.token_id(target)).lineage

        assert lineage is not None
        levels = [g.level for g in lineage.generation_levels]
        assert levels == list(range(len(levels)))
        assert [t.id for t in lineage.generation_levels[0].tokens] == [TokenDag.token_id(target)]

    @given(dag=token_dags(), data=st.data())
    @STANDARD_SETTINGS
    def test_root_contributions_sum_to_one(self, dag: TokenDag, data: st.DataObject) -> None:
        """Property: every share of a derived token is attributed to some root."""
        target = data.draw(st.integers(min_value=0, max_value=len(dag.values) - 1))
        lineage = _engine(dag).trace_lineage(TokenDag.token_id(target)).lineage

        assert lineage is not None
        contributions = [c.proportional_contribution for c in lineage.source_contributions]
        if not lineage.all_ancestors:
            assert contributions == []
            return
        assert sum(contributions) == pytest.approx(1.0)
        assert all(0.0 <= c <= 1.0 for c in contributions)
        if len(contributions) == 1:
            assert contributions[0] == pytest.approx(1.0)

    @given(dag=token_dags())
    @DETERMINISM_SETTINGS
    def test_repeated_traces_are_identical(self, dag: TokenDag) -> None:
        """Property: re-running a trace over the same log gives the same lineage."""
        engine = _engine(dag)
        target = TokenDag.token_id(len(dag.values) - 1)

        first = engine.trace_lineage(target)
        second = engine.trace_lineage(target)

        assert first.lineage is not None and second.lineage is not None
        assert first.lineage.to_dict() == second.lineage.to_dict()
        assert first.errors == second.errors == ()


class TestCycleLineageProperties:
    """Lineage over token graphs with a cycle."""

    @given(cycle=token_cycles(), data=st.data())
    @STANDARD_SETTINGS
    def test_trace_terminates_with_circular_reference(
        self, cycle: tuple[HistoryBuilder, list[str]], data: st.DataObject
    ) -> None:
        """Property: tracing any ring member returns, flagged circular_reference."""
        history, ring = cycle
        target = data.draw(st.sampled_from(ring))

        result = TokenGenealogyEngine.from_history(history.entries).trace_lineage(target)

        assert result.has_error(LineageErrorType.CIRCULAR_REFERENCE)
        assert result.partial
        assert result.lineage is not None
        assert sum(c.proportional_contribution for c in result.lineage.source_contributions) <= 1.0 + 1e-9
