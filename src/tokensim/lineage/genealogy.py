"""Token genealogy engine.

Reconstructs a token's ancestors, descendants, generation levels and
source contributions from a TokenGraph. Traversal is breadth-first over
parent edges with a visited set, so cyclic provenance terminates and is
reported as a circular_reference error instead of hanging.

Budgets (LineageErrorConfig):
    max_computation_time   clock ms per trace -> computation_timeout
    max_traversal_depth    generations expanded -> performance_limit (depth)
    max_tokens_to_process  tokens visited per direction -> performance_limit (tokens)

Exceeding a budget yields a partial lineage plus the error when
enable_partial_results is set, and no lineage (only the error) otherwise.

Source contributions are propagated along every parent path from the
target (share 1.0) down to the root ancestors. At each token its share is
split among its parents: in proportion to the parents' values when the
token came from a sum aggregation over non-negative values, and equally
otherwise. Shares therefore never sum to more than 1.0, and a single root
receives all of it.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence

import networkx as nx

from tokensim.contracts.enums import AggregationMethod, LineageErrorType, PerformanceLimitType, TokenOperationType
from tokensim.contracts.history import HistoryEntry, Token
from tokensim.contracts.lineage import (
    AncestorToken,
    DescendantToken,
    GenerationLevel,
    GraphStats,
    LineageError,
    LineageResult,
    LineageValidation,
    ParentToken,
    SourceContribution,
    TokenLineage,
    TokenNode,
)
from tokensim.core.config import LineageErrorConfig
from tokensim.core.logging import get_logger
from tokensim.engine.clock import DEFAULT_CLOCK, Clock
from tokensim.lineage.errors import DEEP_LINEAGE_GENERATIONS, LineageErrorHandler
from tokensim.lineage.graph import TokenGraph, as_number, extract_token_id

logger = get_logger(__name__)


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'s' if count != 1 else ''}"


def describe_level(level: int, tokens: Sequence[AncestorToken]) -> str:
    """Human-readable label for one generation, e.g. "Generation 2: 3 Data Sources"."""
    if level == 0:
        return "Target Token"
    roots = sum(1 for t in tokens if t.is_root)
    aggregations = sum(1 for t in tokens if t.operation is not None and t.operation.type == TokenOperationType.AGGREGATION)
    transformations = sum(
        1 for t in tokens if t.operation is not None and t.operation.type == TokenOperationType.TRANSFORMATION
    )
    if roots:
        return f"Generation {level}: {_plural(roots, 'Data Source')}"
    if aggregations:
        return f"Generation {level}: {_plural(aggregations, 'Aggregation')}"
    if transformations:
        return f"Generation {level}: {_plural(transformations, 'Transformation')}"
    return f"Generation {level}: {_plural(len(tokens), 'Token')}"


class _Traversal:
    """Mutable BFS state for one trace."""

    def __init__(self, target: str) -> None:
        self.levels: dict[str, int] = {target: 0}
        # Next hop from a visited ancestor toward the target
        self.toward_target: dict[str, str] = {}
        self.descendant_levels: dict[str, int] = {target: 0}
        self.toward_source: dict[str, str] = {}
        self.errors: list[LineageError] = []
        self.truncated = False

    def path_to_target(self, token_id: str) -> tuple[str, ...]:
        path = [token_id]
        while path[-1] in self.toward_target:
            path.append(self.toward_target[path[-1]])
        return tuple(path)


class TokenGenealogyEngine:
    """Lineage reconstruction over a token graph and the activity log.

    Example:
        engine = TokenGenealogyEngine.from_history(activity_log.entries())
        result = engine.trace_lineage("a1b2c3d4")
        if result.lineage is not None:
            for level in result.lineage.generation_levels:
                print(level.description)
    """

    def __init__(
        self,
        graph: TokenGraph,
        *,
        history: Iterable[HistoryEntry] = (),
        config: LineageErrorConfig | None = None,
        error_handler: LineageErrorHandler | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._graph = graph
        self._config = config or (error_handler.config if error_handler is not None else LineageErrorConfig())
        self._errors = error_handler or LineageErrorHandler(self._config)
        self._clock = clock or DEFAULT_CLOCK
        self._token_history: dict[str, list[HistoryEntry]] = {}
        self._index_history(history)

    @classmethod
    def from_history(
        cls,
        entries: Iterable[HistoryEntry],
        *,
        config: LineageErrorConfig | None = None,
        error_handler: LineageErrorHandler | None = None,
        clock: Clock | None = None,
    ) -> TokenGenealogyEngine:
        entries = list(entries)
        return cls(
            TokenGraph.build_from_history(entries),
            history=entries,
            config=config,
            error_handler=error_handler,
            clock=clock,
        )

    def _index_history(self, entries: Iterable[HistoryEntry]) -> None:
        self._token_history.clear()
        for entry in sorted(entries, key=lambda e: e.sort_key):
            token_id = extract_token_id(entry.details)
            if token_id is None:
                continue
            self._token_history.setdefault(token_id, []).append(entry)

    def refresh(self, entries: Iterable[HistoryEntry]) -> None:
        """Rebuild the graph and history index from an updated log."""
        entries = list(entries)
        self._graph = TokenGraph.build_from_history(entries)
        self._index_history(entries)

    @property
    def graph(self) -> TokenGraph:
        return self._graph

    @property
    def error_handler(self) -> LineageErrorHandler:
        return self._errors

    def token_history(self, token_id: str) -> tuple[HistoryEntry, ...]:
        return tuple(self._token_history.get(token_id, ()))

    def get_graph_stats(self) -> GraphStats:
        return self._graph.get_graph_stats()

    # -- tracing --------------------------------------------------------

    def trace_lineage(self, token_id: str) -> LineageResult:
        """Reconstruct the lineage of token_id.

        Never raises for data problems: missing tokens, cycles and
        exhausted budgets come back as errors on the result. Re-running a
        trace over the same graph yields the same lineage.
        """
        started = self._clock.now_ms()
        node = self._graph.get_node(token_id)
        if node is None:
            error = self._errors.handle_missing_token(token_id)
            return LineageResult(lineage=None, errors=(error,), partial=True)

        traversal = _Traversal(token_id)
        self._walk_ancestors(token_id, traversal, started)

        if self._config.enable_circular_reference_detection:
            cycle = self._graph.find_cycle(traversal.levels)
            if cycle is not None:
                traversal.errors.append(self._errors.handle_circular_reference(token_id, cycle))
                traversal.truncated = True
        self._walk_descendants(token_id, traversal, started)

        elapsed = self._clock.now_ms() - started
        tokens_processed = len(traversal.levels) + len(traversal.descendant_levels) - 1

        if traversal.truncated and traversal.errors and not self._config.enable_partial_results:
            return LineageResult(
                lineage=None,
                errors=tuple(traversal.errors),
                partial=True,
                computation_time_ms=elapsed,
                tokens_processed=tokens_processed,
            )

        lineage = self._assemble(token_id, node, traversal)
        elapsed = self._clock.now_ms() - started
        warnings = self._errors.generate_warnings(token_id, lineage, elapsed)

        logger.debug(
            "lineage_traced",
            token_id=token_id,
            ancestors=len(lineage.all_ancestors),
            descendants=len(lineage.descendants),
            partial=traversal.truncated,
            errors=len(traversal.errors),
        )
        return LineageResult(
            lineage=lineage,
            errors=tuple(traversal.errors),
            warnings=tuple(warnings),
            partial=traversal.truncated,
            computation_time_ms=elapsed,
            tokens_processed=tokens_processed,
        )

    def _walk_ancestors(self, token_id: str, traversal: _Traversal, started: float) -> None:
        config = self._config
        queue = deque([token_id])
        depth_reported = False

        while queue:
            elapsed = self._clock.now_ms() - started
            if elapsed > config.max_computation_time:
                traversal.errors.append(
                    self._errors.handle_computation_timeout(
                        token_id, config.max_computation_time, {"tokensProcessed": len(traversal.levels)}
                    )
                )
                traversal.truncated = True
                return

            current = queue.popleft()
            level = traversal.levels[current]
            parents = self._graph.get_parents(current)
            if not parents:
                continue

            if level >= config.max_traversal_depth:
                if not depth_reported:
                    traversal.errors.append(
                        self._errors.handle_performance_limit(
                            token_id, PerformanceLimitType.DEPTH, level + 1, config.max_traversal_depth
                        )
                    )
                    depth_reported = True
                traversal.truncated = True
                continue

            for parent in parents:
                if parent in traversal.levels:
                    continue
                if len(traversal.levels) - 1 >= config.max_tokens_to_process:
                    traversal.errors.append(
                        self._errors.handle_performance_limit(
                            token_id,
                            PerformanceLimitType.TOKENS,
                            len(traversal.levels),
                            config.max_tokens_to_process,
                        )
                    )
                    traversal.truncated = True
                    return
                traversal.levels[parent] = level + 1
                traversal.toward_target[parent] = current
                queue.append(parent)

    def _assemble(self, token_id: str, node: TokenNode, traversal: _Traversal) -> TokenLineage:
        target = Token(
            id=token_id,
            value=node.value,
            created_at=node.created_at,
            origin_node_id=node.origin_node_id,
            history=self.token_history(token_id),
        )

        ancestors = tuple(
            self._ancestor(ancestor_id, level, traversal.path_to_target(ancestor_id))
            for ancestor_id, level in traversal.levels.items()
            if ancestor_id != token_id
        )

        by_level: dict[int, list[AncestorToken]] = {0: [self._ancestor(token_id, 0, (token_id,))]}
        for ancestor in ancestors:
            by_level.setdefault(ancestor.generation_level, []).append(ancestor)
        levels = tuple(
            GenerationLevel(level=level, tokens=tuple(tokens), description=describe_level(level, tokens))
            for level, tokens in sorted(by_level.items())
        )

        return TokenLineage(
            target_token=target,
            immediate_parents=self._immediate_parents(token_id),
            all_ancestors=ancestors,
            descendants=self._descendants(token_id, traversal),
            source_contributions=self._source_contributions(token_id, ancestors, traversal),
            generation_levels=levels,
        )

    def _ancestor(self, token_id: str, level: int, path: tuple[str, ...]) -> AncestorToken:
        node = self._graph.get_node(token_id)
        assert node is not None, f"traversal visited unknown token {token_id}"
        return AncestorToken(
            id=token_id,
            value=node.value,
            created_at=node.created_at,
            origin_node_id=node.origin_node_id,
            generation_level=level,
            is_root=self._graph.is_root(token_id),
            operation=node.operation,
            contribution_path=path,
            complete_history=self.token_history(token_id),
        )

    def _immediate_parents(self, token_id: str) -> tuple[ParentToken, ...]:
        parent_ids = self._graph.get_parents(token_id)
        parents: list[ParentToken] = []
        for parent_id in parent_ids:
            node = self._graph.get_node(parent_id)
            if node is None:
                continue
            weight = self._graph.edge_weight(parent_id, token_id)
            parents.append(
                ParentToken(
                    id=parent_id,
                    value=node.value,
                    created_at=node.created_at,
                    origin_node_id=node.origin_node_id,
                    contribution_weight=weight if weight is not None else 1.0 / len(parent_ids),
                    operation=node.operation,
                )
            )
        return tuple(parents)

    def _walk_descendants(self, token_id: str, traversal: _Traversal, started: float) -> None:
        """Breadth-first over child edges under the same budgets as the ancestor walk."""
        config = self._config
        levels = traversal.descendant_levels
        if any(error.type == LineageErrorType.COMPUTATION_TIMEOUT for error in traversal.errors):
            return
        queue = deque([token_id])
        while queue:
            if self._clock.now_ms() - started > config.max_computation_time:
                traversal.errors.append(
                    self._errors.handle_computation_timeout(
                        token_id,
                        config.max_computation_time,
                        {"tokensProcessed": len(traversal.levels) + len(levels) - 1},
                    )
                )
                traversal.truncated = True
                return

            current = queue.popleft()
            level = levels[current]
            if level >= config.max_traversal_depth:
                continue
            for child in self._graph.get_children(current):
                if child in levels:
                    continue
                if len(levels) - 1 >= config.max_tokens_to_process:
                    traversal.errors.append(
                        self._errors.handle_performance_limit(
                            token_id, PerformanceLimitType.TOKENS, len(levels), config.max_tokens_to_process
                        )
                    )
                    traversal.truncated = True
                    return
                levels[child] = level + 1
                traversal.toward_source[child] = current
                queue.append(child)

    def _descendants(self, token_id: str, traversal: _Traversal) -> tuple[DescendantToken, ...]:
        descendants: list[DescendantToken] = []
        for child_id, level in traversal.descendant_levels.items():
            if child_id == token_id:
                continue
            path = [child_id]
            while path[-1] in traversal.toward_source:
                path.append(traversal.toward_source[path[-1]])
            node = self._graph.get_node(child_id)
            assert node is not None, f"traversal visited unknown token {child_id}"
            descendants.append(
                DescendantToken(
                    id=child_id,
                    value=node.value,
                    created_at=node.created_at,
                    origin_node_id=node.origin_node_id,
                    generation_level=level,
                    operation=node.operation,
                    derivation_path=tuple(reversed(path)),
                )
            )
        return tuple(descendants)

    # -- contributions --------------------------------------------------

    def _split(self, token_id: str, parents: Sequence[str]) -> list[float]:
        """Fractions of token_id's share passed to each parent."""
        node = self._graph.get_node(token_id)
        if node is not None and node.operation is not None and node.operation.method == AggregationMethod.SUM:
            values = [as_number(parent.value) for parent in (self._graph.get_node(p) for p in parents) if parent]
            total = sum(values)
            if len(values) == len(parents) and total > 0 and all(v >= 0 for v in values):
                return [v / total for v in values]
        return [1.0 / len(parents)] * len(parents)

    def _contribution_order(self, traversal: _Traversal) -> tuple[list[str], bool]:
        """Tokens ordered children-first, and whether every edge may be followed.

        On an acyclic ancestry every parent edge carries share. With a
        cycle only edges one generation outward do, which keeps the
        propagation finite.
        """
        subgraph = self._graph.get_nx_graph().subgraph(traversal.levels)
        if nx.is_directed_acyclic_graph(subgraph):
            return list(reversed(list(nx.topological_sort(subgraph)))), True
        return sorted(traversal.levels, key=traversal.levels.__getitem__), False

    def _source_contributions(
        self, token_id: str, ancestors: Sequence[AncestorToken], traversal: _Traversal
    ) -> tuple[SourceContribution, ...]:
        roots = [a for a in ancestors if a.is_root]
        if not roots:
            return ()

        order, all_edges = self._contribution_order(traversal)
        shares: dict[str, float] = {token_id: 1.0}
        for current in order:
            share = shares.get(current, 0.0)
            parents = self._graph.get_parents(current)
            if share == 0.0 or not parents:
                continue
            for parent, fraction in zip(parents, self._split(current, parents), strict=True):
                if parent not in traversal.levels:
                    continue
                if not all_edges and traversal.levels[parent] != traversal.levels[current] + 1:
                    continue
                shares[parent] = shares.get(parent, 0.0) + share * fraction

        raw = [min(1.0, shares.get(root.id, 0.0)) for root in roots]
        total = sum(raw)
        if total > 1.0:
            raw = [value / total for value in raw]

        return tuple(
            SourceContribution(
                source_token_id=root.id,
                source_node_id=root.origin_node_id,
                original_value=root.value,
                proportional_contribution=value,
                contribution_path=root.contribution_path,
            )
            for root, value in zip(roots, raw, strict=True)
        )

    # -- validation -----------------------------------------------------

    def validate_lineage(self, token_id: str) -> LineageValidation:
        """Check a token's provenance for structural problems without tracing it fully."""
        if not self._graph.has_token(token_id):
            return LineageValidation(errors=(self._errors.handle_missing_token(token_id),))

        errors: list[LineageError] = []
        warnings: list[str] = []

        cycles = [cycle for cycle in self._graph.detect_cycles() if token_id in cycle]
        if cycles:
            affected = list(dict.fromkeys(t for cycle in cycles for t in cycle))
            errors.append(
                self._errors.create_error(
                    LineageErrorType.CIRCULAR_REFERENCE,
                    token_id,
                    f"Circular reference detected involving token {token_id}",
                    affected,
                    {"cycles": cycles},
                )
            )

        generations = self._graph.ancestry_by_generation(token_id)
        max_depth = max(generations)
        if max_depth > DEEP_LINEAGE_GENERATIONS:
            warnings.append(f"Very deep lineage detected ({max_depth} generations) - may impact performance")

        for ancestor_ids in generations.values():
            for ancestor_id in ancestor_ids:
                node = self._graph.get_node(ancestor_id)
                if node is None or node.operation is None:
                    continue
                missing = [s.token_id for s in node.operation.source_tokens if not self._graph.has_token(s.token_id)]
                if missing:
                    errors.append(self._errors.handle_incomplete_lineage(ancestor_id, missing))

        return LineageValidation(errors=tuple(errors), warnings=tuple(warnings))
