"""Token dependency graph.

Wraps a NetworkX DiGraph whose edges point from a consumed (parent) token
to the token it helped produce. The graph is a read-only oracle for the
genealogy engine and the lazy loader once built.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Sequence
from typing import Any, cast

import networkx as nx
from networkx import DiGraph

from tokensim.contracts.enums import AggregationMethod, TokenOperationType
from tokensim.contracts.history import HistoryEntry, SourceTokenSummary
from tokensim.contracts.lineage import (
    AggregationDetails,
    AggregationInput,
    GraphStats,
    OperationInfo,
    SourceTokenDetail,
    TokenNode,
)

TOKEN_ID_PATTERN = re.compile(r"Token (\w+)")

_AGGREGATED_PREFIX = "AGGREGATED_"
_CREATED = "CREATED"

# Checked in this order: "AGGREGATED_SUM" must not be read as COUNT
_METHOD_KEYWORDS: tuple[tuple[str, AggregationMethod], ...] = (
    ("SUM", AggregationMethod.SUM),
    ("AVERAGE", AggregationMethod.AVERAGE),
    ("COUNT", AggregationMethod.COUNT),
    ("FIRST", AggregationMethod.FIRST),
    ("LAST", AggregationMethod.LAST),
)


def is_creation_entry(entry: HistoryEntry) -> bool:
    return entry.action == _CREATED or entry.action.startswith(_AGGREGATED_PREFIX)


def extract_token_id(details: str | None) -> str | None:
    if not details:
        return None
    match = TOKEN_ID_PATTERN.search(details)
    return match.group(1) if match else None


def as_number(value: Any) -> float:
    """Numeric reading of a token value; non-numeric values count as 0."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0


def format_number(value: float) -> str:
    """Render 12.0 as "12" and 2.5 as "2.5"; nan and inf render as repr."""
    if math.isfinite(value) and value == int(value):
        return str(int(value))
    return repr(value)


def extract_aggregation_method(action: str) -> AggregationMethod | None:
    upper = action.upper()
    for keyword, method in _METHOD_KEYWORDS:
        if keyword in upper:
            return method
    return None


def contribution_for(source_value: Any, result_value: Any, method: AggregationMethod) -> float:
    """Contribution of one input to an aggregation result.

    Only sum has a value-proportional reading (source / result). Every
    other method counts each input fully.
    """
    if method == AggregationMethod.SUM:
        result = as_number(result_value)
        return as_number(source_value) / result if result != 0 else 0.0
    return 1.0


def calculation_string(sources: Sequence[SourceTokenSummary], result: Any, method: AggregationMethod) -> str:
    """Human-readable calculation, e.g. "avg(5, 7, 9) = 21/3 = 7"."""
    values = [as_number(s.original_value) for s in sources]
    joined = ", ".join(format_number(v) for v in values)
    match method:
        case AggregationMethod.SUM:
            return f"sum({joined}) = {format_number(sum(values))}"
        case AggregationMethod.AVERAGE:
            return f"avg({joined}) = {format_number(sum(values))}/{len(values)} = {format_number(as_number(result))}"
        case AggregationMethod.COUNT:
            return f"count({len(values)} tokens) = {len(values)}"
        case AggregationMethod.FIRST:
            return f"first({joined}) = {format_number(values[0] if values else 0.0)}"
        case AggregationMethod.LAST:
            return f"last({joined}) = {format_number(values[-1] if values else 0.0)}"


def _operation_for(entry: HistoryEntry) -> OperationInfo:
    if entry.action.startswith(_AGGREGATED_PREFIX):
        op_type = TokenOperationType.AGGREGATION
    elif entry.source_token_ids:
        # Queues aggregate; everything else with inputs transforms
        op_type = TokenOperationType.AGGREGATION if "Queue" in entry.node_id else TokenOperationType.TRANSFORMATION
    else:
        op_type = TokenOperationType.DATASOURCE_CREATION

    source_tokens = tuple(
        SourceTokenDetail(
            token_id=s.id,
            value=s.original_value,
            origin_node_id=s.origin_node_id,
            created_at=s.created_at,
        )
        for s in entry.source_token_summaries
    )

    method = extract_aggregation_method(entry.action) if op_type == TokenOperationType.AGGREGATION else None
    if method is None:
        return OperationInfo(type=op_type, source_tokens=source_tokens)

    calculation = calculation_string(entry.source_token_summaries, entry.value, method)
    details = AggregationDetails(
        method=method,
        input_tokens=tuple(
            AggregationInput(
                token_id=s.id,
                value=s.original_value,
                contribution=contribution_for(s.original_value, entry.value, method),
            )
            for s in entry.source_token_summaries
        ),
        calculation=calculation,
        result_value=entry.value,
    )
    return OperationInfo(
        type=op_type,
        source_tokens=source_tokens,
        method=method,
        calculation=calculation,
        aggregation_details=details,
    )


class TokenGraph:
    """Parent/child adjacency between tokens.

    Node attribute "info" holds the TokenNode; edge attribute "weight"
    holds the parent's contribution weight to the child.

    Parents and children are returned in insertion order, so traversal
    results are deterministic for a given build order.
    """

    def __init__(self) -> None:
        self._graph: DiGraph[str] = nx.DiGraph()

    def get_nx_graph(self) -> DiGraph[str]:
        """The underlying NetworkX DiGraph. Callers must not mutate it."""
        return self._graph

    def add_token(self, node: TokenNode) -> None:
        """Add or replace a token vertex, keeping its existing edges."""
        self._graph.add_node(node.token_id, info=node)

    def add_edge(self, parent_id: str, child_id: str, weight: float | None = None) -> None:
        """Record that parent_id was consumed to produce child_id.

        A weight of None means no weighting signal; consumers fall back to
        an equal split among the child's parents.

        Raises:
            KeyError: If either token is not in the graph
        """
        for token_id in (parent_id, child_id):
            if not self._graph.has_node(token_id):
                raise KeyError(f"Token not found: {token_id}")
        self._graph.add_edge(parent_id, child_id, weight=weight)

    def has_token(self, token_id: str) -> bool:
        return bool(self._graph.has_node(token_id))

    def get_node(self, token_id: str) -> TokenNode | None:
        if not self._graph.has_node(token_id):
            return None
        return cast(TokenNode, self._graph.nodes[token_id]["info"])

    def get_parents(self, token_id: str) -> list[str]:
        if not self._graph.has_node(token_id):
            return []
        return list(self._graph.predecessors(token_id))

    def get_children(self, token_id: str) -> list[str]:
        if not self._graph.has_node(token_id):
            return []
        return list(self._graph.successors(token_id))

    def edge_weight(self, parent_id: str, child_id: str) -> float | None:
        if not self._graph.has_edge(parent_id, child_id):
            return None
        return cast(float | None, self._graph.edges[parent_id, child_id]["weight"])

    def token_ids(self) -> list[str]:
        return list(self._graph.nodes())

    def __len__(self) -> int:
        return int(self._graph.number_of_nodes())

    def is_root(self, token_id: str) -> bool:
        """A root token has no parents: it entered the system from nothing."""
        return self.has_token(token_id) and self._graph.in_degree(token_id) == 0

    def find_all_paths(self, from_id: str, to_id: str) -> list[list[str]]:
        """All simple paths following parent -> child edges."""
        if not (self.has_token(from_id) and self.has_token(to_id)):
            return []
        if from_id == to_id:
            return [[from_id]]
        return [list(path) for path in nx.all_simple_paths(self._graph, from_id, to_id)]

    def detect_cycles(self) -> list[list[str]]:
        """Elementary cycles, each closed by repeating its first token."""
        return [[*cycle, cycle[0]] for cycle in nx.simple_cycles(self._graph)]

    def has_cycles(self) -> bool:
        return not nx.is_directed_acyclic_graph(self._graph)

    def find_cycle(self, token_ids: Iterable[str]) -> list[str] | None:
        """One cycle among token_ids (as an ordered token list), or None."""
        subgraph = self._graph.subgraph(token_ids)
        try:
            edges = nx.find_cycle(subgraph)
        except nx.NetworkXNoCycle:
            return None
        return [parent for parent, _child in edges]

    def find_root_tokens(self) -> list[str]:
        return [token_id for token_id in self._graph.nodes() if self._graph.in_degree(token_id) == 0]

    def find_leaf_tokens(self) -> list[str]:
        return [token_id for token_id in self._graph.nodes() if self._graph.out_degree(token_id) == 0]

    def ancestry_by_generation(self, token_id: str) -> dict[int, list[str]]:
        """BFS over parents: level -> token ids, level 0 being token_id itself."""
        levels: dict[int, list[str]] = {}
        if not self.has_token(token_id):
            return levels
        reversed_view = self._graph.reverse(copy=False)
        for tid, level in nx.single_source_shortest_path_length(reversed_view, token_id).items():
            levels.setdefault(level, []).append(tid)
        return dict(sorted(levels.items()))

    def descendants_by_generation(self, token_id: str) -> dict[int, list[str]]:
        levels: dict[int, list[str]] = {}
        if not self.has_token(token_id):
            return levels
        for tid, level in nx.single_source_shortest_path_length(self._graph, token_id).items():
            levels.setdefault(level, []).append(tid)
        return dict(sorted(levels.items()))

    def get_graph_stats(self) -> GraphStats:
        roots = self.find_root_tokens()
        max_depth = 0
        for root in roots:
            generations = self.descendants_by_generation(root)
            max_depth = max(max_depth, max(generations))
        return GraphStats(
            node_count=len(self),
            edge_count=int(self._graph.number_of_edges()),
            root_count=len(roots),
            leaf_count=len(self.find_leaf_tokens()),
            max_depth=max_depth,
            has_cycles=self.has_cycles(),
        )

    @classmethod
    def build_from_history(cls, entries: Iterable[HistoryEntry]) -> TokenGraph:
        """Reconstruct token dependencies from activity log entries.

        Creation entries are CREATED and AGGREGATED_* actions whose details
        name the token ("Token <id> ..."). A later creation entry for the
        same token id replaces the earlier one. Edges come from each
        creation entry's source_token_ids; sources that never appear as
        created tokens are skipped.
        """
        graph = cls()
        creations: dict[str, HistoryEntry] = {}

        for entry in sorted(entries, key=lambda e: e.sort_key):
            if not is_creation_entry(entry):
                continue
            token_id = extract_token_id(entry.details)
            if token_id is None:
                continue
            creations[token_id] = entry
            graph.add_token(
                TokenNode(
                    token_id=token_id,
                    value=entry.value,
                    created_at=entry.timestamp,
                    origin_node_id=entry.node_id,
                    operation=_operation_for(entry),
                )
            )

        for token_id, entry in creations.items():
            for source_id in entry.source_token_ids:
                if not graph.has_token(source_id):
                    continue
                graph.add_edge(source_id, token_id, weight=_edge_weight(graph, source_id, token_id))

        return graph


def _edge_weight(graph: TokenGraph, parent_id: str, child_id: str) -> float:
    child = cast(TokenNode, graph.get_node(child_id))
    parent = cast(TokenNode, graph.get_node(parent_id))
    if child.operation is not None and child.operation.method is not None:
        return contribution_for(parent.value, child.value, child.operation.method)
    return 1.0
