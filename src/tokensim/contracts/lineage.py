"""Token lineage results and lineage errors.

Everything here is plain data handed to renderers. TokenLineage and
LineageError serialize to camelCase dicts via to_dict(); that JSON shape
is an interchange contract with the UI.

Generation levels are BFS distances from the target token along
"was consumed to produce" edges: 0 is the target itself, 1 its direct
parents, and so on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tokensim.contracts.enums import (
    AggregationMethod,
    LineageErrorType,
    LineageWarningType,
    RecoveryActionType,
    Severity,
    TokenOperationType,
)
from tokensim.contracts.history import HistoryEntry, Token


@dataclass(frozen=True, slots=True)
class SourceTokenDetail:
    """An input token as recorded by the operation that consumed it."""

    token_id: str
    value: Any
    origin_node_id: str
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "value": self.value,
            "originNodeId": self.origin_node_id,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class AggregationInput:
    token_id: str
    value: Any
    contribution: float

    def to_dict(self) -> dict[str, Any]:
        return {"tokenId": self.token_id, "value": self.value, "contribution": self.contribution}


@dataclass(frozen=True, slots=True)
class AggregationDetails:
    """How an aggregation combined its inputs.

    Attributes:
        method: Aggregation formula
        input_tokens: Inputs with their contribution to the result
        calculation: Human-readable calculation, e.g. "sum(5, 7) = 12"
        result_value: Value of the produced token
    """

    method: AggregationMethod
    input_tokens: tuple[AggregationInput, ...]
    calculation: str
    result_value: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method.value,
            "inputTokens": [t.to_dict() for t in self.input_tokens],
            "calculation": self.calculation,
            "resultValue": self.result_value,
        }


@dataclass(frozen=True, slots=True)
class OperationInfo:
    """The operation that created a token."""

    type: TokenOperationType
    source_tokens: tuple[SourceTokenDetail, ...] = ()
    method: AggregationMethod | None = None
    calculation: str | None = None
    aggregation_details: AggregationDetails | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "sourceTokens": [s.to_dict() for s in self.source_tokens],
        }
        if self.method is not None:
            data["method"] = self.method.value
        if self.calculation is not None:
            data["calculation"] = self.calculation
        if self.aggregation_details is not None:
            data["aggregationDetails"] = self.aggregation_details.to_dict()
        return data


@dataclass(frozen=True, slots=True)
class TokenNode:
    """A token as a vertex of the token graph."""

    token_id: str
    value: Any
    created_at: float
    origin_node_id: str
    operation: OperationInfo | None = None


def _operation_dict(operation: OperationInfo | None) -> dict[str, Any] | None:
    return operation.to_dict() if operation is not None else None


@dataclass(frozen=True, slots=True)
class ParentToken:
    id: str
    value: Any
    created_at: float
    origin_node_id: str
    contribution_weight: float
    operation: OperationInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "value": self.value,
            "createdAt": self.created_at,
            "originNodeId": self.origin_node_id,
            "operation": _operation_dict(self.operation),
            "contributionWeight": self.contribution_weight,
        }


@dataclass(frozen=True, slots=True)
class AncestorToken:
    """An ancestor of the target token.

    Attributes:
        generation_level: Minimal BFS distance from the target (>= 1)
        is_root: True when the token has no parents in the graph
        contribution_path: Shortest path from this token down to the target
        complete_history: Every activity log entry that mentions the token
    """

    id: str
    value: Any
    created_at: float
    origin_node_id: str
    generation_level: int
    is_root: bool
    operation: OperationInfo | None = None
    contribution_path: tuple[str, ...] = ()
    complete_history: tuple[HistoryEntry, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "value": self.value,
            "createdAt": self.created_at,
            "originNodeId": self.origin_node_id,
            "generationLevel": self.generation_level,
            "isRoot": self.is_root,
            "operation": _operation_dict(self.operation),
            "contributionPath": list(self.contribution_path),
            "completeHistory": [entry.to_dict() for entry in self.complete_history],
        }


@dataclass(frozen=True, slots=True)
class DescendantToken:
    id: str
    value: Any
    created_at: float
    origin_node_id: str
    generation_level: int
    operation: OperationInfo | None = None
    derivation_path: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "value": self.value,
            "createdAt": self.created_at,
            "originNodeId": self.origin_node_id,
            "generationLevel": self.generation_level,
            "operation": _operation_dict(self.operation),
            "derivationPath": list(self.derivation_path),
        }


@dataclass(frozen=True, slots=True)
class SourceContribution:
    """Share of the target's value attributed to one root ancestor."""

    source_token_id: str
    source_node_id: str
    original_value: Any
    proportional_contribution: float
    contribution_path: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceTokenId": self.source_token_id,
            "sourceNodeId": self.source_node_id,
            "originalValue": self.original_value,
            "proportionalContribution": self.proportional_contribution,
            "contributionPath": list(self.contribution_path),
        }


@dataclass(frozen=True, slots=True)
class GenerationLevel:
    level: int
    tokens: tuple[AncestorToken, ...]
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "tokens": [t.to_dict() for t in self.tokens],
            "description": self.description,
        }


@dataclass(frozen=True, slots=True)
class TokenLineage:
    """Complete reconstructed provenance of one token.

    Invariant: proportional contributions across source_contributions sum
    to at most 1.0.
    """

    target_token: Token
    immediate_parents: tuple[ParentToken, ...] = ()
    all_ancestors: tuple[AncestorToken, ...] = ()
    descendants: tuple[DescendantToken, ...] = ()
    source_contributions: tuple[SourceContribution, ...] = ()
    generation_levels: tuple[GenerationLevel, ...] = ()

    def ancestor_ids(self) -> frozenset[str]:
        return frozenset(a.id for a in self.all_ancestors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "targetToken": self.target_token.to_dict(),
            "immediateParents": [p.to_dict() for p in self.immediate_parents],
            "allAncestors": [a.to_dict() for a in self.all_ancestors],
            "descendants": [d.to_dict() for d in self.descendants],
            "sourceContributions": [c.to_dict() for c in self.source_contributions],
            "generationLevels": [g.to_dict() for g in self.generation_levels],
        }


@dataclass(frozen=True, slots=True)
class RecoveryOption:
    """One way a user can recover from a lineage error.

    Attributes:
        id: Stable identifier, e.g. "break_cycle"
        label: Short button text
        description: What choosing the option does
        action: Kind of recovery
        recommended: Whether this is the suggested option
        estimated_time_ms: Rough cost estimate, if known
    """

    id: str
    label: str
    description: str
    action: RecoveryActionType
    recommended: bool = False
    estimated_time_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "action": self.action.value,
            "recommended": self.recommended,
        }
        if self.estimated_time_ms is not None:
            data["estimatedTime"] = self.estimated_time_ms
        return data


@dataclass(frozen=True, slots=True)
class LineageError:
    """A typed lineage reconstruction failure.

    Lineage errors are returned as data, never raised.
    """

    type: LineageErrorType
    severity: Severity
    token_id: str
    message: str
    technical_details: str
    affected_tokens: tuple[str, ...]
    suggested_action: str
    recovery_options: tuple[RecoveryOption, ...]
    timestamp: float
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.type.is_retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "tokenId": self.token_id,
            "message": self.message,
            "technicalDetails": self.technical_details,
            "affectedTokens": list(self.affected_tokens),
            "suggestedAction": self.suggested_action,
            "recoveryOptions": [o.to_dict() for o in self.recovery_options],
            "timestamp": self.timestamp,
            "context": dict(self.context),
        }


@dataclass(frozen=True, slots=True)
class LineageWarning:
    type: LineageWarningType
    message: str
    token_id: str
    affected_tokens: tuple[str, ...] = ()
    suggestion: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "tokenId": self.token_id,
            "affectedTokens": list(self.affected_tokens),
            "suggestion": self.suggestion,
        }


@dataclass(frozen=True, slots=True)
class LineageResult:
    """Outcome of a lineage trace.

    Attributes:
        lineage: The (possibly partial) lineage, or None when nothing usable
            could be built
        errors: Lineage errors encountered
        warnings: Non-fatal findings
        partial: True when a budget, a cycle or missing data cut the trace short
        computation_time_ms: Clock time spent tracing
        tokens_processed: Tokens visited during traversal
    """

    lineage: TokenLineage | None
    errors: tuple[LineageError, ...] = ()
    warnings: tuple[LineageWarning, ...] = ()
    partial: bool = False
    computation_time_ms: float = 0.0
    tokens_processed: int = 0

    @property
    def ok(self) -> bool:
        return self.lineage is not None and not self.errors

    def has_error(self, error_type: LineageErrorType) -> bool:
        return any(e.type == error_type for e in self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lineage": self.lineage.to_dict() if self.lineage is not None else None,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "partial": self.partial,
            "computationTime": self.computation_time_ms,
            "tokensProcessed": self.tokens_processed,
        }


@dataclass(frozen=True, slots=True)
class LineageValidation:
    """Result of validate_lineage(): errors make it invalid, warnings don't."""

    errors: tuple[LineageError, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True, slots=True)
class GraphStats:
    node_count: int
    edge_count: int
    root_count: int
    leaf_count: int
    max_depth: int
    has_cycles: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeCount": self.node_count,
            "edgeCount": self.edge_count,
            "rootCount": self.root_count,
            "leafCount": self.leaf_count,
            "maxDepth": self.max_depth,
            "hasCycles": self.has_cycles,
        }
