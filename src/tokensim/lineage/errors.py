"""Lineage error taxonomy, recovery options and retry bookkeeping.

Severity is a pure function of (error type, number of affected tokens):

    circular_reference   high if > 10 affected tokens, else medium
    missing_token        high if > 5, else medium
    incomplete_lineage   high if > 20, else medium
    performance_limit    medium
    computation_timeout  medium
    invalid_data         high
    network_error        low
    cache_error          low

The handler is an explicitly constructed instance; each genealogy engine
or UI session owns one.
"""

from __future__ import annotations

import json
import time
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from threading import Lock
from typing import Any

from tokensim.contracts.enums import (
    LineageErrorType,
    LineageWarningType,
    PerformanceLimitType,
    RecoveryActionType,
    Severity,
)
from tokensim.contracts.history import HistoryEntry, Token
from tokensim.contracts.lineage import (
    AncestorToken,
    GenerationLevel,
    LineageError,
    LineageWarning,
    ParentToken,
    RecoveryOption,
    TokenLineage,
)
from tokensim.core.config import LineageErrorConfig
from tokensim.core.logging import get_logger
from tokensim.lineage.graph import extract_token_id

logger = get_logger(__name__)

ERROR_HISTORY_LIMIT = 10

SLOW_COMPUTATION_MS = 10000
DEEP_LINEAGE_GENERATIONS = 20
LARGE_ANCESTOR_COUNT = 1000

_SEVERITY_THRESHOLDS: dict[LineageErrorType, int] = {
    LineageErrorType.CIRCULAR_REFERENCE: 10,
    LineageErrorType.MISSING_TOKEN: 5,
    LineageErrorType.INCOMPLETE_LINEAGE: 20,
}

_FIXED_SEVERITY: dict[LineageErrorType, Severity] = {
    LineageErrorType.PERFORMANCE_LIMIT: Severity.MEDIUM,
    LineageErrorType.COMPUTATION_TIMEOUT: Severity.MEDIUM,
    LineageErrorType.INVALID_DATA: Severity.HIGH,
    LineageErrorType.NETWORK_ERROR: Severity.LOW,
    LineageErrorType.CACHE_ERROR: Severity.LOW,
}

_RECOVERY_OPTIONS: dict[LineageErrorType, tuple[RecoveryOption, ...]] = {
    LineageErrorType.CIRCULAR_REFERENCE: (
        RecoveryOption(
            id="break_cycle",
            label="Break Circular Reference",
            description="Remove the circular dependency and show partial lineage",
            action=RecoveryActionType.PARTIAL,
            recommended=True,
            estimated_time_ms=2000,
        ),
        RecoveryOption(
            id="skip_problematic",
            label="Skip Problematic Tokens",
            description="Exclude tokens involved in the circular reference",
            action=RecoveryActionType.SKIP,
        ),
    ),
    LineageErrorType.MISSING_TOKEN: (
        RecoveryOption(
            id="show_partial",
            label="Show Partial Lineage",
            description="Display available lineage information without missing tokens",
            action=RecoveryActionType.PARTIAL,
            recommended=True,
            estimated_time_ms=1000,
        ),
        RecoveryOption(
            id="retry_with_refresh",
            label="Retry with Data Refresh",
            description="Refresh simulation data and retry lineage computation",
            action=RecoveryActionType.RETRY,
            estimated_time_ms=5000,
        ),
    ),
    LineageErrorType.INCOMPLETE_LINEAGE: (
        RecoveryOption(
            id="show_available",
            label="Show Available Lineage",
            description="Display the lineage information that could be computed",
            action=RecoveryActionType.PARTIAL,
            recommended=True,
            estimated_time_ms=1500,
        ),
        RecoveryOption(
            id="fallback_simple",
            label="Use Simple Lineage",
            description="Fall back to basic parent-child relationships",
            action=RecoveryActionType.FALLBACK,
            estimated_time_ms=500,
        ),
    ),
    LineageErrorType.PERFORMANCE_LIMIT: (
        RecoveryOption(
            id="reduce_scope",
            label="Reduce Scope",
            description="Limit the lineage depth or number of tokens processed",
            action=RecoveryActionType.PARTIAL,
            recommended=True,
            estimated_time_ms=3000,
        ),
        RecoveryOption(
            id="background_compute",
            label="Compute in Background",
            description="Process the full lineage in the background",
            action=RecoveryActionType.RETRY,
            estimated_time_ms=30000,
        ),
    ),
    LineageErrorType.COMPUTATION_TIMEOUT: (
        RecoveryOption(
            id="extend_timeout",
            label="Extend Timeout",
            description="Increase the computation timeout and retry",
            action=RecoveryActionType.RETRY,
            recommended=True,
            estimated_time_ms=60000,
        ),
        RecoveryOption(
            id="partial_result",
            label="Use Partial Result",
            description="Display the lineage computed before timeout",
            action=RecoveryActionType.PARTIAL,
        ),
    ),
}

_DEFAULT_RECOVERY: tuple[RecoveryOption, ...] = (
    RecoveryOption(
        id="retry_default",
        label="Retry",
        description="Retry the lineage computation",
        action=RecoveryActionType.RETRY,
        recommended=True,
        estimated_time_ms=5000,
    ),
)

_SEVERITY_PREFIX: dict[Severity, str] = {
    Severity.CRITICAL: "[CRITICAL]",
    Severity.HIGH: "[HIGH]",
    Severity.MEDIUM: "[WARNING]",
    Severity.LOW: "[INFO]",
}


def determine_severity(error_type: LineageErrorType, affected_count: int) -> Severity:
    if error_type in _SEVERITY_THRESHOLDS:
        return Severity.HIGH if affected_count > _SEVERITY_THRESHOLDS[error_type] else Severity.MEDIUM
    return _FIXED_SEVERITY.get(error_type, Severity.MEDIUM)


def recovery_options_for(error_type: LineageErrorType) -> tuple[RecoveryOption, ...]:
    """Ranked recovery options; the recommended one comes first."""
    return _RECOVERY_OPTIONS.get(error_type, _DEFAULT_RECOVERY)


def suggested_action_for(error_type: LineageErrorType, severity: Severity) -> str:
    match error_type:
        case LineageErrorType.CIRCULAR_REFERENCE if severity == Severity.HIGH:
            return "Review the simulation logic to eliminate circular dependencies between tokens"
        case LineageErrorType.CIRCULAR_REFERENCE:
            return "Consider showing partial lineage without the circular reference"
        case LineageErrorType.MISSING_TOKEN:
            return "Verify that all referenced tokens exist in the simulation history"
        case LineageErrorType.INCOMPLETE_LINEAGE:
            return "Check for missing or corrupted simulation data"
        case LineageErrorType.PERFORMANCE_LIMIT:
            return "Consider reducing the lineage scope or increasing performance limits"
        case LineageErrorType.COMPUTATION_TIMEOUT:
            return "Try increasing the computation timeout or reducing the lineage complexity"
        case _:
            return "Try refreshing the data or contact support if the issue persists"


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


def _iso(timestamp_ms: float) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=UTC).isoformat()


class LineageErrorHandler:
    """Builds typed lineage errors and tracks per-token error history and retries.

    Error history keeps the last ERROR_HISTORY_LIMIT errors per token.
    Retry counters are per token and only change through
    record_retry_attempt() and reset_retry_counter().
    """

    def __init__(
        self,
        config: LineageErrorConfig | None = None,
        *,
        wall_clock: Callable[[], float] = _wall_clock_ms,
    ) -> None:
        self._config = config or LineageErrorConfig()
        self._wall_clock = wall_clock
        self._history: dict[str, deque[LineageError]] = {}
        self._retry_attempts: dict[str, int] = {}
        self._lock = Lock()

    @property
    def config(self) -> LineageErrorConfig:
        return self._config

    def update_config(self, **changes: Any) -> LineageErrorConfig:
        """Replace individual config fields, re-validating the result.

        Raises:
            pydantic.ValidationError: If a changed value is invalid
        """
        self._config = LineageErrorConfig.model_validate({**self._config.model_dump(), **changes})
        return self._config

    def create_error(
        self,
        error_type: LineageErrorType,
        token_id: str,
        message: str,
        affected_tokens: Sequence[str] = (),
        context: dict[str, Any] | None = None,
    ) -> LineageError:
        """Create a lineage error and append it to the token's history.

        Severity is derived from the number of additionally affected
        tokens; the error's own affected_tokens list starts with token_id.
        """
        context = dict(context or {})
        severity = determine_severity(error_type, len(affected_tokens))
        timestamp = self._wall_clock()
        error = LineageError(
            type=error_type,
            severity=severity,
            token_id=token_id,
            message=message,
            technical_details=self._technical_details(error_type, timestamp, context),
            affected_tokens=(token_id, *affected_tokens),
            suggested_action=suggested_action_for(error_type, severity),
            recovery_options=recovery_options_for(error_type),
            timestamp=timestamp,
            context=context,
        )
        with self._lock:
            history = self._history.setdefault(token_id, deque(maxlen=ERROR_HISTORY_LIMIT))
            history.append(error)

        logger.warning(
            "lineage_error",
            error_type=error_type.value,
            token_id=token_id,
            severity=severity.value,
            affected=len(error.affected_tokens),
        )
        return error

    @staticmethod
    def _technical_details(error_type: LineageErrorType, timestamp: float, context: dict[str, Any]) -> str:
        lines = [f"Error Type: {error_type.value}", f"Timestamp: {_iso(timestamp)}"]
        lines.extend(f"{key}: {json.dumps(value, default=str)}" for key, value in context.items())
        return "\n".join(lines)

    def handle_circular_reference(
        self, token_id: str, cycle: Sequence[str], context: dict[str, Any] | None = None
    ) -> LineageError:
        chain = " -> ".join([*cycle, cycle[0]]) if cycle else token_id
        return self.create_error(
            LineageErrorType.CIRCULAR_REFERENCE,
            token_id,
            f"Circular reference detected in token lineage: {chain}",
            cycle,
            {"cycle": list(cycle), **(context or {})},
        )

    def handle_missing_token(
        self, token_id: str, referencing_tokens: Sequence[str] = (), context: dict[str, Any] | None = None
    ) -> LineageError:
        return self.create_error(
            LineageErrorType.MISSING_TOKEN,
            token_id,
            f"Token {token_id} not found in simulation history",
            referencing_tokens,
            {"referencingTokens": list(referencing_tokens), **(context or {})},
        )

    def handle_incomplete_lineage(
        self, token_id: str, missing_links: Sequence[str], context: dict[str, Any] | None = None
    ) -> LineageError:
        return self.create_error(
            LineageErrorType.INCOMPLETE_LINEAGE,
            token_id,
            f"Incomplete lineage chain detected. Missing tokens: {', '.join(missing_links)}",
            missing_links,
            {"missingLinks": list(missing_links), **(context or {})},
        )

    def handle_performance_limit(
        self,
        token_id: str,
        limit_type: PerformanceLimitType,
        actual_value: float,
        limit_value: float,
        context: dict[str, Any] | None = None,
    ) -> LineageError:
        return self.create_error(
            LineageErrorType.PERFORMANCE_LIMIT,
            token_id,
            f"Performance limit exceeded: {limit_type.value} ({actual_value} > {limit_value})",
            (),
            {"limitType": limit_type.value, "actualValue": actual_value, "limitValue": limit_value, **(context or {})},
        )

    def handle_computation_timeout(
        self, token_id: str, timeout_ms: float, context: dict[str, Any] | None = None
    ) -> LineageError:
        return self.create_error(
            LineageErrorType.COMPUTATION_TIMEOUT,
            token_id,
            f"Lineage computation timed out after {timeout_ms}ms",
            (),
            {"timeoutMs": timeout_ms, **(context or {})},
        )

    def get_error_history(self, token_id: str) -> list[LineageError]:
        with self._lock:
            return list(self._history.get(token_id, ()))

    def should_retry(self, token_id: str, error: LineageError) -> bool:
        """Whether a failed trace for token_id may be retried.

        Never for circular_reference or invalid_data, never when the retry
        mechanism is disabled, and never past max_retry_attempts.
        """
        if not self._config.enable_retry_mechanism:
            return False
        with self._lock:
            attempts = self._retry_attempts.get(token_id, 0)
        if attempts >= self._config.max_retry_attempts:
            return False
        return error.retryable

    def record_retry_attempt(self, token_id: str) -> int:
        with self._lock:
            attempts = self._retry_attempts.get(token_id, 0) + 1
            self._retry_attempts[token_id] = attempts
        return attempts

    def reset_retry_counter(self, token_id: str) -> None:
        with self._lock:
            self._retry_attempts.pop(token_id, None)

    def retry_attempts(self, token_id: str) -> int:
        with self._lock:
            return self._retry_attempts.get(token_id, 0)

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
            self._retry_attempts.clear()

    def generate_warnings(
        self,
        token_id: str,
        lineage: TokenLineage,
        computation_time_ms: float,
    ) -> list[LineageWarning]:
        warnings: list[LineageWarning] = []

        if self._config.enable_performance_warnings and computation_time_ms > SLOW_COMPUTATION_MS:
            warnings.append(
                LineageWarning(
                    type=LineageWarningType.PERFORMANCE,
                    message=f"Lineage computation took {computation_time_ms}ms, which may impact user experience",
                    token_id=token_id,
                    affected_tokens=(token_id,),
                    suggestion="Consider enabling caching or reducing lineage depth",
                )
            )

        if len(lineage.generation_levels) > DEEP_LINEAGE_GENERATIONS:
            warnings.append(
                LineageWarning(
                    type=LineageWarningType.PERFORMANCE,
                    message=f"Very deep lineage detected ({len(lineage.generation_levels)} generations)",
                    token_id=token_id,
                    affected_tokens=(token_id,),
                    suggestion="Consider limiting the lineage depth for better performance",
                )
            )

        if len(lineage.all_ancestors) > LARGE_ANCESTOR_COUNT:
            warnings.append(
                LineageWarning(
                    type=LineageWarningType.PERFORMANCE,
                    message=f"Large number of ancestor tokens ({len(lineage.all_ancestors)})",
                    token_id=token_id,
                    affected_tokens=(token_id,),
                    suggestion="Consider using pagination or filtering for better user experience",
                )
            )

        without_history = [a.id for a in lineage.all_ancestors if not a.complete_history]
        if without_history:
            warnings.append(
                LineageWarning(
                    type=LineageWarningType.DATA_QUALITY,
                    message=f"{len(without_history)} tokens have incomplete history data",
                    token_id=token_id,
                    affected_tokens=tuple(without_history),
                    suggestion="Some lineage details may be missing due to incomplete history",
                )
            )

        return warnings

    @staticmethod
    def create_partial_lineage(
        target_token: Token,
        *,
        immediate_parents: Sequence[ParentToken] = (),
        some_ancestors: Sequence[AncestorToken] = (),
    ) -> TokenLineage:
        """Assemble a lineage from whatever was computed before a failure.

        Descendants and source contributions are left empty.
        """
        by_level: dict[int, list[AncestorToken]] = {}
        for ancestor in some_ancestors:
            by_level.setdefault(ancestor.generation_level, []).append(ancestor)
        levels = tuple(
            GenerationLevel(level=level, tokens=tuple(tokens), description=f"Generation {level} (partial data)")
            for level, tokens in sorted(by_level.items())
        )
        return TokenLineage(
            target_token=target_token,
            immediate_parents=tuple(immediate_parents),
            all_ancestors=tuple(some_ancestors),
            generation_levels=levels,
        )

    def validate_lineage_data(self, entries: Iterable[HistoryEntry]) -> list[LineageError]:
        """Report every source token id that no log entry ever names."""
        token_ids: set[str] = set()
        references: dict[str, tuple[str, ...]] = {}
        for entry in entries:
            token_id = extract_token_id(entry.details)
            if token_id is None:
                continue
            token_ids.add(token_id)
            if entry.source_token_ids:
                references[token_id] = entry.source_token_ids

        errors: list[LineageError] = []
        for token_id, source_ids in references.items():
            for source_id in source_ids:
                if source_id not in token_ids:
                    errors.append(
                        self.handle_missing_token(
                            source_id,
                            [token_id],
                            {"referencedBy": token_id, "validationContext": "data_validation"},
                        )
                    )
        return errors


def format_error_message(error: LineageError) -> str:
    return f"{_SEVERITY_PREFIX[error.severity]} {error.message}"


def format_technical_details(error: LineageError) -> str:
    lines = [
        f"Error ID: {error.type.value}",
        f"Token: {error.token_id}",
        f"Severity: {error.severity.value}",
        f"Timestamp: {_iso(error.timestamp)}",
        f"Affected Tokens: {', '.join(error.affected_tokens)}",
    ]
    if error.technical_details:
        lines.extend(["Technical Details:", error.technical_details])
    return "\n".join(lines)
