"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to
core/engine/lineage. Settings classes are NOT re-exported here; import
them from tokensim.core.config.

Import patterns:
    from tokensim.contracts import HistoryEntry, Token, TokenLineage
    from tokensim.core.config import TokensimSettings
"""

from tokensim.contracts.definitions import (
    Action,
    ActionOutput,
    EnhancedFSMDefinition,
    EnhancedState,
    EnhancedTransition,
    InterpretationRule,
)
from tokensim.contracts.enums import (
    ActionOutcome,
    ActionTrigger,
    AggregationMethod,
    CanonicalEvent,
    CanonicalState,
    ErrorPolicy,
    EventSourceType,
    LineageErrorType,
    LogEventType,
    NodeKind,
    OutputType,
    Severity,
    StateType,
    TransitionTriggerType,
)
from tokensim.contracts.errors import (
    ActionExecutionError,
    ActionTimeoutError,
    DefinitionError,
    InterpretationError,
    MissingAIClientError,
    UnknownNodeError,
    UnsupportedNodeType,
)
from tokensim.contracts.events import (
    ActionExecuted,
    CircuitBreakerTripped,
    FeedbackBlocked,
    LazyNodesLoaded,
    StateTransitioned,
)
from tokensim.contracts.feedback import (
    CircuitBreakerConfig,
    FeedbackDecision,
    FeedbackLoop,
    FeedbackLoopConfig,
    FeedbackMetrics,
    FeedbackRoutingConfig,
)
from tokensim.contracts.fsm import (
    AnalysisResult,
    AnnotatedLogEntry,
    CanonicalTransition,
    ConsistencyReport,
    LogEvent,
    RuntimeState,
    StateMachineTemplate,
)
from tokensim.contracts.history import HistoryEntry, SourceTokenSummary, Token
from tokensim.contracts.lineage import (
    AncestorToken,
    DescendantToken,
    GenerationLevel,
    LineageError,
    LineageResult,
    LineageWarning,
    RecoveryOption,
    SourceContribution,
    TokenLineage,
)
from tokensim.contracts.runtime import (
    ActionContext,
    ActionExecutionResult,
    EnhancedNodeState,
    Event,
    InterpretationResult,
    Message,
    TickResult,
)

__all__ = [
    # definitions
    "Action",
    "ActionOutput",
    "EnhancedFSMDefinition",
    "EnhancedState",
    "EnhancedTransition",
    "InterpretationRule",
    # enums
    "ActionOutcome",
    "ActionTrigger",
    "AggregationMethod",
    "CanonicalEvent",
    "CanonicalState",
    "ErrorPolicy",
    "EventSourceType",
    "LineageErrorType",
    "LogEventType",
    "NodeKind",
    "OutputType",
    "Severity",
    "StateType",
    "TransitionTriggerType",
    # errors
    "ActionExecutionError",
    "ActionTimeoutError",
    "DefinitionError",
    "InterpretationError",
    "MissingAIClientError",
    "UnknownNodeError",
    "UnsupportedNodeType",
    # events
    "ActionExecuted",
    "CircuitBreakerTripped",
    "FeedbackBlocked",
    "LazyNodesLoaded",
    "StateTransitioned",
    # feedback
    "CircuitBreakerConfig",
    "FeedbackDecision",
    "FeedbackLoop",
    "FeedbackLoopConfig",
    "FeedbackMetrics",
    "FeedbackRoutingConfig",
    # fsm
    "AnalysisResult",
    "AnnotatedLogEntry",
    "CanonicalTransition",
    "ConsistencyReport",
    "LogEvent",
    "RuntimeState",
    "StateMachineTemplate",
    # history
    "HistoryEntry",
    "SourceTokenSummary",
    "Token",
    # lineage
    "AncestorToken",
    "DescendantToken",
    "GenerationLevel",
    "LineageError",
    "LineageResult",
    "LineageWarning",
    "RecoveryOption",
    "SourceContribution",
    "TokenLineage",
    # runtime
    "ActionContext",
    "ActionExecutionResult",
    "EnhancedNodeState",
    "Event",
    "InterpretationResult",
    "Message",
    "TickResult",
]
