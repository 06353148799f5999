"""All node kinds, canonical states/events, and modes used across subsystem boundaries.

Canonical states and events are the fixed vocabulary the replay engine treats
as ground truth. Raw log text is mapped INTO this vocabulary, never the other
way around.
"""

from enum import StrEnum


class NodeKind(StrEnum):
    """Type of simulation node with a canonical state machine.

    Values match the node ``type`` string in scenario configuration.
    """

    QUEUE = "Queue"
    DATA_SOURCE = "DataSource"
    PROCESS_NODE = "ProcessNode"
    SINK = "Sink"


class CanonicalEvent(StrEnum):
    """Canonical event identifiers understood by every canonical state machine."""

    TOKEN_RECEIVED = "token_received"
    CAPACITY_REACHED = "capacity_reached"
    TIME_WINDOW_ELAPSED = "time_window_elapsed"
    AGGREGATION_COMPLETE = "aggregation_complete"
    TOKEN_SENT = "token_sent"
    INTERVAL_REACHED = "interval_reached"
    TOKEN_CREATED = "token_created"
    EMISSION_COMPLETE = "emission_complete"
    INPUTS_READY = "inputs_ready"
    CALCULATION_COMPLETE = "calculation_complete"
    OUTPUTS_COMPLETE = "outputs_complete"
    CONSUMPTION_COMPLETE = "consumption_complete"

    # Variable-update-only event. Never drives a transition, so a missing
    # transition for it is not a consistency error.
    CONSUME_TOKEN = "consume_token"


class CanonicalState(StrEnum):
    """Canonical state identifiers, grouped by node kind via their prefix."""

    QUEUE_IDLE = "queue_idle"
    QUEUE_ACCUMULATING = "queue_accumulating"
    QUEUE_PROCESSING = "queue_processing"
    QUEUE_EMITTING = "queue_emitting"

    SOURCE_IDLE = "source_idle"
    SOURCE_GENERATING = "source_generating"
    SOURCE_EMITTING = "source_emitting"

    PROCESS_IDLE = "process_idle"
    PROCESS_COLLECTING = "process_collecting"
    PROCESS_CALCULATING = "process_calculating"
    PROCESS_EMITTING = "process_emitting"

    SINK_IDLE = "sink_idle"
    SINK_PROCESSING = "sink_processing"


class GuardCondition(StrEnum):
    """Closed guard vocabulary for canonical transitions."""

    BUFFER_EMPTY = "buffer_empty"
    BUFFER_NOT_EMPTY = "buffer_not_empty"


class AggregationTriggerType(StrEnum):
    """What makes a Queue leave its accumulating state."""

    TIME = "time"
    CAPACITY = "capacity"
    COUNT = "count"


class AggregationMethod(StrEnum):
    """Aggregation formulas a Queue can apply to its buffered tokens."""

    SUM = "sum"
    AVERAGE = "average"
    COUNT = "count"
    FIRST = "first"
    LAST = "last"


class LogEventType(StrEnum):
    """Origin class of an activity log entry.

    EXTERNAL_EVENT entries came from outside the simulation (the scheduler
    or a user). EXECUTION_EVENT entries were produced by node execution and
    can be discarded by a "reset to external events" view.
    """

    EXTERNAL_EVENT = "external_event"
    EXECUTION_EVENT = "execution_event"


class EventSourceType(StrEnum):
    """Where an enhanced-FSM Event came from."""

    EXTERNAL = "external"
    INTERNAL = "internal"
    FEEDBACK = "feedback"


class StateType(StrEnum):
    """Role of a state in an enhanced FSM definition."""

    INITIAL = "initial"
    INTERMEDIATE = "intermediate"
    FINAL = "final"
    ERROR = "error"


class TransitionTriggerType(StrEnum):
    """Stimulus kinds an enhanced transition can react to."""

    MESSAGE = "message"
    EVENT = "event"
    TIMER = "timer"
    CONDITION = "condition"
    MANUAL = "manual"


class RuleMethodType(StrEnum):
    """Interpretation rule kinds shipped with the runtime.

    Additional kinds may be registered on the interpretation engine at
    runtime; these are only the built-in ones.
    """

    PATTERN = "pattern"
    FORMULA = "formula"
    AI = "ai"
    SCRIPT = "script"
    PASSTHROUGH = "passthrough"


class ActionTrigger(StrEnum):
    """When an action runs relative to the state machine."""

    ON_ENTRY = "onEntry"
    ON_EXIT = "onExit"
    ON_TRANSITION = "onTransition"
    ON_MESSAGE = "onMessage"
    ON_EVENT = "onEvent"


class ErrorPolicy(StrEnum):
    """What to do when an action output fails.

    Values:
        STOP: Abort remaining actions in the batch and surface the error
        CONTINUE: Record the error and run the next action
        RETRY: Re-attempt up to retry_count times, then behave like CONTINUE
    """

    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"


class OutputType(StrEnum):
    """Kinds of action outputs."""

    EVENT = "event"
    MESSAGE = "message"
    TOKEN = "token"
    API_CALL = "api_call"
    LOG = "log"
    EMAIL = "email"
    VARIABLE = "variable"


class TargetStream(StrEnum):
    """Destination stream of an emitted event."""

    SELF = "self"
    EXTERNAL = "external"


class HttpMethod(StrEnum):
    """HTTP methods allowed in api_call outputs."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"


class ActionLogLevel(StrEnum):
    """Levels accepted by log outputs."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class VariableOperation(StrEnum):
    """How a variable output mutates its target."""

    SET = "set"
    INCREMENT = "increment"
    APPEND = "append"


class ActionOutcome(StrEnum):
    """Recorded outcome of one executed action."""

    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


class TokenOperationType(StrEnum):
    """How a token came into existence."""

    DATASOURCE_CREATION = "datasource_creation"
    AGGREGATION = "aggregation"
    TRANSFORMATION = "transformation"


class LineageErrorType(StrEnum):
    """Taxonomy of lineage reconstruction failures."""

    CIRCULAR_REFERENCE = "circular_reference"
    MISSING_TOKEN = "missing_token"
    INCOMPLETE_LINEAGE = "incomplete_lineage"
    PERFORMANCE_LIMIT = "performance_limit"
    COMPUTATION_TIMEOUT = "computation_timeout"
    INVALID_DATA = "invalid_data"
    NETWORK_ERROR = "network_error"
    CACHE_ERROR = "cache_error"

    @property
    def is_retryable(self) -> bool:
        """Retrying cannot fix structural problems in the data itself."""
        return self not in (LineageErrorType.CIRCULAR_REFERENCE, LineageErrorType.INVALID_DATA)


class Severity(StrEnum):
    """Severity of a lineage error."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryActionType(StrEnum):
    """Kind of recovery a lineage error can offer."""

    RETRY = "retry"
    PARTIAL = "partial"
    SKIP = "skip"
    FALLBACK = "fallback"
    MANUAL = "manual"


class LineageWarningType(StrEnum):
    """Non-fatal findings attached to a lineage result."""

    PERFORMANCE = "performance"
    DATA_QUALITY = "data_quality"
    INCOMPLETE_DATA = "incomplete_data"
    DEPRECATED_FEATURE = "deprecated_feature"


class PerformanceLimitType(StrEnum):
    """Which budget a lineage computation exhausted."""

    TIME = "time"
    DEPTH = "depth"
    TOKENS = "tokens"


class TraceEventRole(StrEnum):
    """Role of a log entry in a log-only token trace."""

    CREATION = "creation"
    INPUT = "input"
    CONSUMPTION = "consumption"
    OTHER = "other"
