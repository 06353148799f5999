"""Exception types that cross subsystem boundaries.

Only configuration problems and action failures are raised. Replay
consistency problems and lineage failures are DATA (recorded in reports
and result objects) so callers can degrade gracefully instead of aborting
a whole session.
"""


class UnsupportedNodeType(ValueError):
    """Raised when a node config names a type with no canonical state machine."""

    def __init__(self, node_type: str) -> None:
        self.node_type = node_type
        super().__init__(f"Unknown node type: {node_type}")


class DefinitionError(ValueError):
    """Raised when an enhanced FSM definition is structurally invalid.

    Collects every problem found so a single validation pass reports them all.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("Invalid FSM definition: " + "; ".join(problems))


class UnknownNodeError(KeyError):
    """Raised when the enhanced runtime is asked about a node it never registered."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not registered: {node_id}")


class InterpretationError(Exception):
    """Raised by an interpreter when a rule cannot be applied to an event.

    The interpretation engine catches these per rule and reports them in
    the InterpretationResult; they never escape interpret().
    """

    def __init__(self, rule_id: str, message: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id}: {message}")


class MissingAIClientError(InterpretationError):
    """Raised when an ai rule runs on an engine without an AI client."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(rule_id, "AI interpretation requested but no AI client is configured")


class ActionExecutionError(Exception):
    """Raised when an action output fails under an error policy that surfaces it."""

    def __init__(self, action_id: str, message: str) -> None:
        self.action_id = action_id
        super().__init__(f"Action {action_id} failed: {message}")


class ActionTimeoutError(ActionExecutionError):
    """Raised when an action output did not finish within the action's timeout."""

    def __init__(self, action_id: str, timeout_ms: float) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(action_id, f"timed out after {timeout_ms:g}ms")
