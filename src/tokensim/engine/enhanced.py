"""EnhancedFSMRuntime: drives enhanced-FSM nodes one tick at a time.

Each node has two input streams: raw events and typed messages. A tick
runs in a fixed order:

1. Interpret buffered events into messages
2. Message-triggered transitions (at most one transition per message)
3. Event-triggered transitions for the events drained in step 1
4. Condition transitions (at most one)
5. Timer transitions: time in state >= trigger timeout (at most one)
6. State timeout: exit to the first error state once the state's own
   timeout has elapsed
7. Run pending actions that are due

When several transitions match one stimulus, the highest priority wins
and ties go to declaration order. A transition schedules its own actions,
then the onExit actions of the old state, then the onEntry actions of the
new state, all as one batch.

Actions never run inside the transition: they are queued as pending
actions and executed in step 7 (or later, if they carry a delay), so a
slow action cannot stall a node from accepting stimuli.

Feedback: events and messages an action routes to a node pass through the
FeedbackLoopManager. An admitted hop stays live until the receiving node
has finished the tick that consumed it; consequences computed in that
tick therefore see it in the execution's path.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from tokensim.contracts.definitions import (
    Action,
    ConditionTrigger,
    EnhancedFSMDefinition,
    EnhancedTransition,
    EventTrigger,
    ManualTrigger,
    MessageTrigger,
    TimerTrigger,
)
from tokensim.contracts.enums import ActionTrigger, ErrorPolicy, EventSourceType, LogEventType, OutputType, StateType
from tokensim.contracts.errors import ActionExecutionError, UnknownNodeError
from tokensim.contracts.events import ActionExecuted, FeedbackBlocked, StateTransitioned
from tokensim.contracts.runtime import (
    ActionContext,
    ActionExecutionResult,
    ActionHistoryEntry,
    EnhancedNodeState,
    Event,
    Message,
    NodeError,
    PendingAction,
    StateHistoryEntry,
    TickResult,
    TransitionRecord,
)
from tokensim.core.config import TokensimSettings
from tokensim.core.events import NullEventBus
from tokensim.core.history import ActivityLog
from tokensim.core.logging import get_logger, node_log_context
from tokensim.engine.actions import ActionExecutor, OutputDelivery
from tokensim.engine.clock import DEFAULT_CLOCK
from tokensim.engine.expression_parser import ExpressionCache, ExpressionError
from tokensim.engine.feedback import FeedbackLoopManager, FeedbackOutputType
from tokensim.engine.interpretation import AIClient, InterpretationEngine

if TYPE_CHECKING:
    from tokensim.contracts.feedback import FeedbackMetrics
    from tokensim.contracts.history import Token
    from tokensim.core.events import EventBusProtocol
    from tokensim.engine.clock import Clock

logger = get_logger(__name__)

GUARD_NAMES = (
    "variables",
    "state",
    "current_state",
    "previous_state",
    "message",
    "event",
    "buffer_sizes",
    "time_in_state",
)

TOKEN_RECEIVED = "token_received"
DEFAULT_INPUT = "default"

TokenRouter = Callable[["Token", str | None, str | None], None]
EmailSender = Callable[[dict[str, Any]], None]


@dataclass(frozen=True, slots=True)
class _Firing:
    """A transition about to fire; also covers the synthetic state-timeout exit."""

    id: str
    from_state: str
    to_state: str
    trigger: str
    actions: tuple[Action, ...] = ()

    @classmethod
    def of(cls, transition: EnhancedTransition) -> _Firing:
        return cls(
            id=transition.id,
            from_state=transition.from_state,
            to_state=transition.to_state,
            trigger=transition.trigger.type,
            actions=transition.actions,
        )


@dataclass(frozen=True, slots=True)
class _Stimulus:
    execution_id: str
    message: Message | None = None
    event: Event | None = None


@dataclass(slots=True)
class _Node:
    node_id: str
    definition: EnhancedFSMDefinition
    state: EnhancedNodeState
    interpreter: InterpretationEngine
    execution_id: str


class EnhancedFSMRuntime:
    """Owns the runtime state of every registered enhanced-FSM node.

    All node state is mutated on the thread calling process_tick() /
    trigger_manual(). Only I/O action outputs run elsewhere (see
    ActionExecutor), and their handlers touch nothing but the activity log.

    Example:
        runtime = EnhancedFSMRuntime(clock=clock)
        runtime.register_node("fsm_1", definition)
        runtime.add_event("fsm_1", Event(id="e1", type="sensor", timestamp=0, raw_data="temp=30"))
        result = runtime.process_tick("fsm_1")
    """

    def __init__(
        self,
        *,
        settings: TokensimSettings | None = None,
        feedback_manager: FeedbackLoopManager | None = None,
        action_executor: ActionExecutor | None = None,
        activity_log: ActivityLog | None = None,
        ai_client: AIClient | None = None,
        clock: Clock | None = None,
        event_bus: EventBusProtocol | None = None,
        token_router: TokenRouter | None = None,
        email_sender: EmailSender | None = None,
    ) -> None:
        """Initialize the runtime.

        Args:
            settings: Feedback, action and retry configuration
            feedback_manager: Shared admission control; built from settings if omitted
            action_executor: Executor for actions; built from settings if omitted
            activity_log: Log the runtime appends execution entries to
            ai_client: Client for ai interpretation rules
            clock: Time source (virtual in tests)
            event_bus: Receives StateTransitioned, ActionExecuted and FeedbackBlocked
            token_router: Delivers token outputs to nodes this runtime does not own
            email_sender: Delivers email outputs; signals failure with ActionExecutionError
        """
        settings = settings if settings is not None else TokensimSettings()
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._event_bus: EventBusProtocol = event_bus if event_bus is not None else NullEventBus()
        self._feedback = (
            feedback_manager
            if feedback_manager is not None
            else FeedbackLoopManager(settings.feedback, clock=self._clock, event_bus=self._event_bus)
        )
        self._owns_executor = action_executor is None
        self._executor = (
            action_executor
            if action_executor is not None
            else ActionExecutor(settings.actions, retry_settings=settings.retry)
        )
        self._activity = activity_log if activity_log is not None else ActivityLog()
        self._ai_client = ai_client
        self._token_router = token_router
        self._email_sender = email_sender

        self._nodes: dict[str, _Node] = {}
        self._guards = ExpressionCache(GUARD_NAMES)
        # Stimulus id -> (execution id, loop id) for events/messages that arrived as feedback
        self._origins: dict[str, tuple[str, str | None]] = {}

        self._executor.register_output_handler(OutputType.EVENT, self._deliver_event)
        self._executor.register_output_handler(OutputType.MESSAGE, self._deliver_message)
        self._executor.register_output_handler(OutputType.TOKEN, self._deliver_token)
        self._executor.register_output_handler(OutputType.LOG, self._deliver_log)
        self._executor.register_output_handler(OutputType.EMAIL, self._deliver_email)

    @property
    def feedback_manager(self) -> FeedbackLoopManager:
        return self._feedback

    @property
    def activity_log(self) -> ActivityLog:
        return self._activity

    @property
    def node_ids(self) -> list[str]:
        return list(self._nodes)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_node(self, node_id: str, definition: EnhancedFSMDefinition) -> EnhancedNodeState:
        """Validate definition and start node_id in its initial state.

        The initial state's onEntry actions are queued for the first tick.
        A definition carrying a feedback config replaces the shared
        manager's config.

        Raises:
            DefinitionError: If the definition's ids or references are invalid
            ValueError: If node_id is already registered
        """
        definition.validate_structure()
        if node_id in self._nodes:
            raise ValueError(f"Node '{node_id}' is already registered")

        now = self._clock.now_ms()
        initial = definition.state(definition.initial_state)
        assert initial is not None  # validate_structure() guarantees it
        state = EnhancedNodeState(
            current_state=initial.id,
            state_changed_at=now,
            variables=copy.deepcopy(definition.variables),
            state_variables=copy.deepcopy(initial.variables or {}),
            state_history=[StateHistoryEntry(state=initial.id, entered_at=now)],
        )
        node = _Node(
            node_id=node_id,
            definition=definition,
            state=state,
            interpreter=InterpretationEngine(definition.interpretation_rules, ai_client=self._ai_client, clock=self._clock),
            execution_id=_new_execution_id(),
        )
        self._nodes[node_id] = node

        if definition.feedback_config is not None:
            self._feedback.update_config(definition.feedback_config)
            logger.info("feedback_config_applied", node_id=node_id)

        entry_actions = [a for a in initial.actions if a.trigger == ActionTrigger.ON_ENTRY]
        if entry_actions:
            stimulus = _Stimulus(execution_id=node.execution_id)
            context = self._context(node, initial.id, "initial", stimulus, now)
            self._schedule(node, entry_actions, context, _new_batch_id(), now)

        logger.info("node_registered", node_id=node_id, initial_state=initial.id, states=len(definition.states))
        return state

    def unregister_node(self, node_id: str) -> None:
        """Drop a node and close its feedback execution.

        Feedback hops still buffered at the node are completed, so the
        executions that sent them get their depth back.
        """
        node = self._node(node_id)
        self._release_buffered_origins(node)
        self._feedback.force_close_feedback_execution(node.execution_id)
        self._forget_execution(node.execution_id)
        del self._nodes[node_id]

    def node_state(self, node_id: str) -> EnhancedNodeState:
        """Live state of a node.

        Raises:
            UnknownNodeError: If node_id is not registered
        """
        return self._node(node_id).state

    def _node(self, node_id: str) -> _Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise UnknownNodeError(node_id) from None

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def add_event(self, node_id: str, event: Event) -> None:
        self._node(node_id).state.event_buffer.append(event)

    def add_message(self, node_id: str, message: Message) -> None:
        self._node(node_id).state.message_buffer.append(message)

    def add_token(self, node_id: str, token: Token, input_name: str = DEFAULT_INPUT) -> Event:
        """Buffer a workflow token and wrap it into a token_received event.

        Returns:
            The internal event queued on the node's event stream
        """
        state = self._node(node_id).state
        state.token_buffers.setdefault(input_name, []).append(token)
        event = Event(
            id=f"evt_{uuid.uuid4().hex[:12]}",
            type=TOKEN_RECEIVED,
            timestamp=self._clock.now_ms(),
            raw_data={
                "token": token.to_dict(),
                "inputName": input_name,
                "value": token.value,
                "originNodeId": token.origin_node_id,
            },
            metadata={"inputName": input_name, "tokenId": token.id, "originNodeId": token.origin_node_id},
            source_type=EventSourceType.INTERNAL,
        )
        state.event_buffer.append(event)
        return event

    def trigger_manual(self, node_id: str, transition_id: str) -> bool:
        """Fire a manual transition and run the actions that are due.

        Returns:
            False if the transition is not manual, does not leave the current
            state, or its guard is false

        Raises:
            UnknownNodeError: If node_id is not registered
            ValueError: If the definition has no transition with transition_id
        """
        node = self._node(node_id)
        transition = next((t for t in node.definition.transitions if t.id == transition_id), None)
        if transition is None:
            raise ValueError(f"Node '{node_id}' has no transition '{transition_id}'")
        if not isinstance(transition.trigger, ManualTrigger) or transition.from_state != node.state.current_state:
            return False

        now = self._clock.now_ms()
        with node_log_context(node_id):
            if not self._guard_holds(node, transition, now):
                return False
            self._fire(node, _Firing.of(transition), _Stimulus(execution_id=node.execution_id), now)
            self._run_due_actions(node, now)
        return True

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def process_all(self) -> dict[str, TickResult]:
        """Tick every node once, in registration order."""
        return {node_id: self.process_tick(node_id) for node_id in list(self._nodes)}

    def process_tick(self, node_id: str) -> TickResult:
        """Run one tick of node_id.

        Raises:
            UnknownNodeError: If node_id is not registered
        """
        node = self._node(node_id)
        state = node.state
        now = self._clock.now_ms()
        transitions_before = len(state.transition_history)
        errors_before = len(state.errors)
        consumed_loops: list[tuple[str, str]] = []

        with node_log_context(node_id):
            # 1. Interpret events
            events = state.event_buffer
            state.event_buffer = []
            state.token_buffers = {}
            produced = 0
            for event in events:
                produced += self._interpret(node, event, now, consumed_loops)
            state.events_processed += len(events)

            # 2. Message-triggered transitions
            messages = state.message_buffer
            state.message_buffer = []
            for message in messages:
                stimulus = self._stimulus_for(node, message.id, consumed_loops)
                self._process_message(node, message, stimulus, now)
            state.messages_processed += len(messages)

            # 3. Event-triggered transitions
            for event in events:
                self._process_event(node, event, self._stimulus_for(node, event.id, []), now)

            # 4. Condition transitions
            self._process_conditions(node, now)

            # 5. Timer transitions
            self._process_timers(node, now)

            # 6. State timeout
            self._process_state_timeout(node, now)

            # 7. Due actions
            action_results = self._run_due_actions(node, now)

        for execution_id, loop_id in consumed_loops:
            self._feedback.complete_feedback_execution(execution_id, loop_id)

        return TickResult(
            node_id=node_id,
            transitions=tuple(state.transition_history[transitions_before:]),
            actions=tuple(action_results),
            messages_produced=produced,
            errors=tuple(e.message for e in state.errors[errors_before:]),
        )

    def _interpret(self, node: _Node, event: Event, now: float, consumed_loops: list[tuple[str, str]]) -> int:
        origin = self._origins.pop(event.id, None)
        if origin is not None and origin[1] is not None:
            consumed_loops.append((origin[0], origin[1]))
            # Keep the execution id for step 3 and for messages derived from this event
            self._origins[event.id] = (origin[0], None)

        result = node.interpreter.interpret(event)
        for error in result.errors:
            self._record_error(node, "interpretation_error", error, now, {"eventId": event.id})
        if result.errors:
            self._activity.append(
                node.node_id,
                "interpretation_error",
                now,
                value=len(result.errors),
                details=f"Event interpretation failed: {result.error}",
                event_type=LogEventType.EXECUTION_EVENT,
            )

        for message in result.messages:
            node.state.message_buffer.append(message)
            if origin is not None:
                self._origins[message.id] = (origin[0], None)
        if result.messages:
            self._activity.append(
                node.node_id,
                "event_interpreted",
                now,
                value=len(result.messages),
                details=f"Event {event.id} -> {len(result.messages)} messages",
                event_type=LogEventType.EXECUTION_EVENT,
            )
        return len(result.messages)

    def _stimulus_for(self, node: _Node, stimulus_id: str, consumed_loops: list[tuple[str, str]]) -> _Stimulus:
        origin = self._origins.pop(stimulus_id, None)
        if origin is None:
            return _Stimulus(execution_id=node.execution_id)
        execution_id, loop_id = origin
        if loop_id is not None:
            consumed_loops.append((execution_id, loop_id))
        return _Stimulus(execution_id=execution_id)

    def _process_message(self, node: _Node, message: Message, stimulus: _Stimulus, now: float) -> None:
        stimulus = replace(stimulus, message=message)
        self._schedule_state_actions(node, ActionTrigger.ON_MESSAGE, stimulus, now)
        candidates = [
            t
            for t in self._outgoing(node)
            if isinstance(t.trigger, MessageTrigger) and t.trigger.message_type == message.type
        ]
        chosen = self._select(node, candidates, now, message=message)
        if chosen is not None:
            self._fire(node, _Firing.of(chosen), stimulus, now)

    def _process_event(self, node: _Node, event: Event, stimulus: _Stimulus, now: float) -> None:
        stimulus = replace(stimulus, event=event)
        self._schedule_state_actions(node, ActionTrigger.ON_EVENT, stimulus, now)
        candidates = [
            t for t in self._outgoing(node) if isinstance(t.trigger, EventTrigger) and t.trigger.event_type == event.type
        ]
        chosen = self._select(node, candidates, now, event=event)
        if chosen is not None:
            self._fire(node, _Firing.of(chosen), stimulus, now)

    def _process_conditions(self, node: _Node, now: float) -> None:
        candidates = [t for t in self._outgoing(node) if isinstance(t.trigger, ConditionTrigger)]
        chosen = self._select(node, candidates, now)
        if chosen is not None:
            self._fire(node, _Firing.of(chosen), _Stimulus(execution_id=node.execution_id), now)

    def _process_timers(self, node: _Node, now: float) -> None:
        time_in_state = now - node.state.state_changed_at
        candidates = [
            t
            for t in self._outgoing(node)
            if isinstance(t.trigger, TimerTrigger) and time_in_state >= t.trigger.timeout
        ]
        chosen = self._select(node, candidates, now)
        if chosen is not None:
            self._fire(node, _Firing.of(chosen), _Stimulus(execution_id=node.execution_id), now)

    def _process_state_timeout(self, node: _Node, now: float) -> None:
        current = node.definition.state(node.state.current_state)
        if current is None or current.timeout is None:
            return
        if now - node.state.state_changed_at < current.timeout:
            return
        error_state = next((s for s in node.definition.states if s.type == StateType.ERROR), None)
        if error_state is None or error_state.id == current.id:
            logger.debug("state_timeout_without_error_state", state=current.id)
            return
        firing = _Firing(
            id=f"{current.id}_timeout",
            from_state=current.id,
            to_state=error_state.id,
            trigger="timeout",
        )
        self._record_error(node, "state_timeout", f"State {current.id} timed out after {current.timeout}ms", now)
        self._fire(node, firing, _Stimulus(execution_id=node.execution_id), now)

    # ------------------------------------------------------------------
    # Transition selection
    # ------------------------------------------------------------------

    def _outgoing(self, node: _Node) -> list[EnhancedTransition]:
        current = node.state.current_state
        return [t for t in node.definition.transitions if t.from_state == current]

    def _select(
        self,
        node: _Node,
        candidates: Sequence[EnhancedTransition],
        now: float,
        *,
        message: Message | None = None,
        event: Event | None = None,
    ) -> EnhancedTransition | None:
        """Highest-priority candidate whose condition and guard hold; ties keep declaration order."""
        best: EnhancedTransition | None = None
        for transition in candidates:
            if best is not None and transition.priority <= best.priority:
                continue
            if self._guard_holds(node, transition, now, message=message, event=event):
                best = transition
        return best

    def _guard_holds(
        self,
        node: _Node,
        transition: EnhancedTransition,
        now: float,
        *,
        message: Message | None = None,
        event: Event | None = None,
    ) -> bool:
        expressions = [transition.guard]
        if isinstance(transition.trigger, MessageTrigger | EventTrigger | ConditionTrigger):
            expressions.insert(0, transition.trigger.condition)
        context = self._guard_context(node, now, message=message, event=event)
        for expression in expressions:
            if not expression:
                continue
            try:
                if not self._guards.evaluate(expression, context):
                    return False
            except ExpressionError as e:
                self._record_error(
                    node,
                    "guard_error",
                    f"Guard of transition {transition.id} failed: {e}",
                    now,
                    {"transitionId": transition.id, "expression": expression},
                )
                return False
        return True

    def _guard_context(
        self,
        node: _Node,
        now: float,
        *,
        message: Message | None = None,
        event: Event | None = None,
    ) -> dict[str, Any]:
        state = node.state
        return {
            "variables": state.variables,
            "state": state.state_variables,
            "current_state": state.current_state,
            "previous_state": state.previous_state,
            "message": (
                {"type": message.type, "payload": message.payload, "confidence": message.confidence}
                if message is not None
                else None
            ),
            "event": (
                {"type": event.type, "data": event.raw_data, "metadata": event.metadata} if event is not None else None
            ),
            "buffer_sizes": state.buffer_sizes(),
            "time_in_state": now - state.state_changed_at,
        }

    # ------------------------------------------------------------------
    # Firing and scheduling
    # ------------------------------------------------------------------

    def _fire(self, node: _Node, firing: _Firing, stimulus: _Stimulus, now: float) -> None:
        state = node.state
        old_state = state.current_state
        new_state = firing.to_state
        old_definition = node.definition.state(old_state)
        new_definition = node.definition.state(new_state)
        old_state_variables = dict(state.state_variables)

        state.transition_history.append(
            TransitionRecord(
                transition_id=firing.id,
                from_state=old_state,
                to_state=new_state,
                timestamp=now,
                trigger=firing.trigger,
                message_id=stimulus.message.id if stimulus.message is not None else None,
                event_id=stimulus.event.id if stimulus.event is not None else None,
            )
        )
        if state.state_history:
            state.state_history[-1].exited_at = now
        state.state_history.append(StateHistoryEntry(state=new_state, entered_at=now, trigger=firing.trigger))
        state.previous_state = old_state
        state.current_state = new_state
        state.state_changed_at = now
        # Same dict object: queued contexts keep seeing the live state variables
        state.state_variables.clear()
        if new_definition is not None and new_definition.variables:
            state.state_variables.update(copy.deepcopy(new_definition.variables))

        self._activity.append(
            node.node_id,
            "state_transition",
            now,
            details=f"{old_state} -> {new_state} ({firing.trigger})",
            event_type=LogEventType.EXECUTION_EVENT,
            state=new_state,
        )
        logger.info(
            "state_transition",
            transition_id=firing.id,
            from_state=old_state,
            to_state=new_state,
            trigger=firing.trigger,
        )
        self._event_bus.emit(
            StateTransitioned(
                node_id=node.node_id,
                transition_id=firing.id,
                from_state=old_state,
                to_state=new_state,
                trigger=firing.trigger,
                timestamp=now,
            )
        )

        batch_id = _new_batch_id()
        entry_context = self._context(node, new_state, firing.trigger, stimulus, now)
        self._schedule(node, firing.actions, entry_context, batch_id, now)
        if old_definition is not None:
            exit_actions = [a for a in old_definition.actions if a.trigger == ActionTrigger.ON_EXIT]
            exit_context = self._context(
                node, old_state, firing.trigger, stimulus, now, state_variables=old_state_variables
            )
            self._schedule(node, exit_actions, exit_context, batch_id, now)
        if new_definition is not None:
            entry_actions = [a for a in new_definition.actions if a.trigger == ActionTrigger.ON_ENTRY]
            self._schedule(node, entry_actions, entry_context, batch_id, now)

    def _schedule_state_actions(self, node: _Node, trigger: ActionTrigger, stimulus: _Stimulus, now: float) -> None:
        current = node.definition.state(node.state.current_state)
        if current is None:
            return
        actions = [a for a in current.actions if a.trigger == trigger]
        if actions:
            context = self._context(node, current.id, trigger.value, stimulus, now)
            self._schedule(node, actions, context, _new_batch_id(), now)

    def _context(
        self,
        node: _Node,
        state_name: str,
        trigger: str,
        stimulus: _Stimulus,
        now: float,
        *,
        state_variables: dict[str, Any] | None = None,
    ) -> ActionContext:
        return ActionContext(
            node_id=node.node_id,
            state_name=state_name,
            variables=node.state.variables,
            state_variables=state_variables if state_variables is not None else node.state.state_variables,
            timestamp=now,
            execution_id=stimulus.execution_id,
            trigger=trigger,
            input_event=stimulus.event,
            input_message=stimulus.message,
        )

    @staticmethod
    def _schedule(node: _Node, actions: Iterable[Action], context: ActionContext, batch_id: str, now: float) -> None:
        for action in actions:
            node.state.pending_actions.append(
                PendingAction(
                    action=action,
                    scheduled_at=now,
                    execute_at=now + (action.delay or 0),
                    context=context,
                    batch_id=batch_id,
                )
            )

    # ------------------------------------------------------------------
    # Action execution
    # ------------------------------------------------------------------

    def _run_due_actions(self, node: _Node, now: float) -> list[ActionExecutionResult]:
        state = node.state
        due = sorted((p for p in state.pending_actions if p.execute_at <= now), key=lambda p: p.execute_at)
        state.pending_actions = [p for p in state.pending_actions if p.execute_at > now]

        results: list[ActionExecutionResult] = []
        stopped_batches: set[str] = set()
        for pending in due:
            if pending.batch_id in stopped_batches:
                logger.debug("action_skipped_after_stop", action_id=pending.action.id, batch_id=pending.batch_id)
                continue

            result = self._executor.execute_action(
                pending.action,
                pending.context,
                only_outputs=pending.output_ids,
                include_delayed=bool(pending.output_ids),
            )
            self._defer_outputs(node, pending, result, now)
            if result.skipped:
                continue
            results.append(result)
            self._record_action(node, pending, result, now)
            if not result.success and pending.action.on_error == ErrorPolicy.STOP:
                stopped_batches.add(pending.batch_id)
                self._drop_batch(node, pending.batch_id)
        return results

    @staticmethod
    def _drop_batch(node: _Node, batch_id: str) -> None:
        """Discard every still-scheduled action (delayed or deferred) of a stopped batch."""
        kept = [p for p in node.state.pending_actions if p.batch_id != batch_id]
        dropped = len(node.state.pending_actions) - len(kept)
        node.state.pending_actions = kept
        if dropped:
            logger.debug("action_batch_dropped", node_id=node.node_id, batch_id=batch_id, dropped=dropped)

    @staticmethod
    def _defer_outputs(node: _Node, pending: PendingAction, result: ActionExecutionResult, now: float) -> None:
        delays = {output.id: output.delay or 0 for output in pending.action.outputs}
        for output_id in result.deferred:
            node.state.pending_actions.append(
                PendingAction(
                    action=pending.action,
                    scheduled_at=now,
                    execute_at=now + delays[output_id],
                    context=pending.context,
                    batch_id=pending.batch_id,
                    output_ids=(output_id,),
                )
            )

    def _record_action(self, node: _Node, pending: PendingAction, result: ActionExecutionResult, now: float) -> None:
        action_id = pending.action.id
        node.state.action_history.append(
            ActionHistoryEntry(
                action_id=action_id,
                executed_at=now,
                result=result.outcome,
                outputs=result.outputs,
                error=result.error,
            )
        )
        if result.success:
            self._activity.append(
                node.node_id,
                "action_executed",
                now,
                value=len(result.outputs),
                details=f"Action {action_id}: success",
                event_type=LogEventType.EXECUTION_EVENT,
            )
        else:
            self._record_error(node, "action_error", result.error or "action failed", now, {"actionId": action_id})
            self._activity.append(
                node.node_id,
                "action_error",
                now,
                value=len(result.outputs),
                details=f"Action {action_id} failed: {result.error}",
                event_type=LogEventType.EXECUTION_EVENT,
            )
            if pending.action.on_error == ErrorPolicy.STOP:
                logger.error("action_batch_stopped", action_id=action_id, error=result.error)
        self._event_bus.emit(
            ActionExecuted(
                node_id=node.node_id,
                action_id=action_id,
                outcome=result.outcome,
                duration_ms=result.execution_time_ms,
                error=result.error,
            )
        )

    def _record_error(
        self,
        node: _Node,
        error_type: str,
        message: str,
        now: float,
        context: dict[str, Any] | None = None,
    ) -> None:
        node.state.errors.append(NodeError(timestamp=now, type=error_type, message=message, context=context or {}))
        logger.warning(error_type, node_id=node.node_id, message=message)

    # ------------------------------------------------------------------
    # Output delivery
    # ------------------------------------------------------------------

    def _admit(self, delivery: OutputDelivery, target: str, output_type: FeedbackOutputType) -> str | None:
        """Feedback admission for an event/message; returns the loop id or None if blocked."""
        if target not in self._nodes:
            raise ActionExecutionError(delivery.action_id, f"Unknown target node {target}")
        source = delivery.context.node_id
        execution_id = delivery.context.execution_id
        decision, loop_id = self._feedback.admit(source, target, execution_id, output_type)
        if loop_id is None:
            reason = decision.reason or "denied"
            logger.warning(
                "feedback_blocked",
                source_node_id=source,
                target_node_id=target,
                execution_id=execution_id,
                reason=reason,
            )
            self._activity.append(
                source,
                "feedback_blocked",
                delivery.context.timestamp,
                details=f"Feedback blocked: {reason}",
                event_type=LogEventType.EXECUTION_EVENT,
            )
            self._event_bus.emit(
                FeedbackBlocked(
                    source_node_id=source,
                    target_node_id=target,
                    execution_id=execution_id,
                    reason=reason,
                )
            )
        return loop_id

    def _deliver_event(self, delivery: OutputDelivery) -> None:
        event: Event = delivery.payload
        target = delivery.target_node_id
        if target is None:
            self._activity.append(
                delivery.context.node_id,
                "event_emitted",
                delivery.context.timestamp,
                details=f"Event {event.type} emitted to external stream",
                event_type=LogEventType.EXECUTION_EVENT,
            )
            return
        loop_id = self._admit(delivery, target, "event")
        if loop_id is None:
            return
        execution_id = delivery.context.execution_id
        event = replace(
            event,
            metadata={
                **event.metadata,
                "feedbackLoopId": loop_id,
                "feedbackDepth": self._feedback.get_depth(execution_id),
            },
        )
        self._origins[event.id] = (execution_id, loop_id)
        self._nodes[target].state.event_buffer.append(event)
        self._feedback.record_event(target, "event")

    def _deliver_message(self, delivery: OutputDelivery) -> None:
        message: Message = delivery.payload
        target = delivery.target_node_id or delivery.context.node_id
        loop_id = self._admit(delivery, target, "message")
        if loop_id is None:
            return
        self._origins[message.id] = (delivery.context.execution_id, loop_id)
        self._nodes[target].state.message_buffer.append(message)
        self._feedback.record_event(target, "message")

    def _deliver_token(self, delivery: OutputDelivery) -> None:
        token: Token = delivery.payload
        context = delivery.context
        source_ids: tuple[str, ...] = ()
        if context.input_event is not None and "tokenId" in context.input_event.metadata:
            source_ids = (context.input_event.metadata["tokenId"],)
        self._activity.append(
            context.node_id,
            "CREATED",
            context.timestamp,
            value=token.value,
            details=f"Token {token.id} created by action {delivery.action_id}",
            source_token_ids=source_ids,
            event_type=LogEventType.EXECUTION_EVENT,
            state=context.state_name,
        )

        target = delivery.target_node_id
        if self._token_router is not None:
            self._token_router(token, target, delivery.target_input_name)
        elif target is None:
            return
        elif target in self._nodes:
            self.add_token(target, token, delivery.target_input_name or DEFAULT_INPUT)
        else:
            raise ActionExecutionError(delivery.action_id, f"Unknown destination node {target}")

    def _deliver_log(self, delivery: OutputDelivery) -> None:
        entry = delivery.payload
        self._activity.append(
            delivery.context.node_id,
            "fsm_log",
            delivery.context.timestamp,
            details=entry["message"],
            event_type=LogEventType.EXECUTION_EVENT,
            state=delivery.context.state_name,
        )

    def _deliver_email(self, delivery: OutputDelivery) -> None:
        email = delivery.payload
        if self._email_sender is not None:
            self._email_sender(email)
        self._activity.append(
            delivery.context.node_id,
            "email_sent",
            delivery.context.timestamp,
            details=f"Email to {email['to']}: {email['subject']}",
            event_type=LogEventType.EXECUTION_EVENT,
        )

    # ------------------------------------------------------------------
    # Feedback and lifecycle
    # ------------------------------------------------------------------

    def get_feedback_metrics(self) -> FeedbackMetrics:
        return self._feedback.get_metrics()

    def reset_circuit_breaker(self, node_id: str) -> bool:
        return self._feedback.reset_circuit_breaker(node_id)

    def cleanup_execution(self, node_id: str) -> int:
        """Close node_id's feedback execution and start a fresh one.

        Returns:
            Number of open feedback loops closed
        """
        node = self._node(node_id)
        closed = self._feedback.force_close_feedback_execution(node.execution_id)
        self._forget_execution(node.execution_id)
        node.execution_id = _new_execution_id()
        return closed

    def _release_buffered_origins(self, node: _Node) -> None:
        stimulus_ids = [e.id for e in node.state.event_buffer] + [m.id for m in node.state.message_buffer]
        for stimulus_id in stimulus_ids:
            origin = self._origins.pop(stimulus_id, None)
            if origin is not None and origin[1] is not None:
                self._feedback.complete_feedback_execution(origin[0], origin[1])

    def _forget_execution(self, execution_id: str) -> None:
        """Stimuli sent under a closed execution run under their receiver's own one."""
        for stimulus_id in [s for s, (e, _) in self._origins.items() if e == execution_id]:
            del self._origins[stimulus_id]

    def close(self) -> None:
        """Release the action executor if this runtime created it."""
        if self._owns_executor:
            self._executor.close()

    def __enter__(self) -> EnhancedFSMRuntime:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _new_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex[:12]}"


def _new_batch_id() -> str:
    return uuid.uuid4().hex[:12]
