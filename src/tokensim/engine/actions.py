"""Action execution for enhanced FSM nodes.

An action is a list of outputs processed in order. Per output:

- ``condition`` false: the output is skipped, not failed
- ``delay`` > 0: the output is deferred; the runtime schedules it and the
  state machine keeps running
- otherwise it is built (event, message, token, log, email, variable,
  api_call) and handed to the handler registered for its type

Failures follow the action's ``on_error`` policy:

- STOP: remaining outputs are not run and execute_actions() stops the batch
- CONTINUE: the failure is recorded and the next output runs
- RETRY: the output is re-attempted up to ``retry_count`` times, honoring
  ``timeout`` per attempt, then the action behaves like CONTINUE

Outputs that talk to the outside world (api_call, email) run on a bounded
worker pool so a slow endpoint times out after ``timeout`` ms instead of
hanging the tick. For api_call only the HTTP exchange runs there; the
response mapping is applied on the caller's thread once the call returned
in time. All other outputs run inline, because they mutate the node's
variables.
"""

from __future__ import annotations

import re
import time
import uuid
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from tokensim.contracts.definitions import (
    Action,
    ActionOutput,
    ApiCallOutput,
    EmailOutput,
    EventOutput,
    LogOutput,
    MessageOutput,
    TokenOutput,
    VariableOutput,
)
from tokensim.contracts.enums import (
    ActionLogLevel,
    ActionOutcome,
    ActionTrigger,
    ErrorPolicy,
    EventSourceType,
    OutputType,
    TargetStream,
    VariableOperation,
)
from tokensim.contracts.errors import ActionExecutionError, ActionTimeoutError
from tokensim.contracts.history import Token
from tokensim.contracts.runtime import ActionContext, ActionExecutionResult, Event, Message, OutputResult
from tokensim.core.config import ActionSettings, RetrySettings
from tokensim.core.logging import get_logger
from tokensim.engine.expression_parser import ExpressionCache, ExpressionError
from tokensim.engine.interpretation import get_path
from tokensim.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager

if TYPE_CHECKING:
    from tokensim.contracts.definitions import OutputSpec

logger = get_logger(__name__)

ACTION_EXPRESSION_NAMES = ("variables", "state", "input", "timestamp", "node_id", "state_name", "trigger")

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")
_BLOCKING_OUTPUTS = frozenset({OutputType.API_CALL, OutputType.EMAIL})

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class OutputDelivery:
    """A built output on its way to the handler registered for its type.

    Attributes:
        action_id: Action that produced the output
        output_type: The output's type (event, message, token, ...)
        payload: Event, Message, Token, or a dict for log/email
        context: Context of the action that produced it
        target_node_id: Routing target, when the output has one
        target_input_name: Destination input of a token output
    """

    action_id: str
    output_type: OutputType
    payload: Any
    context: ActionContext
    target_node_id: str | None = None
    target_input_name: str | None = None


OutputHandler = Callable[[OutputDelivery], None]


@dataclass(frozen=True, slots=True)
class _ApiRequest:
    method: str
    url: str
    headers: dict[str, Any]
    body: Any


def substitute(template: Any, context: ActionContext) -> Any:
    """Fill ``{{...}}`` placeholders, recursing through dicts and lists.

    Known placeholders: ``variables.<name>``, ``state.<name>``,
    ``input.<dotted.path>``, ``node_id``, ``state_name``, ``timestamp``.
    A missing value renders as an empty string. Unknown placeholders are
    left verbatim. A string that is exactly one placeholder yields the
    value itself, so ``"{{variables.count}}"`` stays an int.
    """
    if isinstance(template, str):
        whole = _PLACEHOLDER.fullmatch(template.strip())
        if whole is not None:
            found, value = _resolve_placeholder(whole.group(1), context)
            if found:
                return value
            return template if value is _UNKNOWN else ""

        def replace(match: re.Match[str]) -> str:
            found, value = _resolve_placeholder(match.group(1), context)
            if not found:
                return match.group(0) if value is _UNKNOWN else ""
            return "" if value is None else str(value)

        return _PLACEHOLDER.sub(replace, template)
    if isinstance(template, list | tuple):
        return [substitute(item, context) for item in template]
    if isinstance(template, dict):
        return {key: substitute(value, context) for key, value in template.items()}
    return template


_UNKNOWN = object()
_ABSENT = object()


def _resolve_placeholder(name: str, context: ActionContext) -> tuple[bool, Any]:
    """Returns (found, value); value is _UNKNOWN for an unrecognized placeholder."""
    if name == "node_id":
        return True, context.node_id
    if name == "state_name":
        return True, context.state_name
    if name == "timestamp":
        return True, context.timestamp
    root, _, rest = name.partition(".")
    if not rest:
        return False, _UNKNOWN
    if root == "variables":
        value = get_path(context.variables, rest, _ABSENT)
    elif root == "state":
        value = get_path(context.state_variables, rest, _ABSENT)
    elif root == "input":
        value = get_path(context.input_data, rest, _ABSENT)
    else:
        return False, _UNKNOWN
    if value is _ABSENT:
        return False, None
    return True, value


def expression_context(context: ActionContext) -> dict[str, Any]:
    """Names visible to action conditions and token formulas."""
    return {
        "variables": context.variables,
        "state": context.state_variables,
        "input": context.input_data,
        "timestamp": context.timestamp,
        "node_id": context.node_id,
        "state_name": context.state_name,
        "trigger": context.trigger,
    }


class ActionExecutor:
    """Executes actions and dispatches their outputs.

    Example:
        executor = ActionExecutor()
        executor.register_output_handler(OutputType.MESSAGE, lambda d: outbox.append(d.payload))
        results = executor.execute_actions(state.actions, context)
        executor.close()
    """

    def __init__(
        self,
        settings: ActionSettings | None = None,
        *,
        retry_settings: RetrySettings | None = None,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            settings: Worker pool size and default timeout
            retry_settings: Backoff for onError=retry
            http_client: Client for api_call outputs; created on first use if omitted
            sleep: Backoff sleep; tests pass a no-op
        """
        self._settings = settings if settings is not None else ActionSettings()
        self._retry_settings = retry_settings
        self._sleep = sleep
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._pool: ThreadPoolExecutor | None = None
        self._handlers: dict[str, OutputHandler] = {}
        self._expressions = ExpressionCache(ACTION_EXPRESSION_NAMES)

    def register_output_handler(self, output_type: OutputType | str, handler: OutputHandler) -> None:
        """Route built outputs of output_type to handler.

        Handlers signal delivery failure by raising ActionExecutionError.
        """
        self._handlers[OutputType(output_type)] = handler

    # ------------------------------------------------------------------
    # Batches and actions
    # ------------------------------------------------------------------

    def execute_actions(self, actions: Iterable[Action], context: ActionContext) -> list[ActionExecutionResult]:
        """Execute actions in order.

        A failed action whose policy is STOP aborts the rest of the batch;
        its result is the last one returned.
        """
        results: list[ActionExecutionResult] = []
        for action in actions:
            result = self.execute_action(action, context)
            results.append(result)
            if not result.success and action.on_error == ErrorPolicy.STOP:
                logger.error("action_batch_stopped", action_id=action.id, node_id=context.node_id, error=result.error)
                break
        return results

    def execute_action(
        self,
        action: Action,
        context: ActionContext,
        *,
        only_outputs: Sequence[str] = (),
        include_delayed: bool = False,
    ) -> ActionExecutionResult:
        """Execute one action.

        Args:
            action: The action to run
            context: Node context the outputs read and write
            only_outputs: Restrict to these output ids (used for deferred outputs)
            include_delayed: Run outputs even if they carry a delay
        """
        started = time.perf_counter()
        if not action.enabled:
            return ActionExecutionResult(
                action_id=action.id,
                success=True,
                outcome=ActionOutcome.SUCCESS,
                skipped=True,
            )

        outputs: list[OutputResult] = []
        deferred: list[str] = []
        errors: list[str] = []
        outcome = ActionOutcome.SUCCESS
        max_attempts = 1

        for output in action.outputs:
            if only_outputs and output.id not in only_outputs:
                continue
            if not self._condition_holds(output, context):
                logger.debug("action_output_skipped", action_id=action.id, output_id=output.id)
                continue
            if output.delay and not include_delayed:
                deferred.append(output.id)
                continue

            try:
                data, attempts = self._run_with_policy(action, output, context)
                max_attempts = max(max_attempts, attempts)
                outputs.append(OutputResult(output_id=output.id, type=output.spec.output_type, data=data))
            except ActionExecutionError as e:
                message = f"Output {output.id} failed: {e}"
                outputs.append(OutputResult(output_id=output.id, type=output.spec.output_type, error=message))
                errors.append(message)
                outcome = ActionOutcome.TIMEOUT if isinstance(e, ActionTimeoutError) else ActionOutcome.ERROR
                if action.on_error == ErrorPolicy.RETRY:
                    max_attempts = action.retry_count + 1
                logger.warning(
                    "action_output_failed",
                    action_id=action.id,
                    output_id=output.id,
                    policy=action.on_error.value,
                    error=str(e),
                )
                if action.on_error == ErrorPolicy.STOP:
                    break

        return ActionExecutionResult(
            action_id=action.id,
            success=not errors,
            outcome=outcome if errors else ActionOutcome.SUCCESS,
            outputs=tuple(outputs),
            execution_time_ms=(time.perf_counter() - started) * 1000.0,
            error="; ".join(errors) if errors else None,
            attempts=max_attempts,
            deferred=tuple(deferred),
        )

    def _condition_holds(self, output: ActionOutput, context: ActionContext) -> bool:
        if not output.condition:
            return True
        try:
            return bool(self._expressions.evaluate(output.condition, expression_context(context)))
        except ExpressionError as e:
            logger.warning("action_condition_failed", output_id=output.id, condition=output.condition, error=str(e))
            return False

    def _run_with_policy(self, action: Action, output: ActionOutput, context: ActionContext) -> tuple[Any, int]:
        """Run one output under the action's error policy.

        Returns:
            (output data, attempts used)
        """
        if action.on_error != ErrorPolicy.RETRY or action.retry_count <= 0:
            return self._run_output(action, output, context), 1

        manager = RetryManager(RetryConfig.for_action(action.retry_count, self._retry_settings), sleep=self._sleep)
        attempts = 0

        def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            return self._run_output(action, output, context)

        try:
            data = manager.execute_with_retry(
                attempt,
                is_retryable=lambda e: isinstance(e, ActionExecutionError),
                on_retry=lambda n, e: logger.info("action_retry", action_id=action.id, attempt=n, error=str(e)),
            )
        except MaxRetriesExceeded as e:
            last = e.last_error
            if isinstance(last, ActionTimeoutError):
                raise ActionTimeoutError(action.id, last.timeout_ms) from e
            raise ActionExecutionError(action.id, f"gave up after {e.attempts} attempts: {last}") from e
        return data, attempts

    def _run_output(self, action: Action, output: ActionOutput, context: ActionContext) -> Any:
        """Build and dispatch one output; blocking kinds run under the timeout.

        Only the I/O itself goes to the pool. Request building and response
        mapping happen here, so an attempt abandoned on timeout can never
        write to the node's variables.
        """
        spec = output.spec
        timeout_ms = action.timeout or self._settings.default_timeout_ms
        if isinstance(spec, ApiCallOutput):
            request = _ApiRequest(
                method=spec.method.value,
                url=substitute(spec.url, context),
                headers={"Content-Type": "application/json", **substitute(spec.headers or {}, context)},
                body=substitute(spec.body, context) if spec.body is not None else None,
            )
            status, response_data = self._in_pool(action, timeout_ms, self._send_request, action, request, timeout_ms)
            return self._apply_response(spec, request, status, response_data, context)
        if OutputType(spec.output_type) not in _BLOCKING_OUTPUTS:
            return self._dispatch(action, spec, context, timeout_ms)
        return self._in_pool(action, timeout_ms, self._dispatch, action, spec, context, timeout_ms)

    def _in_pool(self, action: Action, timeout_ms: float, fn: Callable[..., T], *args: Any) -> T:
        future: Future[T] = self._executor().submit(fn, *args)
        try:
            return future.result(timeout=timeout_ms / 1000.0)
        except FutureTimeoutError as e:
            future.cancel()
            raise ActionTimeoutError(action.id, timeout_ms) from e

    # ------------------------------------------------------------------
    # Output kinds
    # ------------------------------------------------------------------

    def _dispatch(self, action: Action, spec: OutputSpec, context: ActionContext, timeout_ms: float) -> Any:
        match spec:
            case EventOutput():
                return self._emit_event(action, spec, context)
            case MessageOutput():
                return self._emit_message(action, spec, context)
            case TokenOutput():
                return self._emit_token(action, spec, context)
            case LogOutput():
                return self._write_log(action, spec, context)
            case EmailOutput():
                return self._send_email(action, spec, context)
            case VariableOutput():
                return self._update_variable(spec, context)
        raise ActionExecutionError(action.id, f"Unknown output type: {spec.output_type}")

    def _deliver(self, delivery: OutputDelivery) -> None:
        handler = self._handlers.get(delivery.output_type)
        if handler is not None:
            handler(delivery)

    def _emit_event(self, action: Action, spec: EventOutput, context: ActionContext) -> dict[str, Any]:
        event = Event(
            id=f"evt_{uuid.uuid4().hex[:12]}",
            type=spec.event_type,
            timestamp=context.timestamp,
            raw_data=substitute(spec.data, context),
            source_type=EventSourceType.FEEDBACK,
            metadata={
                "sourceNodeId": context.node_id,
                "sourceState": context.state_name,
                "executionId": context.execution_id,
                "generatedBy": "action",
            },
        )
        target = context.node_id if spec.target_stream == TargetStream.SELF else spec.target_node_id
        self._deliver(OutputDelivery(action.id, OutputType.EVENT, event, context, target_node_id=target))
        return event.to_dict()

    def _emit_message(self, action: Action, spec: MessageOutput, context: ActionContext) -> dict[str, Any]:
        message = Message(
            id=f"msg_{uuid.uuid4().hex[:12]}",
            type=spec.message_type,
            timestamp=context.timestamp,
            payload=substitute(spec.payload, context),
            confidence=1.0,
        )
        target = spec.target_node_id or context.node_id
        self._deliver(OutputDelivery(action.id, OutputType.MESSAGE, message, context, target_node_id=target))
        return message.to_dict()

    def _emit_token(self, action: Action, spec: TokenOutput, context: ActionContext) -> dict[str, Any]:
        try:
            value = self._expressions.evaluate(spec.formula, expression_context(context))
        except ExpressionError as e:
            raise ActionExecutionError(action.id, f"Token formula failed: {e}") from e
        token = Token(
            id=uuid.uuid4().hex[:8],
            value=value,
            created_at=context.timestamp,
            origin_node_id=context.node_id,
        )
        self._deliver(
            OutputDelivery(
                action.id,
                OutputType.TOKEN,
                token,
                context,
                target_node_id=spec.destination_node_id,
                target_input_name=spec.destination_input_name,
            )
        )
        return token.to_dict()

    def _send_request(self, action: Action, request: _ApiRequest, timeout_ms: float) -> tuple[int, Any]:
        """Perform the HTTP call; touches no node state."""
        try:
            response = self._client().request(
                request.method,
                request.url,
                headers=request.headers,
                json=request.body,
                timeout=timeout_ms / 1000.0,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ActionTimeoutError(action.id, timeout_ms) from e
        except httpx.HTTPStatusError as e:
            raise ActionExecutionError(action.id, f"API call failed with status {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise ActionExecutionError(action.id, f"API call failed: {e}") from e

        try:
            return response.status_code, response.json()
        except ValueError as e:
            raise ActionExecutionError(action.id, f"API response is not JSON: {e}") from e

    @staticmethod
    def _apply_response(
        spec: ApiCallOutput,
        request: _ApiRequest,
        status: int,
        response_data: Any,
        context: ActionContext,
    ) -> dict[str, Any]:
        mapped: Any = response_data
        if spec.response_mapping:
            mapped = {target: get_path(response_data, path) for target, path in spec.response_mapping.items()}
            context.variables.update(mapped)

        return {
            "request": {"url": request.url, "method": request.method, "headers": request.headers, "body": request.body},
            "response": response_data,
            "mapped": mapped,
            "status": status,
        }

    def _write_log(self, action: Action, spec: LogOutput, context: ActionContext) -> dict[str, Any]:
        message = substitute(spec.message, context)
        entry = {
            "level": spec.level.value,
            "message": message,
            "timestamp": context.timestamp,
            "nodeId": context.node_id,
            "state": context.state_name,
        }
        log_method = {
            ActionLogLevel.DEBUG: logger.debug,
            ActionLogLevel.INFO: logger.info,
            ActionLogLevel.WARN: logger.warning,
            ActionLogLevel.ERROR: logger.error,
        }[spec.level]
        log_method("fsm_log", node_id=context.node_id, state=context.state_name, message=message)
        self._deliver(OutputDelivery(action.id, OutputType.LOG, entry, context))
        return entry

    def _send_email(self, action: Action, spec: EmailOutput, context: ActionContext) -> dict[str, Any]:
        email = {
            "to": substitute(spec.to, context),
            "subject": substitute(spec.subject, context),
            "body": substitute(spec.body, context),
            "attachments": list(spec.attachments),
            "sentAt": context.timestamp,
        }
        self._deliver(OutputDelivery(action.id, OutputType.EMAIL, email, context))
        return email

    def _update_variable(self, spec: VariableOutput, context: ActionContext) -> dict[str, Any]:
        name = spec.variable_name
        store = context.variables
        if name.startswith("state."):
            store = context.state_variables
            name = name[len("state.") :]

        value = substitute(spec.value, context)
        if spec.operation == VariableOperation.SET:
            store[name] = value
        elif spec.operation == VariableOperation.INCREMENT:
            step = _as_number(value)
            store[name] = (store.get(name) or 0) + (step if step else 1)
        else:
            current = store.get(name)
            if not isinstance(current, list):
                current = []
                store[name] = current
            current.append(value)

        return {"variableName": name, "operation": spec.operation.value, "newValue": store[name]}

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def _executor(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self._settings.max_workers, thread_name_prefix="tokensim-action")
        return self._pool

    def _client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(follow_redirects=False)
        return self._http_client

    def close(self) -> None:
        """Shut down the worker pool and any HTTP client this executor created."""
        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = None
        if self._http_client is not None and self._owns_http_client:
            self._http_client.close()
            self._http_client = None

    def __enter__(self) -> ActionExecutor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _as_number(value: Any) -> float | int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int | float):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


class ActionFactory:
    """Shorthand constructors for common single-output actions."""

    @staticmethod
    def _single(
        action_id: str,
        name: str,
        trigger: ActionTrigger,
        spec: dict[str, Any],
        **options: Any,
    ) -> Action:
        return Action.model_validate(
            {
                "id": action_id,
                "name": name,
                "trigger": trigger,
                "outputs": [{"id": f"{action_id}_out", "type": spec}],
                **options,
            }
        )

    @classmethod
    def log(
        cls,
        action_id: str,
        message: str,
        *,
        level: ActionLogLevel = ActionLogLevel.INFO,
        trigger: ActionTrigger = ActionTrigger.ON_ENTRY,
    ) -> Action:
        return cls._single(action_id, f"Log: {message}", trigger, {"outputType": "log", "level": level, "message": message})

    @classmethod
    def emit_event(
        cls,
        action_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        *,
        target_stream: TargetStream = TargetStream.SELF,
        trigger: ActionTrigger = ActionTrigger.ON_ENTRY,
    ) -> Action:
        return cls._single(
            action_id,
            f"Emit event: {event_type}",
            trigger,
            {"outputType": "event", "eventType": event_type, "data": data or {}, "targetStream": target_stream},
        )

    @classmethod
    def emit_message(
        cls,
        action_id: str,
        message_type: str,
        payload: dict[str, Any] | None = None,
        *,
        target_node_id: str | None = None,
        trigger: ActionTrigger = ActionTrigger.ON_ENTRY,
    ) -> Action:
        return cls._single(
            action_id,
            f"Emit message: {message_type}",
            trigger,
            {"outputType": "message", "messageType": message_type, "payload": payload or {}, "targetNodeId": target_node_id},
        )

    @classmethod
    def set_variable(
        cls,
        action_id: str,
        variable_name: str,
        value: Any,
        *,
        trigger: ActionTrigger = ActionTrigger.ON_ENTRY,
    ) -> Action:
        return cls._single(
            action_id,
            f"Set {variable_name}",
            trigger,
            {"outputType": "variable", "variableName": variable_name, "value": value, "operation": "set"},
        )

    @classmethod
    def increment_variable(
        cls,
        action_id: str,
        variable_name: str,
        amount: float = 1,
        *,
        trigger: ActionTrigger = ActionTrigger.ON_ENTRY,
    ) -> Action:
        return cls._single(
            action_id,
            f"Increment {variable_name}",
            trigger,
            {"outputType": "variable", "variableName": variable_name, "value": amount, "operation": "increment"},
        )

    @classmethod
    def emit_token(
        cls,
        action_id: str,
        formula: str,
        *,
        destination_node_id: str | None = None,
        destination_input_name: str | None = None,
        trigger: ActionTrigger = ActionTrigger.ON_ENTRY,
    ) -> Action:
        return cls._single(
            action_id,
            "Emit token",
            trigger,
            {
                "outputType": "token",
                "formula": formula,
                "destinationNodeId": destination_node_id,
                "destinationInputName": destination_input_name,
            },
        )

    @classmethod
    def api_call(
        cls,
        action_id: str,
        method: str,
        url: str,
        *,
        body: dict[str, Any] | None = None,
        response_mapping: dict[str, str] | None = None,
        trigger: ActionTrigger = ActionTrigger.ON_ENTRY,
        on_error: ErrorPolicy = ErrorPolicy.CONTINUE,
        retry_count: int = 0,
        timeout: float = 5000,
    ) -> Action:
        return cls._single(
            action_id,
            f"{method} {url}",
            trigger,
            {"outputType": "api_call", "method": method, "url": url, "body": body, "responseMapping": response_mapping},
            onError=on_error,
            retryCount=retry_count,
            timeout=timeout,
        )
