"""Tests for the enhanced FSM runtime tick loop."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest

from tokensim.contracts.definitions import EnhancedFSMDefinition
from tokensim.contracts.runtime import Event, Message
from tokensim.engine.clock import MockClock
from tokensim.engine.enhanced import EnhancedFSMRuntime


def _append(output_id: str, value: str) -> dict[str, Any]:
    return {"id": output_id, "type": {"outputType": "variable", "variableName": "order", "value": value, "operation": "append"}}


def _action(action_id: str, trigger: str, *outputs: dict[str, Any], **options: Any) -> dict[str, Any]:
    return {"id": action_id, "name": action_id, "trigger": trigger, "outputs": list(outputs), **options}


def _definition(
    states: list[dict[str, Any]],
    transitions: list[dict[str, Any]] | None = None,
    **extra: Any,
) -> EnhancedFSMDefinition:
    return EnhancedFSMDefinition.model_validate(
        {"states": states, "transitions": transitions or [], "initialState": states[0]["id"], **extra}
    )


def _on_message(transition_id: str, source: str, target: str, message_type: str = "go", **extra: Any) -> dict[str, Any]:
    return {
        "id": transition_id,
        "from": source,
        "to": target,
        "trigger": {"type": "message", "messageType": message_type},
        **extra,
    }


def _message(message_type: str = "go", payload: dict[str, Any] | None = None) -> Message:
    return Message(id=f"m_{message_type}", type=message_type, timestamp=0, payload=payload or {})


@pytest.fixture
def runtime(mock_clock: MockClock) -> Iterator[EnhancedFSMRuntime]:
    with EnhancedFSMRuntime(clock=mock_clock) as rt:
        yield rt


class TestRegistration:
    def test_starts_in_initial_state(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition([{"id": "idle", "name": "Idle", "type": "initial"}], variables={"count": 0})
        state = runtime.register_node("n1", definition)

        assert state.current_state == "idle"
        assert state.variables == {"count": 0}
        assert runtime.node_ids == ["n1"]

    def test_variables_are_copied_per_node(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition([{"id": "idle", "name": "Idle"}], variables={"seen": []})
        runtime.register_node("a", definition)
        runtime.register_node("b", definition)

        runtime.node_state("a").variables["seen"].append(1)
        assert runtime.node_state("b").variables["seen"] == []

    def test_duplicate_registration_rejected(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition([{"id": "idle", "name": "Idle"}])
        runtime.register_node("n1", definition)
        with pytest.raises(ValueError, match="already registered"):
            runtime.register_node("n1", definition)

    def test_invalid_definition_rejected(self, runtime: EnhancedFSMRuntime) -> None:
        from tokensim.contracts.errors import DefinitionError

        definition = _definition([{"id": "idle", "name": "Idle"}], [_on_message("t1", "idle", "nowhere")])
        with pytest.raises(DefinitionError, match="unknown state 'nowhere'"):
            runtime.register_node("n1", definition)

    def test_unknown_node(self, runtime: EnhancedFSMRuntime) -> None:
        from tokensim.contracts.errors import UnknownNodeError

        with pytest.raises(UnknownNodeError):
            runtime.process_tick("ghost")

    def test_initial_on_entry_runs_on_first_tick(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition(
            [{"id": "idle", "name": "Idle", "actions": [_action("boot", "onEntry", _append("o1", "booted"))]}]
        )
        runtime.register_node("n1", definition)
        assert "order" not in runtime.node_state("n1").variables

        result = runtime.process_tick("n1")

        assert runtime.node_state("n1").variables["order"] == ["booted"]
        assert [a.action_id for a in result.actions] == ["boot"]


class TestTransitions:
    def test_message_transition_fires(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition(
            [{"id": "idle", "name": "Idle"}, {"id": "busy", "name": "Busy"}],
            [_on_message("start", "idle", "busy")],
        )
        runtime.register_node("n1", definition)
        runtime.add_message("n1", _message())

        result = runtime.process_tick("n1")

        assert result.transitioned
        assert result.transitions[0].transition_id == "start"
        assert result.transitions[0].message_id == "m_go"
        state = runtime.node_state("n1")
        assert state.current_state == "busy"
        assert state.previous_state == "idle"
        assert state.messages_processed == 1

    def test_event_is_interpreted_then_transitions(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition(
            [{"id": "idle", "name": "Idle"}, {"id": "hot", "name": "Hot"}],
            [
                _on_message(
                    "overheat",
                    "idle",
                    "hot",
                    "reading",
                    guard="float(message.payload.celsius) > 25",
                )
            ],
            interpretationRules=[
                {
                    "id": "temp",
                    "name": "temperature",
                    "method": {
                        "type": "pattern",
                        "patterns": [{"pattern": r"temp=(\d+)", "messageType": "reading", "extractFields": {"celsius": "$1"}}],
                    },
                }
            ],
        )
        runtime.register_node("n1", definition)
        runtime.add_event("n1", Event(id="e1", type="sensor", timestamp=0, raw_data="temp=30"))

        result = runtime.process_tick("n1")

        assert result.messages_produced == 1
        assert runtime.node_state("n1").current_state == "hot"
        assert runtime.node_state("n1").events_processed == 1

    def test_highest_priority_wins(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition(
            [{"id": "idle", "name": "Idle"}, {"id": "a", "name": "A"}, {"id": "b", "name": "B"}],
            [_on_message("to_a", "idle", "a", priority=100), _on_message("to_b", "idle", "b", priority=200)],
        )
        runtime.register_node("n1", definition)
        runtime.add_message("n1", _message())
        runtime.process_tick("n1")

        assert runtime.node_state("n1").current_state == "b"

    def test_priority_tie_goes_to_declaration_order(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition(
            [{"id": "idle", "name": "Idle"}, {"id": "a", "name": "A"}, {"id": "b", "name": "B"}],
            [_on_message("to_a", "idle", "a"), _on_message("to_b", "idle", "b")],
        )
        runtime.register_node("n1", definition)
        runtime.add_message("n1", _message())
        runtime.process_tick("n1")

        assert runtime.node_state("n1").current_state == "a"

    def test_false_guard_blocks_higher_priority(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition(
            [{"id": "idle", "name": "Idle"}, {"id": "a", "name": "A"}, {"id": "b", "name": "B"}],
            [
                _on_message("to_a", "idle", "a"),
                _on_message("to_b", "idle", "b", priority=500, guard="variables.get('armed', False)"),
            ],
        )
        runtime.register_node("n1", definition)
        runtime.add_message("n1", _message())
        runtime.process_tick("n1")

        assert runtime.node_state("n1").current_state == "a"

    def test_guard_error_is_recorded(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition(
            [{"id": "idle", "name": "Idle"}, {"id": "a", "name": "A"}],
            [_on_message("to_a", "idle", "a", guard="variables['missing'] > 1")],
        )
        runtime.register_node("n1", definition)
        runtime.add_message("n1", _message())
        result = runtime.process_tick("n1")

        assert not result.transitioned
        errors = runtime.node_state("n1").errors
        assert [e.type for e in errors] == ["guard_error"]
        assert errors[0].context["transitionId"] == "to_a"

    def test_condition_transition(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition(
            [{"id": "idle", "name": "Idle"}, {"id": "full", "name": "Full"}],
            [{"id": "fill", "from": "idle", "to": "full", "trigger": {"type": "condition", "condition": "variables.count >= 3"}}],
            variables={"count": 0},
        )
        runtime.register_node("n1", definition)
        runtime.process_tick("n1")
        assert runtime.node_state("n1").current_state == "idle"

        runtime.node_state("n1").variables["count"] = 3
        runtime.process_tick("n1")
        assert runtime.node_state("n1").current_state == "full"

    def test_timer_transition(self, runtime: EnhancedFSMRuntime, mock_clock: MockClock) -> None:
        definition = _definition(
            [{"id": "idle", "name": "Idle"}, {"id": "late", "name": "Late"}],
            [{"id": "wait", "from": "idle", "to": "late", "trigger": {"type": "timer", "timeout": 500}}],
        )
        runtime.register_node("n1", definition)

        mock_clock.advance(499)
        runtime.process_tick("n1")
        assert runtime.node_state("n1").current_state == "idle"

        mock_clock.advance(1)
        result = runtime.process_tick("n1")
        assert runtime.node_state("n1").current_state == "late"
        assert result.transitions[0].trigger == "timer"

    def test_state_timeout_exits_to_error_state(self, runtime: EnhancedFSMRuntime, mock_clock: MockClock) -> None:
        definition = _definition(
            [
                {"id": "idle", "name": "Idle"},
                {"id": "busy", "name": "Busy", "timeout": 1000},
                {"id": "failed", "name": "Failed", "type": "error"},
            ],
            [_on_message("start", "idle", "busy")],
        )
        runtime.register_node("n1", definition)
        runtime.add_message("n1", _message())
        runtime.process_tick("n1")

        mock_clock.advance(999)
        runtime.process_tick("n1")
        assert runtime.node_state("n1").current_state == "busy"

        mock_clock.advance(1)
        result = runtime.process_tick("n1")

        assert runtime.node_state("n1").current_state == "failed"
        assert result.transitions[0].trigger == "timeout"
        assert any("timed out" in error for error in result.errors)

    def test_manual_transition(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition(
            [{"id": "idle", "name": "Idle"}, {"id": "done", "name": "Done"}],
            [
                {"id": "finish", "from": "idle", "to": "done", "trigger": {"type": "manual"}},
                _on_message("auto", "idle", "done"),
            ],
        )
        runtime.register_node("n1", definition)

        assert runtime.trigger_manual("n1", "auto") is False
        assert runtime.trigger_manual("n1", "finish") is True
        assert runtime.node_state("n1").current_state == "done"
        assert runtime.trigger_manual("n1", "finish") is False
        with pytest.raises(ValueError, match="no transition 'nope'"):
            runtime.trigger_manual("n1", "nope")

    def test_transition_publishes_event(self, mock_clock: MockClock) -> None:
        from tokensim.contracts.events import StateTransitioned
        from tokensim.core.events import EventBus

        bus = EventBus()
        seen: list[StateTransitioned] = []
        bus.subscribe(StateTransitioned, seen.append)
        definition = _definition(
            [{"id": "idle", "name": "Idle"}, {"id": "busy", "name": "Busy"}],
            [_on_message("start", "idle", "busy")],
        )
        with EnhancedFSMRuntime(clock=mock_clock, event_bus=bus) as runtime:
            runtime.register_node("n1", definition)
            runtime.add_message("n1", _message())
            runtime.process_tick("n1")

        assert [(e.node_id, e.from_state, e.to_state) for e in seen] == [("n1", "idle", "busy")]


class TestActions:
    def test_transition_exit_entry_order(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition(
            [
                {"id": "idle", "name": "Idle", "actions": [_action("leave", "onExit", _append("o", "exit"))]},
                {"id": "busy", "name": "Busy", "actions": [_action("arrive", "onEntry", _append("o", "entry"))]},
            ],
            [_on_message("start", "idle", "busy", actions=[_action("move", "onTransition", _append("o", "transition"))])],
        )
        runtime.register_node("n1", definition)
        runtime.add_message("n1", _message())
        result = runtime.process_tick("n1")

        assert runtime.node_state("n1").variables["order"] == ["transition", "exit", "entry"]
        assert [a.action_id for a in result.actions] == ["move", "leave", "arrive"]

    def test_state_variables_reset_on_entry(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition(
            [
                {"id": "idle", "name": "Idle", "variables": {"idleOnly": 1}},
                {"id": "busy", "name": "Busy", "variables": {"retries": 0}},
            ],
            [_on_message("start", "idle", "busy")],
        )
        runtime.register_node("n1", definition)
        assert runtime.node_state("n1").state_variables == {"idleOnly": 1}

        runtime.add_message("n1", _message())
        runtime.process_tick("n1")

        assert runtime.node_state("n1").state_variables == {"retries": 0}

    def test_on_message_action_sees_payload(self, runtime: EnhancedFSMRuntime) -> None:
        action = _action(
            "record",
            "onMessage",
            {"id": "o", "type": {"outputType": "variable", "variableName": "last", "value": "{{input.level}}"}},
        )
        definition = _definition([{"id": "idle", "name": "Idle", "actions": [action]}])
        runtime.register_node("n1", definition)
        runtime.add_message("n1", _message("status", {"level": 7}))
        runtime.process_tick("n1")

        assert runtime.node_state("n1").variables["last"] == 7

    def test_delayed_action_waits(self, runtime: EnhancedFSMRuntime, mock_clock: MockClock) -> None:
        definition = _definition(
            [{"id": "idle", "name": "Idle", "actions": [_action("later", "onEntry", _append("o", "late"), delay=1000)]}]
        )
        runtime.register_node("n1", definition)
        runtime.process_tick("n1")
        assert "order" not in runtime.node_state("n1").variables

        mock_clock.advance(1000)
        runtime.process_tick("n1")
        assert runtime.node_state("n1").variables["order"] == ["late"]

    def test_stop_policy_drops_rest_of_batch(self, runtime: EnhancedFSMRuntime) -> None:
        failing = _action(
            "fail",
            "onEntry",
            {"id": "o", "type": {"outputType": "message", "messageType": "x", "targetNodeId": "ghost"}},
            onError="stop",
        )
        definition = _definition(
            [{"id": "idle", "name": "Idle", "actions": [failing, _action("after", "onEntry", _append("o", "ran"))]}]
        )
        runtime.register_node("n1", definition)
        result = runtime.process_tick("n1")

        assert [a.action_id for a in result.actions] == ["fail"]
        assert "order" not in runtime.node_state("n1").variables
        assert any("Unknown target node ghost" in error for error in result.errors)

    def test_stop_policy_drops_delayed_batch_members(self, runtime: EnhancedFSMRuntime, mock_clock: MockClock) -> None:
        failing = _action(
            "fail",
            "onEntry",
            {"id": "o", "type": {"outputType": "message", "messageType": "x", "targetNodeId": "ghost"}},
            onError="stop",
        )
        later = _action("later", "onEntry", _append("o", "ran"), delay=100)
        runtime.register_node("n1", _definition([{"id": "idle", "name": "Idle", "actions": [failing, later]}]))

        first = runtime.process_tick("n1")
        assert [a.action_id for a in first.actions] == ["fail"]
        assert runtime.node_state("n1").pending_actions == []

        mock_clock.advance(200)
        second = runtime.process_tick("n1")

        assert second.actions == ()
        assert "order" not in runtime.node_state("n1").variables

    def test_unknown_target_is_action_error(self, runtime: EnhancedFSMRuntime) -> None:
        action = _action(
            "send",
            "onEntry",
            {"id": "o", "type": {"outputType": "message", "messageType": "x", "targetNodeId": "ghost"}},
        )
        runtime.register_node("n1", _definition([{"id": "idle", "name": "Idle", "actions": [action]}]))
        runtime.process_tick("n1")

        state = runtime.node_state("n1")
        assert [e.type for e in state.errors] == ["action_error"]
        assert state.action_history[0].result == "error"
        assert any(e.action == "action_error" for e in runtime.activity_log.for_node("n1"))

    def test_token_output_logs_creation_and_routes(self, runtime: EnhancedFSMRuntime) -> None:
        emit = _action(
            "emit",
            "onEntry",
            {
                "id": "o",
                "type": {"outputType": "token", "formula": "variables.base * 10", "destinationNodeId": "sink", "destinationInputName": "in"},
            },
        )
        source = _definition([{"id": "idle", "name": "Idle", "actions": [emit]}], variables={"base": 4})
        sink = _definition(
            [{"id": "waiting", "name": "Waiting"}, {"id": "got", "name": "Got"}],
            [{"id": "receive", "from": "waiting", "to": "got", "trigger": {"type": "event", "eventType": "token_received"}}],
        )
        runtime.register_node("source", source)
        runtime.register_node("sink", sink)

        runtime.process_tick("source")
        created = [e for e in runtime.activity_log.for_node("source") if e.action == "CREATED"]
        assert len(created) == 1
        assert created[0].value == 40
        assert runtime.node_state("sink").token_buffers["in"][0].value == 40

        runtime.process_tick("sink")
        assert runtime.node_state("sink").current_state == "got"

    def test_external_token_router(self, mock_clock: MockClock) -> None:
        routed: list[tuple[Any, str | None, str | None]] = []
        emit = _action("emit", "onEntry", {"id": "o", "type": {"outputType": "token", "formula": "7", "destinationNodeId": "elsewhere"}})
        with EnhancedFSMRuntime(clock=mock_clock, token_router=lambda t, n, i: routed.append((t, n, i))) as runtime:
            runtime.register_node("n1", _definition([{"id": "idle", "name": "Idle", "actions": [emit]}]))
            runtime.process_tick("n1")

        assert [(t.value, n) for t, n, _ in routed] == [(7, "elsewhere")]


class TestFeedback:
    def test_self_feedback_delivered_next_tick(self, runtime: EnhancedFSMRuntime) -> None:
        ping = _action(
            "ping",
            "onEntry",
            {"id": "o", "type": {"outputType": "message", "messageType": "go"}},
        )
        definition = _definition(
            [{"id": "idle", "name": "Idle", "actions": [ping]}, {"id": "busy", "name": "Busy"}],
            [_on_message("start", "idle", "busy")],
        )
        runtime.register_node("n1", definition)

        runtime.process_tick("n1")
        assert runtime.node_state("n1").current_state == "idle"
        assert len(runtime.node_state("n1").message_buffer) == 1

        runtime.process_tick("n1")
        assert runtime.node_state("n1").current_state == "busy"
        assert runtime.get_feedback_metrics().active_loops == 0

    def test_blocked_feedback_is_logged_and_published(self, mock_clock: MockClock) -> None:
        from tokensim.contracts.events import FeedbackBlocked
        from tokensim.core.events import EventBus

        bus = EventBus()
        blocked: list[FeedbackBlocked] = []
        bus.subscribe(FeedbackBlocked, blocked.append)
        ping = _action("ping", "onEntry", {"id": "o", "type": {"outputType": "message", "messageType": "go"}})
        definition = _definition(
            [{"id": "idle", "name": "Idle", "actions": [ping]}],
            feedbackConfig={"routing": {"allowSelfFeedback": False}},
        )
        with EnhancedFSMRuntime(clock=mock_clock, event_bus=bus) as runtime:
            runtime.register_node("n1", definition)
            result = runtime.process_tick("n1")

            assert result.actions[0].success
            assert runtime.node_state("n1").message_buffer == []
            assert any(e.action == "feedback_blocked" for e in runtime.activity_log.for_node("n1"))

        assert [(b.source_node_id, b.target_node_id) for b in blocked] == [("n1", "n1")]

    def test_cleanup_execution_closes_loops(self, runtime: EnhancedFSMRuntime) -> None:
        ping = _action("ping", "onEntry", {"id": "o", "type": {"outputType": "message", "messageType": "go"}})
        runtime.register_node("n1", _definition([{"id": "idle", "name": "Idle", "actions": [ping]}]))
        runtime.process_tick("n1")
        assert runtime.get_feedback_metrics().active_loops == 1

        assert runtime.cleanup_execution("n1") == 1
        assert runtime.get_feedback_metrics().active_loops == 0
        assert runtime._origins == {}

    def test_unregistering_target_releases_buffered_feedback(self, runtime: EnhancedFSMRuntime) -> None:
        ping = _action(
            "ping",
            "onEntry",
            {"id": "o", "type": {"outputType": "message", "messageType": "go", "targetNodeId": "b"}},
        )
        runtime.register_node("a", _definition([{"id": "idle", "name": "Idle", "actions": [ping]}]))
        runtime.register_node("b", _definition([{"id": "idle", "name": "Idle"}]))
        runtime.process_tick("a")
        assert runtime.get_feedback_metrics().active_loops == 1

        runtime.unregister_node("b")

        metrics = runtime.get_feedback_metrics()
        assert metrics.active_loops == 0
        assert metrics.average_depth == 0.0
        assert runtime._origins == {}


class TestProcessAll:
    def test_ticks_every_node(self, runtime: EnhancedFSMRuntime) -> None:
        definition = _definition(
            [{"id": "idle", "name": "Idle"}, {"id": "busy", "name": "Busy"}],
            [_on_message("start", "idle", "busy")],
        )
        runtime.register_node("a", definition)
        runtime.register_node("b", definition)
        runtime.add_message("b", _message())

        results = runtime.process_all()

        assert set(results) == {"a", "b"}
        assert not results["a"].transitioned
        assert results["b"].transitioned

    def test_unregister_node(self, runtime: EnhancedFSMRuntime) -> None:
        runtime.register_node("a", _definition([{"id": "idle", "name": "Idle"}]))
        runtime.unregister_node("a")
        assert runtime.node_ids == []
