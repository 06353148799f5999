"""Tests for enhanced FSM definition models."""

from typing import Any

import pytest
from pydantic import ValidationError

from tokensim.contracts.definitions import (
    AIMethod,
    CustomRuleMethod,
    EnhancedFSMDefinition,
    InterpretationRule,
    ManualTrigger,
    PatternMethod,
    TimerTrigger,
)
from tokensim.contracts.errors import DefinitionError


def _definition(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "states": [
            {"id": "idle", "name": "Idle", "type": "initial"},
            {"id": "busy", "name": "Busy", "timeout": 5000},
        ],
        "transitions": [
            {"id": "start", "from": "idle", "to": "busy", "trigger": {"type": "message", "messageType": "go"}},
            {"id": "tick", "from": "busy", "to": "idle", "trigger": {"type": "timer", "timeout": 100}},
        ],
        "initialState": "idle",
    }
    data.update(overrides)
    return data


class TestEnhancedFSMDefinition:
    def test_parses_camel_case_interchange_shape(self) -> None:
        definition = EnhancedFSMDefinition.model_validate(_definition())

        assert definition.initial_state == "idle"
        assert definition.transitions[0].from_state == "idle"
        assert isinstance(definition.transitions[1].trigger, TimerTrigger)
        assert definition.state("busy") is not None
        assert definition.state("nope") is None

    def test_dumps_back_to_aliases(self) -> None:
        definition = EnhancedFSMDefinition.model_validate(_definition())
        dumped = definition.model_dump(by_alias=True, mode="json", exclude_none=True)

        assert dumped["initialState"] == "idle"
        assert dumped["transitions"][0]["from"] == "idle"
        assert dumped["transitions"][0]["trigger"]["messageType"] == "go"

    def test_models_are_frozen(self) -> None:
        definition = EnhancedFSMDefinition.model_validate(_definition())
        with pytest.raises(ValidationError):
            definition.initial_state = "busy"  # type: ignore[misc]

    def test_valid_structure_passes(self) -> None:
        EnhancedFSMDefinition.model_validate(_definition()).validate_structure()

    def test_structure_problems_are_all_reported(self) -> None:
        data = _definition(
            initialState="missing",
            states=[{"id": "idle", "name": "Idle"}, {"id": "idle", "name": "Again"}],
        )
        definition = EnhancedFSMDefinition.model_validate(data)

        with pytest.raises(DefinitionError) as exc_info:
            definition.validate_structure()

        problems = exc_info.value.problems
        assert "Duplicate state id 'idle'" in problems
        assert "Initial state 'missing' is not a defined state" in problems
        assert any("targets unknown state 'busy'" in p for p in problems)

    def test_duplicate_transition_ids(self) -> None:
        transition = {"id": "t", "from": "idle", "to": "busy", "trigger": {"type": "manual"}}
        definition = EnhancedFSMDefinition.model_validate(_definition(transitions=[transition, transition]))

        with pytest.raises(DefinitionError, match="Duplicate transition id 't'"):
            definition.validate_structure()

    def test_unknown_trigger_type_rejected(self) -> None:
        data = _definition(transitions=[{"id": "t", "from": "idle", "to": "busy", "trigger": {"type": "telepathy"}}])
        with pytest.raises(ValidationError):
            EnhancedFSMDefinition.model_validate(data)

    def test_negative_timer_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TimerTrigger(timeout=-1)

    def test_manual_trigger_defaults(self) -> None:
        assert ManualTrigger().type == "manual"

    def test_feedback_config_embedded(self) -> None:
        definition = EnhancedFSMDefinition.model_validate(
            _definition(feedbackConfig={"maxDepth": 3, "routing": {"blacklistedNodes": ["x"]}})
        )
        assert definition.feedback_config is not None
        assert definition.feedback_config.max_depth == 3
        assert definition.feedback_config.routing.blacklisted_nodes == ("x",)


class TestInterpretationRuleMethods:
    def test_builtin_method_selected_by_type(self) -> None:
        rule = InterpretationRule.model_validate(
            {"id": "r", "name": "r", "method": {"type": "pattern", "patterns": [{"pattern": "x", "messageType": "m"}]}}
        )
        assert isinstance(rule.method, PatternMethod)
        assert rule.priority == 100
        assert rule.enabled

    def test_ai_confidence_bounds(self) -> None:
        with pytest.raises(ValidationError):
            AIMethod(prompt="p", message_types=("a",), confidence_threshold=1.5)

    def test_unknown_type_becomes_custom_method(self) -> None:
        rule = InterpretationRule.model_validate(
            {"id": "r", "name": "r", "method": {"type": "csv", "delimiter": ";", "columns": ["a", "b"]}}
        )
        assert isinstance(rule.method, CustomRuleMethod)
        assert rule.method.type == "csv"
        assert rule.method.options == {"delimiter": ";", "columns": ["a", "b"]}

    def test_malformed_builtin_is_not_custom(self) -> None:
        with pytest.raises(ValidationError):
            InterpretationRule.model_validate({"id": "r", "name": "r", "method": {"type": "formula"}})
