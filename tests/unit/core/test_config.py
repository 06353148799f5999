# tests/unit/core/test_config.py
"""Tests for settings, node config loading and feedback presets."""

from pathlib import Path

import pytest
from pydantic import ValidationError


class TestTokensimSettings:
    def test_defaults(self) -> None:
        from tokensim.core.config import TokensimSettings

        settings = TokensimSettings()
        assert settings.feedback.max_depth == 10
        assert settings.lineage.max_traversal_depth == 50
        assert settings.lazy_loader.batch_size == 20
        assert settings.logging.level == "INFO"

    def test_settings_are_frozen(self) -> None:
        from tokensim.core.config import TokensimSettings

        settings = TokensimSettings()
        with pytest.raises(ValidationError):
            settings.feedback_preset = "permissive"  # type: ignore[misc]

    def test_feedback_preset_expands(self) -> None:
        from tokensim.core.config import TokensimSettings

        settings = TokensimSettings(feedback_preset="restrictive")
        assert settings.feedback.max_depth == 3
        assert settings.feedback.routing.allow_self_feedback is False

    def test_unknown_preset_rejected(self) -> None:
        from tokensim.core.config import TokensimSettings

        with pytest.raises(ValidationError, match="Unknown feedback preset"):
            TokensimSettings(feedback_preset="reckless")

    def test_preset_and_explicit_feedback_are_exclusive(self) -> None:
        from tokensim.core.config import TokensimSettings

        with pytest.raises(ValidationError, match="mutually exclusive"):
            TokensimSettings(feedback_preset="permissive", feedback={"max_depth": 4})

    def test_invalid_log_level_rejected(self) -> None:
        from tokensim.core.config import LoggingSettings

        with pytest.raises(ValidationError, match="Invalid log level"):
            LoggingSettings(level="CHATTY")

    def test_log_level_normalized(self) -> None:
        from tokensim.core.config import LoggingSettings

        assert LoggingSettings(level="debug").level == "DEBUG"


class TestFeedbackConfigFactory:
    @pytest.mark.parametrize("name", ["conservative", "permissive", "restrictive", "disabled"])
    def test_every_named_preset_resolves(self, name: str) -> None:
        from tokensim.core.config import FeedbackConfigFactory

        assert FeedbackConfigFactory.by_name(name) == getattr(FeedbackConfigFactory, name)()

    def test_disabled_preset_turns_everything_off(self) -> None:
        from tokensim.core.config import FeedbackConfigFactory

        config = FeedbackConfigFactory.disabled()
        assert config.enabled is False
        assert config.circuit_breaker.enabled is False
        assert config.routing.allow_external_feedback is False

    def test_unknown_name_raises(self) -> None:
        from tokensim.core.config import FeedbackConfigFactory

        with pytest.raises(ValueError, match="Available"):
            FeedbackConfigFactory.by_name("nope")

    def test_interchange_shape_is_camel_case(self) -> None:
        from tokensim.core.config import FeedbackConfigFactory

        data = FeedbackConfigFactory.conservative().to_json_dict()
        assert data["maxDepth"] == 5
        assert data["circuitBreaker"]["cooldownPeriod"] == 30000


class TestLoadSettings:
    def test_loads_yaml(self, tmp_path: Path) -> None:
        from tokensim.core.config import load_settings

        path = tmp_path / "settings.yaml"
        path.write_text("lineage:\n  max_traversal_depth: 7\nlogging:\n  level: debug\n")

        settings = load_settings(path)
        assert settings.lineage.max_traversal_depth == 7
        assert settings.logging.level == "DEBUG"

    def test_env_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from tokensim.core.config import load_settings

        path = tmp_path / "settings.yaml"
        path.write_text("feedback:\n  max_depth: 4\n")
        monkeypatch.setenv("TOKENSIM_FEEDBACK__MAX_DEPTH", "8")

        assert load_settings(path).feedback.max_depth == 8

    def test_env_var_expansion(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from tokensim.core.config import load_settings

        path = tmp_path / "settings.yaml"
        path.write_text("feedback_preset: ${TOKENSIM_TEST_PRESET:-permissive}\n")
        monkeypatch.delenv("TOKENSIM_TEST_PRESET", raising=False)

        assert load_settings(path).feedback.max_depth == 20

    def test_missing_file(self, tmp_path: Path) -> None:
        from tokensim.core.config import load_settings

        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "absent.yaml")


class TestLoadNodeConfig:
    def test_camel_case_yaml(self, tmp_path: Path) -> None:
        from tokensim.contracts.enums import AggregationMethod, AggregationTriggerType
        from tokensim.core.config import load_node_config

        path = tmp_path / "queue.yaml"
        path.write_text(
            "nodeId: Queue_1\n"
            "type: Queue\n"
            "capacity: 3\n"
            "aggregation:\n"
            "  method: sum\n"
            "  trigger:\n"
            "    type: time\n"
            "    window: 5\n"
        )

        config = load_node_config(path)
        assert config.node_id == "Queue_1"
        assert config.capacity == 3
        assert config.aggregation is not None
        assert config.aggregation.method == AggregationMethod.SUM
        assert config.aggregation.trigger.type == AggregationTriggerType.TIME
        assert config.aggregation.trigger.window == 5

    def test_json_document(self, tmp_path: Path) -> None:
        from tokensim.core.config import load_node_config

        path = tmp_path / "sink.json"
        path.write_text('{"nodeId": "Sink_1", "type": "Sink"}')

        assert load_node_config(path).type == "Sink"

    def test_non_mapping_rejected(self, tmp_path: Path) -> None:
        from tokensim.core.config import load_node_config

        path = tmp_path / "bad.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError, match="mapping"):
            load_node_config(path)

    def test_invalid_capacity(self, tmp_path: Path) -> None:
        from tokensim.core.config import load_node_config

        path = tmp_path / "bad.yaml"
        path.write_text("nodeId: Q\ntype: Queue\ncapacity: 0\n")

        with pytest.raises(ValidationError):
            load_node_config(path)
