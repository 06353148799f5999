"""
Configuration schema and loading for tokensim.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.

Models that mirror scenario/interchange JSON (node configs, feedback
config) accept and emit camelCase keys via aliases, while Python code
uses snake_case attribute names.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from tokensim.contracts.enums import AggregationMethod, AggregationTriggerType
from tokensim.contracts.feedback import (
    INTERCHANGE_CONFIG,
    CircuitBreakerConfig,
    FeedbackLoopConfig,
    FeedbackRoutingConfig,
)


class AggregationTriggerConfig(BaseModel):
    """What makes a Queue leave its accumulating state.

    Example YAML:
        trigger:
          type: time
          window: 5        # simulation seconds since the time anchor
    """

    model_config = INTERCHANGE_CONFIG

    type: AggregationTriggerType = Field(description="Trigger kind: time, capacity, or count")
    window: float | None = Field(
        default=None,
        ge=0,
        description="Time window (simulation time units) for time triggers",
    )
    threshold: int | None = Field(
        default=None,
        gt=0,
        description="Token threshold for count triggers",
    )


class AggregationConfig(BaseModel):
    """Aggregation policy of a Queue node."""

    model_config = INTERCHANGE_CONFIG

    method: AggregationMethod = Field(description="Aggregation formula applied to buffered tokens")
    formula: str = Field(default="", description="Human-readable formula text")
    trigger: AggregationTriggerConfig = Field(description="When aggregation fires")


class NodeConfig(BaseModel):
    """Static configuration of one simulation node.

    Unknown types are accepted here and rejected by the canonical generator
    (UnsupportedNodeType). A scenario store may hold node kinds this core
    does not model.
    """

    model_config = INTERCHANGE_CONFIG

    node_id: str = Field(description="Unique node identifier")
    type: str = Field(description="Node type, e.g. Queue, DataSource, ProcessNode, Sink")
    capacity: int | None = Field(default=None, gt=0, description="Queue capacity (capacity trigger)")
    aggregation: AggregationConfig | None = Field(default=None, description="Queue aggregation policy")


class FeedbackConfigFactory:
    """Named feedback configuration presets."""

    @staticmethod
    def conservative() -> FeedbackLoopConfig:
        """Shallow loops, moderate breaker."""
        return FeedbackLoopConfig(
            max_depth=5,
            circuit_breaker=CircuitBreakerConfig(threshold=50, time_window=60000, cooldown_period=30000),
        )

    @staticmethod
    def permissive() -> FeedbackLoopConfig:
        """Deep loops, high breaker threshold, short cooldown."""
        return FeedbackLoopConfig(
            max_depth=20,
            circuit_breaker=CircuitBreakerConfig(threshold=200, time_window=60000, cooldown_period=15000),
        )

    @staticmethod
    def restrictive() -> FeedbackLoopConfig:
        """Very shallow loops, low threshold, long cooldown, no self-feedback."""
        return FeedbackLoopConfig(
            max_depth=3,
            circuit_breaker=CircuitBreakerConfig(threshold=20, time_window=60000, cooldown_period=60000),
            routing=FeedbackRoutingConfig(allow_self_feedback=False),
        )

    @staticmethod
    def disabled() -> FeedbackLoopConfig:
        """No feedback at all."""
        return FeedbackLoopConfig(
            enabled=False,
            max_depth=0,
            circuit_breaker=CircuitBreakerConfig(enabled=False, threshold=0, time_window=0, cooldown_period=0),
            routing=FeedbackRoutingConfig(allow_self_feedback=False, allow_external_feedback=False),
        )

    @classmethod
    def by_name(cls, name: str) -> FeedbackLoopConfig:
        """Look up a preset by name.

        Raises:
            ValueError: If the preset does not exist
        """
        presets = cls.names()
        if name not in presets:
            raise ValueError(f"Unknown feedback preset '{name}'. Available: {list(presets)}")
        factory: Any = getattr(cls, name)
        config: FeedbackLoopConfig = factory()
        return config

    @staticmethod
    def names() -> tuple[str, ...]:
        return ("conservative", "permissive", "restrictive", "disabled")


class LineageErrorConfig(BaseModel):
    """Budgets and recovery behavior for lineage computation."""

    model_config = {"frozen": True}

    max_computation_time: float = Field(default=30000, gt=0, description="Wall-clock budget per trace (ms)")
    max_traversal_depth: int = Field(default=50, gt=0, description="Maximum generations to traverse")
    max_tokens_to_process: int = Field(default=10000, gt=0, description="Maximum tokens visited per trace direction")
    enable_partial_results: bool = Field(default=True, description="Return partial lineage instead of nothing")
    enable_retry_mechanism: bool = Field(default=True, description="Allow retries of failed traces")
    max_retry_attempts: int = Field(default=3, ge=0, description="Retries allowed per token")
    retry_delay_ms: float = Field(default=1000, ge=0, description="Suggested delay between retries (ms)")
    enable_circular_reference_detection: bool = Field(default=True, description="Detect cycles in provenance")
    enable_performance_warnings: bool = Field(default=True, description="Attach performance warnings")


class LazyLoaderConfig(BaseModel):
    """Lazy lineage tree loading for UI consumption."""

    model_config = {"frozen": True}

    initial_depth: int = Field(default=3, ge=0, description="Depth loaded eagerly by create_lazy_tree")
    batch_size: int = Field(default=20, gt=0, description="Nodes loaded per batch")
    max_concurrent_loads: int = Field(default=3, gt=0, description="Concurrent child loads")
    preload_threshold: int = Field(default=2, ge=0, description="Rows beyond the viewport to preload")
    enable_virtualization: bool = Field(default=True, description="Only materialize visible nodes")
    debounce_ms: float = Field(default=100, ge=0, description="Queue debounce interval (ms)")
    max_expanded_nodes: int = Field(default=100, gt=0, description="Expanded-node cap (oldest evicted)")


class ReplaySettings(BaseModel):
    """Replay engine reporting options."""

    model_config = {"frozen": True}

    warn_unmapped_actions: bool = Field(
        default=True,
        description="Add a report warning the first time each unmapped raw action is seen",
    )


class RetrySettings(BaseModel):
    """Backoff for actions with onError=retry."""

    model_config = {"frozen": True}

    initial_delay_seconds: float = Field(default=0.1, ge=0, description="Initial backoff delay")
    max_delay_seconds: float = Field(default=5.0, gt=0, description="Maximum backoff delay")
    exponential_base: float = Field(default=2.0, gt=1.0, description="Exponential backoff base")
    jitter_seconds: float = Field(default=0.1, ge=0, description="Random jitter added to each wait")


class ActionSettings(BaseModel):
    """Action executor configuration."""

    model_config = {"frozen": True}

    max_workers: int = Field(default=4, gt=0, description="Worker threads for timed action outputs")
    default_timeout_ms: float = Field(default=5000, gt=0, description="Timeout when an action sets none")


class LoggingSettings(BaseModel):
    """Structured logging configuration."""

    model_config = {"frozen": True}

    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    json_output: bool = Field(default=False, description="Emit JSON lines instead of console output")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Reject levels stdlib logging does not know."""
        normalized = v.upper()
        if normalized not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return normalized


class TokensimSettings(BaseModel):
    """Top-level tokensim configuration.

    All settings are validated and frozen after construction.
    """

    model_config = {"frozen": True}

    feedback_preset: str | None = Field(
        default=None,
        description="Named feedback preset; mutually exclusive with an explicit feedback block",
    )
    feedback: FeedbackLoopConfig = Field(
        default_factory=FeedbackLoopConfig,
        description="Feedback loop admission control",
    )
    lineage: LineageErrorConfig = Field(
        default_factory=LineageErrorConfig,
        description="Lineage computation budgets",
    )
    lazy_loader: LazyLoaderConfig = Field(
        default_factory=LazyLoaderConfig,
        description="Lazy lineage loading",
    )
    replay: ReplaySettings = Field(
        default_factory=ReplaySettings,
        description="Replay engine reporting",
    )
    actions: ActionSettings = Field(
        default_factory=ActionSettings,
        description="Action executor configuration",
    )
    retry: RetrySettings = Field(
        default_factory=RetrySettings,
        description="Action retry backoff",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Structured logging",
    )

    @field_validator("feedback_preset")
    @classmethod
    def validate_feedback_preset(cls, v: str | None) -> str | None:
        if v is not None and v not in FeedbackConfigFactory.names():
            raise ValueError(f"Unknown feedback preset '{v}'. Available: {list(FeedbackConfigFactory.names())}")
        return v

    @model_validator(mode="before")
    @classmethod
    def apply_feedback_preset(cls, data: Any) -> Any:
        """Expand feedback_preset into the feedback block."""
        if not isinstance(data, dict):
            return data
        preset = data.get("feedback_preset")
        if preset is None:
            return data
        if "feedback" in data:
            raise ValueError("feedback_preset and feedback are mutually exclusive")
        if preset not in FeedbackConfigFactory.names():
            # Left for the field validator to report with the full list
            return data
        return {**data, "feedback": FeedbackConfigFactory.by_name(preset)}


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values."""

    def replacer(match: re.Match[str]) -> str:
        env_value = os.environ.get(match.group(1))
        if env_value is not None:
            return env_value
        default = match.group(2)
        if default is not None:
            return default
        # Unresolved: keep verbatim so validation reports the raw text
        return match.group(0)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _ENV_VAR_PATTERN.sub(replacer, value)
        if isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_expand_value(item) for item in value]
        return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lowercase_keys(value: Any) -> Any:
    """Dynaconf uppercases every key; pydantic fields are snake_case.

    Only snake_case/uppercase keys are folded. camelCase interchange keys
    (maxDepth) keep their casing so aliases still match.
    """
    if isinstance(value, dict):
        return {(k.lower() if k.isupper() else k): _lowercase_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lowercase_keys(item) for item in value]
    return value


def load_settings(config_path: Path) -> TokensimSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (TOKENSIM_*) - highest priority
    2. Config file (settings.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: TOKENSIM_FEEDBACK__MAX_DEPTH for nested keys.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated TokensimSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Explicit check for file existence (Dynaconf silently accepts missing files)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="TOKENSIM",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lowercase_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return TokensimSettings(**raw_config)


def load_node_config(path: Path) -> NodeConfig:
    """Load a single node configuration from a YAML or JSON file.

    JSON is a YAML subset, so one loader covers both.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the document is not a mapping
        ValidationError: If the mapping fails NodeConfig validation
    """
    if not path.exists():
        raise FileNotFoundError(f"Node config not found: {path}")
    with path.open(encoding="utf-8") as f:
        document = yaml.safe_load(f)
    if not isinstance(document, dict):
        raise ValueError(f"Node config must be a mapping, got {type(document).__name__}")
    return NodeConfig.model_validate(document)
