"""Ambient stack: settings, structured logging, event bus and the activity log."""

from tokensim.core.config import (
    FeedbackConfigFactory,
    LazyLoaderConfig,
    LineageErrorConfig,
    NodeConfig,
    TokensimSettings,
    load_node_config,
    load_settings,
)
from tokensim.core.events import EventBus, EventBusProtocol, NullEventBus
from tokensim.core.history import ActivityLog
from tokensim.core.logging import configure_logging, get_logger

__all__ = [
    "ActivityLog",
    "EventBus",
    "EventBusProtocol",
    "FeedbackConfigFactory",
    "LazyLoaderConfig",
    "LineageErrorConfig",
    "NodeConfig",
    "NullEventBus",
    "TokensimSettings",
    "configure_logging",
    "get_logger",
    "load_node_config",
    "load_settings",
]
