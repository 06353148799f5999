"""Simulation engine: canonical FSMs, replay and the enhanced-FSM runtime.

- generate_for_node_config / generate_fsl_syntax: canonical state machines per node type
- normalize_action: raw log action -> canonical event
- ReplayEngine: replays a node's log against its canonical FSM
- EnhancedFSMRuntime: event/message/action pipeline for enhanced nodes
- FeedbackLoopManager: depth, cycle and circuit-breaker admission for feedback

Example:
    from tokensim.core.config import load_node_config
    from tokensim.engine import ReplayEngine

    engine = ReplayEngine(load_node_config(Path("queue.yaml")))
    result = engine.analyze(logs)
    print(result.consistency_report.is_consistent)
"""

from tokensim.engine.actions import ActionExecutor, ActionFactory
from tokensim.engine.canonical import generate_for_node_config, generate_fsl_syntax
from tokensim.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from tokensim.engine.enhanced import EnhancedFSMRuntime
from tokensim.engine.feedback import FeedbackLoopManager
from tokensim.engine.interpretation import InterpretationEngine, RuleFactory
from tokensim.engine.normalizer import normalize_action
from tokensim.engine.replay import ReplayEngine, analyze_log_sequence, generate_analysis
from tokensim.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager

__all__ = [
    "DEFAULT_CLOCK",
    "ActionExecutor",
    "ActionFactory",
    "Clock",
    "EnhancedFSMRuntime",
    "FeedbackLoopManager",
    "InterpretationEngine",
    "MaxRetriesExceeded",
    "MockClock",
    "ReplayEngine",
    "RetryConfig",
    "RetryManager",
    "RuleFactory",
    "SystemClock",
    "analyze_log_sequence",
    "generate_analysis",
    "generate_for_node_config",
    "generate_fsl_syntax",
    "normalize_action",
]
