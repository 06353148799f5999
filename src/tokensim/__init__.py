"""
tokensim: Discrete-event token simulation with FSM replay and lineage.

Nodes exchange immutable tokens over a simulated timeline. Every step is
written to an append-only activity log, from which node state can be
replayed and any token's provenance reconstructed.
"""

__version__ = "0.1.0"
