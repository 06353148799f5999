# tests/property/__init__.py
"""Property-based tests for tokensim.

Property-based testing validates invariants that must hold for ALL inputs,
not just the specific examples we think of. Replay and lineage results are
shown to users as the account of what a simulation did, so determinism and
termination are non-negotiable.

Test categories:
- engine/: Replay determinism, raw state independence, feedback admission
- lineage/: Ancestry levels, contribution sums, cycle termination
"""
