"""Raw log action to canonical event mapping.

Raw actions are whatever strings node implementations write to the
activity log. Only the actions below drive the canonical state machines.
Anything else normalizes to None and is treated as a variable-update-only
entry by the replay engine, not as an error: plenty of log lines
(e.g. CREATED, FORWARDED) exist purely for human consumption.
"""

from __future__ import annotations

from types import MappingProxyType

from tokensim.contracts.enums import CanonicalEvent

LOG_TO_EVENT_MAP: MappingProxyType[str, str] = MappingProxyType(
    {
        "RECEIVE_TOKEN": CanonicalEvent.TOKEN_RECEIVED,
        "TOKEN_CONSUMED_FOR_AGGREGATION": CanonicalEvent.CONSUME_TOKEN,
        "AGGREGATED_SUM": CanonicalEvent.AGGREGATION_COMPLETE,
        "AGGREGATED_AVERAGE": CanonicalEvent.AGGREGATION_COMPLETE,
        "AGGREGATED_COUNT": CanonicalEvent.AGGREGATION_COMPLETE,
        "TOKEN_FORWARDED_FROM_OUTPUT": CanonicalEvent.TOKEN_SENT,
        "EMIT_TOKEN": CanonicalEvent.TOKEN_CREATED,
        "CONSUME_TOKEN": CanonicalEvent.TOKEN_RECEIVED,
        "START_PROCESSING": CanonicalEvent.INPUTS_READY,
        "COMPLETE_PROCESSING": CanonicalEvent.CALCULATION_COMPLETE,
        "AGGREGATION_WINDOW_PASSED_EMPTY_INPUT": CanonicalEvent.TIME_WINDOW_ELAPSED,
    }
)

# Events that update runtime variables but never transition
NON_TRANSITIONING_EVENTS: frozenset[str] = frozenset({CanonicalEvent.CONSUME_TOKEN})


def normalize_action(raw_action: str) -> str | None:
    """Map a raw action string to its canonical event, or None if unmapped.

    Matching is exact and case-sensitive.
    """
    return LOG_TO_EVENT_MAP.get(raw_action)
