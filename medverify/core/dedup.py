"""
Event deduplication.

Overlapping or retried fetch windows against the log deliver the same
event more than once. Folding downstream must be idempotent, so the
boundary for idempotence is enforced once, here.

Rules:
- Output is a subsequence of the input (relative order preserved)
- At most one event per natural key
- First seen wins
- Pure: no state survives between calls
"""

from typing import Iterable

from ..schemas import RawEvent


def deduplicate(events: Iterable[RawEvent]) -> list[RawEvent]:
    """
    Return the longest order-preserving subsequence with unique natural keys.

    deduplicate(events + events) == deduplicate(events) for any input.
    """
    seen: set[tuple] = set()
    unique: list[RawEvent] = []

    for event in events:
        key = event.natural_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(event)

    return unique


def count_duplicates(events: list[RawEvent]) -> int:
    """Number of events deduplicate() would drop."""
    return len(events) - len({e.natural_key for e in events})
