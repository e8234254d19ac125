"""
Tests for event deduplication.

Overlapping and retried fetch windows deliver the same event more than
once; the fold downstream must see each event exactly once.
"""

import pytest

from medverify.core import count_duplicates, deduplicate
from medverify.schemas import EventKind, RawEvent


def created(token_id, position=None):
    return RawEvent(
        kind=EventKind.RECORD_CREATED,
        log_position=token_id if position is None else position,
        args={
            "token_id": token_id,
            "owner_address": "0xaaa",
            "provider_name": "GeneralHospital",
        },
    )


def requested(token_id, insurer, position=10, doctor="GeneralHospital"):
    return RawEvent(
        kind=EventKind.VERIFICATION_REQUESTED,
        log_position=position,
        args={
            "token_id": token_id,
            "insurer_name": insurer,
            "doctor_name": doctor,
        },
    )


class TestDeduplicate:
    """Deduplicator properties."""

    @pytest.fixture
    def events(self):
        return [
            created(1),
            requested(1, "Acme", position=5),
            created(2),
            requested(2, "Acme", position=6),
            requested(2, "Globex", position=7),
        ]

    def test_idempotent_over_concatenation(self, events):
        """dedup(e ++ e) == dedup(e)."""
        assert deduplicate(events + events) == deduplicate(events)

    def test_idempotent_when_applied_twice(self, events):
        once = deduplicate(events + events)
        assert deduplicate(once) == once

    def test_output_is_order_preserving_subsequence(self, events):
        shuffled = [events[2], events[0], events[2], events[4], events[1], events[0]]
        unique = deduplicate(shuffled)

        assert unique == [events[2], events[0], events[4], events[1]]
        positions = [shuffled.index(e) for e in unique]
        assert positions == sorted(positions)

    def test_no_duplicates_is_unchanged(self, events):
        assert deduplicate(events) == events

    def test_empty_input(self):
        assert deduplicate([]) == []

    def test_first_seen_wins(self):
        """Same natural key from a later window keeps the first delivery."""
        first = requested(2, "Acme", position=6, doctor="GeneralHospital")
        later = requested(2, "Acme", position=6, doctor="General Hospital")

        assert deduplicate([first, later]) == [first]

    def test_insurer_name_compared_case_insensitively(self):
        """'acme' and 'Acme' are the same request."""
        lower = requested(2, "acme")
        upper = requested(2, "Acme")

        assert deduplicate([lower, upper]) == [lower]

    def test_different_insurers_are_distinct(self):
        acme = requested(3, "Acme")
        globex = requested(3, "Globex")

        assert deduplicate([acme, globex]) == [acme, globex]

    def test_same_token_different_kinds_are_distinct(self):
        events = [created(4), requested(4, "Acme")]
        assert deduplicate(events) == events

    def test_overlapping_windows_yield_one_request(self):
        """Two windows both returning the token 2 request keep exactly one."""
        window_a = [created(1, position=1), requested(2, "Acme", position=100)]
        window_b = [requested(2, "Acme", position=100), created(3, position=150)]

        unique = deduplicate(window_a + window_b)
        assert [e.natural_key for e in unique] == [
            ("RecordCreated", 1),
            ("VerificationRequested", 2, "acme"),
            ("RecordCreated", 3),
        ]


class TestCountDuplicates:

    def test_counts_dropped_events(self):
        events = [created(1), created(1), requested(1, "Acme"), requested(1, "ACME")]
        assert count_duplicates(events) == 2

    def test_zero_for_unique_input(self):
        assert count_duplicates([created(1), created(2)]) == 0
