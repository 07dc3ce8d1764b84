"""Tests for calendar conflict detection.

Covers:
- Half-open overlap rule, including touching boundaries.
- Severity: containment is high, partial overlap is medium.
- Batch detection ordering.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from booking_lifecycle.core.enums import ConflictSeverity
from booking_lifecycle.core.errors import ValidationError
from booking_lifecycle.domain.conflicts import (
    Interval,
    classify,
    detect_conflict,
    detect_conflicts,
    overlaps,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)
BASE = datetime(2024, 6, 3, 9, tzinfo=timezone.utc)


def _iv(start_h: float, end_h: float) -> Interval:
    return Interval(BASE + timedelta(hours=start_h), BASE + timedelta(hours=end_h))


class TestInterval:
    def test_empty_interval_rejected(self):
        with pytest.raises(ValidationError):
            _iv(1, 1)

    def test_reversed_interval_rejected(self):
        with pytest.raises(ValidationError):
            _iv(2, 1)

    def test_contains_is_inclusive(self):
        assert _iv(0, 2).contains(_iv(0, 2))
        assert _iv(0, 2).contains(_iv(0.5, 1))
        assert not _iv(0, 2).contains(_iv(1, 3))


class TestOverlap:
    @pytest.mark.parametrize("a,b,expected", [
        ((0, 1), (1, 2), False),   # touching at end
        ((1, 2), (0, 1), False),   # touching at start
        ((0, 1), (2, 3), False),   # disjoint
        ((0, 2), (1, 3), True),    # partial
        ((0, 3), (1, 2), True),    # contains
    ])
    def test_rule(self, a, b, expected):
        assert overlaps(_iv(*a), _iv(*b)) is expected
        assert overlaps(_iv(*b), _iv(*a)) is expected


class TestSeverity:
    def test_containment_is_high(self):
        assert classify(_iv(0, 3), _iv(1, 2)) is ConflictSeverity.HIGH
        assert classify(_iv(1, 2), _iv(0, 3)) is ConflictSeverity.HIGH

    def test_identical_is_high(self):
        assert classify(_iv(0, 1), _iv(0, 1)) is ConflictSeverity.HIGH

    def test_partial_is_medium(self):
        assert classify(_iv(0, 2), _iv(1, 3)) is ConflictSeverity.MEDIUM

    def test_disjoint_is_none(self):
        assert classify(_iv(0, 1), _iv(1, 2)) is None

    def test_record_fields(self):
        record = detect_conflict("bk-1", _iv(0, 2), "ext-1", _iv(1, 3), NOW)
        assert record is not None
        assert record.booking_ref == "bk-1"
        assert record.external_event_ref == "ext-1"
        assert record.severity is ConflictSeverity.MEDIUM
        assert record.detected_at == NOW

    def test_no_record_when_touching(self):
        assert detect_conflict("bk-1", _iv(0, 1), "ext-1", _iv(1, 2), NOW) is None


class TestDetectConflicts:
    def test_every_pair_in_order(self):
        bookings = [("bk-2", _iv(4, 5)), ("bk-1", _iv(0, 2))]
        externals = [
            ("ext-c", _iv(4.5, 6)),
            ("ext-a", _iv(1, 3)),
            ("ext-b", _iv(0.5, 1.5)),
            ("ext-d", _iv(2, 4)),  # touches both bookings
        ]
        records = detect_conflicts(bookings, externals, NOW)
        assert [(r.booking_ref, r.external_event_ref, r.severity) for r in records] == [
            ("bk-1", "ext-b", ConflictSeverity.HIGH),
            ("bk-1", "ext-a", ConflictSeverity.MEDIUM),
            ("bk-2", "ext-c", ConflictSeverity.MEDIUM),
        ]

    def test_empty_inputs(self):
        assert detect_conflicts([], [("ext-a", _iv(0, 1))], NOW) == []
        assert detect_conflicts([("bk-1", _iv(0, 1))], [], NOW) == []
