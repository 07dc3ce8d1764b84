"""Calendar conflict detection.

Intervals are half-open ``[start, end)``: two intervals conflict iff
``a.start < b.end and b.start < a.end``.  Intervals that only touch at a
boundary do not conflict.

Severity is a heuristic: containment of one interval in the other is
``high``, any other overlap is ``medium``.  Records are advisory evidence
for a human or a higher-level policy; nothing here changes a booking.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from booking_lifecycle.core.enums import ConflictSeverity
from booking_lifecycle.core.errors import ValidationError


@dataclass(frozen=True, order=True)
class Interval:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if not self.start < self.end:
            raise ValidationError(
                f"Interval must end after it starts: [{self.start}, {self.end})"
            )

    def contains(self, other: Interval) -> bool:
        return self.start <= other.start and other.end <= self.end


@dataclass(frozen=True)
class ConflictRecord:
    external_event_ref: str
    booking_ref: str
    severity: ConflictSeverity
    detected_at: datetime


def overlaps(a: Interval, b: Interval) -> bool:
    return a.start < b.end and b.start < a.end


def classify(a: Interval, b: Interval) -> ConflictSeverity | None:
    """Severity of the overlap between *a* and *b*, or None if disjoint."""
    if not overlaps(a, b):
        return None
    if a.contains(b) or b.contains(a):
        return ConflictSeverity.HIGH
    return ConflictSeverity.MEDIUM


def detect_conflict(
    booking_ref: str,
    booking_interval: Interval,
    external_ref: str,
    external_interval: Interval,
    now: datetime,
) -> ConflictRecord | None:
    severity = classify(booking_interval, external_interval)
    if severity is None:
        return None
    return ConflictRecord(
        external_event_ref=external_ref,
        booking_ref=booking_ref,
        severity=severity,
        detected_at=now,
    )


def detect_conflicts(
    bookings: Iterable[tuple[str, Interval]],
    external_events: Iterable[tuple[str, Interval]],
    now: datetime,
) -> list[ConflictRecord]:
    """Every overlapping (booking, external event) pair.

    Output is ordered by booking start, then external start, so the same
    inputs always give the same list.
    """
    externals = sorted(external_events, key=lambda item: (item[1], item[0]))
    records: list[ConflictRecord] = []
    for booking_ref, interval in sorted(bookings, key=lambda item: (item[1], item[0])):
        for external_ref, external_interval in externals:
            if external_interval.start >= interval.end:
                break
            record = detect_conflict(
                booking_ref, interval, external_ref, external_interval, now,
            )
            if record is not None:
                records.append(record)
    return records
