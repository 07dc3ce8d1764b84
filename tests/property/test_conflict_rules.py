"""Property test: interval overlap and severity rules.

Intervals are generated as minute offsets from a fixed origin so that
touching and nested intervals come up often.
"""

from datetime import datetime, timedelta, timezone

from hypothesis import given, strategies as st

from booking_lifecycle.core.enums import ConflictSeverity
from booking_lifecycle.domain.conflicts import Interval, classify, detect_conflicts, overlaps

ORIGIN = datetime(2024, 6, 3, tzinfo=timezone.utc)
NOW = ORIGIN


@st.composite
def intervals(draw):
    start = draw(st.integers(min_value=0, max_value=240))
    length = draw(st.integers(min_value=1, max_value=240))
    return Interval(
        ORIGIN + timedelta(minutes=start),
        ORIGIN + timedelta(minutes=start + length),
    )


@given(a=intervals(), b=intervals())
def test_overlap_is_symmetric(a, b):
    assert overlaps(a, b) == overlaps(b, a)
    assert classify(a, b) == classify(b, a)


@given(a=intervals(), minutes=st.integers(min_value=1, max_value=240))
def test_touching_never_conflicts(a, minutes):
    after = Interval(a.end, a.end + timedelta(minutes=minutes))
    assert not overlaps(a, after)
    assert classify(after, a) is None


@given(a=intervals())
def test_interval_overlaps_itself(a):
    assert classify(a, a) is ConflictSeverity.HIGH


@given(a=intervals(), b=intervals())
def test_severity_matches_containment(a, b):
    severity = classify(a, b)
    if severity is None:
        assert a.end <= b.start or b.end <= a.start
    elif severity is ConflictSeverity.HIGH:
        assert a.contains(b) or b.contains(a)
    else:
        assert not a.contains(b) and not b.contains(a)


@given(
    bookings=st.lists(intervals(), max_size=6),
    externals=st.lists(intervals(), max_size=6),
)
def test_batch_matches_pairwise(bookings, externals):
    named_bookings = [(f"bk-{i}", iv) for i, iv in enumerate(bookings)]
    named_externals = [(f"ext-{i}", iv) for i, iv in enumerate(externals)]

    records = detect_conflicts(named_bookings, named_externals, NOW)

    expected = {
        (b_ref, e_ref)
        for b_ref, b in named_bookings
        for e_ref, e in named_externals
        if overlaps(b, e)
    }
    assert {(r.booking_ref, r.external_event_ref) for r in records} == expected
    assert len(records) == len(expected)
