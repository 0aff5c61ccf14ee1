"""Tests for event ordering rules and the work-minutes walk."""

import pytest

from timekeeper.core.exceptions import OrderingError, ValidationError
from timekeeper.models.attendance import TimerEvent
from timekeeper.services import event_log
from timeline import at


def ev(event_type: str, ts: int, event_id: int | None = None) -> TimerEvent:
    return TimerEvent(id=event_id, event_type=event_type, timestamp=ts)


def test_work_rest_work_end_counts_only_work_spans():
    events = [ev("WORK", at(9)), ev("REST", at(12)), ev("WORK", at(13)), ev("END", at(18))]
    assert event_log.compute_work_seconds(events) == 8 * 3600
    assert event_log.compute_work_minutes(events) == 480


def test_work_minutes_is_order_independent():
    events = [ev("END", at(18)), ev("WORK", at(13)), ev("WORK", at(9)), ev("REST", at(12))]
    assert event_log.compute_work_minutes(events) == 480


def test_trailing_open_work_span_is_ignored():
    events = [ev("WORK", at(9)), ev("REST", at(10)), ev("WORK", at(11))]
    assert event_log.compute_work_minutes(events) == 60


def test_rest_without_open_work_adds_nothing():
    events = [ev("REST", at(9)), ev("END", at(10))]
    assert event_log.compute_work_minutes(events) == 0


def test_repeated_work_restarts_the_span():
    events = [ev("WORK", at(9)), ev("WORK", at(10)), ev("END", at(11))]
    assert event_log.compute_work_minutes(events) == 60


def test_minutes_are_floored():
    events = [ev("WORK", at(9)), ev("END", at(9, 1, 59))]
    assert event_log.compute_work_seconds(events) == 119
    assert event_log.compute_work_minutes(events) == 1


def test_sort_breaks_timestamp_ties_by_id():
    a, b = ev("WORK", at(9), 2), ev("REST", at(9), 1)
    assert event_log.sort_events([a, b]) == [b, a]


def test_durations_from_next():
    events = [ev("WORK", at(9), 1), ev("REST", at(12), 2), ev("END", at(13), 3)]
    assert event_log.durations_from_next(events) == {1: 3 * 3600, 2: 3600, 3: None}


def test_insertion_neighbors_places_ties_after_existing():
    first, second = ev("WORK", at(9), 1), ev("REST", at(12), 2)
    assert event_log.insertion_neighbors([first, second], at(10)) == (first, second)
    assert event_log.insertion_neighbors([first, second], at(12)) == (second, None)
    assert event_log.insertion_neighbors([first, second], at(8)) == (None, first)
    assert event_log.insertion_neighbors([], at(8)) == (None, None)


def test_append_at_end_timestamp_is_rejected():
    events = [ev("WORK", at(9), 1), ev("END", at(18), 2)]
    with pytest.raises(OrderingError) as exc:
        event_log.validate_append(events, "REST", at(18))
    assert exc.value.code == "EVENT_AFTER_END"
    assert exc.value.details["end_event_time"] == at(18)


def test_append_before_end_is_allowed():
    events = [ev("WORK", at(9), 1), ev("END", at(18), 2)]
    event_log.validate_append(events, "REST", at(12))


def test_end_must_be_strictly_last():
    events = [ev("WORK", at(9), 1), ev("REST", at(12), 2)]
    with pytest.raises(OrderingError) as exc:
        event_log.validate_append(events, "END", at(12))
    assert exc.value.code == "END_NOT_LAST"
    event_log.validate_append(events, "END", at(12, 0, 1))


def test_first_event_may_be_end():
    event_log.validate_append([], "END", at(9))


def test_unknown_event_type():
    with pytest.raises(ValidationError):
        event_log.validate_event_type("LUNCH")


def test_snapshot_shape():
    event = ev("REST", at(12), 7)
    event.memo = "lunch"
    assert event_log.snapshot(event) == {
        "eventId": 7,
        "eventType": "REST",
        "timestamp": at(12),
        "endTimestamp": None,
        "durationFromPrevious": None,
        "memo": "lunch",
    }
