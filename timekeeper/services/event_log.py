"""
Event log store: ordering rules and derived values over the timer events
of one attendance record.

Order is always ``(timestamp, id)``; insertion order and list position
returned by the database are never trusted on their own. Neighbours are
looked up with explicit queries on the timestamp index.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from timekeeper.core.exceptions import OrderingError, ValidationError
from timekeeper.models.attendance import EventType, TimerEvent


def sort_key(event: TimerEvent) -> tuple[int, int]:
    # Unflushed events have no id yet and sort after flushed ones on ties
    return (event.timestamp, event.id if event.id is not None else 2**63)


def sort_events(events: Iterable[TimerEvent]) -> list[TimerEvent]:
    return sorted(events, key=sort_key)


def validate_event_type(event_type: str) -> str:
    if event_type not in EventType.ALL:
        raise ValidationError("Invalid event type. Must be WORK, REST, or END")
    return event_type


async def load_events(db: AsyncSession, record_id: int) -> list[TimerEvent]:
    result = await db.execute(
        select(TimerEvent)
        .where(TimerEvent.attendance_record_id == record_id)
        .order_by(TimerEvent.timestamp.asc(), TimerEvent.id.asc())
    )
    return list(result.scalars().all())


async def find_neighbors(
    db: AsyncSession, event: TimerEvent
) -> tuple[TimerEvent | None, TimerEvent | None]:
    """Immediate chronological predecessor and successor of *event*."""
    same_record = and_(
        TimerEvent.attendance_record_id == event.attendance_record_id,
        TimerEvent.id != event.id,
    )
    before = or_(
        TimerEvent.timestamp < event.timestamp,
        and_(TimerEvent.timestamp == event.timestamp, TimerEvent.id < event.id),
    )
    after = or_(
        TimerEvent.timestamp > event.timestamp,
        and_(TimerEvent.timestamp == event.timestamp, TimerEvent.id > event.id),
    )

    prev_result = await db.execute(
        select(TimerEvent)
        .where(same_record, before)
        .order_by(TimerEvent.timestamp.desc(), TimerEvent.id.desc())
        .limit(1)
    )
    next_result = await db.execute(
        select(TimerEvent)
        .where(same_record, after)
        .order_by(TimerEvent.timestamp.asc(), TimerEvent.id.asc())
        .limit(1)
    )
    return prev_result.scalar_one_or_none(), next_result.scalar_one_or_none()


def latest_event(events: Sequence[TimerEvent]) -> TimerEvent | None:
    return max(events, key=sort_key) if events else None


def find_end_event(events: Sequence[TimerEvent]) -> TimerEvent | None:
    return next((e for e in events if e.event_type == EventType.END), None)


def insertion_neighbors(
    events: Sequence[TimerEvent], timestamp: int
) -> tuple[TimerEvent | None, TimerEvent | None]:
    """Where a new event at *timestamp* would land: (previous, next).

    A new event goes after existing events with the same timestamp.
    """
    previous = None
    following = None
    for event in sort_events(events):
        if event.timestamp <= timestamp:
            previous = event
        elif following is None:
            following = event
    return previous, following


def validate_append(events: Sequence[TimerEvent], event_type: str, timestamp: int) -> None:
    """Reject an append that would not keep END as the unique, last event."""
    end_event = find_end_event(events)
    if end_event is not None and timestamp >= end_event.timestamp:
        raise OrderingError(
            "An END event already exists; no event can be created at or after it",
            code="EVENT_AFTER_END",
            details={"requested_time": timestamp, "end_event_time": end_event.timestamp},
        )

    if event_type == EventType.END and events:
        latest = latest_event(events)
        if timestamp <= latest.timestamp:
            raise OrderingError(
                "END event must be later than every existing event",
                code="END_NOT_LAST",
                details={"requested_time": timestamp, "latest_event_time": latest.timestamp},
            )


def compute_work_seconds(events: Iterable[TimerEvent]) -> int:
    """Sum of WORK spans, each closed by the next REST or END.

    REST time is never counted, and a trailing open WORK span is ignored.
    """
    total = 0
    last_work_start: int | None = None
    for event in sort_events(events):
        if event.event_type == EventType.WORK:
            last_work_start = event.timestamp
        elif event.event_type in (EventType.REST, EventType.END) and last_work_start is not None:
            total += event.timestamp - last_work_start
            last_work_start = None
    return total


def compute_work_minutes(events: Iterable[TimerEvent]) -> int:
    return compute_work_seconds(events) // 60


def durations_from_next(events: Sequence[TimerEvent]) -> dict[int, int | None]:
    """Seconds from each event to the one after it (None for the last)."""
    ordered = sort_events(events)
    durations: dict[int, int | None] = {}
    for index, event in enumerate(ordered):
        if index < len(ordered) - 1:
            durations[event.id] = ordered[index + 1].timestamp - event.timestamp
        else:
            durations[event.id] = None
    return durations


def snapshot(event: TimerEvent) -> dict:
    """Plain dict of an event for audit rows."""
    return {
        "eventId": event.id,
        "eventType": event.event_type,
        "timestamp": event.timestamp,
        "endTimestamp": event.end_timestamp,
        "durationFromPrevious": event.duration_from_previous,
        "memo": event.memo,
    }
