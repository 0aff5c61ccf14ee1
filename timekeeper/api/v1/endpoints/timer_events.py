"""
Timer event endpoints: the employee's punch clock.

- GET  /timer-events              today's (or a given day's) record and events
- POST /timer-events              punch WORK / REST / END
- POST /timer-events/cancel-end   undo today's END
- POST /timer-events/{id}/correct-time, PUT /timer-events/{id}/memo,
  DELETE /timer-events/{id}       edits to an existing event
"""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from timekeeper.api.v1.deps import (get_actor, get_db, get_optional_actor,
                                    get_request_meta)
from timekeeper.models.attendance import AttendanceRecord, TimerEvent
from timekeeper.schemas.timer import (AppendEventResponse,
                                      AttendanceRecordRead, CorrectTimeRequest,
                                      DayResponse, EventResponse,
                                      MemoUpdate, MessageResponse,
                                      RecordResponse, TimerEventCreate,
                                      TimerEventRead)
from timekeeper.services import corrections, event_log, records
from timekeeper.services.audit import RequestMetadata
from timekeeper.services.identity import Actor

router = APIRouter(prefix="/timer-events", tags=["timer-events"])


def _event_read(event: TimerEvent, duration_from_next: int | None = None) -> TimerEventRead:
    read = TimerEventRead.model_validate(event)
    read.duration_from_next = duration_from_next
    return read


def _day_response(record: AttendanceRecord | None, events: list[TimerEvent]) -> DayResponse:
    following = event_log.durations_from_next(events)
    return DayResponse(
        attendance_record=AttendanceRecordRead.model_validate(record) if record else None,
        timer_events=[_event_read(e, following[e.id]) for e in event_log.sort_events(events)],
    )


@router.get("", response_model=DayResponse)
async def get_timer_events(
    day: date | None = Query(default=None, alias="date"),
    db: AsyncSession = Depends(get_db),
    actor: Actor | None = Depends(get_optional_actor),
) -> DayResponse:
    """Return the record and ordered events for *date* (default today)."""
    if actor is None:
        return DayResponse(attendance_record=None, timer_events=[])
    record, events = await records.get_day(db, actor.user_id, day)
    return _day_response(record, events)


@router.post("", response_model=AppendEventResponse, status_code=201)
async def create_timer_event(
    body: TimerEventCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    meta: RequestMetadata = Depends(get_request_meta),
) -> AppendEventResponse:
    event, record = await records.append_event(
        db,
        actor,
        body.event_type,
        timestamp=body.timestamp,
        memo=body.memo,
        attendance_id=body.attendance_id,
        meta=meta,
    )
    return AppendEventResponse(
        event=_event_read(event),
        attendance_record=AttendanceRecordRead.model_validate(record),
    )


@router.post("/cancel-end", response_model=RecordResponse)
async def cancel_end(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    meta: RequestMetadata = Depends(get_request_meta),
) -> RecordResponse:
    record = await records.cancel_last_end(db, actor, meta=meta)
    return RecordResponse(attendance_record=AttendanceRecordRead.model_validate(record))


@router.post("/{event_id}/correct-time", response_model=EventResponse)
async def correct_time(
    event_id: int,
    body: CorrectTimeRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    meta: RequestMetadata = Depends(get_request_meta),
) -> EventResponse:
    event = await corrections.correct_event(
        db,
        actor,
        event_id,
        timestamp=body.new_timestamp,
        event_type=body.new_event_type,
        reason=body.reason,
        meta=meta,
    )
    return EventResponse(event=_event_read(event))


@router.put("/{event_id}/memo", response_model=EventResponse)
async def update_memo(
    event_id: int,
    body: MemoUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    meta: RequestMetadata = Depends(get_request_meta),
) -> EventResponse:
    event = await records.update_memo(db, actor, event_id, body.memo, meta=meta)
    return EventResponse(event=_event_read(event))


@router.delete("/{event_id}", response_model=MessageResponse)
async def delete_timer_event(
    event_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    meta: RequestMetadata = Depends(get_request_meta),
) -> MessageResponse:
    await corrections.delete_event(db, actor, event_id, meta=meta)
    return MessageResponse(message="Timer event deleted")
