"""
Attendance record manager: one record per user per calendar day.

Owns the daily record lifecycle: atomic get-or-create on the first punch,
appending WORK / REST / END events, closing the day on END (recomputing
``total_work_minutes`` from the whole log), undoing the END, memo edits
and the per-user history views.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from timekeeper.core.config import settings
from timekeeper.core.exceptions import (AuthorizationError, NotFoundError,
                                        OrderingError, ValidationError)
from timekeeper.core.timeutils import days_ago, epoch_now, local_date
from timekeeper.models.attendance import (Action, AttendanceRecord, EventType,
                                          OperationLog, RecordStatus,
                                          TimerEvent)
from timekeeper.services import event_log
from timekeeper.services.approval import ensure_not_approved
from timekeeper.services.audit import (RequestMetadata, list_operation_logs,
                                       write_operation_log)
from timekeeper.services.identity import Actor
from timekeeper.services.locking import lock_record, unit_of_work, with_record_lock

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


# ── Lookups ─────────────────────────────────────────────────────────
async def get_record(db: AsyncSession, record_id: int) -> AttendanceRecord:
    record = await db.get(AttendanceRecord, record_id)
    if record is None:
        raise NotFoundError("Attendance record not found", code="RECORD_NOT_FOUND")
    return record


async def get_record_for_date(db: AsyncSession, user_id: int, day: date) -> AttendanceRecord | None:
    result = await db.execute(
        select(AttendanceRecord).where(
            AttendanceRecord.user_id == user_id,
            AttendanceRecord.date == day,
        )
    )
    return result.scalar_one_or_none()


async def get_event(db: AsyncSession, event_id: int) -> TimerEvent:
    result = await db.execute(
        select(TimerEvent)
        .where(TimerEvent.id == event_id)
        .execution_options(populate_existing=True)
    )
    event = result.scalar_one_or_none()
    if event is None:
        raise NotFoundError("Timer event not found", code="EVENT_NOT_FOUND")
    return event


def ensure_can_act_on(actor: Actor, owner_id: int, *, allow_admin: bool = True) -> None:
    if actor.user_id == owner_id:
        return
    if allow_admin and actor.is_admin:
        return
    logger.warning("User %d tried to act on data of user %d", actor.user_id, owner_id)
    raise AuthorizationError("You can only modify your own attendance")


async def get_or_create_record(
    db: AsyncSession, user_id: int, day: date, check_in_time: int
) -> AttendanceRecord:
    """Return the (user, day) record, creating it if needed.

    Two concurrent first punches both end up with the same row: the insert
    is a no-op on conflict (or a savepoint retry on other backends) and
    the loser reads the winner's row.
    """
    record = await get_record_for_date(db, user_id, day)
    if record is not None:
        return record

    insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    values = {
        "user_id": user_id,
        "date": day,
        "check_in_time": check_in_time,
        "status": RecordStatus.IN_PROGRESS,
    }
    if insert is not None:
        await db.execute(
            insert(AttendanceRecord)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["user_id", "date"])
        )
    else:
        try:
            async with db.begin_nested():
                db.add(AttendanceRecord(**values))
        except IntegrityError:
            logger.info("Concurrent record creation for user %d on %s", user_id, day)

    record = await get_record_for_date(db, user_id, day)
    if record is None:  # pragma: no cover - the row exists after the upsert
        raise NotFoundError("Attendance record not found", code="RECORD_NOT_FOUND")
    return record


# ── Derived aggregate ───────────────────────────────────────────────
def recompute_totals(record: AttendanceRecord, events: list[TimerEvent]) -> int:
    """Re-run the work-minutes walk over the full log and store it."""
    record.total_work_minutes = event_log.compute_work_minutes(events)
    return record.total_work_minutes


def reset_to_in_progress(record: AttendanceRecord) -> None:
    record.check_out_time = None
    record.total_work_minutes = 0
    record.status = RecordStatus.IN_PROGRESS


def _validate_memo(memo: str | None) -> str | None:
    if memo is not None and len(memo) > settings.MEMO_MAX_LENGTH:
        raise ValidationError(f"Memo must be {settings.MEMO_MAX_LENGTH} characters or less")
    return memo or None


# ── Read ────────────────────────────────────────────────────────────
async def get_day(
    db: AsyncSession, user_id: int, day: date | None = None, *, now: int | None = None
) -> tuple[AttendanceRecord | None, list[TimerEvent]]:
    day = day or local_date(now if now is not None else epoch_now())
    record = await get_record_for_date(db, user_id, day)
    if record is None:
        return None, []
    return record, await event_log.load_events(db, record.id)


# ── Append ──────────────────────────────────────────────────────────
async def append_event(
    db: AsyncSession,
    actor: Actor,
    event_type: str,
    *,
    timestamp: int | None = None,
    memo: str | None = None,
    attendance_id: int | None = None,
    meta: RequestMetadata | None = None,
    now: int | None = None,
) -> tuple[TimerEvent, AttendanceRecord]:
    """Punch WORK / REST / END on today's record (or an explicit one)."""
    event_log.validate_event_type(event_type)
    memo = _validate_memo(memo)
    now = now if now is not None else epoch_now()
    ts = timestamp if timestamp is not None else now
    if ts > now:
        raise ValidationError("Cannot create an event in the future", code="FUTURE_TIMESTAMP")

    async with unit_of_work(db):
        if attendance_id is not None:
            target = await get_record(db, attendance_id)
            ensure_can_act_on(actor, target.user_id, allow_admin=False)
            record_id = target.id
        else:
            record_id = (await get_or_create_record(db, actor.user_id, local_date(now), ts)).id

        record = await lock_record(db, record_id)
        ensure_not_approved(record)

        events = await event_log.load_events(db, record.id)
        event_log.validate_append(events, event_type, ts)
        previous, following = event_log.insertion_neighbors(events, ts)

        # Re-pressing WORK closes the still-open WORK span
        if (
            event_type == EventType.WORK
            and previous is not None
            and previous.event_type == EventType.WORK
            and previous.end_timestamp is None
        ):
            previous.end_timestamp = ts

        event = TimerEvent(
            user_id=record.user_id,
            attendance_record_id=record.id,
            event_type=event_type,
            timestamp=ts,
            duration_from_previous=ts - previous.timestamp if previous else None,
            memo=memo,
        )
        db.add(event)
        if following is not None:
            following.duration_from_previous = following.timestamp - ts
        if previous is None:
            record.check_in_time = ts
        await db.flush()

        events.append(event)
        if event_type == EventType.END:
            record.check_out_time = ts
            record.status = RecordStatus.COMPLETED
            recompute_totals(record, events)
        elif record.status == RecordStatus.COMPLETED:
            recompute_totals(record, events)

        await write_operation_log(
            db,
            user_id=actor.user_id,
            attendance_record_id=record.id,
            action=event_type,
            new_value={
                "eventId": event.id,
                "eventType": event_type,
                "timestamp": ts,
                "durationFromPrevious": event.duration_from_previous,
                "memo": memo,
            },
            meta=meta,
        )

    logger.info("User %d punched %s at %d on record %d", actor.user_id, event_type, ts, record.id)
    return event, record


# ── Undo checkout ───────────────────────────────────────────────────
async def cancel_last_end(
    db: AsyncSession,
    actor: Actor,
    *,
    meta: RequestMetadata | None = None,
    now: int | None = None,
) -> AttendanceRecord:
    now = now if now is not None else epoch_now()
    today = await get_record_for_date(db, actor.user_id, local_date(now))
    if today is None:
        raise NotFoundError("No attendance record found for today", code="RECORD_NOT_FOUND")

    async with with_record_lock(db, today.id) as record:
        ensure_not_approved(record)
        last = event_log.latest_event(await event_log.load_events(db, record.id))
        if last is None or last.event_type != EventType.END:
            raise OrderingError("Cannot cancel: last event is not END", code="LAST_EVENT_NOT_END")

        removed = event_log.snapshot(last)
        await db.delete(last)
        reset_to_in_progress(record)
        await write_operation_log(
            db,
            user_id=actor.user_id,
            attendance_record_id=record.id,
            action=Action.CANCEL_END,
            old_value=removed,
            meta=meta,
        )

    logger.info("User %d cancelled END on record %d", actor.user_id, record.id)
    return record


# ── Memo ────────────────────────────────────────────────────────────
async def update_memo(
    db: AsyncSession,
    actor: Actor,
    event_id: int,
    memo: str | None,
    *,
    meta: RequestMetadata | None = None,
) -> TimerEvent:
    memo = _validate_memo(memo)
    located = await get_event(db, event_id)
    ensure_can_act_on(actor, located.user_id)

    async with with_record_lock(db, located.attendance_record_id) as record:
        ensure_not_approved(record)
        event = await get_event(db, event_id)
        old_memo = event.memo
        event.memo = memo
        await write_operation_log(
            db,
            user_id=actor.user_id,
            attendance_record_id=record.id,
            action=Action.MEMO_UPDATE,
            old_value={"eventId": event.id, "memo": old_memo},
            new_value={"eventId": event.id, "memo": memo},
            meta=meta,
        )
    return event


# ── History ─────────────────────────────────────────────────────────
async def list_history(
    db: AsyncSession, user_id: int, *, days: int = 7, now: int | None = None
) -> list[tuple[AttendanceRecord, list[OperationLog]]]:
    """Records of the last *days* days with their logs and corrections."""
    now = now if now is not None else epoch_now()
    result = await db.execute(
        select(AttendanceRecord)
        .where(
            AttendanceRecord.user_id == user_id,
            AttendanceRecord.date >= days_ago(days, now),
        )
        .options(selectinload(AttendanceRecord.time_corrections))
        .order_by(AttendanceRecord.date.desc())
    )
    records = list(result.scalars().all())
    if not records:
        return []

    logs = await list_operation_logs(db, record_ids=[r.id for r in records], limit=10_000)
    by_record: dict[int, list[OperationLog]] = {r.id: [] for r in records}
    for log in logs:
        by_record[log.attendance_record_id].append(log)
    return [(r, by_record[r.id]) for r in records]
