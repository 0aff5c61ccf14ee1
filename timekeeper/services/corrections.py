"""
Correction engine: edits to an already recorded day.

Two paths with different approval semantics:

* per-event corrections and deletions apply immediately and leave an
  auto-approved ``TimeCorrection`` (``timerEvent_<id>_timestamp``);
* check-in / check-out field corrections are only *requested* here and
  wait as ``PENDING`` until an admin approves or rejects them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timekeeper.core.config import settings
from timekeeper.core.exceptions import (CorrectionWindowError, NotFoundError,
                                        OrderingError, StateConflictError,
                                        ValidationError)
from timekeeper.core.timeutils import days_ago, epoch_now, start_of_day
from timekeeper.models.attendance import (CORRECTABLE_FIELDS, FIELD_COLUMNS,
                                          Action, ApprovalStatus,
                                          AttendanceRecord, EventType,
                                          RecordStatus, TimeCorrection,
                                          TimerEvent)
from timekeeper.services import event_log
from timekeeper.services.approval import ensure_not_approved
from timekeeper.services.audit import RequestMetadata, write_operation_log
from timekeeper.services.identity import Actor
from timekeeper.services.locking import unit_of_work, with_record_lock
from timekeeper.services.records import (ensure_can_act_on, get_event,
                                         get_record, recompute_totals,
                                         reset_to_in_progress)

logger = logging.getLogger(__name__)


def ensure_within_window(record: AttendanceRecord, now: int) -> None:
    window = settings.CORRECTION_WINDOW_DAYS * 86400
    if now - start_of_day(record.date) > window:
        raise CorrectionWindowError(
            f"Attendance records older than {settings.CORRECTION_WINDOW_DAYS} days cannot be modified"
        )


def _ensure_not_future(ts: int, now: int) -> None:
    if ts > now:
        raise ValidationError("Cannot set a time in the future", code="FUTURE_TIMESTAMP")


async def _get_correction(db: AsyncSession, correction_id: int) -> TimeCorrection:
    correction = await db.get(TimeCorrection, correction_id, populate_existing=True)
    if correction is None:
        raise NotFoundError("Time correction not found", code="CORRECTION_NOT_FOUND")
    return correction


def _ensure_correction_pending(correction: TimeCorrection) -> None:
    if correction.approval_status != ApprovalStatus.PENDING:
        raise StateConflictError("This correction is not in pending status")


def _closed_by(previous: TimerEvent | None, timestamp: int) -> bool:
    """Whether *previous* is a WORK span that was closed by the event at *timestamp*."""
    return (
        previous is not None
        and previous.event_type == EventType.WORK
        and previous.end_timestamp == timestamp
    )


# ── Per-event correction ────────────────────────────────────────────
async def correct_event(
    db: AsyncSession,
    actor: Actor,
    event_id: int,
    *,
    timestamp: int,
    event_type: str | None = None,
    reason: str | None = None,
    meta: RequestMetadata | None = None,
    now: int | None = None,
) -> TimerEvent:
    """Move an event (and optionally change its type) between its neighbours."""
    now = now if now is not None else epoch_now()
    _ensure_not_future(timestamp, now)
    if event_type is not None:
        event_log.validate_event_type(event_type)
    reason = reason or settings.DEFAULT_CORRECTION_REASON

    located = await get_event(db, event_id)
    ensure_can_act_on(actor, located.user_id)

    async with with_record_lock(db, located.attendance_record_id) as record:
        ensure_not_approved(record)
        ensure_within_window(record, now)

        event = await get_event(db, event_id)
        previous, following = await event_log.find_neighbors(db, event)
        if (previous is not None and timestamp <= previous.timestamp) or (
            following is not None and timestamp >= following.timestamp
        ):
            raise OrderingError(
                "Corrected time must fall strictly between the neighbouring events",
                code="OUT_OF_ORDER",
                details={
                    "requested_time": timestamp,
                    "previous_event_time": previous.timestamp if previous else None,
                    "next_event_time": following.timestamp if following else None,
                },
            )

        old_type = event.event_type
        new_type = event_type or old_type
        if new_type == EventType.END and following is not None:
            raise OrderingError("END event must be the last event of the day", code="END_NOT_LAST")

        before = event_log.snapshot(event)
        if _closed_by(previous, before["timestamp"]):
            previous.end_timestamp = timestamp
        event.timestamp = timestamp
        event.event_type = new_type
        event.duration_from_previous = timestamp - previous.timestamp if previous else None
        if following is not None:
            following.duration_from_previous = following.timestamp - timestamp
        if previous is None:
            record.check_in_time = timestamp

        if new_type == EventType.END:
            record.check_out_time = timestamp
            record.status = RecordStatus.COMPLETED
        elif old_type == EventType.END:
            reset_to_in_progress(record)
        await db.flush()

        if record.status == RecordStatus.COMPLETED:
            recompute_totals(record, await event_log.load_events(db, record.id))

        db.add(
            TimeCorrection(
                attendance_record_id=record.id,
                user_id=event.user_id,
                field_name=f"timerEvent_{event.id}_timestamp",
                before_value=before["timestamp"],
                after_value=timestamp,
                reason=reason,
                approval_status=ApprovalStatus.APPROVED,
                approved_by=actor.user_id,
                approved_at=now,
            )
        )
        await write_operation_log(
            db,
            user_id=actor.user_id,
            attendance_record_id=record.id,
            action=Action.EDIT_TIME,
            old_value=before,
            new_value=event_log.snapshot(event),
            reason=reason,
            meta=meta,
        )

    logger.info(
        "Event %d moved %d -> %d by user %d", event_id, before["timestamp"], timestamp, actor.user_id
    )
    return event


# ── Deletion ────────────────────────────────────────────────────────
async def delete_event(
    db: AsyncSession,
    actor: Actor,
    event_id: int,
    *,
    meta: RequestMetadata | None = None,
    now: int | None = None,
) -> None:
    now = now if now is not None else epoch_now()
    located = await get_event(db, event_id)
    ensure_can_act_on(actor, located.user_id)

    async with with_record_lock(db, located.attendance_record_id) as record:
        ensure_not_approved(record)
        if settings.DELETE_ENFORCES_CORRECTION_WINDOW:
            ensure_within_window(record, now)

        event = await get_event(db, event_id)
        previous, following = await event_log.find_neighbors(db, event)
        removed = event_log.snapshot(event)
        if _closed_by(previous, removed["timestamp"]):
            # A following WORK press would have closed the span instead
            previous.end_timestamp = (
                following.timestamp
                if following is not None and following.event_type == EventType.WORK
                else None
            )

        await db.delete(event)
        if following is not None:
            following.duration_from_previous = (
                following.timestamp - previous.timestamp if previous else None
            )
            if previous is None:
                record.check_in_time = following.timestamp
        await db.flush()

        if removed["eventType"] == EventType.END:
            reset_to_in_progress(record)
        else:
            remaining = await event_log.load_events(db, record.id)
            if event_log.find_end_event(remaining) is not None:
                recompute_totals(record, remaining)

        await write_operation_log(
            db,
            user_id=actor.user_id,
            attendance_record_id=record.id,
            action=Action.DELETE,
            old_value=removed,
            meta=meta,
        )

    logger.info("Event %d deleted by user %d", event_id, actor.user_id)


# ── Field correction requests ───────────────────────────────────────
async def submit_field_correction(
    db: AsyncSession,
    actor: Actor,
    record_id: int,
    field_name: str,
    new_value: int,
    reason: str,
    *,
    meta: RequestMetadata | None = None,
    now: int | None = None,
) -> TimeCorrection:
    """File a PENDING check-in / check-out correction. The record is untouched."""
    if field_name not in CORRECTABLE_FIELDS:
        raise ValidationError(
            f"Invalid field name. Must be one of: {', '.join(CORRECTABLE_FIELDS)}",
            code="INVALID_FIELD",
        )
    now = now if now is not None else epoch_now()

    target = await get_record(db, record_id)
    ensure_can_act_on(actor, target.user_id, allow_admin=False)

    async with with_record_lock(db, record_id) as record:
        ensure_not_approved(record)
        ensure_within_window(record, now)

        current = getattr(record, FIELD_COLUMNS[field_name])
        if current is None:
            raise NotFoundError(f"{field_name} is not set on this record", code="FIELD_NOT_SET")
        _ensure_not_future(new_value, now)
        if field_name == "checkOutTime" and new_value <= record.check_in_time:
            raise OrderingError("Check-out time must be after check-in time", code="OUT_OF_ORDER")

        correction = TimeCorrection(
            attendance_record_id=record.id,
            user_id=actor.user_id,
            field_name=field_name,
            before_value=current,
            after_value=new_value,
            reason=reason,
            approval_status=ApprovalStatus.PENDING,
        )
        db.add(correction)
        await write_operation_log(
            db,
            user_id=actor.user_id,
            attendance_record_id=record.id,
            action=Action.EDIT_TIME,
            old_value={field_name: current},
            new_value={field_name: new_value},
            reason=reason,
            meta=meta,
        )

    logger.info("Correction of %s requested on record %d by user %d", field_name, record_id, actor.user_id)
    return correction


async def list_corrections(
    db: AsyncSession, user_id: int, *, days: int = 30, now: int | None = None
) -> list[TimeCorrection]:
    now = now if now is not None else epoch_now()
    # created_at is stored in UTC
    since = datetime.fromtimestamp(start_of_day(days_ago(days, now)), tz=timezone.utc)
    result = await db.execute(
        select(TimeCorrection)
        .where(TimeCorrection.user_id == user_id, TimeCorrection.created_at >= since)
        .order_by(TimeCorrection.created_at.desc(), TimeCorrection.id.desc())
    )
    return list(result.scalars().all())


# ── Admin decisions on field corrections ────────────────────────────
async def approve_field_correction(
    db: AsyncSession,
    admin: Actor,
    correction_id: int,
    *,
    meta: RequestMetadata | None = None,
    now: int | None = None,
) -> TimeCorrection:
    now = now if now is not None else epoch_now()
    pending = await _get_correction(db, correction_id)
    _ensure_correction_pending(pending)

    async with with_record_lock(db, pending.attendance_record_id) as record:
        ensure_not_approved(record)
        correction = await _get_correction(db, correction_id)
        _ensure_correction_pending(correction)

        column = FIELD_COLUMNS.get(correction.field_name)
        if column is None:
            raise ValidationError("Only check-in/check-out corrections need approval", code="INVALID_FIELD")
        value = correction.after_value
        if column == "check_out_time" and value <= record.check_in_time:
            raise OrderingError("Check-out time must be after check-in time", code="OUT_OF_ORDER")
        if column == "check_in_time" and record.check_out_time is not None and value >= record.check_out_time:
            raise OrderingError("Check-in time must be before check-out time", code="OUT_OF_ORDER")

        old_value = getattr(record, column)
        setattr(record, column, value)
        correction.approval_status = ApprovalStatus.APPROVED
        correction.approved_by = admin.user_id
        correction.approved_at = now
        await write_operation_log(
            db,
            user_id=correction.user_id,
            attendance_record_id=record.id,
            action=Action.EDIT_TIME,
            old_value={correction.field_name: old_value},
            new_value={correction.field_name: value},
            reason=f"Approved by admin: {correction.reason}",
            meta=meta,
        )

    logger.info("Correction %d approved by user %d", correction_id, admin.user_id)
    return correction


async def reject_field_correction(
    db: AsyncSession,
    admin: Actor,
    correction_id: int,
    *,
    rejection_reason: str,
    meta: RequestMetadata | None = None,
    now: int | None = None,
) -> TimeCorrection:
    if not rejection_reason or not rejection_reason.strip():
        raise ValidationError("Rejection reason is required")
    now = now if now is not None else epoch_now()

    async with unit_of_work(db):
        correction = await _get_correction(db, correction_id)
        _ensure_correction_pending(correction)
        correction.reason = f"{correction.reason}\n\nRejection reason: {rejection_reason}"
        correction.approval_status = ApprovalStatus.REJECTED
        correction.approved_by = admin.user_id
        correction.approved_at = now
        await write_operation_log(
            db,
            user_id=correction.user_id,
            attendance_record_id=correction.attendance_record_id,
            action=Action.EDIT_TIME,
            old_value={correction.field_name: correction.before_value},
            new_value={correction.field_name: correction.after_value},
            reason=f"Rejected by admin: {rejection_reason}",
            meta=meta,
        )

    logger.info("Correction %d rejected by user %d", correction_id, admin.user_id)
    return correction
