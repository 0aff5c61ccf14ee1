"""
Approval gate and admin decisions on daily attendance records.

Approved records are read by payroll, so once a record is APPROVED no
operation may change it again: ``ensure_not_approved`` runs at the top of
every mutation, admin ones included.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from timekeeper.core.exceptions import (ApprovalLockedError, NotFoundError,
                                        StateConflictError, ValidationError)
from timekeeper.core.timeutils import epoch_now
from timekeeper.models.attendance import (Action, ApprovalStatus,
                                          AttendanceRecord, OperationLog,
                                          RecordStatus, TimerEvent)
from timekeeper.services import event_log
from timekeeper.services.audit import (RequestMetadata, list_operation_logs,
                                       write_operation_log)
from timekeeper.services.identity import Actor
from timekeeper.services.locking import (lock_record, unit_of_work,
                                         with_record_lock)

logger = logging.getLogger(__name__)


def ensure_not_approved(record: AttendanceRecord) -> None:
    if record.approval_status == ApprovalStatus.APPROVED:
        logger.warning("Blocked mutation of approved record %d", record.id)
        raise ApprovalLockedError("This attendance has been approved by admin and can no longer change")


def _ensure_pending(record: AttendanceRecord) -> None:
    if record.approval_status != ApprovalStatus.PENDING:
        raise StateConflictError("This attendance record is not in pending status")


async def approve_record(
    db: AsyncSession,
    admin: Actor,
    record_id: int,
    *,
    comment: str | None = None,
    meta: RequestMetadata | None = None,
    now: int | None = None,
) -> AttendanceRecord:
    now = now if now is not None else epoch_now()
    async with with_record_lock(db, record_id) as record:
        _ensure_pending(record)
        record.approval_status = ApprovalStatus.APPROVED
        record.approved_by = admin.user_id
        record.approved_at = now
        record.approval_comment = comment
        await write_operation_log(
            db,
            user_id=admin.user_id,
            attendance_record_id=record.id,
            action=Action.APPROVE_ATTENDANCE,
            new_value={
                "approvalStatus": ApprovalStatus.APPROVED,
                "approvedBy": admin.user_id,
                "approvalComment": comment,
            },
            meta=meta,
        )
    logger.info("Record %d approved by user %d", record_id, admin.user_id)
    return record


async def reject_record(
    db: AsyncSession,
    admin: Actor,
    record_id: int,
    *,
    reason: str,
    meta: RequestMetadata | None = None,
    now: int | None = None,
) -> AttendanceRecord:
    now = now if now is not None else epoch_now()
    async with with_record_lock(db, record_id) as record:
        _ensure_pending(record)
        record.approval_status = ApprovalStatus.REJECTED
        record.approved_by = admin.user_id
        record.approved_at = now
        record.rejection_reason = reason
        await write_operation_log(
            db,
            user_id=admin.user_id,
            attendance_record_id=record.id,
            action=Action.REJECT_ATTENDANCE,
            new_value={
                "approvalStatus": ApprovalStatus.REJECTED,
                "approvedBy": admin.user_id,
                "rejectionReason": reason,
            },
            reason=reason,
            meta=meta,
        )
    logger.info("Record %d rejected by user %d", record_id, admin.user_id)
    return record


async def approve_records(
    db: AsyncSession,
    admin: Actor,
    record_ids: list[int],
    *,
    comment: str | None = None,
    meta: RequestMetadata | None = None,
    now: int | None = None,
) -> list[AttendanceRecord]:
    """Approve several completed days at once; all of them or none."""
    ids = list(dict.fromkeys(record_ids))
    if not ids:
        raise ValidationError("Select at least one attendance record to approve")
    now = now if now is not None else epoch_now()

    async with unit_of_work(db):
        found = set(
            (
                await db.execute(select(AttendanceRecord.id).where(AttendanceRecord.id.in_(ids)))
            ).scalars()
        )
        missing = [record_id for record_id in ids if record_id not in found]
        if missing:
            raise NotFoundError(
                "Some attendance records not found",
                code="RECORD_NOT_FOUND",
                details={"not_found_ids": missing},
            )

        # Lock in id order so two overlapping batches cannot deadlock
        records = [await lock_record(db, record_id) for record_id in sorted(ids)]
        invalid = [
            r.id
            for r in records
            if r.status != RecordStatus.COMPLETED or r.approval_status != ApprovalStatus.PENDING
        ]
        if invalid:
            raise StateConflictError(
                "Records must be COMPLETED and PENDING to be approved",
                details={"invalid_record_ids": invalid},
            )

        for record in records:
            record.approval_status = ApprovalStatus.APPROVED
            record.approved_by = admin.user_id
            record.approved_at = now
            record.approval_comment = comment
            await write_operation_log(
                db,
                user_id=admin.user_id,
                attendance_record_id=record.id,
                action=Action.APPROVE_ATTENDANCE,
                new_value={
                    "approvalStatus": ApprovalStatus.APPROVED,
                    "approvedBy": admin.user_id,
                    "approvalComment": comment,
                    "bulkApproval": True,
                },
                meta=meta,
            )

    logger.info("%d records approved by user %d", len(records), admin.user_id)
    return records


async def get_record_detail(
    db: AsyncSession, record_id: int
) -> tuple[AttendanceRecord, list[TimerEvent], list[OperationLog]]:
    """A record with its ordered events, corrections and operation logs."""
    result = await db.execute(
        select(AttendanceRecord)
        .where(AttendanceRecord.id == record_id)
        .options(selectinload(AttendanceRecord.time_corrections))
        .execution_options(populate_existing=True)
    )
    record = result.scalar_one_or_none()
    if record is None:
        raise NotFoundError("Attendance record not found", code="RECORD_NOT_FOUND")
    events = await event_log.load_events(db, record.id)
    logs = await list_operation_logs(db, attendance_record_id=record.id, limit=1000)
    return record, events, logs


async def list_pending_records(
    db: AsyncSession,
    *,
    user_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[AttendanceRecord], int]:
    filters = [AttendanceRecord.approval_status == ApprovalStatus.PENDING]
    if user_id is not None:
        filters.append(AttendanceRecord.user_id == user_id)
    if start_date is not None:
        filters.append(AttendanceRecord.date >= start_date)
    if end_date is not None:
        filters.append(AttendanceRecord.date <= end_date)

    total = (
        await db.execute(select(func.count(AttendanceRecord.id)).where(*filters))
    ).scalar() or 0
    result = await db.execute(
        select(AttendanceRecord)
        .where(*filters)
        .order_by(AttendanceRecord.date.desc(), AttendanceRecord.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total

