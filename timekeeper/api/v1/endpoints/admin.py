"""
Admin endpoints: record approval, field-correction decisions, audit view.

All routes require an admin account.
"""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from timekeeper.api.v1.deps import get_db, get_request_meta, require_admin
from timekeeper.schemas.timer import (ApproveRequest, AttendanceRecordRead,
                                      BulkApproveRequest, BulkApproveResponse,
                                      CorrectionRejectRequest,
                                      CorrectionResponse,
                                      OperationLogListResponse,
                                      OperationLogRead, PendingListResponse,
                                      RecordDetailResponse, RecordResponse,
                                      RejectRequest, TimeCorrectionRead,
                                      TimerEventRead)
from timekeeper.services import approval, corrections, event_log
from timekeeper.services.audit import RequestMetadata, list_operation_logs
from timekeeper.services.identity import Actor

router = APIRouter(prefix="/admin", tags=["admin"])


# ── Attendance approvals ───────────────────────────────────────────
@router.get("/attendance-approvals/pending", response_model=PendingListResponse)
async def pending_records(
    user_id: int | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    _admin: Actor = Depends(require_admin),
) -> PendingListResponse:
    items, total = await approval.list_pending_records(
        db,
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return PendingListResponse(
        items=[AttendanceRecordRead.model_validate(r) for r in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.post("/attendance-approvals", response_model=BulkApproveResponse)
async def bulk_approve_records(
    body: BulkApproveRequest,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(require_admin),
    meta: RequestMetadata = Depends(get_request_meta),
) -> BulkApproveResponse:
    """Approve several completed days in one transaction."""
    approved = await approval.approve_records(
        db, admin, body.attendance_record_ids, comment=body.comment, meta=meta
    )
    return BulkApproveResponse(
        approved_count=len(approved),
        attendance_records=[AttendanceRecordRead.model_validate(r) for r in approved],
    )


@router.get("/attendance-approvals/{record_id}", response_model=RecordDetailResponse)
async def record_detail(
    record_id: int,
    db: AsyncSession = Depends(get_db),
    _admin: Actor = Depends(require_admin),
) -> RecordDetailResponse:
    """Everything an admin reviews before deciding on a day."""
    record, events, logs = await approval.get_record_detail(db, record_id)
    following = event_log.durations_from_next(events)
    return RecordDetailResponse(
        attendance_record=AttendanceRecordRead.model_validate(record),
        timer_events=[
            TimerEventRead.model_validate(e).model_copy(
                update={"duration_from_next": following[e.id]}
            )
            for e in events
        ],
        time_corrections=[TimeCorrectionRead.model_validate(c) for c in record.time_corrections],
        operation_logs=[OperationLogRead.model_validate(log) for log in logs],
    )


@router.post("/attendance-approvals/{record_id}/approve", response_model=RecordResponse)
async def approve_record(
    record_id: int,
    body: ApproveRequest | None = None,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(require_admin),
    meta: RequestMetadata = Depends(get_request_meta),
) -> RecordResponse:
    record = await approval.approve_record(
        db, admin, record_id, comment=body.comment if body else None, meta=meta
    )
    return RecordResponse(attendance_record=AttendanceRecordRead.model_validate(record))


@router.post("/attendance-approvals/{record_id}/reject", response_model=RecordResponse)
async def reject_record(
    record_id: int,
    body: RejectRequest,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(require_admin),
    meta: RequestMetadata = Depends(get_request_meta),
) -> RecordResponse:
    record = await approval.reject_record(db, admin, record_id, reason=body.reason, meta=meta)
    return RecordResponse(attendance_record=AttendanceRecordRead.model_validate(record))


# ── Field corrections ──────────────────────────────────────────────
@router.post("/time-corrections/{correction_id}/approve", response_model=CorrectionResponse)
async def approve_correction(
    correction_id: int,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(require_admin),
    meta: RequestMetadata = Depends(get_request_meta),
) -> CorrectionResponse:
    correction = await corrections.approve_field_correction(db, admin, correction_id, meta=meta)
    return CorrectionResponse(correction=TimeCorrectionRead.model_validate(correction))


@router.post("/time-corrections/{correction_id}/reject", response_model=CorrectionResponse)
async def reject_correction(
    correction_id: int,
    body: CorrectionRejectRequest,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(require_admin),
    meta: RequestMetadata = Depends(get_request_meta),
) -> CorrectionResponse:
    correction = await corrections.reject_field_correction(
        db, admin, correction_id, rejection_reason=body.rejection_reason, meta=meta
    )
    return CorrectionResponse(correction=TimeCorrectionRead.model_validate(correction))


# ── Audit ──────────────────────────────────────────────────────────
@router.get("/operation-logs", response_model=OperationLogListResponse)
async def operation_logs(
    attendance_record_id: int | None = Query(default=None),
    user_id: int | None = Query(default=None),
    action: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    _admin: Actor = Depends(require_admin),
) -> OperationLogListResponse:
    logs = await list_operation_logs(
        db,
        attendance_record_id=attendance_record_id,
        user_id=user_id,
        action=action,
        limit=limit,
    )
    return OperationLogListResponse(logs=[OperationLogRead.model_validate(log) for log in logs])
