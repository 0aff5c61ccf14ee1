"""
Correction requests and the employee's own operation history.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from timekeeper.api.v1.deps import get_actor, get_db, get_request_meta
from timekeeper.schemas.timer import (AttendanceRecordRead,
                                      CorrectionListResponse,
                                      CorrectionResponse,
                                      FieldCorrectionCreate, HistoryDay,
                                      HistoryResponse, OperationLogRead,
                                      TimeCorrectionRead)
from timekeeper.services import corrections, records
from timekeeper.services.audit import RequestMetadata
from timekeeper.services.identity import Actor

router = APIRouter(tags=["corrections"])


@router.post("/corrections", response_model=CorrectionResponse, status_code=201)
async def submit_correction(
    body: FieldCorrectionCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    meta: RequestMetadata = Depends(get_request_meta),
) -> CorrectionResponse:
    """Request a check-in / check-out change; waits for admin approval."""
    correction = await corrections.submit_field_correction(
        db,
        actor,
        body.attendance_record_id,
        body.field_name,
        body.new_value,
        body.reason,
        meta=meta,
    )
    return CorrectionResponse(correction=TimeCorrectionRead.model_validate(correction))


@router.get("/corrections", response_model=CorrectionListResponse)
async def list_corrections(
    days: int = Query(default=30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> CorrectionListResponse:
    rows = await corrections.list_corrections(db, actor.user_id, days=days)
    return CorrectionListResponse(
        corrections=[TimeCorrectionRead.model_validate(c) for c in rows]
    )


@router.get("/history", response_model=HistoryResponse)
async def history(
    days: int = Query(default=7, ge=1, le=90),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> HistoryResponse:
    rows = await records.list_history(db, actor.user_id, days=days)
    return HistoryResponse(
        days=days,
        history=[
            HistoryDay(
                attendance_record=AttendanceRecordRead.model_validate(record),
                operation_logs=[OperationLogRead.model_validate(log) for log in logs],
                time_corrections=[
                    TimeCorrectionRead.model_validate(c) for c in record.time_corrections
                ],
            )
            for record, logs in rows
        ],
    )
