"""Pydantic schemas for timer events, records, corrections and audit rows."""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, Field, field_validator

from timekeeper.models.attendance import EventType


def _check_event_type(v: str | None) -> str | None:
    if v is None:
        return v
    v = v.strip().upper()
    if v not in EventType.ALL:
        raise ValueError("Invalid event type. Must be WORK, REST, or END")
    return v


# ── Timer events ────────────────────────────────────────────────────
class TimerEventCreate(BaseModel):
    event_type: str
    timestamp: int | None = Field(default=None, ge=0)
    memo: str | None = Field(default=None, max_length=500)
    attendance_id: int | None = None

    @field_validator("event_type")
    @classmethod
    def _event_type(cls, v: str) -> str:
        return _check_event_type(v)  # type: ignore[return-value]


class CorrectTimeRequest(BaseModel):
    new_timestamp: int = Field(ge=0)
    new_event_type: str | None = None
    reason: str | None = Field(default=None, max_length=1000)

    @field_validator("new_event_type")
    @classmethod
    def _event_type(cls, v: str | None) -> str | None:
        return _check_event_type(v)


class MemoUpdate(BaseModel):
    memo: str | None = Field(default=None, max_length=500)


class TimerEventRead(BaseModel):
    id: int
    attendance_record_id: int
    user_id: int
    event_type: str
    timestamp: int
    end_timestamp: int | None = None
    duration_from_previous: int | None = None
    duration_from_next: int | None = None
    memo: str | None = None

    model_config = {"from_attributes": True}


# ── Attendance records ──────────────────────────────────────────────
class AttendanceRecordRead(BaseModel):
    id: int
    user_id: int
    date: dt.date
    check_in_time: int
    check_out_time: int | None
    total_work_minutes: int
    status: str
    approval_status: str
    approved_by: int | None = None
    approved_at: int | None = None
    approval_comment: str | None = None
    rejection_reason: str | None = None
    notes: str | None = None

    model_config = {"from_attributes": True}


class DayResponse(BaseModel):
    attendance_record: AttendanceRecordRead | None
    timer_events: list[TimerEventRead]


class EventResponse(BaseModel):
    success: bool = True
    event: TimerEventRead


class AppendEventResponse(EventResponse):
    attendance_record: AttendanceRecordRead


class RecordResponse(BaseModel):
    success: bool = True
    attendance_record: AttendanceRecordRead


# ── Corrections ─────────────────────────────────────────────────────
class FieldCorrectionCreate(BaseModel):
    attendance_record_id: int
    field_name: str
    new_value: int = Field(ge=0)
    reason: str = Field(min_length=1, max_length=1000)


class TimeCorrectionRead(BaseModel):
    id: int
    attendance_record_id: int
    user_id: int
    field_name: str
    before_value: int
    after_value: int
    reason: str
    approval_status: str
    approved_by: int | None = None
    approved_at: int | None = None
    created_at: dt.datetime | None = None

    model_config = {"from_attributes": True}


class CorrectionResponse(BaseModel):
    success: bool = True
    correction: TimeCorrectionRead


class CorrectionListResponse(BaseModel):
    corrections: list[TimeCorrectionRead]


class CorrectionRejectRequest(BaseModel):
    rejection_reason: str = Field(min_length=1, max_length=500)


# ── Audit / history ─────────────────────────────────────────────────
class OperationLogRead(BaseModel):
    id: int
    user_id: int
    attendance_record_id: int | None
    action: str
    old_value: dict | None = None
    new_value: dict | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: int
    reason: str | None = None

    model_config = {"from_attributes": True}


class HistoryDay(BaseModel):
    attendance_record: AttendanceRecordRead
    operation_logs: list[OperationLogRead]
    time_corrections: list[TimeCorrectionRead]


class HistoryResponse(BaseModel):
    days: int
    history: list[HistoryDay]


class OperationLogListResponse(BaseModel):
    logs: list[OperationLogRead]


# ── Record approval (admin) ─────────────────────────────────────────
class ApproveRequest(BaseModel):
    comment: str | None = Field(default=None, max_length=500)


class RejectRequest(BaseModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def _reason(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 10:
            raise ValueError("Rejection reason must be at least 10 characters")
        if len(v) > 500:
            raise ValueError("Rejection reason must not exceed 500 characters")
        return v


class PendingListResponse(BaseModel):
    items: list[AttendanceRecordRead]
    total: int
    page: int
    limit: int


class BulkApproveRequest(BaseModel):
    attendance_record_ids: list[int] = Field(min_length=1)
    comment: str | None = Field(default=None, max_length=500)


class BulkApproveResponse(BaseModel):
    success: bool = True
    approved_count: int
    attendance_records: list[AttendanceRecordRead]


class RecordDetailResponse(BaseModel):
    attendance_record: AttendanceRecordRead
    timer_events: list[TimerEventRead]
    time_corrections: list[TimeCorrectionRead]
    operation_logs: list[OperationLogRead]


# ── Generic ────────────────────────────────────────────────────────
class MessageResponse(BaseModel):
    success: bool = True
    message: str


class HealthResponse(BaseModel):
    status: str
    db: bool
