"""
Attendance timer models: daily records, timer events, corrections and
the operation log.

All instants (check-in/out, event timestamps, approval times) are stored
as integer epoch seconds.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import (JSON, BigInteger, Column, Date, DateTime, ForeignKey,
                        Index, Integer, String, Text, UniqueConstraint)
from sqlalchemy.orm import relationship

from timekeeper.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventType:
    WORK = "WORK"
    REST = "REST"
    END = "END"

    ALL = (WORK, REST, END)


class RecordStatus:
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class ApprovalStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Action:
    WORK = EventType.WORK
    REST = EventType.REST
    END = EventType.END
    EDIT_TIME = "EDIT_TIME"
    DELETE = "DELETE"
    CANCEL_END = "CANCEL_END"
    MEMO_UPDATE = "MEMO_UPDATE"
    APPROVE_ATTENDANCE = "APPROVE_ATTENDANCE"
    REJECT_ATTENDANCE = "REJECT_ATTENDANCE"


# Record-level fields an employee may ask to have corrected
CORRECTABLE_FIELDS = ("checkInTime", "checkOutTime")
FIELD_COLUMNS = {"checkInTime": "check_in_time", "checkOutTime": "check_out_time"}


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_attendance_user_date"),
        Index("ix_attendance_records_approval_status", "approval_status"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)  # type: ignore[assignment]
    date: date = Column(Date, nullable=False, index=True)  # type: ignore[assignment]
    check_in_time: int = Column(BigInteger, nullable=False)  # type: ignore[assignment]
    check_out_time: int | None = Column(BigInteger, nullable=True)  # type: ignore[assignment]
    total_work_minutes: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    status: str = Column(  # type: ignore[assignment]
        String(20), nullable=False, default=RecordStatus.IN_PROGRESS
    )  # IN_PROGRESS | COMPLETED
    approval_status: str = Column(  # type: ignore[assignment]
        String(20), nullable=False, default=ApprovalStatus.PENDING
    )  # PENDING | APPROVED | REJECTED
    approved_by: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]
    approved_at: int | None = Column(BigInteger, nullable=True)  # type: ignore[assignment]
    approval_comment: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    rejection_reason: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    notes: str | None = Column(Text, nullable=True)  # type: ignore[assignment]
    version: int = Column(Integer, nullable=False, default=1)  # type: ignore[assignment]
    created_at: datetime = Column(DateTime(timezone=True), default=_utcnow)  # type: ignore[assignment]
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    # Optimistic lock: every UPDATE bumps and checks ``version``
    __mapper_args__ = {"version_id_col": version}

    timer_events = relationship(
        "TimerEvent",
        back_populates="attendance_record",
        cascade="all, delete-orphan",
        order_by="TimerEvent.timestamp",
    )
    time_corrections = relationship(
        "TimeCorrection",
        back_populates="attendance_record",
        cascade="all, delete-orphan",
    )


class TimerEvent(Base):
    __tablename__ = "timer_events"
    __table_args__ = (
        Index("ix_timer_events_record_timestamp", "attendance_record_id", "timestamp"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    attendance_record_id: int = Column(  # type: ignore[assignment]
        Integer, ForeignKey("attendance_records.id", ondelete="CASCADE"), nullable=False
    )
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)  # type: ignore[assignment]
    event_type: str = Column(String(10), nullable=False)  # type: ignore[assignment]  # WORK | REST | END
    timestamp: int = Column(BigInteger, nullable=False)  # type: ignore[assignment]
    end_timestamp: int | None = Column(BigInteger, nullable=True)  # type: ignore[assignment]
    duration_from_previous: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]
    memo: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(DateTime(timezone=True), default=_utcnow)  # type: ignore[assignment]
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    attendance_record = relationship("AttendanceRecord", back_populates="timer_events")


class TimeCorrection(Base):
    __tablename__ = "time_corrections"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    attendance_record_id: int = Column(  # type: ignore[assignment]
        Integer,
        ForeignKey("attendance_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)  # type: ignore[assignment]
    # checkInTime | checkOutTime | timerEvent_<id>_timestamp
    field_name: str = Column(String(100), nullable=False)  # type: ignore[assignment]
    before_value: int = Column(BigInteger, nullable=False)  # type: ignore[assignment]
    after_value: int = Column(BigInteger, nullable=False)  # type: ignore[assignment]
    reason: str = Column(Text, nullable=False)  # type: ignore[assignment]
    approval_status: str = Column(  # type: ignore[assignment]
        String(20), nullable=False, default=ApprovalStatus.PENDING, index=True
    )
    approved_by: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]
    approved_at: int | None = Column(BigInteger, nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(DateTime(timezone=True), default=_utcnow, index=True)  # type: ignore[assignment]
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    attendance_record = relationship("AttendanceRecord", back_populates="time_corrections")


class OperationLog(Base):
    """Append-only audit row. Never updated or deleted by the application."""

    __tablename__ = "operation_logs"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    user_id: int = Column(Integer, nullable=False, index=True)  # type: ignore[assignment]
    # No FK: audit rows outlive the records they describe
    attendance_record_id: int | None = Column(Integer, nullable=True, index=True)  # type: ignore[assignment]
    action: str = Column(String(40), nullable=False, index=True)  # type: ignore[assignment]
    old_value: dict | None = Column(JSON, nullable=True)  # type: ignore[assignment]
    new_value: dict | None = Column(JSON, nullable=True)  # type: ignore[assignment]
    ip_address: str | None = Column(String(100), nullable=True)  # type: ignore[assignment]
    user_agent: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    timestamp: int = Column(BigInteger, nullable=False, index=True)  # type: ignore[assignment]
    reason: str | None = Column(Text, nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(DateTime(timezone=True), default=_utcnow)  # type: ignore[assignment]
