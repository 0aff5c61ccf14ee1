"""
Audit logger: append-only operation log.

Rows are written inside the caller's transaction. If the row cannot be
written the whole mutation fails (``AuditWriteError``) and is rolled back
with it: an accepted mutation without its audit row is not allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timekeeper.core.exceptions import AuditWriteError
from timekeeper.core.timeutils import epoch_now
from timekeeper.models.attendance import OperationLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestMetadata:
    ip_address: str = "unknown"
    user_agent: str = "unknown"

    @classmethod
    def from_request(cls, request: Request) -> "RequestMetadata":
        ip = (
            request.headers.get("x-forwarded-for")
            or request.headers.get("x-real-ip")
            or "unknown"
        )
        return cls(
            ip_address=ip,
            user_agent=request.headers.get("user-agent") or "unknown",
        )


async def write_operation_log(
    db: AsyncSession,
    *,
    user_id: int,
    attendance_record_id: int | None,
    action: str,
    old_value: dict | None = None,
    new_value: dict | None = None,
    reason: str | None = None,
    meta: RequestMetadata | None = None,
) -> OperationLog:
    # Pending mutation writes go first so their errors are not blamed on the log
    await db.flush()

    meta = meta or RequestMetadata()
    entry = OperationLog(
        user_id=user_id,
        attendance_record_id=attendance_record_id,
        action=action,
        old_value=old_value,
        new_value=new_value,
        ip_address=meta.ip_address,
        user_agent=meta.user_agent,
        timestamp=epoch_now(),
        reason=reason,
    )
    db.add(entry)
    try:
        await db.flush()
    except SQLAlchemyError as exc:
        logger.error("Audit write failed for %s on record %s: %s", action, attendance_record_id, exc)
        raise AuditWriteError("Failed to write operation log") from exc

    logger.info("Audit %s by user %d on record %s", action, user_id, attendance_record_id)
    return entry


async def list_operation_logs(
    db: AsyncSession,
    *,
    attendance_record_id: int | None = None,
    record_ids: list[int] | None = None,
    user_id: int | None = None,
    action: str | None = None,
    limit: int = 200,
) -> list[OperationLog]:
    query = select(OperationLog)
    if attendance_record_id is not None:
        query = query.where(OperationLog.attendance_record_id == attendance_record_id)
    if record_ids is not None:
        query = query.where(OperationLog.attendance_record_id.in_(record_ids))
    if user_id is not None:
        query = query.where(OperationLog.user_id == user_id)
    if action is not None:
        query = query.where(OperationLog.action == action)
    query = query.order_by(OperationLog.timestamp.desc(), OperationLog.id.desc()).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())
