"""
Unit of work and per-record locking.

Every mutation of the timer engine runs inside ``unit_of_work``: validate,
mutate events, recompute aggregates, write the correction and audit rows,
then commit once. Any exception rolls the whole thing back.

``with_record_lock`` adds a ``SELECT ... FOR UPDATE`` on the attendance
record row so concurrent writers on the same record are serialized (the
clause is dropped by SQLite). The record's ``version`` column is an
optimistic lock on top: the record row is always touched, so a writer that
got past the row lock with a stale copy fails with ``ConcurrencyError``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from timekeeper.core.exceptions import ConcurrencyError, NotFoundError
from timekeeper.models.attendance import AttendanceRecord

logger = logging.getLogger(__name__)


@asynccontextmanager
async def unit_of_work(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit on success, roll back on any exception."""
    try:
        yield db
        await db.commit()
    except StaleDataError as exc:
        await db.rollback()
        logger.warning("Optimistic lock failure: %s", exc)
        raise ConcurrencyError(
            "Attendance record was modified concurrently, please retry"
        ) from exc
    except BaseException:
        await db.rollback()
        raise


async def lock_record(db: AsyncSession, record_id: int) -> AttendanceRecord:
    """Load the record row with a write lock and mark it dirty."""
    result = await db.execute(
        select(AttendanceRecord)
        .where(AttendanceRecord.id == record_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    record = result.scalar_one_or_none()
    if record is None:
        raise NotFoundError("Attendance record not found", code="RECORD_NOT_FOUND")
    record.updated_at = datetime.now(timezone.utc)
    return record


@asynccontextmanager
async def with_record_lock(db: AsyncSession, record_id: int) -> AsyncIterator[AttendanceRecord]:
    """Run the enclosed block as one transaction holding the record lock."""
    async with unit_of_work(db):
        yield await lock_record(db, record_id)
