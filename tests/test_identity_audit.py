"""Tests for identity resolution, the audit writer and the unit of work."""

import pytest
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError
from starlette.requests import Request

from conftest import make_employee
from timekeeper.core.exceptions import (AuditWriteError, ConcurrencyError,
                                        NotFoundError)
from timekeeper.models.attendance import OperationLog
from timekeeper.models.user import User
from timekeeper.services.audit import (RequestMetadata, list_operation_logs,
                                       write_operation_log)
from timekeeper.services.identity import IdentityResolver, Principal
from timekeeper.services.locking import unit_of_work


def _request(headers: dict) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in headers.items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw})


@pytest.mark.asyncio
async def test_employee_resolves_to_user_by_email(db_session):
    employee = await make_employee(db_session, "dana@example.com")
    user_id = await IdentityResolver(db_session).resolve(
        Principal(id=employee.id, email="Dana@Example.com", kind="employee")
    )
    user = (await db_session.execute(select(User).where(User.email == "dana@example.com"))).scalar_one()
    assert user_id == user.id


@pytest.mark.asyncio
async def test_employee_resolution_is_not_the_login_id(db_session, employee_user):
    # alice holds users.id 1, so erin's users row and employees row get different ids
    employee = await make_employee(db_session, "erin@example.com")
    actor = await IdentityResolver(db_session).actor_for(
        Principal(id=employee.id, email=employee.email, kind="employee")
    )
    assert actor.user_id != employee.id
    assert actor.is_admin is False


@pytest.mark.asyncio
async def test_employee_without_user_row(db_session):
    employee = await make_employee(db_session, "ghost@example.com", with_user=False)
    with pytest.raises(NotFoundError) as exc:
        await IdentityResolver(db_session).resolve(
            Principal(id=employee.id, email=employee.email, kind="employee")
        )
    assert exc.value.code == "USER_NOT_FOUND"


@pytest.mark.asyncio
async def test_employee_does_not_resolve_to_admin_row(db_session, admin_user):
    with pytest.raises(NotFoundError):
        await IdentityResolver(db_session).resolve(
            Principal(id=99, email=admin_user.email, kind="employee")
        )


@pytest.mark.asyncio
async def test_admin_acts_as_itself(db_session, admin_user):
    actor = await IdentityResolver(db_session).actor_for(
        Principal(id=admin_user.id, email=admin_user.email, kind="admin")
    )
    assert actor.user_id == admin_user.id
    assert actor.is_admin is True


# ── Audit ───────────────────────────────────────────────────────────
def test_request_metadata_prefers_forwarded_for():
    meta = RequestMetadata.from_request(
        _request({"X-Forwarded-For": "10.0.0.7", "X-Real-IP": "10.0.0.8", "User-Agent": "kiosk/1"})
    )
    assert meta == RequestMetadata(ip_address="10.0.0.7", user_agent="kiosk/1")


def test_request_metadata_defaults():
    meta = RequestMetadata.from_request(_request({}))
    assert meta == RequestMetadata(ip_address="unknown", user_agent="unknown")

    meta = RequestMetadata.from_request(_request({"X-Real-IP": "10.0.0.8"}))
    assert meta.ip_address == "10.0.0.8"


@pytest.mark.asyncio
async def test_write_operation_log(db_session):
    async with unit_of_work(db_session):
        await write_operation_log(
            db_session,
            user_id=5,
            attendance_record_id=12,
            action="DELETE",
            old_value={"eventId": 3},
            reason="duplicate",
            meta=RequestMetadata(ip_address="1.2.3.4", user_agent="pytest"),
        )

    log = (await db_session.execute(select(OperationLog))).scalar_one()
    assert log.action == "DELETE"
    assert log.old_value == {"eventId": 3}
    assert log.new_value is None
    assert log.ip_address == "1.2.3.4"
    assert log.timestamp > 0

    assert await list_operation_logs(db_session, attendance_record_id=12) == [log]
    assert await list_operation_logs(db_session, attendance_record_id=13) == []
    assert await list_operation_logs(db_session, action="WORK") == []


@pytest.mark.asyncio
async def test_unwritable_audit_row_fails_closed(db_session):
    with pytest.raises(AuditWriteError) as exc:
        async with unit_of_work(db_session):
            await write_operation_log(
                db_session, user_id=None, attendance_record_id=1, action="WORK"
            )
    assert exc.value.status_code == 500

    assert (await db_session.execute(select(OperationLog))).scalars().all() == []


@pytest.mark.asyncio
async def test_stale_write_becomes_concurrency_error(db_session):
    with pytest.raises(ConcurrencyError) as exc:
        async with unit_of_work(db_session):
            raise StaleDataError("UPDATE statement on table expected to update 1 row(s)")
    assert exc.value.status_code == 409
    assert exc.value.code == "CONCURRENT_MODIFICATION"
