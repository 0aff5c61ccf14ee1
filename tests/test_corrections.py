"""Tests for per-event corrections, deletions and field-correction requests."""

import pytest
from sqlalchemy import select

from timekeeper.core.config import settings
from timekeeper.core.exceptions import (AuthorizationError,
                                        CorrectionWindowError, NotFoundError,
                                        OrderingError, StateConflictError,
                                        ValidationError)
from timekeeper.core.timeutils import start_of_day
from timekeeper.models.attendance import OperationLog, TimeCorrection
from timekeeper.services import corrections, event_log, records
from timeline import DAY, NOW, at

WINDOW_END = start_of_day(DAY) + 30 * 86400


async def punch(db, actor, event_type, ts):
    event, _ = await records.append_event(db, actor, event_type, timestamp=ts, now=NOW)
    return event


async def full_day(db, actor) -> dict:
    """WORK 09:00, REST 12:00, WORK 13:00, END 18:00; returns ids by label."""
    ids = {}
    for label, event_type, ts in (
        ("work1", "WORK", at(9)),
        ("rest", "REST", at(12)),
        ("work2", "WORK", at(13)),
        ("end", "END", at(18)),
    ):
        event = await punch(db, actor, event_type, ts)
        ids[label] = event.id
        ids["record"] = event.attendance_record_id
    return ids


async def load(db, record_id):
    record = await records.get_record(db, record_id)
    await db.refresh(record)
    return record, await event_log.load_events(db, record_id)


# ── Correct an event ────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_moving_rest_updates_successor_and_total(db_session, actor):
    ids = await full_day(db_session, actor)

    event = await corrections.correct_event(
        db_session, actor, ids["rest"], timestamp=at(12, 30), now=NOW
    )
    assert event.timestamp == at(12, 30)
    assert event.duration_from_previous == 3 * 3600 + 1800

    record, events = await load(db_session, ids["record"])
    by_id = {e.id: e for e in events}
    assert by_id[ids["work2"]].duration_from_previous == 1800
    assert record.total_work_minutes == 510


@pytest.mark.asyncio
async def test_correction_leaves_approved_trail(db_session, actor):
    ids = await full_day(db_session, actor)
    await corrections.correct_event(db_session, actor, ids["rest"], timestamp=at(12, 30), now=NOW)

    correction = (await db_session.execute(select(TimeCorrection))).scalar_one()
    assert correction.field_name == f"timerEvent_{ids['rest']}_timestamp"
    assert correction.before_value == at(12)
    assert correction.after_value == at(12, 30)
    assert correction.approval_status == "APPROVED"
    assert correction.reason == settings.DEFAULT_CORRECTION_REASON

    log = (
        await db_session.execute(select(OperationLog).where(OperationLog.action == "EDIT_TIME"))
    ).scalar_one()
    assert log.old_value["timestamp"] == at(12)
    assert log.new_value["timestamp"] == at(12, 30)


@pytest.mark.asyncio
async def test_correcting_first_event_moves_check_in(db_session, actor):
    ids = await full_day(db_session, actor)
    await corrections.correct_event(db_session, actor, ids["work1"], timestamp=at(8, 30), now=NOW)

    record, _ = await load(db_session, ids["record"])
    assert record.check_in_time == at(8, 30)
    assert record.total_work_minutes == 510


@pytest.mark.asyncio
@pytest.mark.parametrize("target", [at(9), at(13)])
async def test_correction_onto_neighbour_is_rejected(db_session, actor, target):
    ids = await full_day(db_session, actor)
    with pytest.raises(OrderingError) as exc:
        await corrections.correct_event(db_session, actor, ids["rest"], timestamp=target, now=NOW)
    assert exc.value.code == "OUT_OF_ORDER"


@pytest.mark.asyncio
async def test_correcting_end_past_its_neighbour_is_rejected(db_session, actor):
    ids = await full_day(db_session, actor)
    with pytest.raises(OrderingError):
        await corrections.correct_event(db_session, actor, ids["end"], timestamp=at(12, 30), now=NOW)


@pytest.mark.asyncio
async def test_future_correction_is_rejected(db_session, actor):
    ids = await full_day(db_session, actor)
    with pytest.raises(ValidationError) as exc:
        await corrections.correct_event(db_session, actor, ids["end"], timestamp=NOW + 60, now=NOW)
    assert exc.value.code == "FUTURE_TIMESTAMP"


@pytest.mark.asyncio
async def test_changing_type_to_end_closes_the_day(db_session, actor):
    await punch(db_session, actor, "WORK", at(9))
    rest = await punch(db_session, actor, "REST", at(12))
    record_id = rest.attendance_record_id

    await corrections.correct_event(
        db_session, actor, rest.id, timestamp=at(12), event_type="END", now=NOW
    )
    record, _ = await load(db_session, record_id)
    assert record.status == "COMPLETED"
    assert record.check_out_time == at(12)
    assert record.total_work_minutes == 180


@pytest.mark.asyncio
async def test_end_type_requires_last_position(db_session, actor):
    ids = await full_day(db_session, actor)
    with pytest.raises(OrderingError) as exc:
        await corrections.correct_event(
            db_session, actor, ids["work2"], timestamp=at(13), event_type="END", now=NOW
        )
    assert exc.value.code == "END_NOT_LAST"


@pytest.mark.asyncio
async def test_changing_end_to_rest_reopens_the_day(db_session, actor):
    ids = await full_day(db_session, actor)
    await corrections.correct_event(
        db_session, actor, ids["end"], timestamp=at(18), event_type="REST", now=NOW
    )
    record, _ = await load(db_session, ids["record"])
    assert record.status == "IN_PROGRESS"
    assert record.check_out_time is None
    assert record.total_work_minutes == 0


@pytest.mark.asyncio
async def test_correction_window(db_session, actor):
    ids = await full_day(db_session, actor)

    with pytest.raises(CorrectionWindowError):
        await corrections.correct_event(
            db_session, actor, ids["rest"], timestamp=at(12, 30), now=WINDOW_END + 1
        )

    event = await corrections.correct_event(
        db_session, actor, ids["rest"], timestamp=at(12, 30), now=WINDOW_END
    )
    assert event.timestamp == at(12, 30)


@pytest.mark.asyncio
async def test_only_owner_or_admin_may_correct(db_session, actor, other_actor, admin_actor):
    ids = await full_day(db_session, actor)

    with pytest.raises(AuthorizationError):
        await corrections.correct_event(
            db_session, other_actor, ids["rest"], timestamp=at(12, 30), now=NOW
        )

    event = await corrections.correct_event(
        db_session, admin_actor, ids["rest"], timestamp=at(12, 30), reason="forgot", now=NOW
    )
    assert event.timestamp == at(12, 30)


@pytest.mark.asyncio
async def test_correct_unknown_event(db_session, actor):
    with pytest.raises(NotFoundError) as exc:
        await corrections.correct_event(db_session, actor, 999, timestamp=at(9), now=NOW)
    assert exc.value.code == "EVENT_NOT_FOUND"


# ── Delete an event ─────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_deleting_first_event_promotes_check_in(db_session, actor):
    ids = await full_day(db_session, actor)
    await corrections.delete_event(db_session, actor, ids["work1"], now=NOW)

    record, events = await load(db_session, ids["record"])
    assert record.check_in_time == at(12)
    assert record.total_work_minutes == 300
    assert events[0].id == ids["rest"]
    assert events[0].duration_from_previous is None

    log = (
        await db_session.execute(select(OperationLog).where(OperationLog.action == "DELETE"))
    ).scalar_one()
    assert log.old_value["eventId"] == ids["work1"]
    assert log.old_value["eventType"] == "WORK"


@pytest.mark.asyncio
async def test_deleting_middle_event_rewires_successor(db_session, actor):
    ids = await full_day(db_session, actor)
    await corrections.delete_event(db_session, actor, ids["rest"], now=NOW)

    record, events = await load(db_session, ids["record"])
    by_id = {e.id: e for e in events}
    assert by_id[ids["work2"]].duration_from_previous == 4 * 3600
    # WORK 09:00 is restarted by WORK 13:00
    assert record.total_work_minutes == 300


@pytest.mark.asyncio
async def test_deleting_end_reopens_the_day(db_session, actor):
    ids = await full_day(db_session, actor)
    await corrections.delete_event(db_session, actor, ids["end"], now=NOW)

    record, events = await load(db_session, ids["record"])
    assert record.status == "IN_PROGRESS"
    assert record.check_out_time is None
    assert record.total_work_minutes == 0
    assert len(events) == 3


@pytest.mark.asyncio
async def test_delete_then_readd_restores_the_day(db_session, actor):
    ids = await full_day(db_session, actor)
    await corrections.delete_event(db_session, actor, ids["work1"], now=NOW)
    await punch(db_session, actor, "WORK", at(9))

    record, events = await load(db_session, ids["record"])
    assert record.check_in_time == at(9)
    assert record.total_work_minutes == 480
    assert [e.duration_from_previous for e in events] == [None, 3 * 3600, 3600, 5 * 3600]


@pytest.mark.asyncio
async def test_only_owner_or_admin_may_delete(db_session, actor, other_actor, admin_actor):
    ids = await full_day(db_session, actor)

    with pytest.raises(AuthorizationError):
        await corrections.delete_event(db_session, other_actor, ids["rest"], now=NOW)

    await corrections.delete_event(db_session, admin_actor, ids["rest"], now=NOW)
    _, events = await load(db_session, ids["record"])
    assert len(events) == 3


@pytest.mark.asyncio
async def test_delete_window_policy(db_session, actor, monkeypatch):
    ids = await full_day(db_session, actor)
    late = WINDOW_END + 86400

    monkeypatch.setattr(settings, "DELETE_ENFORCES_CORRECTION_WINDOW", True)
    with pytest.raises(CorrectionWindowError):
        await corrections.delete_event(db_session, actor, ids["rest"], now=late)

    monkeypatch.setattr(settings, "DELETE_ENFORCES_CORRECTION_WINDOW", False)
    await corrections.delete_event(db_session, actor, ids["rest"], now=late)


@pytest.mark.asyncio
async def test_moving_closing_work_moves_the_span_end(db_session, actor):
    first = await punch(db_session, actor, "WORK", at(9))
    second = await punch(db_session, actor, "WORK", at(10))
    first_id, record_id = first.id, first.attendance_record_id

    await corrections.correct_event(db_session, actor, second.id, timestamp=at(11), now=NOW)

    _, events = await load(db_session, record_id)
    by_id = {e.id: e for e in events}
    assert by_id[first_id].end_timestamp == at(11)


@pytest.mark.asyncio
async def test_deleting_closing_work_reopens_the_span(db_session, actor):
    first = await punch(db_session, actor, "WORK", at(9))
    second = await punch(db_session, actor, "WORK", at(10))
    first_id, record_id = first.id, first.attendance_record_id

    await corrections.delete_event(db_session, actor, second.id, now=NOW)
    _, events = await load(db_session, record_id)
    assert events[0].id == first_id
    assert events[0].end_timestamp is None

    # The reopened span is closed again by the next WORK press
    await punch(db_session, actor, "WORK", at(11))
    _, events = await load(db_session, record_id)
    assert events[0].end_timestamp == at(11)


@pytest.mark.asyncio
async def test_deleting_between_work_presses_hands_over_the_close(db_session, actor):
    first = await punch(db_session, actor, "WORK", at(9))
    middle = await punch(db_session, actor, "WORK", at(10))
    await punch(db_session, actor, "WORK", at(11))
    record_id = first.attendance_record_id

    await corrections.delete_event(db_session, actor, middle.id, now=NOW)

    _, events = await load(db_session, record_id)
    assert [e.end_timestamp for e in events] == [at(11), None]


# ── Field correction requests ───────────────────────────────────────
@pytest.mark.asyncio
async def test_submit_field_correction_is_pending(db_session, actor):
    ids = await full_day(db_session, actor)

    correction = await corrections.submit_field_correction(
        db_session, actor, ids["record"], "checkOutTime", at(18, 30), "left later", now=NOW
    )
    assert correction.approval_status == "PENDING"
    assert correction.before_value == at(18)
    assert correction.after_value == at(18, 30)

    record, _ = await load(db_session, ids["record"])
    assert record.check_out_time == at(18)

    log = (
        await db_session.execute(select(OperationLog).where(OperationLog.action == "EDIT_TIME"))
    ).scalar_one()
    assert log.old_value == {"checkOutTime": at(18)}
    assert log.new_value == {"checkOutTime": at(18, 30)}
    assert log.reason == "left later"


@pytest.mark.asyncio
async def test_field_correction_window_boundary(db_session, actor):
    ids = await full_day(db_session, actor)

    with pytest.raises(CorrectionWindowError):
        await corrections.submit_field_correction(
            db_session, actor, ids["record"], "checkInTime", at(8), "late entry", now=WINDOW_END + 1
        )

    correction = await corrections.submit_field_correction(
        db_session, actor, ids["record"], "checkInTime", at(8), "late entry", now=WINDOW_END
    )
    assert correction.approval_status == "PENDING"


@pytest.mark.asyncio
async def test_field_correction_guards(db_session, actor, other_actor, admin_actor):
    ids = await full_day(db_session, actor)
    record_id = ids["record"]

    with pytest.raises(ValidationError) as exc:
        await corrections.submit_field_correction(
            db_session, actor, record_id, "totalWorkMinutes", 1, "x", now=NOW
        )
    assert exc.value.code == "INVALID_FIELD"

    with pytest.raises(ValidationError) as exc:
        await corrections.submit_field_correction(
            db_session, actor, record_id, "checkOutTime", NOW + 1, "x", now=NOW
        )
    assert exc.value.code == "FUTURE_TIMESTAMP"

    with pytest.raises(OrderingError) as exc:
        await corrections.submit_field_correction(
            db_session, actor, record_id, "checkOutTime", at(9), "x", now=NOW
        )
    assert exc.value.code == "OUT_OF_ORDER"

    for intruder in (other_actor, admin_actor):
        with pytest.raises(AuthorizationError):
            await corrections.submit_field_correction(
                db_session, intruder, record_id, "checkOutTime", at(19), "x", now=NOW
            )

    with pytest.raises(NotFoundError) as exc:
        await corrections.submit_field_correction(
            db_session, actor, 4040, "checkOutTime", at(19), "x", now=NOW
        )
    assert exc.value.code == "RECORD_NOT_FOUND"


@pytest.mark.asyncio
async def test_field_correction_needs_a_current_value(db_session, actor):
    event = await punch(db_session, actor, "WORK", at(9))
    with pytest.raises(NotFoundError) as exc:
        await corrections.submit_field_correction(
            db_session, actor, event.attendance_record_id, "checkOutTime", at(18), "forgot", now=NOW
        )
    assert exc.value.code == "FIELD_NOT_SET"


@pytest.mark.asyncio
async def test_list_corrections(db_session, actor, other_actor):
    ids = await full_day(db_session, actor)
    await corrections.correct_event(db_session, actor, ids["rest"], timestamp=at(12, 30), now=NOW)
    await corrections.submit_field_correction(
        db_session, actor, ids["record"], "checkOutTime", at(18, 30), "left later", now=NOW
    )

    mine = await corrections.list_corrections(db_session, actor.user_id)
    assert {c.field_name for c in mine} == {"checkOutTime", f"timerEvent_{ids['rest']}_timestamp"}
    assert await corrections.list_corrections(db_session, other_actor.user_id) == []


# ── Admin decisions on field corrections ────────────────────────────
@pytest.mark.asyncio
async def test_approving_field_correction_applies_it(db_session, actor, admin_actor):
    ids = await full_day(db_session, actor)
    pending = await corrections.submit_field_correction(
        db_session, actor, ids["record"], "checkOutTime", at(18, 30), "left later", now=NOW
    )

    approved = await corrections.approve_field_correction(db_session, admin_actor, pending.id, now=NOW)
    assert approved.approval_status == "APPROVED"
    assert approved.approved_by == admin_actor.user_id

    record, _ = await load(db_session, ids["record"])
    assert record.check_out_time == at(18, 30)

    log = (
        await db_session.execute(
            select(OperationLog)
            .where(OperationLog.action == "EDIT_TIME")
            .order_by(OperationLog.id.desc())
            .limit(1)
        )
    ).scalar_one()
    assert log.user_id == actor.user_id
    assert log.reason == "Approved by admin: left later"

    with pytest.raises(StateConflictError):
        await corrections.approve_field_correction(db_session, admin_actor, pending.id, now=NOW)


@pytest.mark.asyncio
async def test_rejecting_field_correction(db_session, actor, admin_actor):
    ids = await full_day(db_session, actor)
    pending = await corrections.submit_field_correction(
        db_session, actor, ids["record"], "checkInTime", at(8), "badge failed", now=NOW
    )

    rejected = await corrections.reject_field_correction(
        db_session, admin_actor, pending.id, rejection_reason="no evidence", now=NOW
    )
    assert rejected.approval_status == "REJECTED"
    assert rejected.reason == "badge failed\n\nRejection reason: no evidence"

    record, _ = await load(db_session, ids["record"])
    assert record.check_in_time == at(9)

    with pytest.raises(StateConflictError):
        await corrections.reject_field_correction(
            db_session, admin_actor, pending.id, rejection_reason="again", now=NOW
        )


@pytest.mark.asyncio
async def test_decision_on_unknown_correction(db_session, admin_actor):
    with pytest.raises(NotFoundError) as exc:
        await corrections.approve_field_correction(db_session, admin_actor, 77, now=NOW)
    assert exc.value.code == "CORRECTION_NOT_FOUND"
