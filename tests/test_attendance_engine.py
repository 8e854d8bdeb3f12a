import threading
from datetime import time, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

import timekeeper.services.attendance as attendance
from timekeeper.models.models import (
    ActivityLog,
    AttendanceSession,
    DailyAttendance,
    ErrorLog,
    Notification,
)
from timekeeper.services.attendance import (
    ALREADY_TIMED_IN_MESSAGE,
    NO_OPEN_SESSION_MESSAGE,
    process_time_in,
    process_time_out,
)
from timekeeper.services.compliance import OUTSIDE_GEOFENCE_MESSAGE, SELFIE_REQUIRED_MESSAGE
from timekeeper.schemas.policy import STRICT_SHIFT_POLICY
from timekeeper.storage.provider import StorageProvider

from conftest import OFFICE_POLICY, WORK_DAY, make_event, seed_user


class BrokenStorage(StorageProvider):
    def copy_in(self, src_stream_or_url, key):
        raise OSError("blob service unavailable")


def _daily(db, seeded, day=WORK_DAY):
    return (
        db.query(DailyAttendance)
        .filter(DailyAttendance.user_id == seeded.user.id, DailyAttendance.date == day)
        .one_or_none()
    )


def _sessions(db, seeded):
    return db.query(AttendanceSession).filter(AttendanceSession.user_id == seeded.user.id).all()


def test_end_to_end_two_days(db, seeded, outbox, storage):
    # Day one: on time within grace
    outcome = process_time_in(db, make_event(seeded, 9, 5), storage=storage, outbox=outbox)
    assert outcome.ok, outcome.message
    assert outcome.status_code == 200
    assert outcome.message == "Timed in successfully"
    assert outcome.late_minutes == 5
    assert outcome.is_first_session is True
    assert outcome.session_number == 1
    assert _daily(db, seeded).status == "NOT_PUNCHED_OUT"

    outcome = process_time_out(db, make_event(seeded, 17, 30), storage=storage, outbox=outbox)
    assert outcome.ok, outcome.message
    assert outcome.status == "PRESENT"
    assert outcome.overtime_hours == 0
    assert outcome.session_hours == 8.42
    assert outcome.total_hours_today == 8.42

    daily = _daily(db, seeded)
    assert daily.status == "PRESENT"
    assert daily.first_in == time(9, 5)
    assert daily.last_out == time(17, 30)
    assert daily.total_hours == 8.42
    assert daily.overtime_hours == 0

    # Day two: 20 minutes late without a reason is a hard stop
    day_two = WORK_DAY + timedelta(days=1)
    outcome = process_time_in(db, make_event(seeded, 9, 20, day=day_two), storage=storage, outbox=outbox)
    assert not outcome.ok
    assert outcome.status_code == 400
    assert outcome.message == "You are 20 minutes late. A 'late_reason' is required to check in."
    assert _daily(db, seeded, day_two) is None

    outcome = process_time_in(
        db, make_event(seeded, 9, 20, day=day_two, late_reason="Metro delay"), storage=storage, outbox=outbox
    )
    assert outcome.ok, outcome.message
    assert outcome.late_minutes == 20

    daily = _daily(db, seeded, day_two)
    assert daily.status == "LATE_NOT_PUNCHED_OUT"
    assert daily.late_minutes == 20
    session = db.query(AttendanceSession).filter(AttendanceSession.work_date == day_two).one()
    assert session.late_reason == "Metro delay"
    assert session.state == "OPEN"


def test_second_time_in_is_rejected(db, seeded, outbox, storage):
    assert process_time_in(db, make_event(seeded, 9, 0), storage=storage, outbox=outbox).ok

    outcome = process_time_in(db, make_event(seeded, 9, 30), storage=storage, outbox=outbox)
    assert not outcome.ok
    assert outcome.status_code == 400
    assert outcome.message == ALREADY_TIMED_IN_MESSAGE
    assert len(_sessions(db, seeded)) == 1


def test_time_out_without_open_session(db, seeded, outbox, storage):
    outcome = process_time_out(db, make_event(seeded, 18, 0), storage=storage, outbox=outbox)
    assert not outcome.ok
    assert outcome.status_code == 400
    assert outcome.message == NO_OPEN_SESSION_MESSAGE


def test_missing_selfie_rejects_without_writing(db, seeded, outbox, storage):
    outcome = process_time_in(db, make_event(seeded, 9, 0, image=None), storage=storage, outbox=outbox)
    assert not outcome.ok
    assert outcome.message == f"Policy Violation: {SELFIE_REQUIRED_MESSAGE}"
    assert _sessions(db, seeded) == []
    assert _daily(db, seeded) is None


def test_outside_geofence_and_no_selfie_reported_together(db, seeded, outbox, storage):
    outcome = process_time_in(
        db, make_event(seeded, 9, 0, image=None, longitude=0.01), storage=storage, outbox=outbox
    )
    assert not outcome.ok
    assert OUTSIDE_GEOFENCE_MESSAGE in outcome.message
    assert SELFIE_REQUIRED_MESSAGE in outcome.message


def test_poor_accuracy_rejected(db, seeded, outbox, storage):
    outcome = process_time_in(db, make_event(seeded, 9, 0, accuracy=480), storage=storage, outbox=outbox)
    assert not outcome.ok
    assert "480m" in outcome.message


def test_time_out_outside_geofence_keeps_session_open(db, seeded, outbox, storage):
    assert process_time_in(db, make_event(seeded, 9, 0), storage=storage, outbox=outbox).ok
    outcome = process_time_out(db, make_event(seeded, 18, 0, longitude=0.01), storage=storage, outbox=outbox)
    assert not outcome.ok
    session = _sessions(db, seeded)[0]
    db.refresh(session)
    assert session.state == "OPEN"
    assert session.time_out is None


def test_multiple_sessions_accumulate_and_overtime(db, seeded, outbox, storage):
    assert process_time_in(db, make_event(seeded, 9, 0), storage=storage, outbox=outbox).ok
    assert process_time_out(db, make_event(seeded, 12, 0), storage=storage, outbox=outbox).ok

    # Second session is not the first of the day, so lateness is not assessed
    outcome = process_time_in(db, make_event(seeded, 13, 0), storage=storage, outbox=outbox)
    assert outcome.ok, outcome.message
    assert outcome.session_number == 2
    assert outcome.is_first_session is False
    assert outcome.late_minutes == 0

    outcome = process_time_out(db, make_event(seeded, 19, 30), storage=storage, outbox=outbox)
    assert outcome.ok
    assert outcome.session_hours == 6.5
    assert outcome.total_hours_today == 9.5
    assert outcome.overtime_hours == 0.5

    daily = _daily(db, seeded)
    assert daily.first_in == time(9, 0)
    assert daily.last_out == time(19, 30)
    assert daily.total_hours == 9.5
    assert daily.overtime_hours == 0.5
    assert daily.status == "PRESENT"

    states = sorted(s.state for s in _sessions(db, seeded))
    assert states == ["CLOSED", "CLOSED"]


def test_late_first_session_marks_day_late(db, seeded, outbox, storage):
    assert process_time_in(db, make_event(seeded, 9, 45, late_reason="Doctor"), storage=storage, outbox=outbox).ok
    outcome = process_time_out(db, make_event(seeded, 18, 30), storage=storage, outbox=outbox)
    assert outcome.status == "LATE"
    assert _daily(db, seeded).status == "LATE"


def test_rule_mode_status_at_time_out(db, outbox, storage):
    policy = {**OFFICE_POLICY, "status_mode": "rules", "status_rules": [
        {"if": [{"<": [{"var": "total_hours"}, 4]}, "ABSENT"]},
        {"if": [{"<": [{"var": "total_hours"}, 8]}, "HALF_DAY"]},
        {"if": [{"var": "is_late"}, "LATE"]},
    ]}
    seeded = seed_user(db, policy=policy)
    assert process_time_in(db, make_event(seeded, 9, 0), storage=storage, outbox=outbox).ok
    outcome = process_time_out(db, make_event(seeded, 12, 0), storage=storage, outbox=outbox)
    assert outcome.status == "ABSENT"
    session = _sessions(db, seeded)[0]
    assert session.day_status == "ABSENT"
    assert session.meta_json["session_context_at_checkout"]["event_type"] == "time_out"


def test_default_policy_used_without_shift_rules(db, outbox, storage):
    seeded = seed_user(db, policy=None)
    # Strict default: selfie and geofence required, 10 minute grace
    outcome = process_time_in(db, make_event(seeded, 9, 15), storage=storage, outbox=outbox)
    assert outcome.message.startswith("You are 15 minutes late")
    assert process_time_in(db, make_event(seeded, 9, 15, late_reason="Rain"), storage=storage, outbox=outbox).ok
    outcome = process_time_out(db, make_event(seeded, 18, 15), storage=storage, outbox=outbox)
    assert outcome.status == "LATE"
    assert outcome.overtime_hours == 1.0
    assert STRICT_SHIFT_POLICY.overtime_threshold_hours == 8


def test_images_are_stored_under_attendance_keys(db, seeded, outbox, storage):
    outcome = process_time_in(db, make_event(seeded, 9, 0), storage=storage, outbox=outbox)
    assert outcome.image_key == f"attendance_images/{outcome.attendance_id}_in.jpg"
    assert storage.exists(outcome.image_key)

    out = process_time_out(db, make_event(seeded, 18, 0), storage=storage, outbox=outbox)
    assert out.image_key == f"attendance_images/{outcome.attendance_id}_out.jpg"
    session = db.get(AttendanceSession, outcome.attendance_id)
    db.refresh(session)
    assert session.time_in_image_key == outcome.image_key
    assert session.time_out_image_key == out.image_key


def test_storage_failure_does_not_block_time_in(db, seeded, outbox):
    outcome = process_time_in(db, make_event(seeded, 9, 0), storage=BrokenStorage(), outbox=outbox)
    assert outcome.ok
    assert outcome.image_key is None
    session = _sessions(db, seeded)[0]
    assert session.state == "OPEN"
    assert session.time_in_image_key is None


def test_side_effects_are_queued(db, seeded, outbox, storage):
    outcome = process_time_in(db, make_event(seeded, 9, 0), storage=storage, outbox=outbox)
    process_time_out(db, make_event(seeded, 18, 0), storage=storage, outbox=outbox)
    outbox.flush()

    titles = sorted(n.title for n in db.query(Notification).filter(Notification.user_id == seeded.user.id))
    assert titles == ["Attendance Checked In", "Attendance Checked Out"]
    actions = sorted(a.action for a in db.query(ActivityLog).filter(ActivityLog.entity_id == outcome.attendance_id))
    assert actions == ["CHECK_IN", "CHECK_OUT"]
    log = db.query(ActivityLog).filter(ActivityLog.action == "CHECK_IN").one()
    assert log.integrity_hash
    assert log.context["request_ip"] == "10.0.0.7"


def test_metadata_captures_audit_context(db, seeded, outbox, storage):
    process_time_in(db, make_event(seeded, 9, 0, accuracy=12.6), storage=storage, outbox=outbox)
    meta = _sessions(db, seeded)[0].meta_json
    assert meta["time_in"]["accuracy"] == 13
    assert meta["time_in"]["timezone"] == "Asia/Kolkata"
    assert meta["time_in"]["user_agent"] == "pytest"
    assert meta["session_context"]["is_first_session"] is True


def test_unexpected_failure_returns_500_and_logs(db, seeded, outbox, storage, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(attendance, "build_session_context", explode)
    outcome = process_time_in(db, make_event(seeded, 9, 0), storage=storage, outbox=outbox)
    assert not outcome.ok
    assert outcome.status_code == 500
    assert _sessions(db, seeded) == []

    outbox.flush()
    error = db.query(ErrorLog).one()
    assert "database went away" in error.error_message


def test_database_rejects_second_open_session(session_factory, seeded):
    user_id, org_id = seeded.user.id, seeded.org.id
    for _ in range(2):
        session = session_factory()
        session.add(AttendanceSession(
            user_id=user_id,
            org_id=org_id,
            work_date=WORK_DAY,
            time_in=make_event(seeded, 9, 0).local_time,
            state="OPEN",
            open_marker=True,
        ))
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            break
        finally:
            session.close()
    else:
        pytest.fail("second open session was accepted")


def test_constraint_violation_maps_to_conflict(db, seeded, outbox, storage, monkeypatch):
    assert process_time_in(db, make_event(seeded, 9, 0), storage=storage, outbox=outbox).ok

    # Another process's row is invisible to the pre-check
    monkeypatch.setattr(attendance, "find_open_session", lambda *args: None)
    outcome = process_time_in(db, make_event(seeded, 9, 1), storage=storage, outbox=outbox)
    assert not outcome.ok
    assert outcome.status_code == 409
    assert outcome.message == ALREADY_TIMED_IN_MESSAGE
    assert len(_sessions(db, seeded)) == 1


def test_concurrent_time_in_opens_exactly_one_session(session_factory, seeded, outbox, storage):
    attempts = 8
    events = [make_event(seeded, 9, 0) for _ in range(attempts)]
    barrier = threading.Barrier(attempts)
    outcomes = []
    outcomes_lock = threading.Lock()

    def worker(event):
        session = session_factory()
        try:
            barrier.wait()
            outcome = process_time_in(session, event, storage=storage, outbox=outbox)
        finally:
            session.close()
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker, args=(event,)) for event in events]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(outcomes) == attempts
    assert sum(1 for o in outcomes if o.ok) == 1
    assert all(o.status_code in (400, 409) for o in outcomes if not o.ok)

    check = session_factory()
    try:
        open_count = (
            check.query(AttendanceSession)
            .filter(AttendanceSession.user_id == events[0].user_id, AttendanceSession.state == "OPEN")
            .count()
        )
    finally:
        check.close()
    assert open_count == 1
