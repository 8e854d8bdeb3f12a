"""
Attendance session engine.

Sessions move OPEN -> CLOSED exactly once. A check-in opens a session after
the compliance gate and the late-arrival check pass; a check-out closes it,
derives the day-level status and updates the daily summary. Both operations
return an AttendanceOutcome and never raise to the caller.
"""
import io
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.models import AttendanceSession, DailyAttendance, User
from ..storage.provider import StorageProvider, get_storage_provider
from .audit import create_activity_log, create_error_log
from .compliance import run_compliance_gate
from .geofence import get_user_work_locations
from .geocoding import UNKNOWN_LOCATION
from .images import optimize_selfie_bytes
from .locks import user_locks
from .notifications import create_notification
from .outbox import Outbox, outbox as default_outbox
from .policy import LateArrival, calculate_late_arrival, determine_day_status, resolve_policy
from .session_context import SessionContext, build_session_context, sessions_for_day
from .time_rules import hours_between, overtime_hours

logger = structlog.get_logger(__name__)

STATE_OPEN = "OPEN"
STATE_CLOSED = "CLOSED"

ALREADY_TIMED_IN_MESSAGE = "Already timed in. Please time out first."
NO_OPEN_SESSION_MESSAGE = "No active time-in found to time out."
UNKNOWN_USER_MESSAGE = "User not found or inactive."
INVALID_TIME_MESSAGE = "A valid local time is required."
TIME_IN_FAILED_MESSAGE = "Could not record time in. Please try again."
TIME_OUT_FAILED_MESSAGE = "Could not record time out. Please try again."
CONCURRENT_UPDATE_MESSAGE = "Attendance was updated by another request. Please retry."

IMAGE_DIRECTORY = "attendance_images"


@dataclass
class AttendanceEvent:
    """One time_in/time_out capture, already resolved to local wall-clock time."""
    user_id: uuid.UUID
    org_id: uuid.UUID
    latitude: Any
    longitude: Any
    accuracy: Any
    local_time: datetime
    timezone: Optional[str] = None
    address: str = UNKNOWN_LOCATION
    late_reason: Optional[str] = None
    image: Optional[bytes] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    event_source: str = "WEB"


@dataclass
class AttendanceOutcome:
    ok: bool
    status_code: int
    message: str
    attendance_id: Optional[uuid.UUID] = None
    local_time: Optional[datetime] = None
    address: Optional[str] = None
    timezone: Optional[str] = None
    status: Optional[str] = None
    late_minutes: Optional[int] = None
    session_hours: Optional[float] = None
    total_hours_today: Optional[float] = None
    overtime_hours: Optional[float] = None
    session_number: Optional[int] = None
    is_first_session: Optional[bool] = None
    image_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        data.pop("status_code", None)
        if self.attendance_id is not None:
            data["attendance_id"] = str(self.attendance_id)
        if self.local_time is not None:
            data["local_time"] = self.local_time.isoformat()
        return data


def _reject(message: str, status_code: int = 400) -> AttendanceOutcome:
    return AttendanceOutcome(ok=False, status_code=status_code, message=message)


def _as_uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _rounded_accuracy(accuracy: Any) -> Optional[int]:
    try:
        return round(float(accuracy))
    except (TypeError, ValueError, OverflowError):
        return None


def find_open_session(db: Session, user_id: uuid.UUID, work_date) -> Optional[AttendanceSession]:
    return (
        db.query(AttendanceSession)
        .filter(
            AttendanceSession.user_id == user_id,
            AttendanceSession.work_date == work_date,
            AttendanceSession.state == STATE_OPEN,
        )
        .first()
    )


def image_key_for(attendance_id: uuid.UUID, direction: str) -> str:
    return f"{IMAGE_DIRECTORY}/{attendance_id}_{direction}.jpg"


def store_attendance_image(
    storage: Optional[StorageProvider],
    attendance_id: uuid.UUID,
    direction: str,
    image: Optional[bytes],
) -> Optional[str]:
    """Upload a selfie. Returns its key, or None when absent or the upload failed."""
    if not image:
        return None
    key = image_key_for(attendance_id, direction)
    try:
        provider = storage or get_storage_provider()
        provider.copy_in(io.BytesIO(optimize_selfie_bytes(image)), key)
    except Exception as e:
        logger.warning("attendance_image_store_failed", attendance_id=str(attendance_id), key=key, error=str(e))
        return None
    return key


def _capture_metadata(event: AttendanceEvent) -> Dict[str, Any]:
    return {
        "accuracy": _rounded_accuracy(event.accuracy),
        "ip_address": event.ip_address,
        "user_agent": event.user_agent,
        "timestamp_utc": datetime.utcnow().isoformat() + "Z",
        "timezone": event.timezone or "N/A",
    }


def _activity_context(event: AttendanceEvent) -> Dict[str, Any]:
    return {
        "location": f"{event.latitude},{event.longitude}",
        "request_ip": event.ip_address,
        "user_agent": event.user_agent,
    }


def _load_user(db: Session, event: AttendanceEvent) -> Optional[User]:
    user = db.get(User, event.user_id)
    if user is None or not user.is_active:
        return None
    return user


def _normalize_event(event: AttendanceEvent) -> Optional[AttendanceOutcome]:
    """Coerce ids and the local time in place; returns a rejection on bad input."""
    try:
        event.user_id = _as_uuid(event.user_id)
        event.org_id = _as_uuid(event.org_id)
    except (TypeError, ValueError):
        return _reject("A valid user and organization are required.")
    if not isinstance(event.local_time, datetime):
        return _reject(INVALID_TIME_MESSAGE)
    if event.local_time.tzinfo is not None:
        event.local_time = event.local_time.replace(tzinfo=None)
    if event.late_reason is not None:
        event.late_reason = event.late_reason.strip() or None
    return None


def _queue_side_effects(
    outbox: Outbox,
    event: AttendanceEvent,
    attendance_id: uuid.UUID,
    action: str,
    title: str,
    message: str,
    notification_type: str,
    description: str,
) -> None:
    outbox.submit(
        create_notification,
        org_id=event.org_id,
        user_id=event.user_id,
        title=title,
        message=message,
        type=notification_type,
        related_entity_type="ATTENDANCE",
        related_entity_id=attendance_id,
    )
    outbox.submit(
        create_activity_log,
        entity_type="attendance",
        entity_id=attendance_id,
        action=action,
        actor_id=event.user_id,
        org_id=event.org_id,
        source=event.event_source,
        description=description,
        context=_activity_context(event),
    )


def _handle_failure(db: Session, outbox: Outbox, event: AttendanceEvent, operation: str, error: Exception) -> AttendanceOutcome:
    db.rollback()
    if isinstance(error, IntegrityError):
        # Another process won the race for the open session or the daily row
        logger.warning(f"{operation}_conflict", user_id=str(event.user_id), error=str(error.orig))
        message = ALREADY_TIMED_IN_MESSAGE if operation == "time_in" else CONCURRENT_UPDATE_MESSAGE
        return _reject(message, status_code=409)

    logger.error(f"{operation}_failed", user_id=str(event.user_id), error=str(error), exc_info=True)
    outbox.submit(
        create_error_log,
        error_message=f"{operation} failed: {error}",
        user_id=event.user_id,
        org_id=event.org_id,
        extra_context={"operation": operation, "local_time": str(event.local_time)},
    )
    return _reject(TIME_IN_FAILED_MESSAGE if operation == "time_in" else TIME_OUT_FAILED_MESSAGE, status_code=500)


def process_time_in(
    db: Session,
    event: AttendanceEvent,
    *,
    storage: Optional[StorageProvider] = None,
    outbox: Optional[Outbox] = None,
) -> AttendanceOutcome:
    """
    Open a session for the user's local date.

    Rejected (400) when a session is already open, the compliance gate fails,
    or a late first arrival comes without a reason. A concurrent duplicate
    rejected by the database returns 409; any other failure returns 500 with
    nothing written.
    """
    outbox = outbox or default_outbox
    invalid = _normalize_event(event)
    if invalid is not None:
        return invalid

    with user_locks.hold(event.user_id):
        try:
            return _time_in(db, event, storage, outbox)
        except Exception as e:
            return _handle_failure(db, outbox, event, "time_in", e)


def _time_in(db: Session, event: AttendanceEvent, storage: Optional[StorageProvider], outbox: Outbox) -> AttendanceOutcome:
    local_time = event.local_time
    work_date = local_time.date()

    if find_open_session(db, event.user_id, work_date) is not None:
        return _reject(ALREADY_TIMED_IN_MESSAGE)

    user = _load_user(db, event)
    if user is None:
        return _reject(UNKNOWN_USER_MESSAGE)

    context = build_session_context(db, event.user_id, local_time, "time_in")
    policy = resolve_policy(db, user.shift_id)
    requirements = policy.entry_requirements

    gate = run_compliance_gate(
        latitude=event.latitude,
        longitude=event.longitude,
        accuracy=event.accuracy,
        has_image=bool(event.image),
        requirements=requirements,
        locations=get_user_work_locations(db, event.user_id) if requirements.geofence_enforced else [],
        context=context,
    )
    if not gate.ok:
        logger.info("time_in_rejected", user_id=str(event.user_id), errors=gate.errors)
        return _reject(gate.message)

    if context.is_first_session:
        late = calculate_late_arrival(local_time, policy)
    else:
        late = LateArrival(minutes_late=0, is_late=False, grace_period=policy.grace_period_minutes)

    if late.is_late and not event.late_reason:
        return _reject(f"You are {late.minutes_late} minutes late. A 'late_reason' is required to check in.")

    session = AttendanceSession(
        id=uuid.uuid4(),
        user_id=event.user_id,
        org_id=event.org_id,
        work_date=work_date,
        timezone=event.timezone,
        time_in=local_time,
        time_in_lat=float(event.latitude),
        time_in_lng=float(event.longitude),
        time_in_address=event.address,
        late_minutes=late.minutes_late,
        late_reason=event.late_reason if context.is_first_session else None,
        state=STATE_OPEN,
        open_marker=True,
        meta_json={
            "time_in": _capture_metadata(event),
            "session_context": context.to_dict(),
        },
    )
    db.add(session)

    if context.is_first_session:
        exists = (
            db.query(DailyAttendance.id)
            .filter(DailyAttendance.user_id == event.user_id, DailyAttendance.date == work_date)
            .first()
        )
        if exists is None:
            db.add(DailyAttendance(
                user_id=event.user_id,
                org_id=event.org_id,
                shift_id=user.shift_id,
                date=work_date,
                first_in=local_time.time(),
                status="LATE_NOT_PUNCHED_OUT" if late.is_late else "NOT_PUNCHED_OUT",
                late_minutes=late.minutes_late if late.is_late else 0,
                total_hours=0,
            ))

    # Session and summary commit together
    db.commit()
    attendance_id = session.id

    logger.info(
        "time_in_recorded",
        user_id=str(event.user_id),
        attendance_id=str(attendance_id),
        session_number=context.session_number,
        late_minutes=late.minutes_late,
    )

    image_key = store_attendance_image(storage, attendance_id, "in", event.image)
    if image_key:
        _attach_image(db, attendance_id, "time_in_image_key", image_key)

    _queue_side_effects(
        outbox,
        event,
        attendance_id,
        action="CHECK_IN",
        title="Attendance Checked In",
        message=f"You have successfully checked in at {local_time.isoformat()} from {event.address}",
        notification_type="SUCCESS",
        description=f"User checked in at {event.address} (Session #{context.session_number})",
    )

    return AttendanceOutcome(
        ok=True,
        status_code=200,
        message="Timed in successfully",
        attendance_id=attendance_id,
        local_time=local_time,
        address=event.address,
        timezone=event.timezone,
        late_minutes=late.minutes_late,
        session_number=context.session_number,
        is_first_session=context.is_first_session,
        image_key=image_key,
    )


def _attach_image(db: Session, attendance_id: uuid.UUID, column: str, image_key: str) -> None:
    """Record an uploaded image key after the primary commit; failure keeps the session."""
    try:
        session = db.get(AttendanceSession, attendance_id)
        setattr(session, column, image_key)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning("attendance_image_attach_failed", attendance_id=str(attendance_id), error=str(e))


def build_status_data(
    context: SessionContext,
    open_session: AttendanceSession,
    local_time: datetime,
    session_hours: float,
    total_hours: float,
    first_session_late_minutes: int,
    grace_period: int,
) -> Dict[str, Any]:
    """Variables available to status rules at check-out."""
    data = context.to_dict()
    data.update({
        "total_hours": total_hours,
        "session_hours": session_hours,
        "minutes_late": first_session_late_minutes,
        "is_late": first_session_late_minutes > grace_period,
        "check_in_hour": open_session.time_in.hour,
        "check_out_hour": local_time.hour,
        "last_time_out_hour": local_time.hour,
    })
    return data


def process_time_out(
    db: Session,
    event: AttendanceEvent,
    *,
    storage: Optional[StorageProvider] = None,
    outbox: Optional[Outbox] = None,
) -> AttendanceOutcome:
    """
    Close the user's open session for the local date and update the daily summary.

    Rejected (400) when no session is open or the compliance gate fails.
    """
    outbox = outbox or default_outbox
    invalid = _normalize_event(event)
    if invalid is not None:
        return invalid

    with user_locks.hold(event.user_id):
        try:
            return _time_out(db, event, storage, outbox)
        except Exception as e:
            return _handle_failure(db, outbox, event, "time_out", e)


def _time_out(db: Session, event: AttendanceEvent, storage: Optional[StorageProvider], outbox: Outbox) -> AttendanceOutcome:
    local_time = event.local_time
    work_date = local_time.date()

    open_session = find_open_session(db, event.user_id, work_date)
    if open_session is None:
        return _reject(NO_OPEN_SESSION_MESSAGE)

    user = _load_user(db, event)
    if user is None:
        return _reject(UNKNOWN_USER_MESSAGE)

    context = build_session_context(db, event.user_id, local_time, "time_out")
    policy = resolve_policy(db, user.shift_id)
    requirements = policy.exit_requirements

    gate = run_compliance_gate(
        latitude=event.latitude,
        longitude=event.longitude,
        accuracy=event.accuracy,
        has_image=bool(event.image),
        requirements=requirements,
        locations=get_user_work_locations(db, event.user_id) if requirements.geofence_enforced else [],
        context=context,
    )
    if not gate.ok:
        logger.info("time_out_rejected", user_id=str(event.user_id), errors=gate.errors)
        return _reject(gate.message)

    image_key = store_attendance_image(storage, open_session.id, "out", event.image)

    session_hours = hours_between(open_session.time_in, local_time)
    total_hours = round(context.total_hours_today + session_hours, 2)

    first_session = sessions_for_day(db, event.user_id, work_date)[0]
    first_late_minutes = first_session.late_minutes or 0
    first_session_late = first_late_minutes > policy.grace_period_minutes

    status_data = build_status_data(
        context,
        open_session,
        local_time,
        round(session_hours, 2),
        total_hours,
        first_late_minutes,
        policy.grace_period_minutes,
    )
    status = determine_day_status(policy, status_data, first_session_late)
    overtime = round(overtime_hours(total_hours, policy.overtime_threshold_hours), 2)

    metadata = dict(open_session.meta_json or {})
    metadata["time_out"] = {**_capture_metadata(event), "total_hours": round(session_hours, 2)}
    metadata["session_context_at_checkout"] = context.to_dict()

    open_session.time_out = local_time
    open_session.time_out_lat = float(event.latitude)
    open_session.time_out_lng = float(event.longitude)
    open_session.time_out_address = event.address
    open_session.time_out_image_key = image_key
    open_session.session_hours = round(session_hours, 4)
    open_session.overtime_hours = overtime
    open_session.day_status = status
    open_session.state = STATE_CLOSED
    open_session.open_marker = None
    open_session.meta_json = metadata

    daily = (
        db.query(DailyAttendance)
        .filter(DailyAttendance.user_id == event.user_id, DailyAttendance.date == work_date)
        .first()
    )
    if daily is None:
        # Summary row lost at check-in; rebuild it from the first session
        daily = DailyAttendance(
            user_id=event.user_id,
            org_id=event.org_id,
            shift_id=user.shift_id,
            date=work_date,
            first_in=first_session.time_in.time(),
            late_minutes=first_late_minutes if first_session_late else 0,
        )
        db.add(daily)
    daily.last_out = local_time.time()
    daily.total_hours = total_hours
    daily.overtime_hours = overtime
    daily.status = status

    db.commit()
    attendance_id = open_session.id

    logger.info(
        "time_out_recorded",
        user_id=str(event.user_id),
        attendance_id=str(attendance_id),
        status=status,
        session_hours=round(session_hours, 2),
        total_hours=total_hours,
    )

    _queue_side_effects(
        outbox,
        event,
        attendance_id,
        action="CHECK_OUT",
        title="Attendance Checked Out",
        message=f"You have successfully checked out at {local_time.isoformat()}. Total hours today: {total_hours:.2f}h",
        notification_type="INFO",
        description=f"User checked out at {event.address} (Status: {status})",
    )

    return AttendanceOutcome(
        ok=True,
        status_code=200,
        message="Timed out successfully",
        attendance_id=attendance_id,
        local_time=local_time,
        address=event.address,
        timezone=event.timezone,
        status=status,
        session_hours=round(session_hours, 2),
        total_hours_today=total_hours,
        overtime_hours=overtime,
        image_key=image_key,
    )
