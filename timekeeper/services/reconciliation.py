"""
Daily attendance reconciliation.

Runs hourly. For every active user whose local clock reads the
reconciliation hour (02:00 by default), yesterday is finalized: dangling
open sessions are auto-closed at shift end, lost summaries are rebuilt, and
days with no sessions are classified as HOLIDAY, LEAVE, WEEKEND or ABSENT.
Re-running for the same user and date changes nothing.
"""
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone as dt_timezone
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import (
    AttendanceSession,
    DailyAttendance,
    Holiday,
    LeaveRequest,
    Organization,
    User,
)
from ..schemas.policy import AlternateSaturdays, ShiftPolicy, WEEKDAY_ABBREVIATIONS
from .attendance import STATE_CLOSED, STATE_OPEN
from .audit import create_activity_log
from .outbox import Outbox, outbox as default_outbox
from .policy import resolve_policy, simplified_status
from .session_context import sessions_for_day
from .time_rules import combine_local, hours_between, is_valid_timezone, overtime_hours, previous_day, utc_to_local

logger = structlog.get_logger(__name__)

DEFAULT_WORKING_DAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
AUTO_CLOSED_REMARK = "Auto-closed at shift end"
REBUILT_REMARK = "Rebuilt from sessions"
DAY_IN_PROGRESS_REMARK = "Day not over in user timezone"


@dataclass
class ReconcileResult:
    user_id: uuid.UUID
    date: date
    action: str  # auto_closed|rebuilt|classified|skipped|failed
    status: Optional[str] = None
    remarks: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.user_id),
            "date": self.date.isoformat(),
            "action": self.action,
            "status": self.status,
            "remarks": self.remarks,
        }


def resolve_user_timezone(db: Session, user: User) -> str:
    """
    Where the user is now: last session's captured timezone, then the
    organization's, then TZ_DEFAULT, then UTC. Unknown names are skipped.
    """
    candidates = []

    last_session = (
        db.query(AttendanceSession)
        .filter(AttendanceSession.user_id == user.id)
        .order_by(AttendanceSession.created_at.desc())
        .first()
    )
    if last_session is not None:
        meta = last_session.meta_json or {}
        candidates.append((meta.get("time_in") or {}).get("timezone"))
        candidates.append(last_session.timezone)

    org = user.organization
    if org is not None:
        candidates.append(org.timezone)
    candidates.append(settings.tz_default)

    for candidate in candidates:
        if is_valid_timezone(candidate):
            return candidate
    return "UTC"


def saturday_ordinal(value: date) -> int:
    """1 for the first Saturday of the month, up to 5."""
    return math.ceil(value.day / 7)


def _working_days(policy: ShiftPolicy, org: Optional[Organization]) -> List[str]:
    if policy.working_days is not None:
        return policy.working_days
    if org is not None and org.working_days:
        return org.working_days
    return DEFAULT_WORKING_DAYS


def _alternate_saturdays(policy: ShiftPolicy, org: Optional[Organization]) -> AlternateSaturdays:
    if policy.alternate_saturdays is not None:
        return policy.alternate_saturdays
    if org is not None and org.alternate_saturdays:
        return AlternateSaturdays.model_validate(org.alternate_saturdays)
    return AlternateSaturdays()


def classify_day(db: Session, user: User, target_date: date, policy: ShiftPolicy) -> Tuple[str, str]:
    """
    Status and remark for a day without sessions.

    Priority: holiday, approved leave, non-working weekday, alternate
    Saturday off, then ABSENT.
    """
    holiday = (
        db.query(Holiday)
        .filter(Holiday.org_id == user.org_id, Holiday.holiday_date == target_date)
        .first()
    )
    if holiday is not None:
        return "HOLIDAY", holiday.holiday_name

    leave = (
        db.query(LeaveRequest)
        .filter(
            LeaveRequest.user_id == user.id,
            func.lower(LeaveRequest.status) == "approved",
            LeaveRequest.start_date <= target_date,
            LeaveRequest.end_date >= target_date,
        )
        .first()
    )
    if leave is not None:
        return "LEAVE", f"{leave.leave_type} ({leave.pay_type})"

    org = user.organization
    day_name = WEEKDAY_ABBREVIATIONS[target_date.weekday()]
    if day_name not in _working_days(policy, org):
        return "WEEKEND", "Weekly Off"

    if day_name == "Sat":
        alternate = _alternate_saturdays(policy, org)
        week_num = saturday_ordinal(target_date)
        if alternate.enabled and week_num in alternate.off:
            return "WEEKEND", f"Saturday Off (Week {week_num})"

    return "ABSENT", "No show"


def _write_summary(
    db: Session,
    user: User,
    target_date: date,
    sessions: List[AttendanceSession],
    policy: ShiftPolicy,
    daily: Optional[DailyAttendance],
    status: str,
    remarks: str,
    auto_closed: bool,
) -> DailyAttendance:
    first = sessions[0]
    total_hours = round(sum(hours_between(s.time_in, s.time_out) for s in sessions), 2)
    first_late_minutes = first.late_minutes or 0
    overtime = round(overtime_hours(total_hours, policy.overtime_threshold_hours), 2)

    if daily is None:
        daily = DailyAttendance(user_id=user.id, org_id=user.org_id, shift_id=user.shift_id, date=target_date)
        db.add(daily)
    daily.first_in = first.time_in.time()
    daily.last_out = max(s.time_out for s in sessions).time()
    daily.total_hours = total_hours
    daily.overtime_hours = overtime
    daily.late_minutes = first_late_minutes if first_late_minutes > policy.grace_period_minutes else 0
    daily.status = status
    daily.remarks = remarks
    daily.auto_closed = auto_closed
    return daily


def _auto_close(
    db: Session,
    user: User,
    target_date: date,
    sessions: List[AttendanceSession],
    policy: ShiftPolicy,
    daily: Optional[DailyAttendance],
) -> ReconcileResult:
    shift_end = combine_local(target_date, policy.shift_timing.end)
    first_late = (sessions[0].late_minutes or 0) > policy.grace_period_minutes
    status = simplified_status(first_late)

    for session in sessions:
        if session.state != STATE_OPEN:
            continue
        close_at = max(shift_end, session.time_in)
        session.time_out = close_at
        session.session_hours = round(hours_between(session.time_in, close_at), 4)
        session.state = STATE_CLOSED
        session.open_marker = None
        session.auto_closed = True
        session.day_status = status
        metadata = dict(session.meta_json or {})
        metadata["auto_close"] = {
            "closed_at": close_at.isoformat(),
            "timestamp_utc": datetime.utcnow().isoformat() + "Z",
        }
        session.meta_json = metadata

    _write_summary(db, user, target_date, sessions, policy, daily, status, AUTO_CLOSED_REMARK, auto_closed=True)
    return ReconcileResult(user_id=user.id, date=target_date, action="auto_closed", status=status, remarks=AUTO_CLOSED_REMARK)


def local_today(db: Session, user: User, now_utc: Optional[datetime] = None) -> date:
    now_utc = now_utc or datetime.now(dt_timezone.utc)
    return utc_to_local(now_utc, resolve_user_timezone(db, user)).date()


def reconcile_user_day(
    db: Session,
    user: User,
    target_date: date,
    outbox: Optional[Outbox] = None,
    now_utc: Optional[datetime] = None,
) -> ReconcileResult:
    """
    Finalize one user's day. Commits on change; safe to call repeatedly.

    Only past days are finalized: today and later dates in the user's
    timezone are skipped so live sessions are never auto-closed.
    """
    if target_date >= local_today(db, user, now_utc):
        logger.info("attendance_day_not_over", user_id=str(user.id), date=target_date.isoformat())
        return ReconcileResult(user_id=user.id, date=target_date, action="skipped", remarks=DAY_IN_PROGRESS_REMARK)

    policy = resolve_policy(db, user.shift_id)
    sessions = sessions_for_day(db, user.id, target_date)
    daily = (
        db.query(DailyAttendance)
        .filter(DailyAttendance.user_id == user.id, DailyAttendance.date == target_date)
        .first()
    )

    if any(s.state == STATE_OPEN for s in sessions):
        result = _auto_close(db, user, target_date, sessions, policy, daily)
        action = "AUTO_CLOSE"
    elif sessions and daily is None:
        first_late = (sessions[0].late_minutes or 0) > policy.grace_period_minutes
        status = sessions[-1].day_status or simplified_status(first_late)
        _write_summary(db, user, target_date, sessions, policy, None, status, REBUILT_REMARK, auto_closed=False)
        result = ReconcileResult(user_id=user.id, date=target_date, action="rebuilt", status=status, remarks=REBUILT_REMARK)
        action = "DAY_REBUILT"
    elif daily is not None:
        return ReconcileResult(user_id=user.id, date=target_date, action="skipped", status=daily.status)
    else:
        status, remarks = classify_day(db, user, target_date, policy)
        db.add(DailyAttendance(
            user_id=user.id,
            org_id=user.org_id,
            shift_id=user.shift_id,
            date=target_date,
            status=status,
            remarks=remarks,
        ))
        result = ReconcileResult(user_id=user.id, date=target_date, action="classified", status=status, remarks=remarks)
        action = "DAY_CLASSIFIED"

    db.commit()
    logger.info(
        "attendance_day_reconciled",
        user_id=str(user.id),
        date=target_date.isoformat(),
        action=result.action,
        status=result.status,
    )

    (outbox or default_outbox).submit(
        create_activity_log,
        entity_type="daily_attendance",
        entity_id=None,
        action=action,
        org_id=user.org_id,
        source="SYSTEM",
        description=f"{target_date.isoformat()} marked {result.status} ({result.remarks})",
        context={"user_id": str(user.id), "date": target_date.isoformat()},
    )
    return result


def _reconcile_safely(
    db: Session,
    user: User,
    target_date: date,
    outbox: Optional[Outbox],
    now_utc: Optional[datetime] = None,
) -> ReconcileResult:
    try:
        return reconcile_user_day(db, user, target_date, outbox=outbox, now_utc=now_utc)
    except IntegrityError:
        # A concurrent run inserted the same daily row first
        db.rollback()
        logger.info("attendance_day_already_reconciled", user_id=str(user.id), date=target_date.isoformat())
        return ReconcileResult(user_id=user.id, date=target_date, action="skipped")
    except Exception as e:
        db.rollback()
        logger.error(
            "attendance_reconcile_user_failed",
            user_id=str(user.id),
            date=target_date.isoformat(),
            error=str(e),
            exc_info=True,
        )
        return ReconcileResult(user_id=user.id, date=target_date, action="failed")


def _active_users(db: Session, user_id: Optional[uuid.UUID] = None, org_id: Optional[uuid.UUID] = None) -> List[User]:
    query = db.query(User).filter(User.is_active.is_(True))
    if org_id is not None:
        query = query.filter(User.org_id == org_id)
    if user_id is not None:
        query = query.filter(User.id == user_id)
    return query.all()


def reconcile_date(
    db: Session,
    target_date: date,
    user_id: Optional[uuid.UUID] = None,
    org_id: Optional[uuid.UUID] = None,
    outbox: Optional[Outbox] = None,
    now_utc: Optional[datetime] = None,
) -> List[ReconcileResult]:
    """Reconcile an explicit past date for every active user (optionally one user or one organization)."""
    users = _active_users(db, user_id=user_id, org_id=org_id)
    return [_reconcile_safely(db, user, target_date, outbox, now_utc) for user in users]


def run_hourly_sweep(
    db: Optional[Session] = None,
    now_utc: Optional[datetime] = None,
    outbox: Optional[Outbox] = None,
) -> List[ReconcileResult]:
    """
    Finalize yesterday for users whose local hour is the reconciliation hour.

    Args:
        db: Database session (a fresh one is opened and closed when omitted)
        now_utc: Current UTC time, injectable for tests
        outbox: Side-effect queue for activity logs

    Returns:
        One result per user processed this run
    """
    owns_session = db is None
    if owns_session:
        from ..db import SessionLocal
        db = SessionLocal()

    now_utc = now_utc or datetime.now(dt_timezone.utc)
    results: List[ReconcileResult] = []
    try:
        users = _active_users(db)
        logger.info("attendance_sweep_started", users=len(users), now_utc=now_utc.isoformat())
        for user in users:
            try:
                tz_name = resolve_user_timezone(db, user)
            except Exception as e:
                db.rollback()
                logger.error("attendance_sweep_timezone_failed", user_id=str(user.id), error=str(e))
                continue
            local_now = utc_to_local(now_utc, tz_name)
            if local_now.hour != settings.reconciliation_hour:
                continue
            target_date = previous_day(local_now.date())
            results.append(_reconcile_safely(db, user, target_date, outbox, now_utc))
        logger.info("attendance_sweep_completed", processed=len(results))
        return results
    finally:
        if owns_session:
            db.close()
