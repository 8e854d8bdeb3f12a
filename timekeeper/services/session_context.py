"""
Session context builder.
Aggregates a user's sessions for one local calendar date. Always recomputed
from storage, never cached.
"""
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, date
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.models import AttendanceSession
from .time_rules import hours_between


@dataclass(frozen=True)
class SessionContext:
    is_first_session: bool
    is_last_session: bool
    session_number: int
    total_hours_today: float
    first_time_in: Optional[datetime]
    last_time_out: Optional[datetime]
    event_type: str
    work_date: date

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("first_time_in", "last_time_out", "work_date"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def sessions_for_day(db: Session, user_id: uuid.UUID, work_date: date) -> List[AttendanceSession]:
    return (
        db.query(AttendanceSession)
        .filter(AttendanceSession.user_id == user_id, AttendanceSession.work_date == work_date)
        .order_by(AttendanceSession.time_in.asc())
        .all()
    )


def build_session_context(
    db: Session,
    user_id: uuid.UUID,
    local_time: datetime,
    event_type: str,
) -> SessionContext:
    """
    Build the context for a time_in/time_out event.

    Args:
        db: Database session
        user_id: User ID
        local_time: Event time, local wall clock
        event_type: "time_in" or "time_out"

    Returns:
        SessionContext. total_hours_today only counts sessions already
        closed, so the session being opened or closed is not included.
        is_last_session is always False: the day is not over yet.
    """
    sessions = sessions_for_day(db, user_id, local_time.date())
    closed = [s for s in sessions if s.time_out is not None]

    total_hours = sum(hours_between(s.time_in, s.time_out) for s in closed)

    return SessionContext(
        is_first_session=len(sessions) == 0,
        is_last_session=False,
        session_number=len(sessions) + 1,
        total_hours_today=round(total_hours, 4),
        first_time_in=sessions[0].time_in if sessions else None,
        last_time_out=max(s.time_out for s in closed) if closed else None,
        event_type=event_type,
        work_date=local_time.date(),
    )
