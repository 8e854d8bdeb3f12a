import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Time,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


# Collaborator tables. Owned by the admin/HR services, read-only for the engine.

class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(64))  # IANA name, e.g. "Asia/Kolkata"
    working_days: Mapped[Optional[list]] = mapped_column(JSON)  # ["Mon", ..., "Sat"]
    alternate_saturdays: Mapped[Optional[dict]] = mapped_column(JSON)  # {enabled: bool, off: [2, 4]}
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class Shift(Base):
    """Shift with its attendance policy document"""
    __tablename__ = "shifts"

    id: Mapped[uuid.UUID] = uuid_pk()
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    policy_rules: Mapped[Optional[dict]] = mapped_column(JSON)  # ShiftPolicy document, see schemas.policy
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    shift_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("shifts.id", ondelete="SET NULL"), index=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    user_type: Mapped[str] = mapped_column(String(20), default="employee")  # admin|HR|employee
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    organization = relationship("Organization")
    shift = relationship("Shift")


class WorkLocation(Base):
    """Circular geofence a check-in/out may be required to fall within"""
    __tablename__ = "work_locations"

    id: Mapped[uuid.UUID] = uuid_pk()
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text)
    latitude: Mapped[float] = mapped_column(Numeric(10, 7), nullable=False)
    longitude: Mapped[float] = mapped_column(Numeric(10, 7), nullable=False)
    radius_m: Mapped[Optional[float]] = mapped_column(Float)  # defaults to settings.geo_radius_m_default
    timezone: Mapped[Optional[str]] = mapped_column(String(64))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class UserWorkLocation(Base):
    __tablename__ = "user_work_locations"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    location_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("work_locations.id", ondelete="CASCADE"), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("user_id", "location_id", name="uq_user_work_location"),
    )


class Holiday(Base):
    __tablename__ = "holidays"

    id: Mapped[uuid.UUID] = uuid_pk()
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    holiday_date: Mapped[Date] = mapped_column(Date, nullable=False)
    holiday_name: Mapped[str] = mapped_column(String(255), nullable=False)
    holiday_type: Mapped[Optional[str]] = mapped_column(String(50), default="Public")

    __table_args__ = (
        Index("idx_holidays_org_date", "org_id", "holiday_date"),
    )


class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    leave_type: Mapped[str] = mapped_column(String(50), nullable=False)  # Sick|Casual|Earned...
    pay_type: Mapped[Optional[str]] = mapped_column(String(20), default="Paid")  # Paid|Unpaid
    start_date: Mapped[Date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|approved|rejected
    reason: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_leave_user_range", "user_id", "start_date", "end_date"),
    )


# Engine-owned tables

class AttendanceSession(Base):
    """One check-in/check-out pair. OPEN until timed out, then CLOSED for good."""
    __tablename__ = "attendance_sessions"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    work_date: Mapped[Date] = mapped_column(Date, nullable=False)  # Local calendar date of time_in
    timezone: Mapped[Optional[str]] = mapped_column(String(64))
    time_in: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)  # Local wall clock
    time_out: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False))  # Local wall clock
    time_in_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    time_in_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    time_in_address: Mapped[Optional[str]] = mapped_column(Text)
    time_in_image_key: Mapped[Optional[str]] = mapped_column(String(512))
    time_out_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    time_out_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    time_out_address: Mapped[Optional[str]] = mapped_column(Text)
    time_out_image_key: Mapped[Optional[str]] = mapped_column(String(512))
    late_minutes: Mapped[int] = mapped_column(Integer, default=0)
    late_reason: Mapped[Optional[str]] = mapped_column(Text)
    state: Mapped[str] = mapped_column(String(10), nullable=False, default="OPEN")  # OPEN|CLOSED
    # TRUE while OPEN, NULL once CLOSED: NULLs never collide, so the unique constraint allows one open row only
    open_marker: Mapped[Optional[bool]] = mapped_column(Boolean, default=True)
    day_status: Mapped[Optional[str]] = mapped_column(String(30))  # PRESENT|LATE|... written at close
    session_hours: Mapped[Optional[float]] = mapped_column(Float)
    overtime_hours: Mapped[float] = mapped_column(Float, default=0)
    auto_closed: Mapped[bool] = mapped_column(Boolean, default=False)
    meta_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON)  # Capture accuracy, device/IP, session context snapshots
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "work_date", "open_marker", name="uq_attendance_sessions_one_open"),
        Index("idx_attendance_sessions_user_date", "user_id", "work_date"),
    )


class DailyAttendance(Base):
    """Per user, per day summary used for reporting"""
    __tablename__ = "daily_attendance"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    shift_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("shifts.id", ondelete="SET NULL"))
    date: Mapped[Date] = mapped_column(Date, nullable=False)
    first_in: Mapped[Optional[Time]] = mapped_column(Time(timezone=False))
    last_out: Mapped[Optional[Time]] = mapped_column(Time(timezone=False))
    total_hours: Mapped[float] = mapped_column(Float, default=0)
    overtime_hours: Mapped[float] = mapped_column(Float, default=0)
    late_minutes: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(30), nullable=False)  # PRESENT|LATE|HALF_DAY|ABSENT|HOLIDAY|WEEKEND|LEAVE|NOT_PUNCHED_OUT|LATE_NOT_PUNCHED_OUT
    remarks: Mapped[Optional[str]] = mapped_column(Text)
    auto_closed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_daily_attendance_user_date"),
    )


# Side-effect sinks

class ActivityLog(Base):
    """Append-only activity log for attendance actions"""
    __tablename__ = "activity_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    org_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # attendance|daily_attendance
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CHECK_IN|CHECK_OUT|AUTO_CLOSE|DAY_CLASSIFIED
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    source: Mapped[Optional[str]] = mapped_column(String(50))  # WEB|MOBILE|SIMULATION|SYSTEM
    description: Mapped[Optional[str]] = mapped_column(Text)
    context: Mapped[Optional[dict]] = mapped_column(JSON)  # {location, request_ip, user_agent, ...}
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index("idx_activity_entity", "entity_type", "entity_id"),
    )


class ErrorLog(Base):
    __tablename__ = "error_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    level: Mapped[str] = mapped_column(String(20), default="ERROR")
    service_name: Mapped[str] = mapped_column(String(50), default="attendance")
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    org_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    error_message: Mapped[str] = mapped_column(String(500), nullable=False)
    extra_context: Mapped[Optional[dict]] = mapped_column(JSON)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class Notification(Base):
    """In-app notification records"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), default="INFO")  # INFO|SUCCESS|WARNING
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text)
    related_entity_type: Mapped[Optional[str]] = mapped_column(String(50))
    related_entity_id: Mapped[Optional[str]] = mapped_column(String(64))
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "is_read"),
    )
