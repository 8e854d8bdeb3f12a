import os
import tempfile
from datetime import date, datetime
from types import SimpleNamespace

# Keep the app-level engine and scheduler away from real resources
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "")
os.environ.setdefault("LOCAL_STORAGE_DIR", tempfile.mkdtemp(prefix="timekeeper-files-"))

import pytest
from sqlalchemy.orm import sessionmaker

from timekeeper.db import Base, build_engine
from timekeeper.models.models import Organization, Shift, User, UserWorkLocation, WorkLocation
from timekeeper.services.attendance import AttendanceEvent
from timekeeper.services.outbox import Outbox
from timekeeper.storage.local_provider import LocalStorageProvider

# Monday
WORK_DAY = date(2026, 3, 2)

OFFICE_POLICY = {
    "version": 1,
    "shift_timing": {"start": "09:00", "end": "18:00"},
    "grace_period_minutes": 10,
    "overtime": {"enabled": True, "threshold_hours": 9},
    "entry_requirements": {
        "geolocation": {"required": True, "geofence": {"required": True}},
        "selfie": {"required": True},
    },
    "exit_requirements": {
        "geolocation": {"required": True, "geofence": {"required": True}},
        "selfie": {"required": True},
    },
    "status_mode": "simplified",
}

SELFIE = b"\xff\xd8\xff\xe0fake-jpeg-bytes"


@pytest.fixture()
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'timekeeper_test.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def outbox(session_factory):
    box = Outbox(session_factory=session_factory, max_size=100)
    yield box
    box.flush()
    box.stop()


@pytest.fixture()
def storage(tmp_path):
    return LocalStorageProvider(str(tmp_path / "storage"))


def seed_user(db, policy=OFFICE_POLICY, *, username="asha", org_timezone="Asia/Kolkata", with_location=True):
    org = Organization(name="Acme", timezone=org_timezone)
    db.add(org)
    db.flush()
    shift = Shift(org_id=org.id, name="General", policy_rules=policy)
    db.add(shift)
    db.flush()
    user = User(org_id=org.id, shift_id=shift.id, username=username)
    db.add(user)
    db.flush()
    location = None
    if with_location:
        location = WorkLocation(org_id=org.id, name="HQ", latitude=0, longitude=0, radius_m=100)
        db.add(location)
        db.flush()
        db.add(UserWorkLocation(user_id=user.id, location_id=location.id))
    db.commit()
    return SimpleNamespace(org=org, shift=shift, user=user, location=location)


@pytest.fixture()
def seeded(db):
    return seed_user(db)


def make_event(seeded, hour, minute, *, day=WORK_DAY, image=SELFIE, late_reason=None,
               latitude=0.0, longitude=0.0, accuracy=10, timezone="Asia/Kolkata"):
    return AttendanceEvent(
        user_id=seeded.user.id,
        org_id=seeded.org.id,
        latitude=latitude,
        longitude=longitude,
        accuracy=accuracy,
        local_time=datetime.combine(day, datetime.min.time()).replace(hour=hour, minute=minute),
        timezone=timezone,
        address="HQ, Main Street",
        late_reason=late_reason,
        image=image,
        ip_address="10.0.0.7",
        user_agent="pytest",
        event_source="WEB",
    )
