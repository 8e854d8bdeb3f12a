from datetime import datetime, time

import pytest

from timekeeper.schemas.policy import (
    STRICT_SHIFT_POLICY,
    PolicyValidationError,
    StatusMode,
    parse_policy,
)
from timekeeper.services.policy import (
    calculate_late_arrival,
    determine_day_status,
    is_default_policy,
    resolve_policy,
)

from conftest import OFFICE_POLICY, WORK_DAY, seed_user


def _at(hour, minute):
    return datetime.combine(WORK_DAY, time(hour, minute))


@pytest.mark.parametrize(
    "hour, minute, minutes_late, is_late",
    [
        (9, 9, 9, False),
        (9, 10, 10, False),
        (9, 11, 11, True),
        (8, 59, 0, False),
        (11, 30, 150, True),
    ],
)
def test_late_arrival_arithmetic(hour, minute, minutes_late, is_late):
    late = calculate_late_arrival(_at(hour, minute), parse_policy(OFFICE_POLICY))
    assert late.minutes_late == minutes_late
    assert late.is_late is is_late
    assert late.grace_period == 10


def test_strict_default_policy():
    policy = STRICT_SHIFT_POLICY
    assert policy.shift_timing.start == time(9, 0)
    assert policy.shift_timing.end == time(18, 0)
    assert policy.grace_period_minutes == 10
    assert policy.overtime_threshold_hours == 8
    assert policy.entry_requirements.geofence_enforced
    assert policy.exit_requirements.selfie.required
    assert policy.effective_status_mode is StatusMode.rules


def test_strict_rules_order():
    policy = STRICT_SHIFT_POLICY
    assert determine_day_status(policy, {"total_hours": 3, "minutes_late": 200}, True) == "ABSENT"
    assert determine_day_status(policy, {"total_hours": 8, "minutes_late": 150}, True) == "HALF_DAY"
    assert determine_day_status(policy, {"total_hours": 8, "minutes_late": 11}, True) == "LATE"
    assert determine_day_status(policy, {"total_hours": 8, "minutes_late": 5}, False) == "PRESENT"


def test_simplified_mode_ignores_rules():
    policy = parse_policy({**OFFICE_POLICY, "status_rules": [{"if": [True, "ABSENT"]}], "status_mode": "simplified"})
    assert determine_day_status(policy, {"total_hours": 1}, first_session_late=True) == "LATE"
    assert determine_day_status(policy, {"total_hours": 1}, first_session_late=False) == "PRESENT"


def test_status_mode_defaults_from_rules_presence():
    without_rules = parse_policy({"shift_timing": {"start": "10:00", "end": "19:00"}})
    assert without_rules.effective_status_mode is StatusMode.simplified
    with_rules = parse_policy({"status_rules": [{"if": [True, "PRESENT"]}]})
    assert with_rules.effective_status_mode is StatusMode.rules


def test_legacy_shapes_are_accepted():
    policy = parse_policy({
        "shift_timing": {"start_time": "10:00:00", "end_time": "19:00:00"},
        "late_rules": {"grace_period_mins": 15},
        "overtime": {"threshold": 9},
        "entry_requirements": {"selfie": True, "geofence": True},
        "exit_requirements": {"selfie": False, "geofence": False},
    })
    assert policy.shift_timing.start == time(10, 0)
    assert policy.grace_period_minutes == 15
    assert policy.overtime_threshold_hours == 9
    assert policy.entry_requirements.selfie.required
    assert policy.entry_requirements.geofence_enforced
    assert not policy.exit_requirements.geofence_enforced


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        [1, 2],
        {"version": 2},
        {"grace_period_minutes": -5},
        {"working_days": ["Monday"]},
        {"entry_requirements": {"selfie": {"required": True, "only_on": ["weekends"]}}},
        {"alternate_saturdays": {"enabled": True, "off": [6]}},
    ],
)
def test_invalid_documents_raise(raw):
    with pytest.raises(PolicyValidationError):
        parse_policy(raw)


def test_parse_policy_accepts_json_string():
    policy = parse_policy('{"grace_period_minutes": 5}')
    assert policy.grace_period_minutes == 5


def test_resolve_policy_falls_back_to_default(db):
    seeded = seed_user(db, policy=None)
    assert is_default_policy(resolve_policy(db, seeded.shift.id))
    assert is_default_policy(resolve_policy(db, None))

    seeded.shift.policy_rules = {"version": 99}
    db.commit()
    assert is_default_policy(resolve_policy(db, seeded.shift.id))
    # The fallback is never written back
    db.refresh(seeded.shift)
    assert seeded.shift.policy_rules == {"version": 99}


def test_resolve_policy_reads_shift_document(db):
    seeded = seed_user(db)
    policy = resolve_policy(db, seeded.shift.id)
    assert not is_default_policy(policy)
    assert policy.overtime_threshold_hours == 9
