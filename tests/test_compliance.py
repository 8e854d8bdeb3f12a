from datetime import date

import pytest

from timekeeper.schemas.policy import Requirements
from timekeeper.services.compliance import (
    OUTSIDE_GEOFENCE_MESSAGE,
    SELFIE_REQUIRED_MESSAGE,
    check_biometric_compliance,
    check_location_compliance,
    run_compliance_gate,
)
from timekeeper.services.session_context import SessionContext

HQ = [{"latitude": 0.0, "longitude": 0.0, "radius": 100}]

STRICT = Requirements.model_validate({
    "geolocation": {"required": True, "geofence": {"required": True}},
    "selfie": {"required": True},
})
RELAXED = Requirements.model_validate({
    "geolocation": {"required": True, "geofence": {"required": False}},
    "selfie": {"required": False},
})


def _context(event_type="time_in", is_first_session=True):
    return SessionContext(
        is_first_session=is_first_session,
        is_last_session=False,
        session_number=1 if is_first_session else 2,
        total_hours_today=0.0,
        first_time_in=None,
        last_time_out=None,
        event_type=event_type,
        work_date=date(2026, 3, 2),
    )


@pytest.mark.parametrize("lat, lng", [(None, 0.0), ("abc", 0.0), (float("nan"), 0.0), (0.0, float("inf"))])
def test_invalid_coordinates_rejected(lat, lng):
    result = check_location_compliance(lat, lng, 10, RELAXED, HQ)
    assert not result.ok
    assert "latitude and longitude" in result.error


def test_accuracy_ceiling_reports_measured_value():
    result = check_location_compliance(0.0, 0.0, 350.4, RELAXED, HQ)
    assert not result.ok
    assert "350m" in result.error
    assert "200m" in result.error

    assert check_location_compliance(0.0, 0.0, 200, RELAXED, HQ).ok


def test_missing_accuracy_rejected():
    result = check_location_compliance(0.0, 0.0, None, RELAXED, HQ)
    assert not result.ok


def test_geofence_checked_only_when_required():
    far = (0.0, 0.01)
    assert check_location_compliance(*far, 10, RELAXED, HQ).ok
    result = check_location_compliance(*far, 10, STRICT, HQ)
    assert not result.ok
    assert result.error == OUTSIDE_GEOFENCE_MESSAGE


def test_selfie_required():
    assert not check_biometric_compliance(False, STRICT, _context()).ok
    assert check_biometric_compliance(True, STRICT, _context()).ok
    assert check_biometric_compliance(False, RELAXED, _context()).ok


def test_selfie_only_on_first_session():
    requirements = Requirements.model_validate({"selfie": {"required": True, "only_on": ["first_session"]}})
    assert not check_biometric_compliance(False, requirements, _context(is_first_session=True)).ok
    assert check_biometric_compliance(False, requirements, _context(is_first_session=False)).ok


def test_selfie_only_on_time_out():
    requirements = Requirements.model_validate({"selfie": {"required": True, "only_on": ["time_out"]}})
    assert check_biometric_compliance(False, requirements, _context("time_in")).ok
    assert not check_biometric_compliance(False, requirements, _context("time_out")).ok


def test_gate_aggregates_every_failure():
    gate = run_compliance_gate(
        latitude=0.0,
        longitude=0.01,
        accuracy=10,
        has_image=False,
        requirements=STRICT,
        locations=HQ,
        context=_context(),
    )
    assert not gate.ok
    assert gate.errors == [OUTSIDE_GEOFENCE_MESSAGE, SELFIE_REQUIRED_MESSAGE]
    assert gate.message == f"Policy Violation: {OUTSIDE_GEOFENCE_MESSAGE} {SELFIE_REQUIRED_MESSAGE}"


def test_gate_passes():
    gate = run_compliance_gate(
        latitude=0.0,
        longitude=0.0,
        accuracy=15,
        has_image=True,
        requirements=STRICT,
        locations=HQ,
        context=_context(),
    )
    assert gate.ok
    assert gate.message is None
