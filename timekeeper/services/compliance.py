"""
Compliance gate for time_in/time_out events.
Location (accuracy + geofence) and biometric (selfie) checks. Both must
pass; failures are aggregated into a single policy violation message.
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config import settings
from ..schemas.policy import Requirements
from .geofence import is_within_geofence
from .session_context import SessionContext

SELFIE_REQUIRED_MESSAGE = "Selfie is mandatory for attendance."
OUTSIDE_GEOFENCE_MESSAGE = "You are outside the allowed work location."
INVALID_COORDINATES_MESSAGE = "Valid latitude and longitude are required."
MISSING_ACCURACY_MESSAGE = "Location accuracy is unavailable. Please enable precise location."


@dataclass(frozen=True)
class ComplianceResult:
    ok: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class GateResult:
    ok: bool
    errors: List[str] = field(default_factory=list)

    @property
    def message(self) -> Optional[str]:
        if self.ok:
            return None
        return "Policy Violation: " + " ".join(self.errors)


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or value is None:
        return False
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def check_location_compliance(
    latitude: Any,
    longitude: Any,
    accuracy: Any,
    requirements: Requirements,
    locations: List[Dict[str, Any]],
) -> ComplianceResult:
    """
    Validate coordinates, GPS accuracy, and (when the policy enforces it)
    geofence membership.

    Args:
        latitude: Captured latitude
        longitude: Captured longitude
        accuracy: Reported GPS accuracy in meters
        requirements: entry_requirements or exit_requirements of the policy
        locations: Work locations assigned to the user
    """
    if not (_is_finite_number(latitude) and _is_finite_number(longitude)):
        return ComplianceResult(ok=False, error=INVALID_COORDINATES_MESSAGE)

    if not _is_finite_number(accuracy):
        return ComplianceResult(ok=False, error=MISSING_ACCURACY_MESSAGE)

    accuracy_m = float(accuracy)
    if accuracy_m > settings.gps_accuracy_max_m:
        return ComplianceResult(
            ok=False,
            error=(
                f"Location accuracy too low ({round(accuracy_m)}m). "
                f"Must be within {round(settings.gps_accuracy_max_m)}m."
            ),
        )

    if requirements.geofence_enforced:
        if not is_within_geofence(float(latitude), float(longitude), locations):
            return ComplianceResult(ok=False, error=OUTSIDE_GEOFENCE_MESSAGE)

    return ComplianceResult(ok=True)


def selfie_applies(requirements: Requirements, context: SessionContext) -> bool:
    """Whether a required selfie applies to this event (see selfie.only_on)."""
    if not requirements.selfie.required:
        return False
    triggers = requirements.selfie.only_on
    if not triggers:
        return True
    flags = {
        "first_session": context.is_first_session,
        "last_session": context.is_last_session,
        "time_in": context.event_type == "time_in",
        "time_out": context.event_type == "time_out",
    }
    return any(flags[trigger] for trigger in triggers)


def check_biometric_compliance(
    has_image: bool,
    requirements: Requirements,
    context: SessionContext,
) -> ComplianceResult:
    if not selfie_applies(requirements, context):
        return ComplianceResult(ok=True)
    if not has_image:
        return ComplianceResult(ok=False, error=SELFIE_REQUIRED_MESSAGE)
    return ComplianceResult(ok=True)


def run_compliance_gate(
    *,
    latitude: Any,
    longitude: Any,
    accuracy: Any,
    has_image: bool,
    requirements: Requirements,
    locations: List[Dict[str, Any]],
    context: SessionContext,
) -> GateResult:
    """All-or-nothing: every failing reason is reported together."""
    checks = [
        check_location_compliance(latitude, longitude, accuracy, requirements, locations),
        check_biometric_compliance(has_image, requirements, context),
    ]
    errors = [check.error for check in checks if not check.ok]
    return GateResult(ok=not errors, errors=errors)
