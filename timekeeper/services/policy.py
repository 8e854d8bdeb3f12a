"""
Policy resolution and evaluation service.
Loads a shift's policy document, computes late arrival, and derives the
day-level attendance status.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import structlog
from sqlalchemy.orm import Session

from ..models.models import Shift
from ..schemas.policy import (
    STRICT_SHIFT_POLICY,
    PolicyValidationError,
    ShiftPolicy,
    StatusMode,
    parse_policy,
)
from .rules import first_matching_status
from .time_rules import late_minutes

logger = structlog.get_logger(__name__)

DEFAULT_STATUS = "PRESENT"


@dataclass(frozen=True)
class LateArrival:
    minutes_late: int
    is_late: bool
    grace_period: int


def resolve_policy(db: Session, shift_id: Optional[uuid.UUID]) -> ShiftPolicy:
    """
    Get the policy of a shift.

    Falls back to STRICT_SHIFT_POLICY when the shift does not exist, has no
    policy document, or the document fails validation. The fallback is an
    in-memory value only and is never written back to the shift.
    """
    if shift_id is None:
        return STRICT_SHIFT_POLICY

    shift = db.query(Shift).filter(Shift.id == shift_id).first()
    if shift is None or not shift.policy_rules:
        return STRICT_SHIFT_POLICY

    try:
        return parse_policy(shift.policy_rules)
    except PolicyValidationError as e:
        logger.warning("shift_policy_invalid", shift_id=str(shift_id), error=str(e))
        return STRICT_SHIFT_POLICY


def is_default_policy(policy: ShiftPolicy) -> bool:
    return policy is STRICT_SHIFT_POLICY


def calculate_late_arrival(local_time: datetime, policy: ShiftPolicy) -> LateArrival:
    """
    Minutes past shift start and whether that exceeds the grace period.

    Example: start 09:00, grace 10 -> 09:09 is 9 minutes (not late),
    09:11 is 11 minutes (late), 08:59 is 0 minutes.
    """
    minutes = late_minutes(local_time, policy.shift_timing.start)
    grace = policy.grace_period_minutes
    return LateArrival(minutes_late=minutes, is_late=minutes > grace, grace_period=grace)


def evaluate_status(policy: ShiftPolicy, data: Mapping[str, Any]) -> str:
    """Run status rules in order; the first truthy label wins, else PRESENT."""
    return first_matching_status(policy.compiled_rules, data, default=DEFAULT_STATUS)


def simplified_status(first_session_late: bool) -> str:
    return "LATE" if first_session_late else DEFAULT_STATUS


def determine_day_status(policy: ShiftPolicy, data: Dict[str, Any], first_session_late: bool) -> str:
    """Pick the rule-based or simplified status path as the policy declares."""
    if policy.effective_status_mode is StatusMode.rules:
        return evaluate_status(policy, data)
    return simplified_status(first_session_late)
