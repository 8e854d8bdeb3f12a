import json
from datetime import time
from enum import Enum
from typing import Any, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    PrivateAttr,
    ValidationError,
    field_validator,
    model_validator,
)

from ..config import settings
from ..services.rules import Node, compile_rule


SUPPORTED_POLICY_VERSIONS = {1}
WEEKDAY_ABBREVIATIONS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
SELFIE_TRIGGERS = {"first_session", "last_session", "time_in", "time_out"}


class PolicyValidationError(ValueError):
    pass


class StatusMode(str, Enum):
    rules = "rules"
    simplified = "simplified"


class ShiftTiming(BaseModel):
    start: time = Field(default=time(9, 0), validation_alias=AliasChoices("start", "start_time"))
    end: time = Field(default=time(18, 0), validation_alias=AliasChoices("end", "end_time"))


class OvertimeRule(BaseModel):
    enabled: bool = False
    threshold_hours: float = Field(
        default_factory=lambda: settings.overtime_threshold_hours_default,
        validation_alias=AliasChoices("threshold_hours", "threshold"),
        gt=0,
    )


class GeofenceRequirement(BaseModel):
    required: bool = False


class GeolocationRequirement(BaseModel):
    required: bool = False
    geofence: GeofenceRequirement = Field(default_factory=GeofenceRequirement)


class SelfieRequirement(BaseModel):
    required: bool = False
    only_on: List[str] = Field(default_factory=list)

    @field_validator("only_on")
    @classmethod
    def _known_triggers(cls, v: List[str]) -> List[str]:
        unknown = [item for item in v if item not in SELFIE_TRIGGERS]
        if unknown:
            raise ValueError(f"unknown selfie trigger(s): {', '.join(unknown)}")
        return v


class Requirements(BaseModel):
    geolocation: GeolocationRequirement = Field(default_factory=GeolocationRequirement)
    selfie: SelfieRequirement = Field(default_factory=SelfieRequirement)

    @model_validator(mode="before")
    @classmethod
    def _accept_flat_shape(cls, data: Any) -> Any:
        # Legacy documents: {"selfie": true, "geofence": true}
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("selfie"), bool):
            data["selfie"] = {"required": data["selfie"]}
        if "geofence" in data and "geolocation" not in data:
            flag = bool(data.pop("geofence"))
            data["geolocation"] = {"required": flag, "geofence": {"required": flag}}
        return data

    @property
    def geofence_enforced(self) -> bool:
        return self.geolocation.required and self.geolocation.geofence.required


class AlternateSaturdays(BaseModel):
    enabled: bool = False
    off: List[int] = Field(default_factory=list)

    @field_validator("off")
    @classmethod
    def _saturday_ordinals(cls, v: List[int]) -> List[int]:
        if any(n < 1 or n > 5 for n in v):
            raise ValueError("Saturday ordinals must be between 1 and 5")
        return v


class ShiftPolicy(BaseModel):
    version: int = 1
    shift_timing: ShiftTiming = Field(default_factory=ShiftTiming)
    grace_period_minutes: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("grace_period_minutes", "grace_period_mins"),
    )
    overtime: OvertimeRule = Field(default_factory=OvertimeRule)
    entry_requirements: Requirements = Field(default_factory=Requirements)
    exit_requirements: Requirements = Field(default_factory=Requirements)
    status_mode: Optional[StatusMode] = None
    status_rules: List[Any] = Field(default_factory=list)
    working_days: Optional[List[str]] = None
    alternate_saturdays: Optional[AlternateSaturdays] = None

    _compiled_rules: List[Node] = PrivateAttr(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_late_rules(cls, data: Any) -> Any:
        # Legacy documents keep the grace period under late_rules
        if isinstance(data, dict) and "late_rules" in data:
            data = dict(data)
            late_rules = data.pop("late_rules") or {}
            if "grace_period_minutes" not in data and "grace_period_mins" not in data:
                grace = late_rules.get("grace_period_mins", late_rules.get("grace_period_minutes"))
                if grace is not None:
                    data["grace_period_minutes"] = grace
        return data

    @field_validator("version")
    @classmethod
    def _supported_version(cls, v: int) -> int:
        if v not in SUPPORTED_POLICY_VERSIONS:
            raise ValueError(f"unsupported policy version {v}")
        return v

    @field_validator("working_days")
    @classmethod
    def _weekday_names(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        unknown = [d for d in v if d not in WEEKDAY_ABBREVIATIONS]
        if unknown:
            raise ValueError(f"unknown weekday(s): {', '.join(unknown)}")
        return v

    def model_post_init(self, __context: Any) -> None:
        self._compiled_rules = [compile_rule(rule) for rule in self.status_rules]

    @property
    def compiled_rules(self) -> List[Node]:
        return list(self._compiled_rules)

    @property
    def effective_status_mode(self) -> StatusMode:
        if self.status_mode is not None:
            return self.status_mode
        return StatusMode.rules if self.status_rules else StatusMode.simplified

    @property
    def overtime_threshold_hours(self) -> float:
        return self.overtime.threshold_hours or settings.overtime_threshold_hours_default


def parse_policy(raw: Any) -> ShiftPolicy:
    """Parse and validate a stored policy document (dict or JSON string)."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise PolicyValidationError(f"Policy document is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise PolicyValidationError("Policy document must be a JSON object")
    try:
        return ShiftPolicy.model_validate(raw)
    except ValidationError as e:
        raise PolicyValidationError(str(e)) from e


_STRICT_GRACE_MINUTES = 10

STRICT_SHIFT_POLICY = ShiftPolicy.model_validate({
    "version": 1,
    "shift_timing": {"start": "09:00", "end": "18:00"},
    "grace_period_minutes": _STRICT_GRACE_MINUTES,
    "overtime": {"enabled": False, "threshold_hours": 8},
    "entry_requirements": {
        "geolocation": {"required": True, "geofence": {"required": True}},
        "selfie": {"required": True, "only_on": []},
    },
    "exit_requirements": {
        "geolocation": {"required": True, "geofence": {"required": True}},
        "selfie": {"required": True, "only_on": []},
    },
    "status_rules": [
        {"if": [{"<": [{"var": "total_hours"}, 4]}, "ABSENT"]},
        {"if": [{">": [{"var": "minutes_late"}, 120]}, "HALF_DAY"]},
        {"if": [{">": [{"var": "minutes_late"}, _STRICT_GRACE_MINUTES]}, "LATE"]},
    ],
})
