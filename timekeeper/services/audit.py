"""
Audit logging service.
Append-only activity log with integrity hashing, plus the error log sink.
"""
import hashlib
import json
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, Union

from sqlalchemy.orm import Session

from ..models.models import ActivityLog, ErrorLog
from ..config import settings

ERROR_MESSAGE_MAX_LEN = 500


def _as_uuid(value: Union[str, uuid.UUID, None]) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def compute_integrity_hash(canonical_data: Dict[str, Any], secret: str) -> str:
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def create_activity_log(
    db: Session,
    entity_type: str,
    entity_id: Union[str, uuid.UUID, None],
    action: str,
    actor_id: Union[str, uuid.UUID, None] = None,
    org_id: Union[str, uuid.UUID, None] = None,
    source: Optional[str] = None,
    description: Optional[str] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
) -> ActivityLog:
    """
    Create an append-only activity log entry.

    Args:
        db: Database session
        entity_type: Type of entity (attendance|daily_attendance)
        entity_id: Entity ID
        action: Action performed (CHECK_IN|CHECK_OUT|AUTO_CLOSE|DAY_CLASSIFIED)
        actor_id: User ID who performed the action (None for the system)
        org_id: Organization ID
        source: Source of the action (WEB|MOBILE|SIMULATION|SYSTEM)
        description: Human readable summary
        context: Additional context (location, request_ip, user_agent, ...)
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)

    Returns:
        Created ActivityLog object
    """
    timestamp_utc = datetime.utcnow().replace(tzinfo=None)

    if integrity_secret is None:
        integrity_secret = settings.jwt_secret

    integrity_hash = None
    if integrity_secret:
        integrity_hash = compute_integrity_hash(
            {
                "entity_type": entity_type,
                "entity_id": str(entity_id) if entity_id else None,
                "action": action,
                "actor_id": str(actor_id) if actor_id else None,
                "source": source,
                "timestamp_utc": timestamp_utc.isoformat(),
                "description": description,
                "context": context,
            },
            integrity_secret,
        )

    activity = ActivityLog(
        org_id=_as_uuid(org_id),
        entity_type=entity_type,
        entity_id=_as_uuid(entity_id),
        action=action,
        actor_id=_as_uuid(actor_id),
        source=source or "SYSTEM",
        description=description,
        context=context,
        timestamp_utc=timestamp_utc,
        integrity_hash=integrity_hash,
    )

    db.add(activity)
    db.commit()
    db.refresh(activity)

    return activity


def create_error_log(
    db: Session,
    error_message: str,
    user_id: Union[str, uuid.UUID, None] = None,
    org_id: Union[str, uuid.UUID, None] = None,
    level: str = "ERROR",
    service_name: str = "attendance",
    extra_context: Optional[Dict] = None,
) -> ErrorLog:
    error_log = ErrorLog(
        level=level,
        service_name=service_name,
        user_id=_as_uuid(user_id),
        org_id=_as_uuid(org_id),
        error_message=(error_message or "Unknown Error")[:ERROR_MESSAGE_MAX_LEN],
        extra_context=extra_context,
    )
    db.add(error_log)
    db.commit()
    return error_log
