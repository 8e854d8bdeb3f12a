"""
Notification service for in-app attendance notifications.
"""
import uuid
from typing import Optional, Union

import structlog
from sqlalchemy.orm import Session

from ..models.models import Notification

logger = structlog.get_logger(__name__)


def create_notification(
    db: Session,
    org_id: Union[str, uuid.UUID, None],
    user_id: Union[str, uuid.UUID, None],
    title: Optional[str],
    message: Optional[str] = None,
    type: str = "INFO",
    related_entity_type: Optional[str] = None,
    related_entity_id: Union[str, uuid.UUID, None] = None,
) -> Optional[Notification]:
    """
    Create a notification record.

    Returns:
        Notification object if created, None if required fields are missing
    """
    if not org_id or not user_id or not title:
        logger.warning("notification_missing_fields", org_id=str(org_id), user_id=str(user_id), title=title)
        return None

    notification = Notification(
        org_id=uuid.UUID(str(org_id)),
        user_id=uuid.UUID(str(user_id)),
        type=type,
        title=title,
        message=message,
        related_entity_type=related_entity_type,
        related_entity_id=str(related_entity_id) if related_entity_id else None,
    )

    db.add(notification)
    db.commit()
    db.refresh(notification)

    # TODO: push to connected clients once the realtime channel exists
    return notification
