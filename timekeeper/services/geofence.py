"""
Geofence validation service.
Uses Haversine formula to calculate distance between points.
"""
import math
import uuid
from typing import List, Dict, Any

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import UserWorkLocation, WorkLocation

EARTH_RADIUS_M = 6371000


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def is_within_geofence(lat: float, lng: float, locations: List[Dict[str, Any]]) -> bool:
    """
    Check if a point is inside any of the given circular locations.

    Args:
        lat: Point latitude
        lng: Point longitude
        locations: List of {latitude, longitude, radius} dicts (radius in meters)

    Returns:
        True if the point is inside at least one location, or if no
        locations are assigned (an unassigned user is unrestricted)
    """
    if not locations:
        return True

    for location in locations:
        center_lat = float(location.get("latitude", 0))
        center_lng = float(location.get("longitude", 0))
        radius_m = float(location.get("radius") or settings.geo_radius_m_default)

        if haversine_distance(lat, lng, center_lat, center_lng) <= radius_m:
            return True

    return False


def get_user_work_locations(db: Session, user_id: uuid.UUID) -> List[Dict[str, Any]]:
    """Active work locations assigned to a user, in the shape is_within_geofence expects."""
    rows = (
        db.query(WorkLocation)
        .join(UserWorkLocation, UserWorkLocation.location_id == WorkLocation.id)
        .filter(UserWorkLocation.user_id == user_id, WorkLocation.is_active.is_(True))
        .all()
    )
    return [
        {
            "id": str(row.id),
            "latitude": float(row.latitude),
            "longitude": float(row.longitude),
            "radius": row.radius_m,
        }
        for row in rows
    ]
