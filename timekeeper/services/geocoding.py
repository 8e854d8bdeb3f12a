"""
Google Maps client for reverse geocoding and timezone lookup.
Address strings are for display only; failures degrade to fallbacks.
"""
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Optional

import httpx
import structlog

from ..config import settings
from .time_rules import is_valid_timezone, local_wall_clock

logger = structlog.get_logger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
TIMEZONE_URL = "https://maps.googleapis.com/maps/api/timezone/json"
UNKNOWN_LOCATION = "Unknown Location"


@dataclass(frozen=True)
class LocalContext:
    local_time: datetime  # naive local wall clock
    timezone: str
    address: str


def _get(url: str, params: Dict[str, Any]) -> Dict[str, Any]:
    params = {**params, "key": settings.google_maps_api_key}
    with httpx.Client(timeout=settings.google_maps_timeout_s) as client:
        response = client.get(url, params=params)
        response.raise_for_status()
        return response.json()


def reverse_geocode(latitude: float, longitude: float) -> str:
    if not settings.google_maps_api_key:
        return UNKNOWN_LOCATION
    try:
        data = _get(GEOCODE_URL, {"latlng": f"{latitude},{longitude}"})
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("reverse_geocode_failed", error=str(e))
        return UNKNOWN_LOCATION

    results = data.get("results") or []
    if data.get("status") != "OK" or not results:
        logger.info("reverse_geocode_no_result", status=data.get("status"))
        return UNKNOWN_LOCATION
    return results[0].get("formatted_address") or UNKNOWN_LOCATION


def lookup_timezone(latitude: float, longitude: float, at_utc: datetime) -> Optional[str]:
    """IANA timezone name at a coordinate, or None."""
    if not settings.google_maps_api_key:
        return None
    try:
        data = _get(TIMEZONE_URL, {
            "location": f"{latitude},{longitude}",
            "timestamp": int(at_utc.timestamp()),
        })
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("timezone_lookup_failed", error=str(e))
        return None

    tz_name = data.get("timeZoneId")
    if data.get("status") != "OK" or not is_valid_timezone(tz_name):
        logger.info("timezone_lookup_no_result", status=data.get("status"), tz_name=tz_name)
        return None
    return tz_name


def resolve_local_context(
    latitude: Optional[float],
    longitude: Optional[float],
    now_utc: Optional[datetime] = None,
    fallback_tz: Optional[str] = None,
) -> LocalContext:
    """
    Local wall-clock time, timezone and address for a capture.

    Without usable coordinates, or when Google is unreachable, the address is
    "Unknown Location" and the time is taken in fallback_tz (UTC if unset).
    """
    now_utc = now_utc or datetime.now(dt_timezone.utc)
    tz_name = fallback_tz if is_valid_timezone(fallback_tz) else "UTC"
    address = UNKNOWN_LOCATION

    if latitude is not None and longitude is not None:
        tz_name = lookup_timezone(latitude, longitude, now_utc) or tz_name
        address = reverse_geocode(latitude, longitude)

    return LocalContext(
        local_time=local_wall_clock(now_utc, tz_name),
        timezone=tz_name,
        address=address,
    )
