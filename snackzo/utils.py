# snackzo/utils.py
"""
Utility functions for the Snackzo delivery backend.

Provides geographic calculations, timestamp handling and small formatting
helpers shared by tracking, estimates and notifications.
Includes OSRM integration for real road distance calculations.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timezone
from typing import Optional, Tuple, Union
from zoneinfo import ZoneInfo

import requests

from . import config

logger = logging.getLogger(__name__)

# Module-level cache for OSRM results
_osrm_cache: dict[Tuple[float, float, float, float], Tuple[float, float]] = {}


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1: Latitude of point 1 in decimal degrees
        lon1: Longitude of point 1 in decimal degrees
        lat2: Latitude of point 2 in decimal degrees
        lon2: Longitude of point 2 in decimal degrees

    Returns:
        Distance in kilometers between the two points
    """
    lon1, lat1, lon2, lat2 = map(math.radians, [lon1, lat1, lon2, lat2])

    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = math.sin(dlat / 2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2)**2
    c = 2 * math.asin(math.sqrt(a))

    # Radius of Earth in kilometers
    r = 6371
    return c * r


def _get_cache_key(lat1: float, lon1: float, lat2: float, lon2: float) -> Tuple[float, float, float, float]:
    """Create a cache key with rounded coordinates (5 decimal places ~ 1m precision)."""
    return (round(lat1, 5), round(lon1, 5), round(lat2, 5), round(lon2, 5))


def osrm_route(
    lat1: float, lon1: float,
    lat2: float, lon2: float
) -> Optional[Tuple[float, float]]:
    """
    Get road distance and duration from the OSRM routing service.

    Returns:
        Tuple of (distance_km, duration_minutes) if successful, None if failed

    Note:
        OSRM expects coordinates in lon,lat order (not lat,lon).
    """
    cache_key = _get_cache_key(lat1, lon1, lat2, lon2)
    if cache_key in _osrm_cache:
        return _osrm_cache[cache_key]

    try:
        url = (
            f"{config.OSRM_SERVER_URL}/route/v1/driving/"
            f"{lon1},{lat1};{lon2},{lat2}"
            f"?overview=false"
        )
        response = requests.get(url, timeout=config.OSRM_TIMEOUT_SECONDS)
        response.raise_for_status()
        data = response.json()

        if data.get("code") != "Ok" or not data.get("routes"):
            logger.warning(f"OSRM returned no route: {data.get('code')}")
            return None

        route = data["routes"][0]
        result = (route["distance"] / 1000, route["duration"] / 60)

        if len(_osrm_cache) >= config.OSRM_CACHE_SIZE:
            # Drop the oldest 10%
            for key in list(_osrm_cache.keys())[:config.OSRM_CACHE_SIZE // 10]:
                del _osrm_cache[key]

        _osrm_cache[cache_key] = result
        return result

    except requests.exceptions.Timeout:
        logger.warning("OSRM request timed out")
        return None
    except requests.exceptions.RequestException as e:
        logger.warning(f"OSRM request failed: {e}")
        return None
    except (KeyError, ValueError, TypeError) as e:
        logger.warning(f"OSRM response parsing failed: {e}")
        return None


def get_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Distance in km between two points using the configured method.

    Uses OSRM road distance when enabled, falling back to Haversine
    distance (with a multiplier) when OSRM fails.
    """
    if config.USE_ROAD_DISTANCE:
        result = osrm_route(lat1, lon1, lat2, lon2)
        if result is not None:
            return result[0]
        logger.debug("Falling back to Haversine distance with multiplier")
        return haversine_distance(lat1, lon1, lat2, lon2) * config.HAVERSINE_FALLBACK_MULTIPLIER

    return haversine_distance(lat1, lon1, lat2, lon2)


def get_travel_time(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Travel time in minutes between two points using the configured method."""
    if config.USE_ROAD_DISTANCE:
        result = osrm_route(lat1, lon1, lat2, lon2)
        if result is not None:
            return result[1]
        distance = haversine_distance(lat1, lon1, lat2, lon2) * config.HAVERSINE_FALLBACK_MULTIPLIER
        return calculate_travel_time_minutes(distance)

    return calculate_travel_time_minutes(haversine_distance(lat1, lon1, lat2, lon2))


def clear_osrm_cache() -> int:
    """
    Clear the OSRM route cache.

    Returns:
        Number of cached entries that were cleared
    """
    count = len(_osrm_cache)
    _osrm_cache.clear()
    return count


def calculate_travel_time_minutes(distance_km: float) -> float:
    """
    Estimated travel time for a distance at the configured average speed.

    Example:
        >>> calculate_travel_time_minutes(5.0)  # 5km at 20km/h
        15.0
    """
    if config.AVG_SPEED_KMH <= 0:
        return float('inf')
    return (distance_km / config.AVG_SPEED_KMH) * 60


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives (2.5 -> 3)."""
    return int(math.floor(value + 0.5))


def is_valid_coordinate(lat: float, lng: float) -> bool:
    """True when lat/lng are finite numbers inside the WGS84 ranges."""
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def local_time(dt: Optional[datetime] = None) -> datetime:
    """`dt` (default: now) in the campus timezone. Naive values are taken as UTC."""
    dt = dt or utcnow()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(ZoneInfo(config.TIMEZONE))


_FRACTION_RE = re.compile(r"(:\d{2})\.(\d+)")
"""Fractional seconds; the backend trims trailing zeros."""


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """
    Parse an ISO-8601 timestamp as stored by the backend.

    Accepts a trailing 'Z' and naive values (treated as UTC). Datetimes are
    passed through, made timezone-aware if needed.

    Raises:
        ValueError: If the string is not a timestamp
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _FRACTION_RE.sub(lambda m: m.group(1) + "." + m.group(2).ljust(6, "0")[:6], text)
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_iso(dt: datetime) -> str:
    """Serialize a datetime the way the backend stores it."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def format_time_duration(minutes: float) -> str:
    """
    Format a duration in minutes as a human-readable string.

    Returns:
        Formatted string like "1h 23m" or "45m"
    """
    if minutes < 60:
        return f"{minutes:.0f}m"
    hours = int(minutes // 60)
    mins = int(minutes % 60)
    return f"{hours}h {mins}m"


def short_order_id(order_id: str, length: int = 8) -> str:
    """Display form of an order id: '3f2a9c1e-...' -> '3F2A9C1E'."""
    return str(order_id)[:length].upper()


def format_phone(phone: str, country_code: Optional[str] = None) -> str:
    """
    Normalize a phone number for the SMS/WhatsApp providers.

    Whitespace is removed and the default country code is prefixed unless
    the number already starts with '+'.
    """
    country_code = config.DEFAULT_COUNTRY_CODE if country_code is None else country_code
    cleaned = "".join(str(phone).split())
    if not cleaned.startswith("+"):
        cleaned = country_code + cleaned
    return cleaned
