# mergeeats-dispatch/mergedispatch/utils.py
"""
Utility functions for the MergeEats consolidation engine.

Provides geographic calculations, time helpers and a small retry helper for
callers of operations that can fail with a retryable error.
"""

from __future__ import annotations

import logging
import math
import time as _time
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence, Tuple, TypeVar

from . import config
from .errors import DispatchError
from .models import GeoPoint

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM: float = 6371.0

T = TypeVar("T")


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Used as the reference distance when checking the accuracy of the
    flat-earth approximation.

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
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(a))
    return c * EARTH_RADIUS_KM


def equirectangular_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Flat-earth (equirectangular) distance between two points.

    Projects longitude differences with the cosine of the mean latitude.
    Within ±0.5% of the great-circle distance up to 10 km at city latitudes,
    and much cheaper than Haversine.

    Example:
        >>> equirectangular_distance(25.2854, 51.5310, 25.2900, 51.5350)
        0.651  # ~651 meters
    """
    mean_lat = math.radians((lat1 + lat2) / 2.0)
    x = math.radians(lon2 - lon1) * math.cos(mean_lat)
    y = math.radians(lat2 - lat1)
    return math.hypot(x, y) * EARTH_RADIUS_KM


def distance_km(a: GeoPoint, b: GeoPoint) -> float:
    """Distance between two points as used everywhere in the engine."""
    return equirectangular_distance(a.lat, a.lng, b.lat, b.lng)


def centroid(points: Sequence[GeoPoint]) -> GeoPoint:
    """
    Arithmetic mean of a set of points.

    Good enough at city scale; not meant for points spanning the antimeridian.

    Raises:
        ValueError: If ``points`` is empty
    """
    if not points:
        raise ValueError("centroid of an empty point set")
    lat = sum(p.lat for p in points) / len(points)
    lng = sum(p.lng for p in points) / len(points)
    return GeoPoint(lat, lng)


def nearest_point(target: GeoPoint, points: Iterable[GeoPoint]) -> Optional[GeoPoint]:
    """Return the point closest to ``target``, or None for an empty iterable."""
    best: Optional[GeoPoint] = None
    best_dist = float("inf")
    for p in points:
        d = distance_km(target, p)
        if d < best_dist:
            best, best_dist = p, d
    return best


def in_service_area(
    point: GeoPoint,
    area: Optional[Tuple[float, float, float, float]],
) -> bool:
    """
    Check whether a point lies in the serviceable bounding box.

    Args:
        point: Point to test
        area: (min_lat, min_lng, max_lat, max_lng), or None for "everywhere"
    """
    if area is None:
        return True
    min_lat, min_lng, max_lat, max_lng = area
    return min_lat <= point.lat <= max_lat and min_lng <= point.lng <= max_lng


def km_to_lat_degrees(km: float) -> float:
    """Latitude span of ``km`` kilometers."""
    return math.degrees(km / EARTH_RADIUS_KM)


def km_to_lng_degrees(km: float, at_lat: float) -> float:
    """Longitude span of ``km`` kilometers at a given latitude."""
    cos_lat = max(math.cos(math.radians(at_lat)), 1e-6)
    return math.degrees(km / (EARTH_RADIUS_KM * cos_lat))


def minutes_between(earlier: datetime, later: datetime) -> float:
    """Signed number of minutes from ``earlier`` to ``later``."""
    return (later - earlier).total_seconds() / 60.0


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


def call_with_backoff(
    fn: Callable[[], T],
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], None] = _time.sleep,
) -> T:
    """
    Call ``fn`` and retry it with exponential backoff on retryable errors.

    The engine itself never queues or retries collaborator calls; this helper
    is for its callers (the CLI, the simulation, API handlers).

    Args:
        fn: Zero-argument callable to invoke
        attempts: Maximum number of calls (default from config)
        base_delay: First delay in seconds, doubled after each failure
        sleep: Sleep function, injectable for tests

    Returns:
        Whatever ``fn`` returns

    Raises:
        The last retryable DispatchError once attempts run out, or any
        non-retryable error immediately
    """
    if attempts is None:
        attempts = config.BACKOFF_MAX_ATTEMPTS
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    if base_delay is None:
        base_delay = config.BACKOFF_BASE_SECONDS

    delay = base_delay
    attempt = 1
    while True:
        try:
            return fn()
        except DispatchError as e:
            if not e.retryable or attempt >= attempts:
                raise
            logger.warning(f"Attempt {attempt}/{attempts} failed ({e}); retrying in {delay:.2f}s")
            sleep(delay)
            delay *= 2
            attempt += 1
