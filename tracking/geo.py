"""
Geo helpers: great-circle distance and a constant-speed ETA estimate.

Pure functions, no Django imports.
"""
import math
from datetime import datetime
from typing import NamedTuple, Optional

EARTH_RADIUS_KM = 6371.0
DEFAULT_SPEED_KMH = 25.0


class Coordinates(NamedTuple):
    lat: float
    lng: float


class Position(NamedTuple):
    """A coordinate pair with the time it was observed."""
    lat: float
    lng: float
    updated_at: Optional[datetime] = None

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.lat, self.lng)


def validate_coordinates(lat: float, lng: float) -> bool:
    return (
        math.isfinite(lat) and math.isfinite(lng)
        and -90 <= lat <= 90 and -180 <= lng <= 180
    )


def haversine_km(a, b) -> float:
    """Great-circle distance in kilometres between two (lat, lng) points."""
    d_lat = math.radians(b[0] - a[0])
    d_lng = math.radians(b[1] - a[1])
    lat1 = math.radians(a[0])
    lat2 = math.radians(b[0])

    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def estimate_eta_minutes(distance_km: float, speed_kmh: float = DEFAULT_SPEED_KMH) -> int:
    """
    Minutes to cover ``distance_km`` at ``speed_kmh``.

    Rounded half-up to a whole minute, never below 1 for a positive distance.
    Zero, negative or non-finite distances give 0.
    """
    if not math.isfinite(distance_km) or distance_km <= 0:
        return 0
    minutes = distance_km / speed_kmh * 60
    return max(1, math.floor(minutes + 0.5))


def eta_between(origin, destination, speed_kmh: float = DEFAULT_SPEED_KMH) -> Optional[int]:
    """ETA in minutes, or None when either end is unknown."""
    if origin is None or destination is None:
        return None
    return estimate_eta_minutes(haversine_km(origin, destination), speed_kmh)


def format_eta(minutes: Optional[int]) -> str:
    if not minutes or minutes <= 0:
        return '—'
    if minutes < 60:
        return f'{minutes} min'
    return f'{minutes // 60}h {minutes % 60}m'
