"""
Great-circle distance and travel-mode estimates between two points.

A missing point, or the (0, 0) placeholder, means the distance is unknown:
every function here returns None instead of pretending the points coincide.
"""

import math
from enum import StrEnum

from donorlink.errors import ValidationError
from donorlink.models import GeoPoint, WireModel

EARTH_RADIUS_KM = 6371.0

# Upper bound of each band (km) and the minutes-per-km used to estimate
# travel time inside it. Anything beyond the last bound is a long drive.
WALKING_MAX_KM = 1.0
CYCLING_MAX_KM = 5.0
SHORT_DRIVE_MAX_KM = 20.0

WALKING_MINUTES_PER_KM = 15.0
CYCLING_MINUTES_PER_KM = 4.0
CITY_DRIVING_MINUTES_PER_KM = 2.0
HIGHWAY_DRIVING_MINUTES_PER_KM = 1.5


class TravelMode(StrEnum):
    WALKING = "walking"
    CYCLING = "cycling"
    DRIVING = "driving"


class TravelEstimate(WireModel):
    mode: TravelMode
    estimated_minutes: int
    description: str


class Directions(WireModel):
    distance_km: float
    distance_text: str
    travel: TravelEstimate


def _usable(point: GeoPoint | None) -> bool:
    return point is not None and not point.is_placeholder


def distance_km(a: GeoPoint | None, b: GeoPoint | None) -> float | None:
    """Haversine distance in kilometers, or None if either point is unknown."""
    if not _usable(a) or not _usable(b):
        return None

    lat1, lon1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lon2 = math.radians(b.latitude), math.radians(b.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # Clamp against floating point drift slightly above 1.
    h = min(1.0, h)
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def classify(distance: float | None) -> TravelEstimate | None:
    if distance is None:
        return None
    if distance < 0 or math.isnan(distance):
        raise ValidationError(f"Distance must be a non-negative number, got {distance}")

    if distance <= WALKING_MAX_KM:
        mode, rate, description = TravelMode.WALKING, WALKING_MINUTES_PER_KM, "Walking distance"
    elif distance <= CYCLING_MAX_KM:
        mode, rate, description = TravelMode.CYCLING, CYCLING_MINUTES_PER_KM, "Cycling distance"
    elif distance <= SHORT_DRIVE_MAX_KM:
        mode, rate, description = (
            TravelMode.DRIVING,
            CITY_DRIVING_MINUTES_PER_KM,
            "Short drive",
        )
    else:
        mode, rate, description = (
            TravelMode.DRIVING,
            HIGHWAY_DRIVING_MINUTES_PER_KM,
            "Long drive",
        )

    return TravelEstimate(
        mode=mode,
        estimated_minutes=math.ceil(distance * rate),
        description=description,
    )


def format_distance(distance: float) -> str:
    if distance < 1:
        return f"{round(distance * 1000)}m"
    return f"{distance:.1f}km"


def describe(a: GeoPoint | None, b: GeoPoint | None) -> Directions | None:
    """Distance, display text and travel estimate between two points."""
    distance = distance_km(a, b)
    if distance is None:
        return None
    return Directions(
        distance_km=round(distance, 2),
        distance_text=format_distance(distance),
        travel=classify(distance),
    )
