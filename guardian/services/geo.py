"""Great-circle distance and coordinate helpers shared by all engines."""

import math

from guardian.domain.errors import ValidationError
from guardian.domain.models import Priority

EARTH_RADIUS_METERS = 6_371_000.0

SEARCH_RADIUS_METERS: dict[Priority, float] = {
    Priority.LOW: 1000.0,
    Priority.MEDIUM: 2000.0,
    Priority.HIGH: 3000.0,
    Priority.CRITICAL: 5000.0,
}

# Average travel speed used for arrival estimates.
_AVERAGE_SPEED_KMH = 30.0


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Distance in meters between two WGS84 points. Not rounded."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    # Rounding can push a just past 1 near the antipode.
    c = 2 * math.asin(math.sqrt(min(1.0, a)))
    return EARTH_RADIUS_METERS * c


def validate_coordinates(lat: object, lng: object) -> tuple[float, float]:
    """Reject missing, non-numeric, non-finite or out-of-range coordinates."""
    bad: list[str] = []
    for name, value, bound in (("lat", lat, 90.0), ("lng", lng, 180.0)):
        if isinstance(value, bool) or not isinstance(value, int | float):
            bad.append(name)
        elif not math.isfinite(value) or not -bound <= value <= bound:
            bad.append(name)
    if bad:
        raise ValidationError("Invalid location coordinates", fields=bad)
    return float(lat), float(lng)  # type: ignore[arg-type]


def search_radius_for(priority: Priority | str) -> float:
    return SEARCH_RADIUS_METERS.get(Priority(priority), SEARCH_RADIUS_METERS[Priority.MEDIUM])


def estimated_arrival_minutes(distance_meters: float) -> int:
    return round(distance_meters / 1000 / _AVERAGE_SPEED_KMH * 60)
