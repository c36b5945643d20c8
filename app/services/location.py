from __future__ import annotations

from dataclasses import dataclass
from math import atan2, cos, radians, sin, sqrt

from app.errors import ApiError
from app.settings import get_settings

EARTH_RADIUS_M = 6371000.0


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lat2_rad = radians(lat2)
    delta_lat = radians(lat2 - lat1)
    delta_lon = radians(lon2 - lon1)

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    # Rounding can push `a` a hair past 1 for antipodal points.
    a = min(1.0, max(0.0, a))
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_M * c


@dataclass(frozen=True, slots=True)
class OfficeGeofence:
    lat: float
    lon: float
    radius_m: float


@dataclass(frozen=True, slots=True)
class GeofenceCheck:
    distance_m: float
    radius_m: float

    @property
    def within(self) -> bool:
        return self.distance_m <= self.radius_m

    def to_flags(self) -> dict[str, float]:
        return {
            "distance_m": round(self.distance_m, 2),
            "radius_m": self.radius_m,
        }


def get_office_geofence() -> OfficeGeofence:
    settings = get_settings()
    if settings.office_lat is None or settings.office_lon is None:
        raise ApiError(
            status_code=503,
            code="GEOFENCE_NOT_CONFIGURED",
            message="Office location is not configured.",
        )
    return OfficeGeofence(
        lat=float(settings.office_lat),
        lon=float(settings.office_lon),
        radius_m=float(settings.allowed_distance_meters),
    )


def evaluate_geofence(geofence: OfficeGeofence, lat: float, lon: float) -> GeofenceCheck:
    return GeofenceCheck(
        distance_m=distance_m(lat, lon, geofence.lat, geofence.lon),
        radius_m=geofence.radius_m,
    )
