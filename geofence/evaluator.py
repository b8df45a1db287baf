"""
Geofence evaluation for check-in evidence.

Two candidate GPS fixes may accompany a check-in:
  exif    coordinates embedded in the photo's metadata
  device  the phone's location when the photo was submitted

The photo fix always wins when present; the device fix is only a fallback.
This is a fixed priority, not a plausibility comparison between the two.
Whichever fix is chosen is evaluated against the same configured radius.

Everything here is pure and safe to call concurrently.
"""

import logging
import math
from dataclasses import dataclass
from typing import Literal, Optional

from config import GEOFENCE_RADIUS_METERS

logger = logging.getLogger(__name__)

EARTH_RADIUS_METRES = 6_371_000

GpsSource = Literal["exif", "device", "none"]
SOURCE_EXIF: GpsSource = "exif"
SOURCE_DEVICE: GpsSource = "device"
SOURCE_NONE: GpsSource = "none"


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float

    def is_finite(self) -> bool:
        return math.isfinite(self.lat) and math.isfinite(self.lon)


@dataclass(frozen=True)
class GeofenceCheck:
    within_radius: bool
    distance_meters: float


@dataclass(frozen=True)
class GeofenceResult:
    """
    Outcome of validating one check-in against a station.

    distance_meters is None exactly when source is "none", and within_radius
    is always False in that case.
    """
    within_radius: bool
    distance_meters: Optional[float]
    source: GpsSource
    radius_used: float
    coordinate: Optional[Coordinate] = None

    @classmethod
    def no_gps(cls, radius_used: float) -> "GeofenceResult":
        return cls(within_radius=False, distance_meters=None, source=SOURCE_NONE, radius_used=radius_used)


def haversine_metres(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two (lat, lon) points in metres.

    Raises ValueError for NaN or infinite inputs; there is no meaningful
    distance to report for them.
    """
    if not all(math.isfinite(v) for v in (lat1, lon1, lat2, lon2)):
        raise ValueError(f"Non-finite coordinate: ({lat1}, {lon1}) -> ({lat2}, {lon2})")
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    # Rounding can push `a` a hair outside [0, 1] for out-of-range inputs.
    a = min(1.0, max(0.0, a))
    return 2 * EARTH_RADIUS_METRES * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def evaluate(
    user_lat: float,
    user_lng: float,
    station_lat: float,
    station_lng: float,
    radius_meters: float,
) -> GeofenceCheck:
    """Distance from the user to the station and whether it is within the radius (inclusive)."""
    distance = haversine_metres(user_lat, user_lng, station_lat, station_lng)
    return GeofenceCheck(within_radius=distance <= radius_meters, distance_meters=distance)


def usable(coord: Optional[Coordinate]) -> bool:
    """A fix is usable when present and both components are finite numbers."""
    return coord is not None and coord.is_finite()


def select_source(
    image_coords: Optional[Coordinate],
    device_coords: Optional[Coordinate],
) -> GpsSource:
    if usable(image_coords):
        return SOURCE_EXIF
    if usable(device_coords):
        return SOURCE_DEVICE
    return SOURCE_NONE


def validate_geofence(
    image_coords: Optional[Coordinate],
    device_coords: Optional[Coordinate],
    station_lat: float,
    station_lng: float,
    radius_meters: Optional[float] = None,
    audit: bool = True,
) -> GeofenceResult:
    """
    Pick the GPS source, then evaluate it against the station.

    `radius_meters` defaults to GEOFENCE_RADIUS_METERS and is resolved once,
    so both sources are always judged against the same radius.
    """
    radius = GEOFENCE_RADIUS_METERS if radius_meters is None else radius_meters
    source = select_source(image_coords, device_coords)

    if source == SOURCE_NONE:
        result = GeofenceResult.no_gps(radius)
    else:
        chosen = image_coords if source == SOURCE_EXIF else device_coords
        check = evaluate(chosen.lat, chosen.lon, station_lat, station_lng, radius)
        result = GeofenceResult(
            within_radius=check.within_radius,
            distance_meters=check.distance_meters,
            source=source,
            radius_used=radius,
            coordinate=chosen,
        )

    if audit:
        logger.info(
            "Geofence %s: source=%s distance=%s radius=%s exif=%s device=%s station=(%s, %s)",
            "PASS" if result.within_radius else "FAIL",
            result.source,
            "n/a" if result.distance_meters is None else f"{result.distance_meters:.1f}",
            radius,
            _fmt(image_coords),
            _fmt(device_coords),
            station_lat,
            station_lng,
        )
    return result


def _fmt(coord: Optional[Coordinate]) -> str:
    return "none" if coord is None else f"({coord.lat}, {coord.lon})"
