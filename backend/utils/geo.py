import math
from typing import NamedTuple, Sequence

EARTH_RADIUS_M = 6_371_000.0


class LatLng(NamedTuple):
    lat: float
    lng: float


class BoundingBox(NamedTuple):
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @property
    def center(self) -> LatLng:
        return LatLng((self.min_lat + self.max_lat) / 2, (self.min_lng + self.max_lng) / 2)


def distance_meters(a: LatLng, b: LatLng) -> float:
    """Great-circle distance between two points (Haversine), in meters."""
    phi1 = math.radians(a[0])
    phi2 = math.radians(b[0])
    d_phi = math.radians(b[0] - a[0])
    d_lambda = math.radians(b[1] - a[1])

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def is_within_bounds(point: LatLng, bbox: BoundingBox) -> bool:
    """Axis-aligned containment, edges inclusive."""
    lat, lng = point[0], point[1]
    return bbox.min_lat <= lat <= bbox.max_lat and bbox.min_lng <= lng <= bbox.max_lng


def is_within_polygon(point: LatLng, polygon: Sequence[LatLng]) -> bool:
    """Ray-casting containment test on a lat/lng ring (planar approximation)."""
    if len(polygon) < 3:
        return False
    lat, lng = point[0], point[1]
    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        lat_i, lng_i = polygon[i][0], polygon[i][1]
        lat_j, lng_j = polygon[j][0], polygon[j][1]
        if (lat_i > lat) != (lat_j > lat):
            cross_lng = (lng_j - lng_i) * (lat - lat_i) / (lat_j - lat_i) + lng_i
            if lng < cross_lng:
                inside = not inside
        j = i
    return inside
