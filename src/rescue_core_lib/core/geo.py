"""Great-circle distance."""

import math

from rescue_core_lib.models.common import GeoLocation

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: GeoLocation, b: GeoLocation) -> float:
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(b.lng - a.lng)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))
