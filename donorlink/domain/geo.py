# SPDX-License-Identifier: Apache-2.0

"""
Great-circle distance between hospital and donor coordinates.

Coordinates are ``(longitude, latitude)`` pairs in degrees, the GeoJSON
order used by the donor repository.
"""

import math
from typing import Sequence

from ..exceptions import InvalidCoordinatesError

EARTH_RADIUS_KM = 6371.0


def validate_coordinates(longitude: float, latitude: float) -> None:
    """
    Reject a longitude/latitude pair outside [-180, 180] / [-90, 90].

    Raises:
        InvalidCoordinatesError: If either component is out of range or not a number
    """
    try:
        lon = float(longitude)
        lat = float(latitude)
    except (TypeError, ValueError):
        raise InvalidCoordinatesError(longitude, latitude)

    if math.isnan(lon) or math.isnan(lat):
        raise InvalidCoordinatesError(longitude, latitude)
    if not -180.0 <= lon <= 180.0 or not -90.0 <= lat <= 90.0:
        raise InvalidCoordinatesError(longitude, latitude)


def haversine_km(origin: Sequence[float], destination: Sequence[float]) -> float:
    """
    Calculate the Haversine distance between two points.

    Args:
        origin: ``(longitude, latitude)`` in degrees
        destination: ``(longitude, latitude)`` in degrees

    Returns:
        Distance in kilometers, rounded to two decimal places
    """
    lon1, lat1 = origin[0], origin[1]
    lon2, lat2 = destination[0], destination[1]

    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return round(EARTH_RADIUS_KM * c, 2)


def km_to_meters(distance_km: float) -> float:
    """Convert kilometers to meters for geospatial queries."""
    return distance_km * 1000.0
