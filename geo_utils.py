"""Geographic helpers for agency coverage areas."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

EARTH_RADIUS_M = 6371000


@dataclass
class Bounds:
    north: float
    south: float
    east: float
    west: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "north": self.north,
            "south": self.south,
            "east": self.east,
            "west": self.west,
        }


def calculate_bounds_from_agencies(agencies: Optional[Iterable[Mapping[str, Any]]]) -> Optional[Bounds]:
    """
    Calculate the bounding box covering every agency's coverage rectangle.

    Each agency from the agencies-with-coverage response describes a rectangle
    centered on ``lat``/``lon`` spanning ``latSpan`` by ``lonSpan`` degrees.
    Agencies missing any of those four values are skipped.

    Returns:
        Bounds enclosing all rectangles, or None when no agency has a usable
        coverage rectangle
    """
    agencies = list(agencies or [])
    if not agencies:
        return None

    north = -math.inf
    south = math.inf
    east = -math.inf
    west = math.inf

    for agency in agencies:
        lat = agency.get("lat")
        lon = agency.get("lon")
        lat_span = agency.get("latSpan")
        lon_span = agency.get("lonSpan")
        if not (lat and lon and lat_span and lon_span):
            continue
        half_lat = lat_span / 2
        half_lon = lon_span / 2
        north = max(north, lat + half_lat)
        south = min(south, lat - half_lat)
        east = max(east, lon + half_lon)
        west = min(west, lon - half_lon)

    if north == -math.inf:
        return None
    return Bounds(north=north, south=south, east=east, west=west)


def calculate_radius_from_bounds(bounds: Bounds) -> float:
    """Distance in meters from the center of ``bounds`` to its north-east corner."""
    center_lat = (bounds.north + bounds.south) / 2
    center_lon = (bounds.east + bounds.west) / 2

    d_lat = math.radians(bounds.north - center_lat)
    d_lon = math.radians(bounds.east - center_lon)
    a = (math.sin(d_lat / 2) ** 2 +
         math.cos(math.radians(center_lat)) * math.cos(math.radians(bounds.north)) *
         math.sin(d_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c
