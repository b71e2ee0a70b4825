"""
Geometry Utilities for Location-Bound Caching.

Pure functions used by the region index and the cache manager:
- Great-circle (Haversine) distance, scalar or vectorized over numpy arrays
- Grid quantization of coordinates into fixed-size region cells
- Enumeration of the cells a proximity search must visit

Region ids are (i, j) integer tuples with i = floor(lat / cell) and
j = floor(lon / cell).
"""

import math
from typing import Set, Tuple, Union

import numpy as np

from geocache.exceptions import CacheValidationError

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEGREE = 111_000.0

# Cosine floor used near the poles so longitude rings stay finite
_MIN_COS_LAT = 1e-6

RegionId = Tuple[int, int]
ArrayLike = Union[float, np.ndarray]


def haversine_distance(
    lat1: ArrayLike, lon1: ArrayLike, lat2: ArrayLike, lon2: ArrayLike
) -> ArrayLike:
    """
    Great-circle distance in meters.

    Inputs broadcast like numpy arrays, so a single query point can be
    compared against arrays of candidate coordinates in one call.

    Args:
        lat1: Latitude of first point(s) in degrees
        lon1: Longitude of first point(s) in degrees
        lat2: Latitude of second point(s) in degrees
        lon2: Longitude of second point(s) in degrees

    Returns:
        Distance(s) in meters
    """
    phi1 = np.radians(lat1)
    phi2 = np.radians(lat2)
    d_phi = np.radians(np.subtract(lat2, lat1))
    d_lambda = np.radians(np.subtract(lon2, lon1))

    a = (
        np.sin(d_phi / 2) ** 2
        + np.cos(phi1) * np.cos(phi2) * np.sin(d_lambda / 2) ** 2
    )
    # Rounding can push a marginally above 1 for antipodal points
    a = np.clip(a, 0.0, 1.0)
    c = 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Scalar Haversine distance in meters."""
    return float(haversine_distance(lat1, lon1, lat2, lon2))


def region_id(latitude: float, longitude: float, cell_size_deg: float) -> RegionId:
    """
    Quantize a coordinate into its grid cell.

    Args:
        latitude: Latitude in degrees
        longitude: Longitude in degrees
        cell_size_deg: Cell edge length in degrees

    Returns:
        (i, j) cell indices
    """
    return (
        int(math.floor(latitude / cell_size_deg)),
        int(math.floor(longitude / cell_size_deg)),
    )


def region_name(rid: RegionId) -> str:
    """Stable string name of a region id."""
    return f"region_{rid[0]}_{rid[1]}"


def parse_region_name(name: str) -> RegionId:
    """Inverse of region_name."""
    prefix, i, j = name.rsplit("_", 2)
    if prefix != "region":
        raise ValueError(f"Not a region name: {name}")
    return (int(i), int(j))


def cell_bounds(rid: RegionId, cell_size_deg: float) -> Tuple[float, float, float, float]:
    """Get (south, west, north, east) of a cell."""
    south = rid[0] * cell_size_deg
    west = rid[1] * cell_size_deg
    return (south, west, south + cell_size_deg, west + cell_size_deg)


def cell_center(rid: RegionId, cell_size_deg: float) -> Tuple[float, float]:
    """Get (lat, lon) of a cell's center."""
    south, west, north, east = cell_bounds(rid, cell_size_deg)
    return ((south + north) / 2, (west + east) / 2)


def search_rings(
    latitude: float, radius_m: float, cell_size_deg: float
) -> Tuple[int, int]:
    """
    Number of cells to visit on each side of the center cell.

    The latitude ring is ceil(radius / (cell * 111 km)). Longitude degrees
    shrink with cos(latitude), so the longitude ring is widened accordingly;
    it is never smaller than the latitude ring.

    Returns:
        (lat_cells, lon_cells)
    """
    cell_m = cell_size_deg * METERS_PER_DEGREE
    lat_cells = int(math.ceil(radius_m / cell_m))

    cos_lat = max(math.cos(math.radians(latitude)), _MIN_COS_LAT)
    lon_cells = int(math.ceil(radius_m / (cell_m * cos_lat)))
    # One full turn of longitude is enough
    max_lon_cells = int(math.ceil(180.0 / cell_size_deg))
    lon_cells = min(max(lon_cells, lat_cells), max_lon_cells)

    return lat_cells, lon_cells


def candidate_regions(
    latitude: float, longitude: float, radius_m: float, cell_size_deg: float
) -> Set[RegionId]:
    """
    Enumerate the square neighborhood of cells around a point.

    Over-approximates the search disc; callers must still filter candidates
    by exact distance. Cells are not wrapped across the antimeridian.

    Args:
        latitude: Center latitude
        longitude: Center longitude
        radius_m: Search radius in meters
        cell_size_deg: Cell edge length in degrees

    Returns:
        Set of region ids
    """
    ci, cj = region_id(latitude, longitude, cell_size_deg)
    lat_cells, lon_cells = search_rings(latitude, radius_m, cell_size_deg)
    return {
        (ci + di, cj + dj)
        for di in range(-lat_cells, lat_cells + 1)
        for dj in range(-lon_cells, lon_cells + 1)
    }


def validate_coordinates(latitude: float, longitude: float) -> None:
    """
    Reject coordinates outside the WGS84 range.

    Raises:
        CacheValidationError: If either value is non-finite or out of range
    """
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        raise CacheValidationError(
            "Coordinates must be numeric",
            {"latitude": latitude, "longitude": longitude},
        )

    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise CacheValidationError(
            "Coordinates must be finite", {"latitude": lat, "longitude": lon}
        )
    if not -90.0 <= lat <= 90.0:
        raise CacheValidationError(
            f"latitude must be in [-90, 90], got {lat}", {"latitude": lat}
        )
    if not -180.0 <= lon <= 180.0:
        raise CacheValidationError(
            f"longitude must be in [-180, 180], got {lon}", {"longitude": lon}
        )


def validate_radius(radius_m: float) -> None:
    """Reject non-positive or non-finite search radii."""
    try:
        value = float(radius_m)
    except (TypeError, ValueError):
        raise CacheValidationError("radius must be numeric", {"radius": radius_m})
    if not math.isfinite(value) or value <= 0:
        raise CacheValidationError(
            f"radius must be > 0, got {radius_m}", {"radius": radius_m}
        )
