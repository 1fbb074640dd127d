"""
geo.py — Geometry and spatial-index helpers shared by every spatial component.

Distances are great-circle metres (haversine, mean Earth radius).
Index keys are H3 cells (h3 v4 API). The same cells give the sampling grid
for region predictions, so caches and samples share stable string keys.
"""

import math

import h3

from civicpulse.models.common import Coordinate, RegionBounds

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in metres between two (lon, lat) points."""
    lon1, lat1 = a
    lon2, lat2 = b
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def cell_for(location: Coordinate, resolution: int = 8) -> str:
    lon, lat = location
    return h3.latlng_to_cell(lat, lon, resolution)


def cell_center(cell: str) -> Coordinate:
    lat, lon = h3.cell_to_latlng(cell)
    return (lon, lat)


def centroid(locations: list[Coordinate]) -> Coordinate:
    if not locations:
        raise ValueError("centroid of an empty location list")
    return (
        sum(loc[0] for loc in locations) / len(locations),
        sum(loc[1] for loc in locations) / len(locations),
    )


def cells_covering(bounds: RegionBounds, resolution: int) -> set[str]:
    """H3 cells whose centres fall inside the box."""
    (west, south), (east, north) = bounds.southwest, bounds.northeast
    box = h3.LatLngPoly([(south, west), (south, east), (north, east), (north, west)])
    return set(h3.h3shape_to_cells(box, resolution))


def sample_grid(bounds: RegionBounds, resolution: int = 8, max_cells: int = 64) -> list[Coordinate]:
    """
    Prediction sample locations for a region: the centres of the H3 cells
    covering `bounds`, coarsening one resolution at a time until at most
    `max_cells` remain. A box smaller than a single cell yields its centre.
    """
    cells: set[str] = set()
    for res in range(resolution, -1, -1):
        cells = cells_covering(bounds, res)
        if len(cells) <= max_cells:
            break
    if not cells:
        return [bounds.center]
    return [cell_center(cell) for cell in sorted(cells)[:max_cells]]
