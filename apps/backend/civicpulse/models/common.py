"""
common.py — Shared pydantic building blocks.

Python fields are snake_case; everything that crosses the wire (REST
responses, WebSocket messages, exports) is camelCase through the alias
generator. Construct models with either spelling.

Coordinates are always (longitude, latitude), GeoJSON order.
"""

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

Coordinate = tuple[float, float]   # (lon, lat)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())


class RegionBounds(CamelModel):
    """Axis-aligned lon/lat box. Does not wrap the antimeridian."""

    southwest: Coordinate
    northeast: Coordinate

    @model_validator(mode="after")
    def _ordered(self):
        if self.southwest[0] > self.northeast[0] or self.southwest[1] > self.northeast[1]:
            raise ValueError("southwest corner must be below and left of northeast corner")
        return self

    @property
    def center(self) -> Coordinate:
        return (
            (self.southwest[0] + self.northeast[0]) / 2,
            (self.southwest[1] + self.northeast[1]) / 2,
        )

    def contains(self, location: Coordinate) -> bool:
        lon, lat = location
        return (
            self.southwest[0] <= lon <= self.northeast[0]
            and self.southwest[1] <= lat <= self.northeast[1]
        )

    def intersects(self, other: "RegionBounds") -> bool:
        return not (
            other.northeast[0] < self.southwest[0]
            or other.southwest[0] > self.northeast[0]
            or other.northeast[1] < self.southwest[1]
            or other.southwest[1] > self.northeast[1]
        )

    @classmethod
    def around(cls, locations: list[Coordinate]) -> "RegionBounds | None":
        """Tightest box containing every location, or None for an empty list."""
        if not locations:
            return None
        lons = [loc[0] for loc in locations]
        lats = [loc[1] for loc in locations]
        return cls(southwest=(min(lons), min(lats)), northeast=(max(lons), max(lats)))
