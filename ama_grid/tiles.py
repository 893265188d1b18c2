from __future__ import annotations

import math
from dataclasses import dataclass

from .settings import Settings

CellKey = tuple[int, int]


@dataclass(frozen=True)
class BoundingBox:
    lat_min: int
    lat_max: int
    lon_min: int
    lon_max: int

    def contains_cell(self, key: CellKey) -> bool:
        lat, lon = key
        return self.lat_min <= lat < self.lat_max and self.lon_min <= lon < self.lon_max

    @classmethod
    def from_settings(cls, cfg: Settings) -> "BoundingBox":
        return cls(lat_min=cfg.lat_min, lat_max=cfg.lat_max, lon_min=cfg.lon_min, lon_max=cfg.lon_max)


@dataclass(frozen=True)
class TileCoord:
    x: int
    y: int
    zoom: int


@dataclass(frozen=True)
class TileBounds:
    north: float
    south: float
    west: float
    east: float


def tile_x(lon: float, zoom: int) -> int:
    return math.floor((lon + 180.0) / 360.0 * (1 << zoom))


def tile_y(lat: float, zoom: int) -> int:
    lat_rad = math.radians(lat)
    return math.floor(
        (1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * (1 << zoom)
    )


def tile_x_to_lon(x: float, zoom: int) -> float:
    return x / (1 << zoom) * 360.0 - 180.0


def tile_y_to_lat(y: float, zoom: int) -> float:
    n = math.pi - 2.0 * math.pi * y / (1 << zoom)
    return math.degrees(math.atan(math.sinh(n)))


def tile_bounds(x: int, y: int, zoom: int) -> TileBounds:
    # y grows southwards, so the tile's top edge is index y and its bottom edge y + 1
    return TileBounds(
        north=tile_y_to_lat(y, zoom),
        south=tile_y_to_lat(y + 1, zoom),
        west=tile_x_to_lon(x, zoom),
        east=tile_x_to_lon(x + 1, zoom),
    )


def cell_key(lat: float, lon: float) -> CellKey:
    return math.floor(lat), math.floor(lon)


def tiles_for_bbox(bbox: BoundingBox, zoom: int) -> list[TileCoord]:
    max_index = (1 << zoom) - 1
    x_min = max(0, tile_x(bbox.lon_min, zoom))
    x_max = min(max_index, tile_x(bbox.lon_max, zoom))
    y_min = max(0, tile_y(bbox.lat_max, zoom))
    y_max = min(max_index, tile_y(bbox.lat_min, zoom))
    tiles: list[TileCoord] = []
    for x in range(x_min, x_max + 1):
        for y in range(y_min, y_max + 1):
            tiles.append(TileCoord(x=x, y=y, zoom=zoom))
    return tiles


def tile_cache_name(tile: TileCoord) -> str:
    return f"{tile.zoom}_{tile.x}_{tile.y}.png"
