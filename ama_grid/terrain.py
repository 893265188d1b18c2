from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from .errors import FormatError, UnsupportedFormatError
from .fetcher import FetchTask
from .grid import CellMaxTable
from .logging_utils import log_event
from .png_decode import decode_png, terrarium_elevations
from .tiles import BoundingBox, TileCoord, tile_bounds, tile_cache_name, tiles_for_bbox


@dataclass
class TerrainResult:
    table: CellMaxTable = field(default_factory=CellMaxTable)
    tiles_total: int = 0
    tiles_scanned: int = 0
    tiles_missing: int = 0
    tiles_failed: int = 0


def terrain_tasks(cache_dir: Path, bbox: BoundingBox, zoom: int, base_url: str) -> list[FetchTask]:
    return [
        FetchTask(
            name=tile_cache_name(tile),
            url=f"{base_url}/{tile.zoom}/{tile.x}/{tile.y}.png",
            destination=cache_dir / tile_cache_name(tile),
        )
        for tile in tiles_for_bbox(bbox, zoom)
    ]


def _band_keys(coords: np.ndarray) -> list[tuple[int, np.ndarray]]:
    cells = np.floor(coords).astype(np.int64)
    return [(int(cell), cells == cell) for cell in np.unique(cells)]


def scan_tile(data: bytes, tile: TileCoord, bbox: BoundingBox) -> CellMaxTable:
    """Per-cell maximum elevation of one Terrarium tile.

    Pixel ``(row, col)`` is placed at its fractional position inside the tile's
    bounds; pixels at or below 0 m are ocean/void and never contribute.
    """
    image = decode_png(data)
    elevations = terrarium_elevations(image)
    bounds = tile_bounds(tile.x, tile.y, tile.zoom)

    lats = bounds.north - (np.arange(image.height) / image.height) * (bounds.north - bounds.south)
    lons = bounds.west + (np.arange(image.width) / image.width) * (bounds.east - bounds.west)

    table = CellMaxTable()
    lon_bands = _band_keys(lons)
    for cell_lat, row_mask in _band_keys(lats):
        for cell_lon, col_mask in lon_bands:
            if not bbox.contains_cell((cell_lat, cell_lon)):
                continue
            peak = float(elevations[np.ix_(row_mask, col_mask)].max())
            if peak <= 0.0:
                continue
            table.update((cell_lat, cell_lon), peak)
    return table


def _scan_tile_file(path: Path, tile: TileCoord, bbox: BoundingBox) -> tuple[TileCoord, CellMaxTable | None, str | None]:
    try:
        return tile, scan_tile(path.read_bytes(), tile, bbox), None
    except (FormatError, UnsupportedFormatError) as exc:
        return tile, None, f"{exc.reason_code}: {exc}"
    except OSError as exc:
        return tile, None, f"read_failed: {exc}"


def aggregate_terrain(
    cache_dir: Path,
    bbox: BoundingBox,
    zoom: int,
    *,
    workers: int = 1,
) -> TerrainResult:
    """Fold every cached tile of the box into one terrain-max table.

    Missing or undecodable tiles are skipped; coverage gaps near coasts and the
    pyramid edge are expected.
    """
    result = TerrainResult()
    jobs: list[tuple[Path, TileCoord]] = []
    for tile in tiles_for_bbox(bbox, zoom):
        result.tiles_total += 1
        path = cache_dir / tile_cache_name(tile)
        if not path.exists():
            result.tiles_missing += 1
            continue
        jobs.append((path, tile))

    if workers > 1 and len(jobs) > 1:
        with ProcessPoolExecutor(max_workers=workers) as executor:
            scanned = list(
                executor.map(
                    _scan_tile_file,
                    [path for path, _ in jobs],
                    [tile for _, tile in jobs],
                    [bbox] * len(jobs),
                    chunksize=8,
                )
            )
    else:
        scanned = [_scan_tile_file(path, tile, bbox) for path, tile in jobs]

    for tile, partial, error in scanned:
        if partial is None:
            result.tiles_failed += 1
            log_event(
                "terrain_tile_skipped",
                level=logging.DEBUG,
                tile=tile_cache_name(tile),
                detail=error,
            )
            continue
        result.tiles_scanned += 1
        result.table.merge(partial)

    log_event(
        "terrain_aggregated",
        tiles_total=result.tiles_total,
        tiles_scanned=result.tiles_scanned,
        tiles_missing=result.tiles_missing,
        tiles_failed=result.tiles_failed,
        cells=len(result.table),
        workers=workers,
    )
    return result
