from __future__ import annotations

import json
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from .errors import FatalError
from .fetcher import FetchReport, FetchTask, fetch_batches, write_fetch_manifest
from .grid import CellMaxTable, fuse_grid
from .logging_utils import log_event
from .obstacles import aggregate_obstacles, obstacle_tasks
from .settings import Settings, settings
from .terrain import aggregate_terrain, terrain_tasks
from .tiles import BoundingBox

GRID_FILENAME = "ama-grid.json"
OBSTACLES_FILENAME = "ama-obstacles.json"
TERRAIN_MANIFEST_FILENAME = "terrain-fetch-manifest.json"
OBSTACLE_MANIFEST_FILENAME = "obstacles-fetch-manifest.json"

# (label, lat, lon, expectation) sanity probes logged after every build
SPOT_CHECKS: tuple[tuple[str, int, int, str], ...] = (
    ("Alps", 45, 6, "expect ~17000-18000"),
    ("Netherlands", 52, 5, "expect ~2000-3000"),
    ("Norway", 61, 7, ""),
)


@dataclass
class PipelineOptions:
    skip_terrain: bool = False
    clear_cache: bool = False
    cache_dir: Path | None = None
    data_dir: Path | None = None
    workers: int | None = None


@dataclass
class PipelineSummary:
    grid_path: Path
    obstacles_path: Path
    grid_cells: int = 0
    terrain_cells: int = 0
    obstacle_cells: int = 0
    display_obstacles: int = 0
    fetch_failures: dict[str, int] = field(default_factory=dict)
    elapsed_s: float = 0.0


def _ensure_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FatalError(f"Cannot create directory {path}: {exc}", details={"path": str(path)}) from exc


def _write_json(path: Path, payload: Any) -> int:
    try:
        path.write_text(json.dumps(payload, separators=(",", ":")), encoding="utf-8")
        return path.stat().st_size
    except OSError as exc:
        raise FatalError(f"Cannot write {path}: {exc}", details={"path": str(path)}) from exc


def _write_manifest(path: Path, report: FetchReport, *, source: str) -> None:
    try:
        write_fetch_manifest(path, report, source=source)
    except OSError as exc:
        raise FatalError(f"Cannot write {path}: {exc}", details={"path": str(path)}) from exc


def _log_spot_checks(grid: list[list[int]]) -> None:
    by_cell = {(row[0], row[1]): row[2] for row in grid}
    for label, lat, lon, expectation in SPOT_CHECKS:
        ama = by_cell.get((lat, lon))
        if ama is None:
            continue
        log_event("spot_check", region=label, lat=lat, lon=lon, ama_ft=ama, expectation=expectation)


def run_pipeline(
    options: PipelineOptions | None = None,
    *,
    cfg: Settings | None = None,
    client: httpx.AsyncClient | None = None,
) -> PipelineSummary:
    """Fetch, aggregate, fuse and write both AMA artifacts."""
    options = options or PipelineOptions()
    cfg = cfg or settings
    t0 = time.perf_counter()

    cache_dir = Path(options.cache_dir or cfg.cache_dir)
    data_dir = Path(options.data_dir or cfg.data_dir)
    terrain_cache = cache_dir / "terrain"
    obstacle_cache = cache_dir / "obstacles"
    workers = int(options.workers or cfg.aggregation_workers)
    bbox = BoundingBox.from_settings(cfg)
    countries = cfg.country_codes

    if options.clear_cache and cache_dir.exists():
        log_event("cache_clear", cache_dir=str(cache_dir))
        try:
            shutil.rmtree(cache_dir)
        except OSError as exc:
            raise FatalError(f"Cannot clear cache {cache_dir}: {exc}") from exc

    for directory in (cache_dir, terrain_cache, obstacle_cache, data_dir):
        _ensure_dir(directory)

    summary = PipelineSummary(grid_path=data_dir / GRID_FILENAME, obstacles_path=data_dir / OBSTACLES_FILENAME)

    # Step 1: fetch. Both sources share one event loop and one HTTP client.
    batches: dict[str, list[FetchTask]] = {}
    if options.skip_terrain:
        log_event("terrain_fetch_skipped", cache_dir=str(terrain_cache))
    else:
        batches["terrain_fetch"] = terrain_tasks(terrain_cache, bbox, cfg.zoom, cfg.terrain_tile_url)
    batches["obstacle_fetch"] = obstacle_tasks(obstacle_cache, cfg.obstacle_base_url, countries)
    reports = fetch_batches(
        batches,
        concurrency=cfg.fetch_concurrency,
        timeout_s=cfg.fetch_timeout_s,
        client=client,
    )
    if "terrain_fetch" in reports:
        _write_manifest(cache_dir / TERRAIN_MANIFEST_FILENAME, reports["terrain_fetch"], source="terrarium")
        summary.fetch_failures["terrain"] = reports["terrain_fetch"].failed
    _write_manifest(cache_dir / OBSTACLE_MANIFEST_FILENAME, reports["obstacle_fetch"], source="openaip-obstacles")
    summary.fetch_failures["obstacles"] = reports["obstacle_fetch"].failed

    # Step 2: aggregate. Cached tiles are still aggregated when the terrain fetch is skipped.
    terrain_max: CellMaxTable = aggregate_terrain(terrain_cache, bbox, cfg.zoom, workers=workers).table
    obstacles = aggregate_obstacles(
        obstacle_cache,
        bbox,
        countries,
        default_heights_m=cfg.default_heights_m,
        min_display_height_m=cfg.min_display_height_m,
        top_n=cfg.top_obstacles_per_cell,
    )

    # Step 3: fuse and persist
    grid = fuse_grid(terrain_max, obstacles.obstacle_max)
    grid_bytes = _write_json(summary.grid_path, grid)
    obstacle_rows = [entry.as_row() for entry in obstacles.display]
    obstacle_bytes = _write_json(summary.obstacles_path, obstacle_rows)

    summary.grid_cells = len(grid)
    summary.terrain_cells = len(terrain_max)
    summary.obstacle_cells = len(obstacles.obstacle_max)
    summary.display_obstacles = len(obstacle_rows)
    summary.elapsed_s = round(time.perf_counter() - t0, 2)

    log_event(
        "ama_grid_written",
        path=str(summary.grid_path),
        cells=summary.grid_cells,
        size_kb=round(grid_bytes / 1024, 1),
    )
    log_event(
        "ama_obstacles_written",
        path=str(summary.obstacles_path),
        obstacles=summary.display_obstacles,
        size_kb=round(obstacle_bytes / 1024, 1),
    )
    _log_spot_checks(grid)
    log_event(
        "ama_build_complete",
        elapsed_s=summary.elapsed_s,
        terrain_cells=summary.terrain_cells,
        obstacle_cells=summary.obstacle_cells,
        fetch_failures=summary.fetch_failures,
    )
    return summary
