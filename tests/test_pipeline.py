from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from ama_grid.errors import FatalError
from ama_grid.grid import METERS_TO_FEET, apply_mora_buffer
from ama_grid.pipeline import (
    GRID_FILENAME,
    OBSTACLES_FILENAME,
    OBSTACLE_MANIFEST_FILENAME,
    TERRAIN_MANIFEST_FILENAME,
    PipelineOptions,
    run_pipeline,
)
from ama_grid.settings import Settings


def _cfg(tmp_path: Path) -> Settings:
    return Settings(
        cache_dir=str(tmp_path / "cache"),
        data_dir=str(tmp_path / "data"),
        lat_min=45,
        lat_max=46,
        lon_min=6,
        lon_max=7,
        zoom=7,
        terrain_tile_url="https://tiles.test/terrarium/",
        obstacle_base_url="https://obstacles.test",
        obstacle_countries="fi, se",
        fetch_concurrency=2,
    )


class FakeUpstream:
    """Tile host that redirects to a CDN, plus an obstacle bucket with one country file."""

    def __init__(self, tile_png: bytes) -> None:
        self.tile_png = tile_png
        self.requests: list[str] = []
        self.loops: list[asyncio.AbstractEventLoop] = []
        self.obstacles = {
            "type": "FeatureCollection",
            "features": [
                {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": [6.5, 45.5]},
                    "properties": {
                        "name": "Relay mast",
                        "elevation": {"value": 2100, "unit": 0},
                        "height": {"value": 150, "unit": 0},
                        "osmTags": {"man_made": "mast"},
                    },
                },
                {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": [24.5, 60.0]},
                    "properties": {"name": "Outside", "elevation": {"value": 50}},
                },
            ],
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(f"{request.url.host}{request.url.path}")
        self.loops.append(asyncio.get_running_loop())
        if request.url.host == "cdn.test":
            return httpx.Response(200, content=self.tile_png)
        if request.url.host == "tiles.test" and request.url.path == "/terrarium/7/66/45.png":
            return httpx.Response(301, headers={"Location": "https://cdn.test/7/66/45.png"})
        if request.url.host == "obstacles.test" and request.url.path == "/fi_obs.geojson":
            return httpx.Response(200, json=self.obstacles)
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), follow_redirects=True)


@pytest.fixture
def upstream(make_terrarium_tile) -> FakeUpstream:
    return FakeUpstream(make_terrarium_tile(16, 16, lambda row, col: 2000.0))


def test_pipeline_writes_grid_and_obstacles(tmp_path: Path, upstream: FakeUpstream) -> None:
    cfg = _cfg(tmp_path)

    summary = run_pipeline(cfg=cfg, client=upstream.client())

    grid = json.loads((tmp_path / "data" / GRID_FILENAME).read_text(encoding="utf-8"))
    obstacles = json.loads((tmp_path / "data" / OBSTACLES_FILENAME).read_text(encoding="utf-8"))

    # obstacle top (2250 m) beats the 2000 m terrain in the same cell
    assert grid == [[45, 6, apply_mora_buffer(2250.0 * METERS_TO_FEET)]]
    assert grid[0][2] == 9400
    assert obstacles == [[45.5, 6.5, 7382, 492, "Relay mast"]]

    assert summary.grid_path == tmp_path / "data" / GRID_FILENAME
    assert summary.grid_cells == 1
    assert summary.terrain_cells == 1
    assert summary.obstacle_cells == 1
    assert summary.display_obstacles == 1
    assert summary.fetch_failures == {"terrain": 1, "obstacles": 1}

    cache = tmp_path / "cache"
    terrain_manifest = json.loads((cache / TERRAIN_MANIFEST_FILENAME).read_text(encoding="utf-8"))
    assert terrain_manifest["requested"] == 2
    assert terrain_manifest["downloaded"] == 1
    assert len(terrain_manifest["failures"]) == 1
    obstacle_manifest = json.loads((cache / OBSTACLE_MANIFEST_FILENAME).read_text(encoding="utf-8"))
    assert obstacle_manifest["source"] == "openaip-obstacles"
    assert obstacle_manifest["requested"] == 2

    # per-source directories hold only the fetched tiles and country files
    assert sorted(p.name for p in (cache / "terrain").iterdir()) == ["7_66_45.png"]
    assert sorted(p.name for p in (cache / "obstacles").iterdir()) == ["fi_obs.geojson"]

    # terrain and obstacle downloads ran on a single event loop
    assert len(upstream.loops) == len(upstream.requests) == 5
    assert len(set(map(id, upstream.loops))) == 1


def test_pipeline_output_is_compact_json(tmp_path: Path, upstream: FakeUpstream) -> None:
    run_pipeline(cfg=_cfg(tmp_path), client=upstream.client())
    text = (tmp_path / "data" / GRID_FILENAME).read_text(encoding="utf-8")
    assert " " not in text and "\n" not in text


def test_skip_terrain_reuses_cached_tiles(tmp_path: Path, upstream: FakeUpstream) -> None:
    cfg = _cfg(tmp_path)
    first = run_pipeline(cfg=cfg, client=upstream.client())
    upstream.requests.clear()

    second = run_pipeline(PipelineOptions(skip_terrain=True), cfg=cfg, client=upstream.client())

    assert not any(r.startswith(("tiles.test", "cdn.test")) for r in upstream.requests)
    # fi is cached; only the missing se file is asked for again
    assert upstream.requests == ["obstacles.test/se_obs.geojson"]
    assert second.terrain_cells == first.terrain_cells == 1
    assert "terrain" not in second.fetch_failures


def test_clear_cache_removes_stale_files(tmp_path: Path, upstream: FakeUpstream) -> None:
    cfg = _cfg(tmp_path)
    stale = tmp_path / "cache" / "terrain" / "7_66_46.png"
    stale.parent.mkdir(parents=True)
    stale.write_bytes(b"not a png")

    run_pipeline(PipelineOptions(clear_cache=True), cfg=cfg, client=upstream.client())

    assert not stale.exists()
    assert (tmp_path / "cache" / "terrain" / "7_66_45.png").exists()


def test_options_override_directories(tmp_path: Path, upstream: FakeUpstream) -> None:
    options = PipelineOptions(cache_dir=tmp_path / "other-cache", data_dir=tmp_path / "other-data")
    summary = run_pipeline(options, cfg=_cfg(tmp_path), client=upstream.client())
    assert summary.grid_path == tmp_path / "other-data" / GRID_FILENAME
    assert (tmp_path / "other-cache" / "obstacles" / "fi_obs.geojson").exists()
    assert not (tmp_path / "cache").exists()


def test_unwritable_output_is_fatal(tmp_path: Path, upstream: FakeUpstream) -> None:
    blocked = tmp_path / "blocked"
    blocked.write_text("a file where the data directory should be", encoding="utf-8")

    with pytest.raises(FatalError) as excinfo:
        run_pipeline(PipelineOptions(data_dir=blocked), cfg=_cfg(tmp_path), client=upstream.client())

    assert excinfo.value.reason_code == "pipeline_fatal"
    assert upstream.requests == []


def test_unwritable_manifest_is_fatal(tmp_path: Path, upstream: FakeUpstream) -> None:
    (tmp_path / "cache" / TERRAIN_MANIFEST_FILENAME).mkdir(parents=True)

    with pytest.raises(FatalError) as excinfo:
        run_pipeline(cfg=_cfg(tmp_path), client=upstream.client())

    assert excinfo.value.details == {"path": str(tmp_path / "cache" / TERRAIN_MANIFEST_FILENAME)}
    assert not (tmp_path / "data" / GRID_FILENAME).exists()
