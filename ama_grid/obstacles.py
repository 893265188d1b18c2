from __future__ import annotations

import gzip
import logging
import math
import re
import zlib
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ParseError
from .fetcher import FetchTask
from .grid import METERS_TO_FEET, CellMaxTable, grid_sort_key
from .logging_utils import log_error, log_event
from .tiles import BoundingBox, CellKey, cell_key

DEFAULT_HEIGHTS_M: dict[str, float] = {
    "wind_turbine": 200.0,
    "communications_tower": 100.0,
    "mast": 90.0,
    "chimney": 100.0,
}

_LEADING_NUMBER_RE = re.compile(r"^\s*([+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)")


class _Measure(BaseModel):
    model_config = ConfigDict(extra="ignore")

    value: float | None = Field(default=None, allow_inf_nan=False)


class ObstacleProperties(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str | None = None
    elevation: _Measure | None = None
    height: _Measure | None = None
    osm_tags: dict[str, Any] | None = Field(default=None, alias="osmTags")

    @property
    def tags(self) -> dict[str, Any]:
        return self.osm_tags or {}

    @property
    def elevation_m(self) -> float:
        return float(self.elevation.value or 0.0) if self.elevation is not None else 0.0

    @property
    def height_m(self) -> float:
        return float(self.height.value or 0.0) if self.height is not None else 0.0


class PointGeometry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    coordinates: list[float]

    @field_validator("coordinates")
    @classmethod
    def _lon_lat(cls, value: list[float]) -> list[float]:
        if len(value) < 2 or not all(math.isfinite(v) for v in value[:2]):
            raise ValueError("point geometry needs finite [lon, lat]")
        return value


class ObstacleFeature(BaseModel):
    model_config = ConfigDict(extra="ignore")

    geometry: PointGeometry
    properties: ObstacleProperties


class FeatureCollection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    features: list[Any] = Field(default_factory=list)


def _round_half_up(value: float, ndigits: int = 0) -> float:
    scale = 10**ndigits
    return math.floor(value * scale + 0.5) / scale


@dataclass(frozen=True)
class ObstacleEntry:
    lat: float
    lon: float
    top_m: float
    height_m: float
    label: str

    @property
    def top_ft(self) -> int:
        return int(_round_half_up(self.top_m * METERS_TO_FEET))

    @property
    def height_ft(self) -> int:
        return int(_round_half_up(self.height_m * METERS_TO_FEET))

    def as_row(self) -> list[Any]:
        return [
            _round_half_up(self.lat, 4),
            _round_half_up(self.lon, 4),
            self.top_ft,
            self.height_ft,
            self.label,
        ]


@dataclass
class ObstacleAggregate:
    obstacle_max: CellMaxTable = field(default_factory=CellMaxTable)
    display: list[ObstacleEntry] = field(default_factory=list)
    obstacle_count: int = 0
    files_parsed: int = 0
    files_missing: int = 0
    files_failed: int = 0


def obstacle_tasks(cache_dir: Path, base_url: str, countries: Sequence[str]) -> list[FetchTask]:
    return [
        FetchTask(
            name=f"{cc}_obs.geojson",
            url=f"{base_url}/{cc}_obs.geojson",
            destination=cache_dir / f"{cc}_obs.geojson",
        )
        for cc in countries
    ]


def _tag(tags: Mapping[str, Any], name: str) -> str:
    value = tags.get(name)
    return "" if value is None else str(value)


def _is_wind_turbine(tags: Mapping[str, Any]) -> bool:
    return (_tag(tags, "key") == "generator:method" and _tag(tags, "value") == "wind_turbine") or (
        _tag(tags, "power") == "generator" and _tag(tags, "generator:source") == "wind"
    )


def classify_structure(tags: Mapping[str, Any]) -> str | None:
    if _is_wind_turbine(tags):
        return "wind_turbine"
    man_made = _tag(tags, "man_made")
    value = _tag(tags, "value")
    if man_made in {"communications_tower", "tower"} or value in {"communications_tower", "tower"}:
        return "communications_tower"
    if man_made == "mast" or value == "mast":
        return "mast"
    if man_made == "chimney" or value == "chimney":
        return "chimney"
    return None


def parse_height_tag(tags: Mapping[str, Any]) -> float:
    """Height from free-text OSM tags (``"45"``, ``"45 m"``); 0 when absent or unusable."""
    raw = tags.get("height")
    if not raw and _tag(tags, "key") == "height":
        raw = tags.get("value")
    if not raw:
        return 0.0
    match = _LEADING_NUMBER_RE.match(str(raw))
    if match is None:
        return 0.0
    parsed = float(match.group(1))
    return parsed if math.isfinite(parsed) and parsed > 0 else 0.0


def obstacle_label(name: str | None, tags: Mapping[str, Any]) -> str:
    label = name or ""
    if label and label != "Obstacle":
        return label
    if _is_wind_turbine(tags):
        return "Wind turbine"
    if _tag(tags, "man_made"):
        return _tag(tags, "man_made")
    if _tag(tags, "value"):
        return _tag(tags, "value")
    return label


class ObstacleAccumulator:
    def __init__(
        self,
        bbox: BoundingBox,
        *,
        default_heights_m: Mapping[str, float] | None = None,
        min_display_height_m: float = 50.0,
    ) -> None:
        self.bbox = bbox
        self.default_heights_m = dict(DEFAULT_HEIGHTS_M)
        if default_heights_m:
            self.default_heights_m.update(default_heights_m)
        self.min_display_height_m = float(min_display_height_m)
        self.obstacle_max = CellMaxTable()
        self.obstacle_count = 0
        self._candidates: dict[CellKey, list[ObstacleEntry]] = defaultdict(list)

    def add_feature(self, raw: Any) -> bool:
        """Fold one GeoJSON feature in. Returns False when it was skipped."""
        try:
            feature = ObstacleFeature.model_validate(raw)
        except ValidationError:
            return False

        lon, lat = feature.geometry.coordinates[0], feature.geometry.coordinates[1]
        key = cell_key(lat, lon)
        if not self.bbox.contains_cell(key):
            return False

        props = feature.properties
        tags = props.tags
        elevation = props.elevation_m
        height = props.height_m
        if height == 0:
            height = parse_height_tag(tags)
        if height == 0:
            category = classify_structure(tags)
            if category is not None:
                height = self.default_heights_m[category]

        top = elevation + height
        if not math.isfinite(top) or top <= 0:
            return False

        self.obstacle_max.update(key, top)
        if height >= self.min_display_height_m:
            self._candidates[key].append(
                ObstacleEntry(lat=lat, lon=lon, top_m=top, height_m=height, label=obstacle_label(props.name, tags))
            )
        self.obstacle_count += 1
        return True

    def finalize(self, top_n: int) -> list[ObstacleEntry]:
        selected: list[ObstacleEntry] = []
        for key in sorted(self._candidates, key=grid_sort_key):
            ranked = sorted(self._candidates[key], key=lambda entry: entry.top_m, reverse=True)
            selected.extend(ranked[: max(0, int(top_n))])
        return selected


def load_feature_collection(data: bytes) -> list[Any]:
    if data[:2] == b"\x1f\x8b":
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as exc:
            raise ParseError(f"gzip payload is corrupt: {exc}") from exc
    try:
        collection = FeatureCollection.model_validate_json(data)
    except ValidationError as exc:
        raise ParseError(
            f"not a GeoJSON feature collection ({exc.error_count()} errors)",
            details={"error_count": exc.error_count()},
        ) from exc
    return collection.features


def aggregate_obstacles(
    cache_dir: Path,
    bbox: BoundingBox,
    countries: Sequence[str],
    *,
    default_heights_m: Mapping[str, float] | None = None,
    min_display_height_m: float = 50.0,
    top_n: int = 5,
) -> ObstacleAggregate:
    accumulator = ObstacleAccumulator(
        bbox,
        default_heights_m=default_heights_m,
        min_display_height_m=min_display_height_m,
    )
    result = ObstacleAggregate(obstacle_max=accumulator.obstacle_max)

    for cc in countries:
        path = cache_dir / f"{cc}_obs.geojson"
        if not path.exists():
            result.files_missing += 1
            continue
        try:
            features = load_feature_collection(path.read_bytes())
        except OSError as exc:
            result.files_failed += 1
            log_event("obstacle_file_unreadable", level=logging.WARNING, country=cc, detail=str(exc))
            continue
        except ParseError as exc:
            result.files_failed += 1
            log_error("obstacle_file_skipped", exc, country=cc)
            continue
        for feature in features:
            accumulator.add_feature(feature)
        result.files_parsed += 1

    result.display = accumulator.finalize(top_n)
    result.obstacle_count = accumulator.obstacle_count
    log_event(
        "obstacles_aggregated",
        obstacles=result.obstacle_count,
        cells=len(result.obstacle_max),
        display_obstacles=len(result.display),
        files_parsed=result.files_parsed,
        files_missing=result.files_missing,
        files_failed=result.files_failed,
        top_n=top_n,
    )
    return result
