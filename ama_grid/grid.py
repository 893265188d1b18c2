from __future__ import annotations

import math
from collections.abc import Iterator, Mapping

from .tiles import CellKey

METERS_TO_FEET = 3.28084

MORA_THRESHOLD_FT = 5000.0
MORA_BUFFER_LOW_FT = 1000.0
MORA_BUFFER_HIGH_FT = 2000.0


class CellMaxTable(Mapping[CellKey, float]):
    """Running per-cell maximum, in metres.

    Updates only ever raise a value. NaN and infinities are ignored.
    """

    def __init__(self, values: Mapping[CellKey, float] | None = None) -> None:
        self._values: dict[CellKey, float] = {}
        if values:
            for key, value in values.items():
                self.update(key, value)

    def update(self, key: CellKey, value: float) -> None:
        if not math.isfinite(value):
            return
        current = self._values.get(key)
        if current is None or value > current:
            self._values[key] = float(value)

    def merge(self, other: Mapping[CellKey, float]) -> "CellMaxTable":
        for key, value in other.items():
            self.update(key, value)
        return self

    def __getitem__(self, key: CellKey) -> float:
        return self._values[key]

    def __iter__(self) -> Iterator[CellKey]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"CellMaxTable({self._values!r})"


def grid_sort_key(key: CellKey) -> tuple[int, int]:
    # north to south, then west to east
    return -key[0], key[1]


def apply_mora_buffer(highest_ft: float) -> int:
    if highest_ft <= MORA_THRESHOLD_FT:
        buffered = highest_ft + MORA_BUFFER_LOW_FT
    else:
        buffered = highest_ft + MORA_BUFFER_HIGH_FT
    return int(math.ceil(buffered / 100.0) * 100)


def fuse_grid(
    terrain_max: Mapping[CellKey, float],
    obstacle_max: Mapping[CellKey, float],
) -> list[list[int]]:
    """Combine terrain and obstacle maxima into ``[lat, lon, ama_ft]`` rows.

    Every cell present in either table gets exactly one row.
    """
    rows: list[list[int]] = []
    for key in sorted(set(terrain_max) | set(obstacle_max), key=grid_sort_key):
        highest_m = max(terrain_max.get(key, 0.0), obstacle_max.get(key, 0.0))
        ama = apply_mora_buffer(highest_m * METERS_TO_FEET)
        rows.append([int(key[0]), int(key[1]), ama])
    return rows
