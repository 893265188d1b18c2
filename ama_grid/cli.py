from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Iterable
from pathlib import Path

from .errors import FatalError
from .logging_utils import log_error, set_log_level
from .pipeline import PipelineOptions, run_pipeline


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build the Area Minimum Altitude grid from Terrarium tiles and OpenAIP obstacles."
    )
    parser.add_argument(
        "--skip-terrain",
        action="store_true",
        help="Do not fetch terrain tiles; aggregate whatever tiles are already cached.",
    )
    parser.add_argument(
        "--clear-cache",
        action="store_true",
        help="Delete the whole cache directory before running.",
    )
    parser.add_argument("--cache-dir", type=Path, default=None)
    parser.add_argument("--data-dir", type=Path, default=None)
    parser.add_argument("--workers", type=int, default=None, help="Processes used to scan terrain tiles.")
    parser.add_argument("--log-level", type=str, default=None)
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    if args.log_level:
        set_log_level(args.log_level)

    options = PipelineOptions(
        skip_terrain=bool(args.skip_terrain),
        clear_cache=bool(args.clear_cache),
        cache_dir=args.cache_dir,
        data_dir=args.data_dir,
        workers=max(1, int(args.workers)) if args.workers is not None else None,
    )
    try:
        summary = run_pipeline(options)
    except FatalError as exc:
        log_error("ama_build_failed", exc, level=logging.ERROR)
        print(f"Build failed: {exc}", file=sys.stderr)
        return 1

    print(f"Wrote {summary.grid_cells} cells to {summary.grid_path}")
    print(f"Wrote {summary.display_obstacles} obstacles to {summary.obstacles_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
