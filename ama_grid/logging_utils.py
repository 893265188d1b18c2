from __future__ import annotations

import logging
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .errors import AmaBuildError
from .settings import settings

LOGGER_NAME = "ama_grid"
LOG_FILENAME = "build.log.jsonl"


def _parse_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _resolve_log_dir(out_dir: str) -> Path | None:
    """First directory, in order of preference, that accepts a new file."""
    for log_dir in (
        Path(out_dir) / "logs",
        Path(gettempdir()) / LOGGER_NAME / "logs",
    ):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            probe = log_dir / ".writetest"
            probe.touch(exist_ok=True)
            probe.unlink(missing_ok=True)
        except OSError:
            continue
        return log_dir
    return None


def _formatter() -> logging.Formatter:
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(message)s",
        rename_fields={"asctime": "ts", "levelname": "level"},
    )


def configure_logging(level: str | None = None, out_dir: str | None = None) -> logging.Logger:
    """(Re)build the build logger: JSON lines on stderr and in ``<out_dir>/logs``.

    Safe to call more than once; existing handlers are replaced, not stacked.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(_parse_level(level or settings.log_level))
    logger.propagate = False

    formatter = _formatter()
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    log_dir = _resolve_log_dir(out_dir or settings.out_dir)
    file_error: str | None = None
    if log_dir is None:
        file_error = "no writable log directory"
    else:
        try:
            file_handler = logging.FileHandler(log_dir / LOG_FILENAME, encoding="utf-8")
        except OSError as exc:
            file_error = str(exc)
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger._configured = True  # type: ignore[attr-defined]
    if file_error is not None:
        logger.warning("log_file_unavailable", extra={"event": "log_file_unavailable", "detail": file_error})
    return logger


def get_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if getattr(logger, "_configured", False):
        return logger
    return configure_logging()


def set_log_level(name: str) -> None:
    get_logger().setLevel(_parse_level(name))


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    # Structured: event is message + a top-level key
    get_logger().log(level, event, extra={"event": event, **fields})


def log_error(event: str, exc: AmaBuildError, *, level: int = logging.WARNING, **fields: Any) -> None:
    """Log a build error with its reason code and details flattened into the record."""
    payload = {**(exc.details or {}), **fields}
    log_event(event, level=level, reason_code=exc.reason_code, detail=str(exc), **payload)
