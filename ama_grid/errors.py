from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class AmaBuildError(Exception):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class FormatError(AmaBuildError):
    """Bytes are not a PNG stream (bad signature, truncated chunk, broken deflate data)."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__("image_format_invalid", message, details)


class UnsupportedFormatError(AmaBuildError):
    """A valid PNG using a bit depth, colour type or interlace mode we do not decode."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__("image_format_unsupported", message, details)


class FetchError(AmaBuildError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__("fetch_failed", message, details)


class ParseError(AmaBuildError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__("obstacle_file_invalid", message, details)


class FatalError(AmaBuildError):
    """The build cannot produce its artifacts; surfaces as a non-zero exit."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__("pipeline_fatal", message, details)
