"""Exception hierarchy for castscan."""

from __future__ import annotations

from typing import Iterable, Optional


class CastScanError(Exception):
    """Base class for all castscan errors."""


class ExtractionTimeout(CastScanError):
    """A single frame's seek or descriptor extraction exceeded its deadline."""

    def __init__(self, timestamp: float, timeout: float) -> None:
        super().__init__(f"Extraction at t={timestamp:.3f}s exceeded {timeout:.2f}s")
        self.timestamp = timestamp
        self.timeout = timeout


class EmptyInput(CastScanError):
    """No frames or no detections were produced.

    The analysis runner never raises this; an empty run yields an empty identity
    list. Callers that require data may raise it themselves.
    """


class UnknownIdentity(CastScanError, KeyError):
    """A command referenced an identity id that is not live."""

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = sorted(set(missing))
        super().__init__(f"Unknown identity id(s): {', '.join(self.missing)}")

    def __str__(self) -> str:  # KeyError quotes its argument otherwise
        return self.args[0]


class ModelUnavailable(CastScanError):
    """The external descriptor extractor failed to initialize."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class AnalysisInProgress(CastScanError):
    """Another analysis run already holds the session."""


class DescriptorMismatch(CastScanError, ValueError):
    """Descriptor dimensionality differs from the session's."""


class InvalidMerge(CastScanError, ValueError):
    """Merge request is malformed (target listed as source, duplicate sources)."""
