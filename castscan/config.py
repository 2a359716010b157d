"""Runtime configuration for clustering, aggregation and analysis runs."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from castscan.io_utils import load_yaml

LOGGER = logging.getLogger("castscan.config")

BATCH_SAMPLING_INTERVAL = 1.0
ONLINE_SAMPLING_INTERVAL = 0.5


def default_sampling_interval(mode: str) -> float:
    """Seconds between sampled frames for ``batch`` or ``online`` runs."""
    if mode == "batch":
        return BATCH_SAMPLING_INTERVAL
    if mode == "online":
        return ONLINE_SAMPLING_INTERVAL
    raise ValueError(f"Unknown analysis mode '{mode}'; expected 'batch' or 'online'")


@dataclass
class CropExpansion:
    width_scale: float = 1.5
    height_scale: float = 2.0
    # Fraction of the added height placed above the face box. 0.5 centres the
    # expansion; 1/3 leaves the face in the upper third of the thumbnail.
    vertical_anchor: float = 0.5


@dataclass
class AnalysisConfig:
    """Tunable parameters with their defaults.

    ``match_threshold`` is a heuristic and is never auto-calibrated: lowering it
    splits one person into several identities, raising it folds distinct people
    into one. Merges are the intended correction for over-splitting.
    """

    match_threshold: float = 0.5
    range_gap_seconds: float = 2.0
    mode: str = "batch"
    sampling_interval_seconds: Optional[float] = None
    crop_expansion: CropExpansion = field(default_factory=CropExpansion)
    frame_timeout_seconds: float = 3.0
    min_success_rate: float = 0.5
    max_samples: Optional[int] = None

    def __post_init__(self) -> None:
        if isinstance(self.crop_expansion, Mapping):
            self.crop_expansion = CropExpansion(**self.crop_expansion)
        if self.sampling_interval_seconds is None:
            self.sampling_interval_seconds = default_sampling_interval(self.mode)
        if self.match_threshold <= 0:
            raise ValueError("match_threshold must be positive")
        if self.range_gap_seconds < 0:
            raise ValueError("range_gap_seconds must be non-negative")
        if self.sampling_interval_seconds <= 0:
            raise ValueError("sampling_interval_seconds must be positive")
        if self.frame_timeout_seconds <= 0:
            raise ValueError("frame_timeout_seconds must be positive")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalysisConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            LOGGER.warning("Ignoring unknown config keys: %s", unknown)
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def with_overrides(self, **overrides: Any) -> "AnalysisConfig":
        """Return a copy with non-``None`` overrides applied (CLI flags)."""
        data = self.to_dict()
        applied = {k: v for k, v in overrides.items() if v is not None}
        if "mode" in applied and "sampling_interval_seconds" not in applied:
            data["sampling_interval_seconds"] = None
        data.update(applied)
        return AnalysisConfig.from_dict(data)


def load_config(path: Optional[Path]) -> AnalysisConfig:
    if path is None:
        return AnalysisConfig()
    return AnalysisConfig.from_dict(load_yaml(path))
