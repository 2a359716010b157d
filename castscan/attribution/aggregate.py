"""Aggregation utilities converting identity detections into display-ready summaries."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from castscan.config import AnalysisConfig, CropExpansion
from castscan.types import BBox, CropBox, Demographic, Detection, Identity, MergeRecord, TimeRange

LOGGER = logging.getLogger("castscan.aggregate")

FrameSize = Tuple[int, int]


def appearances(detections: Iterable[Detection]) -> List[float]:
    return sorted(d.timestamp for d in detections)


def extend_time_ranges(ranges: List[TimeRange], timestamp: float, gap_seconds: float) -> None:
    """Extend the last open range with ``timestamp`` or start a new one.

    Callers feed timestamps in non-decreasing order.
    """
    if ranges and timestamp - ranges[-1].end <= gap_seconds:
        last = ranges[-1]
        ranges[-1] = TimeRange(start=last.start, end=max(last.end, timestamp))
        return
    ranges.append(TimeRange(start=timestamp, end=timestamp))


def coalesce_time_ranges(timestamps: Iterable[float], gap_seconds: float) -> List[TimeRange]:
    """Coalesce appearances into sorted, disjoint ranges separated by more than ``gap_seconds``."""
    ranges: List[TimeRange] = []
    for timestamp in sorted(timestamps):
        extend_time_ranges(ranges, timestamp, gap_seconds)
    return ranges


def summarize_demographic(detections: Sequence[Detection]) -> Demographic:
    """Majority-vote gender and mean age over detections that report them.

    Gender ties go to whichever gender was seen first in timestamp order.
    """
    ordered = sorted(detections, key=lambda d: d.timestamp)
    genders = [d.gender for d in ordered if d.gender is not None]
    ages = [float(d.age) for d in ordered if d.age is not None]

    gender: Optional[str] = None
    if genders:
        votes = Counter(genders)
        top = max(votes.values())
        gender = next(g for g in genders if votes[g] == top)
    avg_age = float(np.mean(ages)) if ages else None
    return Demographic(gender=gender, avg_age=avg_age)


def summarize_expressions(detections: Iterable[Detection]) -> Dict[str, int]:
    """Count each detection's dominant expression label, most frequent first."""
    counts = Counter(
        d.dominant_expression for d in detections if d.dominant_expression is not None
    )
    return dict(sorted(counts.items(), key=lambda item: (-item[1], item[0])))


def select_representative(detections: Sequence[Detection]) -> Optional[Detection]:
    """Pick the detection with the largest bounding-box area.

    Area is a proxy for a closer, clearer face; blur, pose and occlusion are not
    considered. Ties keep the earliest detection.
    """
    best: Optional[Detection] = None
    for detection in sorted(detections, key=lambda d: d.timestamp):
        if best is None or detection.bbox.area > best.bbox.area:
            best = detection
    return best


def crop_box(
    bbox: BBox,
    frame_width: float,
    frame_height: float,
    expansion: Optional[CropExpansion] = None,
) -> CropBox:
    """Expand ``bbox`` by the configured scales around its centre and clamp to the frame."""
    expansion = expansion or CropExpansion()
    new_w = bbox.w * expansion.width_scale
    new_h = bbox.h * expansion.height_scale
    x0 = bbox.x - (new_w - bbox.w) / 2.0
    y0 = bbox.y - (new_h - bbox.h) * expansion.vertical_anchor
    x1 = x0 + new_w
    y1 = y0 + new_h

    x0 = min(max(0.0, x0), float(frame_width))
    y0 = min(max(0.0, y0), float(frame_height))
    x1 = min(max(0.0, x1), float(frame_width))
    y1 = min(max(0.0, y1), float(frame_height))
    return CropBox(x=x0, y=y0, w=max(0.0, x1 - x0), h=max(0.0, y1 - y0))


def refresh_identity(identity: Identity, range_gap_seconds: float) -> Identity:
    """Recompute every derived field of ``identity`` from its detections."""
    identity.time_ranges = coalesce_time_ranges(
        (d.timestamp for d in identity.detections), range_gap_seconds
    )
    identity.demographic = summarize_demographic(identity.detections)
    identity.representative = select_representative(identity.detections)
    return identity


@dataclass
class IdentitySummary:
    """Read-only record handed to the presentation layer."""

    id: str
    label: str
    detection_count: int
    representative: Optional[Detection]
    crop: Optional[CropBox]
    demographic: Demographic
    expressions: Dict[str, int]
    appearances: List[float]
    time_ranges: List[TimeRange]
    merged_from: List[MergeRecord] = field(default_factory=list)

    @property
    def first_appearance(self) -> Optional[float]:
        return self.appearances[0] if self.appearances else None

    @property
    def screen_time_seconds(self) -> float:
        return float(sum(r.duration for r in self.time_ranges))

    @property
    def dominant_expression(self) -> Optional[str]:
        return next(iter(self.expressions), None)

    def to_dict(self) -> Dict:
        rep = self.representative
        return {
            "id": self.id,
            "label": self.label,
            "detection_count": self.detection_count,
            "first_appearance": self.first_appearance,
            "screen_time_seconds": self.screen_time_seconds,
            "representative": None
            if rep is None
            else {
                "timestamp": rep.timestamp,
                "bbox": rep.bbox.to_dict(),
                "score": rep.score,
                "crop": self.crop.to_dict() if self.crop is not None else None,
            },
            "demographic": self.demographic.to_dict(),
            "expressions": dict(self.expressions),
            "dominant_expression": self.dominant_expression,
            "appearances": list(self.appearances),
            "time_ranges": [r.to_dict() for r in self.time_ranges],
            "merged_from": [m.to_dict() for m in self.merged_from],
        }


def summarize_identity(
    identity: Identity,
    config: Optional[AnalysisConfig] = None,
    frame_size: Optional[FrameSize] = None,
) -> IdentitySummary:
    config = config or AnalysisConfig()
    refresh_identity(identity, config.range_gap_seconds)
    crop: Optional[CropBox] = None
    if identity.representative is not None and frame_size is not None:
        frame_w, frame_h = frame_size
        crop = crop_box(identity.representative.bbox, frame_w, frame_h, config.crop_expansion)
    return IdentitySummary(
        id=identity.id,
        label=identity.label,
        detection_count=identity.detection_count,
        representative=identity.representative,
        crop=crop,
        demographic=identity.demographic,
        expressions=summarize_expressions(identity.detections),
        appearances=appearances(identity.detections),
        time_ranges=list(identity.time_ranges),
        merged_from=list(identity.merged_from),
    )


def enrich_identities(
    identities: Iterable[Identity],
    config: Optional[AnalysisConfig] = None,
    frame_size: Optional[FrameSize] = None,
) -> List[IdentitySummary]:
    """Summaries ordered by descending detection count, then first appearance."""
    summaries = [summarize_identity(identity, config, frame_size) for identity in identities]
    summaries.sort(
        key=lambda s: (
            -s.detection_count,
            s.first_appearance if s.first_appearance is not None else float("inf"),
        )
    )
    LOGGER.debug("Enriched %d identities", len(summaries))
    return summaries


def identities_to_totals(summaries: Iterable[IdentitySummary]) -> pd.DataFrame:
    """One row per identity with its detection count and coalesced screen time."""
    rows = [
        {
            "id": s.id,
            "label": s.label,
            "detections": s.detection_count,
            "ranges": len(s.time_ranges),
            "first_appearance": s.first_appearance,
            "screen_time_seconds": s.screen_time_seconds,
        }
        for s in summaries
    ]
    if not rows:
        return pd.DataFrame(
            columns=["id", "label", "detections", "ranges", "first_appearance", "screen_time_seconds"]
        )
    df = pd.DataFrame(rows)
    return df.sort_values(["detections", "screen_time_seconds"], ascending=False).reset_index(drop=True)


def identities_to_timeline(summaries: Iterable[IdentitySummary], duration_seconds: float) -> pd.DataFrame:
    """Per-second presence table: one column per identity id, 1 where on screen."""
    total_seconds = int(np.ceil(max(0.0, duration_seconds)))
    data: Dict[str, np.ndarray] = {"second": np.arange(total_seconds)}
    for summary in summaries:
        presence = np.zeros((total_seconds,), dtype=np.int32)
        for time_range in summary.time_ranges:
            start_sec = int(np.floor(time_range.start))
            end_sec = max(start_sec + 1, int(np.ceil(time_range.end)))
            presence[start_sec:end_sec] = 1
        data[summary.id] = presence
    return pd.DataFrame(data)
