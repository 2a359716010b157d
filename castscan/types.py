"""Common dataclasses and type aliases used across the castscan package."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

if TYPE_CHECKING:
    from castscan.clustering.centroid import Centroid

GENDERS = ("male", "female")


@dataclass(frozen=True)
class BBox:
    """Face bounding box in source-frame pixels (top-left origin)."""

    x: float
    y: float
    w: float
    h: float

    @property
    def area(self) -> float:
        return max(0.0, self.w) * max(0.0, self.h)

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}

    @classmethod
    def from_value(cls, value: Any) -> "BBox":
        """Accept a BBox, an ``{x, y, w, h}`` mapping or an ``(x, y, w, h)`` sequence."""
        if isinstance(value, BBox):
            return value
        if isinstance(value, Mapping):
            width = value.get("w", value.get("width"))
            height = value.get("h", value.get("height"))
            return cls(float(value["x"]), float(value["y"]), float(width), float(height))
        x, y, w, h = value
        return cls(float(x), float(y), float(w), float(h))


@dataclass(frozen=True, eq=False)
class Detection:
    """One face observed at one sampled timestamp.

    ``descriptor`` is stored as a read-only float64 vector so a detection can be
    shared between identities' bookkeeping without being mutated. Equality is
    identity-based; two detections with equal fields are still distinct records.
    """

    descriptor: np.ndarray
    bbox: BBox
    timestamp: float
    age: Optional[float] = None
    gender: Optional[str] = None
    expressions: Optional[Mapping[str, float]] = None
    score: Optional[float] = None

    def __post_init__(self) -> None:
        vec = np.array(self.descriptor, dtype=np.float64).reshape(-1)
        vec.setflags(write=False)
        object.__setattr__(self, "descriptor", vec)
        object.__setattr__(self, "bbox", BBox.from_value(self.bbox))
        object.__setattr__(self, "timestamp", float(self.timestamp))
        if self.gender is not None:
            gender = str(self.gender).lower()
            if gender not in GENDERS:
                raise ValueError(f"Unsupported gender '{self.gender}'; expected one of {GENDERS}")
            object.__setattr__(self, "gender", gender)
        if self.expressions is not None:
            object.__setattr__(
                self, "expressions", {str(k): float(v) for k, v in self.expressions.items()}
            )

    @property
    def dimension(self) -> int:
        return int(self.descriptor.shape[0])

    @property
    def dominant_expression(self) -> Optional[str]:
        if not self.expressions:
            return None
        return max(self.expressions.items(), key=lambda item: item[1])[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "descriptor": self.descriptor.tolist(),
            "bbox": self.bbox.to_dict(),
            "timestamp": self.timestamp,
            "age": self.age,
            "gender": self.gender,
            "expressions": dict(self.expressions) if self.expressions is not None else None,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Detection":
        age = payload.get("age")
        score = payload.get("score")
        return cls(
            descriptor=np.asarray(payload["descriptor"], dtype=np.float64),
            bbox=BBox.from_value(payload["bbox"]),
            timestamp=float(payload["timestamp"]),
            age=None if age is None else float(age),
            gender=payload.get("gender") or None,
            expressions=payload.get("expressions") or None,
            score=None if score is None else float(score),
        )


@dataclass(frozen=True)
class TimeRange:
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self) -> Dict[str, float]:
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class CropBox:
    """Rectangle to cut out of the source frame for the best-shot thumbnail."""

    x: float
    y: float
    w: float
    h: float

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}

    def as_slices(self) -> tuple:
        """Integer (row, column) slices for indexing an HxWxC frame array."""
        x0 = int(np.floor(self.x))
        y0 = int(np.floor(self.y))
        x1 = int(np.ceil(self.x + self.w))
        y1 = int(np.ceil(self.y + self.h))
        return slice(y0, y1), slice(x0, x1)


@dataclass
class Demographic:
    gender: Optional[str] = None
    avg_age: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"gender": self.gender, "avg_age": self.avg_age}


@dataclass(frozen=True)
class MergeRecord:
    id: str
    label: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "label": self.label}


@dataclass
class Identity:
    """A cluster of detections believed to depict the same person.

    Owned by a :class:`~castscan.clustering.engine.ClusteringSession`; derived
    fields (``time_ranges``, ``demographic``, ``representative``) are refreshed
    by :func:`castscan.attribution.aggregate.refresh_identity`.
    """

    id: str
    label: str
    centroid: Centroid
    detections: List[Detection] = field(default_factory=list)
    representative: Optional[Detection] = None
    time_ranges: List[TimeRange] = field(default_factory=list)
    demographic: Demographic = field(default_factory=Demographic)
    merged_from: List[MergeRecord] = field(default_factory=list)

    @property
    def detection_count(self) -> int:
        return len(self.detections)

    @property
    def first_appearance(self) -> Optional[float]:
        return self.detections[0].timestamp if self.detections else None

    def descriptor_matrix(self) -> np.ndarray:
        return np.stack([d.descriptor for d in self.detections], axis=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "centroid": self.centroid.vector.tolist(),
            "detections": [d.to_dict() for d in self.detections],
            "merged_from": [m.to_dict() for m in self.merged_from],
        }


def sort_by_timestamp(detections: Sequence[Detection]) -> List[Detection]:
    """Stable sort so equal timestamps keep arrival order."""
    return sorted(detections, key=lambda d: d.timestamp)
