"""Nearest-centroid identity clustering over a stream of face detections."""

from __future__ import annotations

import bisect
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.distance import cdist

from castscan.attribution.aggregate import extend_time_ranges, refresh_identity
from castscan.attribution.merge import merge_into, validate_merge
from castscan.clustering.centroid import Centroid
from castscan.config import AnalysisConfig
from castscan.errors import AnalysisInProgress, DescriptorMismatch, UnknownIdentity
from castscan.types import Detection, Identity, MergeRecord, sort_by_timestamp

LOGGER = logging.getLogger("castscan.clustering")


class ClusteringSession:
    """Owns the live identity registry for one analysis run.

    Each ``assign`` is a complete operation: the detection is appended, the
    centroid updated and the identity's time ranges and best shot extended, so
    a run aborted between detections leaves a consistent registry. Demographics
    are refreshed by :meth:`refresh` (called at the end of a run and by merges).
    """

    def __init__(self, config: Optional[AnalysisConfig] = None) -> None:
        self.config = config or AnalysisConfig()
        self._identities: Dict[str, Identity] = {}
        self._next_index = 1
        self._dimension: Optional[int] = None
        self._last_timestamp: Optional[float] = None
        self._run_lock = threading.Lock()

    # ------------------------------------------------------------------ registry
    @property
    def identities(self) -> List[Identity]:
        """Live identities in creation order."""
        return list(self._identities.values())

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    @property
    def detection_count(self) -> int:
        return sum(identity.detection_count for identity in self._identities.values())

    def __len__(self) -> int:
        return len(self._identities)

    def __contains__(self, identity_id: object) -> bool:
        return identity_id in self._identities

    def get(self, identity_id: str) -> Identity:
        try:
            return self._identities[identity_id]
        except KeyError:
            raise UnknownIdentity([identity_id]) from None

    def rename(self, identity_id: str, label: str) -> Identity:
        identity = self.get(identity_id)
        label = (label or "").strip()
        if not label:
            raise ValueError("Identity label cannot be empty")
        LOGGER.info("Renamed %s: %s -> %s", identity_id, identity.label, label)
        identity.label = label
        return identity

    def refresh(self) -> List[Identity]:
        for identity in self._identities.values():
            refresh_identity(identity, self.config.range_gap_seconds)
        return self.identities

    # ---------------------------------------------------------------- assignment
    def _new_identity(self, detection: Detection) -> Identity:
        index = self._next_index
        while f"identity-{index:04d}" in self._identities:
            index += 1
        self._next_index = index + 1
        identity = Identity(
            id=f"identity-{index:04d}",
            label=f"Person {index}",
            centroid=Centroid.from_descriptor(detection.descriptor),
            detections=[detection],
            representative=detection,
        )
        extend_time_ranges(identity.time_ranges, detection.timestamp, self.config.range_gap_seconds)
        self._identities[identity.id] = identity
        return identity

    def nearest(self, descriptor: np.ndarray) -> Tuple[Optional[Identity], float]:
        """Closest live identity and its distance; ties go to the oldest identity."""
        best: Optional[Identity] = None
        best_distance = float("inf")
        for identity in self._identities.values():
            distance = identity.centroid.distance(descriptor)
            if distance < best_distance:
                best, best_distance = identity, distance
        return best, best_distance

    def assign(self, detection: Detection) -> Identity:
        """Attach ``detection`` to the nearest identity or start a new one."""
        if self._dimension is None:
            self._dimension = detection.dimension
        elif detection.dimension != self._dimension:
            raise DescriptorMismatch(
                f"Descriptor dimension {detection.dimension} does not match session dimension {self._dimension}"
            )

        in_order = self._last_timestamp is None or detection.timestamp >= self._last_timestamp
        if not in_order:
            LOGGER.warning(
                "Detection at t=%.3f arrived after t=%.3f; assignment order is no longer chronological",
                detection.timestamp,
                self._last_timestamp,
            )
        else:
            self._last_timestamp = detection.timestamp

        match, distance = self.nearest(detection.descriptor)
        if match is None or distance >= self.config.match_threshold:
            identity = self._new_identity(detection)
            LOGGER.debug(
                "t=%.3f new identity %s (nearest distance=%.4f, threshold=%.3f)",
                detection.timestamp,
                identity.id,
                distance,
                self.config.match_threshold,
            )
            return identity

        self._append(match, detection)
        LOGGER.debug(
            "t=%.3f -> %s (distance=%.4f, count=%d)",
            detection.timestamp,
            match.id,
            distance,
            match.detection_count,
        )
        return match

    def _append(self, identity: Identity, detection: Detection) -> None:
        detections = identity.detections
        if not detections or detection.timestamp >= detections[-1].timestamp:
            detections.append(detection)
            extend_time_ranges(identity.time_ranges, detection.timestamp, self.config.range_gap_seconds)
        else:
            keys = [d.timestamp for d in detections]
            detections.insert(bisect.bisect_right(keys, detection.timestamp), detection)
            refresh_identity(identity, self.config.range_gap_seconds)
        identity.centroid.update(detection.descriptor)
        rep = identity.representative
        if rep is None or detection.bbox.area > rep.bbox.area or (
            detection.bbox.area == rep.bbox.area and detection.timestamp < rep.timestamp
        ):
            identity.representative = detection

    def iter_assign(self, detections: Iterable[Detection]) -> Iterator[Tuple[int, Identity]]:
        """Online mode: assign detections as they arrive, yielding after each one."""
        for index, detection in enumerate(detections):
            yield index, self.assign(detection)

    def assign_many(self, detections: Iterable[Detection]) -> List[Identity]:
        """Batch mode: sort all detections by timestamp and assign them in one pass."""
        ordered = sort_by_timestamp(list(detections))
        if not ordered:
            LOGGER.info("No detections to cluster; identity set stays empty")
            return self.refresh()
        for _ in self.iter_assign(ordered):
            pass
        LOGGER.info(
            "Clustered %d detections into %d identities (threshold=%.3f)",
            len(ordered),
            len(self._identities),
            self.config.match_threshold,
        )
        return self.refresh()

    # -------------------------------------------------------------------- merges
    def merge(self, target_id: str, source_ids: Sequence[str]) -> Identity:
        """Absorb ``source_ids`` into ``target_id``; validated before any mutation."""
        if self._run_lock.locked():
            raise AnalysisInProgress("Cannot merge identities while an analysis run is active")
        target, sources = validate_merge(self._identities, target_id, source_ids)
        merge_into(target, sources, self.config.range_gap_seconds)
        for source in sources:
            del self._identities[source.id]
        LOGGER.info(
            "Merged %s into %s (%d detections, %d live identities)",
            [s.id for s in sources],
            target.id,
            target.detection_count,
            len(self._identities),
        )
        return target

    def suggest_merges(self, max_distance: Optional[float] = None) -> List[Tuple[str, str, float]]:
        """Identity pairs whose centroids lie within ``max_distance``, nearest first.

        Defaults to the match threshold. Nothing is merged; callers decide.
        """
        limit = self.config.match_threshold if max_distance is None else max_distance
        live = self.identities
        if len(live) < 2:
            return []
        matrix = np.stack([identity.centroid.vector for identity in live], axis=0)
        dists = cdist(matrix, matrix, metric="euclidean")
        pairs: List[Tuple[str, str, float]] = []
        rows, cols = np.triu_indices(len(live), k=1)
        for i, j in zip(rows, cols):
            distance = float(dists[i, j])
            if distance <= limit:
                pairs.append((live[i].id, live[j].id, distance))
        pairs.sort(key=lambda item: item[2])
        return pairs

    # ---------------------------------------------------------------- run guard
    @contextmanager
    def analysis_run(self) -> Iterator["ClusteringSession"]:
        """Hold the single in-flight run slot; concurrent runs are rejected.

        Each run starts its own chronological order check. Consecutive runs on
        one session add to the same identities; use a fresh session per video.
        """
        if not self._run_lock.acquire(blocking=False):
            raise AnalysisInProgress("An analysis run is already active for this session")
        self._last_timestamp = None
        try:
            yield self
        finally:
            self._run_lock.release()

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    # -------------------------------------------------------------- persistence
    def to_dict(self) -> Dict:
        return {
            "config": self.config.to_dict(),
            "next_index": self._next_index,
            "identities": [identity.to_dict() for identity in self._identities.values()],
        }

    @classmethod
    def from_dict(cls, payload: Dict) -> "ClusteringSession":
        """Restore a saved session; centroids are recomputed from the detections."""
        session = cls(AnalysisConfig.from_dict(payload.get("config") or {}))
        for raw in payload.get("identities", []):
            detections = sort_by_timestamp([Detection.from_dict(d) for d in raw.get("detections", [])])
            if not detections:
                LOGGER.warning("Skipping saved identity %s with no detections", raw.get("id"))
                continue
            identity = Identity(
                id=str(raw["id"]),
                label=str(raw.get("label") or raw["id"]),
                centroid=Centroid.from_descriptors(d.descriptor for d in detections),
                detections=detections,
                merged_from=[MergeRecord(id=str(m["id"]), label=str(m["label"])) for m in raw.get("merged_from", [])],
            )
            if session._dimension is None:
                session._dimension = detections[0].dimension
            elif detections[0].dimension != session._dimension:
                raise DescriptorMismatch(f"Saved identity {identity.id} has mismatched descriptor dimension")
            refresh_identity(identity, session.config.range_gap_seconds)
            session._identities[identity.id] = identity
        if session._identities:
            session._last_timestamp = max(i.detections[-1].timestamp for i in session._identities.values())
        session._next_index = max(int(payload.get("next_index", 1)), len(session._identities) + 1)
        return session
