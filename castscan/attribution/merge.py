"""Post-hoc identity merges with full aggregate recomputation and provenance."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Mapping, Optional, Sequence, Tuple

from castscan.attribution.aggregate import IdentitySummary, enrich_identities, refresh_identity
from castscan.clustering.centroid import Centroid
from castscan.errors import InvalidMerge, UnknownIdentity
from castscan.types import Identity, MergeRecord

if TYPE_CHECKING:
    from castscan.clustering.engine import ClusteringSession

LOGGER = logging.getLogger("castscan.merge")


def validate_merge(
    identities: Mapping[str, Identity],
    target_id: str,
    source_ids: Sequence[str],
) -> Tuple[Identity, List[Identity]]:
    """Resolve every id up front so a failed merge mutates nothing."""
    requested = [target_id, *source_ids]
    missing = [identity_id for identity_id in requested if identity_id not in identities]
    if missing:
        raise UnknownIdentity(missing)
    if target_id in source_ids:
        raise InvalidMerge(f"Identity {target_id} cannot be merged into itself")
    if len(set(source_ids)) != len(source_ids):
        raise InvalidMerge(f"Duplicate source ids in merge request: {list(source_ids)}")
    return identities[target_id], [identities[source_id] for source_id in source_ids]


def merge_into(target: Identity, sources: Sequence[Identity], range_gap_seconds: float) -> Identity:
    """Move ``sources`` into ``target`` and recompute everything from the combined detections.

    The centroid is rebuilt with a full mean instead of folding the sources in
    one by one, so merge order cannot influence it and rounding error from the
    online updates is discarded.
    """
    combined = list(target.detections)
    for source in sources:
        combined.extend(source.detections)
    # Timestamp ties are broken on descriptor bytes so source order never matters.
    target.detections = sorted(combined, key=lambda d: (d.timestamp, d.descriptor.tobytes()))
    target.centroid = Centroid.from_descriptors(d.descriptor for d in target.detections)
    refresh_identity(target, range_gap_seconds)
    LOGGER.debug(
        "Recomputed %s from %d detections (%d ranges)",
        target.id,
        target.detection_count,
        len(target.time_ranges),
    )
    for source in sources:
        target.merged_from.append(MergeRecord(id=source.id, label=source.label))
        target.merged_from.extend(source.merged_from)
        source.detections = []
    return target


def merge_identities(
    session: "ClusteringSession",
    target_id: str,
    source_ids: Sequence[str],
    frame_size: Optional[Tuple[int, int]] = None,
) -> List[IdentitySummary]:
    """Command entry point: merge, then return the refreshed identity list."""
    session.merge(target_id, source_ids)
    return enrich_identities(session.identities, session.config, frame_size)


def rename_identity(
    session: "ClusteringSession",
    identity_id: str,
    label: str,
    frame_size: Optional[Tuple[int, int]] = None,
) -> List[IdentitySummary]:
    session.rename(identity_id, label)
    return enrich_identities(session.identities, session.config, frame_size)
