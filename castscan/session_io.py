"""Session save/restore and detection loading for CLI entrypoints."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import numpy as np

from castscan.attribution.aggregate import IdentitySummary
from castscan.clustering.engine import ClusteringSession
from castscan.io_utils import dump_json, load_json, read_records
from castscan.types import BBox, Detection

LOGGER = logging.getLogger("castscan.io")

SESSION_FORMAT_VERSION = 1


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return bool(np.isscalar(value) and np.isnan(value))
    except TypeError:
        return False


def record_to_detection(record: Mapping[str, Any]) -> Detection:
    """Build a Detection from a JSON or parquet row.

    Bounding boxes may be nested (``bbox``/``box``) or flat ``x, y, w, h``
    columns; null-valued expressions (parquet struct padding) are dropped.
    """
    raw_box = record.get("bbox", record.get("box"))
    if raw_box is None:
        raw_box = {k: record[k] for k in ("x", "y", "w", "h")}
    expressions = record.get("expressions")
    if isinstance(expressions, Mapping):
        expressions = {k: v for k, v in expressions.items() if not _is_missing(v)} or None
    else:
        expressions = None
    age = record.get("age")
    gender = record.get("gender")
    score = record.get("score")
    return Detection(
        descriptor=np.asarray(record["descriptor"], dtype=np.float64),
        bbox=BBox.from_value(raw_box),
        timestamp=float(record["timestamp"]),
        age=None if _is_missing(age) else float(age),
        gender=None if _is_missing(gender) or gender == "" else str(gender),
        expressions=expressions,
        score=None if _is_missing(score) else float(score),
    )


def load_detections(path: Path) -> List[Detection]:
    detections: List[Detection] = []
    for idx, record in enumerate(read_records(path)):
        try:
            detections.append(record_to_detection(record))
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Skipping detection record %d in %s: %s", idx, path, exc)
    LOGGER.info("Loaded %d detections from %s", len(detections), path)
    return detections


def save_session(path: Path, session: ClusteringSession) -> Path:
    payload = {"format_version": SESSION_FORMAT_VERSION, **session.to_dict()}
    dump_json(path, payload)
    LOGGER.info("Saved session with %d identities to %s", len(session), path)
    return path


def load_session(path: Path) -> ClusteringSession:
    payload = load_json(path)
    version = payload.get("format_version", SESSION_FORMAT_VERSION)
    if version != SESSION_FORMAT_VERSION:
        raise ValueError(f"Unsupported session format version {version} in {path}")
    session = ClusteringSession.from_dict(payload)
    LOGGER.info("Loaded session with %d identities from %s", len(session), path)
    return session


def write_summaries(path: Path, summaries: Iterable[IdentitySummary], extra: Optional[Dict[str, Any]] = None) -> Path:
    payload: Dict[str, Any] = dict(extra or {})
    payload["identities"] = [summary.to_dict() for summary in summaries]
    dump_json(path, payload)
    return path
