#!/usr/bin/env python3
"""Cluster exported face detections into identities and write summaries."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from castscan.attribution.aggregate import enrich_identities, identities_to_timeline, identities_to_totals
from castscan.clustering.engine import ClusteringSession
from castscan.config import load_config
from castscan.io_utils import ensure_dir, setup_logging
from castscan.session_io import load_detections, save_session, write_summaries
from castscan.types import sort_by_timestamp

LOGGER = logging.getLogger("scripts.cluster_detections")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cluster face detections into per-person identities.")
    parser.add_argument("detections", type=Path, help="Detections file (.jsonl, .json or .parquet).")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Output directory (default: <detections stem>_identities next to the input).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional analysis configuration YAML.",
    )
    parser.add_argument(
        "--match-threshold",
        "--threshold",
        dest="match_threshold",
        type=float,
        default=None,
        help="Euclidean distance below which a face joins an identity (alias: --threshold).",
    )
    parser.add_argument(
        "--range-gap",
        dest="range_gap_seconds",
        type=float,
        default=None,
        help="Max gap in seconds bridged inside one on-screen range.",
    )
    parser.add_argument(
        "--frame-size",
        type=int,
        nargs=2,
        default=None,
        metavar=("WIDTH", "HEIGHT"),
        help="Source frame size, used to clamp best-shot crops.",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Video duration in seconds for the per-second timeline (default: last detection).",
    )
    parser.add_argument(
        "--suggest-merges",
        action="store_true",
        help="Log identity pairs whose centroids are within the match threshold.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    detections_path = args.detections.expanduser().resolve()
    if not detections_path.exists():
        raise SystemExit(f"Detections file not found: {detections_path}")

    config = load_config(args.config).with_overrides(
        match_threshold=args.match_threshold,
        range_gap_seconds=args.range_gap_seconds,
    )
    output_dir = ensure_dir(
        args.output_dir or detections_path.parent / f"{detections_path.stem}_identities"
    )

    detections = sort_by_timestamp(load_detections(detections_path))
    session = ClusteringSession(config)
    with session.analysis_run():
        for _ in tqdm(session.iter_assign(detections), total=len(detections), desc="Clustering", unit="face"):
            pass
        session.refresh()

    frame_size = tuple(args.frame_size) if args.frame_size else None
    summaries = enrich_identities(session.identities, config, frame_size)
    LOGGER.info("Found %d identities in %d detections", len(summaries), len(detections))
    for summary in summaries:
        LOGGER.info(
            "  %s (%s): %d detections, %d ranges, %.1fs on screen",
            summary.id,
            summary.label,
            summary.detection_count,
            len(summary.time_ranges),
            summary.screen_time_seconds,
        )

    if args.suggest_merges:
        for left, right, distance in session.suggest_merges():
            LOGGER.info("  merge candidate: %s + %s (distance=%.3f)", left, right, distance)

    save_session(output_dir / "session.json", session)
    write_summaries(output_dir / "identities.json", summaries, extra={"config": config.to_dict()})
    identities_to_totals(summaries).to_csv(output_dir / "totals.csv", index=False)

    duration = args.duration
    if duration is None:
        duration = max((d.timestamp for d in detections), default=0.0) + config.sampling_interval_seconds
    if duration > 0:
        identities_to_timeline(summaries, duration).to_csv(output_dir / "timeline.csv", index=False)
    LOGGER.info("Wrote outputs to %s", output_dir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
