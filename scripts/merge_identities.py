#!/usr/bin/env python3
"""Merge identities inside a saved clustering session."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

from castscan.attribution.merge import merge_identities, rename_identity
from castscan.errors import InvalidMerge, UnknownIdentity
from castscan.io_utils import setup_logging
from castscan.session_io import load_session, save_session, write_summaries

LOGGER = logging.getLogger("scripts.merge_identities")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Merge identities in a saved session.json")
    parser.add_argument("session", type=Path, help="session.json written by castscan-cluster")
    parser.add_argument("target", help="Identity id that survives the merge")
    parser.add_argument("sources", nargs="+", help="Identity ids absorbed into the target")
    parser.add_argument("--label", default=None, help="Optional new label for the merged identity")
    parser.add_argument(
        "--summaries",
        type=Path,
        default=None,
        help="Where to write refreshed identities.json (default: next to the session).",
    )
    parser.add_argument(
        "--frame-size",
        type=int,
        nargs=2,
        default=None,
        metavar=("WIDTH", "HEIGHT"),
        help="Source frame size, used to clamp best-shot crops.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Validate and report without writing")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging()

    if not args.session.exists():
        raise SystemExit(f"Session file not found: {args.session}")
    session = load_session(args.session)

    frame_size = tuple(args.frame_size) if args.frame_size else None
    try:
        summaries = merge_identities(session, args.target, args.sources, frame_size)
    except (UnknownIdentity, InvalidMerge) as exc:
        LOGGER.error("Merge rejected: %s", exc)
        return 2
    if args.label:
        summaries = rename_identity(session, args.target, args.label, frame_size)

    merged = session.get(args.target)
    LOGGER.info(
        "%s now holds %d detections across %d ranges (merged_from=%s)",
        merged.id,
        merged.detection_count,
        len(merged.time_ranges),
        [m.id for m in merged.merged_from],
    )
    if args.dry_run:
        LOGGER.info("DRY RUN - session not written")
        return 0

    save_session(args.session, session)
    summaries_path = args.summaries or args.session.with_name("identities.json")
    write_summaries(summaries_path, summaries, extra={"config": session.config.to_dict()})
    LOGGER.info("Updated %s and %s", args.session, summaries_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
