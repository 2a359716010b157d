import json

import pandas as pd
import pytest

from scripts import cluster_detections, merge_identities


def write_detections(path):
    rows = []
    for t in (0.0, 1.0, 2.0):
        rows.append({"descriptor": [0.0, 0.0, 0.0], "bbox": [100, 100, 40, 40], "timestamp": t, "gender": "male"})
    for t in (5.0, 6.0):
        rows.append({"descriptor": [0.0, 0.0, 4.0], "bbox": [300, 50, 20, 20], "timestamp": t, "age": 25})
    path.write_text("\n".join(json.dumps(r) for r in rows) + "\n", encoding="utf-8")
    return path


def test_parse_args_accepts_threshold_alias():
    args = cluster_detections.parse_args(["faces.jsonl", "--threshold", "0.4", "--frame-size", "640", "480"])
    assert args.match_threshold == pytest.approx(0.4)
    assert args.frame_size == [640, 480]
    assert args.range_gap_seconds is None


def test_cluster_cli_writes_outputs(tmp_path):
    detections = write_detections(tmp_path / "faces.jsonl")
    out_dir = tmp_path / "out"

    code = cluster_detections.main(
        [str(detections), "--output-dir", str(out_dir), "--frame-size", "640", "480", "--suggest-merges"]
    )

    assert code == 0
    for name in ("session.json", "identities.json", "totals.csv", "timeline.csv"):
        assert (out_dir / name).exists()

    payload = json.loads((out_dir / "identities.json").read_text(encoding="utf-8"))
    assert [item["detection_count"] for item in payload["identities"]] == [3, 2]
    assert payload["identities"][0]["representative"]["crop"] is not None
    assert payload["config"]["match_threshold"] == pytest.approx(0.5)

    totals = pd.read_csv(out_dir / "totals.csv")
    assert list(totals["detections"]) == [3, 2]
    timeline = pd.read_csv(out_dir / "timeline.csv")
    assert len(timeline) == 7


def test_merge_cli_updates_session(tmp_path):
    detections = write_detections(tmp_path / "faces.jsonl")
    out_dir = tmp_path / "out"
    assert cluster_detections.main([str(detections), "--output-dir", str(out_dir)]) == 0
    session_path = out_dir / "session.json"

    code = merge_identities.main([str(session_path), "identity-0001", "identity-0002", "--label", "Host"])

    assert code == 0
    saved = json.loads(session_path.read_text(encoding="utf-8"))
    assert [item["id"] for item in saved["identities"]] == ["identity-0001"]
    assert saved["identities"][0]["label"] == "Host"
    assert saved["identities"][0]["merged_from"][0]["id"] == "identity-0002"
    summaries = json.loads((out_dir / "identities.json").read_text(encoding="utf-8"))
    assert summaries["identities"][0]["label"] == "Host"
    assert summaries["identities"][0]["detection_count"] == 5


def test_merge_cli_rejects_unknown_id_without_writing(tmp_path):
    detections = write_detections(tmp_path / "faces.jsonl")
    out_dir = tmp_path / "out"
    cluster_detections.main([str(detections), "--output-dir", str(out_dir)])
    session_path = out_dir / "session.json"
    before = session_path.read_text(encoding="utf-8")

    assert merge_identities.main([str(session_path), "identity-0001", "identity-0042"]) == 2
    assert session_path.read_text(encoding="utf-8") == before


def test_merge_cli_dry_run_leaves_session(tmp_path):
    detections = write_detections(tmp_path / "faces.jsonl")
    out_dir = tmp_path / "out"
    cluster_detections.main([str(detections), "--output-dir", str(out_dir)])
    session_path = out_dir / "session.json"
    before = session_path.read_text(encoding="utf-8")

    assert merge_identities.main([str(session_path), "identity-0001", "identity-0002", "--dry-run"]) == 0
    assert session_path.read_text(encoding="utf-8") == before
