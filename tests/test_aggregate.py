import numpy as np
import pytest

from castscan.attribution.aggregate import (
    coalesce_time_ranges,
    crop_box,
    enrich_identities,
    identities_to_timeline,
    identities_to_totals,
    select_representative,
    summarize_demographic,
    summarize_expressions,
)
from castscan.clustering.engine import ClusteringSession
from castscan.config import AnalysisConfig, CropExpansion
from castscan.types import BBox, CropBox, Detection, TimeRange


def make_detection(timestamp, bbox=(0, 0, 10, 10), descriptor=None, **kwargs) -> Detection:
    if descriptor is None:
        descriptor = np.zeros((8,), dtype=np.float32)
    return Detection(descriptor=descriptor, bbox=bbox, timestamp=timestamp, **kwargs)


def test_coalesce_bridges_gaps_up_to_threshold():
    ranges = coalesce_time_ranges([0.0, 1.0, 3.0, 5.5, 6.0, 20.0], gap_seconds=2.0)
    assert ranges == [TimeRange(0.0, 3.0), TimeRange(5.5, 6.0), TimeRange(20.0, 20.0)]


def test_coalesce_sorts_unsorted_input():
    assert coalesce_time_ranges([10.0, 0.0, 1.0], 2.0) == [TimeRange(0.0, 1.0), TimeRange(10.0, 10.0)]


def test_coalesce_empty():
    assert coalesce_time_ranges([], 2.0) == []


def test_time_range_invariant_holds_for_random_streams():
    rng = np.random.default_rng(21)
    gap = 2.0
    stamps = np.cumsum(rng.exponential(scale=1.5, size=300))
    ranges = coalesce_time_ranges(stamps.tolist(), gap)
    for current in ranges:
        assert current.start <= current.end
    for prev, nxt in zip(ranges, ranges[1:]):
        assert prev.end < nxt.start
        assert nxt.start - prev.end > gap
    assert sum(1 for t in stamps if any(r.start <= t <= r.end for r in ranges)) == len(stamps)


def test_representative_is_largest_box():
    detections = [
        make_detection(0.0, bbox=(0, 0, 10, 10)),
        make_detection(1.0, bbox=(0, 0, 20, 20)),
        make_detection(2.0, bbox=(0, 0, 15, 15)),
    ]
    assert [d.bbox.area for d in detections] == [100, 400, 225]
    assert select_representative(detections) is detections[1]


def test_representative_tie_keeps_earliest():
    late = make_detection(5.0, bbox=(0, 0, 10, 10))
    early = make_detection(1.0, bbox=(50, 50, 10, 10))
    assert select_representative([late, early]) is early


def test_demographic_majority_and_mean_over_known_values():
    detections = [
        make_detection(0.0, gender="female", age=30.0),
        make_detection(1.0, gender="male", age=None),
        make_detection(2.0, gender="female", age=34.0),
        make_detection(3.0),
    ]
    demographic = summarize_demographic(detections)
    assert demographic.gender == "female"
    assert demographic.avg_age == pytest.approx(32.0)


def test_demographic_unknown_when_nothing_reported():
    demographic = summarize_demographic([make_detection(0.0)])
    assert demographic.gender is None
    assert demographic.avg_age is None


def test_demographic_tie_goes_to_first_seen():
    detections = [make_detection(2.0, gender="female"), make_detection(1.0, gender="male")]
    assert summarize_demographic(detections).gender == "male"


def test_expression_summary_counts_dominant_labels():
    detections = [
        make_detection(0.0, expressions={"happy": 0.9, "neutral": 0.1}),
        make_detection(1.0, expressions={"happy": 0.6, "sad": 0.4}),
        make_detection(2.0, expressions={"neutral": 0.7, "happy": 0.3}),
        make_detection(3.0),
    ]
    assert summarize_expressions(detections) == {"happy": 2, "neutral": 1}


def test_crop_box_expands_around_center():
    crop = crop_box(BBox(100, 100, 40, 40), 1000, 1000)
    assert crop == CropBox(x=90.0, y=80.0, w=60.0, h=80.0)


def test_crop_box_clamps_to_frame():
    crop = crop_box(BBox(0, 0, 40, 40), 50, 50, CropExpansion(width_scale=1.5, height_scale=2.0))
    assert crop == CropBox(x=0.0, y=0.0, w=50.0, h=50.0)


def test_crop_box_vertical_anchor_places_face_high():
    crop = crop_box(BBox(100, 100, 40, 40), 1000, 1000, CropExpansion(vertical_anchor=1.0 / 3.0))
    assert crop.y == pytest.approx(100 - 40 / 3.0)
    assert crop.h == pytest.approx(80.0)


def test_enrich_orders_by_detection_count_and_builds_crop():
    near = np.zeros((8,))
    far = np.full((8,), 5.0)
    session = ClusteringSession(AnalysisConfig())
    session.assign_many(
        [make_detection(0.0, descriptor=far, bbox=(10, 10, 20, 20))]
        + [make_detection(float(t), descriptor=near, bbox=(100, 100, 30, 30)) for t in (1, 2, 3)]
    )
    summaries = enrich_identities(session.identities, session.config, frame_size=(640, 480))

    assert [s.detection_count for s in summaries] == [3, 1]
    top = summaries[0]
    assert top.appearances == [1.0, 2.0, 3.0]
    assert top.time_ranges == [TimeRange(1.0, 3.0)]
    assert top.crop == CropBox(x=92.5, y=85.0, w=45.0, h=60.0)
    payload = top.to_dict()
    assert payload["representative"]["crop"] == {"x": 92.5, "y": 85.0, "w": 45.0, "h": 60.0}
    assert payload["screen_time_seconds"] == pytest.approx(2.0)


def test_totals_and_timeline_tables():
    session = ClusteringSession()
    session.assign_many([make_detection(float(t)) for t in (0, 1, 2, 10)])
    summaries = enrich_identities(session.identities)

    totals = identities_to_totals(summaries)
    assert totals.iloc[0]["detections"] == 4
    assert totals.iloc[0]["screen_time_seconds"] == pytest.approx(2.0)

    timeline = identities_to_timeline(summaries, duration_seconds=12.0)
    column = timeline[summaries[0].id].tolist()
    assert column[:3] == [1, 1, 0]
    assert column[10] == 1
    assert column[5] == 0


def test_totals_empty():
    totals = identities_to_totals([])
    assert list(totals.columns)[:2] == ["id", "label"]
    assert totals.empty
