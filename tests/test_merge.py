import numpy as np
import pytest

from castscan.attribution.merge import merge_identities, rename_identity
from castscan.clustering.engine import ClusteringSession
from castscan.config import AnalysisConfig
from castscan.errors import AnalysisInProgress, InvalidMerge, UnknownIdentity
from castscan.types import Detection, MergeRecord, TimeRange

DIM = 16


def vec(value: float, axis: int = 0) -> np.ndarray:
    out = np.zeros((DIM,), dtype=np.float64)
    out[axis] = value
    return out


def make_detection(descriptor, timestamp, bbox=(0, 0, 10, 10), **kwargs) -> Detection:
    return Detection(descriptor=descriptor, bbox=bbox, timestamp=timestamp, **kwargs)


def two_group_session() -> ClusteringSession:
    session = ClusteringSession(AnalysisConfig(match_threshold=0.5, range_gap_seconds=2.0))
    v1, v2 = vec(0.0), vec(1.0)
    session.assign_many(
        [make_detection(v1, t, gender="male", age=40.0) for t in (0, 1, 2)]
        + [make_detection(v2, t, bbox=(0, 0, 30, 30), gender="female", age=20.0) for t in (5, 6, 7)]
    )
    return session


def three_group_session() -> ClusteringSession:
    session = ClusteringSession(AnalysisConfig(match_threshold=0.5, range_gap_seconds=2.0))
    detections = (
        [make_detection(vec(0.0), t, gender="male", age=30.0) for t in (0, 1)]
        + [make_detection(vec(1.0), t, gender="female", age=50.0, bbox=(0, 0, 25, 25)) for t in (4, 5, 6)]
        + [make_detection(vec(1.0, axis=1), t, gender="female", age=44.0) for t in (20, 21)]
    )
    session.assign_many(detections)
    return session


def snapshot(session: ClusteringSession):
    return {
        identity.id: (
            identity.label,
            [id(d) for d in identity.detections],
            identity.centroid.vector.tolist(),
            list(identity.time_ranges),
            list(identity.merged_from),
        )
        for identity in session.identities
    }


def test_merge_two_identities_recomputes_everything():
    session = two_group_session()
    first, second = session.identities
    merged = session.merge(first.id, [second.id])

    assert merged is first
    assert merged.detection_count == 6
    expected = np.mean([vec(0.0)] * 3 + [vec(1.0)] * 3, axis=0)
    assert np.allclose(merged.centroid.vector, expected)
    assert merged.time_ranges == [TimeRange(0.0, 2.0), TimeRange(5.0, 7.0)]
    assert merged.merged_from == [MergeRecord(id=second.id, label=second.label)]
    assert merged.representative.bbox.area == 900
    assert merged.demographic.gender == "male"
    assert merged.demographic.avg_age == pytest.approx(30.0)
    assert [d.timestamp for d in merged.detections] == [0, 1, 2, 5, 6, 7]
    assert len(session) == 1


def test_absorbed_identity_is_unresolvable():
    session = two_group_session()
    first, second = session.identities
    session.merge(first.id, [second.id])

    assert second.id not in session
    with pytest.raises(UnknownIdentity):
        session.get(second.id)
    with pytest.raises(UnknownIdentity):
        session.merge(second.id, [first.id])
    with pytest.raises(UnknownIdentity):
        session.merge(first.id, [second.id])


def test_merge_preserves_every_detection_once():
    session = three_group_session()
    before = sorted(id(d) for identity in session.identities for d in identity.detections)
    ids = [identity.id for identity in session.identities]
    session.merge(ids[1], [ids[0], ids[2]])
    after = sorted(id(d) for identity in session.identities for d in identity.detections)
    assert before == after


def test_merge_source_order_does_not_change_result():
    left = three_group_session()
    right = three_group_session()
    a, b, c = [identity.id for identity in left.identities]

    merged_left = left.merge(a, [b, c])
    merged_right = right.merge(a, [c, b])

    assert np.array_equal(merged_left.centroid.vector, merged_right.centroid.vector)
    assert merged_left.demographic == merged_right.demographic
    assert merged_left.time_ranges == merged_right.time_ranges
    assert merged_left.representative.timestamp == merged_right.representative.timestamp


def test_merge_with_unknown_source_mutates_nothing():
    session = three_group_session()
    a, b, _c = [identity.id for identity in session.identities]
    before = snapshot(session)

    with pytest.raises(UnknownIdentity) as excinfo:
        session.merge(a, [b, "identity-0404"])

    assert excinfo.value.missing == ["identity-0404"]
    assert snapshot(session) == before


def test_merge_with_unknown_target_mutates_nothing():
    session = two_group_session()
    before = snapshot(session)
    with pytest.raises(UnknownIdentity):
        session.merge("nope", [identity.id for identity in session.identities])
    assert snapshot(session) == before


def test_merge_rejects_self_and_duplicate_sources():
    session = two_group_session()
    first, second = session.identities
    before = snapshot(session)
    with pytest.raises(InvalidMerge):
        session.merge(first.id, [first.id])
    with pytest.raises(InvalidMerge):
        session.merge(first.id, [second.id, second.id])
    assert snapshot(session) == before


def test_provenance_accumulates_across_merges():
    session = three_group_session()
    a, b, c = session.identities
    session.merge(b.id, [c.id])
    session.merge(a.id, [b.id])

    survivor = session.get(a.id)
    assert [m.id for m in survivor.merged_from] == [b.id, c.id]
    assert survivor.detection_count == 7


def test_centroid_matches_mean_after_merge_and_further_assignment():
    session = three_group_session()
    a, b, _c = session.identities
    merged = session.merge(a.id, [b.id])
    session.assign(make_detection(vec(0.5), 30.0))
    assert np.allclose(merged.centroid.vector, merged.descriptor_matrix().mean(axis=0))


def test_merge_command_returns_sorted_summaries():
    session = three_group_session()
    a, b, c = [identity.id for identity in session.identities]
    summaries = merge_identities(session, c, [a])
    assert [s.id for s in summaries] == [c, b]
    assert summaries[0].detection_count == 4
    assert summaries[0].merged_from[0].id == a


def test_merge_refused_during_active_run():
    session = two_group_session()
    first, second = session.identities
    with session.analysis_run():
        with pytest.raises(AnalysisInProgress):
            session.merge(first.id, [second.id])
    assert len(session) == 2


def test_rename_updates_label_and_rejects_blank():
    session = two_group_session()
    first, _second = session.identities
    summaries = rename_identity(session, first.id, "  Host ")
    assert session.get(first.id).label == "Host"
    assert [s.label for s in summaries if s.id == first.id] == ["Host"]
    with pytest.raises(ValueError):
        session.rename(first.id, "   ")
    with pytest.raises(UnknownIdentity):
        rename_identity(session, "identity-0404", "Ghost")
