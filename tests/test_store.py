import numpy as np
import pytest
import gtsam

from robust_pgo.models import BetweenFactor, PriorFactor, LOOP_CLOSURE
from robust_pgo.store import MeasurementStore, StoreError, UnknownNodeError
from tests.scenarios import (
    LC_COV_2D, ODOM_COV_2D, good_closure, bad_closure, odometry_factors, square_ground_truth,
)


def _store_with_square():
    gt = square_ground_truth()
    store = MeasurementStore()
    store.ingest(odometry_factors(gt) + [good_closure(gt), bad_closure(gt)], gt)
    return gt, store


def test_ingest_counts_and_loop_closure_ids():
    _, store = _store_with_square()
    assert store.counts == {"prior": 0, "odometry": 19, "loop_closure": 2}
    assert [lc.id for lc in store.loop_closures] == [0, 1]
    assert store.endpoints(0) == (19, 0)
    assert store.endpoints(1) == (17, 2)
    assert store.dim == 3


def test_first_key_is_anchored_without_prior():
    _, store = _store_with_square()
    assert store.anchor is not None and store.anchor.key == 0
    # anchor + odometry + both loop closures
    assert store.build_graph().size() == 1 + 19 + 2


def test_explicit_prior_replaces_anchor():
    gt = square_ground_truth()
    store = MeasurementStore()
    prior = PriorFactor(0, gt[0], np.eye(3) * 1e-6)
    store.ingest([prior] + odometry_factors(gt), gt)
    assert store.anchor is None
    assert store.counts["prior"] == 1


def test_unknown_node_leaves_store_untouched():
    gt, store = _store_with_square()
    before = (dict(store.counts), len(store.initial), store.loop_closure_count)
    bogus = BetweenFactor(3, 99, gtsam.Pose2(1, 0, 0), LC_COV_2D, kind=LOOP_CLOSURE)
    with pytest.raises(UnknownNodeError) as info:
        store.ingest([good_closure(gt), bogus], {})
    assert info.value.key == 99
    assert (dict(store.counts), len(store.initial), store.loop_closure_count) == before


def test_dimension_mismatch_is_rejected():
    _, store = _store_with_square()
    with pytest.raises(StoreError):
        store.ingest([], {100: gtsam.Pose3()})


def test_wrong_covariance_shape_is_rejected():
    gt = square_ground_truth()
    store = MeasurementStore()
    bad = BetweenFactor(0, 1, gt[0].between(gt[1]), np.eye(6), kind="odometry")
    with pytest.raises(StoreError):
        store.ingest([bad], gt)
    assert store.counts["odometry"] == 0


def test_odometry_between_matches_ground_truth():
    gt, store = _store_with_square()
    rel = store.odometry_between(2, 17)
    assert rel.pose.equals(gt[2].between(gt[17]), 1e-9)
    back = store.odometry_between(17, 2)
    assert back.pose.equals(gt[17].between(gt[2]), 1e-9)
    assert store.odometry_between(4, 4).pose.equals(gtsam.Pose2(), 1e-12)


def test_odometry_covariance_grows_along_chain():
    _, store = _store_with_square()
    short = store.odometry_between(0, 1).covariance
    long = store.odometry_between(0, 10).covariance
    assert np.allclose(short, ODOM_COV_2D, atol=1e-8)
    assert np.trace(long) > np.trace(short)
    assert np.all(np.linalg.eigvalsh(long) > 0)


def test_disconnected_segments_have_no_odometry():
    gt = square_ground_truth()
    store = MeasurementStore()
    odom = odometry_factors(gt)
    store.ingest(odom[:5] + odom[10:], gt)  # breaks the chain between 5 and 10
    assert store.odometry_between(0, 5) is not None
    assert store.odometry_between(2, 12) is None
    assert store.summary()["segments"] == 2


def test_build_graph_skips_zero_weight_closures():
    _, store = _store_with_square()
    graph = store.build_graph(accepted=[0, 1], weights={0: 1.0, 1: 0.0})
    assert graph.size() == 1 + 19 + 1


def test_loop_closure_costs_are_zero_at_ground_truth():
    gt, store = _store_with_square()
    values = store.initial_values()
    costs = store.loop_closure_costs(values, [0, 1])
    assert costs[0] == pytest.approx(0.0, abs=1e-9)
    assert costs[1] > 1000.0


def _store_in_pieces(gt):
    """Odometry 0..5, then 6..19, then the 5 -> 6 edge that joins them."""
    odom = odometry_factors(gt)
    store = MeasurementStore()
    store.ingest(odom[:5], {k: gt[k] for k in range(6)})
    store.ingest(odom[6:], {k: gt[k] for k in range(6, 20)})
    assert store.summary()["segments"] == 2
    return store, odom[5]


def test_late_odometry_joins_segments():
    gt, whole = _store_with_square()
    store, bridge = _store_in_pieces(gt)
    assert store.odometry_between(2, 17) is None

    result = store.ingest([bridge])
    assert result.rerooted_keys == set(range(6, 20))
    assert store.summary()["segments"] == 1
    for a, b in ((2, 17), (17, 2), (0, 19), (7, 12)):
        rel, ref = store.odometry_between(a, b), whole.odometry_between(a, b)
        assert rel.pose.equals(ref.pose, 1e-9)
        assert np.allclose(rel.covariance, ref.covariance, atol=1e-9)


def test_odometry_back_to_the_root_does_not_extend_chain():
    gt, store = _store_with_square()
    before = store.odometry_between(0, 19)
    cycle = BetweenFactor(19, 0, gt[19].between(gt[0]), ODOM_COV_2D, kind="odometry")
    result = store.ingest([cycle])
    assert result.rerooted_keys == set()
    assert store.counts["odometry"] == 20
    assert store.summary()["segments"] == 1
    assert store.odometry_between(0, 19).pose.equals(before.pose, 1e-12)


def test_ingest_accepts_gtsam_values():
    gt = square_ground_truth()
    values = gtsam.Values()
    for k, pose in gt.items():
        values.insert(k, pose)
    store = MeasurementStore()
    result = store.ingest(odometry_factors(gt), values)
    assert result.new_keys == sorted(gt)
    assert all(store.initial[k].equals(gt[k], 1e-12) for k in gt)


def test_ingest_rejects_values_that_are_not_a_mapping():
    gt = square_ground_truth()
    store = MeasurementStore()
    with pytest.raises(StoreError, match="mapping"):
        store.ingest(odometry_factors(gt), [gt[0], gt[1]])
    values = gtsam.Values()
    values.insert(0, gt[0])
    with pytest.raises(StoreError):
        store.ingest([], values)
    assert store.initial == {}
