import json
import os

import gtsam
import pytest

from robust_pgo.models import BetweenFactor, LOOP_CLOSURE
from robust_pgo.optimizer import optimize_batch
from robust_pgo.params import DISABLED, RobustSolverParams, params_from_tokens
from robust_pgo.solver import RobustSolver, SolverBusyError, SolverState
from robust_pgo.store import UnknownNodeError
from tests.scenarios import (
    LC_COV_2D, max_translation_error, odometry_factors, square_ground_truth, square_scenario,
)


def _solve(params, with_outlier=True):
    gt, factors = square_scenario(with_outlier)
    solver = RobustSolver(params)
    solver.update(factors, gt)
    return gt, solver


def test_naive_least_squares_is_corrupted_by_the_outlier():
    gt, solver = _solve(RobustSolverParams())
    assert solver.accepted == frozenset({0, 1})
    assert max_translation_error(solver.estimate, gt) > 1.0


@pytest.mark.parametrize("method", ["pmc_exact", "pmc_heu", "clipper"])
@pytest.mark.parametrize("pcm", [("PCM2dOrig", 3.0, 3.0), ("PCM2dSimp", 1.0, 0.5)])
def test_pcm_rejects_the_outlier(method, pcm):
    token, t, r = pcm
    gt, solver = _solve(params_from_tokens(token, "NoGNC", t, r, 1.0, max_clique_method=method))
    assert solver.accepted == frozenset({0})
    assert solver.rejected == frozenset({1})
    assert solver.weights == {0: 1.0, 1: 0.0}
    assert max_translation_error(solver.estimate, gt) < 0.05
    assert solver.state is SolverState.OPTIMIZED


def test_gnc_rejects_the_outlier():
    gt, solver = _solve(params_from_tokens("NoPCM", "GNC", 0.0, 0.0, 1.0))
    assert solver.gnc_converged
    assert solver.weights[0] == pytest.approx(1.0, abs=1e-3)
    assert solver.weights[1] == pytest.approx(0.0, abs=1e-3)
    assert solver.accepted == frozenset({0})
    assert max_translation_error(solver.estimate, gt) < 0.05


def test_pcm_and_gnc_compose():
    gt, solver = _solve(params_from_tokens("PCM2dOrig", "GNC", 3.0, 3.0, 1.0))
    assert solver.pcm_inliers == frozenset({0})
    assert solver.accepted == frozenset({0})
    assert max_translation_error(solver.estimate, gt) < 0.05


@pytest.mark.parametrize("method", ["pmc_exact", "pmc_heu", "clipper"])
def test_pcm_with_infinite_thresholds_accepts_every_closure(method):
    _, solver = _solve(params_from_tokens("PCM2dSimp", "NoGNC", DISABLED, DISABLED, 0.0, max_clique_method=method))
    assert solver.params.pcm_enabled
    assert solver.consistency_graph.is_complete()
    assert solver.pcm_inliers == frozenset({0, 1})
    assert solver.accepted == frozenset({0, 1})


def test_disabled_pcm_matches_plain_least_squares():
    gt, solver = _solve(params_from_tokens("NoPCM", "NoGNC", 0.0, 0.0, 0.0))
    plain = optimize_batch(solver.store.build_graph(), solver.store.initial_values())
    assert solver.estimate.equals(plain.values, 1e-9)


def test_disabled_gnc_matches_least_squares_over_the_clique():
    gt, solver = _solve(params_from_tokens("PCM2dOrig", "NoGNC", 3.0, 3.0, 0.0))
    plain = optimize_batch(solver.store.build_graph(accepted=solver.accepted), solver.store.initial_values())
    assert solver.estimate.equals(plain.values, 1e-9)


def test_runs_are_deterministic():
    params = params_from_tokens("PCM2dOrig", "GNC", 3.0, 3.0, 1.0, max_clique_method="clipper")
    _, first = _solve(params)
    _, second = _solve(params)
    assert first.accepted == second.accepted
    assert first.weights == second.weights


def test_odometry_only_graph():
    gt = square_ground_truth()
    solver = RobustSolver(RobustSolverParams().set_pcm_params(3.0, 3.0))
    solver.update(odometry_factors(gt), gt)
    assert solver.accepted == frozenset() and solver.rejected == frozenset()
    assert max_translation_error(solver.estimate, gt) < 1e-6


def test_incremental_updates_match_single_batch():
    params = params_from_tokens("PCM2dOrig", "NoGNC", 3.0, 3.0, 0.0)
    gt, factors = square_scenario()
    odom = factors[:19]
    solver = RobustSolver(params)
    solver.update(odom[:9], {k: gt[k] for k in range(10)})
    assert solver.state is SolverState.OPTIMIZED
    solver.update(odom[9:] + factors[19:], {k: gt[k] for k in range(10, 20)})
    _, batch = _solve(params)
    assert solver.accepted == batch.accepted
    assert max_translation_error(solver.estimate, gt) < 0.05


def test_unknown_node_leaves_solver_untouched():
    gt, solver = _solve(params_from_tokens("PCM2dOrig", "NoGNC", 3.0, 3.0, 0.0))
    estimate = gtsam.Values(solver.estimate)
    accepted = solver.accepted
    bogus = BetweenFactor(3, 42, gtsam.Pose2(), LC_COV_2D, kind=LOOP_CLOSURE)
    with pytest.raises(UnknownNodeError):
        solver.update([bogus], {})
    assert solver.state is SolverState.OPTIMIZED
    assert solver.accepted == accepted
    assert solver.store.loop_closure_count == 2
    assert solver.estimate.equals(estimate, 1e-12)


def test_empty_solver_state():
    solver = RobustSolver()
    assert solver.state is SolverState.EMPTY
    solver.update([], {})
    assert solver.state is SolverState.EMPTY
    assert solver.estimate.size() == 0


def test_nested_calls_raise_busy():
    gt, factors = square_scenario()
    solver = RobustSolver()

    class ReentrantKpi:
        def ingest(self, *args):
            solver.save_data("unused")

    solver.kpi = ReentrantKpi()
    with pytest.raises(SolverBusyError):
        solver.update(factors, gt)
    solver.kpi = None
    solver.update([], {})  # guard released


def test_save_data_writes_artifacts_idempotently(tmp_path):
    _, solver = _solve(params_from_tokens("PCM2dOrig", "GNC", 3.0, 3.0, 1.0))
    out = tmp_path / "run"
    solver.save_data(str(out))
    names = ["result.g2o", "loop_closures.json", "timing.json"]
    first = {n: (out / n).read_bytes() for n in names}
    solver.save_data(str(out))
    assert {n: (out / n).read_bytes() for n in names} == first

    report = json.loads(first["loop_closures.json"])
    assert [e["id"] for e in report["accepted"]] == [0]
    assert [e["id"] for e in report["rejected"]] == [1]
    assert report["rejected"][0]["key1"] == 17
    g2o = first["result.g2o"].decode().splitlines()
    assert sum(1 for line in g2o if line.startswith("VERTEX_SE2")) == 20
    assert sum(1 for line in g2o if line.startswith("EDGE_SE2")) == 19 + 1
    assert "FIX 0" in g2o
    timing = json.loads(first["timing.json"])
    assert timing["stages"]["optimize"]["count"] >= 1


def test_save_data_uses_configured_output_folder(tmp_path):
    params = params_from_tokens("NoPCM", "NoGNC", 0.0, 0.0, 0.0, output_folder=str(tmp_path / "cfg"))
    _, solver = _solve(params)
    assert solver.save_data() == str(tmp_path / "cfg")
    assert os.path.exists(tmp_path / "cfg" / "result.g2o")


def test_recheck_consistency_keeps_the_selection():
    _, solver = _solve(params_from_tokens("PCM2dOrig", "NoGNC", 3.0, 3.0, 0.0))
    before = solver.consistency_graph.edges()
    solver.recheck_consistency()
    assert solver.consistency_graph.edges() == before
    assert solver.accepted == frozenset({0})


@pytest.mark.parametrize("closures_first", [True, False])
def test_late_odometry_edge_recovers_loop_closures(closures_first):
    gt, factors = square_scenario()
    odom, closures = factors[:19], factors[19:]
    solver = RobustSolver(params_from_tokens("PCM2dOrig", "NoGNC", 3.0, 3.0, 0.0))
    solver.update(odom[:5], {k: gt[k] for k in range(6)})
    solver.update(odom[6:] + (closures if closures_first else []), {k: gt[k] for k in range(6, 20)})
    if closures_first:
        # spans two odometry segments, so nothing can be verified yet
        assert solver.accepted == frozenset()

    solver.update([odom[5]] + ([] if closures_first else closures))
    assert solver.store.summary()["segments"] == 1
    assert solver.accepted == frozenset({0})
    assert solver.rejected == frozenset({1})
    assert max_translation_error(solver.estimate, gt) < 0.05


def test_update_accepts_gtsam_values():
    gt, factors = square_scenario()
    values = gtsam.Values()
    for k, pose in gt.items():
        values.insert(k, pose)
    solver = RobustSolver(params_from_tokens("PCM2dOrig", "NoGNC", 3.0, 3.0, 0.0))
    solver.update(factors, values)
    assert solver.accepted == frozenset({0})
    assert max_translation_error(solver.estimate, gt) < 0.05
