"""Robust solver orchestrator.

One ``update`` call runs the whole pipeline on the accumulated graph:

    ingest -> consistency graph refresh -> max-clique inliers (PCM)
           -> GNC-TLS reweighting (or a single LM solve) -> estimate

PCM and GNC compose: when both are enabled GNC only reweights the loop
closures that survived clique selection.
"""
from enum import Enum
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union
import copy
import json
import logging
import os

try:
    import gtsam
except Exception:
    gtsam = None

from robust_pgo_common.timing import StageTimer

from .consistency import ConsistencyEvaluator
from .consistency_graph import ConsistencyGraph
from .geometry import values_to_dict
from .gnc import GncReweighter
from .loader import write_g2o
from .max_clique import make_selector
from .models import Factor
from .optimizer import OptimizationResult, optimize_batch
from .params import RobustSolverParams
from .store import MeasurementStore

if TYPE_CHECKING:
    from robust_pgo_common.kpi_logging import KPILogger

RESULT_G2O = "result.g2o"
LOOP_CLOSURES_JSON = "loop_closures.json"
TIMING_JSON = "timing.json"

# GNC weights at or above this count as inliers in the accepted set.
INLIER_WEIGHT = 0.5


class SolverState(Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    EVALUATING = "evaluating"
    OPTIMIZED = "optimized"


class SolverBusyError(RuntimeError):
    """update/save_data was called while an update is in flight."""


class RobustSolver:
    """Outlier-resilient pose-graph solver.

    The solver owns its state; it is only mutated inside ``update`` and
    ``recheck_consistency``. Parameters are copied at construction.
    """

    def __init__(self,
                 params: Optional[RobustSolverParams] = None,
                 logger: Optional[logging.Logger] = None,
                 kpi: Optional["KPILogger"] = None):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot run the robust solver")
        self.params = copy.deepcopy(params) if params is not None else RobustSolverParams()
        self.log = logger if logger is not None else logging.getLogger("robust_pgo.solver")
        self.kpi = kpi
        self.store = MeasurementStore()
        self.evaluator = ConsistencyEvaluator(self.store, self.params)
        self.consistency_graph = ConsistencyGraph(self.evaluator)
        self.selector = make_selector(self.params.max_clique_method, self.params.exact_time_limit)
        self.reweighter = GncReweighter(max_iterations=self.params.gnc_max_iterations,
                                        mu_step=self.params.gnc_mu_step,
                                        weight_tol=self.params.gnc_weight_tol,
                                        kpi=kpi,
                                        logger=self.log)
        self.timer = StageTimer()
        self._state = SolverState.EMPTY
        self._busy = False
        self._updates = 0
        self._estimate = gtsam.Values()
        self._pcm_inliers: FrozenSet[int] = frozenset()
        self._accepted: FrozenSet[int] = frozenset()
        self._rejected: FrozenSet[int] = frozenset()
        self._weights: Dict[int, float] = {}
        self._gnc_converged = True
        self._gnc_iterations = 0
        self._optimizer_converged = True

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def state(self) -> SolverState:
        return self._state

    @property
    def estimate(self) -> "gtsam.Values":
        return self._estimate

    @property
    def accepted(self) -> FrozenSet[int]:
        return self._accepted

    @property
    def rejected(self) -> FrozenSet[int]:
        return self._rejected

    @property
    def pcm_inliers(self) -> FrozenSet[int]:
        return self._pcm_inliers

    @property
    def weights(self) -> Dict[int, float]:
        return dict(self._weights)

    @property
    def gnc_converged(self) -> bool:
        return self._gnc_converged

    @property
    def optimizer_converged(self) -> bool:
        return self._optimizer_converged

    def estimate_poses(self) -> Dict[int, object]:
        return values_to_dict(self._estimate, self.store.dim) if self.store.dim else {}

    # ------------------------------------------------------------------
    def _progress(self, msg: str, *args) -> None:
        self.log.log(logging.INFO if self.params.verbose else logging.DEBUG, msg, *args)

    def _enter(self) -> None:
        if self._busy:
            raise SolverBusyError("RobustSolver is not re-entrant; an update is in flight")
        self._busy = True

    def update(self,
               new_factors: Iterable[Factor] = (),
               new_values: Optional[Union[Mapping[int, object], "gtsam.Values"]] = None) -> "gtsam.Values":
        """Ingest one batch and re-solve; returns the new estimate.

        A structural error (unknown node, dimension mismatch) raises before
        any state is touched.
        """
        self._enter()
        try:
            with self.timer.stage("ingest"):
                ingest = self.store.ingest(new_factors, new_values)
            self._updates += 1
            if self.kpi:
                self.kpi.ingest(self._updates, ingest.priors, ingest.odometry,
                                len(ingest.loop_closure_ids), len(ingest.new_keys))
            self._progress("Update %d: +%d keys, +%d odometry, +%d loop closures",
                           self._updates, len(ingest.new_keys), ingest.odometry, len(ingest.loop_closure_ids))
            if not self.store.initial:
                return self._estimate
            self._state = SolverState.ACCUMULATING
            stale = []
            if ingest.rerooted_keys:
                fresh = set(ingest.loop_closure_ids)
                stale = [i for i in self.store.loop_closures_touching(ingest.rerooted_keys) if i not in fresh]
            self._solve(ingest.loop_closure_ids, stale_ids=stale)
            return self._estimate
        finally:
            self._busy = False

    def recheck_consistency(self) -> "gtsam.Values":
        """Recompute every consistency judgement from scratch and re-solve."""
        self._enter()
        try:
            if not self.store.initial:
                return self._estimate
            with self.timer.stage("consistency"):
                self.consistency_graph.recheck_all()
            self._solve([], refresh=False)
            return self._estimate
        finally:
            self._busy = False

    # ------------------------------------------------------------------
    def _solve(self, new_ids: List[int], refresh: bool = True, stale_ids: Iterable[int] = ()) -> None:
        self._state = SolverState.EVALUATING
        try:
            if refresh:
                before = self.consistency_graph.evaluations
                with self.timer.stage("consistency"):
                    self.consistency_graph.recheck(stale_ids)
                    self.consistency_graph.refresh(new_ids)
                if self.kpi:
                    self.kpi.consistency_update(self._updates, len(self.consistency_graph),
                                                self.consistency_graph.edge_count,
                                                self.consistency_graph.evaluations - before,
                                                self.timer.last("consistency"))

            all_ids = frozenset(range(self.store.loop_closure_count))
            if self.params.pcm_enabled:
                with self.timer.stage("max_clique"):
                    inliers = self.selector.select_inliers(self.consistency_graph)
                if self.kpi:
                    self.kpi.inliers_selected(self._updates, self.selector.name, len(inliers),
                                              len(all_ids - inliers), self.timer.last("max_clique"))
                self._progress("PCM (%s): %d of %d loop closures consistent",
                               self.selector.name, len(inliers), len(all_ids))
            else:
                inliers = all_ids
            self._pcm_inliers = inliers

            ids = sorted(inliers)
            initial = self.store.initial_values(self._estimate)
            if self.params.gnc_enabled and ids:
                with self.timer.stage("gnc"):
                    result = self._reweight(ids, initial)
                weights = result.weights
                values = result.values
                self._gnc_converged = result.converged
                self._gnc_iterations = result.iterations
                self._progress("GNC finished after %d iterations (converged=%s)",
                               result.iterations, result.converged)
            else:
                weights = {i: 1.0 for i in ids}
                values = self._optimize(ids, weights, initial).values
                self._gnc_converged = True
                self._gnc_iterations = 0

            self._weights = {i: float(weights.get(i, 0.0)) for i in sorted(all_ids)}
            self._accepted = frozenset(i for i, w in self._weights.items() if w >= INLIER_WEIGHT)
            self._rejected = all_ids - self._accepted
            self._estimate = values
        except Exception:
            self._state = SolverState.ACCUMULATING
            raise
        self._state = SolverState.OPTIMIZED
        self._progress("Solve done: %d accepted, %d rejected loop closures",
                       len(self._accepted), len(self._rejected))

    def _optimize(self, ids: List[int], weights: Mapping[int, float], initial: "gtsam.Values") -> OptimizationResult:
        graph = self.store.build_graph(accepted=ids, weights=weights)
        result = optimize_batch(graph, initial, max_iters=self.params.lm_max_iterations,
                                kpi=self.kpi, batch_id=self._updates)
        self.timer.record("optimize", result.duration_s)
        self._optimizer_converged = result.converged
        return result

    def _reweight(self, ids: List[int], initial: "gtsam.Values"):
        current = initial

        def optimize_fn(weights: Mapping[int, float]):
            nonlocal current
            current = self._optimize(ids, weights, current).values
            return current

        def residuals_fn(values):
            return self.store.loop_closure_costs(values, ids)

        return self.reweighter.reweight(ids, residuals_fn, self.params.gnc_barc_sq, optimize_fn)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def loop_closure_report(self) -> Dict[str, object]:
        def _entry(lc_id: int) -> Dict[str, object]:
            k1, k2 = self.store.endpoints(lc_id)
            return {
                "id": lc_id,
                "key1": k1,
                "key2": k2,
                "weight": self._weights.get(lc_id, 0.0),
                "odometry_consistent": self.consistency_graph.is_eligible(lc_id),
            }

        return {
            "accepted": [_entry(i) for i in sorted(self._accepted)],
            "rejected": [_entry(i) for i in sorted(self._rejected)],
            "pcm_inliers": sorted(self._pcm_inliers),
            "gnc_converged": self._gnc_converged,
            "gnc_iterations": self._gnc_iterations,
            "optimizer_converged": self._optimizer_converged,
            "params": self.params.describe(),
            "max_clique_method": self.params.max_clique_method.value,
        }

    def save_data(self, output_dir: Optional[str] = None) -> str:
        """Write result.g2o, loop_closures.json and timing.json; returns the folder."""
        if self._busy:
            raise SolverBusyError("save_data cannot run while an update is in flight")
        folder = output_dir or self.params.output_folder
        if not folder:
            raise ValueError("No output folder given and none configured (log_output)")
        os.makedirs(folder, exist_ok=True)

        poses = self.estimate_poses()
        for key, pose in self.store.initial.items():
            poses.setdefault(key, pose)
        factors: List[Factor] = list(self.store.priors) + list(self.store.odometry)
        factors += [self.store.loop_closure(i).factor for i in sorted(self._accepted)]
        fixed = [self.store.anchor.key] if self.store.anchor is not None else []
        write_g2o(os.path.join(folder, RESULT_G2O), poses, factors, fixed_keys=fixed)

        with open(os.path.join(folder, LOOP_CLOSURES_JSON), "w", encoding="utf-8") as f:
            json.dump(self.loop_closure_report(), f, indent=2, sort_keys=True)
            f.write("\n")
        self.timer.export_json(os.path.join(folder, TIMING_JSON))
        self.log.info("Saved results to %s", folder)
        return folder
