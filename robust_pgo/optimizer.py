from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional
import logging
import time

try:
    import gtsam
except Exception:
    gtsam = None

if TYPE_CHECKING:
    from robust_pgo_common.kpi_logging import KPILogger

logger = logging.getLogger("robust_pgo.optimizer")


@dataclass
class OptimizationResult:
    values: "gtsam.Values"
    error: float
    iterations: int
    converged: bool
    duration_s: float = 0.0


def optimize_batch(graph: "gtsam.NonlinearFactorGraph",
                   initial: "gtsam.Values",
                   max_iters: int = 100,
                   relative_error_tol: float = 1e-8,
                   kpi: Optional["KPILogger"] = None,
                   batch_id: int = 1) -> OptimizationResult:
    """Levenberg-Marquardt batch solve over the whole graph.

    Why: every robust stage (clique selection, each GNC step) changes which
    factors participate or how much they weigh, so each solve starts from the
    full graph rather than an incremental iSAM2 state.
    """
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot optimize")
    if graph.size() == 0 or initial.size() == 0:
        return OptimizationResult(initial, 0.0, 0, True)

    params = gtsam.LevenbergMarquardtParams()
    params.setlambdaInitial(1e-3)
    params.setMaxIterations(max_iters)
    params.setRelativeErrorTol(relative_error_tol)
    start = time.perf_counter()
    opt = gtsam.LevenbergMarquardtOptimizer(graph, initial, params)
    try:
        estimate = opt.optimize()
    except RuntimeError as exc:
        # gtsam raises IndeterminantLinearSystemException (a RuntimeError in Python)
        # for under-constrained graphs.
        logger.warning("LM failed (%s); keeping initial values", exc)
        return OptimizationResult(initial, float(graph.error(initial)), 0, False,
                                  time.perf_counter() - start)
    duration = time.perf_counter() - start
    iterations = int(opt.iterations())
    result = OptimizationResult(estimate, float(graph.error(estimate)), iterations,
                                iterations < max_iters, duration)
    if not result.converged:
        logger.warning("LM stopped at the iteration cap (%d) with error %.6g", max_iters, result.error)
    if kpi:
        kpi.optimization_end(batch_id, duration, updated_keys=int(estimate.size()),
                             iterations=iterations, error=result.error, converged=result.converged)
    return result
