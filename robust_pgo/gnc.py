"""Graduated non-convexity with a truncated-least-squares surrogate (GNC-TLS).

Only loop closures are reweighted; odometry and priors are trusted and keep
weight 1. The surrogate starts almost convex (small mu) and is tightened by a
constant factor every iteration until the weights settle to binary values.

Cost convention: a factor's cost is gtsam's ``factor.error(values)``, i.e.
0.5 * r^T Sigma^-1 r, compared directly against ``barc_sq``.
"""
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence
import logging

import numpy as np

from .params import is_disabled

if TYPE_CHECKING:
    from robust_pgo_common.kpi_logging import KPILogger


@dataclass
class GncResult:
    weights: Dict[int, float]
    values: object  # gtsam.Values of the last solve
    iterations: int
    converged: bool
    mu: Optional[float] = None


def initial_mu(costs: Sequence[float], barc_sq: float) -> float:
    """Starting surrogate parameter; <= 0 means every cost is already an inlier."""
    costs = np.asarray(costs, dtype=float)
    if costs.size == 0:
        return 0.0
    max_cost = float(np.max(costs))
    denom = 2.0 * max_cost - barc_sq
    if denom <= 0.0:
        return 0.0
    return barc_sq / denom


def tls_weights(costs: Sequence[float], mu: float, barc_sq: float) -> np.ndarray:
    costs = np.asarray(costs, dtype=float)
    upper = (mu + 1.0) / mu * barc_sq
    lower = mu / (mu + 1.0) * barc_sq
    weights = np.ones_like(costs)
    outer = costs >= upper
    weights[outer] = 0.0
    mid = (~outer) & (costs > lower)
    if np.any(mid):
        weights[mid] = np.sqrt(barc_sq * mu * (mu + 1.0) / costs[mid]) - mu
    return np.clip(weights, 0.0, 1.0)


def _is_binary(weights: np.ndarray, tol: float) -> bool:
    return bool(np.all((weights <= tol) | (weights >= 1.0 - tol)))


class GncReweighter:
    """Bounded GNC-TLS loop around an arbitrary weighted solve.

    ``optimize_fn(weights)`` solves the problem with the given per-factor
    weights and returns the new values; ``residuals_fn(values)`` returns the
    unweighted cost of every reweightable factor, in ``factor_ids`` order.
    """

    def __init__(self,
                 max_iterations: int = 100,
                 mu_step: float = 1.4,
                 weight_tol: float = 1e-4,
                 kpi: Optional["KPILogger"] = None,
                 logger: Optional[logging.Logger] = None):
        if mu_step <= 1.0:
            raise ValueError("mu_step must be > 1")
        self.max_iterations = int(max_iterations)
        self.mu_step = float(mu_step)
        self.weight_tol = float(weight_tol)
        self.kpi = kpi
        self.log = logger if logger is not None else logging.getLogger("robust_pgo.gnc")

    def reweight(self,
                 factor_ids: Sequence[int],
                 residuals_fn: Callable[[object], np.ndarray],
                 barc_sq: float,
                 optimize_fn: Callable[[Dict[int, float]], object]) -> GncResult:
        ids: List[int] = list(factor_ids)
        weights = np.ones(len(ids), dtype=float)
        values = optimize_fn(self._as_dict(ids, weights))
        if not ids or is_disabled(barc_sq):
            return GncResult(self._as_dict(ids, weights), values, 0, True)

        costs = np.asarray(residuals_fn(values), dtype=float)
        mu = initial_mu(costs, barc_sq)
        if mu <= 0.0:
            self.log.debug("GNC: max cost %.4g within barc_sq %.4g; all inliers", float(np.max(costs)), barc_sq)
            return GncResult(self._as_dict(ids, weights), values, 0, True, mu)

        converged = False
        iteration = 0
        while iteration < self.max_iterations:
            iteration += 1
            new_weights = tls_weights(costs, mu, barc_sq)
            values = optimize_fn(self._as_dict(ids, new_weights))
            change = float(np.max(np.abs(new_weights - weights)))
            weights = new_weights
            if self.kpi:
                self.kpi.gnc_iteration(iteration, mu, change,
                                       inliers=int(np.sum(weights >= 1.0 - self.weight_tol)))
            self.log.debug("GNC iter %d: mu=%.4g max weight change=%.3g", iteration, mu, change)
            if change <= self.weight_tol and _is_binary(weights, self.weight_tol):
                converged = True
                break
            costs = np.asarray(residuals_fn(values), dtype=float)
            mu *= self.mu_step

        if not converged:
            self.log.warning("GNC did not converge within %d iterations (mu=%.4g); keeping last weights",
                             self.max_iterations, mu)
        return GncResult(self._as_dict(ids, weights), values, iteration, converged, mu)

    @staticmethod
    def _as_dict(ids: Sequence[int], weights: np.ndarray) -> Dict[int, float]:
        return {int(i): float(w) for i, w in zip(ids, weights)}
