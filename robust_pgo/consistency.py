"""Pairwise consistency tests between loop closures (PCM).

A loop closure a = (i -> j) agrees with the odometry when

    a^-1 * odom(i, j)  ~  identity

and two loop closures a = (i -> j), b = (k -> l) agree with each other when
the cycle through the odometry chain closes:

    a^-1 * odom(i, k) * b * odom(l, j)  ~  identity

Role mapping of the thresholds:

    simple   : (translation norm, rotation angle) caps, used for BOTH roles
    original : Mahalanobis caps; pcm_odom_threshold for loop-closure-vs-odometry,
               pcm_lc_threshold for loop-closure-vs-loop-closure

Disabled (infinite) thresholds short-circuit to "consistent" before any
composition is computed.
"""
from dataclasses import dataclass
from typing import Tuple
import logging
import math

from .geometry import PoseWithCovariance, rotation_angle, translation_norm
from .models import LoopClosure
from .params import PcmMode, RobustSolverParams, is_disabled
from .store import MeasurementStore

logger = logging.getLogger("robust_pgo.consistency")

ROLE_ODOMETRY = "odometry"
ROLE_LOOP_CLOSURE = "loop_closure"


@dataclass(frozen=True)
class ConsistencyResult:
    consistent: bool
    score: float = 1.0
    distances: Tuple[float, ...] = ()


ALWAYS = ConsistencyResult(True, 1.0, ())
UNVERIFIABLE = ConsistencyResult(False, 0.0, ())


def _score(ratio: float) -> float:
    """Map distance/threshold in [0, 1) to an affinity in (0.6, 1]."""
    return math.exp(-0.5 * ratio * ratio)


class ConsistencyEvaluator:
    """Deterministic, side-effect-free consistency checks against a store."""

    def __init__(self, store: MeasurementStore, params: RobustSolverParams):
        self.store = store
        self.mode = params.pcm_mode
        self.trans_threshold = params.pcm_trans_threshold
        self.rot_threshold = params.pcm_rot_threshold
        self.odom_threshold = params.pcm_odom_threshold
        self.lc_threshold = params.pcm_lc_threshold

    def role_disabled(self, role: str) -> bool:
        if self.mode is PcmMode.DISABLED:
            return True
        if self.mode is PcmMode.SIMPLE:
            return is_disabled(self.trans_threshold) and is_disabled(self.rot_threshold)
        threshold = self.odom_threshold if role == ROLE_ODOMETRY else self.lc_threshold
        return is_disabled(threshold)

    @property
    def disabled(self) -> bool:
        return self.role_disabled(ROLE_ODOMETRY) and self.role_disabled(ROLE_LOOP_CLOSURE)

    # ------------------------------------------------------------------
    def check_odometry(self, lc: LoopClosure) -> ConsistencyResult:
        if self.role_disabled(ROLE_ODOMETRY):
            return ALWAYS
        odom = self.store.odometry_between(lc.key1, lc.key2)
        if odom is None:
            logger.debug("Loop closure %d spans disconnected odometry segments", lc.id)
            return UNVERIFIABLE
        cycle = self._as_pwc(lc).between(odom)
        return self._judge(cycle, ROLE_ODOMETRY)

    def check_pair(self, a: LoopClosure, b: LoopClosure) -> ConsistencyResult:
        if self.role_disabled(ROLE_LOOP_CLOSURE):
            return ALWAYS
        odom_ik = self.store.odometry_between(a.key1, b.key1)
        odom_lj = self.store.odometry_between(b.key2, a.key2)
        if odom_ik is None or odom_lj is None:
            return UNVERIFIABLE
        cycle = self._as_pwc(a).inverse().compose(odom_ik).compose(self._as_pwc(b)).compose(odom_lj)
        return self._judge(cycle, ROLE_LOOP_CLOSURE)

    # ------------------------------------------------------------------
    @staticmethod
    def _as_pwc(lc: LoopClosure) -> PoseWithCovariance:
        return PoseWithCovariance(lc.factor.measured, lc.factor.covariance)

    def _judge(self, cycle: PoseWithCovariance, role: str) -> ConsistencyResult:
        if self.mode is PcmMode.SIMPLE:
            return self._judge_simple(cycle)
        threshold = self.odom_threshold if role == ROLE_ODOMETRY else self.lc_threshold
        dist = cycle.mahalanobis_norm()
        if dist < threshold:
            return ConsistencyResult(True, _score(dist / threshold), (dist,))
        return ConsistencyResult(False, 0.0, (dist,))

    def _judge_simple(self, cycle: PoseWithCovariance) -> ConsistencyResult:
        trans = translation_norm(cycle.pose)
        rot = rotation_angle(cycle.pose)
        ratio = 0.0
        for value, threshold in ((trans, self.trans_threshold), (rot, self.rot_threshold)):
            if is_disabled(threshold):
                continue
            if not value < threshold:
                return ConsistencyResult(False, 0.0, (trans, rot))
            ratio = max(ratio, value / threshold if threshold > 0 else 0.0)
        return ConsistencyResult(True, _score(ratio), (trans, rot))
