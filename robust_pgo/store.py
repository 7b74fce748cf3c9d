from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
import logging

import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .models import BetweenFactor, Factor, LoopClosure, PriorFactor, is_square_cov
from .geometry import PoseWithCovariance, chain_between, pose_dim, is_pose2, values_to_dict
from .noise import anchor_noise, gaussian_from_covariance, weighted_noise

logger = logging.getLogger("robust_pgo.store")


class StoreError(RuntimeError):
    """Raised when a batch cannot be ingested; the store is left untouched."""


class UnknownNodeError(StoreError):
    """A factor references a key that neither exists nor arrives with the batch."""

    def __init__(self, key: int, factor: Factor):
        self.key = key
        self.factor = factor
        super().__init__(f"Factor {type(factor).__name__} references unknown node {key}")


@dataclass
class IngestResult:
    priors: int = 0
    odometry: int = 0
    loop_closure_ids: List[int] = field(default_factory=list)
    new_keys: List[int] = field(default_factory=list)
    rerooted_keys: Set[int] = field(default_factory=set)  # chained keys moved onto another segment


@dataclass
class _ChainEntry:
    root: int
    depth: int
    cumulative: PoseWithCovariance


class MeasurementStore:
    """Holds the growing pose graph and the initial guesses of its nodes.

    Factors are only ever appended. Loop closures get stable ids in insertion
    order. The odometry chain is kept as cumulative pose-with-covariance from
    the root of each chain segment, so the odometry-implied transform between
    any two chained keys is available without walking the chain.

    IMPORTANT: We DO NOT reuse gtsam factor objects across graphs. Every call
    to ``build_graph`` creates fresh factors (some GTSAM Python wheels
    mis-handle shared_ptr lifetime across multiple NonlinearFactorGraphs).
    """

    def __init__(self, anchor_sigma: float = 1e-4):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build graph")
        self.initial: Dict[int, object] = {}
        self.priors: List[PriorFactor] = []
        self.odometry: List[BetweenFactor] = []
        self.loop_closures: List[LoopClosure] = []
        self.anchor: Optional[PriorFactor] = None
        self.anchor_sigma = anchor_sigma
        self.dim: Optional[int] = None
        self.counts = {"prior": 0, "odometry": 0, "loop_closure": 0}
        self._chain: Dict[int, _ChainEntry] = {}
        self._chain_tail: Set[int] = set()  # keys that already have an odometry successor

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------
    def ingest(self,
               new_factors: Iterable[Factor],
               new_values: Optional[Union[Mapping[int, object], "gtsam.Values"]] = None) -> IngestResult:
        """Append factors and initial guesses; validate everything first."""
        factors = list(new_factors or [])
        values = self._as_pose_dict(new_values, factors)
        self._validate(factors, values)

        result = IngestResult()
        for key in sorted(values):
            if key in self.initial:
                # Existing estimates are owned by the optimizer.
                logger.debug("Ignoring initial value for existing key %s", key)
                continue
            if self.dim is None:
                self.dim = pose_dim(values[key])
            self.initial[key] = values[key]
            result.new_keys.append(key)

        if self.anchor is None and not self.priors and factors:
            if not any(isinstance(f, PriorFactor) for f in factors):
                self._add_anchor(self._first_key(factors[0]))

        new_odometry: List[BetweenFactor] = []
        for f in factors:
            if isinstance(f, PriorFactor):
                self.priors.append(f)
                self.counts["prior"] += 1
                result.priors += 1
            elif f.is_odometry():
                self.odometry.append(f)
                new_odometry.append(f)
                self.counts["odometry"] += 1
                result.odometry += 1
            else:
                lc = LoopClosure(id=len(self.loop_closures), factor=f)
                self.loop_closures.append(lc)
                self.counts["loop_closure"] += 1
                result.loop_closure_ids.append(lc.id)
                logger.debug("Loop closure %d: %s -> %s", lc.id, f.key1, f.key2)

        # Chain order is by key so out-of-order odometry within a batch still links up.
        for f in sorted(new_odometry, key=lambda o: (int(o.key1), int(o.key2))):
            result.rerooted_keys |= self._extend_chain(f)
        return result

    def loop_closures_touching(self, keys: Iterable[int]) -> List[int]:
        """Ids of loop closures with an endpoint in ``keys``."""
        keys = set(int(k) for k in keys)
        return [lc.id for lc in self.loop_closures if int(lc.key1) in keys or int(lc.key2) in keys]

    def _as_pose_dict(self, new_values, factors: List[Factor]) -> Dict[int, object]:
        """Accept ``{key: pose}`` or a gtsam.Values of Pose2/Pose3."""
        if new_values is None:
            return {}
        if isinstance(new_values, gtsam.Values):
            if new_values.size() == 0:
                return {}
            dim = self.dim
            if dim is None and factors and isinstance(factors[0], (PriorFactor, BetweenFactor)):
                f = factors[0]
                dim = pose_dim(f.pose if isinstance(f, PriorFactor) else f.measured)
            if dim is None:
                raise StoreError("Cannot tell Pose2 from Pose3 in a gtsam.Values without factors; "
                                 "pass a {key: pose} mapping instead")
            try:
                return values_to_dict(new_values, dim)
            except (RuntimeError, ValueError) as e:
                raise StoreError(f"gtsam.Values must hold only {'Pose2' if dim == 3 else 'Pose3'} values: {e}") from e
        if not isinstance(new_values, Mapping):
            raise StoreError(f"Initial values must be a mapping of key -> pose or a gtsam.Values, "
                             f"got {type(new_values).__name__}")
        return {int(k): v for k, v in new_values.items()}

    def _validate(self, factors: List[Factor], values: Dict[int, object]) -> None:
        dim = self.dim
        for key, pose in values.items():
            d = pose_dim(pose)
            if dim is None:
                dim = d
            elif d != dim:
                raise StoreError(f"Pose for key {key} has dimension {d}, graph uses {dim}")
        known = set(self.initial) | set(values)
        for f in factors:
            if isinstance(f, PriorFactor):
                keys = (int(f.key),)
                pose = f.pose
            elif isinstance(f, BetweenFactor):
                keys = (int(f.key1), int(f.key2))
                pose = f.measured
                if keys[0] == keys[1]:
                    raise StoreError(f"Between factor connects key {keys[0]} to itself")
            else:
                raise StoreError(f"Unsupported factor type {type(f).__name__}")
            for key in keys:
                if key not in known:
                    raise UnknownNodeError(key, f)
            d = pose_dim(pose)
            if dim is not None and d != dim:
                raise StoreError(f"{type(f).__name__} on {keys} has dimension {d}, graph uses {dim}")
            if not is_square_cov(np.asarray(f.covariance), d):
                raise StoreError(f"{type(f).__name__} on {keys} needs a {d}x{d} covariance")

    @staticmethod
    def _first_key(f: Factor) -> int:
        return int(f.key) if isinstance(f, PriorFactor) else int(f.key1)

    def _add_anchor(self, key: int) -> None:
        pose = self.initial[key]
        d = pose_dim(pose)
        self.anchor = PriorFactor(key=key, pose=pose, covariance=np.eye(d) * self.anchor_sigma ** 2)
        logger.debug("Anchoring gauge at key %s", key)

    def _extend_chain(self, f: BetweenFactor) -> Set[int]:
        """Link ``f`` into the odometry chain; returns the keys that changed segment."""
        k1, k2 = int(f.key1), int(f.key2)
        head = self._chain.get(k2)
        if head is not None and head.root != k2:
            logger.warning("Odometry %s -> %s ends on an already chained node; not extending chain", k1, k2)
            return set()
        if k1 in self._chain_tail:
            logger.warning("Odometry %s -> %s branches the chain at %s; not extending chain", k1, k2, k1)
            return set()
        entry = self._chain.get(k1)
        if head is not None and entry is not None and entry.root == k2:
            logger.warning("Odometry %s -> %s closes a cycle in the chain; not extending chain", k1, k2)
            return set()
        if entry is None:
            entry = _ChainEntry(root=k1, depth=0, cumulative=PoseWithCovariance.identity(f.measured))
            self._chain[k1] = entry
            logger.debug("New odometry segment rooted at %s", k1)
        step = PoseWithCovariance(f.measured, np.asarray(f.covariance, dtype=float))
        prefix = entry.cumulative.compose(step)
        self._chain_tail.add(k1)
        if head is None:
            self._chain[k2] = _ChainEntry(root=entry.root, depth=entry.depth + 1, cumulative=prefix)
            return set()

        # k2 roots a segment of its own: hang that whole segment below k1.
        moved = sorted(k for k, e in self._chain.items() if e.root == k2)
        for k in moved:
            old = self._chain[k]
            self._chain[k] = _ChainEntry(root=entry.root, depth=entry.depth + 1 + old.depth,
                                         cumulative=prefix.compose(old.cumulative))
        logger.info("Odometry %s -> %s joins segment rooted at %s (%d keys) onto segment rooted at %s",
                    k1, k2, k2, len(moved), entry.root)
        return set(moved)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def loop_closure_count(self) -> int:
        return len(self.loop_closures)

    def loop_closure(self, lc_id: int) -> LoopClosure:
        return self.loop_closures[lc_id]

    def odometry_between(self, a: int, b: int) -> Optional[PoseWithCovariance]:
        """Odometry-implied pose of ``b`` in the frame of ``a`` (None if not chained together)."""
        ea, eb = self._chain.get(int(a)), self._chain.get(int(b))
        if ea is None or eb is None or ea.root != eb.root:
            return None
        if ea.depth == eb.depth:
            return PoseWithCovariance.identity(ea.cumulative.pose)
        if ea.depth < eb.depth:
            return chain_between(ea.cumulative, eb.cumulative)
        return chain_between(eb.cumulative, ea.cumulative).inverse()

    # ------------------------------------------------------------------
    # GTSAM graph assembly
    # ------------------------------------------------------------------
    def _prior_factor(self, f: PriorFactor, noise):
        if is_pose2(f.pose):
            return gtsam.PriorFactorPose2(int(f.key), f.pose, noise)
        return gtsam.PriorFactorPose3(int(f.key), f.pose, noise)

    def _between_factor(self, f: BetweenFactor, noise):
        if is_pose2(f.measured):
            return gtsam.BetweenFactorPose2(int(f.key1), int(f.key2), f.measured, noise)
        return gtsam.BetweenFactorPose3(int(f.key1), int(f.key2), f.measured, noise)

    def loop_closure_factor(self, lc_id: int, weight: float = 1.0):
        f = self.loop_closures[lc_id].factor
        return self._between_factor(f, weighted_noise(f.covariance, weight))

    def build_graph(self,
                    accepted: Optional[Iterable[int]] = None,
                    weights: Optional[Mapping[int, float]] = None) -> "gtsam.NonlinearFactorGraph":
        """Trusted factors plus accepted loop closures, information scaled by weight.

        accepted=None accepts every loop closure. Zero-weight closures are left out.
        """
        graph = gtsam.NonlinearFactorGraph()
        if self.anchor is not None:
            graph.add(self._prior_factor(self.anchor, anchor_noise(pose_dim(self.anchor.pose), self.anchor_sigma)))
        for f in self.priors:
            graph.add(self._prior_factor(f, gaussian_from_covariance(f.covariance)))
        for f in self.odometry:
            graph.add(self._between_factor(f, gaussian_from_covariance(f.covariance)))
        ids = range(len(self.loop_closures)) if accepted is None else sorted(accepted)
        weights = weights or {}
        for lc_id in ids:
            w = float(weights.get(lc_id, 1.0))
            if w <= 0.0:
                continue
            graph.add(self.loop_closure_factor(lc_id, w))
        return graph

    def loop_closure_costs(self, values: "gtsam.Values", ids: Iterable[int]) -> np.ndarray:
        """Unweighted factor cost 0.5 * r^T S^-1 r of each loop closure."""
        return np.array([self.loop_closure_factor(lc_id).error(values) for lc_id in ids], dtype=float)

    def initial_values(self, estimate: Optional["gtsam.Values"] = None) -> "gtsam.Values":
        """Current estimate for optimized keys, initial guesses for the rest."""
        out = gtsam.Values()
        for key in sorted(self.initial):
            if estimate is not None and estimate.exists(key):
                pose = estimate.atPose2(key) if self.dim == 3 else estimate.atPose3(key)
            else:
                pose = self.initial[key]
            out.insert(key, pose)
        return out

    def summary(self) -> Dict[str, int]:
        return dict(self.counts, nodes=len(self.initial), segments=len({e.root for e in self._chain.values()}))

    def endpoints(self, lc_id: int) -> Tuple[int, int]:
        lc = self.loop_closures[lc_id]
        return int(lc.key1), int(lc.key2)
