from dataclasses import dataclass
from typing import Any, List, Optional, Union
import numpy as np

ODOMETRY = "odometry"
LOOP_CLOSURE = "loop_closure"


@dataclass
class Quaternion:
    """Quaternion in [w, x, y, z] order.

    Why: We explicitly model the ordering to avoid confusion. g2o stores
    [x, y, z, w]; the loader converts at the boundary.
    """
    w: float
    x: float
    y: float
    z: float


@dataclass
class Translation:
    x: float
    y: float
    z: float


@dataclass
class PriorFactor:
    key: int
    pose: Any  # gtsam.Pose2 | gtsam.Pose3
    covariance: np.ndarray
    information: Optional[np.ndarray] = None  # as read from file, kept for lossless export


@dataclass
class BetweenFactor:
    key1: int
    key2: int
    measured: Any  # gtsam.Pose2 | gtsam.Pose3, pose of key2 in the frame of key1
    covariance: np.ndarray
    kind: Optional[str] = None  # ODOMETRY | LOOP_CLOSURE | None (inferred from keys)
    information: Optional[np.ndarray] = None

    def is_odometry(self) -> bool:
        if self.kind is not None:
            return self.kind == ODOMETRY
        return int(self.key2) == int(self.key1) + 1


Factor = Union[PriorFactor, BetweenFactor]


@dataclass
class LoopClosure:
    """A candidate loop closure with its stable, insertion-ordered id."""
    id: int
    factor: BetweenFactor

    @property
    def key1(self) -> int:
        return self.factor.key1

    @property
    def key2(self) -> int:
        return self.factor.key2


def is_square_cov(mat: np.ndarray, dim: int) -> bool:
    return isinstance(mat, np.ndarray) and mat.shape == (dim, dim)


def upper_triangle_to_matrix(entries: List[float], dim: int) -> np.ndarray:
    """Expand row-major upper-triangular entries (g2o information layout)."""
    expected = dim * (dim + 1) // 2
    if len(entries) != expected:
        raise ValueError(f"Expected {expected} upper-triangular entries, got {len(entries)}")
    mat = np.zeros((dim, dim), dtype=float)
    idx = 0
    for i in range(dim):
        for j in range(i, dim):
            mat[i, j] = float(entries[idx])
            mat[j, i] = float(entries[idx])
            idx += 1
    return mat


def matrix_to_upper_triangle(mat: np.ndarray) -> List[float]:
    dim = mat.shape[0]
    return [float(mat[i, j]) for i in range(dim) for j in range(i, dim)]
