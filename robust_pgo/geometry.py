"""Pose helpers shared by the store, the consistency checks and the I/O layer.

Covariances follow GTSAM's convention: right (body-frame) perturbations,
tangent ordering (x, y, theta) for Pose2 and (rx, ry, rz, tx, ty, tz) for
Pose3. First-order propagation through composition uses the adjoint map:

    a * b      ->  Ad(b^-1) Sa Ad(b^-1)^T + Sb
    a^-1       ->  Ad(a) Sa Ad(a)^T
"""
from dataclasses import dataclass
from typing import Any, Dict, Tuple
import math

import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .models import Quaternion, Translation
from .noise import make_spd


def _require_gtsam():
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot handle poses")


def is_pose2(pose: Any) -> bool:
    _require_gtsam()
    return isinstance(pose, gtsam.Pose2)


def pose_dim(pose: Any) -> int:
    """Tangent-space dimension: 3 for Pose2, 6 for Pose3."""
    _require_gtsam()
    if isinstance(pose, gtsam.Pose2):
        return 3
    if isinstance(pose, gtsam.Pose3):
        return 6
    raise TypeError(f"Unsupported pose type {type(pose)}")


def identity_like(pose: Any):
    return gtsam.Pose2() if is_pose2(pose) else gtsam.Pose3()


def pose_from(rot: Quaternion, trans: Translation):
    _require_gtsam()
    R = gtsam.Rot3.Quaternion(rot.w, rot.x, rot.y, rot.z)
    t = gtsam.Point3(trans.x, trans.y, trans.z)
    return gtsam.Pose3(R, t)


def logmap(pose: Any) -> np.ndarray:
    if is_pose2(pose):
        return np.asarray(gtsam.Pose2.Logmap(pose), dtype=float)
    return np.asarray(gtsam.Pose3.Logmap(pose), dtype=float)


def translation_vector(pose: Any) -> np.ndarray:
    t = pose.translation()
    # Point2/Point3 are plain numpy arrays in recent wheels
    if hasattr(t, "vector"):
        t = t.vector()
    return np.asarray(t, dtype=float).reshape(-1)


def translation_norm(pose: Any) -> float:
    return float(np.linalg.norm(translation_vector(pose)))


def rotation_angle(pose: Any) -> float:
    """Absolute rotation angle in radians."""
    if is_pose2(pose):
        return abs(float(pose.theta()))
    return float(np.linalg.norm(gtsam.Rot3.Logmap(pose.rotation())))


def rot3_to_quat_wxyz(R) -> Tuple[float, float, float, float]:
    # Prefer instance method if available
    if hasattr(R, "quaternion"):
        q = R.quaternion()  # expected [w, x, y, z]
        return float(q[0]), float(q[1]), float(q[2]), float(q[3])

    # Fallback: derive from rotation matrix (always available)
    M = R.matrix()
    m00, m01, m02 = float(M[0, 0]), float(M[0, 1]), float(M[0, 2])
    m10, m11, m12 = float(M[1, 0]), float(M[1, 1]), float(M[1, 2])
    m20, m21, m22 = float(M[2, 0]), float(M[2, 1]), float(M[2, 2])

    tr = m00 + m11 + m22
    if tr > 0.0:
        S = math.sqrt(tr + 1.0) * 2.0
        qw = 0.25 * S
        qx = (m21 - m12) / S
        qy = (m02 - m20) / S
        qz = (m10 - m01) / S
    elif (m00 > m11) and (m00 > m22):
        S = math.sqrt(1.0 + m00 - m11 - m22) * 2.0
        qw = (m21 - m12) / S
        qx = 0.25 * S
        qy = (m01 + m10) / S
        qz = (m02 + m20) / S
    elif m11 > m22:
        S = math.sqrt(1.0 + m11 - m00 - m22) * 2.0
        qw = (m02 - m20) / S
        qx = (m01 + m10) / S
        qy = 0.25 * S
        qz = (m12 + m21) / S
    else:
        S = math.sqrt(1.0 + m22 - m00 - m11) * 2.0
        qw = (m10 - m01) / S
        qx = (m02 + m20) / S
        qy = (m12 + m21) / S
        qz = 0.25 * S

    n = math.sqrt(qw * qw + qx * qx + qy * qy + qz * qz) or 1.0
    return qw / n, qx / n, qy / n, qz / n


def value_at(values: "gtsam.Values", key: int, dim: int):
    return values.atPose2(key) if dim == 3 else values.atPose3(key)


def values_to_dict(values: "gtsam.Values", dim: int) -> Dict[int, Any]:
    """Copy a gtsam.Values of poses into a key-sorted dict."""
    return {int(k): value_at(values, int(k), dim) for k in sorted(int(k) for k in values.keys())}


@dataclass
class PoseWithCovariance:
    """A relative pose and its first-order covariance (tangent space)."""
    pose: Any
    covariance: np.ndarray

    @classmethod
    def identity(cls, prototype: Any) -> "PoseWithCovariance":
        dim = pose_dim(prototype)
        return cls(identity_like(prototype), np.zeros((dim, dim)))

    @property
    def dim(self) -> int:
        return self.covariance.shape[0]

    def compose(self, other: "PoseWithCovariance") -> "PoseWithCovariance":
        """self * other, treating the two estimates as independent."""
        ad = other.pose.inverse().AdjointMap()
        cov = ad @ self.covariance @ ad.T + other.covariance
        return PoseWithCovariance(self.pose.compose(other.pose), cov)

    def inverse(self) -> "PoseWithCovariance":
        ad = self.pose.AdjointMap()
        return PoseWithCovariance(self.pose.inverse(), ad @ self.covariance @ ad.T)

    def between(self, other: "PoseWithCovariance") -> "PoseWithCovariance":
        """self^-1 * other, treating the two estimates as independent."""
        return self.inverse().compose(other)

    def mahalanobis_norm(self) -> float:
        """sqrt(xi^T S^-1 xi) with xi = Logmap(pose)."""
        xi = logmap(self.pose)
        if not np.any(xi):
            return 0.0
        try:
            sol = np.linalg.solve(self.covariance, xi)
        except np.linalg.LinAlgError:
            sol = np.linalg.pinv(self.covariance) @ xi
        return float(math.sqrt(max(float(xi @ sol), 0.0)))


def chain_between(ancestor: PoseWithCovariance, descendant: PoseWithCovariance) -> PoseWithCovariance:
    """Relative transform between two cumulative estimates of one chain.

    Both arguments are expressed relative to the same chain root, and the
    ancestor's edges are a prefix of the descendant's, so the shared part of
    the covariance is removed exactly (to first order):

        S_ab = S_0b - Ad(T_ab^-1) S_0a Ad(T_ab^-1)^T
    """
    rel = ancestor.pose.between(descendant.pose)
    ad = rel.inverse().AdjointMap()
    cov = descendant.covariance - ad @ ancestor.covariance @ ad.T
    return PoseWithCovariance(rel, make_spd(cov))
