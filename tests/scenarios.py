"""Small synthetic pose graphs shared by the tests."""
import math
from typing import Dict, List, Tuple

import numpy as np
import gtsam

from robust_pgo.models import BetweenFactor, LOOP_CLOSURE, ODOMETRY

ODOM_COV_2D = np.diag([0.05 ** 2, 0.05 ** 2, 0.005 ** 2])
LC_COV_2D = np.diag([0.1 ** 2, 0.1 ** 2, 0.01 ** 2])
ODOM_COV_3D = np.diag([0.005 ** 2] * 3 + [0.05 ** 2] * 3)
LC_COV_3D = np.diag([0.01 ** 2] * 3 + [0.1 ** 2] * 3)

# Translation offset applied to the spurious loop closure.
OUTLIER_OFFSET = gtsam.Pose2(10.0, 0.0, 0.0)


def square_ground_truth(n: int = 20) -> Dict[int, gtsam.Pose2]:
    """Unit steps along x, turning left by 90 degrees after every fifth step.

    Pose 5 sits at (5, 0) and pose 19 at (0, 1) heading -90 degrees.
    """
    poses = {0: gtsam.Pose2()}
    for i in range(n - 1):
        poses[i + 1] = poses[i].compose(square_step(i))
    return poses


def square_step(i: int) -> gtsam.Pose2:
    return gtsam.Pose2(1.0, 0.0, math.pi / 2 if (i + 1) % 5 == 0 else 0.0)


def odometry_factors(gt: Dict[int, object], cov=ODOM_COV_2D) -> List[BetweenFactor]:
    keys = sorted(gt)
    return [BetweenFactor(k, k + 1, gt[k].between(gt[k + 1]), cov.copy(), kind=ODOMETRY)
            for k in keys[:-1]]


def loop_closure(gt: Dict[int, object], k1: int, k2: int, offset=None, cov=LC_COV_2D) -> BetweenFactor:
    measured = gt[k1].between(gt[k2])
    if offset is not None:
        measured = measured.compose(offset)
    return BetweenFactor(k1, k2, measured, cov.copy(), kind=LOOP_CLOSURE)


def good_closure(gt) -> BetweenFactor:
    return loop_closure(gt, 19, 0)


def bad_closure(gt) -> BetweenFactor:
    return loop_closure(gt, 17, 2, offset=OUTLIER_OFFSET)


def square_scenario(with_outlier: bool = True) -> Tuple[Dict[int, gtsam.Pose2], list]:
    """Ground truth and factors (odometry + good closure, optionally one outlier)."""
    gt = square_ground_truth()
    factors = odometry_factors(gt) + [good_closure(gt)]
    if with_outlier:
        factors.append(bad_closure(gt))
    return gt, factors


def helix_ground_truth(n: int = 12) -> Dict[int, gtsam.Pose3]:
    step = gtsam.Pose3(gtsam.Rot3.Ypr(math.pi / 6, 0.0, 0.05), gtsam.Point3(1.0, 0.0, 0.1))
    poses = {0: gtsam.Pose3()}
    for i in range(n - 1):
        poses[i + 1] = poses[i].compose(step)
    return poses


def max_translation_error(estimate, gt) -> float:
    worst = 0.0
    for k, pose in gt.items():
        est = estimate.atPose2(k) if isinstance(pose, gtsam.Pose2) else estimate.atPose3(k)
        d = np.linalg.norm(np.asarray(est.translation(), dtype=float) - np.asarray(pose.translation(), dtype=float))
        worst = max(worst, float(d))
    return worst
