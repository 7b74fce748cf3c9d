from typing import Iterable, Mapping, Optional, Tuple
import numpy as np

import matplotlib
matplotlib.use("Agg")  # for headless export
import matplotlib.pyplot as plt

from .metrics import _xyz_any


def _xy(poses: Mapping[int, object]) -> np.ndarray:
    if not poses:
        return np.zeros((0, 2))
    return np.asarray([_xyz_any(poses[k])[:2] for k in sorted(poses)])


def plot_pose_graph_2d(estimate: Mapping[int, object],
                       path_png: str,
                       loop_closures: Iterable[Tuple[int, int]] = (),
                       rejected: Iterable[Tuple[int, int]] = (),
                       reference: Optional[Mapping[int, object]] = None,
                       title: str = "Pose graph (XY)"):
    """Trajectory in the XY plane with accepted (green) and rejected (red) loop closures."""
    xy = _xy(estimate)
    index = {k: i for i, k in enumerate(sorted(estimate))}
    plt.figure(figsize=(8, 6))
    if reference:
        ref = _xy(reference)
        plt.plot(ref[:, 0], ref[:, 1], color="0.6", linestyle="--", label="reference")
    if len(xy):
        plt.plot(xy[:, 0], xy[:, 1], color="tab:blue", label="estimate")
    for edges, color, label in ((loop_closures, "tab:green", "accepted"), (rejected, "tab:red", "rejected")):
        first = True
        for k1, k2 in edges:
            if k1 not in index or k2 not in index:
                continue
            a, b = xy[index[k1]], xy[index[k2]]
            plt.plot([a[0], b[0]], [a[1], b[1]], color=color, linewidth=0.8,
                     label=label if first else None)
            first = False
    plt.axis('equal')
    plt.xlabel("x [m]"); plt.ylabel("y [m]")
    plt.legend()
    plt.title(title)
    plt.tight_layout()
    plt.savefig(path_png, dpi=150)
    plt.close()
