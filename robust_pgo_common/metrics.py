from typing import Dict, Mapping, Optional
import math

import numpy as np


def _xyz_any(pose) -> np.ndarray:
    """Translation of a Pose2/Pose3 (or a plain sequence) as a 2- or 3-vector."""
    if hasattr(pose, "theta"):
        return np.array([float(pose.x()), float(pose.y())])
    if hasattr(pose, "translation"):
        t = pose.translation()
        if hasattr(t, "x"):
            try:
                return np.array([float(t.x()), float(t.y()), float(t.z())])
            except Exception:
                pass
        return np.asarray(t, dtype=float).reshape(-1)[:3]
    return np.asarray(pose, dtype=float).reshape(-1)


def _umeyama(A: np.ndarray, B: np.ndarray, with_scale: bool = False):
    """Rigid (optionally similarity) alignment from A->B (NxD, D = 2 or 3). Returns R, t, s."""
    assert A.shape == B.shape and A.shape[1] in (2, 3)
    muA, muB = A.mean(0), B.mean(0)
    AA, BB = A - muA, B - muB
    C = AA.T @ BB / A.shape[0]
    U, S, Vt = np.linalg.svd(C)
    R = Vt.T @ U.T
    if np.linalg.det(R) < 0:
        Vt[-1, :] *= -1
        R = Vt.T @ U.T
    if with_scale:
        varA = (AA**2).sum() / A.shape[0]
        s = (S.sum() / varA) if varA > 0 else 1.0
    else:
        s = 1.0
    t = muB - s * (R @ muA)
    return R, t, s


def translation_errors(estimate: Mapping[int, object], reference: Mapping[int, object]) -> Dict[int, float]:
    """Unaligned per-key translation error over the keys both trajectories share."""
    out = {}
    for k in sorted(set(estimate) & set(reference)):
        out[int(k)] = float(np.linalg.norm(_xyz_any(estimate[k]) - _xyz_any(reference[k])))
    return out


def max_translation_error(estimate: Mapping[int, object], reference: Mapping[int, object]) -> Optional[float]:
    errs = translation_errors(estimate, reference)
    return max(errs.values()) if errs else None


def ate(estimate: Mapping[int, object], reference: Mapping[int, object], align: bool = True) -> Dict[str, object]:
    """Absolute trajectory error (RMSE) after optional rigid alignment."""
    common = sorted(set(estimate) & set(reference))
    if len(common) < 3:
        return {"matches": len(common), "rmse": None}
    X_est = np.array([_xyz_any(estimate[k]) for k in common])
    X_ref = np.array([_xyz_any(reference[k]) for k in common])
    if align:
        R, t, s = _umeyama(X_est, X_ref, with_scale=False)
    else:
        dim = X_est.shape[1]
        R, t, s = np.eye(dim), np.zeros(dim), 1.0
    X_aligned = (X_est @ R.T) + t
    err = np.linalg.norm(X_aligned - X_ref, axis=1)
    return {
        "matches": len(common),
        "rmse": math.sqrt(float((err**2).mean())),
        "max": float(err.max()),
        "mean": float(err.mean()),
        "R": R.tolist(),
        "t": t.tolist(),
        "s": s,
    }
