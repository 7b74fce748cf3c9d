import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None


def make_spd(cov: np.ndarray, eps: float = 1e-9) -> np.ndarray:
    """Jitter a covariance to be SPD if needed.

    Why: Real datasets sometimes include nearly singular covariances, and
    covariances recovered along the odometry chain by subtraction can lose
    definiteness to rounding. We add diagonal jitter to ensure positive
    definiteness for GTSAM and for Mahalanobis tests.
    Trade-off: Adds slight artificial confidence; eps is tiny.
    """
    cov = np.array(cov, dtype=float)
    dim = cov.shape[0]
    # Symmetrize
    cov = 0.5 * (cov + cov.T)
    # Add jitter until PD
    jitter = eps
    for _ in range(8):
        try:
            np.linalg.cholesky(cov + np.eye(dim) * jitter)
            return cov + np.eye(dim) * jitter
        except np.linalg.LinAlgError:
            jitter *= 10.0
    # Last resort
    return cov + np.eye(dim) * jitter


def information_to_covariance(info: np.ndarray) -> np.ndarray:
    """Invert an information matrix; raises ValueError when it is not PD."""
    info = np.asarray(info, dtype=float)
    try:
        np.linalg.cholesky(0.5 * (info + info.T))
    except np.linalg.LinAlgError as e:
        raise ValueError("information matrix is not positive definite") from e
    return np.linalg.inv(info)


def gaussian_from_covariance(cov: np.ndarray):
    """Create a GTSAM Gaussian noise model from a square covariance.

    Ensures:
      - symmetric positive-definite (via jitter)
      - float64 dtype
      - contiguous row-major memory
    """
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    cov = make_spd(cov)
    cov = np.array(cov, dtype=np.float64, order="C")
    return gtsam.noiseModel.Gaussian.Covariance(cov)


def weighted_noise(cov: np.ndarray, weight: float):
    """Noise model whose information is ``weight`` times that of ``cov``.

    GNC reweighting scales the information matrix; weight must be > 0
    (zero-weight factors are dropped from the graph instead).
    """
    if weight <= 0.0:
        raise ValueError(f"weight must be positive, got {weight}")
    if weight == 1.0:
        return gaussian_from_covariance(cov)
    return gaussian_from_covariance(np.asarray(cov, dtype=float) / weight)


def anchor_noise(dim: int, sigma: float = 1e-4):
    """Tight isotropic model used to fix the gauge on the first pose."""
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    return gtsam.noiseModel.Isotropic.Sigma(dim, sigma)
