from typing import Optional
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None


def make_spd(cov: np.ndarray, eps: float = 1e-9) -> np.ndarray:
    """Jitter a covariance to be SPD if needed.

    Logged covariances can be nearly singular; diagonal jitter grows tenfold
    until Cholesky succeeds.
    """
    cov = np.array(cov, dtype=float)
    n = cov.shape[0]
    # Symmetrize
    cov = 0.5 * (cov + cov.T)
    jitter = eps
    for _ in range(8):
        try:
            np.linalg.cholesky(cov + np.eye(n) * jitter)
            return cov + np.eye(n) * jitter
        except np.linalg.LinAlgError:
            jitter *= 10.0
    # Last resort
    return cov + np.eye(n) * jitter


def spd_sqrt_inverse(cov: np.ndarray, lower_eigenvalue_bound: float) -> np.ndarray:
    """Return ``cov^(-1/2)`` for a symmetric covariance.

    Eigenvalues below ``lower_eigenvalue_bound`` are clamped to it, so a
    degenerate covariance yields a large but finite weight instead of an
    ill-conditioned one.
    """
    if lower_eigenvalue_bound <= 0.0:
        raise ValueError(f"lower_eigenvalue_bound must be positive, got {lower_eigenvalue_bound}")
    cov = np.array(cov, dtype=float)
    cov = 0.5 * (cov + cov.T)
    eigenvalues, eigenvectors = np.linalg.eigh(cov)
    clamped = np.maximum(eigenvalues, lower_eigenvalue_bound)
    return eigenvectors @ np.diag(1.0 / np.sqrt(clamped)) @ eigenvectors.T


def sqrt_information_model(sqrt_lambda: np.ndarray):
    """Create a GTSAM Gaussian noise model from a 6x6 sqrt-information matrix.

    Ensures float64 dtype and contiguous row-major memory.
    """
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    R = np.array(sqrt_lambda, dtype=np.float64, order="C")
    return gtsam.noiseModel.Gaussian.SqrtInformation(R)


def robustify(base, kind: Optional[str] = None, k: Optional[float] = None):
    """Wrap a base noise model with a robust kernel.

    kind: 'huber' | 'cauchy' | None
    k: tuning constant (default: Huber 1.345, Cauchy 1.0)
    """
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build robust model")
    if not kind or kind.lower() == "none":
        return base
    kind = kind.lower()
    if kind == "huber":
        k = 1.345 if k is None else k
        loss = gtsam.noiseModel.mEstimator.Huber(k)
    elif kind == "cauchy":
        k = 1.0 if k is None else k
        loss = gtsam.noiseModel.mEstimator.Cauchy(k)
    else:
        raise ValueError(f"Unsupported robust kernel: {kind}")
    return gtsam.noiseModel.Robust.Create(loss, base)
