import numpy as np
from numba import njit
from typing import Optional, Tuple

from scipy import linalg


@njit
def _three_point_from_uniform(uniforms: np.ndarray, dt: float):
    """Map uniforms to the three-point weak noise and its iterated term"""
    n, dim = uniforms.shape
    I_hat = np.zeros((n, dim), dtype=np.float64)
    I_hat_11 = np.zeros((n, dim), dtype=np.float64)

    sqrt_3dt = np.sqrt(3.0 * dt)
    for k in range(n):
        for i in range(dim):
            p = uniforms[k, i]
            if p < 1.0 / 6.0:
                I_hat[k, i] = sqrt_3dt
            elif p < 1.0 / 3.0:
                I_hat[k, i] = -sqrt_3dt
            I_hat_11[k, i] = 0.5 * (I_hat[k, i] * I_hat[k, i] - dt)

    return I_hat, I_hat_11


def correlation_factor(correlation: Optional[np.ndarray]) -> Optional[np.ndarray]:
    """
    Lower factor L with L @ L.T == correlation, or None for independent noise.
    Singular (semi-definite) matrices fall back to a symmetric eigen-factor.
    """
    if correlation is None:
        return None
    try:
        return np.ascontiguousarray(linalg.cholesky(correlation, lower=True))
    except linalg.LinAlgError:
        w, v = linalg.eigh(correlation)
        return np.ascontiguousarray(v * np.sqrt(np.clip(w, 0.0, None)))


def gaussian_increments(rng: np.random.Generator, steps: np.ndarray, dim: int,
                        factor: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Wiener increments for consecutive steps of the given sizes.

    Returns:
    --------
    np.ndarray, shape (len(steps), dim)
    """
    z = rng.standard_normal((len(steps), dim))
    if factor is not None:
        z = z @ factor.T
    return z * np.sqrt(np.asarray(steps, dtype=np.float64))[:, None]


def three_point_increments(rng: np.random.Generator, n_steps: int, dim: int,
                           dt: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Three-point distributed increments for weak order 2 schemes:
    +-sqrt(3 dt) with probability 1/6 each, 0 with probability 2/3.
    """
    uniforms = rng.random((n_steps, dim))
    return _three_point_from_uniform(uniforms, float(dt))


def iterated_increments(rng: np.random.Generator, steps: np.ndarray,
                        dim: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Increments dW and the double integral dZ = int int dW ds needed by strong
    order 1.5 schemes: dW = U1 sqrt(h), dZ = h^(3/2) (U1 + U2 / sqrt(3)) / 2.
    """
    h = np.asarray(steps, dtype=np.float64)[:, None]
    u = rng.standard_normal((2, len(steps), dim))
    dW = u[0] * np.sqrt(h)
    dZ = 0.5 * h ** 1.5 * (u[0] + u[1] / np.sqrt(3.0))
    return dW, dZ


def bridge_split(rng: np.random.Generator, dW: np.ndarray, dt: float, fraction: float,
                 factor: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Split an increment over [t, t + dt] at t + fraction * dt, sampling the
    intermediate value from the Brownian bridge so both pieces sum to dW.
    """
    z = rng.standard_normal(dW.shape)
    if factor is not None:
        z = factor @ z
    first = fraction * dW + np.sqrt(fraction * (1.0 - fraction) * dt) * z
    return first, dW - first
