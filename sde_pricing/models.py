"""
Known-model coefficient generators
==================================

Models whose drift and diffusion follow from a handful of (possibly time
dependent) parameter functions. Each model kind is registered under a string
tag so dynamics can be declared as ``Dynamics.from_model(kind, x0, **params)``.

Affine short rate models price zero coupon bonds as

    P(t, T) = exp(A(t, T) - B(t, T) . x(t))

with (A, B) solving the Riccati system backwards from A(T, T) = B(T, T) = 0:

    dB/dt = K^T B + 1/2 beta^T (Sigma^T B)^2 - xi1
    dA/dt = B^T K theta - 1/2 alpha . (Sigma^T B)^2 + xi0
"""

import logging
import threading
import numpy as np
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from scipy.integrate import solve_ivp

from sde_pricing.exceptions import ShapeMismatch, UnknownModelKind
from sde_pricing.state_layout import DiagonalNoise, NonDiagonalNoise

logger = logging.getLogger(__name__)

MODEL_REGISTRY: Dict[str, type] = {}

_RICCATI_CACHE_SIZE = 4096


def register_model(kind: str):
    """Class decorator registering a known model under ``kind``."""

    def decorator(cls):
        if kind in MODEL_REGISTRY:
            raise ValueError(f"model kind '{kind}' is already registered")
        cls.kind = kind
        MODEL_REGISTRY[kind] = cls
        return cls

    return decorator


def get_model(kind: str) -> type:
    try:
        return MODEL_REGISTRY[kind]
    except KeyError:
        raise UnknownModelKind(
            f"unknown model kind '{kind}'; registered kinds: {sorted(MODEL_REGISTRY)}"
        ) from None


def parameter_function(value, shape: Tuple[int, ...], inplace: bool = False,
                       name: str = "parameter") -> Callable[[float], np.ndarray]:
    """
    Normalise a model parameter into a function of time.

    Parameters:
    -----------
    value : float, array or callable
        Constant, value function ``fn(t)`` or in-place function ``fn(buf, t)``
    shape : tuple
        Expected shape of the parameter value
    inplace : bool
        Whether callables write into a preallocated buffer
    name : str
        Parameter name for error messages

    Returns:
    --------
    callable
        ``evaluate(t) -> np.ndarray`` of the given shape
    """
    shape = tuple(shape)

    if callable(value):
        if inplace:
            local = threading.local()

            def evaluate(t):
                buf = getattr(local, "buf", None)
                if buf is None:
                    buf = local.buf = np.zeros(shape, dtype=np.float64)
                buf.fill(0.0)
                value(buf, t)
                return buf
        else:
            def evaluate(t):
                out = np.asarray(value(t), dtype=np.float64)
                if out.shape != shape:
                    try:
                        out = np.broadcast_to(out, shape)
                    except ValueError:
                        raise ShapeMismatch(name, shape, out.shape, what="model parameter") from None
                return out
        return evaluate

    const = np.asarray(value, dtype=np.float64)
    try:
        const = np.broadcast_to(const, shape)
    except ValueError:
        raise ShapeMismatch(name, shape, const.shape, what="model parameter") from None

    def constant(t):
        return const

    return constant


class ShortRateModel(ABC):
    """Interface of a known short rate model."""
    kind: Optional[str] = None
    dim: int = 1

    @abstractmethod
    def default_noise(self):
        ...

    @abstractmethod
    def drift(self, x: np.ndarray, t: float, out: Optional[np.ndarray] = None) -> np.ndarray:
        ...

    @abstractmethod
    def diffusion(self, x: np.ndarray, t: float, out: Optional[np.ndarray] = None) -> np.ndarray:
        ...

    @abstractmethod
    def short_rate(self, x: np.ndarray, t: float) -> float:
        ...

    @abstractmethod
    def bond_price(self, t: float, T: float, x: np.ndarray) -> float:
        ...


class AffineModel(ShortRateModel):
    """Shared machinery for affine models: parameter matrices and Riccati solve."""

    def __init__(self):
        self._riccati_cache: Dict[Tuple[float, float], Tuple[float, np.ndarray]] = {}

    @abstractmethod
    def matrices(self, t: float):
        """Return (K, theta, Sigma, alpha, beta, xi0, xi1) at time t in matrix form."""

    def _riccati_rhs(self, t, y):
        K, theta, Sigma, alpha, beta, xi0, xi1 = self.matrices(t)
        B = y[1:]
        v = (Sigma.T @ B) ** 2
        dA = B @ (K @ theta) - 0.5 * (alpha @ v) + xi0
        dB = K.T @ B + 0.5 * (beta.T @ v) - xi1
        return np.concatenate(([dA], dB))

    def affine_coefficients(self, t: float, T: float) -> Tuple[float, np.ndarray]:
        """A(t, T) and B(t, T) of the exponential-affine bond price."""
        if T < t:
            raise ValueError(f"bond maturity T={T} precedes valuation time t={t}")
        key = (float(t), float(T))
        cached = self._riccati_cache.get(key)
        if cached is not None:
            return cached

        if T == t:
            result = (0.0, np.zeros(self.dim))
        else:
            sol = solve_ivp(self._riccati_rhs, (T, t), np.zeros(self.dim + 1),
                            method="RK45", rtol=1e-10, atol=1e-12)
            if not sol.success:
                raise RuntimeError(f"Riccati integration failed on [{t}, {T}]: {sol.message}")
            result = (float(sol.y[0, -1]), sol.y[1:, -1].copy())

        if len(self._riccati_cache) >= _RICCATI_CACHE_SIZE:
            self._riccati_cache.clear()
        self._riccati_cache[key] = result
        return result

    def bond_price(self, t: float, T: float, x) -> float:
        A, B = self.affine_coefficients(t, T)
        return float(np.exp(A - B @ np.atleast_1d(np.asarray(x, dtype=np.float64))))


@register_model("one_factor_affine")
class OneFactorAffineModel(AffineModel):
    """
    dx = kappa(t) (theta(t) - x) dt + Sigma(t) sqrt(alpha(t) + beta(t) x) dW,
    r = xi0(t) + xi1(t) x.

    Constant kappa, theta, Sigma with alpha = 1 and beta = 0 is Vasicek;
    alpha = 0 and beta = 1 is Cox-Ingersoll-Ross.
    """
    dim = 1

    def __init__(self, kappa, theta, sigma, alpha=1.0, beta=0.0, xi0=0.0, xi1=1.0,
                 inplace: bool = False):
        super().__init__()
        self.kappa = parameter_function(kappa, (), inplace, "kappa")
        self.theta = parameter_function(theta, (), inplace, "theta")
        self.sigma = parameter_function(sigma, (), inplace, "sigma")
        self.alpha = parameter_function(alpha, (), inplace, "alpha")
        self.beta = parameter_function(beta, (), inplace, "beta")
        self.xi0 = parameter_function(xi0, (), inplace, "xi0")
        self.xi1 = parameter_function(xi1, (), inplace, "xi1")

    def default_noise(self):
        return DiagonalNoise(1)

    def matrices(self, t):
        return (np.array([[float(self.kappa(t))]]),
                np.array([float(self.theta(t))]),
                np.array([[float(self.sigma(t))]]),
                np.array([float(self.alpha(t))]),
                np.array([[float(self.beta(t))]]),
                float(self.xi0(t)),
                np.array([float(self.xi1(t))]))

    def drift(self, x, t, out=None):
        value = float(self.kappa(t)) * (float(self.theta(t)) - x[0])
        if out is None:
            return np.array([value])
        out[0] = value
        return out

    def diffusion(self, x, t, out=None):
        variance = max(float(self.alpha(t)) + float(self.beta(t)) * x[0], 0.0)
        value = float(self.sigma(t)) * np.sqrt(variance)
        if out is None:
            return np.array([value])
        out[0] = value
        return out

    def short_rate(self, x, t):
        return float(self.xi0(t)) + float(self.xi1(t)) * float(np.asarray(x).ravel()[0])


@register_model("multi_factor_affine")
class MultiFactorAffineModel(AffineModel):
    """
    dx = K(t) (theta(t) - x) dt + Sigma(t) diag(sqrt(alpha(t) + beta(t) x)) dW,
    r = xi0(t) + xi1(t) . x.

    Covers the Dai-Singleton A_m(n) family; K, Sigma and beta are n x n,
    theta, alpha and xi1 are n-vectors, xi0 is a scalar.
    """

    def __init__(self, kappa, theta, sigma, alpha, beta, xi0=0.0, xi1=None,
                 dim: Optional[int] = None, inplace: bool = False):
        super().__init__()
        if dim is None:
            for candidate in (theta, alpha, xi1):
                if candidate is not None and not callable(candidate) and np.ndim(candidate) == 1:
                    dim = len(candidate)
                    break
        if dim is None:
            raise ValueError("model dimension cannot be inferred from callables; pass dim=")
        self.dim = n = int(dim)

        self.kappa = parameter_function(kappa, (n, n), inplace, "kappa")
        self.theta = parameter_function(theta, (n,), inplace, "theta")
        self.sigma = parameter_function(sigma, (n, n), inplace, "sigma")
        self.alpha = parameter_function(alpha, (n,), inplace, "alpha")
        self.beta = parameter_function(beta, (n, n), inplace, "beta")
        self.xi0 = parameter_function(xi0, (), inplace, "xi0")
        self.xi1 = parameter_function(np.ones(n) if xi1 is None else xi1, (n,), inplace, "xi1")

    def default_noise(self):
        return NonDiagonalNoise(self.dim)

    def matrices(self, t):
        return (np.array(self.kappa(t)), np.array(self.theta(t)), np.array(self.sigma(t)),
                np.array(self.alpha(t)), np.array(self.beta(t)), float(self.xi0(t)),
                np.array(self.xi1(t)))

    def drift(self, x, t, out=None):
        value = self.kappa(t) @ (self.theta(t) - x)
        if out is None:
            return value
        out[...] = value
        return out

    def diffusion(self, x, t, out=None):
        variance = np.maximum(self.alpha(t) + self.beta(t) @ x, 0.0)
        value = self.sigma(t) * np.sqrt(variance)[None, :]
        if out is None:
            return value
        out[...] = value
        return out

    def short_rate(self, x, t):
        return float(self.xi0(t)) + float(self.xi1(t) @ np.asarray(x, dtype=np.float64))
