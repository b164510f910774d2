"""
Dynamics
========

A dynamics is one D-dimensional Ito SDE

    du(t) = f(t, u(t)) dt + g(t, u(t)) dW(t),   u(t0) = u0

declared by its initial state and noise structure. Coefficients are a tagged
variant: unset, arbitrary user functions (value-returning or in-place), or a
known model whose coefficients follow from its own parameters.
"""

import logging
import numpy as np
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from sde_pricing.exceptions import CoefficientsNotSet, ShapeMismatch
from sde_pricing.models import ShortRateModel, get_model
from sde_pricing.parameters import as_record
from sde_pricing.state_layout import DiagonalNoise, NoiseSpec, StateLayout

logger = logging.getLogger(__name__)


class _Unset:
    """Marker for dynamics whose coefficients have not been supplied yet."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __reduce__(self):
        return (_Unset, ())

    def __bool__(self):
        return False

    def __repr__(self):
        return "UNSET"


UNSET = _Unset()


def coerce_output(value, expected, component: str, what: str) -> np.ndarray:
    """Convert a coefficient result to float64 and check it against the expected shape."""
    value = np.asarray(value, dtype=np.float64)
    expected = tuple(expected)
    if value.shape == expected:
        return value
    # Size-one results may come back as scalars or flat sequences
    if len(expected) == 1 and value.ndim <= 1 and value.size == expected[0]:
        return value.reshape(expected)
    raise ShapeMismatch(component, expected, value.shape, what=what)


class DriftDiffusion(ABC):
    """Capability shared by every concrete coefficient variant."""
    inplace = False

    @abstractmethod
    def drift(self, u, p, t, out, shape, component):
        ...

    @abstractmethod
    def diffusion(self, u, p, t, out, shape, component):
        ...


class OutOfPlaceCoefficients(DriftDiffusion):
    """Coefficients given as ``f(u, p, t) -> du``."""
    inplace = False

    def __init__(self, drift: Callable, diffusion: Optional[Callable] = None):
        self.f = drift
        self.g = diffusion

    def drift(self, u, p, t, out, shape, component):
        value = coerce_output(self.f(u, p, t), shape, component, "drift")
        if out is None:
            return value
        out[...] = value
        return out

    def diffusion(self, u, p, t, out, shape, component):
        if self.g is None:
            value = np.zeros(shape)
        else:
            value = coerce_output(self.g(u, p, t), shape, component, "diffusion")
        if out is None:
            return value
        out[...] = value
        return out


class InPlaceCoefficients(DriftDiffusion):
    """Coefficients given as ``f(du, u, p, t)`` writing into a preallocated buffer."""
    inplace = True

    def __init__(self, drift: Callable, diffusion: Optional[Callable] = None):
        self.f = drift
        self.g = diffusion

    @staticmethod
    def _buffer(out, shape, component, what):
        if out is None:
            return np.zeros(shape)
        if out.shape != tuple(shape):
            raise ShapeMismatch(component, shape, out.shape, what=f"{what} buffer")
        out.fill(0.0)
        return out

    def drift(self, u, p, t, out, shape, component):
        du = self._buffer(out, shape, component, "drift")
        self.f(du, u, p, t)
        return du

    def diffusion(self, u, p, t, out, shape, component):
        du = self._buffer(out, shape, component, "diffusion")
        if self.g is not None:
            self.g(du, u, p, t)
        return du


class KnownModelCoefficients(DriftDiffusion):
    """Coefficients derived from a registered known model."""

    def __init__(self, model: ShortRateModel, inplace: bool = False):
        self.model = model
        self.inplace = inplace

    @property
    def kind(self) -> str:
        return self.model.kind

    def drift(self, u, p, t, out, shape, component):
        value = self.model.drift(np.asarray(u, dtype=np.float64), t)
        value = coerce_output(value, shape, component, "drift")
        if out is None:
            return value
        out[...] = value
        return out

    def diffusion(self, u, p, t, out, shape, component):
        value = self.model.diffusion(np.asarray(u, dtype=np.float64), t)
        value = coerce_output(value, shape, component, "diffusion")
        if out is None:
            return value
        out[...] = value
        return out


class Dynamics:
    """
    One stochastic sub-process: initial state, noise structure and
    (possibly deferred) coefficients.

    Parameters:
    -----------
    state0 : array-like
        Initial condition u0, length D
    noise : NoiseSpec, optional
        Noise structure, diagonal by default
    correlation : array-like, optional
        Correlation of the driving noises (diagonal or non-diagonal noise)
    t0 : float, default 0.0
        Initial time
    """

    def __init__(self,
                 state0,
                 noise: Optional[NoiseSpec] = None,
                 correlation=None,
                 t0: float = 0.0):
        state0 = np.array(state0, dtype=np.float64, ndmin=1)
        if state0.ndim != 1 or state0.size == 0:
            raise ValueError(f"initial state must be a non-empty vector, got shape {state0.shape}")
        state0.setflags(write=False)

        self._state0 = state0
        self.noise = DiagonalNoise() if noise is None else noise
        self.t0 = float(t0)
        self.name = "dynamics"

        # Single-entry layout validates the noise spec and correlation eagerly
        self._layout = StateLayout(
            [(self.name, state0.size, self.noise)],
            correlations={self.name: correlation} if correlation is not None else None,
        )
        self.correlation = self._layout[self.name].correlation
        self.coefficients: Any = UNSET
        self.params = None

    @classmethod
    def from_model(cls, kind: str, state0, noise: Optional[NoiseSpec] = None,
                   correlation=None, t0: float = 0.0, inplace: bool = False,
                   **model_params) -> "Dynamics":
        """
        Declare dynamics with known coefficients.

        Example:
        --------
        >>> r = Dynamics.from_model("one_factor_affine", [0.05],
        ...                         kappa=0.4363, theta=0.0613, sigma=0.1491)
        """
        model = get_model(kind)(inplace=inplace, **model_params)
        state0 = np.array(state0, dtype=np.float64, ndmin=1)
        if state0.size != model.dim:
            raise ValueError(f"{kind} model has dimension {model.dim}, "
                             f"initial state has {state0.size} entries")
        dynamics = cls(state0, noise=noise if noise is not None else model.default_noise(),
                       correlation=correlation, t0=t0)
        dynamics.coefficients = KnownModelCoefficients(model, inplace=inplace)
        dynamics.params = model
        return dynamics

    def attach(self, drift: Callable, diffusion: Optional[Callable] = None,
               params=None, inplace: bool = False) -> "Dynamics":
        """
        Attach arbitrary coefficients, replacing whatever was set before.

        ``inplace=False``: ``drift(u, p, t) -> du``; ``inplace=True``:
        ``drift(du, u, p, t)`` writes into ``du``. A missing diffusion is zero.
        """
        if self.coefficients is not UNSET:
            logger.debug("replacing %r coefficients of %s", self.coefficients, self)
        variant = InPlaceCoefficients if inplace else OutOfPlaceCoefficients
        self.coefficients = variant(drift, diffusion)
        self.params = as_record(params)
        return self

    @property
    def state0(self) -> np.ndarray:
        return self._state0

    @property
    def dim(self) -> int:
        return self._state0.size

    @property
    def noise_dim(self) -> int:
        return self._layout.noise_dim

    @property
    def noise_shape(self):
        """Shape of this component's own diffusion output."""
        if self.noise_dim == 0:
            return (self.dim,)
        return self._layout.noise_shape

    @property
    def has_coefficients(self) -> bool:
        return self.coefficients is not UNSET

    @property
    def model(self) -> Optional[ShortRateModel]:
        if isinstance(self.coefficients, KnownModelCoefficients):
            return self.coefficients.model
        return None

    @property
    def kind(self) -> Optional[str]:
        model = self.model
        return model.kind if model is not None else None

    @property
    def inplace(self) -> bool:
        return bool(getattr(self.coefficients, "inplace", False))

    def _require(self, component):
        if self.coefficients is UNSET:
            raise CoefficientsNotSet(component)
        return self.coefficients

    def evaluate_drift(self, u, p=None, t: float = 0.0, out=None, component: str = None):
        """Evaluate the drift coefficient; returns ``out`` when a buffer is given."""
        component = component or self.name
        coefficients = self._require(component)
        return coefficients.drift(u, self.params if p is None else p, t, out,
                                  (self.dim,), component)

    def evaluate_diffusion(self, u, p=None, t: float = 0.0, out=None, component: str = None):
        """Evaluate the diffusion coefficient, shaped as ``noise_shape``."""
        component = component or self.name
        coefficients = self._require(component)
        return coefficients.diffusion(u, self.params if p is None else p, t, out,
                                      self.noise_shape, component)

    def __repr__(self):
        kind = self.kind or ("arbitrary" if self.has_coefficients else "unset")
        return f"Dynamics(dim={self.dim}, noise={self.noise}, coefficients={kind})"
