import logging
import numpy as np
from dataclasses import dataclass
from typing import ClassVar, Optional, Tuple
from numba import njit

from sde_pricing.exceptions import CoefficientsNotSet, IntegrationDiverged, InvalidNoiseSpec
from sde_pricing.noise_generation import (bridge_split, correlation_factor, gaussian_increments,
                                          iterated_increments, three_point_increments)
from sde_pricing.path import Path

logger = logging.getLogger(__name__)


@njit
def _euler_vector(y: np.ndarray, a: np.ndarray, b: np.ndarray, dt: float,
                  dw: np.ndarray, out: np.ndarray):
    """Euler-Maruyama step for diagonal and scalar noise (diffusion as a vector)"""
    for i in range(y.shape[0]):
        out[i] = y[i] + a[i] * dt + b[i] * dw[i]


@njit
def _euler_matrix(y: np.ndarray, a: np.ndarray, B: np.ndarray, dt: float,
                  dw: np.ndarray, out: np.ndarray):
    """Euler-Maruyama step for general noise (diffusion as a D x M matrix)"""
    for i in range(y.shape[0]):
        acc = y[i] + a[i] * dt
        for j in range(dw.shape[0]):
            acc += B[i, j] * dw[j]
        out[i] = acc


@njit
def _weak2_update(y: np.ndarray, a: np.ndarray, a_bar: np.ndarray, b: np.ndarray,
                  b_plus: np.ndarray, b_minus: np.ndarray, dt: float,
                  I_hat: np.ndarray, I_hat_11: np.ndarray, out: np.ndarray):
    """
    Final combination of the explicit weak order 2.0 scheme

    Parameters:
    -----------
    a, a_bar : np.ndarray
        Drift at the current state and at the supporting value
    b, b_plus, b_minus : np.ndarray
        Diffusion at the current state and at the two supporting values
    I_hat, I_hat_11 : np.ndarray
        Three-point noise and its iterated term (W^2 - dt) / 2
    """
    sqrt_dt = np.sqrt(dt)
    for i in range(y.shape[0]):
        out[i] = (y[i]
                  + 0.5 * (a_bar[i] + a[i]) * dt
                  + 0.25 * (b_plus[i] + b_minus[i] + 2.0 * b[i]) * I_hat[i]
                  + 0.5 * (b_plus[i] - b_minus[i]) * I_hat_11[i] / sqrt_dt)


@njit
def _platen15_update(y: np.ndarray, drift_part: np.ndarray, b: np.ndarray,
                     b_plus: np.ndarray, b_minus: np.ndarray,
                     b_phi_plus: np.ndarray, b_phi_minus: np.ndarray,
                     dt: float, dW: np.ndarray, dZ: np.ndarray, out: np.ndarray):
    """Diffusion terms of the explicit strong order 1.5 scheme, added to the drift part"""
    sqrt_dt = np.sqrt(dt)
    for i in range(y.shape[0]):
        w = dW[i]
        out[i] = (y[i] + drift_part[i]
                  + b[i] * w
                  + (b_plus[i] - b_minus[i]) * (w * w - dt) / (4.0 * sqrt_dt)
                  + (b_plus[i] - 2.0 * b[i] + b_minus[i]) * (w * dt - dZ[i]) / (2.0 * dt)
                  + (b_phi_plus[i] - b_phi_minus[i] - b_plus[i] + b_minus[i])
                  * (w * w / 3.0 - dt) * w / (4.0 * dt))


def time_grid(t0: float, T: float, dt: float) -> np.ndarray:
    """Uniform grid t0, t0 + dt, ... ending exactly at T (last step may be shorter)."""
    if dt <= 0:
        raise ValueError(f"step size must be positive, got {dt}")
    if T < t0:
        raise ValueError(f"horizon T={T} lies before the initial time t0={t0}")
    n_steps = int(np.ceil((T - t0) / dt - 1e-9))
    times = np.minimum(t0 + dt * np.arange(n_steps + 1), T)
    times[-1] = T
    return times


# Schemes ------------------------------------------------------------------

@dataclass(frozen=True)
class EulerMaruyama:
    """Euler-Maruyama, strong order 0.5 and weak order 1.0, any noise structure."""
    dt: float = 0.01
    name: ClassVar[str] = "euler_maruyama"
    strong_order: ClassVar[float] = 0.5
    weak_order: ClassVar[float] = 1.0
    adaptive: ClassVar[bool] = False

    def check(self, system):
        if self.dt <= 0:
            raise ValueError(f"step size must be positive, got {self.dt}")


@dataclass(frozen=True)
class PlatenWeak2(EulerMaruyama):
    """
    Explicit weak order 2.0 scheme driven by three-point noise.
    Scalar noise, or uncorrelated diagonal noise.
    """
    name: ClassVar[str] = "platen_weak2"
    strong_order: ClassVar[float] = 0.5
    weak_order: ClassVar[float] = 2.0

    def check(self, system):
        super().check(system)
        if system.noise_kind not in ("scalar", "diagonal") or system.correlation is not None:
            raise InvalidNoiseSpec(
                f"{self.name} supports scalar or uncorrelated diagonal noise, "
                f"system noise is {system.noise_kind}"
                + (" (correlated)" if system.correlation is not None else "")
            )


@dataclass(frozen=True)
class Platen15(PlatenWeak2):
    """
    Explicit strong order 1.5 scheme. Scalar noise, or uncorrelated diagonal
    noise whose i-th diffusion entry depends on the i-th state entry only.
    """
    name: ClassVar[str] = "platen15"
    strong_order: ClassVar[float] = 1.5
    weak_order: ClassVar[float] = 2.0


@dataclass(frozen=True)
class AdaptiveEulerMaruyama(EulerMaruyama):
    """
    Euler-Maruyama with step doubling error control. Rejected steps are
    split along a Brownian bridge so the driving noise path stays the same.

    Parameters:
    -----------
    dt : float
        Initial step size
    rtol, atol : float
        Relative and absolute tolerances of the local error estimate
    dtmin, dtmax : float
        Step size bounds; a step of size dtmin is always accepted
    safety : float
        Safety factor applied to the step size update
    max_steps : int
        Attempted steps before the path is considered diverged
    """
    rtol: float = 1e-2
    atol: float = 1e-2
    dtmin: float = 1e-8
    dtmax: float = 0.1
    safety: float = 0.9
    max_steps: int = 1_000_000
    name: ClassVar[str] = "adaptive_euler_maruyama"
    adaptive: ClassVar[bool] = True

    def check(self, system):
        super().check(system)
        if not 0 < self.dtmin <= self.dtmax:
            raise ValueError(f"need 0 < dtmin <= dtmax, got {self.dtmin}, {self.dtmax}")
        if self.rtol < 0 or self.atol < 0 or self.rtol + self.atol == 0:
            raise ValueError("tolerances must be non-negative and not both zero")


SCHEMES = {cls.name: cls for cls in (EulerMaruyama, PlatenWeak2, Platen15, AdaptiveEulerMaruyama)}


def get_scheme(name: str, **kwargs):
    """Build a scheme from its registered name, e.g. ``get_scheme("platen15", dt=1e-3)``."""
    try:
        return SCHEMES[name](**kwargs)
    except KeyError:
        raise ValueError(f"unknown scheme '{name}', available: {sorted(SCHEMES)}") from None


# Integrator ---------------------------------------------------------------

class Integrator:
    """
    Produces single paths of a DynamicalSystem with a given scheme.

    Parameters:
    -----------
    system : DynamicalSystem
        System with coefficients bound, either jointly or per component
    scheme : scheme instance, optional
        Defaults to ``EulerMaruyama(dt=0.01)``
    """

    def __init__(self, system, scheme=None):
        if not system.has_coefficients:
            missing = [n for n, d in system.components.items() if not d.has_coefficients]
            raise CoefficientsNotSet(missing[0] if missing else "<system>",
                                     "cannot integrate a system without coefficients")
        self.system = system
        self.scheme = EulerMaruyama() if scheme is None else scheme
        self.scheme.check(system)

        self.dim = system.dim
        self.noise_dim = system.noise_dim
        self.noise_kind = system.noise_kind
        self.factor = correlation_factor(system.correlation)
        self.params = system.params

        # Work buffers, reused across steps of one path
        self._a = np.zeros(self.dim)
        self._b = np.zeros(system.noise_shape)
        self._next = np.zeros(self.dim)

        logger.debug("integrator for %r using %s", system, self.scheme)

    def solve(self, T: float, seed=None, rng: Optional[np.random.Generator] = None,
              path_index: Optional[int] = None) -> Path:
        """
        Integrate from the system's t0 to T.

        Parameters:
        -----------
        T : float
            Horizon
        seed : int or SeedSequence, optional
            Seed of the path's random stream (ignored when ``rng`` is given)
        rng : np.random.Generator, optional
            Random stream to draw the path's noise from
        path_index : int, optional
            Index reported in IntegrationDiverged and stored on the Path

        Returns:
        --------
        Path
        """
        if rng is None:
            rng = np.random.default_rng(seed)
        scheme = self.scheme
        if scheme.adaptive:
            times, states, noise = self._solve_adaptive(T, rng, path_index)
        elif isinstance(scheme, Platen15):
            times, states, noise = self._solve_platen15(T, rng, path_index)
        elif isinstance(scheme, PlatenWeak2):
            times, states, noise = self._solve_weak2(T, rng, path_index)
        else:
            times, states, noise = self._solve_euler(T, rng, path_index)
        return Path(times, states, noise, self.system.layout, index=path_index)

    # Evaluation helpers -------------------------------------------------

    def _drift(self, y, t, out=None):
        return self.system.joint_drift(y, self.params, t, out=out)

    def _diffusion(self, y, t, out=None):
        return self.system.joint_diffusion(y, self.params, t, out=out)

    def _vector_noise(self, dw: np.ndarray) -> np.ndarray:
        """Noise as one increment per state entry (scalar noise is shared)."""
        if self.noise_kind == "scalar":
            return np.full(self.dim, dw[0])
        return dw

    def _euler_step(self, y, t, dt, dw, out):
        a = self._drift(y, t, out=self._a)
        b = self._diffusion(y, t, out=self._b)
        if self.noise_kind in ("diagonal", "scalar"):
            _euler_vector(y, a, b, dt, self._vector_noise(dw), out)
        else:
            _euler_matrix(y, a, b, dt, dw, out)
        return out

    @staticmethod
    def _check_finite(y_next, path_index, t, y):
        if not np.all(np.isfinite(y_next)):
            raise IntegrationDiverged(path_index, t, y.copy())

    def _prepare(self, T):
        times = time_grid(self.system.t0, T, self.scheme.dt)
        states = np.empty((times.size, self.dim))
        states[0] = self.system.state
        return times, states

    # Fixed step schemes -------------------------------------------------

    def _solve_euler(self, T, rng, path_index):
        times, states = self._prepare(T)
        steps = np.diff(times)
        noise = gaussian_increments(rng, steps, self.noise_dim, self.factor)

        for k in range(steps.size):
            y = states[k]
            self._euler_step(y, times[k], steps[k], noise[k], self._next)
            self._check_finite(self._next, path_index, times[k], y)
            states[k + 1] = self._next
        return times, states, noise

    def _solve_weak2(self, T, rng, path_index):
        times, states = self._prepare(T)
        steps = np.diff(times)
        n_steps = steps.size
        # Draw with the nominal step; the shortened last step is rescaled below
        I_hat, I_hat_11 = three_point_increments(rng, n_steps, self.noise_dim, self.scheme.dt)
        if n_steps and steps[-1] != self.scheme.dt:
            ratio = steps[-1] / self.scheme.dt
            I_hat[-1] *= np.sqrt(ratio)
            I_hat_11[-1] = 0.5 * (I_hat[-1] ** 2 - steps[-1])

        a_bar = np.zeros(self.dim)
        b_plus = np.zeros(self.dim)
        b_minus = np.zeros(self.dim)
        for k in range(n_steps):
            y, t, h = states[k], times[k], steps[k]
            W = self._vector_noise(I_hat[k])
            W11 = self._vector_noise(I_hat_11[k])
            a = self._drift(y, t, out=self._a)
            b = self._diffusion(y, t, out=self._b)
            sqrt_h = np.sqrt(h)

            support = y + a * h
            self._drift(support + b * W, t + h, out=a_bar)
            self._diffusion(support + b * sqrt_h, t, out=b_plus)
            self._diffusion(support - b * sqrt_h, t, out=b_minus)

            _weak2_update(y, a, a_bar, b, b_plus, b_minus, h, W, W11, self._next)
            self._check_finite(self._next, path_index, t, y)
            states[k + 1] = self._next
        return times, states, I_hat

    def _solve_platen15(self, T, rng, path_index):
        times, states = self._prepare(T)
        steps = np.diff(times)
        dW_all, dZ_all = iterated_increments(rng, steps, self.noise_dim)

        m = self.noise_dim
        scalar = self.noise_kind == "scalar"
        a_plus = np.zeros(self.dim)
        a_minus = np.zeros(self.dim)
        b_plus = np.zeros(self.dim)
        b_minus = np.zeros(self.dim)
        b_phi_plus = np.zeros(self.dim)
        b_phi_minus = np.zeros(self.dim)

        for k in range(steps.size):
            y, t, h = states[k], times[k], steps[k]
            sqrt_h = np.sqrt(h)
            a = self._drift(y, t, out=self._a)
            b = self._diffusion(y, t, out=self._b)

            # Drift part: a h plus one pair of supporting values per noise column
            drift_part = a * h
            base = y + a * h / m
            for j in range(m):
                if scalar:
                    column = b * sqrt_h
                else:
                    column = np.zeros(self.dim)
                    column[j] = b[j] * sqrt_h
                self._drift(base + column, t, out=a_plus)
                self._drift(base - column, t, out=a_minus)
                drift_part += ((a_plus - a_minus) * dZ_all[k, j] / (2.0 * sqrt_h)
                               + (a_plus - 2.0 * a + a_minus) * h / 4.0)

            upsilon_plus = y + a * h + b * sqrt_h
            self._diffusion(upsilon_plus, t, out=b_plus)
            self._diffusion(y + a * h - b * sqrt_h, t, out=b_minus)
            self._diffusion(upsilon_plus + b_plus * sqrt_h, t, out=b_phi_plus)
            self._diffusion(upsilon_plus - b_plus * sqrt_h, t, out=b_phi_minus)

            _platen15_update(y, drift_part, b, b_plus, b_minus, b_phi_plus, b_phi_minus, h,
                             self._vector_noise(dW_all[k]), self._vector_noise(dZ_all[k]),
                             self._next)
            self._check_finite(self._next, path_index, t, y)
            states[k + 1] = self._next
        return times, states, dW_all

    # Adaptive scheme ----------------------------------------------------

    def _local_error(self, y, y_full, y_two):
        scheme = self.scheme
        scale = scheme.atol + scheme.rtol * np.maximum(np.abs(y), np.abs(y_two))
        return float(np.max(np.abs(y_full - y_two) / scale))

    def _solve_adaptive(self, T, rng, path_index):
        scheme = self.scheme
        t = self.system.t0
        if T < t:
            raise ValueError(f"horizon T={T} lies before the initial time t0={t}")
        y = np.array(self.system.state, dtype=np.float64)
        h = min(scheme.dt, scheme.dtmax)

        times, states, noise = [t], [y.copy()], []
        pending = []
        y_full = np.zeros(self.dim)
        y_half = np.zeros(self.dim)
        y_two = np.zeros(self.dim)
        attempts = 0
        eps = 1e-12 * max(1.0, abs(T))

        while t < T - eps:
            attempts += 1
            if attempts > scheme.max_steps:
                raise IntegrationDiverged(
                    path_index, t, y.copy(),
                    f"path {path_index}: adaptive step limit of {scheme.max_steps} reached at t={t}",
                )

            if pending:
                h_step, dW = pending.pop()
            else:
                h_step = min(h, T - t)
                dW = gaussian_increments(rng, [h_step], self.noise_dim, self.factor)[0]

            dWa, dWb = bridge_split(rng, dW, h_step, 0.5, self.factor)
            half = 0.5 * h_step
            self._euler_step(y, t, h_step, dW, y_full)
            self._euler_step(y, t, half, dWa, y_half)
            self._euler_step(y_half, t + half, half, dWb, y_two)
            self._check_finite(y_full, path_index, t, y)
            self._check_finite(y_two, path_index, t, y)

            err = self._local_error(y, y_full, y_two)
            if err <= 1.0 or h_step <= scheme.dtmin:
                times.extend((t + half, t + h_step))
                states.extend((y_half.copy(), y_two.copy()))
                noise.extend((dWa, dWb))
                t += h_step
                y = y_two.copy()
                grow = 2.0 if err == 0.0 else min(max(scheme.safety / err, 0.2), 2.0)
                h = min(max(h_step * grow, scheme.dtmin), scheme.dtmax)
            else:
                # Replay the rejected interval as two halves, first half on top
                pending.append((half, dWb))
                pending.append((half, dWa))
                h = max(h_step * min(max(scheme.safety / err, 0.1), 0.5), scheme.dtmin)

        times = np.asarray(times)
        if times.size > 1:
            times[-1] = T
        noise = np.asarray(noise).reshape(len(noise), self.noise_dim)
        logger.debug("adaptive path %s: %d accepted steps, %d attempts",
                     path_index, len(noise) // 2, attempts)
        return times, np.asarray(states), noise


def solve(system, T: float, scheme=None, seed=None) -> Path:
    """Integrate one path of ``system`` up to ``T``."""
    return Integrator(system, scheme).solve(T, seed=seed)
