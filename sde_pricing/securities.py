"""
Security views
==============

A ``Security`` holds only the offsets of one named component inside the joint
state and noise. Binding it to live integration buffers or to a finished
``Path`` yields a view that reads (and for buffers, writes) that component
without any index arithmetic in user code:

    def f(u, p, t):
        S = p.securities.S.bind(u)
        return p.r * S(t)

``FixedIncome`` derives the basic fixed income quantities (spot rate, money
market account, bonds, discount factors, forward rates) from a short rate
component and, optionally, a money market account component.
"""

import numpy as np
from typing import Optional, Union

from sde_pricing.dynamics import Dynamics
from sde_pricing.exceptions import FutureValueUnavailable
from sde_pricing.path import Path


class Security:
    """Reusable (name -> ranges) binding for one component."""
    __slots__ = ("name", "state_slice", "noise_slice", "dim")

    def __init__(self, name: str, state_slice: slice, noise_slice: slice, dim: int):
        self.name = name
        self.state_slice = state_slice
        self.noise_slice = noise_slice
        self.dim = dim

    @classmethod
    def from_slot(cls, slot) -> "Security":
        return cls(slot.name, slot.state_slice, slot.noise_slice, slot.dim)

    def bind(self, source, du=None) -> Union["LiveSecurity", "PathSecurity"]:
        """View over a ``Path`` or over live state (and derivative) buffers."""
        if isinstance(source, Path):
            return PathSecurity(self, source)
        return LiveSecurity(self, source, du)

    def __reduce__(self):
        return (Security, (self.name, self.state_slice, self.noise_slice, self.dim))

    def __repr__(self):
        return (f"Security({self.name!r}, state=[{self.state_slice.start}:{self.state_slice.stop}], "
                f"noise=[{self.noise_slice.start}:{self.noise_slice.stop}])")


class LiveSecurity:
    """View over the state and derivative buffers of an integrator step."""
    __slots__ = ("security", "u", "du")
    live = True

    def __init__(self, security: Security, u, du=None):
        self.security = security
        self.u = u
        self.du = du

    @property
    def value(self):
        x = self.u[self.security.state_slice]
        return float(x[0]) if self.security.dim == 1 else x

    def __call__(self, t: Optional[float] = None):
        """Current value; ``t`` is accepted for symmetry with path views."""
        return self.value

    @property
    def dx(self) -> np.ndarray:
        """
        Writable view of this component's part of ``du``: its rows for
        vector-shaped buffers, its (rows x noise columns) block for matrices.
        """
        if self.du is None:
            raise ValueError(f"security '{self.security.name}' was bound without a derivative buffer")
        rows = self.security.state_slice
        if self.du.ndim == 1:
            return self.du[rows]
        return self.du[rows, self.security.noise_slice]


class PathSecurity:
    """View over one component of a simulated path."""
    __slots__ = ("security", "path")
    live = False

    def __init__(self, security: Security, path: Path):
        self.security = security
        self.path = path

    def __call__(self, t: float):
        x = self.path.at(t, self.security.state_slice)
        return float(x[0]) if self.security.dim == 1 else x

    @property
    def times(self) -> np.ndarray:
        return self.path.times

    @property
    def values(self) -> np.ndarray:
        return self.path.states[:, self.security.state_slice]

    @property
    def noise(self) -> np.ndarray:
        return self.path.noise[:, self.security.noise_slice]


class FixedIncome:
    """
    Basic fixed income securities of a short rate model.

    Parameters:
    -----------
    dynamics : Dynamics
        Known-model short rate dynamics (supplies r(x, t) and P(t, T))
    rate : LiveSecurity or PathSecurity
        View on the short rate model state
    account : LiveSecurity or PathSecurity, optional
        View on the money market account B(t)
    """

    def __init__(self, dynamics: Dynamics, rate, account=None):
        if dynamics.model is None:
            raise TypeError("fixed income securities need known-model short rate dynamics")
        self.model = dynamics.model
        self.rate = rate
        self.account = account

    def _state(self, t) -> np.ndarray:
        return np.atleast_1d(np.asarray(self.rate(t), dtype=np.float64))

    def spot_rate(self, t: float) -> float:
        return self.model.short_rate(self._state(t), t)

    def account_value(self, t: float) -> float:
        if self.account is None:
            raise ValueError("no money market account component was given")
        return float(self.account(t))

    def bond_price(self, t: float, T: float) -> float:
        """Zero coupon bond P(t, T) from the model's own closed form."""
        return self.model.bond_price(t, T, self._state(t))

    def discount_factor(self, t: float, T: float) -> float:
        """
        D(t, T) = B(t) / B(T). Needs B at the future time T, so it is only
        available on simulated paths (payoffs), never inside coefficients.
        """
        if self.account is None:
            raise ValueError("discount factors need a money market account component")
        if getattr(self.account, "live", True):
            raise FutureValueUnavailable(
                "discount factor D(t, T) needs B(T) and is only available on simulated paths"
            )
        return self.account_value(t) / self.account_value(T)

    def forward_rate(self, t: float, T: float, S: float) -> float:
        """Simple forward rate L(t, T, S) for the period [T, S] seen at t."""
        if not t <= T < S:
            raise ValueError(f"forward rate needs t <= T < S, got {t}, {T}, {S}")
        return (self.bond_price(t, T) / self.bond_price(t, S) - 1.0) / (S - T)

    def libor_rate(self, T: float, S: float) -> float:
        """Spot Libor rate L(T, S) = L(T, T, S)."""
        return self.forward_rate(T, T, S)
