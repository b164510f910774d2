import logging
import numpy as np
from collections import OrderedDict
from collections.abc import Mapping
from types import MappingProxyType
from typing import Callable, Dict, Optional, Sequence, Tuple, Union

from sde_pricing.dynamics import (UNSET, Dynamics, InPlaceCoefficients, OutOfPlaceCoefficients)
from sde_pricing.exceptions import CoefficientsNotSet, ShapeMismatch
from sde_pricing.parameters import ParameterRecord, as_record
from sde_pricing.securities import Security
from sde_pricing.state_layout import NonDiagonalNoise, ScalarNoise, StateLayout

logger = logging.getLogger(__name__)

SYSTEM = "<system>"

DynamicsSpec = Union[Mapping, Sequence[Tuple[str, Dynamics]]]


class DynamicalSystem:
    """
    Joint SDE system composed of named dynamics.

    Insertion order of ``dynamics`` fixes the joint state layout. Coefficients
    may be given for the whole system (``drift``/``diffusion``) or carried by
    each component; system-level coefficients take precedence. Component
    coefficients receive their own parameters together with the system's
    ``dynamics`` and ``securities`` registries.

    Parameters:
    -----------
    dynamics : mapping or sequence of (name, Dynamics)
        Components of the system
    drift, diffusion : callable, optional
        Joint coefficients, ``f(u, p, t)`` or ``f(du, u, p, t)`` if ``inplace``
    params : mapping, optional
        User parameters passed to the coefficients
    inplace : bool, default False
        Calling convention of ``drift`` and ``diffusion``
    correlation : array-like, optional
        Joint correlation of all noise columns, overriding component correlations
    """

    def __init__(self,
                 dynamics: DynamicsSpec,
                 drift: Optional[Callable] = None,
                 diffusion: Optional[Callable] = None,
                 params=None,
                 inplace: bool = False,
                 correlation=None):
        items = list(dynamics.items()) if isinstance(dynamics, Mapping) else list(dynamics)
        for entry in items:
            if len(entry) != 2 or not isinstance(entry[1], Dynamics):
                raise TypeError(f"expected (name, Dynamics) pairs, got {entry!r}")

        self._layout = StateLayout(
            [(str(name), d.dim, d.noise) for name, d in items],
            correlations={str(name): d.correlation for name, d in items if d.correlation is not None},
            cross_correlation=correlation,
        )
        self._cross_correlation = correlation
        self._components = MappingProxyType(OrderedDict((str(name), d) for name, d in items))

        t0s = {d.t0 for d in self._components.values()}
        if len(t0s) > 1:
            raise ValueError(f"components start at different times: {sorted(t0s)}")
        self.t0 = t0s.pop() if t0s else 0.0

        state = np.concatenate([d.state0 for d in self._components.values()]) if items \
            else np.zeros(0)
        state.setflags(write=False)
        self._state = state

        self._securities = OrderedDict(
            (slot.name, Security.from_slot(slot)) for slot in self._layout
        )

        if drift is None:
            if diffusion is not None:
                raise ValueError("a diffusion coefficient was given without a drift")
            self._coefficients = UNSET
        else:
            variant = InPlaceCoefficients if inplace else OutOfPlaceCoefficients
            self._coefficients = variant(drift, diffusion)

        self._params = as_record(params).with_registries(
            dynamics=dict(self._components), securities=dict(self._securities)
        )
        self._component_params = {}

    @classmethod
    def compose(cls, dynamics: DynamicsSpec, correlation=None) -> "DynamicalSystem":
        """Coefficient-free composition, valid for introspection."""
        return cls(dynamics, correlation=correlation)

    def attach_coefficients(self, drift: Callable, diffusion: Optional[Callable] = None,
                            params=None, inplace: bool = False) -> "DynamicalSystem":
        """New system over the same components with joint coefficients bound."""
        if params is None:
            params = dict(self._params)
        return DynamicalSystem(list(self._components.items()), drift, diffusion, params,
                               inplace=inplace, correlation=self._cross_correlation)

    # Introspection -------------------------------------------------------

    @property
    def layout(self) -> StateLayout:
        return self._layout

    @property
    def components(self) -> Mapping:
        return self._components

    @property
    def state(self) -> np.ndarray:
        """Joint initial state, the concatenation of every component's state."""
        return self._state

    @property
    def dim(self) -> int:
        return self._layout.dim

    @property
    def noise_dim(self) -> int:
        return self._layout.noise_dim

    @property
    def noise_shape(self) -> Tuple[int, ...]:
        return self._layout.noise_shape

    @property
    def noise_kind(self) -> str:
        return self._layout.noise_kind

    @property
    def correlation(self) -> Optional[np.ndarray]:
        return self._layout.correlation

    @property
    def params(self) -> ParameterRecord:
        return self._params

    @property
    def securities(self) -> Dict[str, Security]:
        return dict(self._securities)

    def security(self, name: str) -> Security:
        return self._securities[name]

    @property
    def has_system_coefficients(self) -> bool:
        return self._coefficients is not UNSET

    @property
    def has_coefficients(self) -> bool:
        return self.has_system_coefficients or all(
            d.has_coefficients for d in self._components.values()
        )

    @property
    def inplace(self) -> bool:
        if self.has_system_coefficients:
            return self._coefficients.inplace
        return all(d.inplace for d in self._components.values())

    def describe(self) -> Dict[str, object]:
        info = self._layout.describe()
        info.update(t0=self.t0, state=self._state.tolist(), has_coefficients=self.has_coefficients)
        return info

    # Evaluation ----------------------------------------------------------

    def _missing_components(self):
        return [name for name, d in self._components.items() if not d.has_coefficients]

    def _require_coefficients(self):
        missing = self._missing_components()
        if missing:
            raise CoefficientsNotSet(
                missing[0],
                f"system has no joint coefficients and component(s) {missing} have none",
            )

    def _component_record(self, name, d):
        """Component parameters extended with the system registries."""
        source = d.params
        if not isinstance(source, ParameterRecord):
            return source
        cached = self._component_params.get(name)
        if cached is None or cached[0] is not source:
            cached = (source, source.with_registries(dynamics=dict(self._params.dynamics),
                                                     securities=dict(self._params.securities)))
            self._component_params[name] = cached
        return cached[1]

    def _output(self, out, shape, what):
        if out is None:
            return np.zeros(shape)
        if out.shape != tuple(shape):
            raise ShapeMismatch(SYSTEM, shape, out.shape, what=f"{what} buffer")
        out.fill(0.0)
        return out

    def joint_drift(self, u, params=None, t: float = 0.0, out=None) -> np.ndarray:
        """Joint drift, shape (D,); written into ``out`` when given."""
        p = self._params if params is None else params
        if self.has_system_coefficients:
            return self._coefficients.drift(u, p, t, out, (self.dim,), SYSTEM)

        self._require_coefficients()
        du = self._output(out, (self.dim,), "drift")
        for slot in self._layout:
            d = self._components[slot.name]
            d.evaluate_drift(u[slot.state_slice], self._component_record(slot.name, d), t,
                             out=du[slot.state_slice], component=slot.name)
        return du

    def joint_diffusion(self, u, params=None, t: float = 0.0, out=None) -> np.ndarray:
        """Joint diffusion, shaped as ``noise_shape``; written into ``out`` when given."""
        p = self._params if params is None else params
        shape = self.noise_shape
        if self.has_system_coefficients:
            return self._coefficients.diffusion(u, p, t, out, shape, SYSTEM)

        self._require_coefficients()
        du = self._output(out, shape, "diffusion")
        vector_form = self.noise_kind in ("diagonal", "scalar")
        for slot in self._layout:
            if slot.noise_dim == 0:
                continue
            d = self._components[slot.name]
            dp = self._component_record(slot.name, d)
            rows = slot.state_slice
            if vector_form:
                d.evaluate_diffusion(u[rows], dp, t, out=du[rows], component=slot.name)
                continue

            block = du[rows, slot.noise_slice]
            if isinstance(slot.noise, NonDiagonalNoise):
                d.evaluate_diffusion(u[rows], dp, t, out=block, component=slot.name)
            else:
                g = d.evaluate_diffusion(u[rows], dp, t, component=slot.name)
                if isinstance(slot.noise, ScalarNoise):
                    block[:, 0] = g
                else:
                    block[np.diag_indices(slot.dim)] = g
        return du

    def __reduce__(self):
        if self.has_system_coefficients:
            c = self._coefficients
            drift, diffusion, inplace = c.f, c.g, c.inplace
        else:
            drift, diffusion, inplace = None, None, False
        return (DynamicalSystem, (list(self._components.items()), drift, diffusion,
                                  dict(self._params), inplace, self._cross_correlation))

    def __repr__(self):
        coefficients = "system" if self.has_system_coefficients else (
            "components" if self.has_coefficients else "unset")
        return (f"DynamicalSystem({list(self._components)}, dim={self.dim}, "
                f"noise={self.noise_kind} {self.noise_shape}, coefficients={coefficients})")
