import numpy as np
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Dict, Iterator, Optional


class Registry(Mapping):
    """Read-only name -> object mapping with attribute-style access."""

    def __init__(self, items: Optional[Dict[str, Any]] = None):
        object.__setattr__(self, "_items", MappingProxyType(dict(items or {})))

    def __getitem__(self, name):
        return self._items[name]

    def __iter__(self):
        return iter(self._items)

    def __len__(self):
        return len(self._items)

    def __getattr__(self, name):
        try:
            return object.__getattribute__(self, "_items")[name]
        except KeyError:
            raise AttributeError(f"'{self.__class__.__name__}' has no entry '{name}'") from None

    def __setattr__(self, name, value):
        raise AttributeError("registries are read-only")

    def __reduce__(self):
        return (Registry, (dict(self._items),))

    def __repr__(self):
        return f"Registry({list(self._items)})"


class ParameterRecord(Mapping):
    """
    Immutable parameter record passed to every coefficient, payoff and
    exercise function.

    User constants are reachable as attributes or keys. The component registry
    (``dynamics``) and the security views (``securities``) are attached by the
    owning ``DynamicalSystem`` so functions can address components by name.
    """

    def __init__(self,
                 values: Optional[Dict[str, Any]] = None,
                 dynamics: Optional[Dict[str, Any]] = None,
                 securities: Optional[Dict[str, Any]] = None,
                 **kwargs):
        params = dict(values or {})
        params.update(kwargs)
        for reserved in ("dynamics", "securities"):
            if reserved in params:
                raise ValueError(f"'{reserved}' is reserved and cannot be used as a parameter name")
        object.__setattr__(self, "_params", MappingProxyType(params))
        object.__setattr__(self, "param_names", tuple(params))
        object.__setattr__(self, "index_map", {name: i for i, name in enumerate(params)})
        object.__setattr__(self, "dynamics", Registry(dynamics))
        object.__setattr__(self, "securities", Registry(securities))

    def __getattr__(self, name):
        # Allow attribute-style access
        params = object.__getattribute__(self, "_params")
        if name in params:
            return params[name]
        raise AttributeError(f"'{self.__class__.__name__}' has no attribute '{name}'")

    def __setattr__(self, name, value):
        raise AttributeError("parameter records are immutable; use with_values()")

    def __getitem__(self, name):
        return self._params[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._params)

    def __len__(self) -> int:
        return len(self._params)

    def __reduce__(self):
        return (ParameterRecord, (dict(self._params), dict(self.dynamics), dict(self.securities)))

    def with_values(self, **kwargs) -> "ParameterRecord":
        """New record with extra or overridden values and the same registries."""
        merged = dict(self._params)
        merged.update(kwargs)
        return ParameterRecord(merged, dynamics=dict(self.dynamics), securities=dict(self.securities))

    def with_registries(self, dynamics=None, securities=None) -> "ParameterRecord":
        return ParameterRecord(dict(self._params), dynamics=dynamics, securities=securities)

    def to_array(self) -> np.ndarray:
        """Numeric parameters as a float64 array in declaration order, for numba kernels"""
        return np.array([float(self._params[name]) for name in self.param_names], dtype=np.float64)

    def get_index_map(self) -> Dict[str, int]:
        return dict(self.index_map)

    def __repr__(self):
        values = ", ".join(f"{k}={v!r}" for k, v in self._params.items())
        return f"ParameterRecord({values}; components={list(self.dynamics)})"


def as_record(params) -> ParameterRecord:
    if params is None:
        return ParameterRecord()
    if isinstance(params, ParameterRecord):
        return params
    if isinstance(params, Mapping):
        return ParameterRecord(dict(params))
    if hasattr(params, "_asdict"):
        return ParameterRecord(params._asdict())
    raise TypeError(f"cannot build a parameter record from {type(params).__name__}")
