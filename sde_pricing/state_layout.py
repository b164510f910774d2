import numpy as np
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Sequence, Tuple, Union

from scipy import linalg

from sde_pricing.exceptions import DimensionMismatch, DuplicateComponentName, InvalidNoiseSpec


@dataclass(frozen=True)
class NoNoise:
    """Deterministic component, contributes no noise column."""

    def columns(self, dim: int) -> int:
        return 0


@dataclass(frozen=True)
class ScalarNoise:
    """One Wiener process shared by every dimension of the component."""

    def columns(self, dim: int) -> int:
        return 1


@dataclass(frozen=True)
class DiagonalNoise:
    """One independent Wiener process per state dimension."""
    dim: Optional[int] = None

    def columns(self, dim: int) -> int:
        if self.dim is not None and self.dim != dim:
            raise InvalidNoiseSpec(
                f"diagonal noise of dimension {self.dim} declared for a {dim}-dimensional state"
            )
        return dim


@dataclass(frozen=True)
class NonDiagonalNoise:
    """``dim`` Wiener processes acting on every state dimension."""
    dim: int

    def __post_init__(self):
        if int(self.dim) < 1:
            raise InvalidNoiseSpec(f"non-diagonal noise dimension must be >= 1, got {self.dim}")

    def columns(self, dim: int) -> int:
        return int(self.dim)


NoiseSpec = Union[NoNoise, ScalarNoise, DiagonalNoise, NonDiagonalNoise]


def validate_correlation(rho, size: int, owner: str = "correlation") -> np.ndarray:
    """
    Check that ``rho`` is a valid ``size x size`` correlation matrix.

    Parameters:
    -----------
    rho : array-like
        Candidate correlation matrix
    size : int
        Expected number of rows and columns
    owner : str
        Name used in error messages

    Returns:
    --------
    np.ndarray
        Read-only float64 copy of ``rho``
    """
    rho = np.array(rho, dtype=np.float64, ndmin=2)
    if rho.shape != (size, size):
        raise InvalidNoiseSpec(f"{owner}: correlation must be {size}x{size}, got {rho.shape}")
    if not np.allclose(rho, rho.T, atol=1e-10):
        raise InvalidNoiseSpec(f"{owner}: correlation matrix is not symmetric")
    if not np.allclose(np.diag(rho), 1.0, atol=1e-10):
        raise InvalidNoiseSpec(f"{owner}: correlation matrix must have a unit diagonal")
    if linalg.eigvalsh(rho).min() < -1e-10:
        raise InvalidNoiseSpec(f"{owner}: correlation matrix is not positive semi-definite")
    rho.setflags(write=False)
    return rho


@dataclass(frozen=True)
class ComponentSlot:
    """Position of one named component inside the joint state and noise."""
    name: str
    dim: int
    noise: NoiseSpec
    state_slice: slice
    noise_slice: slice
    correlation: Optional[np.ndarray] = None

    @property
    def noise_dim(self) -> int:
        return self.noise_slice.stop - self.noise_slice.start


class StateLayout:
    """
    Maps named sub-processes to contiguous ranges of a shared state vector and
    resolves the joint noise dimension, noise-rate shape and correlation.
    """

    def __init__(self,
                 entries: Sequence[Tuple[str, int, NoiseSpec]],
                 correlations: Optional[Dict[str, np.ndarray]] = None,
                 cross_correlation=None):
        correlations = correlations or {}
        slots = OrderedDict()
        state_offset = 0
        noise_offset = 0

        for name, dim, noise in entries:
            if name in slots:
                raise DuplicateComponentName(f"component name '{name}' is used more than once")
            dim = int(dim)
            if dim < 1:
                raise DimensionMismatch(f"component '{name}' must have at least one dimension")
            if noise is None:
                noise = DiagonalNoise()
            n_cols = noise.columns(dim)

            rho = correlations.get(name)
            if rho is not None:
                if isinstance(noise, (NoNoise, ScalarNoise)):
                    raise InvalidNoiseSpec(
                        f"'{name}': correlation is only meaningful for diagonal or non-diagonal noise"
                    )
                rho = validate_correlation(rho, n_cols, owner=f"'{name}'")

            slots[name] = ComponentSlot(
                name=name,
                dim=dim,
                noise=noise,
                state_slice=slice(state_offset, state_offset + dim),
                noise_slice=slice(noise_offset, noise_offset + n_cols),
                correlation=rho,
            )
            state_offset += dim
            noise_offset += n_cols

        self._slots = slots
        self.dim = state_offset
        self.noise_dim = noise_offset
        self.noise_kind = self._resolve_kind()
        self.noise_shape = (self.dim,) if self.noise_kind in ("diagonal", "scalar") \
            else (self.dim, self.noise_dim)
        self.correlation = self._joint_correlation(cross_correlation)

    def _resolve_kind(self) -> str:
        slots = list(self._slots.values())
        if self.noise_dim == 0:
            return "none"
        if all(isinstance(s.noise, DiagonalNoise) for s in slots):
            return "diagonal"
        if len(slots) == 1 and isinstance(slots[0].noise, ScalarNoise):
            return "scalar"
        return "general"

    def _joint_correlation(self, cross_correlation) -> Optional[np.ndarray]:
        if cross_correlation is not None:
            cross = np.array(cross_correlation, dtype=np.float64, ndmin=2)
            if cross.shape != (self.noise_dim, self.noise_dim):
                raise DimensionMismatch(
                    f"cross correlation has shape {cross.shape}, joint noise dimension is "
                    f"{self.noise_dim}"
                )
            rho = validate_correlation(cross, self.noise_dim, owner="system")
        else:
            rho = np.eye(self.noise_dim)
            for slot in self._slots.values():
                if slot.correlation is not None:
                    rho[slot.noise_slice, slot.noise_slice] = slot.correlation

        # Identity means independent noises
        if np.allclose(rho, np.eye(self.noise_dim)):
            return None
        rho = np.array(rho)
        rho.setflags(write=False)
        return rho

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._slots)

    def __getitem__(self, name: str) -> ComponentSlot:
        try:
            return self._slots[name]
        except KeyError:
            raise KeyError(f"no component named '{name}'") from None

    def __contains__(self, name) -> bool:
        return name in self._slots

    def __iter__(self) -> Iterator[ComponentSlot]:
        return iter(self._slots.values())

    def __len__(self) -> int:
        return len(self._slots)

    def state_slice(self, name: str) -> slice:
        return self[name].state_slice

    def noise_slice(self, name: str) -> slice:
        return self[name].noise_slice

    def describe(self) -> Dict[str, object]:
        """Layout metadata as plain values."""
        return {
            "names": self.names,
            "dim": self.dim,
            "noise_dim": self.noise_dim,
            "noise_kind": self.noise_kind,
            "noise_shape": self.noise_shape,
            "state_ranges": {s.name: (s.state_slice.start, s.state_slice.stop) for s in self},
            "noise_ranges": {s.name: (s.noise_slice.start, s.noise_slice.stop) for s in self},
        }

    def __repr__(self):
        parts = ", ".join(f"{s.name}[{s.state_slice.start}:{s.state_slice.stop}]" for s in self)
        return f"StateLayout({parts}; noise={self.noise_kind} {self.noise_shape})"
