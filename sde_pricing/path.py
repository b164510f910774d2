import numpy as np
import pandas as pd
from typing import Optional

from sde_pricing.state_layout import StateLayout


def _frozen(array) -> np.ndarray:
    array = np.array(array, dtype=np.float64)
    array.setflags(write=False)
    return array


class Path:
    """
    One realised trajectory: sampled times, joint states and the driving
    noise increments of each step. Immutable once produced.

    Parameters:
    -----------
    times : array, shape (n,)
        Strictly increasing sample times
    states : array, shape (n, D)
        Joint state at each sample time
    noise : array, shape (n - 1, M)
        Noise increments applied on each step
    layout : StateLayout
        Layout used to address components by name
    index : int, optional
        Position of the path in its ensemble
    """

    def __init__(self, times, states, noise, layout: StateLayout, index: Optional[int] = None):
        self.times = _frozen(times)
        self.states = _frozen(states)
        self.noise = _frozen(noise)
        self.layout = layout
        self.index = index

        if self.states.shape != (self.times.size, layout.dim):
            raise ValueError(f"states shape {self.states.shape} does not match "
                             f"{self.times.size} samples of dimension {layout.dim}")

    @property
    def t0(self) -> float:
        return float(self.times[0])

    @property
    def T(self) -> float:
        return float(self.times[-1])

    @property
    def final_state(self) -> np.ndarray:
        return self.states[-1]

    def __len__(self) -> int:
        return self.times.size

    def _locate(self, t: float):
        """Index of the left sample point and the interpolation weight for time t."""
        times = self.times
        if t < times[0] - 1e-12 or t > times[-1] + 1e-12:
            raise ValueError(f"t={t} lies outside the simulated span [{times[0]}, {times[-1]}]")
        if times.size == 1:
            return 0, 0.0
        i = int(np.searchsorted(times, t, side="right")) - 1
        i = min(max(i, 0), times.size - 2)
        w = (t - times[i]) / (times[i + 1] - times[i])
        return i, min(max(w, 0.0), 1.0)

    def at(self, t: float, columns=slice(None)) -> np.ndarray:
        """Joint state (or the given columns) linearly interpolated at time t."""
        i, w = self._locate(t)
        left = self.states[i, columns]
        if w == 0.0:
            return left.copy()
        right = self.states[i + 1, columns]
        if w == 1.0:
            return right.copy()
        return (1.0 - w) * left + w * right

    __call__ = at

    def __getitem__(self, name: str) -> np.ndarray:
        """Trajectory of one component, shape (n, dim)."""
        return self.states[:, self.layout.state_slice(name)]

    def component(self, name: str, t: Optional[float] = None) -> np.ndarray:
        if t is None:
            return self[name]
        return self.at(t, self.layout.state_slice(name))

    def noise_for(self, name: str) -> np.ndarray:
        """Noise increments driving one component, shape (n - 1, M_i)."""
        return self.noise[:, self.layout.noise_slice(name)]

    def column_names(self):
        names = []
        for slot in self.layout:
            if slot.dim == 1:
                names.append(slot.name)
            else:
                names.extend(f"{slot.name}[{k}]" for k in range(slot.dim))
        return names

    def to_frame(self) -> pd.DataFrame:
        """Samples as a DataFrame indexed by time, one column per state entry."""
        frame = pd.DataFrame(self.states, columns=self.column_names())
        frame.index = pd.Index(self.times, name="time")
        return frame

    def __repr__(self):
        return (f"Path(index={self.index}, samples={self.times.size}, "
                f"span=[{self.t0:.6g}, {self.T:.6g}], components={list(self.layout.names)})")
