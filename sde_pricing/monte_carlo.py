"""
Monte Carlo engine
==================

Generates ensembles of independent paths of a ``DynamicalSystem`` and
estimates expectations of path functionals.

Every path index ``i`` is driven by the i-th child of
``SeedSequence(seed).spawn(n_paths)``. Workers receive disjoint index ranges
and results are placed by index, so the ensemble for a given master seed is
identical whatever the execution strategy or completion order.

Divergence policy: with ``on_divergence="drop"`` (default) a diverged path is
left out of the ensemble and recorded in ``PathEnsemble.failures``; with
``on_divergence="raise"`` the ``IntegrationDiverged`` of the lowest diverged
path index is re-raised after the workers finish.
"""

import logging
import os
import numpy as np
import pandas as pd
from collections.abc import Sequence
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from scipy import stats

from sde_pricing.exceptions import IntegrationDiverged
from sde_pricing.path import Path
from sde_pricing.profiling import Profiler
from sde_pricing.solver import EulerMaruyama, Integrator

logger = logging.getLogger(__name__)

ENSEMBLE_STRATEGIES = ("serial", "threads", "processes")
DIVERGENCE_POLICIES = ("drop", "raise")


@dataclass(frozen=True)
class MCEstimate:
    """
    Monte Carlo estimate of an expectation.

    Attributes
    ----------
    value : float
        Sample mean of the functional
    standard_error : float
        Standard error of the mean
    confidence_interval : tuple[float, float]
        Normal confidence interval at the requested level
    n_paths : int
        Number of paths used
    """

    value: float
    standard_error: float
    confidence_interval: Tuple[float, float]
    n_paths: int

    @property
    def relative_error(self) -> float:
        if abs(self.value) < 1e-12:
            return float("inf")
        return self.standard_error / abs(self.value)

    @property
    def ci_width(self) -> float:
        return self.confidence_interval[1] - self.confidence_interval[0]

    def __float__(self):
        return float(self.value)


@dataclass(frozen=True)
class PathFailure:
    """A path left out of an ensemble because its integration diverged."""
    index: int
    time: float
    state: np.ndarray
    message: str

    @classmethod
    def from_error(cls, error: IntegrationDiverged) -> "PathFailure":
        return cls(error.path_index, error.time, error.state, str(error))


def _simulate_range(system, scheme, T, seeds, indices, stop_on_error):
    """
    Integrate the paths with the given indices (worker entry point).

    Returns a list of (index, Path) and the divergences met. When
    ``stop_on_error`` is set the range stops at its first divergence, which is
    the lowest diverged index of the range.
    """
    integrator = Integrator(system, scheme)
    paths, errors = [], []
    for index, seed in zip(indices, seeds):
        try:
            paths.append((index, integrator.solve(T, seed=seed, path_index=index)))
        except IntegrationDiverged as exc:
            errors.append(exc)
            if stop_on_error:
                break
    return paths, errors


class PathEnsemble(Sequence):
    """
    Ordered collection of paths of one system.

    Stored ensembles hold every successful path. Lazy ensembles hold only the
    per-path seeds and regenerate each path on access, in index order on
    iteration; a lazy ensemble can be replayed any number of times but not
    resumed from the middle. Indexing a lazy ensemble addresses path indices,
    and its length drops diverged paths once a replay has met them.

    Parameters:
    -----------
    system : DynamicalSystem
        Simulated system (its ``params`` are the default functional parameters)
    T : float
        Horizon of every path
    scheme : scheme instance
        Scheme the paths were produced with
    seeds : list of SeedSequence
        Seed of every requested path index
    paths : list of Path, optional
        Materialised paths; None for a lazy ensemble
    failures : list of PathFailure, optional
        Paths dropped because they diverged
    on_divergence : {"drop", "raise"}
        Policy applied when a lazy ensemble regenerates a diverging path
    """

    def __init__(self, system, T: float, scheme, seeds, paths: Optional[List[Path]] = None,
                 failures: Optional[List[PathFailure]] = None, on_divergence: str = "drop"):
        self.system = system
        self.T = float(T)
        self.scheme = scheme
        self.seeds = list(seeds)
        self._paths = paths
        self._failures: Dict[int, PathFailure] = {f.index: f for f in failures or ()}
        self.on_divergence = on_divergence

    @property
    def stored(self) -> bool:
        return self._paths is not None

    @property
    def n_requested(self) -> int:
        return len(self.seeds)

    @property
    def failures(self) -> List[PathFailure]:
        return [self._failures[i] for i in sorted(self._failures)]

    @property
    def indices(self) -> List[int]:
        """Path indices of the stored paths."""
        if not self.stored:
            return [i for i in range(self.n_requested) if i not in self._failures]
        return [p.index for p in self._paths]

    def regenerate(self, index: int) -> Path:
        """Reproduce path ``index`` from its seed."""
        if not 0 <= index < self.n_requested:
            raise IndexError(f"path index {index} out of range for {self.n_requested} paths")
        integrator = Integrator(self.system, self.scheme)
        return integrator.solve(self.T, seed=self.seeds[index], path_index=index)

    def __len__(self) -> int:
        """Number of paths that survived; a lazy ensemble learns its failures on replay."""
        if self.stored:
            return len(self._paths)
        return self.n_requested - len(self._failures)

    def __getitem__(self, item):
        if self.stored:
            return self._paths[item]
        if isinstance(item, slice):
            return [self.regenerate(i) for i in range(*item.indices(self.n_requested))]
        if item < 0:
            item += self.n_requested
        return self.regenerate(item)

    def __iter__(self):
        if self.stored:
            yield from self._paths
            return
        integrator = Integrator(self.system, self.scheme)
        for index, seed in enumerate(self.seeds):
            try:
                yield integrator.solve(self.T, seed=seed, path_index=index)
            except IntegrationDiverged as exc:
                if self.on_divergence == "raise":
                    raise
                if index not in self._failures:
                    logger.warning("dropping path %d: %s", index, exc)
                self._failures[index] = PathFailure.from_error(exc)

    def materialize(self) -> "PathEnsemble":
        """Stored copy of this ensemble (itself if already stored)."""
        if self.stored:
            return self
        paths = list(self)
        return PathEnsemble(self.system, self.T, self.scheme, self.seeds, paths=paths,
                            failures=self.failures, on_divergence=self.on_divergence)

    def terminal_states(self) -> np.ndarray:
        """Final joint state of every path, shape (N, D)."""
        return np.array([p.final_state for p in self]).reshape(-1, self.system.dim)

    def to_frame(self) -> pd.DataFrame:
        """All samples in one DataFrame indexed by (path, time)."""
        frames = {p.index: p.to_frame() for p in self}
        return pd.concat(frames, names=["path"])

    def __repr__(self):
        mode = "stored" if self.stored else "lazy"
        return (f"PathEnsemble({mode}, paths={len(self)}, requested={self.n_requested}, "
                f"T={self.T:g}, scheme={self.scheme.name})")


class MonteCarloEngine:
    """
    Ensemble generation and expectation estimation.

    Parameters:
    -----------
    ensemble : {"serial", "threads", "processes"}
        Execution strategy. The generated paths do not depend on it.
    n_workers : int, optional
        Worker count for the concurrent strategies (default: CPU count)
    store : bool, default True
        Keep every path in memory; False gives a lazy, replayable ensemble
    on_divergence : {"drop", "raise"}
        Whether a diverged path is dropped (and recorded) or aborts the run
    profile : bool, default False
        Profile ensemble generation and log section timings

    Note:
    -----
    The "processes" strategy pickles the system, so its coefficient
    functions must be importable module-level callables.
    """

    def __init__(self, ensemble: str = "serial", n_workers: Optional[int] = None,
                 store: bool = True, on_divergence: str = "drop", profile: bool = False):
        if ensemble not in ENSEMBLE_STRATEGIES:
            raise ValueError(f"ensemble must be one of {ENSEMBLE_STRATEGIES}, got '{ensemble}'")
        if on_divergence not in DIVERGENCE_POLICIES:
            raise ValueError(f"on_divergence must be one of {DIVERGENCE_POLICIES}, "
                             f"got '{on_divergence}'")
        if n_workers is not None and n_workers < 1:
            raise ValueError(f"n_workers must be at least 1, got {n_workers}")
        self.ensemble = ensemble
        self.n_workers = n_workers
        self.store = store
        self.on_divergence = on_divergence
        self.profiler = Profiler(enabled=profile)

    @staticmethod
    def spawn_seeds(seed, n_paths: int) -> List[np.random.SeedSequence]:
        root = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
        return root.spawn(n_paths)

    def simulate(self, system, T: float, n_paths: int, seed=None, scheme=None) -> PathEnsemble:
        """
        Generate ``n_paths`` independent paths of ``system`` up to ``T``.

        Parameters:
        -----------
        system : DynamicalSystem
        T : float
            Horizon
        n_paths : int
            Number of requested paths
        seed : int or SeedSequence, optional
            Master seed
        scheme : scheme instance, optional
            Defaults to ``EulerMaruyama(dt=0.01)``

        Returns:
        --------
        PathEnsemble
        """
        if n_paths < 1:
            raise ValueError(f"n_paths must be at least 1, got {n_paths}")
        scheme = EulerMaruyama() if scheme is None else scheme
        # Fail on construction problems before any worker starts
        Integrator(system, scheme)
        seeds = self.spawn_seeds(seed, n_paths)

        if not self.store:
            logger.info("lazy ensemble of %d paths (%s, T=%g)", n_paths, scheme.name, T)
            return PathEnsemble(system, T, scheme, seeds, on_divergence=self.on_divergence)

        logger.info("simulating %d paths (%s, %s, T=%g)", n_paths, self.ensemble, scheme.name, T)
        with self.profiler.profile_section("simulate"):
            results, errors = self._run(system, scheme, T, seeds)

        errors.sort(key=lambda e: e.path_index)
        if errors and self.on_divergence == "raise":
            raise errors[0]
        if errors:
            logger.warning("dropped %d of %d paths that diverged (first: path %d at t=%g)",
                           len(errors), n_paths, errors[0].path_index, errors[0].time)

        paths = [results[i] for i in sorted(results)]
        logger.info("generated %d paths", len(paths))
        return PathEnsemble(system, T, scheme, seeds, paths=paths,
                            failures=[PathFailure.from_error(e) for e in errors],
                            on_divergence=self.on_divergence)

    def _run(self, system, scheme, T, seeds):
        stop = self.on_divergence == "raise"
        indices = np.arange(len(seeds))
        if self.ensemble == "serial":
            paths, errors = _simulate_range(system, scheme, T, seeds, indices.tolist(), stop)
            return dict(paths), errors

        n_workers = self.n_workers or os.cpu_count() or 1
        chunks = [c for c in np.array_split(indices, min(n_workers, len(seeds))) if c.size]
        executor_cls = ThreadPoolExecutor if self.ensemble == "threads" else ProcessPoolExecutor

        results, errors = {}, []
        with executor_cls(max_workers=n_workers) as executor:
            futures = [
                executor.submit(_simulate_range, system, scheme, T,
                                [seeds[i] for i in chunk], chunk.tolist(), stop)
                for chunk in chunks
            ]
            for future in as_completed(futures):
                paths, chunk_errors = future.result()
                results.update(paths)
                errors.extend(chunk_errors)
        return results, errors

    def _values(self, functional: Callable, ensemble: PathEnsemble, params=None) -> np.ndarray:
        p = ensemble.system.params if params is None else params
        values = np.array([functional(path, p) for path in ensemble], dtype=np.float64)
        if values.size == 0:
            raise ValueError("the ensemble contains no paths")
        return values

    def expectation(self, functional: Callable, ensemble: PathEnsemble, params=None) -> float:
        """Sample mean of ``functional(path, params)`` over the ensemble."""
        return float(self._values(functional, ensemble, params).mean())

    def estimate(self, functional: Callable, ensemble: PathEnsemble, params=None,
                 confidence: float = 0.95) -> MCEstimate:
        """Sample mean with standard error and normal confidence interval."""
        values = self._values(functional, ensemble, params)
        n = values.size
        mean = float(values.mean())
        se = float(values.std(ddof=1) / np.sqrt(n)) if n > 1 else 0.0
        z = stats.norm.ppf(0.5 * (1.0 + confidence))
        return MCEstimate(mean, se, (mean - z * se, mean + z * se), n)


def montecarlo(system, T: float, n_paths: int, seed=None, scheme=None,
               ensemble: str = "serial", **engine_options) -> PathEnsemble:
    """Generate an ensemble with a one-off engine."""
    engine = MonteCarloEngine(ensemble=ensemble, **engine_options)
    return engine.simulate(system, T, n_paths, seed=seed, scheme=scheme)


def expectation(functional: Callable, ensemble: PathEnsemble, params=None) -> float:
    """Sample mean of ``functional(path, params)``; ``params`` default to the system's."""
    return MonteCarloEngine().expectation(functional, ensemble, params)
