"""
American and Bermudan valuation by Longstaff-Schwartz regression.

The pricer walks the exercise schedule backward from the last date. At the
last date a path exercises whenever its exercise value is positive. At each
earlier date (t0 excluded) the discounted realised cash flows of in-the-money
paths are regressed on the regressors to estimate the continuation value, and
a path exercises when its exercise value is at least that estimate. Finally
every locked cash flow is discounted to t0 and averaged.

User functions, with ``t = tenors[n]`` and ``T = tenors[m]``:

    U(path, params, t, tenors, n)          exercise value
    D(path, params, t, T, tenors, n, m)    discount factor from T back to t
    R(path, params, t, tenors, n)          regressor(s), float or 1-D array
"""

import enum
import logging
import warnings
import numpy as np
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from scipy import linalg

from sde_pricing.exceptions import InsufficientRegressionData

logger = logging.getLogger(__name__)

NO_EXERCISE = -1


class ExerciseStage(enum.Enum):
    TERMINAL = "terminal"
    REGRESSING = "regressing"
    DECIDING = "deciding"
    DONE = "done"


class ExerciseSchedule:
    """Sorted exercise dates; the first entry is the valuation date."""

    def __init__(self, tenors: Sequence[float]):
        tenors = np.array(tenors, dtype=np.float64)
        if tenors.ndim != 1 or tenors.size < 2:
            raise ValueError("an exercise schedule needs the valuation date and at least one exercise date")
        if np.any(np.diff(tenors) <= 0):
            raise ValueError("exercise dates must be strictly increasing")
        tenors.setflags(write=False)
        self.tenors = tenors

    @classmethod
    def from_increments(cls, tau: Sequence[float], t0: float = 0.0) -> "ExerciseSchedule":
        """Schedule t0, t0 + tau[0], t0 + tau[0] + tau[1], ..."""
        tau = np.asarray(tau, dtype=np.float64)
        return cls(np.concatenate(([t0], t0 + np.cumsum(tau))))

    @property
    def t0(self) -> float:
        return float(self.tenors[0])

    @property
    def maturity(self) -> float:
        return float(self.tenors[-1])

    def __len__(self):
        return self.tenors.size

    def __repr__(self):
        return f"ExerciseSchedule({self.tenors.size - 1} dates in ({self.t0:g}, {self.maturity:g}])"


def polynomial_basis(x: np.ndarray, degree: int = 2) -> np.ndarray:
    """
    Design matrix [1, x, x^2, ..., x^degree] applied to each regressor column.

    Parameters:
    -----------
    x : np.ndarray, shape (n,) or (n, k)
        Regressor values
    degree : int
        Highest power

    Returns:
    --------
    np.ndarray, shape (n, 1 + k * degree)
    """
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x[:, None]
    columns = [np.ones((x.shape[0], 1))]
    columns.extend(x ** power for power in range(1, degree + 1))
    return np.hstack(columns)


@dataclass(frozen=True)
class LSMResult:
    """
    Attributes
    ----------
    price : float
        Mean discounted cash flow
    standard_error : float
        Standard error of the mean
    exercise_times : np.ndarray
        Exercise date of each path, NaN for paths that never exercise
    cash_flows : np.ndarray
        Cash flow of each path discounted to the valuation date
    skipped_dates : list of int
        Schedule indices where the continuation value could not be fitted
    """
    price: float
    standard_error: float
    exercise_times: np.ndarray
    cash_flows: np.ndarray
    skipped_dates: List[int]

    def __float__(self):
        return float(self.price)


class LongstaffSchwartz:
    """
    Longstaff-Schwartz pricer for one exercise schedule.

    Parameters:
    -----------
    U, D, R : callable
        Exercise value, discount and regressor functions (see module docstring)
    schedule : ExerciseSchedule
        Valuation date followed by the exercise dates
    degree : int, default 2
        Degree of the polynomial basis
    basis : callable, optional
        ``basis(x) -> design matrix``, replaces the polynomial basis
    """

    def __init__(self, U: Callable, D: Callable, R: Callable, schedule: ExerciseSchedule,
                 degree: int = 2, basis: Optional[Callable] = None):
        self.U = U
        self.D = D
        self.R = R
        self.schedule = schedule
        self.basis = basis if basis is not None else (lambda x: polynomial_basis(x, degree))
        self.stage = None

    def _enter(self, stage: ExerciseStage, n: int):
        self.stage = stage
        logger.debug("date %d: %s", n, stage.value)

    def _exercise_values(self, paths, params, n) -> np.ndarray:
        t = self.schedule.tenors[n]
        tenors = self.schedule.tenors
        return np.array([self.U(path, params, t, tenors, n) for path in paths], dtype=np.float64)

    def _discounted(self, paths, params, n, cash, exercise_index, subset=None) -> np.ndarray:
        """Locked cash flows of the paths in ``subset`` (default all) discounted back to date n."""
        tenors = self.schedule.tenors
        t = tenors[n]
        subset = range(len(paths)) if subset is None else subset
        out = np.zeros(len(subset))
        for k, i in enumerate(subset):
            m = exercise_index[i]
            if m != NO_EXERCISE:
                out[k] = cash[i] * self.D(paths[i], params, t, tenors[m], tenors, n, m)
        return out

    def _continuation(self, n, regressors, targets) -> np.ndarray:
        """Fitted continuation values at the regression sample points."""
        design = self.basis(regressors)
        if design.shape[0] < design.shape[1]:
            raise InsufficientRegressionData(n, design.shape[0], design.shape[1])
        coef, _, rank, _ = linalg.lstsq(design, targets)
        logger.debug("date %d: %d samples, rank %d, coefficients %s",
                     n, design.shape[0], rank, np.round(coef, 6))
        return design @ coef

    def price(self, ensemble, params=None) -> LSMResult:
        """
        Run the backward induction over ``ensemble``.

        Parameters:
        -----------
        ensemble : PathEnsemble or sequence of Path
            Simulated paths; lazy ensembles are materialised first
        params : ParameterRecord, optional
            Parameters passed to U, D and R (default: the system's)
        """
        if hasattr(ensemble, "materialize"):
            ensemble = ensemble.materialize()
            if params is None:
                params = ensemble.system.params
        paths = list(ensemble)
        if not paths:
            raise ValueError("cannot price on an empty ensemble")
        if self.schedule.maturity > paths[0].T + 1e-12:
            raise ValueError(f"last exercise date {self.schedule.maturity} lies beyond the "
                             f"simulated horizon {paths[0].T}")

        tenors = self.schedule.tenors
        last = tenors.size - 1

        self._enter(ExerciseStage.TERMINAL, last)
        cash = self._exercise_values(paths, params, last)
        exercise_index = np.where(cash > 0.0, last, NO_EXERCISE)

        skipped = []
        for n in range(last - 1, 0, -1):
            self._enter(ExerciseStage.REGRESSING, n)
            exercise = self._exercise_values(paths, params, n)
            itm = np.flatnonzero(exercise > 0.0)
            if itm.size == 0:
                logger.debug("date %d: no in-the-money paths", n)
                skipped.append(n)
                continue
            targets = self._discounted(paths, params, n, cash, exercise_index, itm)
            regressors = np.array(
                [np.atleast_1d(self.R(paths[i], params, tenors[n], tenors, n)) for i in itm],
                dtype=np.float64,
            ).reshape(itm.size, -1)

            try:
                continuation = self._continuation(n, regressors, targets)
            except InsufficientRegressionData as exc:
                skipped.append(n)
                logger.warning("skipping exercise at date %d: %s", n, exc)
                warnings.warn(f"no exercise at t={tenors[n]:g}: {exc}", RuntimeWarning)
                continue

            self._enter(ExerciseStage.DECIDING, n)
            decide = itm[exercise[itm] >= continuation]
            cash[decide] = exercise[decide]
            exercise_index[decide] = n

        values = self._discounted(paths, params, 0, cash, exercise_index)
        self._enter(ExerciseStage.DONE, 0)

        n_paths = values.size
        price = float(values.mean())
        se = float(values.std(ddof=1) / np.sqrt(n_paths)) if n_paths > 1 else 0.0
        exercise_times = np.where(exercise_index == NO_EXERCISE, np.nan,
                                  tenors[np.maximum(exercise_index, 0)])
        logger.info("Longstaff-Schwartz price %.6f (se %.6f) over %d paths, %d dates, %d skipped",
                    price, se, n_paths, last, len(skipped))
        return LSMResult(price, se, exercise_times, values, skipped)


def longstaff_schwartz(ensemble, params, U: Callable, D: Callable, R: Callable,
                       tenors: Optional[Sequence[float]] = None,
                       tau: Optional[Sequence[float]] = None, degree: int = 2) -> float:
    """
    Price of a callable product whose exercise dates are given either as
    sorted ``tenors`` (starting at the valuation date) or as increments ``tau``.
    """
    if (tenors is None) == (tau is None):
        raise ValueError("give exactly one of tenors or tau")
    if tenors is not None:
        schedule = ExerciseSchedule(tenors)
    else:
        t0 = ensemble.system.t0 if hasattr(ensemble, "system") else 0.0
        schedule = ExerciseSchedule.from_increments(tau, t0=t0)
    return LongstaffSchwartz(U, D, R, schedule, degree=degree).price(ensemble, params).price
