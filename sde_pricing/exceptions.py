"""
Error taxonomy for model construction, simulation and valuation.

Construction errors (noise specs, names, dimensions) are raised as soon as a
model is declared. Evaluation errors (missing coefficients, wrong shapes) are
raised on the first offending call. ``IntegrationDiverged`` is raised per path
and ``InsufficientRegressionData`` never leaves the Longstaff-Schwartz pricer.
"""


class SDEPricingError(Exception):
    """Base class for all package errors."""


class InvalidNoiseSpec(SDEPricingError, ValueError):
    """Malformed noise specification or correlation matrix."""


class DuplicateComponentName(SDEPricingError, ValueError):
    """Two components of a dynamical system share a name."""


class DimensionMismatch(SDEPricingError, ValueError):
    """Declared dimensions do not agree (e.g. cross correlation vs. noise)."""


class CoefficientsNotSet(SDEPricingError, RuntimeError):
    """Drift or diffusion evaluated before coefficients were attached."""

    def __init__(self, component: str, message: str = None):
        self.component = component
        super().__init__(message or f"coefficients for '{component}' have not been set")

    def __reduce__(self):
        return type(self), (self.component, str(self))


class ShapeMismatch(SDEPricingError, ValueError):
    """A coefficient function returned an array of the wrong shape."""

    def __init__(self, component: str, expected, actual, what: str = "coefficient"):
        self.component = component
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        super().__init__(
            f"{what} of '{component}' returned shape {self.actual}, expected {self.expected}"
        )

    def __reduce__(self):
        return type(self), (self.component, self.expected, self.actual), {"args": self.args}


class IntegrationDiverged(SDEPricingError, ArithmeticError):
    """Non-finite state produced while integrating a path."""

    def __init__(self, path_index, time: float, state, message: str = None):
        self.path_index = path_index
        self.time = time
        self.state = state
        where = f"path {path_index}" if path_index is not None else "path"
        super().__init__(
            message or f"{where} diverged after t={time:.6g}; last finite state {state}"
        )

    def __reduce__(self):
        return type(self), (self.path_index, self.time, self.state, str(self))


class InsufficientRegressionData(SDEPricingError):
    """Too few in-the-money samples to fit a continuation value."""

    def __init__(self, date_index: int, n_samples: int, n_required: int):
        self.date_index = date_index
        self.n_samples = n_samples
        self.n_required = n_required
        super().__init__(
            f"exercise date {date_index}: {n_samples} in-the-money samples, "
            f"at least {n_required} required"
        )

    def __reduce__(self):
        return type(self), (self.date_index, self.n_samples, self.n_required)


class FutureValueUnavailable(SDEPricingError, RuntimeError):
    """A quantity needing future path values was requested on live buffers."""


class UnknownModelKind(SDEPricingError, LookupError):
    """No known model is registered under the requested kind."""
