"""
SDE Pricing Package
===================

Composable stochastic dynamics, path simulation and Monte Carlo valuation.

This package provides tools for:
- Declaring named stochastic dynamics and composing them into joint systems
- Integrating paths with Euler-Maruyama, Platen and adaptive schemes
- Generating reproducible path ensembles, serially or concurrently
- Pricing European payoffs by expectation and callable products by
  Longstaff-Schwartz regression
"""

import logging

__version__ = "0.1.0"

from .exceptions import (
    SDEPricingError,
    InvalidNoiseSpec,
    DuplicateComponentName,
    DimensionMismatch,
    CoefficientsNotSet,
    ShapeMismatch,
    IntegrationDiverged,
    InsufficientRegressionData,
    FutureValueUnavailable,
    UnknownModelKind,
)
from .state_layout import NoNoise, ScalarNoise, DiagonalNoise, NonDiagonalNoise, StateLayout
from .parameters import ParameterRecord
from .models import register_model, get_model, OneFactorAffineModel, MultiFactorAffineModel
from .dynamics import Dynamics, UNSET
from .sde_system import DynamicalSystem
from .path import Path
from .securities import Security, FixedIncome
from .solver import (
    EulerMaruyama,
    PlatenWeak2,
    Platen15,
    AdaptiveEulerMaruyama,
    get_scheme,
    Integrator,
    solve,
)
from .monte_carlo import MCEstimate, PathEnsemble, MonteCarloEngine, montecarlo, expectation
from .american import ExerciseSchedule, LongstaffSchwartz, LSMResult, longstaff_schwartz
from .config import SimulationConfig
from .profiling import Profiler, profile_function

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Errors
    'SDEPricingError',
    'InvalidNoiseSpec',
    'DuplicateComponentName',
    'DimensionMismatch',
    'CoefficientsNotSet',
    'ShapeMismatch',
    'IntegrationDiverged',
    'InsufficientRegressionData',
    'FutureValueUnavailable',
    'UnknownModelKind',

    # Model declaration
    'NoNoise',
    'ScalarNoise',
    'DiagonalNoise',
    'NonDiagonalNoise',
    'StateLayout',
    'ParameterRecord',
    'register_model',
    'get_model',
    'OneFactorAffineModel',
    'MultiFactorAffineModel',
    'Dynamics',
    'UNSET',
    'DynamicalSystem',
    'Security',
    'FixedIncome',

    # Simulation
    'Path',
    'EulerMaruyama',
    'PlatenWeak2',
    'Platen15',
    'AdaptiveEulerMaruyama',
    'get_scheme',
    'Integrator',
    'solve',
    'MCEstimate',
    'PathEnsemble',
    'MonteCarloEngine',
    'montecarlo',
    'expectation',

    # Valuation
    'ExerciseSchedule',
    'LongstaffSchwartz',
    'LSMResult',
    'longstaff_schwartz',

    # Utilities
    'SimulationConfig',
    'Profiler',
    'profile_function',
]
