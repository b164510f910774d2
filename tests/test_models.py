"""Tests for the known affine short rate models."""

import numpy as np
import pytest

from sde_pricing import (MultiFactorAffineModel, NonDiagonalNoise, OneFactorAffineModel,
                         ShapeMismatch, UnknownModelKind, get_model, register_model)
from sde_pricing.models import MODEL_REGISTRY, parameter_function

from helpers import vasicek_bond


def cir_bond(r0, kappa, theta, sigma, tau):
    h = np.sqrt(kappa ** 2 + 2.0 * sigma ** 2)
    denom = 2.0 * h + (kappa + h) * (np.exp(h * tau) - 1.0)
    B = 2.0 * (np.exp(h * tau) - 1.0) / denom
    A = (2.0 * h * np.exp(0.5 * (kappa + h) * tau) / denom) ** (2.0 * kappa * theta / sigma ** 2)
    return A * np.exp(-B * r0)


class TestRegistry:

    def test_lookup(self):
        assert get_model("one_factor_affine") is OneFactorAffineModel
        assert get_model("multi_factor_affine") is MultiFactorAffineModel

    def test_unknown_kind(self):
        with pytest.raises(UnknownModelKind, match="one_factor_affine"):
            get_model("heston")

    def test_duplicate_registration(self):
        with pytest.raises(ValueError, match="already registered"):
            register_model("one_factor_affine")(type("Other", (), {}))
        assert MODEL_REGISTRY["one_factor_affine"] is OneFactorAffineModel


class TestParameterFunction:
    """Constants, value functions and in-place functions of time."""

    def test_constant_broadcasts(self):
        fn = parameter_function(0.5, (2,))
        np.testing.assert_array_equal(fn(0.0), [0.5, 0.5])

    def test_value_function(self):
        fn = parameter_function(lambda t: 1.0 + t, ())
        assert float(fn(2.0)) == 3.0

    def test_inplace_function(self):
        def theta(buf, t):
            buf[:] = [t, 2 * t]

        fn = parameter_function(theta, (2,), inplace=True)
        np.testing.assert_array_equal(fn(1.5), [1.5, 3.0])

    def test_shape_mismatch(self):
        with pytest.raises(ShapeMismatch, match="kappa"):
            parameter_function(np.ones(3), (2, 2), name="kappa")
        fn = parameter_function(lambda t: np.ones(3), (2,), name="theta")
        with pytest.raises(ShapeMismatch, match="theta"):
            fn(0.0)


class TestOneFactorAffine:
    """Bond prices from the Riccati system against closed forms."""

    @pytest.mark.parametrize("tau", [0.25, 1.0, 5.0, 10.0])
    def test_vasicek_bond(self, vasicek_params, tau):
        model = OneFactorAffineModel(**vasicek_params)
        expected = vasicek_bond(0.05, tau=tau, **vasicek_params)
        assert model.bond_price(0.0, tau, [0.05]) == pytest.approx(expected, rel=1e-7)

    @pytest.mark.parametrize("tau", [0.5, 2.0, 7.0])
    def test_cir_bond(self, tau):
        model = OneFactorAffineModel(kappa=0.3, theta=0.04, sigma=0.1, alpha=0.0, beta=1.0)
        expected = cir_bond(0.03, 0.3, 0.04, 0.1, tau)
        assert model.bond_price(0.0, tau, [0.03]) == pytest.approx(expected, rel=1e-7)

    def test_bond_at_maturity(self, vasicek_params):
        model = OneFactorAffineModel(**vasicek_params)
        assert model.bond_price(2.0, 2.0, [0.1]) == 1.0

    def test_maturity_before_valuation(self, vasicek_params):
        model = OneFactorAffineModel(**vasicek_params)
        with pytest.raises(ValueError, match="precedes"):
            model.affine_coefficients(2.0, 1.0)

    def test_coefficients_are_cached(self, vasicek_params):
        model = OneFactorAffineModel(**vasicek_params)
        first = model.affine_coefficients(0.0, 1.0)
        assert model.affine_coefficients(0.0, 1.0) is first

    def test_drift_and_diffusion(self):
        model = OneFactorAffineModel(kappa=2.0, theta=0.05, sigma=0.1, alpha=0.0, beta=1.0)
        np.testing.assert_allclose(model.drift(np.array([0.04]), 0.0), [0.02])
        np.testing.assert_allclose(model.diffusion(np.array([0.04]), 0.0), [0.02])
        # Negative variance is floored at zero
        np.testing.assert_allclose(model.diffusion(np.array([-0.01]), 0.0), [0.0])

    def test_short_rate(self):
        model = OneFactorAffineModel(kappa=1.0, theta=0.0, sigma=0.1, xi0=0.01, xi1=2.0)
        assert model.short_rate(np.array([0.02]), 0.0) == pytest.approx(0.05)

    def test_time_dependent_parameters(self):
        model = OneFactorAffineModel(kappa=1.0, theta=lambda t: 0.01 * t, sigma=0.1)
        np.testing.assert_allclose(model.drift(np.array([0.0]), 2.0), [0.02])

    def test_inplace_parameters(self):
        def theta(buf, t):
            buf[...] = 0.01 * t

        model = OneFactorAffineModel(kappa=1.0, theta=theta, sigma=0.1, inplace=True)
        np.testing.assert_allclose(model.drift(np.array([0.0]), 3.0), [0.03])


class TestMultiFactorAffine:

    @pytest.fixture
    def independent(self):
        return MultiFactorAffineModel(
            kappa=np.diag([0.5, 1.5]), theta=[0.03, 0.02], sigma=np.diag([0.01, 0.02]),
            alpha=[1.0, 1.0], beta=np.zeros((2, 2)),
        )

    def test_dimension_and_noise(self, independent):
        assert independent.dim == 2
        assert independent.default_noise() == NonDiagonalNoise(2)

    def test_dimension_from_callables_needs_dim(self):
        with pytest.raises(ValueError, match="dim="):
            MultiFactorAffineModel(kappa=lambda t: np.eye(2), theta=lambda t: np.zeros(2),
                                   sigma=np.eye(2), alpha=lambda t: np.ones(2),
                                   beta=np.zeros((2, 2)))

    def test_independent_factors_multiply(self, independent):
        x = np.array([0.01, 0.04])
        expected = (vasicek_bond(x[0], 0.5, 0.03, 0.01, 3.0)
                    * vasicek_bond(x[1], 1.5, 0.02, 0.02, 3.0))
        assert independent.bond_price(0.0, 3.0, x) == pytest.approx(expected, rel=1e-7)

    def test_diffusion_shape(self, independent):
        value = independent.diffusion(np.array([0.01, 0.02]), 0.0)
        np.testing.assert_allclose(value, np.diag([0.01, 0.02]))

    def test_short_rate(self, independent):
        assert independent.short_rate(np.array([0.01, 0.02]), 0.0) == pytest.approx(0.03)
