"""Tests for composed dynamical systems."""

import numpy as np
import pytest

from sde_pricing import (CoefficientsNotSet, DiagonalNoise, DimensionMismatch,
                         DuplicateComponentName, Dynamics, DynamicalSystem, NoNoise,
                         NonDiagonalNoise, ScalarNoise, ShapeMismatch)
from sde_pricing.securities import Security

from helpers import gbm_drift, gbm_diffusion


def constant_drift(u, p, t):
    return np.ones_like(u)


def constant_diffusion_for(noise, dim):
    """Component diffusion returning ones in the component's own diffusion shape."""
    if isinstance(noise, NonDiagonalNoise):
        shape = (dim, noise.dim)
    else:
        shape = (dim,)

    def g(u, p, t):
        return np.ones(shape)

    return g


class TestComposition:
    """Introspection before any coefficients exist."""

    def test_unset_system_can_be_queried(self, unset_components):
        ds = DynamicalSystem.compose(unset_components)
        np.testing.assert_array_equal(ds.state, [1.0, 2.0, 0.04, 0.0, 0.0, 0.0, 1.0])
        assert ds.dim == 7
        assert ds.noise_dim == 2 + 1 + 2
        assert ds.noise_shape == (7, 5)
        assert ds.noise_kind == "general"
        assert not ds.has_coefficients

    def test_unset_system_drift_raises(self, unset_components):
        ds = DynamicalSystem.compose(unset_components)
        with pytest.raises(CoefficientsNotSet) as info:
            ds.joint_drift(ds.state)
        assert info.value.component == "S"
        with pytest.raises(CoefficientsNotSet):
            ds.joint_diffusion(ds.state)

    def test_metadata_is_idempotent(self, unset_components):
        ds = DynamicalSystem.compose(unset_components)
        first = (ds.state.copy(), ds.noise_shape, ds.describe())
        with pytest.raises(CoefficientsNotSet):
            ds.joint_drift(ds.state)
        second = (ds.state.copy(), ds.noise_shape, ds.describe())
        np.testing.assert_array_equal(first[0], second[0])
        assert first[1:] == second[1:]
        assert not ds.state.flags.writeable

    def test_mapping_input(self):
        ds = DynamicalSystem.compose({"a": Dynamics([1.0]), "b": Dynamics([2.0, 3.0])})
        assert ds.layout.names == ("a", "b")

    def test_duplicate_names(self):
        with pytest.raises(DuplicateComponentName):
            DynamicalSystem.compose([("S", Dynamics([1.0])), ("S", Dynamics([2.0]))])

    def test_rejects_non_dynamics(self):
        with pytest.raises(TypeError):
            DynamicalSystem.compose([("S", [1.0])])

    def test_initial_times_must_agree(self):
        with pytest.raises(ValueError, match="different times"):
            DynamicalSystem.compose([("a", Dynamics([1.0], t0=0.0)), ("b", Dynamics([1.0], t0=1.0))])

    def test_cross_correlation_dimension(self):
        with pytest.raises(DimensionMismatch):
            DynamicalSystem.compose([("a", Dynamics([1.0])), ("b", Dynamics([1.0]))],
                                    correlation=np.eye(3))

    def test_params_carry_registries(self, unset_components):
        ds = DynamicalSystem(unset_components[:1], params={"r": 0.05})
        assert ds.params.r == 0.05
        assert ds.params.dynamics.S is unset_components[0][1]
        security = ds.params.securities.S
        assert isinstance(security, Security)
        assert security.state_slice == slice(0, 2)
        assert ds.security("S") is security

    def test_diffusion_without_drift(self):
        with pytest.raises(ValueError, match="without a drift"):
            DynamicalSystem([("S", Dynamics([1.0]))], diffusion=gbm_diffusion)


class TestNoiseShapeMatchesDiffusion:
    """The declared noise shape is exactly what joint_diffusion produces."""

    @pytest.mark.parametrize("noises", [
        [DiagonalNoise()],
        [DiagonalNoise(), DiagonalNoise()],
        [ScalarNoise()],
        [NonDiagonalNoise(3)],
        [DiagonalNoise(), ScalarNoise()],
        [ScalarNoise(), NonDiagonalNoise(2), NoNoise()],
        [NoNoise()],
    ])
    def test_component_coefficients(self, noises):
        components = []
        for k, noise in enumerate(noises):
            dim = 2
            d = Dynamics(np.zeros(dim), noise=noise)
            d.attach(constant_drift, constant_diffusion_for(noise, dim))
            components.append((f"c{k}", d))
        ds = DynamicalSystem.compose(components)
        assert ds.joint_diffusion(ds.state).shape == ds.noise_shape
        assert ds.joint_drift(ds.state).shape == (ds.dim,)

    def test_general_blocks(self):
        a = Dynamics([1.0, 1.0]).attach(constant_drift, lambda u, p, t: np.array([2.0, 3.0]))
        b = Dynamics([1.0], noise=ScalarNoise()).attach(constant_drift, lambda u, p, t: 4.0)
        c = Dynamics([1.0], noise=NoNoise()).attach(constant_drift)
        ds = DynamicalSystem.compose([("a", a), ("b", b), ("c", c)])
        expected = np.zeros((4, 3))
        expected[0, 0] = 2.0
        expected[1, 1] = 3.0
        expected[2, 2] = 4.0
        np.testing.assert_array_equal(ds.joint_diffusion(ds.state), expected)

    def test_known_models_compose(self, vasicek):
        x = Dynamics.from_model("multi_factor_affine", [0.01, 0.02],
                                kappa=np.eye(2), theta=[0.0, 0.0], sigma=np.eye(2),
                                alpha=[1.0, 1.0], beta=np.zeros((2, 2)))
        ds = DynamicalSystem.compose([("r", vasicek), ("x", x)])
        assert ds.noise_shape == (3, 3)
        g = ds.joint_diffusion(ds.state)
        assert g[0, 0] == pytest.approx(0.1491)
        np.testing.assert_allclose(g[1:, 1:], np.eye(2))
        assert g[0, 1:].tolist() == [0.0, 0.0]


class TestSystemCoefficients:

    def test_system_level_takes_precedence(self, two_asset_components):
        ds = DynamicalSystem(two_asset_components, lambda u, p, t: -u)
        np.testing.assert_allclose(ds.joint_drift(ds.state), [-1.0, -2.0])

    def test_component_level(self, two_asset_components):
        ds = DynamicalSystem.compose(two_asset_components)
        assert ds.has_coefficients
        np.testing.assert_allclose(ds.joint_drift(ds.state), [0.05, 0.06])
        np.testing.assert_allclose(ds.joint_diffusion(ds.state), [0.2, 0.6])

    def test_component_params_carry_registries(self):
        seen = {}

        def drift(u, p, t):
            seen["names"] = (list(p.dynamics), list(p.securities))
            return p.mu * u

        S = Dynamics([2.0]).attach(drift, params={"mu": 0.5})
        v = Dynamics([1.0], noise=NoNoise())
        ds = DynamicalSystem.compose([("S", S), ("v", v)])
        v.attach(constant_drift, params={"mu": 9.0})
        np.testing.assert_allclose(ds.joint_drift(ds.state), [1.0, 1.0])
        assert seen["names"] == (["S", "v"], ["S", "v"])
        # The component's own record keeps no registries
        assert list(S.params.securities) == []

    def test_attach_coefficients_returns_new_system(self):
        base = DynamicalSystem.compose([("S", Dynamics([2.0]))])
        ds = base.attach_coefficients(gbm_drift, gbm_diffusion, params={"r": 0.1, "sigma": 0.2})
        assert not base.has_coefficients
        assert ds.has_system_coefficients
        assert ds.layout.describe() == base.layout.describe()
        np.testing.assert_allclose(ds.joint_drift(ds.state), [0.2])
        np.testing.assert_allclose(ds.joint_diffusion(ds.state), [0.4])

    def test_output_buffer(self, gbm):
        out = np.zeros(1)
        assert gbm.joint_drift(gbm.state, out=out) is out
        assert out[0] == pytest.approx(0.05)

    def test_explicit_params(self, gbm):
        p = gbm.params.with_values(r=0.5)
        np.testing.assert_allclose(gbm.joint_drift(gbm.state, p), [0.5])

    def test_shape_mismatch_names_system(self):
        ds = DynamicalSystem([("S", Dynamics([1.0, 1.0]))], lambda u, p, t: np.ones(3))
        with pytest.raises(ShapeMismatch) as info:
            ds.joint_drift(ds.state)
        assert info.value.component == "<system>"

    def test_shape_mismatch_names_component(self):
        bad = Dynamics([1.0], noise=NonDiagonalNoise(2)).attach(
            constant_drift, lambda u, p, t: np.ones(3))
        ds = DynamicalSystem.compose([("ok", Dynamics([1.0]).attach(constant_drift)),
                                      ("bad", bad)])
        with pytest.raises(ShapeMismatch) as info:
            ds.joint_diffusion(ds.state)
        assert info.value.component == "bad"

    def test_in_place_system(self):
        def f(du, u, p, t):
            du[:] = p.k * u

        ds = DynamicalSystem([("S", Dynamics([1.0, 2.0]))], f, params={"k": 3.0}, inplace=True)
        assert ds.inplace
        np.testing.assert_allclose(ds.joint_drift(ds.state), [3.0, 6.0])
