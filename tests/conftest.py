import pytest

from sde_pricing import DiagonalNoise, Dynamics, NoNoise, NonDiagonalNoise, ScalarNoise

from helpers import gbm_system, linear_diffusion, linear_drift


@pytest.fixture
def gbm():
    return gbm_system()


@pytest.fixture
def unset_components():
    """Coefficient-free dynamics covering every noise structure."""
    return [
        ("S", Dynamics([1.0, 2.0])),
        ("v", Dynamics([0.04], noise=ScalarNoise())),
        ("x", Dynamics([0.0, 0.0, 0.0], noise=NonDiagonalNoise(2))),
        ("B", Dynamics([1.0], noise=NoNoise())),
    ]


@pytest.fixture
def vasicek_params():
    return {"kappa": 0.4363, "theta": 0.0613, "sigma": 0.1491}


@pytest.fixture
def vasicek(vasicek_params):
    return Dynamics.from_model("one_factor_affine", [0.05], **vasicek_params)


@pytest.fixture
def two_asset_components():
    """Two log-normal assets with component-level coefficients."""
    S1 = Dynamics([1.0], noise=DiagonalNoise()).attach(
        linear_drift, linear_diffusion, params={"mu": 0.05, "sigma": 0.2})
    S2 = Dynamics([2.0], noise=DiagonalNoise()).attach(
        linear_drift, linear_diffusion, params={"mu": 0.03, "sigma": 0.3})
    return [("S1", S1), ("S2", S2)]
