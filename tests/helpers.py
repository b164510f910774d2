"""
Model builders and closed-form references shared by the tests.

Coefficient functions live at module level so systems stay picklable.
"""

import numpy as np
from scipy.stats import norm

from sde_pricing import Dynamics, DynamicalSystem, NoNoise


def black_scholes(S0, K, r, sigma, T, kind="call"):
    """Closed-form Black-Scholes price of a European option."""
    d1 = (np.log(S0 / K) + (r + 0.5 * sigma ** 2) * T) / (sigma * np.sqrt(T))
    d2 = d1 - sigma * np.sqrt(T)
    if kind == "call":
        return S0 * norm.cdf(d1) - K * np.exp(-r * T) * norm.cdf(d2)
    return K * np.exp(-r * T) * norm.cdf(-d2) - S0 * norm.cdf(-d1)


def vasicek_bond(r0, kappa, theta, sigma, tau):
    """Closed-form Vasicek zero coupon bond price."""
    B = (1.0 - np.exp(-kappa * tau)) / kappa
    A = (B - tau) * (theta - sigma ** 2 / (2.0 * kappa ** 2)) - sigma ** 2 * B ** 2 / (4.0 * kappa)
    return np.exp(A - B * r0)


def gbm_drift(u, p, t):
    S = p.securities.S.bind(u)
    return np.array([p.r * S(t)])


def gbm_diffusion(u, p, t):
    S = p.securities.S.bind(u)
    return np.array([p.sigma * S(t)])


def gbm_drift_inplace(du, u, p, t):
    S = p.securities.S.bind(u, du)
    S.dx[0] = p.r * S(t)


def gbm_diffusion_inplace(du, u, p, t):
    S = p.securities.S.bind(u, du)
    S.dx[0] = p.sigma * S(t)


def linear_drift(u, p, t):
    return p.mu * u


def linear_diffusion(u, p, t):
    return p.sigma * u


def gbm_system(S0=1.0, r=0.05, sigma=0.1, inplace=False):
    """Single-asset log-normal system with system-level coefficients."""
    S = Dynamics([S0])
    params = {"r": r, "sigma": sigma}
    if inplace:
        return DynamicalSystem([("S", S)], gbm_drift_inplace, gbm_diffusion_inplace, params,
                               inplace=True)
    return DynamicalSystem([("S", S)], gbm_drift, gbm_diffusion, params)


def terminal_call(path, p):
    S = p.securities.S.bind(path)
    return np.exp(-p.r * p.T) * max(S(p.T) - p.K, 0.0)


def terminal_put(path, p):
    S = p.securities.S.bind(path)
    return np.exp(-p.r * p.T) * max(p.K - S(p.T), 0.0)



def short_rate_drift(u, p, t):
    model = p.dynamics.r.model
    r = p.securities.r.bind(u)
    B = p.securities.B.bind(u)
    x = np.array([r(t)])
    return np.array([model.drift(x, t)[0], model.short_rate(x, t) * B(t)])


def short_rate_diffusion(u, p, t):
    model = p.dynamics.r.model
    r = p.securities.r.bind(u)
    g = np.zeros((2, 1))
    g[0, 0] = model.diffusion(np.array([r(t)]), t)[0]
    return g


def short_rate_system(r0=0.05, kappa=0.4363, theta=0.0613, sigma=0.1491):
    """Vasicek short rate with its money market account B, dB = r B dt."""
    r = Dynamics.from_model("one_factor_affine", [r0], kappa=kappa, theta=theta, sigma=sigma)
    B = Dynamics([1.0], noise=NoNoise())
    return DynamicalSystem([("r", r), ("B", B)], short_rate_drift, short_rate_diffusion)
