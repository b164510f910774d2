from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sde_pricing.solver import SCHEMES, get_scheme


@dataclass
class SimulationConfig:
    """Run settings shared by the integrator and the Monte Carlo engine."""
    T: float = 1.0
    dt: float = 0.01
    scheme_name: str = "euler_maruyama"
    scheme_options: Dict[str, Any] = field(default_factory=dict)
    n_paths: int = 1000
    seed: Optional[int] = None
    ensemble: str = "serial"
    n_workers: Optional[int] = None
    store: bool = True
    on_divergence: str = "drop"
    profile: bool = False

    def __post_init__(self):
        if self.dt <= 0:
            raise ValueError(f"dt must be positive, got {self.dt}")
        if self.n_paths < 1:
            raise ValueError(f"n_paths must be at least 1, got {self.n_paths}")
        if self.scheme_name not in SCHEMES:
            raise ValueError(f"unknown scheme '{self.scheme_name}', available: {sorted(SCHEMES)}")

    @property
    def n_steps(self) -> int:
        """Nominal number of fixed steps from 0 to T."""
        return max(int(round(self.T / self.dt)), 1)

    def scheme(self):
        return get_scheme(self.scheme_name, dt=self.dt, **self.scheme_options)

    def engine(self):
        from sde_pricing.monte_carlo import MonteCarloEngine
        return MonteCarloEngine(ensemble=self.ensemble, n_workers=self.n_workers, store=self.store,
                                on_divergence=self.on_divergence, profile=self.profile)

    def simulate(self, system):
        """Generate ``n_paths`` paths of ``system`` with these settings."""
        return self.engine().simulate(system, self.T, self.n_paths, seed=self.seed,
                                      scheme=self.scheme())
