"""Tests for run settings and profiling utilities."""

import logging
import os

import pytest

from sde_pricing import (MonteCarloEngine, PathEnsemble, PlatenWeak2, Profiler,
                         SimulationConfig, profile_function)


class TestSimulationConfig:

    def test_defaults(self):
        config = SimulationConfig()
        assert config.n_steps == 100
        assert config.scheme().dt == 0.01
        assert config.on_divergence == "drop"

    @pytest.mark.parametrize("kwargs", [
        {"dt": 0.0},
        {"n_paths": 0},
        {"scheme_name": "milstein"},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            SimulationConfig(**kwargs)

    def test_scheme_options(self):
        config = SimulationConfig(dt=0.05, scheme_name="platen_weak2")
        assert isinstance(config.scheme(), PlatenWeak2)
        adaptive = SimulationConfig(scheme_name="adaptive_euler_maruyama",
                                    scheme_options={"rtol": 1e-4})
        assert adaptive.scheme().rtol == 1e-4

    def test_engine(self):
        engine = SimulationConfig(ensemble="threads", n_workers=2, store=False).engine()
        assert isinstance(engine, MonteCarloEngine)
        assert engine.ensemble == "threads"
        assert engine.store is False

    def test_simulate(self, gbm):
        config = SimulationConfig(T=0.5, dt=0.1, n_paths=6, seed=3)
        ensemble = config.simulate(gbm)
        assert isinstance(ensemble, PathEnsemble)
        assert len(ensemble) == 6
        assert ensemble[0].times.size == 6
        again = config.simulate(gbm)
        assert (ensemble[5].states == again[5].states).all()


class TestProfiler:

    def test_disabled_is_silent(self, tmp_path):
        profiler = Profiler(enabled=False, output_dir=str(tmp_path / "out"))
        profiler.start()
        assert profiler.stop("work") is None
        assert not os.path.exists(tmp_path / "out")
        assert profiler.top_functions() == ""

    def test_writes_reports(self, tmp_path):
        profiler = Profiler(output_dir=str(tmp_path))
        with profiler.profile_section("work") as section:
            sum(range(1000))
        assert "work" in profiler.timings
        assert section.timings["work"] >= 0.0
        assert (tmp_path / "work.prof").exists()
        assert (tmp_path / "work_report.txt").read_text().startswith("Total execution time")

    def test_decorator(self, caplog):
        @profile_function
        def work(n):
            return sum(range(n))

        with caplog.at_level(logging.INFO, logger="sde_pricing"):
            assert work(10) == 45
        assert work.__name__ == "work"
        assert any("'work'" in r.message for r in caplog.records)
