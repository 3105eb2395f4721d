import numpy as np
import pytest

from openpop.model import ModelSpec
from openpop.sampler import SamplerConfig
from openpop.simulate import SimulationConfig, simulate_survey


TRUE_PARAMS = {"lambda": 5.0, "phi": 0.8, "gamma": 2.0, "p": 0.5}


@pytest.fixture(scope="session")
def small_survey():
    return simulate_survey(
        TRUE_PARAMS,
        spec=ModelSpec("null"),
        config=SimulationConfig(n_sites=8, n_seasons=3, n_visits=3, seed=11),
    )


@pytest.fixture
def quick_config():
    return SamplerConfig(n_chains=3, n_iterations=300, n_burnin=100, n_thin=2, seed=2024)


def covariate_survey(n_sites=6, n_seasons=3, n_visits=2, seed=0):
    rng = np.random.default_rng(seed)
    shape = (n_sites, n_seasons, n_visits)
    flower = rng.normal(size=shape)
    return dict(
        y=rng.poisson(2.0, size=shape).astype(float),
        hour=rng.normal(size=shape),
        flower_abundance=flower,
        mean_flower_abundance=flower.mean(axis=2),
        habitat=["grass", "wood", "meadow", "grass", "wood", "meadow"][:n_sites],
    )
