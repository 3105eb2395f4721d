"""
Synthetic surveys drawn from the dynamic N-mixture process
"""

import numpy as np
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .model import DynamicNMixtureModel, ModelSpec, Priors
from .survey import SurveyData


@dataclass
class SimulationConfig:
    n_sites: int = 10
    n_seasons: int = 4
    n_visits: int = 4
    missing_fraction: float = 0.0
    habitat_levels: Tuple[str, ...] = ("grassland", "meadow", "woodland")
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if min(self.n_sites, self.n_seasons, self.n_visits) < 1:
            raise ValueError("n_sites, n_seasons and n_visits must be >= 1")
        if not 0.0 <= self.missing_fraction < 1.0:
            raise ValueError("missing_fraction must be in [0, 1)")
        if len(self.habitat_levels) < 1:
            raise ValueError("at least one habitat level is required")


@dataclass
class SimulatedSurvey:
    data: SurveyData
    theta: np.ndarray
    N: np.ndarray
    survivors: np.ndarray
    recruits: np.ndarray
    model: DynamicNMixtureModel


def simulate_covariates(config: SimulationConfig, rng: np.random.Generator) -> Dict[str, np.ndarray]:
    """Standardized hour and flower abundance per visit, season means and site habitat."""
    shape = (config.n_sites, config.n_seasons, config.n_visits)
    hour = rng.normal(0.0, 1.0, size=shape)
    flower = rng.normal(0.0, 1.0, size=shape)
    return {
        "hour": hour,
        "flower_abundance": flower,
        "mean_flower_abundance": flower.mean(axis=2),
        "habitat": rng.choice(np.array(config.habitat_levels), size=config.n_sites),
    }


def simulate_survey(
    params: Dict[str, float],
    spec: ModelSpec = None,
    config: SimulationConfig = None,
    priors: Priors = None,
) -> SimulatedSurvey:
    """
    Draw one survey from the generative process.

    Parameters
    ----------
    params : dict
        True values keyed by parameter name, e.g. ``{"lambda": 5, "phi": 0.8,
        "gamma": 2, "p": 0.5, "beta_p[hour]": 0.4}``. Coefficients left out are zero.
    spec : ModelSpec, optional
        Effects allowed to be non-zero; defaults to the null model.
    config : SimulationConfig, optional
        Dimensions, missingness and seed.
    """
    spec = spec if spec is not None else ModelSpec("null")
    config = config if config is not None else SimulationConfig()
    rng = np.random.default_rng(config.seed)
    shape = (config.n_sites, config.n_seasons, config.n_visits)

    covariates = simulate_covariates(config, rng)
    template = SurveyData(np.zeros(shape), **covariates)
    model = DynamicNMixtureModel(spec, template, priors)
    theta = model.theta_from_dict(params)
    if not np.isfinite(model.ln_prior(theta)):
        raise ValueError(f"true parameter values are outside the prior support or fix a disabled effect: {params}")
    rates = model.rates(theta)

    N = np.empty((config.n_sites, config.n_seasons), dtype=np.int64)
    survivors = np.empty((config.n_sites, config.n_seasons - 1), dtype=np.int64)
    recruits = np.empty((config.n_sites, config.n_seasons - 1), dtype=np.int64)
    N[:, 0] = rng.poisson(rates["abundance"])
    for t in range(1, config.n_seasons):
        survivors[:, t - 1] = rng.binomial(N[:, t - 1], rates["survival"][:, t - 1])
        recruits[:, t - 1] = rng.poisson(rates["recruitment"][:, t - 1])
        N[:, t] = survivors[:, t - 1] + recruits[:, t - 1]

    y = rng.binomial(N[:, :, None], rates["detection"]).astype(float)
    if config.missing_fraction > 0.0:
        y[rng.random(shape) < config.missing_fraction] = np.nan

    data = SurveyData(y, **covariates)
    return SimulatedSurvey(
        data=data,
        theta=theta,
        N=N,
        survivors=survivors,
        recruits=recruits,
        model=DynamicNMixtureModel(spec, data, priors),
    )
