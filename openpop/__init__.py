"""
Open-population (dynamic N-mixture) abundance models fit by MCMC
"""

from .survey import SurveyData, COVARIATE_PLACEHOLDER
from .model import (
    DynamicNMixtureModel,
    ModelSpec,
    MODEL_VARIANTS,
    Priors,
)
from .sampler import Chain, SamplerConfig, SamplingCancelled, run, run_chains
from .convergence_analysis import (
    diagnose,
    gelman_rubin,
    rhat_table,
    select_convergent_chains,
    deviance_by_chain,
)
from .summary import predict, season_abundance, summarize, latent_block
from .fit import ModelFit, compare_models, fit_model
from .simulate import SimulationConfig, simulate_survey

__version__ = "0.1.0"
