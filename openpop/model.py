"""
Dynamic N-mixture model: priors, state transitions and detection
"""

import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Tuple
from scipy.special import expit, gammaln, logit, xlog1py, xlogy

from .survey import SurveyData


PROCESSES = ("abundance", "survival", "recruitment", "detection")

INTERCEPTS = {
    "abundance": "lambda",
    "survival": "phi",
    "recruitment": "gamma",
    "detection": "p",
}

LINKS = {
    "abundance": "log",
    "survival": "logit",
    "recruitment": "log",
    "detection": "logit",
}

# Covariates each process can depend on.
PROCESS_COVARIATES = {
    "abundance": ("habitat",),
    "survival": ("habitat", "mean_flower_abundance"),
    "recruitment": ("habitat", "mean_flower_abundance"),
    "detection": ("hour", "flower_abundance"),
}

# Ranges for dispersed chain starting values.
INIT_RANGES = {
    "lambda": (1.0, 10.0),
    "phi": (0.2, 0.9),
    "gamma": (0.5, 5.0),
    "p": (0.2, 0.8),
    "beta": (-1.0, 1.0),
}

# Initial random-walk step sizes, tuned during burn-in.
INIT_STEPS = {"lambda": 0.5, "phi": 0.05, "gamma": 0.3, "p": 0.05, "beta": 0.2}


@dataclass(frozen=True)
class ModelSpec:
    """
    Enabled covariate effects per process.

    A covariate not listed for a process keeps its coefficient in the
    parameter vector, fixed at zero.
    """

    name: str = "null"
    abundance: Tuple[str, ...] = ()
    survival: Tuple[str, ...] = ()
    recruitment: Tuple[str, ...] = ()
    detection: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for process in PROCESSES:
            effects = tuple(getattr(self, process))
            object.__setattr__(self, process, effects)
            for cov in effects:
                if cov not in PROCESS_COVARIATES[process]:
                    raise ValueError(
                        f"Unknown {process} covariate: {cov}. "
                        f"Must be one of {PROCESS_COVARIATES[process]}"
                    )

    def effects(self, process: str) -> Tuple[str, ...]:
        return getattr(self, process)

    @classmethod
    def variant(cls, name: str) -> "ModelSpec":
        if name not in MODEL_VARIANTS:
            raise ValueError(f"Unknown model variant: {name}. Must be one of {list(MODEL_VARIANTS)}")
        return MODEL_VARIANTS[name]


MODEL_VARIANTS: Dict[str, ModelSpec] = {
    "null": ModelSpec("null"),
    "time": ModelSpec("time", detection=("hour",)),
    "habitat": ModelSpec(
        "habitat",
        survival=("habitat",),
        recruitment=("habitat",),
        detection=("hour",),
    ),
    "flower": ModelSpec(
        "flower",
        survival=("mean_flower_abundance",),
        recruitment=("mean_flower_abundance",),
        detection=("hour", "flower_abundance"),
    ),
}


@dataclass(frozen=True)
class Priors:
    """Uniform priors on intercepts, normal priors on logit/log-scale coefficients."""

    lambda_max: float = 100.0
    gamma_max: float = 50.0
    coef_sd: float = 2.5

    def __post_init__(self) -> None:
        if self.lambda_max <= 0 or self.gamma_max <= 0:
            raise ValueError("lambda_max and gamma_max must be positive")
        if self.coef_sd <= 0:
            raise ValueError("coef_sd must be positive")

    def bounds(self, intercept: str) -> Tuple[float, float]:
        return {
            "lambda": (0.0, self.lambda_max),
            "phi": (0.0, 1.0),
            "gamma": (0.0, self.gamma_max),
            "p": (0.0, 1.0),
        }[intercept]


def poisson_logpmf(k, mu):
    """Poisson log-pmf, -inf outside the support."""
    k = np.asarray(k)
    valid = k >= 0
    kk = np.where(valid, k, 0)
    out = xlogy(kk, mu) - mu - gammaln(kk + 1)
    return np.where(valid, out, -np.inf)


def binom_logpmf(k, n, p):
    """Binomial log-pmf, -inf where k < 0 or k > n."""
    k = np.asarray(k)
    n = np.asarray(n)
    valid = (k >= 0) & (k <= n)
    kk = np.where(valid, k, 0)
    nn = np.where(valid, n, 0)
    out = (
        gammaln(nn + 1)
        - gammaln(kk + 1)
        - gammaln(nn - kk + 1)
        + xlogy(kk, p)
        + xlog1py(nn - kk, -p)
    )
    return np.where(valid, out, -np.inf)


def normal_logpdf(x, sd):
    return -0.5 * (np.asarray(x) / sd) ** 2 - np.log(sd * np.sqrt(2.0 * np.pi))


def apply_link(link: str, intercept, eta_offset):
    """Map a natural-scale intercept plus a linear offset through the inverse link."""
    if link == "log":
        return np.exp(np.log(intercept) + eta_offset)
    if link == "logit":
        return expit(logit(intercept) + eta_offset)
    raise ValueError(f"Unknown link: {link}")


class DynamicNMixtureModel:
    """
    Open-population N-mixture model bound to one survey data set.

    N[s, 0] ~ Poisson(lambda[s])
    S[s, t] ~ Binomial(N[s, t], phi[s, t])          survivors into season t + 1
    R[s, t] ~ Poisson(gamma[s, t])                   recruits into season t + 1
    N[s, t + 1] = S[s, t] + R[s, t]
    y[s, t, v] ~ Binomial(N[s, t], p[s, t, v])       observed slots only

    The parameter vector holds the four natural-scale intercepts followed by
    every coefficient the data supports; coefficients whose effect is not
    enabled in the ModelSpec are fixed at zero.
    """

    def __init__(self, spec: ModelSpec, data: SurveyData, priors: Priors = None):
        self.spec = spec
        self.data = data
        self.priors = priors if priors is not None else Priors()

        n_sites, n_seasons, n_visits = data.shape
        self.process_shapes = {
            "abundance": (n_sites,),
            "survival": (n_sites, n_seasons - 1),
            "recruitment": (n_sites, n_seasons - 1),
            "detection": (n_sites, n_seasons, n_visits),
        }

        names: List[str] = []
        free: List[bool] = []
        kinds: List[str] = []
        self.intercept_index: Dict[str, int] = {}
        self.coef_index: Dict[str, np.ndarray] = {}
        self.designs: Dict[str, np.ndarray] = {}
        self.design_labels: Dict[str, List[str]] = {}
        self.param_process: List[str] = []

        for process in PROCESSES:
            intercept = INTERCEPTS[process]
            self.intercept_index[process] = len(names)
            names.append(intercept)
            free.append(True)
            kinds.append(intercept)
            self.param_process.append(process)

        for process in PROCESSES:
            enabled = spec.effects(process)
            missing = [cov for cov in enabled if not data.has_covariate(cov)]
            if missing:
                raise ValueError(
                    f"Model '{spec.name}' uses {missing} for {process} but the data has no such covariate"
                )

            shape = self.process_shapes[process]
            blocks, labels, index = [], [], []
            for cov in PROCESS_COVARIATES[process]:
                if not data.has_covariate(cov):
                    continue
                X, cols = data.covariate_block(cov, shape)
                blocks.append(X)
                for col in cols:
                    index.append(len(names))
                    names.append(f"beta_{INTERCEPTS[process]}[{col}]")
                    free.append(cov in enabled)
                    kinds.append("beta")
                    self.param_process.append(process)
                labels.extend(cols)

            if blocks:
                self.designs[process] = np.concatenate(blocks, axis=-1)
            else:
                self.designs[process] = np.zeros(shape + (0,))
            self.design_labels[process] = labels
            self.coef_index[process] = np.array(index, dtype=int)

        self.param_names = names
        self.free = np.array(free, dtype=bool)
        self.param_kinds = kinds

    @property
    def n_params(self) -> int:
        return len(self.param_names)

    @property
    def free_names(self) -> List[str]:
        return [n for n, f in zip(self.param_names, self.free) if f]

    def index_of(self, name: str) -> int:
        return self.param_names.index(name)

    def theta_from_dict(self, values: Dict[str, float]) -> np.ndarray:
        """Parameter vector from named values; unnamed coefficients are zero."""
        theta = np.zeros(self.n_params)
        for process in PROCESSES:
            intercept = INTERCEPTS[process]
            if intercept not in values:
                raise ValueError(f"missing value for intercept '{intercept}'")
        for name, value in values.items():
            if name not in self.param_names:
                raise ValueError(f"Unknown parameter: {name}")
            theta[self.index_of(name)] = float(value)
        return theta

    def initial_values(self, rng: np.random.Generator) -> np.ndarray:
        """Randomized dispersed starting values for the free parameters."""
        theta = np.zeros(self.n_params)
        for j, kind in enumerate(self.param_kinds):
            if not self.free[j]:
                continue
            lo, hi = INIT_RANGES[kind]
            if kind in ("lambda", "gamma"):
                hi = min(hi, 0.5 * self.priors.bounds(kind)[1])
            theta[j] = rng.uniform(lo, hi)
        return theta

    def initial_steps(self) -> np.ndarray:
        return np.array([INIT_STEPS[kind] for kind in self.param_kinds])

    def rate(self, process: str, theta: np.ndarray) -> np.ndarray:
        """Per-unit lambda, phi, gamma or p for one process."""
        intercept = theta[self.intercept_index[process]]
        beta = theta[self.coef_index[process]]
        eta_offset = self.designs[process] @ beta
        return apply_link(LINKS[process], intercept, eta_offset)

    def rates(self, theta: np.ndarray) -> Dict[str, np.ndarray]:
        return {process: self.rate(process, theta) for process in PROCESSES}

    def in_support(self, j: int, value: float) -> bool:
        kind = self.param_kinds[j]
        if kind == "beta":
            return bool(np.isfinite(value))
        lo, hi = self.priors.bounds(kind)
        return lo < value < hi

    def ln_prior_term(self, j: int, value: float) -> float:
        if not self.free[j]:
            return 0.0 if value == 0.0 else -np.inf
        if not self.in_support(j, value):
            return -np.inf
        kind = self.param_kinds[j]
        if kind == "beta":
            return float(normal_logpdf(value, self.priors.coef_sd))
        lo, hi = self.priors.bounds(kind)
        return -np.log(hi - lo)

    def ln_prior(self, theta: np.ndarray) -> float:
        total = 0.0
        for j, value in enumerate(theta):
            lp = self.ln_prior_term(j, value)
            if not np.isfinite(lp):
                return -np.inf
            total += lp
        return total

    # latent-state densities, elementwise

    def ln_initial(self, n0: np.ndarray, lam: np.ndarray) -> np.ndarray:
        return poisson_logpmf(n0, lam)

    def ln_survival(self, survivors: np.ndarray, n_prev: np.ndarray, phi: np.ndarray) -> np.ndarray:
        return binom_logpmf(survivors, n_prev, phi)

    def ln_recruitment(self, recruits: np.ndarray, gamma: np.ndarray) -> np.ndarray:
        return poisson_logpmf(recruits, gamma)

    def ln_observation(self, N: np.ndarray, p: np.ndarray, season: int = None) -> np.ndarray:
        """
        Observation log-likelihood summed over visits, shape (n_sites, n_seasons).

        With ``season`` given, ``N`` is a (n_sites,) vector for that season and
        the result has shape (n_sites,). Missing slots contribute zero.
        """
        if season is None:
            counts, observed = self.data.counts, self.data.observed
            ll = binom_logpmf(counts, N[:, :, None], p)
        else:
            counts = self.data.counts[:, season, :]
            observed = self.data.observed[:, season, :]
            ll = binom_logpmf(counts, N[:, None], p[:, season, :])
        return np.where(observed, ll, 0.0).sum(axis=-1)

    def block_loglik(self, process: str, state_rate: np.ndarray, N, survivors, recruits) -> float:
        """Log-likelihood of the latent/observed block governed by one process."""
        if process == "abundance":
            return float(self.ln_initial(N[:, 0], state_rate).sum())
        if process == "survival":
            return float(self.ln_survival(survivors, N[:, :-1], state_rate).sum())
        if process == "recruitment":
            return float(self.ln_recruitment(recruits, state_rate).sum())
        return float(self.ln_observation(N, state_rate).sum())

    def ln_posterior(self, theta: np.ndarray, N, survivors, recruits) -> float:
        """Joint log density of parameters, latent states and observed counts."""
        lp = self.ln_prior(theta)
        if not np.isfinite(lp):
            return -np.inf
        rates = self.rates(theta)
        total = lp
        for process in PROCESSES:
            total += self.block_loglik(process, rates[process], N, survivors, recruits)
        if not np.all(N[:, 1:] == survivors + recruits):
            return -np.inf
        return total

    def deviance(self, N: np.ndarray, p: np.ndarray) -> float:
        return -2.0 * float(self.ln_observation(N, p).sum())

    def __repr__(self) -> str:
        return (
            f"DynamicNMixtureModel(spec={self.spec.name!r}, n_params={self.n_params}, "
            f"free={self.free_names})"
        )
