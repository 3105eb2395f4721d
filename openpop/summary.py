"""
Posterior summaries pooled over selected chains
"""

import numpy as np
import pandas as pd
from typing import List, Optional, Sequence
from scipy.special import expit, logit

from .model import INTERCEPTS, LINKS, DynamicNMixtureModel
from .sampler import Chain


def _interval_labels(prob: float):
    tail = 100.0 * (1.0 - prob) / 2.0
    return f"lower_{tail:g}%", f"upper_{100.0 - tail:g}%"


def _check_prob(prob: float) -> None:
    if not 0.0 < prob < 1.0:
        raise ValueError("prob must be in (0, 1)")


def pool_samples(chains: Sequence[Chain], parameters: Sequence[str]) -> np.ndarray:
    """Concatenate draws of the selected chains, shape (n_draws, len(parameters))."""
    if len(chains) == 0:
        raise ValueError("at least one chain is required")
    return np.concatenate(
        [np.column_stack([c.values(name) for name in parameters]) for c in chains]
    ).astype(float)


def summarize(
    chains: Sequence[Chain],
    parameters: Optional[Sequence[str]] = None,
    prob: float = 0.95,
) -> pd.DataFrame:
    """
    Mean, SD and central credible interval per parameter.

    Draws from all chains are pooled before any statistic is computed; chains
    are not weighted individually.
    """
    _check_prob(prob)
    if parameters is None:
        parameters = chains[0].param_names
    pooled = pool_samples(chains, parameters)
    lower_label, upper_label = _interval_labels(prob)
    alpha = (1.0 - prob) / 2.0
    return pd.DataFrame(
        {
            "parameter": list(parameters),
            "mean": pooled.mean(axis=0),
            "sd": pooled.std(axis=0, ddof=1) if pooled.shape[0] > 1 else np.zeros(len(parameters)),
            lower_label: np.quantile(pooled, alpha, axis=0),
            upper_label: np.quantile(pooled, 1.0 - alpha, axis=0),
        }
    )


def _inverse_link(link: str, eta: np.ndarray) -> np.ndarray:
    if link == "logit":
        return expit(eta)
    if link == "log":
        return np.exp(eta)
    if link == "identity":
        return eta
    raise ValueError(f"Unknown link: {link}")


def covariate_means(model: DynamicNMixtureModel, process: str) -> np.ndarray:
    """Observed mean of every design column of a process."""
    X = model.designs[process]
    k = X.shape[-1]
    if process == "detection":
        # placeholder-filled covariates at missing counts are not observations
        rows = X[model.data.observed]
    else:
        rows = X.reshape(-1, k)
    if rows.shape[0] == 0:
        return np.zeros(k)
    return rows.mean(axis=0)


def predict(
    chains: Sequence[Chain],
    model: DynamicNMixtureModel,
    process: str,
    covariate: str,
    grid: Sequence,
    link: Optional[str] = None,
    prob: float = 0.95,
) -> pd.DataFrame:
    """
    Posterior-predictive curve of one process along a one-dimensional covariate sweep.

    Every other design column is held at its observed mean. For each posterior
    draw the linear predictor is mapped through the inverse link, then the
    pointwise mean and central interval are taken across draws.

    Parameters
    ----------
    chains : sequence of Chain
        Selected chains; draws are pooled.
    model : DynamicNMixtureModel
        The model the chains were run on.
    process : str
        One of ``abundance``, ``survival``, ``recruitment``, ``detection``.
    covariate : str
        A continuous covariate, or ``habitat`` with ``grid`` holding level labels.
    grid : sequence
        Covariate values to predict at.
    link : str, optional
        ``logit``, ``log`` or ``identity``; defaults to the process link.

    Returns
    -------
    pd.DataFrame
        Columns ``covariate_value``, ``mean``, ``lower``, ``upper``.
    """
    _check_prob(prob)
    if process not in INTERCEPTS:
        raise ValueError(f"Unknown process: {process}")
    labels = model.design_labels[process]
    own_link = LINKS[process]
    link = own_link if link is None else link

    grid = list(grid)
    G = np.tile(covariate_means(model, process), (len(grid), 1))
    if covariate == "habitat":
        levels = model.data.habitat_levels
        cols = [i for i, label in enumerate(labels) if label.startswith("habitat:")]
        if not cols:
            raise ValueError(f"{process} has no habitat columns; available: {labels}")
        G[:, cols] = 0.0
        for row, level in enumerate(grid):
            if str(level) not in levels:
                raise ValueError(f"Unknown habitat level: {level}")
            label = f"habitat:{level}"
            if label in labels:
                G[row, labels.index(label)] = 1.0
    else:
        if covariate not in labels:
            raise ValueError(f"{process} has no covariate {covariate}; available: {labels}")
        G[:, labels.index(covariate)] = np.asarray(grid, dtype=float)

    names = [INTERCEPTS[process]] + [model.param_names[j] for j in model.coef_index[process]]
    draws = pool_samples(chains, names)
    intercept, beta = draws[:, 0], draws[:, 1:]
    base = np.log(intercept) if own_link == "log" else logit(intercept)
    eta = base[:, None] + beta @ G.T
    values = _inverse_link(link, eta)

    alpha = (1.0 - prob) / 2.0
    return pd.DataFrame(
        {
            "covariate_value": grid,
            "mean": values.mean(axis=0),
            "lower": np.quantile(values, alpha, axis=0),
            "upper": np.quantile(values, 1.0 - alpha, axis=0),
        }
    )


def latent_block(chains: Sequence[Chain], block: str = "N") -> np.ndarray:
    """Pooled draws of a latent block, shape (n_draws, n_sites, n_seasons[-1])."""
    if len(chains) == 0:
        raise ValueError("at least one chain is required")
    return np.concatenate([c.latent(block) for c in chains])


def season_abundance(
    chains: Sequence[Chain],
    block: str = "N",
    reduce: str = "mean",
    prob: float = 0.95,
) -> pd.DataFrame:
    """
    Season-aggregated abundance with credible bounds.

    Each draw is first reduced across sites (mean or sum), and only then are
    the quantiles taken across draws.
    """
    _check_prob(prob)
    values = latent_block(chains, block).astype(float)
    if reduce == "mean":
        per_draw = values.mean(axis=1)
    elif reduce == "sum":
        per_draw = values.sum(axis=1)
    else:
        raise ValueError("reduce must be 'mean' or 'sum'")

    alpha = (1.0 - prob) / 2.0
    offset = 1 if block in ("survivors", "recruits") else 0
    return pd.DataFrame(
        {
            "season": np.arange(per_draw.shape[1]) + offset,
            "mean": per_draw.mean(axis=0),
            "lower": np.quantile(per_draw, alpha, axis=0),
            "upper": np.quantile(per_draw, 1.0 - alpha, axis=0),
        }
    )


def site_abundance(chains: Sequence[Chain], prob: float = 0.95) -> pd.DataFrame:
    """Per site and season posterior summary of N in long format."""
    _check_prob(prob)
    values = latent_block(chains, "N").astype(float)
    alpha = (1.0 - prob) / 2.0
    n_sites, n_seasons = values.shape[1:]
    site, season = np.meshgrid(np.arange(n_sites), np.arange(n_seasons), indexing="ij")
    return pd.DataFrame(
        {
            "site": site.ravel(),
            "season": season.ravel(),
            "mean": values.mean(axis=0).ravel(),
            "lower": np.quantile(values, alpha, axis=0).ravel(),
            "upper": np.quantile(values, 1.0 - alpha, axis=0).ravel(),
        }
    )
