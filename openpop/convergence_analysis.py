"""
Convergence diagnostics across chains: Gelman-Rubin R-hat, effective sample size
and per-chain deviance
"""

import warnings
import numpy as np
import pandas as pd
from typing import Dict, List, Sequence, Tuple
from scipy import stats
from emcee.autocorr import integrated_time

from .sampler import Chain


RHAT_THRESHOLD = 1.1


def stack_chains(chains: Sequence[Chain], parameters: Sequence[str]) -> np.ndarray:
    """
    Stack retained draws into an array of shape (nchains, nsteps, ndim).

    Raises
    ------
    ValueError
        If no chains are given or the chains differ in length.
    """
    if len(chains) == 0:
        raise ValueError("at least one chain is required")
    lengths = {len(c) for c in chains}
    if len(lengths) != 1:
        raise ValueError(f"chains must have equal length, got lengths {sorted(lengths)}")
    if len(parameters) == 0:
        raise ValueError("no parameters to diagnose")

    return np.stack(
        [np.column_stack([c.values(name) for name in parameters]) for c in chains]
    ).astype(float)


def gelman_rubin(chains: np.ndarray, confidence: float = 0.95) -> Tuple[np.ndarray, np.ndarray]:
    """
    Potential scale reduction factor with its upper confidence limit.

    Uses the Brooks & Gelman (1998) correction for sampling variability of the
    variance estimates, with the upper limit from an F distribution.

    Parameters
    ----------
    chains : np.ndarray
        Array of shape (nchains, nsteps, ndim), after burn-in and thinning.
    confidence : float
        Coverage of the upper confidence limit.

    Returns
    -------
    rhat, rhat_upper : np.ndarray
        Arrays of shape (ndim,). Quantities constant within and across every
        chain get 1.0; constant within chains but different across them get inf.
    """
    if chains.ndim != 3:
        raise ValueError("chains must be (nchains, nsteps, ndim)")
    nchains, nsteps, ndim = chains.shape
    if nchains < 2:
        raise ValueError("R-hat needs at least two chains")
    if nsteps < 2:
        raise ValueError("R-hat needs at least two retained draws per chain")

    m, n = float(nchains), float(nsteps)
    s2 = chains.var(axis=1, ddof=1)
    xbar = chains.mean(axis=1)
    W = s2.mean(axis=0)
    B = n * xbar.var(axis=0, ddof=1)
    muhat = xbar.mean(axis=0)

    rhat = np.ones(ndim)
    upper = np.ones(ndim)
    for j in range(ndim):
        if W[j] <= 0.0:
            rhat[j] = upper[j] = 1.0 if B[j] <= 0.0 else np.inf
            continue

        var_w = s2[:, j].var(ddof=1) / m
        var_b = 2.0 * B[j] ** 2 / (m - 1.0)
        cov_wb = (n / m) * (
            np.cov(s2[:, j], xbar[:, j] ** 2)[0, 1]
            - 2.0 * muhat[j] * np.cov(s2[:, j], xbar[:, j])[0, 1]
        )
        V = (n - 1.0) * W[j] / n + (1.0 + 1.0 / m) * B[j] / n
        var_V = (
            (n - 1.0) ** 2 * var_w
            + (1.0 + 1.0 / m) ** 2 * var_b
            + 2.0 * (n - 1.0) * (1.0 + 1.0 / m) * cov_wb
        ) / n**2

        df_adj = 1.0
        if var_V > 0.0:
            df_V = 2.0 * V**2 / var_V
            df_adj = (df_V + 3.0) / (df_V + 1.0)

        r2_fixed = (n - 1.0) / n
        r2_random = (1.0 + 1.0 / m) * (1.0 / n) * (B[j] / W[j])
        level = (1.0 + confidence) / 2.0
        if var_w > 0.0:
            q = stats.f.ppf(level, m - 1.0, 2.0 * W[j] ** 2 / var_w)
        else:
            q = stats.chi2.ppf(level, m - 1.0) / (m - 1.0)

        rhat[j] = np.sqrt(df_adj * (r2_fixed + r2_random))
        upper[j] = np.sqrt(df_adj * (r2_fixed + q * r2_random))

    return rhat, upper


def compute_split_rhat(chains: np.ndarray) -> np.ndarray:
    """
    Compute split-chain Gelman-Rubin R-hat per parameter.

    Each chain is cut in half so that a drift within a chain also inflates
    R-hat.

    Parameters
    ----------
    chains : np.ndarray
        Array of shape (nchains, nsteps, ndim), AFTER burn-in and thinning.

    Returns
    -------
    np.ndarray
        R-hat values of shape (ndim,).
    """
    if chains.ndim != 3:
        raise ValueError("chains must be (nchains, nsteps, ndim)")

    nchains, nsteps, ndim = chains.shape
    if nsteps < 4:
        raise ValueError("Too few steps after burn-in to compute R-hat (need >= 4)")

    half = nsteps // 2
    split_chains = np.concatenate([chains[:, :half, :], chains[:, -half:, :]], axis=0)
    m = split_chains.shape[0]
    n = split_chains.shape[1]

    chain_means = split_chains.mean(axis=1)
    chain_vars = split_chains.var(axis=1, ddof=1)
    grand_means = chain_means.mean(axis=0)

    B = n * ((chain_means - grand_means) ** 2).sum(axis=0) / (m - 1)
    W = chain_vars.mean(axis=0)

    var_hat = ((n - 1) / n) * W + (B / n)
    with np.errstate(divide="ignore", invalid="ignore"):
        rhat = np.sqrt(var_hat / W)
    rhat[(W <= 0) & (B <= 0)] = 1.0
    return rhat


def effective_sample_size(chains: np.ndarray) -> np.ndarray:
    """
    Effective number of draws per parameter from the integrated autocorrelation time.

    Parameters
    ----------
    chains : np.ndarray
        Array of shape (nchains, nsteps, ndim).

    Returns
    -------
    np.ndarray
        Effective sample sizes of shape (ndim,); NaN for constant quantities.
    """
    nchains, nsteps, ndim = chains.shape
    total = nchains * nsteps
    n_eff = np.full(ndim, np.nan)
    varying = chains.reshape(total, ndim).std(axis=0) > 0
    if not varying.any():
        return n_eff

    # emcee expects (nsteps, nwalkers, ndim)
    x = np.transpose(chains[:, :, varying], (1, 0, 2))
    tau = np.atleast_1d(integrated_time(x, c=5, tol=0))
    n_eff[varying] = total / np.maximum(tau, 1.0)
    return n_eff


def convergence_status(rhat: float) -> str:
    if not np.isfinite(rhat):
        return "POOR"
    return "EXCELLENT" if rhat < 1.05 else "WARNING" if rhat <= RHAT_THRESHOLD else "POOR"


def diagnose(
    chains: Sequence[Chain],
    parameters_of_interest: Sequence[str],
    confidence: float = 0.95,
) -> Dict[str, Tuple[float, float]]:
    """R-hat point estimate and upper confidence limit per scalar quantity."""
    arr = stack_chains(chains, parameters_of_interest)
    rhat, upper = gelman_rubin(arr, confidence)
    return {
        name: (float(r), float(u))
        for name, r, u in zip(parameters_of_interest, rhat, upper)
    }


def rhat_table(
    chains: Sequence[Chain],
    parameters: Sequence[str],
    threshold: float = RHAT_THRESHOLD,
    confidence: float = 0.95,
) -> pd.DataFrame:
    """
    Diagnostics table: R-hat, its upper limit, split R-hat, ESS and a converged flag.

    Non-convergence is reported, not raised: a ``UserWarning`` names the
    quantities above ``threshold``.
    """
    arr = stack_chains(chains, parameters)
    rhat, upper = gelman_rubin(arr, confidence)
    split = compute_split_rhat(arr) if arr.shape[1] >= 4 else np.full(len(parameters), np.nan)
    n_eff = effective_sample_size(arr)

    table = pd.DataFrame(
        {
            "parameter": list(parameters),
            "rhat": rhat,
            "rhat_upper": upper,
            "rhat_split": split,
            "n_eff": n_eff,
            "status": [convergence_status(r) for r in rhat],
            "converged": rhat <= threshold,
        }
    )

    bad = table.loc[~table["converged"], "parameter"].tolist()
    if bad:
        warnings.warn(
            f"R-hat above {threshold} for {bad}; exclude chains or run longer",
            UserWarning,
            stacklevel=2,
        )
    return table


def deviance_by_chain(chains: Sequence[Chain]) -> pd.DataFrame:
    """Mean and SD of the deviance of each chain, for electing a convergent subset."""
    return pd.DataFrame(
        {
            "chain": [c.chain_id for c in chains],
            "n_samples": [len(c) for c in chains],
            "mean_deviance": [c.mean_deviance for c in chains],
            "sd_deviance": [float(np.std(c.deviance, ddof=1)) if len(c) > 1 else 0.0 for c in chains],
        }
    )


def select_convergent_chains(
    chains: Sequence[Chain],
    parameters: Sequence[str],
    threshold: float = RHAT_THRESHOLD,
    min_chains: int = 2,
) -> List[int]:
    """
    Deterministically pick a subset of chains whose R-hat values are all <= threshold.

    Chains are dropped one at a time, always the one whose mean deviance is
    furthest from the median of the remaining chains (ties go to the higher
    chain id), until every R-hat passes or only ``min_chains`` remain.

    Returns
    -------
    list of int
        Chain ids of the selected chains, in their original order.
    """
    remaining = list(chains)
    while True:
        diag = diagnose(remaining, parameters)
        worst = max(r for r, _ in diag.values())
        if worst <= threshold:
            return [c.chain_id for c in remaining]
        if len(remaining) <= min_chains:
            warnings.warn(
                f"No subset of at least {min_chains} chains reaches R-hat <= {threshold} "
                f"(max R-hat {worst:.3f}); using chains {[c.chain_id for c in remaining]}",
                UserWarning,
                stacklevel=2,
            )
            return [c.chain_id for c in remaining]

        devs = np.array([c.mean_deviance for c in remaining])
        distance = np.abs(devs - np.median(devs))
        drop = max(range(len(remaining)), key=lambda i: (distance[i], remaining[i].chain_id))
        remaining.pop(drop)
