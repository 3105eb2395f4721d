"""
Fit objects: chains plus fit scores and diagnostics, and cross-model comparison
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

from .convergence_analysis import (
    RHAT_THRESHOLD,
    deviance_by_chain,
    rhat_table,
    select_convergent_chains,
)
from .model import DynamicNMixtureModel, ModelSpec, Priors
from .sampler import Chain, SamplerConfig, run_chains
from .summary import predict, season_abundance, summarize
from .survey import SurveyData


@dataclass
class ModelFit:
    """
    Result of fitting one model variant.

    All chains are kept as an audit trail; fit scores and summaries use only
    the chains listed in ``selected``.
    """

    name: str
    model: DynamicNMixtureModel
    config: SamplerConfig
    chains: List[Chain]
    selected: List[int]
    rhat: Optional[pd.DataFrame] = None
    rhat_threshold: float = RHAT_THRESHOLD
    deviance_table: pd.DataFrame = field(default=None)

    def __post_init__(self) -> None:
        if self.deviance_table is None:
            self.deviance_table = deviance_by_chain(self.chains)

    @property
    def selected_chains(self) -> List[Chain]:
        wanted = set(self.selected)
        return [c for c in self.chains if c.chain_id in wanted]

    @property
    def discarded(self) -> List[int]:
        return [c.chain_id for c in self.chains if c.chain_id not in set(self.selected)]

    @property
    def converged(self) -> bool:
        if self.rhat is None:
            return False
        return bool(self.rhat["converged"].all())

    def pooled_deviance(self) -> np.ndarray:
        return np.concatenate([c.deviance for c in self.selected_chains])

    @property
    def mean_deviance(self) -> float:
        return float(self.pooled_deviance().mean())

    @property
    def pD(self) -> float:
        """Effective number of parameters, var(deviance) / 2."""
        dev = self.pooled_deviance()
        return float(dev.var(ddof=1) / 2.0) if dev.size > 1 else 0.0

    @property
    def dic(self) -> float:
        return self.mean_deviance + self.pD

    @property
    def bayesian_p_value(self) -> float:
        """Share of draws where replicated data fit worse than the observed data."""
        obs = np.concatenate([c.fit_observed for c in self.selected_chains])
        rep = np.concatenate([c.fit_replicated for c in self.selected_chains])
        return float(np.mean(rep > obs))

    def summary(self, parameters: Optional[Sequence[str]] = None, prob: float = 0.95) -> pd.DataFrame:
        table = summarize(self.selected_chains, parameters or self.model.free_names, prob)
        if self.rhat is not None:
            table = table.merge(self.rhat[["parameter", "rhat", "rhat_upper", "n_eff"]], on="parameter", how="left")
        return table

    def predict(self, process: str, covariate: str, grid, link: Optional[str] = None, prob: float = 0.95) -> pd.DataFrame:
        return predict(self.selected_chains, self.model, process, covariate, grid, link, prob)

    def season_abundance(self, block: str = "N", reduce: str = "mean", prob: float = 0.95) -> pd.DataFrame:
        return season_abundance(self.selected_chains, block, reduce, prob)

    def select(self, chain_ids: Sequence[int]) -> "ModelFit":
        """Re-elect the chains used for scores and summaries; diagnostics are recomputed."""
        known = {c.chain_id for c in self.chains}
        unknown = [i for i in chain_ids if i not in known]
        if unknown:
            raise ValueError(f"Unknown chain ids: {unknown}")
        chosen = [c for c in self.chains if c.chain_id in set(chain_ids)]
        rhat = None
        if len(chosen) >= 2:
            rhat = rhat_table(chosen, self.model.free_names, self.rhat_threshold)
        return ModelFit(
            name=self.name,
            model=self.model,
            config=self.config,
            chains=self.chains,
            selected=[c.chain_id for c in chosen],
            rhat=rhat,
            rhat_threshold=self.rhat_threshold,
            deviance_table=self.deviance_table,
        )


def fit_model(
    spec: Union[ModelSpec, str],
    data: SurveyData,
    config: Optional[SamplerConfig] = None,
    priors: Optional[Priors] = None,
    cancel=None,
    rhat_threshold: float = RHAT_THRESHOLD,
    auto_select: bool = False,
) -> ModelFit:
    """
    Run the sampler and assemble the fit object.

    With ``auto_select`` the convergent subset of chains is elected by
    ``select_convergent_chains``; otherwise every chain is selected and the
    caller decides from ``rhat`` and ``deviance_table``.
    """
    if isinstance(spec, str):
        spec = ModelSpec.variant(spec)
    config = config if config is not None else SamplerConfig()
    model = DynamicNMixtureModel(spec, data, priors)
    chains = run_chains(model, config, cancel)

    selected = [c.chain_id for c in chains]
    if auto_select and len(chains) > 2:
        selected = select_convergent_chains(chains, model.free_names, rhat_threshold)

    fit = ModelFit(
        name=spec.name,
        model=model,
        config=config,
        chains=chains,
        selected=list(range(len(chains))),
        rhat_threshold=rhat_threshold,
    )
    if len(chains) < 2:
        return fit
    return fit.select(selected)


def compare_models(fits: Dict[str, ModelFit]) -> pd.DataFrame:
    """
    Rank fitted variants by DIC.

    Returns
    -------
    pd.DataFrame
        One row per model with mean deviance, pD, DIC, delta DIC, DIC weight,
        convergence flag and Bayesian p-value, best model first.
    """
    if not fits:
        raise ValueError("no fits to compare")
    rows = []
    for name, fit in fits.items():
        rows.append(
            {
                "model": name,
                "n_params": int(fit.model.free.sum()),
                "mean_deviance": fit.mean_deviance,
                "pD": fit.pD,
                "DIC": fit.dic,
                "converged": fit.converged,
                "bayesian_p": fit.bayesian_p_value,
            }
        )
    table = pd.DataFrame(rows).sort_values("DIC", kind="mergesort").reset_index(drop=True)
    table.insert(5, "delta_DIC", table["DIC"] - table["DIC"].min())
    rel = np.exp(-0.5 * table["delta_DIC"])
    table.insert(6, "weight", rel / rel.sum())
    return table
