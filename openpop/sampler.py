"""
Metropolis-within-Gibbs sampler for the dynamic N-mixture model
"""

import math
import re
import numpy as np
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union
from joblib import Parallel, delayed

from .model import DynamicNMixtureModel, ModelSpec, Priors, PROCESSES
from .survey import SurveyData


TARGET_ACCEPT = 0.44
ADAPT_BATCH = 50

LATENT_MOVES = ("N0", "recruits", "survivors", "swap")
LATENT_BLOCKS = ("N", "survivors", "recruits")

_LATENT_RE = re.compile(r"^(N|survivors|recruits)\[(\d+),\s*(\d+)\]$")


class SamplingCancelled(RuntimeError):
    """Raised when the cancellation event is set between iterations."""


@dataclass
class SamplerConfig:
    n_chains: int = 3
    n_iterations: int = 10000
    n_burnin: int = 1000
    n_thin: int = 5
    seed: Optional[int] = None
    n_jobs: int = 1
    max_jump: int = 2
    adapt: bool = True
    store_latent: bool = True
    verbose: bool = False
    report_every: int = 5000

    def __post_init__(self) -> None:
        if self.n_chains < 1:
            raise ValueError("n_chains must be >= 1")
        if self.n_burnin < 0:
            raise ValueError("n_burnin must be >= 0")
        if self.n_thin < 1:
            raise ValueError("n_thin must be >= 1")
        if self.n_iterations <= self.n_burnin:
            raise ValueError("n_iterations must exceed n_burnin")
        if self.n_keep < 1:
            raise ValueError(
                f"No iterations retained: ({self.n_iterations} - {self.n_burnin}) // {self.n_thin} == 0"
            )
        if self.max_jump < 1:
            raise ValueError("max_jump must be >= 1")

    @property
    def n_keep(self) -> int:
        return (self.n_iterations - self.n_burnin) // self.n_thin


@dataclass
class Chain:
    """Retained draws of one chain, after burn-in and thinning."""

    chain_id: int
    param_names: List[str]
    samples: np.ndarray
    deviance: np.ndarray
    N: Optional[np.ndarray] = None
    survivors: Optional[np.ndarray] = None
    recruits: Optional[np.ndarray] = None
    fit_observed: Optional[np.ndarray] = None
    fit_replicated: Optional[np.ndarray] = None
    acceptance: Dict[str, float] = field(default_factory=dict)
    initial_values: Optional[np.ndarray] = None
    seed_entropy: Optional[int] = None
    spawn_key: tuple = ()

    def __len__(self) -> int:
        return self.samples.shape[0]

    @property
    def mean_deviance(self) -> float:
        return float(np.mean(self.deviance))

    def latent(self, block: str) -> np.ndarray:
        if block not in LATENT_BLOCKS:
            raise ValueError(f"Unknown latent block: {block}. Must be one of {LATENT_BLOCKS}")
        values = getattr(self, block)
        if values is None:
            raise ValueError(f"chain {self.chain_id} was run without storing latent states")
        return values

    def values(self, name: str) -> np.ndarray:
        """Trace of one scalar quantity: a parameter, ``deviance`` or e.g. ``N[3,1]``."""
        if name in self.param_names:
            return self.samples[:, self.param_names.index(name)]
        if name == "deviance":
            return self.deviance
        m = _LATENT_RE.match(name)
        if m:
            block = self.latent(m.group(1))
            return block[:, int(m.group(2)), int(m.group(3))].astype(float)
        raise KeyError(name)


class ChainState:
    """
    Current state of one chain.

    The latent arrays are allocated once and updated in place; the invariant
    N[:, 1:] == survivors + recruits holds after every move.
    """

    def __init__(self, theta, N, survivors, recruits, rates):
        self.theta = theta
        self.N = N
        self.survivors = survivors
        self.recruits = recruits
        self.rates = rates


def _accept(rng: np.random.Generator, log_ratio):
    """Vectorized Metropolis test; -inf and nan ratios are always rejected."""
    log_ratio = np.asarray(log_ratio, dtype=float)
    u = rng.random(log_ratio.shape)
    with np.errstate(invalid="ignore"):
        return u < np.exp(np.minimum(log_ratio, 0.0))


class ChainSampler:
    """Runs one chain: random-walk updates for parameters, integer moves for latent counts."""

    def __init__(
        self,
        model: DynamicNMixtureModel,
        config: SamplerConfig,
        seed_seq: np.random.SeedSequence,
        chain_id: int = 0,
        cancel=None,
    ):
        self.model = model
        self.config = config
        self.seed_seq = seed_seq
        self.chain_id = chain_id
        self.cancel = cancel
        self.rng = np.random.default_rng(seed_seq)

        self.free_index = np.flatnonzero(model.free)
        self.steps = model.initial_steps()
        self.attempts = np.zeros(model.n_params, dtype=np.int64)
        self.accepted = np.zeros(model.n_params, dtype=np.int64)
        self.batch_accepted = np.zeros(model.n_params, dtype=np.int64)
        self.n_batches = 0
        self.latent_attempts = dict.fromkeys(LATENT_MOVES, 0)
        self.latent_accepted = dict.fromkeys(LATENT_MOVES, 0)

    def initialize(self) -> ChainState:
        model, rng = self.model, self.rng
        n_sites, n_seasons, _ = model.data.shape

        theta = model.initial_values(rng)
        rates = model.rates(theta)
        max_y = model.data.max_counts()

        N = np.empty((n_sites, n_seasons), dtype=np.int64)
        survivors = np.empty((n_sites, n_seasons - 1), dtype=np.int64)
        recruits = np.empty((n_sites, n_seasons - 1), dtype=np.int64)

        N[:, 0] = max_y.max(axis=1) + rng.integers(1, 4, size=n_sites)
        for t in range(1, n_seasons):
            k = t - 1
            survivors[:, k] = rng.binomial(N[:, k], rates["survival"][:, k])
            recruits[:, k] = np.maximum(max_y[:, t] - survivors[:, k], 0) + rng.poisson(
                rates["recruitment"][:, k]
            )
            N[:, t] = survivors[:, k] + recruits[:, k]

        state = ChainState(theta, N, survivors, recruits, rates)
        if not np.isfinite(model.ln_posterior(theta, N, survivors, recruits)):
            raise RuntimeError(f"Chain {self.chain_id}: initial state has -inf posterior")
        return state

    def _jump(self, size: int) -> np.ndarray:
        magnitude = self.rng.integers(1, self.config.max_jump + 1, size=size)
        sign = np.where(self.rng.random(size) < 0.5, -1, 1)
        return sign * magnitude

    def update_parameters(self, state: ChainState) -> None:
        model, rng, theta = self.model, self.rng, state.theta
        blocks = {
            process: model.block_loglik(
                process, state.rates[process], state.N, state.survivors, state.recruits
            )
            for process in PROCESSES
        }

        for j in self.free_index:
            process = model.param_process[j]
            current = theta[j]
            proposal = current + self.steps[j] * rng.normal()
            self.attempts[j] += 1
            if not model.in_support(j, proposal):
                continue

            theta[j] = proposal
            rate = model.rate(process, theta)
            ll = model.block_loglik(process, rate, state.N, state.survivors, state.recruits)
            log_ratio = (
                ll
                + model.ln_prior_term(j, proposal)
                - blocks[process]
                - model.ln_prior_term(j, current)
            )
            if rng.random() < math.exp(min(log_ratio, 0.0)):
                state.rates[process] = rate
                blocks[process] = ll
                self.accepted[j] += 1
                self.batch_accepted[j] += 1
            else:
                theta[j] = current

    def _record_move(self, move: str, accept: np.ndarray) -> None:
        self.latent_attempts[move] += accept.size
        self.latent_accepted[move] += int(accept.sum())

    def update_initial_abundance(self, state: ChainState) -> None:
        model = self.model
        N, survivors = state.N, state.survivors
        lam, phi, p = state.rates["abundance"], state.rates["survival"], state.rates["detection"]
        n_sites, n_seasons = N.shape

        current = N[:, 0].copy()
        proposal = current + self._jump(n_sites)

        cur = model.ln_initial(current, lam) + model.ln_observation(current, p, season=0)
        new = model.ln_initial(proposal, lam) + model.ln_observation(proposal, p, season=0)
        if n_seasons > 1:
            cur = cur + model.ln_survival(survivors[:, 0], current, phi[:, 0])
            new = new + model.ln_survival(survivors[:, 0], proposal, phi[:, 0])

        accept = _accept(self.rng, new - cur)
        N[accept, 0] = proposal[accept]
        self._record_move("N0", accept)

    def _next_survival(self, state: ChainState, t: int, n_t: np.ndarray):
        if t >= state.N.shape[1] - 1:
            return 0.0
        return self.model.ln_survival(state.survivors[:, t], n_t, state.rates["survival"][:, t])

    def update_transition(self, state: ChainState, t: int) -> None:
        """Update survivors and recruits that form N[:, t], t >= 1."""
        model = self.model
        N, survivors, recruits = state.N, state.survivors, state.recruits
        phi, gamma, p = state.rates["survival"], state.rates["recruitment"], state.rates["detection"]
        n_sites = N.shape[0]
        k = t - 1

        # recruits, N[:, t] moves with them
        d = self._jump(n_sites)
        n_cur = N[:, t].copy()
        r_cur = recruits[:, k].copy()
        n_new, r_new = n_cur + d, r_cur + d
        cur = (
            model.ln_recruitment(r_cur, gamma[:, k])
            + model.ln_observation(n_cur, p, season=t)
            + self._next_survival(state, t, n_cur)
        )
        new = (
            model.ln_recruitment(r_new, gamma[:, k])
            + model.ln_observation(n_new, p, season=t)
            + self._next_survival(state, t, n_new)
        )
        accept = _accept(self.rng, new - cur)
        recruits[accept, k] = r_new[accept]
        N[accept, t] = n_new[accept]
        self._record_move("recruits", accept)

        # survivors, N[:, t] moves with them
        d = self._jump(n_sites)
        n_cur = N[:, t].copy()
        s_cur = survivors[:, k].copy()
        n_new, s_new = n_cur + d, s_cur + d
        cur = (
            model.ln_survival(s_cur, N[:, k], phi[:, k])
            + model.ln_observation(n_cur, p, season=t)
            + self._next_survival(state, t, n_cur)
        )
        new = (
            model.ln_survival(s_new, N[:, k], phi[:, k])
            + model.ln_observation(n_new, p, season=t)
            + self._next_survival(state, t, n_new)
        )
        accept = _accept(self.rng, new - cur)
        survivors[accept, k] = s_new[accept]
        N[accept, t] = n_new[accept]
        self._record_move("survivors", accept)

        # swap survivors for recruits, N[:, t] unchanged
        d = self._jump(n_sites)
        s_cur = survivors[:, k].copy()
        r_cur = recruits[:, k].copy()
        s_new, r_new = s_cur + d, r_cur - d
        cur = model.ln_survival(s_cur, N[:, k], phi[:, k]) + model.ln_recruitment(r_cur, gamma[:, k])
        new = model.ln_survival(s_new, N[:, k], phi[:, k]) + model.ln_recruitment(r_new, gamma[:, k])
        accept = _accept(self.rng, new - cur)
        survivors[accept, k] = s_new[accept]
        recruits[accept, k] = r_new[accept]
        self._record_move("swap", accept)

    def step(self, state: ChainState) -> None:
        self.update_parameters(state)
        self.update_initial_abundance(state)
        for t in range(1, state.N.shape[1]):
            self.update_transition(state, t)

    def adapt_steps(self) -> None:
        """Scale step sizes towards the target acceptance; burn-in only."""
        self.n_batches += 1
        delta = min(0.05, 1.0 / math.sqrt(self.n_batches))
        rate = self.batch_accepted / ADAPT_BATCH
        for j in self.free_index:
            self.steps[j] *= math.exp(delta if rate[j] > TARGET_ACCEPT else -delta)
        self.batch_accepted[:] = 0

    def acceptance_rates(self) -> Dict[str, float]:
        rates = {}
        for j in self.free_index:
            rates[self.model.param_names[j]] = float(self.accepted[j] / max(self.attempts[j], 1))
        for move in LATENT_MOVES:
            if self.latent_attempts[move]:
                rates[move] = self.latent_accepted[move] / self.latent_attempts[move]
        return rates

    def run(self) -> Chain:
        model, config, rng = self.model, self.config, self.rng
        n_sites, n_seasons, _ = model.data.shape
        n_keep = config.n_keep

        if config.verbose:
            print(f"Starting chain {self.chain_id} (spawn key {self.seed_seq.spawn_key})")

        state = self.initialize()
        initial_values = state.theta.copy()

        samples = np.empty((n_keep, model.n_params))
        deviance = np.empty(n_keep)
        fit_observed = np.empty(n_keep)
        fit_replicated = np.empty(n_keep)
        if config.store_latent:
            N_out = np.empty((n_keep, n_sites, n_seasons), dtype=np.int64)
            survivors_out = np.empty((n_keep, n_sites, n_seasons - 1), dtype=np.int64)
            recruits_out = np.empty((n_keep, n_sites, n_seasons - 1), dtype=np.int64)
        else:
            N_out = survivors_out = recruits_out = None

        counts, observed = model.data.counts, model.data.observed
        keep = 0
        for it in range(config.n_iterations):
            if self.cancel is not None and self.cancel.is_set():
                raise SamplingCancelled(f"chain {self.chain_id} cancelled at iteration {it}")

            self.step(state)

            if config.adapt and it < config.n_burnin and (it + 1) % ADAPT_BATCH == 0:
                self.adapt_steps()

            if it >= config.n_burnin and (it - config.n_burnin + 1) % config.n_thin == 0:
                p = state.rates["detection"]
                samples[keep] = state.theta
                deviance[keep] = model.deviance(state.N, p)

                n_slots = np.broadcast_to(state.N[:, :, None], p.shape)
                expected = n_slots * p
                y_rep = rng.binomial(n_slots, p)
                fit_observed[keep] = np.sum(np.where(observed, (np.sqrt(counts) - np.sqrt(expected)) ** 2, 0.0))
                fit_replicated[keep] = np.sum(np.where(observed, (np.sqrt(y_rep) - np.sqrt(expected)) ** 2, 0.0))

                if config.store_latent:
                    N_out[keep] = state.N
                    survivors_out[keep] = state.survivors
                    recruits_out[keep] = state.recruits
                keep += 1

            if config.verbose and config.report_every and (it + 1) % config.report_every == 0:
                accept = np.mean(self.accepted[self.free_index] / np.maximum(self.attempts[self.free_index], 1))
                print(f"  Chain {self.chain_id}: step {it + 1}/{config.n_iterations}  accept_rate={accept:.3f}")

        if config.verbose:
            print(f"  Chain {self.chain_id} done: {keep} samples")

        return Chain(
            chain_id=self.chain_id,
            param_names=list(model.param_names),
            samples=samples,
            deviance=deviance,
            N=N_out,
            survivors=survivors_out,
            recruits=recruits_out,
            fit_observed=fit_observed,
            fit_replicated=fit_replicated,
            acceptance=self.acceptance_rates(),
            initial_values=initial_values,
            seed_entropy=self.seed_seq.entropy,
            spawn_key=tuple(self.seed_seq.spawn_key),
        )


def _run_single_chain(model, config, seed_seq, chain_id, cancel) -> Chain:
    return ChainSampler(model, config, seed_seq, chain_id, cancel).run()


def run_chains(model: DynamicNMixtureModel, config: SamplerConfig, cancel=None) -> List[Chain]:
    """
    Run ``config.n_chains`` independent chains.

    Each chain gets its own child of ``SeedSequence(config.seed)``, so streams
    never coincide and a fixed seed reproduces every chain. ``cancel`` is any
    object with ``is_set()`` (e.g. ``threading.Event``); it is polled between
    iterations.
    """
    children = np.random.SeedSequence(config.seed).spawn(config.n_chains)
    prefer = "threads" if cancel is not None else None
    tasks = (
        delayed(_run_single_chain)(model, config, children[c], c, cancel)
        for c in range(config.n_chains)
    )
    return Parallel(n_jobs=config.n_jobs, prefer=prefer)(tasks)


def run(
    model_spec: Union[ModelSpec, str],
    data: SurveyData,
    n_chains: int = 3,
    n_iterations: int = 10000,
    n_burnin: int = 1000,
    n_thin: int = 5,
    seed: Optional[int] = None,
    priors: Optional[Priors] = None,
    cancel=None,
    **options,
) -> List[Chain]:
    """
    Fit ``model_spec`` to ``data`` and return the retained draws of every chain.

    Shape and configuration errors raise ``ValueError`` before sampling starts.
    Extra keyword options are passed to ``SamplerConfig``.
    """
    if isinstance(model_spec, str):
        model_spec = ModelSpec.variant(model_spec)
    config = SamplerConfig(
        n_chains=n_chains,
        n_iterations=n_iterations,
        n_burnin=n_burnin,
        n_thin=n_thin,
        seed=seed,
        **options,
    )
    model = DynamicNMixtureModel(model_spec, data, priors)
    return run_chains(model, config, cancel)
