import threading

import numpy as np
import pytest

from openpop.model import DynamicNMixtureModel, ModelSpec
from openpop.sampler import (
    Chain,
    ChainSampler,
    SamplerConfig,
    SamplingCancelled,
    run,
    run_chains,
)
from openpop.survey import SurveyData

from conftest import covariate_survey


def null_model(data):
    return DynamicNMixtureModel(ModelSpec.variant("null"), data)


def test_retained_sample_count(small_survey, quick_config):
    chains = run_chains(small_survey.model, quick_config)
    assert len(chains) == 3
    for chain in chains:
        assert len(chain) == quick_config.n_keep == 100
        assert chain.samples.shape == (100, small_survey.model.n_params)
        assert chain.N.shape == (100, 8, 3)
        assert chain.deviance.shape == (100,)


def test_reproducibility_same_seed(small_survey, quick_config):
    a = run_chains(small_survey.model, quick_config)
    b = run_chains(small_survey.model, quick_config)
    for ca, cb in zip(a, b):
        assert np.array_equal(ca.samples, cb.samples)
        assert np.array_equal(ca.N, cb.N)
        assert np.array_equal(ca.deviance, cb.deviance)


def test_chains_use_distinct_streams(small_survey, quick_config):
    chains = run_chains(small_survey.model, quick_config)
    assert not np.array_equal(chains[0].initial_values, chains[1].initial_values)
    assert not np.array_equal(chains[0].samples, chains[1].samples)
    assert len({c.spawn_key for c in chains}) == 3


def test_parallel_chains_match_sequential(small_survey, quick_config):
    sequential = run_chains(small_survey.model, quick_config)
    quick_config.n_jobs = 2
    parallel = run_chains(small_survey.model, quick_config)
    for cs, cp in zip(sequential, parallel):
        assert cs.chain_id == cp.chain_id
        assert np.array_equal(cs.samples, cp.samples)


def test_abundance_never_below_counts(small_survey, quick_config):
    max_y = small_survey.data.max_counts()
    for chain in run_chains(small_survey.model, quick_config):
        assert np.all(chain.N >= 0)
        assert np.all(chain.N >= max_y[None])
        assert np.all(chain.survivors <= chain.N[:, :, :-1])
        assert np.all(chain.recruits >= 0)
        assert np.array_equal(chain.N[:, :, 1:], chain.survivors + chain.recruits)


def test_parameters_stay_in_support(small_survey, quick_config):
    for chain in run_chains(small_survey.model, quick_config):
        assert np.all(chain.values("lambda") > 0)
        assert np.all(chain.values("gamma") > 0)
        for name in ("phi", "p"):
            assert np.all((chain.values(name) > 0) & (chain.values(name) < 1))


def test_missing_visit_keeps_sample_size(small_survey, quick_config):
    fewer = small_survey.data.with_missing(0, 1, 2)
    chains = run(ModelSpec.variant("null"), fewer, n_chains=2, n_iterations=300, n_burnin=100, n_thin=2, seed=5)
    assert [len(c) for c in chains] == [100, 100]


def test_all_missing_season_and_site_do_not_crash():
    rng = np.random.default_rng(3)
    y = rng.binomial(6, 0.5, size=(5, 3, 3)).astype(float)
    y[0, 1, :] = np.nan
    y[4] = np.nan
    chains = run("null", SurveyData(y), n_chains=2, n_iterations=200, n_burnin=50, n_thin=1, seed=9)
    for chain in chains:
        assert len(chain) == 150
        assert np.all(chain.N >= 0)
        assert np.all(np.isfinite(chain.deviance))


def test_single_season_survey():
    y = np.array([[[2.0, 3.0]], [[0.0, 1.0]]])
    chains = run("null", SurveyData(y), n_chains=2, n_iterations=100, n_burnin=20, n_thin=1, seed=1)
    assert chains[0].N.shape == (80, 2, 1)
    assert chains[0].survivors.shape == (80, 2, 0)
    assert np.all(chains[0].N[:, 0, 0] >= 3)


def test_fixed_coefficients_stay_zero(quick_config):
    data = SurveyData(**covariate_survey())
    model = DynamicNMixtureModel(ModelSpec.variant("time"), data)
    chains = run_chains(model, quick_config)
    fixed = [j for j, free in enumerate(model.free) if not free]
    for chain in chains:
        assert np.all(chain.samples[:, fixed] == 0.0)
        assert np.std(chain.values("beta_p[hour]")) > 0


def test_cancellation_between_iterations(small_survey, quick_config):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(SamplingCancelled):
        run_chains(small_survey.model, quick_config, cancel=cancel)


def test_cancel_mid_chain(small_survey):
    config = SamplerConfig(n_chains=1, n_iterations=1000, n_burnin=0, n_thin=1, seed=1)

    class StopAfter:
        def __init__(self, n):
            self.calls = 0
            self.n = n

        def is_set(self):
            self.calls += 1
            return self.calls > self.n

    stopper = StopAfter(10)
    sampler = ChainSampler(small_survey.model, config, np.random.SeedSequence(1), cancel=stopper)
    with pytest.raises(SamplingCancelled, match="iteration 10"):
        sampler.run()


def test_store_latent_off(small_survey, quick_config):
    quick_config.store_latent = False
    chain = run_chains(small_survey.model, quick_config)[0]
    assert chain.N is None
    with pytest.raises(ValueError):
        chain.latent("N")


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(n_iterations=10, n_burnin=10),
        dict(n_thin=0),
        dict(n_iterations=20, n_burnin=10, n_thin=11),
        dict(n_chains=0),
        dict(max_jump=0),
    ],
)
def test_config_validation(kwargs):
    with pytest.raises(ValueError):
        SamplerConfig(**kwargs)


def test_shape_errors_raise_before_sampling():
    with pytest.raises(ValueError):
        run("time", SurveyData(np.ones((2, 2, 2))), n_iterations=50, n_burnin=10)


def test_chain_values_lookup(small_survey, quick_config):
    chain = run_chains(small_survey.model, quick_config)[0]
    assert np.array_equal(chain.values("N[2,1]"), chain.N[:, 2, 1])
    assert np.array_equal(chain.values("recruits[0,1]"), chain.recruits[:, 0, 1])
    assert np.array_equal(chain.values("deviance"), chain.deviance)
    with pytest.raises(KeyError):
        chain.values("sigma")


def test_acceptance_rates_reported(small_survey, quick_config):
    chain = run_chains(small_survey.model, quick_config)[0]
    for key in ("lambda", "phi", "gamma", "p", "N0", "recruits", "survivors", "swap"):
        assert 0.0 <= chain.acceptance[key] <= 1.0
    assert chain.acceptance["p"] > 0.0


def test_verbose_progress(small_survey, capsys):
    config = SamplerConfig(n_chains=1, n_iterations=60, n_burnin=10, n_thin=1, seed=3, verbose=True, report_every=30)
    run_chains(small_survey.model, config)
    out = capsys.readouterr().out
    assert "Starting chain 0" in out
    assert "step 60/60" in out
    assert "done: 50 samples" in out
