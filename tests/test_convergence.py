import numpy as np
import pytest

from openpop.convergence_analysis import (
    compute_split_rhat,
    deviance_by_chain,
    diagnose,
    effective_sample_size,
    gelman_rubin,
    rhat_table,
    select_convergent_chains,
    stack_chains,
)
from openpop.sampler import Chain, SamplerConfig, run_chains
from openpop.simulate import SimulationConfig, simulate_survey

from conftest import TRUE_PARAMS


def make_chain(chain_id, samples, deviance=None):
    samples = np.asarray(samples, dtype=float)
    if samples.ndim == 1:
        samples = samples[:, None]
    names = ["a", "b", "c"][: samples.shape[1]]
    if deviance is None:
        deviance = np.full(samples.shape[0], 100.0)
    return Chain(chain_id=chain_id, param_names=names, samples=samples, deviance=np.asarray(deviance, dtype=float))


def iid_chains(n_chains=4, n=2000, shift=None, seed=0):
    rng = np.random.default_rng(seed)
    chains = []
    for c in range(n_chains):
        draws = rng.normal(size=(n, 2))
        if shift is not None and c == shift[0]:
            draws[:, 0] += shift[1]
        chains.append(make_chain(c, draws))
    return chains


def test_rhat_near_one_for_mixed_chains():
    result = diagnose(iid_chains(), ["a", "b"])
    for rhat, upper in result.values():
        assert rhat == pytest.approx(1.0, abs=0.02)
        assert upper >= rhat


def test_rhat_flags_separated_chain():
    result = diagnose(iid_chains(shift=(2, 5.0)), ["a", "b"])
    assert result["a"][0] > 1.5
    assert result["a"][1] > result["a"][0]
    assert result["b"][0] < 1.1


def test_mismatched_lengths_rejected():
    chains = [make_chain(0, np.zeros(10)), make_chain(1, np.zeros(12))]
    with pytest.raises(ValueError, match="equal length"):
        diagnose(chains, ["a"])


def test_single_chain_rejected():
    with pytest.raises(ValueError):
        gelman_rubin(np.zeros((1, 50, 1)))


def test_constant_quantity_is_converged():
    chains = [make_chain(c, np.zeros(20)) for c in range(3)]
    rhat, upper = gelman_rubin(stack_chains(chains, ["a"]))
    assert rhat[0] == 1.0 and upper[0] == 1.0


def test_gelman_rubin_without_correction_matches_textbook():
    rng = np.random.default_rng(1)
    arr = rng.normal(size=(3, 500, 1))
    arr[1] += 0.3
    rhat, _ = gelman_rubin(arr)
    n = 500
    W = arr.var(axis=1, ddof=1).mean()
    B = n * arr.mean(axis=1).var(ddof=1)
    plain = np.sqrt(((n - 1) / n * W + (1 + 1 / 3) * B / n) / W)
    # the degrees-of-freedom correction only inflates the estimate slightly
    assert rhat[0] >= plain
    assert rhat[0] == pytest.approx(plain, rel=0.01)


def test_split_rhat_detects_trend():
    n = 400
    trend = np.linspace(0.0, 5.0, n)
    rng = np.random.default_rng(2)
    arr = np.stack([trend + rng.normal(scale=0.1, size=n) for _ in range(3)])[:, :, None]
    assert compute_split_rhat(arr)[0] > 1.5


def test_effective_sample_size_drops_with_autocorrelation():
    rng = np.random.default_rng(4)
    n, m = 4000, 2
    iid = rng.normal(size=(m, n, 1))
    ar = np.empty((m, n, 1))
    for c in range(m):
        x = 0.0
        for t in range(n):
            x = 0.95 * x + rng.normal()
            ar[c, t, 0] = x
    total = m * n
    assert effective_sample_size(iid)[0] > 0.5 * total
    assert effective_sample_size(ar)[0] < 0.2 * total
    assert np.isnan(effective_sample_size(np.zeros((2, 50, 1)))[0])


def test_rhat_table_reports_and_warns():
    with pytest.warns(UserWarning, match="R-hat above"):
        table = rhat_table(iid_chains(shift=(0, 4.0)), ["a", "b"])
    assert list(table.columns) == ["parameter", "rhat", "rhat_upper", "rhat_split", "n_eff", "status", "converged"]
    row = table.set_index("parameter").loc["a"]
    assert not row["converged"]
    assert row["status"] == "POOR"
    assert table.set_index("parameter").loc["b", "converged"]


def test_deviance_by_chain():
    chains = [make_chain(c, np.zeros(5), deviance=np.arange(5) + 10 * c) for c in range(3)]
    table = deviance_by_chain(chains)
    assert table["chain"].tolist() == [0, 1, 2]
    assert table["mean_deviance"].tolist() == [2.0, 12.0, 22.0]
    assert table["n_samples"].tolist() == [5, 5, 5]


def test_select_convergent_chains_drops_outlier():
    rng = np.random.default_rng(5)
    chains = []
    for c in range(4):
        draws = rng.normal(size=(1000, 1))
        deviance = rng.normal(100.0, 1.0, size=1000)
        if c == 1:
            draws += 6.0
            deviance += 50.0
        chains.append(make_chain(c, draws, deviance))
    assert select_convergent_chains(chains, ["a"]) == [0, 2, 3]


def test_select_convergent_chains_keeps_all_when_converged():
    assert select_convergent_chains(iid_chains(), ["a", "b"]) == [0, 1, 2, 3]


def test_select_convergent_chains_warns_when_nothing_converges():
    chains = [make_chain(c, np.random.default_rng(c).normal(size=500) + 10 * c, np.full(500, 100.0 + c)) for c in range(3)]
    with pytest.warns(UserWarning, match="No subset"):
        selected = select_convergent_chains(chains, ["a"])
    assert len(selected) == 2


def test_rhat_converges_on_simulated_data():
    sim = simulate_survey(
        TRUE_PARAMS,
        config=SimulationConfig(n_sites=20, n_seasons=4, n_visits=4, seed=7),
    )
    config = SamplerConfig(n_chains=3, n_iterations=4000, n_burnin=1000, n_thin=3, seed=99)
    chains = run_chains(sim.model, config)
    result = diagnose(chains, sim.model.free_names)
    for name, (rhat, _) in result.items():
        assert abs(rhat - 1.0) < 0.1, name
