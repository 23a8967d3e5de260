"""
Unit Tests for the simmr Pipeline
=================================

Test suite for group orchestration and end-to-end runs:
- Scenario A: one group, 10 observations, full-length 4-chain run
- Scenario B: solo run (single observation)
- Scenario C: 8 groups of unequal sizes
- Configuration warnings and input errors
- Determinism and group independence
- Per-group failure isolation
"""

import warnings

import numpy as np
import pandas as pd
import pytest

from simmr import (
    InputError,
    MCMCConfig,
    MixingPipeline,
    SamplingError,
    SimmrResult,
    simmr_mcmc,
)
import simmr.pipeline as pipeline_module


def run_quietly(*args, **kwargs):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return simmr_mcmc(*args, verbose=False, **kwargs)


# ============================================================================
# Test 1: End-to-End Scenarios
# ============================================================================

def test_scenario_a_single_group_full_run(dataset):
    """Test 4 chains, 2000 burn, 10000 iterations, thin 10 on one group."""
    config = MCMCConfig(iterations=10000, burn=2000, thin=10, n_chains=4, random_seed=42)
    result = run_quietly(dataset, mcmc_control=config)

    assert isinstance(result, SimmrResult)
    assert result.input is dataset
    assert result.groups == [1]

    chains = result.chains(1)
    assert len(chains) == 4
    expected_columns = ['Source A', 'Source B', 'Source C', 'Source D', 'sd_d13C', 'sd_d15N']
    for chain in chains:
        assert chain.shape == (1000, 6)
        assert list(chain.columns) == expected_columns

    draws = result.draws(1)
    p = draws[dataset.source_names]
    np.testing.assert_allclose(p.sum(axis=1), 1.0, atol=1e-9)
    assert (p > 0).all().all()

    p_mean = p.mean()
    assert ((p_mean >= 0) & (p_mean <= 1)).all()
    assert p_mean.sum() == pytest.approx(1.0, abs=1e-9)
    assert (draws[['sd_d13C', 'sd_d15N']] >= 0).all().all()


def test_scenario_b_solo_run(solo_dataset, quick_config):
    """Test that a single observation runs and pins the residual scale near 0."""
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = simmr_mcmc(solo_dataset, mcmc_control=quick_config, verbose=False)

    assert not result.errors
    assert not [w for w in caught if "observations" in str(w.message)]

    draws = result.draws(1)
    assert len(draws) == quick_config.n_chains * quick_config.n_draws
    for column in ['sd_d13C', 'sd_d15N']:
        assert draws[column].between(0, 0.001).all()
        assert draws[column].mean() < 0.01
    np.testing.assert_allclose(draws[solo_dataset.source_names].sum(axis=1), 1.0, atol=1e-9)


def test_solo_sigma_smaller_than_multi_observation(dataset, solo_dataset, quick_config):
    solo = run_quietly(solo_dataset, mcmc_control=quick_config)
    multi = run_quietly(dataset, mcmc_control=quick_config)

    solo_sd = solo.draws(1)[['sd_d13C', 'sd_d15N']].mean()
    multi_sd = multi.draws(1)[['sd_d13C', 'sd_d15N']].mean()
    assert (solo_sd < multi_sd).all()


def test_scenario_c_eight_groups(make_dataset, make_grouped_mixtures, quick_config):
    """Test unequal groups including one of size 2: warning, all groups returned."""
    sizes = [6, 2, 5, 4, 7, 5, 4, 6]
    mixtures, group = make_grouped_mixtures(sizes)
    grouped = make_dataset(mixtures=mixtures, group=group)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = simmr_mcmc(grouped, mcmc_control=quick_config, verbose=False)

    size_warnings = [w for w in caught if "only 2 observations" in str(w.message)]
    assert len(size_warnings) == 1
    assert "Group 2 " in str(size_warnings[0].message)
    assert len([m for m in result.warnings if "observations" in m]) == 1

    assert result.groups == list(range(1, 9))
    for g, size in zip(range(1, 9), sizes):
        assert len(result.group_rows[g]) == size
        assert len(result.chains(g)) == quick_config.n_chains
        for chain in result.chains(g):
            assert len(chain) == quick_config.n_draws
            np.testing.assert_allclose(chain[grouped.source_names].sum(axis=1), 1.0, atol=1e-9)


def test_individual_effects_columns(dataset, quick_config):
    result = run_quietly(dataset, mcmc_control=quick_config, individual_effects=True)
    chain = result.chains(1)[0]

    assert chain.shape[1] == 6 + 10 * 4
    assert 'p_ind[10,Source B]' in chain.columns

    individual = result.individual_draws(1, observation=3)
    np.testing.assert_allclose(individual[dataset.source_names].sum(axis=1), 1.0, atol=1e-9)
    assert (individual[dataset.source_names] > 0).all().all()


# ============================================================================
# Test 2: Warnings and Input Errors
# ============================================================================

def test_single_chain_warns(dataset):
    config = MCMCConfig(iterations=50, burn=20, thin=1, n_chains=1)

    with pytest.warns(UserWarning, match="only 1 MCMC chain"):
        result = simmr_mcmc(dataset, mcmc_control=config, verbose=False)

    assert len(result.chains(1)) == 1
    assert any("1 MCMC chain" in m for m in result.warnings)


def test_group_of_three_warns(make_dataset):
    grouped = make_dataset(group=[1, 1, 1, 2, 2, 2, 2, 2, 2, 2])
    config = MCMCConfig(iterations=30, burn=10, thin=1, n_chains=2)

    with pytest.warns(UserWarning, match="only 3 observations"):
        simmr_mcmc(grouped, mcmc_control=config, verbose=False)


def test_mislabelled_dataset_fails_before_sampling(make_dataset, dataset, monkeypatch):
    """Test that 3 source rows for 4 sources is an input error, no sampling."""
    def fail(*args, **kwargs):
        raise AssertionError("sampler must not be called")

    monkeypatch.setattr(pipeline_module, 'run_chains', fail)

    with pytest.raises(InputError):
        bad = make_dataset(source_means=dataset.source_means[:3])
        simmr_mcmc(bad, verbose=False)


def test_bad_prior_fails_before_sampling(dataset, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("sampler must not be called")

    monkeypatch.setattr(pipeline_module, 'run_chains', fail)

    with pytest.raises(InputError):
        simmr_mcmc(dataset, prior_control={'means': [0, 0], 'sd': [1, 1]}, verbose=False)


def test_negative_seed_fails_before_sampling(dataset, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("sampler must not be called")

    monkeypatch.setattr(pipeline_module, 'run_chains', fail)

    with pytest.raises(InputError, match="random_seed"):
        simmr_mcmc(dataset, mcmc_control=MCMCConfig(random_seed=-1), verbose=False)


def test_non_dataset_input_raises():
    with pytest.raises(InputError):
        simmr_mcmc(pd.DataFrame({'d13C': [1.0]}), verbose=False)


def test_mapping_controls_are_accepted(dataset):
    result = run_quietly(
        dataset,
        prior_control={'means': [0, 0, 0, 0], 'sd': [1, 1, 1, 1]},
        mcmc_control={'iter': 40, 'burn': 20, 'thin': 4, 'n.chain': 2}
    )

    assert len(result.chains(1)) == 2
    assert len(result.chains(1)[0]) == 10


# ============================================================================
# Test 3: Determinism and Group Independence
# ============================================================================

def test_same_seed_reproduces_result(dataset, quick_config):
    first = run_quietly(dataset, mcmc_control=quick_config)
    second = run_quietly(dataset, mcmc_control=quick_config)

    for a, b in zip(first.chains(1), second.chains(1)):
        pd.testing.assert_frame_equal(a, b)


def test_different_seed_changes_result(dataset, quick_config):
    other = MCMCConfig(
        iterations=quick_config.iterations,
        burn=quick_config.burn,
        thin=quick_config.thin,
        n_chains=quick_config.n_chains,
        random_seed=99
    )
    first = run_quietly(dataset, mcmc_control=quick_config)
    second = run_quietly(dataset, mcmc_control=other)

    assert not first.chains(1)[0].equals(second.chains(1)[0])


def test_reordering_groups_does_not_change_group_results(make_dataset, make_grouped_mixtures, quick_config):
    """Test that a group's chains depend only on its own rows and id."""
    mixtures, group = make_grouped_mixtures([4, 5, 6])
    forward = make_dataset(mixtures=mixtures, group=group)

    # Same observations with the group blocks in reverse order
    order = np.concatenate([np.flatnonzero(group == g) for g in (3, 2, 1)])
    reverse = make_dataset(mixtures=mixtures[order], group=group[order])

    first = run_quietly(forward, mcmc_control=quick_config)
    second = run_quietly(reverse, mcmc_control=quick_config)

    for g in (1, 2, 3):
        for a, b in zip(first.chains(g), second.chains(g)):
            np.testing.assert_array_equal(a.to_numpy(), b.to_numpy())


# ============================================================================
# Test 4: Failure Isolation
# ============================================================================

def test_failed_group_does_not_stop_siblings(make_dataset, make_grouped_mixtures, quick_config, monkeypatch):
    mixtures, group = make_grouped_mixtures([4, 5, 6])
    grouped = make_dataset(mixtures=mixtures, group=group)
    real_run_chains = pipeline_module.run_chains

    def flaky(model, *args, **kwargs):
        if model.group == 2:
            raise SamplingError("diverged", group=2, parameter='f', value=float('nan'))
        return real_run_chains(model, *args, **kwargs)

    monkeypatch.setattr(pipeline_module, 'run_chains', flaky)

    with pytest.warns(UserWarning, match="Sampling failed for group 2"):
        result = simmr_mcmc(grouped, mcmc_control=quick_config, verbose=False)

    assert result.groups == [1, 3]
    assert list(result.errors) == [2]
    assert result.errors[2].parameter == 'f'
    with pytest.raises(RuntimeError, match="diverged"):
        result.chains(2)


def test_strict_mode_raises(make_dataset, make_grouped_mixtures, quick_config, monkeypatch):
    mixtures, group = make_grouped_mixtures([4, 5])
    grouped = make_dataset(mixtures=mixtures, group=group)

    def broken(model, *args, **kwargs):
        raise SamplingError("diverged", group=model.group)

    monkeypatch.setattr(pipeline_module, 'run_chains', broken)

    with pytest.raises(SamplingError):
        simmr_mcmc(grouped, mcmc_control=quick_config, strict=True, verbose=False)


# ============================================================================
# Test 5: MixingPipeline
# ============================================================================

def test_pipeline_init_defaults():
    pipeline = MixingPipeline()

    assert pipeline.quick_mode is False
    assert pipeline.random_seed == 42
    assert pipeline.result_ is None
    assert pipeline.mcmc_config.iterations == 10000


def test_pipeline_quick_fit(dataset):
    pipeline = MixingPipeline(quick_mode=True, random_seed=3)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        result = pipeline.fit(dataset, verbose=False)

    assert result is pipeline
    means = pipeline.posterior_means()
    assert means[dataset.source_names].sum() == pytest.approx(1.0, abs=1e-9)


def test_pipeline_convergence_diagnostics(dataset):
    pipeline = MixingPipeline(quick_mode=True)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        pipeline.fit(dataset, verbose=False)
        diagnostics = pipeline.get_convergence_diagnostics()

    assert isinstance(diagnostics, pd.DataFrame)
    assert set(diagnostics.columns) >= {'group', 'parameter', 'r_hat', 'ess_bulk', 'ess_tail'}
    assert len(diagnostics) == 6
    assert (diagnostics['ess_bulk'] > 0).all()


def test_pipeline_methods_before_fit_raise():
    pipeline = MixingPipeline()

    with pytest.raises(RuntimeError):
        pipeline.get_convergence_diagnostics()

    with pytest.raises(RuntimeError):
        pipeline.posterior_means()


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
