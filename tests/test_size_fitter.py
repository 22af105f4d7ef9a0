"""Tests for the binned size model, its configuration and the sampler."""

import warnings

import numpy as np
import pandas as pd
import pytest

from reefsize import size_fitter
from reefsize.pdf_tools import BinGrid, NormalPrior
from reefsize.size_fitter import (BinnedSizeModel, ModelConfig, MODEL_VARIANTS,
                                  ConvergenceWarning, DegenerateDataError,
                                  InvalidParameterRegion,
                                  ModelConfigurationError,
                                  NonConvergenceError, gelman_rubin)


# ---------------------------------------------------------------------------
# Model configuration


def test_variants_build_configs():
    for variant in MODEL_VARIANTS:
        config = ModelConfig.from_variant(variant, covariates=('lat_z',))
        assert isinstance(config, ModelConfig)

    assert ModelConfig.from_variant('cv').scale_mode == 'cv'
    assert ModelConfig.from_variant('species_loc_scale').scale_offsets


def test_unknown_variant_and_missing_covariates():
    with pytest.raises(ValueError):
        ModelConfig.from_variant('per_site_everything')
    with pytest.raises(ValueError):
        ModelConfig.from_variant('covariates')


def test_config_rejects_bad_arguments():
    with pytest.raises(ValueError):
        ModelConfig(loc_covariates=('lat_z', 'lat_z'))
    with pytest.raises(ValueError):
        ModelConfig(scale_mode='proportional')


def test_parameter_layout(species_obs, species_grid):
    config = ModelConfig(loc_covariates=('lat_z',), loc_offsets=True,
                         scale_offsets=True)
    model = BinnedSizeModel(species_obs, species_grid, config=config,
                            category_col='species_name')

    assert model.parameter_names == [
        'loc_0', 'loc_lat_z', 'loc_offset[A]', 'loc_offset[B]',
        'log_scale_0', 'log_scale_offset[A]', 'log_scale_offset[B]']
    assert model.ndim == 7
    assert model.categories == ['A', 'B']

    blocks = model.unpack(np.arange(7.0))
    assert blocks['loc_0'] == 0.0
    assert blocks['loc_slopes'] == {'lat_z': 1.0}
    assert blocks['log_scale_offsets'] == {'A': 5.0, 'B': 6.0}


def test_cv_layout_uses_log_cv():
    obs = pd.DataFrame({'bin_index': [1, 2], 'count': [3, 4]})
    model = BinnedSizeModel(obs, [2.5, 5.0], family='normal',
                            config=ModelConfig(scale_mode='cv'))
    assert model.parameter_names == ['loc_0', 'log_cv_0']


# ---------------------------------------------------------------------------
# Setup validation


@pytest.mark.parametrize('bins', [[0, 1, 2], [1, 2, 4], [1, 2, 2.5]])
def test_bin_index_out_of_range_or_non_integer(bins, scenario_grid):
    obs = pd.DataFrame({'bin_index': bins, 'count': [1, 2, 3]})
    with pytest.raises(ModelConfigurationError):
        BinnedSizeModel(obs, scenario_grid)


def test_negative_counts_rejected(scenario_grid):
    obs = pd.DataFrame({'bin_index': [1, 2], 'count': [3, -1]})
    with pytest.raises(ModelConfigurationError):
        BinnedSizeModel(obs, scenario_grid)


def test_missing_columns_rejected(scenario_obs, scenario_grid):
    with pytest.raises(ModelConfigurationError):
        BinnedSizeModel(scenario_obs, scenario_grid,
                        config=ModelConfig(loc_covariates=('year_z',)))


def test_degenerate_group_rejected(scenario_grid):
    obs = pd.DataFrame({'bin_index': [2, 1, 3], 'count': [12, 0, 0]})
    with pytest.raises(DegenerateDataError):
        BinnedSizeModel(obs, scenario_grid)


def test_degenerate_is_checked_per_group(species_grid):
    obs = pd.DataFrame({'species_name': ['A', 'A', 'B'],
                        'bin_index': [1, 2, 3],
                        'count': [4, 6, 9]})
    with pytest.raises(DegenerateDataError) as excinfo:
        BinnedSizeModel(obs, species_grid, category_col='species_name')
    assert 'B' in str(excinfo.value)


def test_min_bins_is_configurable(scenario_obs, scenario_grid):
    with pytest.raises(DegenerateDataError):
        BinnedSizeModel(scenario_obs, scenario_grid, min_bins=4)


def test_category_not_in_fitted_set(species_obs, species_grid):
    with pytest.raises(ModelConfigurationError):
        BinnedSizeModel(species_obs, species_grid,
                        config=ModelConfig(loc_offsets=True),
                        category_col='species_name', categories=['A'])


def test_fitted_category_without_observations(species_obs, species_grid):
    with pytest.raises(ModelConfigurationError):
        BinnedSizeModel(species_obs, species_grid,
                        config=ModelConfig(loc_offsets=True),
                        category_col='species_name',
                        categories=['A', 'B', 'C'])


def test_offsets_require_category(species_obs, species_grid):
    with pytest.raises(ModelConfigurationError):
        BinnedSizeModel(species_obs, species_grid,
                        config=ModelConfig(loc_offsets=True))


def test_cv_mode_not_available_for_lognormal(scenario_obs, scenario_grid):
    with pytest.raises(ModelConfigurationError):
        BinnedSizeModel(scenario_obs, scenario_grid, family='lognormal',
                        config=ModelConfig(scale_mode='cv'))


def test_unknown_prior_names_rejected(scenario_obs, scenario_grid):
    with pytest.raises(ModelConfigurationError):
        BinnedSizeModel(scenario_obs, scenario_grid,
                        priors={'loc_lat_z': NormalPrior()})


def test_zero_counts_are_dropped(species_obs, species_grid):
    model = BinnedSizeModel(species_obs, species_grid,
                            category_col='species_name')
    assert model.n_rows == 9


# ---------------------------------------------------------------------------
# Likelihood properties


def test_scenario_lognormal_fit(scenario_obs, scenario_grid):
    model = BinnedSizeModel(scenario_obs, scenario_grid, family='lognormal')
    theta = model.optimise(use_prior=False)

    probs = model.predict_bin_probs(theta)
    assert np.argmax(probs) == 1
    assert probs[1] > probs[0] and probs[1] > probs[2]
    assert probs.sum() == pytest.approx(1.0, abs=1e-12)

    expected = 10*np.log(probs[0]) + 20*np.log(probs[1]) + 5*np.log(probs[2])
    assert model.log_likelihood(theta) == pytest.approx(expected, rel=1e-12)

    # Two parameters and three bins: the MLE reproduces the fractions
    np.testing.assert_allclose(probs, [10/35, 20/35, 5/35], atol=1e-4)


@pytest.mark.parametrize('family,lower_bound,theta', [
    ('lognormal', 0.0, [1.5, np.log(0.4)]),
    ('lognormal', None, [0.2, np.log(1.5)]),
    ('normal', None, [4.0, np.log(3.0)]),
    ('normal', None, [-2.0, np.log(0.5)]),
    ('normal', 0.0, [4.0, np.log(3.0)]),
    ('normal', 0.0, [1.0, np.log(3.0)]),
])
def test_partition_property(family, lower_bound, theta, scenario_obs):
    grid = BinGrid([2.5, 5.0, 7.5], lower_bound=lower_bound)
    model = BinnedSizeModel(scenario_obs, grid, family=family)
    probs = model.predict_bin_probs(np.array(theta))
    assert probs.sum() == pytest.approx(1.0, abs=1e-12)


def test_truncation_renormalises(scenario_obs, scenario_grid):
    model = BinnedSizeModel(scenario_obs, scenario_grid, family='normal',
                            truncate=True)
    probs = model.predict_bin_probs(np.array([1.0, np.log(3.0)]))
    assert probs.sum() == pytest.approx(1.0, abs=1e-12)

    untruncated = BinnedSizeModel(scenario_obs, scenario_grid,
                                  family='normal', truncate=False)
    assert untruncated.predict_bin_probs(
        np.array([1.0, np.log(3.0)])).sum() < 1.0


def test_truncation_default_follows_family(scenario_obs):
    bounded = BinGrid([2.5, 5.0, 7.5])
    unbounded = BinGrid([2.5, 5.0, 7.5], lower_bound=None)

    assert BinnedSizeModel(scenario_obs, bounded, family='normal').truncate
    assert not BinnedSizeModel(scenario_obs, unbounded,
                               family='normal').truncate
    assert not BinnedSizeModel(scenario_obs, bounded,
                               family='lognormal').truncate
    assert BinnedSizeModel(scenario_obs, bounded, family='lognormal',
                           truncate=True).truncate


@pytest.mark.parametrize('family,theta', [
    ('lognormal', [1.5, np.log(0.4)]),
    ('normal', [5.0, np.log(2.0)]),
])
def test_monotonicity_in_upper_boundary(family, theta, scenario_obs):
    theta = np.array(theta)
    previous = 0.0
    for boundary in [5.0, 5.5, 6.0, 7.0]:
        grid = BinGrid([2.5, boundary, 7.5])
        model = BinnedSizeModel(scenario_obs, grid, family=family)
        prob = model.predict_bin_probs(theta)[1]
        assert prob >= previous
        previous = prob


def test_fit_predict_consistency(species_obs, species_grid):
    config = ModelConfig(loc_covariates=('lat_z',),
                         scale_covariates=('lat_z',),
                         loc_offsets=True, scale_offsets=True)
    model = BinnedSizeModel(species_obs, species_grid, config=config,
                            category_col='species_name')
    theta = np.array([1.6, 0.1, -0.2, 0.2, np.log(0.5), 0.05, 0.1, -0.1])

    obs = model.observations
    row_probs = model.predict_row_probs(theta)
    picked = row_probs[np.arange(model.n_rows),
                       obs['bin_index'].to_numpy() - 1]

    reconstructed = np.sum(obs['count'].to_numpy() * np.log(picked))
    assert reconstructed == pytest.approx(model.log_likelihood(theta),
                                          rel=1e-12)
    np.testing.assert_allclose(row_probs.sum(axis=1), 1.0, atol=1e-12)


def test_predict_matches_rows_for_category(species_obs, species_grid):
    model = BinnedSizeModel(species_obs, species_grid,
                            config=ModelConfig(loc_covariates=('lat_z',),
                                               loc_offsets=True),
                            category_col='species_name')
    theta = np.array([1.6, 0.1, -0.2, 0.2, np.log(0.5)])

    row_probs = model.predict_row_probs(theta)
    first_b = model.observations['species_name'].tolist().index('B')
    np.testing.assert_allclose(
        model.predict_bin_probs(theta, covariates={'lat_z': 1.0},
                                category='B'),
        row_probs[first_b], rtol=1e-12)


def test_count_scaling_equivalence(scenario_grid):
    theta = np.array([1.4, np.log(0.6)])
    single = BinnedSizeModel(
        pd.DataFrame({'bin_index': [2, 3], 'count': [7, 1]}), scenario_grid)
    repeated = BinnedSizeModel(
        pd.DataFrame({'bin_index': [2]*7 + [3], 'count': [1]*8}),
        scenario_grid)
    assert single.log_likelihood(theta) == pytest.approx(
        repeated.log_likelihood(theta), rel=1e-12)


def test_cv_scale_follows_location():
    obs = pd.DataFrame({'bin_index': [1, 2, 3], 'count': [4, 10, 3]})
    model = BinnedSizeModel(obs, [2.5, 5.0, 7.5], family='normal',
                            config=ModelConfig(scale_mode='cv'))
    log_cv = np.log(0.3)

    loc, sd = model.resolve_parameters(np.array([4.0, log_cv]))
    loc_c, sd_c = model.resolve_parameters(np.array([3*4.0, log_cv]))
    assert sd == pytest.approx(4.0 * 0.3)
    assert sd_c == pytest.approx(3 * sd)
    assert loc_c == pytest.approx(3 * loc)


def test_cv_fit_is_scale_equivariant():
    counts = [4, 10, 7, 2]
    obs = pd.DataFrame({'bin_index': [1, 2, 3, 4], 'count': counts})
    config = ModelConfig(scale_mode='cv')
    c = 2.0

    base = BinnedSizeModel(obs, [2.5, 5.0, 7.5, 10.0], family='normal',
                           config=config)
    scaled = BinnedSizeModel(obs, [c*2.5, c*5.0, c*7.5, c*10.0],
                             family='normal', config=config)

    theta = base.optimise(use_prior=False)
    theta_c = scaled.optimise(use_prior=False)

    assert theta_c[0] == pytest.approx(c * theta[0], rel=1e-4)
    assert theta_c[1] == pytest.approx(theta[1], rel=1e-4, abs=1e-6)
    assert scaled.resolve_parameters(theta_c)[1] == pytest.approx(
        c * base.resolve_parameters(theta)[1], rel=1e-4)


# ---------------------------------------------------------------------------
# Invalid region


def test_invalid_region_returns_minus_inf(scenario_obs, scenario_grid):
    model = BinnedSizeModel(scenario_obs, scenario_grid, family='normal')
    # All the mass far above the grid: the lower bins underflow to zero
    theta = np.array([1e6, 0.0])

    value = model.log_likelihood(theta)
    assert value == -np.inf
    assert not np.isnan(value)
    assert model.log_posterior(theta) == -np.inf

    with pytest.raises(InvalidParameterRegion):
        model.log_likelihood(theta, strict=True)


def test_cv_negative_mean_is_invalid():
    obs = pd.DataFrame({'bin_index': [1, 2], 'count': [3, 4]})
    model = BinnedSizeModel(obs, [2.5, 5.0], family='normal',
                            config=ModelConfig(scale_mode='cv'))
    assert model.log_likelihood(np.array([-3.0, np.log(0.2)])) == -np.inf
    with pytest.raises(InvalidParameterRegion):
        model.resolve_parameters(np.array([-3.0, np.log(0.2)]))


def test_overflowing_scale_is_invalid(scenario_obs, scenario_grid):
    model = BinnedSizeModel(scenario_obs, scenario_grid)
    assert model.log_likelihood(np.array([1.0, 1e4])) == -np.inf


def test_prior_bounds_give_minus_inf(scenario_obs, scenario_grid):
    model = BinnedSizeModel(scenario_obs, scenario_grid,
                            priors={'loc_0': NormalPrior(1.0, 1.0, lower=0.0)})
    assert model.log_posterior(np.array([-0.5, 0.0])) == -np.inf


def test_theta_shape_checked(scenario_obs, scenario_grid):
    model = BinnedSizeModel(scenario_obs, scenario_grid)
    with pytest.raises(ValueError):
        model.log_likelihood(np.zeros(3))


# ---------------------------------------------------------------------------
# Prediction helpers


def test_predict_requires_fit_or_theta(scenario_obs, scenario_grid):
    model = BinnedSizeModel(scenario_obs, scenario_grid)
    with pytest.raises(AttributeError):
        model.predict_bin_probs()
    with pytest.raises(AttributeError):
        model.samples_frame()


def test_predict_unknown_category(species_obs, species_grid):
    model = BinnedSizeModel(species_obs, species_grid,
                            config=ModelConfig(loc_offsets=True),
                            category_col='species_name')
    theta = model.initial_guess()
    with pytest.raises(ModelConfigurationError):
        model.predict_bin_probs(theta, category='Z')
    with pytest.raises(ModelConfigurationError):
        model.predict_bin_probs(theta, covariates={'depth_z': 1.0})


def test_observed_bin_fractions(species_obs, species_grid):
    model = BinnedSizeModel(species_obs, species_grid,
                            category_col='species_name')
    fractions = model.observed_bin_fractions()
    assert list(fractions.columns) == [1, 2, 3, 4, 5]
    np.testing.assert_allclose(fractions.sum(axis=1), 1.0)
    assert fractions.loc['A', 2] == pytest.approx(20 / 43)
    assert fractions.loc['A', 5] == 0.0


def test_initial_guess_is_valid(species_obs, species_grid):
    for family in ('lognormal', 'normal'):
        model = BinnedSizeModel(species_obs, species_grid, family=family,
                                category_col='species_name',
                                config=ModelConfig(loc_offsets=True))
        assert np.isfinite(model.log_posterior(model.initial_guess()))


# ---------------------------------------------------------------------------
# Sampling and convergence


def test_gelman_rubin_converged_chains():
    rng = np.random.default_rng(0)
    chains = rng.normal(size=(3, 2000, 2))
    rhat = gelman_rubin(chains)
    assert rhat.shape == (2,)
    assert np.all(rhat < 1.01)


def test_gelman_rubin_separated_chains():
    rng = np.random.default_rng(1)
    chains = rng.normal(size=(2, 500, 1))
    chains[1] += 5.0
    assert gelman_rubin(chains)[0] > 1.5


def test_gelman_rubin_needs_two_chains():
    with pytest.raises(ValueError):
        gelman_rubin(np.zeros((1, 100, 2)))


def test_sample_emcee(scenario_obs, scenario_grid):
    model = BinnedSizeModel(scenario_obs, scenario_grid)
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        samples = model.sample_emcee(burn=200, iters=300, n_chains=2,
                                     seed=42)

    nwalkers = model.diagnostics['nwalkers']
    assert nwalkers == 6
    assert samples.shape == (2 * 300 * nwalkers, 2)
    assert np.isfinite(samples).all()

    diagnostics = model.diagnostics
    assert list(diagnostics['rhat'].index) == ['loc_0', 'log_scale_0']
    assert diagnostics['rhat'].max() < 1.3
    assert diagnostics['invalid_fraction'] == 0.0
    assert len(diagnostics['acceptance_fraction']) == 2

    summary = model.summarise_samples()
    assert 'rhat' in summary.columns
    assert list(summary.index) == model.parameter_names

    # Stored draws become the default parameters
    probs = model.predict_bin_probs()
    assert probs.sum() == pytest.approx(1.0)
    assert np.argmax(probs) == 1


def test_non_convergence_is_reported(scenario_obs, scenario_grid,
                                     monkeypatch):
    monkeypatch.setattr(size_fitter, 'gelman_rubin',
                        lambda chains: np.full(chains.shape[-1], 2.0))
    model = BinnedSizeModel(scenario_obs, scenario_grid)

    with pytest.warns(ConvergenceWarning):
        model.sample_emcee(burn=10, iters=20, seed=0)
    assert not model.diagnostics['converged']

    with pytest.raises(NonConvergenceError):
        model.sample_emcee(burn=10, iters=20, seed=0, strict=True)


def test_single_chain_warns(scenario_obs, scenario_grid):
    model = BinnedSizeModel(scenario_obs, scenario_grid)
    with pytest.warns(ConvergenceWarning):
        model.sample_emcee(burn=10, iters=20, n_chains=1, seed=0)
    assert not model.diagnostics['converged']


def test_optimiser_records_failure(scenario_obs, scenario_grid):
    model = BinnedSizeModel(scenario_obs, scenario_grid)
    assert model.optimiser_success is None
    with pytest.warns(UserWarning, match='did not converge'):
        model.optimise(maxiter=1)
    assert model.optimiser_success is False
    assert model.map_values is not None


def test_export_and_restore_fit(scenario_obs, scenario_grid):
    model = BinnedSizeModel(scenario_obs, scenario_grid)
    theta = model.optimise()
    state = model.export_fit()

    other = BinnedSizeModel(scenario_obs, scenario_grid)
    other.restore_fit(state)
    np.testing.assert_array_equal(other.map_values, theta)
    assert other.optimiser_success == model.optimiser_success

    state['parameter_names'] = ['a', 'b']
    with pytest.raises(ModelConfigurationError):
        other.restore_fit(state)
