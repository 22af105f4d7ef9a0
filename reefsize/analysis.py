"""For fitting and analysing size distributions of whole datasets."""

import warnings

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from . import util_lib, vislib
from .pdf_tools import BinGrid
from .size_fitter import (BinnedSizeModel, ModelConfig, DegenerateDataError,
                          InvalidParameterRegion, NonConvergenceError,
                          ConvergenceWarning)

# Sampler arguments that don't change the result
_UNHASHED_KWARGS = ('pool', 'progress', 'verbose')


# Fitting
# -------

def fit_size_distribution(observations, bin_grid, family='lognormal',
                          variant='global', covariates=(), config=None,
                          method='emcee', cache_dir=None, verbose=False,
                          sampler_kwargs=None, **model_kwargs):
    """Builds a BinnedSizeModel and fits it, using the cache if given.

    The cache key is a content hash of the observations, the bin
    grid, the family, the model configuration and priors, and the
    sampler settings; a change to any of them gives a new entry.

    Args:
        observations (pd.DataFrame): columns bin_index, count, and
            any category/covariate columns
        bin_grid (BinGrid or list-like)
        family (str='lognormal')
        variant (str='global'): one of size_fitter.MODEL_VARIANTS;
            ignored if config is given
        covariates (tuple=()): covariates for the variant
        config (ModelConfig=None)
        method (str='emcee'): 'emcee' for posterior draws, 'map' for
            the optimiser only
        cache_dir (str=None): if given, results are cached there
        verbose (bool=False)
        sampler_kwargs (dict=None): arguments into sample_emcee, or
            into optimise for method='map'
        **model_kwargs: category_col, group_cols, categories, priors,
            min_bins, truncate, ...

    Returns:
        model (BinnedSizeModel): with the fit stored
    """

    if method not in ('emcee', 'map'):
        raise ValueError("method [{}] not recognised.".format(method))

    config = ModelConfig.from_variant(variant, covariates) if config is None \
             else config
    sampler_kwargs = {} if sampler_kwargs is None else dict(sampler_kwargs)

    model = BinnedSizeModel(observations, bin_grid, family=family,
                            config=config, **model_kwargs)

    def run_fit():
        if method == 'emcee':
            model.sample_emcee(verbose=verbose, **sampler_kwargs)
        else:
            model.optimise(verbose=verbose, **sampler_kwargs)
        return model.export_fit()

    if cache_dir is None:
        run_fit()
        return model

    key = util_lib.hash_inputs(
        model.observations, model.bin_grid, model.family, model.config,
        model.categories, model.priors, model.truncate, model.n_rows, method,
        {k: v for k, v in sampler_kwargs.items()
         if k not in _UNHASHED_KWARGS})

    state = util_lib.load_or_compute(key, run_fit, cache_dir=cache_dir,
                                     verbose=verbose)
    model.restore_fit(state)

    # Non-convergence must not be hidden by the cache
    diagnostics = model.diagnostics
    if diagnostics is not None and not diagnostics['converged']:
        warnings.warn("Cached fit {} has not converged (max R-hat "
                      "{:.3f}).".format(key[:12], diagnostics['rhat'].max()),
                      ConvergenceWarning)

    return model


def fit_groups(observations, bin_grid, by, family='lognormal',
               variant='global', covariates=(), method='map',
               cache_dir=None, verbose=False, sampler_kwargs=None,
               **model_kwargs):
    """Fits each group separately (per species, site, year, ...).

    Groups that can't be fitted are kept in the summary with a status
    instead of stopping the batch:
    - 'degenerate': too few distinct bins (DegenerateDataError)
    - 'invalid': no valid parameter region found
    - 'not converged': chains have R-hat above the threshold
    - 'optimiser failed': the MAP optimiser stopped without converging
    - 'ok'

    Args:
        observations (pd.DataFrame)
        bin_grid (BinGrid or list-like)
        by (str or list of str): grouping columns
        method (str='map'): 'map' or 'emcee'
        other args: as fit_size_distribution

    Returns:
        summary (pd.DataFrame): one row per group; the group columns,
            status, n_individuals, n_bins, the estimate of each
            parameter (posterior mean or MAP) and max_rhat
        models (dict): fitted models by group key
    """

    by = [by] if isinstance(by, str) else list(by)
    sampler_kwargs = {} if sampler_kwargs is None else dict(sampler_kwargs)

    rows = []
    models = {}

    for key, group in observations.groupby(by, sort=True):
        key = key if isinstance(key, tuple) else (key,)
        if len(by) == 1 and len(key) == 1:
            label = key[0]
        else:
            label = key

        row = dict(zip(by, key))
        row['n_individuals'] = int(group['count'].sum())
        row['n_bins'] = int(group.loc[group['count'] > 0,
                                      'bin_index'].nunique())

        try:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore', ConvergenceWarning)
                model = fit_size_distribution(
                    group, bin_grid, family=family, variant=variant,
                    covariates=covariates, method=method,
                    cache_dir=cache_dir, verbose=verbose,
                    sampler_kwargs=sampler_kwargs, **model_kwargs)
        except DegenerateDataError as e:
            row['status'] = 'degenerate'
            if verbose:
                print("{}: {}".format(label, e))
            rows.append(row)
            continue
        except InvalidParameterRegion as e:
            row['status'] = 'invalid'
            if verbose:
                print("{}: {}".format(label, e))
            rows.append(row)
            continue
        except NonConvergenceError:
            row['status'] = 'not converged'
            rows.append(row)
            continue

        models[label] = model

        if method == 'emcee':
            estimate = model.posterior_mean()
            row['max_rhat'] = float(model.diagnostics['rhat'].max())
            row['status'] = 'ok' if model.diagnostics['converged'] \
                            else 'not converged'
        else:
            estimate = model.map_values
            row['max_rhat'] = np.nan
            row['status'] = 'ok' if model.optimiser_success \
                            else 'optimiser failed'

        row.update(zip(model.parameter_names, estimate))
        rows.append(row)

    front = by + ['status', 'n_individuals', 'n_bins']
    summary = pd.DataFrame(rows, columns=None if rows else front)

    not_ok = (summary['status'] != 'ok').sum()
    if not_ok:
        warnings.warn("{}/{} groups were not fitted cleanly; see the "
                      "'status' column.".format(not_ok, len(summary)))

    return summary[front + [c for c in summary.columns if c not in front]], \
           models


# Analysis plots
# --------------

def analyse_sizes(observations, bin_grid, family='lognormal',
                  variant='species_loc', category_col='species_name',
                  covariates=(), show=False, print_values=False,
                  save_as=None, cache_dir=None, sampler_kwargs=None,
                  **model_kwargs):
    """Fits one model to all categories and plots each category's fit.

    Args:
        observations (pd.DataFrame)
        bin_grid (BinGrid or list-like)
        family, variant, covariates: as fit_size_distribution
        category_col (str='species_name')
        show (bool=False)
        print_values (bool=False): print the posterior summary
        save_as (str=None): if given, the figure is saved under this
            filename in vislib.FIG_DIR
        cache_dir (str=None)
        sampler_kwargs (dict=None)

    Returns:
        model (BinnedSizeModel)
    """

    bin_grid = bin_grid if isinstance(bin_grid, BinGrid) else BinGrid(bin_grid)

    model = fit_size_distribution(observations, bin_grid, family=family,
                                  variant=variant, covariates=covariates,
                                  method='emcee', cache_dir=cache_dir,
                                  category_col=category_col,
                                  sampler_kwargs=sampler_kwargs,
                                  **model_kwargs)

    categories = model.categories
    n_cols = min(3, len(categories))
    n_rows = int(np.ceil(len(categories) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, squeeze=False,
                             figsize=[5*n_cols*vislib.fig_scale,
                                      4*n_rows*vislib.fig_scale])

    for ax, category in zip(axes.flat, categories):
        # Covariates at their standardised mean (zero)
        model.plot_fit(category=category if model.config.uses_offsets
                       else None, group=category, ax=ax, show=False)
    for ax in list(axes.flat)[len(categories):]:
        ax.set_visible(False)
    fig.tight_layout()

    if print_values:
        print(model.summarise_samples())

    if save_as is not None:
        vislib.save_figure(fig, save_as)

    if show:
        plt.show()

    return model
