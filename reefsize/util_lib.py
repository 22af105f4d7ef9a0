"""Contains utility procedures for preparing survey data and caching."""

import os
import hashlib
import pickle
import warnings

import numpy as np
import pandas as pd

from . import CACHE_DIR
from .pdf_tools import BinGrid
from .size_fitter import ModelConfigurationError

# Upper boundaries of the standard visual-census size classes, in cm
RLS_SIZE_CLASSES = [2.5, 5.0, 7.5, 10.0, 12.5, 15.0, 20.0, 25.0, 30.0,
                    35.0, 40.0, 50.0, 62.5, 75.0, 87.5, 100.0, 112.5,
                    125.0, 137.5, 150.0, 162.5, 175.0, 187.5, 200.0,
                    250.0, 300.0, 350.0, 400.0]


# Binning
# -------

def assign_bin_index(sizes, bin_grid, clip_top=False):
    """Gives the 1-based bin index of each size.

    A size equal to an upper boundary belongs to that bin, i.e bin i
    covers (upper[i-1], upper[i]].

    Args:
        sizes (list-like)
        bin_grid (BinGrid or list-like of upper boundaries)
        clip_top (bool=False): if True, sizes above the top boundary
            go into the top bin instead of raising

    Returns:
        bin_index (np.ndarray of int)
    """

    bin_grid = bin_grid if isinstance(bin_grid, BinGrid) else BinGrid(bin_grid)
    sizes = np.asarray(sizes, dtype=float)

    if not np.isfinite(sizes).all():
        raise ValueError("Sizes must be finite.")
    if bin_grid.lower_bound is not None and (sizes <= bin_grid.lower_bound).any():
        raise ValueError("Sizes at or below the lower bound ({}) found.".format(
            bin_grid.lower_bound))

    bin_index = np.digitize(sizes, bin_grid.upper, right=True) + 1

    above = bin_index > bin_grid.n_bins
    if above.any():
        if clip_top:
            bin_index[above] = bin_grid.n_bins
        else:
            raise ValueError("{} sizes above the top boundary ({}).".format(
                above.sum(), bin_grid.upper[-1]))

    return bin_index


def aggregate_observations(records, bin_grid, group_cols,
                           size_col='size_class', count_col=None,
                           clip_top=False, verbose=False):
    """Sums the individuals per (group, bin) into an observation table.

    Records with non-positive sizes are dropped, as unsized fish.

    Args:
        records (pd.DataFrame): one row per record, e.g survey_id,
            species_name, size_class, total
        bin_grid (BinGrid or list-like)
        group_cols (list of str): columns defining the groups, e.g
            ['species_name'] or ['species_name', 'site_code', 'year']
        size_col (str='size_class')
        count_col (str=None): column with the number of individuals;
            if None, each record is one individual
        clip_top (bool=False): see assign_bin_index
        verbose (bool=False)

    Returns:
        observations (pd.DataFrame): columns group_cols + bin_index +
            count, sorted by group and bin
    """

    group_cols = list(group_cols)
    missing = [c for c in group_cols + [size_col] + ([count_col] if count_col
               else []) if c not in records.columns]
    if missing:
        raise KeyError("Records are missing columns: {}".format(missing))

    records = records[records[size_col] > 0]
    dropped = records[group_cols].isnull().any(axis=1)
    if dropped.any():
        warnings.warn("Dropping {} records with missing group "
                      "values.".format(dropped.sum()))
        records = records[~dropped]

    if count_col is None:
        counts = np.ones(len(records), dtype=int)
    else:
        counts = records[count_col].to_numpy()
        if (counts < 0).any():
            raise ValueError("Negative totals in '{}'.".format(count_col))

    obs = records[group_cols].copy()
    obs['bin_index'] = assign_bin_index(records[size_col], bin_grid,
                                        clip_top=clip_top)
    obs['count'] = counts

    obs = obs.groupby(group_cols + ['bin_index'], as_index=False)['count'].sum()
    obs['count'] = obs['count'].astype(int)

    if verbose:
        print("Aggregated {} records into {} (group, bin) rows.".format(
            len(records), len(obs)))

    return obs.sort_values(group_cols + ['bin_index']).reset_index(drop=True)


# Covariates
# ----------

def standardise_covariates(table, columns):
    """Z-scores the covariate columns.

    Args:
        table (pd.DataFrame)
        columns (list of str)

    Returns:
        table (pd.DataFrame): copy with the columns standardised
        scaling (pd.DataFrame): index is columns, with 'mean' and 'std'
    """

    table = table.copy()
    scaling = pd.DataFrame(index=list(columns), columns=['mean', 'std'],
                           dtype=float)

    for col in columns:
        values = table[col].astype(float)
        mean, std = values.mean(), values.std()
        if not std > 0:
            raise ValueError("Covariate '{}' has zero variance.".format(col))
        table[col] = (values - mean) / std
        scaling.loc[col] = [mean, std]

    return table, scaling


def apply_scaling(table, scaling):
    """Standardises new covariate values with an existing scaling."""

    table = table.copy()
    for col in scaling.index:
        table[col] = (table[col].astype(float) - scaling.loc[col, 'mean']) \
                   / scaling.loc[col, 'std']
    return table


def attach_covariates(observations, covariate_table, on):
    """Joins group-level covariates onto the observation table.

    The join is many-to-one; every observation key must be present
    in the covariate table.

    Args:
        observations (pd.DataFrame)
        covariate_table (pd.DataFrame): one row per key
        on (str or list of str): key columns

    Returns:
        observations (pd.DataFrame)
    """

    on = [on] if isinstance(on, str) else list(on)

    if covariate_table.duplicated(subset=on).any():
        raise ModelConfigurationError(
            "Covariate table has duplicate keys on {}.".format(on))

    merged = observations.merge(covariate_table, on=on, how='left',
                                validate='many_to_one', indicator=True)
    unmatched = merged['_merge'] == 'left_only'
    if unmatched.any():
        keys = merged.loc[unmatched, on].drop_duplicates()
        raise ModelConfigurationError(
            "{} observation keys have no covariates, e.g: {}".format(
                len(keys), keys.head(3).to_dict('records')))

    return merged.drop(columns='_merge')


# Caching
# -------

def hash_inputs(*objects):
    """Content hash (sha256 hex) of the inputs to a computation.

    DataFrames and Series are hashed by content (including index and
    column names), arrays by dtype, shape and bytes, and anything else
    by its repr.
    """

    digest = hashlib.sha256()

    for obj in objects:
        if isinstance(obj, (pd.DataFrame, pd.Series)):
            names = (list(obj.columns) if isinstance(obj, pd.DataFrame)
                     else [obj.name])
            digest.update(repr(names).encode())
            digest.update(pd.util.hash_pandas_object(obj, index=True)
                          .to_numpy().tobytes())
        elif isinstance(obj, np.ndarray):
            digest.update(str((obj.dtype, obj.shape)).encode())
            digest.update(np.ascontiguousarray(obj).tobytes())
        elif isinstance(obj, dict):
            digest.update(repr(sorted(obj.items(), key=lambda kv: str(kv[0])))
                          .encode())
        else:
            digest.update(repr(obj).encode())
        digest.update(b'|')

    return digest.hexdigest()


def load_or_compute(key, func, cache_dir=None, verbose=False):
    """Returns the cached result for key, computing it if missing.

    Args:
        key (str): content hash from hash_inputs
        func (callable): no-argument function producing the result
        cache_dir (str=None): default is CACHE_DIR
        verbose (bool=False)

    Returns:
        result
    """

    cache_dir = CACHE_DIR if cache_dir is None else cache_dir
    path = "{}/{}.pickle".format(cache_dir, key)

    if os.path.exists(path):
        if verbose:
            print("Loading cached result:", path)
        return pd.read_pickle(path)

    result = func()

    os.makedirs(cache_dir, exist_ok=True)
    tmp_path = "{}.tmp".format(path)
    with open(tmp_path, 'wb') as f:
        pickle.dump(result, f)
    os.replace(tmp_path, path)

    if verbose:
        print("Cached result:", path)

    return result
