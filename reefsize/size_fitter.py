"""Statistical model for body-sizes counted in size-class bins.

The likelihood of a group of counts n_i in bins i = 1..K is
multinomial in the bin masses:

    log L = sum_i n_i * log(F(upper_i) - F(upper_{i-1}))

where F is the CDF of the size distribution (lognormal or normal).
Each row of the observation table is one (group, bin, count), so the
cost is proportional to the number of distinct rows rather than the
number of fish; the count multiplies the per-bin log-probability.

The location and the log-scale of the distribution are resolved per
row as linear predictors:

    loc     = loc_0 + sum_j loc_j * x_j + loc_offset[category]
    s       = s_0   + sum_j s_j * x_j   + s_offset[category]
    scale   = exp(s)               (scale_mode = 'independent')
    sd      = loc * exp(s)         (scale_mode = 'cv', normal only)

Which terms enter each predictor is declared by a ModelConfig.

NOTE regarding the invalid region: any zero or non-finite bin mass,
or non-positive scale, raises InvalidParameterRegion internally. The
probability methods (log_likelihood, log_posterior) catch it and
return -inf, which both emcee and the optimiser treat as a rejected
point. They never return nan.
"""

import warnings

import emcee
import numpy as np
import pandas as pd
from scipy import optimize

from . import pdf_tools, vislib
from . import RHAT_THRESHOLD, DEFAULT_BURN, DEFAULT_ITERS, DEFAULT_CHAINS


# Model configuration
# -------------------

MODEL_VARIANTS = {
    'global': "Baseline location and scale only.",
    'covariates': "Covariate slopes on the location.",
    'species_loc': "Per-category offsets on the location.",
    'species_loc_scale': "Per-category offsets on location and scale.",
    'covariates_species_loc': "Covariate slopes and per-category offsets "
                              "on the location.",
    'cv': "Normal family; sd = mean * exp(log_cv).",
    'covariates_cv': "Normal family; covariate slopes on the mean, "
                     "sd = mean * exp(log_cv).",
}


class ModelConfig(object):
    """Declares which terms enter the location and scale predictors."""

    def __init__(self, loc_covariates=(), scale_covariates=(),
                 loc_offsets=False, scale_offsets=False,
                 scale_mode='independent'):
        """
        Args:
            loc_covariates (tuple of str): covariate columns with a
                slope on the location
            scale_covariates (tuple of str): covariate columns with a
                slope on the log-scale
            loc_offsets (bool=False): per-category location offsets
            scale_offsets (bool=False): per-category log-scale offsets
            scale_mode (str='independent'): 'independent' or 'cv'
        """

        loc_covariates = tuple(loc_covariates)
        scale_covariates = tuple(scale_covariates)

        for covs in (loc_covariates, scale_covariates):
            if len(set(covs)) != len(covs):
                raise ValueError("Duplicate covariates: {}".format(covs))
        if scale_mode not in ('independent', 'cv'):
            raise ValueError("scale_mode [{}] not recognised.".format(
                scale_mode))

        self.loc_covariates = loc_covariates
        self.scale_covariates = scale_covariates
        self.loc_offsets = bool(loc_offsets)
        self.scale_offsets = bool(scale_offsets)
        self.scale_mode = scale_mode

    @classmethod
    def from_variant(cls, variant, covariates=()):
        """Builds one of the named MODEL_VARIANTS."""

        covariates = tuple(covariates)

        if variant not in MODEL_VARIANTS:
            raise ValueError("variant [{}] not recognised, use one of: "
                             "{}".format(variant, ", ".join(MODEL_VARIANTS)))
        elif variant.startswith('covariates') and not covariates:
            raise ValueError("variant [{}] requires covariates.".format(
                variant))

        if variant == 'global':
            return cls()
        elif variant == 'covariates':
            return cls(loc_covariates=covariates)
        elif variant == 'species_loc':
            return cls(loc_offsets=True)
        elif variant == 'species_loc_scale':
            return cls(loc_offsets=True, scale_offsets=True)
        elif variant == 'covariates_species_loc':
            return cls(loc_covariates=covariates, loc_offsets=True)
        elif variant == 'cv':
            return cls(scale_mode='cv')
        else:
            return cls(loc_covariates=covariates, scale_mode='cv')

    @property
    def scale_name(self):
        return 'log_cv' if self.scale_mode == 'cv' else 'log_scale'

    @property
    def covariates(self):
        """All covariates used, in order of first appearance."""
        covs = list(self.loc_covariates)
        covs += [c for c in self.scale_covariates if c not in covs]
        return tuple(covs)

    @property
    def uses_offsets(self):
        return self.loc_offsets or self.scale_offsets

    def __eq__(self, other):
        if not isinstance(other, ModelConfig):
            return NotImplemented
        return repr(self) == repr(other)

    def __repr__(self):
        return ("ModelConfig(loc_covariates={}, scale_covariates={}, "
                "loc_offsets={}, scale_offsets={}, scale_mode='{}')".format(
                    self.loc_covariates, self.scale_covariates,
                    self.loc_offsets, self.scale_offsets, self.scale_mode))


# The model
# ---------

class BinnedSizeModel(object):
    """Size distribution fitted to counts in size-class bins.

    All validation happens in __init__; after that the observation
    table is held as integer-indexed arrays and the probability
    methods are pure functions of the parameter vector.

    NOTE: samples and MAP values are stored on the object only for
    the reporting methods; they never affect the probabilities.
    """

    def __init__(self, observations, bin_grid, family='lognormal',
                 config=None, category_col=None, group_cols=None,
                 categories=None, priors=None, min_bins=2,
                 truncate=None, bin_col='bin_index', count_col='count'):
        """Validates the observations and builds the parameter layout.

        Args:
            observations (pd.DataFrame): one row per (group, bin), with
                columns: bin_col, count_col, the covariates in config,
                and category_col/group_cols where used
            bin_grid (pdf_tools.BinGrid or list-like): the size classes;
                a list is taken as the upper boundaries
            family (str or pdf_tools.SizeDistribution='lognormal')
            config (ModelConfig=None): default is baseline-only
            category_col (str=None): column of the category (e.g
                species) indexing the offsets
            group_cols (list=None): columns defining the groups checked
                for degeneracy; default is [category_col], or the
                whole table if there is no category
            categories (list=None): the fitted category set; default is
                the categories present in the observations
            priors (dict=None): priors by parameter name; 'loc_offset'
                and '<scale>_offset' keys apply to a whole offset block
            min_bins (int=2): minimum distinct non-empty bins per group
            truncate (bool=None): renormalise the bin masses to the
                range covered by the grid; default is True when the
                family has mass below a finite lower bound (normal),
                so that the bin probabilities always sum to 1
            bin_col (str='bin_index'): 1-based bin index column
            count_col (str='count')
        """

        self._bin_grid = (bin_grid if isinstance(bin_grid, pdf_tools.BinGrid)
                          else pdf_tools.BinGrid(bin_grid))
        self._family = pdf_tools.get_family(family)
        self._config = ModelConfig() if config is None else config
        self._category_col = category_col
        if truncate is None:
            truncate = (self._bin_grid.lower_bound is not None
                        and not isinstance(self._family, pdf_tools.LogNormal))
        self._truncate = bool(truncate)
        self._bin_col = bin_col
        self._count_col = count_col

        if self._config.scale_mode not in self._family.scale_modes:
            raise ModelConfigurationError(
                "scale_mode '{}' is not available for the {} family.".format(
                    self._config.scale_mode, self._family.name))
        if self._config.uses_offsets and category_col is None:
            raise ModelConfigurationError(
                "Category offsets require a category_col.")

        if group_cols is None:
            group_cols = [] if category_col is None else [category_col]
        self._group_cols = list(group_cols)

        # Check the table
        # ---------------

        required = [bin_col, count_col] + list(self._config.covariates)
        required += [c for c in self._group_cols if c not in required]
        if category_col is not None and category_col not in required:
            required.append(category_col)
        missing = [c for c in required if c not in observations.columns]
        if missing:
            raise ModelConfigurationError(
                "Observations are missing columns: {}".format(missing))

        obs = observations[required].copy()
        bin_index = self._check_integer_column(obs[bin_col], bin_col)
        if ((bin_index < 1) | (bin_index > self._bin_grid.n_bins)).any():
            raise ModelConfigurationError(
                "Bin indices must be in [1, {}]; found range [{}, {}].".format(
                    self._bin_grid.n_bins, bin_index.min(), bin_index.max()))
        counts = self._check_integer_column(obs[count_col], count_col)
        if (counts < 0).any():
            raise ModelConfigurationError("Counts must be non-negative.")

        obs[bin_col] = bin_index
        obs[count_col] = counts

        # Zero counts contribute nothing to the likelihood
        obs = obs[obs[count_col] > 0].reset_index(drop=True)
        if len(obs) == 0:
            raise DegenerateDataError("No non-empty bins in the observations.")

        covariates = obs[list(self._config.covariates)].to_numpy(dtype=float)
        if not np.isfinite(covariates).all():
            raise ModelConfigurationError(
                "Covariates must be finite (standardise and drop missing "
                "values first).")

        # Categories
        # ----------

        if category_col is not None:
            observed_cats = pd.unique(obs[category_col])
            if categories is None:
                categories = sorted(observed_cats)
            categories = list(categories)

            unknown = [c for c in observed_cats if c not in categories]
            unused = [c for c in categories if c not in set(observed_cats)]
            if unknown:
                raise ModelConfigurationError(
                    "Categories in the observations but not in the fitted "
                    "set: {}".format(unknown))
            if unused:
                raise ModelConfigurationError(
                    "Fitted categories without observations: {}".format(
                        unused))

            category_index = pd.Categorical(
                obs[category_col], categories=categories).codes.astype(int)
        else:
            categories = []
            category_index = np.zeros(len(obs), dtype=int)

        # Degeneracy: need at least min_bins distinct bins per group
        # ----------------------------------------------------------

        if self._group_cols:
            n_bins = obs.groupby(self._group_cols)[bin_col].nunique()
            degenerate = n_bins[n_bins < min_bins]
            if len(degenerate) > 0:
                raise DegenerateDataError(
                    "Groups with fewer than {} distinct non-empty bins: "
                    "{}".format(min_bins, list(degenerate.index)))
        elif obs[bin_col].nunique() < min_bins:
            raise DegenerateDataError(
                "Fewer than {} distinct non-empty bins.".format(min_bins))

        self._observations = obs
        self._categories = categories
        self._bin0 = obs[bin_col].to_numpy() - 1
        self._counts = obs[count_col].to_numpy(dtype=float)
        self._covariates = covariates
        self._category_index = category_index
        self._lower = self._bin_grid.lower_edges[self._bin0]
        self._upper = self._bin_grid.upper_edges[self._bin0]

        self._build_layout()
        self._priors = self._build_priors({} if priors is None else priors)

        self._map_storage = None
        self._optimiser_success = None
        self._sample_storage = None
        self._chain_storage = None
        self.diagnostics = None

    @staticmethod
    def _check_integer_column(column, name):
        values = pd.to_numeric(column, errors='coerce').to_numpy(dtype=float)
        if not np.isfinite(values).all():
            raise ModelConfigurationError(
                "Column '{}' has missing or non-numeric values.".format(name))
        elif not np.array_equal(values, np.round(values)):
            raise ModelConfigurationError(
                "Column '{}' must contain integers.".format(name))
        return values.astype(int)

    def _build_layout(self):
        """Sets the position of each parameter in the flat vector."""

        config = self._config
        cov_position = {c: i for i, c in enumerate(config.covariates)}
        names = []
        layout = {}

        for block, prefix, covs, offsets in (
                ('loc', 'loc', config.loc_covariates, config.loc_offsets),
                ('scale', config.scale_name, config.scale_covariates,
                 config.scale_offsets)):
            base = len(names)
            names.append("{}_0".format(prefix))

            start = len(names)
            names += ["{}_{}".format(prefix, c) for c in covs]
            slopes = slice(start, len(names))

            if offsets:
                start = len(names)
                names += ["{}_offset[{}]".format(prefix, c)
                          for c in self._categories]
                offset_slice = slice(start, len(names))
            else:
                offset_slice = None

            layout[block] = {'prefix': prefix,
                             'base': base,
                             'slopes': slopes,
                             'columns': [cov_position[c] for c in covs],
                             'offsets': offset_slice}

        self._names = names
        self._layout = layout

    def _build_priors(self, priors):
        """Default priors, overridden by name or by offset block."""

        lognormal = isinstance(self._family, pdf_tools.LogNormal)
        loc_scale = 1.0 if lognormal else float(self._bin_grid.upper[-1])
        scale_prefix = self._config.scale_name

        known = set(self._names) | {'loc_offset',
                                    '{}_offset'.format(scale_prefix)}
        unknown = [k for k in priors if k not in known]
        if unknown:
            raise ModelConfigurationError(
                "Priors given for unknown parameters: {}".format(unknown))

        prior_list = []
        for name in self._names:
            is_loc = name.startswith('loc_')
            block_key = name.split('[')[0]

            if name in priors:
                prior = priors[name]
            elif block_key in priors:
                prior = priors[block_key]
            elif name == 'loc_0':
                if lognormal:
                    prior = pdf_tools.NormalPrior(0.0, 10.0)
                elif self._config.scale_mode == 'cv':
                    prior = pdf_tools.NormalPrior(0.0, 10*loc_scale, lower=0.0)
                else:
                    prior = pdf_tools.NormalPrior(0.0, 10*loc_scale)
            elif name == '{}_0'.format(scale_prefix):
                prior = pdf_tools.NormalPrior(0.0, 5.0)
            else:
                # Slopes and offsets
                prior = pdf_tools.NormalPrior(0.0,
                                              loc_scale if is_loc else 1.0)

            prior_list.append(prior)

        return prior_list

    # Properties and internals
    # ------------------------

    @property
    def bin_grid(self):
        return self._bin_grid

    @property
    def family(self):
        return self._family

    @property
    def config(self):
        return self._config

    @property
    def truncate(self):
        return self._truncate

    @property
    def categories(self):
        return list(self._categories)

    @property
    def covariates(self):
        return self._config.covariates

    @property
    def parameter_names(self):
        return list(self._names)

    @property
    def priors(self):
        return dict(zip(self._names, self._priors))

    @property
    def ndim(self):
        return len(self._names)

    @property
    def n_rows(self):
        """Number of distinct non-empty (group, bin) rows."""
        return len(self._counts)

    @property
    def observations(self):
        return self._observations.copy()

    def _check_theta(self, theta):
        theta = np.asarray(theta, dtype=float)
        if theta.shape != (self.ndim,):
            raise ValueError("Parameter vector has shape {}, expected "
                             "({},).".format(theta.shape, self.ndim))
        return theta

    def unpack(self, theta):
        """Splits a parameter vector into its named blocks."""

        theta = self._check_theta(theta)
        blocks = {}

        for block in ('loc', 'scale'):
            spec = self._layout[block]
            prefix = spec['prefix']
            blocks['{}_0'.format(prefix)] = theta[spec['base']]
            covs = (self._config.loc_covariates if block == 'loc'
                    else self._config.scale_covariates)
            blocks['{}_slopes'.format(prefix)] = dict(
                zip(covs, theta[spec['slopes']]))
            if spec['offsets'] is not None:
                blocks['{}_offsets'.format(prefix)] = dict(
                    zip(self._categories, theta[spec['offsets']]))

        return blocks

    def _linear_predictor(self, theta, block, covariates, category_index):
        spec = self._layout[block]
        value = theta[spec['base']] \
              + covariates[:, spec['columns']].dot(theta[spec['slopes']])
        if spec['offsets'] is not None and category_index is not None:
            value = value + theta[spec['offsets']][category_index]
        return value

    def _resolve(self, theta, covariates, category_index):
        """Effective (loc, scale) per row; raises in the invalid region.

        Args:
            theta (np.ndarray): parameter vector
            covariates (np.ndarray, shape: n x n_covariates)
            category_index (np.ndarray of int or None): None means no
                category offset is applied

        Returns:
            loc, scale (np.ndarray, n-dim)
        """

        loc = self._linear_predictor(theta, 'loc', covariates, category_index)
        s = self._linear_predictor(theta, 'scale', covariates, category_index)

        with np.errstate(over='ignore', invalid='ignore'):
            if self._config.scale_mode == 'cv':
                scale = loc * np.exp(s)
            else:
                scale = np.exp(s)

        if not np.isfinite(loc).all():
            raise InvalidParameterRegion("Non-finite location.")
        elif not (np.isfinite(scale) & (scale > 0)).all():
            raise InvalidParameterRegion("Non-positive or non-finite scale.")

        return loc, scale

    def _mass(self, lower, upper, loc, scale):
        """Bin masses; the one function shared by fitting and prediction."""

        with np.errstate(invalid='ignore', divide='ignore'):
            mass = self._family.bin_mass(lower, upper, loc, scale)

            if self._truncate:
                total = self._family.bin_mass(
                    self._bin_grid.lower_edges[0],
                    self._bin_grid.upper_edges[-1], loc, scale)
                mass = mass / total

        if not (np.isfinite(mass) & (mass > 0)).all():
            raise InvalidParameterRegion(
                "Zero or non-finite bin probability.")

        return mass

    def _row_probs(self, theta):
        loc, scale = self._resolve(theta, self._covariates,
                                   self._category_index)
        return self._mass(self._lower, self._upper, loc, scale)

    # Probabilistic methods
    # ---------------------

    def per_row_log_likelihood(self, theta):
        """Log-likelihood contribution of each observation row.

        Raises:
            InvalidParameterRegion
        """

        theta = self._check_theta(theta)
        return self._counts * np.log(self._row_probs(theta))

    def log_likelihood(self, theta, strict=False):
        """Calculates the value of the log-likelihood.

        Args:
            theta (np.ndarray): flat parameter vector
            strict (bool=False): if True, raise InvalidParameterRegion
                instead of returning -inf

        Returns:
            log_likelihood (float): -inf in the invalid region
        """

        try:
            return float(np.sum(self.per_row_log_likelihood(theta)))
        except InvalidParameterRegion:
            if strict:
                raise
            return -np.inf

    def log_prior(self, theta):
        """Sum of the prior log-densities; -inf outside the bounds."""

        theta = self._check_theta(theta)
        value = 0.0
        for prior, x in zip(self._priors, theta):
            value += prior.log_pdf(x)
            if not np.isfinite(value):
                return -np.inf
        return float(value)

    def log_posterior(self, theta, strict=False):
        """Calculates the unnormalised log posterior."""

        log_prior = self.log_prior(theta)
        if not np.isfinite(log_prior):
            return -np.inf
        return log_prior + self.log_likelihood(theta, strict=strict)

    # Estimators
    # ----------

    def _default_theta(self):
        if self._sample_storage is not None:
            return self.posterior_mean()
        elif self._map_storage is not None:
            return self._map_storage
        else:
            raise AttributeError("No stored samples or MAP values found; "
                                 "give theta explicitly.")

    def _covariate_row(self, covariates):
        n_cov = len(self._config.covariates)
        if covariates is None:
            return np.zeros((1, n_cov))
        elif isinstance(covariates, dict):
            unknown = [c for c in covariates if c not in self.covariates]
            if unknown:
                raise ModelConfigurationError(
                    "Unknown covariates: {}".format(unknown))
            row = [covariates.get(c, 0.0) for c in self._config.covariates]
        else:
            row = list(np.ravel(covariates))
            if len(row) != n_cov:
                raise ValueError("Expected {} covariate values, got "
                                 "{}.".format(n_cov, len(row)))
        return np.array(row, dtype=float).reshape(1, n_cov)

    def _category_position(self, category):
        if category is None:
            return None
        elif category not in self._categories:
            raise ModelConfigurationError(
                "Category [{}] is not in the fitted set.".format(category))
        return np.array([self._categories.index(category)])

    def resolve_parameters(self, theta=None, covariates=None, category=None):
        """Effective (loc, scale) for one covariate vector and category.

        Args:
            theta (np.ndarray=None): default is the posterior mean,
                or the MAP if there are no samples
            covariates (dict or list-like=None): values by name, or in
                the order of self.covariates; default all zero
            category (=None): category label; None applies no offset

        Returns:
            loc, scale (float)
        """

        theta = self._check_theta(self._default_theta() if theta is None
                                  else theta)
        loc, scale = self._resolve(theta, self._covariate_row(covariates),
                                   self._category_position(category))
        return float(loc[0]), float(scale[0])

    def predict_bin_probs(self, theta=None, covariates=None, category=None):
        """Predicted probability of each bin.

        Same arguments as resolve_parameters.

        Returns:
            probs (np.ndarray, K-dim)
        """

        loc, scale = self.resolve_parameters(theta, covariates, category)
        return self._mass(self._bin_grid.lower_edges,
                          self._bin_grid.upper_edges, loc, scale)

    def predict_row_probs(self, theta=None):
        """Predicted bin probabilities for every observation row.

        Returns:
            probs (np.ndarray, shape: n_rows x K)
        """

        theta = self._check_theta(self._default_theta() if theta is None
                                  else theta)
        loc, scale = self._resolve(theta, self._covariates,
                                   self._category_index)
        return self._mass(self._bin_grid.lower_edges[None, :],
                          self._bin_grid.upper_edges[None, :],
                          loc[:, None], scale[:, None])

    def observed_bin_fractions(self):
        """Observed fraction of counts in each bin, per group.

        Returns:
            fractions (pd.DataFrame): index is the group key ('all' if
                there are no groups), columns are bin indices 1..K
        """

        obs = self._observations
        if self._group_cols:
            index = self._group_cols
        else:
            obs = obs.assign(group='all')
            index = 'group'

        table = obs.pivot_table(index=index, columns=self._bin_col,
                                values=self._count_col, aggfunc='sum',
                                fill_value=0)
        table = table.reindex(columns=range(1, self._bin_grid.n_bins + 1),
                              fill_value=0)
        return table.div(table.sum(axis=1), axis=0)

    # Fitting
    # -------

    def initial_guess(self):
        """Starting point from the count-weighted bin midpoints.

        Slopes and offsets start at zero.
        """

        mids = self._bin_grid.midpoints[self._bin0]
        if isinstance(self._family, pdf_tools.LogNormal):
            mids = np.clip(mids, 0.5 * self._bin_grid.upper[0], None)

        mean, sd = self._family.moments_guess(mids, self._counts)
        if not sd > 0:
            sd = 0.1 * max(abs(mean), 1.0)

        theta = np.zeros(self.ndim)
        theta[self._layout['loc']['base']] = mean
        if self._config.scale_mode == 'cv':
            theta[self._layout['scale']['base']] = np.log(
                sd / mean if mean > 0 else 0.3)
        else:
            theta[self._layout['scale']['base']] = np.log(sd)

        return theta

    def optimise(self, x0=None, method='Nelder-Mead', use_prior=True,
                 verbose=False, **options):
        """Finds the MAP (or maximum-likelihood) parameters.

        Args:
            x0 (np.ndarray=None): default is self.initial_guess()
            method (str='Nelder-Mead'): scipy.optimize.minimize method
            use_prior (bool=True): if False, maximises the likelihood
            verbose (bool=False)
            **options: passed as minimize options

        Returns:
            theta (np.ndarray)
        """

        x0 = self.initial_guess() if x0 is None else self._check_theta(x0)
        target = self.log_posterior if use_prior else self.log_likelihood

        # Negative log-posterior; inf marks the invalid region
        def nlp(x):
            value = target(x)
            return -value if np.isfinite(value) else np.inf

        if method == 'Nelder-Mead':
            opts = {'xatol': 1e-8, 'fatol': 1e-10,
                    'maxiter': 2000 * self.ndim, 'maxfev': 4000 * self.ndim,
                    'adaptive': self.ndim > 4}
        else:
            opts = {}
        opts.update(options)

        result = optimize.minimize(fun=nlp, x0=x0, method=method,
                                   options=opts)

        if not np.isfinite(result.fun):
            raise InvalidParameterRegion(
                "Optimiser did not find a valid point: {}".format(
                    result.message))
        elif not result.success:
            warnings.warn("Optimiser did not converge: {}".format(
                result.message))

        if verbose:
            print("Optimised to {} (log-{} = {:.6g}).".format(
                np.round(result.x, 4),
                'posterior' if use_prior else 'likelihood', -result.fun))

        self._map_storage = result.x
        self._optimiser_success = bool(result.success)
        return result.x

    def sample_emcee(self, burn=DEFAULT_BURN, iters=DEFAULT_ITERS,
                     nwalkers=None, n_chains=DEFAULT_CHAINS, thin_factor=1,
                     pre_optimise=True, jitter=1e-2, seed=None, pool=None,
                     rhat_threshold=RHAT_THRESHOLD, strict=False,
                     progress=False, save=True, verbose=False):
        """Samples the posterior with independent emcee ensembles.

        Each chain is a separate EnsembleSampler started around the MAP
        (or the initial guess); the chains only meet in the
        Gelman-Rubin statistic at the end.

        Args:
            burn (int): number of iterations to burn, per walker
            iters (int): number of kept iterations, per walker
            nwalkers (int=None): default is 2*(ndim+1)
            n_chains (int): number of independent ensembles
            thin_factor (int=1)
            pre_optimise (bool=True): start around the MAP
            jitter (float=1e-2): relative spread of the starting
                positions
            seed (int=None)
            pool (=None): map-able pool passed to emcee
            rhat_threshold (float): non-convergence if any R-hat is above
            strict (bool=False): raise NonConvergenceError instead of
                warning
            progress (bool=False): emcee progress bar
            save (bool=True): store the samples on the object,
                overwriting previous stored samples
            verbose (bool=False)

        Returns:
            samples (np.ndarray, shape: n_samples x ndim)
        """

        ndim = self.ndim
        nwalkers = 2*(ndim+1) if nwalkers is None else nwalkers
        rng = np.random.default_rng(seed)

        if pre_optimise:
            centre = self.optimise(verbose=verbose)
        else:
            centre = self.initial_guess()

        chain_list = []
        log_prob_list = []
        acceptance = []
        autocorr = []

        for i in range(n_chains):
            spread = jitter * np.maximum(np.abs(centre), 1.0)
            p0 = centre + spread * rng.standard_normal((nwalkers, ndim))

            initial_lp = np.array([self.log_posterior(p) for p in p0])
            if not np.isfinite(initial_lp).all():
                raise InvalidParameterRegion(
                    "{}/{} starting positions of chain {} are in the invalid "
                    "region; reduce jitter or give a better starting "
                    "point.".format((~np.isfinite(initial_lp)).sum(),
                                    nwalkers, i))

            sampler = emcee.EnsembleSampler(nwalkers, ndim,
                                            self.log_posterior, pool=pool)
            sampler.random_state = np.random.RandomState(
                rng.integers(2**31 - 1)).get_state()

            # Burn
            if burn > 0:
                state = sampler.run_mcmc(p0, burn, progress=progress)
                sampler.reset()
            else:
                state = p0

            sampler.run_mcmc(state, iters, progress=progress)

            chain_list.append(sampler.get_chain(thin=thin_factor, flat=True))
            log_prob_list.append(sampler.get_log_prob(thin=thin_factor,
                                                      flat=True))
            acceptance.append(float(np.mean(sampler.acceptance_fraction)))

            try:
                autocorr.append(sampler.get_autocorr_time())
            except emcee.autocorr.AutocorrError as e:
                warnings.warn("Chain {} too short for a reliable "
                              "autocorrelation time: {}".format(i, e))
                autocorr.append(sampler.get_autocorr_time(quiet=True))

            if verbose:
                print("Chain {}: mean acceptance fraction {:.3f}".format(
                    i, acceptance[-1]))

        chains = np.stack(chain_list)
        log_probs = np.concatenate(log_prob_list)
        invalid_fraction = float(np.mean(~np.isfinite(log_probs)))

        if n_chains >= 2:
            rhat = pd.Series(gelman_rubin(chains), index=self._names)
        else:
            warnings.warn("R-hat needs at least 2 chains; convergence "
                          "is unchecked.", ConvergenceWarning)
            rhat = pd.Series(np.nan, index=self._names)

        converged = bool(n_chains >= 2 and np.all(rhat <= rhat_threshold))

        self.diagnostics = {
            'rhat': rhat,
            'converged': converged,
            'acceptance_fraction': acceptance,
            'autocorr_time': pd.DataFrame(autocorr, columns=self._names),
            'invalid_fraction': invalid_fraction,
            'n_chains': n_chains,
            'nwalkers': nwalkers,
        }

        if invalid_fraction > 0:
            warnings.warn("{:.2%} of the stored states are in the invalid "
                          "likelihood region.".format(invalid_fraction))
        if min(acceptance) < 0.05:
            warnings.warn("Low acceptance fraction: {}".format(
                np.round(acceptance, 3)))

        if n_chains >= 2 and not converged:
            message = "Chains have not converged; R-hat above {}: {}".format(
                rhat_threshold,
                rhat[rhat > rhat_threshold].round(3).to_dict())
            if strict:
                raise NonConvergenceError(message)
            warnings.warn(message, ConvergenceWarning)

        samples = chains.reshape(-1, ndim)

        if save:
            self._sample_storage = samples
            self._chain_storage = chains

        return samples

    # Sample views
    # ------------

    def get_samples(self):
        if self._sample_storage is None:
            raise AttributeError("No stored samples found.")
        return self._sample_storage

    def set_samples(self, samples):
        """Replaces the stored draws (e.g with cached ones)."""
        samples = np.asarray(samples, dtype=float)
        if samples.ndim != 2 or samples.shape[1] != self.ndim:
            raise ValueError("Samples must have shape (n, {}).".format(
                self.ndim))
        self._sample_storage = samples

    samples = property(get_samples, set_samples)

    @property
    def map_values(self):
        return self._map_storage

    @property
    def optimiser_success(self):
        """Whether the last optimise call converged (None if never run)."""
        return self._optimiser_success

    def samples_frame(self):
        """The stored draws with the parameter names as columns."""
        return pd.DataFrame(self.samples, columns=self._names)

    def posterior_mean(self):
        return self.samples.mean(axis=0)

    def summarise_samples(self, percentiles=(0.16, 0.50, 0.84)):
        """Summary table of the draws, one row per parameter.

        Includes the R-hat column when diagnostics are available.
        """

        summary = self.samples_frame().describe(
            percentiles=list(percentiles)).T
        if self.diagnostics is not None:
            summary['rhat'] = self.diagnostics['rhat']
        return summary

    def export_fit(self):
        """The fitted state (MAP, draws, diagnostics) as a dict."""
        return {'map': self._map_storage,
                'optimiser_success': self._optimiser_success,
                'samples': self._sample_storage,
                'chains': self._chain_storage,
                'diagnostics': self.diagnostics,
                'parameter_names': list(self._names)}

    def restore_fit(self, state):
        """Restores a state from export_fit, e.g from the cache."""

        if list(state['parameter_names']) != self._names:
            raise ModelConfigurationError(
                "Stored fit has parameters {}, model has {}.".format(
                    state['parameter_names'], self._names))

        self._map_storage = state['map']
        self._optimiser_success = state.get('optimiser_success')
        self._sample_storage = state['samples']
        self._chain_storage = state['chains']
        self.diagnostics = state['diagnostics']

    # Plotting
    # --------

    def plot_fit(self, theta=None, covariates=None, category=None,
                 group=None, ax=None, show=True):
        """Plots the observed fractions against the predicted ones.

        Args:
            theta, covariates, category: as in predict_bin_probs
            group (=None): row of observed_bin_fractions to show;
                default is category if given, else the first group
        """

        fractions = self.observed_bin_fractions()
        if group is None:
            group = category if category in fractions.index \
                    else fractions.index[0]

        probs = self.predict_bin_probs(theta, covariates, category)

        return vislib.plot_bin_probs(
            observed=fractions.loc[group].to_numpy(), predicted=probs,
            bin_grid=self._bin_grid, title=str(group), ax=ax, show=show)

    def plot_posterior(self, show=True):
        """Triangle plot of the stored posterior draws."""
        return vislib.plot_posterior(self.samples, labels=self._names,
                                     show=show)


# Utility and work functions
# --------------------------

def gelman_rubin(chains):
    """Potential scale reduction factor, per parameter.

    Args:
        chains (np.ndarray, shape: n_chains x n_samples x ndim)

    Returns:
        rhat (np.ndarray, ndim): nan where the within-chain variance
            is zero
    """

    chains = np.asarray(chains, dtype=float)
    if chains.ndim == 2:
        chains = chains[:, :, None]
    n_chains, n_samples = chains.shape[:2]

    if n_chains < 2 or n_samples < 2:
        raise ValueError("Need at least 2 chains of at least 2 samples.")

    within = chains.var(axis=1, ddof=1).mean(axis=0)
    between_n = chains.mean(axis=1).var(axis=0, ddof=1)
    var_hat = (n_samples - 1) / n_samples * within + between_n

    with np.errstate(divide='ignore', invalid='ignore'):
        rhat = np.sqrt(var_hat / within)

    return np.where(within > 0, rhat, np.nan)


# Exceptions
# ----------

class InvalidParameterRegion(ValueError):
    """Parameters give a zero or non-finite bin probability."""
    pass

class ModelConfigurationError(ValueError):
    """Observations or configuration are inconsistent; raised at setup."""
    pass

class DegenerateDataError(ModelConfigurationError):
    """Too few distinct bins to identify both location and scale."""
    pass

class NonConvergenceError(RuntimeError):
    pass

class ConvergenceWarning(UserWarning):
    pass
