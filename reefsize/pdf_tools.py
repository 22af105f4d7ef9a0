"""Defines the bin grid, size distributions and priors used in the package.

The size distributions are only ever used through their binned mass,
i.e the difference of the CDF between the two edges of a size class.
Fitting and prediction must go through the same function (bin_mass),
so that there is no drift between the two.

NOTE: scale is always the standard deviation of the normal variable
      that is transformed; for the lognormal that's the sd of log(size).
"""

import numpy as np
from scipy.stats import norm


# Bin grid
# --------

class BinGrid(object):
    """Ordered size classes defined by their upper boundaries.

    Bin i (1-based) covers (upper[i-1], upper[i]]. The first bin
    starts at lower_bound, which is 0 for body sizes, or None if the
    first bin is unbounded below. If open_top, the probability mass
    of the last bin extends to +infinity, so that the bins partition
    the whole support of the distribution.
    """

    def __init__(self, upper, lower_bound=0.0, open_top=True):
        """Sets up the grid and checks the boundaries.

        Args:
            upper (list-like, K-dim): upper boundaries of the bins,
                strictly increasing and finite
            lower_bound (float=0.0): lower limit of the first bin;
                None for an unbounded first bin
            open_top (bool=True): treat the top bin as open-ended
        """

        upper = np.array(upper, dtype=float)

        if upper.ndim != 1 or len(upper) == 0:
            raise ValueError("Bin boundaries must be a non-empty 1D array.")
        elif not np.isfinite(upper).all():
            raise ValueError("Bin boundaries must be finite.")
        elif (np.diff(upper) <= 0).any():
            raise ValueError("Bin boundaries must be strictly increasing.")
        elif lower_bound is not None and not lower_bound < upper[0]:
            raise ValueError("lower_bound ({}) must be below the first "
                             "boundary ({}).".format(lower_bound, upper[0]))

        self._upper = upper
        self._lower_bound = None if lower_bound is None else float(lower_bound)
        self._open_top = bool(open_top)

    def __len__(self):
        return len(self._upper)

    def __eq__(self, other):
        if not isinstance(other, BinGrid):
            return NotImplemented
        return (np.array_equal(self._upper, other._upper)
                and self._lower_bound == other._lower_bound
                and self._open_top == other._open_top)

    def __repr__(self):
        return "BinGrid(upper={}, lower_bound={}, open_top={})".format(
            list(self._upper), self._lower_bound, self._open_top)

    # Properties
    # ----------

    @property
    def n_bins(self):
        return len(self._upper)

    @property
    def upper(self):
        """The upper boundaries as given (always finite)."""
        return self._upper.copy()

    @property
    def lower_bound(self):
        return self._lower_bound

    @property
    def open_top(self):
        return self._open_top

    @property
    def lower_edges(self):
        """Lower mass edge per bin; -inf if unbounded below."""
        first = -np.inf if self._lower_bound is None else self._lower_bound
        return np.concatenate([[first], self._upper[:-1]])

    @property
    def upper_edges(self):
        """Upper mass edge per bin; the top one is +inf if open_top."""
        edges = self._upper.copy()
        if self._open_top:
            edges[-1] = np.inf
        return edges

    @property
    def midpoints(self):
        """Representative size per bin, for starting points and plots.

        For an unbounded first bin, the width of the second bin is
        reused.
        """

        lower = self.lower_edges
        if self._lower_bound is None:
            width = (self._upper[1] - self._upper[0]
                     if self.n_bins > 1 else 1.0)
            lower[0] = self._upper[0] - width
        return 0.5 * (lower + self._upper)

    @property
    def labels(self):
        """The string names (ranges) of the bins."""

        lower = self.lower_edges
        names = []
        for i in range(self.n_bins):
            names.append("{:.3g} - {:.3g}".format(lower[i], self._upper[i]))
        return names


# Size distributions
# ------------------

class SizeDistribution(object):
    """Location-scale family evaluated through its binned mass.

    Subclasses only define how a size is transformed into the standard
    normal variable (standardise).
    """

    name = None
    scale_modes = ('independent',)

    def standardise(self, x, loc, scale):
        raise NotImplementedError

    def cdf(self, x, loc, scale):
        return norm.cdf(self.standardise(x, loc, scale))

    def bin_mass(self, lower, upper, loc, scale):
        """Probability mass between lower and upper edges.

        The difference is taken on the survival function in the upper
        tail, so that high bins don't lose all their precision to
        1 - 1 cancellation.

        Args:
            lower, upper (np.ndarray): mass edges, may contain +-inf
            loc, scale (np.ndarray or float): broadcastable with edges

        Returns:
            mass (np.ndarray)
        """

        z_lower = self.standardise(lower, loc, scale)
        z_upper = self.standardise(upper, loc, scale)

        upper_tail = z_lower > 0
        mass = np.where(upper_tail,
                        norm.sf(z_lower) - norm.sf(z_upper),
                        norm.cdf(z_upper) - norm.cdf(z_lower))

        return mass

    def moments_guess(self, sizes, weights):
        """Starting (loc, scale) from weighted representative sizes."""

        values = self.transform(sizes)
        mean = np.average(values, weights=weights)
        sd = np.sqrt(np.average((values - mean)**2, weights=weights))
        return mean, sd

    def transform(self, x):
        return np.asarray(x, dtype=float)

    def __repr__(self):
        return "{}()".format(type(self).__name__)


class LogNormal(SizeDistribution):
    """Lognormal; loc and scale are the mean and sd of log(size)."""

    name = 'lognormal'

    def standardise(self, x, loc, scale):
        with np.errstate(divide='ignore', invalid='ignore'):
            log_x = np.log(np.clip(x, 0.0, np.inf))
        return (log_x - loc) / scale

    def transform(self, x):
        return np.log(np.asarray(x, dtype=float))


class Normal(SizeDistribution):
    """Normal; loc is the mean and scale the sd.

    In 'cv' scale mode, the model derives the sd from the mean as
    sd = mean * exp(log_cv), i.e a constant coefficient of variation.
    """

    name = 'normal'
    scale_modes = ('independent', 'cv')

    def standardise(self, x, loc, scale):
        return (np.asarray(x, dtype=float) - loc) / scale


FAMILIES = {'lognormal': LogNormal, 'normal': Normal}


def get_family(family):
    """Returns a SizeDistribution from a name or an instance."""

    if isinstance(family, SizeDistribution):
        return family
    elif family in FAMILIES:
        return FAMILIES[family]()
    else:
        raise ValueError("family [{}] not recognised, use one of: {}".format(
            family, ", ".join(FAMILIES)))


# Priors
# ------

class NormalPrior(object):
    """Normal prior, optionally truncated to [lower, upper]."""

    def __init__(self, mu=0.0, sigma=1.0, lower=None, upper=None):
        if not sigma > 0:
            raise ValueError("Prior sigma must be positive.")
        if lower is not None and upper is not None and not lower < upper:
            raise ValueError("Prior bounds must satisfy lower < upper.")
        self.mu = float(mu)
        self.sigma = float(sigma)
        self.lower = lower
        self.upper = upper

    def in_bounds(self, x):
        return ((self.lower is None or x >= self.lower)
                and (self.upper is None or x <= self.upper))

    def log_pdf(self, x):
        if not self.in_bounds(x):
            return -np.inf
        return norm.logpdf(x, loc=self.mu, scale=self.sigma)

    def __repr__(self):
        return "NormalPrior(mu={}, sigma={}, lower={}, upper={})".format(
            self.mu, self.sigma, self.lower, self.upper)


class UniformPrior(object):
    """Flat prior on [lower, upper]."""

    def __init__(self, lower, upper):
        if not lower < upper:
            raise ValueError("Prior bounds must satisfy lower < upper.")
        self.lower = float(lower)
        self.upper = float(upper)

    def in_bounds(self, x):
        return self.lower <= x <= self.upper

    def log_pdf(self, x):
        if not self.in_bounds(x):
            return -np.inf
        return -np.log(self.upper - self.lower)

    def __repr__(self):
        return "UniformPrior(lower={}, upper={})".format(self.lower,
                                                         self.upper)
