"""Package for fitting body-size distributions to binned survey counts."""

import os

# Main file structure
HOME_DIR = os.environ.get('HOME', os.path.expanduser('~'))
DATA_DIR = os.environ.get('REEFSIZE_DATA_DIR',
                          "{}/data/reefsize".format(HOME_DIR))
CACHE_DIR = os.environ.get('REEFSIZE_CACHE_DIR',
                           "{}/cache".format(DATA_DIR))

# Directory for saving the figures
FIG_DIR = os.environ.get('REEFSIZE_FIG_DIR', "{}/figures".format(DATA_DIR))

# Sampler defaults
RHAT_THRESHOLD = 1.1        # max acceptable potential scale reduction
DEFAULT_BURN = 1000
DEFAULT_ITERS = 1000
DEFAULT_CHAINS = 2
