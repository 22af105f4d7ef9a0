"""Shared fixtures for the reefsize tests."""

import matplotlib
matplotlib.use('Agg')

import pandas as pd
import pytest

from reefsize.pdf_tools import BinGrid


@pytest.fixture
def scenario_grid():
    return BinGrid([2.5, 5.0, 7.5])


@pytest.fixture
def scenario_obs():
    return pd.DataFrame({'bin_index': [1, 2, 3], 'count': [10, 20, 5]})


@pytest.fixture
def species_grid():
    return BinGrid([2.5, 5.0, 7.5, 10.0, 12.5])


@pytest.fixture
def species_obs():
    """Two species over five bins, with a standardised latitude."""
    return pd.DataFrame({
        'species_name': ['A']*5 + ['B']*5,
        'bin_index': [1, 2, 3, 4, 5]*2,
        'count': [5, 20, 15, 3, 0, 2, 8, 25, 10, 4],
        'lat_z': [-1.0]*5 + [1.0]*5,
    })
