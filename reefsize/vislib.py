"""Library of pure visualisation routines."""

import os

import numpy as np
import matplotlib.pyplot as plt
from corner import corner

from . import FIG_DIR


# Formatting
# ----------

# A scale factor for figure sizes to allow changing between
# slide size figures, paper size figures, and poster size
fig_scale = 1.0
font_size = 11


# Saving
# ------

def save_figure(fig, filename, fig_dir=None, dpi=200):
    """Saves fig as fig_dir/filename and returns the path.

    Args:
        fig (plt.Figure)
        filename (str): e.g 'size_fits.pdf'
        fig_dir (str=None): default is FIG_DIR
        dpi (int=200)
    """

    fig_dir = FIG_DIR if fig_dir is None else fig_dir
    os.makedirs(fig_dir, exist_ok=True)
    path = "{}/{}".format(fig_dir, filename)
    fig.savefig(path, dpi=dpi, bbox_inches='tight')
    return path


# Bin plots
# ---------

def plot_bin_probs(observed, predicted, bin_grid, title=None, ax=None,
                   show=False, print_values=False):
    """Observed bin fractions as bars, predicted probabilities as points.

    Args:
        observed (np.ndarray, K-dim): observed fraction per bin
        predicted (np.ndarray, K-dim): predicted probability per bin
        bin_grid (pdf_tools.BinGrid)
        title (str=None)
        ax (plt.Axes=None): if plotting on an existing axis is desired
        show (bool=False)
        print_values (bool=False): print a table of both

    Returns:
        ax
    """

    observed = np.asarray(observed, dtype=float)
    predicted = np.asarray(predicted, dtype=float)

    if len(observed) != bin_grid.n_bins or len(predicted) != bin_grid.n_bins:
        raise ValueError("observed and predicted must have one value per "
                         "bin ({}).".format(bin_grid.n_bins))

    if ax is None:
        fig, ax = plt.subplots(figsize=[6*fig_scale, 4*fig_scale])
    else:
        fig = ax.figure

    x = np.arange(bin_grid.n_bins)
    ax.bar(x, observed, width=0.8, color='lightgray', edgecolor='gray',
           label='observed')
    ax.plot(x, predicted, 'o-', color='C0', label='predicted')

    ax.set_xticks(x)
    ax.set_xticklabels(bin_grid.labels, rotation=45, ha='right',
                       fontsize=font_size*0.8)
    ax.set_xlabel('Size class, cm', fontsize=font_size)
    ax.set_ylabel('Probability', fontsize=font_size)
    ax.legend(fontsize=font_size*0.8)
    if title is not None:
        ax.set_title(title, fontsize=font_size)

    if print_values:
        for label, o, p in zip(bin_grid.labels, observed, predicted):
            print("{:>14}: observed {:.3f}, predicted {:.3f}".format(
                label, o, p))

    if show:
        plt.show()

    return ax


def plot_posterior(samples, labels=None, show=False, **corner_kwargs):
    """Triangle plot of posterior draws, with the medians marked.

    Returns:
        fig
    """

    samples = np.asarray(samples, dtype=float)
    medians = np.median(samples, axis=0)
    fig = corner(samples, labels=labels, truths=medians, **corner_kwargs)

    if show:
        plt.show()

    return fig
