"""
SBC Visualization Functions.

Plotting utilities for IFS-SBC diagnostics: rank histograms, ECDF
difference plots with simultaneous bands, per-variable grids and the
discrepancy score across preconditioning sample sizes.

Reference: Talts et al. (2018) "Validating Bayesian Inference Algorithms
with Simulation-Based Calibration"
"""

import numpy as np
import matplotlib.pyplot as plt
from typing import Optional, Tuple, Union, List
from scipy import stats as scipy_stats
import pandas as pd

from ifs_sbc.core.discrepancy import adjust_gamma
from ifs_sbc.core.ranks import RanksTable


# =============================================================================
# GRID LAYOUT HELPER
# =============================================================================

def _create_variable_grid(
    n_variables: int,
    max_variables: int = 16,
    max_cols: int = 4,
    figsize_per_plot: Tuple[float, float] = (3.0, 3.0),
) -> Tuple[plt.Figure, np.ndarray, int, int, int]:
    """
    Create a subplot grid with one panel per variable.

    Returns
    -------
    tuple of (fig, axes_2d, n_vars, n_rows, n_cols)
    """
    n_vars = min(n_variables, max_variables)
    n_cols = min(max_cols, n_vars)
    n_rows = int(np.ceil(n_vars / n_cols))

    fig, axes = plt.subplots(
        n_rows, n_cols,
        figsize=(figsize_per_plot[0] * n_cols, figsize_per_plot[1] * n_rows),
    )
    axes = np.atleast_2d(axes)

    return fig, axes, n_vars, n_rows, n_cols


def _hide_empty_subplots(axes: np.ndarray, n_used: int, n_rows: int, n_cols: int) -> None:
    for idx in range(n_used, n_rows * n_cols):
        row, col = divmod(idx, n_cols)
        axes[row, col].set_visible(False)


def _valid_ranks(frame: pd.DataFrame, variable: str) -> Tuple[np.ndarray, np.ndarray]:
    """Non-NA ranks of one variable and the S of each record."""
    sub = frame[(frame["variable"] == variable) & frame["rank"].notna()]
    return sub["rank"].astype("int64").to_numpy(), sub["num_draws"].astype("int64").to_numpy()


# =============================================================================
# DIAGNOSTIC PLOTS
# =============================================================================

def plot_sbc_rank_histogram(
    ranks: np.ndarray,
    n_post_draws: Union[int, np.ndarray],
    n_bins: int = 20,
    ax: Optional[plt.Axes] = None,
    title: str = "SBC Rank Histogram",
    color: str = "#132a70",
    show_ci: bool = True,
    ci_level: float = 0.99
) -> plt.Axes:
    """
    Plot histogram of SBC ranks with expected uniform distribution.

    Interpretation:
    - Uniform = well-calibrated
    - U-shape = posterior underdispersed (too narrow/confident)
    - Inverted U (hump) = posterior overdispersed (too wide/uncertain)
    - Left-skewed = systematic overestimation
    - Right-skewed = systematic underestimation

    Parameters:
    -----------
    ranks : array of shape (n_sims,)
        SBC ranks in {0, 1, ..., n_post_draws}
    n_post_draws : int or array of shape (n_sims,)
        Number of posterior draws, common or per rank. Each rank is
        plotted as the fraction rank / n_post_draws.
    n_bins : int
        Number of histogram bins (default: 20)
    ax : matplotlib Axes, optional
        Axes to plot on. If None, creates new figure.
    title : str
        Plot title
    color : str
        Histogram bar color
    show_ci : bool
        Whether to show the per-bin binomial interval band
    ci_level : float
        Confidence level for the band (default: 0.99)

    Returns:
    --------
    matplotlib Axes
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 5))

    ranks = np.asarray(ranks, dtype=float)
    n_post_draws = np.asarray(n_post_draws, dtype=float)
    if n_post_draws.size:
        n_bins = min(n_bins, int(n_post_draws.min()) + 1)
    n_sims = len(ranks)
    expected_per_bin = n_sims / n_bins

    ax.hist(
        ranks / n_post_draws,
        bins=n_bins,
        range=(0, 1),
        edgecolor='white',
        alpha=0.95,
        color=color,
        label='Observed'
    )

    if show_ci and n_sims > 0:
        p = 1 / n_bins
        tail = (1 - ci_level) / 2
        ci_low = scipy_stats.binom.ppf(tail, n_sims, p)
        ci_high = scipy_stats.binom.ppf(1 - tail, n_sims, p)
        ax.axhspan(
            ci_low,
            ci_high,
            alpha=0.3,
            facecolor='grey',
            label=f'{int(ci_level*100)}% CI'
        )

    ax.axhline(
        expected_per_bin,
        color='grey',
        linestyle='-',
        linewidth=1,
        alpha=0.9,
        zorder=2
    )

    ax.set_xlabel('Rank statistic', fontsize=16)
    ax.set_xlim(0, 1)
    ax.set_title(title, fontsize=18)
    ax.tick_params(labelsize=12)
    ax.get_yaxis().set_ticks([])

    return ax


def plot_sbc_ecdf_diff(
    ranks: np.ndarray,
    n_post_draws: int,
    ax: Optional[plt.Axes] = None,
    title: str = "SBC ECDF Difference",
    color: str = "#132a70",
    show_band: bool = True,
    alpha_level: float = 0.05,
    n_simulations: int = 1000,
    show_legend: bool = True
) -> plt.Axes:
    """
    Plot the rank ECDF minus the uniform CDF with a simultaneous band.

    The band is the pointwise binomial interval at level ``adjust_gamma``,
    which makes its coverage simultaneous over all evaluation points
    (Säilynoja et al., 2022). A calibrated posterior stays inside it with
    probability 1 - alpha_level.

    Parameters:
    -----------
    ranks : array of shape (n_sims,)
        SBC ranks in {0, 1, ..., n_post_draws}
    n_post_draws : int
        Number of posterior draws (determines rank range)
    ax : matplotlib Axes, optional
        Axes to plot on. If None, creates new figure.
    title : str
        Plot title
    color : str
        Line color
    show_band : bool
        Whether to show the simultaneous band
    alpha_level : float
        Simultaneous miscoverage level of the band
    n_simulations : int
        Simulations used to calibrate the band
    show_legend : bool
        Whether to show legend

    Returns:
    --------
    matplotlib Axes
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 5))

    ranks = np.asarray(ranks, dtype=int)
    n_sims = len(ranks)
    s = int(n_post_draws)

    # ECDF evaluated at the right edge of every rank value
    z = np.arange(1, s + 2) / (s + 1)
    counts = np.bincount(ranks, minlength=s + 1)[: s + 1]
    ecdf = np.cumsum(counts) / max(n_sims, 1)

    xx = np.concatenate([[0.0], np.repeat(z, 2)[:-1]])
    yy = np.repeat(ecdf - z, 2)

    if show_band and n_sims > 0:
        gamma = adjust_gamma(n_sims, s, alpha=alpha_level, n_simulations=n_simulations)
        lower = scipy_stats.binom.ppf(gamma / 2, n_sims, z) / n_sims - z
        upper = scipy_stats.binom.ppf(1 - gamma / 2, n_sims, z) / n_sims - z
        ax.fill_between(
            np.concatenate([[0.0], z]),
            np.concatenate([[0.0], lower]),
            np.concatenate([[0.0], upper]),
            step='pre',
            color='grey',
            alpha=0.2,
            label=rf"{int((1-alpha_level)*100)}$\%$ Simultaneous Band"
        )

    ax.plot(xx, yy, color=color, alpha=0.95, label='Rank ECDF')
    ax.axhline(0, color='grey', linewidth=0.8)

    ax.set_xlabel('Fractional rank statistic', fontsize=16)
    ax.set_ylabel('ECDF Difference', fontsize=16)
    ax.set_xlim(0, 1)
    ax.set_title(title, fontsize=18)
    ax.tick_params(labelsize=12)

    if show_legend:
        ax.legend(loc='upper right', fontsize=14)

    return ax


def plot_ranks_by_variable(
    ranks: Union[RanksTable, pd.DataFrame],
    variables: Optional[List[str]] = None,
    kind: str = "hist",
    max_variables: int = 16,
    figsize_per_plot: tuple = (4, 3)
) -> plt.Figure:
    """
    Plot one rank diagnostic per variable in a grid.

    Parameters:
    -----------
    ranks : RanksTable or DataFrame
        Ranks table from run_ifs_sbc() or its frame.
    variables : list of str, optional
        Variables to show. Defaults to all variables of the table.
    kind : str
        "hist" for rank histograms or "ecdf" for ECDF difference plots.
        Histograms place each rank at rank / S of its own record; ECDF
        plots require every record of a variable to share S.
    max_variables : int
        Maximum number of panels.
    figsize_per_plot : tuple
        Size per subplot

    Returns:
    --------
    matplotlib Figure

    Example:
    --------
    >>> result = run_ifs_sbc(...)
    >>> fig = plot_ranks_by_variable(result.ranks, kind="ecdf")
    """
    if kind not in ("hist", "ecdf"):
        raise ValueError(f"kind must be 'hist' or 'ecdf', got '{kind}'")

    frame = ranks.to_frame() if isinstance(ranks, RanksTable) else ranks
    if variables is None:
        variables = list(dict.fromkeys(frame["variable"].tolist()))
    if not variables:
        raise ValueError("No variables to plot")

    valid = {var: _valid_ranks(frame, var) for var in variables[:max_variables]}
    if kind == "ecdf":
        mixed = [var for var, (_, s) in valid.items() if s.size and np.any(s != s[0])]
        if mixed:
            raise ValueError(
                f"ECDF plots need a common number of draws; variables {mixed} mix several."
            )

    fig, axes, n_vars, n_rows, n_cols = _create_variable_grid(
        len(variables), max_variables, max_cols=3,
        figsize_per_plot=figsize_per_plot,
    )

    for idx, var in enumerate(variables[:n_vars]):
        row, col = divmod(idx, n_cols)
        ax = axes[row, col]
        values, s = valid[var]
        if values.size == 0:
            ax.text(0.5, 0.5, "no valid ranks", ha='center', va='center', transform=ax.transAxes)
            ax.set_title(var, fontsize=12)
            continue
        if kind == "hist":
            plot_sbc_rank_histogram(values, s, ax=ax, title=var, n_bins=15)
        else:
            plot_sbc_ecdf_diff(values, int(s[0]), ax=ax, title=var, show_legend=False)
        ax.title.set_fontsize(12)
        ax.xaxis.label.set_fontsize(10)
        ax.yaxis.label.set_fontsize(10)

    _hide_empty_subplots(axes, n_vars, n_rows, n_cols)

    plt.tight_layout()
    return fig


def plot_precon_sweep(
    scores: pd.DataFrame,
    variables: Optional[List[str]] = None,
    ax: Optional[plt.Axes] = None,
    title: str = "Calibration vs. preconditioning size",
    show_threshold: bool = True
) -> plt.Axes:
    """
    Plot log(gamma) against preconditioning sample size per variable.

    Parameters:
    -----------
    scores : DataFrame
        Output of run_precon_sweep().
    variables : list of str, optional
        Variables to show. Defaults to all.
    ax : matplotlib Axes, optional
        Axes to plot on. If None, creates new figure.
    title : str
        Plot title
    show_threshold : bool
        Draw the mean simultaneous rejection threshold as a dashed line.

    Returns:
    --------
    matplotlib Axes
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 5))

    if variables is None:
        variables = list(dict.fromkeys(scores["variable"].tolist()))

    for var in variables:
        sub = scores[scores["variable"] == var].sort_values("precon_size")
        ax.plot(sub["precon_size"], sub["log_gamma"], marker='o', label=var)

    if show_threshold and "log_gamma_threshold" in scores:
        ax.axhline(
            scores["log_gamma_threshold"].mean(),
            color='grey',
            linestyle='--',
            linewidth=1,
            label='Rejection threshold'
        )

    ax.set_xlabel('Preconditioning sample size', fontsize=14)
    ax.set_ylabel(r'$\log \gamma$', fontsize=14)
    ax.set_title(title, fontsize=16)
    ax.legend(fontsize=9)

    return ax
