"""
Discrepancy scoring of SBC ranks.

Summarizes how far the empirical distribution of ranks deviates from the
discrete uniform on {0, ..., S} with a simultaneous (multiple-comparison
corrected) statistic. For ranks r_1..r_N the ECDF is evaluated at points
z_k and compared with the Binomial(N, z_k) distribution implied by the
uniform null at every point at once:

    gamma = 2 * min_k min( F_Bin(N * ECDF(z_k); N, z_k),
                           1 - F_Bin(N * ECDF(z_k) - 1; N, z_k) )

The score is log(gamma), computed on the log scale throughout since gamma
can underflow. The reference threshold ``adjust_gamma`` is the alpha
quantile of the same statistic under perfect calibration.

Reference: Säilynoja, Bürkner & Vehtari (2022) "Graphical test for
discrete uniformity and its applications in goodness-of-fit evaluation
and multiple sample comparison"
"""

from __future__ import annotations

import functools
import logging
import math
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import special, stats

from ifs_sbc.core.errors import InsufficientDataError
from ifs_sbc.core.ranks import RanksTable


logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPE
# =============================================================================

@dataclass(frozen=True)
class DiscrepancyResult:
    """
    Calibration score of one variable.

    Attributes
    ----------
    variable : str
        Variable name.
    log_gamma : float
        Log-scale discrepancy score, <= 0. More negative is worse.
    num_valid_ranks : int
        Number of non-NA ranks used.
    num_excluded : int
        Number of NA ranks excluded from the test.
    num_draws : int, optional
        Common number of posterior draws S, or None if S varies.
    log_gamma_threshold : float
        log(adjust_gamma) for the same N and alpha.
    calibrated : bool
        Whether ``log_gamma >= log_gamma_threshold``.
    ks_pvalue, chi2_pvalue : float
        Auxiliary single-test uniformity p-values.
    """
    variable: str
    log_gamma: float
    num_valid_ranks: int
    num_excluded: int = 0
    num_draws: Optional[int] = None
    log_gamma_threshold: float = math.nan
    calibrated: Optional[bool] = None
    ks_pvalue: float = math.nan
    chi2_pvalue: float = math.nan

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# ECDF EVALUATION
# =============================================================================

def _discrete_counts(ranks: np.ndarray, num_draws: int, n_points: Optional[int]) -> Tuple[np.ndarray, np.ndarray]:
    """ECDF counts and null probabilities for ranks on {0, ..., S}."""
    n_values = num_draws + 1
    k = n_values if n_points is None else min(int(n_points), n_values)
    thresholds = np.unique(np.floor(np.arange(1, k) * n_values / k).astype(int))
    thresholds = thresholds[thresholds > 0]
    # count(r < c) = count(r <= c - 1); P(r <= c - 1) = c / (S + 1) exactly
    counts = np.searchsorted(np.sort(ranks), thresholds, side="left")
    return counts, thresholds / n_values


def _continuous_counts(u: np.ndarray, n_points: int) -> Tuple[np.ndarray, np.ndarray]:
    """ECDF counts and null probabilities for continuous PIT values."""
    z = np.arange(1, n_points) / n_points
    counts = np.searchsorted(np.sort(u), z, side="right")
    return counts, z


def _binom_log_tail(k: np.ndarray, n: int, p: np.ndarray, upper: bool) -> np.ndarray:
    """log P(X <= k), or log P(X > k) if ``upper``, for X ~ Binomial(n, p)."""
    k = np.asarray(k)
    p = np.asarray(p, dtype=float)
    if upper:
        out = stats.binom.logsf(k, n, p)
    else:
        out = stats.binom.logcdf(k, n, p)
    # Tails beyond float range: sum the pmf on the log scale
    for i in np.flatnonzero(np.isneginf(out)):
        support = np.arange(k[i] + 1, n + 1) if upper else np.arange(0, k[i] + 1)
        if support.size:
            out[i] = special.logsumexp(stats.binom.logpmf(support, n, p[i]))
    return out


def _log_gamma_from_counts(counts: np.ndarray, n_ranks: int, probs: np.ndarray) -> float:
    if counts.size == 0:
        return 0.0
    log_cdf = _binom_log_tail(counts, n_ranks, probs, upper=False)
    log_sf = _binom_log_tail(counts - 1, n_ranks, probs, upper=True)
    return float(min(0.0, math.log(2.0) + min(np.min(log_cdf), np.min(log_sf))))


def _resolve_points(num_draws: np.ndarray, n_points: Optional[int]) -> Tuple[Optional[int], int]:
    """Common S (or None) and the number of ECDF evaluation intervals."""
    if np.all(num_draws == num_draws[0]):
        s = int(num_draws[0])
        return s, (s + 1 if n_points is None else min(int(n_points), s + 1))
    return None, (int(num_draws.min()) + 1 if n_points is None else int(n_points))


def log_gamma_statistic(
    ranks: Sequence[int],
    num_draws: Union[int, Sequence[int]],
    n_points: Optional[int] = None,
    seed: int = 0,
) -> float:
    """
    Log of the simultaneous ECDF discrepancy statistic gamma.

    Parameters
    ----------
    ranks : sequence of int
        Non-NA ranks.
    num_draws : int or sequence of int
        Number of posterior draws S, either common or per rank.
    n_points : int, optional
        Number of ECDF evaluation intervals K. Defaults to S + 1 (every
        rank value). Capped at S + 1 when S is common.
    seed : int
        Seed for the randomized PIT used when S differs across ranks.

    Returns
    -------
    float : log(gamma), <= 0
    """
    ranks = np.asarray(ranks, dtype=int).reshape(-1)
    if ranks.size == 0:
        raise InsufficientDataError("Cannot compute a discrepancy score from zero ranks.")
    num_draws = np.broadcast_to(np.asarray(num_draws, dtype=int), ranks.shape)
    if np.any(ranks < 0) or np.any(ranks > num_draws):
        raise ValueError("Ranks must lie in [0, num_draws].")

    common, k = _resolve_points(num_draws, n_points)
    if common is not None:
        counts, probs = _discrete_counts(ranks, common, n_points)
    else:
        rng = np.random.default_rng(seed)
        u = (ranks + rng.uniform(size=ranks.size)) / (num_draws + 1)
        counts, probs = _continuous_counts(u, k)
    return _log_gamma_from_counts(counts, ranks.size, probs)


# =============================================================================
# REFERENCE THRESHOLD
# =============================================================================

@functools.lru_cache(maxsize=128)
def _simulated_log_gammas(
    n_ranks: int,
    num_draws: Optional[int],
    n_points: int,
    n_simulations: int,
    seed: int,
) -> np.ndarray:
    rng = np.random.default_rng(seed)
    out = np.empty(n_simulations)
    for m in range(n_simulations):
        if num_draws is None:
            counts, probs = _continuous_counts(rng.uniform(size=n_ranks), n_points)
        else:
            ranks = rng.integers(0, num_draws + 1, size=n_ranks)
            counts, probs = _discrete_counts(ranks, num_draws, n_points)
        out[m] = _log_gamma_from_counts(counts, n_ranks, probs)
    out.setflags(write=False)
    return out


def log_adjust_gamma(
    n_ranks: int,
    num_draws: Optional[int],
    n_points: Optional[int] = None,
    alpha: float = 0.05,
    n_simulations: int = 1000,
    seed: int = 0,
) -> float:
    """
    Log of the simultaneous-level reference threshold.

    Simulates ``n_simulations`` sets of ``n_ranks`` perfectly calibrated
    ranks and returns the alpha quantile of their log(gamma). A score below
    this value rejects uniformity at simultaneous level alpha.

    Parameters
    ----------
    n_ranks : int
        Number of valid ranks N.
    num_draws : int or None
        Common S, or None for continuous PIT values (varying S).
    n_points : int, optional
        Number of ECDF evaluation intervals. Defaults to S + 1; required
        when ``num_draws`` is None.
    alpha : float
        Simultaneous miscoverage level.
    n_simulations : int
        Number of simulated calibrated rank sets.
    seed : int
        Seed of the simulation.

    Returns
    -------
    float
    """
    if n_ranks < 1:
        raise InsufficientDataError("Cannot compute a threshold for zero ranks.")
    if not (0.0 < alpha < 1.0):
        raise ValueError(f"alpha must be in (0, 1), got {alpha}.")
    if num_draws is None:
        if n_points is None:
            raise ValueError("n_points is required when num_draws is None.")
        k = int(n_points)
    else:
        k = int(num_draws) + 1 if n_points is None else min(int(n_points), int(num_draws) + 1)
    sims = _simulated_log_gammas(int(n_ranks), num_draws if num_draws is None else int(num_draws),
                                 k, int(n_simulations), int(seed))
    return float(np.quantile(sims, alpha))


def adjust_gamma(
    n_ranks: int,
    num_draws: Optional[int],
    n_points: Optional[int] = None,
    alpha: float = 0.05,
    n_simulations: int = 1000,
    seed: int = 0,
) -> float:
    """Reference threshold on the linear scale; see ``log_adjust_gamma``."""
    return math.exp(log_adjust_gamma(n_ranks, num_draws, n_points, alpha, n_simulations, seed))


# =============================================================================
# SINGLE-TEST UNIFORMITY CHECKS
# =============================================================================

def sbc_uniformity_tests(
    ranks: np.ndarray,
    num_draws: Union[int, np.ndarray],
    n_bins: int = 20,
) -> Dict[str, float]:
    """
    Compute single-test uniformity checks for SBC ranks.

    Parameters:
    -----------
    ranks : array of shape (n_sims,)
        SBC ranks in {0, 1, ..., num_draws}
    num_draws : int or array
        Number of posterior draws (determines rank range)
    n_bins : int
        Number of bins for chi-squared test (default: 20)

    Returns:
    --------
    dict with:
        - sbc_ks_stat, sbc_ks_pvalue: Kolmogorov-Smirnov test
        - sbc_chi2_stat, sbc_chi2_pvalue: Chi-squared test on binned ranks
    """
    ranks = np.asarray(ranks, dtype=float).reshape(-1)
    n_sims = len(ranks)

    if n_sims == 0:
        return {
            "sbc_ks_stat": np.nan,
            "sbc_ks_pvalue": np.nan,
            "sbc_chi2_stat": np.nan,
            "sbc_chi2_pvalue": np.nan,
        }

    num_draws = np.broadcast_to(np.asarray(num_draws, dtype=float), ranks.shape)

    # Continuity correction maps discrete ranks {0, ..., S} into (0, 1)
    normalized_ranks = (ranks + 0.5) / (num_draws + 1)
    ks_stat, ks_pvalue = stats.kstest(normalized_ranks, "uniform")

    if np.all(num_draws == num_draws[0]):
        s = int(num_draws[0])
        n_bins_actual = min(n_bins, s + 1)
        hist, _ = np.histogram(ranks, bins=n_bins_actual, range=(-0.5, s + 0.5))
    else:
        n_bins_actual = n_bins
        hist, _ = np.histogram(normalized_ranks, bins=n_bins_actual, range=(0.0, 1.0))
    expected_per_bin = n_sims / n_bins_actual

    # Chi-squared is only valid with expected counts >= 5
    if expected_per_bin >= 5 and n_bins_actual > 1:
        chi2_stat, chi2_pvalue = stats.chisquare(hist, f_exp=[expected_per_bin] * n_bins_actual)
    else:
        chi2_stat, chi2_pvalue = np.nan, np.nan

    return {
        "sbc_ks_stat": float(ks_stat),
        "sbc_ks_pvalue": float(ks_pvalue),
        "sbc_chi2_stat": float(chi2_stat),
        "sbc_chi2_pvalue": float(chi2_pvalue),
    }


# =============================================================================
# SCORING
# =============================================================================

def _as_frame(ranks: Union[RanksTable, pd.DataFrame]) -> pd.DataFrame:
    if isinstance(ranks, RanksTable):
        return ranks.to_frame()
    return ranks


def score_variable(
    ranks: Union[RanksTable, pd.DataFrame],
    variable: str,
    alpha: float = 0.05,
    n_points: Optional[int] = None,
    n_simulations: int = 1000,
    seed: int = 0,
    max_excluded_fraction: float = 0.1,
) -> DiscrepancyResult:
    """
    Score the calibration of one variable.

    NA ranks are excluded from N and reported in ``num_excluded``; this
    includes the records of failed replications. S is taken per record.

    Parameters
    ----------
    ranks : RanksTable or pd.DataFrame
        Ranks table (or its frame).
    variable : str
        Variable to score.
    alpha : float
        Simultaneous miscoverage level of the reference threshold.
    n_points : int, optional
        Number of ECDF evaluation intervals.
    n_simulations : int
        Simulations used for the reference threshold.
    seed : int
        Seed for the randomized PIT and threshold simulation.
    max_excluded_fraction : float
        Log a warning when the share of NA ranks exceeds this value.

    Returns
    -------
    DiscrepancyResult

    Raises
    ------
    InsufficientDataError
        If the variable has no valid ranks.
    """
    frame = _as_frame(ranks)
    sub = frame[frame["variable"] == variable]
    valid = sub[sub["rank"].notna()]
    n_valid = int(len(valid))
    n_excluded = int(len(sub) - n_valid)

    if n_valid == 0:
        raise InsufficientDataError(
            f"Variable '{variable}' has no valid ranks ({n_excluded} NA excluded)."
        )
    if n_excluded / len(sub) > max_excluded_fraction:
        logger.warning(
            "Variable '%s': %d of %d ranks are NA and excluded; the test is weakened.",
            variable, n_excluded, len(sub),
        )

    rank_values = valid["rank"].astype("int64").to_numpy()
    num_draws = valid["num_draws"].astype("int64").to_numpy()

    log_gamma = log_gamma_statistic(rank_values, num_draws, n_points=n_points, seed=seed)
    common, k = _resolve_points(num_draws, n_points)
    threshold = log_adjust_gamma(
        n_valid, common, n_points=k, alpha=alpha, n_simulations=n_simulations, seed=seed
    )
    tests = sbc_uniformity_tests(rank_values, num_draws)

    return DiscrepancyResult(
        variable=variable,
        log_gamma=log_gamma,
        num_valid_ranks=n_valid,
        num_excluded=n_excluded,
        num_draws=common,
        log_gamma_threshold=threshold,
        calibrated=bool(log_gamma >= threshold),
        ks_pvalue=tests["sbc_ks_pvalue"],
        chi2_pvalue=tests["sbc_chi2_pvalue"],
    )


def score_ranks_table(
    ranks: Union[RanksTable, pd.DataFrame],
    variables: Optional[List[str]] = None,
    skip_empty: bool = False,
    **kwargs,
) -> pd.DataFrame:
    """
    Score every variable of a ranks table.

    Parameters
    ----------
    ranks : RanksTable or pd.DataFrame
        Ranks table (or its frame).
    variables : list of str, optional
        Variables to score. Defaults to all variables in the table.
    skip_empty : bool
        Skip variables without valid ranks instead of raising.
    **kwargs
        Forwarded to ``score_variable``.

    Returns
    -------
    pd.DataFrame with one row per variable
    """
    if variables is None:
        if isinstance(ranks, RanksTable):
            variables = ranks.variables
        else:
            variables = list(dict.fromkeys(ranks["variable"].tolist()))

    rows = []
    for var in variables:
        try:
            rows.append(score_variable(ranks, var, **kwargs).to_dict())
        except InsufficientDataError:
            if not skip_empty:
                raise
            logger.warning("Skipping variable '%s': no valid ranks.", var)

    columns = list(DiscrepancyResult.__dataclass_fields__)
    return pd.DataFrame(rows, columns=columns)
