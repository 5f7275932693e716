"""
Utility functions for seeding and prior sampling.
"""

import numpy as np


# Spawn keys below this offset are reserved for replication indices.
_PRECON_STREAM = 2**31


def derive_seed(root_seed, index):
    """
    Derive the seed of one replication from the root seed.

    The mapping is a pure function of ``(root_seed, index)``; it never
    depends on wall-clock time, worker identity or execution order.

    Parameters:
    -----------
    root_seed : int
        Root seed of the calibration run.
    index : int
        Replication index.

    Returns:
    --------
    int : 64-bit seed
    """
    ss = np.random.SeedSequence([int(root_seed), int(index)])
    return int(ss.generate_state(1, dtype=np.uint64)[0])


def precon_seed(root_seed, size=0):
    """Seed used to generate and fit the preconditioning sample."""
    return derive_seed(root_seed, _PRECON_STREAM + int(size))


def replication_streams(seed):
    """
    Split a replication seed into independent streams.

    Returns:
    --------
    tuple of (sim_rng, fit_seed, rank_rng)
        sim_rng : np.random.Generator for truth and pseudo-data
        fit_seed : int passed to the inference oracle
        rank_rng : np.random.Generator for rank tie-breaking
    """
    sim_ss, fit_ss, rank_ss = np.random.SeedSequence(int(seed)).spawn(3)
    fit_seed = int(fit_ss.generate_state(1, dtype=np.uint64)[0])
    return np.random.default_rng(sim_ss), fit_seed, np.random.default_rng(rank_ss)


def sample_t_or_normal(df, scale=1.0, rng=np.random):
    """
    Sample from a Student-t or Normal distribution.

    Uses Student-t when df is in [1, 100], otherwise uses Normal.
    As df -> infinity, Student-t converges to Normal.

    Parameters:
    -----------
    df : float
        Degrees of freedom for Student-t. If df <= 0 or df > 100,
        uses Normal distribution instead.
    scale : float
        Scale parameter (standard deviation for Normal, scale for t).
    rng : numpy random generator
        Random number generator (default: np.random)

    Returns:
    --------
    float : Sampled value with mean 0 and specified scale
    """
    if df <= 0 or df > 100:
        return rng.normal(0, scale)
    else:
        return rng.standard_t(df) * scale


def sample_half_normal(scale=1.0, rng=np.random):
    """Sample the absolute value of a Normal(0, scale) draw."""
    return abs(rng.normal(0, scale))


def chunk_indices(n_items, chunk_size):
    """
    Split ``range(n_items)`` into consecutive chunks.

    Parameters:
    -----------
    n_items : int
        Total number of items.
    chunk_size : int or None
        Items per chunk. None means a single chunk.

    Returns:
    --------
    list of range
    """
    if chunk_size is None or chunk_size >= n_items:
        return [range(n_items)] if n_items > 0 else []
    return [
        range(start, min(start + chunk_size, n_items))
        for start in range(0, n_items, chunk_size)
    ]
