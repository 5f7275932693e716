"""
Rank statistics for simulation-based calibration.

For a scalar variable with true value t and posterior draws d_1..d_S the
rank is ``count(d_i < t)``, in {0, ..., S}. Under a calibrated inference
procedure ranks are uniform on that set (Talts et al., 2018).

Two numeric-stability policies modify the naive rank:

- clipping: t and the draws are clipped to [lb, ub] before ranking
- truncation: when the true value or any draw sits at or beyond a bound
  after clipping, the rank is recorded as NA instead of a saturated 0 or S

Ties with the true value are broken uniformly at random when a generator
is supplied.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd


RANK_COLUMNS = ["replication_index", "variable", "rank", "num_draws"]


# =============================================================================
# RANK RECORDS
# =============================================================================

@dataclass(frozen=True)
class RankRecord:
    """One (replication, variable) rank. ``rank`` is None for NA."""
    replication_index: int
    variable: str
    rank: Optional[int]
    num_draws: int

    @property
    def is_na(self) -> bool:
        return self.rank is None


class RanksTable:
    """
    Append-only collection of rank records.

    Records of one replication are appended together under a lock, so a
    reader never observes a partially added replication. Once frozen the
    table rejects further appends.

    Parameters
    ----------
    variable_order : sequence of str, optional
        Declared variable order used when rendering the table. Variables
        not listed are placed after, in lexical order.
    """

    def __init__(self, variable_order: Optional[Sequence[str]] = None):
        self._records: List[RankRecord] = []
        self._lock = threading.Lock()
        self._frozen = False
        self._variable_order = list(variable_order) if variable_order is not None else []

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(self.records)

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def records(self) -> List[RankRecord]:
        """Records in deterministic order."""
        with self._lock:
            records = list(self._records)
        return sorted(records, key=self._sort_key)

    @property
    def variables(self) -> List[str]:
        with self._lock:
            seen = {r.variable for r in self._records}
        ordered = [v for v in self._variable_order if v in seen]
        return ordered + sorted(seen - set(ordered))

    def _sort_key(self, record: RankRecord):
        try:
            pos = self._variable_order.index(record.variable)
        except ValueError:
            pos = len(self._variable_order)
        return (record.replication_index, pos, record.variable)

    def extend(self, records: Iterable[RankRecord]) -> None:
        """Atomically append the records of one replication."""
        records = list(records)
        with self._lock:
            if self._frozen:
                raise RuntimeError("RanksTable is frozen; no further records may be added.")
            self._records.extend(records)

    def freeze(self) -> "RanksTable":
        with self._lock:
            self._frozen = True
        return self

    def for_variable(self, variable: str) -> List[RankRecord]:
        return [r for r in self.records if r.variable == variable]

    def to_frame(self) -> pd.DataFrame:
        """
        Row-oriented table: replication_index, variable, rank, num_draws.

        ``rank`` is a nullable integer column with ``pd.NA`` for NA ranks.
        """
        records = self.records
        frame = pd.DataFrame({
            "replication_index": pd.Series([r.replication_index for r in records], dtype="int64"),
            "variable": pd.Series([r.variable for r in records], dtype="object"),
            "rank": pd.array([r.rank for r in records], dtype="Int64"),
            "num_draws": pd.Series([r.num_draws for r in records], dtype="int64"),
        })
        return frame[RANK_COLUMNS]

    def to_csv(self) -> str:
        return self.to_frame().to_csv(index=False)

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, variable_order: Optional[Sequence[str]] = None) -> "RanksTable":
        """Rebuild a frozen table from a frame produced by ``to_frame``."""
        missing = [c for c in RANK_COLUMNS if c not in frame.columns]
        if missing:
            raise ValueError(f"Frame is missing columns: {missing}")
        if variable_order is None:
            variable_order = list(dict.fromkeys(frame["variable"].tolist()))
        table = cls(variable_order=variable_order)
        ranks = pd.array(frame["rank"], dtype="Int64")
        table.extend(
            RankRecord(
                replication_index=int(idx),
                variable=str(var),
                rank=None if pd.isna(rank) else int(rank),
                num_draws=int(s),
            )
            for idx, var, rank, s in zip(
                frame["replication_index"], frame["variable"], ranks, frame["num_draws"]
            )
        )
        return table.freeze()


# =============================================================================
# RANK COMPUTATION
# =============================================================================

def compute_rank(
    true_value: float,
    draws: np.ndarray,
    lb: float = -math.inf,
    ub: float = math.inf,
    truncate: bool = False,
    rng: Optional[np.random.Generator] = None,
) -> Optional[int]:
    """
    Rank of a true value among posterior draws.

    Parameters
    ----------
    true_value : float
        True (simulated) value t.
    draws : array of shape (S,)
        Posterior draws.
    lb, ub : float
        Clipping bounds.
    truncate : bool
        If True, return NA (None) when t or any draw is at or beyond a
        bound after clipping.
    rng : np.random.Generator, optional
        If given, ties with t are broken uniformly at random, so the rank
        is ``count(d < t) + U{0, ..., count(d == t)}``.

    Returns
    -------
    int in {0, ..., S}, or None for NA

    Examples
    --------
    >>> compute_rank(0.25, np.array([0.1, 0.2, 0.3]))
    2
    >>> compute_rank(0.25, np.array([0.1, 0.2, 0.3]), lb=0.5, truncate=True) is None
    True
    """
    draws = np.asarray(draws, dtype=float).reshape(-1)
    t = float(true_value)

    if np.isnan(t) or np.any(np.isnan(draws)):
        return None

    t = float(np.clip(t, lb, ub))
    draws = np.clip(draws, lb, ub)

    if truncate:
        if t <= lb or t >= ub:
            return None
        if np.any(draws <= lb) or np.any(draws >= ub):
            return None

    rank = int(np.sum(draws < t))
    if rng is not None:
        n_ties = int(np.sum(draws == t))
        if n_ties > 0:
            rank += int(rng.integers(0, n_ties + 1))
    return rank


def compute_replication_ranks(
    replication_index: int,
    truth: Dict[str, float],
    draws: pd.DataFrame,
    variables: Sequence[str],
    bounded_variables: Sequence[str] = (),
    lb: float = -math.inf,
    ub: float = math.inf,
    truncate: bool = False,
    rng: Optional[np.random.Generator] = None,
) -> List[RankRecord]:
    """
    Compute one rank record per tracked variable of a replication.

    Parameters
    ----------
    replication_index : int
        Index of the replication.
    truth : dict
        True value per variable (including the ``loglik`` pseudo-variable).
    draws : pd.DataFrame
        Posterior draws, one column per variable, S rows.
    variables : sequence of str
        Tracked variables, in declared order.
    bounded_variables : sequence of str
        Variables to which ``lb``/``ub``/``truncate`` apply.
    lb, ub, truncate, rng
        See ``compute_rank``.

    Returns
    -------
    list of RankRecord
        Variables missing from ``truth`` or ``draws`` get an NA record.
    """
    bounded = set(bounded_variables)
    records = []
    for var in variables:
        if var in draws.columns:
            col = draws[var].to_numpy(dtype=float)
            num_draws = int(col.size)
        else:
            col = None
            num_draws = int(len(draws))

        if col is None or var not in truth:
            rank = None
        elif var in bounded:
            rank = compute_rank(truth[var], col, lb=lb, ub=ub, truncate=truncate, rng=rng)
        else:
            rank = compute_rank(truth[var], col, rng=rng)

        records.append(RankRecord(
            replication_index=int(replication_index),
            variable=var,
            rank=rank,
            num_draws=num_draws,
        ))
    return records


def failed_replication_records(replication_index: int, variables: Sequence[str]) -> List[RankRecord]:
    """
    NA records standing in for a failed replication.

    ``num_draws`` is 0 because no posterior was produced. Scorers exclude
    these records and count them as NA.
    """
    return [
        RankRecord(replication_index=int(replication_index), variable=var, rank=None, num_draws=0)
        for var in variables
    ]
