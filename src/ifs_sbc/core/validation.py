"""
IFS-SBC Validation Pipeline.

Runs simulation-based calibration with optional inverse forward sampling
(IFS) preconditioning, for any inference oracle.

For each replication: simulate -> infer -> rank. Replications are
independent, dispatched to a worker pool, and aggregated into a single
append-only RanksTable. Replication seeds are derived from the root seed and
the replication index only, so results do not depend on worker count,
scheduling order or batch size.

Usage:
------
from ifs_sbc.core.validation import run_ifs_sbc

result = run_ifs_sbc(
    spec=SimulationSpec("gamma", sample_size=50, covariate_count=15),
    oracle=my_oracle,
    config=SBCConfig(n_sims=200, root_seed=42, lb=1e-12, ub=1e300),
    precon_sample=real_data,
)
scores = score_ranks_table(result.ranks)
"""

import dataclasses
import logging
import time
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from ifs_sbc.core.discrepancy import score_ranks_table
from ifs_sbc.core.errors import ConfigurationError, InferenceFailure
from ifs_sbc.core.infrastructure import LOGLIK_VARIABLE, PriorConfig, SBCConfig, SimulationSpec
from ifs_sbc.core.oracle import InferenceOracle, PreconditionedPrior
from ifs_sbc.core.ranks import (
    RankRecord,
    RanksTable,
    compute_replication_ranks,
    failed_replication_records,
)
from ifs_sbc.core.utils import chunk_indices, derive_seed, precon_seed, replication_streams
from ifs_sbc.models.glm.families import (
    log_likelihood,
    simulate_dataset,
    simulate_response,
    validate_simulation,
)


logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"


# =============================================================================
# REPLICATION STATE MACHINE
# =============================================================================

class ReplicationStatus(str, Enum):
    PENDING = "pending"
    SIMULATED = "simulated"
    FITTED = "fitted"
    RANKED = "ranked"
    FAILED = "failed"


_FORWARD = [
    ReplicationStatus.PENDING,
    ReplicationStatus.SIMULATED,
    ReplicationStatus.FITTED,
    ReplicationStatus.RANKED,
]


@dataclass
class Replication:
    """
    One simulate -> infer -> rank cycle.

    Status moves strictly forward along pending -> simulated -> fitted ->
    ranked, or to failed from any non-terminal state.
    """
    index: int
    seed: int
    status: ReplicationStatus = ReplicationStatus.PENDING
    truth: Optional[Dict[str, float]] = None
    truth_loglik: Optional[float] = None
    data: Optional[Dict[str, np.ndarray]] = None
    posterior_draws: Optional[pd.DataFrame] = None
    failure_reason: Optional[str] = None
    ranks: List[RankRecord] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def terminal(self) -> bool:
        return self.status in (ReplicationStatus.RANKED, ReplicationStatus.FAILED)

    def advance(self, status: ReplicationStatus) -> None:
        """Move to the next state on the success path."""
        if self.terminal:
            raise ValueError(f"Replication {self.index} is already {self.status.value}.")
        if status is ReplicationStatus.FAILED:
            raise ValueError("Use fail() to mark a replication as failed.")
        if _FORWARD.index(status) != _FORWARD.index(self.status) + 1:
            raise ValueError(
                f"Invalid transition {self.status.value} -> {status.value} "
                f"for replication {self.index}."
            )
        self.status = status

    def fail(self, reason: str) -> None:
        if self.terminal:
            raise ValueError(f"Replication {self.index} is already {self.status.value}.")
        self.status = ReplicationStatus.FAILED
        self.failure_reason = reason


def _failure_reason(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


# =============================================================================
# REPLICATION RUNNER
# =============================================================================

def run_replication(
    index: int,
    seed: int,
    spec: SimulationSpec,
    oracle: InferenceOracle,
    prior: PriorConfig,
    variables: Sequence[str],
    precon: Optional[PreconditionedPrior] = None,
    covariates: Optional[np.ndarray] = None,
    bounded_variables: Sequence[str] = (),
    lb: float = -np.inf,
    ub: float = np.inf,
    truncate: bool = False,
    tie_break: bool = True,
    keep_draws: bool = True,
) -> Replication:
    """
    Execute one replication and return it in a terminal state.

    Failures of the simulation or the oracle are recorded on the returned
    replication and never raised; ConfigurationError always propagates.

    Parameters
    ----------
    index, seed : int
        Replication index and its derived seed.
    spec : SimulationSpec
        Generator configuration.
    oracle : InferenceOracle
        Inference oracle.
    prior : PriorConfig
        Declared prior, used to draw truths and to fit when ``precon`` is
        None.
    variables : sequence of str
        Tracked variables, possibly including ``loglik``.
    precon : PreconditionedPrior, optional
        If given, truths are drawn from it and fits are updates of it.
    covariates : np.ndarray, optional
        Real covariate pool for the generator.
    bounded_variables, lb, ub, truncate
        Numeric-stability policy of the rank computation.
    tie_break : bool
        Break ties uniformly at random.
    keep_draws : bool
        Keep posterior draws and pseudo-data after ranking.

    Returns
    -------
    Replication
    """
    rep = Replication(index=int(index), seed=int(seed))
    t0 = time.time()
    sim_rng, fit_seed, rank_rng = replication_streams(seed)

    # Step 1: Simulate
    try:
        if precon is not None:
            params = precon.draw_truth(prior.parameter_names(spec), sim_rng)
            data = simulate_response(spec, params, sim_rng, covariates=covariates, prior=prior)
        else:
            params, data = simulate_dataset(spec, prior, sim_rng, covariates=covariates)
    except ConfigurationError:
        raise
    except Exception as exc:
        rep.fail(_failure_reason(exc))
        logger.warning("Replication %d failed during simulation: %s", index, rep.failure_reason)
        rep.elapsed = time.time() - t0
        return rep
    rep.truth = params
    rep.data = data
    rep.advance(ReplicationStatus.SIMULATED)

    # Step 2: Infer
    try:
        if precon is not None:
            handle = precon.update(data, seed=fit_seed)
        else:
            handle = oracle.fit(data, prior, seed=fit_seed)
        if not handle.converged:
            raise InferenceFailure(handle.message or "did not converge")

        available = [v for v in variables if v != LOGLIK_VARIABLE and v in handle.variables]
        draws = pd.DataFrame(oracle.posterior_draws(handle, available), columns=available)
        if LOGLIK_VARIABLE in variables:
            loglik_draws = np.asarray(oracle.pointwise_loglik(handle, data), dtype=float).reshape(-1)
            if loglik_draws.size != len(draws) and available:
                raise InferenceFailure(
                    f"pointwise_loglik returned {loglik_draws.size} values for {len(draws)} draws"
                )
            if not available:
                draws = pd.DataFrame(index=range(loglik_draws.size))
            draws[LOGLIK_VARIABLE] = loglik_draws
            rep.truth_loglik = log_likelihood(spec, data, params, prior=prior)
    except ConfigurationError:
        raise
    except Exception as exc:
        rep.fail(_failure_reason(exc))
        logger.warning("Replication %d failed during inference: %s", index, rep.failure_reason)
        rep.elapsed = time.time() - t0
        return rep
    rep.posterior_draws = draws
    rep.advance(ReplicationStatus.FITTED)

    # Step 3: Rank
    truth = dict(params)
    if rep.truth_loglik is not None:
        truth[LOGLIK_VARIABLE] = rep.truth_loglik
    rep.ranks = compute_replication_ranks(
        replication_index=rep.index,
        truth=truth,
        draws=draws,
        variables=variables,
        bounded_variables=bounded_variables,
        lb=lb,
        ub=ub,
        truncate=truncate,
        rng=rank_rng if tie_break else None,
    )
    rep.advance(ReplicationStatus.RANKED)

    if not keep_draws:
        rep.posterior_draws = None
        rep.data = None
    rep.elapsed = time.time() - t0
    return rep


@dataclass
class _ReplicationTask:
    """Everything a worker needs to run a replication; picklable."""
    spec: SimulationSpec
    oracle: InferenceOracle
    prior: PriorConfig
    variables: List[str]
    precon: Optional[PreconditionedPrior]
    covariates: Optional[np.ndarray]
    bounded_variables: List[str]
    lb: float
    ub: float
    truncate: bool
    tie_break: bool
    keep_draws: bool

    def __call__(self, index: int, seed: int) -> Replication:
        kwargs = {f.name: getattr(self, f.name) for f in dataclasses.fields(self)}
        return run_replication(index, seed, **kwargs)


def _execute(task: _ReplicationTask, index: int, seed: int) -> Replication:
    return task(index, seed)


# =============================================================================
# BATCH RESULT
# =============================================================================

@dataclass
class BatchResult:
    """
    Outcome of one calibration invocation.

    Attributes
    ----------
    ranks : RanksTable
        Frozen table of rank records of all ranked and failed
        replications. A failed replication contributes one NA record per
        tracked variable with ``num_draws`` 0.
    replications : list of Replication
        All replications ordered by index, including failed ones.
    variables : list of str
        Tracked variables.
    cancelled : bool
        Whether the run was cancelled before completion.
    timing : dict
        Wall-clock timing information.
    precon_size : int, optional
        Size of the preconditioning sample, if any.
    """
    ranks: RanksTable
    replications: List[Replication]
    variables: List[str]
    cancelled: bool = False
    timing: Dict[str, float] = field(default_factory=dict)
    precon_size: Optional[int] = None

    def _count(self, status: ReplicationStatus) -> int:
        return sum(1 for r in self.replications if r.status is status)

    @property
    def n_ranked(self) -> int:
        return self._count(ReplicationStatus.RANKED)

    @property
    def n_failed(self) -> int:
        return self._count(ReplicationStatus.FAILED)

    @property
    def n_pending(self) -> int:
        return self._count(ReplicationStatus.PENDING)

    @property
    def failures(self) -> pd.DataFrame:
        """One row per failed replication."""
        rows = [
            {"replication_index": r.index, "status": r.status.value, "failure_reason": r.failure_reason}
            for r in self.replications
            if r.status is ReplicationStatus.FAILED
        ]
        return pd.DataFrame(rows, columns=["replication_index", "status", "failure_reason"])

    @property
    def failure_summary(self) -> Dict[str, int]:
        """Histogram of failure reasons."""
        counts = Counter(
            r.failure_reason for r in self.replications if r.status is ReplicationStatus.FAILED
        )
        return dict(sorted(counts.items()))


# =============================================================================
# WORKER POOL
# =============================================================================

class _WorkerPool:
    """
    Executor wrapper that tolerates abandoned (timed-out) tasks.

    A timed-out task keeps its worker busy until it returns. Once every
    worker is held by an abandoned task the executor is replaced so the
    remaining replications can still run. An executor that still holds an
    unfinished abandoned task is never joined on shutdown.
    """

    def __init__(self, kind: str, n_workers: int):
        self.kind = kind
        self.n_workers = n_workers
        self._abandoned = []
        self._retired = []
        self.executor = self._new_executor()

    def _new_executor(self):
        if self.kind == "process":
            return ProcessPoolExecutor(max_workers=self.n_workers)
        return ThreadPoolExecutor(max_workers=self.n_workers, thread_name_prefix="ifs-sbc")

    def submit(self, fn, *args):
        return self.executor.submit(fn, *args)

    @property
    def stuck(self) -> bool:
        self._abandoned = [f for f in self._abandoned if not f.done()]
        return bool(self._abandoned)

    def abandon(self, future) -> None:
        future.cancel()
        self._abandoned.append(future)
        self._abandoned = [f for f in self._abandoned if not f.done()]
        if len(self._abandoned) >= self.n_workers:
            logger.warning(
                "All %d workers are held by timed-out replications; starting a new pool.",
                self.n_workers,
            )
            self.executor.shutdown(wait=False, cancel_futures=True)
            self._retired.append(self.executor)
            self._abandoned = []
            self.executor = self._new_executor()

    def shutdown(self, wait_for_workers: bool = True) -> None:
        if wait_for_workers and self.stuck:
            logger.warning(
                "Leaving %d timed-out replication(s) running in the background.",
                len(self._abandoned),
            )
            wait_for_workers = False
        self.executor.shutdown(wait=wait_for_workers, cancel_futures=True)


def _poll_interval(timeout: Optional[float], cancellable: bool) -> Optional[float]:
    if timeout is not None:
        return min(timeout / 4.0, 0.5)
    if cancellable:
        return 0.1
    return None


def _run_batch(
    pool: _WorkerPool,
    task: _ReplicationTask,
    indices: Sequence[int],
    replications: List[Replication],
    table: RanksTable,
    config: SBCConfig,
    cancel_event=None,
) -> bool:
    """
    Run one batch of replications. Returns True if cancelled.

    Futures are submitted in a sliding window of ``n_workers`` so that a
    replication's timeout clock starts when a worker picks it up.
    """
    pending = list(indices)
    in_flight = {}
    started = {}
    poll = _poll_interval(config.timeout, cancel_event is not None)

    def record(rep: Replication) -> None:
        replications[rep.index] = rep
        if rep.status is ReplicationStatus.FAILED:
            rep.ranks = failed_replication_records(rep.index, task.variables)
        table.extend(rep.ranks)

    while pending or in_flight:
        if cancel_event is not None and cancel_event.is_set():
            for fut in in_flight:
                fut.cancel()
            return True

        while pending and len(in_flight) < config.n_workers:
            idx = pending.pop(0)
            fut = pool.submit(_execute, task, idx, replications[idx].seed)
            in_flight[fut] = idx

        done, _ = wait(list(in_flight), timeout=poll, return_when=FIRST_COMPLETED)
        for fut in done:
            idx = in_flight.pop(fut)
            started.pop(idx, None)
            if fut.cancelled():
                # Queued on a retired pool; run it again on the current one
                pending.insert(0, idx)
                continue
            record(fut.result())

        if config.timeout is not None:
            now = time.monotonic()
            for fut, idx in list(in_flight.items()):
                if fut.done():
                    continue
                if idx not in started and fut.running():
                    started[idx] = now
                if idx in started and now - started[idx] > config.timeout:
                    del in_flight[fut]
                    del started[idx]
                    pool.abandon(fut)
                    rep = Replication(index=idx, seed=replications[idx].seed)
                    rep.fail(TIMEOUT_REASON)
                    rep.elapsed = float(config.timeout)
                    logger.warning("Replication %d timed out after %.1fs.", idx, config.timeout)
                    record(rep)

    return False


# =============================================================================
# BATCH ORCHESTRATOR
# =============================================================================

def run_ifs_sbc(
    spec: SimulationSpec,
    oracle: InferenceOracle,
    config: SBCConfig,
    prior: Optional[PriorConfig] = None,
    precon_sample: Optional[Any] = None,
    covariates: Optional[np.ndarray] = None,
    cancel_event=None,
    verbose: bool = False,
) -> BatchResult:
    """
    Run an IFS-SBC calibration batch.

    Parameters
    ----------
    spec : SimulationSpec
        Generator configuration.
    oracle : InferenceOracle
        Inference oracle driven by every replication.
    config : SBCConfig
        Batch configuration.
    prior : PriorConfig, optional
        Declared prior. Default: PriorConfig().
    precon_sample : dict or PreconditionedPrior, optional
        Preconditioning sample (fit once here) or an already fitted
        PreconditionedPrior. Fixed for the whole invocation regardless of
        batching. If None, replications fit from the declared prior.
    covariates : np.ndarray, optional
        Real covariate pool for the generator.
    cancel_event : threading.Event, optional
        When set, dispatch stops; completed records stay valid and
        unstarted replications remain pending.
    verbose : bool
        Print progress information.

    Returns
    -------
    BatchResult

    Raises
    ------
    ConfigurationError
        On invalid configuration, before any replication starts, or if a
        replication detects one.
    """
    prior = prior if prior is not None else PriorConfig()
    validate_simulation(spec, covariates)
    variables = config.resolve_variables(spec, prior)
    if not variables:
        raise ConfigurationError("No variables to track.")
    bounded = config.resolve_bounded(variables)

    t_start = time.time()
    precon = None
    if isinstance(precon_sample, PreconditionedPrior):
        precon = precon_sample
    elif precon_sample is not None:
        precon = PreconditionedPrior.fit(
            oracle, precon_sample, prior, seed=precon_seed(config.root_seed)
        )
    t_precon = time.time() - t_start

    task = _ReplicationTask(
        spec=spec,
        oracle=oracle,
        prior=prior,
        variables=list(variables),
        precon=precon,
        covariates=covariates,
        bounded_variables=list(bounded),
        lb=float(config.lb),
        ub=float(config.ub),
        truncate=bool(config.truncate),
        tie_break=bool(config.tie_break),
        keep_draws=bool(config.keep_draws),
    )

    n_sims = int(config.n_sims)
    replications = [
        Replication(index=i, seed=derive_seed(config.root_seed, i)) for i in range(n_sims)
    ]
    table = RanksTable(variable_order=variables)
    batches = chunk_indices(n_sims, config.batch_size)

    if verbose:
        print(f"Running {n_sims} replications in {len(batches)} batch(es) "
              f"on {config.n_workers} {config.executor} worker(s)...")
        if precon is not None:
            print(f"  Preconditioned on {precon.sample_size} observations")
    logger.info("Starting IFS-SBC run: %d replications, %d batches.", n_sims, len(batches))

    cancelled = False
    completed = True
    pool = _WorkerPool(config.executor, int(config.n_workers))
    try:
        for b, batch in enumerate(batches):
            cancelled = _run_batch(pool, task, batch, replications, table, config, cancel_event)
            if cancelled:
                logger.info("IFS-SBC run cancelled after %d batch(es).", b)
                break
            if verbose:
                elapsed = time.time() - t_start
                n_done = batch[-1] + 1
                print(f"  [{n_done}/{n_sims}] {elapsed:.1f}s elapsed")
    except BaseException:
        completed = False
        raise
    finally:
        pool.shutdown(wait_for_workers=completed and not cancelled)

    timing = {
        "precondition": t_precon,
        "replications": float(sum(r.elapsed for r in replications)),
        "total": time.time() - t_start,
    }
    result = BatchResult(
        ranks=table.freeze(),
        replications=replications,
        variables=list(variables),
        cancelled=cancelled,
        timing=timing,
        precon_size=precon.sample_size if precon is not None else None,
    )

    if verbose:
        print(f"Done: {result.n_ranked} ranked, {result.n_failed} failed, "
              f"{result.n_pending} pending | Total {timing['total']:.2f}s")
        for reason, count in result.failure_summary.items():
            print(f"  {count:>5d} x {reason}")
    logger.info(
        "IFS-SBC run finished: %d ranked, %d failed, %d pending.",
        result.n_ranked, result.n_failed, result.n_pending,
    )
    return result


# =============================================================================
# PRECONDITIONING SWEEP
# =============================================================================

def make_precon_sample(
    spec: SimulationSpec,
    prior: PriorConfig,
    size: int,
    seed: int,
    covariates: Optional[np.ndarray] = None,
) -> Dict[str, np.ndarray]:
    """
    Generate a preconditioning sample of ``size`` observations.

    The sample is simulated from one prior draw of ``spec`` with the
    sample size replaced by ``size``.
    """
    if int(size) < 1:
        raise ConfigurationError(f"Preconditioning sample size must be >= 1, got {size}.")
    sized = dataclasses.replace(spec, sample_size=int(size))
    rng = np.random.default_rng(seed)
    _, data = simulate_dataset(sized, prior, rng, covariates=covariates)
    return data


def run_precon_sweep(
    spec: SimulationSpec,
    oracle: InferenceOracle,
    config: SBCConfig,
    precon_sizes: Sequence[int],
    prior: Optional[PriorConfig] = None,
    covariates: Optional[np.ndarray] = None,
    n_simulations: int = 1000,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Score calibration across preconditioning sample sizes.

    Each size gets its own internally generated preconditioning sample and
    its own invocation of ``run_ifs_sbc``. Size 0 means no preconditioning.

    Returns
    -------
    pd.DataFrame
        Discrepancy results with ``precon_size``, ``n_ranked`` and
        ``n_failed`` columns.
    """
    prior = prior if prior is not None else PriorConfig()
    frames = []
    for size in precon_sizes:
        size = int(size)
        sample = None
        if size > 0:
            sample = make_precon_sample(
                spec, prior, size, seed=precon_seed(config.root_seed, size), covariates=covariates
            )
        if verbose:
            print(f"Preconditioning size {size}:")
        result = run_ifs_sbc(
            spec, oracle, config, prior=prior, precon_sample=sample,
            covariates=covariates, verbose=verbose,
        )
        scores = score_ranks_table(
            result.ranks, skip_empty=True, alpha=config.alpha, n_simulations=n_simulations
        )
        scores.insert(0, "precon_size", size)
        scores["n_ranked"] = result.n_ranked
        scores["n_failed"] = result.n_failed
        frames.append(scores)
    return pd.concat(frames, ignore_index=True)
