"""Simulation-based calibration with inverse forward sampling (IFS-SBC)."""

__version__ = "0.1.0"

# Core infrastructure (generic, reusable)
from ifs_sbc.core.errors import (
    IfsSbcError,
    ConfigurationError,
    InferenceFailure,
    InsufficientDataError,
)

from ifs_sbc.core.infrastructure import (
    SimulationSpec,
    PriorConfig,
    SBCConfig,
    get_run_metadata,
    save_ranks_with_metadata,
    load_ranks_with_metadata,
)

from ifs_sbc.core.ranks import (
    RankRecord,
    RanksTable,
    compute_rank,
)

from ifs_sbc.core.oracle import (
    PosteriorHandle,
    InferenceOracle,
    PreconditionedPrior,
    ApproximatorOracle,
)

from ifs_sbc.core.discrepancy import (
    DiscrepancyResult,
    log_gamma_statistic,
    adjust_gamma,
    score_variable,
    score_ranks_table,
)

from ifs_sbc.core.validation import (
    Replication,
    ReplicationStatus,
    BatchResult,
    run_replication,
    run_ifs_sbc,
    make_precon_sample,
    run_precon_sweep,
)

from ifs_sbc.core.utils import (
    derive_seed,
    sample_t_or_normal,
)

# GLM families
from ifs_sbc.models.glm.families import (
    draw_prior,
    simulate_dataset,
    log_likelihood,
)
from ifs_sbc.models.glm.conjugate import ConjugateLognormalOracle

# Plotting
from ifs_sbc.plotting.diagnostics import (
    plot_sbc_rank_histogram,
    plot_sbc_ecdf_diff,
)

__all__ = [
    # Version
    "__version__",
    # Errors
    "IfsSbcError",
    "ConfigurationError",
    "InferenceFailure",
    "InsufficientDataError",
    # Core
    "SimulationSpec",
    "PriorConfig",
    "SBCConfig",
    "get_run_metadata",
    "save_ranks_with_metadata",
    "load_ranks_with_metadata",
    "RankRecord",
    "RanksTable",
    "compute_rank",
    "PosteriorHandle",
    "InferenceOracle",
    "PreconditionedPrior",
    "ApproximatorOracle",
    "DiscrepancyResult",
    "log_gamma_statistic",
    "adjust_gamma",
    "score_variable",
    "score_ranks_table",
    "Replication",
    "ReplicationStatus",
    "BatchResult",
    "run_replication",
    "run_ifs_sbc",
    "make_precon_sample",
    "run_precon_sweep",
    "derive_seed",
    "sample_t_or_normal",
    # GLM
    "draw_prior",
    "simulate_dataset",
    "log_likelihood",
    "ConjugateLognormalOracle",
    # Plotting
    "plot_sbc_rank_histogram",
    "plot_sbc_ecdf_diff",
]
