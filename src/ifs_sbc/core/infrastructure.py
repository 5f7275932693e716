"""
Calibration Infrastructure: Configuration and Run Metadata

This module provides the declarative configuration of a calibration run:
- SimulationSpec: one generator configuration (family, shape, link)
- PriorConfig: the declared prior used when no preconditioning is applied
- SBCConfig: the recognized options of a batch invocation
- Metadata utilities for persisting ranks tables with a JSON sidecar

All configuration objects validate themselves on construction and raise
ConfigurationError, so invalid runs fail before any replication starts.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import json
import math

import numpy as np
import pandas as pd
import scipy

from ifs_sbc.core.errors import ConfigurationError
from ifs_sbc.core.ranks import RanksTable


# =============================================================================
# Family Registry
# =============================================================================

# Allowed links per family; the first entry is the default.
FAMILY_LINKS: Dict[str, Tuple[str, ...]] = {
    "gamma": ("log", "identity", "inverse"),
    "weibull": ("log", "identity"),
    "lognormal": ("identity",),
    "beta": ("logit",),
    "frechet": ("log", "identity"),
}

# Name of the auxiliary (non-regression) parameter of each family.
FAMILY_AUX: Dict[str, str] = {
    "gamma": "shape",
    "weibull": "shape",
    "lognormal": "sigma",
    "beta": "phi",
    "frechet": "nu",
}

LOGLIK_VARIABLE = "loglik"


# =============================================================================
# Simulation and Prior Configuration
# =============================================================================

@dataclass(frozen=True)
class SimulationSpec:
    """
    Immutable generator configuration.

    Attributes
    ----------
    family : str
        One of "gamma", "weibull", "lognormal", "beta", "frechet".
    sample_size : int
        Number of observations N per pseudo-dataset.
    covariate_count : int
        Number of covariates K (excluding the intercept).
    group_count : int, optional
        Number of levels G of a grouping factor. None for no grouping.
    link : str, optional
        Link function. Defaults to the family's canonical choice.
    """
    family: str
    sample_size: int
    covariate_count: int = 0
    group_count: Optional[int] = None
    link: Optional[str] = None

    def __post_init__(self):
        if self.family not in FAMILY_LINKS:
            raise ConfigurationError(
                f"Unknown family '{self.family}'. "
                f"Must be one of {sorted(FAMILY_LINKS)}."
            )
        if self.link is None:
            object.__setattr__(self, "link", FAMILY_LINKS[self.family][0])
        elif self.link not in FAMILY_LINKS[self.family]:
            raise ConfigurationError(
                f"Link '{self.link}' is not valid for family '{self.family}'. "
                f"Allowed: {FAMILY_LINKS[self.family]}."
            )
        if int(self.sample_size) < 1:
            raise ConfigurationError(
                f"sample_size must be >= 1, got {self.sample_size}."
            )
        if int(self.covariate_count) < 0:
            raise ConfigurationError(
                f"covariate_count must be >= 0, got {self.covariate_count}."
            )
        if self.group_count is not None and int(self.group_count) < 2:
            raise ConfigurationError(
                f"group_count must be >= 2 when given, got {self.group_count}."
            )

    @property
    def aux_name(self) -> str:
        return FAMILY_AUX[self.family]

    def coefficient_names(self) -> List[str]:
        """Regression coefficient names, intercept first."""
        return ["b_Intercept"] + [
            f"b_x{k}" for k in range(1, int(self.covariate_count) + 1)
        ]

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "SimulationSpec":
        return cls(**d)


@dataclass
class PriorConfig:
    """
    Declared prior used to draw truths and to fit from scratch.

    Attributes
    ----------
    intercept_scale : float
        Scale of the Normal prior on ``b_Intercept``.
    coef_df : float
        Degrees of freedom of the slope prior. df <= 0 or > 100 means Normal.
    coef_scale : float
        Scale of the slope prior.
    aux_shape, aux_rate : float
        Gamma prior of the family's auxiliary parameter.
    aux_fixed : float, optional
        If set, the auxiliary parameter is a known constant and is not
        tracked as a variable.
    group_sd_scale : float
        Scale of the half-normal prior on ``sd_group``.
    """
    intercept_scale: float = 1.0
    coef_df: float = 0.0
    coef_scale: float = 0.5
    aux_shape: float = 4.0
    aux_rate: float = 1.0
    aux_fixed: Optional[float] = None
    group_sd_scale: float = 0.5

    def __post_init__(self):
        for name in ("intercept_scale", "coef_scale", "aux_shape", "aux_rate", "group_sd_scale"):
            if not getattr(self, name) > 0:
                raise ConfigurationError(
                    f"{name} must be positive, got {getattr(self, name)}."
                )
        if self.aux_fixed is not None and not self.aux_fixed > 0:
            raise ConfigurationError(
                f"aux_fixed must be positive when given, got {self.aux_fixed}."
            )

    def parameter_names(self, spec: SimulationSpec, include_group_effects: bool = True) -> List[str]:
        """
        Names of all latent parameters for ``spec`` under this prior.

        Parameters
        ----------
        spec : SimulationSpec
            Generator configuration.
        include_group_effects : bool
            Whether to include the individual ``r_group[g]`` intercepts.

        Returns
        -------
        list of str
        """
        names = spec.coefficient_names()
        if self.aux_fixed is None:
            names.append(spec.aux_name)
        if spec.group_count is not None:
            names.append("sd_group")
            if include_group_effects:
                names.extend(
                    f"r_group[{g}]" for g in range(1, int(spec.group_count) + 1)
                )
        return names

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "PriorConfig":
        return cls(**d)


# =============================================================================
# Batch Configuration
# =============================================================================

@dataclass
class SBCConfig:
    """
    Recognized options of one calibration invocation.

    Attributes
    ----------
    n_sims : int
        Number of replications (> 0).
    batch_size : int, optional
        Replications per sequential chunk, in 1..n_sims. None means no
        batching. Does not change results.
    lb, ub : float
        Clipping bounds applied to bounded variables before ranking.
    truncate : bool
        Record NA instead of a saturated rank when values hit a bound.
    root_seed : int
        Root seed; replication seeds are derived from it.
    n_workers : int
        Size of the worker pool.
    executor : str
        "thread" or "process".
    timeout : float, optional
        Per-replication timeout in seconds. None disables timeouts.
    variables : list of str, optional
        Tracked variables. Defaults to all parameters (without the
        individual group intercepts) plus ``loglik``.
    bounded_variables : list of str, optional
        Variables the bounds apply to. Defaults to all tracked variables
        except ``loglik``.
    tie_break : bool
        Resolve ties with a uniform random tie-break.
    track_loglik : bool
        Add the ``loglik`` pseudo-variable to the default variables.
    alpha : float
        Simultaneous miscoverage level used for scoring.
    keep_draws : bool
        Keep posterior draws and pseudo-data on ranked replications.
        Off by default to bound memory use.
    """
    n_sims: int = 1000
    batch_size: Optional[int] = None
    lb: float = -math.inf
    ub: float = math.inf
    truncate: bool = False
    root_seed: int = 0
    n_workers: int = 1
    executor: str = "thread"
    timeout: Optional[float] = None
    variables: Optional[List[str]] = None
    bounded_variables: Optional[List[str]] = None
    tie_break: bool = True
    track_loglik: bool = True
    alpha: float = 0.05
    keep_draws: bool = False

    def __post_init__(self):
        if int(self.n_sims) < 1:
            raise ConfigurationError(f"n_sims must be > 0, got {self.n_sims}.")
        if self.batch_size is not None and not (1 <= int(self.batch_size) <= int(self.n_sims)):
            raise ConfigurationError(
                f"batch_size must be in [1, n_sims={self.n_sims}], got {self.batch_size}."
            )
        if np.isnan(self.lb) or np.isnan(self.ub) or self.lb > self.ub:
            raise ConfigurationError(
                f"Bounds must satisfy lb <= ub, got lb={self.lb}, ub={self.ub}."
            )
        if int(self.n_workers) < 1:
            raise ConfigurationError(f"n_workers must be >= 1, got {self.n_workers}.")
        if self.executor not in ("thread", "process"):
            raise ConfigurationError(
                f"executor must be 'thread' or 'process', got '{self.executor}'."
            )
        if self.timeout is not None and not self.timeout > 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}.")
        if not (0.0 < self.alpha < 1.0):
            raise ConfigurationError(f"alpha must be in (0, 1), got {self.alpha}.")

    def resolve_variables(self, spec: SimulationSpec, prior: PriorConfig) -> List[str]:
        """Tracked variables for ``spec`` under ``prior``."""
        if self.variables is not None:
            return list(self.variables)
        names = prior.parameter_names(spec, include_group_effects=False)
        if self.track_loglik:
            names.append(LOGLIK_VARIABLE)
        return names

    def resolve_bounded(self, variables: List[str]) -> List[str]:
        """Variables the clipping bounds apply to."""
        if self.bounded_variables is not None:
            return [v for v in variables if v in self.bounded_variables]
        return [v for v in variables if v != LOGLIK_VARIABLE]

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "SBCConfig":
        return cls(**d)


# =============================================================================
# Metadata Utilities
# =============================================================================

def get_run_metadata(
    spec: SimulationSpec,
    config: SBCConfig,
    prior: Optional[PriorConfig] = None,
    precon_size: Optional[int] = None,
    extra: Optional[dict] = None,
) -> dict:
    """
    Collect reproducibility metadata for a calibration run.

    Parameters
    ----------
    spec : SimulationSpec
        Generator configuration.
    config : SBCConfig
        Batch configuration.
    prior : PriorConfig, optional
        Declared prior.
    precon_size : int, optional
        Size of the preconditioning sample, if any.
    extra : dict, optional
        Additional metadata to include.

    Returns
    -------
    dict
        Complete metadata dictionary.
    """
    metadata = {
        "spec": spec.to_dict(),
        "config": config.to_dict(),
        "prior": prior.to_dict() if prior is not None else None,
        "precon_size": precon_size,
        "versions": {
            "numpy": np.__version__,
            "pandas": pd.__version__,
            "scipy": scipy.__version__,
        },
        "created_at": datetime.now().isoformat(),
    }

    if extra is not None:
        metadata.update(extra)

    return metadata


def save_ranks_with_metadata(
    ranks: RanksTable,
    path: str | Path,
    metadata: dict,
) -> Path:
    """
    Save a ranks table as .csv plus a .json metadata sidecar.

    Parameters
    ----------
    ranks : RanksTable
        Ranks table to persist.
    path : str or Path
        Base path (will create .csv and .json files).
    metadata : dict
        Metadata to save (from get_run_metadata or custom).

    Returns
    -------
    Path
        Path to saved .csv file.
    """
    path = Path(path)
    csv_path = path.with_suffix(".csv")
    json_path = path.with_suffix(".json")

    csv_path.parent.mkdir(parents=True, exist_ok=True)

    ranks.to_frame().to_csv(csv_path, index=False)

    with open(json_path, "w") as f:
        json.dump(metadata, f, indent=2, default=str)

    return csv_path


def load_ranks_with_metadata(path: str | Path) -> Tuple[RanksTable, dict]:
    """
    Load a ranks table and its metadata from disk.

    Parameters
    ----------
    path : str or Path
        Base path (expects .csv and optionally .json files).

    Returns
    -------
    tuple
        (ranks_table, metadata). If no metadata file exists, returns an
        empty dict for metadata.
    """
    path = Path(path)
    csv_path = path.with_suffix(".csv")
    json_path = path.with_suffix(".json")

    frame = pd.read_csv(csv_path, dtype={"variable": str})
    ranks = RanksTable.from_frame(frame)

    if json_path.exists():
        with open(json_path) as f:
            metadata = json.load(f)
    else:
        metadata = {}

    return ranks, metadata
