"""
Exception taxonomy for the calibration harness.

- ConfigurationError: fatal, raised before any replication runs.
- InferenceFailure: per-replication, caught by the runner and recorded.
- InsufficientDataError: raised by the scorer when no valid ranks remain.

Ranks that fall outside representable bounds are not errors; they are
recorded as NA.
"""


class IfsSbcError(Exception):
    """Base class for all harness errors."""


class ConfigurationError(IfsSbcError, ValueError):
    """Invalid spec, bounds, sample sizes or oracle configuration."""


class InferenceFailure(IfsSbcError):
    """The inference oracle failed for a single replication."""


class InsufficientDataError(IfsSbcError):
    """No valid ranks are available to score a variable."""
