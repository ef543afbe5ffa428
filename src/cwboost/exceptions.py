"""
Exception and warning types raised by the boosting engine.

ConfigurationError is raised before any fitting starts. DegenerateFitError is
raised by a base-learner for a single (term, iteration) and is recovered by the
boosting loop. NumericInstabilityWarning is emitted through ``warnings.warn``.
"""


class CwBoostError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(CwBoostError, ValueError):
    """Invalid model specification or control parameters."""


class DegenerateFitError(CwBoostError):
    """A base-learner cannot be fitted to the current data (e.g. constant predictor)."""

    def __init__(self, message: str, predictor: str = None):
        super().__init__(message)
        self.predictor = predictor


class NumericInstabilityWarning(RuntimeWarning):
    """Ill-conditioned linear system encountered in a base-learner solve."""
