"""Control parameters for the boosting loop."""

from dataclasses import dataclass, field
import numbers
from typing import Optional

from .exceptions import ConfigurationError
from .utils import Loss, SquaredError


@dataclass(frozen=True)
class BoostControl:
    """
    Args:
        mstop: Maximum number of boosting iterations (mstop_max).
        nu: Shrinkage (step length) ν ∈ (0, 1]. Multiplies every base-learner fit.
        n_jobs: Workers for the candidate term fits within one iteration (threads).
        verbose: Enable INFO logging of the boosting trace.
        trace_every: Log the in-sample risk every this many iterations when verbose.
        loss: Loss providing offset, negative gradient and risk.
    """

    mstop: int = 100
    nu: float = 0.1
    n_jobs: Optional[int] = 1
    verbose: bool = False
    trace_every: int = 10
    loss: Loss = field(default_factory=SquaredError)

    def __post_init__(self):
        if isinstance(self.mstop, bool) or not isinstance(self.mstop, numbers.Integral) or self.mstop <= 0:
            raise ConfigurationError(f"mstop must be a positive integer, got {self.mstop!r}")
        if not 0 < self.nu <= 1:
            raise ConfigurationError(f"nu must lie in (0, 1], got {self.nu!r}")
        if self.trace_every <= 0:
            raise ConfigurationError(f"trace_every must be positive, got {self.trace_every!r}")
