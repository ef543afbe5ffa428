"""
Penalised B-spline (P-spline) bases and linear solves for the smooth base-learners.

The basis is a cubic (by default) B-spline on equidistant interior knots over
the range of the predictor, extended by ``degree`` knots on each side. The
roughness penalty is the squared ``differences``-order difference of adjacent
coefficients (Eilers & Marx, 1996). The smoothing parameter lambda is fixed per
basis: either given directly or solved once so that the smoother has the
requested degrees of freedom.

References:
- Eilers, P. H. C., & Marx, B. D. (1996). Flexible smoothing with B-splines and
  penalties. Statistical Science, 11(2), 89-121.
- Schmid, M., & Hothorn, T. (2008). Boosting additive models using component-wise
  P-splines. Computational Statistics & Data Analysis, 53(2), 298-311.
"""

from dataclasses import dataclass
from typing import Dict, Hashable, Optional, Tuple
import logging
import warnings

import numpy as np
from scipy.interpolate import BSpline
from scipy.linalg import cho_factor, cho_solve, LinAlgError
from scipy.optimize import brentq

from .data import Dataset, is_categorical
from .exceptions import ConfigurationError, DegenerateFitError, NumericInstabilityWarning
from .formula import ModelTerm

logger = logging.getLogger(__name__)

DEFAULT_N_KNOTS = 20
DEFAULT_DEGREE = 3
DEFAULT_DIFFERENCES = 2
DEFAULT_DF = 4.0
CONDITION_LIMIT = 1e12


def equidistant_knots(x_min: float, x_max: float, n_knots: int, degree: int) -> np.ndarray:
    """Full knot vector: ``n_knots`` interior knots plus ``degree + 1`` at each end."""
    if not x_max > x_min:
        raise DegenerateFitError(f"Cannot build spline basis on a constant range [{x_min}, {x_max}]")
    inner = np.linspace(x_min, x_max, n_knots + 2)
    step = inner[1] - inner[0]
    lower = x_min - step * np.arange(degree, 0, -1)
    upper = x_max + step * np.arange(1, degree + 1)
    return np.concatenate([lower, inner, upper])


def bspline_design(x: np.ndarray, knots: np.ndarray, degree: int) -> np.ndarray:
    """
    Evaluate every B-spline basis function at ``x``.

    Values outside the knot range are extrapolated from the boundary polynomial
    pieces, so prediction never fails on out-of-range inputs.
    """
    n_basis = len(knots) - degree - 1
    basis = BSpline(knots, np.eye(n_basis), degree, extrapolate=True)
    return basis(np.asarray(x, dtype=np.float64))


def difference_penalty(n_basis: int, differences: int) -> np.ndarray:
    """P = D'D for the ``differences``-order difference matrix D."""
    D = np.diff(np.eye(n_basis), n=differences, axis=0)
    return D.T @ D


def smoother_trace(gram: np.ndarray, penalty: np.ndarray, lam: float) -> float:
    """Trace of the hat matrix ``B (B'WB + lam P)^-1 B'W`` given ``gram = B'WB``."""
    p = gram.shape[0]
    eps = 1e-10 * max(np.trace(gram) / p, 1.0)
    return float(np.trace(np.linalg.solve(gram + lam * penalty + eps * np.eye(p), gram)))


def lambda_from_df(gram: np.ndarray, penalty: np.ndarray, df: float, differences: int) -> float:
    """
    Solve ``smoother_trace(lambda) = df`` for lambda by bracketing in log10 space.

    Raises
    ------
    ConfigurationError
        If ``df`` does not exceed the dimension of the penalty null space.
    """
    if df <= differences:
        raise ConfigurationError(
            f"df={df} must exceed the penalty null-space dimension ({differences})"
        )

    def excess(log_lam: float) -> float:
        return smoother_trace(gram, penalty, 10.0 ** log_lam) - df

    lo, hi = -10.0, 15.0
    if excess(lo) <= 0:
        logger.info(f"Requested df={df} not reachable; using lambda=1e{lo:.0f}")
        return 10.0 ** lo
    if excess(hi) >= 0:
        return 10.0 ** hi
    return 10.0 ** brentq(excess, lo, hi, xtol=1e-8)


def penalized_cholesky(A: np.ndarray, jitter_levels=(0.0, 1e-10, 1e-8, 1e-6, 1e-4)):
    """
    Cholesky factor of a symmetric positive (semi-)definite system with jitter fallback.

    Emits NumericInstabilityWarning when the system is ill-conditioned or when
    jitter was needed. Raises DegenerateFitError if no jitter level succeeds.
    """
    p = A.shape[0]
    scale = max(np.trace(A) / p, 1e-300)
    cond = np.linalg.cond(A)
    if not np.isfinite(cond) or cond > CONDITION_LIMIT:
        warnings.warn(
            f"Ill-conditioned penalised system (condition number {cond:.2e})",
            NumericInstabilityWarning,
            stacklevel=3,
        )

    for j in jitter_levels:
        try:
            factor = cho_factor(A + np.eye(p) * (j * scale), lower=True, check_finite=False)
        except LinAlgError:
            continue
        if j > 0:
            warnings.warn(
                f"Cholesky required relative jitter={j:.1e} for stability",
                NumericInstabilityWarning,
                stacklevel=3,
            )
        return factor

    raise DegenerateFitError("Penalised system is singular even with maximum jitter")


@dataclass(frozen=True)
class SplineBasis:
    """Fixed P-spline configuration for one predictor; shared read-only across folds."""

    knots: np.ndarray
    degree: int
    differences: int
    penalty: np.ndarray
    lam: float

    @property
    def n_basis(self) -> int:
        return len(self.knots) - self.degree - 1

    def design(self, x: np.ndarray) -> np.ndarray:
        return bspline_design(x, self.knots, self.degree)


@dataclass(frozen=True)
class LinearBasis:
    """Design configuration for the linear learner (factor levels for categorical input)."""

    intercept: bool
    levels: Optional[Tuple] = None

    @property
    def n_coef(self) -> int:
        if self.levels is not None:
            return len(self.levels)
        return 2 if self.intercept else 1

    def design(self, x: np.ndarray) -> np.ndarray:
        if self.levels is None:
            x = np.asarray(x, dtype=np.float64)
            if self.intercept:
                return np.column_stack([np.ones_like(x), x])
            return x[:, None]
        index = {level: i for i, level in enumerate(self.levels)}
        unknown = set(x) - set(index)
        if unknown:
            raise ConfigurationError(f"Unseen factor level(s) {sorted(map(str, unknown))}")
        X = np.zeros((len(x), len(self.levels)))
        X[:, 0] = 1.0
        for row, value in enumerate(x):
            k = index[value]
            if k > 0:
                X[row, k] = 1.0
        return X


def _read_only(arr: np.ndarray) -> np.ndarray:
    arr.flags.writeable = False
    return arr


class BasisCache:
    """
    Memoised basis configurations and design matrices for one Dataset.

    Basis configurations (knots, penalty, lambda, factor levels) are computed on
    the root Dataset and shared by every restricted cache derived from it, so
    cross-validation folds use identical bases. Design matrices are computed per
    Dataset (sliced from the parent for restricted caches) and are read-only.
    """

    def __init__(self, dataset: Dataset, _specs: Optional[Dict] = None, _parent=None, _rows=None):
        self.dataset = dataset
        self._specs: Dict[Hashable, object] = {} if _specs is None else _specs
        self._designs: Dict[Hashable, np.ndarray] = {}
        self._parent = _parent
        self._rows = _rows

    @staticmethod
    def _key(term: ModelTerm) -> Hashable:
        kind = "linear" if term.learner == "bols" else "spline"
        return term.predictor, kind, term.options

    def basis(self, term: ModelTerm):
        """Return the SplineBasis or LinearBasis for ``term`` (computed once per root Dataset)."""
        key = self._key(term)
        spec = self._specs.get(key)
        if spec is None:
            if self._parent is not None:
                spec = self._parent.basis(term)
            else:
                spec = self._build(term)
            self._specs[key] = spec
        return spec

    def design(self, term: ModelTerm) -> np.ndarray:
        """Design matrix of ``term`` evaluated on this cache's Dataset column."""
        key = self._key(term)
        design = self._designs.get(key)
        if design is None:
            if self._parent is not None:
                design = np.ascontiguousarray(self._parent.design(term)[self._rows])
            else:
                design = self.basis(term).design(self.dataset[term.predictor])
            design = _read_only(design)
            self._designs[key] = design
        return design

    def restrict(self, rows) -> "BasisCache":
        """A cache for ``dataset.subset(rows)`` sharing this cache's basis configurations."""
        rows = np.asarray(rows)
        return BasisCache(self.dataset.subset(rows), _specs=self._specs, _parent=self, _rows=rows)

    def warm(self, terms) -> None:
        """Build configurations and designs for every smooth/linear term up front."""
        for term in terms:
            if term.learner == "btree":
                continue
            try:
                self.design(term)
            except DegenerateFitError as exc:
                logger.warning(f"Basis for {term.label} not built: {exc}")

    def _build(self, term: ModelTerm):
        column = self.dataset[term.predictor]
        params = term.params
        if term.learner == "bols":
            levels = None
            if is_categorical(column):
                levels = tuple(sorted(set(column), key=str))
            return LinearBasis(intercept=bool(params.get("intercept", True)), levels=levels)

        degree = int(params.get("degree", DEFAULT_DEGREE))
        differences = int(params.get("differences", DEFAULT_DIFFERENCES))
        n_knots = int(params.get("n_knots", DEFAULT_N_KNOTS))
        if degree < 1 or n_knots < 1 or differences < 1:
            raise ConfigurationError(f"Invalid spline configuration for {term.label}")
        knots = equidistant_knots(float(np.min(column)), float(np.max(column)), n_knots, degree)
        B = bspline_design(column, knots, degree)
        penalty = _read_only(difference_penalty(B.shape[1], differences))

        if "lambda_" in params:
            lam = float(params["lambda_"])
            if lam < 0:
                raise ConfigurationError(f"lambda_ must be non-negative for {term.label}")
        else:
            lam = lambda_from_df(B.T @ B, penalty, float(params.get("df", DEFAULT_DF)), differences)
        logger.debug(f"{term.label}: {B.shape[1]} basis functions, lambda={lam:.4g}")
        return SplineBasis(_read_only(knots), degree, differences, penalty, lam)
