"""
Base-learners for component-wise boosting.

Each learner is bound to one ModelTerm and maps (predictor column, pseudo-residual,
weights) to a LearnerFit: a fitted contribution function, its degrees of freedom
(trace of the hat matrix) and the weighted in-sample sum of squared errors.

Implemented learners (names follow mboost):
- bols:  weighted least squares on the (dummy-coded) predictor.
- bbs:   penalised B-spline (P-spline) with fixed smoothing parameter.
- bmono: P-spline with monotone coefficient sequence (bounded least squares).
- btree: single-split regression tree (stump).

References:
- Bühlmann, P., & Hothorn, T. (2007). Boosting algorithms: Regularization,
  prediction and model fitting. Statistical Science, 22(4), 477-505.
- Hofner, B., Müller, J., & Hothorn, T. (2011). Monotonicity-constrained species
  distribution models. Ecology, 92(10), 1895-1901.
"""

from abc import ABC, abstractmethod
from typing import NamedTuple, Optional, Sequence
import logging

import numpy as np
from scipy.interpolate import BSpline
from scipy.linalg import cho_solve
from scipy.optimize import lsq_linear
from sklearn.tree import DecisionTreeRegressor

from .data import is_categorical
from .exceptions import DegenerateFitError
from .formula import ModelTerm
from .splines import BasisCache, LinearBasis, SplineBasis, penalized_cholesky

logger = logging.getLogger(__name__)

STUMP_DF = 2.0
MONOTONE_TOL = 1e-10


# ===========================
# Contribution functions
# ===========================

class Contribution(ABC):
    """Fitted additive contribution of one term: a callable on raw predictor values."""

    def __call__(self, values):
        arr = np.asarray(values)
        out = self._evaluate(np.atleast_1d(arr))
        if arr.ndim == 0:
            return float(out[0])
        return out

    @abstractmethod
    def _evaluate(self, values: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def scaled(self, factor: float) -> "Contribution":
        pass

    @abstractmethod
    def __add__(self, other: "Contribution") -> "Contribution":
        pass


class ZeroContribution(Contribution):
    """Contribution of a term that has not been selected yet."""

    def _evaluate(self, values):
        return np.zeros(len(values))

    def scaled(self, factor):
        return self

    def __add__(self, other):
        return other


class LinearContribution(Contribution):
    """``X(values) @ coef`` for a LinearBasis."""

    def __init__(self, basis: LinearBasis, coef: np.ndarray):
        self.basis = basis
        self.coef = np.asarray(coef, dtype=np.float64)

    def _evaluate(self, values):
        return self.basis.design(values) @ self.coef

    def scaled(self, factor):
        return LinearContribution(self.basis, factor * self.coef)

    def __add__(self, other):
        if isinstance(other, ZeroContribution):
            return self
        return LinearContribution(self.basis, self.coef + other.coef)

    def __repr__(self):
        return f"LinearContribution(coef={np.round(self.coef, 6).tolist()})"


class SplineContribution(Contribution):
    """B-spline function with fixed knots; extrapolates outside the knot range."""

    def __init__(self, basis: SplineBasis, coef: np.ndarray):
        self.basis = basis
        self.coef = np.asarray(coef, dtype=np.float64)

    def _evaluate(self, values):
        spline = BSpline(self.basis.knots, self.coef, self.basis.degree, extrapolate=True)
        return spline(np.asarray(values, dtype=np.float64))

    def scaled(self, factor):
        return SplineContribution(self.basis, factor * self.coef)

    def __add__(self, other):
        if isinstance(other, ZeroContribution):
            return self
        return SplineContribution(self.basis, self.coef + other.coef)

    def __repr__(self):
        return f"SplineContribution(n_basis={len(self.coef)})"


class StepContribution(Contribution):
    """
    Piecewise-constant function.

    ``values[i]`` applies on the i-th interval of ``(-inf, b0], (b0, b1], ..., (b_last, inf)``,
    matching the ``x <= threshold`` rule of sklearn trees.
    """

    def __init__(self, breaks: Sequence[float], values: Sequence[float]):
        self.breaks = np.asarray(breaks, dtype=np.float64)
        self.values = np.asarray(values, dtype=np.float64)

    def _evaluate(self, values):
        idx = np.searchsorted(self.breaks, np.asarray(values, dtype=np.float64), side="left")
        return self.values[idx]

    def scaled(self, factor):
        return StepContribution(self.breaks, factor * self.values)

    def __add__(self, other):
        if isinstance(other, ZeroContribution):
            return self
        breaks = np.union1d(self.breaks, other.breaks)
        if len(breaks) == 0:
            return StepContribution(breaks, self.values + other.values)
        probes = np.append(breaks, breaks[-1] + 1.0)
        return StepContribution(breaks, self._evaluate(probes) + other._evaluate(probes))

    def __repr__(self):
        return f"StepContribution(breaks={self.breaks.tolist()})"


class LearnerFit(NamedTuple):
    """Result of one base-learner fit."""

    contribution: Contribution
    df: float
    sse: float
    fitted: np.ndarray


# ===========================
# Base-learners
# ===========================

def _active_rows(weights: np.ndarray) -> np.ndarray:
    return weights > 0


def _check_spread(term: ModelTerm, column: np.ndarray, active: np.ndarray) -> None:
    values = column[active]
    if len(values) < 2:
        raise DegenerateFitError(f"{term.label}: fewer than two observations with positive weight", term.predictor)
    if is_categorical(column):
        if len(set(values)) < 2:
            raise DegenerateFitError(f"{term.label}: single factor level in training rows", term.predictor)
    elif np.ptp(values) == 0:
        raise DegenerateFitError(f"{term.label}: zero-variance predictor in training rows", term.predictor)


def _weighted_sse(residual, fitted, weights) -> float:
    return float(np.sum(weights * (residual - fitted) ** 2))


class BaseLearner(ABC):
    """
    Base-learner bound to one term and a BasisCache.

    ``fit`` is free of side effects; the only state is the shared, read-only
    basis held by the cache.
    """

    def __init__(self, term: ModelTerm, cache: BasisCache):
        self.term = term
        self.cache = cache

    def _design(self, column: np.ndarray) -> np.ndarray:
        if column is self.cache.dataset[self.term.predictor]:
            return self.cache.design(self.term)
        return self.cache.basis(self.term).design(column)

    @abstractmethod
    def fit(self, column: np.ndarray, pseudo_residual: np.ndarray, weights: np.ndarray) -> LearnerFit:
        pass

    def __repr__(self):
        return f"{type(self).__name__}({self.term.label})"


class OLSLearner(BaseLearner):
    """Weighted linear least squares; df equals the number of coefficients."""

    def fit(self, column, pseudo_residual, weights):
        active = _active_rows(weights)
        _check_spread(self.term, column, active)
        basis = self.cache.basis(self.term)
        X = self._design(column)

        sw = np.sqrt(weights[active])
        Xw = X[active] * sw[:, None]
        rw = pseudo_residual[active] * sw
        coef, _, rank, _ = np.linalg.lstsq(Xw, rw, rcond=None)
        # factor levels absent from the training rows get a zero coefficient
        present = np.any(Xw != 0, axis=0)
        if rank < np.count_nonzero(present):
            raise DegenerateFitError(f"{self.term.label}: rank-deficient design", self.term.predictor)

        fitted = X @ coef
        return LearnerFit(
            LinearContribution(basis, coef),
            float(rank),
            _weighted_sse(pseudo_residual, fitted, weights),
            fitted,
        )


class SplineLearner(BaseLearner):
    """Penalised B-spline smoother with fixed lambda; df is the trace of the hat matrix."""

    def fit(self, column, pseudo_residual, weights):
        active = _active_rows(weights)
        _check_spread(self.term, column, active)
        basis = self.cache.basis(self.term)
        B = self._design(column)

        Ba = B[active]
        wa = weights[active]
        gram = Ba.T @ (Ba * wa[:, None])
        factor = penalized_cholesky(gram + basis.lam * basis.penalty)
        coef = cho_solve(factor, Ba.T @ (wa * pseudo_residual[active]))
        df = float(np.trace(cho_solve(factor, gram)))

        fitted = B @ coef
        return LearnerFit(
            SplineContribution(basis, coef),
            df,
            _weighted_sse(pseudo_residual, fitted, weights),
            fitted,
        )


class MonotoneSplineLearner(BaseLearner):
    """
    P-spline with a monotone coefficient sequence.

    Coefficients are reparametrised as cumulative sums ``beta = T @ gamma`` so the
    constraint becomes a sign bound on ``gamma[1:]``; the penalised problem is then
    solved by bounded-variable least squares. ``gamma = 0`` is always feasible, so a
    feasible fit is returned even when the solver stops early.
    """

    def __init__(self, term, cache):
        super().__init__(term, cache)
        self.increasing = term.direction == "increasing"

    def _bounds(self, p: int):
        lb = np.full(p, -np.inf)
        ub = np.full(p, np.inf)
        if self.increasing:
            lb[1:] = 0.0
        else:
            ub[1:] = 0.0
        return lb, ub

    def fit(self, column, pseudo_residual, weights):
        active = _active_rows(weights)
        _check_spread(self.term, column, active)
        basis = self.cache.basis(self.term)
        B = self._design(column)
        p = B.shape[1]

        T = np.tril(np.ones((p, p)))
        Z = B[active] @ T
        sw = np.sqrt(weights[active])
        D = np.diff(np.eye(p), n=basis.differences, axis=0) @ T
        A = np.vstack([Z * sw[:, None], np.sqrt(basis.lam) * D])
        b = np.concatenate([pseudo_residual[active] * sw, np.zeros(D.shape[0])])

        lb, ub = self._bounds(p)
        result = lsq_linear(A, b, bounds=(lb, ub), method="bvls", tol=1e-12)
        gamma = result.x
        if not np.all(np.isfinite(gamma)):
            logger.info(f"{self.term.label}: constrained solve diverged, using level-only fit")
            gamma = np.zeros(p)
            gamma[0] = np.sum(weights[active] * pseudo_residual[active]) / np.sum(weights[active])
        elif not result.success:
            logger.debug(f"{self.term.label}: bounded solve stopped early ({result.message})")
        gamma = np.clip(gamma, lb, ub)

        coef = T @ gamma
        fitted = B @ coef
        return LearnerFit(
            SplineContribution(basis, coef),
            self._df(Z, weights[active], basis, T, gamma),
            _weighted_sse(pseudo_residual, fitted, weights),
            fitted,
        )

    def _df(self, Z, w, basis, T, gamma) -> float:
        free = np.ones(len(gamma), dtype=bool)
        free[1:] = np.abs(gamma[1:]) > MONOTONE_TOL
        Zf = Z[:, free]
        gram = Zf.T @ (Zf * w[:, None])
        pen = T[:, free].T @ basis.penalty @ T[:, free]
        lhs = gram + basis.lam * pen
        lhs += np.eye(lhs.shape[0]) * 1e-10 * max(np.trace(lhs) / lhs.shape[0], 1.0)
        return float(np.trace(np.linalg.solve(lhs, gram)))


class StumpLearner(BaseLearner):
    """Single-split regression tree; df is fixed regardless of the split location."""

    def fit(self, column, pseudo_residual, weights):
        active = _active_rows(weights)
        _check_spread(self.term, column, active)
        x = np.asarray(column, dtype=np.float64)

        tree = DecisionTreeRegressor(
            max_depth=1,
            min_samples_leaf=int(self.term.params.get("min_samples_leaf", 1)),
            random_state=0,
        )
        tree.fit(x[active, None], pseudo_residual[active], sample_weight=weights[active])

        nodes = tree.tree_
        if nodes.node_count == 1:
            contribution = StepContribution([], [nodes.value[0, 0, 0]])
        else:
            left, right = nodes.children_left[0], nodes.children_right[0]
            contribution = StepContribution(
                [nodes.threshold[0]],
                [nodes.value[left, 0, 0], nodes.value[right, 0, 0]],
            )

        fitted = contribution(x)
        return LearnerFit(contribution, STUMP_DF, _weighted_sse(pseudo_residual, fitted, weights), fitted)


LEARNERS = {
    "bols": OLSLearner,
    "bbs": SplineLearner,
    "bmono": MonotoneSplineLearner,
    "btree": StumpLearner,
}


def make_learner(term: ModelTerm, cache: BasisCache) -> BaseLearner:
    """Instantiate the base-learner for ``term``."""
    return LEARNERS[term.learner](term, cache)
