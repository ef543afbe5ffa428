"""
Component-wise functional gradient boosting.

Fits an additive model f(x) = offset + Σ_j h_j(x_j) term by term. In every
iteration each base-learner is fitted to the current negative gradient and only
the best-fitting one (minimum weighted in-sample SSE) is added with shrinkage ν.

Every shrunken update is recorded, so the model at any iteration k ≤ mstop is
available as a view over the first k records without refitting.

References:
- Bühlmann, P., & Hothorn, T. (2007). Boosting algorithms: Regularization,
  prediction and model fitting. Statistical Science, 22(4), 477-505.
- Bühlmann, P., & Yu, B. (2003). Boosting with the L2 loss. JASA, 98(462), 324-339.
- Hastie, T., Tibshirani, R., & Friedman, J. (2009). The Elements of Statistical
  Learning (2nd ed.). Springer. Chapter 10.
"""

from typing import Dict, List, NamedTuple, Optional, Sequence, Union
import itertools
import logging

import numpy as np
from joblib import Parallel, delayed

from .config import BoostControl
from .data import Dataset, ObservationsLike, columns_of
from .exceptions import ConfigurationError, DegenerateFitError
from .formula import ModelTerm, validate_terms
from .learners import BaseLearner, Contribution, ZeroContribution, make_learner
from .splines import BasisCache

logger = logging.getLogger(__name__)

TermRef = Union[ModelTerm, str, int]


class IterationRecord(NamedTuple):
    """One boosting step: selected term (None if every candidate was degenerate)."""

    iteration: int
    term_index: Optional[int]
    contribution: Optional[Contribution]
    df: float
    risk: float


def _fit_candidate(index: int, learner: BaseLearner, column, residual, weights):
    try:
        return index, learner.fit(column, residual, weights)
    except DegenerateFitError as exc:
        return index, exc


class BoostingPath:
    """
    Component-wise L2 boosting over a list of model terms.

    Args:
        dataset: Training data.
        terms: Model terms; validated against ``dataset`` before anything is fitted.
        control: Boosting parameters (mstop, nu, ...).
        weights: Optional non-negative observation weights (e.g. bootstrap counts).
        cache: Optional BasisCache for ``dataset`` (shared bases across folds).

    Attributes (after fit):
        offset_: Intercept (weighted mean of y for squared error).
        records_: Tuple of IterationRecord, one per iteration 1..mstop.
        risk_: In-sample risk for iterations 0..mstop, shape (mstop + 1,).
        fitted_: Fitted values on the training data at mstop.
    """

    def __init__(
        self,
        dataset: Dataset,
        terms: Sequence[ModelTerm],
        control: Optional[BoostControl] = None,
        weights: Optional[np.ndarray] = None,
        cache: Optional[BasisCache] = None,
    ):
        self.control = control if control is not None else BoostControl()
        self.terms: List[ModelTerm] = validate_terms(dataset, terms)
        self.dataset = dataset

        if weights is None:
            weights = np.ones(dataset.n_obs)
        weights = np.asarray(weights, dtype=np.float64).ravel()
        if weights.shape[0] != dataset.n_obs:
            raise ConfigurationError(
                f"weights has {weights.shape[0]} entries but dataset has {dataset.n_obs} observations"
            )
        if np.any(weights < 0) or not np.any(weights > 0) or not np.all(np.isfinite(weights)):
            raise ConfigurationError("weights must be finite, non-negative and not all zero")
        self.weights = weights

        if cache is None:
            cache = BasisCache(dataset)
        elif cache.dataset is not dataset:
            raise ConfigurationError("BasisCache belongs to a different dataset")
        self.cache = cache
        self.learners = [make_learner(term, cache) for term in self.terms]

        self.offset_: Optional[float] = None
        self.records_: tuple = ()
        self.risk_: Optional[np.ndarray] = None
        self.fitted_: Optional[np.ndarray] = None

    @property
    def mstop_max(self) -> int:
        return self.control.mstop

    @property
    def is_fitted(self) -> bool:
        return self.risk_ is not None

    def fit(self) -> "BoostingPath":
        """Run the boosting loop unconditionally to ``control.mstop`` iterations."""
        control = self.control
        loss = control.loss
        if control.verbose:
            logging.basicConfig(level=logging.INFO)

        self.cache.warm(self.terms)
        y = self.dataset.y
        w = self.weights
        columns = [self.dataset[t.predictor] for t in self.terms]

        self.offset_ = loss.offset(y, w)
        f = np.full(self.dataset.n_obs, self.offset_)
        risk = np.empty(control.mstop + 1)
        risk[0] = loss.risk(y, f, w)
        records = []
        reported = set()

        if control.verbose:
            logger.info(
                f"Boosting {len(self.terms)} terms for {control.mstop} iterations "
                f"(nu={control.nu}, offset={self.offset_:.6f})"
            )

        with Parallel(n_jobs=control.n_jobs, prefer="threads") as parallel:
            for m in range(1, control.mstop + 1):
                # (a) negative gradient
                residual = loss.negative_gradient(y, f)

                # (b) fit every candidate term
                if control.n_jobs == 1:
                    outcomes = [
                        _fit_candidate(j, learner, columns[j], residual, w)
                        for j, learner in enumerate(self.learners)
                    ]
                else:
                    outcomes = parallel(
                        delayed(_fit_candidate)(j, learner, columns[j], residual, w)
                        for j, learner in enumerate(self.learners)
                    )

                # (c) component-wise selection: minimum SSE, lowest index on ties
                best_index, best_fit = None, None
                for j, outcome in outcomes:
                    if isinstance(outcome, DegenerateFitError):
                        self._report_degenerate(j, m, outcome, reported)
                        continue
                    if not np.isfinite(outcome.sse):
                        self._report_degenerate(j, m, f"non-finite SSE {outcome.sse}", reported)
                        continue
                    if best_fit is None or outcome.sse < best_fit.sse:
                        best_index, best_fit = j, outcome

                # (d) shrunken update
                if best_fit is None:
                    logger.warning(f"Iteration {m}: no admissible term, recording a no-op step")
                    records.append(IterationRecord(m, None, None, 0.0, risk[m - 1]))
                    risk[m] = risk[m - 1]
                    continue

                f = f + control.nu * best_fit.fitted
                risk[m] = loss.risk(y, f, w)
                records.append(
                    IterationRecord(m, best_index, best_fit.contribution.scaled(control.nu), best_fit.df, risk[m])
                )

                if control.verbose and m % control.trace_every == 0:
                    logger.info(
                        f"Iteration {m}/{control.mstop}: risk={risk[m]:.6f}, "
                        f"selected={self.terms[best_index].label}"
                    )

        risk.flags.writeable = False
        f.flags.writeable = False
        self.records_ = tuple(records)
        self.risk_ = risk
        self.fitted_ = f
        return self

    def _report_degenerate(self, index: int, iteration: int, reason, reported: set) -> None:
        label = self.terms[index].label
        if index in reported:
            logger.debug(f"Iteration {iteration}: excluding {label}: {reason}")
        else:
            reported.add(index)
            logger.warning(f"Iteration {iteration}: excluding {label} from selection: {reason}")

    def _check_fitted(self) -> None:
        if not self.is_fitted:
            raise RuntimeError("BoostingPath must be fitted before use")

    def term_index(self, term: TermRef) -> int:
        """Resolve a ModelTerm, predictor name or index to a term index."""
        if isinstance(term, (int, np.integer)) and not isinstance(term, bool):
            if not 0 <= term < len(self.terms):
                raise ConfigurationError(f"Term index {term} out of range")
            return int(term)
        for j, t in enumerate(self.terms):
            if t == term or t.predictor == term:
                return j
        raise ConfigurationError(f"Term {term!r} is not part of this model")

    def view(self, k: Optional[int] = None) -> "PathView":
        """Model truncated at iteration ``k`` (default: mstop). No refitting."""
        self._check_fitted()
        if k is None:
            k = self.mstop_max
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or not 0 <= k <= self.mstop_max:
            raise ConfigurationError(f"Iteration must lie in [0, {self.mstop_max}], got {k!r}")
        return PathView(self, int(k))

    def __getitem__(self, k: int) -> "PathView":
        return self.view(k)

    def selected_terms(self, k: Optional[int] = None) -> List[Optional[int]]:
        return self.view(k).selected_terms

    def selection_counts(self, k: Optional[int] = None) -> Dict[str, int]:
        return self.view(k).selection_counts()

    def variable_importance(self, k: Optional[int] = None) -> Dict[str, float]:
        return self.view(k).variable_importance()

    def predict(self, observations: ObservationsLike, k: Optional[int] = None) -> np.ndarray:
        return self.view(k).predict(observations)

    def __repr__(self) -> str:
        terms = " + ".join(t.label for t in self.terms)
        state = "fitted" if self.is_fitted else "unfitted"
        return f"BoostingPath({terms}, mstop={self.mstop_max}, nu={self.control.nu}, {state})"


class PathView:
    """
    Immutable view of a fitted BoostingPath truncated at iteration ``mstop``.

    Only the first ``mstop`` recorded contributions are used; the underlying
    path is never modified, so views may be shared between threads.
    """

    def __init__(self, path: BoostingPath, mstop: int):
        self.path = path
        self.mstop = mstop
        self._aggregates: Optional[List[Contribution]] = None

    @property
    def terms(self) -> List[ModelTerm]:
        return self.path.terms

    @property
    def offset(self) -> float:
        return self.path.offset_

    @property
    def risk(self) -> float:
        """In-sample risk at this iteration."""
        return float(self.path.risk_[self.mstop])

    def records(self):
        return itertools.islice(self.path.records_, self.mstop)

    @property
    def selected_terms(self) -> List[Optional[int]]:
        return [r.term_index for r in self.records()]

    def term_contributions(self) -> List[Contribution]:
        """Per-term sum of shrunken contributions up to this iteration."""
        if self._aggregates is None:
            totals: List[Contribution] = [ZeroContribution() for _ in self.terms]
            for record in self.records():
                if record.term_index is not None:
                    totals[record.term_index] = totals[record.term_index] + record.contribution
            self._aggregates = totals
        return self._aggregates

    def partial_effect(self, term: TermRef) -> Contribution:
        """Callable giving the accumulated contribution of ``term`` at raw predictor values."""
        return self.term_contributions()[self.path.term_index(term)]

    def predict(self, observations: ObservationsLike) -> np.ndarray:
        columns = columns_of(observations)
        n = count_rows(columns, self.terms)
        pred = np.full(n, self.offset)
        for term, contribution in zip(self.terms, self.term_contributions()):
            if isinstance(contribution, ZeroContribution):
                continue
            pred += contribution(columns[term.predictor])
        return pred

    @property
    def fitted_values(self) -> np.ndarray:
        """In-sample fit at this iteration."""
        if self.mstop == self.path.mstop_max:
            return self.path.fitted_
        return self.predict(self.path.dataset)

    def selection_counts(self) -> Dict[str, int]:
        counts = {t.label: 0 for t in self.terms}
        for j in self.selected_terms:
            if j is not None:
                counts[self.terms[j].label] += 1
        return counts

    def variable_importance(self) -> Dict[str, float]:
        """In-sample risk reduction attributed to each term."""
        importance = {t.label: 0.0 for t in self.terms}
        risk = self.path.risk_
        for record in self.records():
            if record.term_index is not None:
                importance[self.terms[record.term_index].label] += risk[record.iteration - 1] - risk[record.iteration]
        return importance

    def __repr__(self) -> str:
        return f"PathView(mstop={self.mstop}, risk={self.risk:.6f})"


def count_rows(columns, terms: Sequence[ModelTerm]) -> int:
    missing = [t.predictor for t in terms if t.predictor not in columns]
    if missing:
        raise ConfigurationError(f"Observations lack predictor column(s) {missing}")
    lengths = {len(columns[t.predictor]) for t in terms}
    if len(lengths) != 1:
        raise ConfigurationError(f"Predictor columns have differing lengths {sorted(lengths)}")
    return lengths.pop()


def fit_path(
    dataset: Dataset,
    term_list: Sequence[ModelTerm],
    mstop_max: int = 100,
    shrinkage: float = 0.1,
    weights: Optional[np.ndarray] = None,
    n_jobs: Optional[int] = 1,
    verbose: bool = False,
) -> BoostingPath:
    """Fit a component-wise boosting path to ``mstop_max`` iterations."""
    control = BoostControl(mstop=mstop_max, nu=shrinkage, n_jobs=n_jobs, verbose=verbose)
    return BoostingPath(dataset, term_list, control, weights=weights).fit()
