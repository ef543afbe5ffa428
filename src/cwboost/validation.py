"""
Cross-validated choice of the stopping iteration mstop.

Each fold is described by a vector of observation weights: rows with positive
weight train a fresh BoostingPath, rows with zero weight are held out. One pass
to mstop_max per fold gives the held-out risk at every iteration 0..mstop_max;
the fold curves are averaged and the arg-min (smallest index on ties) is the
selected mstop.

Iteration 0 is the null model: its risk on a fold is the variance of the
held-out response. Iterations k >= 1 are the held-out MSE of the path truncated
at k.

Supported resampling schemes:
- "kfold":       disjoint folds (sklearn KFold, shuffled); weights are 0/1.
- "bootstrap":   multinomial resampling; held-out rows are the out-of-bag rows.
- "subsampling": random halves (sklearn ShuffleSplit); weights are 0/1.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence
import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.model_selection import KFold, ShuffleSplit

from .config import BoostControl
from .core import BoostingPath
from .data import Dataset
from .exceptions import ConfigurationError
from .formula import ModelTerm, validate_terms
from .predict import staged_predict
from .splines import BasisCache
from .utils import mse_risk

logger = logging.getLogger(__name__)

SCHEMES = ("kfold", "bootstrap", "subsampling")


def make_folds(
    n_obs: int,
    fold_count: int,
    scheme: str = "kfold",
    seed: Optional[int] = None,
    subsample_fraction: float = 0.5
) -> np.ndarray:
    """
    Fold weight matrix of shape (fold_count, n_obs).

    Args:
        n_obs: Number of observations.
        fold_count: Number of folds / resamples (at least 2).
        scheme: One of "kfold", "bootstrap", "subsampling".
        seed: Random seed for fold assignment.
        subsample_fraction: Training fraction for "subsampling".

    Returns:
        Integer weights; zero marks a held-out observation.
    """
    if scheme not in SCHEMES:
        raise ConfigurationError(f"Unknown resampling scheme '{scheme}'; expected one of {SCHEMES}")
    if isinstance(fold_count, bool) or not isinstance(fold_count, (int, np.integer)) or fold_count < 2:
        raise ConfigurationError(f"fold_count must be an integer >= 2, got {fold_count!r}")

    rows = np.arange(n_obs)
    weights = np.zeros((fold_count, n_obs), dtype=np.int64)

    if scheme == "kfold":
        if fold_count > n_obs:
            raise ConfigurationError(f"fold_count={fold_count} exceeds the number of observations ({n_obs})")
        splitter = KFold(n_splits=fold_count, shuffle=True, random_state=seed)
        for b, (train, _) in enumerate(splitter.split(rows)):
            weights[b, train] = 1
    elif scheme == "subsampling":
        if not 0 < subsample_fraction < 1:
            raise ConfigurationError(f"subsample_fraction must lie in (0, 1), got {subsample_fraction}")
        splitter = ShuffleSplit(n_splits=fold_count, train_size=subsample_fraction, random_state=seed)
        for b, (train, _) in enumerate(splitter.split(rows)):
            weights[b, train] = 1
    else:
        rng = np.random.default_rng(seed)
        weights[:] = rng.multinomial(n_obs, np.full(n_obs, 1.0 / n_obs), size=fold_count)

    return weights


@dataclass(frozen=True, eq=False)
class CVResult:
    """
    Out-of-fold risk curves.

    Attributes:
        fold_risk: Held-out MSE per fold and iteration, shape (fold_count, mstop_max + 1).
        mean_risk: Arithmetic mean over folds, shape (mstop_max + 1,).
        best_mstop: Iteration minimising mean_risk (smallest index on ties).
        scheme: Resampling scheme used.
        fold_weights: Fold weight matrix, shape (fold_count, n_obs).
    """

    fold_risk: np.ndarray
    mean_risk: np.ndarray
    best_mstop: int
    scheme: str
    fold_weights: np.ndarray

    @classmethod
    def from_fold_risk(cls, fold_risk: np.ndarray, scheme: str, fold_weights: np.ndarray) -> "CVResult":
        fold_risk = np.asarray(fold_risk, dtype=np.float64)
        mean_risk = fold_risk.mean(axis=0)
        best = int(np.argmin(mean_risk))
        for arr in (fold_risk, mean_risk, fold_weights):
            arr.flags.writeable = False
        return cls(fold_risk, mean_risk, best, scheme, fold_weights)

    @property
    def mstop_max(self) -> int:
        return self.mean_risk.shape[0] - 1

    @property
    def fold_count(self) -> int:
        return self.fold_risk.shape[0]

    def risk_at(self, k: int) -> float:
        return float(self.mean_risk[k])

    def to_frame(self) -> pd.DataFrame:
        """Long-format table of iteration, fold and risk (for plotting/reporting)."""
        frame = pd.DataFrame(self.fold_risk.T, columns=[f"fold_{b}" for b in range(self.fold_count)])
        frame.insert(0, "iteration", np.arange(self.mstop_max + 1))
        frame["mean_risk"] = self.mean_risk
        return frame

    def __repr__(self) -> str:
        return (
            f"CVResult(scheme={self.scheme!r}, folds={self.fold_count}, "
            f"best_mstop={self.best_mstop}, risk={self.mean_risk[self.best_mstop]:.6f})"
        )


def _fold_risk(
    cache: BasisCache,
    terms: Sequence[ModelTerm],
    control: BoostControl,
    fold_weights: np.ndarray
) -> np.ndarray:
    dataset = cache.dataset
    train = np.flatnonzero(fold_weights > 0)
    held = np.flatnonzero(fold_weights == 0)

    fold_cache = cache.restrict(train)
    path = BoostingPath(fold_cache.dataset, terms, control, weights=fold_weights[train], cache=fold_cache).fit()

    held_out = dataset.subset(held)
    risk = mse_risk(held_out.y, staged_predict(path, held_out))
    # iteration 0 is scored against the held-out mean: the held-out variance
    risk[0] = np.var(held_out.y)
    return risk


class CrossValidator:
    """
    Resampling-based estimate of the out-of-sample risk along the boosting path.

    Args:
        fold_count: Number of folds / resamples (at least 2).
        scheme: "kfold", "bootstrap" or "subsampling".
        seed: Random seed for the fold assignment.
        shrinkage: Step length ν used in every fold.
        n_jobs: Number of folds evaluated in parallel (joblib).
        verbose: Enable INFO logging.
    """

    def __init__(
        self,
        fold_count: int = 10,
        scheme: str = "kfold",
        seed: Optional[int] = None,
        shrinkage: float = 0.1,
        n_jobs: Optional[int] = 1,
        verbose: bool = False
    ):
        if scheme not in SCHEMES:
            raise ConfigurationError(f"Unknown resampling scheme '{scheme}'; expected one of {SCHEMES}")
        if isinstance(fold_count, bool) or not isinstance(fold_count, (int, np.integer)) or fold_count < 2:
            raise ConfigurationError(f"fold_count must be an integer >= 2, got {fold_count!r}")
        self.fold_count = int(fold_count)
        self.scheme = scheme
        self.seed = seed
        self.shrinkage = shrinkage
        self.n_jobs = n_jobs
        self.verbose = verbose

    def evaluate(
        self,
        dataset: Dataset,
        term_list: Sequence[ModelTerm],
        mstop_max: int,
        fold_count: Optional[int] = None
    ) -> CVResult:
        """
        Run every fold to ``mstop_max`` and aggregate the held-out risk curves.

        All configuration is validated before any fold is fitted.
        """
        fold_count = self.fold_count if fold_count is None else fold_count
        # fold paths may run in worker processes; progress is reported from here
        control = BoostControl(mstop=mstop_max, nu=self.shrinkage)
        terms = validate_terms(dataset, term_list)
        fold_weights = make_folds(dataset.n_obs, fold_count, self.scheme, self.seed)
        empty = [b for b in range(fold_count) if not np.any(fold_weights[b] == 0)]
        if empty:
            raise ConfigurationError(f"Folds {empty} have no held-out observations")

        cache = BasisCache(dataset)
        cache.warm(terms)

        if self.verbose:
            logging.basicConfig(level=logging.INFO)
            logger.info(
                f"Cross-validating {len(terms)} terms: scheme={self.scheme}, "
                f"folds={fold_count}, mstop_max={mstop_max}"
            )
        risks = Parallel(n_jobs=self.n_jobs)(
            delayed(_fold_risk)(cache, terms, control, fold_weights[b])
            for b in range(fold_count)
        )

        if self.verbose:
            for b, risk in enumerate(risks):
                logger.info(
                    f"Fold {b}: {int(np.sum(fold_weights[b] > 0))} training rows, "
                    f"{int(np.sum(fold_weights[b] == 0))} held out, "
                    f"min risk={risk.min():.6f} at iteration {int(np.argmin(risk))}"
                )

        result = CVResult.from_fold_risk(np.vstack(risks), self.scheme, fold_weights)
        if self.verbose:
            logger.info(f"Selected mstop={result.best_mstop} (risk={result.mean_risk[result.best_mstop]:.6f})")
        return result


def cross_validate(
    dataset: Dataset,
    term_list: Sequence[ModelTerm],
    mstop_max: int,
    fold_count: int = 10,
    seed: Optional[int] = None,
    scheme: str = "kfold",
    shrinkage: float = 0.1,
    n_jobs: Optional[int] = 1,
    verbose: bool = False
) -> CVResult:
    """Cross-validated risk curve and optimal mstop for one term list."""
    validator = CrossValidator(
        fold_count, scheme=scheme, seed=seed, shrinkage=shrinkage, n_jobs=n_jobs, verbose=verbose
    )
    return validator.evaluate(dataset, term_list, mstop_max)


def cross_validate_variants(
    dataset: Dataset,
    variants: Mapping[str, Sequence[ModelTerm]],
    mstop_max: int,
    fold_count: int = 10,
    seed: Optional[int] = None,
    scheme: str = "kfold",
    shrinkage: float = 0.1,
    n_jobs: Optional[int] = 1,
    verbose: bool = False
) -> Dict[str, CVResult]:
    """
    Cross-validate several model formulas on the same folds.

    Variants are independent and run in parallel; folds inside each variant run
    sequentially.
    """
    for name, terms in variants.items():
        try:
            validate_terms(dataset, terms)
        except ConfigurationError as exc:
            raise ConfigurationError(f"Variant '{name}': {exc}") from exc

    names = list(variants)
    results = Parallel(n_jobs=n_jobs)(
        delayed(cross_validate)(dataset, variants[name], mstop_max, fold_count, seed, scheme, shrinkage)
        for name in names
    )
    if verbose:
        logging.basicConfig(level=logging.INFO)
        for name, result in zip(names, results):
            logger.info(f"Variant '{name}': {result!r}")
    return dict(zip(names, results))
