"""
Prediction from a fitted boosting path at a chosen stopping iteration.
"""

from typing import Union
import numpy as np

from .core import BoostingPath, PathView, TermRef, count_rows
from .data import ObservationsLike, columns_of
from .learners import Contribution

PathLike = Union[BoostingPath, PathView]


def _as_view(path: PathLike, at_iteration) -> PathView:
    if isinstance(path, PathView):
        path = path.path
    return path.view(at_iteration)


def predict(path: PathLike, at_iteration: int, observations: ObservationsLike) -> np.ndarray:
    """
    Predict the response for new observations using the first ``at_iteration`` updates.

    Args:
        path: Fitted BoostingPath (or a view of one).
        at_iteration: Stopping iteration in [0, mstop_max]; 0 gives the offset.
        observations: Dataset, DataFrame or mapping of predictor name -> values.

    Returns:
        Predictions, shape (n_observations,).
    """
    return _as_view(path, at_iteration).predict(observations)


def partial_effect(path: PathLike, at_iteration: int, term: TermRef) -> Contribution:
    """Accumulated contribution function of ``term`` (ModelTerm, predictor name or index)."""
    return _as_view(path, at_iteration).partial_effect(term)


def staged_predict(path: PathLike, observations: ObservationsLike) -> np.ndarray:
    """
    Predictions at every iteration 0..mstop, built incrementally.

    A BoostingPath is staged up to mstop_max, a PathView up to its own mstop.

    Returns:
        Array of shape (mstop + 1, n_observations); row k equals
        ``predict(path, k, observations)``.
    """
    view = path if isinstance(path, PathView) else path.view()
    columns = columns_of(observations)
    terms = view.terms
    n = count_rows(columns, terms)

    staged = np.empty((view.mstop + 1, n))
    current = np.full(n, view.offset)
    staged[0] = current
    for record in view.records():
        if record.term_index is not None:
            current = current + record.contribution(columns[terms[record.term_index].predictor])
        staged[record.iteration] = current
    return staged


def effect_curve(path: PathLike, at_iteration: int, term: TermRef, grid=None, n_points: int = 100):
    """
    Partial effect evaluated on a grid, for plotting.

    Numeric predictors default to an even grid over the training range; categorical
    predictors use their observed levels.

    Returns:
        (grid, effect) tuple of arrays.
    """
    view = _as_view(path, at_iteration)
    index = view.path.term_index(term)
    column = view.path.dataset[view.terms[index].predictor]
    if grid is None:
        if column.dtype == object:
            grid = np.array(sorted(set(column), key=str), dtype=object)
        else:
            grid = np.linspace(np.min(column), np.max(column), n_points)
    return grid, view.partial_effect(index)(grid)
