"""
Dataset container for the boosting engine.

A Dataset holds a scalar response and an ordered mapping of predictor name to
column. Numeric columns are stored as float64; categorical columns (pandas
``category``/``object`` dtype) are stored as object arrays and may only be used
with the linear base-learner.
"""

from typing import Dict, Iterable, Mapping, Optional, Union
import logging

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _as_column(name: str, values) -> np.ndarray:
    if isinstance(values, pd.Series):
        if isinstance(values.dtype, pd.CategoricalDtype) or values.dtype == object:
            return values.astype(object).to_numpy()
        values = values.to_numpy()
    arr = np.asarray(values)
    if arr.ndim != 1:
        raise ConfigurationError(f"Predictor '{name}' must be one-dimensional, got shape {arr.shape}")
    if arr.dtype.kind in "biuf":
        return arr.astype(np.float64)
    return arr.astype(object)


def is_categorical(column: np.ndarray) -> bool:
    """True for object-dtype (factor) columns."""
    return column.dtype == object


class Dataset:
    """
    Response plus named predictor columns.

    Parameters
    ----------
    y : array-like, shape (n,)
        Response values.
    columns : mapping of str -> array-like
        Predictor columns, each of length n.
    """

    def __init__(self, y, columns: Mapping[str, Iterable]):
        self.y = np.array(y, dtype=np.float64).ravel()
        self.columns: Dict[str, np.ndarray] = {
            str(name): _as_column(str(name), values) for name, values in columns.items()
        }
        n = self.y.shape[0]
        for name, col in self.columns.items():
            if col.shape[0] != n:
                raise ConfigurationError(
                    f"Predictor '{name}' has {col.shape[0]} values but response has {n}"
                )
        for arr in self.columns.values():
            arr.flags.writeable = False
        self.y.flags.writeable = False

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        response: str,
        predictors: Optional[Iterable[str]] = None,
    ) -> "Dataset":
        """Build a Dataset from a DataFrame, using every non-response column by default."""
        if response not in frame.columns:
            raise ConfigurationError(f"Response column '{response}' not found in frame")
        if predictors is None:
            predictors = [c for c in frame.columns if c != response]
        missing = [p for p in predictors if p not in frame.columns]
        if missing:
            raise ConfigurationError(f"Predictor columns not found in frame: {missing}")
        logger.debug(f"Building dataset from frame: response={response}, {len(predictors)} predictors")
        return cls(frame[response].to_numpy(), {p: frame[p] for p in predictors})

    @property
    def n_obs(self) -> int:
        return self.y.shape[0]

    @property
    def predictors(self):
        return list(self.columns)

    def __len__(self) -> int:
        return self.n_obs

    def __contains__(self, name: str) -> bool:
        return name in self.columns

    def __getitem__(self, name: str) -> np.ndarray:
        return self.columns[name]

    def subset(self, rows) -> "Dataset":
        """Return a new Dataset restricted to ``rows`` (indices or boolean mask)."""
        rows = np.asarray(rows)
        return Dataset(self.y[rows], {name: col[rows] for name, col in self.columns.items()})

    def check_complete(self, names: Optional[Iterable[str]] = None) -> None:
        """Raise ConfigurationError if the response or any listed predictor has missing values."""
        if not np.all(np.isfinite(self.y)):
            raise ConfigurationError("Response contains missing or non-finite values")
        names = self.predictors if names is None else names
        for name in names:
            col = self.columns[name]
            if is_categorical(col):
                if pd.isna(col).any():
                    raise ConfigurationError(f"Predictor '{name}' contains missing values")
            elif not np.all(np.isfinite(col)):
                raise ConfigurationError(f"Predictor '{name}' contains missing or non-finite values")

    def to_frame(self, response: str = "y") -> pd.DataFrame:
        frame = pd.DataFrame({name: col for name, col in self.columns.items()})
        frame.insert(0, response, self.y)
        return frame

    def __repr__(self) -> str:
        return f"Dataset(n_obs={self.n_obs}, predictors={self.predictors})"


ObservationsLike = Union[Dataset, pd.DataFrame, Mapping[str, Iterable]]


def columns_of(observations: ObservationsLike) -> Mapping[str, np.ndarray]:
    """Normalise prediction input (Dataset, DataFrame or mapping) to a column mapping."""
    if isinstance(observations, Dataset):
        return observations.columns
    if isinstance(observations, pd.DataFrame):
        return {str(c): _as_column(str(c), observations[c]) for c in observations.columns}
    return {str(name): _as_column(str(name), values) for name, values in observations.items()}
