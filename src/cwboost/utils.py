"""
Utility functions for component-wise boosting: loss, risk, metrics and data splitting.

References:
- Friedman, J. H. (2001). Greedy function approximation: A gradient boosting machine.
- Bühlmann, P., & Yu, B. (2003). Boosting with the L2 loss: regression and
  classification. Journal of the American Statistical Association, 98(462), 324-339.
"""

from abc import ABC, abstractmethod
from typing import Optional, Tuple
import numpy as np
from sklearn.metrics import mean_squared_error, mean_absolute_error, r2_score
from sklearn.model_selection import train_test_split

from .data import Dataset


# ===========================
# Loss Functions and Gradients
# ===========================

class Loss(ABC):
    """Interface for a smooth loss used by the boosting loop."""

    name = "loss"

    @abstractmethod
    def offset(self, y: np.ndarray, weights: np.ndarray) -> float:
        """Constant initial fit."""
        pass

    @abstractmethod
    def negative_gradient(self, y: np.ndarray, f: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def risk(self, y: np.ndarray, f: np.ndarray, weights: np.ndarray) -> float:
        pass


class SquaredError(Loss):
    """
    L2 loss L(y, f) = (y - f)^2.

    The offset is the weighted mean of y, the negative gradient is the
    ordinary residual y - f, and the risk is the weighted sum of squares.
    """

    name = "squared_error"

    def offset(self, y, weights):
        return float(np.sum(weights * y) / np.sum(weights))

    def negative_gradient(self, y, f):
        return y - f

    def risk(self, y, f, weights):
        return float(np.sum(weights * (y - f) ** 2))


def mse_risk(y_true: np.ndarray, y_pred: np.ndarray, weights: Optional[np.ndarray] = None):
    """
    (Weighted) mean squared error, the out-of-sample risk used for cross-validation.

    ``y_pred`` may stack several prediction vectors along its first axis, e.g. the
    output of ``staged_predict``; one risk per row is then returned as an array.
    """
    squared = (y_true - y_pred) ** 2
    if weights is None:
        risk = np.mean(squared, axis=-1)
    else:
        risk = np.sum(weights * squared, axis=-1) / np.sum(weights)
    return float(risk) if np.ndim(risk) == 0 else risk


# ===========================
# Metrics
# ===========================

def compute_metrics_regression(
    y_true: np.ndarray,
    y_pred: np.ndarray
) -> dict:
    """Compute regression metrics."""
    mse = mean_squared_error(y_true, y_pred)
    rmse = np.sqrt(mse)
    mae = mean_absolute_error(y_true, y_pred)
    r2 = r2_score(y_true, y_pred)

    return {
        "mse": mse,
        "rmse": rmse,
        "mae": mae,
        "r2": r2
    }


# ===========================
# Data splitting
# ===========================

def train_test_split_dataset(
    dataset: Dataset,
    test_size: float = 0.2,
    random_state: Optional[int] = None
) -> Tuple[Dataset, Dataset]:
    """Random train/test split of a Dataset by rows."""
    rows = np.arange(dataset.n_obs)
    train_rows, test_rows = train_test_split(rows, test_size=test_size, random_state=random_state)
    return dataset.subset(np.sort(train_rows)), dataset.subset(np.sort(test_rows))
