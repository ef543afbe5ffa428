"""
Component-wise functional gradient boosting for additive models.

Fits additive regression models term by term, choosing one base-learner
(linear, P-spline, monotone P-spline or tree stump) per iteration, and picks
the stopping iteration by k-fold, bootstrap or subsampling cross-validation.

Follows the component-wise L2 boosting framework of Bühlmann & Hothorn (2007),
"Boosting algorithms: Regularization, prediction and model fitting".
"""

from .config import BoostControl
from .core import BoostingPath, PathView, fit_path
from .data import Dataset
from .exceptions import ConfigurationError, CwBoostError, DegenerateFitError, NumericInstabilityWarning
from .formula import FormulaBuilder, ModelTerm, parse_formula, validate_terms
from .predict import effect_curve, partial_effect, predict, staged_predict
from .validation import CrossValidator, CVResult, cross_validate, cross_validate_variants, make_folds

__version__ = "0.1.0"
__all__ = [
    "BoostControl",
    "BoostingPath",
    "PathView",
    "fit_path",
    "Dataset",
    "ConfigurationError",
    "CwBoostError",
    "DegenerateFitError",
    "NumericInstabilityWarning",
    "FormulaBuilder",
    "ModelTerm",
    "parse_formula",
    "validate_terms",
    "effect_curve",
    "partial_effect",
    "predict",
    "staged_predict",
    "CrossValidator",
    "CVResult",
    "cross_validate",
    "cross_validate_variants",
    "make_folds",
]
