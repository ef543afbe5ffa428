"""
Model terms and formula construction.

A model is an ordered list of ModelTerm objects, one per predictor. Terms are
built either explicitly with FormulaBuilder or by parsing an mboost-style
formula string once with parse_formula, e.g.::

    y ~ bols(length) + bbs(gc_content, df=5) + bmono(cai, constraint="increasing") + btree(tm)

Parsing never evaluates code; keyword values are restricted to Python literals.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import ast
import re

from .data import Dataset, is_categorical
from .exceptions import ConfigurationError

LEARNER_TYPES = ("bols", "bbs", "bmono", "btree")
DIRECTIONS = ("increasing", "decreasing")

_LEARNER_OPTIONS = {
    "bols": {"intercept"},
    "bbs": {"df", "lambda_", "n_knots", "degree", "differences"},
    "bmono": {"df", "lambda_", "n_knots", "degree", "differences"},
    "btree": {"min_samples_leaf"},
}


@dataclass(frozen=True)
class ModelTerm:
    """
    One additive model term: a predictor, its base-learner type and options.

    Attributes
    ----------
    predictor : str
        Column name in the Dataset.
    learner : str
        One of ``"bols"``, ``"bbs"``, ``"bmono"``, ``"btree"``.
    direction : str, optional
        ``"increasing"`` or ``"decreasing"``; required for ``"bmono"`` only.
    options : tuple of (str, value) pairs
        Learner hyperparameters (e.g. ``(("df", 4),)``).
    """

    predictor: str
    learner: str
    direction: Optional[str] = None
    options: Tuple[Tuple[str, Any], ...] = field(default=())

    def __post_init__(self):
        if self.learner not in LEARNER_TYPES:
            raise ConfigurationError(
                f"Unknown base-learner '{self.learner}' for '{self.predictor}'; "
                f"expected one of {LEARNER_TYPES}"
            )
        if self.learner == "bmono":
            if self.direction not in DIRECTIONS:
                raise ConfigurationError(
                    f"bmono({self.predictor}) requires direction in {DIRECTIONS}, got {self.direction!r}"
                )
        elif self.direction is not None:
            raise ConfigurationError(f"{self.learner}({self.predictor}) does not take a direction")
        if isinstance(self.options, dict):
            object.__setattr__(self, "options", tuple(sorted(self.options.items())))
        unknown = {k for k, _ in self.options} - _LEARNER_OPTIONS[self.learner]
        if unknown:
            raise ConfigurationError(
                f"Unknown option(s) {sorted(unknown)} for {self.learner}({self.predictor})"
            )

    @property
    def params(self) -> Dict[str, Any]:
        return dict(self.options)

    @property
    def label(self) -> str:
        args = [self.predictor]
        if self.direction is not None:
            args.append(f"constraint={self.direction!r}")
        args.extend(f"{k}={v!r}" for k, v in self.options)
        return f"{self.learner}({', '.join(args)})"

    def __str__(self) -> str:
        return self.label


def validate_terms(dataset: Dataset, terms: Sequence[ModelTerm]) -> List[ModelTerm]:
    """
    Check a term list against a Dataset schema.

    Raises ConfigurationError for an empty list, an unknown predictor, a repeated
    predictor, a categorical column paired with a non-linear learner, or missing
    values in any referenced column.
    """
    terms = list(terms)
    if not terms:
        raise ConfigurationError("Term list is empty")
    seen = set()
    for term in terms:
        if not isinstance(term, ModelTerm):
            raise ConfigurationError(f"Expected ModelTerm, got {type(term).__name__}")
        if term.predictor not in dataset:
            raise ConfigurationError(
                f"Predictor '{term.predictor}' not found in dataset (available: {dataset.predictors})"
            )
        if term.predictor in seen:
            raise ConfigurationError(f"Predictor '{term.predictor}' appears in more than one term")
        seen.add(term.predictor)
        if term.learner != "bols" and is_categorical(dataset[term.predictor]):
            raise ConfigurationError(
                f"Categorical predictor '{term.predictor}' can only be used with bols"
            )
    dataset.check_complete(seen)
    return terms


class FormulaBuilder:
    """
    Explicit builder for a term list.

    Example
    -------
    >>> terms = (FormulaBuilder()
    ...          .ols("length")
    ...          .spline("gc_content", df=5)
    ...          .monotone("cai", direction="increasing")
    ...          .tree("tm")
    ...          .build())
    """

    def __init__(self, response: Optional[str] = None):
        self.response = response
        self._terms: List[ModelTerm] = []

    def add(self, predictor: str, learner: str, direction: Optional[str] = None, **options) -> "FormulaBuilder":
        self._terms.append(ModelTerm(predictor, learner, direction, tuple(sorted(options.items()))))
        return self

    def ols(self, predictor: str, **options) -> "FormulaBuilder":
        return self.add(predictor, "bols", **options)

    def spline(self, predictor: str, **options) -> "FormulaBuilder":
        return self.add(predictor, "bbs", **options)

    def monotone(self, predictor: str, direction: str = "increasing", **options) -> "FormulaBuilder":
        return self.add(predictor, "bmono", direction, **options)

    def tree(self, predictor: str, **options) -> "FormulaBuilder":
        return self.add(predictor, "btree", **options)

    def build(self, dataset: Optional[Dataset] = None) -> List[ModelTerm]:
        """Return the term list, validated against ``dataset`` when given."""
        if dataset is not None:
            return validate_terms(dataset, self._terms)
        if not self._terms:
            raise ConfigurationError("Term list is empty")
        return list(self._terms)


_CALL_RE = re.compile(r"^\s*(\w+)\s*\((.*)\)\s*$", re.DOTALL)
_NAME_RE = re.compile(r"^[A-Za-z_][\w.]*$")


def _split_top_level(text: str, sep: str) -> List[str]:
    parts, depth, current = [], 0, []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == sep and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return [p.strip() for p in parts]


def _parse_term(text: str) -> ModelTerm:
    match = _CALL_RE.match(text)
    if match is None:
        raise ConfigurationError(f"Cannot parse term '{text}'; expected learner(predictor, ...)")
    learner, inner = match.groups()
    args = _split_top_level(inner, ",")
    predictor = args[0]
    if not _NAME_RE.match(predictor):
        raise ConfigurationError(f"Invalid predictor name '{predictor}' in '{text}'")

    direction = None
    options = {}
    for arg in args[1:]:
        if "=" not in arg:
            raise ConfigurationError(f"Positional argument '{arg}' not supported in '{text}'")
        key, raw = (s.strip() for s in arg.split("=", 1))
        try:
            value = ast.literal_eval(raw)
        except (ValueError, SyntaxError):
            raise ConfigurationError(f"Option {key}={raw} in '{text}' is not a literal")
        if key in ("constraint", "direction"):
            direction = value
        else:
            options[key] = value
    return ModelTerm(predictor, learner, direction, tuple(sorted(options.items())))


def parse_formula(formula: str, dataset: Optional[Dataset] = None) -> Tuple[str, List[ModelTerm]]:
    """
    Parse ``"response ~ learner(x) + learner(z, opt=val) + ..."`` into (response, terms).

    When ``dataset`` is given the terms are validated against it.
    """
    if "~" not in formula:
        raise ConfigurationError(f"Formula '{formula}' has no '~'")
    lhs, rhs = formula.split("~", 1)
    response = lhs.strip()
    if not _NAME_RE.match(response):
        raise ConfigurationError(f"Invalid response name '{response}'")
    pieces = [p for p in _split_top_level(rhs, "+") if p]
    terms = [_parse_term(p) for p in pieces]
    if dataset is not None:
        terms = validate_terms(dataset, terms)
    elif not terms:
        raise ConfigurationError("Term list is empty")
    return response, terms
