"""
Unit tests for the component-wise boosting path.

Tests numerical correctness of:
- In-sample risk monotonicity along the path
- Truncation of a long path versus an independent short fit
- Deterministic component-wise selection
- One-step, full-shrinkage boosting versus direct least squares
- Recovery from degenerate terms and configuration errors
"""

import logging

import numpy as np
import pytest

import sys
from pathlib import Path

# Add src directory to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from cwboost.config import BoostControl
from cwboost.core import BoostingPath, fit_path
from cwboost.data import Dataset
from cwboost.exceptions import ConfigurationError
from cwboost.formula import FormulaBuilder, ModelTerm
from cwboost.predict import partial_effect, predict, staged_predict


def make_additive_data(n=200, seed=0):
    rng = np.random.default_rng(seed)
    x1 = rng.uniform(0, 1, n)
    x2 = rng.uniform(-1, 1, n)
    x3 = rng.standard_normal(n)
    y = 2.0 * x1 + np.sin(3.0 * x2) + 0.1 * rng.standard_normal(n)
    return Dataset(y, {"x1": x1, "x2": x2, "x3": x3})


def mixed_terms():
    return (FormulaBuilder()
            .ols("x1")
            .spline("x2")
            .tree("x3")
            .build())


# =========================
# Test Risk Monotonicity
# =========================

def test_in_sample_risk_non_increasing():
    """In-sample risk must never increase along the path."""
    ds = make_additive_data()
    path = fit_path(ds, mixed_terms(), mstop_max=100, shrinkage=0.1)

    assert path.risk_.shape == (101,)
    assert np.all(np.diff(path.risk_) <= 1e-9 * path.risk_[0])
    assert path.risk_[-1] < path.risk_[0]


def test_in_sample_risk_non_increasing_with_monotone_term():
    ds = make_additive_data(seed=3)
    terms = FormulaBuilder().monotone("x1", direction="increasing").spline("x2").build()
    path = fit_path(ds, terms, mstop_max=60, shrinkage=0.3)

    assert np.all(np.diff(path.risk_) <= 1e-9 * path.risk_[0])


def test_risk_zero_equals_null_model():
    ds = make_additive_data()
    path = fit_path(ds, mixed_terms(), mstop_max=5)

    assert path.offset_ == pytest.approx(np.mean(ds.y), rel=1e-12)
    assert path.risk_[0] == pytest.approx(np.sum((ds.y - ds.y.mean()) ** 2), rel=1e-10)


# =========================
# Test Truncation
# =========================

def test_truncation_matches_shorter_fit():
    """Predicting at k from a long path equals a path run only to k."""
    ds = make_additive_data(seed=1)
    test = make_additive_data(n=50, seed=2)
    terms = mixed_terms()

    long_path = fit_path(ds, terms, mstop_max=80, shrinkage=0.1)
    short_path = fit_path(ds, terms, mstop_max=30, shrinkage=0.1)

    np.testing.assert_allclose(
        predict(long_path, 30, test), predict(short_path, 30, test), rtol=1e-12, atol=1e-12
    )
    assert long_path.selected_terms(30) == short_path.selected_terms()
    np.testing.assert_allclose(long_path.risk_[:31], short_path.risk_, rtol=1e-12)


def test_view_at_zero_is_offset():
    ds = make_additive_data()
    path = fit_path(ds, mixed_terms(), mstop_max=10)

    pred = predict(path, 0, ds)
    np.testing.assert_allclose(pred, np.full(ds.n_obs, path.offset_))


def test_view_at_mstop_matches_fitted_values():
    ds = make_additive_data()
    path = fit_path(ds, mixed_terms(), mstop_max=40)

    np.testing.assert_allclose(path.predict(ds), path.fitted_, rtol=1e-10, atol=1e-10)


def test_staged_predict_rows_match_predict():
    ds = make_additive_data()
    test = make_additive_data(n=30, seed=9)
    path = fit_path(ds, mixed_terms(), mstop_max=25)

    staged = staged_predict(path, test)
    assert staged.shape == (26, 30)
    for k in (0, 1, 7, 25):
        np.testing.assert_allclose(staged[k], predict(path, k, test), rtol=1e-10, atol=1e-10)


def test_view_does_not_modify_path():
    ds = make_additive_data()
    path = fit_path(ds, mixed_terms(), mstop_max=20)
    records_before = path.records_

    path.view(5).predict(ds)
    path.view(15).partial_effect("x2")

    assert path.records_ is records_before
    assert path.mstop_max == 20


def test_iteration_out_of_range_raises():
    ds = make_additive_data()
    path = fit_path(ds, mixed_terms(), mstop_max=10)

    with pytest.raises(ConfigurationError):
        predict(path, 11, ds)
    with pytest.raises(ConfigurationError):
        predict(path, -1, ds)


# =========================
# Test Selection
# =========================

def test_selection_determinism():
    """Same data and configuration give the same sequence of selected terms."""
    ds = make_additive_data(seed=4)
    path1 = fit_path(ds, mixed_terms(), mstop_max=50)
    path2 = fit_path(ds, mixed_terms(), mstop_max=50)

    assert path1.selected_terms() == path2.selected_terms()
    np.testing.assert_array_equal(path1.fitted_, path2.fitted_)


def test_ties_broken_by_lowest_index():
    """Identical candidate fits select the first term."""
    rng = np.random.default_rng(5)
    x = rng.uniform(size=60)
    y = 3 * x + 0.1 * rng.standard_normal(60)
    ds = Dataset(y, {"a": x, "b": x.copy()})

    path = fit_path(ds, FormulaBuilder().ols("a").ols("b").build(), mstop_max=15)

    assert path.selected_terms() == [0] * 15


def test_informative_term_selected_first():
    ds = make_additive_data()
    terms = FormulaBuilder().ols("x3").ols("x1").build()
    path = fit_path(ds, terms, mstop_max=5)

    assert path.selected_terms()[0] == 1


def test_threaded_candidates_match_sequential():
    ds = make_additive_data(seed=6)
    sequential = BoostingPath(ds, mixed_terms(), BoostControl(mstop=30, n_jobs=1)).fit()
    threaded = BoostingPath(ds, mixed_terms(), BoostControl(mstop=30, n_jobs=2)).fit()

    assert sequential.selected_terms() == threaded.selected_terms()
    np.testing.assert_allclose(sequential.fitted_, threaded.fitted_, rtol=1e-12)


def test_selection_counts_and_importance():
    ds = make_additive_data()
    path = fit_path(ds, mixed_terms(), mstop_max=50)

    counts = path.selection_counts()
    assert sum(counts.values()) == 50

    importance = path.variable_importance()
    assert sum(importance.values()) == pytest.approx(path.risk_[0] - path.risk_[-1], rel=1e-8)
    assert all(v >= -1e-9 for v in importance.values())


# =========================
# Test Degenerate Cases
# =========================

def test_single_iteration_full_shrinkage_equals_ols():
    """mstop=1 with nu=1 and one linear term reproduces least squares."""
    rng = np.random.default_rng(10)
    x = np.arange(10, dtype=float)
    y = 1.5 + 0.7 * x + rng.standard_normal(10)
    ds = Dataset(y, {"x": x})

    path = fit_path(ds, [ModelTerm("x", "bols")], mstop_max=1, shrinkage=1.0)

    slope, intercept = np.polyfit(x, y, 1)
    np.testing.assert_allclose(predict(path, 1, ds), intercept + slope * x, rtol=1e-10, atol=1e-10)


def test_zero_variance_term_excluded(caplog):
    """A constant predictor is skipped with a warning instead of aborting."""
    rng = np.random.default_rng(11)
    x = rng.uniform(size=50)
    ds = Dataset(x + 0.1 * rng.standard_normal(50), {"const": np.ones(50), "x": x})
    terms = FormulaBuilder().spline("const").ols("x").build()

    with caplog.at_level(logging.WARNING, logger="cwboost.core"):
        path = fit_path(ds, terms, mstop_max=10)

    assert path.selected_terms() == [1] * 10
    assert any("const" in rec.getMessage() for rec in caplog.records)


def test_all_terms_degenerate_records_noop_steps():
    ds = Dataset(np.arange(8, dtype=float), {"const": np.full(8, 2.0)})
    path = fit_path(ds, [ModelTerm("const", "bols")], mstop_max=4)

    assert path.selected_terms() == [None] * 4
    np.testing.assert_allclose(path.risk_, path.risk_[0])
    np.testing.assert_allclose(predict(path, 4, ds), np.full(8, ds.y.mean()))


def test_bootstrap_weights_change_offset():
    ds = make_additive_data(n=40)
    weights = np.zeros(40)
    weights[:20] = 2.0
    path = BoostingPath(ds, mixed_terms(), BoostControl(mstop=5), weights=weights).fit()

    assert path.offset_ == pytest.approx(np.mean(ds.y[:20]), rel=1e-12)


# =========================
# Test Configuration Errors
# =========================

def test_unknown_predictor_raises_before_fitting():
    ds = make_additive_data()
    with pytest.raises(ConfigurationError):
        fit_path(ds, [ModelTerm("missing", "bols")], mstop_max=10)


def test_empty_term_list_raises():
    ds = make_additive_data()
    with pytest.raises(ConfigurationError):
        fit_path(ds, [], mstop_max=10)


@pytest.mark.parametrize("mstop", [0, -5, 2.5])
def test_invalid_mstop_raises(mstop):
    ds = make_additive_data()
    with pytest.raises(ConfigurationError):
        fit_path(ds, mixed_terms(), mstop_max=mstop)


@pytest.mark.parametrize("nu", [0.0, -0.1, 1.5])
def test_invalid_shrinkage_raises(nu):
    ds = make_additive_data()
    with pytest.raises(ConfigurationError):
        fit_path(ds, mixed_terms(), mstop_max=5, shrinkage=nu)


def test_duplicate_predictor_raises():
    ds = make_additive_data()
    with pytest.raises(ConfigurationError):
        fit_path(ds, FormulaBuilder().ols("x1").spline("x1").build(), mstop_max=5)


def test_missing_values_raise():
    x = np.array([0.1, 0.2, np.nan, 0.4])
    ds = Dataset(np.arange(4.0), {"x": x})
    with pytest.raises(ConfigurationError):
        fit_path(ds, [ModelTerm("x", "bols")], mstop_max=2)


def test_negative_weights_raise():
    ds = make_additive_data(n=20)
    with pytest.raises(ConfigurationError):
        BoostingPath(ds, mixed_terms(), weights=-np.ones(20))


# =========================
# Test Partial Effects
# =========================

def test_partial_effect_of_unselected_term_is_zero():
    ds = make_additive_data()
    path = fit_path(ds, mixed_terms(), mstop_max=1)
    unselected = [j for j in range(3) if j not in path.selected_terms()]

    effect = partial_effect(path, 1, unselected[0])
    np.testing.assert_array_equal(effect(np.array([0.0, 0.5])), [0.0, 0.0])


def test_partial_effects_sum_to_prediction():
    ds = make_additive_data()
    path = fit_path(ds, mixed_terms(), mstop_max=60)

    total = np.full(ds.n_obs, path.offset_)
    for term in path.terms:
        total += partial_effect(path, 60, term)(ds[term.predictor])
    np.testing.assert_allclose(total, predict(path, 60, ds), rtol=1e-12)


def test_partial_effect_scalar_input_returns_float():
    ds = make_additive_data()
    path = fit_path(ds, mixed_terms(), mstop_max=30)

    value = partial_effect(path, 30, "x2")(0.25)
    assert isinstance(value, float)


def test_spline_effect_extrapolates():
    ds = make_additive_data()
    path = fit_path(ds, [ModelTerm("x2", "bbs")], mstop_max=50)

    outside = partial_effect(path, 50, "x2")(np.array([-3.0, -1.5, 1.5, 3.0]))
    assert np.all(np.isfinite(outside))

    predictions = predict(path, 50, {"x2": np.array([-2.0, 0.0, 2.0])})
    assert predictions.shape == (3,)
    assert np.all(np.isfinite(predictions))


def test_predict_accepts_dataframe():
    ds = make_additive_data()
    path = fit_path(ds, mixed_terms(), mstop_max=20)

    frame = ds.to_frame()
    np.testing.assert_allclose(predict(path, 20, frame), predict(path, 20, ds))


def test_predict_missing_column_raises():
    ds = make_additive_data()
    path = fit_path(ds, mixed_terms(), mstop_max=5)
    with pytest.raises(ConfigurationError):
        predict(path, 5, {"x1": [0.1], "x2": [0.2]})


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
