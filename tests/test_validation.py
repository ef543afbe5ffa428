"""
Tests for cross-validated selection of the stopping iteration.

Coverage:
- Fold construction for k-fold, bootstrap and subsampling schemes
- Held-out variance as the risk at iteration 0 on every fold
- Arg-min selection with ties going to the smallest iteration
- Reproducibility under a fixed seed
- Configuration errors raised before any fold is fitted
- Parallel evaluation of folds and formula variants
- Progress logging gated on verbose
"""

import logging
import sys
from pathlib import Path

import numpy as np
import pytest

src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from cwboost.config import BoostControl
from cwboost.core import BoostingPath
from cwboost.data import Dataset
from cwboost.exceptions import ConfigurationError
from cwboost.formula import FormulaBuilder, ModelTerm
from cwboost.utils import compute_metrics_regression, mse_risk, train_test_split_dataset
from cwboost.validation import (
    CrossValidator,
    CVResult,
    cross_validate,
    cross_validate_variants,
    make_folds,
)


def make_data(n=120, noise=0.3, seed=0):
    rng = np.random.default_rng(seed)
    x1 = rng.uniform(0, 1, n)
    x2 = rng.uniform(0, 1, n)
    x3 = rng.standard_normal(n)
    y = 3.0 * x1 + np.cos(4.0 * x2) + noise * rng.standard_normal(n)
    return Dataset(y, {"x1": x1, "x2": x2, "x3": x3})


def terms():
    return FormulaBuilder().ols("x1").spline("x2").tree("x3").build()


# =============================================================================
# Fold construction
# =============================================================================


class TestMakeFolds:

    def test_kfold_partitions_rows(self):
        w = make_folds(23, 5, "kfold", seed=0)
        assert w.shape == (5, 23)
        held = (w == 0).astype(int)
        np.testing.assert_array_equal(held.sum(axis=0), np.ones(23))
        assert set(np.unique(w)) == {0, 1}

    def test_bootstrap_counts_sum_to_n(self):
        w = make_folds(30, 8, "bootstrap", seed=1)
        np.testing.assert_array_equal(w.sum(axis=1), np.full(8, 30))

    def test_subsampling_half(self):
        w = make_folds(40, 4, "subsampling", seed=2)
        np.testing.assert_array_equal(w.sum(axis=1), np.full(4, 20))

    def test_seed_reproducible(self):
        for scheme in ("kfold", "bootstrap", "subsampling"):
            np.testing.assert_array_equal(
                make_folds(25, 3, scheme, seed=7), make_folds(25, 3, scheme, seed=7)
            )

    @pytest.mark.parametrize("fold_count", [1, 0, -3])
    def test_too_few_folds_raises(self, fold_count):
        with pytest.raises(ConfigurationError):
            make_folds(10, fold_count)

    def test_unknown_scheme_raises(self):
        with pytest.raises(ConfigurationError):
            make_folds(10, 3, "jackknife")

    def test_more_folds_than_rows_raises(self):
        with pytest.raises(ConfigurationError):
            make_folds(4, 5, "kfold")


# =============================================================================
# Cross-validated risk
# =============================================================================


class TestCrossValidate:

    def test_single_fold_raises(self):
        ds = make_data()
        with pytest.raises(ConfigurationError):
            cross_validate(ds, terms(), mstop_max=10, fold_count=1)

    def test_unknown_predictor_raises(self):
        ds = make_data()
        with pytest.raises(ConfigurationError):
            cross_validate(ds, [ModelTerm("nope", "bols")], mstop_max=10, fold_count=3)

    def test_non_positive_mstop_raises(self):
        ds = make_data()
        with pytest.raises(ConfigurationError):
            cross_validate(ds, terms(), mstop_max=0, fold_count=3)

    def test_shapes(self):
        ds = make_data()
        cv = cross_validate(ds, terms(), mstop_max=30, fold_count=4, seed=0)

        assert isinstance(cv, CVResult)
        assert cv.fold_risk.shape == (4, 31)
        assert cv.mean_risk.shape == (31,)
        assert cv.fold_weights.shape == (4, ds.n_obs)
        assert cv.mstop_max == 30
        assert cv.fold_count == 4

    @pytest.mark.parametrize("scheme", ["kfold", "bootstrap", "subsampling"])
    def test_iteration_zero_is_held_out_variance(self, scheme):
        """Before any term is added, each fold's risk is the variance of its held-out response."""
        rng = np.random.default_rng(0)
        x = rng.uniform(size=40)
        ds = Dataset(2.0 * x + rng.standard_normal(40), {"x": x})
        cv = cross_validate(ds, [ModelTerm("x", "bols")], mstop_max=5, fold_count=4, seed=0, scheme=scheme)

        for b in range(4):
            held = cv.fold_weights[b] == 0
            assert cv.fold_risk[b, 0] == pytest.approx(np.var(ds.y[held]), rel=1e-12)
        assert cv.mean_risk[0] == pytest.approx(
            np.mean([np.var(ds.y[cv.fold_weights[b] == 0]) for b in range(4)]), rel=1e-12
        )

    def test_later_iterations_are_held_out_mse(self):
        ds = make_data(n=60)
        linear_and_stump = FormulaBuilder().ols("x1").tree("x3").build()
        cv = cross_validate(ds, linear_and_stump, mstop_max=10, fold_count=3, seed=4)

        for b in range(3):
            w = cv.fold_weights[b]
            train = np.flatnonzero(w > 0)
            held_out = ds.subset(np.flatnonzero(w == 0))
            path = BoostingPath(ds.subset(train), linear_and_stump, BoostControl(mstop=10)).fit()
            expected = np.mean((held_out.y - path.predict(held_out, 10)) ** 2)
            assert cv.fold_risk[b, 10] == pytest.approx(expected, rel=1e-8)

    def test_best_mstop_is_argmin(self):
        ds = make_data()
        cv = cross_validate(ds, terms(), mstop_max=60, fold_count=5, seed=0)

        assert cv.best_mstop == int(np.argmin(cv.mean_risk))
        assert cv.mean_risk[cv.best_mstop] == cv.mean_risk.min()

    def test_signal_is_learned(self):
        """With a strong signal the selected model beats the null model."""
        ds = make_data(n=200, noise=0.1)
        cv = cross_validate(ds, terms(), mstop_max=100, fold_count=5, seed=1)

        assert cv.best_mstop > 0
        assert cv.mean_risk[cv.best_mstop] < 0.5 * cv.mean_risk[0]

    def test_ties_pick_smallest_iteration(self):
        fold_risk = np.array([[3.0, 1.0, 1.0, 2.0], [3.0, 1.0, 1.0, 2.0]])
        cv = CVResult.from_fold_risk(fold_risk, "kfold", np.ones((2, 5), dtype=np.int64))
        assert cv.best_mstop == 1

    def test_seed_reproducible(self):
        ds = make_data()
        cv1 = cross_validate(ds, terms(), mstop_max=20, fold_count=3, seed=11)
        cv2 = cross_validate(ds, terms(), mstop_max=20, fold_count=3, seed=11)

        np.testing.assert_array_equal(cv1.fold_weights, cv2.fold_weights)
        np.testing.assert_allclose(cv1.fold_risk, cv2.fold_risk, rtol=1e-12)
        assert cv1.best_mstop == cv2.best_mstop

    @pytest.mark.parametrize("scheme", ["bootstrap", "subsampling"])
    def test_other_schemes_run(self, scheme):
        ds = make_data()
        cv = cross_validate(ds, terms(), mstop_max=15, fold_count=3, seed=5, scheme=scheme)
        assert cv.scheme == scheme
        assert np.all(np.isfinite(cv.fold_risk))

    def test_validator_rejects_bad_configuration(self):
        with pytest.raises(ConfigurationError):
            CrossValidator(fold_count=1)
        with pytest.raises(ConfigurationError):
            CrossValidator(fold_count=3, scheme="loo")

    def test_parallel_folds_match_sequential(self):
        ds = make_data()
        sequential = CrossValidator(fold_count=3, seed=2, n_jobs=1).evaluate(ds, terms(), 15)
        parallel = CrossValidator(fold_count=3, seed=2, n_jobs=2).evaluate(ds, terms(), 15)

        np.testing.assert_allclose(sequential.fold_risk, parallel.fold_risk, rtol=1e-12)

    def test_constant_predictor_in_fold_does_not_crash(self):
        """A predictor constant within a training fold is skipped, not fatal."""
        rng = np.random.default_rng(8)
        x = rng.uniform(size=30)
        flag = np.zeros(30)
        flag[0] = 1.0
        ds = Dataset(2 * x + 0.1 * rng.standard_normal(30), {"x": x, "flag": flag})
        cv = cross_validate(ds, FormulaBuilder().spline("flag").ols("x").build(), 10, fold_count=3, seed=0)

        assert np.all(np.isfinite(cv.fold_risk))

    def test_to_frame(self):
        ds = make_data()
        cv = cross_validate(ds, terms(), mstop_max=5, fold_count=3, seed=0)
        frame = cv.to_frame()

        assert list(frame.columns) == ["iteration", "fold_0", "fold_1", "fold_2", "mean_risk"]
        assert len(frame) == 6


class TestVariants:

    def test_variants_share_folds(self):
        ds = make_data()
        variants = {
            "linear": FormulaBuilder().ols("x1").ols("x2").build(),
            "smooth": FormulaBuilder().spline("x1").spline("x2").build(),
        }
        results = cross_validate_variants(ds, variants, mstop_max=20, fold_count=3, seed=0)

        assert set(results) == {"linear", "smooth"}
        np.testing.assert_array_equal(results["linear"].fold_weights, results["smooth"].fold_weights)

    def test_invalid_variant_named_in_error(self):
        ds = make_data()
        with pytest.raises(ConfigurationError, match="broken"):
            cross_validate_variants(ds, {"broken": [ModelTerm("nope", "bols")]}, 5, fold_count=3)


# =============================================================================
# Metric and split utilities
# =============================================================================


class TestUtilities:

    def test_metrics_keys_and_r2(self):
        y = np.array([1.0, 2.0, 3.0, 4.0])
        result = compute_metrics_regression(y, y)
        assert {"mse", "rmse", "mae", "r2"}.issubset(result.keys())
        assert result["r2"] == pytest.approx(1.0)

    def test_weighted_mse_risk(self):
        y = np.array([1.0, 2.0])
        f = np.array([0.0, 0.0])
        assert mse_risk(y, f) == pytest.approx(2.5)
        assert mse_risk(y, f, np.array([1.0, 0.0])) == pytest.approx(1.0)

    def test_mse_risk_per_stage(self):
        y = np.array([1.0, 2.0])
        staged = np.array([[0.0, 0.0], [1.0, 2.0], [1.0, 1.0]])
        risk = mse_risk(y, staged)
        assert risk.shape == (3,)
        np.testing.assert_allclose(risk, [2.5, 0.0, 0.5])


    def test_train_test_split_dataset(self):
        ds = make_data(n=50)
        train, test = train_test_split_dataset(ds, test_size=0.2, random_state=42)
        assert train.n_obs == 40
        assert test.n_obs == 10
        assert set(train.y).isdisjoint(set(test.y))


# =============================================================================
# Progress logging
# =============================================================================


class TestLogging:

    def test_fold_progress_reported_from_workers(self, caplog):
        ds = make_data(n=60)
        caplog.set_level(logging.INFO, logger="cwboost")
        CrossValidator(fold_count=3, seed=0, n_jobs=2, verbose=True).evaluate(ds, terms(), 5)

        messages = [r.getMessage() for r in caplog.records if r.name == "cwboost.validation"]
        assert sum(m.startswith("Fold ") for m in messages) == 3
        assert any(m.startswith("Selected mstop=") for m in messages)

    def test_quiet_after_verbose(self, caplog):
        """A verbose run leaves later non-verbose runs silent at INFO."""
        ds = make_data(n=60)
        caplog.set_level(logging.INFO, logger="cwboost")
        CrossValidator(fold_count=3, seed=0, verbose=True).evaluate(ds, terms(), 5)
        caplog.clear()

        CrossValidator(fold_count=3, seed=0).evaluate(ds, terms(), 5)
        BoostingPath(ds, terms(), BoostControl(mstop=20)).fit()
        assert not [r for r in caplog.records if r.levelno == logging.INFO and r.name.startswith("cwboost")]
        assert logging.getLogger("cwboost.core").level == logging.NOTSET
        assert logging.getLogger("cwboost.validation").level == logging.NOTSET
