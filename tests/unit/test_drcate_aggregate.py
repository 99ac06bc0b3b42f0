"""Unit tests for out-of-fold prediction aggregation.

Tests:
- Rows of inner fold v are predicted only by the fold-v models
- Counterfactual features force the treatment column
- Truncation bounds for propensity [t, 1-t] and missingness [t, 1]
- Weights [1, 0] reproduce the first library member exactly
- Shape and coverage errors
"""

import numpy as np
import pandas as pd
import pytest

from src.drcate.aggregate import (
    aggregate_nuisance_predictions,
    combine_predictions,
    counterfactual_features,
    predict_library,
    truncate_missingness,
    truncate_propensity,
)
from src.drcate.ensemble import EnsembleFit
from src.drcate.errors import ConfigurationError
from src.drcate.folds import build_inner_fold_plan
from src.drcate.nuisance import NuisanceBundle


class ConstantModel:
    def __init__(self, value):
        self.value = value

    def predict(self, X):
        return np.full(len(X), self.value, dtype=float)


class TreatmentEcho:
    """Outcome model stub: predicts offset + 10 * A."""

    def __init__(self, offset):
        self.offset = offset

    def predict(self, X):
        return self.offset + 10.0 * X["A"].to_numpy(dtype=float)


def _fit(cv_fit_library, weights, family="binomial"):
    return EnsembleFit(
        family=family,
        library=[f"m{i}" for i in range(len(weights))],
        weights=np.asarray(weights, dtype=float),
        fit_library=list(cv_fit_library[0]),
        cv_fit_library=cv_fit_library,
    )


@pytest.fixture
def subset():
    rng = np.random.default_rng(12)
    n = 50
    y = rng.normal(size=n)
    y[::10] = np.nan
    return pd.DataFrame(
        {"Y": y, "A": rng.binomial(1, 0.5, n), "W1": rng.normal(size=n), "W2": rng.normal(size=n)}
    )


def test_predict_library_uses_only_fold_specific_models():
    X = pd.DataFrame({"W1": np.zeros(30)})
    folds = [np.arange(v, 30, 10) for v in range(10)]
    fit = _fit([[ConstantModel(v), ConstantModel(-v)] for v in range(10)], [0.5, 0.5])

    predictions = predict_library(fit, X, folds)

    assert predictions.shape == (30, 2)
    for v, rows in enumerate(folds):
        np.testing.assert_array_equal(predictions[rows, 0], v)
        np.testing.assert_array_equal(predictions[rows, 1], -v)


def test_predict_library_applies_transform_per_member():
    X = pd.DataFrame({"W1": np.zeros(4)})
    folds = [np.array([0, 1]), np.array([2, 3])]
    fit = _fit([[ConstantModel(0.0)], [ConstantModel(1.0)]], [1.0])

    predictions = predict_library(fit, X, folds, lambda p: truncate_propensity(p, 0.05))
    np.testing.assert_allclose(predictions[:, 0], [0.05, 0.05, 0.95, 0.95])


def test_predict_library_rejects_compacted_fit():
    fit = EnsembleFit(
        family="gaussian", library=["m0"], weights=np.array([1.0]), fit_library=[ConstantModel(1.0)]
    )
    with pytest.raises(ValueError, match="compacted"):
        predict_library(fit, pd.DataFrame({"W1": [1.0]}), [np.array([0])])


def test_predict_library_rejects_fold_count_mismatch():
    fit = _fit([[ConstantModel(1.0)]] * 3, [1.0])
    with pytest.raises(ValueError, match="fits for 3 folds"):
        predict_library(fit, pd.DataFrame({"W1": [1.0, 2.0]}), [np.array([0]), np.array([1])])


def test_predict_library_rejects_uncovered_rows():
    fit = _fit([[ConstantModel(1.0)], [ConstantModel(1.0)]], [1.0])
    with pytest.raises(ValueError, match="without out-of-fold predictions"):
        predict_library(fit, pd.DataFrame({"W1": [1.0, 2.0, 3.0]}), [np.array([0]), np.array([1])])


def test_counterfactual_features_force_treatment(subset):
    treated = counterfactual_features(subset, "A", ["W1", "W2"], 1)
    control = counterfactual_features(subset, "A", ["W1", "W2"], 0)

    assert list(treated.columns) == ["A", "W1", "W2"]
    assert (treated["A"] == 1).all()
    assert (control["A"] == 0).all()
    pd.testing.assert_series_equal(treated["W1"], subset["W1"].reset_index(drop=True))
    # Input frame is not modified
    assert set(subset["A"].unique()) <= {0, 1}
    assert subset["A"].nunique() == 2


@pytest.mark.parametrize("t", [0.001, 0.01, 0.1, 0.25, 0.49])
def test_truncation_bounds(t):
    raw = np.array([-0.2, 0.0, 0.0001, 0.3, 0.5, 0.9999, 1.0, 1.3])

    pihat = truncate_propensity(raw, t)
    assert (pihat >= t).all() and (pihat <= 1 - t).all()

    deltahat = truncate_missingness(raw, t)
    assert (deltahat >= t).all() and (deltahat <= 1).all()
    # Missingness is only clipped from below
    assert deltahat[raw == 0.9999][0] == 0.9999


@pytest.mark.parametrize("t", [0.0, 0.5, -0.1, 0.7])
def test_truncation_level_must_be_in_open_interval(t):
    with pytest.raises(ConfigurationError, match="ps_trunc_level"):
        truncate_propensity(np.array([0.5]), t)


def test_zero_weight_library_has_no_effect():
    matrix = np.column_stack([np.array([0.1, 0.7, 2.5, -3.0]), np.array([9.0, -9.0, 4.0, 1e6])])
    combined = combine_predictions(matrix, np.array([1.0, 0.0]))
    np.testing.assert_array_equal(combined, matrix[:, 0])


def test_combine_predictions_rejects_bad_weights():
    matrix = np.ones((3, 2))
    with pytest.raises(ValueError, match="does not match"):
        combine_predictions(matrix, np.array([1.0]))
    with pytest.raises(ValueError, match="non-negative"):
        combine_predictions(matrix, np.array([1.5, -0.5]))


def test_aggregate_nuisance_predictions_five_targets(subset):
    plan = build_inner_fold_plan(subset["Y"], random_state=0)
    n_folds = len(plan.folds)

    bundle = NuisanceBundle(
        outcome_model=_fit([[TreatmentEcho(v), TreatmentEcho(100.0)] for v in range(n_folds)], [1.0, 0.0], "gaussian"),
        treatment_model=_fit([[ConstantModel(0.0), ConstantModel(0.6)] for _ in range(n_folds)], [0.5, 0.5]),
        missingness_model=_fit([[ConstantModel(1.0)] for _ in range(n_folds)], [1.0]),
    )

    predictions = aggregate_nuisance_predictions(subset, plan, bundle, "A", ["W1", "W2"], ps_trunc_level=0.01)

    fold_of_row = np.empty(len(subset))
    for v, rows in enumerate(plan.full_folds()):
        fold_of_row[rows] = v

    a = subset["A"].to_numpy(dtype=float)
    np.testing.assert_array_equal(predictions.muhat_obs, fold_of_row + 10.0 * a)
    np.testing.assert_array_equal(predictions.muhat_1, fold_of_row + 10.0)
    np.testing.assert_array_equal(predictions.muhat_0, fold_of_row)
    # Member 0 is clipped to 0.01 before the 50/50 blend
    np.testing.assert_allclose(predictions.pihat, 0.5 * 0.01 + 0.5 * 0.6)
    np.testing.assert_array_equal(predictions.deltahat, 1.0)

    assert set(predictions.library_predictions) == {"muhat_obs", "muhat_1", "muhat_0", "pihat", "deltahat"}
    assert predictions.library_predictions["muhat_1"].shape == (len(subset), 2)
    assert list(predictions.to_frame().columns) == ["muhat_obs", "muhat_1", "muhat_0", "pihat", "deltahat"]


def test_combined_probabilities_stay_in_bounds_for_unnormalized_weights(subset):
    plan = build_inner_fold_plan(subset["Y"], random_state=0)
    n_folds = len(plan.folds)
    bundle = NuisanceBundle(
        outcome_model=_fit([[ConstantModel(0.0)] for _ in range(n_folds)], [1.0], "gaussian"),
        treatment_model=_fit([[ConstantModel(0.9), ConstantModel(0.9)] for _ in range(n_folds)], [1.0, 1.0]),
        missingness_model=_fit([[ConstantModel(0.001)] for _ in range(n_folds)], [0.5]),
    )

    predictions = aggregate_nuisance_predictions(subset, plan, bundle, "A", ["W1", "W2"], ps_trunc_level=0.05)

    assert (predictions.pihat <= 0.95).all() and (predictions.pihat >= 0.05).all()
    assert (predictions.deltahat >= 0.05).all() and (predictions.deltahat <= 1.0).all()
