"""Unit tests for the SuperLearner ensemble collaborator.

Tests:
- Every inner fold's library members are trained on exactly the complement of that fold
- NNLS weights are non-negative and sum to 1; discrete picks one member
- Fit failures surface as EnsembleFitFailure naming library member and inner fold
- compact() drops per-fold fits without changing predict()
- Fold plans must partition the rows exactly once
"""

import numpy as np
import pandas as pd
import pytest

from src.drcate.base_learners import BaseLearner, MeanLearner
from src.drcate.ensemble import SuperLearner, validate_fold_plan
from src.drcate.errors import EnsembleFitFailure
from src.drcate.learner_registry import get_learner


class RecordingLearner(BaseLearner):
    """Remembers which rows (by the 'row' column) it was trained on."""

    name = "recording"

    def fit(self, X, y):
        self.trained_rows = set(X["row"].tolist())
        self._is_fitted = True
        return self

    def predict(self, X):
        return np.zeros(len(X))

    def get_params(self):
        return {}


class FailingLearner(MeanLearner):
    def fit(self, X, y):
        raise RuntimeError("Simulated convergence failure")


def _folds(n, n_folds=10):
    return [np.arange(v, n, n_folds) for v in range(n_folds)]


@pytest.fixture
def gaussian_data():
    rng = np.random.default_rng(0)
    X = pd.DataFrame({"A": rng.binomial(1, 0.5, 150), "W1": rng.normal(size=150)})
    y = 2.0 * X["A"].to_numpy() + X["W1"].to_numpy() + rng.normal(scale=0.2, size=150)
    return X, y


def test_cv_fits_trained_on_fold_complement():
    n = 43
    X = pd.DataFrame({"row": np.arange(n)})
    y = np.zeros(n)
    folds = _folds(n)

    learner = SuperLearner(learner_factory=lambda name, family: RecordingLearner(family))
    fit = learner.fit(y, X, "gaussian", folds, ["recording"])

    assert len(fit.cv_fit_library) == 10
    for v, fold in enumerate(folds):
        member = fit.cv_fit_library[v][0]
        assert member.trained_rows == set(range(n)) - set(fold.tolist())
    assert fit.fit_library[0].trained_rows == set(range(n))


def test_nnls_weights_favor_informative_learner(gaussian_data):
    X, y = gaussian_data
    fit = SuperLearner().fit(y, X, "gaussian", _folds(len(y)), ["mean", "glm"])

    assert fit.library == ["mean", "glm"]
    assert (fit.weights >= 0).all()
    assert fit.weights.sum() == pytest.approx(1.0)
    assert fit.weights[1] > 0.9
    assert fit.cv_risk[1] < fit.cv_risk[0]


def test_discrete_method_puts_all_weight_on_best_member(gaussian_data):
    X, y = gaussian_data
    fit = SuperLearner(method="discrete").fit(y, X, "gaussian", _folds(len(y)), ["mean", "glm"])

    np.testing.assert_array_equal(fit.weights, [0.0, 1.0])


def test_binomial_ensemble_predicts_probabilities():
    rng = np.random.default_rng(3)
    X = pd.DataFrame({"W1": rng.normal(size=200)})
    y = rng.binomial(1, 1 / (1 + np.exp(-X["W1"].to_numpy())))

    fit = SuperLearner().fit(y, X, "binomial", _folds(200), ["mean", "glm"])
    predictions = fit.predict(X)
    assert ((predictions >= 0) & (predictions <= 1)).all()


def test_zero_weights_fall_back_to_equal_weights(caplog):
    X = pd.DataFrame({"W1": np.arange(20, dtype=float)})
    y = np.zeros(20)

    with caplog.at_level("WARNING", logger="src.drcate.ensemble"):
        fit = SuperLearner().fit(y, X, "gaussian", _folds(20), ["mean"])

    np.testing.assert_array_equal(fit.weights, [1.0])
    assert "zero weight" in caplog.text


def test_member_failure_names_library_and_inner_fold(gaussian_data):
    X, y = gaussian_data

    def factory(name, family):
        if name == "glm":
            return FailingLearner(family)
        return get_learner(name, family)

    with pytest.raises(EnsembleFitFailure, match="Simulated convergence failure") as excinfo:
        SuperLearner(learner_factory=factory).fit(y, X, "gaussian", _folds(len(y)), ["mean", "glm"])

    assert excinfo.value.library == "glm"
    assert excinfo.value.inner_fold == 1
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_compact_preserves_predict(gaussian_data):
    X, y = gaussian_data
    fit = SuperLearner().fit(y, X, "gaussian", _folds(len(y)), ["mean", "glm"])
    before = fit.predict(X)

    compacted = fit.compact()
    assert compacted.cv_fit_library is None
    assert fit.cv_fit_library is not None
    np.testing.assert_allclose(compacted.predict(X), before)


def test_compact_leaves_original_members_intact(gaussian_data):
    X, y = gaussian_data
    fit = SuperLearner().fit(y, X, "gaussian", _folds(len(y)), ["glm"])
    original_member = fit.fit_library[0]
    assert hasattr(original_member.model, "rank_")

    compacted = fit.compact()

    assert compacted.fit_library[0] is not original_member
    assert not hasattr(compacted.fit_library[0].model, "rank_")
    assert hasattr(original_member.model, "rank_")
    np.testing.assert_allclose(fit.predict(X), compacted.predict(X))


def test_empty_fold_still_gets_fitted_models():
    n = 6
    X = pd.DataFrame({"row": np.arange(n)})
    folds = [np.array([0, 1]), np.array([], dtype=int), np.array([2, 3, 4, 5])]

    learner = SuperLearner(learner_factory=lambda name, family: RecordingLearner(family))
    fit = learner.fit(np.zeros(n), X, "gaussian", folds, ["recording"])

    assert fit.cv_fit_library[1][0].trained_rows == set(range(n))


def test_nan_labels_rejected():
    X = pd.DataFrame({"W1": np.arange(4, dtype=float)})
    with pytest.raises(ValueError, match="must not contain NaN"):
        SuperLearner().fit(np.array([1.0, np.nan, 2.0, 3.0]), X, "gaussian", _folds(4, 2), ["mean"])


def test_unknown_method_rejected():
    with pytest.raises(ValueError, match="Unknown ensemble method"):
        SuperLearner(method="stacking")


@pytest.mark.parametrize(
    "folds,message",
    [
        ([np.array([0, 1]), np.array([1, 2, 3])], "more than one fold"),
        ([np.array([0, 1]), np.array([2])], "uncovered"),
        ([np.array([0, 1, 2, 3, 4])], "outside"),
        ([], "cannot be empty"),
    ],
)
def test_validate_fold_plan(folds, message):
    with pytest.raises(ValueError, match=message):
        validate_fold_plan(folds, 4)
