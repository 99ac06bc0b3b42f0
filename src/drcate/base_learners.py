"""Base learners available to the ensemble.

Implements the BaseLearner ABC and the library members the default
SuperLearner can combine: mean, glm, ridge and xgboost. Every learner is
family-aware: ``gaussian`` learners predict the conditional mean,
``binomial`` learners predict the probability of label 1.
"""

import copy
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

import numpy as np
import pandas as pd
from sklearn.linear_model import LinearRegression, LogisticRegression, Ridge

logger = logging.getLogger(__name__)

FAMILIES = ("gaussian", "binomial")

# Attributes sklearn keeps for diagnostics only; predict() never reads them
_DIAGNOSTIC_ATTRIBUTES = ("n_iter_", "rank_", "singular_")


def validate_family(family: str) -> str:
    """Return ``family`` if supported, else raise ValueError."""
    if family not in FAMILIES:
        raise ValueError(f"Unknown family '{family}'. Expected one of {list(FAMILIES)}")
    return family


class BaseLearner(ABC):
    """
    Abstract base class for ensemble library members.

    Methods:
        fit(X, y): Train the learner on features X and labels y
        predict(X): Predict the mean (gaussian) or P(y=1) (binomial) for X
        get_params(): Return learner hyperparameters
        compact(): Drop state predict() does not need
    """

    name: str = "base"

    def __init__(self, family: str = "gaussian"):
        self.family = validate_family(family)
        self._is_fitted = False
        # Set when binomial training labels contain a single class
        self._constant: float | None = None

    @abstractmethod
    def fit(self, X: pd.DataFrame, y: pd.Series | np.ndarray) -> "BaseLearner":
        """Train the learner.

        Args:
            X: Feature matrix (N_samples, N_features)
            y: Labels (N_samples,), 0/1 for the binomial family

        Returns:
            Self for chaining

        Raises:
            ValueError: If X or y are empty or their lengths differ
        """
        raise NotImplementedError

    @abstractmethod
    def predict(self, X: pd.DataFrame) -> np.ndarray:
        """Generate predictions.

        Args:
            X: Feature matrix with the training columns

        Returns:
            Array of predictions (N_samples,)

        Raises:
            RuntimeError: If the learner is not fitted
        """
        raise NotImplementedError

    @abstractmethod
    def get_params(self) -> dict[str, Any]:
        """Return learner hyperparameters."""
        raise NotImplementedError

    def compact(self) -> "BaseLearner":
        """Learner without fitted state that predict() does not need.

        Returns a copy when there is state to drop; the original is left intact.
        """
        return self

    def _check_training_data(self, X: pd.DataFrame, y) -> np.ndarray:
        if len(X) == 0:
            raise ValueError(f"Cannot fit {self.name} learner on empty training set.")
        y_array = np.asarray(y, dtype=float)
        if y_array.size == 0:
            raise ValueError(f"Cannot fit {self.name} learner on empty target values.")
        if len(X) != len(y_array):
            raise ValueError(
                f"Feature matrix and target vector must have matching lengths "
                f"(X={len(X)}, y={len(y_array)})."
            )
        if self.family == "binomial" and not np.isin(y_array, (0.0, 1.0)).all():
            raise ValueError(f"{self.name} learner with binomial family requires 0/1 labels.")
        return y_array

    def _single_class(self, y_array: np.ndarray) -> float | None:
        """The only label value for binomial data with one class, else None."""
        if self.family != "binomial":
            return None
        classes = np.unique(y_array)
        if len(classes) == 1:
            logger.debug(
                "%s learner saw a single class (%s); predicting it as a constant probability.",
                self.name,
                classes[0],
            )
            return float(classes[0])
        return None

    def _check_fitted(self) -> None:
        if not self._is_fitted:
            raise RuntimeError(f"{type(self).__name__} must be fitted before calling predict().")


class MeanLearner(BaseLearner):
    """Predicts the training mean for every row (the intercept-only model)."""

    name = "mean"

    def __init__(self, family: str = "gaussian"):
        super().__init__(family)
        self.mean_: float | None = None

    def fit(self, X: pd.DataFrame, y) -> "MeanLearner":
        y_array = self._check_training_data(X, y)
        self.mean_ = float(y_array.mean())
        self._is_fitted = True
        return self

    def predict(self, X: pd.DataFrame) -> np.ndarray:
        self._check_fitted()
        return np.full(len(X), self.mean_, dtype=float)

    def get_params(self) -> dict[str, Any]:
        return {"family": self.family}


class _SklearnLearner(BaseLearner):
    """Shared fit/predict for sklearn regressors and binary classifiers."""

    def __init__(self, family: str = "gaussian"):
        super().__init__(family)
        self.model = self._build_model()
        self._feature_order: list[str] = []

    @abstractmethod
    def _build_model(self):
        raise NotImplementedError

    def fit(self, X: pd.DataFrame, y) -> "_SklearnLearner":
        y_array = self._check_training_data(X, y)
        self._feature_order = [str(col) for col in X.columns]
        self._constant = self._single_class(y_array)

        if self._constant is None:
            if self.family == "binomial":
                self.model.fit(X, y_array.astype(int))
            else:
                self.model.fit(X, y_array)
        self._is_fitted = True

        logger.debug(
            "Fitted %s learner (%s) on %s samples and %s features.",
            self.name,
            self.family,
            X.shape[0],
            X.shape[1],
        )
        return self

    def predict(self, X: pd.DataFrame) -> np.ndarray:
        self._check_fitted()
        if self._constant is not None:
            return np.full(len(X), self._constant, dtype=float)
        if self._feature_order:
            X = X[self._feature_order]
        if self.family == "binomial":
            proba = self.model.predict_proba(X)
            positive = list(self.model.classes_).index(1)
            return np.asarray(proba[:, positive], dtype=float)
        return np.asarray(self.model.predict(X), dtype=float)

    def compact(self) -> "_SklearnLearner":
        compacted = copy.copy(self)
        compacted.model = copy.copy(self.model)
        for attribute in _DIAGNOSTIC_ATTRIBUTES:
            if hasattr(compacted.model, attribute):
                delattr(compacted.model, attribute)
        return compacted


class GLMLearner(_SklearnLearner):
    """
    Generalized linear model: OLS for gaussian, logistic regression for binomial.

    The logistic fit uses a very weak penalty so it behaves like an
    unpenalized GLM while still converging on separable folds.
    """

    name = "glm"
    LOGISTIC_C: float = 1e8
    MAX_ITER: int = 1000

    def _build_model(self):
        if self.family == "binomial":
            return LogisticRegression(C=self.LOGISTIC_C, max_iter=self.MAX_ITER)
        return LinearRegression()

    def get_params(self) -> dict[str, Any]:
        if self.family == "binomial":
            return {"family": self.family, "C": self.LOGISTIC_C, "max_iter": self.MAX_ITER}
        return {"family": self.family}


class RidgeLearner(_SklearnLearner):
    """L2-penalized linear model: Ridge for gaussian, L2 logistic for binomial."""

    name = "ridge"

    def __init__(self, family: str = "gaussian", alpha: float = 1.0, max_iter: int = 1000):
        if alpha <= 0:
            raise ValueError(f"RidgeLearner alpha must be positive (got {alpha}).")
        self.alpha = alpha
        self.max_iter = max_iter
        super().__init__(family)

    def _build_model(self):
        if self.family == "binomial":
            # sklearn parameterizes logistic penalty as inverse strength
            return LogisticRegression(C=1.0 / self.alpha, max_iter=self.max_iter)
        return Ridge(alpha=self.alpha)

    def get_params(self) -> dict[str, Any]:
        return {"family": self.family, "alpha": self.alpha, "max_iter": self.max_iter}


class XGBoostLearner(BaseLearner):
    """
    Gradient boosted trees via xgboost.

    Uses XGBRegressor (gaussian) or XGBClassifier (binomial) with
    tree_method='hist'. Sanitizes feature names by replacing special
    characters with underscores.
    """

    name = "xgboost"

    def __init__(
        self,
        family: str = "gaussian",
        max_depth: int = 3,
        n_estimators: int = 100,
        learning_rate: float = 0.1,
        subsample: float = 1.0,
        random_state: int = 42,
    ):
        import xgboost as xgb

        super().__init__(family)
        self.max_depth = max_depth
        self.n_estimators = n_estimators
        self.learning_rate = learning_rate
        self.subsample = subsample
        self.random_state = random_state

        params = dict(
            max_depth=max_depth,
            n_estimators=n_estimators,
            learning_rate=learning_rate,
            subsample=subsample,
            random_state=random_state,
            tree_method="hist",
        )
        if self.family == "binomial":
            self.model = xgb.XGBClassifier(objective="binary:logistic", **params)
        else:
            self.model = xgb.XGBRegressor(**params)
        self._sanitized_feature_order: list[str] = []

    @staticmethod
    def _sanitize(columns) -> list[str]:
        return [re.sub(r"[^A-Za-z0-9_]", "_", str(col)) for col in columns]

    def fit(self, X: pd.DataFrame, y) -> "XGBoostLearner":
        y_array = self._check_training_data(X, y)

        sanitized_columns = self._sanitize(X.columns)
        if len(set(sanitized_columns)) != len(sanitized_columns):
            raise ValueError(
                "Feature name sanitization produced duplicate names. "
                f"XGBoost requires unique feature names: {sanitized_columns}"
            )
        self._sanitized_feature_order = sanitized_columns

        X_sanitized = X.copy()
        X_sanitized.columns = sanitized_columns

        self._constant = self._single_class(y_array)
        if self._constant is None:
            if self.family == "binomial":
                self.model.fit(X_sanitized, y_array.astype(int))
            else:
                self.model.fit(X_sanitized, y_array)
        self._is_fitted = True

        logger.debug(
            "Fitted xgboost learner (%s) on %s samples and %s features.",
            self.family,
            X.shape[0],
            X.shape[1],
        )
        return self

    def predict(self, X: pd.DataFrame) -> np.ndarray:
        self._check_fitted()
        if self._constant is not None:
            return np.full(len(X), self._constant, dtype=float)

        X_sanitized = X.copy()
        X_sanitized.columns = self._sanitize(X.columns)

        missing_features = set(self._sanitized_feature_order) - set(X_sanitized.columns)
        if missing_features:
            raise ValueError(
                f"Prediction features must include all training features. Missing: {sorted(missing_features)}"
            )
        X_sanitized = X_sanitized[self._sanitized_feature_order]

        if self.family == "binomial":
            return np.asarray(self.model.predict_proba(X_sanitized)[:, 1], dtype=float)
        return np.asarray(self.model.predict(X_sanitized), dtype=float)

    def get_params(self) -> dict[str, Any]:
        return {
            "family": self.family,
            "max_depth": self.max_depth,
            "n_estimators": self.n_estimators,
            "learning_rate": self.learning_rate,
            "subsample": self.subsample,
            "random_state": self.random_state,
        }
