"""Cross-validated ensemble learner used to fit each nuisance function.

The engine only depends on the ``EnsembleLearner`` interface: given labels,
features, a family and an inner fold plan it returns an ``EnsembleFit``
exposing combination weights and, for every inner fold, the library
members trained on the complement of that fold.

``SuperLearner`` is the default implementation: it stacks the library's
out-of-fold predictions with non-negative least squares.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace

import numpy as np
import pandas as pd
from scipy.optimize import nnls

from src.drcate.base_learners import BaseLearner, validate_family
from src.drcate.errors import EnsembleFitFailure
from src.drcate.learner_registry import get_learner

logger = logging.getLogger(__name__)

ENSEMBLE_METHODS = ("nnls", "discrete")


@dataclass(frozen=True)
class EnsembleFit:
    """Fitted ensemble for one nuisance function.

    Attributes:
        family: "gaussian" or "binomial"
        library: Library member names, in weight order
        weights: Non-negative combination weight per library member
        fit_library: Each member refitted on all rows (used by predict)
        cv_fit_library: Per inner fold, each member fitted on the other folds;
            None once the fit has been compacted
        cv_risk: Out-of-fold mean squared error per member
    """

    family: str
    library: list[str]
    weights: np.ndarray
    fit_library: list[BaseLearner]
    cv_fit_library: list[list[BaseLearner]] | None = None
    cv_risk: np.ndarray | None = None

    @property
    def n_library(self) -> int:
        return len(self.library)

    def predict(self, X: pd.DataFrame) -> np.ndarray:
        """Weighted prediction of the full-data library members."""
        if not self.fit_library:
            raise RuntimeError("EnsembleFit has no fitted library members to predict with.")
        library_predictions = np.column_stack([member.predict(X) for member in self.fit_library])
        return library_predictions @ self.weights

    def compact(self) -> "EnsembleFit":
        """Return a copy without the per-fold fits; predict() is unchanged.

        Library members are compacted copies, so this fit keeps its own state.
        """
        return replace(
            self,
            cv_fit_library=None,
            fit_library=[member.compact() for member in self.fit_library],
        )


class EnsembleLearner(ABC):
    """Interface the nuisance fitter consumes."""

    @abstractmethod
    def fit(
        self,
        y: np.ndarray,
        X: pd.DataFrame,
        family: str,
        fold_plan: Sequence[np.ndarray],
        library: Sequence[str],
    ) -> EnsembleFit:
        """Fit the library on every fold complement and learn combination weights.

        Args:
            y: Labels (N_samples,)
            X: Features (N_samples, N_features)
            family: "gaussian" or "binomial"
            fold_plan: Validation positions per inner fold; must cover 0..N-1 once
            library: Library member names

        Returns:
            EnsembleFit with cv_fit_library populated for every fold

        Raises:
            EnsembleFitFailure: If any library member fails to fit
        """
        raise NotImplementedError


def validate_fold_plan(fold_plan: Sequence[np.ndarray], n: int) -> None:
    """Check that fold_plan partitions 0..n-1 exactly once.

    Raises:
        ValueError: On out-of-range, duplicated or uncovered positions
    """
    if not fold_plan:
        raise ValueError("fold_plan cannot be empty.")
    positions = np.concatenate([np.asarray(fold, dtype=int) for fold in fold_plan])
    if positions.size and (positions.min() < 0 or positions.max() >= n):
        raise ValueError(f"fold_plan contains positions outside 0..{n - 1}.")
    counts = np.bincount(positions, minlength=n)
    if (counts > 1).any():
        raise ValueError(f"fold_plan assigns positions to more than one fold: {np.flatnonzero(counts > 1)[:3].tolist()}")
    if (counts == 0).any():
        raise ValueError(f"fold_plan leaves positions uncovered: {np.flatnonzero(counts == 0)[:3].tolist()}")


class SuperLearner(EnsembleLearner):
    """
    Stacked ensemble over a library of base learners.

    For each inner fold every library member is fitted on the remaining
    folds and predicts the held-out rows. Combination weights are the
    non-negative least squares fit of the labels on those out-of-fold
    predictions, normalized to sum to 1 ("nnls"), or weight 1 on the
    member with the lowest out-of-fold risk ("discrete").

    Example:
        >>> learner = SuperLearner()
        >>> fit = learner.fit(y, X, "binomial", plan.full_folds(), ["mean", "glm"])
        >>> fit.weights
    """

    def __init__(
        self,
        method: str = "nnls",
        learner_factory: Callable[[str, str], BaseLearner] = get_learner,
    ):
        if method not in ENSEMBLE_METHODS:
            raise ValueError(f"Unknown ensemble method '{method}'. Expected one of {list(ENSEMBLE_METHODS)}")
        self.method = method
        self.learner_factory = learner_factory

    def fit(
        self,
        y: np.ndarray,
        X: pd.DataFrame,
        family: str,
        fold_plan: Sequence[np.ndarray],
        library: Sequence[str],
    ) -> EnsembleFit:
        validate_family(family)
        library = list(library)
        if not library:
            raise ValueError("library must contain at least one learner.")

        y = np.asarray(y, dtype=float)
        if len(y) != len(X):
            raise ValueError(f"Labels and features must have matching lengths (y={len(y)}, X={len(X)}).")
        if np.isnan(y).any():
            raise ValueError("Labels passed to the ensemble must not contain NaN.")
        validate_fold_plan(fold_plan, len(y))

        n = len(y)
        Z = np.full((n, len(library)), np.nan)
        cv_fit_library: list[list[BaseLearner]] = []

        for v, valid in enumerate(fold_plan):
            valid = np.asarray(valid, dtype=int)
            train_mask = np.ones(n, dtype=bool)
            train_mask[valid] = False
            X_train, y_train = X.iloc[np.flatnonzero(train_mask)], y[train_mask]

            fold_members = []
            for col, name in enumerate(library):
                member = self._fit_member(name, family, X_train, y_train, inner_fold=v + 1)
                if len(valid):
                    Z[valid, col] = member.predict(X.iloc[valid])
                fold_members.append(member)
            cv_fit_library.append(fold_members)

        if not np.isfinite(Z).all():
            bad = [library[col] for col in range(len(library)) if not np.isfinite(Z[:, col]).all()]
            raise EnsembleFitFailure(
                "Out-of-fold predictions contain NaN or infinite values", library=bad[0]
            )

        cv_risk = np.mean((Z - y[:, None]) ** 2, axis=0)
        weights = self._compute_weights(Z, y, cv_risk, library)

        fit_library = [
            self._fit_member(name, family, X, y, inner_fold=None) for name in library
        ]

        logger.debug(
            "Fitted %s ensemble (%s) on %s rows: weights=%s, cv_risk=%s",
            self.method,
            family,
            n,
            dict(zip(library, np.round(weights, 4).tolist())),
            np.round(cv_risk, 4).tolist(),
        )

        return EnsembleFit(
            family=family,
            library=library,
            weights=weights,
            fit_library=fit_library,
            cv_fit_library=cv_fit_library,
            cv_risk=cv_risk,
        )

    def _fit_member(
        self,
        name: str,
        family: str,
        X: pd.DataFrame,
        y: np.ndarray,
        inner_fold: int | None,
    ) -> BaseLearner:
        member = self.learner_factory(name, family)
        try:
            member.fit(X, y)
        except Exception as e:
            where = f"inner fold {inner_fold}" if inner_fold is not None else "full data"
            logger.error(f"Learner '{name}' failed to fit on {where}: {e}")
            raise EnsembleFitFailure(
                f"Learner '{name}' failed to fit: {e}", library=name, inner_fold=inner_fold
            ) from e
        return member

    def _compute_weights(
        self, Z: np.ndarray, y: np.ndarray, cv_risk: np.ndarray, library: list[str]
    ) -> np.ndarray:
        n_library = Z.shape[1]

        if self.method == "discrete":
            weights = np.zeros(n_library)
            weights[int(np.argmin(cv_risk))] = 1.0
            return weights

        raw_weights, _ = nnls(Z, y)
        total = raw_weights.sum()
        if total > 0:
            return raw_weights / total

        logger.warning(
            f"All library members received zero weight {library}; falling back to equal weights"
        )
        return np.full(n_library, 1.0 / n_library)
