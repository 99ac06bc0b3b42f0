"""Out-of-fold nuisance predictions combined with ensemble weights.

For every inner fold v, each library member trained on the complement of
fold v predicts the rows of fold v, so no row is ever predicted by a model
that saw it. Five targets are produced per row:

- muhat_obs, muhat_1, muhat_0: outcome model under observed A, A=1, A=0
- pihat: treatment model on W, clipped into [t, 1-t]
- deltahat: missingness model on [A, W], clipped into [t, 1]

Per-library columns are then combined with the ensemble's weights.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from src.drcate.ensemble import EnsembleFit
from src.drcate.errors import ConfigurationError
from src.drcate.folds import InnerFoldPlan
from src.drcate.nuisance import NuisanceBundle, outcome_features, treatment_features

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NuisancePredictions:
    """Weighted per-row nuisance estimates for one training subset (row order)."""

    muhat_obs: np.ndarray
    muhat_1: np.ndarray
    muhat_0: np.ndarray
    pihat: np.ndarray
    deltahat: np.ndarray
    library_predictions: dict[str, np.ndarray] = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "muhat_obs": self.muhat_obs,
                "muhat_1": self.muhat_1,
                "muhat_0": self.muhat_0,
                "pihat": self.pihat,
                "deltahat": self.deltahat,
            }
        )


# ============================================================================
# Truncation
# ============================================================================


def check_trunc_level(ps_trunc_level: float) -> float:
    if not 0 < ps_trunc_level < 0.5:
        raise ConfigurationError(f"ps_trunc_level must lie in (0, 0.5) (got {ps_trunc_level})")
    return ps_trunc_level


def truncate_propensity(pihat: np.ndarray, ps_trunc_level: float) -> np.ndarray:
    """Clip propensities into [t, 1 - t]."""
    check_trunc_level(ps_trunc_level)
    return np.clip(np.asarray(pihat, dtype=float), ps_trunc_level, 1.0 - ps_trunc_level)


def truncate_missingness(deltahat: np.ndarray, ps_trunc_level: float) -> np.ndarray:
    """Clip missingness probabilities from below into [t, 1]."""
    check_trunc_level(ps_trunc_level)
    return np.clip(np.asarray(deltahat, dtype=float), ps_trunc_level, 1.0)


# ============================================================================
# Prediction
# ============================================================================


def counterfactual_features(
    df: pd.DataFrame, a_name: str, w_list: list[str], value: float
) -> pd.DataFrame:
    """Outcome-model features with the treatment forced to ``value`` for every row."""
    features = outcome_features(df, a_name, w_list)
    features[a_name] = value
    return features


def predict_library(
    fit: EnsembleFit,
    X: pd.DataFrame,
    folds: Sequence[np.ndarray],
    transform: Callable[[np.ndarray], np.ndarray] | None = None,
) -> np.ndarray:
    """Out-of-fold predictions of every library member.

    Args:
        fit: Ensemble whose ``cv_fit_library[v]`` was trained without fold v
        X: Features for all rows, positionally aligned with ``folds``
        folds: Row positions per inner fold
        transform: Optional per-member post-processing (e.g. truncation)

    Returns:
        Matrix (N_rows, N_library)

    Raises:
        ValueError: If the per-fold fits were compacted away, the fold counts
            disagree, or some row was not covered by any fold
    """
    if fit.cv_fit_library is None:
        raise ValueError("Ensemble fit has been compacted; per-fold models are required.")
    if len(fit.cv_fit_library) != len(folds):
        raise ValueError(
            f"Ensemble holds fits for {len(fit.cv_fit_library)} folds but the plan has {len(folds)}."
        )

    predictions = np.full((len(X), fit.n_library), np.nan)
    for v, rows in enumerate(folds):
        rows = np.asarray(rows, dtype=int)
        if len(rows) == 0:
            continue
        X_valid = X.iloc[rows]
        for col, member in enumerate(fit.cv_fit_library[v]):
            member_predictions = np.asarray(member.predict(X_valid), dtype=float)
            if transform is not None:
                member_predictions = transform(member_predictions)
            predictions[rows, col] = member_predictions

    uncovered = np.flatnonzero(np.isnan(predictions).any(axis=1))
    if len(uncovered):
        raise ValueError(f"Rows without out-of-fold predictions: {uncovered[:5].tolist()}")
    return predictions


def combine_predictions(library_predictions: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Weighted sum of per-library prediction columns."""
    weights = np.asarray(weights, dtype=float)
    if library_predictions.ndim != 2 or library_predictions.shape[1] != len(weights):
        raise ValueError(
            f"Prediction matrix shape {library_predictions.shape} does not match "
            f"{len(weights)} ensemble weights."
        )
    if (weights < 0).any():
        raise ValueError(f"Ensemble weights must be non-negative (got {weights.tolist()}).")
    return library_predictions @ weights


def aggregate_nuisance_predictions(
    df: pd.DataFrame,
    plan: InnerFoldPlan,
    bundle: NuisanceBundle,
    a_name: str,
    w_list: list[str],
    ps_trunc_level: float = 0.01,
) -> NuisancePredictions:
    """Replay every inner fold and combine the five nuisance targets.

    Args:
        df: Training subset the bundle was fitted on (row order matches plan)
        plan: Inner fold plan used for the fit
        bundle: Fitted nuisance ensembles with per-fold fits retained
        a_name: Treatment column
        w_list: Covariate columns
        ps_trunc_level: Truncation level t

    Returns:
        NuisancePredictions in the row order of ``df``
    """
    check_trunc_level(ps_trunc_level)
    folds = plan.full_folds()

    X_observed = outcome_features(df, a_name, w_list)
    X_treated = counterfactual_features(df, a_name, w_list, 1)
    X_control = counterfactual_features(df, a_name, w_list, 0)
    X_covariates = treatment_features(df, w_list)

    def clip_propensity(p: np.ndarray) -> np.ndarray:
        return truncate_propensity(p, ps_trunc_level)

    def clip_missingness(p: np.ndarray) -> np.ndarray:
        return truncate_missingness(p, ps_trunc_level)

    library_predictions = {
        "muhat_obs": predict_library(bundle.outcome_model, X_observed, folds),
        "muhat_1": predict_library(bundle.outcome_model, X_treated, folds),
        "muhat_0": predict_library(bundle.outcome_model, X_control, folds),
        "pihat": predict_library(bundle.treatment_model, X_covariates, folds, clip_propensity),
        "deltahat": predict_library(
            bundle.missingness_model, X_observed, folds, clip_missingness
        ),
    }

    outcome_weights = bundle.outcome_model.weights
    pihat = combine_predictions(library_predictions["pihat"], bundle.treatment_model.weights)
    deltahat = combine_predictions(
        library_predictions["deltahat"], bundle.missingness_model.weights
    )

    # Weights that do not sum to 1 could push the blend past the bounds
    pihat_clipped = truncate_propensity(pihat, ps_trunc_level)
    deltahat_clipped = truncate_missingness(deltahat, ps_trunc_level)
    n_reclipped = int((pihat_clipped != pihat).sum() + (deltahat_clipped != deltahat).sum())
    if n_reclipped:
        logger.debug("Re-clipped %s combined propensity/missingness predictions", n_reclipped)

    return NuisancePredictions(
        muhat_obs=combine_predictions(library_predictions["muhat_obs"], outcome_weights),
        muhat_1=combine_predictions(library_predictions["muhat_1"], outcome_weights),
        muhat_0=combine_predictions(library_predictions["muhat_0"], outcome_weights),
        pihat=pihat_clipped,
        deltahat=deltahat_clipped,
        library_predictions=library_predictions,
    )
