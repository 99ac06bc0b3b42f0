"""Fit the outcome, treatment and missingness nuisance ensembles.

One call per outer training subset. Each nuisance function gets its own
features, labels and fold indices derived from the same inner fold plan,
so fold v means the same rows for all three:

- outcome model ``muhat``: Y on [A, W], complete cases, outcome family,
  folds relative to the complete-case subset
- treatment model ``pihat``: A on W, binomial, full-subset folds
- missingness model ``deltahat``: I(Y missing) on [A, W], binomial,
  full-subset folds
"""

import logging
from dataclasses import dataclass, replace

import numpy as np
import pandas as pd

from src.drcate.ensemble import EnsembleFit, EnsembleLearner
from src.drcate.errors import EnsembleFitFailure
from src.drcate.folds import InnerFoldPlan

logger = logging.getLogger(__name__)

NUISANCE_FUNCTIONS = ("outcome", "treatment", "missingness")


@dataclass(frozen=True)
class NuisanceBundle:
    """The three fitted nuisance ensembles from one outer training subset."""

    outcome_model: EnsembleFit
    treatment_model: EnsembleFit
    missingness_model: EnsembleFit

    def compact(self) -> "NuisanceBundle":
        """Drop the per-inner-fold fits from all three ensembles."""
        return replace(
            self,
            outcome_model=self.outcome_model.compact(),
            treatment_model=self.treatment_model.compact(),
            missingness_model=self.missingness_model.compact(),
        )


def outcome_features(df: pd.DataFrame, a_name: str, w_list: list[str]) -> pd.DataFrame:
    """Features for the outcome and missingness models: treatment then covariates."""
    return df[[a_name, *w_list]].reset_index(drop=True)


def treatment_features(df: pd.DataFrame, w_list: list[str]) -> pd.DataFrame:
    """Features for the treatment model: covariates only."""
    return df[list(w_list)].reset_index(drop=True)


def fit_nuisance(
    df: pd.DataFrame,
    plan: InnerFoldPlan,
    y_name: str,
    a_name: str,
    w_list: list[str],
    libraries: dict[str, list[str]],
    outcome_type: str,
    ensemble_learner: EnsembleLearner,
) -> NuisanceBundle:
    """Fit the three nuisance ensembles on one training subset.

    Args:
        df: Training subset (row order matches ``plan``)
        plan: Inner fold plan built from ``df[y_name]``
        y_name: Outcome column (NaN = missing)
        a_name: Binary treatment column
        w_list: Covariate columns
        libraries: Learner names per nuisance function
            ("outcome", "treatment", "missingness")
        outcome_type: Family of the outcome model ("gaussian" or "binomial")
        ensemble_learner: Ensemble collaborator used for all three fits

    Returns:
        NuisanceBundle with per-fold fits retained

    Raises:
        EnsembleFitFailure: If any fit fails; ``nuisance`` names the function
    """
    if len(df) != plan.n:
        raise ValueError(f"Training subset has {len(df)} rows but the inner plan covers {plan.n}.")

    y = df[y_name].to_numpy(dtype=float)
    a = df[a_name].to_numpy(dtype=float)
    y_missing = np.isnan(y).astype(float)

    X_outcome_all = outcome_features(df, a_name, w_list)
    complete = plan.observed_positions

    fits = {}
    specs = {
        "outcome": (
            y[complete],
            X_outcome_all.iloc[complete].reset_index(drop=True),
            outcome_type,
            plan.outcome_folds(),
        ),
        "treatment": (a, treatment_features(df, w_list), "binomial", plan.full_folds()),
        "missingness": (y_missing, X_outcome_all, "binomial", plan.full_folds()),
    }

    for nuisance in NUISANCE_FUNCTIONS:
        labels, features, family, folds = specs[nuisance]
        logger.info(
            f"Fitting {nuisance} model: family={family}, n={len(labels)}, "
            f"library={libraries[nuisance]}"
        )
        try:
            fits[nuisance] = ensemble_learner.fit(labels, features, family, folds, libraries[nuisance])
        except EnsembleFitFailure as e:
            raise e.with_context(nuisance=nuisance) from e
        except Exception as e:
            logger.error(f"{nuisance} model fit failed: {e}")
            raise EnsembleFitFailure(f"Ensemble fit failed: {e}", nuisance=nuisance) from e

    return NuisanceBundle(
        outcome_model=fits["outcome"],
        treatment_model=fits["treatment"],
        missingness_model=fits["missingness"],
    )
