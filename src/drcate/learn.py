"""Outer cross-fitting loop: nuisance models and CATE pseudo-outcomes.

For each outer fold j the nuisance ensembles are trained on every unit
not assigned to fold j, and pseudo-outcomes for those training units are
built from the ensembles' inner out-of-fold predictions. Rows of the
resulting table carry ``k = j``, the fold held out of the pass, so a
downstream CATE model fitted on pass j's rows can be evaluated on fold j.

Passes are independent. With ``n_jobs > 1`` they run on a thread pool;
every pass draws from its own pre-spawned seed stream, so results do not
depend on scheduling. A failing pass aborts the whole run.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass

import numpy as np
import pandas as pd
from tqdm import tqdm

from src.drcate.aggregate import aggregate_nuisance_predictions
from src.drcate.config import NuisanceConfig
from src.drcate.ensemble import EnsembleLearner, SuperLearner
from src.drcate.errors import ConfigurationError, EnsembleFitFailure
from src.drcate.folds import (
    MIN_OBSERVED_OUTCOMES,
    InnerFoldPlan,
    RandomState,
    assign_outer_folds,
    build_inner_fold_plan,
)
from src.drcate.nuisance import NuisanceBundle, fit_nuisance
from src.drcate.pseudo_outcome import compute_pseudo_outcome

logger = logging.getLogger(__name__)

PSEUDO_OUTCOME_COLUMNS = ["id", "k", "pseudo_outcome", "shuffle_idx"]


@dataclass(frozen=True)
class FoldResult:
    """Everything one outer pass produces, built atomically."""

    bundle: NuisanceBundle
    pseudo_outcome: np.ndarray
    shuffle_idx: np.ndarray
    plan: InnerFoldPlan


@dataclass
class NuisanceResult:
    """Output of :func:`learn_nuisance`.

    Attributes:
        nuisance_models: NuisanceBundle per outer fold (index j-1 for fold j)
        k_fold_assign_and_cate: Columns [id, k, pseudo_outcome, shuffle_idx];
            one row per training unit per pass, ``k`` = fold held out
        valid_rows: InnerFoldPlan per outer fold
        fold_assignments: Columns [id, fold], the outer fold of every unit
    """

    nuisance_models: list[NuisanceBundle]
    k_fold_assign_and_cate: pd.DataFrame
    valid_rows: list[InnerFoldPlan]
    fold_assignments: pd.DataFrame


def validate_data(df: pd.DataFrame, config: NuisanceConfig) -> None:
    """Check the dataset against the configuration before fitting.

    Raises:
        ConfigurationError: On missing columns, non-binary treatment, missing
            treatment/covariates, duplicate ids or a non-0/1 binomial outcome
    """
    required = [config.y_name, config.a_name, *config.w_list]
    if config.id_name is not None:
        required.append(config.id_name)
    missing_columns = [col for col in required if col not in df.columns]
    if missing_columns:
        raise ConfigurationError(f"Dataset is missing required columns: {missing_columns}")

    if df.empty:
        raise ConfigurationError("Dataset is empty")

    a = pd.to_numeric(df[config.a_name], errors="coerce")
    if a.isna().any() or not a.isin([0, 1]).all():
        raise ConfigurationError(f"Treatment column '{config.a_name}' must be coded 0/1 without missing values")

    covariates_missing = df[config.w_list].isna().any()
    if covariates_missing.any():
        raise ConfigurationError(
            f"Covariates contain missing values: {covariates_missing[covariates_missing].index.tolist()}"
        )

    y = pd.to_numeric(df[config.y_name], errors="coerce")
    if (y.isna() & df[config.y_name].notna()).any():
        raise ConfigurationError(f"Outcome column '{config.y_name}' must be numeric")
    if config.outcome_type == "binomial" and not y.dropna().isin([0, 1]).all():
        raise ConfigurationError("Binomial outcome must be coded 0/1")

    if config.id_name is not None and df[config.id_name].duplicated().any():
        raise ConfigurationError(f"Id column '{config.id_name}' contains duplicates")


def unit_ids(df: pd.DataFrame, config: NuisanceConfig) -> np.ndarray:
    """User-supplied ids, or 1-based row positions when no id column is set."""
    if config.id_name is None:
        return np.arange(1, len(df) + 1)
    return df[config.id_name].to_numpy()


def check_training_subsets(observed: np.ndarray, folds: np.ndarray, k_folds: int) -> None:
    """Require enough observed outcomes outside every outer fold.

    Raises:
        ConfigurationError: Naming the first outer fold whose training
            subset has fewer than MIN_OBSERVED_OUTCOMES observed outcomes
    """
    for fold in range(1, k_folds + 1):
        n_observed = int(observed[folds != fold].sum())
        if n_observed < MIN_OBSERVED_OUTCOMES:
            raise ConfigurationError(
                f"Outer fold {fold}: training subset has {n_observed} observed outcomes; "
                f"at least {MIN_OBSERVED_OUTCOMES} are required to cross-fit the outcome model"
            )


def learn_nuisance_k(
    df_learn: pd.DataFrame,
    config: NuisanceConfig,
    ensemble_learner: EnsembleLearner,
    random_state: RandomState = None,
) -> FoldResult:
    """Fit nuisance models and pseudo-outcomes for one training subset.

    Args:
        df_learn: Training subset (all units except the held-out fold)
        config: Validated configuration
        ensemble_learner: Ensemble collaborator
        random_state: Seed or Generator for the inner fold plan

    Returns:
        FoldResult with pseudo-outcomes and shuffle indices in the row order of ``df_learn``
    """
    df_learn = df_learn.reset_index(drop=True)
    plan = build_inner_fold_plan(df_learn[config.y_name], random_state=random_state)

    bundle = fit_nuisance(
        df_learn,
        plan,
        y_name=config.y_name,
        a_name=config.a_name,
        w_list=config.w_list,
        libraries=config.libraries(),
        outcome_type=config.outcome_type,
        ensemble_learner=ensemble_learner,
    )

    predictions = aggregate_nuisance_predictions(
        df_learn,
        plan,
        bundle,
        a_name=config.a_name,
        w_list=config.w_list,
        ps_trunc_level=config.ps_trunc_level,
    )

    pseudo_outcome = compute_pseudo_outcome(
        y=df_learn[config.y_name].to_numpy(dtype=float),
        a=df_learn[config.a_name].to_numpy(dtype=float),
        muhat_obs=predictions.muhat_obs,
        muhat_1=predictions.muhat_1,
        muhat_0=predictions.muhat_0,
        pihat=predictions.pihat,
        deltahat=predictions.deltahat,
    )

    if not config.keep_cv_fits:
        bundle = bundle.compact()

    return FoldResult(
        bundle=bundle,
        pseudo_outcome=pseudo_outcome,
        shuffle_idx=plan.original_to_sorted.copy(),
        plan=plan,
    )


def _run_pass(
    fold: int,
    df: pd.DataFrame,
    train_mask: np.ndarray,
    config: NuisanceConfig,
    ensemble_learner: EnsembleLearner,
    seed: np.random.SeedSequence,
) -> FoldResult:
    df_learn = df.loc[train_mask]
    logger.info(
        f"Outer fold {fold}/{config.k_folds}: training on {len(df_learn)} units, "
        f"holding out {int((~train_mask).sum())}",
        extra={"outer_fold": fold, "n_train": len(df_learn)},
    )
    try:
        return learn_nuisance_k(df_learn, config, ensemble_learner, random_state=np.random.default_rng(seed))
    except EnsembleFitFailure as e:
        failure = e.with_context(outer_fold=fold)
        logger.error(f"Outer fold {fold} failed: {failure}", extra={"outer_fold": fold})
        raise failure from e
    except ConfigurationError as e:
        logger.error(f"Outer fold {fold} failed: {e}", extra={"outer_fold": fold})
        raise ConfigurationError(f"Outer fold {fold}: {e}") from e


def learn_nuisance(
    df: pd.DataFrame,
    config: NuisanceConfig,
    ensemble_learner: EnsembleLearner | None = None,
    show_progress: bool = False,
) -> NuisanceResult:
    """Cross-fit nuisance models and CATE pseudo-outcomes over k outer folds.

    Args:
        df: Full dataset with outcome, treatment and covariate columns
        config: Engine configuration (validated here)
        ensemble_learner: Ensemble collaborator; defaults to SuperLearner()
        show_progress: Show a progress bar over outer folds

    Returns:
        NuisanceResult

    Raises:
        ConfigurationError: Before any fitting, on invalid config or data
        EnsembleFitFailure: If any outer pass fails; no partial result is returned

    Example:
        >>> config = NuisanceConfig(y_name="Y", a_name="A", w_list=["W1", "W2"])
        >>> result = learn_nuisance(df, config)
        >>> result.k_fold_assign_and_cate.head()
    """
    config.validate()
    validate_data(df, config)
    if ensemble_learner is None:
        ensemble_learner = SuperLearner()

    df = df.reset_index(drop=True)
    ids = unit_ids(df, config)

    outer_seed, *pass_seeds = np.random.SeedSequence(config.random_state).spawn(config.k_folds + 1)
    fold_assignments = assign_outer_folds(
        ids, config.k_folds, random_state=np.random.default_rng(outer_seed)
    )
    folds = fold_assignments["fold"].to_numpy()
    check_training_subsets(df[config.y_name].notna().to_numpy(), folds, config.k_folds)

    logger.info(
        f"Starting nuisance cross-fitting: n={len(df)}, k_folds={config.k_folds}, "
        f"outcome_type={config.outcome_type}, ps_trunc_level={config.ps_trunc_level}, "
        f"n_missing_outcomes={int(df[config.y_name].isna().sum())}"
    )

    fold_numbers = list(range(1, config.k_folds + 1))
    results: dict[int, FoldResult] = {}

    if config.n_jobs == 1:
        for fold in tqdm(fold_numbers, desc="Outer folds", disable=not show_progress):
            results[fold] = _run_pass(
                fold, df, folds != fold, config, ensemble_learner, pass_seeds[fold - 1]
            )
    else:
        with ThreadPoolExecutor(max_workers=min(config.n_jobs, config.k_folds)) as executor:
            future_to_fold = {
                executor.submit(
                    _run_pass, fold, df, folds != fold, config, ensemble_learner, pass_seeds[fold - 1]
                ): fold
                for fold in fold_numbers
            }
            try:
                for future in tqdm(
                    as_completed(future_to_fold),
                    total=len(future_to_fold),
                    desc="Outer folds",
                    disable=not show_progress,
                ):
                    results[future_to_fold[future]] = future.result()
            except Exception:
                for future in future_to_fold:
                    future.cancel()
                raise

    positions = np.arange(len(df))
    tables = []
    for fold in fold_numbers:
        train_mask = folds != fold
        tables.append(
            pd.DataFrame(
                {
                    "row": positions[train_mask],
                    "id": ids[train_mask],
                    "k": fold,
                    "pseudo_outcome": results[fold].pseudo_outcome,
                    "shuffle_idx": results[fold].shuffle_idx,
                }
            )
        )
    # Original row order; a unit's rows from different passes stay together
    k_fold_assign_and_cate = (
        pd.concat(tables, ignore_index=True)
        .sort_values(["row", "k"], kind="stable")
        .reset_index(drop=True)[PSEUDO_OUTCOME_COLUMNS]
    )

    logger.info(
        f"Finished nuisance cross-fitting: {len(k_fold_assign_and_cate)} pseudo-outcomes "
        f"across {config.k_folds} outer folds"
    )

    return NuisanceResult(
        nuisance_models=[results[fold].bundle for fold in fold_numbers],
        k_fold_assign_and_cate=k_fold_assign_and_cate,
        valid_rows=[results[fold].plan for fold in fold_numbers],
        fold_assignments=fold_assignments,
    )
