"""Outer fold assignment and missing-aware inner cross-validation plans.

Outer folds split the full dataset for cross-fitting. Inner plans split
one outer training subset into exactly 10 validation folds for the
ensemble, partitioning missing-outcome and observed-outcome rows
separately so every inner fold gets a near-proportional share of each.

Inner plans use an explicit "sorted" index space: missing-outcome rows
first, then observed rows, each group in original order. The data itself
is never reordered; ``sorted_to_original`` / ``original_to_sorted`` map
between the two spaces.
"""

import logging
import warnings
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd

from src.drcate.errors import ConfigurationError, DegenerateFoldWarning

logger = logging.getLogger(__name__)

# Fixed by the ensemble's per-fold coefficient storage
N_INNER_FOLDS = 10

# An outcome model cannot be cross-fitted on fewer observed outcomes
MIN_OBSERVED_OUTCOMES = 2

RandomState = int | np.random.Generator | np.random.SeedSequence | None


def as_generator(random_state: RandomState) -> np.random.Generator:
    """Turn a seed, SeedSequence or Generator into a numpy Generator."""
    if isinstance(random_state, np.random.Generator):
        return random_state
    return np.random.default_rng(random_state)


# ============================================================================
# Outer folds
# ============================================================================


def outer_fold_labels(n: int, k_folds: int) -> np.ndarray:
    """Contiguous, balanced fold labels 1..k over n positions (not shuffled).

    Raises:
        ConfigurationError: If k_folds <= 1 or k_folds > n
    """
    if isinstance(k_folds, bool) or not isinstance(k_folds, (int, np.integer)):
        raise ConfigurationError(f"k_folds must be an integer (got {k_folds!r})")
    if k_folds <= 1:
        raise ConfigurationError(f"k_folds must be >= 2 (got {k_folds})")
    if k_folds > n:
        raise ConfigurationError(f"k_folds ({k_folds}) cannot exceed the number of units ({n})")

    sizes = np.full(k_folds, n // k_folds)
    sizes[: n % k_folds] += 1
    return np.repeat(np.arange(1, k_folds + 1), sizes)


def assign_outer_folds(
    ids: Sequence[Any],
    k_folds: int = 2,
    random_state: RandomState = None,
) -> pd.DataFrame:
    """Assign every unit to exactly one of k outer folds.

    Labels are laid out contiguously (sizes differ by at most 1) and the
    label sequence, not the unit order, is then randomly permuted.

    Args:
        ids: Unit identifiers in row order
        k_folds: Number of outer folds
        random_state: Seed or Generator for the permutation

    Returns:
        DataFrame with columns [id, fold] in row order, fold in 1..k

    Raises:
        ConfigurationError: If k_folds <= 1 or k_folds > len(ids)
    """
    ids = pd.Index(ids)
    if ids.has_duplicates:
        duplicates = ids[ids.duplicated()].unique().tolist()[:3]
        raise ConfigurationError(f"Unit ids must be unique; duplicated ids: {duplicates}")

    labels = outer_fold_labels(len(ids), k_folds)
    rng = as_generator(random_state)
    labels = rng.permutation(labels)

    fold_sizes = np.bincount(labels, minlength=k_folds + 1)[1:]
    logger.info(f"Assigned {len(ids)} units to {k_folds} outer folds (sizes={fold_sizes.tolist()})")

    return pd.DataFrame({"id": np.asarray(ids), "fold": labels.astype(int)})


# ============================================================================
# Inner folds
# ============================================================================


@dataclass(frozen=True)
class InnerFoldPlan:
    """Ten inner validation folds over one training subset.

    Attributes:
        folds: N_INNER_FOLDS arrays of sorted positions (some may be empty)
        sorted_to_original: Original row position for each sorted position
        original_to_sorted: Sorted position for each original row position
        n_missing: Number of missing-outcome rows (sorted positions 0..n_missing-1)
    """

    folds: tuple[np.ndarray, ...]
    sorted_to_original: np.ndarray
    original_to_sorted: np.ndarray
    n_missing: int

    @property
    def n(self) -> int:
        return len(self.sorted_to_original)

    @property
    def n_observed(self) -> int:
        return self.n - self.n_missing

    @property
    def observed_positions(self) -> np.ndarray:
        """Original positions of observed-outcome rows, in original order."""
        return self.sorted_to_original[self.n_missing :]

    @property
    def missing_positions(self) -> np.ndarray:
        """Original positions of missing-outcome rows, in original order."""
        return self.sorted_to_original[: self.n_missing]

    def full_folds(self) -> list[np.ndarray]:
        """Inner folds as original positions within the full training subset."""
        return [self.sorted_to_original[fold] for fold in self.folds]

    def outcome_folds(self) -> list[np.ndarray]:
        """Inner folds as positions within the complete-case (observed) subset."""
        return [fold[fold >= self.n_missing] - self.n_missing for fold in self.folds]

    def fold_sizes(self) -> list[int]:
        return [len(fold) for fold in self.folds]


def _deal(positions: np.ndarray, rng: np.random.Generator, n_folds: int) -> list[np.ndarray]:
    """Shuffle positions and deal them cyclically into at most n_folds groups."""
    shuffled = rng.permutation(positions)
    return [shuffled[v::n_folds] for v in range(min(n_folds, len(shuffled)))]


def build_inner_fold_plan(
    y: Sequence[float] | pd.Series,
    random_state: RandomState = None,
    n_folds: int = N_INNER_FOLDS,
) -> InnerFoldPlan:
    """Build the missing-aware inner fold plan for one training subset.

    Missing-outcome and observed-outcome rows are each randomly dealt into
    up to ``n_folds`` near-equal partitions; inner fold v is the union of
    the v-th partition of each group, a group with fewer partitions simply
    contributing nothing to the later folds.

    Args:
        y: Outcomes of the training subset in row order; NaN means missing
        random_state: Seed or Generator for the two shuffles
        n_folds: Number of inner folds

    Returns:
        InnerFoldPlan covering every row exactly once

    Raises:
        ConfigurationError: If fewer than MIN_OBSERVED_OUTCOMES outcomes are observed

    Warns:
        DegenerateFoldWarning: If a group is smaller than n_folds, leaving
            some inner folds without rows from that group
    """
    y_missing = pd.isna(np.asarray(y, dtype=float))
    n = len(y_missing)

    missing_positions = np.flatnonzero(y_missing)
    observed_positions = np.flatnonzero(~y_missing)
    n_missing = len(missing_positions)

    if len(observed_positions) < MIN_OBSERVED_OUTCOMES:
        raise ConfigurationError(
            f"Training subset has {len(observed_positions)} observed outcomes; "
            f"at least {MIN_OBSERVED_OUTCOMES} are required to cross-fit the outcome model"
        )

    sorted_to_original = np.concatenate([missing_positions, observed_positions])
    original_to_sorted = np.empty(n, dtype=int)
    original_to_sorted[sorted_to_original] = np.arange(n)

    rng = as_generator(random_state)
    # Sorted positions: missing rows occupy 0..n_missing-1
    missing_groups = _deal(np.arange(n_missing), rng, n_folds)
    observed_groups = _deal(np.arange(n_missing, n), rng, n_folds)

    folds = []
    for v in range(n_folds):
        parts = []
        if v < len(missing_groups):
            parts.append(missing_groups[v])
        if v < len(observed_groups):
            parts.append(observed_groups[v])
        folds.append(np.concatenate(parts).astype(int) if parts else np.array([], dtype=int))

    plan = InnerFoldPlan(
        folds=tuple(folds),
        sorted_to_original=sorted_to_original,
        original_to_sorted=original_to_sorted,
        n_missing=n_missing,
    )

    _warn_degenerate(plan, len(missing_groups), len(observed_groups), n_folds)

    logger.debug(
        "Built inner fold plan: n=%s, n_missing=%s, fold_sizes=%s",
        n,
        n_missing,
        plan.fold_sizes(),
    )
    return plan


def _warn_degenerate(plan: InnerFoldPlan, n_missing_groups: int, n_observed_groups: int, n_folds: int) -> None:
    messages = []
    empty_folds = [v + 1 for v, size in enumerate(plan.fold_sizes()) if size == 0]
    if empty_folds:
        messages.append(f"inner folds {empty_folds} are empty (training subset has {plan.n} rows)")
    if 0 < n_missing_groups < n_folds:
        messages.append(
            f"only {plan.n_missing} missing-outcome rows; inner folds "
            f"{list(range(n_missing_groups + 1, n_folds + 1))} hold none"
        )
    if n_observed_groups < n_folds:
        messages.append(
            f"only {plan.n_observed} observed-outcome rows; the outcome model's inner folds "
            f"{list(range(n_observed_groups + 1, n_folds + 1))} are empty"
        )

    for message in messages:
        logger.warning(f"Degenerate inner fold plan: {message}")
        warnings.warn(message, DegenerateFoldWarning, stacklevel=3)
