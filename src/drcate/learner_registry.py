"""Learner Registry for ensemble library members.

Central registry mapping library names to learner classes and default
hyperparameters.

Provides:
- get_learner(name, family) -> fresh, unfitted BaseLearner
- list_available_learners() -> list of library names
- validate_library(library) -> raises for empty or unknown libraries

Raises:
- KeyError: Unknown learner name
"""

import copy
import logging
from typing import Any

from src.drcate.base_learners import (
    BaseLearner,
    GLMLearner,
    MeanLearner,
    RidgeLearner,
    XGBoostLearner,
    validate_family,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Default Hyperparameter Configurations
# ============================================================================

RIDGE_PARAMS: dict[str, Any] = {
    "alpha": 1.0,
    "max_iter": 1000,
}

XGBOOST_PARAMS: dict[str, Any] = {
    "max_depth": 3,
    "n_estimators": 100,
    "learning_rate": 0.1,
    "subsample": 1.0,
    "random_state": 42,
}


# ============================================================================
# Learner Registry
# ============================================================================

_LEARNER_REGISTRY: dict[str, dict[str, Any]] = {
    "mean": {
        "learner_class": MeanLearner,
        "params": {},
    },
    "glm": {
        "learner_class": GLMLearner,
        "params": {},
    },
    "ridge": {
        "learner_class": RidgeLearner,
        "params": RIDGE_PARAMS,
    },
    "xgboost": {
        "learner_class": XGBoostLearner,
        "params": XGBOOST_PARAMS,
    },
}


def get_learner(name: str, family: str) -> BaseLearner:
    """Instantiate a registered learner for the given family.

    Args:
        name: Library member name ("mean", "glm", "ridge" or "xgboost")
        family: "gaussian" or "binomial"

    Returns:
        Unfitted BaseLearner instance

    Raises:
        KeyError: If name is not registered
        ValueError: If family is unknown

    Example:
        >>> learner = get_learner("glm", "binomial")
        >>> learner.fit(W_train, A_train).predict(W_test)
    """
    if name not in _LEARNER_REGISTRY:
        available = sorted(_LEARNER_REGISTRY.keys())
        raise KeyError(f"Unknown learner name '{name}'. Available learners: {available}")
    validate_family(family)

    entry = _LEARNER_REGISTRY[name]
    # Deep copy params to prevent mutation
    params = copy.deepcopy(entry["params"])
    learner = entry["learner_class"](family=family, **params)

    logger.debug("Created learner '%s' for family '%s' with params=%s", name, family, params)
    return learner


def list_available_learners() -> list[str]:
    """List all registered learner names, sorted."""
    return sorted(_LEARNER_REGISTRY.keys())


def validate_library(library: list[str], label: str = "library") -> None:
    """Check a library specification before any fitting happens.

    Args:
        library: List of learner names
        label: Name used in error messages (e.g. "sl_library_outcome")

    Raises:
        ValueError: If the library is empty, has duplicates or names unknown learners
    """
    if not library:
        raise ValueError(f"{label} must list at least one learner")
    duplicates = sorted({name for name in library if library.count(name) > 1})
    if duplicates:
        raise ValueError(f"{label} lists learners more than once: {duplicates}")
    unknown = sorted(set(library) - set(_LEARNER_REGISTRY))
    if unknown:
        raise ValueError(
            f"{label} contains unknown learners {unknown}. "
            f"Available learners: {list_available_learners()}"
        )
