"""Cross-fitted doubly-robust CATE pseudo-outcome engine."""

from .aggregate import (
    NuisancePredictions,
    aggregate_nuisance_predictions,
    combine_predictions,
    truncate_missingness,
    truncate_propensity,
)
from .config import NuisanceConfig, create_config_from_dict, load_config
from .ensemble import EnsembleFit, EnsembleLearner, SuperLearner
from .errors import ConfigurationError, DegenerateFoldWarning, EnsembleFitFailure
from .folds import InnerFoldPlan, assign_outer_folds, build_inner_fold_plan
from .learn import NuisanceResult, learn_nuisance, learn_nuisance_k
from .nuisance import NuisanceBundle, fit_nuisance
from .pseudo_outcome import compute_pseudo_outcome

__all__ = [
    "ConfigurationError",
    "DegenerateFoldWarning",
    "EnsembleFit",
    "EnsembleFitFailure",
    "EnsembleLearner",
    "InnerFoldPlan",
    "NuisanceBundle",
    "NuisanceConfig",
    "NuisancePredictions",
    "NuisanceResult",
    "SuperLearner",
    "aggregate_nuisance_predictions",
    "assign_outer_folds",
    "build_inner_fold_plan",
    "combine_predictions",
    "compute_pseudo_outcome",
    "create_config_from_dict",
    "fit_nuisance",
    "learn_nuisance",
    "learn_nuisance_k",
    "load_config",
    "truncate_missingness",
    "truncate_propensity",
]
