"""Configuration for the cross-fitted nuisance engine.

Loaded from YAML (or built from a dict) and validated before any model
is fitted, so bad fold counts, families or libraries fail fast.

Example YAML::

    y_name: Y
    a_name: A
    w_list: [W1, W2]
    outcome_type: gaussian
    k_folds: 2
    ps_trunc_level: 0.01
    random_state: 42
    libraries:
      outcome: [mean, glm]
      treatment: [mean, glm]
      missingness: [mean, glm]
"""

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.drcate.base_learners import FAMILIES
from src.drcate.errors import ConfigurationError
from src.drcate.learner_registry import validate_library

logger = logging.getLogger(__name__)

DEFAULT_K_FOLDS = 2
DEFAULT_PS_TRUNC_LEVEL = 0.01
DEFAULT_LIBRARY = ["mean", "glm"]


@dataclass
class NuisanceConfig:
    """Column names, learner libraries and cross-fitting settings."""

    y_name: str
    a_name: str
    w_list: list[str]
    outcome_type: str = "gaussian"
    id_name: str | None = None
    sl_library_outcome: list[str] = field(default_factory=lambda: list(DEFAULT_LIBRARY))
    sl_library_treatment: list[str] = field(default_factory=lambda: list(DEFAULT_LIBRARY))
    sl_library_missingness: list[str] = field(default_factory=lambda: list(DEFAULT_LIBRARY))
    k_folds: int = DEFAULT_K_FOLDS
    ps_trunc_level: float = DEFAULT_PS_TRUNC_LEVEL
    random_state: int | None = 42
    n_jobs: int = 1
    keep_cv_fits: bool = False

    def validate(self) -> "NuisanceConfig":
        """Check settings that do not depend on the data.

        Raises:
            ConfigurationError: On invalid fold count, family, truncation
                level, worker count or learner library
        """
        if not self.y_name or not self.a_name:
            raise ConfigurationError("y_name and a_name must be non-empty column names")
        if not self.w_list:
            raise ConfigurationError("w_list must name at least one covariate")
        if self.a_name in self.w_list or self.y_name in self.w_list:
            raise ConfigurationError("w_list must not contain the outcome or treatment column")
        if self.outcome_type not in FAMILIES:
            raise ConfigurationError(
                f"outcome_type must be one of {list(FAMILIES)} (got '{self.outcome_type}')"
            )
        if isinstance(self.k_folds, bool) or not isinstance(self.k_folds, int):
            raise ConfigurationError(f"k_folds must be an integer (got {self.k_folds!r})")
        if self.k_folds < 2:
            raise ConfigurationError(f"k_folds must be >= 2 (got {self.k_folds})")
        if not 0 < self.ps_trunc_level < 0.5:
            raise ConfigurationError(
                f"ps_trunc_level must lie in (0, 0.5) (got {self.ps_trunc_level})"
            )
        if self.n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be >= 1 (got {self.n_jobs})")

        for label in ("sl_library_outcome", "sl_library_treatment", "sl_library_missingness"):
            try:
                validate_library(list(getattr(self, label)), label=label)
            except ValueError as err:
                raise ConfigurationError(str(err)) from err

        return self

    def libraries(self) -> dict[str, list[str]]:
        """Library per nuisance function."""
        return {
            "outcome": list(self.sl_library_outcome),
            "treatment": list(self.sl_library_treatment),
            "missingness": list(self.sl_library_missingness),
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def create_config_from_dict(raw_config: dict[str, Any]) -> NuisanceConfig:
    """Build and validate a NuisanceConfig from a plain dict.

    Accepts either flat ``sl_library_*`` keys or a nested ``libraries``
    block with ``outcome``/``treatment``/``missingness`` entries.

    Raises:
        ConfigurationError: On unknown keys, missing required keys or invalid values
    """
    config = dict(raw_config)

    libraries = config.pop("libraries", None) or {}
    if not isinstance(libraries, dict):
        raise ConfigurationError("'libraries' must be a mapping of nuisance name to learner list")
    for nuisance, learners in libraries.items():
        key = f"sl_library_{nuisance}"
        if key in config:
            raise ConfigurationError(f"Library for '{nuisance}' given twice ('{key}' and 'libraries')")
        config[key] = learners

    known_fields = set(NuisanceConfig.__dataclass_fields__)
    unknown = sorted(set(config) - known_fields)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {unknown}")

    missing = sorted(name for name in ("y_name", "a_name", "w_list") if name not in config)
    if missing:
        raise ConfigurationError(f"Missing required configuration keys: {missing}")

    for key in ("w_list", "sl_library_outcome", "sl_library_treatment", "sl_library_missingness"):
        if key in config and isinstance(config[key], str):
            config[key] = [config[key]]

    return NuisanceConfig(**config).validate()


def load_config(path: str | Path) -> NuisanceConfig:
    """Load and validate a YAML configuration file."""
    path = Path(path)
    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}
    if not isinstance(raw_config, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    logger.info(f"Loaded nuisance configuration from {path}")
    return create_config_from_dict(raw_config)
