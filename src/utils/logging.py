"""
JSON logging for nuisance cross-fitting runs.

Every line is one JSON object with a UTC timestamp, the emitting logger
and thread, the run metadata attached by :func:`setup_logging` (git SHA,
config hash, seed, fold count, truncation level, worker count) and any
``extra=`` fields given at the call site, e.g. ``outer_fold``.
"""

import hashlib
import json
import logging
import subprocess
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import IO, Any

import numpy as np

# Everything a bare LogRecord carries; other attributes came from ``extra=``
_STANDARD_RECORD_ATTRS = frozenset(logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
}

# Config keys copied verbatim into every record next to the hash
_RUN_FIELDS = ("outcome_type", "k_folds", "ps_trunc_level", "n_jobs")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, merged with fixed run metadata."""

    def __init__(self, run_fields: dict[str, Any] | None = None):
        super().__init__()
        self.run_fields = dict(run_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            "message": record.getMessage(),
            **self.run_fields,
        }
        payload.update(
            (key, value) for key, value in vars(record).items() if key not in _STANDARD_RECORD_ATTRS
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def get_git_sha() -> str:
    """Short SHA of HEAD, or 'unknown' when git or the repository is unavailable."""
    try:
        completed = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            capture_output=True,
            text=True,
            check=True,
            timeout=5,
        )
    except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
        return "unknown"
    return completed.stdout.strip()


def _hashable(value: Any) -> Any:
    """Convert config values to plain JSON types.

    Raises:
        TypeError: For values without a stable JSON form
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(key): _hashable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_hashable(item) for item in value]
    raise TypeError(f"Cannot deterministically hash object of type {type(value).__name__}")


def compute_config_hash(config: dict[str, Any]) -> str:
    """16-hex-char SHA-256 digest of a config dict, independent of key order.

    Raises:
        TypeError: If config contains values without a stable JSON form
    """
    encoded = json.dumps(_hashable(config), sort_keys=True).encode()
    return hashlib.sha256(encoded).hexdigest()[:16]


def run_metadata(
    config: dict[str, Any] | None = None,
    random_state: int | None = None,
) -> dict[str, Any]:
    """Fields stamped on every record of a run.

    Args:
        config: Run configuration, e.g. ``NuisanceConfig.to_dict()``
        random_state: Seed of the run; read from ``config`` when omitted
    """
    config = config or {}
    if random_state is None:
        random_state = config.get("random_state")

    metadata: dict[str, Any] = {"git_sha": get_git_sha(), "random_state": random_state}
    if config:
        metadata["config_hash"] = compute_config_hash(config)
        metadata.update((key, config[key]) for key in _RUN_FIELDS if key in config)
    return metadata


def setup_logging(
    level: str = "INFO",
    config: dict[str, Any] | None = None,
    random_state: int | None = None,
    extra_fields: dict[str, Any] | None = None,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Route all logging through a single JSON handler on the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        config: Run configuration to hash and summarize
        random_state: Seed of the run; read from ``config`` when omitted
        extra_fields: Additional fields for every record
        stream: Destination of the JSON lines (stdout by default)

    Returns:
        The configured root logger
    """
    fields = run_metadata(config, random_state)
    fields.update(extra_fields or {})

    handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
    handler.setFormatter(JSONFormatter(run_fields=fields))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())
    return root_logger
