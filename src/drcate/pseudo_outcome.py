"""Doubly-robust CATE pseudo-outcome.

    CATE_hat = (2A - 1) * I(Y observed) / (pihat * (1 - deltahat)) * (Y - muhat_obs)
               + (muhat_1 - muhat_0)

The first term is the inverse-probability-of-treatment-and-missingness
weighted residual correction; the second is the outcome model's own
effect estimate. Rows with missing Y get no correction, so their
pseudo-outcome is exactly muhat_1 - muhat_0.
"""

import logging

import numpy as np

logger = logging.getLogger(__name__)


def compute_pseudo_outcome(
    y: np.ndarray,
    a: np.ndarray,
    muhat_obs: np.ndarray,
    muhat_1: np.ndarray,
    muhat_0: np.ndarray,
    pihat: np.ndarray,
    deltahat: np.ndarray,
) -> np.ndarray:
    """Compute the doubly-robust pseudo-outcome per row.

    Args:
        y: Outcomes, NaN where missing
        a: Binary treatment (0/1)
        muhat_obs: Outcome model under the observed treatment
        muhat_1: Outcome model with treatment forced to 1
        muhat_0: Outcome model with treatment forced to 0
        pihat: Truncated propensity
        deltahat: Truncated missingness probability

    Returns:
        Array of CATE estimates (N_rows,). Missingness is only clipped from
        below, so an observed row with deltahat == 1 divides by zero and
        yields inf or NaN. Such values are returned as is, with a warning
        logged; callers should check np.isfinite before fitting on them.

    Raises:
        ValueError: If inputs have different lengths or treatment is not binary
    """
    arrays = [np.asarray(arr, dtype=float) for arr in (y, a, muhat_obs, muhat_1, muhat_0, pihat, deltahat)]
    y, a, muhat_obs, muhat_1, muhat_0, pihat, deltahat = arrays

    lengths = {len(arr) for arr in arrays}
    if len(lengths) != 1:
        raise ValueError(f"All pseudo-outcome inputs must have the same length (got {sorted(lengths)}).")
    if not np.isin(a, (0.0, 1.0)).all():
        raise ValueError("Treatment must be coded 0/1.")

    observed = ~np.isnan(y)
    model_effect = muhat_1 - muhat_0

    correction = np.zeros_like(model_effect)
    with np.errstate(divide="ignore", invalid="ignore"):
        correction[observed] = (
            (2 * a[observed] - 1)
            / (pihat[observed] * (1 - deltahat[observed]))
            * (y[observed] - muhat_obs[observed])
        )

    cate_hat = correction + model_effect

    n_nonfinite = int((~np.isfinite(cate_hat)).sum())
    if n_nonfinite:
        logger.warning(
            f"{n_nonfinite} pseudo-outcomes are NaN or infinite "
            f"(min pihat*(1-deltahat)={np.min(pihat * (1 - deltahat)):.4g})"
        )

    return cate_hat
