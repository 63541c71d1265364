"""Heteroskedasticity-consistent (HC0 sandwich) covariance for weighted logit fits."""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from .errors import SingularMatrixError
from .models import FittedLogit


def working_weights_and_residuals(model: FittedLogit) -> tuple[np.ndarray, np.ndarray]:
    """GLM working weights and working residuals of a binomial-logit fit.

    For the canonical logit link ``dmu/deta = mu (1 - mu)`` so the working weight is
    ``prior_weight * mu (1 - mu)`` and the working residual is
    ``(y - mu) / (mu (1 - mu))``.
    """
    mu = model.predict().to_numpy(dtype=float)
    y = model.response.to_numpy(dtype=float)
    prior = model.prior_weights.to_numpy(dtype=float)
    variance = mu * (1.0 - mu)
    if np.any(variance <= 0):
        raise SingularMatrixError(f"{model.label}: fitted probabilities on the 0/1 boundary.")
    return prior * variance, (y - mu) / variance


def _checked_inverse(matrix: np.ndarray, label: str) -> np.ndarray:
    if not np.all(np.isfinite(matrix)):
        raise SingularMatrixError(f"{label}: bread matrix has non-finite entries.")
    rank = int(np.linalg.matrix_rank(matrix))
    if rank < matrix.shape[0]:
        raise SingularMatrixError(f"{label}: X'WX is singular (rank {rank} < {matrix.shape[0]}).")
    try:
        return np.linalg.inv(matrix)
    except np.linalg.LinAlgError as exc:
        raise SingularMatrixError(f"{label}: X'WX could not be inverted ({exc}).") from exc


def robust_covariance(model: FittedLogit) -> pd.DataFrame:
    """HC0 sandwich ``(X'WX)^-1 [sum (W_i r_i)^2 x_i x_i'] (X'WX)^-1``.

    ``W`` are working weights and ``r`` working residuals, so each score
    contribution is ``prior_weight_i (y_i - mu_i) x_i``. No small-sample
    correction is applied.
    """
    x = model.design.to_numpy(dtype=float)
    names = list(model.design.columns)
    if x.shape[0] == 0:
        raise SingularMatrixError(f"{model.label}: empty design matrix.")

    working_w, working_r = working_weights_and_residuals(model)
    bread = _checked_inverse(x.T @ (working_w[:, None] * x), model.label)
    scores = (working_w * working_r)[:, None] * x
    meat = scores.T @ scores
    cov = bread @ meat @ bread
    # Symmetrize away rounding noise.
    cov = (cov + cov.T) / 2.0
    logging.info("%s: HC0 sandwich covariance computed for %s parameters", model.label, len(names))
    return pd.DataFrame(cov, index=names, columns=names)


def naive_covariance(model: FittedLogit) -> pd.DataFrame:
    """Model-based covariance ``(X'WX)^-1`` evaluated at the fitted coefficients."""
    x = model.design.to_numpy(dtype=float)
    working_w, _ = working_weights_and_residuals(model)
    inv = _checked_inverse(x.T @ (working_w[:, None] * x), model.label)
    names = list(model.design.columns)
    return pd.DataFrame(inv, index=names, columns=names)


def standard_errors(cov: pd.DataFrame) -> pd.Series:
    diag = np.diag(cov.to_numpy(dtype=float))
    if np.any(diag < 0):
        raise SingularMatrixError("Covariance matrix has negative variances.")
    return pd.Series(np.sqrt(diag), index=cov.index, dtype=float)
