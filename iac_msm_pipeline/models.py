"""Logistic regression fitting behind a small capability interface.

Pipeline stages only depend on ``LogisticFitter.fit(design, response, weights)``
returning a ``FittedLogit``; the numerical routine underneath can be swapped
without touching pipeline logic.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import warnings
from typing import Protocol

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.special import expit
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationError, PerfectSeparationWarning

from .errors import ConvergenceError, SchemaError

# Any fitted probability this close to 0 or 1 marks a separated covariate
# pattern (complete or quasi-complete); its coefficients have no finite maximum.
SEPARATION_PROB_TOL = 1e-7


@dataclass
class FittedLogit:
    label: str
    params: pd.Series
    design: pd.DataFrame
    response: pd.Series
    prior_weights: pd.Series
    naive_cov: pd.DataFrame
    converged: bool
    n_iter: int

    @property
    def nobs(self) -> int:
        return int(len(self.design))

    @property
    def fitted(self) -> pd.Series:
        return self.predict()

    def linear_predictor(self, design: pd.DataFrame | None = None) -> pd.Series:
        x = self.design if design is None else design
        missing = [name for name in self.params.index if name not in x.columns]
        if missing:
            raise SchemaError(f"{self.label}: design is missing regressors: {', '.join(missing)}")
        eta = x[list(self.params.index)].to_numpy(dtype=float) @ self.params.to_numpy(dtype=float)
        return pd.Series(eta, index=x.index, dtype=float)

    def predict(self, design: pd.DataFrame | None = None) -> pd.Series:
        eta = self.linear_predictor(design)
        return pd.Series(expit(eta.to_numpy()), index=eta.index, dtype=float)

    def cov_params(self) -> pd.DataFrame:
        return self.naive_cov.copy()


class LogisticFitter(Protocol):
    def fit(
        self,
        design: pd.DataFrame,
        response: pd.Series,
        weights: pd.Series | None = None,
        *,
        label: str = "logit",
    ) -> FittedLogit:
        ...


class StatsmodelsLogitFitter:
    """Binomial GLM with logit link fitted by statsmodels IRLS.

    Weights enter as prior (variance) weights, i.e. a weighted likelihood; rows
    are not replicated the way frequency weights would replicate them.
    """

    def __init__(self, maxiter: int = 100, tol: float = 1e-8) -> None:
        self.maxiter = int(maxiter)
        self.tol = float(tol)

    def fit(
        self,
        design: pd.DataFrame,
        response: pd.Series,
        weights: pd.Series | None = None,
        *,
        label: str = "logit",
    ) -> FittedLogit:
        x = design.astype(float)
        y = pd.Series(pd.to_numeric(response, errors="raise"), index=response.index).astype(float)
        if weights is None:
            w = pd.Series(1.0, index=x.index, dtype=float)
        else:
            w = pd.Series(pd.to_numeric(weights, errors="raise"), index=weights.index).astype(float)
        if not (len(x) == len(y) == len(w)):
            raise ValueError(f"{label}: design, response and weights differ in length.")

        model = sm.GLM(y, x, family=sm.families.Binomial(), var_weights=w)
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings("error", category=PerfectSeparationWarning)
                warnings.filterwarnings("error", category=ConvergenceWarning)
                warnings.filterwarnings("error", category=RuntimeWarning)
                fit = model.fit(maxiter=self.maxiter, tol=self.tol)
        except (
            PerfectSeparationError,
            PerfectSeparationWarning,
            ConvergenceWarning,
            RuntimeWarning,
            OverflowError,
        ) as exc:
            raise ConvergenceError(f"{label}: logistic regression did not converge ({exc}).") from exc

        params = pd.Series(np.asarray(fit.params, dtype=float), index=x.columns)
        converged = bool(getattr(fit, "converged", True))
        n_iter = int(getattr(fit, "fit_history", {}).get("iteration", 0))
        if not converged or not np.all(np.isfinite(params.to_numpy())):
            raise ConvergenceError(f"{label}: IRLS did not converge after {n_iter} iterations.")

        mu = np.asarray(fit.fittedvalues, dtype=float)
        boundary = (mu < SEPARATION_PROB_TOL) | (mu > 1.0 - SEPARATION_PROB_TOL)
        if boundary.any():
            largest = params.abs().idxmax()
            raise ConvergenceError(
                f"{label}: {int(boundary.sum())} fitted probabilities lie within {SEPARATION_PROB_TOL:g} of 0 or 1 "
                f"(separation; largest coefficient {largest}={params[largest]:.3g}); coefficients are not identified."
            )

        naive_cov = pd.DataFrame(np.asarray(fit.cov_params(), dtype=float), index=x.columns, columns=x.columns)
        logging.info("%s: fitted n=%s parameters=%s iterations=%s", label, len(x), x.shape[1], n_iter)
        return FittedLogit(
            label=label,
            params=params,
            design=x,
            response=y,
            prior_weights=w,
            naive_cov=naive_cov,
            converged=converged,
            n_iter=n_iter,
        )
