"""Shared fixtures for the IAC MSM test suite."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
import pytest

from iac_msm_pipeline.models import FittedLogit
from iac_msm_pipeline.synthetic import simulate_iac_cohort


@dataclass
class FixedPropensityLogit(FittedLogit):
    """Fitted model whose predictions are fixed per row label."""

    fixed: pd.Series = None

    def predict(self, design: pd.DataFrame | None = None) -> pd.Series:
        x = self.design if design is None else design
        return self.fixed.reindex(x.index).astype(float)


class FixedPropensityFitter:
    """Stand-in fitter returning hand-computed propensities."""

    def __init__(self, propensity: pd.Series) -> None:
        self.propensity = propensity

    def fit(self, design, response, weights=None, *, label="logit"):
        k = design.shape[1]
        return FixedPropensityLogit(
            label=label,
            params=pd.Series(0.0, index=design.columns),
            design=design.astype(float),
            response=response.astype(float),
            prior_weights=pd.Series(1.0, index=design.index),
            naive_cov=pd.DataFrame(np.eye(k), index=design.columns, columns=design.columns),
            converged=True,
            n_iter=0,
            fixed=self.propensity,
        )


@pytest.fixture
def synthetic_cohort() -> pd.DataFrame:
    return simulate_iac_cohort(3000, seed=20261016)


@pytest.fixture
def four_record_cohort() -> pd.DataFrame:
    """Four ICU stays with known exposure/outcome; covariates are filler."""
    df = simulate_iac_cohort(4, seed=1).reset_index(drop=True)
    df["aline_flg"] = [1, 1, 0, 0]
    df["day_28_flg"] = [1, 0, 1, 0]
    df["service_unit"] = ["SURG", "MICU", "SURG", "MICU"]
    return df


@pytest.fixture
def four_record_propensity() -> pd.Series:
    return pd.Series([0.8, 0.5, 0.5, 0.2], index=pd.RangeIndex(4))
