"""Synthetic IAC cohorts matching the analysis schema, for mock runs and tests."""

from __future__ import annotations

import numpy as np
import pandas as pd
from scipy.special import expit

from .variable_sets import COMORBIDITY_FLAGS

SERVICE_UNITS = ["MICU", "SURG", "CCU", "CSRU", "TSICU"]


def simulate_iac_cohort(
    n: int = 2000,
    *,
    seed: int = 42,
    exposure_log_or: float = 0.0,
    confounding: float = 1.0,
) -> pd.DataFrame:
    """Draw ``n`` ICU stays in raw CSV layout.

    Exposure and 28-day mortality both depend on age, SOFA, surgical service
    and respiratory failure; ``confounding`` scales those dependencies for the
    exposure model. ``exposure_log_or`` is the conditional log odds ratio of
    exposure on mortality (0.0 gives a causal null).
    """
    rng = np.random.default_rng(seed)

    age = np.clip(rng.normal(64, 16, n), 18, 95)
    sofa = rng.poisson(5, n).astype(float)
    service = rng.choice(SERVICE_UNITS, size=n, p=[0.45, 0.2, 0.15, 0.1, 0.1])
    surgical = (service == "SURG").astype(float)

    df = pd.DataFrame(
        {
            "age": np.round(age, 1),
            "gender_num": rng.binomial(1, 0.55, n),
            "weight_first": np.round(rng.normal(80, 18, n).clip(35, 200), 1),
            "sofa_first": sofa,
            "service_unit": service,
            "map_1st": np.round(rng.normal(80, 15, n), 0),
            "hr_1st": np.round(rng.normal(90, 18, n), 0),
            "temp_1st": np.round(rng.normal(98.4, 1.2, n), 1),
            "spo2_1st": np.round(rng.normal(96, 3, n).clip(70, 100), 0),
            "wbc_first": np.round(rng.gamma(4, 3, n), 1),
            "hgb_first": np.round(rng.normal(11.5, 2, n), 1),
            "platelet_first": np.round(rng.normal(230, 80, n).clip(5, 900), 0),
            "sodium_first": np.round(rng.normal(139, 4, n), 0),
            "potassium_first": np.round(rng.normal(4.1, 0.6, n), 1),
            "tco2_first": np.round(rng.normal(24, 4, n), 0),
            "chloride_first": np.round(rng.normal(104, 5, n), 0),
            "bun_first": np.round(rng.gamma(3, 8, n), 0),
            "creatinine_first": np.round(rng.gamma(2, 0.6, n), 2),
            "day_icu_intime_num": rng.integers(1, 8, n),
            "hour_icu_intime": rng.integers(0, 24, n),
        }
    )
    for flag in COMORBIDITY_FLAGS:
        df[flag["name"]] = rng.binomial(1, 0.15, n)

    age_z = (age - 64.0) / 16.0
    sofa_z = (sofa - 5.0) / 2.2
    resp = df["resp_flg"].to_numpy(dtype=float)

    ps_eta = -0.2 + confounding * (0.3 * age_z + 0.4 * sofa_z + 0.6 * surgical + 0.5 * resp)
    aline = rng.binomial(1, expit(ps_eta))

    y_eta = -1.8 + 0.5 * age_z + 0.5 * sofa_z - 0.4 * surgical + 0.6 * resp + exposure_log_or * aline
    df["aline_flg"] = aline
    df["day_28_flg"] = rng.binomial(1, expit(y_eta))
    return df
