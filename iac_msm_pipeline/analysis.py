"""Analysis modules for the IAC marginal structural model."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
import pandas as pd
from patsy import DesignInfo, PatsyError, build_design_matrices, dmatrices
from scipy.stats import norm

from .cohort import check_required_columns
from .errors import SchemaError
from .models import FittedLogit, LogisticFitter, StatsmodelsLogitFitter
from .variable_sets import (
    EXPOSURE,
    OUTCOME,
    SERVICE_UNIT,
    SURGICAL_SERVICE,
    analysis_columns,
    categorical_covariates,
    categorical_levels,
    continuous_covariates,
    covariate_names,
)
from .variance import naive_covariance, robust_covariance, standard_errors
from .weights import compute_iptw_weights, weight_diagnostics

EXPOSURE_COL = EXPOSURE["name"]
OUTCOME_COL = OUTCOME["name"]


@dataclass
class PropensityResult:
    model: FittedLogit
    design_info: DesignInfo
    covariate_dtypes: dict[str, object]
    propensity: pd.Series
    n_excluded: int


@dataclass
class MSMResult:
    model: FittedLogit
    robust_cov: pd.DataFrame
    naive_cov: pd.DataFrame
    n_excluded: int

    @property
    def theta(self) -> pd.Series:
        return self.model.params

    @property
    def robust_se(self) -> pd.Series:
        return standard_errors(self.robust_cov)

    @property
    def naive_se(self) -> pd.Series:
        return standard_errors(self.naive_cov)


@dataclass
class AnalysisBundle:
    prepared: pd.DataFrame
    propensity: PropensityResult
    weights: pd.Series
    msm: MSMResult
    result_table: pd.DataFrame
    propensity_table: pd.DataFrame
    weight_diagnostics: pd.DataFrame
    balance_diagnostics: pd.DataFrame
    cohort_flow: pd.DataFrame
    notes: list[str]
    artifacts: dict[str, object]


def _two_sided_p_from_z(z_value: float) -> float:
    if not np.isfinite(z_value):
        return np.nan
    return float(math.erfc(abs(float(z_value)) / math.sqrt(2.0)))


def critical_value(ci_level: float = 0.95) -> float:
    return float(norm.ppf(0.5 + float(ci_level) / 2.0))


def _default_fitter(config: dict | None) -> StatsmodelsLogitFitter:
    return StatsmodelsLogitFitter(maxiter=int((config or {}).get("glm_maxiter", 100)))


# ---------------------------------------------------------------------------
# Covariate preparation
# ---------------------------------------------------------------------------


def _numeric_column(series: pd.Series, name: str) -> pd.Series:
    parsed = pd.to_numeric(series, errors="coerce")
    unparsable = parsed.isna() & series.notna()
    if unparsable.any():
        preview = ", ".join(sorted({str(x) for x in series.loc[unparsable]})[:5])
        raise SchemaError(f"Column {name} has {int(unparsable.sum())} non-numeric values ({preview}).")
    return parsed.astype(float)


def _categorical_column(series: pd.Series, levels: tuple, name: str) -> pd.Series:
    present = series.notna()
    codes = np.full(len(series), -1, dtype=int)
    matched = np.zeros(len(series), dtype=bool)
    for code, level in enumerate(levels):
        hit = (series == level).to_numpy() & present.to_numpy()
        codes[hit] = code
        matched |= hit
    unexpected = present.to_numpy() & ~matched
    if unexpected.any():
        preview = ", ".join(sorted({str(x) for x in series.loc[unexpected]})[:5])
        raise SchemaError(
            f"Column {name} has {int(unexpected.sum())} values outside levels {list(levels)} ({preview})."
        )
    return pd.Series(pd.Categorical.from_codes(codes, categories=list(levels)), index=series.index, name=name)


def _binary_column(series: pd.Series, name: str) -> pd.Series:
    parsed = _numeric_column(series, name)
    unexpected = parsed.notna() & ~parsed.isin([0.0, 1.0])
    if unexpected.any():
        raise SchemaError(f"Column {name} must be coded 0/1; found {int(unexpected.sum())} other values.")
    return parsed


def derive_surgical_service(service_unit: pd.Series) -> pd.Series:
    surgical = (service_unit == SERVICE_UNIT["surgical_value"]).astype(object)
    surgical[service_unit.isna()] = np.nan
    return surgical


def prepare_covariates(df: pd.DataFrame, notes: list[str] | None = None) -> pd.DataFrame:
    """Recode, derive and project the raw cohort; the input frame is left untouched."""
    check_required_columns(df)
    out = df.copy()

    out[SURGICAL_SERVICE["name"]] = derive_surgical_service(out[SERVICE_UNIT["name"]])

    for col in continuous_covariates():
        out[col] = _numeric_column(out[col], col)

    levels = categorical_levels()
    for col in categorical_covariates():
        out[col] = _categorical_column(out[col], levels[col], col)

    out[EXPOSURE_COL] = _binary_column(out[EXPOSURE_COL], EXPOSURE_COL)
    out[OUTCOME_COL] = _binary_column(out[OUTCOME_COL], OUTCOME_COL)

    out = out[analysis_columns()].copy()
    n_incomplete = int((~out.notna().all(axis=1)).sum())
    if n_incomplete:
        msg = f"prepare_covariates: {n_incomplete} rows have missing values and will be excluded case-wise at fit time."
        logging.warning(msg)
        if notes is not None:
            notes.append(msg)
    logging.info("Prepared analysis table: rows=%s columns=%s", len(out), out.shape[1])
    return out


# ---------------------------------------------------------------------------
# Propensity model
# ---------------------------------------------------------------------------


def propensity_formula(covariates: list[str] | None = None) -> str:
    cols = covariate_names() if covariates is None else list(covariates)
    categorical = set(categorical_covariates())
    terms = [f"C({col})" if col in categorical else col for col in cols]
    return f"{EXPOSURE_COL} ~ " + (" + ".join(terms) if terms else "1")


def _complete_rows(data: pd.DataFrame, columns: list[str]) -> pd.Series:
    return data[columns].notna().all(axis=1)


def _check_representation(data: pd.DataFrame, expected: dict[str, object]) -> None:
    missing = [col for col in expected if col not in data.columns]
    if missing:
        raise SchemaError(f"Propensity covariates missing at predict time: {', '.join(missing)}")
    for col, dtype in expected.items():
        actual = data[col].dtype
        if isinstance(dtype, pd.CategoricalDtype) or isinstance(actual, pd.CategoricalDtype):
            # Unordered dtypes compare equal regardless of level order; the first level is the reference.
            same_levels = (
                isinstance(dtype, pd.CategoricalDtype)
                and isinstance(actual, pd.CategoricalDtype)
                and list(actual.categories) == list(dtype.categories)
            )
            if not same_levels:
                raise SchemaError(f"Column {col} changed representation between fit and predict ({dtype} -> {actual}).")
        elif not pd.api.types.is_numeric_dtype(actual):
            raise SchemaError(f"Column {col} must be numeric at predict time, found {actual}.")


def fit_propensity_model(
    prepared: pd.DataFrame,
    config: dict | None = None,
    *,
    fitter: LogisticFitter | None = None,
    notes: list[str] | None = None,
) -> PropensityResult:
    fitter = fitter or _default_fitter(config)
    covariates = covariate_names()
    used = [EXPOSURE_COL, *covariates]
    _check_representation(prepared, {col: prepared[col].dtype for col in covariates if col in prepared.columns})

    complete = _complete_rows(prepared, used)
    n_excluded = int((~complete).sum())
    if n_excluded:
        msg = f"propensity_model: excluded {n_excluded} rows with missing exposure or covariates."
        logging.warning(msg)
        if notes is not None:
            notes.append(msg)
    data = prepared.loc[complete]

    try:
        y, x = dmatrices(propensity_formula(covariates), data, NA_action="raise", return_type="dataframe")
    except PatsyError as exc:
        raise SchemaError(f"propensity_model: could not build design matrix ({exc}).") from exc

    model = fitter.fit(x, y.iloc[:, 0], None, label="propensity_model")
    propensity = model.predict(x).rename("propensity")
    logging.info(
        "Propensity scores: n=%s min=%.4g max=%.4g mean=%.4f",
        len(propensity),
        float(propensity.min()),
        float(propensity.max()),
        float(propensity.mean()),
    )
    return PropensityResult(
        model=model,
        design_info=x.design_info,
        covariate_dtypes={col: data[col].dtype for col in covariates},
        propensity=propensity,
        n_excluded=n_excluded,
    )


def predict_propensity(result: PropensityResult, data: pd.DataFrame) -> pd.Series:
    """Propensity for each complete row of ``data`` using the fit-time encoding."""
    _check_representation(data, result.covariate_dtypes)
    covariates = list(result.covariate_dtypes)
    subset = data.loc[_complete_rows(data, covariates), covariates]
    try:
        (x,) = build_design_matrices([result.design_info], subset, NA_action="raise", return_type="dataframe")
    except PatsyError as exc:
        raise SchemaError(f"propensity_model: covariates do not match the fitted encoding ({exc}).") from exc
    return result.model.predict(x).rename("propensity")


def propensity_coefficient_table(model: FittedLogit, ci_level: float = 0.95) -> pd.DataFrame:
    se = standard_errors(model.cov_params())
    z = critical_value(ci_level)
    coef = model.params
    return pd.DataFrame(
        {
            "term": coef.index,
            "coef": coef.values,
            "std_error": se.values,
            "or": np.exp(coef.values),
            "ci_low": np.exp(coef.values - z * se.values),
            "ci_high": np.exp(coef.values + z * se.values),
            "p_value": [_two_sided_p_from_z(c / s) if s > 0 else np.nan for c, s in zip(coef.values, se.values)],
            "model": model.label,
            "effect_type": "OR",
            "effect_scale": "log",
        }
    )


# ---------------------------------------------------------------------------
# Marginal structural model
# ---------------------------------------------------------------------------


def msm_design(data: pd.DataFrame) -> pd.DataFrame:
    return pd.DataFrame(
        {"Intercept": 1.0, EXPOSURE_COL: data[EXPOSURE_COL].astype(float)},
        index=data.index,
    )


def fit_msm(
    prepared: pd.DataFrame,
    weights: pd.Series,
    config: dict | None = None,
    *,
    fitter: LogisticFitter | None = None,
    notes: list[str] | None = None,
) -> MSMResult:
    """Weighted logit of outcome on exposure alone; covariates never enter this model."""
    fitter = fitter or _default_fitter(config)
    data = prepared.loc[weights.index, [EXPOSURE_COL, OUTCOME_COL]]
    keep = data[OUTCOME_COL].notna() & data[EXPOSURE_COL].notna()
    n_excluded = int((~keep).sum())
    if n_excluded:
        msg = f"msm: excluded {n_excluded} weighted rows with missing outcome."
        logging.warning(msg)
        if notes is not None:
            notes.append(msg)
    data = data.loc[keep]

    model = fitter.fit(msm_design(data), data[OUTCOME_COL], weights.loc[data.index], label="msm")
    robust = robust_covariance(model)
    naive = naive_covariance(model)
    logging.info(
        "MSM: theta1=%.4f robust_se=%.4f naive_se=%.4f",
        float(model.params[EXPOSURE_COL]),
        float(np.sqrt(robust.loc[EXPOSURE_COL, EXPOSURE_COL])),
        float(np.sqrt(naive.loc[EXPOSURE_COL, EXPOSURE_COL])),
    )
    return MSMResult(model=model, robust_cov=robust, naive_cov=naive, n_excluded=n_excluded)


def msm_result_table(msm: MSMResult, ci_level: float = 0.95) -> pd.DataFrame:
    z = critical_value(ci_level)
    theta1 = float(msm.theta[EXPOSURE_COL])
    robust_se = float(msm.robust_se[EXPOSURE_COL])
    naive_se = float(msm.naive_se[EXPOSURE_COL])
    return pd.DataFrame(
        [
            {
                "estimate": math.exp(theta1),
                "ci_low": math.exp(theta1 - z * robust_se),
                "ci_high": math.exp(theta1 + z * robust_se),
                "term": EXPOSURE_COL,
                "coef": theta1,
                "robust_se": robust_se,
                "naive_se": naive_se,
                "p_value": _two_sided_p_from_z(theta1 / robust_se) if robust_se > 0 else np.nan,
                "ci_level": float(ci_level),
                "n_total": msm.model.nobs,
                "events": int(msm.model.response.sum()),
                "model": "msm_iptw_hc0",
                "effect_type": "OR",
            }
        ]
    )


# ---------------------------------------------------------------------------
# Balance diagnostics
# ---------------------------------------------------------------------------


def _weighted_mean(x: pd.Series, w: pd.Series) -> float:
    return float(np.average(x, weights=w)) if len(x) else np.nan


def _weighted_var(x: pd.Series, w: pd.Series) -> float:
    mu = _weighted_mean(x, w)
    return float(np.average((x - mu) ** 2, weights=w)) if len(x) else np.nan


def _smd_numeric(x_t: pd.Series, x_c: pd.Series, wt_t: pd.Series | None = None, wt_c: pd.Series | None = None) -> float:
    if wt_t is None or wt_c is None:
        m_t, m_c = x_t.mean(), x_c.mean()
        v_t, v_c = x_t.var(ddof=1), x_c.var(ddof=1)
    else:
        m_t, m_c = _weighted_mean(x_t, wt_t), _weighted_mean(x_c, wt_c)
        v_t, v_c = _weighted_var(x_t, wt_t), _weighted_var(x_c, wt_c)
    denom = np.sqrt((v_t + v_c) / 2)
    if denom == 0 or np.isnan(denom):
        return np.nan
    return float((m_t - m_c) / denom)


def compute_balance_table(
    prepared: pd.DataFrame,
    weights: pd.Series,
    *,
    target_abs_smd: float = 0.10,
    weighting_label: str = "iptw",
) -> pd.DataFrame:
    data = prepared.loc[weights.index]
    treated_mask = data[EXPOSURE_COL] == 1
    control_mask = data[EXPOSURE_COL] == 0
    if not treated_mask.any() or not control_mask.any():
        return pd.DataFrame()
    wt_t, wt_c = weights.loc[treated_mask], weights.loc[control_mask]

    columns: dict[str, pd.Series] = {col: data[col].astype(float) for col in continuous_covariates()}
    for col in categorical_covariates():
        dummies = pd.get_dummies(data[col], prefix=col, dummy_na=False).astype(float)
        for dcol in dummies.columns:
            columns[dcol] = dummies[dcol]

    rows: list[dict[str, object]] = []
    for name, series in columns.items():
        t_series, c_series = series.loc[treated_mask], series.loc[control_mask]
        smd_before = _smd_numeric(t_series, c_series)
        smd_after = _smd_numeric(t_series, c_series, wt_t=wt_t, wt_c=wt_c)
        rows.append(
            {
                "covariate": name,
                "smd_unweighted": smd_before,
                "smd_weighted": smd_after,
                "abs_smd_unweighted": abs(smd_before) if pd.notna(smd_before) else np.nan,
                "abs_smd_weighted": abs(smd_after) if pd.notna(smd_after) else np.nan,
                "n_treated": int(treated_mask.sum()),
                "n_control": int(control_mask.sum()),
                "weighting_label": weighting_label,
            }
        )
    out = pd.DataFrame(rows)

    max_before = float(pd.to_numeric(out["abs_smd_unweighted"], errors="coerce").max())
    max_after = float(pd.to_numeric(out["abs_smd_weighted"], errors="coerce").max())
    summary = {
        "covariate": "__summary_max_abs_smd__",
        "smd_unweighted": np.nan,
        "smd_weighted": np.nan,
        "abs_smd_unweighted": max_before,
        "abs_smd_weighted": max_after,
        "n_treated": int(treated_mask.sum()),
        "n_control": int(control_mask.sum()),
        "weighting_label": weighting_label,
    }
    out = pd.concat([out, pd.DataFrame([summary])], ignore_index=True)
    if np.isfinite(max_after) and max_after > target_abs_smd:
        logging.warning("Weighted max |SMD| %.3f exceeds target %.2f.", max_after, target_abs_smd)
    return out


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def run_msm_analysis(
    raw_df: pd.DataFrame,
    config: dict,
    *,
    cohort_flow: pd.DataFrame | None = None,
    propensity_fitter: LogisticFitter | None = None,
    outcome_fitter: LogisticFitter | None = None,
) -> AnalysisBundle:
    notes: list[str] = []
    ci_level = float(config.get("ci_level", 0.95))

    prepared = prepare_covariates(raw_df, notes=notes)
    propensity = fit_propensity_model(prepared, config, fitter=propensity_fitter, notes=notes)

    exposure = prepared.loc[propensity.propensity.index, EXPOSURE_COL]
    iptw = compute_iptw_weights(
        exposure,
        propensity.propensity,
        policy=str(config.get("positivity_policy", "reject")),
        clip_bound=float(config.get("propensity_clip_bound", 1e-4)),
        stabilized=bool(config.get("stabilized_weights", False)),
    )
    label = "stabilized_iptw" if config.get("stabilized_weights", False) else "iptw"
    diagnostics = weight_diagnostics(iptw, exposure, label=label)
    balance = compute_balance_table(
        prepared,
        iptw,
        target_abs_smd=float(config.get("balance_target_abs_smd", 0.10)),
        weighting_label=label,
    )

    msm = fit_msm(prepared, iptw, config, fitter=outcome_fitter, notes=notes)
    result_table = msm_result_table(msm, ci_level=ci_level)
    ps_table = propensity_coefficient_table(propensity.model, ci_level=ci_level)

    flow_rows = [
        {"step": "02_complete_propensity_covariates", "n": int(len(propensity.propensity))},
        {"step": "03_msm_analytic_rows", "n": msm.model.nobs},
    ]
    flow = pd.concat(
        [cohort_flow if cohort_flow is not None else pd.DataFrame(columns=["step", "n"]), pd.DataFrame(flow_rows)],
        ignore_index=True,
    )

    notes.append(
        "Robust CIs use the HC0 sandwich and treat the weights as known; propensity estimation is not propagated."
    )
    row = result_table.iloc[0]
    logging.info(
        "IAC odds ratio for 28-day mortality: %.3f (%.0f%% CI %.3f-%.3f)",
        row["estimate"],
        100 * ci_level,
        row["ci_low"],
        row["ci_high"],
    )

    artifacts: dict[str, object] = {
        "datasets": {"raw_df": raw_df, "prepared": prepared},
        "models": {"propensity_model": propensity.model, "msm": msm.model},
        "formulas": {"propensity_model": propensity_formula(), "msm": f"{OUTCOME_COL} ~ {EXPOSURE_COL}"},
    }
    return AnalysisBundle(
        prepared=prepared,
        propensity=propensity,
        weights=iptw,
        msm=msm,
        result_table=result_table,
        propensity_table=ps_table,
        weight_diagnostics=diagnostics,
        balance_diagnostics=balance,
        cohort_flow=flow,
        notes=notes,
        artifacts=artifacts,
    )
