"""Tests for covariate preparation, the propensity model and the MSM pipeline."""

import math

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit
from scipy.stats import norm

from conftest import FixedPropensityFitter
from iac_msm_pipeline.analysis import (
    compute_balance_table,
    fit_msm,
    fit_propensity_model,
    predict_propensity,
    prepare_covariates,
    propensity_formula,
    run_msm_analysis,
)
from iac_msm_pipeline.config import CONFIG
from iac_msm_pipeline.errors import ConvergenceError, DegenerateWeightError, SchemaError
from iac_msm_pipeline.models import StatsmodelsLogitFitter
from iac_msm_pipeline.synthetic import simulate_iac_cohort
from iac_msm_pipeline.variable_sets import analysis_columns, categorical_covariates
from iac_msm_pipeline.weights import compute_iptw_weights

Z_975 = norm.ppf(0.975)


# ---------------------------------------------------------------------------
# Covariate preparer
# ---------------------------------------------------------------------------


def test_prepare_projects_and_types_columns(synthetic_cohort):
    prepared = prepare_covariates(synthetic_cohort)

    assert list(prepared.columns) == analysis_columns()
    assert "service_unit" not in prepared.columns
    for col in categorical_covariates():
        assert isinstance(prepared[col].dtype, pd.CategoricalDtype), col
    assert list(prepared["day_icu_intime_num"].cat.categories) == [1, 2, 3, 4, 5, 6, 7]
    assert list(prepared["surgical_service"].cat.categories) == [False, True]
    assert prepared["age"].dtype == float


def test_prepare_derives_surgical_service(synthetic_cohort):
    raw = synthetic_cohort.head(50).copy()
    raw.loc[raw.index[0], "service_unit"] = np.nan
    prepared = prepare_covariates(raw)

    expected = raw["service_unit"] == "SURG"
    observed = prepared["surgical_service"]
    assert pd.isna(observed.iloc[0])
    assert (observed.iloc[1:].astype(bool) == expected.iloc[1:]).all()


def test_prepare_does_not_mutate_input(synthetic_cohort):
    raw = synthetic_cohort.head(100)
    snapshot = raw.copy()
    prepare_covariates(raw)
    pd.testing.assert_frame_equal(raw, snapshot)


def test_prepare_missing_column_is_schema_error(synthetic_cohort):
    with pytest.raises(SchemaError, match="sofa_first"):
        prepare_covariates(synthetic_cohort.drop(columns=["sofa_first"]))


@pytest.mark.parametrize(
    "column, value",
    [
        ("gender_num", 2),
        ("day_icu_intime_num", 9),
        ("chf_flg", "yes"),
        ("age", "old"),
        ("aline_flg", 3),
        ("day_28_flg", 0.5),
    ],
)
def test_prepare_rejects_values_outside_schema(synthetic_cohort, column, value):
    raw = synthetic_cohort.head(20).copy()
    raw[column] = raw[column].astype(object)
    raw.loc[raw.index[3], column] = value
    with pytest.raises(SchemaError, match=column):
        prepare_covariates(raw)


def test_prepare_keeps_missing_values_for_casewise_exclusion(synthetic_cohort):
    raw = synthetic_cohort.head(30).copy()
    raw.loc[raw.index[2], "weight_first"] = np.nan
    raw.loc[raw.index[4], "afib_flg"] = np.nan
    notes: list[str] = []
    prepared = prepare_covariates(raw, notes=notes)

    assert len(prepared) == 30
    assert pd.isna(prepared.loc[raw.index[2], "weight_first"])
    assert pd.isna(prepared.loc[raw.index[4], "afib_flg"])
    assert any("2 rows" in note for note in notes)


# ---------------------------------------------------------------------------
# Propensity model
# ---------------------------------------------------------------------------


def test_propensity_formula_uses_additive_terms_only():
    formula = propensity_formula()
    assert formula.startswith("aline_flg ~ ")
    assert "C(gender_num)" in formula
    assert "C(surgical_service)" in formula
    assert "sofa_first" in formula
    assert ":" not in formula and "*" not in formula and "day_28_flg" not in formula


def test_propensity_model_recovers_confounder_effects():
    prepared = prepare_covariates(simulate_iac_cohort(60_000, seed=99))
    result = fit_propensity_model(prepared, CONFIG)
    params = result.model.params

    assert params["age"] == pytest.approx(0.3 / 16.0, abs=0.02)
    assert params["sofa_first"] == pytest.approx(0.4 / 2.2, abs=0.02)
    assert params["C(surgical_service)[T.True]"] == pytest.approx(0.6, abs=0.1)
    assert params["C(resp_flg)[T.1]"] == pytest.approx(0.5, abs=0.1)
    assert params["C(gender_num)[T.1]"] == pytest.approx(0.0, abs=0.1)
    assert ((result.propensity > 0) & (result.propensity < 1)).all()


def test_propensity_excludes_incomplete_rows(synthetic_cohort):
    raw = synthetic_cohort.copy()
    raw.loc[raw.index[:7], "hgb_first"] = np.nan
    notes: list[str] = []
    result = fit_propensity_model(prepare_covariates(raw), CONFIG, notes=notes)

    assert result.n_excluded == 7
    assert len(result.propensity) == len(raw) - 7
    assert not result.propensity.index.isin(raw.index[:7]).any()
    assert any("excluded 7 rows" in note for note in notes)


def test_propensity_rejects_separated_covariate_stratum():
    raw = simulate_iac_cohort(3000, seed=5)
    raw.loc[raw["liver_flg"] == 1, "aline_flg"] = 1
    prepared = prepare_covariates(raw)

    with pytest.raises(ConvergenceError, match="liver_flg"):
        fit_propensity_model(prepared, CONFIG)
    with pytest.raises(ConvergenceError):
        run_msm_analysis(raw, dict(CONFIG, positivity_policy="clip"))


def test_predict_matches_fit_and_rejects_changed_representation(synthetic_cohort):
    prepared = prepare_covariates(synthetic_cohort)
    result = fit_propensity_model(prepared, CONFIG)

    again = predict_propensity(result, prepared)
    np.testing.assert_allclose(again.to_numpy(), result.propensity.to_numpy())

    recoded = prepared.copy()
    recoded["gender_num"] = recoded["gender_num"].astype(int)
    with pytest.raises(SchemaError, match="gender_num"):
        predict_propensity(result, recoded)

    reordered = prepared.copy()
    reordered["day_icu_intime_num"] = reordered["day_icu_intime_num"].cat.reorder_categories([7, 6, 5, 4, 3, 2, 1])
    with pytest.raises(SchemaError, match="day_icu_intime_num"):
        predict_propensity(result, reordered)

    as_text = prepared.copy()
    as_text["age"] = as_text["age"].astype(str)
    with pytest.raises(SchemaError, match="age"):
        predict_propensity(result, as_text)


# ---------------------------------------------------------------------------
# Marginal structural model
# ---------------------------------------------------------------------------


def test_msm_sees_only_exposure_and_outcome(synthetic_cohort):
    bundle = run_msm_analysis(synthetic_cohort, CONFIG)
    design = bundle.msm.model.design
    assert list(design.columns) == ["Intercept", "aline_flg"]
    pd.testing.assert_series_equal(
        bundle.msm.model.prior_weights, bundle.weights.loc[design.index], check_names=False
    )


@pytest.mark.slow
def test_msm_ci_coverage_under_causal_null():
    fitter = StatsmodelsLogitFitter()
    rng = np.random.default_rng(20261016)
    covered = 0
    trials = 100
    for _ in range(trials):
        n = 500
        confounder = rng.normal(size=n)
        exposure = rng.binomial(1, expit(0.5 * confounder))
        outcome = rng.binomial(1, expit(-1.0 + 0.8 * confounder))
        data = pd.DataFrame(
            {"aline_flg": exposure.astype(float), "day_28_flg": outcome.astype(float), "confounder": confounder}
        )

        ps_design = pd.DataFrame({"Intercept": 1.0, "confounder": confounder}, index=data.index)
        ps_model = fitter.fit(ps_design, data["aline_flg"], label="propensity_model")
        weights = compute_iptw_weights(data["aline_flg"], ps_model.predict())
        msm = fit_msm(data, weights, fitter=fitter)

        theta1 = msm.theta["aline_flg"]
        se = msm.robust_se["aline_flg"]
        if theta1 - Z_975 * se <= 0.0 <= theta1 + Z_975 * se:
            covered += 1
    assert covered >= 93


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


def test_four_record_pipeline_matches_hand_computation(four_record_cohort, four_record_propensity):
    bundle = run_msm_analysis(
        four_record_cohort,
        CONFIG,
        propensity_fitter=FixedPropensityFitter(four_record_propensity),
    )

    np.testing.assert_allclose(bundle.weights.to_numpy(), [1.25, 2.0, 2.0, 1.25], atol=1e-12)

    theta1 = 2.0 * math.log(5.0 / 8.0)
    assert bundle.msm.theta["Intercept"] == pytest.approx(math.log(8.0 / 5.0), abs=1e-6)
    assert bundle.msm.theta["aline_flg"] == pytest.approx(theta1, abs=1e-6)
    assert bundle.msm.robust_se["aline_flg"] == pytest.approx(2.0, abs=1e-6)
    assert bundle.msm.naive_se["aline_flg"] == pytest.approx(math.sqrt(2.6), abs=1e-6)

    row = bundle.result_table.iloc[0]
    assert row["estimate"] == pytest.approx(0.390625, abs=1e-6)
    assert row["ci_low"] == pytest.approx(math.exp(theta1 - Z_975 * 2.0), abs=1e-6)
    assert row["ci_high"] == pytest.approx(math.exp(theta1 + Z_975 * 2.0), abs=1e-6)
    assert row["n_total"] == 4
    assert row["events"] == 2


def test_pipeline_on_synthetic_cohort(synthetic_cohort):
    bundle = run_msm_analysis(synthetic_cohort, CONFIG)

    assert (bundle.weights > 0).all() and np.isfinite(bundle.weights).all()
    assert list(bundle.cohort_flow["step"]) == ["02_complete_propensity_covariates", "03_msm_analytic_rows"]
    assert bundle.cohort_flow["n"].tolist() == [len(synthetic_cohort), len(synthetic_cohort)]

    row = bundle.result_table.iloc[0]
    assert 0 < row["ci_low"] < row["estimate"] < row["ci_high"]
    assert row["model"] == "msm_iptw_hc0"

    summary = bundle.balance_diagnostics.set_index("covariate").loc["__summary_max_abs_smd__"]
    assert summary["abs_smd_weighted"] < summary["abs_smd_unweighted"]
    assert set(bundle.propensity_table["term"]) == set(bundle.propensity.model.params.index)


def test_pipeline_propagates_positivity_violation(four_record_cohort):
    degenerate = pd.Series([1.0, 0.5, 0.5, 0.2], index=pd.RangeIndex(4))
    with pytest.raises(DegenerateWeightError):
        run_msm_analysis(four_record_cohort, CONFIG, propensity_fitter=FixedPropensityFitter(degenerate))

    clip_config = dict(CONFIG, positivity_policy="clip", propensity_clip_bound=1e-4)
    bundle = run_msm_analysis(
        four_record_cohort, clip_config, propensity_fitter=FixedPropensityFitter(degenerate)
    )
    assert bundle.weights.iloc[0] == pytest.approx(1.0 / (1.0 - 1e-4))


def test_balance_table_reports_weighted_and_unweighted_smd(synthetic_cohort):
    prepared = prepare_covariates(synthetic_cohort)
    weights = pd.Series(1.0, index=prepared.index)
    balance = compute_balance_table(prepared, weights)

    body = balance.loc[balance["covariate"] != "__summary_max_abs_smd__"]
    np.testing.assert_allclose(
        body["smd_weighted"].to_numpy(dtype=float),
        body["smd_unweighted"].to_numpy(dtype=float),
        rtol=1e-2,
        equal_nan=True,
    )
    assert "surgical_service_True" in set(balance["covariate"])
