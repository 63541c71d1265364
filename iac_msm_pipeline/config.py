"""Configuration for the IAC / 28-day mortality marginal structural model analysis."""

from __future__ import annotations

from pathlib import Path

CHANGE_LOG = [
    "2026-10-16: Logit fits with any fitted probability within 1e-7 of 0 or 1 (separated covariate stratum) now raise ConvergenceError.",
    "2026-10-14: Added explicit positivity policy (reject by default, optional clip at 1e-4) with DegenerateWeightError.",
    "2026-10-14: Replaced column-by-column factor recoding with the declarative schema in variable_sets.py.",
    "2026-10-13: Hand-computed HC0 sandwich covariance for the weighted outcome model; naive SE reported alongside.",
    "2026-10-13: Added covariate balance (SMD before/after weighting) and weight diagnostics (ESS, p95/p99/max).",
    "2026-10-12: Refactored the IAC MSM notebook into a modular pipeline with a single main() entrypoint.",
    "2026-10-12: Preserved surgical_service derivation from service_unit == 'SURG'.",
    "2026-10-12: Preserved additive main-effects propensity model (no interactions, no splines).",
]

ASSUMPTIONS = [
    "Input is a pre-cleaned one-row-per-ICU-stay CSV; no imputation is performed and incomplete rows are excluded case-wise.",
    "Conditional exchangeability holds given the propensity covariates listed in variable_sets.py.",
    "Positivity: every fitted propensity lies strictly inside (0, 1); violations abort the run unless clipping is configured.",
    "The propensity model is additive and linear in every covariate; no interactions or splines are used.",
    "The marginal structural model regresses 28-day mortality on IAC only; all adjustment is carried by the weights.",
    "Robust standard errors use the HC0 sandwich and ignore estimation of the propensity model (conservative for the ATE).",
]

CONFIG = {
    "input_csv": str(Path(__file__).resolve().parents[1] / "data" / "aline_full_cohort_data.csv"),
    "output_dir": str(Path(__file__).resolve().parents[1] / "iac_msm_outputs"),
    "random_seed": 42,
    # Positivity policy for fitted propensities at or beyond 0/1: "reject" or "clip".
    "positivity_policy": "reject",
    "propensity_clip_bound": 1e-4,
    "stabilized_weights": False,
    "glm_maxiter": 100,
    "ci_level": 0.95,
    "balance_target_abs_smd": 0.10,
    "print_tables_in_notebook": True,
    "print_table_max_rows": 30,
}

REQUIRED_OUTPUT_FILES = [
    "cohort_flow.csv",
    "variable_inventory.csv",
    "propensity_model.csv",
    "weight_diagnostics.csv",
    "balance_diagnostics.csv",
    "msm_result.csv",
    "REPORT.md",
]


def validate_config(config: dict | None = None) -> None:
    cfg = CONFIG if config is None else config
    policy = str(cfg.get("positivity_policy", ""))
    if policy not in {"reject", "clip"}:
        raise ValueError(f"positivity_policy must be 'reject' or 'clip', got {policy!r}.")
    bound = float(cfg.get("propensity_clip_bound", 0.0))
    if not 0.0 < bound < 0.5:
        raise ValueError(f"propensity_clip_bound must lie in (0, 0.5), got {bound}.")
    level = float(cfg.get("ci_level", 0.0))
    if not 0.0 < level < 1.0:
        raise ValueError(f"ci_level must lie in (0, 1), got {level}.")
    if int(cfg.get("glm_maxiter", 0)) < 1:
        raise ValueError("glm_maxiter must be a positive integer.")


def ensure_output_dir(output_dir: str | Path | None = None) -> Path:
    out_dir = Path(output_dir if output_dir is not None else CONFIG["output_dir"]).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir
