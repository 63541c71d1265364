"""Report generation utilities for IAC MSM outputs."""

from __future__ import annotations

from pathlib import Path

import pandas as pd

RESULT_COLUMNS = ["estimate", "ci_low", "ci_high"]


def odds_ratio_table(result_table: pd.DataFrame) -> pd.DataFrame:
    """The three-column odds ratio table: point estimate and Wald bounds."""
    missing = [c for c in RESULT_COLUMNS if c not in result_table.columns]
    if missing:
        raise KeyError(f"Result table is missing columns: {', '.join(missing)}")
    return result_table[RESULT_COLUMNS].reset_index(drop=True).copy()


def _fmt_num(x: float | int | None, digits: int = 3) -> str:
    if x is None or pd.isna(x):
        return "NA"
    return f"{float(x):.{digits}f}"


def _markdown_table(df: pd.DataFrame, digits: int = 4) -> list[str]:
    if df.empty:
        return ["- Table unavailable."]
    header = "| " + " | ".join(str(c) for c in df.columns) + " |"
    rule = "| " + " | ".join("---" for _ in df.columns) + " |"
    lines = [header, rule]
    for _, row in df.iterrows():
        cells = [
            _fmt_num(v, digits) if isinstance(v, float) else str(v)
            for v in row.tolist()
        ]
        lines.append("| " + " | ".join(cells) + " |")
    return lines


def write_report(
    *,
    output_dir: Path,
    change_log: list[str],
    assumptions: list[str],
    cohort_flow: pd.DataFrame,
    result_table: pd.DataFrame,
    weight_diagnostics: pd.DataFrame,
    generated_files: list[str],
    notes: list[str],
) -> Path:
    report_path = output_dir / "REPORT.md"

    lines: list[str] = []
    lines.append("# IAC REPORT: Indwelling Arterial Catheters and 28-Day Mortality (IPTW MSM)")
    lines.append("")

    lines.append("## Change Log")
    for entry in change_log:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Assumptions")
    for entry in assumptions:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Cohort Flow")
    if cohort_flow.empty:
        lines.append("- Cohort flow unavailable.")
    else:
        for _, row in cohort_flow.iterrows():
            lines.append(f"- {row.get('step', 'step')}: {row.get('n', 'NA')}")
    lines.append("")

    lines.append("## Marginal Odds Ratio (IAC vs no IAC)")
    if result_table.empty:
        lines.append("- Result unavailable.")
    else:
        row = result_table.iloc[0]
        level = float(row.get("ci_level", 0.95))
        lines.append(
            f"- OR {_fmt_num(row['estimate'])} "
            f"({100 * level:.0f}% CI {_fmt_num(row['ci_low'])} to {_fmt_num(row['ci_high'])}), "
            f"HC0 robust SE of log-OR {_fmt_num(row.get('robust_se'), 4)} "
            f"(naive {_fmt_num(row.get('naive_se'), 4)})."
        )
        lines.append("")
        lines.extend(_markdown_table(odds_ratio_table(result_table)))
    lines.append("")

    lines.append("## Weight Diagnostics")
    overall = (
        weight_diagnostics.loc[weight_diagnostics["group"] == "overall", ["term", "value"]]
        if not weight_diagnostics.empty
        else weight_diagnostics
    )
    lines.extend(_markdown_table(overall))
    lines.append("")

    lines.append("## Generated Artifacts")
    for fp in sorted(generated_files):
        lines.append(f"- `{fp}`")
    lines.append("")

    lines.append("## Notes")
    if not notes:
        lines.append("- None.")
    else:
        for note in notes:
            lines.append(f"- {note}")
    lines.append("")

    lines.append("## Interpretation Guardrails")
    lines.append("- The odds ratio is causal only under conditional exchangeability, positivity and no unmeasured confounding.")
    lines.append("- The outcome model contains IAC alone; all covariate adjustment is carried by the weights.")
    lines.append("- Check balance_diagnostics.csv: a weighted max |SMD| above 0.10 signals residual imbalance.")

    report_path.write_text("\n".join(lines), encoding="utf-8")
    return report_path
