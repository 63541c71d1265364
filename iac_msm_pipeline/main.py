"""Main entrypoint for the IAC marginal structural model pipeline."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import sys

import pandas as pd

from .analysis import AnalysisBundle, run_msm_analysis
from .cohort import CohortData, load_cohort_csv
from .config import ASSUMPTIONS, CHANGE_LOG, CONFIG, REQUIRED_OUTPUT_FILES, ensure_output_dir, validate_config
from .reporting import odds_ratio_table, write_report
from .variable_sets import get_variable_inventory


@dataclass
class PipelineRunResult:
    output_dir: Path
    generated_files: list[str]
    cohort_data: CohortData
    analyses: AnalysisBundle
    notes: list[str]


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _print_df(label: str, df: pd.DataFrame, max_rows: int = 30) -> None:
    print(f"\n===== {label} =====")
    if df.empty:
        print("[empty]")
        return
    if len(df) > max_rows:
        print(df.head(max_rows).to_string(index=False))
        print(f"... ({len(df)} rows total)")
    else:
        print(df.to_string(index=False))


def _save_table(
    *,
    file_name: str,
    df: pd.DataFrame,
    output_dir: Path,
    print_tables: bool = False,
    print_max_rows: int = 30,
) -> Path:
    out_path = output_dir / file_name
    df.to_csv(out_path, index=False)
    logging.info("Saved %s (%s rows)", file_name, len(df))
    if logging.getLogger().isEnabledFor(logging.DEBUG) and not df.empty:
        logging.debug("%s preview:\n%s", file_name, df.head(20).to_string(index=False))
    if print_tables:
        _print_df(file_name, df, max_rows=print_max_rows)
    return out_path


def _verify_outputs(output_dir: Path, notes: list[str]) -> None:
    for file_name in REQUIRED_OUTPUT_FILES:
        if not (output_dir / file_name).exists():
            notes.append(f"Missing expected output artifact: {file_name}")


def main(
    input_csv: str | Path | None = None,
    output_dir: str | Path | None = None,
    config: dict | None = None,
) -> PipelineRunResult:
    _configure_logging()
    cfg = dict(CONFIG if config is None else config)
    validate_config(cfg)

    csv_path = Path(input_csv if input_csv is not None else cfg["input_csv"])
    out_dir = ensure_output_dir(output_dir if output_dir is not None else cfg["output_dir"])
    print_tables = bool(cfg.get("print_tables_in_notebook", False))
    print_max_rows = int(cfg.get("print_table_max_rows", 30))

    logging.info("Starting IAC MSM pipeline. input=%s", csv_path)
    logging.info("Output directory: %s", out_dir)

    cohort_data = load_cohort_csv(csv_path)
    analyses = run_msm_analysis(cohort_data.raw_df, cfg, cohort_flow=cohort_data.cohort_flow)

    generated_files: list[str] = []
    output_map: list[tuple[str, pd.DataFrame]] = [
        ("cohort_flow.csv", analyses.cohort_flow),
        ("variable_inventory.csv", get_variable_inventory()),
        ("propensity_model.csv", analyses.propensity_table),
        ("weight_diagnostics.csv", analyses.weight_diagnostics),
        ("balance_diagnostics.csv", analyses.balance_diagnostics),
        ("msm_result.csv", analyses.result_table),
    ]
    for file_name, df in output_map:
        path = _save_table(
            file_name=file_name,
            df=df,
            output_dir=out_dir,
            print_tables=print_tables,
            print_max_rows=print_max_rows,
        )
        generated_files.append(path.name)

    notes = list(analyses.notes)
    report_path = write_report(
        output_dir=out_dir,
        change_log=CHANGE_LOG,
        assumptions=ASSUMPTIONS,
        cohort_flow=analyses.cohort_flow,
        result_table=analyses.result_table,
        weight_diagnostics=analyses.weight_diagnostics,
        generated_files=generated_files,
        notes=notes,
    )
    generated_files.append(report_path.name)
    _verify_outputs(out_dir, notes)

    _print_df("IAC odds ratio for 28-day mortality", odds_ratio_table(analyses.result_table))

    logging.info("Pipeline complete. Generated files:")
    for fp in sorted(generated_files):
        logging.info("- %s", fp)

    return PipelineRunResult(
        output_dir=out_dir,
        generated_files=sorted(generated_files),
        cohort_data=cohort_data,
        analyses=analyses,
        notes=notes,
    )


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else None)
