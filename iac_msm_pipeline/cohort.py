"""Cohort loading for the IAC analysis."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

import pandas as pd

from .errors import SchemaError
from .variable_sets import required_raw_columns


@dataclass
class CohortData:
    cohort_flow: pd.DataFrame
    raw_df: pd.DataFrame


def check_required_columns(df: pd.DataFrame, columns: list[str] | None = None) -> None:
    required = required_raw_columns() if columns is None else list(columns)
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise SchemaError(f"Input dataset is missing required columns: {', '.join(missing)}")


def load_cohort_csv(path: str | Path) -> CohortData:
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Cannot find cohort file: {csv_path}")

    logging.info("Loading cohort: %s", csv_path)
    raw_df = pd.read_csv(csv_path)
    logging.info("Loaded cohort: rows=%s columns=%s", len(raw_df), raw_df.shape[1])
    check_required_columns(raw_df)

    cohort_flow = pd.DataFrame([{"step": "01_rows_loaded", "n": int(len(raw_df))}])
    return CohortData(cohort_flow=cohort_flow, raw_df=raw_df)
