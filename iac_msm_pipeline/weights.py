"""Inverse-probability-of-treatment weights and weight diagnostics."""

from __future__ import annotations

import logging
import math

import numpy as np
import pandas as pd

from .errors import DegenerateWeightError

POSITIVITY_POLICIES = ("reject", "clip")


def iptw_weight(exposure: int, propensity: float) -> float:
    """Weight for one record: ``1/p`` if exposed, ``1/(1-p)`` otherwise."""
    p = float(propensity)
    if not math.isfinite(p) or p <= 0.0 or p >= 1.0:
        raise DegenerateWeightError(f"Propensity {p!r} is not strictly inside (0, 1).")
    if int(exposure) not in (0, 1):
        raise ValueError(f"Exposure must be 0 or 1, got {exposure!r}.")
    return 1.0 / p if int(exposure) == 1 else 1.0 / (1.0 - p)


def apply_positivity_policy(
    propensity: pd.Series,
    *,
    policy: str = "reject",
    clip_bound: float = 1e-4,
) -> pd.Series:
    if policy not in POSITIVITY_POLICIES:
        raise ValueError(f"Unknown positivity policy {policy!r}; expected one of {POSITIVITY_POLICIES}.")
    e = pd.to_numeric(propensity, errors="coerce").astype(float)

    nonfinite = ~np.isfinite(e.to_numpy())
    if nonfinite.any():
        bad = list(e.index[nonfinite][:5])
        raise DegenerateWeightError(
            f"{int(nonfinite.sum())} propensities are missing or non-finite (first rows: {bad})."
        )

    outside = (e <= 0.0) | (e >= 1.0)
    if policy == "reject":
        if outside.any():
            bad = list(e.index[outside.to_numpy()][:5])
            raise DegenerateWeightError(
                f"{int(outside.sum())} propensities are not strictly inside (0, 1) "
                f"(positivity violation; first rows: {bad})."
            )
        return e

    lo, hi = float(clip_bound), 1.0 - float(clip_bound)
    clipped = (e < lo) | (e > hi)
    if clipped.any():
        logging.warning(
            "Clipped %s propensities to [%.3g, %.3g] under the clip positivity policy.",
            int(clipped.sum()),
            lo,
            hi,
        )
    return e.clip(lo, hi)


def compute_iptw_weights(
    exposure: pd.Series,
    propensity: pd.Series,
    *,
    policy: str = "reject",
    clip_bound: float = 1e-4,
    stabilized: bool = False,
) -> pd.Series:
    t = pd.to_numeric(exposure, errors="coerce")
    if t.isna().any() or not t.isin([0, 1]).all():
        raise ValueError("Exposure must be a complete 0/1 column to compute weights.")
    if not t.index.equals(propensity.index):
        raise ValueError("Exposure and propensity must share the same row index.")

    t = t.astype(int)
    e = apply_positivity_policy(propensity, policy=policy, clip_bound=clip_bound)
    if stabilized:
        p_treated = float(t.mean())
        w = np.where(t == 1, p_treated / e, (1.0 - p_treated) / (1.0 - e))
    else:
        w = np.where(t == 1, 1.0 / e, 1.0 / (1.0 - e))
    weights = pd.Series(w, index=t.index, dtype=float, name="iptw")
    logging.info(
        "IPTW weights: n=%s min=%.4f max=%.4f mean=%.4f stabilized=%s",
        len(weights),
        float(weights.min()) if len(weights) else np.nan,
        float(weights.max()) if len(weights) else np.nan,
        float(weights.mean()) if len(weights) else np.nan,
        stabilized,
    )
    return weights


def effective_sample_size(weights: pd.Series) -> float:
    w = pd.to_numeric(weights, errors="coerce").fillna(0.0)
    if w.empty:
        return 0.0
    denom = float(np.sum(np.square(w)))
    if denom <= 0:
        return 0.0
    num = float(np.sum(w))
    return float((num * num) / denom)


def weight_diagnostics(weights: pd.Series, exposure: pd.Series, *, label: str = "iptw") -> pd.DataFrame:
    w = pd.to_numeric(weights, errors="coerce").fillna(0.0)
    t = pd.to_numeric(exposure.reindex(w.index), errors="coerce")
    rows: list[dict[str, object]] = []
    for group, mask in (
        ("overall", pd.Series(True, index=w.index)),
        ("exposed", t == 1),
        ("unexposed", t == 0),
    ):
        wg = w.loc[mask]
        if wg.empty:
            continue
        rows.extend(
            [
                {"group": group, "term": "n", "value": float(len(wg))},
                {"group": group, "term": "mean_weight", "value": float(wg.mean())},
                {"group": group, "term": "min_weight", "value": float(wg.min())},
                {"group": group, "term": "p95_weight", "value": float(wg.quantile(0.95))},
                {"group": group, "term": "p99_weight", "value": float(wg.quantile(0.99))},
                {"group": group, "term": "max_weight", "value": float(wg.max())},
                {"group": group, "term": "sum_weight", "value": float(wg.sum())},
                {"group": group, "term": "ess", "value": effective_sample_size(wg)},
            ]
        )
    out = pd.DataFrame(rows)
    out["weighting_label"] = label
    return out
