"""
Shared utility functions for reviewmatch.

This module contains column discovery functions and statistical computations
used across multiple modules.
"""

from typing import Iterable, List, Optional

import numpy as np
from pyspark.sql import DataFrame

FEATURE_SUFFIXES = ("__num", "__cat")


def _discover_single_column(df: DataFrame, suffix: str) -> str:
    """Find the one column ending with ``suffix``."""
    cols = [c for c in df.columns if c.endswith(suffix)]
    if len(cols) != 1:
        raise ValueError(
            f"Expected exactly one column ending with '{suffix}', found: {cols}"
        )
    return cols[0]


def _discover_id_column(df: DataFrame) -> str:
    """Find the ID column by looking for __id suffix."""
    return _discover_single_column(df, "__id")


def _discover_treatment_column(df: DataFrame) -> str:
    """Find the treatment column by looking for __treat suffix."""
    return _discover_single_column(df, "__treat")


def _discover_score_column(df: DataFrame) -> str:
    """Find the propensity score column by looking for __ps suffix."""
    return _discover_single_column(df, "__ps")


def _discover_partition_column(df: DataFrame) -> Optional[str]:
    """Find the partition column (__part suffix), or None if not assigned yet."""
    cols = [c for c in df.columns if c.endswith("__part")]
    if len(cols) > 1:
        raise ValueError(
            f"Expected at most one column ending with '__part', found: {cols}"
        )
    return cols[0] if cols else None


def _discover_outcome_columns(df: DataFrame) -> List[str]:
    """Find all outcome columns by suffix."""
    return [c for c in df.columns if c.endswith("__outcome")]


def _discover_feature_columns(df: DataFrame) -> List[str]:
    """Find all covariate columns by suffix pattern."""
    return [c for c in df.columns if any(c.endswith(s) for s in FEATURE_SUFFIXES)]


def _strip_suffix(col_name: str) -> str:
    """Strip the role suffix (__num, __cat, __outcome, ...) for display."""
    for suffix in FEATURE_SUFFIXES + ("__outcome", "__ps", "__treat", "__id"):
        if col_name.endswith(suffix):
            return col_name[: -len(suffix)]
    return col_name


def _require_columns(columns: Iterable[str], required: Iterable[str], what: str) -> None:
    """Raise a descriptive ValueError if any required column is missing."""
    columns = set(columns)
    missing = [c for c in required if c not in columns]
    if missing:
        raise ValueError(f"{what} is missing required column(s): {missing}")


def compute_smd(
    treated_values: np.ndarray,
    control_values: np.ndarray,
    treated_weights: Optional[np.ndarray] = None,
    control_weights: Optional[np.ndarray] = None,
) -> float:
    """
    Compute standardized mean difference.

    Parameters
    ----------
    treated_values : np.ndarray
        Values from the treated group
    control_values : np.ndarray
        Values from the control group
    treated_weights, control_weights : Optional[np.ndarray]
        Optional non-negative weights (matched pairs carry pair weights)

    Returns
    -------
    float
        Standardized mean difference (SMD)
    """
    mean_t, var_t = weighted_mean_var(treated_values, treated_weights)
    mean_c, var_c = weighted_mean_var(control_values, control_weights)
    pooled_std = np.sqrt((var_t + var_c) / 2)
    if not np.isfinite(pooled_std) or pooled_std < 1e-10:
        return 0.0
    return (mean_t - mean_c) / pooled_std


def compute_variance_ratio(
    treated_values: np.ndarray,
    control_values: np.ndarray,
    treated_weights: Optional[np.ndarray] = None,
    control_weights: Optional[np.ndarray] = None,
) -> float:
    """
    Compute variance ratio.

    Parameters
    ----------
    treated_values : np.ndarray
        Values from the treated group
    control_values : np.ndarray
        Values from the control group

    Returns
    -------
    float
        Variance ratio (treated/control)
    """
    _, var_t = weighted_mean_var(treated_values, treated_weights)
    _, var_c = weighted_mean_var(control_values, control_weights)
    if var_c < 1e-10:
        return np.inf if var_t > 1e-10 else 1.0
    return var_t / var_c


def weighted_mean_var(values: np.ndarray, weights: Optional[np.ndarray] = None):
    """Mean and (frequency-weighted, ddof=1) variance, ignoring NaNs."""
    values = np.asarray(values, dtype=float)
    if weights is None:
        weights = np.ones_like(values)
    weights = np.asarray(weights, dtype=float)
    keep = ~np.isnan(values)
    values, weights = values[keep], weights[keep]
    total = weights.sum()
    if total <= 0:
        return np.nan, np.nan
    mean = np.sum(weights * values) / total
    if total <= 1:
        return mean, 0.0
    var = np.sum(weights * (values - mean) ** 2) / (total - 1)
    return mean, var
