"""
Balance diagnostics for reviewmatch.

Compares covariate distributions between treated and control records before
matching (all records) and after matching (the records in the matched pairs,
with pair weights). Besides SMD / variance ratio / eCDF summaries, each
covariate gets a Welch t-test and a bootstrap Kolmogorov-Smirnov p-value.
"""

from typing import List, Optional, Tuple, Union

import matplotlib.figure
import numpy as np
import pandas as pd
from pyspark.sql import DataFrame
from scipy import stats

from .loveplot import love_plot
from .utils import (
    _discover_feature_columns,
    _discover_id_column,
    _discover_treatment_column,
    _require_columns,
    _strip_suffix,
    compute_smd,
    compute_variance_ratio,
    weighted_mean_var,
)
from .warnings_util import warn


def balance_report(
    scored_df: Union[DataFrame, pd.DataFrame],
    pairs: Union[DataFrame, pd.DataFrame],
    covariate_cols: Optional[List[str]] = None,
    n_boot: int = 500,
    seed: int = 42,
    threshold_smd: float = 0.1,
    threshold_vr: Tuple[float, float] = (0.5, 2.0),
    plot: bool = False,
    figsize: Tuple[int, int] = (10, 12),
    verbose: bool = True,
) -> Union[pd.DataFrame, Tuple[pd.DataFrame, matplotlib.figure.Figure]]:
    """
    Generate a pre/post-match balance report.

    Parameters
    ----------
    scored_df : DataFrame or pd.DataFrame
        Record table with __id, __treat and covariate columns
    pairs : DataFrame or pd.DataFrame
        Matched pairs with anchor_id, matched_id and weight columns, from
        nearest_neighbor_match() or text_caliper_match()
    covariate_cols : Optional[List[str]]
        Covariates to check. Defaults to every __num and __cat column.
    n_boot : int
        Bootstrap draws for the KS p-value
    seed : int
        Bootstrap seed
    threshold_smd : float
        Warn if any post-match |SMD| exceeds this threshold
    threshold_vr : Tuple[float, float]
        Warn if any post-match variance ratio falls outside this range
    plot : bool
        If True, also generate and return a love plot
    figsize : Tuple[int, int]
        Figure size if plot=True
    verbose : bool
        If True, print the balance table and sample sizes

    Returns
    -------
    pd.DataFrame or Tuple[pd.DataFrame, Figure]
        One row per covariate with columns:
        - covariate, display_name, is_binary
        - mean_treated, mean_control, mean_treated_adj, mean_control_adj
        - smd_unadjusted, smd_adjusted, vr_unadjusted, vr_adjusted
        - ecdf_mean_unadj, ecdf_mean_adj, ecdf_max_unadj, ecdf_max_adj
        - ttest_p_unadj, ttest_p_adj: Welch t-test p-values
        - ks_boot_p_unadj, ks_boot_p_adj: bootstrap KS p-values

        Every *_adj statistic uses the pair weights, so an anchor split
        over k tied pairs at weight 1/k counts once.

        If plot=True, returns (balance_df, figure) tuple.
    """
    if n_boot < 1:
        raise ValueError(f"n_boot must be >= 1, got {n_boot}")

    id_col = _discover_id_column(scored_df)
    treatment_col = _discover_treatment_column(scored_df)
    if covariate_cols is None:
        covariate_cols = _discover_feature_columns(scored_df)
    if not covariate_cols:
        raise ValueError("No covariate columns (__num or __cat) found for the balance report")
    _require_columns(scored_df.columns, covariate_cols, "Scored DataFrame")
    _require_columns(pairs.columns, ["anchor_id", "matched_id", "weight"], "Pairs DataFrame")

    cols = [id_col, treatment_col] + list(covariate_cols)
    pdf = scored_df[cols].copy() if isinstance(scored_df, pd.DataFrame) else scored_df.select(cols).toPandas()
    pairs_pdf = (
        pairs[["anchor_id", "matched_id", "weight"]].copy()
        if isinstance(pairs, pd.DataFrame)
        else pairs.select("anchor_id", "matched_id", "weight").toPandas()
    )

    t_pos, c_pos, weights, n_same_group = _matched_positions(pdf, pairs_pdf, id_col, treatment_col)

    treated_mask = (pdf[treatment_col] == 1).to_numpy()
    rng = np.random.default_rng(seed)
    results = []
    for col in covariate_cols:
        values = pdf[col].to_numpy(dtype=float)
        t_vals, c_vals = values[treated_mask], values[~treated_mask]
        t_adj, c_adj = values[t_pos], values[c_pos]
        is_binary = _is_binary_column(pdf[col])

        results.append({
            "covariate": col,
            "display_name": _strip_suffix(col),
            "is_binary": is_binary,
            "mean_treated": weighted_mean_var(t_vals)[0],
            "mean_control": weighted_mean_var(c_vals)[0],
            "mean_treated_adj": weighted_mean_var(t_adj, weights)[0],
            "mean_control_adj": weighted_mean_var(c_adj, weights)[0],
            "smd_unadjusted": compute_smd(t_vals, c_vals),
            "smd_adjusted": compute_smd(t_adj, c_adj, weights, weights),
            "vr_unadjusted": np.nan if is_binary else compute_variance_ratio(t_vals, c_vals),
            "vr_adjusted": np.nan if is_binary else compute_variance_ratio(t_adj, c_adj, weights, weights),
            "ecdf_mean_unadj": _compute_ecdf_mean(t_vals, c_vals),
            "ecdf_mean_adj": _compute_ecdf_mean(t_adj, c_adj, weights, weights),
            "ecdf_max_unadj": ks_statistic(t_vals, c_vals),
            "ecdf_max_adj": ks_statistic(t_adj, c_adj, weights, weights),
            "ttest_p_unadj": _welch_pvalue(t_vals, c_vals),
            "ttest_p_adj": _welch_pvalue(t_adj, c_adj, weights, weights),
            "ks_boot_p_unadj": ks_boot_pvalue(t_vals, c_vals, n_boot, rng),
            "ks_boot_p_adj": ks_boot_pvalue(t_adj, c_adj, n_boot, rng, weights, weights),
        })
    balance_df = pd.DataFrame(results)

    if verbose:
        _print_balance_table(balance_df)
        _print_sample_sizes(pdf, treatment_col, t_pos, c_pos, n_same_group)

    _check_balance_thresholds(balance_df, threshold_smd, threshold_vr)

    if plot:
        fig = love_plot(balance_df, threshold_smd=threshold_smd, figsize=figsize)
        return balance_df, fig
    return balance_df


def _matched_positions(
    pdf: pd.DataFrame, pairs_pdf: pd.DataFrame, id_col: str, treatment_col: str
):
    """
    Row positions of the treated and control member of each pair.

    Pairs whose two members share a treatment group (possible with
    position-based partitions) carry no balance information and are skipped.
    """
    index = pd.Index(pdf[id_col].to_numpy(dtype=np.int64))
    anchor_pos = index.get_indexer(pairs_pdf["anchor_id"].to_numpy(dtype=np.int64))
    matched_pos = index.get_indexer(pairs_pdf["matched_id"].to_numpy(dtype=np.int64))
    if np.any(anchor_pos < 0) or np.any(matched_pos < 0):
        raise ValueError("Pairs reference ids that are not in the record table")

    treat = pdf[treatment_col].to_numpy()
    anchor_treated = treat[anchor_pos] == 1
    matched_treated = treat[matched_pos] == 1
    mixed = anchor_treated != matched_treated

    t_pos = np.where(anchor_treated, anchor_pos, matched_pos)[mixed]
    c_pos = np.where(anchor_treated, matched_pos, anchor_pos)[mixed]
    weights = pairs_pdf["weight"].to_numpy(dtype=float)[mixed]
    return t_pos, c_pos, weights, int((~mixed).sum())


def _is_binary_column(series: pd.Series) -> bool:
    """Check if a column contains only binary (0/1) values."""
    unique_vals = series.dropna().unique()
    return len(unique_vals) <= 2 and set(unique_vals).issubset({0, 1, 0.0, 1.0})


def _clean(values: np.ndarray, weights: Optional[np.ndarray] = None):
    """Drop NaN values; returns (values, weights) with unit weights by default."""
    values = np.asarray(values, dtype=float)
    weights = np.ones_like(values) if weights is None else np.asarray(weights, dtype=float)
    keep = ~np.isnan(values)
    return values[keep], weights[keep]


def _weighted_ecdf(values: np.ndarray, weights: np.ndarray, at: np.ndarray) -> np.ndarray:
    order = np.argsort(values, kind="stable")
    cumulative = np.concatenate([[0.0], np.cumsum(weights[order])]) / weights.sum()
    return cumulative[np.searchsorted(values[order], at, side="right")]


def _ecdf_gaps(
    treated_values: np.ndarray,
    control_values: np.ndarray,
    treated_weights: Optional[np.ndarray] = None,
    control_weights: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Absolute (weighted) eCDF differences evaluated at every observed value."""
    t, tw = _clean(treated_values, treated_weights)
    c, cw = _clean(control_values, control_weights)
    if len(t) == 0 or len(c) == 0:
        return np.array([])
    all_vals = np.unique(np.concatenate([t, c]))
    return np.abs(_weighted_ecdf(t, tw, all_vals) - _weighted_ecdf(c, cw, all_vals))


def _compute_ecdf_mean(
    treated_values: np.ndarray,
    control_values: np.ndarray,
    treated_weights: Optional[np.ndarray] = None,
    control_weights: Optional[np.ndarray] = None,
) -> float:
    """Mean absolute difference in empirical CDFs."""
    gaps = _ecdf_gaps(treated_values, control_values, treated_weights, control_weights)
    return float(np.mean(gaps)) if len(gaps) else np.nan


def ks_statistic(
    treated_values: np.ndarray,
    control_values: np.ndarray,
    treated_weights: Optional[np.ndarray] = None,
    control_weights: Optional[np.ndarray] = None,
) -> float:
    """Max absolute difference in empirical CDFs (Kolmogorov-Smirnov statistic)."""
    gaps = _ecdf_gaps(treated_values, control_values, treated_weights, control_weights)
    return float(np.max(gaps)) if len(gaps) else np.nan


def ks_boot_pvalue(
    treated_values: np.ndarray,
    control_values: np.ndarray,
    n_boot: int,
    rng: np.random.Generator,
    treated_weights: Optional[np.ndarray] = None,
    control_weights: Optional[np.ndarray] = None,
) -> float:
    """
    Bootstrap p-value of the two-sample KS statistic.

    Both samples are redrawn with replacement from the pooled values, which
    is the null of a common distribution; the p-value is the share of draws
    whose statistic reaches the observed one. With weights, pooled values
    are drawn in proportion to their weight and each sample's size is its
    rounded weight total.
    """
    t, tw = _clean(treated_values, treated_weights)
    c, cw = _clean(control_values, control_weights)
    if len(t) == 0 or len(c) == 0:
        return np.nan
    observed = ks_statistic(t, c, tw, cw)
    pooled = np.concatenate([t, c])
    if treated_weights is None and control_weights is None:
        p = None
        n_t, n_c = len(t), len(c)
    else:
        pooled_weights = np.concatenate([tw, cw])
        p = pooled_weights / pooled_weights.sum()
        n_t = max(1, int(round(tw.sum())))
        n_c = max(1, int(round(cw.sum())))
    hits = 0
    for _ in range(n_boot):
        boot_t = rng.choice(pooled, size=n_t, replace=True, p=p)
        boot_c = rng.choice(pooled, size=n_c, replace=True, p=p)
        if ks_statistic(boot_t, boot_c) >= observed - 1e-12:
            hits += 1
    return hits / n_boot


def _welch_pvalue(
    treated_values: np.ndarray,
    control_values: np.ndarray,
    treated_weights: Optional[np.ndarray] = None,
    control_weights: Optional[np.ndarray] = None,
) -> float:
    """Welch t-test p-value; weights act as frequency weights."""
    t, tw = _clean(treated_values, treated_weights)
    c, cw = _clean(control_values, control_weights)
    n_t, n_c = tw.sum(), cw.sum()
    if n_t < 2 or n_c < 2:
        return np.nan
    mean_t, var_t = weighted_mean_var(t, tw)
    mean_c, var_c = weighted_mean_var(c, cw)
    if var_t == 0 and var_c == 0:
        return 1.0 if mean_t == mean_c else 0.0
    result = stats.ttest_ind_from_stats(
        mean_t, np.sqrt(var_t), n_t, mean_c, np.sqrt(var_c), n_c, equal_var=False
    )
    return float(result.pvalue)


def _print_balance_table(balance_df: pd.DataFrame) -> None:
    """Print formatted balance table with clean display names."""
    print("\nBalance Summary")
    print("=" * 100)

    display_df = balance_df[
        ["display_name", "mean_treated", "mean_control", "smd_unadjusted",
         "smd_adjusted", "vr_adjusted", "ks_boot_p_unadj", "ks_boot_p_adj"]
    ].copy()
    display_df.columns = [
        "Covariate", "Mean Treated", "Mean Control", "SMD (Unadj)",
        "SMD (Adj)", "VR (Adj)", "KS p (Unadj)", "KS p (Adj)"
    ]

    # Format numeric columns
    for col in display_df.columns[1:]:
        display_df[col] = display_df[col].apply(
            lambda x: f"{x:.4f}" if pd.notna(x) and not np.isinf(x) else "-"
        )

    print(display_df.to_string(index=False))
    print("=" * 100)


def _print_sample_sizes(
    pdf: pd.DataFrame, treatment_col: str, t_pos: np.ndarray, c_pos: np.ndarray, n_same_group: int
) -> None:
    """Print sample size summary."""
    n_treated = int((pdf[treatment_col] == 1).sum())
    n_control = int((pdf[treatment_col] == 0).sum())
    treated_matched = len(np.unique(t_pos))
    control_matched = len(np.unique(c_pos))

    print("\nSample sizes:")
    print(f"  Treated: {n_treated} (matched: {treated_matched}, unmatched: {n_treated - treated_matched})")
    print(f"  Control: {n_control} (matched: {control_matched}, unmatched: {n_control - control_matched})")
    print(f"  Pairs used: {len(t_pos)}")
    if n_same_group:
        print(f"  Pairs skipped (both members in the same group): {n_same_group}")


def _check_balance_thresholds(
    balance_df: pd.DataFrame,
    threshold_smd: float,
    threshold_vr: Tuple[float, float]
) -> None:
    """Check balance thresholds and emit warnings."""
    poor_smd = balance_df[balance_df["smd_adjusted"].abs() > threshold_smd]
    if len(poor_smd) > 0:
        warn(
            f"Poor balance detected: {len(poor_smd)} covariate(s) have |SMD| > {threshold_smd} "
            f"after matching: {', '.join(poor_smd['display_name'].tolist())}"
        )

    # Check VR threshold (only for non-binary)
    vr_min, vr_max = threshold_vr
    continuous = balance_df[~balance_df["is_binary"]]
    poor_vr = continuous[
        (continuous["vr_adjusted"] < vr_min) | (continuous["vr_adjusted"] > vr_max)
    ]
    if len(poor_vr) > 0:
        warn(
            f"Variance ratio outside [{vr_min}, {vr_max}] for {len(poor_vr)} covariate(s) "
            f"after matching: {', '.join(poor_vr['display_name'].tolist())}"
        )
