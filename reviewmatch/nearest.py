"""
Nearest-neighbor propensity score matching for reviewmatch.

Each anchor is matched, with replacement, to the opposite-group record with
the closest propensity score. The matched outcomes give a per-anchor effect,
and their mean is the treatment-effect estimate for the chosen estimand.
"""

from dataclasses import asdict, dataclass
from typing import Literal, Optional, Tuple, Union

import numpy as np
import pandas as pd
from pyspark.sql import DataFrame

from .caliper import ScoreIndex
from .utils import (
    _discover_id_column,
    _discover_outcome_columns,
    _discover_score_column,
    _discover_treatment_column,
    _require_columns,
)
from .warnings_util import warn

ESTIMANDS = ("ATT", "ATC", "ATE")


@dataclass
class EffectEstimate:
    """Treatment-effect summary for one estimand."""

    estimand: str
    outcome: str
    estimate: float
    std_error: float
    n_anchors: int
    n_matched: int
    n_unmatched: int
    n_ties_broken: int

    def to_dict(self) -> dict:
        return asdict(self)


def nearest_neighbor_match(
    scored_df: Union[DataFrame, pd.DataFrame],
    outcome_col: Optional[str] = None,
    estimand: Literal["ATT", "ATC", "ATE"] = "ATT",
    ties: bool = False,
    caliper: Optional[float] = None,
    distance_tolerance: float = 0.0,
    verbose: bool = True,
) -> Tuple[pd.DataFrame, EffectEstimate]:
    """
    One-to-one nearest-neighbor matching on the propensity score.

    Parameters
    ----------
    scored_df : DataFrame or pd.DataFrame
        Output from fit_propensity() (Spark), or the same columns in pandas
    outcome_col : Optional[str]
        Outcome column. Defaults to the single __outcome column.
    estimand : Literal["ATT", "ATC", "ATE"]
        "ATT" matches each treated record to its nearest control, "ATC" each
        control to its nearest treated record, and "ATE" does both.
    ties : bool
        If False (default), a tie in distance is resolved by taking the lowest
        identifier and the anchor is counted in n_ties_broken. If True, every
        tied record is kept and weighted 1/k.
    caliper : Optional[float]
        Maximum distance in standard deviations of the score. Anchors with no
        record in range are left unmatched.
    distance_tolerance : float
        Distances within this amount of the minimum count as tied
    verbose : bool
        If True, print the matching summary

    Returns
    -------
    Tuple[pd.DataFrame, EffectEstimate]
        pairs : pd.DataFrame
            One row per (anchor, matched) pair. Columns:
            - anchor_id, matched_id
            - score: absolute propensity distance
            - weight: 1.0, or 1/k when k tied records are kept
            - estimand: "ATT", "ATC", or "ATE"
            - anchor_treated: whether the anchor is a treated record
            - tie_broken: whether a tie was resolved for this anchor
        effect : EffectEstimate
            Point estimate, standard error, and anchor accounting
    """
    if estimand not in ESTIMANDS:
        raise ValueError(f"Unknown estimand: {estimand!r} (expected one of {ESTIMANDS})")
    if caliper is not None and caliper <= 0:
        raise ValueError(f"caliper must be > 0, got {caliper}")
    if distance_tolerance < 0:
        raise ValueError(f"distance_tolerance must be >= 0, got {distance_tolerance}")

    id_col = _discover_id_column(scored_df)
    treatment_col = _discover_treatment_column(scored_df)
    score_col = _discover_score_column(scored_df)
    if outcome_col is None:
        outcomes = _discover_outcome_columns(scored_df)
        if len(outcomes) != 1:
            raise ValueError(
                f"Expected exactly one column ending with '__outcome', found: {outcomes}; "
                "pass outcome_col explicitly"
            )
        outcome_col = outcomes[0]
    _require_columns(scored_df.columns, [outcome_col], "Scored DataFrame")

    cols = [id_col, treatment_col, score_col, outcome_col]
    if isinstance(scored_df, pd.DataFrame):
        pdf = scored_df[cols].copy()
    else:
        pdf = scored_df.select(cols).toPandas()

    if pdf[[score_col, outcome_col]].isna().any().any():
        raise ValueError(f"Columns {score_col} and {outcome_col} must not contain missing values")

    treated = pdf[pdf[treatment_col] == 1]
    control = pdf[pdf[treatment_col] == 0]
    if treated.empty or control.empty:
        raise ValueError("Both treated and control records are required for matching")

    radius = None
    if caliper is not None:
        radius = caliper * float(np.std(pdf[score_col].to_numpy(), ddof=1))

    frames = []
    if estimand in ("ATT", "ATE"):
        frames.append(_match_direction(treated, control, cols, True, ties, radius, distance_tolerance))
    if estimand in ("ATC", "ATE"):
        frames.append(_match_direction(control, treated, cols, False, ties, radius, distance_tolerance))

    pairs = pd.concat([f[0] for f in frames], ignore_index=True)
    pairs["estimand"] = estimand
    effects = np.concatenate([f[1] for f in frames])
    n_anchors = sum(f[2] for f in frames)
    n_ties_broken = int(pairs.drop_duplicates("anchor_id")["tie_broken"].sum()) if len(pairs) else 0

    n_matched = len(effects)
    estimate = float(np.mean(effects)) if n_matched else np.nan
    std_error = float(np.std(effects, ddof=1) / np.sqrt(n_matched)) if n_matched > 1 else np.nan

    effect = EffectEstimate(
        estimand=estimand,
        outcome=outcome_col,
        estimate=estimate,
        std_error=std_error,
        n_anchors=n_anchors,
        n_matched=n_matched,
        n_unmatched=n_anchors - n_matched,
        n_ties_broken=n_ties_broken,
    )

    if verbose:
        _print_nearest_summary(effect, len(treated), len(control), ties, caliper)
    if n_matched == 0:
        warn(f"No anchors were matched for {estimand}; consider a wider caliper.")

    return pairs[
        ["anchor_id", "matched_id", "score", "weight", "estimand", "anchor_treated", "tie_broken"]
    ], effect


def _match_direction(
    anchors: pd.DataFrame,
    pool: pd.DataFrame,
    cols,
    anchors_treated: bool,
    ties: bool,
    radius: Optional[float],
    distance_tolerance: float,
):
    """
    Match every anchor to its nearest pool record(s).

    Returns (pairs, per-anchor effects, number of anchors).
    """
    id_col, _, score_col, outcome_col = cols
    index = ScoreIndex(pool[id_col].to_numpy(), pool[score_col].to_numpy())
    pool_outcome = pd.Series(
        pool[outcome_col].to_numpy(dtype=float), index=pool[id_col].to_numpy(dtype=np.int64)
    )

    rows = []
    effects = []
    for anchor_id, score, y in zip(
        anchors[id_col].to_numpy(dtype=np.int64),
        anchors[score_col].to_numpy(dtype=float),
        anchors[outcome_col].to_numpy(dtype=float),
    ):
        matched_ids, distance = _nearest_ids(index, score, distance_tolerance)
        if radius is not None and distance > radius:
            continue

        tie_broken = len(matched_ids) > 1 and not ties
        if not ties:
            matched_ids = matched_ids[:1]
        weight = 1.0 / len(matched_ids)

        y_matched = float(np.sum(pool_outcome.loc[matched_ids].to_numpy()) * weight)
        effects.append(y - y_matched if anchors_treated else y_matched - y)
        for matched_id in matched_ids:
            rows.append((int(anchor_id), int(matched_id), distance, weight, anchors_treated, tie_broken))

    pairs = pd.DataFrame(
        rows,
        columns=["anchor_id", "matched_id", "score", "weight", "anchor_treated", "tie_broken"],
    )
    return pairs, np.asarray(effects, dtype=float), len(anchors)


def _nearest_ids(index: ScoreIndex, score: float, distance_tolerance: float):
    """Ids at the minimum distance from ``score`` (sorted ascending) and that distance."""
    scores = index.scores
    pos = np.searchsorted(scores, score)
    neighbors = [p for p in (pos - 1, pos) if 0 <= p < len(scores)]
    d_min = min(abs(scores[p] - score) for p in neighbors)

    # Widen slightly for rounding, then keep exact distances only
    slack = d_min + distance_tolerance + 1e-12
    lo = np.searchsorted(scores, score - slack, side="left")
    hi = np.searchsorted(scores, score + slack, side="right")
    window = np.abs(scores[lo:hi] - score)
    keep = window <= d_min + distance_tolerance
    return np.sort(index.ids[lo:hi][keep]), float(d_min)


def _print_nearest_summary(
    effect: EffectEstimate,
    n_treated: int,
    n_control: int,
    ties: bool,
    caliper: Optional[float],
) -> None:
    """Print MatchIt-style summary of the nearest-neighbor match."""
    print(f"\nNearest-neighbor propensity matching ({effect.estimand}, with replacement)")
    print(f" - ties: {'kept and weighted' if ties else 'broken by lowest id'}")
    if caliper is not None:
        print(f" - caliper: {caliper} sd")
    print(" - sample sizes:")
    print(f"     treated: {n_treated}")
    print(f"     control: {n_control}")
    print(f" - anchors matched: {effect.n_matched} of {effect.n_anchors} "
          f"(unmatched: {effect.n_unmatched})")
    if effect.n_ties_broken:
        print(f" - anchors with a tie resolved by lowest id: {effect.n_ties_broken}")
    print(f" - estimate ({effect.outcome}): {effect.estimate:.4f} "
          f"(SE {effect.std_error:.4f})")
