"""
Partitioning and caliper candidate pools for reviewmatch.

Records are split into two halves and an anchor only ever looks for candidates
in the opposite half. A candidate pool is the set of opposite-half records
whose propensity score lies within a fixed radius of the anchor's score.
"""

from typing import Literal, Sequence

import numpy as np
import pyspark.sql.functions as F
from pyspark.sql import DataFrame, Window

from .utils import _discover_id_column, _discover_treatment_column

PARTITION_COL = "half__part"
FIRST_HALF = 0
SECOND_HALF = 1


def assign_partition(
    scored_df: DataFrame,
    method: Literal["treatment", "position"] = "treatment",
) -> DataFrame:
    """
    Split records into two disjoint halves.

    Parameters
    ----------
    scored_df : DataFrame
        Record table with __id and __treat columns
    method : Literal["treatment", "position"]
        "treatment" orders records by treatment (treated first) then id, so
        the first half holds the treated reviews and the second the controls.
        "position" orders records by id and cuts at the midpoint; the first
        half gets the extra record when the count is odd.

    Returns
    -------
    DataFrame
        scored_df with an added half__part column (0 = first, 1 = second)
    """
    id_col = _discover_id_column(scored_df)
    treatment_col = _discover_treatment_column(scored_df)
    if PARTITION_COL in scored_df.columns:
        scored_df = scored_df.drop(PARTITION_COL)

    if method == "treatment":
        return scored_df.withColumn(
            PARTITION_COL,
            F.when(F.col(treatment_col) == 1, FIRST_HALF).otherwise(SECOND_HALF).cast("int"),
        )
    if method == "position":
        n_records = scored_df.count()
        cut = (n_records + 1) // 2
        window = Window.orderBy(F.col(id_col))
        return (
            scored_df.withColumn("_position", F.row_number().over(window) - 1)
            .withColumn(
                PARTITION_COL,
                F.when(F.col("_position") < cut, FIRST_HALF).otherwise(SECOND_HALF).cast("int"),
            )
            .drop("_position")
        )
    raise ValueError(f"Unknown partition method: {method!r} (expected 'treatment' or 'position')")


def caliper_radius(scores: Sequence[float], multiplier: float = 0.1) -> float:
    """Caliper radius: multiplier times the sample standard deviation of all scores."""
    if multiplier < 0:
        raise ValueError(f"caliper multiplier must be >= 0, got {multiplier}")
    scores = np.asarray(scores, dtype=float)
    scores = scores[~np.isnan(scores)]
    if len(scores) < 2:
        return 0.0
    return float(multiplier * np.std(scores, ddof=1))


class ScoreIndex:
    """
    One half's propensity scores, sorted once for range queries.

    ``pool`` is a binary search over the sorted scores, so each query costs
    O(log n + k) instead of a scan over the whole half.
    """

    def __init__(self, ids: Sequence[int], scores: Sequence[float]):
        ids = np.asarray(ids, dtype=np.int64)
        scores = np.asarray(scores, dtype=np.float64)
        if len(ids) != len(scores):
            raise ValueError(f"Got {len(ids)} ids but {len(scores)} scores")
        if np.any(np.isnan(scores)):
            raise ValueError("Propensity scores must not be NaN")
        # Stable order on (score, id) keeps pools reproducible
        order = np.lexsort((ids, scores))
        self.ids = ids[order]
        self.scores = scores[order]

    def __len__(self) -> int:
        return len(self.ids)

    def pool(self, score: float, radius: float) -> np.ndarray:
        """Ids whose score lies in [score - radius, score + radius]."""
        if len(self.ids) == 0 or radius < 0:
            return np.zeros(0, dtype=np.int64)
        lo = np.searchsorted(self.scores, score - radius, side="left")
        hi = np.searchsorted(self.scores, score + radius, side="right")
        return self.ids[lo:hi]
