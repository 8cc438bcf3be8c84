"""
Caliper plus text-similarity matching for reviewmatch.

Each anchor review is matched to the opposite-half review that is closest in
word usage among the reviews within a propensity caliper. The procedure runs
in two stages:

1. Candidate pool: opposite-half records whose score lies within
   caliper_multiplier * sd(all scores) of the anchor's score, restricted to
   records that have a term row, with the anchor's own id removed.
2. Selection: cosine similarity between the anchor's term row and each pool
   row. The single highest similarity wins; exact ties are broken uniformly at
   random with a generator seeded from (seed, anchor id).

Anchors with no term row, or with an empty pool, are recorded as unmatched
outcomes rather than raised.
"""

import hashlib
import json
import os
import time
from dataclasses import dataclass
from typing import Dict, List, Literal, NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd
import pyspark.sql.functions as F
from pyspark.sql import DataFrame
from pyspark.sql.types import (
    DoubleType,
    IntegerType,
    LongType,
    StringType,
    StructField,
    StructType,
)

from .caliper import (
    FIRST_HALF,
    PARTITION_COL,
    SECOND_HALF,
    ScoreIndex,
    assign_partition,
    caliper_radius,
)
from .terms import TermMatrix
from .utils import _discover_id_column, _discover_partition_column, _discover_score_column
from .warnings_util import progress, warn

STATUS_MATCHED = "matched"
STATUS_ANCHOR_MISSING = "anchor_missing_terms"
STATUS_EMPTY_POOL = "empty_pool"

# direction name -> (anchor half, candidate half)
DIRECTIONS = {
    "first_to_second": (FIRST_HALF, SECOND_HALF),
    "second_to_first": (SECOND_HALF, FIRST_HALF),
}

OUTCOME_SCHEMA = StructType(
    [
        StructField("anchor_id", LongType(), False),
        StructField("matched_id", LongType(), True),
        StructField("similarity", DoubleType(), True),
        StructField("status", StringType(), False),
        StructField("n_candidates", IntegerType(), False),
        StructField("n_tied", IntegerType(), False),
        StructField("direction", StringType(), False),
        StructField("chunk", IntegerType(), False),
        StructField("task_seconds", DoubleType(), False),
    ]
)

ANCHOR_SCHEMA = StructType(
    [
        StructField("anchor_id", LongType(), False),
        StructField("anchor_score", DoubleType(), False),
        StructField("direction", StringType(), False),
        StructField("chunk", IntegerType(), False),
        StructField("position", LongType(), False),
        StructField("_task", LongType(), False),
    ]
)

MANIFEST_NAME = "manifest.json"
# Leading underscore keeps the file out of Spark parquet reads.
ANCHOR_DIGEST_NAME = "_ANCHORS"


class AnchorOutcome(NamedTuple):
    """Result of one anchor's matching attempt."""

    anchor_id: int
    matched_id: Optional[int]
    similarity: Optional[float]
    status: str
    n_candidates: int
    n_tied: int


@dataclass
class MatchContext:
    """Read-only state shared by every anchor of a matching pass."""

    indexes: Dict[int, ScoreIndex]
    term_matrix: TermMatrix
    radius: float
    seed: int
    tie_tolerance: float = 1e-12


def anchor_rng(seed: int, anchor_id: int) -> np.random.Generator:
    """Per-anchor generator; the draw depends only on (seed, anchor id)."""
    anchor_id = int(anchor_id)
    return np.random.default_rng([int(seed), abs(anchor_id), int(anchor_id < 0)])


def resolve_seed(seed: Optional[int], verbose: bool = True) -> int:
    """Return ``seed``, or draw and report a fresh one when none was given."""
    if seed is not None:
        return int(seed)
    drawn = int(np.random.SeedSequence().entropy % (2**32))
    warn(f"No tie-break seed given; using seed={drawn}. Pass seed={drawn} to reproduce this run.")
    return drawn


def match_anchor(
    anchor_id: int,
    anchor_score: float,
    candidates: ScoreIndex,
    term_matrix: TermMatrix,
    radius: float,
    seed: int,
    tie_tolerance: float = 1e-12,
) -> AnchorOutcome:
    """
    Match one anchor against the opposite half.

    Parameters
    ----------
    anchor_id : int
        Anchor record id
    anchor_score : float
        Anchor propensity score
    candidates : ScoreIndex
        Scores of the opposite half
    term_matrix : TermMatrix
        Term rows for all records
    radius : float
        Caliper radius on the propensity scale
    seed : int
        Tie-break seed
    tie_tolerance : float
        Similarities within this distance of the maximum count as tied

    Returns
    -------
    AnchorOutcome
        Matched outcome, or an unmatched one with status
        anchor_missing_terms / empty_pool
    """
    anchor_id = int(anchor_id)
    if not term_matrix.has_row(anchor_id):
        return AnchorOutcome(anchor_id, None, None, STATUS_ANCHOR_MISSING, 0, 0)

    pool = candidates.pool(anchor_score, radius)
    pool = pool[pool != anchor_id]
    pool = pool[term_matrix.present(pool)]
    if len(pool) == 0:
        return AnchorOutcome(anchor_id, None, None, STATUS_EMPTY_POOL, 0, 0)

    similarities = term_matrix.cosine_to(anchor_id, pool)
    best = similarities.max()
    tied = np.sort(pool[similarities >= best - tie_tolerance])
    if len(tied) == 1:
        chosen = tied[0]
    else:
        chosen = anchor_rng(seed, anchor_id).choice(tied)

    return AnchorOutcome(
        anchor_id, int(chosen), float(best), STATUS_MATCHED, int(len(pool)), int(len(tied))
    )


def match_anchor_frame(anchors: pd.DataFrame, context: MatchContext) -> pd.DataFrame:
    """
    Match every anchor row of a pandas frame.

    ``anchors`` needs anchor_id, anchor_score, direction and chunk columns.
    Returns one row per anchor with the OUTCOME_SCHEMA columns.
    """
    start = time.perf_counter()
    records = []
    for row in anchors.itertuples(index=False):
        _, candidate_half = DIRECTIONS[row.direction]
        outcome = match_anchor(
            row.anchor_id,
            row.anchor_score,
            context.indexes[candidate_half],
            context.term_matrix,
            context.radius,
            context.seed,
            context.tie_tolerance,
        )
        records.append(outcome._asdict() | {"direction": row.direction, "chunk": int(row.chunk)})

    result = pd.DataFrame(records, columns=OUTCOME_SCHEMA.fieldNames()[:-1])
    result["anchor_id"] = result["anchor_id"].astype("int64")
    result["matched_id"] = pd.array(result["matched_id"], dtype="Int64")
    result["similarity"] = result["similarity"].astype("float64")
    result["n_candidates"] = result["n_candidates"].astype("int32")
    result["n_tied"] = result["n_tied"].astype("int32")
    result["chunk"] = result["chunk"].astype("int32")
    result["task_seconds"] = time.perf_counter() - start
    return result


def text_caliper_match(
    scored_df: DataFrame,
    term_matrix: TermMatrix,
    direction: Literal["first_to_second", "second_to_first", "both"] = "both",
    caliper_multiplier: float = 0.1,
    seed: Optional[int] = None,
    chunk_size: int = 5000,
    checkpoint_dir: Optional[str] = None,
    num_tasks: Optional[int] = None,
    tie_tolerance: float = 1e-12,
    verbose: bool = True,
) -> Tuple[DataFrame, DataFrame, DataFrame]:
    """
    Match anchors of one half to the most text-similar record of the other
    half within a propensity caliper.

    Parameters
    ----------
    scored_df : DataFrame
        Output from fit_propensity(), optionally with assign_partition()
        applied. If no __part column is present, records are partitioned by
        treatment.
    term_matrix : TermMatrix
        Term rows keyed by the same ids as scored_df
    direction : Literal["first_to_second", "second_to_first", "both"]
        Which half supplies the anchors. "both" runs both passes.
    caliper_multiplier : float
        Caliper radius as a multiple of the score standard deviation
    seed : Optional[int]
        Tie-break seed. If None, one is drawn (or taken from an existing
        checkpoint manifest) and reported.
    chunk_size : int
        Anchors per chunk; the unit of progress reporting and checkpointing
    checkpoint_dir : Optional[str]
        Local directory for per-chunk results. Completed chunks are skipped
        when the pass is re-run with the same directory.
    num_tasks : Optional[int]
        Parallel tasks per chunk (default: Spark default parallelism)
    tie_tolerance : float
        Similarities within this distance of the maximum count as tied
    verbose : bool
        If True, print progress and the matching summary

    Returns
    -------
    Tuple[DataFrame, DataFrame, DataFrame]
        pairs : DataFrame
            One row per matched anchor: anchor_id, matched_id, score
            (cosine similarity), weight (1.0), estimand ("text_caliper:<direction>")
        outcomes : DataFrame
            One row per anchor, matched or not (OUTCOME_SCHEMA), with status
            matched / anchor_missing_terms / empty_pool
        chunk_stats : DataFrame
            One row per (direction, chunk) with anchor, match and unmatched
            counts and processing seconds
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    directions = _resolve_directions(direction)

    id_col = _discover_id_column(scored_df)
    score_col = _discover_score_column(scored_df)
    part_col = _discover_partition_column(scored_df)
    if part_col is None:
        scored_df = assign_partition(scored_df)
        part_col = PARTITION_COL

    records = scored_df.select(id_col, part_col, score_col).toPandas()
    if records.empty:
        raise ValueError("Input DataFrame is empty - no records to match")
    if records[score_col].isna().any():
        raise ValueError(f"Column {score_col} contains missing propensity scores")

    radius = caliper_radius(records[score_col].to_numpy(), caliper_multiplier)
    indexes = {
        half: ScoreIndex(
            records.loc[records[part_col] == half, id_col].to_numpy(),
            records.loc[records[part_col] == half, score_col].to_numpy(),
        )
        for half in (FIRST_HALF, SECOND_HALF)
    }

    if checkpoint_dir is not None:
        seed = _check_manifest(
            checkpoint_dir,
            seed,
            radius,
            chunk_size,
            len(records),
            tie_tolerance,
            _records_digest(records, id_col, part_col, score_col),
            verbose,
        )
    else:
        seed = resolve_seed(seed, verbose)

    anchors = _build_anchor_table(records, id_col, part_col, score_col, directions, chunk_size)
    if anchors.empty:
        raise ValueError(f"No anchor records in the half(s) used by direction={direction!r}")

    spark = scored_df.sparkSession
    if num_tasks is None:
        num_tasks = spark.sparkContext.defaultParallelism
    anchors["_task"] = anchors["position"] % max(1, num_tasks)

    context = MatchContext(indexes, term_matrix, radius, seed, tie_tolerance)
    context_bc = spark.sparkContext.broadcast(context)

    def match_group(group_df: pd.DataFrame) -> pd.DataFrame:
        return match_anchor_frame(group_df, context_bc.value)

    def run(anchor_pdf: pd.DataFrame) -> DataFrame:
        return (
            spark.createDataFrame(anchor_pdf, schema=ANCHOR_SCHEMA)
            .groupBy("chunk", "_task")
            .applyInPandas(match_group, schema=OUTCOME_SCHEMA)
        )

    if verbose:
        print(f"\nText caliper matching: radius {radius:.6f} "
              f"({caliper_multiplier} x sd of {len(records)} scores), seed {seed}")
        for name in directions:
            anchor_half, candidate_half = DIRECTIONS[name]
            print(f" - {name}: {int((anchors['direction'] == name).sum())} anchors, "
                  f"{len(indexes[candidate_half])} candidates")

    anchor_cols = ["anchor_id", "anchor_score", "direction", "chunk", "position", "_task"]
    if checkpoint_dir is None:
        outcomes = run(anchors[anchor_cols]).cache()
    else:
        outcomes = _run_checkpointed(
            spark, anchors[anchor_cols], run, checkpoint_dir, verbose
        )

    counts = _status_counts(outcomes)
    n_expected = len(anchors)
    n_counted = int(counts["count"].sum()) if not counts.empty else 0
    if n_counted != n_expected:
        raise RuntimeError(
            f"Matching produced {n_counted} outcomes for {n_expected} anchors; "
            "checkpoint contents are inconsistent with this run"
        )
    if verbose:
        _print_text_match_summary(counts, radius, seed)
    _check_match_rate(counts)

    pairs = outcomes.filter(F.col("status") == STATUS_MATCHED).select(
        F.col("anchor_id"),
        F.col("matched_id"),
        F.col("similarity").alias("score"),
        F.lit(1.0).alias("weight"),
        F.concat(F.lit("text_caliper:"), F.col("direction")).alias("estimand"),
    )

    chunk_stats = (
        outcomes.groupBy("direction", "chunk")
        .agg(
            F.count("*").alias("num_anchors"),
            F.sum(F.when(F.col("status") == STATUS_MATCHED, 1).otherwise(0)).alias("num_matched"),
            F.sum(F.when(F.col("status") == STATUS_ANCHOR_MISSING, 1).otherwise(0)).alias(
                "num_anchor_missing_terms"
            ),
            F.sum(F.when(F.col("status") == STATUS_EMPTY_POOL, 1).otherwise(0)).alias(
                "num_empty_pool"
            ),
            F.max("task_seconds").alias("seconds"),
        )
        .orderBy("direction", "chunk")
    )

    return pairs, outcomes, chunk_stats


def _resolve_directions(direction: str) -> List[str]:
    if direction == "both":
        return list(DIRECTIONS)
    if direction in DIRECTIONS:
        return [direction]
    raise ValueError(
        f"Unknown direction: {direction!r} (expected one of {list(DIRECTIONS) + ['both']})"
    )


def _build_anchor_table(
    records: pd.DataFrame,
    id_col: str,
    part_col: str,
    score_col: str,
    directions: List[str],
    chunk_size: int,
) -> pd.DataFrame:
    """Anchors of each direction ordered by id and cut into chunks."""
    frames = []
    for name in directions:
        anchor_half, _ = DIRECTIONS[name]
        half = records.loc[records[part_col] == anchor_half].sort_values(id_col)
        frame = pd.DataFrame(
            {
                "anchor_id": half[id_col].to_numpy(dtype=np.int64),
                "anchor_score": half[score_col].to_numpy(dtype=np.float64),
                "direction": name,
            }
        )
        frame["position"] = np.arange(len(frame), dtype=np.int64)
        frame["chunk"] = (frame["position"] // chunk_size).astype(np.int32)
        frames.append(frame)
    return pd.concat(frames, ignore_index=True)


def _check_manifest(
    checkpoint_dir: str,
    seed: Optional[int],
    radius: float,
    chunk_size: int,
    n_records: int,
    tie_tolerance: float,
    records_digest: str,
    verbose: bool,
) -> int:
    """Create or validate the checkpoint manifest; returns the seed to use.

    Manifests written without tie_tolerance or records_digest fail the
    comparison for those fields.
    """
    os.makedirs(checkpoint_dir, exist_ok=True)
    manifest_path = os.path.join(checkpoint_dir, MANIFEST_NAME)

    if os.path.exists(manifest_path):
        with open(manifest_path) as f:
            manifest = json.load(f)
        if seed is None:
            seed = int(manifest["seed"])
            if verbose:
                print(f"Resuming from {checkpoint_dir} with seed {seed}")
        mismatched = []
        if int(manifest["seed"]) != int(seed):
            mismatched.append("seed")
        if not np.isclose(manifest["radius"], radius, rtol=0.0, atol=1e-15):
            mismatched.append("radius")
        if int(manifest["chunk_size"]) != chunk_size:
            mismatched.append("chunk_size")
        if int(manifest["n_records"]) != n_records:
            mismatched.append("n_records")
        if manifest.get("tie_tolerance") != tie_tolerance:
            mismatched.append("tie_tolerance")
        if manifest.get("records_digest") != records_digest:
            mismatched.append("records (ids, halves or scores)")
        if mismatched:
            raise ValueError(
                f"Checkpoint directory {checkpoint_dir} was written with different "
                f"{', '.join(mismatched)}; use a new directory or matching parameters"
            )
        return int(seed)

    seed = resolve_seed(seed, verbose)
    with open(manifest_path, "w") as f:
        json.dump(
            {
                "seed": seed,
                "radius": radius,
                "chunk_size": chunk_size,
                "n_records": n_records,
                "tie_tolerance": tie_tolerance,
                "records_digest": records_digest,
            },
            f,
            indent=2,
        )
    return seed


def _records_digest(records: pd.DataFrame, id_col: str, part_col: str, score_col: str) -> str:
    """SHA-256 over the id-sorted (id, half, score) triples."""
    ordered = records.sort_values(id_col)
    digest = hashlib.sha256()
    digest.update(ordered[id_col].to_numpy(dtype=np.int64).tobytes())
    digest.update(ordered[part_col].to_numpy(dtype=np.int64).tobytes())
    digest.update(ordered[score_col].to_numpy(dtype=np.float64).tobytes())
    return digest.hexdigest()


def _anchor_digest(chunk_anchors: pd.DataFrame) -> str:
    """SHA-256 over a chunk's id-sorted (anchor_id, anchor_score) pairs."""
    ordered = chunk_anchors.sort_values("anchor_id")
    digest = hashlib.sha256()
    digest.update(ordered["anchor_id"].to_numpy(dtype=np.int64).tobytes())
    digest.update(ordered["anchor_score"].to_numpy(dtype=np.float64).tobytes())
    return digest.hexdigest()


def _chunk_path(checkpoint_dir: str, direction: str, chunk: int) -> str:
    return os.path.join(checkpoint_dir, direction, f"chunk_{chunk:05d}")


def _run_checkpointed(spark, anchors: pd.DataFrame, run, checkpoint_dir: str, verbose: bool) -> DataFrame:
    """Process chunks one at a time, skipping chunks already on disk.

    A chunk is skipped only when its _SUCCESS marker and anchor digest are
    both present. A digest that differs from the chunk's current anchors
    raises ValueError; a missing digest means the chunk is recomputed.
    """
    keys = anchors[["direction", "chunk"]].drop_duplicates().sort_values(["direction", "chunk"])
    paths = []
    n_chunks = len(keys)
    for i, (direction, chunk) in enumerate(keys.itertuples(index=False), start=1):
        path = _chunk_path(checkpoint_dir, direction, int(chunk))
        paths.append(path)
        chunk_anchors = anchors[(anchors["direction"] == direction) & (anchors["chunk"] == chunk)]
        expected = _anchor_digest(chunk_anchors)
        digest_path = os.path.join(path, ANCHOR_DIGEST_NAME)
        if os.path.exists(os.path.join(path, "_SUCCESS")) and os.path.exists(digest_path):
            with open(digest_path) as f:
                stored = f.read().strip()
            if stored != expected:
                raise ValueError(
                    f"Checkpoint chunk {path} was written for different anchors; "
                    "use a new directory or matching parameters"
                )
            progress(f"[{i}/{n_chunks}] {direction} chunk {chunk}: already complete, skipping", verbose)
            continue

        start = time.perf_counter()
        run(chunk_anchors).write.mode("overwrite").parquet(path)
        with open(digest_path, "w") as f:
            f.write(expected + "\n")
        progress(
            f"[{i}/{n_chunks}] {direction} chunk {chunk}: {len(chunk_anchors)} anchors "
            f"in {time.perf_counter() - start:.1f}s",
            verbose,
        )

    return spark.read.schema(OUTCOME_SCHEMA).parquet(*paths)


def _status_counts(outcomes: DataFrame) -> pd.DataFrame:
    return outcomes.groupBy("direction", "status").count().toPandas()


def _print_text_match_summary(counts: pd.DataFrame, radius: float, seed: int) -> None:
    """Print matched / unmatched accounting per direction."""
    print(f"\nText caliper matching summary (radius {radius:.6f}, seed {seed})")
    for direction in sorted(counts["direction"].unique()):
        sub = counts[counts["direction"] == direction].set_index("status")["count"]
        total = int(sub.sum())
        matched = int(sub.get(STATUS_MATCHED, 0))
        missing = int(sub.get(STATUS_ANCHOR_MISSING, 0))
        empty = int(sub.get(STATUS_EMPTY_POOL, 0))
        rate = matched / total if total else 0.0
        print(f" - {direction}: {total} anchors")
        print(f"     matched: {matched} ({rate*100:.1f}%)")
        print(f"     unmatched: {missing + empty} "
              f"(no term row: {missing}, empty pool: {empty})")


def _check_match_rate(counts: pd.DataFrame, warn_threshold: float = 0.5) -> None:
    total = int(counts["count"].sum()) if not counts.empty else 0
    matched = int(counts.loc[counts["status"] == STATUS_MATCHED, "count"].sum())
    rate = matched / total if total else 0.0
    if rate < warn_threshold:
        warn(
            f"Low text match rate: only {rate*100:.1f}% of anchors were matched. "
            f"Consider a larger caliper_multiplier or a looser term filter."
        )
