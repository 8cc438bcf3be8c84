"""
Batch stages for reviewmatch.

prepare_inputs() writes the two interchange files (feature table, term
matrix). run_pipeline() reads them back, fits the propensity model, runs both
matchers and writes the matched pairs, effect estimates and balance reports.
Nothing is written by run_pipeline() until the propensity model has fitted.
"""

import os
from typing import Any, Dict

import pandas as pd
from pyspark.sql import DataFrame, SparkSession

from .balance import balance_report
from .caliper import assign_partition
from .config import PipelineConfig, PrepareConfig
from .features import generate_features
from .nearest import nearest_neighbor_match
from .propensity import fit_propensity, write_scored_records
from .terms import build_term_matrix, read_term_matrix, write_term_matrix
from .textmatch import STATUS_MATCHED, text_caliper_match
from .utils import _discover_partition_column


def _read_table(spark: SparkSession, path: str, fmt: str) -> DataFrame:
    if fmt == "csv":
        return spark.read.csv(path, header=True, inferSchema=True)
    if fmt == "json":
        return spark.read.json(path)
    return spark.read.parquet(path)


def prepare_inputs(spark: SparkSession, config: PrepareConfig) -> Dict[str, Any]:
    """Build the feature table and term matrix from a cleaned review table."""
    reviews = _read_table(spark, config.input_path, config.input_format)

    features_df = generate_features(
        reviews,
        id_col=config.id_col,
        stars_col=config.stars_col,
        numeric_cols=config.numeric_cols,
        categorical_cols=config.categorical_cols,
        binned_cols=config.binned_cols,
        quadratic_cols=config.quadratic_cols,
        outcome_cols=config.outcome_cols,
        treatment_threshold=config.treatment_threshold,
        n_bins=config.n_bins,
        verbose=config.verbose,
    )
    term_matrix = build_term_matrix(
        reviews,
        id_col=config.id_col,
        text_col=config.text_col,
        min_count=config.min_count,
        max_count=config.max_count,
        sample_frac=config.sample_frac,
        seed=config.sample_seed,
        verbose=config.verbose,
    )

    features_df.write.mode("overwrite").parquet(config.features_path)
    write_term_matrix(term_matrix, spark, config.terms_path)
    if config.verbose:
        print(f"\nWrote features to {config.features_path} and term matrix to {config.terms_path}")

    return {"features": features_df, "term_matrix": term_matrix}


def run_pipeline(spark: SparkSession, config: PipelineConfig) -> Dict[str, Any]:
    """
    Fit propensity scores, match, estimate effects and check balance.

    Outputs under config.output_dir:
    - records_scored/ : record table with propensity__ps and half__part (parquet)

    A __part column already present in the feature table is kept as the
    partition; otherwise one is assigned with config.partition_method.
    - propensity_coefficients.csv
    - pairs_nearest.csv, effects.csv
    - pairs_text/, text_outcomes/ (parquet), text_chunk_stats.csv
    - balance_nearest.csv, balance_text.csv

    Raises
    ------
    PropensityFitError
        Before anything is written, if the propensity model cannot be fitted.
    """
    config.validate()
    verbose = config.verbose

    features_df = spark.read.parquet(config.features_path)
    term_matrix = read_term_matrix(spark, config.terms_path)

    scored_df, coefficients = fit_propensity(
        features_df,
        covariate_cols=config.covariate_cols,
        max_iter=config.max_iter,
        tol=config.tol,
        verbose=verbose,
    )
    existing_part_col = _discover_partition_column(scored_df)
    if existing_part_col is None:
        scored_df = assign_partition(scored_df, method=config.partition_method)
    elif verbose:
        print(f"Using the existing {existing_part_col} column; "
              f"partition_method={config.partition_method!r} is not applied")
    scored_df = scored_df.cache()

    out = config.output_dir
    os.makedirs(out, exist_ok=True)
    write_scored_records(scored_df, os.path.join(out, "records_scored"))
    coefficients.to_csv(os.path.join(out, "propensity_coefficients.csv"), index=False)

    # Nearest-neighbor propensity matching
    nearest_pairs = []
    effects = []
    for estimand in config.estimands:
        pairs, effect = nearest_neighbor_match(
            scored_df,
            outcome_col=config.outcome_col,
            estimand=estimand,
            ties=config.ties,
            caliper=config.nearest_caliper,
            verbose=verbose,
        )
        nearest_pairs.append(pairs)
        effects.append(effect.to_dict())
    nearest_pairs_df = pd.concat(nearest_pairs, ignore_index=True) if nearest_pairs else pd.DataFrame()
    effects_df = pd.DataFrame(effects)
    nearest_pairs_df.to_csv(os.path.join(out, "pairs_nearest.csv"), index=False)
    effects_df.to_csv(os.path.join(out, "effects.csv"), index=False)

    # Caliper + text-similarity matching
    text_pairs, text_outcomes, chunk_stats = text_caliper_match(
        scored_df,
        term_matrix,
        direction=config.direction,
        caliper_multiplier=config.caliper_multiplier,
        seed=config.seed,
        chunk_size=config.chunk_size,
        checkpoint_dir=config.checkpoint_dir,
        num_tasks=config.num_tasks,
        verbose=verbose,
    )
    text_pairs.write.mode("overwrite").parquet(os.path.join(out, "pairs_text"))
    text_outcomes.write.mode("overwrite").parquet(os.path.join(out, "text_outcomes"))
    chunk_stats.toPandas().to_csv(os.path.join(out, "text_chunk_stats.csv"), index=False)

    # Balance diagnostics over both pair sets
    balance = {}
    if config.estimands:
        first = nearest_pairs_df[nearest_pairs_df["estimand"] == config.estimands[0]]
        if verbose:
            print(f"\nBalance after nearest-neighbor matching ({config.estimands[0]})")
        balance["nearest"] = balance_report(
            scored_df, first, n_boot=config.n_boot, seed=config.balance_seed, verbose=verbose
        )
        balance["nearest"].to_csv(os.path.join(out, "balance_nearest.csv"), index=False)
    text_pairs_pdf = text_pairs.toPandas()
    if len(text_pairs_pdf):
        if verbose:
            print("\nBalance after text caliper matching")
        balance["text"] = balance_report(
            scored_df, text_pairs_pdf, n_boot=config.n_boot, seed=config.balance_seed, verbose=verbose
        )
        balance["text"].to_csv(os.path.join(out, "balance_text.csv"), index=False)

    n_anchors = text_outcomes.count()
    n_text_matched = text_outcomes.filter(text_outcomes.status == STATUS_MATCHED).count()
    if verbose:
        print("\nRun summary")
        for row in effects:
            print(f" - {row['estimand']}: {row['estimate']:.4f} (SE {row['std_error']:.4f}), "
                  f"unmatched anchors: {row['n_unmatched']}")
        print(f" - text caliper: {n_text_matched} matched, "
              f"{n_anchors - n_text_matched} unmatched of {n_anchors} anchors")
        print(f" - outputs written to {out}")

    return {
        "scored": scored_df,
        "coefficients": coefficients,
        "nearest_pairs": nearest_pairs_df,
        "effects": effects_df,
        "text_pairs": text_pairs,
        "text_outcomes": text_outcomes,
        "chunk_stats": chunk_stats,
        "balance": balance,
    }
