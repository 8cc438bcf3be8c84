"""
Covariate preparation for reviewmatch.

This module turns a cleaned review table into the suffix-named columns used by
the propensity model and the matchers: a treatment label derived from the star
rating, imputed numeric covariates, optional quadratic terms, and dummy columns
for categorical and quantile-binned covariates.
"""

import re
from typing import List, Optional

import pyspark.sql.functions as F
from pyspark.ml.feature import Imputer, QuantileDiscretizer
from pyspark.sql import DataFrame

from .utils import _require_columns


def generate_features(
    df: DataFrame,
    id_col: str,
    stars_col: str,
    numeric_cols: List[str],
    categorical_cols: Optional[List[str]] = None,
    binned_cols: Optional[List[str]] = None,
    quadratic_cols: Optional[List[str]] = None,
    outcome_cols: Optional[List[str]] = None,
    treatment_threshold: float = 4.0,
    n_bins: int = 4,
    max_categories: int = 20,
    verbose: bool = True,
) -> DataFrame:
    """
    Convert a cleaned review table into covariate columns for matching.

    This function processes input data through multiple transformations:
    1. Derives the treatment label from the star rating
    2. Imputes missing numeric values (mean)
    3. Adds squared terms for the requested numeric columns
    4. Bins the requested numeric columns into quantile dummies
    5. One-hot encodes categorical columns (first level is the reference)

    Parameters
    ----------
    df : DataFrame
        Cleaned review records, one row per review
    id_col : str
        Integer review identifier column; must be unique
    stars_col : str
        Star rating column used to derive the treatment label
    numeric_cols : List[str]
        Columns used as raw numeric covariates
    categorical_cols : Optional[List[str]]
        Columns expanded into 0/1 dummies
    binned_cols : Optional[List[str]]
        Numeric columns used in binned form instead of raw form
    quadratic_cols : Optional[List[str]]
        Subset of numeric_cols that also get a squared term
    outcome_cols : Optional[List[str]]
        Outcome columns carried through for effect estimation
    treatment_threshold : float
        Reviews with stars >= this value are treated (1), others control (0)
    n_bins : int
        Number of quantile bins for binned_cols
    max_categories : int
        Raise if a categorical column has more levels than this
    verbose : bool
        If True, print the covariate groups being built

    Returns
    -------
    DataFrame
        DataFrame with columns:
        - {id_col}__id: identifier (long)
        - treat__treat: treatment label (0/1)
        - {c}__num, {c}_sq__num: numeric covariates
        - {c}_{level}__cat, {c}_bin{k}__cat: dummy covariates
        - {c}__outcome: outcome columns
    """
    categorical_cols = list(categorical_cols or [])
    binned_cols = list(binned_cols or [])
    quadratic_cols = list(quadratic_cols or [])
    outcome_cols = list(outcome_cols or [])
    numeric_cols = list(numeric_cols)

    _require_columns(
        df.columns,
        [id_col, stars_col] + numeric_cols + categorical_cols + binned_cols + outcome_cols,
        "Input DataFrame",
    )

    # Validate that each column is only listed once
    all_cols = numeric_cols + categorical_cols + binned_cols
    for col in all_cols:
        if all_cols.count(col) != 1:
            raise ValueError(
                f"The column {col} is used multiple times across "
                "numeric_cols, categorical_cols, and binned_cols."
            )
    if not all_cols:
        raise ValueError("At least one numeric, categorical, or binned column is required.")

    for col in quadratic_cols:
        if col not in numeric_cols:
            raise ValueError(
                f"The column {col} must be listed as a numeric column "
                "to get a quadratic term."
            )
    if n_bins < 2:
        raise ValueError(f"n_bins must be >= 2, got {n_bins}")

    n_rows = df.count()
    if n_rows == 0:
        raise ValueError("Input DataFrame is empty - no reviews to prepare")
    if df.select(id_col).distinct().count() != n_rows:
        raise ValueError(f"The identifier column {id_col} contains duplicate values.")

    # Reviews without a rating cannot be labelled
    unrated = df.filter(F.col(stars_col).isNull()).count()
    if unrated > 0:
        if verbose:
            print(f"Dropping {unrated} reviews with no {stars_col} value")
        df = df.filter(F.col(stars_col).isNotNull())

    out_cols = [f"{id_col}__id", "treat__treat"]
    df = df.withColumn(f"{id_col}__id", F.col(id_col).cast("long")).withColumn(
        "treat__treat",
        F.when(F.col(stars_col) >= F.lit(float(treatment_threshold)), 1).otherwise(0).cast("int"),
    )

    # Impute missing numeric values with mean imputation
    raw_numeric = numeric_cols + binned_cols
    if raw_numeric:
        if verbose:
            print("numeric_cols", numeric_cols)
        for c in raw_numeric:
            df = df.withColumn(c, F.col(c).cast("double"))
        imputer = Imputer(
            inputCols=raw_numeric,
            outputCols=[f"{c}_imputed" for c in raw_numeric],
            strategy="mean",
        )
        df = imputer.fit(df).transform(df)

    for c in numeric_cols:
        df = df.withColumn(f"{c}__num", F.col(f"{c}_imputed"))
        out_cols.append(f"{c}__num")

    for c in quadratic_cols:
        df = df.withColumn(f"{c}_sq__num", F.pow(F.col(f"{c}__num"), 2))
        out_cols.append(f"{c}_sq__num")

    # Quantile bins become dummies, lowest bin is the reference level
    if binned_cols:
        if verbose:
            print("binned_cols", binned_cols)
        discretizer = QuantileDiscretizer(
            numBuckets=n_bins,
            inputCols=[f"{c}_imputed" for c in binned_cols],
            outputCols=[f"{c}_bin" for c in binned_cols],
            relativeError=0.001,
            handleInvalid="keep",
        )
        df = discretizer.fit(df).transform(df)
        for c in binned_cols:
            bins = sorted(
                int(row[0]) for row in df.select(f"{c}_bin").distinct().collect()
            )
            for k in bins[1:]:
                name = f"{c}_bin{k}__cat"
                df = df.withColumn(
                    name, F.when(F.col(f"{c}_bin") == k, 1.0).otherwise(0.0)
                )
                out_cols.append(name)

    # Convert categorical variables to dummy columns
    if categorical_cols:
        if verbose:
            print("categorical_cols", categorical_cols)
        for c in categorical_cols:
            df = df.withColumn(
                c, F.coalesce(F.col(c).cast("string"), F.lit("NULL"))
            )
            levels = sorted(row[0] for row in df.select(c).distinct().collect())
            if len(levels) > max_categories:
                raise ValueError(
                    f"The categorical column {c} has {len(levels)} levels, "
                    f"more than max_categories={max_categories}."
                )
            for level in levels[1:]:
                name = f"{c}_{_safe_level(level)}__cat"
                if name in out_cols:
                    raise ValueError(
                        f"Levels of {c} collide on the column name {name}."
                    )
                df = df.withColumn(
                    name, F.when(F.col(c) == level, 1.0).otherwise(0.0)
                )
                out_cols.append(name)

    for c in outcome_cols:
        df = df.withColumn(f"{c}__outcome", F.col(c).cast("double"))
        out_cols.append(f"{c}__outcome")

    return df.select(out_cols)


def _safe_level(level: str) -> str:
    """Make a categorical level usable inside a column name."""
    return re.sub(r"[^0-9A-Za-z]+", "_", str(level)).strip("_") or "blank"
