"""
Propensity score estimation for reviewmatch.

A logistic regression of the treatment label on the prepared covariates gives
each review its probability of treatment. A fit that cannot be trusted
(constant covariate, single treatment group, no convergence) raises instead of
returning scores, since matching on an invalid score is meaningless.
"""

from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
import pyspark.sql.functions as F
from pyspark.ml.classification import LogisticRegression
from pyspark.ml.feature import VectorAssembler
from pyspark.ml.functions import vector_to_array
from pyspark.sql import DataFrame, SparkSession

from .utils import (
    _discover_feature_columns,
    _discover_id_column,
    _discover_score_column,
    _discover_treatment_column,
    _require_columns,
    _strip_suffix,
)

SCORE_COL = "propensity__ps"


class PropensityFitError(RuntimeError):
    """The propensity model could not be fitted to usable scores."""


def fit_propensity(
    features_df: DataFrame,
    covariate_cols: Optional[List[str]] = None,
    max_iter: int = 100,
    tol: float = 1e-6,
    verbose: bool = True,
) -> Tuple[DataFrame, pd.DataFrame]:
    """
    Fit a logistic-regression propensity model and score every record.

    Parameters
    ----------
    features_df : DataFrame
        Output from generate_features()
    covariate_cols : Optional[List[str]]
        Covariates to use. Defaults to every __num and __cat column, so the
        covariate set (raw, binned, categorical, quadratic) is decided when
        features are generated.
    max_iter : int
        Iteration limit; reaching it counts as a failure to converge
    tol : float
        Convergence tolerance for the optimizer
    verbose : bool
        If True, print the fitted coefficients

    Returns
    -------
    Tuple[DataFrame, pd.DataFrame]
        scored_df : features_df plus a propensity__ps column in (0, 1)
        coefficients : one row per term (intercept first) with its estimate

    Raises
    ------
    PropensityFitError
        If a covariate is constant, only one treatment group is present,
        the optimizer did not converge, or the fit is not finite.
    """
    id_col = _discover_id_column(features_df)
    treatment_col = _discover_treatment_column(features_df)

    if covariate_cols is None:
        covariate_cols = _discover_feature_columns(features_df)
    if not covariate_cols:
        raise ValueError("No covariate columns (__num or __cat) found to fit the propensity model")
    _require_columns(features_df.columns, covariate_cols, "Features DataFrame")

    if SCORE_COL in features_df.columns:
        features_df = features_df.drop(SCORE_COL)

    # Degenerate inputs are reported before fitting
    ranges = features_df.agg(
        *[F.min(c).alias(f"{c}__min") for c in covariate_cols],
        *[F.max(c).alias(f"{c}__max") for c in covariate_cols],
        F.countDistinct(treatment_col).alias("_n_groups"),
    ).collect()[0]

    constant = [
        c for c in covariate_cols
        if ranges[f"{c}__min"] is None or ranges[f"{c}__min"] == ranges[f"{c}__max"]
    ]
    if constant:
        raise PropensityFitError(
            f"Cannot fit propensity model: constant covariate(s) {constant}"
        )
    if ranges["_n_groups"] != 2:
        raise PropensityFitError(
            "Cannot fit propensity model: both treated and control records are required"
        )

    assembled = VectorAssembler(
        inputCols=covariate_cols, outputCol="_ps_features", handleInvalid="error"
    ).transform(features_df)

    lr = LogisticRegression(
        featuresCol="_ps_features",
        labelCol=treatment_col,
        family="binomial",
        maxIter=max_iter,
        tol=tol,
        regParam=0.0,
        elasticNetParam=0.0,
        probabilityCol="_ps_probability",
        rawPredictionCol="_ps_raw",
        predictionCol="_ps_prediction",
    )
    model = lr.fit(assembled)

    n_iter = model.summary.totalIterations
    if n_iter >= max_iter:
        raise PropensityFitError(
            f"Propensity model did not converge within max_iter={max_iter} iterations"
        )

    coefficients = np.asarray(model.coefficients.toArray())
    if not np.all(np.isfinite(coefficients)) or not np.isfinite(model.intercept):
        raise PropensityFitError("Propensity model produced non-finite coefficients")

    coef_df = pd.DataFrame(
        {
            "term": ["(intercept)"] + list(covariate_cols),
            "coefficient": [float(model.intercept)] + coefficients.tolist(),
        }
    )

    scored = (
        model.transform(assembled)
        .withColumn(SCORE_COL, vector_to_array(F.col("_ps_probability")).getItem(1))
        .drop("_ps_features", "_ps_probability", "_ps_raw", "_ps_prediction")
    )

    if verbose:
        print(f"\nPropensity model: logistic regression on {len(covariate_cols)} covariates")
        print(f" - converged in {n_iter} iterations")
        display = coef_df.copy()
        display["term"] = display["term"].apply(_strip_suffix)
        print(display.to_string(index=False))

    return scored, coef_df


def write_scored_records(scored_df: DataFrame, path: str, mode: str = "overwrite") -> None:
    """Persist the record table with its fitted scores as parquet."""
    _discover_id_column(scored_df)
    _discover_score_column(scored_df)
    scored_df.write.mode(mode).parquet(path)


def read_scored_records(spark: SparkSession, path: str) -> DataFrame:
    """Load a record table written by write_scored_records()."""
    df = spark.read.parquet(path)
    _discover_id_column(df)
    _discover_treatment_column(df)
    _discover_score_column(df)
    return df
