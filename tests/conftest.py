"""
Pytest fixtures for reviewmatch testing.
"""

import os

import numpy as np
import pandas as pd
import pytest
from pyspark.sql import SparkSession

POSITIVE_WORDS = ["delicious", "friendly", "amazing", "fresh", "great", "loved", "perfect", "tasty"]
NEGATIVE_WORDS = ["rude", "cold", "slow", "bland", "dirty", "awful", "waited", "overpriced"]
SHARED_WORDS = ["pizza", "service", "table", "menu", "staff", "burger", "coffee", "price", "order", "place"]
STOP_WORDS = ["the", "and", "was", "it"]

REVIEW_SCHEMA = (
    "review_id long, stars double, age_days double, length double, funny double, "
    "city string, useful double, text string"
)


@pytest.fixture(scope="session")
def spark():
    """Create a SparkSession for testing."""
    import warnings
    warnings.filterwarnings("ignore")

    # Set Java options for compatibility with Java 17+
    os.environ["SPARK_LOCAL_IP"] = "127.0.0.1"

    session = (
        SparkSession.builder.master("local[2]")
        .appName("reviewmatch-test")
        .config("spark.sql.shuffle.partitions", "4")
        .config("spark.driver.memory", "2g")
        .config("spark.ui.enabled", "false")
        .config("spark.sql.execution.arrow.pyspark.enabled", "false")
        .config("spark.driver.extraJavaOptions", "-Djava.security.manager=allow")
        .config("spark.executor.extraJavaOptions", "-Djava.security.manager=allow")
        .getOrCreate()
    )
    yield session
    session.stop()


def _review_text(rng, treated: bool) -> str:
    lean = POSITIVE_WORDS if treated else NEGATIVE_WORDS
    other = NEGATIVE_WORDS if treated else POSITIVE_WORDS
    words = (
        list(rng.choice(SHARED_WORDS, size=6))
        + list(rng.choice(lean, size=4))
        + list(rng.choice(other, size=1))
        + list(rng.choice(STOP_WORDS, size=3))
    )
    rng.shuffle(words)
    words[0] = words[0].capitalize()
    return " ".join(words) + "!"


@pytest.fixture(scope="session")
def reviews_pdf():
    """Synthetic review table: stars depend on covariates, text on stars."""
    rng = np.random.default_rng(7)
    n = 240

    age_days = rng.integers(30, 2000, size=n).astype(float)
    length = rng.integers(20, 400, size=n).astype(float)
    funny = rng.poisson(2.0, size=n).astype(float)
    city = rng.choice(["Phoenix", "Tempe", "Mesa"], size=n)

    z_age = (age_days - age_days.mean()) / age_days.std()
    z_len = (length - length.mean()) / length.std()
    latent = 0.8 * z_age - 0.6 * z_len + 0.5 * (city == "Tempe") + rng.normal(0, 1, size=n)
    stars = np.clip(np.round(3 + latent), 1, 5)
    treated = stars >= 4

    useful = rng.poisson(3.0, size=n) + 2.0 * treated
    text = [_review_text(rng, t) for t in treated]

    # A few gaps for imputation, and reviews that leave no vocabulary
    length[[10, 50, 90]] = np.nan
    text[0] = ""
    text[1] = None

    return pd.DataFrame(
        {
            "review_id": np.arange(1, n + 1, dtype=np.int64),
            "stars": stars,
            "age_days": age_days,
            "length": length,
            "funny": funny,
            "city": city,
            "useful": useful.astype(float),
            "text": text,
        }
    )


@pytest.fixture(scope="session")
def reviews_df(spark, reviews_pdf):
    return spark.createDataFrame(reviews_pdf, schema=REVIEW_SCHEMA)


@pytest.fixture(scope="session")
def features_df(reviews_df):
    from reviewmatch import generate_features

    return generate_features(
        reviews_df,
        id_col="review_id",
        stars_col="stars",
        numeric_cols=["age_days", "length"],
        categorical_cols=["city"],
        binned_cols=["funny"],
        quadratic_cols=["length"],
        outcome_cols=["useful"],
        verbose=False,
    ).cache()


@pytest.fixture(scope="session")
def scored_df(features_df):
    from reviewmatch import assign_partition, fit_propensity

    scored, _ = fit_propensity(features_df, verbose=False)
    return assign_partition(scored).cache()


@pytest.fixture(scope="session")
def term_matrix(reviews_df):
    from reviewmatch import build_term_matrix

    return build_term_matrix(
        reviews_df, id_col="review_id", text_col="text", min_count=2, max_count=100000, verbose=False
    )
